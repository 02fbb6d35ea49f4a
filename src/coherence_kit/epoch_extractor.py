"""
EpochExtractor - event-locked segmentation of continuous recordings
==================================================================

Cuts fixed-length epochs around event onsets, rejecting every epoch that
leaves the recording (or the configured analysis window), intersects a bad
segment, or is too short. Valid epochs are produced lazily in event-onset
order so downstream averaging is reproducible.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from typing import Iterator, List, Optional

from .config import EpochConfig
from .errors import InvalidEpochError
from .recording import Recording, SignalSet

logger = logging.getLogger('coherence_kit')

OUTSIDE_RECORDING = "outside recording"
OUTSIDE_TIME_WINDOW = "outside time window"
BAD_SEGMENT = "overlaps bad segment"
TOO_SHORT = "too short"


@dataclass(frozen=True)
class Epoch:
    """Event-locked extract of a Recording."""
    index: int
    event_label: str
    start: float
    duration: float
    signals: Optional[SignalSet]
    valid: bool = True
    reason: Optional[str] = None
    block: int = 0

    @property
    def end(self) -> float:
        return self.start + self.duration


class EpochExtractor:
    """
    Extract event-locked epochs from a Recording.

    Parameters
    ----------
    config : EpochConfig
        Epoch window relative to the events, analysis time window, minimum
        duration and optional block splitting.

    Examples
    --------
    >>> extractor = EpochExtractor(EpochConfig(epoch_time=(0.0, 1.0)))
    >>> epochs = extractor.extract(recording, "Left")
    """

    def __init__(self, config: EpochConfig = None):
        self.config = config or EpochConfig()
        self.rejected = Counter()

    def scan(self, recording: Recording, event_label: str) -> Iterator[Epoch]:
        """
        Yield every candidate epoch for ``event_label``, valid or not.

        Invalid epochs carry ``valid=False``, the rejection ``reason`` and no
        signals. Splitting is not applied here.
        """
        t0, t1 = self.config.epoch_time
        sfreq = recording.sfreq
        bad_segments = recording.all_bad_segments()

        # limits of the analysable part of the recording
        lower, upper = 0.0, recording.duration
        if self.config.time_window is not None:
            lower = max(lower, self.config.time_window[0])
            upper = min(upper, self.config.time_window[1])

        for index, event in enumerate(recording.events_for(event_label)):
            start, end = event.onset + t0, event.onset + t1
            reason = None

            if end <= 0 or start >= recording.duration:
                reason = OUTSIDE_RECORDING
            else:
                clipped_start, clipped_end = max(start, lower), min(end, upper)
                if clipped_end - clipped_start <= 0:
                    reason = OUTSIDE_TIME_WINDOW
                elif clipped_end - clipped_start < self.config.min_duration - 0.5 / sfreq:
                    reason = TOO_SHORT
                else:
                    start, end = clipped_start, clipped_end
                    if any(seg.overlaps(start, end) for seg in bad_segments):
                        reason = BAD_SEGMENT

            if reason is not None:
                yield Epoch(index, event_label, event.onset + t0, t1 - t0, None,
                            valid=False, reason=reason)
                continue

            first = int(round(start * sfreq))
            n_samples = int(round((end - start) * sfreq))
            data = recording.data[:, first:first + n_samples]
            signals = SignalSet(f"{recording.name}/{event_label}#{index}",
                                recording.channel_names, data, sfreq)
            yield Epoch(index, event_label, first / sfreq, n_samples / sfreq, signals)

    def iter_epochs(self, recording: Recording, event_label: str) -> Iterator[Epoch]:
        """
        Lazily yield valid epochs (split into blocks when configured).

        Rejections are tallied in ``self.rejected`` by reason.
        """
        self.rejected = Counter()
        for epoch in self.scan(recording, event_label):
            if not epoch.valid:
                self.rejected[epoch.reason] += 1
                logger.debug(f"   ✗ Epoch {epoch.index} ({epoch.start:.3f}s) rejected: {epoch.reason}")
                continue
            if self.config.split:
                yield from self._split(epoch)
            else:
                yield epoch

    def extract(self, recording: Recording, event_label: str) -> List[Epoch]:
        """
        Collect all valid epochs for ``event_label``.

        Returns
        -------
        list of Epoch
            Valid epochs in event-onset order.

        Raises
        ------
        InvalidEpochError
            If no epoch survives the rejection rules.
        """
        epochs = list(self.iter_epochs(recording, event_label))
        n_rejected = sum(self.rejected.values())
        logger.info(f"→ Extracted {len(epochs)} epochs for '{event_label}' "
                    f"({n_rejected} rejected)")
        for reason, count in sorted(self.rejected.items()):
            logger.info(f"   → {count} epochs {reason}")
        if not epochs:
            raise InvalidEpochError(
                f"No valid epoch for event '{event_label}' in '{recording.name}' "
                f"({n_rejected} candidates rejected)"
            )
        return epochs

    def _split(self, epoch: Epoch) -> Iterator[Epoch]:
        signals = epoch.signals
        block_len = int(round(self.config.split * signals.sfreq))
        if block_len <= 0:
            yield epoch
            return
        # trailing partial block dropped
        for block, first in enumerate(range(0, signals.n_samples - block_len + 1, block_len)):
            data = signals.data[:, first:first + block_len]
            yield Epoch(
                epoch.index, epoch.event_label, epoch.start + first / signals.sfreq,
                block_len / signals.sfreq,
                SignalSet(f"{signals.name}.{block}", signals.labels, data, signals.sfreq),
                block=block,
            )
