"""
Recording and signal containers

A Recording is a continuous multichannel time series together with its event
markers and bad segments. It is owned by the caller and never modified in
place: the event editing helpers return new Recording objects.

Recordings loaded with MNE can be converted with ``Recording.from_mne_raw``;
reading the files themselves is left to MNE.
"""

import logging
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from .errors import SignalShapeMismatchError

logger = logging.getLogger('coherence_kit')

BAD_PREFIX = "bad"

# MNE sensor kinds folded into the modality names used for target selection
_MNE_TYPES = {"mag": "MEG", "grad": "MEG", "ref_meg": "MEG_REF"}


def is_bad_label(label: str) -> bool:
    """Events whose label starts with 'bad' (any case) mark contaminated data."""
    return label.lower().startswith(BAD_PREFIX)


@dataclass(frozen=True)
class Event:
    """Named marker with onset and optional duration, in seconds."""
    label: str
    onset: float
    duration: float = 0.0


@dataclass(frozen=True)
class BadSegment:
    """Closed time interval [start, end] flagged as contaminated."""
    start: float
    end: float
    label: str = "BAD"

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Bad segment end ({self.end}) precedes start ({self.start})")

    def overlaps(self, start: float, end: float) -> bool:
        return self.start < end and start < self.end


@dataclass(frozen=True)
class SignalSet:
    """
    Named group of time-aligned signals sharing one sample rate.

    ``data`` has shape (n_signals, n_samples) and row ``i`` is the signal
    labelled ``labels[i]``.
    """
    name: str
    labels: Tuple[str, ...]
    data: np.ndarray
    sfreq: float

    def __post_init__(self):
        data = np.atleast_2d(np.asarray(self.data, dtype=float))
        labels = tuple(self.labels)
        if data.ndim != 2:
            raise ValueError(f"SignalSet data must be 2D (n_signals, n_samples), got {data.shape}")
        if len(labels) != data.shape[0]:
            raise ValueError(f"{len(labels)} labels for {data.shape[0]} signals in '{self.name}'")
        if len(set(labels)) != len(labels):
            raise ValueError(f"Duplicate signal labels in '{self.name}'")
        if self.sfreq <= 0:
            raise ValueError(f"Sample rate must be positive, got {self.sfreq}")
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "labels", labels)

    @property
    def n_samples(self) -> int:
        return self.data.shape[1]

    @property
    def n_signals(self) -> int:
        return self.data.shape[0]

    def index(self, label: str) -> int:
        try:
            return self.labels.index(label)
        except ValueError:
            raise KeyError(f"Signal '{label}' not found in '{self.name}'") from None

    def signal(self, label: str) -> np.ndarray:
        return self.data[self.index(label)]

    def pick(self, labels: Sequence[str], name: Optional[str] = None) -> "SignalSet":
        """Return a new SignalSet restricted to ``labels`` in the given order."""
        rows = [self.index(label) for label in labels]
        return SignalSet(name or self.name, tuple(labels), self.data[rows], self.sfreq)


def check_compatible(signal_sets: Iterable[SignalSet]) -> Tuple[int, float]:
    """
    Ensure every signal set has the same length and sample rate.

    :param signal_sets: sets taking part in one spectral estimation
    :return: (n_samples, sfreq) shared by all sets
    :raises SignalShapeMismatchError: on any disagreement
    """
    shape = None
    for signal_set in signal_sets:
        current = (signal_set.n_samples, float(signal_set.sfreq))
        if shape is None:
            shape = current
        elif current != shape:
            raise SignalShapeMismatchError(
                f"'{signal_set.name}' has {current[0]} samples at {current[1]} Hz, "
                f"expected {shape[0]} samples at {shape[1]} Hz"
            )
    if shape is None:
        raise ValueError("No signal sets given")
    return shape


@dataclass(frozen=True)
class Recording:
    """
    Continuous multichannel recording.

    Attributes
    ----------
    data : np.ndarray
        Samples, shape (n_channels, n_samples). Time 0 is the first sample.
    channel_names : tuple of str
        One name per row of ``data``.
    sfreq : float
        Uniform sample rate in Hz.
    events : tuple of Event
        Event markers, any order.
    bad_segments : tuple of BadSegment
        Explicitly flagged intervals. Events with a 'bad' label and a
        duration are flagged as well (see ``all_bad_segments``).
    channel_types : tuple of str, optional
        Modality per channel ("MEG", "EMG", ...).
    bad_channels : tuple of str
        Channels excluded from target selection unless requested.
    name : str
        Free-form identifier carried into epoch and result labels.
    """
    data: np.ndarray
    channel_names: Tuple[str, ...]
    sfreq: float
    events: Tuple[Event, ...] = ()
    bad_segments: Tuple[BadSegment, ...] = ()
    channel_types: Optional[Tuple[str, ...]] = None
    bad_channels: Tuple[str, ...] = ()
    name: str = "recording"

    def __post_init__(self):
        data = np.atleast_2d(np.asarray(self.data, dtype=float))
        names = tuple(self.channel_names)
        if len(names) != data.shape[0]:
            raise ValueError(f"{len(names)} channel names for {data.shape[0]} channels")
        if self.sfreq <= 0:
            raise ValueError(f"Sample rate must be positive, got {self.sfreq}")
        if self.channel_types is not None and len(self.channel_types) != len(names):
            raise ValueError("channel_types must have one entry per channel")
        unknown = set(self.bad_channels) - set(names)
        if unknown:
            raise ValueError(f"Unknown bad channels: {sorted(unknown)}")
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "channel_names", names)
        object.__setattr__(self, "events", tuple(self.events))
        object.__setattr__(self, "bad_segments", tuple(self.bad_segments))
        object.__setattr__(self, "bad_channels", tuple(self.bad_channels))
        if self.channel_types is not None:
            object.__setattr__(self, "channel_types", tuple(self.channel_types))

    @property
    def n_samples(self) -> int:
        return self.data.shape[1]

    @property
    def duration(self) -> float:
        return self.n_samples / self.sfreq

    @property
    def event_labels(self) -> List[str]:
        return sorted({event.label for event in self.events})

    def all_bad_segments(self) -> List[BadSegment]:
        """Explicit bad segments plus extended events carrying a 'bad' label."""
        segments = list(self.bad_segments)
        for event in self.events:
            if is_bad_label(event.label) and event.duration > 0:
                segments.append(BadSegment(event.onset, event.onset + event.duration, event.label))
        return sorted(segments, key=lambda seg: (seg.start, seg.end))

    def events_for(self, label: str) -> List[Event]:
        """Events with ``label`` sorted by onset (stable for equal onsets)."""
        return sorted((e for e in self.events if e.label == label), key=lambda e: e.onset)

    def as_signal_set(self) -> SignalSet:
        return SignalSet(self.name, self.channel_names, self.data, self.sfreq)

    def channels_of_type(self, channel_type: str, include_bad: bool = False) -> List[str]:
        """
        Names of channels of a given modality, in recording order.

        :param channel_type: modality such as "MEG" (case-insensitive)
        :param include_bad: keep channels listed in ``bad_channels``
        """
        if self.channel_types is None:
            raise ValueError(f"Recording '{self.name}' has no channel types")
        wanted = channel_type.lower()
        return [
            name for name, kind in zip(self.channel_names, self.channel_types)
            if kind.lower() == wanted and (include_bad or name not in self.bad_channels)
        ]

    # ------------------------------------------------------------------
    # Event editing
    # ------------------------------------------------------------------

    def merge_events(self, labels: Sequence[str], new_label: str) -> "Recording":
        """Relabel every event whose label is in ``labels`` as ``new_label``."""
        labels = set(labels)
        missing = labels - {e.label for e in self.events}
        if missing:
            logger.warning(f"⚠ Events not found for merge: {sorted(missing)}")
        events = tuple(
            replace(e, label=new_label) if e.label in labels else e for e in self.events
        )
        return replace(self, events=events)

    def delete_events(self, labels: Sequence[str]) -> "Recording":
        labels = set(labels)
        return replace(self, events=tuple(e for e in self.events if e.label not in labels))

    def rename_event(self, src: str, dest: str) -> "Recording":
        """Rename one event group; a 'bad' prefixed ``dest`` turns it into bad segments."""
        return self.merge_events([src], dest)

    # ------------------------------------------------------------------
    # MNE adapter
    # ------------------------------------------------------------------

    @classmethod
    def from_mne_raw(cls, raw, picks=None, name: Optional[str] = None) -> "Recording":
        """
        Build a Recording from a loaded ``mne.io.Raw``.

        Annotations become events, except extended annotations whose
        description starts with 'bad' (e.g. MNE's ``BAD_`` convention), which
        become bad segments.
        ``raw.info['bads']`` becomes ``bad_channels``.

        Parameters
        ----------
        raw : mne.io.BaseRaw
            Recording already loaded by MNE.
        picks : str, list or None
            Channel selection forwarded to ``raw.get_data``.
        name : str, optional
            Identifier; defaults to the MNE file name or 'recording'.
        """
        import mne

        if not isinstance(raw, mne.io.BaseRaw):
            raise TypeError(f"Expected an mne.io.Raw instance, got {type(raw).__name__}")

        picked = raw.copy().pick(picks) if picks is not None else raw
        data = picked.get_data()
        sfreq = float(picked.info["sfreq"])
        channel_names = tuple(picked.ch_names)
        channel_types = tuple(_MNE_TYPES.get(t, t.upper()) for t in picked.get_channel_types())
        bads = tuple(ch for ch in picked.info["bads"] if ch in channel_names)

        # onsets count from meas_date when the annotations carry an orig_time
        first = picked.first_samp / sfreq if picked.annotations.orig_time is not None else 0.0
        events = []
        bad_segments = []
        for annot in picked.annotations:
            onset = float(annot["onset"]) - first
            duration = float(annot["duration"])
            label = str(annot["description"])
            # zero-duration 'bad' markers stay events, as in all_bad_segments
            if is_bad_label(label) and duration > 0:
                bad_segments.append(BadSegment(onset, onset + duration, label))
            else:
                events.append(Event(label, onset, duration))

        if name is None:
            filenames = getattr(picked, "filenames", None) or []
            name = str(filenames[0]) if filenames and filenames[0] else "recording"

        logger.info(f"→ Converted MNE recording '{name}': {len(channel_names)} channels, "
                    f"{len(events)} events, {len(bad_segments)} bad segments")
        return cls(data=data, channel_names=channel_names, sfreq=sfreq, events=tuple(events),
                   bad_segments=tuple(bad_segments), channel_types=channel_types,
                   bad_channels=bads, name=name)


def describe_events(recording: Recording) -> Dict[str, int]:
    """Count of events per label."""
    counts: Dict[str, int] = {}
    for event in recording.events:
        counts[event.label] = counts.get(event.label, 0) + 1
    return counts
