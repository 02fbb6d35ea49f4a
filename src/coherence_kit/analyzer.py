"""
CoherenceAnalyzer - End-to-end Coherence Analysis
================================================

Chains epoch extraction, coherence estimation, region reduction and band
reduction for one recording, with the subject/condition passed explicitly
on every call instead of living in session state.

Features:
- 1xN coherence between a reference channel (e.g. EMG) and sensor channels
- AxB coherence against externally supplied source or region waveforms
- Band reduction into pandas tables
- Optional HDF5 export and an appended JSON analysis log
"""

import logging
import re
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import pandas as pd

from .band_reducer import BandReducer, FrequencyBand
from .coherence_calculator import CoherenceBatch, CoherenceCalculator
from .config import CoherenceConfig, EpochConfig
from .epoch_extractor import Epoch, EpochExtractor
from .recording import Recording, SignalSet, describe_events
from .region_aggregator import Region
from .results_io import save_analysis_metadata, save_batch

logger = logging.getLogger('coherence_kit')


@dataclass(frozen=True)
class AnalysisContext:
    """Who and what an analysis is about; used for labelling outputs only."""
    subject: str
    condition: str = ""
    tags: Tuple[str, ...] = ()

    @property
    def label(self) -> str:
        parts = [self.subject, self.condition, *self.tags]
        return "_".join(re.sub(r"[^\w.-]+", "-", p) for p in parts if p)


@dataclass
class AnalysisResult:
    """Outputs of one analyzer run."""
    context: AnalysisContext
    batch: CoherenceBatch
    n_epochs: int
    bands: Optional[pd.DataFrame] = None
    band_failures: List[tuple] = field(default_factory=list)
    output_path: Optional[Path] = None


class CoherenceAnalyzer:
    """
    Coherence analysis pipeline for event-locked recordings.

    Parameters
    ----------
    config : CoherenceConfig, optional
        Spectral estimator, coherence measure and batch settings.
    epoch_config : EpochConfig, optional
        Epoch window, analysis time window, minimum duration and splitting.
    output_dir : str or Path, optional
        Where HDF5 results and ``analysis_metadata.json`` are written when
        ``save=True``. Defaults to ``coherence_analysis_results`` in the
        working directory.

    Examples
    --------
    >>> analyzer = CoherenceAnalyzer(CoherenceConfig(SpectralConfig(0.5, 0.5, 80)),
    ...                              EpochConfig(epoch_time=(0.0, 8.0), split=1.0))
    >>> result = analyzer.run_broadcast(recording, AnalysisContext("Subject01"), "Left",
    ...                                 "EMGlft", target_type="MEG",
    ...                                 bands=[FrequencyBand.parse("cmc_band", "15, 20")])
    """

    def __init__(self, config: CoherenceConfig = None, epoch_config: EpochConfig = None,
                 output_dir=None):
        self.config = config or CoherenceConfig()
        self.epoch_config = epoch_config or EpochConfig()
        self.output_dir = Path(output_dir) if output_dir is not None else Path("coherence_analysis_results")
        self.extractor = EpochExtractor(self.epoch_config)
        self.calculator = CoherenceCalculator(self.config)
        self.reducer = BandReducer()

    # ========================================================================
    # PUBLIC METHODS
    # ========================================================================

    def extract_epochs(self, recording: Recording, event_label: str) -> List[Epoch]:
        """Valid epochs of ``recording`` around ``event_label`` events."""
        logger.info(f"→ Events in '{recording.name}': {describe_events(recording)}")
        return self.extractor.extract(recording, event_label)

    def run_broadcast(self, recording: Recording, context: AnalysisContext, event_label: str,
                      reference_channel: str, target_channels: Optional[Sequence[str]] = None,
                      target_type: Optional[str] = None, include_bad: bool = False,
                      bands: Optional[Sequence[FrequencyBand]] = None, save: bool = False,
                      cancel=None) -> AnalysisResult:
        """
        Coherence 1xN between a reference channel and sensor channels.

        Parameters
        ----------
        recording : Recording
            Continuous recording with events and bad segments.
        context : AnalysisContext
            Subject and condition labelling the outputs.
        event_label : str
            Events the epochs are anchored on.
        reference_channel : str
            Reference signal, e.g. an EMG channel.
        target_channels : sequence of str, optional
            Explicit targets. Otherwise ``target_type`` channels, otherwise
            every other channel.
        target_type : str, optional
            Channel modality used to pick targets (e.g. "MEG").
        include_bad : bool, default=False
            Keep channels marked bad in the recording.
        bands : sequence of FrequencyBand, optional
            Bands reduced into ``result.bands``.
        save : bool, default=False
            Write HDF5 results and a metadata entry under ``output_dir``.
        cancel : object with ``is_set()``, optional
            Cooperative cancellation flag checked between pairs.

        Returns
        -------
        AnalysisResult
            Batch of spectra, failures, band table and output path.

        Raises
        ------
        InvalidEpochError
            If no epoch survives extraction.
        """
        analysis_start_time = time.time()
        logger.info(f"→ Coherence 1xN for {context.label or context.subject}: "
                    f"{reference_channel} x {target_type or 'channels'}")
        epochs = self.extract_epochs(recording, event_label)
        batch = self.calculator.broadcast_epochs(epochs, reference_channel, target_channels,
                                                 recording=recording, target_type=target_type,
                                                 include_bad=include_bad, cancel=cancel)
        parameters = {"event_label": event_label, "reference_channel": reference_channel,
                      "target_type": target_type, "include_bad": include_bad}
        return self._finish("coherence_1xN", context, batch, len(epochs), bands, save,
                            parameters, analysis_start_time, recording.name)

    def run_pairwise(self, a_trials: Sequence[SignalSet], b_trials: Sequence[SignalSet],
                     context: AnalysisContext, a_labels: Optional[Sequence[str]] = None,
                     b_labels: Optional[Sequence[str]] = None,
                     regions: Optional[Sequence[Region]] = None, region_mode=None,
                     bands: Optional[Sequence[FrequencyBand]] = None, save: bool = False,
                     cancel=None) -> AnalysisResult:
        """
        Coherence AxB between per-epoch signal sets, e.g. EMG epochs against
        source waveforms of the same epochs.

        ``region_mode`` must be given whenever ``regions`` is; see
        ``CoherenceCalculator.pairwise`` for the remaining parameters.
        """
        analysis_start_time = time.time()
        logger.info(f"→ Coherence AxB for {context.label or context.subject}: "
                    f"{len(a_trials)} epochs, {len(regions or [])} regions")
        batch = self.calculator.pairwise(a_trials, b_trials, a_labels, b_labels,
                                         regions=regions, region_mode=region_mode, cancel=cancel)
        parameters = {"a_labels": list(a_labels or []), "b_labels": list(b_labels or []),
                      "regions": [r.name for r in regions or []],
                      "region_mode": getattr(region_mode, "value", region_mode)}
        source = a_trials[0].name if a_trials else ""
        return self._finish("coherence_AxB", context, batch, len(a_trials), bands, save,
                            parameters, analysis_start_time, source)

    # ========================================================================
    # PRIVATE METHODS
    # ========================================================================

    def _finish(self, analysis_type, context, batch, n_epochs, bands, save, parameters,
                analysis_start_time, source_name) -> AnalysisResult:
        result = AnalysisResult(context=context, batch=batch, n_epochs=n_epochs)
        if bands:
            result.bands, result.band_failures = self.reducer.reduce_batch(batch, bands)
            if not result.bands.empty:
                result.bands.insert(0, 'subject', context.subject)
                result.bands.insert(1, 'condition', context.condition)

        if save:
            result.output_path = self._save(analysis_type, context, batch, n_epochs, parameters,
                                            analysis_start_time, source_name)
        return result

    def _config_summary(self) -> dict:
        spectral = asdict(self.config.spectral)
        return {
            **spectral,
            "measure": self.config.measure.value,
            "output_mode": self.config.output_mode.value,
            "epoch_policy": self.config.epoch_policy.value,
            "epoch_time": list(self.epoch_config.epoch_time),
            "time_window": list(self.epoch_config.time_window or []),
            "min_duration": self.epoch_config.min_duration,
            "split": self.epoch_config.split,
        }

    def _save(self, analysis_type, context, batch, n_epochs, parameters,
              analysis_start_time, source_name) -> Path:
        label = context.label or "analysis"
        out_path = self.output_dir / "coherence" / f"{label}_{analysis_type}.h5"
        summary = self._config_summary()
        attrs = {k: v for k, v in summary.items() if v is not None and v != []}
        attrs.update({"subject": context.subject, "condition": context.condition,
                      "analysis_type": analysis_type, "n_epochs_used": n_epochs})
        save_batch(batch, out_path, attrs)

        analysis_end_time = time.time()
        results_info = {
            "file": out_path.name,
            "n_spectra": len(batch),
            "n_failures": len(batch.failures),
            "cancelled": batch.cancelled,
            "n_epochs": n_epochs,
        }
        save_analysis_metadata(self.output_dir, analysis_type, {**summary, **parameters}, results_info,
                               analysis_start_time, analysis_end_time,
                               data_info={"source": source_name, "subject": context.subject,
                                          "condition": context.condition, "tags": list(context.tags)})
        return out_path
