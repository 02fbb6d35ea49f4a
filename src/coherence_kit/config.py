"""
Configuration objects for coherence analysis

Every recognised option is an explicit, validated field. Invalid values are
rejected with ``ValueError`` when the object is created, before any data is
touched.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import numpy as np
from scipy.stats import trim_mean


class CoherenceMeasure(Enum):
    """Coherence estimator derived from averaged auto and cross spectra."""
    MSC = "mscohere"          # |Sxy|^2 / (Sxx Syy)
    IMAGINARY = "icohere"     # Im(Sxy)^2 / (Sxx Syy)
    LAGGED = "lcohere"        # Im(Sxy)^2 / (Sxx Syy - Re(Sxy)^2)


class OutputMode(Enum):
    """How several epochs are combined into one coherence spectrum."""
    AVERAGE_SPECTRA = "avgcoh"     # average cross-spectra, then one coherence
    COMBINE_EPOCHS = "perepoch"    # coherence per epoch, then ReductionPolicy


class RegionMode(Enum):
    """When a region's constituents are averaged relative to spectral estimation."""
    SIGNAL_MEAN = "before"
    COHERENCE_MEAN = "after"


class ReductionPolicy(Enum):
    """Rule used to collapse several coherence values into one."""
    MEAN = "mean"
    MEDIAN = "median"
    TRIMMED_MEAN = "trimmed"

    def apply(self, values, axis: int = 0, trim_ratio: float = 0.1) -> np.ndarray:
        """
        Reduce ``values`` along ``axis``.

        :param values: array-like of coherence values
        :param axis: axis to collapse
        :param trim_ratio: proportion cut from each end for TRIMMED_MEAN
        :return: reduced array (or scalar for 1-D input)
        """
        values = np.asarray(values, dtype=float)
        if self is ReductionPolicy.MEDIAN:
            return np.median(values, axis=axis)
        # shifted by the minimum so constant inputs reduce exactly
        shift = np.min(values, axis=axis, keepdims=True)
        offset = np.squeeze(shift, axis=axis)
        if self is ReductionPolicy.MEAN:
            return np.mean(values - shift, axis=axis) + offset
        return trim_mean(values - shift, trim_ratio, axis=axis) + offset


def _coerce_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        choices = ", ".join(repr(m.value) for m in enum_cls)
        raise ValueError(f"{enum_cls.__name__} must be one of {choices}, got {value!r}") from None


@dataclass(frozen=True)
class EpochConfig:
    """
    Parameters of the Epoch Extractor.

    - epoch_time: (t0, t1) in seconds relative to each event onset
    - time_window: optional absolute (start, stop) limiting the analysed part
      of the recording; epochs must lie entirely inside it
    - min_duration: shortest acceptable epoch in seconds; defaults to the
      full t1 - t0 so truncated epochs are ignored
    - split: optional block length in seconds; valid epochs are cut into
      disjoint blocks of this length
    """
    epoch_time: Tuple[float, float] = (0.0, 1.0)
    time_window: Optional[Tuple[float, float]] = None
    min_duration: Optional[float] = None
    split: Optional[float] = None

    def __post_init__(self):
        t0, t1 = self.epoch_time
        if t1 <= t0:
            raise ValueError(f"epoch_time end ({t1}) must be > start ({t0})")
        if self.time_window is not None:
            start, stop = self.time_window
            if stop <= start:
                raise ValueError(f"time_window end ({stop}) must be > start ({start})")
        if self.min_duration is None:
            object.__setattr__(self, "min_duration", t1 - t0)
        elif self.min_duration <= 0 or self.min_duration > t1 - t0:
            raise ValueError(
                f"min_duration must be in (0, {t1 - t0}], got {self.min_duration}"
            )
        if self.split is not None and self.split < 0:
            raise ValueError(f"split must be >= 0, got {self.split}")

    @property
    def duration(self) -> float:
        return self.epoch_time[1] - self.epoch_time[0]


@dataclass(frozen=True)
class SpectralConfig:
    """
    Parameters of the Welch cross-spectral estimator.

    - win_length: sub-window duration in seconds (> 0)
    - overlap: fraction of a sub-window shared with the next one, in [0, 1)
    - max_freq: highest frequency kept in the output (Hz); must not exceed the
      Nyquist frequency of the data it is applied to
    - window: taper name understood by ``scipy.signal.get_window``
    - detrend: "constant" removes each sub-window's mean, None keeps it
    - remove_evoked: subtract the across-epoch average before estimation
    """
    win_length: float = 0.5
    overlap: float = 0.5
    max_freq: float = 80.0
    window: str = "hann"
    detrend: Optional[str] = "constant"
    remove_evoked: bool = False

    def __post_init__(self):
        if self.win_length <= 0:
            raise ValueError(f"win_length must be positive, got {self.win_length}")
        if not 0.0 <= self.overlap < 1.0:
            raise ValueError(f"overlap must be in [0, 1), got {self.overlap}")
        if self.max_freq <= 0:
            raise ValueError(f"max_freq must be positive, got {self.max_freq}")
        if self.detrend not in (None, "constant"):
            raise ValueError(f"detrend must be 'constant' or None, got {self.detrend!r}")

    def nperseg(self, sfreq: float) -> int:
        """Sub-window length in samples."""
        return int(round(self.win_length * sfreq))

    def step(self, sfreq: float) -> int:
        """Distance in samples between consecutive sub-window starts."""
        nperseg = self.nperseg(sfreq)
        return nperseg - int(np.floor(self.overlap * nperseg))

    def validate_for(self, sfreq: float) -> None:
        """
        Check the settings against a concrete sample rate.

        :param sfreq: sample rate of the signals being analysed
        :raises ValueError: if max_freq exceeds Nyquist or the window is shorter than 2 samples
        """
        if sfreq <= 0:
            raise ValueError(f"Sample rate must be positive, got {sfreq}")
        if self.max_freq > sfreq / 2:
            raise ValueError(f"max_freq ({self.max_freq}) exceeds Nyquist ({sfreq / 2})")
        if self.nperseg(sfreq) < 2:
            raise ValueError(
                f"win_length {self.win_length}s is shorter than 2 samples at {sfreq} Hz"
            )


@dataclass(frozen=True)
class CoherenceConfig:
    """
    Parameters of the Coherence Calculator.

    - spectral: settings forwarded to the Welch estimator
    - measure: coherence estimator (CoherenceMeasure or its string value)
    - output_mode: cross-epoch combination (OutputMode or its string value)
    - epoch_policy: ReductionPolicy used by OutputMode.COMBINE_EPOCHS
    - trim_ratio: proportion trimmed at each end by ReductionPolicy.TRIMMED_MEAN
    - n_jobs: worker processes for batches (1 = run in the calling process)
    - progress: show a tqdm progress bar over batch jobs
    """
    spectral: SpectralConfig = field(default_factory=SpectralConfig)
    measure: CoherenceMeasure = CoherenceMeasure.MSC
    output_mode: OutputMode = OutputMode.AVERAGE_SPECTRA
    epoch_policy: ReductionPolicy = ReductionPolicy.MEAN
    trim_ratio: float = 0.1
    n_jobs: int = 1
    progress: bool = True

    def __post_init__(self):
        object.__setattr__(self, "measure", _coerce_enum(CoherenceMeasure, self.measure))
        object.__setattr__(self, "output_mode", _coerce_enum(OutputMode, self.output_mode))
        object.__setattr__(self, "epoch_policy", _coerce_enum(ReductionPolicy, self.epoch_policy))
        if not 0.0 <= self.trim_ratio < 0.5:
            raise ValueError(f"trim_ratio must be in [0, 0.5), got {self.trim_ratio}")
        if self.n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {self.n_jobs}")
