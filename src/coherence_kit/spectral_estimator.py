"""
Welch auto- and cross-spectral density estimation across epochs.

Every epoch is cut into overlapping tapered sub-windows; the periodograms of
all sub-windows of all epochs are summed and divided by the total number of
sub-windows. Sums are accumulated per epoch, so partial accumulators built
on disjoint epoch sets can be merged in any order.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from scipy.signal import get_window

from .config import SpectralConfig
from .errors import InsufficientDataError, SignalShapeMismatchError

logger = logging.getLogger('coherence_kit')


def sub_window_starts(n_samples: int, nperseg: int, step: int) -> np.ndarray:
    """
    Start indices of all complete sub-windows in a signal.

    :param n_samples: signal length
    :param nperseg: sub-window length in samples
    :param step: distance between consecutive starts
    :return: int array, empty when the signal is shorter than one sub-window
    """
    if n_samples < nperseg:
        return np.empty(0, dtype=int)
    return np.arange(0, n_samples - nperseg + 1, step)


@dataclass(frozen=True)
class CrossSpectra:
    """
    Averaged spectra of a reference x against one or several targets y.

    ``sxx`` has shape (n_freqs,); ``syy`` and ``sxy`` have shape (n_freqs,)
    for a single target or (n_targets, n_freqs).
    """
    freqs: np.ndarray
    sxx: np.ndarray
    syy: np.ndarray
    sxy: np.ndarray
    n_windows: int
    n_epochs: int

    @property
    def resolution(self) -> float:
        return float(self.freqs[1] - self.freqs[0]) if len(self.freqs) > 1 else float("nan")


class WelchAccumulator:
    """
    Running sums of Welch periodograms for one coherence computation.

    Parameters
    ----------
    sfreq : float
        Sample rate shared by every signal added.
    config : SpectralConfig
        Sub-window length, overlap, taper, detrending and frequency limit.

    Raises
    ------
    ValueError
        If the configuration does not fit the sample rate (max_freq above
        Nyquist, sub-window shorter than 2 samples).
    """

    def __init__(self, sfreq: float, config: SpectralConfig):
        config.validate_for(sfreq)
        self.sfreq = float(sfreq)
        self.config = config
        self.nperseg = config.nperseg(sfreq)
        self.step = config.step(sfreq)
        self.taper = get_window(config.window, self.nperseg)

        freqs = np.fft.rfftfreq(self.nperseg, d=1.0 / self.sfreq)
        self._keep = freqs <= config.max_freq + 1e-9 * self.sfreq
        self.freqs = freqs[self._keep]

        # density scaling, doubled for one-sided bins that have a mirror
        scale = np.full(len(freqs), 1.0 / (self.sfreq * np.sum(self.taper ** 2)))
        last = len(freqs) if self.nperseg % 2 else len(freqs) - 1
        scale[1:last] *= 2.0
        self._scale = scale[self._keep]

        self._sxx = np.zeros(len(self.freqs))
        self._syy = None
        self._sxy = None
        self.n_windows = 0
        self.n_epochs = 0

    def _spectra(self, signal: np.ndarray, starts: np.ndarray) -> np.ndarray:
        """Tapered FFTs of the sub-windows, shape (..., n_windows, n_freqs)."""
        segments = sliding_window_view(signal, self.nperseg, axis=-1)[..., starts, :]
        if self.config.detrend == "constant":
            segments = segments - segments.mean(axis=-1, keepdims=True)
        return np.fft.rfft(segments * self.taper, axis=-1)[..., self._keep]

    def add(self, x: np.ndarray, y: Optional[np.ndarray] = None) -> int:
        """
        Accumulate one epoch.

        :param x: reference signal of this epoch, shape (n_samples,)
        :param y: target signal(s), shape (n_samples,) or (n_targets, n_samples);
                  None accumulates the auto-spectrum of x against itself
        :return: number of sub-windows contributed
        :raises SignalShapeMismatchError: if x and y lengths differ, or the
                 target layout differs from previous epochs
        """
        x = np.asarray(x, dtype=float)
        if x.ndim != 1:
            raise SignalShapeMismatchError(f"Reference must be 1D, got shape {x.shape}")
        y = x if y is None else np.asarray(y, dtype=float)
        if y.shape[-1] != x.shape[0]:
            raise SignalShapeMismatchError(
                f"Reference has {x.shape[0]} samples but target has {y.shape[-1]}"
            )
        if self._syy is not None and self._syy.shape[:-1] != y.shape[:-1]:
            raise SignalShapeMismatchError(
                f"Target layout {y.shape[:-1]} differs from earlier epochs {self._syy.shape[:-1]}"
            )

        starts = sub_window_starts(x.shape[0], self.nperseg, self.step)
        if len(starts) == 0:
            logger.debug(f"   ⚠ Epoch of {x.shape[0]} samples shorter than a "
                         f"{self.nperseg}-sample window, skipped")
            return 0

        fx = self._spectra(x, starts)
        fy = fx if y is x else self._spectra(y, starts)

        sxx = np.sum((fx * np.conj(fx)).real, axis=0)
        syy = np.sum((fy * np.conj(fy)).real, axis=-2)
        sxy = np.sum(fx * np.conj(fy), axis=-2)

        if self._syy is None:
            self._syy = np.zeros_like(syy)
            self._sxy = np.zeros_like(sxy)
        self._sxx += sxx
        self._syy += syy
        self._sxy += sxy
        self.n_windows += len(starts)
        self.n_epochs += 1
        return len(starts)

    def merge(self, other: "WelchAccumulator") -> "WelchAccumulator":
        """
        Fold the partial sums of ``other`` into this accumulator.

        Both accumulators must share sample rate and configuration.
        """
        if other.sfreq != self.sfreq or other.config != self.config:
            raise ValueError("Cannot merge accumulators with different settings")
        if other._syy is None:
            return self
        if self._syy is None:
            self._syy = np.zeros_like(other._syy)
            self._sxy = np.zeros_like(other._sxy)
        elif self._syy.shape != other._syy.shape:
            raise SignalShapeMismatchError("Cannot merge accumulators with different target layouts")
        self._sxx += other._sxx
        self._syy += other._syy
        self._sxy += other._sxy
        self.n_windows += other.n_windows
        self.n_epochs += other.n_epochs
        return self

    def result(self) -> CrossSpectra:
        """
        Averaged spectra over every accumulated sub-window.

        Raises
        ------
        InsufficientDataError
            If no sub-window was accumulated.
        """
        if self.n_windows == 0:
            raise InsufficientDataError(
                f"No complete {self.config.win_length}s sub-window in {self.n_epochs} epochs"
            )
        norm = self._scale / self.n_windows
        return CrossSpectra(
            freqs=self.freqs.copy(),
            sxx=self._sxx * norm,
            syy=self._syy * norm,
            sxy=self._sxy * norm,
            n_windows=self.n_windows,
            n_epochs=self.n_epochs,
        )


def remove_evoked(trials: Sequence[np.ndarray]) -> list:
    """
    Subtract the across-trial average from every trial.

    :param trials: arrays of identical shape
    :return: list of residual arrays
    :raises SignalShapeMismatchError: if trial shapes differ
    """
    shapes = {np.shape(trial) for trial in trials}
    if len(shapes) > 1:
        raise SignalShapeMismatchError(
            f"Evoked removal needs equal-length epochs, got shapes {sorted(shapes)}"
        )
    stacked = np.asarray(trials, dtype=float)
    evoked = stacked.mean(axis=0)
    return list(stacked - evoked)


def estimate_cross_spectra(x_trials: Sequence[np.ndarray], y_trials: Optional[Sequence[np.ndarray]],
                           sfreq: float, config: SpectralConfig) -> CrossSpectra:
    """
    Averaged cross-spectra of paired trials.

    Parameters
    ----------
    x_trials : sequence of np.ndarray
        Reference signal of each epoch, shape (n_samples,).
    y_trials : sequence of np.ndarray or None
        Target signal(s) of each epoch, paired with ``x_trials``; None
        computes the auto-spectrum of the reference.
    sfreq : float
        Shared sample rate.
    config : SpectralConfig
        Estimator settings.

    Returns
    -------
    CrossSpectra
        Spectra averaged over all sub-windows of all epochs.
    """
    x_trials = list(x_trials)
    if y_trials is not None:
        y_trials = list(y_trials)
        if len(y_trials) != len(x_trials):
            raise SignalShapeMismatchError(
                f"{len(x_trials)} reference epochs but {len(y_trials)} target epochs"
            )
    if config.remove_evoked and x_trials:
        x_trials = remove_evoked(x_trials)
        if y_trials is not None:
            y_trials = remove_evoked(y_trials)

    accumulator = WelchAccumulator(sfreq, config)
    for i, x in enumerate(x_trials):
        accumulator.add(x, None if y_trials is None else y_trials[i])
    return accumulator.result()
