"""
Coherence spectrum result type and the coherence formulas.
"""

from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .config import CoherenceMeasure


def coherence_from_spectra(sxx, syy, sxy, measure: CoherenceMeasure = CoherenceMeasure.MSC) -> np.ndarray:
    """
    Normalised coherence from averaged auto and cross spectra.

    :param sxx: reference auto-spectrum, shape (n_freqs,)
    :param syy: target auto-spectra, shape (n_freqs,) or (n_targets, n_freqs)
    :param sxy: cross-spectra, same shape as syy
    :param measure: CoherenceMeasure selecting the estimator
    :return: coherence values clamped to [0, 1]; bins with a zero
             denominator (flat signal) are 0
    """
    sxx = np.asarray(sxx, dtype=float)
    syy = np.asarray(syy, dtype=float)
    sxy = np.asarray(sxy, dtype=complex)

    denominator = sxx * syy
    if measure is CoherenceMeasure.MSC:
        numerator = np.abs(sxy) ** 2
    elif measure is CoherenceMeasure.IMAGINARY:
        numerator = sxy.imag ** 2
    elif measure is CoherenceMeasure.LAGGED:
        numerator = sxy.imag ** 2
        denominator = denominator - sxy.real ** 2
    else:
        raise ValueError(f"Unsupported coherence measure: {measure!r}")

    coherence = np.zeros(np.broadcast(numerator, denominator).shape)
    np.divide(numerator, denominator, out=coherence, where=denominator > 0)
    return np.clip(coherence, 0.0, 1.0)


@dataclass(frozen=True)
class CoherenceSpectrum:
    """
    Coherence between one reference and one target as a function of frequency.

    Arrays are read-only once the spectrum is built.
    """
    freqs: np.ndarray
    values: np.ndarray
    reference: str
    target: str
    measure: CoherenceMeasure = CoherenceMeasure.MSC
    n_windows: int = 0
    n_epochs: int = 0

    def __post_init__(self):
        freqs = np.array(self.freqs, dtype=float)
        values = np.array(self.values, dtype=float)
        if freqs.shape != values.shape or freqs.ndim != 1:
            raise ValueError(f"freqs {freqs.shape} and values {values.shape} must be matching 1D arrays")
        freqs.setflags(write=False)
        values.setflags(write=False)
        object.__setattr__(self, "freqs", freqs)
        object.__setattr__(self, "values", values)

    @property
    def pair(self) -> Tuple[str, str]:
        return self.reference, self.target

    def at(self, freq: float) -> float:
        """Coherence at the bin closest to ``freq``."""
        return float(self.values[np.argmin(np.abs(self.freqs - freq))])

    def peak(self) -> Tuple[float, float]:
        """(frequency, value) of the largest coherence."""
        i = int(np.argmax(self.values))
        return float(self.freqs[i]), float(self.values[i])
