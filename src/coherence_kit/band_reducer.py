"""
Reduction of coherence spectra to scalar values per frequency band.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import ReductionPolicy
from .errors import EmptyBandError
from .spectrum import CoherenceSpectrum

logger = logging.getLogger('coherence_kit')


@dataclass(frozen=True)
class FrequencyBand:
    """Named closed interval [low, high] in Hz with its reduction rule."""
    name: str
    low: float
    high: float
    policy: ReductionPolicy = ReductionPolicy.MEAN
    trim_ratio: float = 0.1

    def __post_init__(self):
        object.__setattr__(self, "policy", ReductionPolicy(self.policy))
        if self.low < 0:
            raise ValueError(f"Band '{self.name}' starts below 0 Hz ({self.low})")
        if self.high < self.low:
            raise ValueError(f"Band '{self.name}' high ({self.high}) must be >= low ({self.low})")

    @classmethod
    def parse(cls, name: str, bounds: str, function: str = "mean") -> "FrequencyBand":
        """
        Build a band from its text form, e.g. ``parse("cmc_band", "15, 20", "mean")``.

        :param name: band name
        :param bounds: "low, high" in Hz
        :param function: reduction rule name ('mean', 'median' or 'trimmed')
        """
        parts = [p for p in bounds.replace(",", " ").split() if p]
        if len(parts) != 2:
            raise ValueError(f"Band bounds must be 'low, high', got {bounds!r}")
        return cls(name, float(parts[0]), float(parts[1]), ReductionPolicy(function))

    def mask(self, freqs: np.ndarray) -> np.ndarray:
        return (freqs >= self.low) & (freqs <= self.high)


def default_bands(sfreq: float) -> List[FrequencyBand]:
    """
    Canonical bands constrained to the sampling frequency 'sfreq'.

    :param sfreq: sample rate in Hz
    :return: list of FrequencyBand below Nyquist
    """
    bands = [('delta', 1, 4), ('theta', 4, 8), ('alpha', 8, 13), ('beta', 13, 30),
             ('gamma', 30, 70), ('gammaHi', 70, 100), ('ripples', 100, 250),
             ('fastRipples', 250, 500)]
    nyquist = sfreq / 2
    return [FrequencyBand(name, low, high) for name, low, high in bands if high <= nyquist]


class BandReducer:
    """
    Collapse coherence spectra into one value per frequency band.

    Parameters
    ----------
    bands : sequence of FrequencyBand, optional
        Bands used when a call does not pass its own.
    """

    def __init__(self, bands: Optional[Sequence[FrequencyBand]] = None):
        self.bands = list(bands) if bands is not None else []

    def reduce_band(self, spectrum: CoherenceSpectrum, band: FrequencyBand) -> float:
        """
        Reduce the spectrum samples whose frequency lies in [low, high].

        Raises
        ------
        EmptyBandError
            If no frequency bin falls inside the band.
        """
        mask = band.mask(spectrum.freqs)
        if not np.any(mask):
            raise EmptyBandError(band, spectrum.freqs)
        return float(band.policy.apply(spectrum.values[mask], trim_ratio=band.trim_ratio))

    def reduce(self, spectrum: CoherenceSpectrum,
               bands: Optional[Sequence[FrequencyBand]] = None) -> Dict[str, float]:
        """One value per band, in band order; raises on the first empty band."""
        bands = self._bands(bands)
        return {band.name: self.reduce_band(spectrum, band) for band in bands}

    def reduce_batch(self, batch, bands: Optional[Sequence[FrequencyBand]] = None
                     ) -> Tuple[pd.DataFrame, List[Tuple[str, str, str, str]]]:
        """
        Band values for every spectrum of a CoherenceBatch.

        An empty band fails for that band only.

        Returns
        -------
        table : pandas.DataFrame
            Columns reference, target, band, low, high, value.
        failures : list of tuple
            (reference, target, band name, message) per failed reduction.
        """
        bands = self._bands(bands)
        rows, failures = [], []
        for (reference, target), spectrum in batch.spectra.items():
            for band in bands:
                try:
                    value = self.reduce_band(spectrum, band)
                except EmptyBandError as exc:
                    failures.append((reference, target, band.name, str(exc)))
                    continue
                rows.append({'reference': reference, 'target': target, 'band': band.name,
                             'low': band.low, 'high': band.high, 'value': value})
        if failures:
            names = sorted({f[2] for f in failures})
            logger.warning(f"⚠ {len(failures)} band reductions failed (bands: {', '.join(names)})")
        table = pd.DataFrame(rows, columns=['reference', 'target', 'band', 'low', 'high', 'value'])
        return table, failures

    def _bands(self, bands):
        bands = list(bands) if bands is not None else self.bands
        if not bands:
            raise ValueError("No frequency bands given")
        return bands
