"""
Reduction of anatomical regions (scouts) to one representative.

A region is reduced either before spectral estimation, by averaging its
constituent signals sample by sample (``RegionMode.SIGNAL_MEAN``), or after,
by estimating coherence for each constituent and combining the spectra bin
by bin (``RegionMode.COHERENCE_MEAN``). Coherence is nonlinear in the
signals, so the two modes give different numbers.
"""

from dataclasses import dataclass
from typing import List, Sequence, Tuple

import numpy as np

from .config import ReductionPolicy, RegionMode
from .errors import RegionDefinitionError
from .recording import SignalSet
from .spectrum import CoherenceSpectrum


@dataclass(frozen=True)
class Region:
    """Named group of constituent signal labels."""
    name: str
    members: Tuple[str, ...]

    def __post_init__(self):
        object.__setattr__(self, "members", tuple(self.members))


class RegionAggregator:
    """
    Reduce a region to one signal or one coherence spectrum.

    Parameters
    ----------
    mode : RegionMode or str
        ``SIGNAL_MEAN`` ("before") or ``COHERENCE_MEAN`` ("after").
    policy : ReductionPolicy or str, default=MEAN
        Rule combining constituent coherence values in ``COHERENCE_MEAN`` mode.
    trim_ratio : float, default=0.1
        Used by ``ReductionPolicy.TRIMMED_MEAN``.
    """

    def __init__(self, mode, policy=ReductionPolicy.MEAN, trim_ratio: float = 0.1):
        self.mode = RegionMode(mode)
        self.policy = ReductionPolicy(policy)
        self.trim_ratio = trim_ratio

    def constituents(self, signal_set: SignalSet, region: Region) -> SignalSet:
        """Signals of ``region`` picked from ``signal_set``."""
        if not region.members:
            raise RegionDefinitionError(f"Region '{region.name}' has no constituents")
        missing = [m for m in region.members if m not in signal_set.labels]
        if missing:
            raise RegionDefinitionError(
                f"Region '{region.name}' refers to signals missing from "
                f"'{signal_set.name}': {missing[:5]}{' ...' if len(missing) > 5 else ''}"
            )
        return signal_set.pick(region.members, name=f"{signal_set.name}/{region.name}")

    def reduce_signals(self, signal_set: SignalSet, region: Region) -> np.ndarray:
        """Element-wise mean of the constituent signals, shape (n_samples,)."""
        return self.constituents(signal_set, region).data.mean(axis=0)

    def reduce_trials(self, trials: Sequence[SignalSet], region: Region) -> List[SignalSet]:
        """One synthetic single-signal SignalSet per trial, labelled with the region name."""
        return [
            SignalSet(f"{trial.name}/{region.name}", (region.name,),
                      self.reduce_signals(trial, region)[np.newaxis, :], trial.sfreq)
            for trial in trials
        ]

    def reduce_spectra(self, spectra: Sequence[CoherenceSpectrum], region_name: str) -> CoherenceSpectrum:
        """
        Combine constituent coherence spectra bin by bin.

        :param spectra: one spectrum per constituent, sharing reference and frequencies
        :param region_name: target label of the combined spectrum
        :return: CoherenceSpectrum of the region
        """
        if not spectra:
            raise RegionDefinitionError(f"No constituent spectra to combine for '{region_name}'")
        first = spectra[0]
        for spectrum in spectra[1:]:
            if spectrum.reference != first.reference or not np.array_equal(spectrum.freqs, first.freqs):
                raise ValueError(f"Constituent spectra of '{region_name}' do not share reference and frequencies")
        values = self.policy.apply([s.values for s in spectra], axis=0, trim_ratio=self.trim_ratio)
        return CoherenceSpectrum(
            freqs=first.freqs, values=np.clip(values, 0.0, 1.0),
            reference=first.reference, target=region_name, measure=first.measure,
            n_windows=first.n_windows, n_epochs=first.n_epochs,
        )
