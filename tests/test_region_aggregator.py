import numpy as np
import pytest

from coherence_kit import (CoherenceCalculator, CoherenceConfig, CoherenceSpectrum, Region,
                           RegionAggregator, RegionDefinitionError, RegionMode, SignalSet)
from conftest import SFREQ


def _anticorrelated_trials(rng, n_trials=8):
    """Reference sharing a 20 Hz rhythm with two constituents of opposite sign."""
    t = np.arange(1000) / SFREQ
    a_trials, b_trials = [], []
    for i in range(n_trials):
        common = np.sin(2 * np.pi * 20 * t + rng.uniform(0, 2 * np.pi))
        a_trials.append(SignalSet(f"emg{i}", ("emg",), (common + 0.3 * rng.standard_normal(t.size))[None, :], SFREQ))
        members = np.vstack([common + 0.3 * rng.standard_normal(t.size),
                             -common + 0.3 * rng.standard_normal(t.size)])
        b_trials.append(SignalSet(f"src{i}", ("v1", "v2"), members, SFREQ))
    return a_trials, b_trials


def test_signal_mean_and_coherence_mean_differ(rng):
    a_trials, b_trials = _anticorrelated_trials(rng)
    region = Region("M1", ("v1", "v2"))
    calculator = CoherenceCalculator(CoherenceConfig(progress=False))

    before = calculator.pairwise(a_trials, b_trials, regions=[region], region_mode=RegionMode.SIGNAL_MEAN)
    after = calculator.pairwise(a_trials, b_trials, regions=[region], region_mode=RegionMode.COHERENCE_MEAN)

    # the constituents cancel when averaged as signals
    assert before[("emg", "M1")].at(20.0) < 0.5
    assert after[("emg", "M1")].at(20.0) > 0.9


def test_region_with_single_member_matches_plain_target(rng):
    a_trials, b_trials = _anticorrelated_trials(rng, n_trials=4)
    calculator = CoherenceCalculator(CoherenceConfig(progress=False))
    plain = calculator.pairwise(a_trials, b_trials, b_labels=["v1"])[("emg", "v1")]
    for mode in RegionMode:
        region = calculator.pairwise(a_trials, b_trials, regions=[Region("r", ("v1",))],
                                     region_mode=mode)[("emg", "r")]
        np.testing.assert_allclose(region.values, plain.values, rtol=1e-10)


def test_reduce_signals_is_elementwise_mean(rng):
    data = rng.standard_normal((3, 100))
    signals = SignalSet("s", ("a", "b", "c"), data, SFREQ)
    aggregator = RegionAggregator("before")
    np.testing.assert_allclose(aggregator.reduce_signals(signals, Region("r", ("a", "c"))),
                               (data[0] + data[2]) / 2)
    reduced = aggregator.reduce_trials([signals, signals], Region("r", ("a", "b")))
    assert [t.labels for t in reduced] == [("r",), ("r",)]


def test_constituents_must_exist(rng):
    signals = SignalSet("s", ("a", "b"), rng.standard_normal((2, 10)), SFREQ)
    aggregator = RegionAggregator(RegionMode.SIGNAL_MEAN)
    with pytest.raises(RegionDefinitionError, match="zz"):
        aggregator.constituents(signals, Region("r", ("a", "zz")))
    with pytest.raises(RegionDefinitionError):
        aggregator.constituents(signals, Region("r", ()))


def test_reduce_spectra_applies_policy():
    freqs = np.arange(5.0)
    spectra = [CoherenceSpectrum(freqs, np.full(5, v), "x", f"m{v}") for v in (0.1, 0.2, 0.9)]
    mean = RegionAggregator("after").reduce_spectra(spectra, "r")
    median = RegionAggregator("after", policy="median").reduce_spectra(spectra, "r")
    assert mean.pair == ("x", "r")
    np.testing.assert_allclose(mean.values, 0.4)
    np.testing.assert_allclose(median.values, 0.2)
    with pytest.raises(RegionDefinitionError):
        RegionAggregator("after").reduce_spectra([], "r")
