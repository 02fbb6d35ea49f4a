from dataclasses import replace

import numpy as np
import pytest

from coherence_kit import (CoherenceCalculator, CoherenceConfig, CoherenceMeasure, EpochExtractor,
                           OutputMode, Region, SignalSet, SignalShapeMismatchError, SpectralConfig)
from conftest import SFREQ, CancelAfter, make_cmc_recording, make_trials

SPECTRAL = SpectralConfig(win_length=0.5, overlap=0.5, max_freq=80)


def _calculator(**kwargs):
    kwargs.setdefault("progress", False)
    return CoherenceCalculator(CoherenceConfig(SPECTRAL, **kwargs))


def _shifted_sines(rng, n_trials=10, phase=np.pi / 2, noise=0.5):
    t = np.arange(1000) / SFREQ
    xs = [np.sin(2 * np.pi * 20 * t) + noise * rng.standard_normal(t.size) for _ in range(n_trials)]
    ys = [np.sin(2 * np.pi * 20 * t + phase) + noise * rng.standard_normal(t.size) for _ in range(n_trials)]
    return xs, ys


def test_shared_rhythm_gives_narrow_coherence_peak(cmc_recording):
    epochs = EpochExtractor().extract(cmc_recording, "Left")
    batch = _calculator().broadcast_epochs(epochs, "EMG")

    assert batch.pairs == [("EMG", "MEG1"), ("EMG", "MEG2")]
    assert batch.complete
    coupled, uncoupled = batch[("EMG", "MEG1")], batch[("EMG", "MEG2")]
    assert coupled.at(20.0) >= 0.9
    assert abs(coupled.peak()[0] - 20.0) <= 2.0
    assert uncoupled.at(20.0) < 0.5

    away = np.abs(coupled.freqs - 20.0) > 4.0
    assert coupled.values[away].mean() < 0.3
    assert coupled.values[away].max() < 0.5
    assert coupled.n_epochs == 10
    assert coupled.n_windows == 30


@pytest.mark.parametrize("measure", list(CoherenceMeasure))
@pytest.mark.parametrize("seed", range(4))
def test_values_stay_in_unit_interval(measure, seed):
    rng = np.random.default_rng(seed)
    xs, ys = _shifted_sines(rng, n_trials=3, phase=rng.uniform(0, np.pi), noise=rng.uniform(0.1, 2))
    spectrum = _calculator(measure=measure).compute(xs, ys, SFREQ)
    assert np.all(spectrum.values >= 0.0)
    assert np.all(spectrum.values <= 1.0)
    assert spectrum.measure is measure


def test_self_coherence_is_one(rng):
    xs = [rng.standard_normal(1000) for _ in range(4)]
    spectrum = _calculator().compute(xs, xs, SFREQ, "a", "a")
    np.testing.assert_allclose(spectrum.values, 1.0, rtol=1e-12)
    imaginary = _calculator(measure="icohere").compute(xs, xs, SFREQ)
    np.testing.assert_allclose(imaginary.values, 0.0, atol=1e-12)


def test_coherence_is_symmetric(rng):
    xs, ys = _shifted_sines(rng, n_trials=4, phase=0.7)
    for measure in CoherenceMeasure:
        calculator = _calculator(measure=measure)
        forward = calculator.compute(xs, ys, SFREQ)
        backward = calculator.compute(ys, xs, SFREQ)
        np.testing.assert_allclose(forward.values, backward.values, rtol=1e-10, atol=1e-14)


def test_zero_lag_coupling_has_no_imaginary_part(cmc_recording):
    epochs = EpochExtractor().extract(cmc_recording, "Left")
    batch = _calculator(measure=CoherenceMeasure.IMAGINARY).broadcast_epochs(
        epochs, "EMG", target_channels=["MEG1"])
    assert batch[("EMG", "MEG1")].at(20.0) < 0.05


def test_lagged_coupling_is_seen_by_all_measures(rng):
    xs, ys = _shifted_sines(rng)
    for measure in CoherenceMeasure:
        assert _calculator(measure=measure).compute(xs, ys, SFREQ).at(20.0) > 0.8


def test_flat_signal_gives_zero_not_an_error(rng):
    xs = [np.zeros(1000) for _ in range(3)]
    ys = [rng.standard_normal(1000) for _ in range(3)]
    for measure in CoherenceMeasure:
        spectrum = _calculator(measure=measure).compute(xs, ys, SFREQ)
        assert np.all(spectrum.values == 0.0)


def test_remove_evoked_suppresses_phase_locked_activity(rng):
    xs, ys = _shifted_sines(rng, n_trials=8, phase=0.0)
    assert _calculator().compute(xs, ys, SFREQ).at(20.0) > 0.9
    induced = CoherenceCalculator(CoherenceConfig(
        SpectralConfig(win_length=0.5, overlap=0.5, max_freq=80, remove_evoked=True), progress=False))
    assert induced.compute(xs, ys, SFREQ).at(20.0) < 0.5


def test_combine_epochs_reduces_per_epoch_coherence(rng):
    xs, ys = _shifted_sines(rng, n_trials=5, phase=0.3, noise=1.0)
    single = _calculator()
    per_epoch = np.array([single.compute([x], [y], SFREQ).values for x, y in zip(xs, ys)])

    mean = _calculator(output_mode=OutputMode.COMBINE_EPOCHS).compute(xs, ys, SFREQ)
    median = _calculator(output_mode="perepoch", epoch_policy="median").compute(xs, ys, SFREQ)

    np.testing.assert_allclose(mean.values, per_epoch.mean(axis=0), rtol=1e-10, atol=1e-14)
    np.testing.assert_allclose(median.values, np.median(per_epoch, axis=0), rtol=1e-10)
    assert mean.n_epochs == 5


def test_pairwise_covers_every_combination(rng):
    a_trials = make_trials(rng, labels=("emg1", "emg2"))
    b_trials = make_trials(rng, labels=("s1", "s2", "s3"))
    batch = _calculator().pairwise(a_trials, b_trials)
    assert batch.pairs == [(a, b) for a in ("emg1", "emg2") for b in ("s1", "s2", "s3")]
    pairs, freqs, values = batch.values()
    assert values.shape == (6, len(freqs))


def test_broadcast_defaults_to_first_signal_as_reference(rng):
    trials = make_trials(rng, labels=("ref", "t1", "t2"))
    batch = _calculator().broadcast(trials, trials)
    assert batch.pairs == [("ref", "t1"), ("ref", "t2")]


def test_unknown_label_raises(rng):
    trials = make_trials(rng)
    with pytest.raises(ValueError, match="zz"):
        _calculator().pairwise(trials, trials, b_labels=["zz"])


def test_regions_require_explicit_mode(rng):
    trials = make_trials(rng, labels=("x", "s1", "s2"))
    with pytest.raises(ValueError, match="region_mode"):
        _calculator().pairwise(trials, trials, a_labels=["x"], regions=[Region("r", ("s1", "s2"))])


def test_bad_region_fails_alone(rng):
    a_trials = make_trials(rng, labels=("x",))
    b_trials = make_trials(rng, labels=("s1", "s2", "s3"))
    regions = [Region("good", ("s1", "s2")), Region("broken", ("s3", "missing")), Region("empty", ())]
    batch = _calculator().pairwise(a_trials, b_trials, regions=regions, region_mode="after")

    assert batch.pairs == [("x", "good")]
    assert sorted(f.pair[1] for f in batch.failures) == ["broken", "empty"]
    assert {f.kind for f in batch.failures} == {"RegionDefinitionError"}
    assert not batch.complete


def test_mismatched_signals_fail_per_pair(rng):
    a_trials = make_trials(rng, labels=("x",))
    short = make_trials(rng, n_samples=900, labels=("s1", "s2"))
    batch = _calculator().pairwise(a_trials, short)
    assert len(batch) == 0
    assert [f.kind for f in batch.failures] == ["SignalShapeMismatchError"] * 2

    slow = [SignalSet(t.name, t.labels, t.data, 500.0) for t in make_trials(rng, labels=("s1",))]
    batch = _calculator().pairwise(a_trials, slow)
    assert batch.failures[0].kind == "SignalShapeMismatchError"
    assert "sample rates" in batch.failures[0].message


def test_cancellation_keeps_finished_pairs(rng):
    labels = ("ref", "t1", "t2", "t3", "t4", "t5")
    trials = make_trials(rng, n_trials=3, labels=labels)
    cancel = CancelAfter(2)
    batch = _calculator().broadcast(trials, trials, cancel=cancel)

    assert batch.cancelled
    assert batch.pairs == [("ref", "t1"), ("ref", "t2")]
    assert batch.pending == [("ref", "t3"), ("ref", "t4"), ("ref", "t5")]
    assert not batch.complete


def test_worker_pool_matches_sequential_run():
    recording = make_cmc_recording(n_epochs=4, duration=6.0)
    epochs = EpochExtractor().extract(recording, "Left")
    sequential = _calculator().broadcast_epochs(epochs, "EMG")
    parallel = _calculator(n_jobs=2).broadcast_epochs(epochs, "EMG")

    assert parallel.pairs == sequential.pairs
    for pair in sequential.pairs:
        np.testing.assert_allclose(parallel[pair].values, sequential[pair].values)


def test_target_selection_by_type_skips_bad_channels(cmc_recording):
    recording = replace(cmc_recording, bad_channels=("MEG2",))
    epochs = EpochExtractor().extract(recording, "Left")
    calculator = _calculator()
    assert calculator.broadcast_epochs(epochs, "EMG", recording=recording,
                                       target_type="MEG").pairs == [("EMG", "MEG1")]
    assert len(calculator.broadcast_epochs(epochs, "EMG", recording=recording, target_type="MEG",
                                           include_bad=True)) == 2


@pytest.mark.parametrize("output_mode", list(OutputMode))
def test_epoch_count_mismatch_raises(rng, output_mode):
    xs, ys = _shifted_sines(rng, n_trials=4)
    with pytest.raises(SignalShapeMismatchError, match="4 x epochs but 2 y epochs"):
        _calculator(output_mode=output_mode).compute(xs, ys[:2], SFREQ)


def test_repeated_pair_ids_are_rejected(rng):
    a_trials = make_trials(rng, labels=("x",))
    b_trials = make_trials(rng, labels=("v1", "v2"))
    calculator = _calculator()
    with pytest.raises(ValueError, match="v1"):
        calculator.pairwise(a_trials, b_trials, b_labels=["v1", "v1"])
    with pytest.raises(ValueError, match="v1"):
        calculator.pairwise(a_trials, b_trials, b_labels=["v1"],
                            regions=[Region("v1", ("v1", "v2"))], region_mode="before")
    with pytest.raises(ValueError, match="reference"):
        calculator.pairwise(b_trials, b_trials, a_labels=["v2", "v2"], b_labels=["v1"])


@pytest.mark.parametrize("n_jobs", [1, 2])
def test_cancelled_before_start_computes_nothing(rng, n_jobs):
    trials = make_trials(rng, n_trials=3, labels=("ref", "t1", "t2", "t3"))
    batch = _calculator(n_jobs=n_jobs).broadcast(trials, trials, cancel=CancelAfter(0))
    assert len(batch) == 0
    assert batch.cancelled
    assert batch.pending == [("ref", "t1"), ("ref", "t2"), ("ref", "t3")]
