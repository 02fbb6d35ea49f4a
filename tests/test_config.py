import pytest

from coherence_kit import (CoherenceConfig, CoherenceMeasure, EpochConfig, OutputMode,
                           ReductionPolicy, SpectralConfig)


@pytest.mark.parametrize("kwargs", [
    {"win_length": 0},
    {"win_length": -0.5},
    {"overlap": 1.0},
    {"overlap": -0.1},
    {"max_freq": 0},
    {"detrend": "linear"},
])
def test_spectral_config_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        SpectralConfig(**kwargs)


def test_spectral_config_window_arithmetic():
    config = SpectralConfig(win_length=0.5, overlap=0.5, max_freq=80)
    assert config.nperseg(1000) == 500
    assert config.step(1000) == 250
    assert SpectralConfig(win_length=0.5, overlap=0.0).step(1000) == 500


def test_max_freq_checked_against_nyquist():
    config = SpectralConfig(max_freq=600)
    with pytest.raises(ValueError, match="Nyquist"):
        config.validate_for(1000)
    SpectralConfig(max_freq=500).validate_for(1000)


def test_epoch_config_defaults_and_validation():
    config = EpochConfig(epoch_time=(0.0, 8.0))
    assert config.min_duration == 8.0
    assert config.duration == 8.0
    with pytest.raises(ValueError):
        EpochConfig(epoch_time=(1.0, 1.0))
    with pytest.raises(ValueError):
        EpochConfig(epoch_time=(0.0, 1.0), min_duration=2.0)
    with pytest.raises(ValueError):
        EpochConfig(time_window=(5.0, 2.0))


def test_coherence_config_accepts_string_choices():
    config = CoherenceConfig(measure="icohere", output_mode="perepoch", epoch_policy="median")
    assert config.measure is CoherenceMeasure.IMAGINARY
    assert config.output_mode is OutputMode.COMBINE_EPOCHS
    assert config.epoch_policy is ReductionPolicy.MEDIAN


def test_coherence_config_rejects_unknown_choices():
    with pytest.raises(ValueError, match="CoherenceMeasure"):
        CoherenceConfig(measure="plv")
    with pytest.raises(ValueError):
        CoherenceConfig(n_jobs=0)
    with pytest.raises(ValueError):
        CoherenceConfig(trim_ratio=0.5)


def test_reduction_policies():
    values = [0.1, 0.2, 0.3, 0.4, 10.0]
    assert ReductionPolicy.MEAN.apply(values) == pytest.approx(2.2)
    assert ReductionPolicy.MEDIAN.apply(values) == pytest.approx(0.3)
    assert ReductionPolicy.TRIMMED_MEAN.apply(values, trim_ratio=0.2) == pytest.approx(0.3)


def test_mean_of_constant_values_is_exact():
    assert ReductionPolicy.MEAN.apply([0.37] * 11) == 0.37
