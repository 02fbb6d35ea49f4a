import numpy as np
import pytest

from coherence_kit import Event, Recording, SignalSet

SFREQ = 1000.0


def make_cmc_recording(seed=0, n_epochs=10, freq=20.0, noise=0.5, duration=12.0):
    """Two channels sharing a sinusoid plus independent noise, one 'Left' event per second."""
    rng = np.random.default_rng(seed)
    t = np.arange(int(duration * SFREQ)) / SFREQ
    common = np.sin(2 * np.pi * freq * t)
    data = np.vstack([
        common + noise * rng.standard_normal(t.size),
        common + noise * rng.standard_normal(t.size),
        rng.standard_normal(t.size),
    ])
    events = [Event("Left", 0.5 + i) for i in range(n_epochs)]
    return Recording(data, ("EMG", "MEG1", "MEG2"), SFREQ, events=events,
                     channel_types=("EMG", "MEG", "MEG"), name="synthetic")


def make_trials(rng, n_trials=8, n_samples=1000, labels=("a", "b")):
    return [SignalSet(f"trial{i}", labels, rng.standard_normal((len(labels), n_samples)), SFREQ)
            for i in range(n_trials)]


class CancelAfter:
    """Cancellation flag that trips after ``n`` checks."""

    def __init__(self, n):
        self.n = n
        self.calls = 0

    def is_set(self):
        self.calls += 1
        return self.calls > self.n


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def cmc_recording():
    return make_cmc_recording()
