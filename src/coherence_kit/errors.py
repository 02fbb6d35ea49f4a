"""
Exception hierarchy for coherence_kit.

Configuration mistakes are reported with ``ValueError`` when a config object
is built. Everything raised while processing data derives from
``CoherenceKitError`` so batch runners can isolate one failing pair without
swallowing unrelated bugs.
"""


class CoherenceKitError(Exception):
    """Base class for data-dependent failures raised by coherence_kit."""


class InvalidEpochError(CoherenceKitError):
    """An epoch falls outside the recording or overlaps a bad segment.

    Individual invalid epochs are dropped silently; this is raised only when
    no valid epoch is left for an extraction.
    """


class InsufficientDataError(CoherenceKitError):
    """No complete sub-window is available for a spectral estimate."""


class SignalShapeMismatchError(CoherenceKitError):
    """Signals combined in one computation differ in length or sample rate."""


class EmptyBandError(CoherenceKitError):
    """A frequency band contains no spectral sample."""

    def __init__(self, band, freqs=None):
        self.band = band
        if freqs is not None and len(freqs):
            detail = f"spectrum covers {freqs[0]:g}-{freqs[-1]:g} Hz"
        else:
            detail = "spectrum is empty"
        super().__init__(
            f"Frequency band '{band.name}' [{band.low:g}, {band.high:g}] Hz "
            f"contains no spectral samples ({detail})"
        )


class RegionDefinitionError(CoherenceKitError):
    """A region is empty or names signals missing from the signal set."""
