__version__ = "0.1.0"

import logging

from .config import (CoherenceConfig, CoherenceMeasure, EpochConfig, OutputMode,
                     ReductionPolicy, RegionMode, SpectralConfig)
from .errors import (CoherenceKitError, EmptyBandError, InsufficientDataError,
                     InvalidEpochError, RegionDefinitionError, SignalShapeMismatchError)
from .recording import BadSegment, Event, Recording, SignalSet
from .epoch_extractor import Epoch, EpochExtractor
from .spectral_estimator import CrossSpectra, WelchAccumulator, estimate_cross_spectra
from .spectrum import CoherenceSpectrum, coherence_from_spectra
from .region_aggregator import Region, RegionAggregator
from .coherence_calculator import CoherenceBatch, CoherenceCalculator, PairFailure
from .band_reducer import BandReducer, FrequencyBand, default_bands
from .results_io import load_batch, save_batch
from .analyzer import AnalysisContext, AnalysisResult, CoherenceAnalyzer


def set_log_level(level='INFO'):
    """
    Set logging level for coherence_kit package.

    Parameters:
    -----------
    level : str or int
        Logging level. Can be:
        - 'CRITICAL' or logging.CRITICAL (50): Only critical messages
        - 'ERROR' or logging.ERROR (40): Error messages
        - 'WARNING' or logging.WARNING (30): Failed pairs, cancelled runs
        - 'INFO' or logging.INFO (20): Progress and milestones (default)
        - 'DEBUG' or logging.DEBUG (10): Every rejected epoch and skipped window

    Examples:
    ---------
    >>> import coherence_kit
    >>> coherence_kit.set_log_level('WARNING')  # Only report problems
    >>> coherence_kit.set_log_level('DEBUG')    # Trace epoch rejections
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    logger = logging.getLogger('coherence_kit')
    logger.setLevel(level)

    # Add handler if none exists
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter('%(message)s')
        handler.setFormatter(formatter)
        logger.addHandler(handler)

        # Prevent propagation to root logger to avoid duplicate messages
        logger.propagate = False


__all__ = ["AnalysisContext", "AnalysisResult", "BadSegment", "BandReducer", "CoherenceAnalyzer",
           "CoherenceBatch", "CoherenceCalculator", "CoherenceConfig", "CoherenceKitError",
           "CoherenceMeasure", "CoherenceSpectrum", "CrossSpectra", "EmptyBandError", "Epoch",
           "EpochConfig", "EpochExtractor", "Event", "FrequencyBand", "InsufficientDataError",
           "InvalidEpochError", "OutputMode", "PairFailure", "Recording", "ReductionPolicy",
           "Region", "RegionAggregator", "RegionDefinitionError", "RegionMode",
           "SignalSet", "SignalShapeMismatchError", "SpectralConfig", "WelchAccumulator",
           "coherence_from_spectra", "default_bands", "estimate_cross_spectra",
           "load_batch", "save_batch", "set_log_level"]
