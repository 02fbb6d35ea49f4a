"""
CoherenceCalculator - reference/target coherence over epoched signals
====================================================================

Computes coherence spectra for one reference against many targets
(broadcast, 1xN) or for every member of one set against every member or
region of another (pairwise, AxB). Each (reference, target) pair is an
independent job: a failing pair is recorded and its siblings still run.
Jobs can run in worker processes and can be abandoned between pairs
through a cancellation flag.
"""

import logging
from dataclasses import dataclass, field
from multiprocessing import Pool
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .config import CoherenceConfig, OutputMode, RegionMode
from .errors import CoherenceKitError, InsufficientDataError, SignalShapeMismatchError
from .recording import Recording, SignalSet
from .region_aggregator import Region, RegionAggregator
from .spectral_estimator import WelchAccumulator, estimate_cross_spectra, remove_evoked
from .spectrum import CoherenceSpectrum, coherence_from_spectra

logger = logging.getLogger('coherence_kit')

Pair = Tuple[str, str]


@dataclass(frozen=True)
class PairFailure:
    """One (reference, target) computation that raised."""
    pair: Pair
    kind: str
    message: str


@dataclass
class CoherenceBatch:
    """
    Results of a broadcast or pairwise run.

    ``spectra`` is keyed by (reference, target) in job order. Pairs that
    failed are listed in ``failures``; pairs skipped because the run was
    cancelled are listed in ``pending``.
    """
    spectra: Dict[Pair, CoherenceSpectrum] = field(default_factory=dict)
    failures: List[PairFailure] = field(default_factory=list)
    cancelled: bool = False
    pending: List[Pair] = field(default_factory=list)

    def __len__(self):
        return len(self.spectra)

    def __getitem__(self, pair: Pair) -> CoherenceSpectrum:
        return self.spectra[pair]

    @property
    def pairs(self) -> List[Pair]:
        return list(self.spectra)

    @property
    def complete(self) -> bool:
        return not self.failures and not self.cancelled

    def values(self) -> Tuple[List[Pair], np.ndarray, np.ndarray]:
        """
        Stack every spectrum into one array.

        :return: (pairs, freqs, values) with values of shape (n_pairs, n_freqs)
        """
        pairs = self.pairs
        if not pairs:
            return [], np.empty(0), np.empty((0, 0))
        freqs = self.spectra[pairs[0]].freqs
        for pair in pairs[1:]:
            if not np.array_equal(self.spectra[pair].freqs, freqs):
                raise ValueError("Spectra in the batch do not share a frequency axis")
        return pairs, freqs, np.vstack([self.spectra[p].values for p in pairs])


@dataclass
class _PairJob:
    """Picklable description of one pair computation."""
    pair: Pair
    x_trials: list
    y_trials: list
    x_rates: list
    y_rates: list
    config: CoherenceConfig
    constituents: Optional[Tuple[str, ...]] = None
    region_mode: Optional[RegionMode] = None


def _execute(job: _PairJob):
    """Run one job; library errors become a PairFailure."""
    try:
        return job.pair, _run_pair(job), None
    except CoherenceKitError as exc:
        return job.pair, None, PairFailure(job.pair, type(exc).__name__, str(exc))


def _run_pair(job: _PairJob) -> CoherenceSpectrum:
    rates = set(job.x_rates) | set(job.y_rates)
    if len(rates) > 1:
        raise SignalShapeMismatchError(f"Pair {job.pair} mixes sample rates {sorted(rates)}")
    if not job.x_trials:
        raise InsufficientDataError(f"No epochs for pair {job.pair}")
    sfreq = rates.pop()
    reference, target = job.pair

    if job.constituents is None:
        return _coherence(job.x_trials, job.y_trials, sfreq, job.config, reference, target)

    # coherence per constituent, combined afterwards
    spectra = []
    for k, member in enumerate(job.constituents):
        y_trials = [trial[k] for trial in job.y_trials]
        spectra.append(_coherence(job.x_trials, y_trials, sfreq, job.config, reference, member))
    aggregator = RegionAggregator(job.region_mode, job.config.epoch_policy, job.config.trim_ratio)
    return aggregator.reduce_spectra(spectra, target)


def _coherence(x_trials, y_trials, sfreq, config: CoherenceConfig, reference, target) -> CoherenceSpectrum:
    spectral = config.spectral
    if config.output_mode is OutputMode.AVERAGE_SPECTRA:
        cs = estimate_cross_spectra(x_trials, y_trials, sfreq, spectral)
        values = coherence_from_spectra(cs.sxx, cs.syy, cs.sxy, config.measure)
        return CoherenceSpectrum(cs.freqs, values, reference, target, config.measure,
                                 cs.n_windows, cs.n_epochs)

    # one coherence per epoch, then the configured cross-epoch rule
    if spectral.remove_evoked:
        x_trials, y_trials = remove_evoked(x_trials), remove_evoked(y_trials)
    per_epoch = []
    n_windows = 0
    freqs = None
    for x, y in zip(x_trials, y_trials):
        accumulator = WelchAccumulator(sfreq, spectral)
        if accumulator.add(x, y) == 0:
            continue
        cs = accumulator.result()
        per_epoch.append(coherence_from_spectra(cs.sxx, cs.syy, cs.sxy, config.measure))
        n_windows += cs.n_windows
        freqs = cs.freqs
    if not per_epoch:
        raise InsufficientDataError(
            f"No complete {spectral.win_length}s sub-window in {len(x_trials)} epochs for {reference} x {target}"
        )
    values = config.epoch_policy.apply(per_epoch, axis=0, trim_ratio=config.trim_ratio)
    return CoherenceSpectrum(freqs, np.clip(values, 0.0, 1.0), reference, target,
                             config.measure, n_windows, len(per_epoch))


def _lengths_match(x: np.ndarray, y: np.ndarray) -> bool:
    return np.shape(x)[-1] == np.shape(y)[-1]


class CoherenceCalculator:
    """
    Coherence between reference and target signals across epochs.

    Parameters
    ----------
    config : CoherenceConfig, optional
        Estimator, coherence measure, cross-epoch rule and batch settings.

    Notes
    -----
    Trials are sequences of SignalSet objects, one per epoch. Reference and
    target trials are paired by position, so the i-th target set must be
    time-aligned with the i-th reference set.
    """

    def __init__(self, config: CoherenceConfig = None):
        self.config = config or CoherenceConfig()

    # ========================================================================
    # PUBLIC METHODS - Single pair
    # ========================================================================

    def compute(self, x_trials: Sequence[np.ndarray], y_trials: Sequence[np.ndarray], sfreq: float,
                reference: str = "x", target: str = "y") -> CoherenceSpectrum:
        """
        Coherence spectrum of one signal pair over several epochs.

        Parameters
        ----------
        x_trials, y_trials : sequence of np.ndarray
            Reference and target samples per epoch, paired by position.
        sfreq : float
            Shared sample rate.
        reference, target : str
            Labels stored in the result.

        Raises
        ------
        InsufficientDataError
            If no sub-window fits in any epoch.
        SignalShapeMismatchError
            If the epoch counts or paired epoch lengths differ.
        """
        x_trials, y_trials = list(x_trials), list(y_trials)
        if len(x_trials) != len(y_trials):
            raise SignalShapeMismatchError(
                f"{len(x_trials)} {reference} epochs but {len(y_trials)} {target} epochs"
            )
        for x, y in zip(x_trials, y_trials):
            if not _lengths_match(x, y):
                raise SignalShapeMismatchError(
                    f"{reference} and {target} epochs have {np.shape(x)[-1]} and {np.shape(y)[-1]} samples"
                )
        return _coherence(x_trials, y_trials, sfreq, self.config, reference, target)

    # ========================================================================
    # PUBLIC METHODS - Batches
    # ========================================================================

    def broadcast(self, reference_trials: Sequence[SignalSet], target_trials: Sequence[SignalSet],
                  reference: Optional[str] = None, targets: Optional[Sequence[str]] = None,
                  cancel=None) -> CoherenceBatch:
        """
        Coherence of one reference signal against N targets (1xN).

        Parameters
        ----------
        reference_trials : sequence of SignalSet
            Per-epoch sets containing the reference signal.
        target_trials : sequence of SignalSet
            Per-epoch target sets, aligned with ``reference_trials``. May be
            the same objects as ``reference_trials``.
        reference : str, optional
            Label of the reference signal; defaults to the first signal.
        targets : sequence of str, optional
            Target labels; defaults to every target signal except the reference.
        cancel : object with ``is_set()``, optional
            Checked between pairs; when set, remaining pairs are left pending.

        Returns
        -------
        CoherenceBatch
            N spectra sharing the reference, plus per-pair failures.
        """
        reference_trials, target_trials = self._check_trial_counts(reference_trials, target_trials)
        if reference is None:
            reference = reference_trials[0].labels[0]
        if targets is None:
            targets = [label for label in target_trials[0].labels if label != reference]
        return self.pairwise(reference_trials, target_trials, [reference], targets, cancel=cancel)

    def pairwise(self, a_trials: Sequence[SignalSet], b_trials: Sequence[SignalSet],
                 a_labels: Optional[Sequence[str]] = None, b_labels: Optional[Sequence[str]] = None,
                 regions: Optional[Sequence[Region]] = None, region_mode=None,
                 cancel=None) -> CoherenceBatch:
        """
        Coherence of every A signal against every B signal or region (AxB).

        Parameters
        ----------
        a_trials, b_trials : sequence of SignalSet
            Per-epoch sets, aligned by position.
        a_labels : sequence of str, optional
            Signals of A used as references; defaults to all.
        b_labels : sequence of str, optional
            Signals of B used as targets; defaults to all when ``regions`` is
            None, to none otherwise.
        regions : sequence of Region, optional
            Regions of B used as targets.
        region_mode : RegionMode or str
            Required with ``regions``: ``SIGNAL_MEAN`` averages constituent
            signals before estimation, ``COHERENCE_MEAN`` averages constituent
            coherence spectra afterwards.
        cancel : object with ``is_set()``, optional
            Cooperative cancellation flag.

        Returns
        -------
        CoherenceBatch
            |A| x |B| spectra (references outer, targets inner) plus failures.
        """
        a_trials, b_trials = self._check_trial_counts(a_trials, b_trials)
        if regions and region_mode is None:
            raise ValueError("region_mode must be given explicitly when regions are used")
        if a_labels is None:
            a_labels = list(a_trials[0].labels)
        if b_labels is None:
            b_labels = [] if regions else list(b_trials[0].labels)
        targets = list(b_labels) + [region.name for region in regions or ()]
        self._check_unique_pairs(a_labels, targets)

        jobs, failures = [], []
        for a_label in a_labels:
            try:
                x_trials = [trial.signal(a_label) for trial in a_trials]
            except KeyError as exc:
                raise ValueError(str(exc.args[0])) from None
            x_rates = [trial.sfreq for trial in a_trials]
            y_rates = [trial.sfreq for trial in b_trials]

            for b_label in b_labels:
                try:
                    y_trials = [trial.signal(b_label) for trial in b_trials]
                except KeyError as exc:
                    raise ValueError(str(exc.args[0])) from None
                jobs.append(_PairJob((a_label, b_label), x_trials, y_trials, x_rates, y_rates, self.config))

            for region in regions or ():
                pair = (a_label, region.name)
                try:
                    jobs.append(self._region_job(pair, region, RegionMode(region_mode),
                                                 x_trials, b_trials, x_rates, y_rates))
                except CoherenceKitError as exc:
                    failures.append(PairFailure(pair, type(exc).__name__, str(exc)))

        batch = self._run_batch(jobs, cancel)
        for failure in failures:
            self._record_failure(batch, failure)
        return batch

    def broadcast_epochs(self, epochs, reference_channel: str, target_channels: Optional[Sequence[str]] = None,
                         recording: Optional[Recording] = None, target_type: Optional[str] = None,
                         include_bad: bool = False, cancel=None) -> CoherenceBatch:
        """
        Broadcast coherence between channels of extracted epochs.

        Targets are ``target_channels`` if given, otherwise the channels of
        ``target_type`` in ``recording``, otherwise every other channel.
        Channels listed as bad in ``recording`` are skipped unless
        ``include_bad`` is set.
        """
        trials = [epoch.signals for epoch in epochs]
        if not trials:
            raise InsufficientDataError("No epochs given")
        if target_channels is None:
            if target_type is not None:
                if recording is None:
                    raise ValueError("target_type requires the source recording")
                target_channels = recording.channels_of_type(target_type, include_bad=include_bad)
            else:
                bad = set() if include_bad or recording is None else set(recording.bad_channels)
                target_channels = [ch for ch in trials[0].labels if ch != reference_channel and ch not in bad]
        target_channels = [ch for ch in target_channels if ch != reference_channel]
        if not target_channels:
            raise ValueError("No target channel selected")
        logger.info(f"→ Coherence 1x{len(target_channels)}: {reference_channel} against "
                    f"{len(target_channels)} channels over {len(trials)} epochs")
        return self.broadcast(trials, trials, reference=reference_channel, targets=target_channels, cancel=cancel)

    # ========================================================================
    # PRIVATE METHODS
    # ========================================================================

    @staticmethod
    def _check_trial_counts(a_trials, b_trials):
        a_trials, b_trials = list(a_trials), list(b_trials)
        if not a_trials:
            raise InsufficientDataError("No epochs given")
        if len(a_trials) != len(b_trials):
            raise SignalShapeMismatchError(
                f"{len(a_trials)} reference epochs but {len(b_trials)} target epochs"
            )
        return a_trials, b_trials

    @staticmethod
    def _check_unique_pairs(references, targets):
        """Results are keyed by (reference, target), so every id must be distinct."""
        for kind, labels in (("reference", references), ("target", targets)):
            repeated = sorted({label for label in labels if list(labels).count(label) > 1})
            if repeated:
                raise ValueError(f"Repeated {kind} labels (plain targets and region names "
                                 f"share one namespace): {repeated}")

    def _region_job(self, pair, region, mode, x_trials, b_trials, x_rates, y_rates) -> _PairJob:
        aggregator = RegionAggregator(mode, self.config.epoch_policy, self.config.trim_ratio)
        if mode is RegionMode.SIGNAL_MEAN:
            y_trials = [aggregator.reduce_signals(trial, region) for trial in b_trials]
            return _PairJob(pair, x_trials, y_trials, x_rates, y_rates, self.config)
        y_trials = [aggregator.constituents(trial, region).data for trial in b_trials]
        return _PairJob(pair, x_trials, y_trials, x_rates, y_rates, self.config,
                        constituents=region.members, region_mode=mode)

    def _run_batch(self, jobs: List[_PairJob], cancel=None) -> CoherenceBatch:
        batch = CoherenceBatch()
        pbar = tqdm(total=len(jobs), desc="Computing coherence", unit="pair",
                    disable=not self.config.progress)
        done = 0
        try:
            if self.config.n_jobs == 1 or len(jobs) < 2:
                for job in jobs:
                    if cancel is not None and cancel.is_set():
                        break
                    self._record(batch, _execute(job))
                    done += 1
                    pbar.update()
            elif cancel is None or not cancel.is_set():
                with Pool(processes=self.config.n_jobs) as pool:
                    for result in pool.imap(_execute, jobs):
                        self._record(batch, result)
                        done += 1
                        pbar.update()
                        if cancel is not None and cancel.is_set():
                            pool.terminate()
                            break
        finally:
            pbar.close()

        if done < len(jobs):
            batch.cancelled = True
            batch.pending = [job.pair for job in jobs[done:]]
            logger.warning(f"⚠ Coherence run cancelled: {done}/{len(jobs)} pairs done, "
                           f"{len(batch.pending)} pending")
        logger.info(f"✔ Computed {len(batch.spectra)} coherence spectra "
                    f"({len(batch.failures)} failed)")
        return batch

    def _record(self, batch: CoherenceBatch, result) -> None:
        pair, spectrum, failure = result
        if failure is not None:
            self._record_failure(batch, failure)
        else:
            batch.spectra[pair] = spectrum

    @staticmethod
    def _record_failure(batch: CoherenceBatch, failure: PairFailure) -> None:
        batch.failures.append(failure)
        logger.warning(f"   ✗ {failure.pair[0]} x {failure.pair[1]}: {failure.kind}: {failure.message}")
