"""
Persistence of coherence batches (HDF5) and of the analysis log (JSON).

HDF5 layout::

    /freqs          (n_freqs,)           shared frequency axis
    /coherence      (n_pairs, n_freqs)   one row per (reference, target)
    /references     (n_pairs,)           str
    /targets        (n_pairs,)           str
    /failures/      pair_references, pair_targets, kinds, messages (str)
    /pending/       references, targets (str) of pairs skipped by cancellation
    /n_windows, /n_epochs (n_pairs,)     averaging counts per pair
    attrs           measure, cancelled, n_pending, user attrs
"""

import datetime
import json
import logging
from pathlib import Path
from typing import Optional

import h5py
import numpy as np

from .coherence_calculator import CoherenceBatch, PairFailure
from .config import CoherenceMeasure
from .spectrum import CoherenceSpectrum

logger = logging.getLogger('coherence_kit')

_STR = h5py.string_dtype(encoding='utf-8')


def save_batch(batch: CoherenceBatch, path, attrs: Optional[dict] = None) -> Path:
    """
    Write a CoherenceBatch to an HDF5 file.

    :param batch: results to store
    :param path: output file, parent directories are created
    :param attrs: extra scalar attributes (parameters, context) stored on the root
    :return: Path of the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    pairs, freqs, values = batch.values()

    with h5py.File(path, 'w') as h5_file:
        h5_file.create_dataset('freqs', data=freqs)
        h5_file.create_dataset('coherence', data=values, compression='gzip' if values.size else None)
        _write_strings(h5_file, 'references', [p[0] for p in pairs])
        _write_strings(h5_file, 'targets', [p[1] for p in pairs])
        h5_file.create_dataset('n_windows', data=[batch[p].n_windows for p in pairs], dtype='i8')
        h5_file.create_dataset('n_epochs', data=[batch[p].n_epochs for p in pairs], dtype='i8')

        failures = h5_file.create_group('failures')
        _write_strings(failures, 'pair_references', [f.pair[0] for f in batch.failures])
        _write_strings(failures, 'pair_targets', [f.pair[1] for f in batch.failures])
        _write_strings(failures, 'kinds', [f.kind for f in batch.failures])
        _write_strings(failures, 'messages', [f.message for f in batch.failures])

        pending = h5_file.create_group('pending')
        _write_strings(pending, 'references', [p[0] for p in batch.pending])
        _write_strings(pending, 'targets', [p[1] for p in batch.pending])

        measures = {batch[p].measure.value for p in pairs}
        h5_file.attrs['measure'] = measures.pop() if len(measures) == 1 else CoherenceMeasure.MSC.value
        h5_file.attrs['cancelled'] = batch.cancelled
        h5_file.attrs['n_pending'] = len(batch.pending)
        for key, value in (attrs or {}).items():
            h5_file.attrs[key] = value if value is not None else ''

    logger.info(f"✔ Saved {len(pairs)} coherence spectra to: {path}")
    return path


def _write_strings(group, name: str, items: list) -> None:
    group.create_dataset(name, data=np.array(items, dtype=object), dtype=_STR)


def _strings(dataset) -> list:
    return [s.decode('utf-8') if isinstance(s, bytes) else str(s) for s in dataset[()]]


def load_batch(path) -> CoherenceBatch:
    """Read a CoherenceBatch written by ``save_batch``."""
    batch = CoherenceBatch()
    with h5py.File(path, 'r') as h5_file:
        freqs = np.asarray(h5_file['freqs'])
        values = np.asarray(h5_file['coherence'])
        measure = CoherenceMeasure(h5_file.attrs['measure'])
        n_windows = np.asarray(h5_file['n_windows'])
        n_epochs = np.asarray(h5_file['n_epochs'])
        for i, (reference, target) in enumerate(zip(_strings(h5_file['references']),
                                                     _strings(h5_file['targets']))):
            batch.spectra[(reference, target)] = CoherenceSpectrum(
                freqs, values[i], reference, target, measure, int(n_windows[i]), int(n_epochs[i])
            )
        failures = h5_file['failures']
        for ref, tgt, kind, message in zip(_strings(failures['pair_references']),
                                          _strings(failures['pair_targets']),
                                          _strings(failures['kinds']),
                                          _strings(failures['messages'])):
            batch.failures.append(PairFailure((ref, tgt), kind, message))
        pending = h5_file['pending']
        batch.pending = list(zip(_strings(pending['references']), _strings(pending['targets'])))
        batch.cancelled = bool(h5_file.attrs['cancelled'])
    return batch


def _read_metadata(metadata_file: Path) -> list:
    """Entries already logged in ``metadata_file``; an unreadable log is moved aside."""
    if not metadata_file.exists():
        return []
    try:
        with open(metadata_file, 'r') as f:
            entries = json.load(f)
    except json.JSONDecodeError:
        backup = metadata_file.with_name(metadata_file.name + '.corrupt')
        metadata_file.replace(backup)
        logger.warning(f"⚠ Unreadable metadata file moved to {backup}")
        return []
    return entries if isinstance(entries, list) else [entries]


def save_analysis_metadata(output_dir, analysis_type: str, parameters: dict, results_info: dict,
                           analysis_start_time: float, analysis_end_time: float,
                           data_info: Optional[dict] = None) -> Path:
    """
    Append one run to ``<output_dir>/analysis_metadata.json``.

    :param output_dir: directory holding the log
    :param analysis_type: e.g. "coherence_1xN"
    :param parameters: estimator and selection settings of the run
    :param results_info: counts and file names produced by the run
    :param analysis_start_time: ``time.time()`` at the start of the run
    :param analysis_end_time: ``time.time()`` at the end of the run
    :param data_info: source recording and context labels
    :return: Path of the log file
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    metadata_file = output_dir / "analysis_metadata.json"

    entries = _read_metadata(metadata_file)
    entries.append({
        "timestamp": datetime.datetime.now().isoformat(),
        "analysis_type": analysis_type,
        "analysis_duration_seconds": round(analysis_end_time - analysis_start_time, 2),
        "parameters": parameters,
        "data_info": data_info or {},
        "results": results_info,
    })
    with open(metadata_file, 'w') as f:
        json.dump(entries, f, indent=2, default=str)
    return metadata_file
