"""Data I/O for feature tables, AMT databases and match results."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from .chemistry import AminoAcidModification, ModifiedAminoAcid, peptide_mass
from .database import AmtDatabase, Run
from .features import Feature

logger = logging.getLogger(__name__)

DATABASE_FORMAT_VERSION = '1'

# Column name aliases accepted in feature tables
FEATURE_COLUMN_MAP = {
    'Mass': 'mass',
    'MonoisotopicMass': 'mass',
    'Time': 'time',
    'RetentionTime': 'time',
    'Retention Time': 'time',
    'rt': 'time',
    'Scan': 'scan',
    'Charge': 'charge',
    'Intensity': 'intensity',
    'Peptide': 'peptide',
    'Peptide Sequence': 'peptide',
    'PeptideProphet': 'peptide_prophet',
    'peptideprophet': 'peptide_prophet',
    'ModifiedAminoAcids': 'modifications',
    'modifiedaminoacids': 'modifications',
    'ObservedHydrophobicity': 'observed_hydrophobicity',
    'observedhydrophobicity': 'observed_hydrophobicity',
}

REQUIRED_FEATURE_COLUMNS = ['mass']

OBSERVATION_SCHEMA = pa.schema([
    ('peptide_sequence', pa.string()),
    ('predicted_hydrophobicity', pa.float64()),
    ('modified_sequence', pa.string()),
    ('modification_ids', pa.list_(pa.int64())),
    ('observed_hydrophobicity', pa.float64()),
    ('peptide_prophet', pa.float64()),
    ('run_id', pa.int64()),
    ('time_in_run', pa.float64()),
    ('spectral_count', pa.int64()),
])


def _read_table(filepath: Path) -> pd.DataFrame:
    suffix = filepath.suffix.lower()
    if suffix == '.parquet':
        return pd.read_parquet(filepath)
    sep = '\t' if suffix in ['.tsv', '.txt'] else ','
    return pd.read_csv(filepath, sep=sep)


def _write_table(df: pd.DataFrame, filepath: Path) -> None:
    suffix = filepath.suffix.lower()
    if suffix == '.parquet':
        df.to_parquet(filepath, index=False)
    elif suffix in ['.tsv', '.txt']:
        df.to_csv(filepath, sep='\t', index=False, na_rep='NA')
    elif suffix == '.csv':
        df.to_csv(filepath, index=False, na_rep='NA')
    else:
        raise ValueError(f"Unsupported output format '{suffix}'. Use .parquet, .tsv or .csv")


# ============================================================================
# Features
# ============================================================================

def format_modified_amino_acids(modified: dict[int, ModifiedAminoAcid]) -> str:
    """'3=160.0307;7=147.0354' with 0-based positions."""
    return ';'.join(f"{pos}={aa.mass:.4f}" for pos, aa in sorted(modified.items()))


def parse_modified_amino_acids(text, peptide: Optional[str]) -> dict[int, ModifiedAminoAcid]:
    if not isinstance(text, str) or not text.strip() or not peptide:
        return {}
    result = {}
    for item in text.split(';'):
        position, mass = item.split('=')
        position = int(position)
        if position >= len(peptide):
            raise ValueError(f"Modification position {position} outside peptide {peptide}")
        result[position] = ModifiedAminoAcid(peptide[position].upper(), float(mass))
    return result


def _value(row: dict, key: str, default=None):
    value = row.get(key)
    return default if value is None or pd.isna(value) else value


def features_from_dataframe(df: pd.DataFrame) -> list[Feature]:
    """Build features from a table with standardized column names."""
    df = df.rename(columns={k: v for k, v in FEATURE_COLUMN_MAP.items() if k in df.columns})
    missing = [c for c in REQUIRED_FEATURE_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Feature table is missing required columns: {missing}")

    features = []
    for row in df.to_dict('records'):
        peptide = _value(row, 'peptide')
        hydrophobicity = _value(row, 'observed_hydrophobicity')
        features.append(Feature(
            mass=float(row['mass']),
            time=float(_value(row, 'time', 0.0)),
            scan=int(_value(row, 'scan', 0)),
            charge=int(_value(row, 'charge', 1)),
            intensity=float(_value(row, 'intensity', 0.0)),
            peptide=str(peptide) if peptide is not None else None,
            peptide_prophet=float(_value(row, 'peptide_prophet', 0.0)),
            modified_amino_acids=parse_modified_amino_acids(_value(row, 'modifications'), peptide),
            observed_hydrophobicity=None if hydrophobicity is None else float(hydrophobicity),
        ))
    return features


def load_features(filepath: Path) -> list[Feature]:
    """Load a feature table (TSV, CSV or parquet).

    Args:
        filepath: Path to the table; format is chosen by suffix

    Returns:
        Features in file order

    Raises:
        ValueError: If the mass column is missing

    """
    filepath = Path(filepath)
    features = features_from_dataframe(_read_table(filepath))
    logger.info(f"Loaded {len(features)} features from {filepath.name}")
    return features


def features_to_dataframe(features: list[Feature]) -> pd.DataFrame:
    return pd.DataFrame({
        'mass': [f.mass for f in features],
        'time': [f.time for f in features],
        'scan': [f.scan for f in features],
        'charge': [f.charge for f in features],
        'intensity': [f.intensity for f in features],
        'peptide': [f.peptide for f in features],
        'peptide_prophet': [f.peptide_prophet for f in features],
        'modifications': [format_modified_amino_acids(f.modified_amino_acids) for f in features],
        'observed_hydrophobicity': [f.observed_hydrophobicity for f in features],
        'match_probability': [f.match_probability for f in features],
        'match_fdr': [f.match_fdr for f in features],
    })


def save_features(features: list[Feature], filepath: Path) -> None:
    _write_table(features_to_dataframe(features), Path(filepath))


# ============================================================================
# Database
# ============================================================================

def _datetime_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _datetime_from_str(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _run_to_dict(run: Run) -> dict:
    return {
        'sequence': run.sequence,
        'time_hyd_map_coefficients': list(run.time_hyd_map_coefficients),
        'modification_ids': list(run.modification_ids),
        'pepxml_filename': run.pepxml_filename,
        'mzxml_filename': run.mzxml_filename,
        'lsid': run.lsid,
        'min_peptide_prophet': run.min_peptide_prophet,
        'time_added': _datetime_to_str(run.time_added),
        'time_analyzed': _datetime_to_str(run.time_analyzed),
    }


def _modification_to_dict(mod: AminoAcidModification) -> dict:
    return {'residue': mod.residue, 'mass_diff': mod.mass_diff,
            'variable': mod.variable, 'symbol': mod.symbol}


def database_to_table(db: AmtDatabase) -> pa.Table:
    """One row per observation; runs and modifications in the schema metadata."""
    rows = {name: [] for name in OBSERVATION_SCHEMA.names}
    for entry in db.entries:
        for state in entry.modification_states.values():
            for obs in state.observations:
                rows['peptide_sequence'].append(entry.peptide_sequence)
                rows['predicted_hydrophobicity'].append(entry.predicted_hydrophobicity)
                rows['modified_sequence'].append(state.modified_sequence)
                rows['modification_ids'].append(list(state.modification_ids))
                rows['observed_hydrophobicity'].append(obs.observed_hydrophobicity)
                rows['peptide_prophet'].append(obs.peptide_prophet)
                rows['run_id'].append(obs.run_id)
                rows['time_in_run'].append(obs.time_in_run)
                rows['spectral_count'].append(obs.spectral_count)

    metadata = {
        b'amt_format_version': DATABASE_FORMAT_VERSION.encode(),
        b'amt_runs': json.dumps([_run_to_dict(r) for r in db.runs]).encode(),
        b'amt_modifications': json.dumps([_modification_to_dict(m) for m in db.modifications]).encode(),
    }
    return pa.Table.from_pydict(rows, schema=OBSERVATION_SCHEMA.with_metadata(metadata))


def database_from_table(table: pa.Table) -> AmtDatabase:
    metadata = table.schema.metadata or {}
    if b'amt_runs' not in metadata or b'amt_modifications' not in metadata:
        raise ValueError("Not an AMT database table: run and modification metadata missing")
    version = metadata.get(b'amt_format_version', b'').decode()
    if version != DATABASE_FORMAT_VERSION:
        raise ValueError(f"Unsupported AMT database format version '{version}'")

    db = AmtDatabase()
    db.modifications = [AminoAcidModification(**m) for m in json.loads(metadata[b'amt_modifications'])]
    for i, run_dict in enumerate(json.loads(metadata[b'amt_runs']), 1):
        if run_dict['sequence'] != i:
            raise ValueError(f"Run sequence numbers are not contiguous at run {i}")
        ids = tuple(run_dict['modification_ids'])
        db.runs.append(Run(
            time_hyd_map_coefficients=run_dict['time_hyd_map_coefficients'],
            modifications=tuple(db.modifications[j] for j in ids),
            modification_ids=ids,
            pepxml_filename=run_dict['pepxml_filename'],
            mzxml_filename=run_dict['mzxml_filename'],
            lsid=run_dict['lsid'],
            min_peptide_prophet=run_dict['min_peptide_prophet'],
            time_added=_datetime_from_str(run_dict['time_added']),
            time_analyzed=_datetime_from_str(run_dict['time_analyzed']),
            sequence=i,
        ))

    predicted = {}
    for row in table.to_pylist():
        db.add_observation(
            row['peptide_sequence'],
            row['modification_ids'],
            row['observed_hydrophobicity'],
            row['peptide_prophet'],
            row['run_id'],
            row['time_in_run'],
            row['spectral_count'],
        )
        predicted[row['peptide_sequence']] = row['predicted_hydrophobicity']
    for sequence, value in predicted.items():
        db.get_entry(sequence).predicted_hydrophobicity = value
    return db


def save_database(db: AmtDatabase, filepath: Path) -> None:
    """Write a database to parquet."""
    filepath = Path(filepath)
    pq.write_table(database_to_table(db), filepath, compression='zstd')
    logger.info(f"Saved {db} to {filepath}")


def load_database(filepath: Path) -> AmtDatabase:
    """Read a database written by ``save_database``."""
    filepath = Path(filepath)
    db = database_from_table(pq.read_table(filepath))
    logger.info(f"Loaded {db} from {filepath.name}")
    return db


def database_to_dataframe(db: AmtDatabase) -> pd.DataFrame:
    """Wide per-peptide table: mass, predicted and mean H, then H and time per run."""
    run_ids = [run.sequence for run in db.runs]
    records = []
    for entry in sorted(db.entries, key=lambda e: e.peptide_sequence):
        record = {
            'sequence': entry.peptide_sequence,
            'mass': peptide_mass(entry.peptide_sequence),
            'calch': entry.predicted_hydrophobicity,
            'haverage': entry.mean_observed_hydrophobicity,
        }
        observations = {run_id: entry.observation_for_run(run_id) for run_id in run_ids}
        for run_id in run_ids:
            obs = observations[run_id]
            record[f'h_{run_id}'] = obs.observed_hydrophobicity if obs else np.nan
        for run_id in run_ids:
            obs = observations[run_id]
            record[f't_{run_id}'] = obs.time_in_run if obs else np.nan
        records.append(record)
    columns = ['sequence', 'mass', 'calch', 'haverage'] + \
        [f'h_{r}' for r in run_ids] + [f't_{r}' for r in run_ids]
    return pd.DataFrame(records, columns=columns)


def save_database_tsv(db: AmtDatabase, filepath: Path) -> None:
    """Write the wide per-peptide table as TSV, NA for runs without an observation."""
    filepath = Path(filepath)
    database_to_dataframe(db).to_csv(filepath, sep='\t', index=False, na_rep='NA')
    logger.info(f"Wrote {db.num_entries} entries to {filepath}")


# ============================================================================
# Match results
# ============================================================================

def save_match_results(result, filepath: Path, include_all_pairs: bool = False) -> None:
    """Write matched features (or every scored pair) of an AmtMatchResult.

    Format is chosen by suffix: .parquet, .tsv or .csv.
    """
    filepath = Path(filepath)
    if include_all_pairs:
        df = result.assignment.match_table
    else:
        df = features_to_dataframe(result.matched_features)
    _write_table(df, filepath)
    logger.info(f"Wrote {len(df)} rows to {filepath}")
