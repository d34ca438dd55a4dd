"""Tests for data_io module."""

from types import SimpleNamespace

import numpy as np
import pandas as pd
import pytest

from amt_match.chemistry import RESIDUE_MASSES, AminoAcidModification, ModifiedAminoAcid
from amt_match.data_io import (
    database_to_dataframe,
    format_modified_amino_acids,
    load_database,
    load_features,
    parse_modified_amino_acids,
    save_database,
    save_database_tsv,
    save_features,
    save_match_results,
)
from amt_match.database import AmtDatabase, Run
from amt_match.features import Feature


@pytest.fixture
def db():
    """Two runs, three peptides, one with a variable modification."""
    database = AmtDatabase()
    database.add_run(Run(
        time_hyd_map_coefficients=[-2.0, 0.01],
        modifications=(AminoAcidModification('C', 57.021464),
                       AminoAcidModification('M', 15.994915, variable=True)),
        pepxml_filename='a.pep.xml',
        lsid='urn:lsid:test:run:a',
    ))
    database.add_run(Run(time_hyd_map_coefficients=[-1.8, 0.012], pepxml_filename='b.pep.xml'))
    database.add_observation('PEMCK', (0, 1), 0.1, 0.9, 1, 210.0, spectral_count=3)
    database.add_observation('PEMCK', (0,), 0.2, 0.8, 1, 220.0)
    database.add_observation('LLSVEGK', (), 0.5, 0.95, 1, 250.0)
    database.add_observation('LLSVEGK', (), 0.55, 0.85, 2, 195.0)
    database.add_observation('AAAK', (), -0.4, 0.7, 2, 110.0)
    return database


class TestDatabasePersistence:
    """Tests for parquet database round trips."""

    def test_round_trip(self, db, tmp_path):
        """Runs, modifications, states and observations survive a save/load."""
        path = tmp_path / 'amt.parquet'
        save_database(db, path)
        loaded = load_database(path)

        assert loaded.num_runs == 2
        assert loaded.num_entries == 3
        assert loaded.modifications == db.modifications
        for original, restored in zip(db.runs, loaded.runs):
            assert restored.sequence == original.sequence
            assert restored.time_hyd_map_coefficients == original.time_hyd_map_coefficients
            assert restored.pepxml_filename == original.pepxml_filename
            assert restored.modification_ids == original.modification_ids
            assert restored.time_added == original.time_added
        assert loaded.runs[0].lsid == 'urn:lsid:test:run:a'

        for entry in db.entries:
            restored = loaded.get_entry(entry.peptide_sequence)
            assert sorted(restored.modification_states) == sorted(entry.modification_states)
            assert restored.num_observations == entry.num_observations
            assert restored.median_observed_hydrophobicity == pytest.approx(entry.median_observed_hydrophobicity)
            assert restored.predicted_hydrophobicity == pytest.approx(entry.predicted_hydrophobicity)

        obs = loaded.get_entry('PEMCK').modification_states['PEM[147.0]C[160.0]K'].observations[0]
        assert obs.spectral_count == 3
        assert obs.time_in_run == 210.0

    def test_empty_database(self, tmp_path):
        """A database without observations still round-trips its runs."""
        empty = AmtDatabase()
        empty.add_run(Run())
        path = tmp_path / 'empty.parquet'
        save_database(empty, path)
        loaded = load_database(path)
        assert loaded.num_runs == 1
        assert loaded.num_entries == 0

    def test_not_a_database(self, tmp_path):
        """Plain parquet files are rejected."""
        path = tmp_path / 'plain.parquet'
        pd.DataFrame({'a': [1, 2]}).to_parquet(path)
        with pytest.raises(ValueError, match="Not an AMT database"):
            load_database(path)


class TestDatabaseExport:
    """Tests for the wide TSV export."""

    def test_columns(self, db):
        """Fixed columns then H and time per run."""
        df = database_to_dataframe(db)
        assert list(df.columns) == ['sequence', 'mass', 'calch', 'haverage', 'h_1', 'h_2', 't_1', 't_2']
        assert list(df['sequence']) == ['AAAK', 'LLSVEGK', 'PEMCK']

    def test_values(self, db):
        """Mean H across observations; missing runs are NaN."""
        df = database_to_dataframe(db).set_index('sequence')
        assert df.loc['LLSVEGK', 'haverage'] == pytest.approx(0.525)
        assert np.isnan(df.loc['AAAK', 'h_1'])
        assert df.loc['AAAK', 't_2'] == pytest.approx(110.0)

    def test_tsv_na(self, db, tmp_path):
        """Missing observations are written as NA."""
        path = tmp_path / 'amt.tsv'
        save_database_tsv(db, path)
        lines = path.read_text().splitlines()
        assert lines[0].split('\t')[:4] == ['sequence', 'mass', 'calch', 'haverage']
        aaak = next(line for line in lines if line.startswith('AAAK'))
        assert 'NA' in aaak.split('\t')


class TestFeatureTables:
    """Tests for feature table loading and saving."""

    def test_load_with_aliases(self, tmp_path):
        """Column aliases and modification annotations are understood."""
        path = tmp_path / 'features.tsv'
        pd.DataFrame({
            'Mass': [1000.5, 1200.25],
            'RetentionTime': [120.0, 240.0],
            'Charge': [2, 3],
            'Peptide': ['PEMK', None],
            'ModifiedAminoAcids': ['2=147.0354', None],
            'PeptideProphet': [0.95, None],
        }).to_csv(path, sep='\t', index=False)

        features = load_features(path)
        assert len(features) == 2
        first, second = features
        assert first.mass == 1000.5
        assert first.time == 120.0
        assert first.charge == 2
        assert first.peptide == 'PEMK'
        assert first.modified_amino_acids == {2: ModifiedAminoAcid('M', 147.0354)}
        assert second.peptide is None
        assert second.peptide_prophet == 0.0
        assert second.observed_hydrophobicity is None

    def test_missing_mass(self, tmp_path):
        """The mass column is required."""
        path = tmp_path / 'features.csv'
        pd.DataFrame({'time': [1.0]}).to_csv(path, index=False)
        with pytest.raises(ValueError, match="mass"):
            load_features(path)

    def test_save_and_reload(self, tmp_path):
        """Saved features load back with their annotations."""
        feature = Feature(
            mass=1500.75, time=300.0, scan=42, charge=2, intensity=1e6,
            peptide='PEMCK', peptide_prophet=0.9,
            modified_amino_acids={2: ModifiedAminoAcid('M', RESIDUE_MASSES['M'] + 15.994915)},
            observed_hydrophobicity=0.3,
        )
        path = tmp_path / 'features.parquet'
        save_features([feature], path)
        (restored,) = load_features(path)
        assert restored.mass == pytest.approx(1500.75)
        assert restored.scan == 42
        assert restored.observed_hydrophobicity == pytest.approx(0.3)
        assert restored.modified_amino_acids[2].mass == pytest.approx(RESIDUE_MASSES['M'] + 15.994915, abs=1e-4)

    def test_unsupported_suffix(self, tmp_path):
        """Unknown output formats are rejected."""
        with pytest.raises(ValueError, match="Unsupported output format"):
            save_features([Feature(mass=1.0)], tmp_path / 'features.xlsx')

    def test_modification_strings(self):
        """Annotation strings use 0-based positions."""
        annotations = {3: ModifiedAminoAcid('C', 160.030649)}
        assert format_modified_amino_acids(annotations) == '3=160.0306'
        assert parse_modified_amino_acids('3=160.0306', 'PEPCK') == {3: ModifiedAminoAcid('C', 160.0306)}
        assert parse_modified_amino_acids(float('nan'), 'PEPCK') == {}
        with pytest.raises(ValueError):
            parse_modified_amino_acids('9=100.0', 'PEPCK')


class TestMatchResults:
    """Tests for writing match results."""

    @pytest.fixture
    def result(self):
        """A minimal result: two accepted features and their pair table."""
        matched = [
            Feature(mass=1000.0, time=100.0, peptide='AAAK', match_probability=0.9, match_fdr=0.01),
            Feature(mass=1100.0, time=110.0, peptide='GGGK', match_probability=0.8, match_fdr=0.02),
        ]
        table = pd.DataFrame({'mass': [1000.0, 1100.0, 1100.0], 'probability': [0.9, 0.8, 0.1]})
        return SimpleNamespace(matched_features=matched, assignment=SimpleNamespace(match_table=table))

    def test_matched_features(self, result, tmp_path):
        """Accepted features are written one per row."""
        path = tmp_path / 'matches.tsv'
        save_match_results(result, path)
        df = pd.read_csv(path, sep='\t')
        assert list(df['peptide']) == ['AAAK', 'GGGK']
        assert 'match_probability' in df.columns

    def test_all_pairs(self, result, tmp_path):
        """Every scored pair can be written instead."""
        path = tmp_path / 'pairs.csv'
        save_match_results(result, path, include_all_pairs=True)
        assert len(pd.read_csv(path)) == 3
