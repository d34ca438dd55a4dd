"""Tests for database module."""

import numpy as np
import pytest

from amt_match.chemistry import RESIDUE_MASSES, AminoAcidModification, ModifiedAminoAcid
from amt_match.database import (
    AmtDatabase,
    Run,
    remove_hydrophobicity_outliers,
    remove_predicted_hydrophobicity_outliers,
)
from amt_match.exceptions import UnresolvedModificationError

CARBAMIDOMETHYL = AminoAcidModification('C', 57.021464)
OXIDATION = AminoAcidModification('M', 15.994915, variable=True)
PHOSPHO = AminoAcidModification('S', 79.966331, variable=True)


@pytest.fixture
def db():
    """Database with one run declaring carbamidomethyl C and oxidized M."""
    database = AmtDatabase()
    database.add_run(Run(modifications=(CARBAMIDOMETHYL, OXIDATION), pepxml_filename='run1.pep.xml'))
    return database


class TestAddRun:
    """Tests for run addition and modification deduplication."""

    def test_sequence_numbers(self, db):
        """Runs are numbered from 1 in insertion order."""
        db.add_run(Run())
        assert [r.sequence for r in db.runs] == [1, 2]
        assert db.get_run_by_sequence(2) is db.runs[1]

    def test_same_modifications_not_duplicated(self, db):
        """Adding equivalent modifications again reuses the existing ids."""
        mapping = db.add_run(Run(modifications=(
            AminoAcidModification('C', 57.02),
            AminoAcidModification('M', 15.995, variable=True),
        )))
        assert len(db.modifications) == 2
        assert mapping == {0: 0, 1: 1}

    def test_map_redirects_reordered_modifications(self, db):
        """The returned map points each source id at the canonical id."""
        mapping = db.add_run(Run(modifications=(OXIDATION, PHOSPHO, CARBAMIDOMETHYL)))
        assert mapping == {0: 1, 1: 2, 2: 0}
        assert len(db.modifications) == 3
        stored = db.runs[-1]
        assert stored.modification_ids == (1, 2, 0)
        assert stored.modifications[0] is db.modifications[1]

    def test_stored_run_is_a_copy(self, db):
        """Changing the source run does not touch the stored run."""
        run = Run(time_hyd_map_coefficients=[1.0, 2.0])
        db.add_run(run)
        run.time_hyd_map_coefficients[0] = 99.0
        assert db.runs[-1].time_hyd_map_coefficients == [1.0, 2.0]

    def test_unknown_sequence(self, db):
        """Looking up a missing run raises KeyError."""
        with pytest.raises(KeyError):
            db.get_run_by_sequence(5)


class TestRun:
    """Tests for Run time/hydrophobicity conversion."""

    def test_round_trip(self):
        """Linear maps invert exactly."""
        run = Run(time_hyd_map_coefficients=[-2.0, 0.01])
        h = run.convert_time_to_hydrophobicity(150.0)
        assert h == pytest.approx(-0.5)
        assert run.recover_time_for_hydrophobicity(h) == pytest.approx(150.0)

    def test_nonlinear_not_invertible(self):
        """Quadratic maps cannot be inverted."""
        run = Run(time_hyd_map_coefficients=[0.0, 1.0, 0.1])
        with pytest.raises(ValueError):
            run.recover_time_for_hydrophobicity(1.0)

    def test_degree_zero_rejected(self):
        """A constant map is not a valid run map."""
        with pytest.raises(ValueError):
            Run(time_hyd_map_coefficients=[1.0])


class TestObservations:
    """Tests for observation bookkeeping and derived statistics."""

    def test_add_creates_entry(self, db):
        """First observation creates the entry and state."""
        db.add_observation('PEPTIDEK', (), 0.3, 0.95, 1, 120.0)
        entry = db.get_entry('PEPTIDEK')
        assert 'PEPTIDEK' in db
        assert entry.num_observations == 1
        assert list(entry.modification_states) == ['PEPTIDEK']

    def test_unknown_run(self, db):
        """Observations must refer to an existing run."""
        with pytest.raises(KeyError):
            db.add_observation('PEPTIDEK', (), 0.3, 0.95, 7, 120.0)

    def test_medians_follow_add_and_remove(self, db):
        """Derived medians always equal the median of current observations."""
        np.random.seed(42)
        values = np.random.normal(0.5, 0.1, 7)
        observations = [
            db.add_observation('LLSVEGK', (), float(h), 0.9, 1, 100.0 + i)
            for i, h in enumerate(values)
        ]
        entry = db.get_entry('LLSVEGK')
        assert entry.median_observed_hydrophobicity == pytest.approx(np.median(values))

        entry.remove_observation(observations[0])
        entry.remove_observation(observations[3])
        remaining = np.delete(values, [0, 3])
        assert entry.median_observed_hydrophobicity == pytest.approx(np.median(remaining))
        assert entry.hydrophobicity_standard_deviation == pytest.approx(np.std(remaining, ddof=1))

        before = entry.median_observed_hydrophobicity
        db.recompute()
        assert entry.median_observed_hydrophobicity == before

    def test_median_peptide_prophet_is_true_median(self, db):
        """An even number of observations averages the middle two."""
        for prophet in (0.2, 0.4, 0.6, 0.9):
            db.add_observation('AVGK', (), 0.1, prophet, 1, 10.0)
        assert db.get_entry('AVGK').median_peptide_prophet == pytest.approx(0.5)

    def test_modification_states_partition_observations(self, db):
        """Different modification patterns land in different states."""
        db.add_observation('PEMCK', (0,), 0.2, 0.9, 1, 50.0)
        db.add_observation('PEMCK', (0, 1), 0.1, 0.9, 1, 45.0)
        entry = db.get_entry('PEMCK')
        assert len(entry.modification_states) == 2
        assert entry.num_observations == 2
        assert 'PEM[147.0]C[160.0]K' in entry.modification_states

    def test_removing_last_observation_drops_state(self, db):
        """Empty modification states are removed."""
        obs = db.add_observation('PEMCK', (0, 1), 0.1, 0.9, 1, 45.0)
        db.add_observation('PEMCK', (0,), 0.2, 0.9, 1, 50.0)
        entry = db.get_entry('PEMCK')
        assert entry.remove_observation(obs)
        assert list(entry.modification_states) == ['PEMC[160.0]K']

    def test_run_queries(self, db):
        """Observations, entries and time range per run."""
        db.add_run(Run())
        db.add_observation('AAAK', (), 0.1, 0.9, 1, 30.0)
        db.add_observation('GGGK', (), 0.2, 0.9, 1, 90.0)
        db.add_observation('GGGK', (), 0.2, 0.9, 2, 60.0)
        assert len(db.get_observations_for_run(1)) == 2
        assert [e.peptide_sequence for e in db.get_peptide_entries_for_run(2)] == ['GGGK']
        assert db.min_time_in_run(1) == 30.0
        assert db.max_time_in_run(1) == 90.0

    def test_id_probability(self, db):
        """At least one observation correct: 1 − Π(1 − p)."""
        db.add_observation('AAAK', (), 0.1, 0.5, 1, 30.0)
        db.add_observation('AAAK', (), 0.1, 0.8, 1, 31.0)
        assert db.get_entry('AAAK').id_probability == pytest.approx(0.9)


class TestResolveModifications:
    """Tests for resolving observed residue masses against declared modifications."""

    def test_static_applied_when_residue_present(self, db):
        """Static modifications apply without annotations."""
        assert db.resolve_modifications('PEPCK', None, 1) == (0,)
        assert db.resolve_modifications('PEPTIDEK', None, 1) == ()

    def test_variable_resolved(self, db):
        """An oxidized methionine resolves to the variable modification."""
        annotations = {
            2: ModifiedAminoAcid('M', RESIDUE_MASSES['M'] + 15.994915),
            3: ModifiedAminoAcid('C', RESIDUE_MASSES['C'] + 57.021464),
        }
        assert db.resolve_modifications('PEMCK', annotations, 1) == (0, 1)

    def test_static_only_annotation_is_not_variable(self, db):
        """A residue carrying only its static delta adds nothing more."""
        annotations = {3: ModifiedAminoAcid('C', RESIDUE_MASSES['C'] + 57.021464)}
        assert db.resolve_modifications('PEMCK', annotations, 1) == (0,)

    def test_unknown_modification_raises(self, db):
        """A delta with no declared variable modification is an error."""
        annotations = {2: ModifiedAminoAcid('M', RESIDUE_MASSES['M'] + 30.0)}
        with pytest.raises(UnresolvedModificationError) as info:
            db.resolve_modifications('PEMCK', annotations, 1)
        assert info.value.position == 2
        assert info.value.residue == 'M'

    def test_ignore_unknown(self, db, caplog):
        """ignore_unknown imports the peptide unmodified and warns."""
        annotations = {2: ModifiedAminoAcid('M', RESIDUE_MASSES['M'] + 30.0)}
        with caplog.at_level('WARNING'):
            ids = db.resolve_modifications('PEMCK', annotations, 1, ignore_unknown=True)
        assert ids == ()
        assert 'Unknown modification' in caplog.text

    def test_ambiguous_sequence_skipped(self, db):
        """Ambiguous residues are never added."""
        assert db.resolve_modifications_and_add_observation('PEPXK', None, 0.1, 0.9, 1, 10.0) is None
        assert db.num_entries == 0

    def test_resolve_and_add(self, db):
        """Resolution feeds the observation's modification state."""
        annotations = {2: ModifiedAminoAcid('M', RESIDUE_MASSES['M'] + 15.994915)}
        db.resolve_modifications_and_add_observation('PEMCK', annotations, 0.1, 0.9, 1, 10.0)
        state = next(iter(db.get_entry('PEMCK').modification_states.values()))
        assert state.modification_ids == (0, 1)


class TestMerging:
    """Tests for folding one database into another."""

    @pytest.fixture
    def other(self):
        """Database whose modification ids are ordered differently."""
        database = AmtDatabase()
        database.add_run(Run(modifications=(PHOSPHO, CARBAMIDOMETHYL), pepxml_filename='other.pep.xml'))
        database.add_observation('PEPCSK', (0, 1), 0.4, 0.9, 1, 80.0)
        database.add_observation('LLSVEGK', (), 0.7, 0.8, 1, 110.0)
        return database

    def test_merge_remaps_modification_ids(self, db, other):
        """Merged states refer to the same modifications under new ids."""
        db.add_observations_from_database(other)
        assert db.num_runs == 2
        assert len(db.modifications) == 3
        state = next(iter(db.get_entry('PEPCSK').modification_states.values()))
        residues = {m.residue for m in db.modifications_for(state.modification_ids)}
        assert residues == {'C', 'S'}
        assert state.observations[0].run_id == 2

    def test_merge_unions_observations(self, db, other):
        """Existing entries gain the other database's observations."""
        db.add_observation('LLSVEGK', (), 0.5, 0.9, 1, 100.0)
        db.add_observations_from_database(other)
        entry = db.get_entry('LLSVEGK')
        assert entry.num_observations == 2
        assert entry.median_observed_hydrophobicity == pytest.approx(0.6)

    def test_override_replaces_entries(self, db, other):
        """Overriding replaces an existing entry outright."""
        db.add_observation('LLSVEGK', (), 0.5, 0.9, 1, 100.0)
        db.add_or_override_entries_with_database(other)
        entry = db.get_entry('LLSVEGK')
        assert entry.num_observations == 1
        assert entry.median_observed_hydrophobicity == pytest.approx(0.7)

    def test_merge_leaves_source_untouched(self, db, other):
        """The folded database keeps its own ids."""
        db.add_observations_from_database(other)
        state = next(iter(other.get_entry('PEPCSK').modification_states.values()))
        assert state.modification_ids == (0, 1)
        assert state.observations[0].run_id == 1

    def test_add_run_from_database(self, other):
        """Only the chosen run's observations are copied."""
        other.add_run(Run(modifications=(CARBAMIDOMETHYL,)))
        other.add_observation('LLSVEGK', (), 0.9, 0.8, 2, 140.0)
        other.add_observation('AAAK', (), 0.0, 0.8, 2, 20.0)

        target = AmtDatabase()
        sequence = target.add_run_from_database(other, 2)
        assert sequence == 1
        assert target.num_runs == 1
        assert sorted(e.peptide_sequence for e in target.entries) == ['AAAK', 'LLSVEGK']
        assert target.get_entry('LLSVEGK').num_observations == 1
        assert target.get_entry('LLSVEGK').observations[0].run_id == 1

    def test_unmapped_modification_id_rejected(self, db, other):
        """A merge map missing one of an entry's modification ids is an error."""
        entry = other.get_entry('PEPCSK')
        with pytest.raises(ValueError, match="modification ids \\[1\\]"):
            db.add_observations_from_entry(entry, modification_map={0: 1}, run_map={1: 1})
        assert 'PEPCSK' not in db

    def test_unmapped_run_id_rejected(self, db, other):
        """A merge map missing an observation's run is an error."""
        entry = other.get_entry('LLSVEGK')
        with pytest.raises(ValueError, match="run ids \\[1\\]"):
            db.add_observations_from_entry(entry, modification_map={}, run_map={2: 1})


class TestCuration:
    """Tests for outlier removal."""

    def test_predicted_outliers(self, db):
        """Single observations far from prediction are removed."""
        db.add_observation('LLSVEGK', (), 5.0, 0.9, 1, 100.0)
        db.add_observation('AAAK', (), 5.0, 0.9, 1, 20.0)
        db.add_observation('AAAK', (), 5.1, 0.9, 1, 21.0)
        removed = remove_predicted_hydrophobicity_outliers(db, significant_difference=0.4)
        assert removed == 1
        assert 'LLSVEGK' not in db
        assert 'AAAK' in db

    def test_observation_outliers(self, db):
        """Observations beyond the std multiple are removed."""
        values = [0.50, 0.51, 0.49, 0.50, 0.52, 0.48, 0.50, 0.51, 0.49, 0.50, 3.0]
        for i, h in enumerate(values):
            db.add_observation('LLSVEGK', (), h, 0.9, 1, 100.0 + i)
        removed = remove_hydrophobicity_outliers(db, std_multiple=2.0)
        assert [o.observed_hydrophobicity for o in removed] == [3.0]
        assert db.get_entry('LLSVEGK').num_observations == len(values) - 1

    def test_summary(self, db):
        """Summary counts entries, runs and observations."""
        db.add_observation('AAAK', (), 0.1, 0.9, 1, 20.0)
        db.add_observation('AAAK', (), 0.2, 0.9, 1, 21.0)
        summary = db.summary()
        assert summary['num_entries'] == 1
        assert summary['num_runs'] == 1
        assert summary['num_observations'] == 2
