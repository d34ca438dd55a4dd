"""Tests for features module."""

import pytest

from amt_match.chemistry import AminoAcidModification, peptide_mass
from amt_match.database import AmtDatabase, Run
from amt_match.features import (
    AmtFeatureGenerator,
    Feature,
    all_times_zero,
    create_decoy_features,
    filter_by_peptide_prophet,
    represent_peptides_with_median_time,
)

CARBAMIDOMETHYL = AminoAcidModification('C', 57.021464)
OXIDATION = AminoAcidModification('M', 15.994915, variable=True)
PHOSPHO = AminoAcidModification('S', 79.966331, variable=True)
DEAMIDATION = AminoAcidModification('N', 0.984016, variable=True)


@pytest.fixture
def db():
    """Database with two observed peptides in two runs."""
    database = AmtDatabase()
    database.add_run(Run(modifications=(CARBAMIDOMETHYL, OXIDATION, PHOSPHO)))
    database.add_run(Run(modifications=(CARBAMIDOMETHYL,)))
    database.add_observation('PEMSMCK', (), 0.40, 0.9, 1, 150.0)
    database.add_observation('PEMSMCK', (), 0.50, 0.8, 2, 160.0)
    database.add_observation('LLSVEGK', (), 0.20, 0.9, 1, 120.0)
    return database


class TestFeatureGeneration:
    """Tests for expanding entries into modified-mass features."""

    def test_two_to_the_k_variants(self, db):
        """Two relevant variable modifications give four features."""
        generator = AmtFeatureGenerator(db)
        entry = db.get_entry('PEMSMCK')
        features = generator.features_for_entry(entry, [CARBAMIDOMETHYL, OXIDATION, PHOSPHO])
        assert len(features) == 4
        assert len({round(f.mass, 6) for f in features}) == 4

    def test_variant_masses(self, db):
        """Static deltas always apply; variable deltas apply to every occurrence."""
        generator = AmtFeatureGenerator(db)
        entry = db.get_entry('PEMSMCK')
        features = generator.features_for_entry(entry, [CARBAMIDOMETHYL, OXIDATION, PHOSPHO])
        base = peptide_mass('PEMSMCK') + CARBAMIDOMETHYL.mass_diff
        expected = sorted([
            base,
            base + 2 * OXIDATION.mass_diff,
            base + PHOSPHO.mass_diff,
            base + 2 * OXIDATION.mass_diff + PHOSPHO.mass_diff,
        ])
        assert sorted(f.mass for f in features) == pytest.approx(expected)

    def test_irrelevant_variable_ignored(self, db):
        """Modifications on residues absent from the peptide do not multiply features."""
        generator = AmtFeatureGenerator(db)
        entry = db.get_entry('PEMSMCK')
        features = generator.features_for_entry(
            entry, [CARBAMIDOMETHYL, OXIDATION, PHOSPHO, DEAMIDATION]
        )
        assert len(features) == 4

    def test_annotations_and_scan(self, db):
        """Features carry peptide, median H and a scan derived from H."""
        generator = AmtFeatureGenerator(db)
        entry = db.get_entry('LLSVEGK')
        (feature,) = generator.features_for_entry(entry, [CARBAMIDOMETHYL])
        assert feature.peptide == 'LLSVEGK'
        assert feature.observed_hydrophobicity == pytest.approx(0.20)
        assert feature.scan == int(1000 * 0.20 + 2000)
        assert feature.modified_amino_acids == {}

    def test_create_features(self, db):
        """Every entry contributes its variants."""
        features = AmtFeatureGenerator(db).create_features([CARBAMIDOMETHYL, OXIDATION, PHOSPHO])
        # PEMSMCK: 4 variants, LLSVEGK: 2 (phospho S)
        assert len(features) == 6
        pemsmck = [f for f in features if f.peptide == 'PEMSMCK']
        assert all(f.observed_hydrophobicity == pytest.approx(0.45) for f in pemsmck)

    def test_create_features_for_run(self, db):
        """Run features use that run's observed H and time."""
        features = AmtFeatureGenerator(db).create_features_for_run(2, [CARBAMIDOMETHYL])
        assert len(features) == 1
        assert features[0].observed_hydrophobicity == pytest.approx(0.50)
        assert features[0].time == pytest.approx(160.0)


class TestDecoys:
    """Tests for decoy feature creation."""

    def test_offset_and_flag(self):
        """Decoys are shifted copies marked as decoys."""
        features = [Feature(mass=1000.0, peptide='AAAK'), Feature(mass=1500.0, peptide='GGGK')]
        decoys = create_decoy_features(features)
        assert [d.mass for d in decoys] == [1011.0, 1511.0]
        assert all(d.is_decoy for d in decoys)
        assert [f.mass for f in features] == [1000.0, 1500.0]
        assert not any(f.is_decoy for f in features)

    def test_custom_offset(self):
        """The shift is configurable."""
        (decoy,) = create_decoy_features([Feature(mass=1000.0)], offset=-7.5)
        assert decoy.mass == pytest.approx(992.5)


class TestFeatureHelpers:
    """Tests for filtering and median-time representatives."""

    def test_identity_semantics(self):
        """Equal-valued features are distinct keys."""
        a = Feature(mass=1000.0)
        b = Feature(mass=1000.0)
        assert a != b
        assert len({a, b}) == 2

    def test_median_time_representative(self):
        """One feature per peptide, at the median time."""
        features = [
            Feature(mass=500.0, time=10.0, peptide='AAAK'),
            Feature(mass=500.0, time=60.0, peptide='AAAK'),
            Feature(mass=500.0, time=20.0, peptide='AAAK'),
            Feature(mass=600.0, time=40.0, peptide='GGGK'),
            Feature(mass=700.0, time=50.0),
        ]
        representatives = represent_peptides_with_median_time(features)
        by_peptide = {f.peptide: f for f in representatives}
        assert sorted(by_peptide) == ['AAAK', 'GGGK']
        assert by_peptide['AAAK'].time == pytest.approx(20.0)
        assert features[0].time == 10.0

    def test_filter_by_peptide_prophet(self):
        """Only identified features at or above the cutoff are kept."""
        features = [
            Feature(mass=500.0, peptide='AAAK', peptide_prophet=0.95),
            Feature(mass=500.0, peptide='AAAK', peptide_prophet=0.5),
            Feature(mass=500.0, peptide_prophet=0.99),
        ]
        assert filter_by_peptide_prophet(features, 0.9) == [features[0]]

    def test_all_times_zero(self):
        """Detects feature sets without elution times."""
        assert all_times_zero([Feature(mass=1.0), Feature(mass=2.0)])
        assert not all_times_zero([Feature(mass=1.0), Feature(mass=2.0, time=3.0)])
