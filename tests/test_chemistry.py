"""Tests for chemistry module."""

import pytest

from amt_match.chemistry import (
    H2O_MASS,
    RESIDUE_MASSES,
    AminoAcidModification,
    format_modified_sequence,
    is_unambiguous,
    modifications_from_config,
    modified_amino_acids_for,
    parse_modification,
    peptide_mass,
    position_mass_diffs,
    predict_hydrophobicity,
)


class TestModificationEquivalence:
    """Tests for AminoAcidModification.is_equivalent."""

    def test_close_masses_are_equivalent(self):
        """Deltas well inside the tolerance are the same modification."""
        a = AminoAcidModification('C', 57.021464)
        b = AminoAcidModification('C', 57.02)
        assert a.is_equivalent(b)

    def test_tolerance_is_strict(self):
        """A difference exactly equal to the tolerance is not equivalent."""
        a = AminoAcidModification('M', 0.5, variable=True)
        assert a.is_equivalent(AminoAcidModification('M', 0.6, variable=True), tolerance=0.125)
        assert not a.is_equivalent(AminoAcidModification('M', 0.625, variable=True), tolerance=0.125)

    def test_default_tolerance(self):
        """Half a dalton apart is a different modification."""
        a = AminoAcidModification('S', 79.966331, variable=True)
        b = AminoAcidModification('S', 80.47, variable=True)
        assert not a.is_equivalent(b)

    def test_symmetric_and_reflexive(self):
        """Equivalence holds both ways and with itself."""
        a = AminoAcidModification('C', 57.021464)
        b = AminoAcidModification('c', 57.05)
        assert a.is_equivalent(a)
        assert a.is_equivalent(b)
        assert b.is_equivalent(a)

    def test_variable_flag_must_match(self):
        """A static and a variable modification are never equivalent."""
        a = AminoAcidModification('M', 15.994915, variable=True)
        b = AminoAcidModification('M', 15.994915, variable=False)
        assert not a.is_equivalent(b)

    def test_residue_must_match(self):
        """Same mass on different residues is not equivalent."""
        a = AminoAcidModification('S', 79.966331, variable=True)
        b = AminoAcidModification('T', 79.966331, variable=True)
        assert not a.is_equivalent(b)


class TestParseModification:
    """Tests for parse_modification and modifications_from_config."""

    def test_static(self):
        """Without a suffix the modification is static."""
        mod = parse_modification('C57.021464')
        assert mod.residue == 'C'
        assert mod.mass_diff == pytest.approx(57.021464)
        assert not mod.variable

    def test_variable(self):
        """A trailing V marks a variable modification."""
        mod = parse_modification('m15.994915V')
        assert mod.residue == 'M'
        assert mod.variable

    def test_negative_delta(self):
        """Signed deltas are accepted."""
        mod = parse_modification('Q-17.026549V')
        assert mod.mass_diff == pytest.approx(-17.026549)

    def test_invalid(self):
        """Garbage input raises ValueError."""
        with pytest.raises(ValueError, match="Cannot parse"):
            parse_modification('carbamidomethyl')

    def test_from_config_mixed(self):
        """Config entries may be compact strings or dicts."""
        mods = modifications_from_config([
            'C57.021464',
            {'residue': 'm', 'mass_diff': 15.994915, 'variable': True},
        ])
        assert [m.residue for m in mods] == ['C', 'M']
        assert [m.variable for m in mods] == [False, True]

    def test_from_config_empty(self):
        """No entries gives no modifications."""
        assert modifications_from_config(None) == []


class TestPeptideMass:
    """Tests for peptide masses and ambiguity."""

    def test_single_residue(self):
        """Mass is the residue sum plus water."""
        assert peptide_mass('G') == pytest.approx(RESIDUE_MASSES['G'] + H2O_MASS)

    def test_case_insensitive(self):
        """Lowercase sequences give the same mass."""
        assert peptide_mass('peptide') == pytest.approx(peptide_mass('PEPTIDE'))

    def test_known_peptide(self):
        """PEPTIDE has a well-known monoisotopic mass."""
        assert peptide_mass('PEPTIDE') == pytest.approx(799.359964, abs=1e-4)

    def test_unknown_residue(self):
        """Residues outside the table raise ValueError."""
        with pytest.raises(ValueError, match="Unknown residue"):
            peptide_mass('PEPXIDE')

    def test_ambiguity(self):
        """X, B, Z and J make a sequence ambiguous."""
        assert is_unambiguous('PEPTIDE')
        for residue in 'XBZJ':
            assert not is_unambiguous(f'PEP{residue}K')


class TestModifiedSequence:
    """Tests for modified-sequence formatting."""

    def test_unmodified(self):
        """No deltas gives the plain sequence."""
        assert format_modified_sequence('PEPTIDE', {}) == 'PEPTIDE'

    def test_modified_residue(self):
        """Modified residues carry their rounded total mass."""
        assert format_modified_sequence('PEPCK', {3: 57.021464}) == 'PEPC[160.0]K'

    def test_position_mass_diffs_every_occurrence(self):
        """A modification applies to every occurrence of its residue."""
        mods = [AminoAcidModification('C', 57.021464)]
        diffs = position_mass_diffs('CACAC', mods)
        assert sorted(diffs) == [0, 2, 4]
        assert all(d == pytest.approx(57.021464) for d in diffs.values())

    def test_modified_amino_acids_for(self):
        """Annotations hold the modified residue mass."""
        mods = [AminoAcidModification('M', 15.994915, variable=True)]
        annotations = modified_amino_acids_for('PEMK', mods)
        assert list(annotations) == [2]
        assert annotations[2].residue == 'M'
        assert annotations[2].mass == pytest.approx(RESIDUE_MASSES['M'] + 15.994915)


class TestPredictHydrophobicity:
    """Tests for predicted hydrophobicity."""

    def test_hydrophobic_peptide_is_higher(self):
        """Hydrophobic residues raise predicted H."""
        assert predict_hydrophobicity('LLFFWWLLIK') > predict_hydrophobicity('GGSSKKDDEK')

    def test_deterministic(self):
        """The same sequence always predicts the same value."""
        assert predict_hydrophobicity('VATVSLPR') == predict_hydrophobicity('VATVSLPR')

    def test_unknown_residue(self):
        """Ambiguous residues cannot be predicted."""
        with pytest.raises(ValueError):
            predict_hydrophobicity('PEPXK')
