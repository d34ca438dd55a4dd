"""Shared fixtures: synthetic peptides, databases and LC-MS runs."""

import numpy as np
import pytest

from amt_match.chemistry import peptide_mass
from amt_match.database import AmtDatabase, Run
from amt_match.features import Feature

RESIDUES = list('ADEFGHIKLNPQTVWY')


def make_peptides(n, seed=7):
    """Distinct tryptic-looking peptides with well separated masses."""
    rng = np.random.default_rng(seed)
    peptides = []
    masses = []
    while len(peptides) < n:
        length = int(rng.integers(7, 15))
        sequence = ''.join(rng.choice(RESIDUES, size=length)) + str(rng.choice(['K', 'R']))
        mass = peptide_mass(sequence)
        # Keep masses at least 20 ppm apart so mass-only matches are unique
        if any(abs(mass - m) / m < 20e-6 for m in masses):
            continue
        peptides.append(sequence)
        masses.append(mass)
    return peptides


@pytest.fixture
def peptides():
    """300 distinct peptides."""
    return make_peptides(300)


@pytest.fixture
def reference_db(peptides):
    """One run whose observed H is linear in time: H = 0.01·t − 2."""
    np.random.seed(42)
    db = AmtDatabase()
    db.add_run(Run(time_hyd_map_coefficients=[-2.0, 0.01], pepxml_filename='reference.pep.xml'))
    for sequence in peptides:
        h = float(np.random.uniform(-1.5, 1.5))
        db.add_observation(sequence, (), h, 0.95, 1, (h + 2.0) / 0.01)
    return db


@pytest.fixture
def ms1_features(reference_db):
    """An LC-MS run of the reference peptides on a different gradient: H = 0.012·t − 1.8.

    Masses carry ~1 ppm error and H ~0.01 noise; 60 unidentifiable features
    are mixed in.
    """
    np.random.seed(43)
    features = []
    for entry in reference_db.entries:
        mass = peptide_mass(entry.peptide_sequence) * (1 + np.random.normal(0, 1e-6))
        h = entry.median_observed_hydrophobicity + np.random.normal(0, 0.01)
        features.append(Feature(mass=mass, time=(h + 1.8) / 0.012, charge=2, intensity=1e5))
    for _ in range(60):
        features.append(Feature(
            mass=float(np.random.uniform(3000, 4000)),
            time=float(np.random.uniform(10, 300)),
            charge=2,
            intensity=1e4,
        ))
    return features
