"""
Target/decoy split validation.

A random portion of the database's own peptides is turned into decoys by
shifting their features' masses, and the full matching pipeline is run
against the mixed database. Ranking accepted matches by assigned probability
gives an empirical FDR, ratio × #decoy / #target, at every rank, to compare
with the FDR estimated by EM. Diagnostic only.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd

from .chemistry import AminoAcidModification
from .database import AmtDatabase
from .features import AmtFeatureGenerator, Feature
from .pipeline import AmtDatabaseMatcher, AmtMatchResult

logger = logging.getLogger(__name__)

DEFAULT_DECOY_FRACTION = 0.5


@dataclass
class DecoySplitValidationResult:
    table: pd.DataFrame           # one row per accepted match, best probability first
    decoy_peptides: set[str]
    match_result: AmtMatchResult

    @property
    def num_decoy_matches(self) -> int:
        return int(self.table['is_decoy'].sum()) if len(self.table) else 0

    @property
    def num_target_matches(self) -> int:
        return len(self.table) - self.num_decoy_matches

    def fdr_at_probability(self, min_probability: float) -> float:
        """Empirical FDR of the matches with probability >= ``min_probability``."""
        above = self.table[self.table['probability'] >= min_probability]
        if above.empty:
            return 0.0
        return float(above['empirical_fdr'].iloc[-1])


def select_decoy_peptides(
    db: AmtDatabase,
    decoy_fraction: float = DEFAULT_DECOY_FRACTION,
    seed: int | None = None,
) -> set[str]:
    if not 0 < decoy_fraction < 1:
        raise ValueError(f"decoy_fraction must be in (0, 1), got {decoy_fraction}")
    peptides = sorted(e.peptide_sequence for e in db.entries)
    rng = np.random.default_rng(seed)
    n_decoy = int(round(decoy_fraction * len(peptides)))
    chosen = rng.choice(len(peptides), size=n_decoy, replace=False)
    return {peptides[i] for i in chosen}


def decoy_rank_table(
    features: list[Feature],
    decoy_peptides: set[str],
    target_decoy_ratio: float = 1.0,
) -> pd.DataFrame:
    """Empirical and expected FDR down the matches ranked by AMT match probability.

    Features without a match probability rank last with probability 0.
    """
    probabilities = np.array([f.match_probability or 0.0 for f in features], dtype=float)
    order = np.argsort(-probabilities, kind='stable')
    ranked = [features[i] for i in order]
    probabilities = probabilities[order]
    is_decoy = np.array([f.peptide in decoy_peptides for f in ranked], dtype=bool)
    num_decoy = np.cumsum(is_decoy)
    num_target = np.cumsum(~is_decoy)
    empirical = np.where(
        num_target > 0, target_decoy_ratio * num_decoy / np.maximum(num_target, 1), 1.0
    )
    expected = np.cumsum(1.0 - probabilities) / np.arange(1, len(ranked) + 1)
    return pd.DataFrame({
        'rank': np.arange(1, len(ranked) + 1),
        'peptide': [f.peptide for f in ranked],
        'probability': probabilities,
        'peptide_prophet': [f.peptide_prophet for f in ranked],
        'is_decoy': is_decoy,
        'empirical_fdr': empirical,
        'em_fdr': [f.match_fdr for f in ranked],
        'expected_fdr': expected,
    })


def match_with_decoy_split(
    db: AmtDatabase,
    ms1_features: list[Feature],
    modifications: list[AminoAcidModification],
    matcher: AmtDatabaseMatcher | None = None,
    decoy_fraction: float = DEFAULT_DECOY_FRACTION,
    seed: int | None = None,
    embedded_ms2: list[Feature] | None = None,
    target_decoy_ratio: float = 1.0,
) -> DecoySplitValidationResult:
    """Run the pipeline against a database with a random portion of decoy peptides.

    Database reduction is disabled for the validation run since it would
    rebuild features without the decoy shift.
    """
    matcher = matcher or AmtDatabaseMatcher()
    if matcher.params.reduce_database:
        logger.info("Database reduction is disabled for decoy-split validation")
        matcher = AmtDatabaseMatcher(
            dataclasses.replace(matcher.params, reduce_database=False),
            matcher.probability_params,
            matcher.service,
        )

    decoy_peptides = select_decoy_peptides(db, decoy_fraction, seed)
    offset = matcher.params.decoy_mass_offset
    amt_features = [
        f.copy(mass=f.mass + offset) if f.peptide in decoy_peptides else f
        for f in AmtFeatureGenerator(db).create_features(modifications)
    ]
    logger.info(f"Decoy split: {len(decoy_peptides)} of {db.num_entries} peptides shifted by {offset} Da")

    result = matcher.match_against_ms1(db, ms1_features, modifications, embedded_ms2, amt_features)
    table = decoy_rank_table(result.matched_features, decoy_peptides, target_decoy_ratio)
    validation = DecoySplitValidationResult(table, decoy_peptides, result)
    logger.info(f"Decoy split: {validation.num_target_matches} target, "
                f"{validation.num_decoy_matches} decoy matches accepted")
    return validation
