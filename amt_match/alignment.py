"""
Time → hydrophobicity mapping, multi-run alignment and database reduction.

Mapping a run's elution times onto the database's normalized hydrophobicity
scale starts from pairs of (feature time, database hydrophobicity):
- with embedded MS/MS identifications, same-peptide mass matches
- otherwise, every mass-only match; the scatter is dominated by false matches
  and the true ones form a dense band that modal regression tracks

Pairs are pruned by leverage and studentized residual before fitting.

Database reduction builds a smaller database from the runs most similar to
the run being matched, ranked by peptide overlap or mass-match overlap and
added greedily until an entry or run ceiling is reached. Reduction by run
similarity instead drops the entries that no similar run observed and leaves
the rest of the database whole.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from .chemistry import AminoAcidModification
from .database import AmtDatabase
from .exceptions import DegenerateInputError, InsufficientDataError
from .features import AmtFeatureGenerator, Feature
from .matching import DELTA_MASS_TYPE_PPM, FeatureMatchingResult, MassOnlyMatcher
from .regression import (
    DEFAULT_LEVERAGE_NUMERATOR,
    DEFAULT_MAX_STUDENTIZED_RESIDUAL,
    RegressionService,
    map_value_using_coefficients,
    select_low_leverage_and_studentized_residual,
)

logger = logging.getLogger(__name__)

# Fewer matched pairs than this cannot support a mapping
MIN_MATCHED_FEATURES_FOR_REGRESSION = 8

DEFAULT_MASS_MATCH_DELTA_PPM = 5.0
DEFAULT_MIN_MATCHED_PEPTIDES_FOR_ALIGNMENT = 30

# Sliding window (in runs) of the change-point search during reduction
RUN_SIMILARITY_WINDOW = 10


# ============================================================================
# Time → hydrophobicity mapping
# ============================================================================

class TimeHydrophobicityMapper:
    """Derive and apply per-run time → hydrophobicity polynomials.

    Args:
        service: Regression service used for the fits
        degree: Polynomial degree of the mapping
        leverage_numerator: Points with leverage >= numerator / n are pruned
        max_studentized_residual: Points beyond this |studentized residual| are pruned
        mass_match_delta: Tolerance of the mass-only pre-match
        mass_match_delta_type: 'ppm' or 'da'
    """

    def __init__(
        self,
        service: RegressionService | None = None,
        degree: int = 1,
        leverage_numerator: float = DEFAULT_LEVERAGE_NUMERATOR,
        max_studentized_residual: float = DEFAULT_MAX_STUDENTIZED_RESIDUAL,
        mass_match_delta: float = DEFAULT_MASS_MATCH_DELTA_PPM,
        mass_match_delta_type: str = DELTA_MASS_TYPE_PPM,
    ):
        if degree < 1:
            raise ValueError(f"Mapping degree must be >= 1, got {degree}")
        self.service = service or RegressionService()
        self.degree = degree
        self.leverage_numerator = leverage_numerator
        self.max_studentized_residual = max_studentized_residual
        self.mass_match_delta = mass_match_delta
        self.mass_match_delta_type = mass_match_delta_type
        self.last_coefficients: np.ndarray | None = None

    def fit_time_to_hydrophobicity(self, times, hydrophobicities, degree: int | None = None) -> np.ndarray:
        """Prune, then fit H as a polynomial in time.

        Modal regression is used when enough points survive pruning. Below that,
        a degree-1 request falls back to robust linear regression; higher degrees
        raise InsufficientDataError.

        Returns:
            Coefficients [c0, c1, ..., c_degree]
        """
        degree = degree or self.degree
        times = np.asarray(times, dtype=float)
        hydrophobicities = np.asarray(hydrophobicities, dtype=float)
        n = len(times)
        if n < MIN_MATCHED_FEATURES_FOR_REGRESSION:
            raise InsufficientDataError(
                f"Insufficient matched features ({n}) to build a time→hydrophobicity map; "
                f"widen the mass tolerance or check the modification list",
                n_available=n, n_required=MIN_MATCHED_FEATURES_FOR_REGRESSION,
            )
        if not np.any(times > 0):
            raise DegenerateInputError(
                "Feature retention times are all zero; populate feature times before matching"
            )

        kept = select_low_leverage_and_studentized_residual(
            times, hydrophobicities,
            leverage_numerator=self.leverage_numerator,
            max_studentized_residual=self.max_studentized_residual,
        )
        logger.info(f"Using {len(kept)} of {n} matched features for time→hydrophobicity regression")

        x, y = times[kept], hydrophobicities[kept]
        if len(kept) >= self.service.modal_min_points:
            coefficients = self.service.modal_regression(x, y, degree)
        elif degree == 1:
            logger.info(f"Only {len(kept)} points after pruning "
                        f"(< {self.service.modal_min_points}); using robust linear regression")
            coefficients = np.array(self.service.robust_regression(x, y))
        else:
            raise InsufficientDataError(
                f"Degree-{degree} mapping needs {self.service.modal_min_points} points "
                f"after pruning, got {len(kept)}",
                n_available=len(kept), n_required=self.service.modal_min_points,
            )

        for power, coef in enumerate(coefficients):
            logger.debug(f"\tDegree {power}: {coef}")
        self.last_coefficients = np.asarray(coefficients, dtype=float)
        return self.last_coefficients

    def coefficients_with_matched_features(
        self,
        pairs: list[tuple[Feature, Feature]],
        degree: int | None = None,
    ) -> np.ndarray:
        """Map from (feature with time, database feature with H) pairs."""
        times = [feature.time for feature, _ in pairs]
        hydrophobicities = [amt.observed_hydrophobicity for _, amt in pairs]
        return self.fit_time_to_hydrophobicity(times, hydrophobicities, degree)

    def mass_matched_pairs(
        self,
        amt_features: list[Feature],
        features: list[Feature],
        only_same_peptide: bool = False,
    ) -> list[tuple[Feature, Feature]]:
        """Mass-only match ``features`` against the database features.

        With ``only_same_peptide`` only pairs whose peptides agree are kept,
        one per peptide, earliest scan first.
        """
        matcher = MassOnlyMatcher(self.mass_match_delta, self.mass_match_delta_type)
        pairs = matcher.match(features, amt_features).pairs()
        logger.debug(f"Mass-only matching: {len(pairs)} pairs from {len(features)} features "
                     f"against {len(amt_features)} database features")
        if not only_same_peptide:
            return pairs

        restricted = []
        seen = set()
        for feature, amt in sorted(pairs, key=lambda p: p[0].scan):
            if feature.peptide is None or feature.peptide != amt.peptide or feature.peptide in seen:
                continue
            seen.add(feature.peptide)
            restricted.append((feature, amt))
        logger.debug(f"Restricted to {len(restricted)} same-peptide matches")
        return restricted

    def coefficients_with_mass_matching(
        self,
        amt_features: list[Feature],
        features: list[Feature],
        degree: int | None = None,
        only_same_peptide: bool = False,
    ) -> np.ndarray:
        if not features:
            raise DegenerateInputError("No features to map")
        pairs = self.mass_matched_pairs(amt_features, features, only_same_peptide)
        return self.coefficients_with_matched_features(pairs, degree)

    def calculate_feature_hydrophobicities(
        self,
        ms1_features: list[Feature],
        guide_features: list[Feature] | None,
        amt_features: list[Feature],
        degree: int | None = None,
    ) -> np.ndarray:
        """Derive the run's mapping and write observed H onto every MS1 feature.

        Args:
            ms1_features: Features of the run being matched
            guide_features: Identified features for same-peptide alignment, or None
                to align by mass-only matching of the MS1 features
            amt_features: Database features carrying hydrophobicity

        Returns:
            The mapping coefficients
        """
        if guide_features is None:
            logger.debug(f"Mapping time to hydrophobicity by mass-only matching "
                         f"({self.mass_match_delta} {self.mass_match_delta_type})")
            coefficients = self.coefficients_with_mass_matching(amt_features, ms1_features, degree)
        else:
            coefficients = self.coefficients_with_mass_matching(
                amt_features, guide_features, degree, only_same_peptide=True
            )
        apply_time_to_hydrophobicity(ms1_features, coefficients)
        return coefficients


def apply_time_to_hydrophobicity(features: list[Feature], coefficients) -> None:
    for feature in features:
        feature.observed_hydrophobicity = map_value_using_coefficients(coefficients, feature.time)


# ============================================================================
# Multi-run alignment
# ============================================================================

def _peptides_by_run(db: AmtDatabase) -> dict[int, set[str]]:
    return {
        run.sequence: {e.peptide_sequence for e in db.get_peptide_entries_for_run(run.sequence)}
        for run in db.runs
    }


def align_run(db: AmtDatabase, run_id: int, coefficients) -> None:
    """Set a run's mapping and recompute the observed H of its observations."""
    run = db.get_run_by_sequence(run_id)
    run.time_hyd_map_coefficients = [float(c) for c in coefficients]
    for entry in db.get_peptide_entries_for_run(run_id):
        for obs in entry.observations:
            if obs.run_id == run_id:
                obs.observed_hydrophobicity = run.convert_time_to_hydrophobicity(obs.time_in_run)
        entry.recompute()


def _align_and_add_run(
    source: AmtDatabase,
    aligned: AmtDatabase,
    run_id: int,
    common_peptides: set[str],
    mapper: TimeHydrophobicityMapper,
    degree: int,
) -> int:
    times = []
    hydrophobicities = []
    for peptide in sorted(common_peptides):
        obs = source.get_entry(peptide).observation_for_run(run_id)
        times.append(obs.time_in_run)
        hydrophobicities.append(aligned.get_entry(peptide).median_observed_hydrophobicity)
    coefficients = mapper.fit_time_to_hydrophobicity(times, hydrophobicities, degree)
    new_id = aligned.add_run_from_database(source, run_id)
    align_run(aligned, new_id, coefficients)
    logger.info(f"Aligned run {run_id} on {len(common_peptides)} common peptides: "
                f"{aligned.get_run_by_sequence(new_id)}")
    return new_id


def align_all_runs_using_common_peptides(
    db: AmtDatabase,
    min_matched_peptides: int = DEFAULT_MIN_MATCHED_PEPTIDES_FOR_ALIGNMENT,
    degree: int = 1,
    mapper: TimeHydrophobicityMapper | None = None,
) -> AmtDatabase:
    """Rebuild a database with every run's H mapped onto a common scale.

    The two runs sharing the most peptides seed the new database: the first
    keeps its mapping and the second is fit against it. Remaining runs are
    added greedily by overlap with the peptides already present, each fit
    against the current database medians. Runs sharing fewer than
    ``min_matched_peptides`` peptides are left out.

    Returns:
        A new, aligned database
    """
    mapper = mapper or TimeHydrophobicityMapper(degree=degree)
    peptides = _peptides_by_run(db)
    run_ids = list(peptides)
    if len(run_ids) < 2:
        logger.info("Fewer than two runs; nothing to align")
        return db.copy()

    best_pair = None
    best_overlap = -1
    for i, first in enumerate(run_ids):
        for second in run_ids[i + 1:]:
            overlap = len(peptides[first] & peptides[second])
            if overlap > best_overlap:
                best_pair, best_overlap = (first, second), overlap
    if best_overlap < min_matched_peptides:
        raise InsufficientDataError(
            f"Closest pair of runs shares only {best_overlap} peptides; "
            f"at least {min_matched_peptides} are needed for alignment",
            n_available=best_overlap, n_required=min_matched_peptides,
        )

    base, second = best_pair
    aligned = AmtDatabase()
    aligned.add_run_from_database(db, base)
    added_peptides = set(peptides[base])
    logger.info(f"Aligning to run {base} ({len(added_peptides)} peptides)")

    _align_and_add_run(db, aligned, second, peptides[second] & added_peptides, mapper, degree)
    added_peptides |= peptides[second]
    remaining = [r for r in run_ids if r not in best_pair]

    while remaining:
        overlaps = {r: len(peptides[r] & added_peptides) for r in remaining}
        next_run = max(remaining, key=lambda r: overlaps[r])
        if overlaps[next_run] < min_matched_peptides:
            logger.warning(f"{len(remaining)} runs share fewer than {min_matched_peptides} "
                           f"peptides with the aligned database and were left out")
            break
        _align_and_add_run(db, aligned, next_run, peptides[next_run] & added_peptides, mapper, degree)
        added_peptides |= peptides[next_run]
        remaining.remove(next_run)

    return aligned


# ============================================================================
# Run statistics and database reduction
# ============================================================================

def peptide_overlap_percent(db: AmtDatabase, run_id: int, peptides: set[str]) -> float:
    """Percent of a run's peptides that are in ``peptides``."""
    run_peptides = {e.peptide_sequence for e in db.get_peptide_entries_for_run(run_id)}
    if not run_peptides:
        return 0.0
    return 100.0 * len(run_peptides & peptides) / len(run_peptides)


def mass_match_percent(
    db: AmtDatabase,
    run_id: int,
    ms1_features: list[Feature],
    modifications: list[AminoAcidModification],
    delta_mass: float = DEFAULT_MASS_MATCH_DELTA_PPM,
    delta_mass_type: str = DELTA_MASS_TYPE_PPM,
) -> float:
    """Percent of a run's database features with a mass-only match among the MS1 features."""
    run_features = AmtFeatureGenerator(db).create_features_for_run(run_id, modifications)
    if not run_features:
        return 0.0
    result = MassOnlyMatcher(delta_mass, delta_mass_type).match(run_features, ms1_features)
    return 100.0 * len(result) / len(run_features)


def remove_runs_in_order(
    db: AmtDatabase,
    ordered_runs: list[int],
    max_entries: float = math.inf,
    max_runs: float = math.inf,
) -> AmtDatabase:
    """Build a database from runs taken in order, stopping at either ceiling.

    A run whose peptides would push the entry count past ``max_entries`` ends
    the build, as does reaching ``max_runs``.
    """
    reduced = AmtDatabase()
    for run_id in ordered_runs:
        if reduced.num_runs >= max_runs:
            break
        new_peptides = {
            e.peptide_sequence for e in db.get_peptide_entries_for_run(run_id)
            if e.peptide_sequence not in reduced
        }
        if reduced.num_entries + len(new_peptides) > max_entries:
            break
        reduced.add_run_from_database(db, run_id)
    logger.info(f"Reduced database to {reduced.num_runs} of {db.num_runs} runs, "
                f"{reduced.num_entries} of {db.num_entries} entries")
    return reduced


def _rank_runs(percents: dict[int, float], min_percent: float) -> list[int]:
    kept = [r for r, pct in percents.items() if pct >= min_percent]
    return sorted(kept, key=lambda r: (-percents[r], r))


def remove_runs_without_peptide_matches(
    db: AmtDatabase,
    ms2_features: list[Feature],
    min_percent: float = 0.0,
    max_entries: float = math.inf,
    max_runs: float = math.inf,
) -> AmtDatabase:
    """Keep the runs sharing the most peptides with the MS/MS identifications."""
    peptides = {f.peptide for f in ms2_features if f.peptide}
    percents = {run.sequence: peptide_overlap_percent(db, run.sequence, peptides) for run in db.runs}
    ordered = _rank_runs(percents, min_percent)
    logger.debug(f"{len(ordered)} runs have at least {min_percent}% peptides in common")
    return remove_runs_in_order(db, ordered, max_entries, max_runs)


def remove_runs_without_mass_matches(
    db: AmtDatabase,
    ms1_features: list[Feature],
    min_percent: float = 0.0,
    delta_mass: float = DEFAULT_MASS_MATCH_DELTA_PPM,
    delta_mass_type: str = DELTA_MASS_TYPE_PPM,
    max_entries: float = math.inf,
    max_runs: float = math.inf,
    modifications: list[AminoAcidModification] | None = None,
) -> AmtDatabase:
    """Keep the runs whose features best mass-match the MS1 features."""
    modifications = modifications or []
    percents = {
        run.sequence: mass_match_percent(db, run.sequence, ms1_features, modifications,
                                         delta_mass, delta_mass_type)
        for run in db.runs
    }
    ordered = _rank_runs(percents, min_percent)
    logger.debug(f"{len(ordered)} runs have at least {min_percent}% mass matches")
    return remove_runs_in_order(db, ordered, max_entries, max_runs)


def reduce_database_by_run_similarity(
    db: AmtDatabase,
    ms2_features: list[Feature] | None,
    matching_result: FeatureMatchingResult,
    min_runs: int = 1,
    max_runs: int | None = None,
) -> AmtDatabase:
    """Keep the entries of the runs most similar to the MS/MS identifications.

    Runs are ranked by percent of their peptides among the MS/MS peptides.
    Along that ranking the cumulative count of distinct matched peptides is
    tracked, and the cut is placed where the gain over the next window of runs
    most exceeds the gain over the previous window. The cut is clamped to
    [min_runs, max_runs].

    The result is a copy of the database without the entries that no kept run
    observed. Kept entries keep their observations from every run, so their
    median hydrophobicities are unchanged.
    """
    max_runs = max_runs or db.num_runs
    if min_runs < 1 or min_runs > max_runs:
        raise ValueError(f"Invalid run range [{min_runs}, {max_runs}]")
    ms2_peptides = {f.peptide for f in (ms2_features or []) if f.peptide}
    matched_peptides = {
        f.peptide for f in matching_result.slave_set_features() if f.peptide and not f.is_decoy
    }

    peptides = _peptides_by_run(db)
    percents = {r: 100.0 * len(p & ms2_peptides) / len(p) if p else 0.0 for r, p in peptides.items()}
    ordered = sorted(peptides, key=lambda r: (-percents[r], r))

    cumulative = []
    seen: set[str] = set()
    for run_id in ordered:
        seen |= peptides[run_id] & matched_peptides
        cumulative.append(len(seen))

    window = RUN_SIMILARITY_WINDOW
    last_index = max_runs - 1
    best_diff = -math.inf
    for i in range(max(window, min_runs - 1), min(len(ordered) - window, max_runs - 1)):
        diff = (cumulative[i + window] - cumulative[i]) - (cumulative[i] - cumulative[i - window])
        if diff > best_diff:
            best_diff, last_index = diff, i
    last_index = min(max(last_index, min_runs - 1), max_runs - 1, len(ordered) - 1)

    kept = ordered[:last_index + 1]
    peptides_to_keep = set().union(*(peptides[r] for r in kept))
    reduced = db.copy()
    for entry in list(reduced.entries):
        if entry.peptide_sequence not in peptides_to_keep:
            reduced.remove_entry(entry.peptide_sequence)
    logger.info(f"Keeping peptide entries from {len(kept)} most similar runs of {len(ordered)} "
                f"({cumulative[last_index] if cumulative else 0} matched peptides): "
                f"{reduced.num_entries} of {db.num_entries} entries")
    return reduced
