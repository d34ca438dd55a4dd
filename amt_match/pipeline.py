"""
End-to-end AMT matching of MS1 feature sets against a database.

For one run:
1. Map feature times onto the database's hydrophobicity scale, aligning on
   embedded MS/MS identifications when available, else on mass-only matches
2. Match features to database features in a mass × hydrophobicity window
3. Optionally reduce the database to the most similar runs and redo 1-2
4. Match against a mass-shifted decoy database
5. Optionally fit the match mixture, recalibrate feature masses from the
   probability-weighted ppm errors and redo the target and decoy matches
6. Assign probabilities and resolve one peptide per feature

The batch driver repeats this per run. Runs that cannot be calibrated
(solver failure or too little data) are skipped with a logged reason.
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone

import numpy as np

from .alignment import TimeHydrophobicityMapper, reduce_database_by_run_similarity
from .chemistry import RESIDUE_MASSES, AminoAcidModification, is_unambiguous, predict_hydrophobicity
from .database import AmtDatabase, Run
from .exceptions import DegenerateInputError, InsufficientDataError, SolverFailureError
from .features import (
    DEFAULT_DECOY_MASS_OFFSET,
    AmtFeatureGenerator,
    Feature,
    all_times_zero,
    create_decoy_features,
    filter_by_peptide_prophet,
    represent_peptides_with_median_time,
)
from .matching import (
    DELTA_MASS_TYPE_PPM,
    FeatureMatchingResult,
    FeatureSetMatcher,
    MassOnlyMatcher,
    Window2DMatcher,
    create_matcher,
    mass_error,
)
from .probability import AmtMatchProbabilityAssigner, ProbabilityAssignmentResult, ProbabilityParameters
from .regression import (
    DEFAULT_LEVERAGE_NUMERATOR,
    DEFAULT_MAX_STUDENTIZED_RESIDUAL,
    RegressionService,
)

logger = logging.getLogger(__name__)


@dataclass
class MatchingParameters:
    """Tolerances and switches for matching one run."""
    matcher_kind: str = Window2DMatcher.kind
    delta_mass: float = 10.0                   # 2D match mass tolerance
    delta_mass_type: str = DELTA_MASS_TYPE_PPM
    delta_elution: float = 0.15                # 2D match hydrophobicity tolerance
    mass_match_delta: float = 5.0              # mass-only pre-match for the time→H map
    mass_match_delta_type: str = DELTA_MASS_TYPE_PPM
    degree: int = 1                            # time→H polynomial degree
    leverage_numerator: float = DEFAULT_LEVERAGE_NUMERATOR
    max_studentized_residual: float = DEFAULT_MAX_STUDENTIZED_RESIDUAL
    modal_min_points: int = 85
    decoy_mass_offset: float = DEFAULT_DECOY_MASS_OFFSET
    min_embedded_ms2_prophet: float = 0.9
    reduce_database: bool = False
    min_runs_to_keep: int = 1
    max_runs_to_keep: int | None = None        # None = all runs
    calibrate_masses: bool = False

    def __post_init__(self):
        if self.degree < 1:
            raise ValueError(f"Mapping degree must be >= 1, got {self.degree}")
        if self.delta_mass < 0 or self.delta_elution < 0 or self.mass_match_delta < 0:
            raise ValueError("Tolerances must be non-negative")

    @classmethod
    def from_config(cls, config: dict) -> MatchingParameters:
        """Build from the ``matching`` and ``alignment`` sections of a config dict."""
        known = {f.name for f in fields(cls)}
        values = {}
        for section in ('alignment', 'matching'):
            for key, value in (config.get(section) or {}).items():
                if key in known:
                    values[key] = value
                else:
                    logger.warning(f"Ignoring unknown {section} setting '{key}'")
        return cls(**values)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class AmtMatchResult:
    """Matching outcome for one run."""
    matched_features: list[Feature]            # accepted features, identification attached
    coefficients: np.ndarray                   # time→H map of the run
    assignment: ProbabilityAssignmentResult
    database: AmtDatabase                      # database actually matched (reduced if requested)
    num_target_matches: int = 0                # MS1 features with at least one target match
    num_decoy_matches: int = 0
    mass_calibration: tuple[float, float] | None = None

    @property
    def matched_peptides(self) -> set[str]:
        return {f.peptide for f in self.matched_features}

    def summary(self) -> dict:
        return {
            'num_matched_features': len(self.matched_features),
            'num_matched_peptides': len(self.matched_peptides),
            'num_target_matches': self.num_target_matches,
            'num_decoy_matches': self.num_decoy_matches,
            'coefficients': [float(c) for c in self.coefficients],
            **self.assignment.summary,
        }


@dataclass
class BatchMatchResult:
    results: dict[str, AmtMatchResult] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)    # run name -> reason

    @property
    def num_runs(self) -> int:
        return len(self.results) + len(self.skipped)


class AmtDatabaseMatcher:
    """Match MS1 feature sets against an AMT database.

    Features passed in are annotated in place: observed hydrophobicity is
    written on every feature, and accepted features get their peptide, match
    probability and FDR.
    """

    def __init__(
        self,
        params: MatchingParameters | None = None,
        probability_params: ProbabilityParameters | None = None,
        service: RegressionService | None = None,
    ):
        self.params = params or MatchingParameters()
        self.probability_params = probability_params or ProbabilityParameters()
        self.service = service or RegressionService(
            timeout_seconds=self.probability_params.solver_timeout_seconds,
            modal_min_points=self.params.modal_min_points,
        )
        self.mapper = TimeHydrophobicityMapper(
            service=self.service,
            degree=self.params.degree,
            leverage_numerator=self.params.leverage_numerator,
            max_studentized_residual=self.params.max_studentized_residual,
            mass_match_delta=self.params.mass_match_delta,
            mass_match_delta_type=self.params.mass_match_delta_type,
        )

    def build_matcher(self) -> FeatureSetMatcher:
        p = self.params
        if p.matcher_kind == MassOnlyMatcher.kind:
            return create_matcher(p.matcher_kind, delta_mass=p.delta_mass, delta_mass_type=p.delta_mass_type)
        return create_matcher(
            p.matcher_kind,
            min_mass_diff=-p.delta_mass, max_mass_diff=p.delta_mass,
            delta_mass_type=p.delta_mass_type,
            min_elution_diff=-p.delta_elution, max_elution_diff=p.delta_elution,
        )

    def guide_features(self, embedded_ms2: list[Feature]) -> list[Feature]:
        """Confident MS/MS identifications, one median-time representative per peptide."""
        filtered = filter_by_peptide_prophet(embedded_ms2, self.params.min_embedded_ms2_prophet)
        logger.debug(f"Embedded MS2: {len(filtered)} of {len(embedded_ms2)} features pass "
                     f"PeptideProphet >= {self.params.min_embedded_ms2_prophet}")
        if len(filtered) < 8:
            raise InsufficientDataError(
                f"Too few MS2 features ({len(filtered)}) for alignment after filtering; "
                f"try a less restrictive PeptideProphet cutoff",
                n_available=len(filtered), n_required=8,
            )
        if all_times_zero(filtered):
            raise DegenerateInputError(
                "MS2 feature retention times are all zero; populate feature times before matching"
            )
        return represent_peptides_with_median_time(filtered)

    def calibrate_masses(
        self,
        ms1_features: list[Feature],
        matching_result: FeatureMatchingResult,
        decoy_result: FeatureMatchingResult,
        assigner: AmtMatchProbabilityAssigner,
    ) -> tuple[float, float]:
        """Remove a linear mass-dependent ppm error estimated from likely-true matches.

        The mixture is fitted over the loose matches without annotating any
        feature. Each pair's ppm error is then regressed on feature mass,
        weighted by the pair's probability of being a true match, and every
        feature mass is corrected.

        Returns:
            (intercept, slope) of the error model, in ppm and ppm per Da

        Raises:
            InsufficientDataError: too few matches, or none likely true
        """
        pairs, _, _, fit = assigner.fit_mixture(matching_result, decoy_result)
        masses = np.array([master.mass for master, _ in pairs])
        errors = np.array([mass_error(master.mass, slave.mass, DELTA_MASS_TYPE_PPM) for master, slave in pairs])
        intercept, slope = self.service.linear_regression(masses, errors, weights=fit.probabilities)
        for feature in ms1_features:
            feature.mass -= feature.mass * (intercept + slope * feature.mass) * 1e-6
        logger.info(f"Mass calibration from {fit.probabilities.sum():.1f} expected true matches: "
                    f"error = {intercept:.4g} + {slope:.4g}·mass ppm")
        return intercept, slope

    def match_against_ms1(
        self,
        db: AmtDatabase,
        ms1_features: list[Feature],
        modifications: list[AminoAcidModification],
        embedded_ms2: list[Feature] | None = None,
        amt_features: list[Feature] | None = None,
    ) -> AmtMatchResult:
        """Identify one run's MS1 features against the database.

        Args:
            db: AMT database
            ms1_features: Features of the run, with elution times
            modifications: Modifications to expand database peptides with
            embedded_ms2: MS/MS identifications from the same run, used as alignment guides
            amt_features: Precomputed database features (generated from ``db`` if omitted)

        Raises:
            DegenerateInputError: no features, or all times zero
            InsufficientDataError: too few matches to calibrate
            SolverFailureError: a regression or EM fit failed
        """
        p = self.params
        if not ms1_features:
            raise DegenerateInputError("No MS1 features to match")
        if all_times_zero(ms1_features):
            raise DegenerateInputError(
                "MS1 feature retention times are all zero; populate feature times before matching"
            )
        guides = self.guide_features(embedded_ms2) if embedded_ms2 is not None else None

        if amt_features is None:
            amt_features = AmtFeatureGenerator(db).create_features(modifications)
        if not amt_features:
            raise DegenerateInputError("Database produced no features to match against")

        coefficients = self.mapper.calculate_feature_hydrophobicities(ms1_features, guides, amt_features)
        matcher = self.build_matcher()
        logger.info(f"Loose matching with tolerances {p.delta_mass} {p.delta_mass_type}, "
                    f"{p.delta_elution} H")
        target = matcher.match(ms1_features, amt_features)

        if p.reduce_database:
            db = reduce_database_by_run_similarity(
                db, guides, target, p.min_runs_to_keep, p.max_runs_to_keep
            )
            amt_features = AmtFeatureGenerator(db).create_features(modifications)
            coefficients = self.mapper.calculate_feature_hydrophobicities(ms1_features, guides, amt_features)
            target = matcher.match(ms1_features, amt_features)

        assigner = AmtMatchProbabilityAssigner(
            -p.delta_mass, p.delta_mass, -p.delta_elution, p.delta_elution,
            delta_mass_type=p.delta_mass_type,
            params=self.probability_params,
            service=self.service,
        )
        decoy_features = create_decoy_features(amt_features, p.decoy_mass_offset)
        decoy = matcher.match(ms1_features, decoy_features)

        calibration = None
        if p.calibrate_masses:
            logger.info(f"Loose match before calibration: {len(target)} matches. Decoy: {len(decoy)} matches")
            calibration = self.calibrate_masses(ms1_features, target, decoy, assigner)
            target = matcher.match(ms1_features, amt_features)
            decoy = matcher.match(ms1_features, decoy_features)

        logger.info(f"Loose match: {len(target)} matches. Decoy: {len(decoy)} matches")
        assignment = assigner.assign(target, decoy)
        result = AmtMatchResult(
            matched_features=assignment.accepted_features,
            coefficients=coefficients,
            assignment=assignment,
            database=db,
            num_target_matches=len(target),
            num_decoy_matches=len(decoy),
            mass_calibration=calibration,
        )
        if db.num_entries:
            logger.info(f"Matched {len(result.matched_peptides)} distinct peptides "
                        f"({100 * len(result.matched_peptides) / db.num_entries:.1f}% of database)")
        return result


def match_feature_sets(
    db: AmtDatabase,
    named_feature_sets: dict[str, list[Feature]],
    modifications: list[AminoAcidModification],
    matcher: AmtDatabaseMatcher | None = None,
    embedded_ms2: dict[str, list[Feature]] | None = None,
) -> BatchMatchResult:
    """Match several runs; uncalibratable runs are skipped, not fatal."""
    matcher = matcher or AmtDatabaseMatcher()
    embedded_ms2 = embedded_ms2 or {}
    amt_features = None
    if not matcher.params.reduce_database:
        amt_features = AmtFeatureGenerator(db).create_features(modifications)

    batch = BatchMatchResult()
    for i, (name, features) in enumerate(named_feature_sets.items(), 1):
        logger.info(f"Matching run {i}/{len(named_feature_sets)}: {name}")
        try:
            batch.results[name] = matcher.match_against_ms1(
                db, features, modifications,
                embedded_ms2=embedded_ms2.get(name),
                amt_features=amt_features,
            )
        except (SolverFailureError, InsufficientDataError) as e:
            logger.warning(f"Skipping run {name}: {e}")
            batch.skipped[name] = str(e)
    logger.info(f"Matched {len(batch.results)} runs, skipped {len(batch.skipped)}")
    return batch


def build_database_from_identifications(
    named_feature_sets: dict[str, list[Feature]],
    modifications: list[AminoAcidModification],
    min_peptide_prophet: float = 0.0,
    mapper: TimeHydrophobicityMapper | None = None,
    ignore_unknown_modifications: bool = False,
) -> AmtDatabase:
    """Build a database from identified MS/MS feature sets, one run per set.

    Each run's times are mapped onto the hydrophobicity scale by regressing
    predicted hydrophobicity on time over its identifications. Each peptide
    and modification pattern contributes one observation per run at its
    median time, with the number of identifications as spectral count.

    Raises:
        UnresolvedModificationError: an observed modification is not declared,
            unless ``ignore_unknown_modifications`` is set
    """
    mapper = mapper or TimeHydrophobicityMapper()
    known_residues = set(RESIDUE_MASSES)
    db = AmtDatabase()
    for name, features in named_feature_sets.items():
        identified = [
            f for f in filter_by_peptide_prophet(features, min_peptide_prophet)
            if is_unambiguous(f.peptide) and set(f.peptide.upper()) <= known_residues
        ]
        if not identified:
            logger.warning(f"Skipping run {name}: no usable identifications")
            continue
        try:
            coefficients = mapper.fit_time_to_hydrophobicity(
                [f.time for f in identified],
                [predict_hydrophobicity(f.peptide) for f in identified],
            )
        except (SolverFailureError, InsufficientDataError) as e:
            logger.warning(f"Skipping run {name}: {e}")
            continue

        db.add_run(Run(
            time_hyd_map_coefficients=list(coefficients),
            modifications=tuple(modifications),
            pepxml_filename=name,
            min_peptide_prophet=min_peptide_prophet,
            time_analyzed=datetime.now(timezone.utc),
        ))
        run = db.runs[-1]
        counts = Counter((f.peptide, f.modification_signature) for f in identified)
        for feature in represent_peptides_with_median_time(identified):
            db.resolve_modifications_and_add_observation(
                feature.peptide,
                feature.modified_amino_acids,
                run.convert_time_to_hydrophobicity(feature.time),
                feature.peptide_prophet,
                run.sequence,
                feature.time,
                spectral_count=counts[(feature.peptide, feature.modification_signature)],
                ignore_unknown=ignore_unknown_modifications,
            )
        logger.info(f"Added {run} with {len(db.get_peptide_entries_for_run(run.sequence))} peptides")
    return db
