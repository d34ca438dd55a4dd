"""
Match probabilities and false discovery rates.

The (mass error, hydrophobicity error) pairs of every target match are
modelled as a mixture of true matches (bivariate normal) and false matches
(uniform over the tolerance window). Decoy matches against a mass-shifted
database only seed the initial mixture proportion. Each MS1 feature then
keeps its single most probable match, subject to probability, FDR and
ambiguity gates.
"""

from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, fields

import numpy as np
import pandas as pd

from .exceptions import InsufficientDataError
from .features import Feature
from .matching import DELTA_MASS_TYPE_PPM, FeatureMatchingResult, mass_error
from .regression import DEFAULT_SOLVER_TIMEOUT_SECONDS, MixtureFitResult, RegressionService

logger = logging.getLogger(__name__)

# Used when decoys match at least as often as targets
MIN_INITIAL_PROPORTION = 0.001


@dataclass
class ProbabilityParameters:
    """EM bounds and acceptance thresholds."""
    min_em_iterations: int = 30
    max_em_iterations: int = 200
    max_delta_proportion: float = 0.005      # proportion change counted as stable
    iterations_for_stability: int = 1
    min_match_probability: float = 0.1
    max_match_fdr: float = 1.0
    max_second_best_probability: float = 0.5
    min_second_best_probability_difference: float = 0.1
    ks_warning_cutoff: float = 0.005
    solver_timeout_seconds: float = DEFAULT_SOLVER_TIMEOUT_SECONDS

    @classmethod
    def from_config(cls, config: dict) -> ProbabilityParameters:
        """Build from the ``probability`` section of a configuration dict."""
        section = config.get('probability', config) or {}
        known = {f.name for f in fields(cls)}
        unknown = set(section) - known
        if unknown:
            logger.warning(f"Ignoring unknown probability settings: {sorted(unknown)}")
        return cls(**{k: v for k, v in section.items() if k in known})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProbabilityAssignmentResult:
    """Outcome of probability assignment for one run."""
    accepted_features: list[Feature]          # MS1 features with their accepted identification
    match_table: pd.DataFrame                 # one row per target (master, slave) pair
    mixture_fit: MixtureFitResult
    initial_proportion: float
    mean_probability: float                   # mean best-match probability per matched feature
    expected_true_matches: float
    num_target_pairs: int = 0
    num_decoy_pairs: int = 0
    rejected_ambiguous: int = 0
    summary: dict = field(default_factory=dict)

    @property
    def num_accepted(self) -> int:
        return len(self.accepted_features)


def calculate_fdr(probabilities) -> np.ndarray:
    """Smoothed FDR for each probability.

    Probabilities are sorted descending and, for the top i, FDR is
    Σ(1 − p) / (Σ(1 − p) + Σp). Equal probabilities share the FDR at the end
    of their tie group.

    Returns:
        FDRs in the input order
    """
    probabilities = np.asarray(probabilities, dtype=float)
    if len(probabilities) == 0:
        return np.array([])
    order = np.argsort(-probabilities, kind='stable')
    ranked = probabilities[order]
    expected_false = np.cumsum(1.0 - ranked)
    expected_true = np.cumsum(ranked)
    ranked_fdr = expected_false / (expected_false + expected_true)
    tie_group_ends = np.searchsorted(-ranked, -ranked, side='right') - 1
    fdrs = np.empty_like(probabilities)
    fdrs[order] = ranked_fdr[tie_group_ends]
    return fdrs


class AmtMatchProbabilityAssigner:
    """Assign match probabilities with EM and resolve one peptide per feature.

    Args:
        min_mass_diff, max_mass_diff: Mass window used for matching
        min_elution_diff, max_elution_diff: Hydrophobicity window used for matching
        delta_mass_type: Units of the mass window
        params: EM bounds and acceptance thresholds
        service: Regression service running the EM fit
    """

    def __init__(
        self,
        min_mass_diff: float,
        max_mass_diff: float,
        min_elution_diff: float,
        max_elution_diff: float,
        delta_mass_type: str = DELTA_MASS_TYPE_PPM,
        params: ProbabilityParameters | None = None,
        service: RegressionService | None = None,
    ):
        self.min_mass_diff = min_mass_diff
        self.max_mass_diff = max_mass_diff
        self.min_elution_diff = min_elution_diff
        self.max_elution_diff = max_elution_diff
        self.delta_mass_type = delta_mass_type
        self.params = params or ProbabilityParameters()
        self.service = service or RegressionService(timeout_seconds=self.params.solver_timeout_seconds)

    @property
    def area(self) -> float:
        area = (self.max_mass_diff - self.min_mass_diff) * (self.max_elution_diff - self.min_elution_diff)
        if not math.isfinite(area) or area <= 0:
            raise ValueError(f"Probability assignment needs a finite, nonempty tolerance window (area {area})")
        return area

    def match_errors(self, result: FeatureMatchingResult) -> tuple[list, np.ndarray, np.ndarray]:
        """(pairs, mass errors, hydrophobicity errors) of every pair in a result."""
        pairs = result.pairs()
        mass_errors = np.array([
            mass_error(master.mass, slave.mass, self.delta_mass_type) for master, slave in pairs
        ])
        h_errors = np.array([
            master.observed_hydrophobicity - slave.observed_hydrophobicity for master, slave in pairs
        ])
        return pairs, mass_errors, h_errors

    @staticmethod
    def initial_proportion(num_target: int, num_decoy: int) -> float:
        proportion = (num_target - num_decoy) / num_target
        if proportion <= 0:
            logger.warning(
                f"Adjusting initial proportion true from {proportion:.4f} to {MIN_INITIAL_PROPORTION}. "
                f"Outside a decoy match this means matching performed very poorly: "
                f"at least as many decoy matches ({num_decoy}) as target matches ({num_target})"
            )
            proportion = MIN_INITIAL_PROPORTION
        # A proportion of exactly 1 leaves the false component no weight to recover
        return min(proportion, 1.0 - MIN_INITIAL_PROPORTION)

    def fit_mixture(
        self,
        target_result: FeatureMatchingResult,
        decoy_result: FeatureMatchingResult,
    ) -> tuple[list, np.ndarray, np.ndarray, MixtureFitResult]:
        """Fit the mixture over target matches without annotating any feature.

        Returns:
            (pairs, mass errors, hydrophobicity errors, fit), with
            ``fit.probabilities`` aligned to ``pairs``

        Raises:
            InsufficientDataError: no target matches, or too few for EM
            SolverFailureError: EM timed out or failed
        """
        p = self.params
        pairs, mass_errors, h_errors = self.match_errors(target_result)
        num_target = len(pairs)
        num_decoy = decoy_result.num_pairs
        logger.debug(f"Target matches: {len(target_result)}, data points: {num_target}")
        logger.debug(f"Decoy matches: {len(decoy_result)}, data points: {num_decoy}")
        if num_target == 0:
            raise InsufficientDataError("No target matches to assign probabilities to",
                                        n_available=0, n_required=1)

        initial = self.initial_proportion(num_target, num_decoy)
        logger.info(f"Initial proportion true: {initial:.4f}")

        fit = self.service.fit_mixture_em(
            mass_errors, h_errors, initial, self.area,
            min_iterations=p.min_em_iterations,
            max_iterations=p.max_em_iterations,
            max_delta_proportion=p.max_delta_proportion,
            iterations_for_stability=p.iterations_for_stability,
        )
        for axis, pvalue in (('mass', fit.ks_pvalue_x), ('hydrophobicity', fit.ks_pvalue_y)):
            if pvalue < p.ks_warning_cutoff:
                logger.warning(f"True-match {axis} errors fit the normal model poorly "
                               f"(KS p-value {pvalue:.2g})")
        logger.info(f"EM: proportion {fit.proportion:.4f}, mass μ={fit.mu_x:.3f} σ={fit.sigma_x:.3f}, "
                    f"H μ={fit.mu_y:.4f} σ={fit.sigma_y:.4f} ({fit.n_iterations} iterations)")
        return pairs, mass_errors, h_errors, fit

    def assign(
        self,
        target_result: FeatureMatchingResult,
        decoy_result: FeatureMatchingResult,
    ) -> ProbabilityAssignmentResult:
        """Fit the mixture over target matches and accept one match per feature.

        Raises:
            InsufficientDataError: no target matches, or too few for EM
            SolverFailureError: EM timed out or failed
        """
        p = self.params
        pairs, mass_errors, h_errors, fit = self.fit_mixture(target_result, decoy_result)
        num_target = len(pairs)
        num_decoy = decoy_result.num_pairs
        initial = self.initial_proportion(num_target, num_decoy)

        probabilities = fit.probabilities
        fdrs = calculate_fdr(probabilities)
        pair_index = {(id(master), id(slave)): i for i, (master, slave) in enumerate(pairs)}

        accepted = []
        best_probabilities = []
        best_pairs = set()
        rejected_ambiguous = 0
        for master, slaves in target_result.items():
            ranked = sorted(
                slaves, key=lambda s: -probabilities[pair_index[(id(master), id(s))]]
            )
            best = ranked[0]
            best_i = pair_index[(id(master), id(best))]
            best_p, best_fdr = float(probabilities[best_i]), float(fdrs[best_i])
            best_probabilities.append(best_p)
            best_pairs.add(best_i)
            if best_p <= 0 or best_p < p.min_match_probability or best_fdr > p.max_match_fdr:
                continue

            second = next((s for s in ranked[1:] if s.peptide != best.peptide), None)
            if second is not None:
                second_p = float(probabilities[pair_index[(id(master), id(second))]])
                if second_p > 0 and (second_p > p.max_second_best_probability
                                     or best_p - second_p < p.min_second_best_probability_difference):
                    logger.debug(f"Rejecting {best.peptide} match (p={best_p:.3f}): "
                                 f"second-best {second.peptide} p={second_p:.3f}")
                    rejected_ambiguous += 1
                    continue

            id_probability = best.peptide_prophet if best.peptide_prophet > 0 else 1.0
            master.peptide = best.peptide
            master.modified_amino_acids = dict(best.modified_amino_acids)
            master.match_probability = best_p
            master.match_fdr = best_fdr
            master.peptide_prophet = best_p * id_probability
            accepted.append(master)

        mean_probability = float(np.mean(best_probabilities)) if best_probabilities else 0.0
        expected_true = mean_probability * len(best_probabilities)
        logger.info(f"Accepted {len(accepted)} of {len(target_result)} matched features "
                    f"(mean probability {mean_probability:.3f}, expected true {expected_true:.1f}, "
                    f"{rejected_ambiguous} ambiguous)")

        table = pd.DataFrame({
            'mass': [m.mass for m, _ in pairs],
            'time': [m.time for m, _ in pairs],
            'observed_hydrophobicity': [m.observed_hydrophobicity for m, _ in pairs],
            'peptide': [s.peptide for _, s in pairs],
            'mass_error': mass_errors,
            'hydrophobicity_error': h_errors,
            'probability': probabilities,
            'fdr': fdrs,
            'is_best': [i in best_pairs for i in range(num_target)],
        })

        return ProbabilityAssignmentResult(
            accepted_features=accepted,
            match_table=table,
            mixture_fit=fit,
            initial_proportion=initial,
            mean_probability=mean_probability,
            expected_true_matches=expected_true,
            num_target_pairs=num_target,
            num_decoy_pairs=num_decoy,
            rejected_ambiguous=rejected_ambiguous,
            summary={**fit.as_dict(), 'initial_proportion': initial,
                     'num_accepted': len(accepted), 'mean_probability': mean_probability},
        )
