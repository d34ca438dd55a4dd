"""
amt-match: Accurate Mass and Time peptide identification

Builds a reference database of peptides observed across LC-MS/MS runs, with
their normalized hydrophobicity, and identifies the features of new LC-MS runs
by matching mass and mapped hydrophobicity against it. Match probabilities come
from an EM mixture model over match errors, calibrated with decoy matches.
"""

__version__ = "0.1.0"

from .exceptions import (
    AmtError,
    UnresolvedModificationError,
    InsufficientDataError,
    DegenerateInputError,
    SolverFailureError,
)
from .chemistry import (
    AminoAcidModification,
    ModifiedAminoAcid,
    peptide_mass,
    predict_hydrophobicity,
    parse_modification,
)
from .database import (
    AmtDatabase,
    Run,
    PeptideEntry,
    ModificationStateEntry,
    Observation,
)
from .features import (
    Feature,
    AmtFeatureGenerator,
    create_decoy_features,
)
from .matching import (
    FeatureMatchingResult,
    Window2DMatcher,
    MassOnlyMatcher,
    create_matcher,
)
from .regression import (
    RegressionService,
    MixtureFitResult,
)
from .alignment import (
    TimeHydrophobicityMapper,
    align_all_runs_using_common_peptides,
    reduce_database_by_run_similarity,
    remove_runs_without_peptide_matches,
    remove_runs_without_mass_matches,
)
from .probability import (
    AmtMatchProbabilityAssigner,
    ProbabilityParameters,
    calculate_fdr,
)
from .pipeline import (
    AmtDatabaseMatcher,
    MatchingParameters,
    AmtMatchResult,
    match_feature_sets,
    build_database_from_identifications,
)
from .validation import match_with_decoy_split
from .data_io import (
    load_features,
    load_database,
    save_database,
    save_database_tsv,
)
