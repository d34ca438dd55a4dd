"""Chemical features and generation of AMT database features.

A Feature is a detected (or synthesized) peptide signal: neutral mass, charge,
elution time/scan, intensity, an optional peptide identification with
per-residue modification annotations, and the observed hydrophobicity written
by the time→hydrophobicity mapper.

The generator expands every database entry into the modified-mass variants a
search with a given modification list could observe: static modifications
apply to every occurrence of their residue, and each relevant variable
modification is either applied to every occurrence of its residue or to none,
giving 2^k features for k relevant variable modifications.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field

import numpy as np

from .chemistry import (
    AminoAcidModification,
    ModifiedAminoAcid,
    modified_amino_acids_for,
    peptide_mass,
)
from .database import AmtDatabase, PeptideEntry

logger = logging.getLogger(__name__)

# Mass shift applied to build the known-false decoy population
DEFAULT_DECOY_MASS_OFFSET = 11.0

# Placeholder intensity and scan scale for synthesized database features
AMT_FEATURE_INTENSITY = 1000.0
AMT_FEATURE_SCAN_SCALE = 1000
AMT_FEATURE_SCAN_OFFSET = 2000


@dataclass(eq=False)
class Feature:
    """A chemical feature. Hashing and equality are by identity."""

    mass: float
    time: float = 0.0
    scan: int = 0
    charge: int = 1
    intensity: float = 0.0
    peptide: str | None = None
    peptide_prophet: float = 0.0
    modified_amino_acids: dict[int, ModifiedAminoAcid] = field(default_factory=dict)
    observed_hydrophobicity: float | None = None
    modification_ids: tuple[int, ...] = ()
    is_decoy: bool = False
    match_probability: float | None = None
    match_fdr: float | None = None

    def copy(self, **changes) -> Feature:
        return dataclasses.replace(self, **changes)

    @property
    def modification_signature(self) -> tuple:
        """Hashable description of the modification pattern."""
        return tuple(
            (pos, aa.residue, round(aa.mass, 2))
            for pos, aa in sorted(self.modified_amino_acids.items())
        )


class AmtFeatureGenerator:
    """Expand database entries into features for matching."""

    def __init__(self, db: AmtDatabase):
        self.db = db

    @staticmethod
    def _relevant(
        sequence: str,
        modifications: list[AminoAcidModification],
    ) -> tuple[list[AminoAcidModification], list[AminoAcidModification]]:
        residues = set(sequence.upper())
        static = [m for m in modifications if not m.variable and m.residue.upper() in residues]
        variable = [m for m in modifications if m.variable and m.residue.upper() in residues]
        return static, variable

    @staticmethod
    def _variable_subsets(variable: list[AminoAcidModification]) -> list[list[AminoAcidModification]]:
        """All subsets by binary recursion: each modification is either in or out."""
        if not variable:
            return [[]]
        rest = AmtFeatureGenerator._variable_subsets(variable[1:])
        return rest + [[variable[0]] + subset for subset in rest]

    def features_for_entry(
        self,
        entry: PeptideEntry,
        modifications: list[AminoAcidModification],
        hydrophobicity: float | None = None,
        time: float = 0.0,
    ) -> list[Feature]:
        """All modified-mass variants of one entry.

        Args:
            entry: Database peptide entry
            modifications: Static and variable modifications to consider
            hydrophobicity: H to assign; defaults to the entry's median observed H
            time: Elution time to assign

        Returns:
            2^k features, k = number of variable modifications whose residue
            occurs in the peptide
        """
        sequence = entry.peptide_sequence
        if hydrophobicity is None:
            hydrophobicity = entry.median_observed_hydrophobicity
        static, variable = self._relevant(sequence, modifications)
        base_mass = peptide_mass(sequence)
        prophet = entry.id_probability
        scan = int(AMT_FEATURE_SCAN_SCALE * hydrophobicity + AMT_FEATURE_SCAN_OFFSET)

        features = []
        for subset in self._variable_subsets(variable):
            applied = static + subset
            annotations = modified_amino_acids_for(sequence, applied)
            mass = base_mass
            upper = sequence.upper()
            for mod in applied:
                mass += mod.mass_diff * upper.count(mod.residue.upper())
            features.append(Feature(
                mass=mass,
                time=time,
                scan=scan,
                intensity=AMT_FEATURE_INTENSITY,
                peptide=sequence,
                peptide_prophet=prophet,
                modified_amino_acids=annotations,
                observed_hydrophobicity=hydrophobicity,
            ))
        return features

    def create_features(self, modifications: list[AminoAcidModification]) -> list[Feature]:
        """Features for every entry, at each entry's median observed H."""
        features = []
        for entry in self.db.entries:
            if entry.num_observations == 0:
                continue
            features.extend(self.features_for_entry(entry, modifications))
        logger.debug(f"Generated {len(features)} AMT features from {self.db.num_entries} entries")
        return features

    def create_features_for_run(
        self,
        run_id: int,
        modifications: list[AminoAcidModification],
    ) -> list[Feature]:
        """Features for the entries observed in one run, at that run's H and time."""
        features = []
        for entry in self.db.get_peptide_entries_for_run(run_id):
            obs = entry.observation_for_run(run_id)
            features.extend(self.features_for_entry(
                entry, modifications,
                hydrophobicity=obs.observed_hydrophobicity,
                time=obs.time_in_run,
            ))
        return features


def create_decoy_features(
    features: list[Feature],
    offset: float = DEFAULT_DECOY_MASS_OFFSET,
) -> list[Feature]:
    """Copies of ``features`` with every mass shifted by ``offset`` Da."""
    return [f.copy(mass=f.mass + offset, is_decoy=True) for f in features]


def filter_by_peptide_prophet(features: list[Feature], min_prophet: float) -> list[Feature]:
    return [f for f in features if f.peptide is not None and f.peptide_prophet >= min_prophet]


def represent_peptides_with_median_time(features: list[Feature]) -> list[Feature]:
    """Collapse to one feature per peptide and modification pattern.

    The representative is the first feature of each group with its time
    replaced by the group's median time. Features without a peptide are dropped.
    """
    groups: dict[tuple, list[Feature]] = {}
    for feature in features:
        if feature.peptide is None:
            continue
        groups.setdefault((feature.peptide, feature.modification_signature), []).append(feature)

    result = []
    for group in groups.values():
        median_time = float(np.median([f.time for f in group]))
        result.append(group[0].copy(time=median_time))
    return result


def all_times_zero(features: list[Feature]) -> bool:
    return not any(f.time > 0 for f in features)
