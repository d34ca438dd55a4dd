"""
AMT database: runs, modifications and the peptide → modification state →
observation hierarchy.

Storage is arena-style. The database owns two indexed lists:
- ``runs``: a run's sequence number is its 1-based position and never changes
- ``modifications``: a modification id is its 0-based position

Observations refer to runs by sequence number and modification-state entries
refer to modifications by id. Folding data from another database or a freshly
parsed run goes through an explicit old id → new id map returned by
``add_run``, so no object identity leaks between databases.

Summary statistics (medians, standard deviations) are derived. Every mutating
method calls ``recompute()`` on what it touched; ``AmtDatabase.recompute()``
rebuilds everything from the observations.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

import numpy as np

from .chemistry import (
    MASS_EQUALITY_TOLERANCE,
    RESIDUE_MASSES,
    AminoAcidModification,
    ModifiedAminoAcid,
    format_modified_sequence,
    is_unambiguous,
    peptide_mass,
    position_mass_diffs,
    predict_hydrophobicity,
)
from .exceptions import UnresolvedModificationError

logger = logging.getLogger(__name__)


# ============================================================================
# Runs
# ============================================================================

@dataclass
class Run:
    """One LC-MS/MS run contributing observations to a database.

    ``modification_ids`` index the arena the run currently belongs to. For a
    run that has not been added to any database they are simply positions in
    its own ``modifications`` list.
    """

    time_hyd_map_coefficients: list[float] = field(default_factory=lambda: [0.0, 1.0])
    modifications: tuple[AminoAcidModification, ...] = ()
    modification_ids: tuple[int, ...] = ()
    pepxml_filename: str | None = None
    mzxml_filename: str | None = None
    lsid: str | None = None
    min_peptide_prophet: float = 0.0
    time_added: datetime | None = None
    time_analyzed: datetime | None = None
    sequence: int | None = None       # 1-based position in the owning database

    def __post_init__(self):
        self.modifications = tuple(self.modifications)
        if not self.modification_ids:
            self.modification_ids = tuple(range(len(self.modifications)))
        self.modification_ids = tuple(self.modification_ids)
        if len(self.modification_ids) != len(self.modifications):
            raise ValueError("modification_ids must parallel modifications")
        self.time_hyd_map_coefficients = [float(c) for c in self.time_hyd_map_coefficients]
        if len(self.time_hyd_map_coefficients) < 2:
            raise ValueError("Time→hydrophobicity map needs degree >= 1")

    @property
    def degree(self) -> int:
        return len(self.time_hyd_map_coefficients) - 1

    def convert_time_to_hydrophobicity(self, time: float) -> float:
        """Evaluate the time→hydrophobicity polynomial."""
        return float(np.polynomial.polynomial.polyval(time, self.time_hyd_map_coefficients))

    def recover_time_for_hydrophobicity(self, hydrophobicity: float) -> float:
        """Invert the mapping. Only defined for linear maps."""
        if self.degree != 1:
            raise ValueError(f"Cannot invert a degree-{self.degree} time→hydrophobicity map")
        intercept, slope = self.time_hyd_map_coefficients
        if slope == 0:
            raise ValueError("Cannot invert a flat time→hydrophobicity map")
        return (hydrophobicity - intercept) / slope

    @property
    def static_modifications(self) -> list[tuple[int, AminoAcidModification]]:
        return [(i, m) for i, m in zip(self.modification_ids, self.modifications) if not m.variable]

    @property
    def variable_modifications(self) -> list[tuple[int, AminoAcidModification]]:
        return [(i, m) for i, m in zip(self.modification_ids, self.modifications) if m.variable]

    def __str__(self) -> str:
        terms = []
        for power, coef in enumerate(self.time_hyd_map_coefficients):
            if power == 0:
                terms.append(f"{coef:.6g}")
            elif power == 1:
                terms.append(f"{coef:.6g}t")
            else:
                terms.append(f"{coef:.6g}t^{power}")
        name = self.pepxml_filename or self.mzxml_filename or 'unnamed'
        return f"Run {self.sequence} ({name}): H = {' + '.join(terms)}"


# ============================================================================
# Peptide hierarchy
# ============================================================================

@dataclass
class Observation:
    """A single peptide observation in one run."""
    observed_hydrophobicity: float
    peptide_prophet: float           # identification probability of the MS/MS match
    run_id: int                      # sequence number of the run
    time_in_run: float
    spectral_count: int = -1         # -1 = unknown


def _median(values: list[float]) -> float:
    return float(np.median(values)) if values else float('nan')


def _std(values: list[float]) -> float:
    if len(values) < 2:
        return 0.0
    return float(np.std(values, ddof=1))


@dataclass
class ModificationStateEntry:
    """All observations of a peptide carrying one exact modification pattern."""
    modified_sequence: str
    modification_ids: tuple[int, ...]
    modified_mass: float
    observations: list[Observation] = field(default_factory=list)

    # Derived, see recompute()
    median_observed_hydrophobicity: float = float('nan')
    median_peptide_prophet: float = float('nan')
    hydrophobicity_standard_deviation: float = 0.0

    def recompute(self) -> None:
        hs = [o.observed_hydrophobicity for o in self.observations]
        self.median_observed_hydrophobicity = _median(hs)
        self.median_peptide_prophet = _median([o.peptide_prophet for o in self.observations])
        self.hydrophobicity_standard_deviation = _std(hs)

    def add_observation(self, observation: Observation) -> None:
        self.observations.append(observation)
        self.recompute()

    def remove_observation(self, observation: Observation) -> bool:
        kept = [o for o in self.observations if o is not observation]
        removed = len(kept) != len(self.observations)
        self.observations = kept
        self.recompute()
        return removed

    def observation_for_run(self, run_id: int) -> Observation | None:
        for obs in self.observations:
            if obs.run_id == run_id:
                return obs
        return None


@dataclass
class PeptideEntry:
    """A peptide and its modification states.

    Keyed in the database by the unmodified sequence. Modification states are
    keyed by their modified-sequence string and partition the observations.
    """
    peptide_sequence: str
    predicted_hydrophobicity: float
    modification_states: dict[str, ModificationStateEntry] = field(default_factory=dict)

    # Derived, see recompute()
    median_observed_hydrophobicity: float = float('nan')
    median_peptide_prophet: float = float('nan')
    hydrophobicity_standard_deviation: float = 0.0

    @classmethod
    def for_sequence(cls, peptide_sequence: str) -> PeptideEntry:
        return cls(
            peptide_sequence=peptide_sequence,
            predicted_hydrophobicity=predict_hydrophobicity(peptide_sequence),
        )

    @property
    def observations(self) -> list[Observation]:
        return [obs for state in self.modification_states.values() for obs in state.observations]

    @property
    def num_observations(self) -> int:
        return sum(len(state.observations) for state in self.modification_states.values())

    @property
    def mean_observed_hydrophobicity(self) -> float:
        hs = [o.observed_hydrophobicity for o in self.observations]
        return float(np.mean(hs)) if hs else float('nan')

    @property
    def id_probability(self) -> float:
        """Probability that at least one observation is a correct identification."""
        p_all_wrong = 1.0
        for obs in self.observations:
            p_all_wrong *= (1.0 - obs.peptide_prophet)
        return 1.0 - p_all_wrong

    @property
    def spectral_count(self) -> int:
        """Total spectral count, or -1 if any observation's count is unknown."""
        total = 0
        for obs in self.observations:
            if obs.spectral_count < 0:
                return -1
            total += obs.spectral_count
        return total

    def recompute(self) -> None:
        for state in self.modification_states.values():
            state.recompute()
        observations = self.observations
        hs = [o.observed_hydrophobicity for o in observations]
        self.median_observed_hydrophobicity = _median(hs)
        self.median_peptide_prophet = _median([o.peptide_prophet for o in observations])
        self.hydrophobicity_standard_deviation = _std(hs)

    def observation_for_run(self, run_id: int) -> Observation | None:
        for state in self.modification_states.values():
            obs = state.observation_for_run(run_id)
            if obs is not None:
                return obs
        return None

    def add_modification_state_entry(self, state: ModificationStateEntry) -> None:
        """Add a state, merging observations into an existing state with the same key."""
        existing = self.modification_states.get(state.modified_sequence)
        if existing is None:
            self.modification_states[state.modified_sequence] = state
        else:
            existing.observations.extend(state.observations)
        self.recompute()

    def remove_observation(self, observation: Observation) -> bool:
        """Remove one observation; an emptied modification state is dropped."""
        for key, state in list(self.modification_states.items()):
            if state.remove_observation(observation):
                if not state.observations:
                    del self.modification_states[key]
                self.recompute()
                return True
        return False


# ============================================================================
# Database
# ============================================================================

class AmtDatabase:
    """Aggregate store of runs, modifications and peptide entries."""

    def __init__(self):
        self.runs: list[Run] = []
        self.modifications: list[AminoAcidModification] = []
        self._entries: dict[str, PeptideEntry] = {}

    # ------------------------------------------------------------------
    # Modifications
    # ------------------------------------------------------------------

    def find_equivalent_modification(self, modification: AminoAcidModification) -> int | None:
        for mod_id, existing in enumerate(self.modifications):
            if existing.is_equivalent(modification):
                return mod_id
        return None

    def _canonical_modification_id(self, modification: AminoAcidModification) -> int:
        mod_id = self.find_equivalent_modification(modification)
        if mod_id is None:
            self.modifications.append(modification)
            mod_id = len(self.modifications) - 1
        return mod_id

    def modifications_for(self, modification_ids) -> list[AminoAcidModification]:
        return [self.modifications[i] for i in modification_ids]

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def add_run(self, run: Run) -> dict[int, int]:
        """Add a run, deduplicating its modifications by equivalence.

        The stored run is a copy whose modifications are the database's
        canonical instances and whose sequence is its 1-based position.

        Returns:
            Map from the run's modification ids (in its source arena) to
            modification ids in this database. Callers rewrite pending
            observation data through it.
        """
        modification_map = {}
        canonical_ids = []
        for old_id, mod in zip(run.modification_ids, run.modifications):
            new_id = self._canonical_modification_id(mod)
            modification_map[old_id] = new_id
            canonical_ids.append(new_id)

        stored = dataclasses.replace(
            run,
            time_hyd_map_coefficients=list(run.time_hyd_map_coefficients),
            modifications=tuple(self.modifications[i] for i in canonical_ids),
            modification_ids=tuple(canonical_ids),
            sequence=len(self.runs) + 1,
            time_added=run.time_added or datetime.now(timezone.utc),
        )
        self.runs.append(stored)
        logger.debug(f"Added run {stored.sequence} with {len(canonical_ids)} modifications")
        return modification_map

    def get_run_by_sequence(self, sequence: int) -> Run:
        if sequence < 1 or sequence > len(self.runs):
            raise KeyError(f"No run with sequence {sequence} (database has {len(self.runs)} runs)")
        return self.runs[sequence - 1]

    @property
    def num_runs(self) -> int:
        return len(self.runs)

    # ------------------------------------------------------------------
    # Entries
    # ------------------------------------------------------------------

    @property
    def entries(self) -> list[PeptideEntry]:
        return list(self._entries.values())

    @property
    def num_entries(self) -> int:
        return len(self._entries)

    def get_entry(self, peptide_sequence: str) -> PeptideEntry | None:
        return self._entries.get(peptide_sequence)

    def __contains__(self, peptide_sequence: str) -> bool:
        return peptide_sequence in self._entries

    def contains(self, peptide_sequence: str) -> bool:
        return peptide_sequence in self._entries

    def remove_entry(self, peptide_sequence: str) -> PeptideEntry | None:
        return self._entries.pop(peptide_sequence, None)

    def _build_state(
        self,
        peptide_sequence: str,
        modification_ids,
        observations: list[Observation] | None = None,
    ) -> ModificationStateEntry:
        ids = tuple(sorted(set(modification_ids)))
        diffs = position_mass_diffs(peptide_sequence, self.modifications_for(ids))
        state = ModificationStateEntry(
            modified_sequence=format_modified_sequence(peptide_sequence, diffs),
            modification_ids=ids,
            modified_mass=peptide_mass(peptide_sequence) + sum(diffs.values()),
            observations=list(observations or []),
        )
        state.recompute()
        return state

    def add_observation(
        self,
        peptide_sequence: str,
        modification_ids,
        observed_hydrophobicity: float,
        peptide_prophet: float,
        run_id: int,
        time_in_run: float,
        spectral_count: int = -1,
    ) -> Observation:
        """Record an observation, creating the entry and modification state as needed."""
        self.get_run_by_sequence(run_id)
        observation = Observation(
            observed_hydrophobicity=observed_hydrophobicity,
            peptide_prophet=peptide_prophet,
            run_id=run_id,
            time_in_run=time_in_run,
            spectral_count=spectral_count,
        )
        entry = self._entries.get(peptide_sequence)
        if entry is None:
            entry = PeptideEntry.for_sequence(peptide_sequence)
            self._entries[peptide_sequence] = entry
        entry.add_modification_state_entry(
            self._build_state(peptide_sequence, modification_ids, [observation])
        )
        return observation

    def resolve_modifications(
        self,
        peptide_sequence: str,
        modified_amino_acids: dict[int, ModifiedAminoAcid] | None,
        run_id: int,
        ignore_unknown: bool = False,
    ) -> tuple[int, ...]:
        """Resolve per-residue modified masses against a run's declared modifications.

        Static modifications declared for residues present in the peptide always
        apply. For each annotated position, the effective delta is the observed
        residue mass minus the base-plus-static mass; a delta beyond the
        equality tolerance must match one of the run's variable modifications.

        Args:
            peptide_sequence: Unmodified sequence
            modified_amino_acids: 0-based position -> observed modified residue
            run_id: Sequence number of the run whose catalog applies
            ignore_unknown: Import unmodified (with a warning) instead of raising

        Returns:
            Sorted database modification ids; empty if unmodified

        Raises:
            UnresolvedModificationError: if a delta matches no variable modification
        """
        run = self.get_run_by_sequence(run_id)
        sequence = peptide_sequence.upper()
        residues = set(sequence)

        resolved = set()
        static_diff_by_residue: dict[str, float] = {}
        for mod_id, mod in run.static_modifications:
            residue = mod.residue.upper()
            if residue in residues:
                resolved.add(mod_id)
                static_diff_by_residue[residue] = static_diff_by_residue.get(residue, 0.0) + mod.mass_diff

        for position, modified in sorted((modified_amino_acids or {}).items()):
            residue = sequence[position]
            base_mass = RESIDUE_MASSES[residue] + static_diff_by_residue.get(residue, 0.0)
            effective = modified.mass - base_mass
            if abs(effective) <= MASS_EQUALITY_TOLERANCE:
                continue
            match_id = None
            for mod_id, mod in run.variable_modifications:
                if mod.residue.upper() == residue and abs(mod.mass_diff - effective) < MASS_EQUALITY_TOLERANCE:
                    match_id = mod_id
                    break
            if match_id is None:
                if ignore_unknown:
                    logger.warning(
                        f"Unknown modification on {residue}{position + 1} of {peptide_sequence} "
                        f"(delta {effective:.4f}); importing unmodified"
                    )
                    return ()
                raise UnresolvedModificationError(peptide_sequence, position, residue, effective)
            resolved.add(match_id)

        return tuple(sorted(resolved))

    def resolve_modifications_and_add_observation(
        self,
        peptide_sequence: str,
        modified_amino_acids: dict[int, ModifiedAminoAcid] | None,
        observed_hydrophobicity: float,
        peptide_prophet: float,
        run_id: int,
        time_in_run: float,
        spectral_count: int = -1,
        ignore_unknown: bool = False,
    ) -> Observation | None:
        """Resolve modifications then add. Ambiguous sequences are skipped."""
        if not is_unambiguous(peptide_sequence):
            logger.debug(f"Skipping ambiguous peptide {peptide_sequence}")
            return None
        modification_ids = self.resolve_modifications(
            peptide_sequence, modified_amino_acids, run_id, ignore_unknown=ignore_unknown
        )
        return self.add_observation(
            peptide_sequence, modification_ids, observed_hydrophobicity,
            peptide_prophet, run_id, time_in_run, spectral_count,
        )

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def _remap_entry(
        self,
        entry: PeptideEntry,
        modification_map: dict[int, int] | None,
        run_map: dict[int, int] | None,
    ) -> PeptideEntry:
        """Copy a foreign entry into this database's id space.

        A missing map means the entry already uses this database's ids. A
        given map must cover every id the entry refers to.

        Raises:
            ValueError: a modification or run id has no mapping
        """
        new_entry = PeptideEntry(
            peptide_sequence=entry.peptide_sequence,
            predicted_hydrophobicity=entry.predicted_hydrophobicity,
        )
        for state in entry.modification_states.values():
            new_ids = self._mapped_ids(state.modification_ids, modification_map, 'modification', state)
            run_ids = self._mapped_ids([o.run_id for o in state.observations], run_map, 'run', state)
            observations = [
                dataclasses.replace(obs, run_id=run_id) for obs, run_id in zip(state.observations, run_ids)
            ]
            new_state = self._build_state(entry.peptide_sequence, new_ids, observations)
            existing = new_entry.modification_states.get(new_state.modified_sequence)
            if existing is None:
                new_entry.modification_states[new_state.modified_sequence] = new_state
            else:
                existing.observations.extend(new_state.observations)
        new_entry.recompute()
        return new_entry

    @staticmethod
    def _mapped_ids(ids, id_map: dict[int, int] | None, kind: str, state) -> list[int]:
        if id_map is None:
            return list(ids)
        unmapped = sorted({i for i in ids if i not in id_map})
        if unmapped:
            raise ValueError(
                f"{state.modified_sequence} refers to {kind} ids {unmapped} with no mapping "
                f"into this database"
            )
        return [id_map[i] for i in ids]

    def add_observations_from_entry(
        self,
        entry: PeptideEntry,
        modification_map: dict[int, int] | None = None,
        run_map: dict[int, int] | None = None,
    ) -> PeptideEntry:
        """Merge an entry's observations, unioning per modification state."""
        incoming = self._remap_entry(entry, modification_map, run_map)
        existing = self._entries.get(incoming.peptide_sequence)
        if existing is None:
            self._entries[incoming.peptide_sequence] = incoming
            return incoming
        for state in incoming.modification_states.values():
            existing.modification_states.setdefault(
                state.modified_sequence,
                ModificationStateEntry(state.modified_sequence, state.modification_ids, state.modified_mass),
            ).observations.extend(state.observations)
        existing.recompute()
        return existing

    def _add_runs_from(self, other: AmtDatabase) -> tuple[dict[int, int], dict[int, int]]:
        modification_map: dict[int, int] = {}
        run_map: dict[int, int] = {}
        for run in other.runs:
            modification_map.update(self.add_run(run))
            run_map[run.sequence] = self.num_runs
        return modification_map, run_map

    def add_observations_from_database(self, other: AmtDatabase) -> None:
        """Fold all runs and observations of another database into this one."""
        modification_map, run_map = self._add_runs_from(other)
        for entry in other.entries:
            self.add_observations_from_entry(entry, modification_map, run_map)
        logger.info(f"Merged {other.num_entries} entries from {other.num_runs} runs; now {self}")

    def add_or_override_entries_with_database(self, other: AmtDatabase) -> None:
        """Add another database's runs; its entries replace ours outright."""
        modification_map, run_map = self._add_runs_from(other)
        for entry in other.entries:
            self._entries[entry.peptide_sequence] = self._remap_entry(entry, modification_map, run_map)
        logger.info(f"Overrode {other.num_entries} entries from {other.num_runs} runs; now {self}")

    def add_run_from_database(self, other: AmtDatabase, run_sequence: int) -> int:
        """Copy one run of another database, with only that run's observations.

        Returns:
            Sequence number of the run in this database
        """
        run = other.get_run_by_sequence(run_sequence)
        modification_map = self.add_run(run)
        run_map = {run_sequence: self.num_runs}
        for entry in other.get_peptide_entries_for_run(run_sequence):
            sub_entry = PeptideEntry(entry.peptide_sequence, entry.predicted_hydrophobicity)
            for key, state in entry.modification_states.items():
                obs = state.observation_for_run(run_sequence)
                if obs is not None:
                    sub_entry.modification_states[key] = ModificationStateEntry(
                        state.modified_sequence, state.modification_ids, state.modified_mass, [obs]
                    )
            self.add_observations_from_entry(sub_entry, modification_map, run_map)
        return self.num_runs

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_peptide_entries_for_run(self, run_id: int) -> list[PeptideEntry]:
        return [e for e in self._entries.values() if e.observation_for_run(run_id) is not None]

    def get_observations_for_run(self, run_id: int) -> list[Observation]:
        result = []
        for entry in self._entries.values():
            for obs in entry.observations:
                if obs.run_id == run_id:
                    result.append(obs)
        return result

    def min_time_in_run(self, run_id: int) -> float:
        times = [o.time_in_run for o in self.get_observations_for_run(run_id)]
        return min(times) if times else float('nan')

    def max_time_in_run(self, run_id: int) -> float:
        times = [o.time_in_run for o in self.get_observations_for_run(run_id)]
        return max(times) if times else float('nan')

    def _differences_from_predicted(self) -> np.ndarray:
        return np.array([
            e.median_observed_hydrophobicity - e.predicted_hydrophobicity
            for e in self._entries.values() if e.num_observations
        ])

    def mean_difference_from_predicted_hydrophobicity(self) -> float:
        diffs = self._differences_from_predicted()
        return float(diffs.mean()) if len(diffs) else float('nan')

    def std_difference_from_predicted_hydrophobicity(self) -> float:
        diffs = self._differences_from_predicted()
        return float(diffs.std(ddof=1)) if len(diffs) > 1 else 0.0

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def recompute(self) -> None:
        """Rebuild every derived statistic from the observations."""
        for entry in self._entries.values():
            entry.recompute()

    def copy(self) -> AmtDatabase:
        return copy.deepcopy(self)

    def summary(self) -> dict:
        observations_per_entry = [e.num_observations for e in self._entries.values()]
        return {
            'num_entries': self.num_entries,
            'num_runs': self.num_runs,
            'num_modifications': len(self.modifications),
            'num_observations': int(sum(observations_per_entry)),
            'median_observations_per_entry': (
                float(np.median(observations_per_entry)) if observations_per_entry else 0.0
            ),
            'mean_difference_from_predicted_hydrophobicity':
                self.mean_difference_from_predicted_hydrophobicity(),
            'std_difference_from_predicted_hydrophobicity':
                self.std_difference_from_predicted_hydrophobicity(),
        }

    def __str__(self) -> str:
        return (f"AmtDatabase: {self.num_entries} entries, {self.num_runs} runs, "
                f"{len(self.modifications)} modifications")


# ============================================================================
# Curation
# ============================================================================

def remove_predicted_hydrophobicity_outliers(
    db: AmtDatabase,
    significant_difference: float = 0.4,
) -> int:
    """Drop single-observation entries whose observed H disagrees with prediction.

    Returns:
        Number of entries removed
    """
    removed = 0
    for entry in db.entries:
        if entry.num_observations < 2 and abs(
            entry.predicted_hydrophobicity - entry.median_observed_hydrophobicity
        ) > significant_difference:
            db.remove_entry(entry.peptide_sequence)
            removed += 1
    logger.info(f"Removed {removed} entries with suspicious observed H values")
    return removed


def remove_hydrophobicity_outliers(db: AmtDatabase, std_multiple: float = 3.0) -> list[Observation]:
    """Remove observations far from their entry's median H.

    Only entries with at least three observations are examined; the cutoff is
    ``std_multiple`` times the entry's H standard deviation, taken before any
    removal.

    Returns:
        The removed observations
    """
    removed = []
    for entry in db.entries:
        if entry.num_observations < 3:
            continue
        cutoff = std_multiple * entry.hydrophobicity_standard_deviation
        median = entry.median_observed_hydrophobicity
        outliers = [o for o in entry.observations if abs(median - o.observed_hydrophobicity) > cutoff]
        for obs in outliers:
            entry.remove_observation(obs)
            removed.append(obs)
        if entry.num_observations == 0:
            db.remove_entry(entry.peptide_sequence)
    logger.debug(f"Removed {len(removed)} hydrophobicity outlier observations")
    return removed
