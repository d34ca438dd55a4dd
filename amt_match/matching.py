"""Tolerance-window matching between feature sets.

Matching is many-to-many: every master feature (from the run being identified)
collects every slave feature (database-derived) whose mass difference and
elution difference fall inside inclusive windows. Disambiguation is left to the
probability assigner.

Matcher kinds are a closed registry resolved by name at configuration time.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod

import numpy as np
import pandas as pd

from .features import Feature

logger = logging.getLogger(__name__)

DELTA_MASS_TYPE_PPM = 'ppm'
DELTA_MASS_TYPE_DA = 'da'
DELTA_MASS_TYPES = (DELTA_MASS_TYPE_PPM, DELTA_MASS_TYPE_DA)

ELUTION_MODES = ('hydrophobicity', 'time', 'scan')
SORT_ORDERS = ('elution', 'quality')

DEFAULT_DELTA_MASS_DA = 0.2
DEFAULT_DELTA_MASS_PPM = 5.0
DEFAULT_DELTA_HYDROPHOBICITY = 0.05
DEFAULT_DELTA_TIME = 20.0
DEFAULT_DELTA_SCAN = 3


def absolute_delta_mass(mass: float, delta: float, delta_type: str) -> float:
    """Convert a mass tolerance to Daltons, relative to ``mass`` for ppm."""
    if delta_type == DELTA_MASS_TYPE_PPM:
        return mass * delta / 1e6
    if delta_type == DELTA_MASS_TYPE_DA:
        return delta
    raise ValueError(f"Unknown delta mass type '{delta_type}'. Options: {DELTA_MASS_TYPES}")


def mass_error(master_mass: float, slave_mass: float, delta_type: str) -> float:
    """Signed master − slave mass error in the units of ``delta_type``."""
    diff = master_mass - slave_mass
    if delta_type == DELTA_MASS_TYPE_PPM:
        return diff * 1e6 / master_mass
    return diff


def elution_value(feature: Feature, mode: str) -> float:
    if mode == 'hydrophobicity':
        if feature.observed_hydrophobicity is None:
            raise ValueError(
                "Feature has no observed hydrophobicity; map time to hydrophobicity before matching"
            )
        return feature.observed_hydrophobicity
    if mode == 'time':
        return feature.time
    if mode == 'scan':
        return float(feature.scan)
    raise ValueError(f"Unknown elution mode '{mode}'. Options: {ELUTION_MODES}")


class FeatureMatchingResult:
    """Master feature → ordered list of matching slave features.

    Masters with no match are absent.
    """

    def __init__(self):
        self._matches: dict[Feature, list[Feature]] = {}

    def add(self, master: Feature, slave: Feature) -> None:
        self._matches.setdefault(master, []).append(slave)

    def put(self, master: Feature, slaves: list[Feature]) -> None:
        self._matches[master] = list(slaves)

    def __getitem__(self, master: Feature) -> list[Feature]:
        return self._matches[master]

    def get(self, master: Feature, default=None):
        return self._matches.get(master, default)

    def __contains__(self, master: Feature) -> bool:
        return master in self._matches

    def __len__(self) -> int:
        return len(self._matches)

    def __iter__(self):
        return iter(self._matches)

    def items(self):
        return self._matches.items()

    @property
    def masters(self) -> list[Feature]:
        return list(self._matches)

    def master_set_features(self) -> set[Feature]:
        return set(self._matches)

    def slave_set_features(self) -> set[Feature]:
        return {slave for slaves in self._matches.values() for slave in slaves}

    def best_match(self, master: Feature) -> Feature | None:
        slaves = self._matches.get(master)
        return slaves[0] if slaves else None

    @property
    def num_pairs(self) -> int:
        return sum(len(slaves) for slaves in self._matches.values())

    def pairs(self) -> list[tuple[Feature, Feature]]:
        return [(master, slave) for master, slaves in self._matches.items() for slave in slaves]

    def to_dataframe(self, delta_mass_type: str = DELTA_MASS_TYPE_PPM) -> pd.DataFrame:
        """One row per (master, slave) pair."""
        rows = []
        for master_index, (master, slaves) in enumerate(self._matches.items()):
            for slave in slaves:
                rows.append({
                    'master_index': master_index,
                    'master_mass': master.mass,
                    'master_time': master.time,
                    'master_hydrophobicity': master.observed_hydrophobicity,
                    'slave_mass': slave.mass,
                    'slave_hydrophobicity': slave.observed_hydrophobicity,
                    'peptide': slave.peptide,
                    'is_decoy': slave.is_decoy,
                    'mass_error': mass_error(master.mass, slave.mass, delta_mass_type),
                })
        return pd.DataFrame(rows)


class FeatureSetMatcher(ABC):
    """Abstract base class for feature set matchers."""

    kind: str = ''

    @abstractmethod
    def match(self, masters: list[Feature], slaves: list[Feature]) -> FeatureMatchingResult:
        """Match every master feature against the slave set."""
        pass


class Window2DMatcher(FeatureSetMatcher):
    """Inclusive mass × elution window matcher.

    A slave matches a master when
        min_mass_diff <= master.mass − slave.mass <= max_mass_diff
        min_elution_diff <= master.elution − slave.elution <= max_elution_diff
    with ppm mass windows taken relative to the master mass.
    """

    kind = 'window2d'

    def __init__(
        self,
        min_mass_diff: float = -DEFAULT_DELTA_MASS_PPM,
        max_mass_diff: float = DEFAULT_DELTA_MASS_PPM,
        delta_mass_type: str = DELTA_MASS_TYPE_PPM,
        min_elution_diff: float = -DEFAULT_DELTA_HYDROPHOBICITY,
        max_elution_diff: float = DEFAULT_DELTA_HYDROPHOBICITY,
        elution_mode: str = 'hydrophobicity',
        match_within_charge: bool = False,
        sort_by: str = 'elution',
    ):
        if delta_mass_type not in DELTA_MASS_TYPES:
            raise ValueError(f"Unknown delta mass type '{delta_mass_type}'. Options: {DELTA_MASS_TYPES}")
        if elution_mode not in ELUTION_MODES:
            raise ValueError(f"Unknown elution mode '{elution_mode}'. Options: {ELUTION_MODES}")
        if sort_by not in SORT_ORDERS:
            raise ValueError(f"Unknown sort order '{sort_by}'. Options: {SORT_ORDERS}")
        if min_mass_diff > max_mass_diff or min_elution_diff > max_elution_diff:
            raise ValueError("Window minimum exceeds maximum")
        self.min_mass_diff = min_mass_diff
        self.max_mass_diff = max_mass_diff
        self.delta_mass_type = delta_mass_type
        self.min_elution_diff = min_elution_diff
        self.max_elution_diff = max_elution_diff
        self.elution_mode = elution_mode
        self.match_within_charge = match_within_charge
        self.sort_by = sort_by

    @classmethod
    def symmetric(cls, delta_mass: float, delta_elution: float, **kwargs) -> Window2DMatcher:
        return cls(
            min_mass_diff=-delta_mass, max_mass_diff=delta_mass,
            min_elution_diff=-delta_elution, max_elution_diff=delta_elution,
            **kwargs,
        )

    @property
    def mass_window_area(self) -> float:
        return (self.max_mass_diff - self.min_mass_diff) * (self.max_elution_diff - self.min_elution_diff)

    def _elution_unbounded(self) -> bool:
        return math.isinf(self.min_elution_diff) and math.isinf(self.max_elution_diff)

    def match(self, masters: list[Feature], slaves: list[Feature]) -> FeatureMatchingResult:
        result = FeatureMatchingResult()
        if not masters or not slaves:
            return result

        sorted_slaves = sorted(slaves, key=lambda f: f.mass)
        slave_masses = np.array([f.mass for f in sorted_slaves])
        check_elution = not self._elution_unbounded()
        if check_elution:
            slave_elutions = [elution_value(f, self.elution_mode) for f in sorted_slaves]

        for master in masters:
            low_da = absolute_delta_mass(master.mass, self.min_mass_diff, self.delta_mass_type)
            high_da = absolute_delta_mass(master.mass, self.max_mass_diff, self.delta_mass_type)
            # master − slave in [low, high]  <=>  slave in [master − high, master − low]
            start = int(np.searchsorted(slave_masses, master.mass - high_da, side='left'))
            stop = int(np.searchsorted(slave_masses, master.mass - low_da, side='right'))
            if start >= stop:
                continue

            master_elution = elution_value(master, self.elution_mode) if check_elution else 0.0
            candidates = []
            for i in range(start, stop):
                slave = sorted_slaves[i]
                if self.match_within_charge and slave.charge != master.charge:
                    continue
                mass_diff = master.mass - slave.mass
                if mass_diff < low_da or mass_diff > high_da:
                    continue
                elution_diff = 0.0
                if check_elution:
                    elution_diff = master_elution - slave_elutions[i]
                    if elution_diff < self.min_elution_diff or elution_diff > self.max_elution_diff:
                        continue
                candidates.append((abs(elution_diff), abs(mass_diff), slave))

            if not candidates:
                continue
            if self.sort_by == 'quality':
                candidates.sort(key=lambda c: -c[2].peptide_prophet)
            else:
                candidates.sort(key=lambda c: (c[0], c[1]))
            result.put(master, [c[2] for c in candidates])

        logger.debug(f"{self.kind}: {len(result)} of {len(masters)} masters matched "
                     f"({result.num_pairs} pairs)")
        return result


class MassOnlyMatcher(Window2DMatcher):
    """Mass-window matcher with unrestricted elution; slaves ordered by mass error."""

    kind = 'mass_only'

    def __init__(
        self,
        delta_mass: float = DEFAULT_DELTA_MASS_PPM,
        delta_mass_type: str = DELTA_MASS_TYPE_PPM,
        match_within_charge: bool = False,
    ):
        super().__init__(
            min_mass_diff=-delta_mass,
            max_mass_diff=delta_mass,
            delta_mass_type=delta_mass_type,
            min_elution_diff=-math.inf,
            max_elution_diff=math.inf,
            elution_mode='time',
            match_within_charge=match_within_charge,
        )

    @staticmethod
    def best_matches(result: FeatureMatchingResult) -> list[tuple[Feature, Feature]]:
        """The closest-mass slave for every matched master."""
        return [
            (master, min(slaves, key=lambda s: abs(master.mass - s.mass)))
            for master, slaves in result.items()
        ]


MATCHER_KINDS: dict[str, type[FeatureSetMatcher]] = {
    Window2DMatcher.kind: Window2DMatcher,
    MassOnlyMatcher.kind: MassOnlyMatcher,
}


def create_matcher(kind: str, **params) -> FeatureSetMatcher:
    """Instantiate a registered matcher by name."""
    try:
        matcher_class = MATCHER_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown matcher kind '{kind}'. Options: {sorted(MATCHER_KINDS)}") from None
    return matcher_class(**params)
