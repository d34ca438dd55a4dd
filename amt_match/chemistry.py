"""Peptide chemistry: residue masses, modifications and predicted hydrophobicity.

Masses are monoisotopic (IUPAC/Unimod tables). Hydrophobicity prediction uses
Krokhin-style retention coefficients: a sum of per-residue coefficients with
N-terminal position corrections, a peptide-length factor and compression of
very hydrophobic values, then z-scored against reference statistics so that
predicted and observed values live on the same normalized scale.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# Two modifications closer than this (Da) are the same modification
MASS_EQUALITY_TOLERANCE = 0.1

# Decimal places kept for residue masses in modified-sequence strings
MODIFIED_MASS_DECIMALS = 1

H2O_MASS = 18.010564684
PROTON_MASS = 1.007276466622

RESIDUE_MASSES = {
    'A': 71.037114,
    'R': 156.101111,
    'N': 114.042927,
    'D': 115.026943,
    'C': 103.009185,
    'E': 129.042593,
    'Q': 128.058578,
    'G': 57.021464,
    'H': 137.058912,
    'I': 113.084064,
    'L': 113.084064,
    'K': 128.094963,
    'M': 131.040485,
    'F': 147.068414,
    'P': 97.052764,
    'S': 87.032028,
    'T': 101.047679,
    'W': 186.079313,
    'Y': 163.063320,
    'V': 99.068414,
}

# Residue codes that make a sequence ambiguous for AMT purposes
AMBIGUOUS_RESIDUES = frozenset('XBZJ')

# =============================================================================
# Hydrophobicity prediction
# =============================================================================

HYDROPHOBICITY_ALGORITHM = 'krokhin'
HYDROPHOBICITY_ALGORITHM_VERSION = 1.0

# Reference statistics of raw predictions, used for normalization
KROKHIN_MEAN = 30.763700485229492
KROKHIN_STDDEV = 21.886646343829856

_RETENTION_COEFFICIENTS = {
    'W': 11.0, 'F': 10.5, 'L': 9.6, 'I': 8.4, 'M': 5.8,
    'V': 5.0, 'Y': 4.0, 'C': -0.8, 'P': 0.2, 'A': 0.8,
    'E': 0.0, 'T': 0.4, 'D': -0.5, 'Q': -0.9, 'S': -0.8,
    'G': -0.9, 'R': -1.3, 'N': -1.2, 'H': -1.3, 'K': -1.9,
}

_N_TERMINAL_COEFFICIENTS = {
    'W': -4.0, 'F': -7.0, 'L': -9.0, 'I': -8.0, 'M': -5.5,
    'V': -5.7, 'Y': -3.0, 'C': 4.0, 'P': 4.0, 'A': -1.5,
    'E': 7.0, 'T': 5.0, 'D': 9.0, 'Q': 1.0, 'S': 5.0,
    'G': 5.0, 'R': 8.0, 'N': 5.0, 'H': 4.0, 'K': 4.6,
}

# Weights of the N-terminal correction for positions 1, 2, 3
_N_TERMINAL_WEIGHTS = (0.42, 0.22, 0.05)


def predict_raw_hydrophobicity(sequence: str) -> float:
    """Raw retention-coefficient hydrophobicity of an unmodified sequence."""
    sequence = sequence.upper()
    unknown = set(sequence) - set(_RETENTION_COEFFICIENTS)
    if unknown:
        raise ValueError(f"Cannot predict hydrophobicity for {sequence}: unknown residues {sorted(unknown)}")

    n = len(sequence)
    total = sum(_RETENTION_COEFFICIENTS[aa] for aa in sequence)
    for weight, aa in zip(_N_TERMINAL_WEIGHTS, sequence):
        total += weight * _N_TERMINAL_COEFFICIENTS[aa]

    if n < 10:
        length_factor = 1 - 0.027 * (10 - n)
    elif n > 20:
        length_factor = 1 - 0.014 * (n - 20)
    else:
        length_factor = 1.0
    h = length_factor * total

    if h > 38:
        h = h - 0.3 * (h - 38)
    return h


def normalize_hydrophobicity(raw: float) -> float:
    """Z-score a raw prediction against the reference statistics."""
    return (raw - KROKHIN_MEAN) / KROKHIN_STDDEV


def predict_hydrophobicity(sequence: str) -> float:
    """Normalized predicted hydrophobicity of a peptide sequence."""
    return normalize_hydrophobicity(predict_raw_hydrophobicity(sequence))


# =============================================================================
# Masses and modifications
# =============================================================================

def peptide_mass(sequence: str) -> float:
    """Monoisotopic neutral mass of an unmodified peptide."""
    try:
        return sum(RESIDUE_MASSES[aa] for aa in sequence.upper()) + H2O_MASS
    except KeyError as e:
        raise ValueError(f"Unknown residue {e.args[0]!r} in peptide {sequence}") from None


def is_unambiguous(sequence: str) -> bool:
    """True if the sequence contains no ambiguous residue codes."""
    return not (set(sequence.upper()) & AMBIGUOUS_RESIDUES)


@dataclass(frozen=True)
class AminoAcidModification:
    """A declared modification: residue, mass delta and static/variable flag."""

    residue: str
    mass_diff: float
    variable: bool = False
    symbol: str = ''

    def is_equivalent(
        self,
        other: AminoAcidModification,
        tolerance: float = MASS_EQUALITY_TOLERANCE,
    ) -> bool:
        """Same residue, same variable flag, mass deltas strictly within tolerance."""
        return (
            self.residue.upper() == other.residue.upper()
            and self.variable == other.variable
            and abs(self.mass_diff - other.mass_diff) < tolerance
        )

    @property
    def modified_residue_mass(self) -> float:
        return RESIDUE_MASSES[self.residue.upper()] + self.mass_diff

    def __str__(self) -> str:
        kind = 'V' if self.variable else 'S'
        return f"{self.residue}{self.mass_diff:+.4f}{kind}"


@dataclass(frozen=True)
class ModifiedAminoAcid:
    """An observed modified residue: letter plus total residue mass."""

    residue: str
    mass: float


_MODIFICATION_PATTERN = re.compile(r'^([A-Za-z])([+-]?\d+(?:\.\d+)?)([VvSs]?)$')


def parse_modification(text: str) -> AminoAcidModification:
    """Parse 'C57.021464' (static) or 'M15.994915V' (variable)."""
    match = _MODIFICATION_PATTERN.match(text.strip())
    if not match:
        raise ValueError(f"Cannot parse modification '{text}'; expected e.g. C57.021464 or M15.994915V")
    residue, mass, kind = match.groups()
    return AminoAcidModification(
        residue=residue.upper(),
        mass_diff=float(mass),
        variable=kind.upper() == 'V',
    )


def modifications_from_config(entries: list) -> list[AminoAcidModification]:
    """Build modifications from config entries (dicts or compact strings)."""
    modifications = []
    for entry in entries or []:
        if isinstance(entry, str):
            modifications.append(parse_modification(entry))
        else:
            modifications.append(AminoAcidModification(
                residue=str(entry['residue']).upper(),
                mass_diff=float(entry['mass_diff']),
                variable=bool(entry.get('variable', False)),
                symbol=str(entry.get('symbol', '')),
            ))
    return modifications


def format_modified_sequence(sequence: str, position_mass_diffs: dict[int, float]) -> str:
    """Canonical modified-sequence key.

    Residues with a nonzero total mass delta are followed by the modified
    residue mass in brackets, rounded to MODIFIED_MASS_DECIMALS.

    Args:
        sequence: Unmodified peptide sequence
        position_mass_diffs: 0-based position -> summed mass delta at that position

    Returns:
        e.g. "PEPC[160.0]TIDEK"
    """
    parts = []
    for i, aa in enumerate(sequence):
        parts.append(aa)
        diff = position_mass_diffs.get(i, 0.0)
        if diff != 0.0:
            mass = round(RESIDUE_MASSES[aa.upper()] + diff, MODIFIED_MASS_DECIMALS)
            parts.append(f"[{mass:.{MODIFIED_MASS_DECIMALS}f}]")
    return ''.join(parts)


def position_mass_diffs(
    sequence: str,
    modifications: list[AminoAcidModification],
) -> dict[int, float]:
    """Apply each modification to every occurrence of its residue.

    Returns:
        0-based position -> summed mass delta, only for modified positions
    """
    diffs: dict[int, float] = {}
    upper = sequence.upper()
    for mod in modifications:
        residue = mod.residue.upper()
        for i, aa in enumerate(upper):
            if aa == residue:
                diffs[i] = diffs.get(i, 0.0) + mod.mass_diff
    return diffs


def modified_amino_acids_for(
    sequence: str,
    modifications: list[AminoAcidModification],
) -> dict[int, ModifiedAminoAcid]:
    """Per-position modified residue annotations for a modification set."""
    return {
        i: ModifiedAminoAcid(sequence[i].upper(), RESIDUE_MASSES[sequence[i].upper()] + diff)
        for i, diff in sorted(position_mass_diffs(sequence, modifications).items())
    }
