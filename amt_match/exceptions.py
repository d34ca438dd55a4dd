"""Error taxonomy for AMT database construction and matching.

Data-integrity errors (UnresolvedModificationError, DegenerateInputError)
propagate to the caller. Calibration errors (InsufficientDataError,
SolverFailureError) are caught at the run level by the batch driver and turned
into skipped-run records. EM non-convergence is not an error: it is reported
on the fit result and logged as a warning.
"""


class AmtError(Exception):
    """Base class for all amt_match errors."""


class UnresolvedModificationError(AmtError):
    """An observed residue mass matches no modification declared for the run."""

    def __init__(self, peptide: str, position: int, residue: str, mass_diff: float):
        self.peptide = peptide
        self.position = position
        self.residue = residue
        self.mass_diff = mass_diff
        super().__init__(
            f"No modification declared for residue {residue} at position {position} "
            f"of {peptide} with mass difference {mass_diff:.4f}"
        )


class InsufficientDataError(AmtError):
    """Too few paired points for a regression or mixture fit."""

    def __init__(self, message: str, n_available: int | None = None, n_required: int | None = None):
        self.n_available = n_available
        self.n_required = n_required
        super().__init__(message)


class DegenerateInputError(AmtError):
    """Upstream data is unusable, e.g. no features or all elution times zero."""


class SolverFailureError(AmtError):
    """The regression service timed out, failed, or returned malformed output."""
