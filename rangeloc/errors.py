"""Exception hierarchy for robust source estimation."""

from __future__ import annotations


class EstimatorError(Exception):
    """Base class for every error raised by rangeloc."""


class InvalidArgumentError(EstimatorError, ValueError):
    """A configuration value or input is outside its valid range."""


class LockedError(EstimatorError):
    """A mutator or estimate() was called while an estimation is running."""


class NotReadyError(EstimatorError):
    """estimate() was called before enough readings were provided."""


class FitError(EstimatorError):
    """A minimal sample could not produce a candidate position."""


class NoConsensusError(EstimatorError):
    """The iteration budget ran out without a usable consensus set."""


class NumericalError(EstimatorError):
    """Refinement diverged or its normal matrix is not positive definite."""
