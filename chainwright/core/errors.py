"""Error taxonomy shared by the coordinator, runner and scenario solver.

Transient failures are retried locally; structural failures abort the run
immediately. Not-found is never an exception: the store returns the
``NOT_FOUND`` sentinel instead.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Standard error codes carried by every chainwright error."""

    TRANSIENT = "TRANSIENT"
    TIMEOUT = "TIMEOUT"
    NOT_FOUND = "NOT_FOUND"
    PRECONDITION = "PRECONDITION"
    STRUCTURAL = "STRUCTURAL"
    IMPORT_FAILED = "IMPORT_FAILED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    SCENARIO_FAILED = "SCENARIO_FAILED"


class ChainwrightError(Exception):
    """Base class for all errors raised by chainwright."""

    code: ErrorCode = ErrorCode.TRANSIENT
    retryable: bool = True

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code.value, "message": self.message, "details": self.details}


# ── Transient (retryable) ────────────────────────────────────────────────────


class TransientError(ChainwrightError):
    """Network or backend hiccup; safe to retry."""

    code = ErrorCode.TRANSIENT


class AttemptTimeoutError(TransientError):
    """A single attempt exceeded its caller-specified time limit."""

    code = ErrorCode.TIMEOUT


class ImportFailedError(TransientError):
    """The block explorer did not return a usable build description."""

    code = ErrorCode.IMPORT_FAILED


# ── Structural (fatal) ───────────────────────────────────────────────────────


class StructuralError(ChainwrightError):
    """Misconfiguration that no amount of retrying will fix."""

    code = ErrorCode.STRUCTURAL
    retryable = False


class MissingDeployScriptError(StructuralError):
    pass


class MalformedMigrationError(StructuralError):
    pass


class UnsupportedNetworkError(StructuralError):
    pass


class InvalidAddressError(StructuralError):
    pass


class UnverifiedContractError(ChainwrightError):
    """The explorer answered, but holds no verified source for the address."""

    code = ErrorCode.NOT_FOUND
    retryable = False


# ── Other ────────────────────────────────────────────────────────────────────


class VerificationError(ChainwrightError):
    """Source verification of a deployed contract failed."""

    code = ErrorCode.VERIFICATION_FAILED


class ScenarioFailure(ChainwrightError):
    """A scenario combination aborted; carries the subset and last error."""

    code = ErrorCode.SCENARIO_FAILED

    def __init__(self, scenario: str, subset: list[str], error: BaseException) -> None:
        super().__init__(
            f"Scenario '{scenario}' failed with migrations {subset}: {error!r}",
            details={"scenario": scenario, "subset": list(subset), "error": repr(error)},
        )
        self.scenario = scenario
        self.subset = list(subset)
        self.error = error


def is_retryable(exc: BaseException) -> bool:
    """Return True unless the exception is marked as not worth retrying."""
    return getattr(exc, "retryable", True)
