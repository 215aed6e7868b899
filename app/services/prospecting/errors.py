"""Error taxonomy for the prospect research pipeline."""

from __future__ import annotations

from enum import Enum


class PassErrorCode(str, Enum):
    """Pass-local failure reasons. None of them abort a pipeline run."""

    MISSING_DEPENDENCY = "missing_dependency"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    SOURCE_UNAVAILABLE = "source_unavailable"
    NO_DATA_FOUND = "no_data_found"
    # Informational only: surfaced on ResolvedField.conflicted, never raised.
    CONFLICT_UNRESOLVED = "conflict_unresolved"


def missing_dependency_error(field: str) -> str:
    return f"missing dependency: {field}"


def source_unavailable_error(reason: str | None = None) -> str:
    if not reason:
        return PassErrorCode.SOURCE_UNAVAILABLE.value
    return f"{PassErrorCode.SOURCE_UNAVAILABLE.value}: {reason}"


class ProspectingError(RuntimeError):
    """Base exception for contract violations and infrastructure failures."""

    def __init__(self, message: str, code: str = "PROSPECTING_ERROR") -> None:
        super().__init__(message)
        self.code = code


class UnknownPassError(ProspectingError):
    """Raised when a caller requests a pass id that is not declared."""

    def __init__(self, pass_ids: list[int]) -> None:
        joined = ", ".join(str(pass_id) for pass_id in pass_ids)
        super().__init__(f"Unknown pass id(s): {joined}", code="E_UNKNOWN_PASS")
        self.pass_ids = pass_ids


class InvalidPassPlanError(ProspectingError):
    """Raised when pass specs are malformed (for example duplicate ids)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="E_INVALID_PASS_PLAN")


class AttemptPersistenceError(ProspectingError):
    """Raised when the attempt log cannot be read or appended."""


class SourceUnavailableError(ProspectingError):
    """Raised by source adapters on hard failures such as bad credentials."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=PassErrorCode.SOURCE_UNAVAILABLE.value)


class RubricError(ProspectingError):
    """Raised when the qualification rubric cannot be loaded."""
