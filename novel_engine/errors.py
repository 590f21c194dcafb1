"""Engine exception taxonomy.

  CallerError      — bad input or unauthorised access; surfaced, never retried
  ResourceError    — insufficient balance; carries the numbers for a top-up prompt
  BackendError     — generation backend failures; absorbed by the fallback
  IntegrityError   — content that fails graph validation
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from novel_engine.graph import ValidationReport


class NovelEngineError(Exception):
    """Base class for every error the engine raises on purpose."""


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------

class CallerError(NovelEngineError):
    pass


class InvalidInput(CallerError):
    pass


class SessionNotFound(CallerError):
    pass


class SessionOwnershipError(CallerError):
    """The session belongs to another user."""


class SessionPersonaMismatchError(CallerError):
    """The session belongs to another character."""


class SessionEnded(CallerError):
    pass


class StaleSession(CallerError):
    """The session moved on (another turn committed first)."""


class AlreadyInProgress(CallerError):
    pass


class ScenarioNotFound(CallerError):
    pass


class CharacterNotFound(CallerError):
    pass


class ScenarioLocked(CallerError):
    """The scenario's stage/affection/prerequisite gates are not met."""


# ---------------------------------------------------------------------------
# Resource errors
# ---------------------------------------------------------------------------

class ResourceError(NovelEngineError):
    pass


class InsufficientBalance(ResourceError):
    def __init__(self, current: int, required: int) -> None:
        super().__init__(f"Balance {current} is below the required {required}")
        self.current = current
        self.required = required


# ---------------------------------------------------------------------------
# Backend errors
# ---------------------------------------------------------------------------

class BackendError(NovelEngineError):
    pass


class LLMError(BackendError):
    """Raised when the LLM backend cannot be reached or returns an error."""


class MalformedOutput(BackendError):
    """The backend answered, but not with a usable beat."""


class BackendUnavailable(BackendError):
    """No beat could be produced and the fallback is disabled."""


# ---------------------------------------------------------------------------
# Integrity errors + graph traversal
# ---------------------------------------------------------------------------

class IntegrityError(NovelEngineError):
    pass


class ScenarioValidationError(IntegrityError):
    def __init__(self, report: ValidationReport) -> None:
        super().__init__("; ".join(report.errors) or "Scenario failed validation")
        self.report = report


class InvalidTransition(NovelEngineError):
    """A scene or choice could not be resolved during advance()."""


class UnknownChoice(InvalidTransition, CallerError):
    pass


class DanglingReference(InvalidTransition, IntegrityError):
    pass
