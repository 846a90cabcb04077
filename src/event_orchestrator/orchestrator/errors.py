"""Error taxonomy.

Only `ValidationError` and `StoreError` are raised across public operations.
Inside the dispatch boundary every error is recorded as data: the `str()` of
the error becomes the `error` field of the affected event or job.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import ValidationError as PydanticValidationError


class EngineError(Exception):
    """Base class for engine errors."""


class ValidationError(EngineError):
    """Malformed input to a public operation; nothing was written."""

    def __init__(self, message: str, missing: tuple[str, ...] = ()) -> None:
        super().__init__(message, missing)
        self.message = message
        self.missing = tuple(missing)

    @classmethod
    def from_pydantic(cls, message: str, error: PydanticValidationError) -> ValidationError:
        """Name each offending field by its dotted location, e.g. `conditions.state`."""

        fields = tuple(
            ".".join(str(part) for part in err["loc"]) for err in error.errors() if err["loc"]
        )
        return cls(message, missing=fields)

    def __str__(self) -> str:
        if self.missing:
            return f"{self.message}: {', '.join(self.missing)}"
        return self.message


class StoreError(EngineError):
    """The document store rejected or failed a request.

    The store's own message is kept verbatim.
    """


@dataclass(frozen=True, slots=True)
class RuleNotFoundError(EngineError):
    event_name: str

    def __str__(self) -> str:
        return f"no rule defined for event '{self.event_name}'"


@dataclass(frozen=True, slots=True)
class LockConflictError(EngineError):
    lock: str
    holder: str

    def __str__(self) -> str:
        return f"{self.lock} cannot acquire lock held by {self.holder}"


@dataclass(frozen=True, slots=True)
class ConditionFailure(EngineError):
    reason: str

    def __str__(self) -> str:
        return self.reason


@dataclass(frozen=True, slots=True)
class UnknownActionType(EngineError):
    action_type: str

    def __str__(self) -> str:
        return f"unknown action_type: {self.action_type}"
