from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

NAME_FIELDS: tuple[str, str, str, str] = ("backend", "object", "action", "status")


def event_name(fields: Mapping[str, Any], sep: str = "_") -> str:
    """Join backend, object, action and status into the event's name.

    `_` is used to look up rules, `.` to namespace metrics.
    """

    return sep.join(str(fields[key]) for key in NAME_FIELDS)


def missing_name_fields(fields: Mapping[str, Any]) -> list[str]:
    return [key for key in NAME_FIELDS if fields.get(key) in (None, "")]


class Event(BaseModel):
    """A single occurrence requiring action.

    Events are stored as free-form documents: action-specific keys (`queue`,
    `command`, `data`, lookup keys for rules) live next to the declared
    fields and are kept on round-trips.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True, coerce_numbers_to_str=True)

    id: str | None = Field(default=None, alias="_id")
    rev: str | None = Field(default=None, alias="_rev")
    type: str = "event"

    backend: str
    object: str
    action: str
    status: str

    timestamp: int | None = None
    when: int | None = None
    parsed: Any = None
    raw: Any = None
    processed: int | None = None
    error: str | None = None
    job_id: str | None = None

    def name(self, sep: str = "_") -> str:
        return event_name(self.model_dump(include=set(NAME_FIELDS)), sep)

    @property
    def metric_namespace(self) -> str:
        return "event." + self.name(".")

    def field(self, key: str) -> Any:
        """Read a declared or free-form field; falls back to the parsed payload."""

        if key in type(self).model_fields:
            value = getattr(self, key)
            if value is not None:
                return value
        extra = self.model_extra or {}
        if key in extra:
            return extra[key]
        if isinstance(self.parsed, Mapping):
            return self.parsed.get(key)
        return None

    def to_doc(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class Conditions(BaseModel):
    """Business-rule guards evaluated against a job message before resuming it."""

    model_config = ConfigDict(extra="forbid")

    log: str | None = None
    workflow: str | None = None
    status: dict[str, str] = Field(default_factory=dict)
    not_present: dict[str, Any] = Field(default_factory=dict)

    def is_empty(self) -> bool:
        return self.log is None and self.workflow is None and not self.status and not self.not_present


class Rule(BaseModel):
    """A case file: what to do when an event with a given name arrives.

    Action parameters may be given flat or nested under `action`; both
    shapes are normalised to flat fields.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    id: str | None = Field(default=None, alias="_id")
    action_type: str
    fallback_action_type: str | None = None

    workflow: str | None = None
    platform: str | None = None
    transport: str | None = None
    room: str | None = None
    severity: str | None = None
    message: str | None = None
    view: str | None = None
    key: str | None = None
    conditions: Conditions | None = None
    reopen: bool = False
    mode: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_action(cls, data: Any) -> Any:
        if isinstance(data, Mapping) and isinstance(data.get("action"), Mapping):
            flat = dict(data)
            nested = flat.pop("action")
            for key, value in nested.items():
                flat.setdefault(key, value)
            return flat
        return data


class MuteList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_list: list[str] = Field(default_factory=list)

    def is_muted(self, name: str) -> bool:
        return name in self.event_list
