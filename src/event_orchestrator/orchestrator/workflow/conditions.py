"""Guards evaluated against a job message before an event may resume it.

Paths address nested values with `->`, e.g. `data->result->code`. A path
that cannot be followed resolves to `ABSENT`, which never matches anything.
"""

from __future__ import annotations

from collections.abc import Mapping, MutableMapping, Sequence
from typing import Any, Final

from event_orchestrator.orchestrator.errors import ConditionFailure
from event_orchestrator.orchestrator.workflow.events import Conditions

PATH_SEPARATOR: Final = "->"


class _Absent:
    _instance: _Absent | None = None

    def __new__(cls) -> _Absent:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT: Final = _Absent()


def resolve_path(tree: Any, path: str) -> Any:
    """Follow `path` through nested mappings (and sequences, by index)."""

    node = tree
    for segment in path.split(PATH_SEPARATOR):
        segment = segment.strip()
        if isinstance(node, Mapping):
            if segment not in node:
                return ABSENT
            node = node[segment]
        elif isinstance(node, Sequence) and not isinstance(node, str | bytes):
            try:
                node = node[int(segment)]
            except (ValueError, IndexError):
                return ABSENT
        else:
            return ABSENT
    return node


def prefix_match(value: Any, expected: Any) -> bool:
    """Case-insensitive "value starts with expected"."""

    if value is ABSENT or value is None:
        return False
    return str(value).lower().startswith(str(expected).lower())


def _failure(conditions: Conditions, message: Mapping[str, Any]) -> ConditionFailure | None:
    meta = message.get("meta")
    meta = meta if isinstance(meta, Mapping) else {}

    log = meta.get("log")
    if not isinstance(log, list) or not log:
        return ConditionFailure("missing log path")

    if conditions.log is not None and log[-1] != conditions.log:
        return ConditionFailure(
            f"condition log failed: last worker is '{log[-1]}', expected '{conditions.log}'"
        )

    if conditions.workflow is not None:
        workflow = meta.get("workflow", ABSENT)
        if not prefix_match(workflow, conditions.workflow):
            return ConditionFailure(
                f"condition workflow failed: '{workflow}' does not match '{conditions.workflow}'"
            )

    for path, expected in conditions.status.items():
        value = resolve_path(message, path)
        if not prefix_match(value, expected):
            return ConditionFailure(
                f"condition status failed: '{path}' is '{value}', expected '{expected}'"
            )

    for path, forbidden in conditions.not_present.items():
        value = resolve_path(message, path)
        if value is not ABSENT and value == forbidden:
            return ConditionFailure(f"condition not_present failed: '{path}' is '{value}'")

    return None


def check_conditions(
    message: MutableMapping[str, Any], conditions: Conditions | Mapping[str, Any]
) -> MutableMapping[str, Any]:
    """Evaluate `conditions`; on the first failure set `message["error"]`."""

    if not isinstance(conditions, Conditions):
        conditions = Conditions.model_validate(conditions)

    failure = _failure(conditions, message)
    if failure is not None:
        message["error"] = str(failure)
    return message
