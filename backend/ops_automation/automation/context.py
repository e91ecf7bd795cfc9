"""Evaluation context for trigger conditions."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

_MISSING = object()


@dataclass
class EvaluationContext:
    """Snapshot a condition is evaluated against.

    Attributes:
        entity: The entity's current (after) field snapshot
        old_values: The snapshot before the mutation, if any
        now: Evaluation time for temporal and interval conditions
        last_run_at: When the rule last ran successfully
    """

    entity: dict[str, Any]
    old_values: dict[str, Any] | None
    now: datetime
    last_run_at: datetime | None = None

    def resolve_path(self, path: str, snapshot: dict[str, Any] | None = None) -> Any:
        """Resolve a dotted field path to a value.

        Paths can be:
        - "status" -> entity["status"]
        - "this.status" -> entity["status"]
        - "client.email" -> entity["client"]["email"]

        A path not found at the top level is also looked up under a nested
        "properties" dict, which is how stored entities carry their fields.

        Returns:
            Resolved value, or None if the path does not resolve
        """
        value = self._lookup(path, self.entity if snapshot is None else snapshot)
        return None if value is _MISSING else value

    def has_path(self, path: str, snapshot: dict[str, Any] | None = None) -> bool:
        return self._lookup(path, self.entity if snapshot is None else snapshot) is not _MISSING

    @staticmethod
    def _lookup(path: str, root: dict[str, Any] | None) -> Any:
        if root is None:
            return _MISSING
        parts = path.split(".")
        if parts and parts[0] == "this":
            parts = parts[1:]
        if not parts:
            return _MISSING

        obj: Any = root
        for i, part in enumerate(parts):
            if not isinstance(obj, dict):
                return _MISSING
            if part in obj:
                obj = obj[part]
            elif i == 0 and isinstance(obj.get("properties"), dict) and part in obj["properties"]:
                obj = obj["properties"][part]
            else:
                return _MISSING
        return obj
