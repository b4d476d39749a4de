# /chatflow/workflows/variables.py

import json
import re
from decimal import Decimal
from typing import Any, Dict, Optional

# Matches {{name}} and {name}; names may be dotted paths into dict values.
PLACEHOLDER_RE = re.compile(r"\{\{\s*([\w.]+)\s*\}\}|\{([\w.]+)\}")

_MISSING = object()


def stringify(value: Any) -> str:
    """Renders a variable value for interpolation into outgoing text."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value != value or value in (float("inf"), float("-inf")):
            return str(value)
        if value.is_integer():
            return str(int(value))
        return format(Decimal(repr(value)), "f")
    if isinstance(value, Decimal):
        return format(value, "f")
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)
    return str(value)


class VariableContext:
    """
    A view over a session's variable mapping. Writes go straight to the
    underlying dict, so later writes win.
    """

    def __init__(self, variables: Dict[str, Any]):
        self._vars = variables

    def get(self, name: Optional[str], default: Any = None) -> Any:
        if not name:
            return default
        if name in self._vars:
            return self._vars[name]
        value = self._lookup_path(name)
        return default if value is _MISSING else value

    def set(self, name: str, value: Any) -> None:
        self._vars[name] = value

    def pop(self, name: str) -> Any:
        return self._vars.pop(name, None)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._vars)

    def interpolate(self, template: Optional[str]) -> str:
        if not template:
            return ""

        def _replace(match: re.Match) -> str:
            name = match.group(1) or match.group(2)
            return stringify(self.get(name))

        return PLACEHOLDER_RE.sub(_replace, template)

    def _lookup_path(self, path: str) -> Any:
        parts = path.split(".")
        current: Any = self._vars
        for part in parts:
            if isinstance(current, dict) and part in current:
                current = current[part]
            elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
                current = current[int(part)]
            else:
                return _MISSING
        return current
