"""Model action parsing.

The reasoning model answers with a single call expression, either
``do(action="Tap", element=[500, 120])`` or ``finish(message="Done")``.
Arguments must be Python literals; anything else is rejected.
"""

import ast
from dataclasses import dataclass, field
from typing import Any

# `do` actions that never carry a confirmation prompt even when they have
# a ``message`` argument.
_NON_SENSITIVE = {"Take_over", "Interact", "Note", "Call_API"}


@dataclass(frozen=True)
class ParsedAction:
    metadata: str
    params: dict[str, Any] = field(default_factory=dict)

    @property
    def is_finish(self) -> bool:
        return self.metadata == "finish"

    @property
    def is_do(self) -> bool:
        return self.metadata == "do"

    @property
    def action_type(self) -> str | None:
        value = self.params.get("action")
        return value if isinstance(value, str) else None

    @property
    def is_takeover(self) -> bool:
        return self.is_do and self.action_type == "Take_over"

    @property
    def is_sensitive(self) -> bool:
        """A `do` action that asks the user to confirm before it runs."""
        return (
            self.is_do
            and self.action_type not in _NON_SENSITIVE
            and isinstance(self.params.get("message"), str)
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self.params.get(key, default)

    def get_string(self, key: str) -> str | None:
        value = self.params.get(key)
        return None if value is None else str(value)

    def get_int_list(self, key: str) -> list[int] | None:
        value = self.params.get(key)
        if not isinstance(value, (list, tuple)) or not value:
            return None
        try:
            return [int(v) for v in value]
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class ActionResult:
    success: bool
    should_finish: bool = False
    message: str | None = None


def finish_action(message: str) -> ParsedAction:
    """Synthetic finish used when the model output cannot be parsed."""
    return ParsedAction(metadata="finish", params={"message": message})


def parse_action(text: str) -> ParsedAction:
    """Parse a model answer into a ParsedAction. Raises ValueError."""
    source = (text or "").strip()
    if not source:
        raise ValueError("Empty action")

    # Models sometimes wrap the call in a code fence or trailing prose.
    if source.startswith("```"):
        source = source.strip("`").strip()
        if source.startswith("python"):
            source = source[len("python"):].strip()
    starts = [i for i in (source.find("do("), source.find("finish(")) if i >= 0]
    if starts and min(starts) > 0:
        source = source[min(starts):]
    end = source.rfind(")")
    if end >= 0:
        source = source[: end + 1]

    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ValueError(f"Malformed action: {text!r}") from e

    call = tree.body
    if not isinstance(call, ast.Call) or not isinstance(call.func, ast.Name):
        raise ValueError(f"Action is not a call: {text!r}")
    if call.func.id not in ("do", "finish"):
        raise ValueError(f"Unknown action kind: {call.func.id}")
    if call.args:
        raise ValueError("Action arguments must be passed by keyword")

    params: dict[str, Any] = {}
    for kw in call.keywords:
        if kw.arg is None:
            raise ValueError("Action arguments must be passed by keyword")
        try:
            params[kw.arg] = ast.literal_eval(kw.value)
        except ValueError as e:
            raise ValueError(f"Non-literal value for '{kw.arg}'") from e

    if call.func.id == "do" and not isinstance(params.get("action"), str):
        raise ValueError("do() requires an 'action' argument")

    return ParsedAction(metadata=call.func.id, params=params)
