from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from nodule.kernel.errors import InvalidActionError

# Built-in reader tags. "ignore" is accepted everywhere but never registered.
CAPTURE = "capture"
DRAIN = "drain"
IGNORE = "ignore"

READER_TAGS = frozenset({CAPTURE, DRAIN, IGNORE})

ActionKind = Literal["callable", "capture", "drain", "symbol"]


@dataclass(frozen=True, slots=True)
class Ref:
    # Symbolic reference to a topology entry, resolved lazily by name.
    name: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name:
            raise ValueError("Ref.name must be a non-empty string")

    def __str__(self) -> str:
        return f":{self.name}"


@dataclass(frozen=True, slots=True)
class ReaderAction:
    kind: ActionKind
    target: Callable[..., object] | None = None
    symbol: str | None = None
    wants_source: bool = False


@dataclass(frozen=True, slots=True)
class WriterAction:
    target: Callable[[], object]


def reader_action(action: object) -> ReaderAction | None:
    # Normalize one reader action; None means "registered as nothing" (ignore).
    if isinstance(action, Ref):
        return ReaderAction(kind="symbol", symbol=action.name)
    if isinstance(action, str):
        if action == CAPTURE:
            return ReaderAction(kind="capture")
        if action == DRAIN:
            return ReaderAction(kind="drain")
        if action == IGNORE:
            return None
        raise InvalidActionError(f"Invalid reader action tag: '{action}' (use Ref('{action}') for symbols)")
    if callable(action):
        return ReaderAction(kind="callable", target=action, wants_source=accepts_source(action))
    raise InvalidActionError(f"Invalid reader action class: {type(action).__name__}")


def writer_action(action: object) -> WriterAction | None:
    if isinstance(action, str) and action == IGNORE:
        return None
    if isinstance(action, (str, Ref)):
        raise InvalidActionError(f"Invalid writer action: {action!r}")
    if callable(action):
        return WriterAction(target=action)
    raise InvalidActionError(f"Invalid writer action class: {type(action).__name__}")


def flatten_actions(actions: object) -> list[object]:
    # Lists and tuples nest; everything else is a single action.
    if actions is None:
        return []
    if isinstance(actions, (list, tuple)):
        flat: list[object] = []
        for item in actions:
            flat.extend(flatten_actions(item))
        return flat
    return [actions]


def accepts_source(func: Callable[..., object]) -> bool:
    # Two or more named positional parameters means the callable also wants the source node.
    # *args does not count, so print-like callables receive only the item.
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        return False
    positional = 0
    for param in signature.parameters.values():
        if param.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
            positional += 1
    return positional >= 2
