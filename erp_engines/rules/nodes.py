"""
Expression tree nodes for the rule language.

Nodes are frozen dataclasses.  ``source()`` renders a node back into
canonical expression text; the renderer is used for predicate traces in
the execution log and for error messages, and re-parsing its output yields
an equal tree.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any


class Node:
    """Base class for every expression node."""

    def source(self) -> str:
        raise NotImplementedError

    def children(self) -> tuple[Node, ...]:
        return ()

    def walk(self):
        """Depth-first iteration over this node and its descendants."""
        yield self
        for child in self.children():
            yield from child.walk()


def _render_literal(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, (date, datetime)):
        return f'date("{value.isoformat()}")'
    if isinstance(value, (list, tuple)):
        return "[" + ", ".join(_render_literal(v) for v in value) + "]"
    if isinstance(value, str):
        return json.dumps(value)
    return json.dumps(str(value))


@dataclass(frozen=True)
class Literal(Node):
    value: Any

    def source(self) -> str:
        return _render_literal(self.value)


@dataclass(frozen=True)
class Field(Node):
    """Entity field reference; ``path`` is the dotted path split into parts."""

    path: tuple[str, ...]

    def source(self) -> str:
        return ".".join(self.path)


@dataclass(frozen=True)
class Variable(Node):
    """``$name`` -- a named variable or a function parameter."""

    name: str

    def source(self) -> str:
        return f"${self.name}"


@dataclass(frozen=True)
class ListExpr(Node):
    items: tuple[Node, ...]

    def source(self) -> str:
        return "[" + ", ".join(item.source() for item in self.items) + "]"

    def children(self) -> tuple[Node, ...]:
        return self.items


@dataclass(frozen=True)
class Unary(Node):
    op: str  # "not" | "-"
    operand: Node

    def source(self) -> str:
        if self.op == "not":
            return f"not {self.operand.source()}"
        return f"-{self.operand.source()}"

    def children(self) -> tuple[Node, ...]:
        return (self.operand,)


@dataclass(frozen=True)
class Binary(Node):
    """Arithmetic, comparison and boolean connectives."""

    op: str
    left: Node
    right: Node

    def source(self) -> str:
        return f"({self.left.source()} {self.op} {self.right.source()})"

    def children(self) -> tuple[Node, ...]:
        return (self.left, self.right)

    @property
    def is_comparison(self) -> bool:
        return self.op in COMPARISON_OPS


@dataclass(frozen=True)
class Call(Node):
    name: str
    args: tuple[Node, ...]

    def source(self) -> str:
        return f"{self.name}(" + ", ".join(a.source() for a in self.args) + ")"

    def children(self) -> tuple[Node, ...]:
        return self.args


@dataclass(frozen=True)
class Member(Node):
    """``target.name`` applied to a computed value."""

    target: Node
    name: str

    def source(self) -> str:
        return f"{self.target.source()}.{self.name}"

    def children(self) -> tuple[Node, ...]:
        return (self.target,)


@dataclass(frozen=True)
class Index(Node):
    target: Node
    index: Node

    def source(self) -> str:
        return f"{self.target.source()}[{self.index.source()}]"

    def children(self) -> tuple[Node, ...]:
        return (self.target, self.index)


COMPARISON_OPS = frozenset({"=", "!=", "<", "<=", ">", ">=", "in", "not in", "matches"})
ARITHMETIC_OPS = frozenset({"+", "-", "*", "/", "%"})
BOOLEAN_OPS = frozenset({"and", "or"})
