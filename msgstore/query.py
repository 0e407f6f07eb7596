"""Relative-time query predicates.

A predicate carries one typed parameter and never an absolute time: the
absolute bounds are computed from ``now`` each time the predicate is evaluated,
so one saved predicate can be re-run periodically with moving bounds.

Evaluation goes through an explicit operator table keyed by predicate name.
Each evaluator turns ``(predicate, now)`` into a SQL clause over the message
alias ``m`` plus its parameters.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from . import db
from .errors import InvalidArgument
from .schema import (
    MESSAGE_TAG_RELATIONSHIP,
    MESSAGE_TIMESTAMP_PROPERTY,
    TAG_CLASS,
    TAG_NAME_PROPERTY,
)

Clause = tuple[str, list[Any]]
Evaluator = Callable[["Identifier", float], Clause]

_OPERATORS: dict[str, Evaluator] = {}


class Identifier:
    """Base of every predicate: a name plus one typed parameter."""

    name: str = ""

    def value(self) -> Any:
        raise NotImplementedError


def _check_seconds(value: object, *, label: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidArgument(f"{label} must be a non-negative integer, got {value!r}")
    if value < 0:
        raise InvalidArgument(f"{label} must be a non-negative integer, got {value!r}")
    return value


@dataclass(frozen=True)
class Before(Identifier):
    """Messages timestamped at or before ``now - seconds``."""

    seconds: int
    name = "before"

    def __post_init__(self) -> None:
        _check_seconds(self.seconds, label="seconds")

    def value(self) -> int:
        return self.seconds


@dataclass(frozen=True)
class After(Identifier):
    """Messages timestamped at or after ``now - seconds``."""

    seconds: int
    name = "after"

    def __post_init__(self) -> None:
        _check_seconds(self.seconds, label="seconds")

    def value(self) -> int:
        return self.seconds


@dataclass(frozen=True)
class Between(Identifier):
    """Messages with ``now - older <= ts <= now - newer``."""

    window: tuple[int, int]
    name = "between"

    def __post_init__(self) -> None:
        if not isinstance(self.window, tuple) or len(self.window) != 2:
            raise InvalidArgument(f"window must be an (older, newer) pair, got {self.window!r}")
        older = _check_seconds(self.window[0], label="older")
        newer = _check_seconds(self.window[1], label="newer")
        if older < newer:
            raise InvalidArgument(f"older ({older}) must be >= newer ({newer})")

    def value(self) -> tuple[int, int]:
        return self.window


@dataclass(frozen=True)
class TaggedWith(Identifier):
    tag: str
    name = "tagged-with"

    def __post_init__(self) -> None:
        if not isinstance(self.tag, str) or not self.tag:
            raise InvalidArgument(f"tag must be a non-empty string, got {self.tag!r}")

    def value(self) -> str:
        return self.tag


@dataclass(frozen=True)
class AllOf(Identifier):
    predicates: tuple[Identifier, ...]
    name = "all-of"

    def __post_init__(self) -> None:
        if not isinstance(self.predicates, tuple) or not self.predicates:
            raise InvalidArgument("all-of needs at least one predicate")
        for predicate in self.predicates:
            if not isinstance(predicate, Identifier):
                raise InvalidArgument(f"not a predicate: {predicate!r}")

    def value(self) -> tuple[Identifier, ...]:
        return self.predicates


def register_operator(name: str, evaluator: Evaluator) -> bool:
    """Register ``evaluator`` under ``name`` unless the name is taken."""
    if name in _OPERATORS:
        return False
    _OPERATORS[name] = evaluator
    return True


def operator_names() -> list[str]:
    return sorted(_OPERATORS)


def evaluate(predicate: Identifier, now: float) -> Clause:
    if not isinstance(predicate, Identifier):
        raise InvalidArgument(f"not a predicate: {predicate!r}")
    evaluator = _OPERATORS.get(predicate.name)
    if evaluator is None:
        raise InvalidArgument(f"unknown predicate kind: {predicate.name!r}")
    return evaluator(predicate, now)


_TS = f"m.{MESSAGE_TIMESTAMP_PROPERTY}"


def _eval_before(predicate: Identifier, now: float) -> Clause:
    return f"{_TS} <= ?", [now - predicate.value()]


def _eval_after(predicate: Identifier, now: float) -> Clause:
    return f"{_TS} >= ?", [now - predicate.value()]


def _eval_between(predicate: Identifier, now: float) -> Clause:
    older, newer = predicate.value()
    return f"{_TS} >= ? AND {_TS} <= ?", [now - older, now - newer]


def tag_exists_clause(tag: str, *, negate: bool = False) -> Clause:
    clause = (
        f"EXISTS (SELECT 1 FROM {db.quote_ident(MESSAGE_TAG_RELATIONSHIP)} e "
        f"JOIN {db.quote_ident(TAG_CLASS)} t ON t.rid = e.in_rid "
        f"WHERE e.out_rid = m.rid AND t.{TAG_NAME_PROPERTY} = ?)"
    )
    if negate:
        clause = "NOT " + clause
    return clause, [tag]


def _eval_tagged_with(predicate: Identifier, now: float) -> Clause:
    return tag_exists_clause(predicate.value())


def _eval_all_of(predicate: Identifier, now: float) -> Clause:
    clauses: list[str] = []
    params: list[Any] = []
    for inner in predicate.value():
        clause, inner_params = evaluate(inner, now)
        clauses.append(f"({clause})")
        params.extend(inner_params)
    return " AND ".join(clauses), params


def register_builtin_operators() -> None:
    register_operator(Before.name, _eval_before)
    register_operator(After.name, _eval_after)
    register_operator(Between.name, _eval_between)
    register_operator(TaggedWith.name, _eval_tagged_with)
    register_operator(AllOf.name, _eval_all_of)


register_builtin_operators()
