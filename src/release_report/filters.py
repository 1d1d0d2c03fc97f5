"""Filter-query engine for report sections.

Report sections select their stories with a ``where`` expression declared in
the report configuration:

    where:
      - equals: {kind: bug}
      - not:
          - equals: {state: accepted}
      - or:
          - equals: {hasFlags: false}
          - every: {flagValues: true}

A where expression is a list of clauses that must all hold. Each clause maps
one or more commands to their operands; several commands in one mapping are
ANDed as well. Field names are story attributes; camelCase spellings of the
snake_case model fields are accepted.

Commands:
- ``equals``: the field is strictly equal to the expected value
- ``includes`` / ``some``: the field and the expected value share an element
  (either side may be a scalar, see ``IncludesClause``)
- ``every``: every element of a list field equals the expected value
- ``or``: a list of nested where expressions, at least one must hold
- ``not``: a nested where expression that must not hold

Expressions are parsed into a closed set of clause classes before anything
is evaluated, so an unknown command fails the whole run up front instead of
silently matching nothing.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Union

from release_report.errors import FilterConfigError

Pairs = tuple[tuple[str, Any], ...]

_CAMEL_BOUNDARY_RE = re.compile(r"(?<!^)(?=[A-Z])")
_MISSING = object()


# ---------------------------------------------------------------------------
# Field access and comparison
# ---------------------------------------------------------------------------


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY_RE.sub("_", name).lower()


def lookup_field(item: Any, name: str) -> Any:
    """Read a field from a story (or any object or mapping).

    Tries the name as given, then its snake_case spelling, then pydantic
    aliases (``story_type`` for ``kind``). Unknown fields read as ``None``.
    """
    if isinstance(item, Mapping):
        if name in item:
            return item[name]
        return item.get(_snake_case(name))

    value = getattr(item, name, _MISSING)
    if value is not _MISSING:
        return value

    value = getattr(item, _snake_case(name), _MISSING)
    if value is not _MISSING:
        return value

    for field_name, info in getattr(type(item), "model_fields", {}).items():
        if info.alias == name:
            return getattr(item, field_name)

    return None


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def strict_equal(left: Any, right: Any) -> bool:
    """Equality without bool/number coercion (``True`` never equals ``1``)."""
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    return left == right


def _contains(sequence: Iterable[Any], value: Any) -> bool:
    return any(strict_equal(element, value) for element in sequence)


# ---------------------------------------------------------------------------
# Clause kinds
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class EqualsClause:
    pairs: Pairs

    def matches(self, item: Any) -> bool:
        return all(
            strict_equal(lookup_field(item, field), expected)
            for field, expected in self.pairs
        )


@dataclass(frozen=True)
class IncludesClause:
    """Membership test that adapts to list and scalar values on both sides.

    ========  =========  =============================================
    expected  field      passes when
    ========  =========  =============================================
    list      list       the lists share at least one element
    list      scalar     the field value is in the expected list
    scalar    list       the field list contains the expected value
    scalar    scalar     the values are equal
    ========  =========  =============================================
    """

    pairs: Pairs

    def matches(self, item: Any) -> bool:
        return all(self._holds(lookup_field(item, field), expected) for field, expected in self.pairs)

    @staticmethod
    def _holds(data: Any, expected: Any) -> bool:
        if _is_sequence(expected):
            if _is_sequence(data):
                return any(_contains(expected, element) for element in data)
            return _contains(expected, data)
        if _is_sequence(data):
            return _contains(data, expected)
        return strict_equal(data, expected)


@dataclass(frozen=True)
class EveryClause:
    """Every element of a list field equals the expected value.

    A scalar field is compared directly. An empty list passes.
    """

    pairs: Pairs

    def matches(self, item: Any) -> bool:
        return all(self._holds(lookup_field(item, field), expected) for field, expected in self.pairs)

    @staticmethod
    def _holds(data: Any, expected: Any) -> bool:
        if _is_sequence(data):
            return all(strict_equal(element, expected) for element in data)
        return strict_equal(data, expected)


@dataclass(frozen=True)
class OrClause:
    options: tuple[Where, ...]

    def matches(self, item: Any) -> bool:
        return any(evaluate(option, item) for option in self.options)


@dataclass(frozen=True)
class NotClause:
    negated: Where

    def matches(self, item: Any) -> bool:
        return not evaluate(self.negated, item)


Clause = Union[EqualsClause, IncludesClause, EveryClause, OrClause, NotClause]
Where = tuple[Clause, ...]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _field_pairs(command: str, operand: Any) -> Pairs:
    if not isinstance(operand, Mapping):
        raise FilterConfigError(
            f"'{command}' expects a mapping of field to value, got {operand!r}"
        )
    for field in operand:
        if not isinstance(field, str):
            raise FilterConfigError(f"'{command}' field names must be strings, got {field!r}")
    return tuple(operand.items())


def _parse_or(operand: Any) -> OrClause:
    if not isinstance(operand, list):
        raise FilterConfigError(f"'or' expects a list of where expressions, got {operand!r}")
    return OrClause(options=tuple(parse_where(option) for option in operand))


def _parse_not(operand: Any) -> Clause | list[Clause]:
    if isinstance(operand, Mapping) and operand and not set(operand) <= set(COMMANDS):
        # Named groups: {"not": {"flagged": [...], "legacy": [...]}} negates each.
        return [NotClause(negated=parse_where(group)) for group in operand.values()]
    if not isinstance(operand, (list, Mapping)):
        raise FilterConfigError(f"'not' expects a where expression, got {operand!r}")
    return NotClause(negated=parse_where(operand))


COMMANDS: dict[str, Callable[[Any], Clause | list[Clause]]] = {
    "equals": lambda operand: EqualsClause(_field_pairs("equals", operand)),
    "includes": lambda operand: IncludesClause(_field_pairs("includes", operand)),
    "some": lambda operand: IncludesClause(_field_pairs("some", operand)),
    "every": lambda operand: EveryClause(_field_pairs("every", operand)),
    "or": _parse_or,
    "not": _parse_not,
}


def parse_clause(raw: Mapping[str, Any]) -> list[Clause]:
    """Parse one clause mapping, which may hold several commands."""
    clauses: list[Clause] = []
    for command, operand in raw.items():
        parser = COMMANDS.get(command)
        if parser is None:
            raise FilterConfigError(
                f"Invalid command '{command}' (expected one of: {', '.join(COMMANDS)})"
            )
        parsed = parser(operand)
        if isinstance(parsed, list):
            clauses.extend(parsed)
        else:
            clauses.append(parsed)
    return clauses


def parse_where(raw: Any) -> Where:
    """Parse a where expression from its configuration form.

    Args:
        raw: A list of clause mappings, a single clause mapping, an already
             parsed expression, or ``None`` for "match everything"

    Returns:
        The parsed expression

    Raises:
        FilterConfigError: On an unknown command or a malformed operand
    """
    if raw is None:
        return ()
    if isinstance(raw, tuple) and all(isinstance(c, _CLAUSE_TYPES) for c in raw):
        return raw
    if isinstance(raw, Mapping):
        raw = [raw]
    if not isinstance(raw, list):
        raise FilterConfigError(f"A where expression must be a list of clauses, got {raw!r}")

    clauses: list[Clause] = []
    for entry in raw:
        if not isinstance(entry, Mapping):
            raise FilterConfigError(f"A where clause must be a mapping, got {entry!r}")
        clauses.extend(parse_clause(entry))
    return tuple(clauses)


_CLAUSE_TYPES = (EqualsClause, IncludesClause, EveryClause, OrClause, NotClause)


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def evaluate(where: Where, item: Any) -> bool:
    """Return whether every clause of a parsed expression holds for an item."""
    return all(clause.matches(item) for clause in where)


def compile_where(where: Any) -> Callable[[Any], bool]:
    """Turn a where expression (raw or parsed) into a predicate."""
    parsed = parse_where(where)

    def predicate(item: Any) -> bool:
        return evaluate(parsed, item)

    return predicate


def apply_where(items: Iterable[Any], where: Any) -> list[Any]:
    """Return the items matching a where expression, in their original order.

    The expression is parsed completely before any item is looked at, so a
    configuration error never yields a partial result.
    """
    predicate = compile_where(where)
    return [item for item in items if predicate(item)]
