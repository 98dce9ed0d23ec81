# conditions.py
"""
Step inclusion conditions.

A condition is a small boolean expression over Configuration fields and over
the inclusion of other steps:

    scope == 'management-group' and deploy_ioa and included('ioa-eventhub')

Conditions are immutable trees. They can be built with the node classes (or
the `&`, `|`, `~` operators) or parsed from text with `parse_condition`, which
accepts a restricted subset of Python expression syntax.
"""
from __future__ import annotations

import ast
import itertools
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from .errors import ConditionSyntaxError

Lookup = Callable[[str], Any]
IsIncluded = Callable[[str], bool]


def _norm(value: Any) -> Any:
    # Enum members compare by their value so "management-group" == Scope.MANAGEMENT_GROUP
    if isinstance(value, Enum):
        return value.value
    return value


class Condition:
    """Base class for condition nodes."""

    def evaluate(self, lookup: Lookup, included: IsIncluded) -> bool:
        raise NotImplementedError

    def fields(self) -> Set[str]:
        """Configuration fields read by this condition."""
        return set()

    def included_steps(self) -> Set[str]:
        """Steps whose inclusion this condition depends on."""
        return set()

    def inline(self, resolve: Callable[[str], "Condition"]) -> "Condition":
        """Replace every included(step) with the condition returned by resolve(step)."""
        return self

    def _atoms(self) -> Iterator[Tuple[str, Any]]:
        return iter(())

    def __and__(self, other: "Condition") -> "Condition":
        return all_of(self, other)

    def __or__(self, other: "Condition") -> "Condition":
        return any_of(self, other)

    def __invert__(self) -> "Condition":
        return Not(self)


@dataclass(frozen=True)
class Always(Condition):
    value: bool = True

    def evaluate(self, lookup: Lookup, included: IsIncluded) -> bool:
        return self.value

    def __str__(self) -> str:
        return "True" if self.value else "False"


ALWAYS = Always(True)
NEVER = Always(False)


@dataclass(frozen=True)
class Flag(Condition):
    """Truthiness of a configuration field."""
    field: str

    def evaluate(self, lookup: Lookup, included: IsIncluded) -> bool:
        return bool(lookup(self.field))

    def fields(self) -> Set[str]:
        return {self.field}

    def _atoms(self) -> Iterator[Tuple[str, Any]]:
        yield self.field, _FLAG

    def __str__(self) -> str:
        return self.field


@dataclass(frozen=True)
class Equals(Condition):
    field: str
    value: Any

    def evaluate(self, lookup: Lookup, included: IsIncluded) -> bool:
        return _norm(lookup(self.field)) == _norm(self.value)

    def fields(self) -> Set[str]:
        return {self.field}

    def _atoms(self) -> Iterator[Tuple[str, Any]]:
        yield self.field, _norm(self.value)

    def __str__(self) -> str:
        return f"{self.field} == {_norm(self.value)!r}"


@dataclass(frozen=True)
class Not(Condition):
    term: Condition

    def evaluate(self, lookup: Lookup, included: IsIncluded) -> bool:
        return not self.term.evaluate(lookup, included)

    def fields(self) -> Set[str]:
        return self.term.fields()

    def included_steps(self) -> Set[str]:
        return self.term.included_steps()

    def inline(self, resolve: Callable[[str], Condition]) -> Condition:
        return Not(self.term.inline(resolve))

    def _atoms(self) -> Iterator[Tuple[str, Any]]:
        return self.term._atoms()

    def __str__(self) -> str:
        if isinstance(self.term, Equals):
            return f"{self.term.field} != {_norm(self.term.value)!r}"
        if isinstance(self.term, (And, Or)):
            return f"not ({self.term})"
        return f"not {self.term}"


def NotEquals(field: str, value: Any) -> Condition:
    return Not(Equals(field, value))


@dataclass(frozen=True)
class _Compound(Condition):
    terms: Tuple[Condition, ...]

    def fields(self) -> Set[str]:
        out: Set[str] = set()
        for t in self.terms:
            out |= t.fields()
        return out

    def included_steps(self) -> Set[str]:
        out: Set[str] = set()
        for t in self.terms:
            out |= t.included_steps()
        return out

    def _atoms(self) -> Iterator[Tuple[str, Any]]:
        for t in self.terms:
            yield from t._atoms()


class And(_Compound):
    def evaluate(self, lookup: Lookup, included: IsIncluded) -> bool:
        return all(t.evaluate(lookup, included) for t in self.terms)

    def inline(self, resolve: Callable[[str], Condition]) -> Condition:
        return all_of(*(t.inline(resolve) for t in self.terms))

    def __str__(self) -> str:
        return " and ".join(f"({t})" if isinstance(t, Or) else str(t) for t in self.terms)


class Or(_Compound):
    def evaluate(self, lookup: Lookup, included: IsIncluded) -> bool:
        return any(t.evaluate(lookup, included) for t in self.terms)

    def inline(self, resolve: Callable[[str], Condition]) -> Condition:
        return any_of(*(t.inline(resolve) for t in self.terms))

    def __str__(self) -> str:
        return " or ".join(f"({t})" if isinstance(t, And) else str(t) for t in self.terms)


@dataclass(frozen=True)
class Included(Condition):
    """True when the named step is part of the plan for this configuration."""
    step: str

    def evaluate(self, lookup: Lookup, included: IsIncluded) -> bool:
        return included(self.step)

    def included_steps(self) -> Set[str]:
        return {self.step}

    def inline(self, resolve: Callable[[str], Condition]) -> Condition:
        return resolve(self.step)

    def __str__(self) -> str:
        return f"included({self.step!r})"


def all_of(*terms: Condition) -> Condition:
    flat: List[Condition] = []
    for t in terms:
        if t == ALWAYS:
            continue
        if t == NEVER:
            return NEVER
        flat.extend(t.terms if isinstance(t, And) else (t,))
    if not flat:
        return ALWAYS
    if len(flat) == 1:
        return flat[0]
    return And(tuple(flat))


def any_of(*terms: Condition) -> Condition:
    flat: List[Condition] = []
    for t in terms:
        if t == NEVER:
            continue
        if t == ALWAYS:
            return ALWAYS
        flat.extend(t.terms if isinstance(t, Or) else (t,))
    if not flat:
        return NEVER
    if len(flat) == 1:
        return flat[0]
    return Or(tuple(flat))


# ----------------------------------------------------------------------
# Implication (static proof over every configuration)
# ----------------------------------------------------------------------

class _Marker:
    def __init__(self, name: str, truthy: bool):
        self.name = name
        self.truthy = truthy

    def __bool__(self) -> bool:
        return self.truthy

    def __repr__(self) -> str:
        return self.name


_FLAG = _Marker("<flag>", True)
OTHER = _Marker("<other>", True)
UNSET = _Marker("<unset>", False)

# 2**16 assignments is far beyond any realistic plan
MAX_ASSIGNMENTS = 1 << 16


def _candidates(
    atoms: Dict[str, Set[Any]],
    domains: Mapping[str, Sequence[Any]],
) -> Dict[str, List[Any]]:
    out: Dict[str, List[Any]] = {}
    for name, mentioned in sorted(atoms.items()):
        if name in domains:
            out[name] = [_norm(v) for v in domains[name]]
            continue
        values = [v for v in mentioned if v is not _FLAG]
        values = sorted(set(values), key=repr)
        # a field of unknown type may hold anything else, truthy or not
        out[name] = values + [OTHER, UNSET]
    return out


def find_counterexample(
    antecedent: Condition,
    consequent: Condition,
    domains: Optional[Mapping[str, Sequence[Any]]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Search for a configuration where `antecedent` holds and `consequent` does not.

    Both conditions must already be free of included(...) nodes (see
    Condition.inline). Fields listed in `domains` range over the given values;
    any other field ranges over the literals it is compared with plus an
    arbitrary truthy and an arbitrary falsy value.

    Returns the offending assignment, or None when the implication holds.
    """
    domains = domains or {}
    atoms: Dict[str, Set[Any]] = {}
    for name, value in itertools.chain(antecedent._atoms(), consequent._atoms()):
        atoms.setdefault(name, set()).add(value)

    candidates = _candidates(atoms, domains)
    names = list(candidates)

    total = 1
    for name in names:
        total *= max(1, len(candidates[name]))
    if total > MAX_ASSIGNMENTS:
        raise ValueError(f"Condition too large to prove ({total} assignments over {names})")

    no_steps: IsIncluded = lambda step: False  # noqa: E731
    for combo in itertools.product(*(candidates[n] for n in names)):
        assignment = dict(zip(names, combo))
        lookup = assignment.get
        if antecedent.evaluate(lookup, no_steps) and not consequent.evaluate(lookup, no_steps):
            return assignment
    return None


def implies(
    antecedent: Condition,
    consequent: Condition,
    domains: Optional[Mapping[str, Sequence[Any]]] = None,
) -> bool:
    return find_counterexample(antecedent, consequent, domains) is None


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------

def parse_condition(text: Optional[str], step: Optional[str] = None) -> Condition:
    """
    Parse a condition written in Python expression syntax.

    Supported: and / or / not, parentheses, `field == literal`,
    `field != literal`, bare `field` (truthiness), True / False and
    `included('step-name')`.
    """
    if text is None or not str(text).strip():
        return ALWAYS
    if isinstance(text, bool):
        return ALWAYS if text else NEVER

    src = str(text).strip()
    try:
        tree = ast.parse(src, mode="eval")
    except SyntaxError as e:
        raise ConditionSyntaxError(src, f"invalid syntax: {e.msg}", step) from e
    return _convert(tree.body, src, step)


def _convert(node: ast.AST, src: str, step: Optional[str]) -> Condition:
    if isinstance(node, ast.BoolOp):
        terms = [_convert(v, src, step) for v in node.values]
        if isinstance(node.op, ast.And):
            return all_of(*terms)
        return any_of(*terms)

    if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.Not):
        return Not(_convert(node.operand, src, step))

    if isinstance(node, ast.Constant) and isinstance(node.value, bool):
        return ALWAYS if node.value else NEVER

    if isinstance(node, ast.Name):
        return Flag(node.id)

    if isinstance(node, ast.Compare):
        if len(node.ops) != 1:
            raise ConditionSyntaxError(src, "chained comparisons are not supported", step)
        left, right = node.left, node.comparators[0]
        if isinstance(right, ast.Name) and isinstance(left, ast.Constant):
            left, right = right, left
        if not (isinstance(left, ast.Name) and isinstance(right, ast.Constant)):
            raise ConditionSyntaxError(
                src, "comparisons must be between a field name and a literal", step
            )
        eq = Equals(left.id, right.value)
        if isinstance(node.ops[0], ast.Eq):
            return eq
        if isinstance(node.ops[0], ast.NotEq):
            return Not(eq)
        raise ConditionSyntaxError(src, "only == and != comparisons are supported", step)

    if isinstance(node, ast.Call):
        func = node.func
        if (
            isinstance(func, ast.Name)
            and func.id == "included"
            and len(node.args) == 1
            and not node.keywords
            and isinstance(node.args[0], ast.Constant)
            and isinstance(node.args[0].value, str)
        ):
            return Included(node.args[0].value)
        raise ConditionSyntaxError(src, "the only supported call is included('step-name')", step)

    raise ConditionSyntaxError(src, f"unsupported expression: {type(node).__name__}", step)
