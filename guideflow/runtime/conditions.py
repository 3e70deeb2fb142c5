"""
conditions.py - Edge condition evaluation.

Edges may carry either a structured condition (field/operator/value) or a
string boolean expression such as ``hasCard && (visits >= 2 || role == 'vip')``.
String expressions are parsed once by a small recursive-descent parser into a
tree that can only read context values and compare them; there is no host
language evaluation and no attribute access.

Grammar:
    expr        := or_expr
    or_expr     := and_expr (("||" | "or") and_expr)*
    and_expr    := not_expr (("&&" | "and") not_expr)*
    not_expr    := ("!" | "not") not_expr | comparison
    comparison  := operand (("==" | "===" | "!=" | "!==" | ">" | ">=" | "<" | "<=") operand)?
    operand     := literal | name ("." name)* | "(" expr ")" | "-" operand
    literal     := number | 'string' | "string" | true | false | null | undefined

Evaluation fails closed: a missing name, a malformed expression or a type
error makes the condition false.
"""

from __future__ import annotations

import logging
import math
import operator
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from guideflow.spec.types import Condition, EdgeCondition

logger = logging.getLogger(__name__)


class ConditionSyntaxError(ValueError):
    """Raised when an expression cannot be parsed."""

    def __init__(self, expression: str, message: str, position: Optional[int] = None):
        self.expression = expression
        self.position = position
        where = f" at position {position}" if position is not None else ""
        super().__init__(f"{message}{where} in condition {expression!r}")


class ConditionEvaluationError(Exception):
    """Raised when a compiled expression cannot be evaluated against a context."""


# =============================================================================
# Value semantics
# =============================================================================


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float))


def to_number(value: Any) -> float:
    """Numeric coercion used by ordering operators; NaN when not numeric."""
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def is_truthy(value: Any) -> bool:
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def loose_equals(left: Any, right: Any) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and isinstance(right, str):
        return left == right
    if _is_number(left) or _is_number(right):
        if isinstance(left, (list, dict)) or isinstance(right, (list, dict)):
            return False
        return to_number(left) == to_number(right)
    return left == right


def strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return float(left) == float(right)
    return type(left) is type(right) and left == right


def _ordered(op: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def compare(left: Any, right: Any) -> bool:
        a, b = to_number(left), to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
        return op(a, b)

    return compare


OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": loose_equals,
    "===": strict_equals,
    "!=": lambda a, b: not loose_equals(a, b),
    "!==": lambda a, b: not strict_equals(a, b),
    ">": _ordered(operator.gt),
    ">=": _ordered(operator.ge),
    "<": _ordered(operator.lt),
    "<=": _ordered(operator.le),
}


def compare(op: str, left: Any, right: Any) -> bool:
    fn = OPERATORS.get(op)
    if fn is None:
        raise ConditionEvaluationError(f"Unknown operator: {op}")
    return fn(left, right)


# =============================================================================
# Tokenizer
# =============================================================================

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>\d+(?:\.\d+)?|\.\d+)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[<>!()\-])
      | (?P<name>[A-Za-z_$][A-Za-z0-9_$]*(?:\.[A-Za-z_$][A-Za-z0-9_$]*)*)
    )
    """,
    re.VERBOSE,
)

_WORD_OPERATORS = {"and": "&&", "or": "||", "not": "!"}
_KEYWORD_LITERALS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": None,
}
_ESCAPE_RE = re.compile(r"\\(.)")

Token = Tuple[str, Any, int]


def tokenize(expression: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    length = len(expression)
    while pos < length:
        if not expression[pos:].strip():
            break
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise ConditionSyntaxError(expression, f"Unexpected character {expression[pos:].lstrip()[0]!r}", pos)
        start = match.start(match.lastgroup)
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "number":
            value: Any = float(text) if "." in text else int(text)
        elif kind == "string":
            value = _ESCAPE_RE.sub(r"\1", text[1:-1])
        elif kind == "name" and text in _WORD_OPERATORS:
            kind, value = "op", _WORD_OPERATORS[text]
        else:
            value = text
        tokens.append((kind, value, start))
        pos = match.end()
    return tokens


# =============================================================================
# Expression tree
# =============================================================================


@dataclass(frozen=True)
class _Literal:
    value: Any

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        return self.value


@dataclass(frozen=True)
class _Name:
    path: Tuple[str, ...]

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        value: Any = context
        for index, part in enumerate(self.path):
            if not isinstance(value, Mapping) or part not in value:
                name = ".".join(self.path[: index + 1])
                raise ConditionEvaluationError(f"'{name}' is not defined")
            value = value[part]
        return value


@dataclass(frozen=True)
class _Negate:
    operand: Any

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        value = to_number(self.operand.evaluate(context))
        if math.isnan(value):
            raise ConditionEvaluationError("Cannot negate a non-numeric value")
        return -value


@dataclass(frozen=True)
class _Not:
    operand: Any

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return not is_truthy(self.operand.evaluate(context))


@dataclass(frozen=True)
class _And:
    left: Any
    right: Any

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return is_truthy(self.left.evaluate(context)) and is_truthy(self.right.evaluate(context))


@dataclass(frozen=True)
class _Or:
    left: Any
    right: Any

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return is_truthy(self.left.evaluate(context)) or is_truthy(self.right.evaluate(context))


@dataclass(frozen=True)
class _Compare:
    op: str
    left: Any
    right: Any

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        return compare(self.op, self.left.evaluate(context), self.right.evaluate(context))


class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = tokenize(expression)
        self.index = 0

    def parse(self) -> Any:
        if not self.tokens:
            raise ConditionSyntaxError(self.expression, "Empty expression")
        node = self._or()
        if self.index < len(self.tokens):
            _, value, pos = self.tokens[self.index]
            raise ConditionSyntaxError(self.expression, f"Unexpected token {value!r}", pos)
        return node

    def _peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _accept(self, *ops: str) -> Optional[str]:
        token = self._peek()
        if token is not None and token[0] == "op" and token[1] in ops:
            self.index += 1
            return token[1]
        return None

    def _or(self) -> Any:
        node = self._and()
        while self._accept("||"):
            node = _Or(node, self._and())
        return node

    def _and(self) -> Any:
        node = self._not()
        while self._accept("&&"):
            node = _And(node, self._not())
        return node

    def _not(self) -> Any:
        if self._accept("!"):
            return _Not(self._not())
        return self._comparison()

    def _comparison(self) -> Any:
        left = self._operand()
        op = self._accept(*OPERATORS)
        if op is None:
            return left
        return _Compare(op, left, self._operand())

    def _operand(self) -> Any:
        token = self._peek()
        if token is None:
            raise ConditionSyntaxError(self.expression, "Unexpected end of expression")
        kind, value, pos = token
        self.index += 1
        if kind == "op" and value == "(":
            node = self._or()
            if not self._accept(")"):
                raise ConditionSyntaxError(self.expression, "Missing closing parenthesis", pos)
            return node
        if kind == "op" and value == "-":
            operand = self._operand()
            if isinstance(operand, _Literal) and _is_number(operand.value):
                return _Literal(-operand.value)
            return _Negate(operand)
        if kind in ("number", "string"):
            return _Literal(value)
        if kind == "name":
            if value in _KEYWORD_LITERALS:
                return _Literal(_KEYWORD_LITERALS[value])
            return _Name(tuple(value.split(".")))
        raise ConditionSyntaxError(self.expression, f"Unexpected token {value!r}", pos)


@dataclass(frozen=True)
class CompiledExpression:
    """A parsed expression, reusable across evaluations."""

    source: str
    tree: Any

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        return self.tree.evaluate(context)

    def test(self, context: Mapping[str, Any]) -> bool:
        return is_truthy(self.evaluate(context))


@lru_cache(maxsize=512)
def compile_expression(expression: str) -> CompiledExpression:
    """Parse an expression once; results are cached per source string.

    Raises:
        ConditionSyntaxError: If the expression is malformed.
    """
    return CompiledExpression(source=expression, tree=_Parser(expression).parse())


# =============================================================================
# Evaluator
# =============================================================================


def lookup_field(context: Mapping[str, Any], field: str) -> Any:
    """Read a structured-condition field; dotted paths walk nested mappings."""
    if field in context:
        return context[field]
    value: Any = context
    for part in field.split("."):
        if not isinstance(value, Mapping) or part not in value:
            return None
        value = value[part]
    return value


class ConditionEvaluator:
    """Evaluates edge conditions against an execution context."""

    def __init__(self):
        self.operators = dict(OPERATORS)

    def evaluate_with_reason(
        self, condition: Condition, context: Mapping[str, Any]
    ) -> Tuple[bool, Optional[str]]:
        """Evaluate a condition.

        Returns:
            Tuple of (result, error message). Failures yield (False, reason).
        """
        if condition is None or condition is True:
            return True, None
        try:
            if isinstance(condition, EdgeCondition):
                fn = self.operators.get(condition.operator)
                if fn is None:
                    return False, f"Unknown operator: {condition.operator}"
                return fn(lookup_field(context, condition.field), condition.value), None
            if isinstance(condition, str):
                text = condition.strip()
                if not text or text == "true":
                    return True, None
                return compile_expression(text).test(context), None
            return False, f"Unsupported condition type: {type(condition).__name__}"
        except (
            ConditionSyntaxError,
            ConditionEvaluationError,
            ArithmeticError,
            RecursionError,
            TypeError,
            ValueError,
        ) as e:
            return False, str(e)

    def evaluate(self, condition: Condition, context: Mapping[str, Any]) -> bool:
        result, error = self.evaluate_with_reason(condition, context)
        if error:
            logger.debug("Condition %r evaluated false: %s", condition, error)
        return result


def check_condition_syntax(condition: Condition) -> Optional[str]:
    """Return a syntax error message for a condition, or None when it parses."""
    if isinstance(condition, EdgeCondition):
        if condition.operator not in OPERATORS:
            return f"Unknown operator: {condition.operator}"
        if not condition.field:
            return "Structured condition has no field"
        return None
    if isinstance(condition, str) and condition.strip():
        try:
            compile_expression(condition.strip())
        except ConditionSyntaxError as e:
            return str(e)
    return None


_default_evaluator = ConditionEvaluator()


def evaluate_condition(condition: Condition, context: Mapping[str, Any]) -> bool:
    """Evaluate a condition with the module-level evaluator."""
    return _default_evaluator.evaluate(condition, context)


__all__ = [
    "CompiledExpression",
    "ConditionEvaluationError",
    "ConditionEvaluator",
    "ConditionSyntaxError",
    "OPERATORS",
    "check_condition_syntax",
    "compare",
    "compile_expression",
    "evaluate_condition",
    "is_truthy",
    "lookup_field",
    "loose_equals",
    "strict_equals",
    "to_number",
    "tokenize",
]
