"""Typed boolean expressions used to select storage pools.

The language is a small subset of CEL, enough for selectors such as::

    storageType == "zfspool" && availableSpace > 100000000000u
    name.startsWith("nvme") || name in ["local-lvm", "fast"]
    availableSpace >= 512u * 1024u * 1024u * 1024u

Supported: string literals (single or double quoted), integers, unsigned
integers (``10u``), ``true``/``false``, list literals, declared variables,
integer arithmetic ``* / % + -`` (``+`` also joins strings),
``== != < <= > >=``, ``in``, the string methods ``startsWith``,
``endsWith``, ``contains`` and ``matches``, ``!``, ``&&``, ``||`` and
parentheses. Operators bind in that order, tightest first, with ``!``
above all of them, so any parenthesized expression can be compared:
``(name == "tank") == true``. Signed and unsigned integers compare
numerically.

Expressions are type-checked against a variable schema at parse time, so a
typo in a variable name or a comparison between a string and a number is
reported before any candidate is evaluated.
"""

import operator
import re
from enum import Enum
from typing import Any, Callable, Mapping

import pyparsing as pp

from .errors import SelectorEvaluationError, SelectorSyntaxError


class ValueType(Enum):
    """Types a selector value can have."""

    BOOL = "bool"
    INT = "int"
    UINT = "uint"
    STRING = "string"
    LIST = "list"


NUMERIC = frozenset({ValueType.INT, ValueType.UINT})

Schema = Mapping[str, ValueType]
Bindings = Mapping[str, Any]


class _CheckError(Exception):
    """Type-check failure; wrapped into SelectorSyntaxError by ``parse``."""


def _compatible(left: ValueType | None, right: ValueType | None) -> bool:
    if left is None or right is None:
        return True
    return left == right or (left in NUMERIC and right in NUMERIC)


class Node:
    """Expression tree node."""

    def check(self, schema: Schema) -> ValueType:
        raise NotImplementedError

    def evaluate(self, bindings: Bindings) -> Any:
        raise NotImplementedError


class Literal(Node):
    def __init__(self, value: Any, value_type: ValueType) -> None:
        self.value = value
        self.value_type = value_type

    def check(self, schema: Schema) -> ValueType:
        return self.value_type

    def evaluate(self, bindings: Bindings) -> Any:
        return self.value


class ListLiteral(Node):
    def __init__(self, items: list[Node]) -> None:
        self.items = items
        self.element_type: ValueType | None = None

    def check(self, schema: Schema) -> ValueType:
        for item in self.items:
            item_type = item.check(schema)
            if item_type == ValueType.LIST:
                raise _CheckError("nested lists are not supported")
            if not _compatible(self.element_type, item_type):
                raise _CheckError("list literal mixes element types")
            self.element_type = self.element_type or item_type
        return ValueType.LIST

    def evaluate(self, bindings: Bindings) -> Any:
        return [item.evaluate(bindings) for item in self.items]


_PY_TYPES: dict[ValueType, type] = {
    ValueType.BOOL: bool,
    ValueType.INT: int,
    ValueType.UINT: int,
    ValueType.STRING: str,
}


class Variable(Node):
    def __init__(self, name: str) -> None:
        self.name = name
        self.value_type: ValueType | None = None

    def check(self, schema: Schema) -> ValueType:
        if self.name not in schema:
            raise _CheckError(f"undeclared reference to {self.name!r}")
        self.value_type = schema[self.name]
        return self.value_type

    def evaluate(self, bindings: Bindings) -> Any:
        if self.name not in bindings:
            raise SelectorEvaluationError(f"no value bound for variable {self.name!r}")
        value = bindings[self.name]
        if self.value_type is None:
            return value

        expected = _PY_TYPES[self.value_type]
        numeric = self.value_type in NUMERIC
        if not isinstance(value, expected) or (numeric and isinstance(value, bool)):
            raise SelectorEvaluationError(
                f"variable {self.name!r} expects {self.value_type.value}, got {type(value).__name__}"
            )
        if self.value_type == ValueType.UINT and value < 0:
            raise SelectorEvaluationError(f"variable {self.name!r} is a uint but got {value}")
        return value


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}
_ORDERING = frozenset({"<", "<=", ">", ">="})


class Compare(Node):
    def __init__(self, left: Node, op: str, right: Node) -> None:
        self.left = left
        self.op = op
        self.right = right

    def check(self, schema: Schema) -> ValueType:
        left_type = self.left.check(schema)
        right_type = self.right.check(schema)

        if self.op == "in":
            if right_type != ValueType.LIST or not isinstance(self.right, ListLiteral):
                raise _CheckError("right side of 'in' must be a list literal")
            if not _compatible(left_type, self.right.element_type):
                raise _CheckError(f"cannot look up {left_type.value} in list of {self.right.element_type.value}")  # type: ignore[union-attr]
            return ValueType.BOOL

        if not _compatible(left_type, right_type):
            raise _CheckError(f"no matching overload for {left_type.value} {self.op} {right_type.value}")
        if self.op in _ORDERING and left_type in (ValueType.BOOL, ValueType.LIST):
            raise _CheckError(f"{left_type.value} values cannot be ordered")
        return ValueType.BOOL

    def evaluate(self, bindings: Bindings) -> Any:
        left = self.left.evaluate(bindings)
        right = self.right.evaluate(bindings)
        try:
            if self.op == "in":
                return left in right
            return _COMPARATORS[self.op](left, right)
        except TypeError as e:
            raise SelectorEvaluationError(f"cannot evaluate {self.op}: {e}") from e


def _divide(left: int, right: int) -> int:
    """Integer division truncating toward zero."""
    quotient = abs(left) // abs(right)
    return quotient if (left < 0) == (right < 0) else -quotient


_ARITHMETIC: dict[str, Callable[[int, int], int]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": _divide,
    "%": lambda left, right: left - right * _divide(left, right),
}


class Arithmetic(Node):
    def __init__(self, left: Node, op: str, right: Node) -> None:
        self.left = left
        self.op = op
        self.right = right
        self.value_type: ValueType | None = None

    def check(self, schema: Schema) -> ValueType:
        left_type = self.left.check(schema)
        right_type = self.right.check(schema)

        if self.op == "+" and left_type == right_type == ValueType.STRING:
            self.value_type = ValueType.STRING
        elif left_type in NUMERIC and right_type in NUMERIC:
            both_uint = left_type == right_type == ValueType.UINT
            self.value_type = ValueType.UINT if both_uint else ValueType.INT
        else:
            raise _CheckError(f"no matching overload for {left_type.value} {self.op} {right_type.value}")
        return self.value_type

    def evaluate(self, bindings: Bindings) -> Any:
        left = self.left.evaluate(bindings)
        right = self.right.evaluate(bindings)
        if self.value_type == ValueType.STRING:
            return left + right
        if self.op in ("/", "%") and right == 0:
            raise SelectorEvaluationError(f"division by zero in {self.op}")

        result = _ARITHMETIC[self.op](left, right)
        if self.value_type == ValueType.UINT and result < 0:
            raise SelectorEvaluationError(f"uint overflow in {left} {self.op} {right}")
        return result


_METHODS: dict[str, Callable[[str, str], bool]] = {
    "startsWith": str.startswith,
    "endsWith": str.endswith,
    "contains": operator.contains,
    "matches": lambda value, pattern: re.search(pattern, value) is not None,
}


class MethodCall(Node):
    def __init__(self, target: Node, method: str, argument: Node) -> None:
        self.target = target
        self.method = method
        self.argument = argument

    def check(self, schema: Schema) -> ValueType:
        if self.target.check(schema) != ValueType.STRING:
            raise _CheckError(f"{self.method}() needs a string receiver")
        if self.argument.check(schema) != ValueType.STRING:
            raise _CheckError(f"{self.method}() needs a string argument")
        if self.method == "matches" and isinstance(self.argument, Literal):
            try:
                re.compile(self.argument.value)
            except re.error as e:
                raise _CheckError(f"invalid regular expression {self.argument.value!r}: {e}") from e
        return ValueType.BOOL

    def evaluate(self, bindings: Bindings) -> Any:
        target = self.target.evaluate(bindings)
        argument = self.argument.evaluate(bindings)
        try:
            return _METHODS[self.method](target, argument)
        except re.error as e:
            raise SelectorEvaluationError(f"invalid regular expression {argument!r}: {e}") from e


class Not(Node):
    def __init__(self, operand: Node) -> None:
        self.operand = operand

    def check(self, schema: Schema) -> ValueType:
        if self.operand.check(schema) != ValueType.BOOL:
            raise _CheckError("'!' needs a bool operand")
        return ValueType.BOOL

    def evaluate(self, bindings: Bindings) -> Any:
        return not self.operand.evaluate(bindings)


class BoolOp(Node):
    def __init__(self, op: str, operands: list[Node]) -> None:
        self.op = op
        self.operands = operands

    def check(self, schema: Schema) -> ValueType:
        for operand in self.operands:
            if operand.check(schema) != ValueType.BOOL:
                raise _CheckError(f"'{self.op}' needs bool operands")
        return ValueType.BOOL

    def evaluate(self, bindings: Bindings) -> Any:
        if self.op == "&&":
            return all(operand.evaluate(bindings) for operand in self.operands)
        return any(operand.evaluate(bindings) for operand in self.operands)


def _left_chain(
    operand: pp.ParserElement, op: pp.ParserElement, build: Callable[[Node, str, Node], Node]
) -> pp.ParserElement:
    """Match ``a op b op c`` and fold it into ``(a op b) op c``."""

    def action(tokens: pp.ParseResults) -> Node:
        node = tokens[0]
        for index in range(1, len(tokens), 2):
            node = build(node, tokens[index], tokens[index + 1])
        return node

    return (operand + pp.ZeroOrMore(op + operand)).set_parse_action(action)


def _bool_chain(operand: pp.ParserElement, op: str) -> pp.ParserElement:
    def action(tokens: pp.ParseResults) -> Node:
        if len(tokens) == 1:
            return tokens[0]
        return BoolOp(op, list(tokens)[0::2])

    return (operand + pp.ZeroOrMore(pp.Literal(op) + operand)).set_parse_action(action)


def _build_grammar() -> pp.ParserElement:
    lpar, rpar, lbrack, rbrack, dot = map(pp.Suppress, "()[].")
    true_kw, false_kw, in_kw = pp.Keyword("true"), pp.Keyword("false"), pp.Keyword("in")

    string_literal = (pp.QuotedString('"', esc_char="\\") | pp.QuotedString("'", esc_char="\\")).set_parse_action(
        lambda t: Literal(t[0], ValueType.STRING)
    )
    uint_literal = pp.Regex(r"\d+[uU]").set_parse_action(lambda t: Literal(int(t[0][:-1]), ValueType.UINT))
    int_literal = pp.Regex(r"-?\d+").set_parse_action(lambda t: Literal(int(t[0]), ValueType.INT))
    bool_literal = (true_kw | false_kw).set_parse_action(lambda t: Literal(t[0] == "true", ValueType.BOOL))
    scalar = string_literal | uint_literal | int_literal | bool_literal

    variable = (~(true_kw | false_kw | in_kw) + pp.Word(pp.alphas + "_", pp.alphanums + "_")).set_parse_action(
        lambda t: Variable(t[0])
    )
    list_literal = (lbrack + pp.Opt(pp.DelimitedList(scalar)) + rbrack).set_parse_action(
        lambda t: ListLiteral(list(t))
    )

    method_name = pp.one_of(list(_METHODS))
    method_call = (
        (variable | string_literal) + dot + method_name + lpar + (string_literal | variable) + rpar
    ).set_parse_action(lambda t: MethodCall(t[0], t[1], t[2]))

    # precedence climbs from unary "!" down to "||"
    expression = pp.Forward()
    unary = pp.Forward()
    negation = (pp.Suppress("!") + unary).set_parse_action(lambda t: Not(t[0]))
    unary <<= negation | method_call | scalar | variable | list_literal | (lpar + expression + rpar)

    product = _left_chain(unary, pp.one_of("* / %"), Arithmetic)
    total = _left_chain(product, pp.one_of("+ -"), Arithmetic)
    comparison = _left_chain(total, pp.one_of("== != <= >= < >") | in_kw, Compare)
    expression <<= _bool_chain(_bool_chain(comparison, "&&"), "||")
    return expression


_GRAMMAR = _build_grammar()


class Predicate:
    """A parsed, type-checked boolean expression."""

    def __init__(self, text: str, root: Node) -> None:
        self.text = text
        self._root = root

    def evaluate(self, bindings: Bindings) -> bool:
        """Evaluate against variable bindings.

        Raises:
            SelectorEvaluationError: If a binding is missing or has the wrong type
        """
        return bool(self._root.evaluate(bindings))

    def __repr__(self) -> str:
        return f"Predicate({self.text!r})"


def parse(text: str, schema: Schema) -> Predicate:
    """Parse and type-check a boolean expression.

    Raises:
        SelectorSyntaxError: If the text is empty, malformed, refers to
            undeclared variables, mixes types or is not a bool expression
    """
    if not text or not text.strip():
        raise SelectorSyntaxError(text, "expression is empty")

    try:
        root = _GRAMMAR.parse_string(text, parse_all=True)[0]
    except pp.ParseBaseException as e:
        raise SelectorSyntaxError(text, f"syntax error at column {e.column}") from e

    try:
        result_type = root.check(schema)
    except _CheckError as e:
        raise SelectorSyntaxError(text, str(e)) from e

    if result_type != ValueType.BOOL:
        raise SelectorSyntaxError(text, f"expression must evaluate to bool, not {result_type.value}")
    return Predicate(text, root)
