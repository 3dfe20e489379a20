"""Parser for the query-language subset used by reports.

Supported: vector selectors with label matchers, range selectors inside
``rate()``, ``sum``/``count`` aggregations with ``by``, number literals,
arithmetic (``+ - * / %``) and comparison filters (``== != > < >= <=``).
Everything else raises ``EvaluationError`` naming the construct.
"""
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
import math
import re

from perftest.errors import EvaluationError
from perftest.series import METRIC_NAME, Matcher, MatchType

AGGREGATIONS = {"sum", "count"}
UNSUPPORTED_AGGREGATIONS = {
    "avg", "min", "max", "stddev", "stdvar", "topk", "bottomk",
    "quantile", "count_values", "group",
}
FUNCTIONS = {"rate"}

ARITHMETIC_OPS = {"+", "-", "*", "/", "%"}
COMPARISON_OPS = {"==", "!=", ">", "<", ">=", "<="}
UNSUPPORTED_KEYWORDS = {
    "offset", "bool", "on", "ignoring", "group_left", "group_right",
    "without", "and", "or", "unless", "@",
}

_DURATION_UNITS = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "y": 365 * 24 * 60 * 60 * 1000,
}
_DURATION_RE = re.compile(r"(\d+)(ms|s|m|h|d|w|y)")
_IDENT_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_NUMBER_RE = re.compile(r"(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?")
_OPERATORS = ["=~", "!~", "!=", "==", ">=", "<=", "=", ">", "<", "+", "-", "*", "/", "%",
              "(", ")", "{", "}", ",", "^", "@"]
_STRING_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'"}


def parse_duration(text: str) -> int:
    """Convert a duration such as ``1m`` or ``1h30m`` to milliseconds."""
    pos = 0
    total = 0
    while pos < len(text):
        match = _DURATION_RE.match(text, pos)
        if not match:
            raise EvaluationError(f"Invalid duration {text!r}")
        total += int(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if total <= 0:
        raise EvaluationError(f"Invalid duration {text!r}")
    return total


# AST


@dataclass
class Expr:
    @property
    def value_type(self) -> str:
        raise NotImplementedError


@dataclass
class NumberLiteral(Expr):
    value: float

    @property
    def value_type(self) -> str:
        return "scalar"

    def __str__(self) -> str:
        return repr(self.value) if not math.isinf(self.value) else ("+Inf" if self.value > 0 else "-Inf")


@dataclass
class VectorSelector(Expr):
    name: Optional[str]
    matchers: List[Matcher] = field(default_factory=list)

    @property
    def value_type(self) -> str:
        return "vector"

    def __str__(self) -> str:
        rest = [str(m) for m in self.matchers if not (m.name == METRIC_NAME and self.name)]
        body = "{" + ",".join(rest) + "}" if rest else ""
        return f"{self.name or ''}{body}"


@dataclass
class MatrixSelector(Expr):
    vector: VectorSelector
    range_ms: int
    range_text: str = ""

    @property
    def value_type(self) -> str:
        return "matrix"

    def __str__(self) -> str:
        return f"{self.vector}[{self.range_text or str(self.range_ms) + 'ms'}]"


@dataclass
class Call(Expr):
    func: str
    args: List[Expr]

    @property
    def value_type(self) -> str:
        return "vector"

    def __str__(self) -> str:
        return f"{self.func}({', '.join(str(a) for a in self.args)})"


@dataclass
class Aggregate(Expr):
    op: str
    expr: Expr
    grouping: List[str] = field(default_factory=list)

    @property
    def value_type(self) -> str:
        return "vector"

    def __str__(self) -> str:
        by = f" by ({', '.join(self.grouping)})" if self.grouping else ""
        return f"{self.op}({self.expr}){by}"


@dataclass
class BinaryExpr(Expr):
    op: str
    lhs: Expr
    rhs: Expr

    @property
    def is_comparison(self) -> bool:
        return self.op in COMPARISON_OPS

    @property
    def value_type(self) -> str:
        if self.lhs.value_type == "scalar" and self.rhs.value_type == "scalar":
            return "scalar"
        return "vector"

    def __str__(self) -> str:
        return f"{self.lhs} {self.op} {self.rhs}"


# Lexer


@dataclass
class Token:
    kind: str  # ident, number, string, duration, op, eof
    value: str
    pos: int


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        ch = text[pos]
        if ch.isspace():
            pos += 1
            continue
        if ch == "#":
            # comment to end of line
            end = text.find("\n", pos)
            pos = len(text) if end == -1 else end
            continue
        if ch == "[":
            end = text.find("]", pos)
            if end == -1:
                raise EvaluationError(f"Unclosed '[' at position {pos}")
            inner = text[pos + 1:end].strip()
            if ":" in inner:
                raise EvaluationError(f"Unsupported construct: subquery [{inner}]")
            tokens.append(Token("duration", inner, pos))
            pos = end + 1
            continue
        if ch in "\"'`":
            value, pos = _read_string(text, pos)
            tokens.append(Token("string", value, pos))
            continue
        if ch.isdigit() or (ch == "." and pos + 1 < len(text) and text[pos + 1].isdigit()):
            match = _NUMBER_RE.match(text, pos)
            tokens.append(Token("number", match.group(0), pos))
            pos = match.end()
            continue
        match = _IDENT_RE.match(text, pos)
        if match:
            tokens.append(Token("ident", match.group(0), pos))
            pos = match.end()
            continue
        for op in _OPERATORS:
            if text.startswith(op, pos):
                tokens.append(Token("op", op, pos))
                pos += len(op)
                break
        else:
            raise EvaluationError(f"Unexpected character {ch!r} at position {pos}")
    tokens.append(Token("eof", "", pos))
    return tokens


def _read_string(text: str, pos: int) -> Tuple[str, int]:
    quote = text[pos]
    pos += 1
    chars: List[str] = []
    while pos < len(text):
        ch = text[pos]
        if ch == quote:
            return "".join(chars), pos + 1
        if ch == "\\" and quote != "`" and pos + 1 < len(text):
            nxt = text[pos + 1]
            chars.append(_STRING_ESCAPES.get(nxt, "\\" + nxt))
            pos += 2
            continue
        chars.append(ch)
        pos += 1
    raise EvaluationError("Unterminated string literal")


# Parser


class Parser:
    """Recursive-descent parser; precedence: comparison < additive < multiplicative."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.pos = 0

    def parse(self) -> Expr:
        if self._peek().kind == "eof":
            raise EvaluationError("Empty query expression")
        expr = self._parse_comparison()
        tok = self._peek()
        if tok.kind != "eof":
            self._unexpected(tok)
        return expr

    def _peek(self) -> Token:
        return self.tokens[self.pos]

    def _next(self) -> Token:
        tok = self.tokens[self.pos]
        self.pos += 1
        return tok

    def _accept_op(self, *ops: str) -> Optional[str]:
        tok = self._peek()
        if tok.kind == "op" and tok.value in ops:
            self.pos += 1
            return tok.value
        return None

    def _expect_op(self, op: str):
        tok = self._next()
        if tok.kind != "op" or tok.value != op:
            raise EvaluationError(
                f"Parse error at position {tok.pos}: expected {op!r}, got {tok.value or 'end of input'!r}"
            )

    def _unexpected(self, tok: Token):
        if tok.kind == "ident" and tok.value in UNSUPPORTED_KEYWORDS:
            raise EvaluationError(f"Unsupported construct: {tok.value!r}")
        if tok.kind == "op" and tok.value in ("^", "@"):
            raise EvaluationError(f"Unsupported operator: {tok.value!r}")
        raise EvaluationError(
            f"Parse error at position {tok.pos}: unexpected {tok.value or 'end of input'!r}"
        )

    def _parse_comparison(self) -> Expr:
        lhs = self._parse_additive()
        while True:
            op = self._accept_op(*COMPARISON_OPS)
            if op is None:
                return lhs
            self._reject_modifiers()
            rhs = self._parse_additive()
            lhs = self._binary(op, lhs, rhs)

    def _parse_additive(self) -> Expr:
        lhs = self._parse_multiplicative()
        while True:
            op = self._accept_op("+", "-")
            if op is None:
                return lhs
            self._reject_modifiers()
            rhs = self._parse_multiplicative()
            lhs = self._binary(op, lhs, rhs)

    def _parse_multiplicative(self) -> Expr:
        lhs = self._parse_unary()
        while True:
            op = self._accept_op("*", "/", "%")
            if op is None:
                return lhs
            self._reject_modifiers()
            rhs = self._parse_unary()
            lhs = self._binary(op, lhs, rhs)

    def _reject_modifiers(self):
        tok = self._peek()
        if tok.kind == "ident" and tok.value in ("bool", "on", "ignoring", "group_left", "group_right"):
            raise EvaluationError(f"Unsupported construct: {tok.value!r}")

    def _binary(self, op: str, lhs: Expr, rhs: Expr) -> Expr:
        for side in (lhs, rhs):
            if side.value_type == "matrix":
                raise EvaluationError(f"Binary expression must contain only scalar and instant vector types: {side}")
        if op in COMPARISON_OPS and lhs.value_type == "scalar" and rhs.value_type == "scalar":
            raise EvaluationError("Comparisons between scalars must use the 'bool' modifier")
        return BinaryExpr(op, lhs, rhs)

    def _parse_unary(self) -> Expr:
        if self._accept_op("-"):
            operand = self._parse_unary()
            if isinstance(operand, NumberLiteral):
                return NumberLiteral(-operand.value)
            return self._binary("*", NumberLiteral(-1.0), operand)
        if self._accept_op("+"):
            return self._parse_unary()
        return self._parse_primary()

    def _parse_primary(self) -> Expr:
        tok = self._peek()

        if tok.kind == "number":
            self.pos += 1
            return NumberLiteral(float(tok.value))

        if tok.kind == "op" and tok.value == "(":
            self.pos += 1
            expr = self._parse_comparison()
            self._expect_op(")")
            if self._peek().kind == "duration":
                raise EvaluationError(f"Ranges only allowed for vector selectors: ({expr})")
            return expr

        if tok.kind == "op" and tok.value == "{":
            return self._parse_range_suffix(self._parse_selector(None))

        if tok.kind != "ident":
            self._unexpected(tok)

        name = tok.value
        following = self.tokens[self.pos + 1]
        is_call = following.kind == "op" and following.value == "("

        if name in AGGREGATIONS:
            self.pos += 1
            return self._parse_aggregation(name)
        if name in UNSUPPORTED_AGGREGATIONS and (is_call or following.kind == "ident"):
            raise EvaluationError(f"Unsupported aggregation: {name!r}")
        if is_call:
            if name not in FUNCTIONS:
                raise EvaluationError(f"Unknown function: {name!r}")
            self.pos += 1
            return self._parse_call(name)
        if name.lower() in ("inf", "nan") and not (following.kind == "op" and following.value == "{"):
            self.pos += 1
            return NumberLiteral(float(name))
        if name in UNSUPPORTED_KEYWORDS:
            raise EvaluationError(f"Unsupported construct: {name!r}")

        self.pos += 1
        return self._parse_range_suffix(self._parse_selector(name))

    def _parse_range_suffix(self, expr: Expr) -> Expr:
        tok = self._peek()
        if tok.kind != "duration":
            if tok.kind == "ident" and tok.value == "offset":
                raise EvaluationError("Unsupported construct: 'offset'")
            return expr
        if not isinstance(expr, VectorSelector):
            raise EvaluationError(f"Ranges only allowed for vector selectors: {expr}")
        self.pos += 1
        return MatrixSelector(expr, parse_duration(tok.value), tok.value)

    def _parse_selector(self, name: Optional[str]) -> VectorSelector:
        matchers: List[Matcher] = []
        if name is not None:
            matchers.append(Matcher(MatchType.EQUAL, METRIC_NAME, name))

        if self._accept_op("{"):
            while not self._accept_op("}"):
                label_tok = self._next()
                if label_tok.kind != "ident":
                    raise EvaluationError(
                        f"Parse error at position {label_tok.pos}: expected label name"
                    )
                op_tok = self._next()
                if op_tok.kind != "op" or op_tok.value not in ("=", "!=", "=~", "!~"):
                    raise EvaluationError(
                        f"Parse error at position {op_tok.pos}: expected label matching operator"
                    )
                value_tok = self._next()
                if value_tok.kind != "string":
                    raise EvaluationError(
                        f"Parse error at position {value_tok.pos}: expected quoted label value"
                    )
                if label_tok.value == METRIC_NAME and name is not None:
                    raise EvaluationError(f"Metric name must not be set twice: {name!r}")
                try:
                    matchers.append(Matcher(MatchType(op_tok.value), label_tok.value, value_tok.value))
                except re.error as e:
                    raise EvaluationError(f"Invalid regular expression {value_tok.value!r}: {e}")
                if not self._accept_op(","):
                    self._expect_op("}")
                    break

        if not any(not m.matches("") for m in matchers):
            raise EvaluationError("Vector selector must contain at least one non-empty matcher")

        if name is None:
            for m in matchers:
                if m.name == METRIC_NAME and m.type == MatchType.EQUAL:
                    name = m.value
        return VectorSelector(name, matchers)

    def _parse_grouping(self) -> List[str]:
        self._expect_op("(")
        labels: List[str] = []
        while not self._accept_op(")"):
            tok = self._next()
            if tok.kind != "ident":
                raise EvaluationError(f"Parse error at position {tok.pos}: expected label name in grouping")
            if tok.value not in labels:
                labels.append(tok.value)
            if not self._accept_op(","):
                self._expect_op(")")
                break
        return labels

    def _parse_aggregation(self, op: str) -> Aggregate:
        grouping: Optional[List[str]] = None
        tok = self._peek()
        if tok.kind == "ident" and tok.value == "without":
            raise EvaluationError("Unsupported construct: 'without'")
        if tok.kind == "ident" and tok.value == "by":
            self.pos += 1
            grouping = self._parse_grouping()

        self._expect_op("(")
        expr = self._parse_comparison()
        if self._accept_op(","):
            raise EvaluationError(f"Aggregation {op!r} takes a single argument")
        self._expect_op(")")

        tok = self._peek()
        if tok.kind == "ident" and tok.value == "without":
            raise EvaluationError("Unsupported construct: 'without'")
        if tok.kind == "ident" and tok.value == "by":
            if grouping is not None:
                raise EvaluationError("Grouping specified twice")
            self.pos += 1
            grouping = self._parse_grouping()

        if expr.value_type != "vector":
            raise EvaluationError(f"Expected instant vector in aggregation {op!r}, got {expr.value_type}")
        return Aggregate(op, expr, grouping or [])

    def _parse_call(self, func: str) -> Call:
        self._expect_op("(")
        args: List[Expr] = []
        while not self._accept_op(")"):
            args.append(self._parse_comparison())
            if not self._accept_op(","):
                self._expect_op(")")
                break
        if len(args) != 1 or args[0].value_type != "matrix":
            raise EvaluationError(f"Expected a single range vector argument in call to {func!r}")
        return Call(func, args)


def parse_expr(text: str) -> Expr:
    """Parse a query expression into an AST."""
    return Parser(text).parse()
