# src/rastercube/cube/expression.py

"""
This module implements the per-pixel arithmetic expression language.

Expressions such as "(NIR - RED) / (NIR + RED)" or "0.02 * (LST_DAY - LST_NIGHT)"
are parsed once, at graph construction, into a small typed syntax tree.
Unknown band references and type errors surface immediately as ExpressionError.
At evaluation time the tree is compiled to a canonical numexpr string whose
variables are positional aliases, so band names never reach numexpr directly.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numexpr as ne
import numpy as np

from rastercube.exceptions import ExpressionError

log = logging.getLogger(__name__)

__all__ = [
    "FUNCTIONS",
    "Expression",
    "parse"
]

NUM = "num"
BOOL = "bool"

# name -> (arity, argument kinds, result kind)
FUNCTIONS = {
    "sqrt": (1, (NUM,), NUM),
    "exp": (1, (NUM,), NUM),
    "log": (1, (NUM,), NUM),
    "log10": (1, (NUM,), NUM),
    "abs": (1, (NUM,), NUM),
    "sin": (1, (NUM,), NUM),
    "cos": (1, (NUM,), NUM),
    "tan": (1, (NUM,), NUM),
    "arcsin": (1, (NUM,), NUM),
    "arccos": (1, (NUM,), NUM),
    "arctan": (1, (NUM,), NUM),
    "sinh": (1, (NUM,), NUM),
    "cosh": (1, (NUM,), NUM),
    "tanh": (1, (NUM,), NUM),
    "arctan2": (2, (NUM, NUM), NUM),
    "min": (2, (NUM, NUM), NUM),
    "max": (2, (NUM, NUM), NUM),
    "where": (3, (BOOL, NUM, NUM), NUM)
}

_COMPARISONS = ("<", "<=", ">", ">=", "==", "!=")

_TOKEN_SPEC = [
    ("NUMBER", r"(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?"),
    ("NAME", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("QUOTED", r"`[^`]+`"),
    ("OP", r"\*\*|<=|>=|==|!=|[-+*/%^()<>,&|~]"),
    ("SPACE", r"\s+"),
    ("MISMATCH", r".")
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int

# Syntax tree

@dataclass(frozen=True)
class Number:
    value: float
    kind = NUM

@dataclass(frozen=True)
class Variable:
    name: str
    kind = NUM

@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: object
    kind = NUM

@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: object
    right: object
    kind = NUM

@dataclass(frozen=True)
class Compare:
    op: str
    left: object
    right: object
    kind = BOOL

@dataclass(frozen=True)
class BoolOp:
    op: str
    left: object
    right: object
    kind = BOOL

@dataclass(frozen=True)
class Not:
    operand: object
    kind = BOOL

@dataclass(frozen=True)
class Call:
    func: str
    args: Tuple[object, ...]

    @property
    def kind(self) -> str:
        return FUNCTIONS[self.func][2]

def _tokenize(text: str) -> List[Token]:
    tokens = []
    for match in _TOKEN_RE.finditer(text):
        kind, value, pos = match.lastgroup, match.group(), match.start()
        if kind == "SPACE":
            continue
        if kind == "MISMATCH":
            raise ExpressionError(f"Unexpected character '{value}'", text, pos)
        if kind == "QUOTED":
            kind, value = "NAME", value[1:-1]
        elif kind == "NAME" and value in ("and", "or", "not"):
            kind = "OP"
        tokens.append(Token(kind, value, pos))
    tokens.append(Token("END", "", len(text)))
    return tokens

class _Parser:
    """Recursive-descent parser; one method per precedence level."""

    def __init__(self, text: str):
        self.text = text
        self.tokens = _tokenize(text)
        self.i = 0

    @property
    def current(self) -> Token:
        return self.tokens[self.i]

    def _advance(self) -> Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def _accept(self, *values: str) -> Optional[Token]:
        tok = self.current
        if tok.kind == "OP" and tok.value in values:
            return self._advance()
        return None

    def _expect(self, value: str) -> Token:
        tok = self._accept(value)
        if tok is None:
            found = self.current.value or "end of expression"
            raise ExpressionError(f"Expected '{value}' but found '{found}'", self.text, self.current.pos)
        return tok

    def _check(self, node, expected: str, pos: int):
        if node.kind != expected:
            what = "numeric" if expected == NUM else "boolean"
            raise ExpressionError(f"Expected a {what} operand", self.text, pos)
        return node

    def parse(self):
        if self.current.kind == "END":
            raise ExpressionError("Expression is empty", self.text, 0)
        node = self.or_expr()
        if self.current.kind != "END":
            raise ExpressionError(f"Unexpected token '{self.current.value}'", self.text, self.current.pos)
        return node

    def or_expr(self):
        start = self.current.pos
        node = self.and_expr()
        while self._accept("or", "|") is not None:
            self._check(node, BOOL, start)
            right_pos = self.current.pos
            right = self._check(self.and_expr(), BOOL, right_pos)
            node = BoolOp("|", node, right)
        return node

    def and_expr(self):
        start = self.current.pos
        node = self.not_expr()
        while self._accept("and", "&") is not None:
            self._check(node, BOOL, start)
            right_pos = self.current.pos
            right = self._check(self.not_expr(), BOOL, right_pos)
            node = BoolOp("&", node, right)
        return node

    def not_expr(self):
        if self._accept("not", "~") is not None:
            pos = self.current.pos
            return Not(self._check(self.not_expr(), BOOL, pos))
        return self.comparison()

    def comparison(self):
        start = self.current.pos
        node = self.additive()
        tok = self._accept(*_COMPARISONS)
        if tok is None:
            return node
        self._check(node, NUM, start)
        right_pos = self.current.pos
        right = self._check(self.additive(), NUM, right_pos)
        if self.current.kind == "OP" and self.current.value in _COMPARISONS:
            raise ExpressionError("Chained comparisons are not supported", self.text, self.current.pos)
        return Compare(tok.value, node, right)

    def additive(self):
        start = self.current.pos
        node = self.term()
        while True:
            tok = self._accept("+", "-")
            if tok is None:
                break
            self._check(node, NUM, start)
            right_pos = self.current.pos
            node = BinaryOp(tok.value, node, self._check(self.term(), NUM, right_pos))
        return node

    def term(self):
        start = self.current.pos
        node = self.unary()
        while True:
            tok = self._accept("*", "/", "%")
            if tok is None:
                break
            self._check(node, NUM, start)
            right_pos = self.current.pos
            node = BinaryOp(tok.value, node, self._check(self.unary(), NUM, right_pos))
        return node

    def unary(self):
        tok = self._accept("-", "+")
        if tok is not None:
            pos = self.current.pos
            operand = self._check(self.unary(), NUM, pos)
            return UnaryOp(tok.value, operand) if tok.value == "-" else operand
        return self.power()

    def power(self):
        start = self.current.pos
        node = self.atom()
        if self._accept("**", "^") is not None:
            self._check(node, NUM, start)
            right_pos = self.current.pos
            node = BinaryOp("**", node, self._check(self.unary(), NUM, right_pos))
        return node

    def atom(self):
        tok = self.current
        if tok.kind == "NUMBER":
            value = float(tok.value)
            if not math.isfinite(value):
                raise ExpressionError(f"Numeric literal '{tok.value}' is out of range", self.text, tok.pos)
            self._advance()
            return Number(value)
        if tok.kind == "NAME":
            self._advance()
            if self._accept("(") is not None:
                return self.call(tok)
            return Variable(tok.value)
        if self._accept("(") is not None:
            node = self.or_expr()
            self._expect(")")
            return node
        found = tok.value or "end of expression"
        raise ExpressionError(f"Unexpected token '{found}'", self.text, tok.pos)

    def call(self, name_tok: Token):
        if name_tok.value not in FUNCTIONS:
            raise ExpressionError(f"Unknown function '{name_tok.value}'", self.text, name_tok.pos)
        arity, kinds, _ = FUNCTIONS[name_tok.value]
        args = []
        if self._accept(")") is None:
            while True:
                pos = self.current.pos
                arg = self.or_expr()
                if len(args) < arity:
                    self._check(arg, kinds[len(args)], pos)
                args.append(arg)
                if self._accept(",") is None:
                    break
            self._expect(")")
        if len(args) != arity:
            raise ExpressionError(
                f"Function '{name_tok.value}' takes {arity} argument(s), got {len(args)}",
                self.text, name_tok.pos
            )
        return Call(name_tok.value, tuple(args))

def _collect_variables(node, out: List[str]):
    if isinstance(node, Variable):
        if node.name not in out:
            out.append(node.name)
    elif isinstance(node, (UnaryOp, Not)):
        _collect_variables(node.operand, out)
    elif isinstance(node, (BinaryOp, Compare, BoolOp)):
        _collect_variables(node.left, out)
        _collect_variables(node.right, out)
    elif isinstance(node, Call):
        for arg in node.args:
            _collect_variables(arg, out)

def _to_numexpr(node, aliases: Mapping[str, str]) -> str:
    if isinstance(node, Number):
        return repr(node.value)
    if isinstance(node, Variable):
        return aliases[node.name]
    if isinstance(node, UnaryOp):
        return f"(-{_to_numexpr(node.operand, aliases)})"
    if isinstance(node, Not):
        return f"(~{_to_numexpr(node.operand, aliases)})"
    if isinstance(node, (BinaryOp, Compare, BoolOp)):
        return f"({_to_numexpr(node.left, aliases)} {node.op} {_to_numexpr(node.right, aliases)})"
    if isinstance(node, Call):
        args = [_to_numexpr(a, aliases) for a in node.args]
        if node.func == "min":
            return f"where({args[0]} <= {args[1]}, {args[0]}, {args[1]})"
        if node.func == "max":
            return f"where({args[0]} >= {args[1]}, {args[0]}, {args[1]})"
        return f"{node.func}({', '.join(args)})"
    raise TypeError(f"Unsupported expression node {node!r}")

class Expression:
    """
    A parsed per-pixel expression.

    Attributes:
        text: Source text of the expression.
        tree: Root of the typed syntax tree.
        variables: Referenced band names in order of first appearance.
        kind: 'num' for arithmetic results, 'bool' for predicates.
    """

    def __init__(self, text: str):
        self.text = text
        self.tree = _Parser(text).parse()
        variables: List[str] = []
        _collect_variables(self.tree, variables)
        self.variables = variables
        self.kind = self.tree.kind
        self._aliases = {name: f"v{i}" for i, name in enumerate(variables)}
        self._compiled = _to_numexpr(self.tree, self._aliases)

    def bind(self, names: Iterable[str]) -> "Expression":
        """Check that every referenced variable is one of `names`."""
        available = set(names)
        unknown = [v for v in self.variables if v not in available]
        if unknown:
            raise ExpressionError(
                f"Expression '{self.text}' references unknown band(s) {unknown}. "
                f"Available bands: {sorted(available)}"
            )
        return self

    def require(self, kind: str) -> "Expression":
        if self.kind != kind:
            what = "an arithmetic expression" if kind == NUM else "a boolean predicate"
            raise ExpressionError(f"Expression '{self.text}' must be {what}")
        return self

    @property
    def numexpr_source(self) -> str:
        return self._compiled

    def evaluate(self, env: Mapping[str, np.ndarray], shape: Optional[Sequence[int]] = None) -> np.ndarray:
        """
        Evaluate the expression element-wise.

        Args:
            env: Mapping of band name -> array. All arrays must share one shape.
            shape: Output shape, required when the expression has no variables.

        Returns:
            np.ndarray: float64 array for arithmetic expressions, bool array for predicates.
        """
        local_dict = {}
        for name, alias in self._aliases.items():
            if name not in env:
                raise ExpressionError(f"No value bound for band '{name}' in expression '{self.text}'")
            local_dict[alias] = np.asarray(env[name], dtype=np.float64)

        result = ne.evaluate(self._compiled, local_dict=local_dict, global_dict={})

        if shape is None and local_dict:
            shape = next(iter(local_dict.values())).shape
        if shape is not None and result.shape != tuple(shape):
            result = np.broadcast_to(result, tuple(shape)).copy()
        if self.kind == NUM:
            return result.astype(np.float64, copy=False)
        return result.astype(bool, copy=False)

    def __repr__(self) -> str:
        return f"Expression({self.text!r})"

def parse(text: Union[str, Expression]) -> Expression:
    """Parse an expression string; ExpressionError on any syntax or type error."""
    if isinstance(text, Expression):
        return text
    if not isinstance(text, str):
        raise ExpressionError(f"Expression must be a string, got {type(text).__name__}")
    return Expression(text)
