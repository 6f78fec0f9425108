"""
DynamicsDSL: A formula compiler and analysis engine for low-dimensional dynamical systems

Right-hand sides typed as plain text (``k*X*(1-X)``, ``Y, -X``) are parsed,
validated against a fixed vocabulary, compiled into fast evaluators, stepped
forward with fixed-step Runge-Kutta (including a delay-differential variant)
and, for one-dimensional systems, analysed on the phase line.

Version: 0.1.0
"""

import re
import sys
import math
import json
import warnings
import numpy as np
import sympy as sp
from scipy.integrate import solve_ivp
from scipy.optimize import brentq, minimize_scalar, root
from typing import List, Dict, Optional, Tuple, Any, Union, Callable, Iterable, Sequence, Mapping, NamedTuple
from dataclasses import dataclass, field, fields
from enum import Enum

__version__ = "0.1.0"

DEFAULT_DT = 0.05
DEFAULT_TIME_HORIZON = 10.0
BOUNDS_PADDING = 0.1

# ============================================================================
# ERRORS
# ============================================================================

class FormulaError(ValueError):
    """Base class for user-facing formula errors (parse and validation)"""
    pass

class ParseError(FormulaError):
    """Syntax error with the character offset where it was detected"""

    def __init__(self, message: str, offset: int):
        super().__init__(f"{message} at offset {offset}")
        self.message = message
        self.offset = offset

class ValidationError(FormulaError):
    """Structural error: unknown identifier, unknown function or bad arity"""

    def __init__(self, message: str, name: Optional[str] = None, offset: int = 0):
        super().__init__(message)
        self.message = message
        self.name = name
        self.offset = offset

class MissingBindingError(KeyError):
    """Raised when an evaluation is missing a binding the formula references"""

    def __init__(self, name: str, source: str = ""):
        super().__init__(name)
        self.name = name
        self.source = source

    def __str__(self):
        return f"no binding supplied for `{self.name}` required by '{self.source}'"

class InvalidSystemError(RuntimeError):
    """Evaluation requested on a system built from an invalid formula"""
    pass

# ============================================================================
# TOKEN SYSTEM
# ============================================================================

TOKEN_TYPES = [
    ("NUMBER", r"(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?"),
    ("IDENT", r"[A-Za-z][A-Za-z0-9_]*"),
    ("PLUS", r"\+"),
    ("MINUS", r"-"),
    ("MULTIPLY", r"\*"),
    ("DIVIDE", r"/"),
    ("POWER", r"\^"),
    ("COMMA", r","),
    ("LPAREN", r"\("),
    ("RPAREN", r"\)"),
    ("WHITESPACE", r"\s+"),
    ("MISMATCH", r"."),
]

token_regex = "|".join(f"(?P<{name}>{pattern})" for name, pattern in TOKEN_TYPES)
token_pattern = re.compile(token_regex)
identifier_pattern = re.compile(r"[A-Za-z][A-Za-z0-9_]*\Z")

@dataclass(frozen=True)
class Token:
    """Classified lexeme with its character offset in the source"""
    type: str
    value: str
    position: int = 0

    def __repr__(self):
        return f"{self.type}:{self.value}@{self.position}"

def tokenize(source: str) -> List[Token]:
    """
    Split a formula into tokens, dropping whitespace

    Args:
        source: formula text

    Returns:
        List of tokens

    Raises:
        ParseError: on a character that belongs to no token
    """
    tokens = []

    for match in token_pattern.finditer(source):
        kind = match.lastgroup
        value = match.group()
        position = match.start()

        if kind == "WHITESPACE":
            continue
        if kind == "MISMATCH":
            raise ParseError(f"unexpected character '{value}'", position)

        tokens.append(Token(kind, value, position))

    return tokens

# ============================================================================
# AST
# ============================================================================

class ASTNode:
    """Base class for all AST nodes"""
    def __repr__(self):
        return f"{self.__class__.__name__}()"

class Expression(ASTNode):
    """Base class for all expressions"""
    pass

@dataclass(frozen=True, repr=False)
class NumberExpr(Expression):
    value: float
    offset: int = field(default=0, compare=False)
    def __repr__(self):
        return f"Num({self.value})"

@dataclass(frozen=True, repr=False)
class IdentExpr(Expression):
    name: str
    offset: int = field(default=0, compare=False)
    def __repr__(self):
        return f"Id({self.name})"

@dataclass(frozen=True, repr=False)
class BinaryOpExpr(Expression):
    left: Expression
    operator: str
    right: Expression
    offset: int = field(default=0, compare=False)
    def __repr__(self):
        return f"BinOp({self.left} {self.operator} {self.right})"

@dataclass(frozen=True, repr=False)
class UnaryOpExpr(Expression):
    operator: str
    operand: Expression
    offset: int = field(default=0, compare=False)
    def __repr__(self):
        return f"UnaryOp({self.operator}{self.operand})"

@dataclass(frozen=True, repr=False)
class FunctionCallExpr(Expression):
    name: str
    args: Tuple[Expression, ...]
    offset: int = field(default=0, compare=False)
    def __repr__(self):
        return f"Call({self.name}, {list(self.args)})"

def child_nodes(expr: Expression) -> Tuple[Expression, ...]:
    if isinstance(expr, BinaryOpExpr):
        return (expr.left, expr.right)
    elif isinstance(expr, UnaryOpExpr):
        return (expr.operand,)
    elif isinstance(expr, FunctionCallExpr):
        return expr.args
    return ()

def iter_nodes(expr: Expression):
    """Yield every node of the tree in pre-order"""
    stack = [expr]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(child_nodes(node)))

def expression_depth(expr: Expression) -> int:
    """Number of nodes on the longest root-to-leaf path"""
    depth = 0
    stack = [(expr, 1)]
    while stack:
        node, level = stack.pop()
        depth = max(depth, level)
        stack.extend((child, level + 1) for child in child_nodes(node))
    return depth

def referenced_names(expr: Expression) -> List[str]:
    """Identifiers used by the expression, in order of first appearance"""
    names = []
    for node in iter_nodes(expr):
        if isinstance(node, IdentExpr) and node.name not in names:
            names.append(node.name)
    return names

def substitute(expr: Expression, mapping: Mapping[str, Expression]) -> Expression:
    """Return a new tree with identifiers in ``mapping`` replaced"""
    if isinstance(expr, NumberExpr):
        return expr
    elif isinstance(expr, IdentExpr):
        return mapping.get(expr.name, expr)
    elif isinstance(expr, BinaryOpExpr):
        return BinaryOpExpr(substitute(expr.left, mapping), expr.operator,
                            substitute(expr.right, mapping), expr.offset)
    elif isinstance(expr, UnaryOpExpr):
        return UnaryOpExpr(expr.operator, substitute(expr.operand, mapping), expr.offset)
    elif isinstance(expr, FunctionCallExpr):
        return FunctionCallExpr(expr.name, tuple(substitute(arg, mapping) for arg in expr.args),
                                expr.offset)
    else:
        raise TypeError(f"Cannot substitute into {type(expr).__name__}")

def _format_number(value: float) -> str:
    if math.isinf(value):
        return "1e999"
    if math.isfinite(value) and value == int(value) and abs(value) < 1e15:
        return str(int(value))
    return repr(value)

def expression_to_string(expr: Expression) -> str:
    """Convert an expression back to formula text (fully parenthesised)"""
    if isinstance(expr, NumberExpr):
        return _format_number(expr.value)
    elif isinstance(expr, IdentExpr):
        return expr.name
    elif isinstance(expr, BinaryOpExpr):
        left = expression_to_string(expr.left)
        right = expression_to_string(expr.right)
        return f"({left} {expr.operator} {right})"
    elif isinstance(expr, UnaryOpExpr):
        return f"({expr.operator}{expression_to_string(expr.operand)})"
    elif isinstance(expr, FunctionCallExpr):
        return f"{expr.name}({', '.join(expression_to_string(arg) for arg in expr.args)})"
    else:
        raise TypeError(f"Cannot render {type(expr).__name__}")

# ============================================================================
# PARSER ENGINE
# ============================================================================

OPERAND_STARTS = ("NUMBER", "IDENT", "LPAREN")

# parenthesis / argument-list nesting and tree depth accepted by the compiler
MAX_NESTING = 64
MAX_DEPTH = 200

class FormulaParser:
    """Recursive-descent parser for right-hand-side formulas"""

    def __init__(self, tokens: List[Token], source: str = ""):
        self.tokens = tokens
        self.source = source
        self.pos = 0
        self.depth = 0

    def peek(self, offset: int = 0) -> Optional[Token]:
        pos = self.pos + offset
        if pos < len(self.tokens):
            return self.tokens[pos]
        return None

    def match(self, *expected_types: str) -> Optional[Token]:
        token = self.peek()
        if token and token.type in expected_types:
            self.pos += 1
            return token
        return None

    def end_offset(self) -> int:
        return len(self.source)

    def unexpected(self, token: Optional[Token]) -> ParseError:
        """Build the error for a token that cannot continue the expression"""
        if token is None:
            return ParseError("unexpected end of input", self.end_offset())
        if token.type == "RPAREN":
            if self.pos > 0 and self.tokens[self.pos - 1].type == "LPAREN":
                return ParseError("empty parentheses", token.position)
            return ParseError("unbalanced parentheses: unmatched ')'", token.position)
        return ParseError(f"unexpected token '{token.value}'", token.position)

    def trailing(self, token: Token) -> ParseError:
        """Build the error for input left after a complete expression"""
        if token.type == "RPAREN":
            return ParseError("unbalanced parentheses: unmatched ')'", token.position)
        if token.type in OPERAND_STARTS:
            return ParseError(
                f"unexpected '{token.value}' after a complete expression "
                f"(implicit multiplication is not supported, use '*')", token.position)
        return ParseError(f"unexpected trailing input '{token.value}'", token.position)

    def close(self, lparen: Token):
        if self.match("RPAREN"):
            return
        token = self.peek()
        if token is None:
            raise ParseError("unbalanced parentheses: '(' is never closed", lparen.position)
        if token.type in OPERAND_STARTS:
            raise self.trailing(token)
        raise ParseError(f"expected ')' but got '{token.value}'", token.position)

    def parse(self) -> Expression:
        """Parse exactly one expression covering the whole input"""
        if not self.tokens:
            raise ParseError("empty expression", 0)

        expr = self.parse_expression()

        token = self.peek()
        if token is not None:
            raise self.trailing(token)
        return expr

    def parse_components(self) -> List[Expression]:
        """Parse a top-level comma-separated list of expressions"""
        if not self.tokens:
            raise ParseError("empty expression", 0)

        components = [self.parse_expression()]
        while self.match("COMMA"):
            components.append(self.parse_expression())

        token = self.peek()
        if token is not None:
            raise self.trailing(token)
        return components

    def parse_expression(self) -> Expression:
        self.depth += 1
        try:
            if self.depth > MAX_NESTING:
                token = self.peek()
                raise ParseError("expression nested too deeply",
                                 token.position if token else self.end_offset())
            return self.parse_additive()
        finally:
            self.depth -= 1

    def parse_additive(self) -> Expression:
        """Addition and subtraction"""
        left = self.parse_multiplicative()

        while True:
            token = self.match("PLUS", "MINUS")
            if not token:
                break
            right = self.parse_multiplicative()
            left = BinaryOpExpr(left, token.value, right, token.position)

        return left

    def parse_multiplicative(self) -> Expression:
        """Multiplication and division, explicit operators only"""
        left = self.parse_unary()

        while True:
            token = self.match("MULTIPLY", "DIVIDE")
            if not token:
                break
            right = self.parse_unary()
            left = BinaryOpExpr(left, token.value, right, token.position)

        return left

    def parse_unary(self) -> Expression:
        """Prefix sign; binds looser than ``^`` so -X^2 is -(X^2)"""
        token = self.match("MINUS", "PLUS")
        if token:
            operand = self.parse_unary()
            if token.value == "+":
                return operand
            return UnaryOpExpr("-", operand, token.position)

        return self.parse_power()

    def parse_power(self) -> Expression:
        """Exponentiation (right associative)"""
        base = self.parse_postfix()

        token = self.match("POWER")
        if token:
            exponent = self.parse_unary()
            return BinaryOpExpr(base, "^", exponent, token.position)

        return base

    def parse_postfix(self) -> Expression:
        """Function calls"""
        expr = self.parse_primary()

        next_token = self.peek()
        if isinstance(expr, IdentExpr) and next_token and next_token.type == "LPAREN":
            lparen = self.match("LPAREN")
            following = self.peek()
            if following and following.type == "RPAREN":
                raise ParseError(f"empty argument list for '{expr.name}'", following.position)

            args = [self.parse_expression()]
            while self.match("COMMA"):
                args.append(self.parse_expression())
            self.close(lparen)
            return FunctionCallExpr(expr.name, tuple(args), expr.offset)

        return expr

    def parse_primary(self) -> Expression:
        """Literals, identifiers and parenthesised groups"""
        token = self.match("NUMBER")
        if token:
            return NumberExpr(float(token.value), token.position)

        token = self.match("IDENT")
        if token:
            return IdentExpr(token.value, token.position)

        token = self.match("LPAREN")
        if token:
            expr = self.parse_expression()
            self.close(token)
            return expr

        raise self.unexpected(self.peek())

def check_depth(expr: Expression) -> Expression:
    """Reject trees too deep to compile and evaluate (raises ParseError)"""
    if expression_depth(expr) > MAX_DEPTH:
        raise ParseError("expression nested too deeply", expr.offset)
    return expr

def parse(text: str) -> Expression:
    """Parse a single formula into an AST (raises ParseError)"""
    try:
        expr = FormulaParser(tokenize(text), text).parse()
    except RecursionError:
        raise ParseError("expression nested too deeply", 0) from None
    return check_depth(expr)

def parse_components(text: str) -> List[Expression]:
    """Parse ``"f, g"`` style right-hand sides into one AST per component"""
    try:
        components = FormulaParser(tokenize(text), text).parse_components()
    except RecursionError:
        raise ParseError("expression nested too deeply", 0) from None
    return [check_depth(expr) for expr in components]

def split_components(text: str) -> List[str]:
    """
    Split formula text at top-level commas

    Commas inside call argument lists do not split. Tokenizer errors are
    raised; anything else is left for the per-component parse to report.
    """
    pieces = []
    depth = 0
    start = 0
    for token in tokenize(text):
        if token.type == "LPAREN":
            depth += 1
        elif token.type == "RPAREN":
            depth -= 1
        elif token.type == "COMMA" and depth == 0:
            pieces.append(text[start:token.position])
            start = token.position + 1
    pieces.append(text[start:])
    return pieces

# ============================================================================
# FUNCTION TABLE
# ============================================================================

def _safe_unary(func: Callable[[float], float],
                overflow: Optional[Callable[[float], float]] = None) -> Callable[[float], float]:
    """Wrap a math function so domain errors give nan and overflow gives inf"""
    def safe(x):
        try:
            return func(x)
        except ValueError:
            return math.nan
        except OverflowError:
            return overflow(x) if overflow else math.inf
    safe.__name__ = getattr(func, "__name__", "safe")
    return safe

def _log(x):
    if x > 0:
        return math.log(x)
    if x == 0:
        return -math.inf
    return math.nan

def _log10(x):
    if x > 0:
        return math.log10(x)
    if x == 0:
        return -math.inf
    return math.nan

def _sqrt(x):
    return math.sqrt(x) if x >= 0 else math.nan

def _floor(x):
    return float(math.floor(x)) if math.isfinite(x) else x

def _ceil(x):
    return float(math.ceil(x)) if math.isfinite(x) else x

def _round(x):
    # half away from zero
    if not math.isfinite(x):
        return x
    return math.copysign(math.floor(abs(x) + 0.5), x)

def _sign(x):
    if x > 0:
        return 1.0
    if x < 0:
        return -1.0
    return x

def _is_odd_integer(value: float) -> bool:
    return math.isfinite(value) and value == math.floor(value) and math.fmod(value, 2.0) != 0

def _pow(base, exponent):
    try:
        return math.pow(base, exponent)
    except OverflowError:
        if base < 0 and _is_odd_integer(exponent):
            return -math.inf
        return math.inf
    except ValueError:
        if base == 0:
            if _is_odd_integer(exponent):
                return math.copysign(math.inf, base)
            return math.inf
        return math.nan

def _divide(numerator, denominator):
    try:
        return numerator / denominator
    except ZeroDivisionError:
        if numerator != numerator or numerator == 0:
            return math.nan
        return math.copysign(math.inf, numerator) * math.copysign(1.0, denominator)

def _min(*args):
    if any(arg != arg for arg in args):
        return math.nan
    return float(min(args))

def _max(*args):
    if any(arg != arg for arg in args):
        return math.nan
    return float(max(args))

@dataclass(frozen=True)
class FunctionSpec:
    """Arity bounds (max ``None`` means variadic) and the numeric implementation"""
    min_args: int
    max_args: Optional[int]
    impl: Callable[..., float]

    def accepts(self, count: int) -> bool:
        return count >= self.min_args and (self.max_args is None or count <= self.max_args)

    def describe_arity(self) -> str:
        if self.max_args is None:
            return f"at least {self.min_args}"
        if self.min_args == self.max_args:
            return str(self.min_args)
        return f"{self.min_args} to {self.max_args}"

FUNCTIONS: Dict[str, FunctionSpec] = {
    "sin": FunctionSpec(1, 1, _safe_unary(math.sin)),
    "cos": FunctionSpec(1, 1, _safe_unary(math.cos)),
    "tan": FunctionSpec(1, 1, _safe_unary(math.tan)),
    "asin": FunctionSpec(1, 1, _safe_unary(math.asin)),
    "acos": FunctionSpec(1, 1, _safe_unary(math.acos)),
    "atan": FunctionSpec(1, 1, _safe_unary(math.atan)),
    "sinh": FunctionSpec(1, 1, _safe_unary(math.sinh, lambda x: math.copysign(math.inf, x))),
    "cosh": FunctionSpec(1, 1, _safe_unary(math.cosh)),
    "tanh": FunctionSpec(1, 1, _safe_unary(math.tanh)),
    "exp": FunctionSpec(1, 1, _safe_unary(math.exp)),
    "log": FunctionSpec(1, 1, _log),
    "ln": FunctionSpec(1, 1, _log),
    "log10": FunctionSpec(1, 1, _log10),
    "sqrt": FunctionSpec(1, 1, _sqrt),
    "abs": FunctionSpec(1, 1, abs),
    "floor": FunctionSpec(1, 1, _floor),
    "ceil": FunctionSpec(1, 1, _ceil),
    "round": FunctionSpec(1, 1, _round),
    "sign": FunctionSpec(1, 1, _sign),
    "pow": FunctionSpec(2, 2, _pow),
    "min": FunctionSpec(2, None, _min),
    "max": FunctionSpec(2, None, _max),
}

CONSTANTS: Dict[str, float] = {
    "pi": math.pi,
    "PI": math.pi,
    "e": math.e,
    "E": math.e,
}

# ============================================================================
# VALIDATOR
# ============================================================================

def normalize_vocabulary(vocabulary: Iterable[str]) -> Tuple[str, ...]:
    """
    Freeze a vocabulary into an ordered tuple

    Sets are sorted so the order does not depend on hashing. Invalid or
    duplicated names are caller errors and raise ValueError.
    """
    if isinstance(vocabulary, (set, frozenset)):
        names = tuple(sorted(vocabulary))
    else:
        names = tuple(vocabulary)

    seen = set()
    for name in names:
        if not isinstance(name, str) or not identifier_pattern.match(name):
            raise ValueError(f"Invalid vocabulary name: {name!r}")
        if name in FUNCTIONS:
            raise ValueError(f"Vocabulary name {name!r} is a function name")
        if name in seen:
            raise ValueError(f"Duplicate vocabulary name: {name!r}")
        seen.add(name)
    return names

def validate(expr: Expression, vocabulary: Iterable[str]) -> None:
    """
    Check identifiers and calls of an AST against a vocabulary

    Purely structural: numeric domain problems are left to evaluation.

    Raises:
        ValidationError: first offending node in pre-order
    """
    names = set(normalize_vocabulary(vocabulary))

    for node in iter_nodes(expr):
        if isinstance(node, IdentExpr):
            if node.name not in names and node.name not in CONSTANTS:
                upper = node.name.upper()
                if upper != node.name and upper in names:
                    hint = f"variables are uppercase, use `{upper}`"
                else:
                    hint = f"expected one of: {', '.join(sorted(names)) or 'none'}"
                raise ValidationError(
                    f"unknown identifier `{node.name}` ({hint})",
                    node.name, node.offset)

        elif isinstance(node, FunctionCallExpr):
            function = FUNCTIONS.get(node.name)
            if function is None:
                raise ValidationError(
                    f"unknown function `{node.name}` (supported: {', '.join(sorted(FUNCTIONS))})",
                    node.name, node.offset)
            if not function.accepts(len(node.args)):
                raise ValidationError(
                    f"wrong argument count for `{node.name}`: expected "
                    f"{function.describe_arity()}, got {len(node.args)}",
                    node.name, node.offset)

        elif not isinstance(node, (NumberExpr, BinaryOpExpr, UnaryOpExpr)):
            raise ValidationError(f"unsupported node {type(node).__name__}")

# ============================================================================
# COMPILED EXPRESSION
# ============================================================================

Evaluator = Callable[[Mapping[str, float]], float]

def _lower(expr: Expression, vocabulary: Tuple[str, ...]) -> Evaluator:
    """Lower an AST to nested closures, built once per compile"""
    if isinstance(expr, NumberExpr):
        value = expr.value
        return lambda bindings: value

    elif isinstance(expr, IdentExpr):
        name = expr.name
        if name not in vocabulary and name in CONSTANTS:
            constant = CONSTANTS[name]
            return lambda bindings: constant
        return lambda bindings: bindings[name]

    elif isinstance(expr, BinaryOpExpr):
        left = _lower(expr.left, vocabulary)
        right = _lower(expr.right, vocabulary)
        op = expr.operator
        if op == "+":
            return lambda bindings: left(bindings) + right(bindings)
        elif op == "-":
            return lambda bindings: left(bindings) - right(bindings)
        elif op == "*":
            return lambda bindings: left(bindings) * right(bindings)
        elif op == "/":
            return lambda bindings: _divide(left(bindings), right(bindings))
        elif op == "^":
            return lambda bindings: _pow(left(bindings), right(bindings))
        else:
            raise ValueError(f"Unknown operator: {op}")

    elif isinstance(expr, UnaryOpExpr):
        operand = _lower(expr.operand, vocabulary)
        if expr.operator == "-":
            return lambda bindings: -operand(bindings)
        raise ValueError(f"Unknown unary operator: {expr.operator}")

    elif isinstance(expr, FunctionCallExpr):
        impl = FUNCTIONS[expr.name].impl
        args = [_lower(arg, vocabulary) for arg in expr.args]
        if len(args) == 1:
            arg0 = args[0]
            return lambda bindings: impl(arg0(bindings))
        if len(args) == 2:
            arg0, arg1 = args
            return lambda bindings: impl(arg0(bindings), arg1(bindings))
        return lambda bindings: impl(*[arg(bindings) for arg in args])

    else:
        raise TypeError(f"Cannot compile {type(expr).__name__}")

class CompiledExpression:
    """
    Immutable evaluator for one validated formula

    The AST is lowered once; ``evaluate`` can then be called any number of
    times with different bindings. Numeric domain problems come back as
    nan or +/-inf, never as exceptions.
    """

    __slots__ = ("source", "expression", "vocabulary", "names", "_function")

    def __init__(self, expression: Expression, vocabulary: Iterable[str], source: Optional[str] = None):
        vocabulary = normalize_vocabulary(vocabulary)
        if expression_depth(expression) > MAX_DEPTH:
            raise ValidationError("expression nested too deeply", offset=expression.offset)
        validate(expression, vocabulary)
        names = tuple(name for name in referenced_names(expression)
                      if name in vocabulary or name not in CONSTANTS)

        object.__setattr__(self, "source", source if source is not None else expression_to_string(expression))
        object.__setattr__(self, "expression", expression)
        object.__setattr__(self, "vocabulary", vocabulary)
        object.__setattr__(self, "names", names)
        object.__setattr__(self, "_function", _lower(expression, vocabulary))

    def __setattr__(self, name, value):
        raise AttributeError("CompiledExpression is immutable")

    def __delattr__(self, name):
        raise AttributeError("CompiledExpression is immutable")

    def __repr__(self):
        return f"CompiledExpression({self.source!r}, vocabulary={self.vocabulary})"

    def evaluate(self, bindings: Mapping[str, float]) -> float:
        """
        Evaluate against ``bindings``

        Raises:
            MissingBindingError: a referenced name has no binding
        """
        try:
            return float(self._function(bindings))
        except KeyError as error:
            raise MissingBindingError(error.args[0], self.source) from None

    __call__ = evaluate

    def to_sympy(self, engine: Optional["SymbolicEngine"] = None) -> sp.Expr:
        engine = engine or SymbolicEngine()
        return engine.ast_to_sympy(self.expression, self.vocabulary)

    def latex(self) -> str:
        """LaTeX rendering of the formula for display"""
        return sp.latex(self.to_sympy())

def compile_expression(expr: Expression, vocabulary: Iterable[str],
                       source: Optional[str] = None) -> CompiledExpression:
    """Validate then compile an AST (raises ValidationError)"""
    return CompiledExpression(expr, vocabulary, source)

def compile_formula(text: str, vocabulary: Iterable[str]) -> CompiledExpression:
    """Parse, validate and compile formula text (raises FormulaError)"""
    text = text.strip()
    return CompiledExpression(parse(text), vocabulary, text)

def check_formula(text: str, vocabulary: Iterable[str]) -> Tuple[bool, str]:
    """Return ``(valid, error_message)`` without raising for formula errors"""
    try:
        compile_formula(text, vocabulary)
    except FormulaError as e:
        return False, str(e)
    return True, ""

# ============================================================================
# SYMBOLIC ENGINE
# ============================================================================

class SymbolicEngine:
    """
    SymPy view of formula ASTs, used for display and Jacobians
    """

    def __init__(self):
        self.symbol_map = {}

    def get_symbol(self, name: str) -> sp.Symbol:
        """Get or create a real SymPy symbol (cached)"""
        if name not in self.symbol_map:
            self.symbol_map[name] = sp.Symbol(name, real=True)
        return self.symbol_map[name]

    def ast_to_sympy(self, expr: Expression, vocabulary: Sequence[str] = ()) -> sp.Expr:
        """
        Convert AST expression to SymPy

        Args:
            expr: AST expression node
            vocabulary: names that shadow the built-in constants

        Returns:
            SymPy expression
        """
        if isinstance(expr, NumberExpr):
            value = expr.value
            if math.isinf(value):
                return sp.oo if value > 0 else -sp.oo
            if value == int(value) and abs(value) < 1e15:
                return sp.Integer(int(value))
            return sp.Float(value)

        elif isinstance(expr, IdentExpr):
            if expr.name not in vocabulary:
                if expr.name in ("pi", "PI"):
                    return sp.pi
                if expr.name in ("e", "E"):
                    return sp.E
            return self.get_symbol(expr.name)

        elif isinstance(expr, BinaryOpExpr):
            left = self.ast_to_sympy(expr.left, vocabulary)
            right = self.ast_to_sympy(expr.right, vocabulary)

            ops = {
                "+": lambda l, r: l + r,
                "-": lambda l, r: l - r,
                "*": lambda l, r: l * r,
                "/": lambda l, r: l / r,
                "^": lambda l, r: l ** r,
            }

            if expr.operator in ops:
                return ops[expr.operator](left, right)
            else:
                raise ValueError(f"Unknown operator: {expr.operator}")

        elif isinstance(expr, UnaryOpExpr):
            operand = self.ast_to_sympy(expr.operand, vocabulary)
            if expr.operator == "-":
                return -operand
            else:
                raise ValueError(f"Unknown unary operator: {expr.operator}")

        elif isinstance(expr, FunctionCallExpr):
            args = [self.ast_to_sympy(arg, vocabulary) for arg in expr.args]

            builtin_funcs = {
                "sin": sp.sin, "cos": sp.cos, "tan": sp.tan,
                "asin": sp.asin, "acos": sp.acos, "atan": sp.atan,
                "sinh": sp.sinh, "cosh": sp.cosh, "tanh": sp.tanh,
                "exp": sp.exp, "log": sp.log, "ln": sp.log,
                "log10": lambda x: sp.log(x, 10),
                "sqrt": sp.sqrt, "abs": sp.Abs, "sign": sp.sign,
                "floor": sp.floor, "ceil": sp.ceiling,
                "round": lambda x: sp.sign(x) * sp.floor(sp.Abs(x) + sp.Rational(1, 2)),
                "pow": lambda b, p: b ** p,
                "min": sp.Min, "max": sp.Max,
            }

            if expr.name in builtin_funcs:
                return builtin_funcs[expr.name](*args)
            else:
                raise ValueError(f"Unknown function: {expr.name}")

        else:
            raise ValueError(f"Cannot convert {type(expr).__name__} to SymPy")

    def jacobian(self, expressions: Sequence[Expression], state_names: Sequence[str],
                 vocabulary: Sequence[str] = ()) -> sp.Matrix:
        """Symbolic Jacobian of the right-hand sides with respect to the state"""
        rhs = sp.Matrix([self.ast_to_sympy(expr, vocabulary) for expr in expressions])
        return rhs.jacobian([self.get_symbol(name) for name in state_names])

    def lambdify(self, expr: Union[sp.Expr, sp.Matrix], names: Sequence[str]) -> Callable:
        """Numeric function of ``names`` (positional) using numpy"""
        return sp.lambdify([self.get_symbol(name) for name in names], expr, modules=["numpy", "math"])

# ============================================================================
# SYSTEM MODELS
# ============================================================================

class SystemModel:
    """
    One or two compiled right-hand sides plus parameter bindings

    Formula errors are captured (``is_valid_system`` / ``get_error``) rather
    than raised; evaluating an invalid model raises InvalidSystemError.
    """

    state_names: Tuple[str, ...] = ()
    labels: Tuple[str, ...] = ()

    def __init__(self, formulas: Sequence[str], parameter_names: Iterable[str] = (),
                 parameters: Optional[Mapping[str, float]] = None, extra_names: Sequence[str] = ()):
        self.formulas = tuple(formula.strip() for formula in formulas)
        self.parameter_names = tuple(parameter_names)
        self.vocabulary = normalize_vocabulary(self.state_names + self.parameter_names + tuple(extra_names))
        self.expressions: List[CompiledExpression] = []

        errors = []
        for label, formula in zip(self.labels, self.formulas):
            try:
                self.expressions.append(compile_formula(formula, self.vocabulary))
            except FormulaError as e:
                errors.append(f"{label}: {e}" if len(self.labels) > 1 else str(e))

        self.is_valid = not errors and len(self.expressions) == self.dimension
        self.error_message = "; ".join(errors)
        self._parameters = dict(parameters or {})

    @property
    def dimension(self) -> int:
        return len(self.state_names)

    @property
    def parameters(self) -> Dict[str, float]:
        """Copy of the current parameter bindings"""
        return dict(self._parameters)

    def set_parameters(self, params: Mapping[str, float]):
        """Replace the stored parameter bindings wholesale"""
        self._parameters = dict(params)

    def is_valid_system(self) -> bool:
        return self.is_valid

    def get_error(self) -> str:
        return self.error_message

    def require_valid(self):
        if not self.is_valid:
            raise InvalidSystemError(f"System is not valid: {self.error_message}")

    def bindings_for(self, params: Optional[Mapping[str, float]] = None) -> Dict[str, float]:
        """Fresh binding map: stored parameters overridden by ``params``"""
        if params is None:
            return dict(self._parameters)
        bindings = dict(self._parameters)
        bindings.update(params)
        return bindings

    def evaluate_bound(self, bindings: Dict[str, float], values: Sequence[float]) -> Tuple[float, ...]:
        """
        Evaluate with a caller-owned binding map

        The state names in ``bindings`` are overwritten with ``values``; this
        is the integrator hot path and skips the validity check.
        """
        for name, value in zip(self.state_names, values):
            bindings[name] = value
        return tuple(expr.evaluate(bindings) for expr in self.expressions)

    def evaluate(self, values: Sequence[float], params: Optional[Mapping[str, float]] = None) -> Tuple[float, ...]:
        """Uniform ``evaluate(state, params) -> derivatives``"""
        self.require_valid()
        return self.evaluate_bound(self.bindings_for(params), values)

    def latex(self) -> List[str]:
        self.require_valid()
        return [expr.latex() for expr in self.expressions]

class SystemModel1D(SystemModel):
    """X' = f(X, params), optionally with a delayed value ``X_tau``"""

    state_names = ("X",)
    labels = ("X'",)

    def __init__(self, formula: str, parameter_names: Iterable[str] = (),
                 parameters: Optional[Mapping[str, float]] = None, delay: bool = False):
        self.delay = delay
        super().__init__([formula], parameter_names, parameters, ("X_tau",) if delay else ())

    @property
    def formula(self) -> str:
        return self.formulas[0]

    def __repr__(self):
        return f"SystemModel1D({self.formula!r}, parameters={self._parameters}, delay={self.delay})"

    def evaluate_derivative(self, x: float, params: Optional[Mapping[str, float]] = None) -> float:
        self.require_valid()
        bindings = self.bindings_for(params)
        bindings["X"] = x
        return self.expressions[0].evaluate(bindings)

    def equilibrium_model(self) -> "SystemModel1D":
        """
        Model whose zeros are the steady states

        For a delay model ``X_tau`` is replaced by ``X`` (at a steady state
        the delayed value equals the current one). Non-delay models return
        themselves.
        """
        if not self.delay:
            return self
        if not self.is_valid:
            return SystemModel1D(self.formula, self.parameter_names, self._parameters)

        reduced = substitute(self.expressions[0].expression, {"X_tau": IdentExpr("X")})
        return SystemModel1D(expression_to_string(reduced), self.parameter_names, self._parameters)

class SystemModel2D(SystemModel):
    """X' = f(X, Y, params), Y' = g(X, Y, params)"""

    state_names = ("X", "Y")
    labels = ("X'", "Y'")

    def __init__(self, x_formula: str, y_formula: Optional[str] = None,
                 parameter_names: Iterable[str] = (), parameters: Optional[Mapping[str, float]] = None):
        split_error = ""
        if y_formula is None:
            try:
                pieces = split_components(x_formula)
            except ParseError as e:
                pieces = [x_formula]
                split_error = str(e)
            if len(pieces) == 2:
                x_formula, y_formula = pieces
            elif not split_error:
                split_error = f"expected two comma-separated components, got {len(pieces)}"

        if split_error:
            super().__init__([], parameter_names, parameters)
            self.formulas = (x_formula.strip(),)
            self.is_valid = False
            self.error_message = split_error
            return

        super().__init__([x_formula, y_formula], parameter_names, parameters)

    def __repr__(self):
        return f"SystemModel2D({', '.join(self.formulas)!r}, parameters={self._parameters})"

    def evaluate_field(self, x: float, y: float,
                       params: Optional[Mapping[str, float]] = None) -> Tuple[float, float]:
        self.require_valid()
        bindings = self.bindings_for(params)
        bindings["X"] = x
        bindings["Y"] = y
        return self.expressions[0].evaluate(bindings), self.expressions[1].evaluate(bindings)

def build_system(formula: str, parameter_names: Iterable[str] = (),
                 parameters: Optional[Mapping[str, float]] = None, delay: bool = False) -> SystemModel:
    """Pick a 1D or 2D model from the number of top-level components"""
    try:
        pieces = split_components(formula)
    except ParseError:
        pieces = [formula]
    if len(pieces) > 1:
        if delay:
            raise ValueError("Delay systems are one-dimensional")
        return SystemModel2D(formula, None, parameter_names, parameters)
    return SystemModel1D(formula, parameter_names, parameters, delay=delay)

# ============================================================================
# NUMERICAL INTEGRATION ENGINE
# ============================================================================

@dataclass(frozen=True)
class IntegrationState:
    """State vector ``(X,)`` or ``(X, Y)`` at elapsed time ``t``"""
    values: Tuple[float, ...]
    t: float = 0.0

    @classmethod
    def of(cls, *values: float, t: float = 0.0) -> "IntegrationState":
        return cls(tuple(float(v) for v in values), t)

    @property
    def x(self) -> float:
        return self.values[0]

    @property
    def y(self) -> Optional[float]:
        return self.values[1] if len(self.values) > 1 else None

    def is_finite(self) -> bool:
        return _all_finite(self.values) and math.isfinite(self.t)

class HistorySample(NamedTuple):
    t: float
    x: float

def _all_finite(values: Iterable[float]) -> bool:
    return all(math.isfinite(v) for v in values)

def _sample_x(sample) -> float:
    x = getattr(sample, "x", None)
    if x is None:
        return sample[1]
    return x

class RK4Integrator:
    """
    Classical fixed-step fourth-order Runge-Kutta

    A non-finite stage or result returns the prior state object unchanged;
    the caller decides whether to end the trajectory.
    """

    def __init__(self, system: SystemModel):
        self.system = system

    def step(self, state: IntegrationState, dt: float,
             params: Optional[Mapping[str, float]] = None) -> IntegrationState:
        self.system.require_valid()
        return self._advance(state, dt, self.system.bindings_for(params))

    def _advance(self, state: IntegrationState, dt: float, bindings: Dict[str, float],
                 evaluate: Optional[Callable] = None) -> IntegrationState:
        evaluate = evaluate or self.system.evaluate_bound
        y = state.values
        half = dt / 2

        k1 = evaluate(bindings, y)
        if not _all_finite(k1):
            return state
        k2 = evaluate(bindings, tuple(v + half * k for v, k in zip(y, k1)))
        if not _all_finite(k2):
            return state
        k3 = evaluate(bindings, tuple(v + half * k for v, k in zip(y, k2)))
        if not _all_finite(k3):
            return state
        k4 = evaluate(bindings, tuple(v + dt * k for v, k in zip(y, k3)))
        if not _all_finite(k4):
            return state

        new_values = tuple(v + (dt / 6) * (a + 2 * b + 2 * c + d)
                           for v, a, b, c, d in zip(y, k1, k2, k3, k4))
        if not _all_finite(new_values):
            return state
        return IntegrationState(new_values, state.t + dt)

class DelayRK4Integrator(RK4Integrator):
    """
    RK4 for X' = f(X, X_tau): one lagged history sample per step

    ``X_tau`` is the sample ``round(tau/dt)`` entries before the last one in
    ``history`` (clamped to the first). The same lagged value is used for all
    four stages. With ``tau == 0`` there is no lag and ``X_tau`` follows X
    through the stages, so the step equals a plain RK4 step.
    """

    def __init__(self, system: SystemModel1D, tau: float):
        if system.dimension != 1:
            raise ValueError("Delay integration requires a one-dimensional system")
        if tau < 0 or not math.isfinite(tau):
            raise ValueError(f"Delay must be a finite non-negative number, got {tau}")
        super().__init__(system)
        self.tau = tau

    def delayed_value(self, state: IntegrationState, dt: float, history: Sequence) -> float:
        if not dt > 0 or not math.isfinite(dt):
            raise ValueError(f"Time step must be positive, got {dt}")
        if self.tau == 0 or not history:
            return state.x

        steps_back = int(math.floor(self.tau / dt + 0.5))
        index = len(history) - 1 - steps_back
        if index < 0:
            index = 0
        return _sample_x(history[index])

    def step(self, state: IntegrationState, dt: float, history: Sequence = (),
             params: Optional[Mapping[str, float]] = None) -> IntegrationState:
        if not dt > 0 or not math.isfinite(dt):
            raise ValueError(f"Time step must be positive, got {dt}")
        self.system.require_valid()
        bindings = self.system.bindings_for(params)
        if self.tau == 0:
            # no lag: X_tau follows X through the stages
            return self._advance(state, dt, bindings, self._undelayed)
        bindings["X_tau"] = self.delayed_value(state, dt, history)
        return self._advance(state, dt, bindings)

    def _undelayed(self, bindings: Dict[str, float], values: Sequence[float]) -> Tuple[float, ...]:
        bindings["X_tau"] = values[0]
        return self.system.evaluate_bound(bindings, values)

def euler_step(system: SystemModel, state: IntegrationState, dt: float,
               params: Optional[Mapping[str, float]] = None) -> IntegrationState:
    """Forward Euler step with the same freeze-on-non-finite policy as RK4"""
    derivative = system.evaluate(state.values, params)
    if not _all_finite(derivative):
        return state
    new_values = tuple(v + dt * d for v, d in zip(state.values, derivative))
    if not _all_finite(new_values):
        return state
    return IntegrationState(new_values, state.t + dt)

def make_integrator(system: SystemModel, tau: float = 0.0) -> RK4Integrator:
    if getattr(system, "delay", False) or tau > 0:
        return DelayRK4Integrator(system, tau)
    return RK4Integrator(system)

class Trajectory:
    """
    A single particle advanced by RK4 until it leaves the domain or time runs out

    Owns its state and history; the system is shared read-only.
    """

    def __init__(self, system: SystemModel, initial: Union[float, Sequence[float]],
                 params: Optional[Mapping[str, float]] = None, dt: float = DEFAULT_DT,
                 tau: float = 0.0, time_horizon: float = DEFAULT_TIME_HORIZON,
                 bounds: Optional[Sequence[Tuple[float, float]]] = None,
                 padding: float = BOUNDS_PADDING, max_history: Optional[int] = None):
        if dt <= 0 or not math.isfinite(dt):
            raise ValueError(f"Time step must be positive, got {dt}")

        values = (initial,) if np.isscalar(initial) else tuple(initial)
        if len(values) != system.dimension:
            raise ValueError(f"Expected {system.dimension} initial values, got {len(values)}")

        self.system = system
        self.params = None if params is None else dict(params)
        self.dt = dt
        self.time_horizon = time_horizon
        self.integrator = make_integrator(system, tau)
        self.bounds = None
        if bounds is not None:
            self.bounds = [(lo - padding * (hi - lo), hi + padding * (hi - lo)) for lo, hi in bounds]

        if max_history is not None and isinstance(self.integrator, DelayRK4Integrator):
            needed = int(math.floor(tau / dt + 0.5)) + 1
            if max_history < needed:
                raise ValueError(f"max_history must keep at least {needed} samples for tau={tau}")
        self.max_history = max_history

        self.state = IntegrationState(tuple(float(v) for v in values), 0.0)
        self.history: List[IntegrationState] = [self.state]
        self.active = True
        self.frozen = False

    def in_bounds(self, state: IntegrationState) -> bool:
        if self.bounds is None:
            return True
        return all(lo <= v <= hi for v, (lo, hi) in zip(state.values, self.bounds))

    def advance(self) -> bool:
        """Take one step; returns whether the trajectory is still active"""
        if not self.active:
            return False

        if isinstance(self.integrator, DelayRK4Integrator):
            new_state = self.integrator.step(self.state, self.dt, self.history, self.params)
        else:
            new_state = self.integrator.step(self.state, self.dt, self.params)

        if new_state is self.state:
            self.frozen = True
            self.active = False
            return False

        self.state = new_state
        self.history.append(new_state)
        if self.max_history is not None and len(self.history) > self.max_history:
            del self.history[:len(self.history) - self.max_history]

        if new_state.t >= self.time_horizon or not self.in_bounds(new_state):
            self.active = False
        return self.active

    def run(self, max_steps: Optional[int] = None) -> "Trajectory":
        steps = 0
        while self.advance():
            steps += 1
            if max_steps is not None and steps >= max_steps:
                break
        return self

    def times(self) -> np.ndarray:
        return np.array([s.t for s in self.history])

    def values(self) -> np.ndarray:
        """History as an array of shape (dimension, samples)"""
        return np.array([s.values for s in self.history]).T

def generate_time_series(system: SystemModel1D, x0: float, params: Optional[Mapping[str, float]] = None,
                         t_max: float = DEFAULT_TIME_HORIZON, dt: float = 0.01,
                         tau: float = 0.0) -> List[HistorySample]:
    """(t, x) samples from ``x0`` until ``t_max`` or the integration freezes"""
    trajectory = Trajectory(system, x0, params, dt=dt, tau=tau, time_horizon=t_max)
    trajectory.run()
    return [HistorySample(s.t, s.x) for s in trajectory.history]

def simulate(system: SystemModel, initial: Union[float, Sequence[float]],
             t_span: Tuple[float, float] = (0.0, DEFAULT_TIME_HORIZON), dt: float = DEFAULT_DT,
             params: Optional[Mapping[str, float]] = None, method: str = "RK4", tau: float = 0.0,
             num_points: int = 1000, rtol: float = 1e-6, atol: float = 1e-8) -> dict:
    """
    Run a trajectory and return solution data and metadata

    Args:
        system: valid system model
        initial: initial state
        t_span: time span (t_start, t_end)
        dt: fixed step for ``method="RK4"``
        params: parameter overrides
        method: "RK4" (fixed step, delay capable) or a solve_ivp method
        tau: delay for delay systems
        num_points: output points for solve_ivp methods
        rtol: relative tolerance (solve_ivp)
        atol: absolute tolerance (solve_ivp)

    Returns:
        Dictionary with ``success``, ``t``, ``y`` (dimension x samples) and diagnostics
    """
    if not system.is_valid_system():
        return {'success': False, 'error': system.get_error()}

    y0 = np.atleast_1d(np.asarray(initial, dtype=float))
    t0, t1 = t_span

    if method.upper() == "RK4":
        trajectory = Trajectory(system, tuple(y0), params, dt=dt, tau=tau,
                                time_horizon=t1 - t0)
        trajectory.run()
        steps = len(trajectory.history) - 1
        message = "Integration froze on a non-finite derivative" if trajectory.frozen else "Reached time horizon"
        if trajectory.frozen:
            warnings.warn(f"{message} at t={t0 + trajectory.state.t:.4g}")
        return {
            'success': not trajectory.frozen,
            't': trajectory.times() + t0,
            'y': trajectory.values(),
            'state_names': list(system.state_names),
            'message': message,
            'nfev': 4 * steps,
            'method': 'RK4',
            'frozen': trajectory.frozen,
        }

    if getattr(system, "delay", False) or tau > 0:
        raise ValueError("Delay systems can only be integrated with method='RK4'")

    bindings = system.bindings_for(params)

    def rhs(t, y):
        return np.array(system.evaluate_bound(bindings, tuple(y)), dtype=float)

    try:
        solution = solve_ivp(
            rhs,
            t_span,
            y0,
            t_eval=np.linspace(t0, t1, num_points),
            method=method,
            rtol=rtol,
            atol=atol,
        )
    except Exception as e:
        warnings.warn(f"solve_ivp failed: {e}")
        return {'success': False, 'error': str(e)}

    if not solution.success:
        warnings.warn(f"solve_ivp did not finish: {solution.message}")

    return {
        'success': solution.success,
        't': solution.t,
        'y': solution.y,
        'state_names': list(system.state_names),
        'message': solution.message,
        'nfev': solution.nfev,
        'method': method,
        'frozen': False,
    }

# ============================================================================
# PHASE-LINE ANALYSIS
# ============================================================================

@dataclass
class AnalysisConfig:
    """
    Tunable constants of the phase-line analysis

    samples: sampling intervals across the domain (samples + 1 points)
    zero_tolerance: |f| below this counts as zero flow
    min_degenerate_samples: shortest flat run reported as a degenerate interval
    merge_gap: flat runs separated by at most this many samples are merged
    root_xtol: absolute x tolerance for root refinement
    tangent_tolerance: |f| accepted at a touching (non-crossing) root
    stability_offset: absolute probe distance for classification; None means
        ``relative_offset`` times the domain width
    """
    samples: int = 400
    zero_tolerance: float = 1e-8
    min_degenerate_samples: int = 3
    merge_gap: int = 1
    root_xtol: float = 1e-12
    tangent_tolerance: float = 1e-7
    stability_offset: Optional[float] = None
    relative_offset: float = 1e-3

    def __post_init__(self):
        if int(self.samples) != self.samples or self.samples < 2:
            raise ValueError(f"samples must be an integer >= 2, got {self.samples}")
        if self.min_degenerate_samples < 2:
            raise ValueError("min_degenerate_samples must be at least 2")
        if self.merge_gap < 0:
            raise ValueError("merge_gap must be non-negative")
        for name in ("zero_tolerance", "root_xtol", "tangent_tolerance", "relative_offset"):
            value = getattr(self, name)
            if not value > 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if self.stability_offset is not None and not self.stability_offset > 0:
            raise ValueError(f"stability_offset must be positive, got {self.stability_offset}")
        self.samples = int(self.samples)

    def probe_offset(self, span: float) -> float:
        if self.stability_offset is not None:
            return self.stability_offset
        return self.relative_offset * span

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AnalysisConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown analysis settings: {', '.join(sorted(unknown))}")
        return cls(**dict(data))

    @classmethod
    def from_json(cls, path: str) -> "AnalysisConfig":
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

class Stability(Enum):
    """Qualitative behaviour of the flow around a 1D equilibrium"""
    STABLE = "stable"
    UNSTABLE = "unstable"
    SEMI_STABLE = "semi-stable"

@dataclass(frozen=True)
class Equilibrium:
    """
    Isolated zero of a 1D system

    ``direction`` is only set for semi-stable points: "left" when flow
    approaches from the left, "right" from the right, None if neither side
    carries flow.
    """
    x: float
    stability: Stability
    direction: Optional[str] = None

@dataclass(frozen=True)
class DegenerateInterval:
    """Maximal sampled sub-interval on which |f| stays below the zero tolerance"""
    x_min: float
    x_max: float

    def contains(self, x: float, tolerance: float = 0.0) -> bool:
        return self.x_min - tolerance <= x <= self.x_max + tolerance

@dataclass(frozen=True)
class PhaseLineAnalysis:
    equilibria: List[Equilibrium]
    degenerate_intervals: List[DegenerateInterval]

def filter_equilibria(equilibria: Sequence[Equilibrium], intervals: Sequence[DegenerateInterval],
                      tolerance: float = 0.0) -> List[Equilibrium]:
    """Drop equilibria lying inside any degenerate interval"""
    return [eq for eq in equilibria
            if not any(interval.contains(eq.x, tolerance) for interval in intervals)]

class PhaseLineAnalyzer:
    """
    Equilibria, stability and flat zero regions of X' = f(X) on [x_min, x_max]

    Deterministic: the same model, parameters, domain and configuration give
    identical results.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()

    def analyze(self, system: SystemModel1D, params: Optional[Mapping[str, float]],
                x_min: float, x_max: float) -> PhaseLineAnalysis:
        if system.dimension != 1:
            raise ValueError("Phase-line analysis requires a one-dimensional system")
        if not (math.isfinite(x_min) and math.isfinite(x_max)) or x_min >= x_max:
            raise ValueError(f"Invalid domain [{x_min}, {x_max}]")

        model = system.equilibrium_model() if isinstance(system, SystemModel1D) else system
        model.require_valid()

        bindings = model.bindings_for(params)
        expression = model.expressions[0]

        def f(x):
            bindings["X"] = float(x)
            return expression.evaluate(bindings)

        config = self.config
        xs = np.linspace(x_min, x_max, config.samples + 1)
        fs = np.array([f(x) for x in xs])
        spacing = (x_max - x_min) / config.samples

        finite = np.isfinite(fs)
        if np.count_nonzero(finite) < len(fs) / 2:
            warnings.warn(f"f is non-finite on most of [{x_min}, {x_max}]; analysis may be incomplete")

        intervals = self.find_degenerate_intervals(xs, fs)
        roots = self.find_roots(f, xs, fs)
        roots = [r for r in roots
                 if not any(interval.contains(r, spacing / 2) for interval in intervals)]

        span = x_max - x_min
        equilibria = []
        for i, r in enumerate(roots):
            offset = config.probe_offset(span)
            neighbours = [abs(r - other) for j, other in enumerate(roots) if j != i]
            if neighbours:
                offset = min(offset, min(neighbours) / 2)
            equilibria.append(self.classify(f, r, offset))

        return PhaseLineAnalysis(equilibria, intervals)

    def find_degenerate_intervals(self, xs: np.ndarray, fs: np.ndarray) -> List[DegenerateInterval]:
        """Maximal runs of consecutive near-zero samples, merged across small gaps"""
        config = self.config
        flat = np.isfinite(fs) & (np.abs(fs) < config.zero_tolerance)

        runs = []
        start = None
        for i, is_flat in enumerate(flat):
            if is_flat and start is None:
                start = i
            elif not is_flat and start is not None:
                runs.append([start, i - 1])
                start = None
        if start is not None:
            runs.append([start, len(flat) - 1])

        merged = []
        for run in runs:
            if merged and run[0] - merged[-1][1] - 1 <= config.merge_gap:
                merged[-1][1] = run[1]
            else:
                merged.append(run)

        return [DegenerateInterval(float(xs[first]), float(xs[last]))
                for first, last in merged
                if last - first + 1 >= config.min_degenerate_samples]

    def find_roots(self, f: Callable[[float], float], xs: np.ndarray, fs: np.ndarray) -> List[float]:
        """Sign changes, exact zeros and touching roots, sorted and de-duplicated"""
        config = self.config
        candidates = []

        for i in range(len(xs)):
            if fs[i] == 0.0:
                candidates.append(float(xs[i]))

        for i in range(len(xs) - 1):
            a, b = fs[i], fs[i + 1]
            if not (np.isfinite(a) and np.isfinite(b)) or a * b >= 0:
                continue
            try:
                r = brentq(f, xs[i], xs[i + 1], xtol=config.root_xtol)
            except (RuntimeError, ValueError) as e:
                warnings.warn(f"Root refinement failed on [{xs[i]:.6g}, {xs[i + 1]:.6g}]: {e}")
                r = xs[i] - a * (xs[i + 1] - xs[i]) / (b - a)
            value = f(r)
            # a sign change across a pole refines to the pole
            if math.isfinite(value) and abs(value) <= min(abs(a), abs(b)):
                candidates.append(float(r))

        magnitude = np.abs(fs)
        for i in range(1, len(xs) - 1):
            left, mid, right = fs[i - 1], fs[i], fs[i + 1]
            if not (np.isfinite(left) and np.isfinite(mid) and np.isfinite(right)):
                continue
            if left * mid <= 0 or mid * right <= 0:
                continue
            if not (magnitude[i] <= magnitude[i - 1] and magnitude[i] < magnitude[i + 1]):
                continue
            result = minimize_scalar(lambda x: abs(f(x)), bounds=(xs[i - 1], xs[i + 1]),
                                     method="bounded", options={"xatol": max(config.root_xtol, 1e-10)})
            value = f(result.x)
            if math.isfinite(value) and abs(value) < config.tangent_tolerance:
                candidates.append(float(result.x))

        candidates.sort()
        spacing = (xs[-1] - xs[0]) / (len(xs) - 1)
        roots = []
        for r in candidates:
            if roots and r - roots[-1] < spacing / 2:
                continue
            roots.append(r)
        return roots

    def classify(self, f: Callable[[float], float], x: float, offset: float) -> Equilibrium:
        """Stability from the sign of the flow just left and right of ``x``"""
        left = self.flow_sign(f(x - offset))
        right = self.flow_sign(f(x + offset))

        if left > 0 and right < 0:
            return Equilibrium(x, Stability.STABLE)
        if left < 0 and right > 0:
            return Equilibrium(x, Stability.UNSTABLE)

        if left > 0:
            direction = "left"
        elif right < 0:
            direction = "right"
        else:
            direction = None
        return Equilibrium(x, Stability.SEMI_STABLE, direction)

    def flow_sign(self, value: float) -> int:
        """+1/-1 for flow to the right/left, 0 when flow is effectively absent"""
        if not math.isfinite(value) or abs(value) < self.config.zero_tolerance:
            return 0
        return 1 if value > 0 else -1

def analyze_phase_line(system: SystemModel1D, params: Optional[Mapping[str, float]],
                       x_min: float, x_max: float,
                       config: Optional[AnalysisConfig] = None) -> PhaseLineAnalysis:
    return PhaseLineAnalyzer(config).analyze(system, params, x_min, x_max)

# ============================================================================
# PHASE-PLANE ANALYSIS
# ============================================================================

@dataclass(frozen=True)
class PlanarEquilibrium:
    x: float
    y: float
    kind: str
    eigenvalues: Tuple[complex, ...] = ()

def classify_linearization(trace: float, determinant: float, tolerance: float = 1e-9) -> str:
    """Trace/determinant classification of a 2x2 linearisation"""
    if abs(determinant) < tolerance:
        return "degenerate"
    if determinant < 0:
        return "saddle"
    if abs(trace) < tolerance:
        return "center"
    discriminant = trace * trace - 4 * determinant
    if discriminant >= 0:
        return "stable node" if trace < 0 else "unstable node"
    return "stable spiral" if trace < 0 else "unstable spiral"

def vector_field(system: SystemModel2D, params: Optional[Mapping[str, float]],
                 x_range: Tuple[float, float], y_range: Tuple[float, float],
                 grid_size: int = 20) -> Dict[str, np.ndarray]:
    """
    Sample the field on a (grid_size + 1)^2 grid

    Returns arrays ``x``, ``y``, ``dx``, ``dy``, ``magnitude`` and unit
    direction ``ndx``, ``ndy`` (zero where the field vanishes or is non-finite).
    """
    system.require_valid()
    xs = np.linspace(x_range[0], x_range[1], grid_size + 1)
    ys = np.linspace(y_range[0], y_range[1], grid_size + 1)
    X, Y = np.meshgrid(xs, ys, indexing="ij")

    bindings = system.bindings_for(params)
    DX = np.empty_like(X)
    DY = np.empty_like(Y)
    for i in range(X.shape[0]):
        for j in range(X.shape[1]):
            DX[i, j], DY[i, j] = system.evaluate_bound(bindings, (float(X[i, j]), float(Y[i, j])))

    with np.errstate(invalid="ignore", over="ignore"):
        magnitude = np.hypot(DX, DY)
        usable = np.isfinite(magnitude) & (magnitude > 0)
        ndx = np.where(usable, DX / np.where(usable, magnitude, 1.0), 0.0)
        ndy = np.where(usable, DY / np.where(usable, magnitude, 1.0), 0.0)

    return {'x': X, 'y': Y, 'dx': DX, 'dy': DY, 'magnitude': magnitude, 'ndx': ndx, 'ndy': ndy}

class PhasePlaneAnalyzer:
    """Equilibria of a 2D system with linear classification"""

    def __init__(self, grid_size: int = 40, tolerance: float = 1e-8):
        self.grid_size = grid_size
        self.tolerance = tolerance
        self.symbolic = SymbolicEngine()

    def jacobian_function(self, system: SystemModel2D) -> Callable[[float, float, Dict[str, float]], np.ndarray]:
        """Numeric Jacobian J(x, y, bindings), symbolic where possible"""
        names = list(system.state_names) + list(system.parameter_names)
        try:
            matrix = self.symbolic.jacobian([e.expression for e in system.expressions],
                                            system.state_names, system.vocabulary)
            numeric = self.symbolic.lambdify(matrix, names)
        except (ValueError, TypeError, OverflowError, sp.SympifyError) as e:
            warnings.warn(f"Symbolic Jacobian unavailable ({e}); using finite differences")
            return self._finite_difference_jacobian(system)

        def jacobian(x, y, bindings):
            args = [x, y] + [bindings.get(name, 0.0) for name in system.parameter_names]
            with np.errstate(all="ignore"):
                return np.array(numeric(*args), dtype=float)
        return jacobian

    def _finite_difference_jacobian(self, system: SystemModel2D):
        def jacobian(x, y, bindings, h=1e-6):
            fx1 = system.evaluate_bound(bindings, (x + h, y))
            fx0 = system.evaluate_bound(bindings, (x - h, y))
            fy1 = system.evaluate_bound(bindings, (x, y + h))
            fy0 = system.evaluate_bound(bindings, (x, y - h))
            return np.array([[(fx1[0] - fx0[0]) / (2 * h), (fy1[0] - fy0[0]) / (2 * h)],
                             [(fx1[1] - fx0[1]) / (2 * h), (fy1[1] - fy0[1]) / (2 * h)]])
        return jacobian

    def find_equilibria(self, system: SystemModel2D, params: Optional[Mapping[str, float]],
                        x_range: Tuple[float, float], y_range: Tuple[float, float]) -> List[PlanarEquilibrium]:
        """
        Grid scan for local minima of |F|, refined with scipy.optimize.root

        Returns:
            Equilibria inside the ranges, sorted by (x, y)
        """
        system.require_valid()
        field_data = vector_field(system, params, x_range, y_range, self.grid_size)
        magnitude = field_data['magnitude']
        bindings = system.bindings_for(params)

        def F(v):
            return np.array(system.evaluate_bound(bindings, (float(v[0]), float(v[1]))), dtype=float)

        seeds = []
        n = magnitude.shape[0]
        for i in range(n):
            for j in range(n):
                m = magnitude[i, j]
                if not np.isfinite(m):
                    continue
                window = magnitude[max(i - 1, 0):i + 2, max(j - 1, 0):j + 2]
                if m <= np.nanmin(window):
                    seeds.append((field_data['x'][i, j], field_data['y'][i, j]))

        scale = max(x_range[1] - x_range[0], y_range[1] - y_range[0])
        found: List[Tuple[float, float]] = []
        for seed in seeds:
            with np.errstate(all="ignore"):
                solution = root(F, np.array(seed), method="hybr", tol=1e-12)
            if not solution.success:
                continue
            x, y = (float(v) for v in solution.x)
            residual = F(solution.x)
            if not (np.all(np.isfinite(residual)) and np.max(np.abs(residual)) < self.tolerance):
                continue
            if not (x_range[0] <= x <= x_range[1] and y_range[0] <= y <= y_range[1]):
                continue
            if any(math.hypot(x - fx, y - fy) < 1e-6 * scale for fx, fy in found):
                continue
            found.append((x, y))

        jacobian = self.jacobian_function(system)
        equilibria = []
        for x, y in sorted(found):
            J = jacobian(x, y, bindings)
            if np.all(np.isfinite(J)):
                kind = classify_linearization(float(np.trace(J)), float(np.linalg.det(J)))
                eigenvalues = tuple(complex(v) for v in np.linalg.eigvals(J))
            else:
                kind, eigenvalues = "degenerate", ()
            equilibria.append(PlanarEquilibrium(x, y, kind, eigenvalues))
        return equilibria

# ============================================================================
# EXAMPLE SYSTEMS
# ============================================================================

EXAMPLE_SYSTEMS: Dict[str, Dict[str, Any]] = {
    'logistic': {
        'formula': "k*X*(1-X)",
        'parameters': {'k': 0.5},
        'domain': [(-0.5, 1.5)],
        'initial': 0.1,
    },
    'decay': {
        'formula': "-X",
        'parameters': {},
        'domain': [(-2.0, 2.0)],
        'initial': 1.0,
    },
    'flat': {
        'formula': "0",
        'parameters': {},
        'domain': [(-1.0, 1.0)],
        'initial': 0.5,
    },
    'hutchinson': {
        'formula': "r*X*(1 - X_tau/k)",
        'parameters': {'r': 1.0, 'k': 1.0},
        'domain': [(-0.5, 2.5)],
        'initial': 0.2,
        'delay': True,
        'tau': 1.8,
    },
    'harmonic': {
        'formula': "Y, -X",
        'parameters': {},
        'domain': [(-2.0, 2.0), (-2.0, 2.0)],
        'initial': (1.0, 0.0),
    },
    'van_der_pol': {
        'formula': "Y, mu*(1 - X^2)*Y - X",
        'parameters': {'mu': 1.0},
        'domain': [(-3.0, 3.0), (-3.0, 3.0)],
        'initial': (0.5, 0.0),
    },
    'lotka_volterra': {
        'formula': "a*X - b*X*Y, -c*Y + d*X*Y",
        'parameters': {'a': 1.0, 'b': 0.5, 'c': 0.75, 'd': 0.25},
        'domain': [(-0.5, 6.0), (-0.5, 5.0)],
        'initial': (2.0, 1.0),
    },
}

def build_example(example_name: str) -> Tuple[SystemModel, Dict[str, Any]]:
    if example_name not in EXAMPLE_SYSTEMS:
        raise ValueError(f"Unknown example: {example_name}. Choose from {list(EXAMPLE_SYSTEMS.keys())}")
    example = EXAMPLE_SYSTEMS[example_name]
    params = example['parameters']
    system = build_system(example['formula'], list(params), params, delay=example.get('delay', False))
    return system, example

def print_phase_line(analysis: PhaseLineAnalysis):
    if not analysis.equilibria:
        print("  No isolated equilibria")
    for eq in analysis.equilibria:
        direction = f" (approached from the {eq.direction})" if eq.direction else ""
        print(f"  X* = {eq.x: .6f}  {eq.stability.value}{direction}")
    for interval in analysis.degenerate_intervals:
        print(f"  Degenerate interval [{interval.x_min:.6f}, {interval.x_max:.6f}]")

def print_phase_plane(equilibria: List[PlanarEquilibrium]):
    if not equilibria:
        print("  No equilibria in range")
    for eq in equilibria:
        print(f"  (X*, Y*) = ({eq.x: .6f}, {eq.y: .6f})  {eq.kind}")

def run_example(example_name: str = "logistic", t_max: float = DEFAULT_TIME_HORIZON,
                dt: float = DEFAULT_DT, verbose: bool = True) -> dict:
    """
    Build, analyse and simulate a built-in example system

    Returns:
        Dictionary with the system, its analysis and the simulation result
    """
    system, example = build_example(example_name)

    if verbose:
        print(f"\n{'='*70}")
        print(f"Example: {example_name}")
        print(f"Formula: {example['formula']}")
        print(f"Parameters: {example['parameters']}")
        print(f"{'='*70}\n")

    if system.dimension == 1:
        analysis = analyze_phase_line(system, None, *example['domain'][0])
        if verbose:
            print("Phase line:")
            print_phase_line(analysis)
    else:
        analysis = PhasePlaneAnalyzer().find_equilibria(system, None, *example['domain'])
        if verbose:
            print("Phase plane:")
            print_phase_plane(analysis)

    solution = simulate(system, example['initial'], (0.0, t_max), dt=dt, tau=example.get('tau', 0.0))

    if verbose:
        final = solution['y'][:, -1]
        print(f"\nSimulated to t = {solution['t'][-1]:.3f} with {solution['nfev']} evaluations")
        print(f"Final state: {', '.join(f'{name} = {v:.6f}' for name, v in zip(system.state_names, final))}")

    return {
        'system': system,
        'analysis': analysis,
        'solution': solution,
    }

# ============================================================================
# VALIDATION
# ============================================================================

class SystemValidator:
    """Validate the engine against known analytical behaviour"""

    @staticmethod
    def validate_exponential_decay(dt: float = 0.01, steps: int = 100,
                                   tolerance: float = 1e-3, verbose: bool = True) -> bool:
        """X' = -X from X = 1 must reach e^(-steps*dt)"""
        system = SystemModel1D("-X")
        integrator = RK4Integrator(system)
        state = IntegrationState.of(1.0)
        for _ in range(steps):
            state = integrator.step(state, dt)

        expected = math.exp(-steps * dt)
        error = abs(state.x - expected)

        if verbose:
            print(f"\n{'='*50}")
            print("Exponential Decay Validation")
            print(f"{'='*50}")
            print(f"  Numerical: {state.x:.8f}")
            print(f"  Analytical: {expected:.8f}")
            print(f"  Error: {error:.2e}")
            print(f"  Status: {'✓ PASSED' if error < tolerance else '✗ FAILED'}")
            print(f"{'='*50}\n")

        return error < tolerance

    @staticmethod
    def validate_harmonic_invariant(dt: float = 0.01, tolerance: float = 1e-4,
                                    verbose: bool = True) -> bool:
        """X' = Y, Y' = -X must conserve X^2 + Y^2 over one period"""
        system = SystemModel2D("Y", "-X")
        integrator = RK4Integrator(system)
        state = IntegrationState.of(1.0, 0.0)
        steps = int(round(2 * math.pi / dt))

        max_drift = 0.0
        for _ in range(steps):
            state = integrator.step(state, dt)
            max_drift = max(max_drift, abs(state.x ** 2 + state.y ** 2 - 1.0))

        if verbose:
            print(f"\n{'='*50}")
            print("Harmonic Invariant Validation")
            print(f"{'='*50}")
            print(f"  Steps: {steps}")
            print(f"  Max drift of X^2 + Y^2: {max_drift:.2e}")
            print(f"  Status: {'✓ PASSED' if max_drift < tolerance else '✗ FAILED'}")
            print(f"{'='*50}\n")

        return max_drift < tolerance

    @staticmethod
    def validate_logistic_phase_line(verbose: bool = True) -> bool:
        """k*X*(1-X), k = 0.5: unstable 0, stable 1, no flat regions"""
        system = SystemModel1D("k*X*(1-X)", ["k"])
        analysis = analyze_phase_line(system, {'k': 0.5}, -0.5, 1.5)
        found = [(round(eq.x, 6), eq.stability) for eq in analysis.equilibria]
        passed = (found == [(0.0, Stability.UNSTABLE), (1.0, Stability.STABLE)]
                  and not analysis.degenerate_intervals)

        if verbose:
            print(f"\n{'='*50}")
            print("Logistic Phase Line Validation")
            print(f"{'='*50}")
            print_phase_line(analysis)
            print(f"  Status: {'✓ PASSED' if passed else '✗ FAILED'}")
            print(f"{'='*50}\n")

        return passed

    @staticmethod
    def run_all_tests(verbose: bool = True) -> dict:
        """Run every validation and print a summary"""
        checks = {
            'exponential_decay': SystemValidator.validate_exponential_decay,
            'harmonic_invariant': SystemValidator.validate_harmonic_invariant,
            'logistic_phase_line': SystemValidator.validate_logistic_phase_line,
        }

        results = {}
        for name, check in checks.items():
            try:
                results[name] = check(verbose=verbose)
            except Exception as e:
                if verbose:
                    print(f"✗ {name} raised: {e}")
                results[name] = False

        if verbose:
            print("\n" + "="*70)
            print("Test Summary")
            print("="*70)
            for name, passed in results.items():
                print(f"  {'✓' if passed else '✗'} {name}")
            print(f"\nOverall: {sum(results.values())}/{len(results)} checks passed")
            print("="*70 + "\n")

        return results

# ============================================================================
# COMMAND LINE INTERFACE
# ============================================================================

def parse_param(text: str) -> Tuple[str, float]:
    """argparse type for NAME=VALUE"""
    import argparse

    name, sep, value = text.partition("=")
    name = name.strip()
    if not sep or not identifier_pattern.match(name):
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got '{text}'")
    try:
        return name, float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid value for {name}: '{value}'")

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command line interface for DynamicsDSL"""
    import argparse

    parser = argparse.ArgumentParser(
        description='DynamicsDSL v0.1.0 - formula compiler and phase-line analysis',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Phase line of the logistic equation
  dynamics-dsl --formula "k*X*(1-X)" --param k=0.5 --domain -0.5 1.5

  # Planar system given as "f, g" and a trajectory
  dynamics-dsl --formula "Y, -X" --simulate --x0 1 0 --time 6.283

  # Delay equation
  dynamics-dsl --formula "X*(1 - X_tau)" --delay --tau 1.5 --simulate --x0 0.2

  # Built-in example and self checks
  dynamics-dsl --example hutchinson
  dynamics-dsl --test
        """
    )

    parser.add_argument('--formula', type=str, help="Right-hand side, e.g. 'k*X*(1-X)' or 'Y, -X'")
    parser.add_argument('--y-formula', type=str, help="Right-hand side for Y' (2D systems)")
    parser.add_argument('--param', type=parse_param, action='append', default=[],
                        metavar='NAME=VALUE', help='Parameter binding (repeatable)')
    parser.add_argument('--domain', type=float, nargs=2, metavar=('MIN', 'MAX'),
                        default=[-2.0, 2.0], help='X range for analysis (default: -2 2)')
    parser.add_argument('--y-domain', type=float, nargs=2, metavar=('MIN', 'MAX'),
                        default=[-2.0, 2.0], help='Y range for 2D analysis (default: -2 2)')
    parser.add_argument('--delay', action='store_true', help='Allow X_tau (delayed X) in the formula')
    parser.add_argument('--tau', type=float, default=0.0, help='Delay for X_tau (default: 0)')
    parser.add_argument('--simulate', action='store_true', help='Integrate a trajectory')
    parser.add_argument('--x0', type=float, nargs='+', help='Initial state')
    parser.add_argument('--time', type=float, default=DEFAULT_TIME_HORIZON,
                        help=f'Simulation time (default: {DEFAULT_TIME_HORIZON})')
    parser.add_argument('--dt', type=float, default=DEFAULT_DT, help=f'Time step (default: {DEFAULT_DT})')
    parser.add_argument('--method', type=str, default='RK4', help="'RK4' or a solve_ivp method (default: RK4)")
    parser.add_argument('--config', type=str, help='JSON file with analysis settings')
    parser.add_argument('--latex', action='store_true', help='Print the LaTeX form of the formula')
    parser.add_argument('--example', type=str, choices=sorted(EXAMPLE_SYSTEMS),
                        help='Run a built-in example system')
    parser.add_argument('--test', action='store_true', help='Run the validation suite')

    args = parser.parse_args(argv)

    if args.test:
        results = SystemValidator.run_all_tests()
        return 0 if all(results.values()) else 1

    if args.example:
        run_example(args.example, t_max=args.time, dt=args.dt)
        return 0

    if not args.formula:
        parser.print_help()
        return 0

    config = AnalysisConfig()
    if args.config:
        try:
            config = AnalysisConfig.from_json(args.config)
        except FileNotFoundError:
            print(f"Error: File '{args.config}' not found")
            return 1
        except ValueError as e:
            print(f"Error: invalid analysis settings: {e}")
            return 1

    params = dict(args.param)
    if args.y_formula:
        system = SystemModel2D(args.formula, args.y_formula, list(params), params)
    else:
        try:
            system = build_system(args.formula, list(params), params, delay=args.delay)
        except ValueError as e:
            print(f"Error: {e}")
            return 1

    if not system.is_valid_system():
        print(f"Invalid formula: {system.get_error()}")
        return 1

    print(f"\n{'='*70}")
    print(f"System: {', '.join(system.formulas)}")
    if args.latex:
        for label, tex in zip(system.labels, system.latex()):
            print(f"  {label} = {tex}")
    print(f"{'='*70}\n")

    if system.dimension == 1:
        print(f"Phase line on [{args.domain[0]}, {args.domain[1]}]:")
        print_phase_line(PhaseLineAnalyzer(config).analyze(system, None, *args.domain))
    else:
        print(f"Phase plane on {args.domain} x {args.y_domain}:")
        print_phase_plane(PhasePlaneAnalyzer().find_equilibria(system, None, args.domain, args.y_domain))

    if args.simulate:
        initial = args.x0 if args.x0 else [0.0] * system.dimension
        try:
            solution = simulate(system, initial, (0.0, args.time), dt=args.dt,
                                method=args.method, tau=args.tau)
        except ValueError as e:
            print(f"Error: {e}")
            return 1
        if not solution['success']:
            print(f"\nSimulation stopped: {solution.get('error', solution.get('message'))}")
            return 1
        final = solution['y'][:, -1]
        print(f"\nSimulated to t = {solution['t'][-1]:.3f} ({solution['nfev']} evaluations)")
        print(f"Final state: {', '.join(f'{name} = {v:.6f}' for name, v in zip(system.state_names, final))}")

    return 0

# ============================================================================
# MODULE EXPORTS
# ============================================================================

__all__ = [
    'FormulaError',
    'ParseError',
    'ValidationError',
    'MissingBindingError',
    'InvalidSystemError',
    'Token',
    'tokenize',
    'NumberExpr',
    'IdentExpr',
    'BinaryOpExpr',
    'UnaryOpExpr',
    'FunctionCallExpr',
    'parse',
    'parse_components',
    'split_components',
    'expression_to_string',
    'substitute',
    'expression_depth',
    'MAX_DEPTH',
    'FUNCTIONS',
    'CONSTANTS',
    'validate',
    'CompiledExpression',
    'compile_expression',
    'compile_formula',
    'check_formula',
    'SymbolicEngine',
    'SystemModel',
    'SystemModel1D',
    'SystemModel2D',
    'build_system',
    'IntegrationState',
    'HistorySample',
    'RK4Integrator',
    'DelayRK4Integrator',
    'euler_step',
    'Trajectory',
    'generate_time_series',
    'simulate',
    'AnalysisConfig',
    'Stability',
    'Equilibrium',
    'DegenerateInterval',
    'PhaseLineAnalysis',
    'PhaseLineAnalyzer',
    'analyze_phase_line',
    'filter_equilibria',
    'PlanarEquilibrium',
    'PhasePlaneAnalyzer',
    'vector_field',
    'classify_linearization',
    'EXAMPLE_SYSTEMS',
    'run_example',
    'SystemValidator',
    'main',
]

if __name__ == "__main__":
    sys.exit(main())
