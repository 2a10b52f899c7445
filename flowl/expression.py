"""Expression composer and evaluator.

Conditions and multi-token initializers are collapsed into one expression
string by `compose()`; `evaluate()` runs that string through a small lark
grammar (see `expr.lark`) supporting arithmetic, string and number
comparison, `&&`, `||`, `!` and parentheses. Results are returned as
strings: booleans become `true`/`false`, numbers are printed without a
trailing `.0` when they are integral.
"""
from __future__ import annotations
import math
from pathlib import Path
from typing import Any, List, Sequence

from lark import Lark, Transformer, v_args
from lark.exceptions import LarkError, VisitError

from .errors import EvaluationError
from .tokens import Token, TokenType

GRAMMAR_PATH = Path(__file__).with_name("expr.lark")

ARITHMETIC = frozenset({"+", "-", "*", "/", "%", "(", ")"})

_parser = None


def _load_parser() -> Lark:
    global _parser
    if _parser is None:
        grammar = GRAMMAR_PATH.read_text(encoding="utf-8")
        _parser = Lark(grammar, start="start", parser="lalr")
    return _parser


# ─── Composer ────────────────────────────────────────────────────

def _is_arithmetic(s: str) -> bool:
    return s in ARITHMETIC or (len(s) > 1 and all(c in ARITHMETIC for c in s))


def compose(tokens: Sequence[Token]) -> str:
    """Join expression tokens into one evaluable string.

    Tokens are grouped at `&&` and `||`. Inside a group, string literals are
    re-quoted; a `$(ref)` is quoted when the group compares strings, left bare
    when it holds a number, quoted when there is no arithmetic at all, and
    left bare otherwise.
    """
    out: List[str] = []
    group: List[Token] = []
    has_string = has_number = has_arith = False

    def flush():
        for t in group:
            if t.type == TokenType.STRING:
                out.append('"' + t.text + '"')
            elif t.type == TokenType.REFVAR:
                if has_string or (not has_number and not has_arith):
                    out.append('"' + t.text + '"')
                else:
                    out.append(t.text)
            else:
                out.append(t.text)

    for t in tokens:
        group.append(t)
        if t.text in ("||", "&&"):
            flush()
            group = []
            has_string = has_arith = False
            continue
        if _is_arithmetic(t.text):
            has_arith = True
        if t.type == TokenType.STRING:
            has_string = True
        if t.type == TokenType.NUMBER:
            has_number = True
    if group:
        flush()
    return "".join(out)


def compose_token(tokens: Sequence[Token]) -> Token:
    return Token(compose(tokens), TokenType.EXPR)


# ─── Evaluator ───────────────────────────────────────────────────

def _is_num(v: Any) -> bool:
    return isinstance(v, float)


def _need_bool(op: str, *vals):
    for v in vals:
        if not isinstance(v, bool):
            raise EvaluationError(f"operator '{op}' needs boolean operands, got {v!r}")


def _need_num(op: str, *vals):
    for v in vals:
        if not _is_num(v):
            raise EvaluationError(f"operator '{op}' needs numeric operands, got {v!r}")


def _same_kind(a, b) -> bool:
    return type(a) is type(b)


def format_number(v: float) -> str:
    if math.isfinite(v) and v.is_integer() and abs(v) < 1e21:
        return str(int(v))
    return repr(v)


def _to_text(v) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    if _is_num(v):
        return format_number(v)
    return v


@v_args(inline=True)
class _Evaluator(Transformer):
    def number(self, tok):
        return float(tok)

    def string(self, tok):
        return str(tok)[1:-1].replace('\\"', '"')

    def true(self):
        return True

    def false(self):
        return False

    def neg(self, v):
        _need_num("-", v)
        return -v

    def pos(self, v):
        _need_num("+", v)
        return v

    def add(self, a, b):
        if isinstance(a, str) or isinstance(b, str):
            return _to_text(a) + _to_text(b)
        _need_num("+", a, b)
        return a + b

    def sub(self, a, b):
        _need_num("-", a, b)
        return a - b

    def mul(self, a, b):
        _need_num("*", a, b)
        return a * b

    def div(self, a, b):
        _need_num("/", a, b)
        if b == 0:
            raise EvaluationError("division by zero")
        return a / b

    def mod(self, a, b):
        _need_num("%", a, b)
        if b == 0:
            raise EvaluationError("division by zero")
        return math.fmod(a, b)

    def eq(self, a, b):
        return _same_kind(a, b) and a == b

    def ne(self, a, b):
        return not (_same_kind(a, b) and a == b)

    def _order(self, op, a, b):
        if not (_same_kind(a, b) and isinstance(a, (float, str))):
            raise EvaluationError(f"operator '{op}' cannot compare {a!r} and {b!r}")

    def gt(self, a, b):
        self._order(">", a, b)
        return a > b

    def lt(self, a, b):
        self._order("<", a, b)
        return a < b

    def ge(self, a, b):
        self._order(">=", a, b)
        return a >= b

    def le(self, a, b):
        self._order("<=", a, b)
        return a <= b

    def and_op(self, a, b):
        _need_bool("&&", a, b)
        return a and b

    def or_op(self, a, b):
        _need_bool("||", a, b)
        return a or b

    def not_op(self, v):
        _need_bool("!", v)
        return not v


def evaluate(s: str) -> Any:
    """Evaluate an expression string and return a float, bool or str."""
    try:
        tree = _load_parser().parse(s)
        result = _Evaluator().transform(tree)
    except VisitError as e:
        if isinstance(e.orig_exc, EvaluationError):
            raise e.orig_exc from e
        raise EvaluationError(f"'{s}': {e.orig_exc}") from e
    except LarkError as e:
        raise EvaluationError(f"'{s}': {e}") from e
    return result


def evaluate_string(s: str) -> str:
    """Evaluate an expression and stringify the result.

    Only numeric and boolean results are accepted.
    """
    result = evaluate(s)
    if isinstance(result, bool):
        return "true" if result else "false"
    if _is_num(result):
        return format_number(result)
    raise EvaluationError(f"invalid eval type: '{s}'")
