"""Line-pattern parser turning flowl token lines into a tree of blocks.

The parser is a small state machine: the current state decides which
statements a line may start, and each statement shape is checked against a
pattern of token types and literal values before its tokens are upgraded to
their semantic types.
"""
from __future__ import annotations
from collections import Counter, namedtuple
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

from loguru import logger

from .block import KIND_BTF, KIND_GLOBAL, Block, ListBody, MapBody, PlainBody, Statement, tokens_error
from .errors import (
    IdentConflictError,
    ParseError,
    StatementError,
    TokenError,
    VariableError,
    ERR_INCOMPLETE_SOURCE,
    ERR_STATEMENT_INFER_FAILED,
    ERR_STATEMENT_TOO_MANY,
    ERR_STATEMENT_UNKNOWN,
    ERR_TOKEN_NUM_IN_LINE,
    ERR_VARIABLE_NOT_DEFINED,
    ERR_VARIABLE_VALUE_TYPE,
)
from .expression import compose_token
from .lexer import tokenize
from .tokens import (
    DIRECTIVES,
    KW_ARGS,
    KW_CASE,
    KW_CO,
    KW_COMMENT,
    KW_DEFAULT,
    KW_EVENT,
    KW_FN,
    KW_FOR,
    KW_IF,
    KW_LOAD,
    KW_SWITCH,
    KW_VAR,
    Token,
    TokenType,
    type_error,
    value_error,
)
from .variables import CONDITION_VAR, ENV_VAR, Var, VarTable

T = TokenType


class ParseState(str, Enum):
    GLOBAL = "global"
    CO_BODY = "co_body"
    FN_BODY = "fn_body"
    ARGS_BODY = "args_body"
    FOR_BODY = "for_body"
    IF_BODY = "if_body"
    SWITCH_BODY = "switch_body"
    CASE_BODY = "case_body"
    DEFAULT_BODY = "default_body"
    EVENT_BODY = "event_body"


Pattern = namedtuple("Pattern", ["min", "max", "types", "values", "uptypes", "body"])

STATEMENT_PATTERNS: Dict[str, Pattern] = {
    "load": Pattern(2, 2, [T.IDENT, T.STRING], [KW_LOAD, ""], [T.KEYWORD, T.LOAD], None),
    "fn": Pattern(5, 5, [T.IDENT, T.IDENT, T.SYMBOL, T.IDENT, T.SYMBOL], [KW_FN, "", "=", "", "{"],
                  [T.KEYWORD, T.FUNCTIONNAME, T.OPERATOR, T.FUNCTIONNAME, T.SYMBOL], PlainBody),
    "co1": Pattern(2, 2, [T.IDENT, T.IDENT], [KW_CO, ""], [T.KEYWORD, T.FUNCTIONNAME], None),
    "co1->": Pattern(4, 4, [T.IDENT, T.IDENT, T.SYMBOL, T.IDENT], [KW_CO, "", "->", ""],
                     [T.KEYWORD, T.FUNCTIONNAME, T.OPERATOR, T.VARNAME], None),
    "co1+": Pattern(3, 3, [T.IDENT, T.IDENT, T.SYMBOL], [KW_CO, "", "{"],
                    [T.KEYWORD, T.FUNCTIONNAME, T.SYMBOL], MapBody),
    "co1+->": Pattern(5, 5, [T.IDENT, T.IDENT, T.SYMBOL, T.IDENT, T.SYMBOL], [KW_CO, "", "->", "", "{"],
                      [T.KEYWORD, T.FUNCTIONNAME, T.OPERATOR, T.VARNAME, T.SYMBOL], MapBody),
    "co2": Pattern(2, 2, [T.IDENT, T.SYMBOL], [KW_CO, "{"], [T.KEYWORD, T.SYMBOL],
                   lambda: ListBody(T.FUNCTIONNAME)),
    "var": Pattern(2, 4, [T.IDENT, T.IDENT, T.SYMBOL], [KW_VAR, "", "="], [T.KEYWORD, T.VARNAME, T.OPERATOR], None),
    "args": Pattern(3, 3, [T.IDENT, T.SYMBOL, T.SYMBOL], [KW_ARGS, "=", "{"], [T.KEYWORD, T.OPERATOR, T.SYMBOL],
                    MapBody),
    "for1": Pattern(2, 2, [T.IDENT, T.SYMBOL], [KW_FOR, "{"], [T.KEYWORD, T.SYMBOL], PlainBody),
    "for2": Pattern(3, 3, [T.IDENT, T.EXPR, T.SYMBOL], [KW_FOR, "", "{"], [T.KEYWORD, T.EXPR, T.SYMBOL], PlainBody),
    "if": Pattern(3, 3, [T.IDENT, T.EXPR, T.SYMBOL], [KW_IF, "", "{"], [T.KEYWORD, T.EXPR, T.SYMBOL], PlainBody),
    "switch": Pattern(2, 2, [T.IDENT, T.SYMBOL], [KW_SWITCH, "{"], [T.KEYWORD, T.SYMBOL], PlainBody),
    "case": Pattern(3, 3, [T.IDENT, T.EXPR, T.SYMBOL], [KW_CASE, "", "{"], [T.KEYWORD, T.EXPR, T.SYMBOL],
                    PlainBody),
    "default": Pattern(2, 2, [T.IDENT, T.SYMBOL], [KW_DEFAULT, "{"], [T.KEYWORD, T.SYMBOL], PlainBody),
    "closed": Pattern(1, 1, [T.SYMBOL], ["}"], [T.SYMBOL], None),
    "event": Pattern(2, 2, [T.IDENT, T.SYMBOL], [KW_EVENT, "{"], [T.KEYWORD, T.SYMBOL], PlainBody),
    "builtins": Pattern(1, 3, [T.IDENT, T.STRING, T.STRING], ["", "", ""], [T.IDENT, T.STRING, T.STRING], None),
}


# ─── Rewrite inference ───────────────────────────────────────────
# Each rule is a token prefix; plain rules must match the whole line, while
# expression rules compose everything after `<-` into one expression.

def _tt(typ: TokenType, value: str = ""):
    return lambda t: t.type == typ and (not value or t.text == value)


def _open_paren(t: Token) -> bool:
    return t.type == T.SYMBOL and t.text.startswith("(")


_ARROW = _tt(T.SYMBOL, "<-")

REWRITE_RULES: List[Tuple[List[Callable[[Token], bool]], bool]] = [
    ([_tt(T.IDENT), _ARROW, _tt(T.STRING)], False),               # v <- "foo"
    ([_tt(T.IDENT), _ARROW, _tt(T.NUMBER)], False),               # v <- 100
    ([_tt(T.IDENT), _ARROW, _tt(T.REFVAR)], False),               # v <- $(foo)
    ([_tt(T.IDENT), _ARROW, _tt(T.SYMBOL, "-"), _tt(T.NUMBER)], True),  # v <- -100
    ([_tt(T.IDENT), _ARROW, _open_paren], True),                  # v <- (1 + 2) * 3
    ([_tt(T.IDENT), _ARROW, _tt(T.STRING), _tt(T.SYMBOL)], True),  # v <- "a" > "b"
    ([_tt(T.IDENT), _ARROW, _tt(T.NUMBER), _tt(T.SYMBOL)], True),  # v <- 100 + 1
    ([_tt(T.IDENT), _ARROW, _tt(T.REFVAR), _tt(T.SYMBOL)], True),  # v <- $(foo) + 1
]


def infer_rewrite(line: List[Token]) -> Optional[bool]:
    """Return True/False for an expression/plain rewrite line, None if no rule matches."""
    for rule, asexpr in REWRITE_RULES:
        if len(line) < len(rule) or (not asexpr and len(line) != len(rule)):
            continue
        if all(match(t) for match, t in zip(rule, line)):
            return asexpr
    return None


# ─── Line splitting ──────────────────────────────────────────────

def split_line(line: List[Token]) -> List[List[Token]]:
    """Break one source line into statements.

    A line is cut after every `{` and around every `}`, and a `load` line is
    cut before each further `load`.
    """
    out: List[List[Token]] = []
    current: List[Token] = []
    for t in line:
        if t.type == T.SYMBOL and t.text == KW_COMMENT:
            break
        if t.type == T.SYMBOL and t.text == "{":
            current.append(t)
            out.append(current)
            current = []
        elif t.type == T.SYMBOL and t.text == "}":
            if current:
                out.append(current)
            out.append([t])
            current = []
        elif t.type == T.IDENT and t.text == KW_LOAD and current and current[0].text == KW_LOAD:
            out.append(current)
            current = [t]
        else:
            current.append(t)
    if current:
        out.append(current)
    return out


class AST:
    """Root of a parsed flowl program."""

    def __init__(self):
        env = Var.env()
        self.global_block = Block(kind=Token(KIND_GLOBAL), body=PlainBody(), vtbl=VarTable({ENV_VAR: env}))
        self.desc = ""

    def foreach(self):
        return self.global_block.walk()

    def get_blocks(self) -> Tuple[List[Block], List[Block], List[Block]]:
        loads, fns, runs = [], [], []
        for b in self.foreach():
            if b.is_load():
                loads.append(b)
            if b.is_fn():
                fns.append(b)
            if b.is_for() or b.is_btf() or b.is_co() or b.is_directive():
                runs.append(b)
        return loads, fns, runs

    def has_event(self) -> bool:
        return any(c.is_event() for c in self.global_block.children)


class Parser:
    def __init__(self):
        self.ast = AST()
        self.state = ParseState.GLOBAL
        self.current: Block = self.ast.global_block
        self.fns: Dict[str, int] = {}
        self.cos: List[str] = []
        self.var_values: List[Token] = []

    def _goto(self, state: ParseState) -> None:
        self.state = state

    # ─── Driver ──────────────────────────────────────────────────

    def parse(self, source: str) -> AST:
        lx = tokenize(source)
        for ln, raw in lx.foreach_line():
            if raw[0].text == KW_COMMENT and raw[0].type == T.SYMBOL:
                # the first comment of the file describes the flow
                if not self.ast.desc and not self.ast.global_block.children and len(raw) > 1:
                    self.ast.desc = raw[1].text
                continue
            for line in split_line(raw):
                self._line(line, ln)
        if self.state != ParseState.GLOBAL:
            raise StatementError(self.current.kind.ln, "possible missing terminator", rule=ERR_INCOMPLETE_SOURCE)
        self.validate()
        return self.ast

    def _line(self, line: List[Token], ln: int) -> None:
        handler = {
            ParseState.GLOBAL: self._global,
            ParseState.FN_BODY: self._fn_body,
            ParseState.ARGS_BODY: self._args_body,
            ParseState.CO_BODY: self._co_body,
            ParseState.FOR_BODY: self._for_body,
            ParseState.IF_BODY: self._if_body,
            ParseState.SWITCH_BODY: self._switch_body,
            ParseState.CASE_BODY: self._case_default_body,
            ParseState.DEFAULT_BODY: self._case_default_body,
            ParseState.EVENT_BODY: self._event_body,
        }[self.state]
        for t in line:
            t.ln = ln
        self.current = handler(line, ln, self.current)

    def preparse(self, key: str, line: List[Token], ln: int, b: Block):
        pattern = STATEMENT_PATTERNS[key]
        n = len(line)
        if n < pattern.min or n > pattern.max:
            raise TokenError(ln, f"actual {n}, expect [{pattern.min},{pattern.max}]", rule=ERR_TOKEN_NUM_IN_LINE)

        m = min(n, len(pattern.types))
        for i in range(m):
            t = line[i]
            if t.type != pattern.types[i]:
                raise type_error(t, pattern.types[i])
            if pattern.values[i] and pattern.values[i] != t.text:
                raise value_error(t, pattern.values[i])

        for i in range(m):
            line[i].type = pattern.uptypes[i]

        for t in line:
            t.block = b
            t.ln = ln
            t.extract_vars()

        return pattern.body() if pattern.body is not None else None

    def _is_closed(self, line: List[Token], ln: int, b: Block) -> bool:
        try:
            self.preparse("closed", line, ln, b)
        except ParseError:
            return False
        return True

    def _unknown(self, line: List[Token], ln: int):
        return StatementError(ln, f"'{line[0].text}'", rule=ERR_STATEMENT_UNKNOWN)

    # ─── States ──────────────────────────────────────────────────

    def _global(self, line, ln, current: Block) -> Block:
        kind = line[0].text
        if kind == KW_LOAD:
            self.parse_load(line, ln, current)
        elif kind == KW_FN:
            block = self.parse_fn(line, ln, current)
            self._goto(ParseState.FN_BODY)
            return block
        elif kind == KW_CO:
            block = self.parse_co(line, ln, current)
            if block.body is not None:
                self._goto(ParseState.CO_BODY)
                return block
        elif kind == KW_VAR:
            self.parse_var(line, ln, current)
        elif kind == KW_FOR:
            block = self.parse_for(line, ln, current)
            self._goto(ParseState.FOR_BODY)
            return block
        elif kind == KW_IF:
            block = self.parse_if(line, ln, current)
            self._goto(ParseState.IF_BODY)
            return block
        elif kind == KW_SWITCH:
            block = self.parse_switch(line, ln, current)
            self._goto(ParseState.SWITCH_BODY)
            return block
        elif kind == KW_EVENT:
            block = self.parse_event(line, ln, current)
            self._goto(ParseState.EVENT_BODY)
            return block
        elif kind in DIRECTIVES:
            self.parse_directive(line, ln, current)
        else:
            self.parse_rewrite(line, ln, current)
        return current

    def _fn_body(self, line, ln, current: Block) -> Block:
        if self._is_closed(line, ln, current):
            self._goto(ParseState.GLOBAL)
            return self.ast.global_block
        kind = line[0].text
        if kind == KW_ARGS:
            block = self.parse_args(line, ln, current)
            self._goto(ParseState.ARGS_BODY)
            return block
        if kind == KW_VAR:
            self.parse_var(line, ln, current)
        else:
            self.parse_rewrite(line, ln, current)
        return current

    def _args_body(self, line, ln, current: Block) -> Block:
        if self._is_closed(line, ln, current):
            self._goto(ParseState.FN_BODY)
            return current.parent
        self._append_map(line, ln, current)
        return current

    def _co_body(self, line, ln, current: Block) -> Block:
        if self._is_closed(line, ln, current):
            parent = current.parent
            if parent.is_for():
                self._goto(ParseState.FOR_BODY)
            elif parent.is_if():
                self._goto(ParseState.IF_BODY)
            elif parent.is_case():
                self._goto(ParseState.CASE_BODY)
            elif parent.is_default():
                self._goto(ParseState.DEFAULT_BODY)
            elif parent.is_event():
                self._goto(ParseState.EVENT_BODY)
            else:
                self._goto(ParseState.GLOBAL)
            return parent

        if isinstance(current.body, ListBody):
            for t in line:
                t.block = current
                t.extract_vars()
                current.body.append([t])
                self.cos.append(t.text)
            return current
        self._append_map(line, ln, current)
        return current

    def _append_map(self, line, ln, current: Block) -> None:
        for t in line:
            t.block = current
            t.extract_vars()
        if len(line) > 3 and len(line) % 3 == 0:
            for i in range(0, len(line), 3):
                current.body.append(line[i:i + 3])
        else:
            current.body.append(line)

    def _for_body(self, line, ln, current: Block) -> Block:
        if self._is_closed(line, ln, current):
            # 'btf' marks the end of the loop: back to 'for'
            btf = Block(parent=current, kind=Token(KIND_BTF, T.KEYWORD, ln))
            current.children.append(btf)
            self._goto(ParseState.GLOBAL)
            return current.parent
        kind = line[0].text
        if kind == KW_CO:
            block = self.parse_co(line, ln, current)
            if block.body is not None:
                self._goto(ParseState.CO_BODY)
                return block
        elif kind == KW_IF:
            block = self.parse_if(line, ln, current)
            self._goto(ParseState.IF_BODY)
            return block
        elif kind == KW_SWITCH:
            block = self.parse_switch(line, ln, current)
            self._goto(ParseState.SWITCH_BODY)
            return block
        elif kind in DIRECTIVES:
            self.parse_directive(line, ln, current)
        else:
            self.parse_rewrite(line, ln, current)
        return current

    def _after_branch(self, parent: Block) -> None:
        self._goto(ParseState.FOR_BODY if parent.is_for() else ParseState.GLOBAL)

    def _if_body(self, line, ln, current: Block) -> Block:
        if self._is_closed(line, ln, current):
            self._after_branch(current.parent)
            return current.parent
        return self._branch_statement(line, ln, current)

    def _branch_statement(self, line, ln, current: Block) -> Block:
        kind = line[0].text
        if kind == KW_CO:
            block = self.parse_co(line, ln, current)
            if block.body is not None:
                self._goto(ParseState.CO_BODY)
                return block
        elif kind in DIRECTIVES:
            self.parse_directive(line, ln, current)
        else:
            raise self._unknown(line, ln)
        return current

    def _switch_body(self, line, ln, current: Block) -> Block:
        if self._is_closed(line, ln, current):
            self._after_branch(current.parent)
            return current.parent
        kind = line[0].text
        if kind == KW_CASE:
            block = self.parse_case(line, ln, current)
            self._goto(ParseState.CASE_BODY)
            return block
        if kind == KW_DEFAULT:
            block = self.parse_default(line, ln, current)
            self._goto(ParseState.DEFAULT_BODY)
            return block
        raise self._unknown(line, ln)

    def _case_default_body(self, line, ln, current: Block) -> Block:
        if self._is_closed(line, ln, current):
            self._goto(ParseState.SWITCH_BODY)
            return current.parent
        return self._branch_statement(line, ln, current)

    def _event_body(self, line, ln, current: Block) -> Block:
        if self._is_closed(line, ln, current):
            self._goto(ParseState.GLOBAL)
            return self.ast.global_block
        if line[0].text != KW_CO:
            raise self._unknown(line, ln)
        block = self.parse_co(line, ln, current)
        if block.body is not None:
            self._goto(ParseState.CO_BODY)
            return block
        return current

    # ─── Statements ──────────────────────────────────────────────

    def _new_block(self, parent: Block) -> Block:
        return Block(parent=parent)

    def _attach(self, parent: Block, b: Block) -> Block:
        parent.children.append(b)
        return b

    def _check_targets(self, b: Block, ln: int) -> None:
        if b.target1.text_equal(b.target2):
            raise IdentConflictError(ln, f"'{b.target1.text}', '{b.target2.text}'")

    def _inherit_condition(self, b: Block) -> None:
        # a call inside if/case/default is gated by the parent's condition
        if b.in_switch() or b.in_if():
            p = b.parent
            b.init_var(Statement("var", [p.target1, p.target2]))

    def _condition_token(self, b: Block, ln: int) -> Token:
        return Token(CONDITION_VAR, T.IDENT, ln, b)

    def _compose_middle(self, line: List[Token], keep_head: int) -> List[Token]:
        # compose everything between the head tokens and the trailing '{'
        if len(line) > keep_head + 1:
            return line[:keep_head] + [compose_token(line[keep_head:-1])] + [line[-1]]
        return line

    def parse_load(self, line, ln, parent: Block) -> Block:
        b = self._new_block(parent)
        b.body = self.preparse("load", line, ln, b)
        b.kind, b.target1 = line[0], line[1]
        return self._attach(parent, b)

    def parse_fn(self, line, ln, parent: Block) -> Block:
        b = self._new_block(parent)
        b.body = self.preparse("fn", line, ln, b)
        b.kind, b.target1, b.operator, b.target2 = line[0], line[1], line[2], line[3]
        self._check_targets(b, ln)
        name = b.target1.text
        if name in self.fns:
            raise IdentConflictError(ln, f"duplicate definition of fn '{name}'")
        self.fns[name] = ln
        return self._attach(parent, b)

    def parse_args(self, line, ln, parent: Block) -> Block:
        b = self._new_block(parent)
        b.body = self.preparse("args", line, ln, b)
        b.kind = line[0]
        return self._attach(parent, b)

    def parse_co(self, line, ln, parent: Block) -> Block:
        b = self._new_block(parent)
        err: Optional[ParseError] = None
        for key in ("co1", "co1+", "co2", "co1->", "co1+->"):
            try:
                body = self.preparse(key, line, ln, b)
            except ParseError as e:
                err = e
                continue
            err = None
            b.kind = line[0]
            b.body = body
            if key in ("co1", "co1+"):
                b.target1 = line[1]
            elif key in ("co1->", "co1+->"):
                b.target1, b.operator, b.target2 = line[1], line[2], line[3]
            break
        if err is not None:
            raise err

        self._check_targets(b, ln)
        if not b.target2.is_empty():
            name = b.target2.text
            if b.get_var(name)[0] is None:
                raise VariableError(b.target2.ln, f"'{name}'", rule=ERR_VARIABLE_NOT_DEFINED)
        self._inherit_condition(b)
        if not b.target1.is_empty():
            self.cos.append(b.target1.text)
        return self._attach(parent, b)

    def parse_var(self, line, ln, current: Block) -> None:
        composed = line if len(line) <= 4 else line[:3] + [compose_token(line[3:])]
        self.preparse("var", composed, ln, current)
        name = composed[1]
        name.validate()
        stm = Statement("var", [name])
        if len(composed) == 4:
            val = composed[3]
            if not val.type_in(T.STRING, T.NUMBER, T.REFVAR, T.EXPR):
                raise VariableError(val.ln, f"variable '{name.text}' value '{val.text}' type '{val.type}'",
                                    rule=ERR_VARIABLE_VALUE_TYPE)
            stm.append(val)
            self.var_values.append(val)
        current.init_var(stm)

    def parse_for(self, line, ln, parent: Block) -> Block:
        composed = self._compose_middle(line, 1)
        b = self._new_block(parent)
        if len(composed) == 2:
            b.body = self.preparse("for1", composed, ln, b)
            b.kind = composed[0]
        else:
            b.body = self.preparse("for2", composed, ln, b)
            b.kind = composed[0]
            b.target1 = self._condition_token(b, ln)
            b.target2 = composed[1]
            b.init_var(Statement("var", [b.target1, b.target2]))
        return self._attach(parent, b)

    def parse_if(self, line, ln, parent: Block) -> Block:
        composed = self._compose_middle(line, 1)
        b = self._new_block(parent)
        b.body = self.preparse("if", composed, ln, b)
        b.kind = composed[0]
        b.target1 = self._condition_token(b, ln)
        b.target2 = composed[1]
        return self._attach(parent, b)

    def parse_switch(self, line, ln, parent: Block) -> Block:
        b = self._new_block(parent)
        b.body = self.preparse("switch", line, ln, b)
        b.kind = line[0]
        return self._attach(parent, b)

    def parse_case(self, line, ln, parent: Block) -> Block:
        if any(c.is_default() for c in parent.children):
            raise StatementError(ln, "case after default in switch", rule=ERR_STATEMENT_UNKNOWN)
        composed = self._compose_middle(line, 1)
        b = self._new_block(parent)
        b.body = self.preparse("case", composed, ln, b)
        b.kind = composed[0]
        b.target1 = self._condition_token(b, ln)
        b.target2 = composed[1]
        return self._attach(parent, b)

    def parse_default(self, line, ln, parent: Block) -> Block:
        if any(c.is_default() for c in parent.children):
            raise StatementError(ln, "default in switch", rule=ERR_STATEMENT_TOO_MANY)
        b = self._new_block(parent)
        b.body = self.preparse("default", line, ln, b)
        b.kind = line[0]
        b.target1 = self._condition_token(b, ln)
        cases = [f"(!({c.target2.text}))" for c in parent.children if c.is_case()]
        expr = "&&".join(cases) if cases else "true"
        b.target2 = Token(expr, T.EXPR, ln, b)
        b.target2.extract_vars()
        return self._attach(parent, b)

    def parse_event(self, line, ln, parent: Block) -> Block:
        b = self._new_block(parent)
        b.body = self.preparse("event", line, ln, b)
        b.kind = line[0]
        return self._attach(parent, b)

    def parse_directive(self, line, ln, parent: Block) -> Block:
        b = self._new_block(parent)
        b.body = self.preparse("builtins", line, ln, b)
        b.kind = line[0]
        if len(line) >= 2:
            b.target1 = line[1]
        if len(line) == 3:
            b.target2 = line[2]
        self._inherit_condition(b)
        return self._attach(parent, b)

    def parse_rewrite(self, line, ln, current: Block) -> None:
        asexpr = infer_rewrite(line)
        if asexpr is None:
            if len(line) > 1 and line[1].text == "<-":
                raise tokens_error(StatementError, ERR_STATEMENT_INFER_FAILED, line)
            raise self._unknown(line, ln)

        target = line[0]
        target.type = T.VARNAME
        target.block = current
        value = compose_token(line[2:]) if asexpr else line[2]
        value.block = current
        value.ln = ln
        value.extract_vars()

        if current.get_var(target.text)[0] is None:
            raise VariableError(ln, f"variable name '{target.text}'", rule=ERR_VARIABLE_NOT_DEFINED)
        current.body.append(Statement("rewrite_var", [target, value]))

    # ─── Validation ──────────────────────────────────────────────

    def validate(self) -> None:
        calls = Counter(name for name in self.cos if name in self.fns)
        for name, n in calls.items():
            if n > 1:
                raise IdentConflictError(self.fns[name], f"duplicate calling the fn '{name}'")

        blocks = list(self.ast.foreach())
        for b in blocks:
            b.validate()
        for t in self.var_values:
            t.validate()
        for b in blocks:
            b.vtbl.resolve()
        for b in blocks:
            b.vtbl.cycle_check()


def parse(source: Union[str, Path]) -> AST:
    """Parse flowl source text, or the file at `source` when given a Path."""
    text = Path(source).read_text(encoding="utf-8") if isinstance(source, Path) else source
    ast = Parser().parse(text)
    logger.debug("parsed flowl source: {} blocks", sum(1 for _ in ast.foreach()))
    return ast
