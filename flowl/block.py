from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple

from .errors import (
    StatementError,
    VariableError,
    ERR_LIST_ELEM_ILLEGAL,
    ERR_MAP_KV_ILLEGAL,
    ERR_VARIABLE_HAS_CYCLE,
    ERR_VARIABLE_NOT_DEFINED,
)
from .tokens import (
    Token,
    TokenType,
    Segment,
    DIRECTIVES,
    KW_ARGS,
    KW_CASE,
    KW_CO,
    KW_DEFAULT,
    KW_EVENT,
    KW_FN,
    KW_FOR,
    KW_IF,
    KW_LOAD,
    KW_SWITCH,
    KW_VAR,
    type_error,
    value_error,
)
from .variables import CONDITION_VAR, Var, VarTable

KIND_GLOBAL = "global"
KIND_BTF = "btf"


@dataclass
class Statement:
    desc: str
    tokens: List[Token] = field(default_factory=list)

    def append(self, t: Token) -> "Statement":
        self.tokens.append(t)
        return self

    def last_token(self) -> Optional[Token]:
        return self.tokens[-1] if self.tokens else None

    def copy(self) -> "Statement":
        return Statement(self.desc, [t.copy() for t in self.tokens])

    def format(self) -> str:
        return " ".join(t.text for t in self.tokens)


def tokens_error(cls, rule: str, tokens: List[Token]):
    ln = tokens[-1].ln if tokens else 0
    return cls(ln, " ".join(f"'{t.text}'" for t in tokens), rule=rule)


# ─── Bodies ──────────────────────────────────────────────────────

class PlainBody:
    kind = "plain"

    def __init__(self):
        self.lines: List[Statement] = []

    def __len__(self) -> int:
        return len(self.lines)

    def __iter__(self) -> Iterator[Statement]:
        return iter(self.lines)

    def statements(self) -> List[Statement]:
        return list(self.lines)

    def append(self, stm: Statement) -> None:
        self.lines.append(stm)


class MapBody(PlainBody):
    """Ordered `"key" : "value"` lines."""
    kind = "map"

    def append(self, tokens: List[Token]) -> None:
        if len(tokens) != 3:
            raise tokens_error(StatementError, ERR_MAP_KV_ILLEGAL, tokens)
        k, delim, v = tokens
        if k.type != TokenType.STRING:
            raise type_error(k, TokenType.STRING)
        if delim.type != TokenType.SYMBOL:
            raise type_error(delim, TokenType.SYMBOL)
        if delim.text != ":":
            raise value_error(delim, ":")
        if v.type != TokenType.STRING:
            raise type_error(v, TokenType.STRING)
        self.lines.append(Statement("kv", [k, v]))

    def to_dict(self) -> Dict[str, str]:
        return {stm.tokens[0].value(): stm.tokens[1].value() for stm in self.lines}


class ListBody(PlainBody):
    """One element per line; elements get the body's element type."""
    kind = "list"

    def __init__(self, etype: TokenType):
        super().__init__()
        self.etype = etype

    def append(self, tokens: List[Token]) -> None:
        if len(tokens) != 1:
            raise tokens_error(StatementError, ERR_LIST_ELEM_ILLEGAL, tokens)
        t = tokens[0]
        t.type = self.etype
        self.lines.append(Statement("element", [t]))

    def to_list(self) -> List[str]:
        return [stm.tokens[0].value() for stm in self.lines]


# ─── Block ───────────────────────────────────────────────────────

class Block:
    def __init__(self, parent: Optional["Block"] = None, kind: Optional[Token] = None, body=None,
                 vtbl: Optional[VarTable] = None):
        self.kind = kind or Token()
        self.target1 = Token()
        self.operator = Token()
        self.target2 = Token()
        self.children: List[Block] = []
        self.parent = parent
        self.vtbl = vtbl or VarTable()
        self.body = body

    def __repr__(self) -> str:
        return f"Block({self})"

    def __str__(self) -> str:
        parts = [self.kind.text]
        for t in (self.target1, self.operator, self.target2):
            if not t.is_empty():
                parts.append(t.text)
        s = " ".join(parts)
        if self.body is not None:
            s += "{}"
        return s

    # ─── Kind checks ─────────────────────────────────────────────

    def is_kind(self, s: str) -> bool:
        return self.kind.text == s

    def is_global(self) -> bool:
        return self.is_kind(KIND_GLOBAL)

    def is_load(self) -> bool:
        return self.is_kind(KW_LOAD)

    def is_fn(self) -> bool:
        return self.is_kind(KW_FN)

    def is_args(self) -> bool:
        return self.is_kind(KW_ARGS)

    def is_co(self) -> bool:
        return self.is_kind(KW_CO)

    def is_var(self) -> bool:
        return self.is_kind(KW_VAR)

    def is_for(self) -> bool:
        return self.is_kind(KW_FOR)

    def is_btf(self) -> bool:
        return self.is_kind(KIND_BTF)

    def is_if(self) -> bool:
        return self.is_kind(KW_IF)

    def is_switch(self) -> bool:
        return self.is_kind(KW_SWITCH)

    def is_case(self) -> bool:
        return self.is_kind(KW_CASE)

    def is_default(self) -> bool:
        return self.is_kind(KW_DEFAULT)

    def is_event(self) -> bool:
        return self.is_kind(KW_EVENT)

    def is_directive(self) -> bool:
        return self.kind.text in DIRECTIVES and self.kind.type == TokenType.IDENT

    def in_for(self) -> bool:
        p = self.parent
        while p is not None:
            if p.is_for():
                return True
            p = p.parent
        return False

    def in_switch(self) -> bool:
        return self.parent is not None and (self.parent.is_case() or self.parent.is_default())

    def in_if(self) -> bool:
        return self.parent is not None and self.parent.is_if()

    def in_event(self) -> bool:
        return self.parent is not None and self.parent.is_event()

    # ─── Body access ─────────────────────────────────────────────

    def statements(self) -> List[Statement]:
        if self.body is None:
            return []
        return self.body.statements()

    def args_block(self) -> Optional["Block"]:
        for c in self.children:
            if c.is_args():
                return c
        return None

    # ─── Variables ───────────────────────────────────────────────

    def get_var(self, name: str) -> Tuple[Optional[Var], Optional["Block"]]:
        """Walk this block and its parents for the first table holding `name`."""
        b = self
        while b is not None:
            v = b.vtbl.get(name)
            if v is not None:
                return v, b
            b = b.parent
        return None, None

    def calc_var(self, name: str) -> Tuple[str, bool]:
        b = self
        while b is not None:
            res = b.vtbl.calc(name)
            if res is not None:
                return res
            b = b.parent
        raise VariableError(0, f"'{name}'", rule=ERR_VARIABLE_NOT_DEFINED)

    def get_var_value(self, name: str) -> Optional[str]:
        """Value of `name`, or None when no enclosing block defines it."""
        if self.get_var(name.split(".", 1)[0])[0] is None:
            return None
        value, _ = self.calc_var(name)
        return value

    def init_var(self, stm: Statement, resolve: bool = False) -> None:
        if stm.desc != "var":
            return
        name = stm.tokens[0].text
        v = Var.from_statement(stm, resolve=resolve)
        self.vtbl.add(name, v, ln=stm.tokens[0].ln)
        if resolve:
            self.vtbl.cycle_check([name])

    def rewrite_var(self, stm: Statement) -> None:
        """Execute a `name <- expr` statement against the owning block of `name`."""
        if stm.desc != "rewrite_var":
            return
        stm = stm.copy()
        name = stm.tokens[0].text
        old, owner = self.get_var(name)
        if owner is None:
            raise VariableError(stm.tokens[0].ln, f"rewrite var '{name}'", rule=ERR_VARIABLE_NOT_DEFINED)

        # substitute the current value for self references
        current, _ = self.calc_var(name)
        rhs = stm.tokens[1]
        rhs.segments = [Segment(current) if (s.isvar and s.text == name) else s for s in rhs.segments]

        v = Var.from_statement(stm, resolve=True)
        if old.find_cycle(v.children) is not None:
            raise VariableError(stm.tokens[0].ln, f"start variable '{name}'", rule=ERR_VARIABLE_HAS_CYCLE)
        owner.vtbl.put(name, v)

    def add_field_to_var(self, name: str, key: str, value: str) -> None:
        v, _ = self.get_var(name)
        if v is None:
            raise VariableError(0, f"variable '{name}'", rule=ERR_VARIABLE_NOT_DEFINED)
        v.add_field(key, value)

    def exec_condition(self) -> bool:
        if self.vtbl.get(CONDITION_VAR) is None:
            return True
        value, _ = self.calc_var(CONDITION_VAR)
        return value == "true"

    # ─── Validation ──────────────────────────────────────────────

    def header(self) -> List[Token]:
        return [self.kind, self.target1, self.operator, self.target2]

    def validate(self) -> None:
        for t in self.header():
            t.validate()
        for stm in self.statements():
            for t in stm.tokens:
                t.validate()

    def walk(self) -> Iterator["Block"]:
        """Pre-order traversal of this block and all descendants."""
        yield self
        for c in self.children:
            yield from c.walk()
