from __future__ import annotations
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

from .errors import (
    TokenError,
    VariableError,
    ERR_IS_KEYWORD,
    ERR_TOKEN_REGEX,
    ERR_TOKEN_TYPE,
    ERR_TOKEN_VALUE,
    ERR_VARIABLE_FORMAT,
    ERR_VARIABLE_NAME_EMPTY,
    ERR_VARIABLE_NOT_DEFINED,
)

KW_COMMENT = "//"
KW_LOAD = "load"
KW_FN = "fn"
KW_CO = "co"
KW_VAR = "var"
KW_ARGS = "args"
KW_FOR = "for"
KW_IF = "if"
KW_SWITCH = "switch"
KW_CASE = "case"
KW_DEFAULT = "default"
KW_EVENT = "event"

KEYWORDS = frozenset({
    KW_COMMENT, KW_LOAD, KW_FN, KW_CO, KW_VAR, KW_ARGS, KW_FOR,
    KW_IF, KW_SWITCH, KW_CASE, KW_DEFAULT, KW_EVENT,
})

DI_SLEEP = "sleep"
DI_PRINTLN = "println"
DI_EXIT = "exit"
DI_IF_NONE_EXIT = "if_none_exit"

DIRECTIVES = frozenset({DI_SLEEP, DI_PRINTLN, DI_EXIT, DI_IF_NONE_EXIT})


class TokenType(str, Enum):
    UNKNOWN = "unknown"
    IDENT = "ident"
    SYMBOL = "symbol"
    NUMBER = "number"
    STRING = "string"
    REFVAR = "refvar"
    MAPKEY = "mapkey"
    OPERATOR = "operator"
    FUNCTIONNAME = "functionname"
    LOAD = "load"
    KEYWORD = "keyword"
    VARNAME = "varname"
    EXPR = "expr"

    def __str__(self) -> str:
        return self.value


TOKEN_PATTERNS = {
    TokenType.REFVAR: re.compile(r"^\$\([a-zA-Z0-9_\.]*\)$"),
    TokenType.IDENT: re.compile(r"^[a-zA-Z0-9_\.]*$"),
    TokenType.NUMBER: re.compile(r"^[0-9\.]+$"),
    TokenType.MAPKEY: re.compile(r"^[^:]+$"),
    TokenType.OPERATOR: re.compile(r"^(=|->)$"),
    TokenType.LOAD: re.compile(r"^[a-zA-Z][a-zA-Z0-9]*:.*[a-zA-Z0-9]$"),
    TokenType.FUNCTIONNAME: re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$"),
    TokenType.KEYWORD: re.compile(r"^[a-z]*$"),
    TokenType.VARNAME: re.compile(r"^[a-zA-Z][a-zA-Z0-9_]*$"),
}

# Types whose text may carry $(name) references
_SEGMENTED = (TokenType.STRING, TokenType.EXPR, TokenType.REFVAR)


def is_keyword(s: str) -> bool:
    return s in KEYWORDS


def split_field(name: str):
    """Split `main.field` into its two parts, or return None for a plain name."""
    parts = name.split(".", 1)
    if len(parts) != 2:
        return None
    return parts[0], parts[1]


@dataclass
class Segment:
    text: str
    isvar: bool = False


@dataclass(eq=False)
class Token:
    text: str = ""
    type: TokenType = TokenType.UNKNOWN
    ln: int = 0
    block: Any = None
    segments: List[Segment] = field(default_factory=list)
    # override for how $(name) is resolved when computing value()
    getter: Optional[Callable[[Any, str], str]] = None

    def __str__(self) -> str:
        return self.text

    def format(self) -> str:
        return f"['{self.text}','{self.type}']"

    def is_empty(self) -> bool:
        return len(self.text) == 0

    def type_in(self, *types: TokenType) -> bool:
        return self.type in types

    def text_equal(self, other: "Token") -> bool:
        return not self.is_empty() and not other.is_empty() and self.text == other.text

    def has_var(self) -> bool:
        return any(seg.isvar for seg in self.segments)

    def copy(self) -> "Token":
        return Token(
            text=self.text,
            type=self.type,
            ln=self.ln,
            block=self.block,
            segments=[Segment(s.text, s.isvar) for s in self.segments],
            getter=self.getter,
        )

    def literal(self) -> str:
        """Text with escapes applied, for a token that references no variable."""
        if self.segments:
            return "".join(seg.text for seg in self.segments)
        return self.text

    def value(self) -> str:
        """Return the token text with every $(name) replaced by its current value."""
        if not self.has_var():
            return self.literal()
        get = self.getter or _lookup_var
        out = []
        for seg in self.segments:
            if seg.isvar:
                out.append(get(self.block, seg.text))
            else:
                out.append(seg.text)
        return "".join(out)

    def extract_vars(self) -> None:
        """Split the text into literal and $(name) segments.

        A backslash right before `$(` escapes the reference: the backslash is
        dropped and `$(name)` stays literal text.
        """
        if not self.type_in(*_SEGMENTED):
            return
        if self.segments:
            return
        s = self.text
        n = len(s)
        start = 0
        i = 0
        while i < n:
            if s[i] == "$" and i + 1 < n and s[i + 1] == "(":
                end = s.find(")", i + 2)
                if end < 0:
                    break
                inner = s[i + 2:end]
                if not all(c.isalnum() or c in "_." for c in inner):
                    i += 1
                    continue
                if i > 0 and s[i - 1] == "\\":
                    if start < i - 1:
                        self.segments.append(Segment(s[start:i - 1]))
                    start = i
                    i = end + 1
                    continue
                if inner == "":
                    raise VariableError(self.ln, f"token '{self.text}'", rule=ERR_VARIABLE_NAME_EMPTY)
                if start < i:
                    self.segments.append(Segment(s[start:i]))
                self.segments.append(Segment(inner, True))
                start = end + 1
                i = end + 1
                continue
            i += 1
        if start < n:
            self.segments.append(Segment(s[start:]))

    def validate(self) -> None:
        pattern = TOKEN_PATTERNS.get(self.type)
        if pattern is not None and not pattern.match(self.text):
            raise TokenError(self.ln, f"actual '{self.text}', expect '{pattern.pattern}'", rule=ERR_TOKEN_REGEX)

        if self.type_in(TokenType.FUNCTIONNAME, TokenType.VARNAME, TokenType.IDENT) and is_keyword(self.text):
            raise TokenError(self.ln, f"'{self.text}'", rule=ERR_IS_KEYWORD)

        for seg in self.segments:
            if not seg.isvar:
                continue
            name = seg.text
            if "." in name:
                parts = name.split(".")
                if len(parts) != 2 or not parts[0] or not parts[1]:
                    raise VariableError(self.ln, f"'{name}' in token '{self.text}'", rule=ERR_VARIABLE_FORMAT)
                name = parts[0]
            if self.block is None or self.block.get_var(name)[0] is None:
                raise VariableError(self.ln, f"'{name}' in token '{self.text}'", rule=ERR_VARIABLE_NOT_DEFINED)


def _lookup_var(block, name: str) -> str:
    value, _ = block.calc_var(name)
    return value


def type_error(t: Token, expect: TokenType) -> TokenError:
    return TokenError(t.ln, f"'{t.text}', actual '{t.type}', expect '{expect}'", rule=ERR_TOKEN_TYPE)


def value_error(t: Token, expect: str) -> TokenError:
    return TokenError(t.ln, f"actual '{t.text}', expect '{expect}'", rule=ERR_TOKEN_VALUE)
