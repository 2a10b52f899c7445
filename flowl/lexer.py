"""Character-driven lexer for flowl sources.

The lexer walks the input one character at a time and groups the emitted
tokens by the source line they start on. A string that spans several lines
is attached to the line holding its opening quote.
"""
from __future__ import annotations
from enum import Enum
from typing import Dict, Iterator, List, Tuple

from loguru import logger

from .errors import TokenError, ERR_TOKEN_CHARACTER_ILLEGAL
from .tokens import Token, TokenType, KW_COMMENT, TOKEN_PATTERNS

SYMBOL_CHARS = frozenset("{}:=+-*/<>!&|()%")


class LexState(str, Enum):
    UNKNOWN = "unknown"
    IDENT = "ident"
    SYMBOL = "symbol"
    STRING = "string"
    STRING_BACKSLASH = "string_backslash"
    REFVAR1 = "refvar1"
    REFVAR2 = "refvar2"


def is_space(c: str) -> bool:
    return c in (" ", "\t", "\r")


def is_eol(c: str) -> bool:
    return c == "\n"


def is_ident(c: str) -> bool:
    return c.isascii() and (c.isalnum() or c in "_.")


def is_symbol(c: str) -> bool:
    return c in SYMBOL_CHARS


def _ident_type(s: str) -> TokenType:
    # an identifier that reads as a float literal is a number
    if TOKEN_PATTERNS[TokenType.NUMBER].match(s):
        try:
            float(s)
            return TokenType.NUMBER
        except ValueError:
            pass
    return TokenType.IDENT


class Lexer:
    def __init__(self):
        self.lines: Dict[int, List[Token]] = {}
        self.nums: List[int] = []
        self.state = LexState.UNKNOWN
        self._buf: List[str] = []
        self._string_ln = 0

    def _save(self, c: str) -> None:
        self._buf.append(c)

    def _export(self) -> str:
        s = "".join(self._buf)
        self._buf = []
        return s

    def _insert(self, ln: int, token: Token) -> None:
        token.ln = ln
        self.lines.setdefault(ln, []).append(token)

    def _illegal(self, c: str, ln: int) -> TokenError:
        return TokenError(ln, f"character '{c}', state '{self.state.value}'", rule=ERR_TOKEN_CHARACTER_ILLEGAL)

    def _start(self, c: str, ln: int) -> None:
        # transitions shared by the unknown, symbol and ident states
        if is_ident(c):
            self._save(c)
            self.state = LexState.IDENT
        elif is_symbol(c):
            self._save(c)
            self.state = LexState.SYMBOL
        elif c == '"':
            self._string_ln = ln
            self.state = LexState.STRING
        elif c == "$":
            self._save(c)
            self.state = LexState.REFVAR1
        else:
            raise self._illegal(c, ln)

    def split(self, line: str, ln: int, eof: bool = False) -> None:
        if eof and not line.endswith("\n"):
            line += "\n"
        self.nums.append(ln)

        for pos, c in enumerate(line):
            state = self.state
            if state == LexState.UNKNOWN:
                if is_space(c) or is_eol(c):
                    continue
                self._start(c, ln)

            elif state == LexState.SYMBOL:
                if is_symbol(c):
                    self._save(c)
                    continue
                text = self._export()
                self._insert(ln, Token(text, TokenType.SYMBOL))
                if text == KW_COMMENT:
                    # the rest of the line is the comment text
                    rest = line[pos:].strip()
                    if rest:
                        self._insert(ln, Token(rest, TokenType.STRING))
                    self.state = LexState.UNKNOWN
                    return
                if is_space(c) or is_eol(c):
                    self.state = LexState.UNKNOWN
                    continue
                self._start(c, ln)

            elif state == LexState.IDENT:
                if is_ident(c):
                    self._save(c)
                    continue
                s = self._export()
                self._insert(ln, Token(s, _ident_type(s)))
                if is_space(c) or is_eol(c):
                    self.state = LexState.UNKNOWN
                    continue
                if is_symbol(c):
                    self._save(c)
                    self.state = LexState.SYMBOL
                    continue
                raise self._illegal(c, ln)

            elif state == LexState.STRING:
                if c == "\\":
                    self.state = LexState.STRING_BACKSLASH
                elif c == '"':
                    self._insert(self._string_ln, Token(self._export(), TokenType.STRING))
                    self.state = LexState.UNKNOWN
                else:
                    self._save(c)

            elif state == LexState.STRING_BACKSLASH:
                if c != '"':
                    self._save("\\")
                self._save(c)
                self.state = LexState.STRING

            elif state == LexState.REFVAR1:
                if c != "(":
                    raise self._illegal(c, ln)
                self._save(c)
                self.state = LexState.REFVAR2

            elif state == LexState.REFVAR2:
                if is_ident(c):
                    self._save(c)
                elif c == ")":
                    self._save(c)
                    self._insert(ln, Token(self._export(), TokenType.REFVAR))
                    self.state = LexState.UNKNOWN
                else:
                    raise self._illegal(c, ln)

    def finish(self) -> None:
        if self.state in (LexState.STRING, LexState.STRING_BACKSLASH):
            raise TokenError(self._string_ln, "unterminated string", rule=ERR_TOKEN_CHARACTER_ILLEGAL)
        if self.state != LexState.UNKNOWN:
            raise TokenError(self.nums[-1] if self.nums else 0, f"unexpected end of input, state '{self.state.value}'",
                             rule=ERR_TOKEN_CHARACTER_ILLEGAL)

    def foreach_line(self) -> Iterator[Tuple[int, List[Token]]]:
        for n in self.nums:
            tokens = self.lines.get(n)
            if tokens:
                yield n, tokens

    def debug(self) -> None:
        for num, tokens in self.foreach_line():
            logger.trace("{}: {}", num, ", ".join(t.format() for t in tokens))


def tokenize(source: str) -> Lexer:
    """Run the lexer over a whole source text."""
    lx = Lexer()
    lines = source.splitlines(keepends=True)
    for n, line in enumerate(lines, start=1):
        lx.split(line, n, eof=(n == len(lines)))
    lx.finish()
    lx.debug()
    return lx
