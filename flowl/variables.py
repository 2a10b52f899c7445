"""Scoped variables with lazy evaluation and caching.

Every block owns a `VarTable`. A `Var` keeps the segments of its defining
token and one child pointer per `$(name)` it references; its value is
computed on demand by substituting the children's values. Dependency cycles
are found with networkx on the graph spanned by those child pointers.
"""
from __future__ import annotations
import os
import threading
import weakref
from typing import Dict, Iterable, List, Optional, Tuple

import networkx as nx

from .errors import (
    VariableError,
    ERR_VARIABLE_HAS_CYCLE,
    ERR_VARIABLE_NAME_DUPLICATED,
    ERR_VARIABLE_NOT_DEFINED,
)
from .expression import evaluate_string
from .tokens import Segment, Token, TokenType, split_field

# Reserved slot holding the condition of for/if/case/default. It is not a
# valid varname, so flowl code can never define it.
CONDITION_VAR = "_condition_expr_var"
ENV_VAR = "env"


class Var:
    def __init__(self, value: str = "", segments: Optional[List[Segment]] = None, asexpr: bool = False,
                 token: Optional[Token] = None):
        self._lock = threading.RLock()
        self.value = value
        self.segments: List[Segment] = segments if segments is not None else []
        self.children: List[Var] = []
        self.cached = False
        self.asexpr = asexpr
        self.fields: Dict[str, str] = {}
        # set for $(v.key) views
        self.field: Optional[str] = None
        self.mainv: Optional[Var] = None
        self.isenv = False
        self.token = token
        self.resolved = True
        self._dependents: "weakref.WeakSet[Var]" = weakref.WeakSet()

    def __repr__(self) -> str:
        if self.mainv is not None:
            return f"Var(field={self.field!r})"
        return f"Var(value={self.value!r}, asexpr={self.asexpr}, cached={self.cached})"

    # ─── Construction ────────────────────────────────────────────

    @classmethod
    def from_token(cls, token: Token, resolve: bool = True) -> "Var":
        v = cls(
            value=token.literal(),
            segments=[Segment(s.text, s.isvar) for s in token.segments] or [Segment(token.text)],
            asexpr=token.type == TokenType.EXPR,
            token=token,
        )
        if not token.has_var():
            # expressions still need one evaluation before they are cached
            v.cached = not v.asexpr
        else:
            v.resolved = False
            if resolve:
                v.resolve()
        return v

    @classmethod
    def from_statement(cls, stm, resolve: bool = True) -> "Var":
        if len(stm.tokens) == 2:
            return cls.from_token(stm.tokens[1], resolve=resolve)
        v = cls()
        v.cached = True
        return v

    @classmethod
    def env(cls) -> "Var":
        v = cls()
        v.isenv = True
        v.cached = True
        return v

    @classmethod
    def field_view(cls, mainv: "Var", field: str) -> "Var":
        v = cls()
        v.mainv = mainv
        v.field = field
        return v

    def resolve(self) -> None:
        """Bind one child per $(name) segment, looked up from the defining token's block."""
        if self.resolved:
            return
        token = self.token
        children = []
        for seg in self.segments:
            if not seg.isvar:
                continue
            parts = split_field(seg.text)
            if parts is not None:
                main, field = parts
                mv, _ = token.block.get_var(main)
                if mv is None:
                    raise VariableError(token.ln, f"'{token.text}', variable name '{main}'",
                                        rule=ERR_VARIABLE_NOT_DEFINED)
                child = Var.field_view(mv, field)
            else:
                child, _ = token.block.get_var(seg.text)
                if child is None:
                    raise VariableError(token.ln, f"'{token.text}', variable name '{seg.text}'",
                                        rule=ERR_VARIABLE_NOT_DEFINED)
            children.append(child)
        with self._lock:
            self.children = children
            self.resolved = True
        for c in children:
            c._dependents.add(self)

    # ─── Evaluation ──────────────────────────────────────────────

    def calc(self) -> Tuple[str, bool]:
        """Return `(value, cached)`."""
        if self.mainv is not None and self.field:
            if self.mainv.isenv:
                return os.environ.get(self.field, ""), True
            return self.mainv.read_field(self.field), False

        with self._lock:
            if self.cached and (not self.asexpr or not self.children):
                return self.value, True

            values = []
            cacheable = True
            for c in self.children:
                val, cached = c.calc()
                values.append(val)
                if not cached:
                    cacheable = False

            parts = []
            it = iter(values)
            for seg in self.segments:
                parts.append(next(it) if seg.isvar else seg.text)
            raw = "".join(parts)

            if self.asexpr:
                self.value = evaluate_string(raw)
                if not self.children:
                    self.cached = True
                return self.value, self.cached

            self.value = raw
            if cacheable:
                self.cached = True
            return self.value, self.cached

    def update(self, nv: "Var") -> None:
        """Replace the definition in place, keeping this node's identity."""
        with self._lock:
            self.value = nv.value
            self.segments = nv.segments
            self.children = nv.children
            self.cached = nv.cached
            self.asexpr = nv.asexpr
            self.token = nv.token
            self.resolved = nv.resolved
        for c in self.children:
            c._dependents.add(self)
        self._invalidate_dependents()

    def _invalidate_dependents(self) -> None:
        seen = set()
        stack = list(self._dependents)
        while stack:
            d = stack.pop()
            if id(d) in seen:
                continue
            seen.add(id(d))
            with d._lock:
                d.cached = False
            stack.extend(d._dependents)

    def add_field(self, key: str, value: str) -> None:
        with self._lock:
            self.fields[key] = value

    def read_field(self, key: str) -> str:
        with self._lock:
            return self.fields.get(key, "")

    # ─── Cycle detection ─────────────────────────────────────────

    def dependency_graph(self, children: Optional[List["Var"]] = None) -> nx.DiGraph:
        """Reachability graph from this node; `children` stands in for its own edges."""
        graph = nx.DiGraph()
        graph.add_node(self)
        stack = [self]
        while stack:
            v = stack.pop()
            edges = children if (v is self and children is not None) else v.children
            for c in edges:
                if c not in graph:
                    stack.append(c)
                graph.add_edge(v, c)
        return graph

    def find_cycle(self, children: Optional[List["Var"]] = None) -> Optional[list]:
        try:
            return nx.find_cycle(self.dependency_graph(children), source=self)
        except nx.NetworkXNoCycle:
            return None


class VarTable:
    """Variables of one block, keyed by name."""

    def __init__(self, variables: Optional[Dict[str, Var]] = None):
        self._lock = threading.Lock()
        self.vars: Dict[str, Var] = dict(variables or {})

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self.vars

    def __len__(self) -> int:
        return len(self.vars)

    def add(self, name: str, v: Var, ln: int = 0) -> None:
        with self._lock:
            if name in self.vars:
                raise VariableError(ln, f"'{name}'", rule=ERR_VARIABLE_NAME_DUPLICATED)
            self.vars[name] = v

    def put(self, name: str, v: Var) -> None:
        with self._lock:
            old = self.vars.get(name)
            if old is None:
                self.vars[name] = v
                return
        old.update(v)

    def get(self, name: str) -> Optional[Var]:
        with self._lock:
            return self.vars.get(name)

    def items(self) -> List[Tuple[str, Var]]:
        with self._lock:
            return list(self.vars.items())

    def calc(self, name: str) -> Optional[Tuple[str, bool]]:
        """Evaluate `name` or `main.field` if it lives in this table, else None."""
        parts = split_field(name)
        if parts is not None:
            main, field = parts
            if main == ENV_VAR:
                return os.environ.get(field, ""), True
            v = self.get(main)
            if v is None:
                return None
            return v.read_field(field), False
        v = self.get(name)
        if v is None:
            return None
        return v.calc()

    def resolve(self) -> None:
        for _, v in self.items():
            v.resolve()

    def cycle_check(self, names: Optional[Iterable[str]] = None) -> None:
        if names is None:
            targets = self.items()
        else:
            targets = [(n, self.get(n)) for n in names]
        for name, v in targets:
            if v is None:
                continue
            if v.find_cycle() is not None:
                ln = v.token.ln if v.token is not None else 0
                raise VariableError(ln, f"start variable '{name}'", rule=ERR_VARIABLE_HAS_CYCLE)
