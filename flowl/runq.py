"""Run-queue compiler.

A parsed AST is lowered into a flat list of nodes: `TaskNode`s (one per
function call, chained through `parallel` when several run at the same
step) and `ForEnter`/`ForBack` markers delimiting loops. Event trigger
calls are compiled separately into `triggers`.
"""
from __future__ import annotations
from typing import Awaitable, Callable, Dict, Iterator, List, Optional, Tuple, Union

from loguru import logger

from .block import Block
from .drivers import Driver, Location, new_driver
from .drivers.builtin import directive_args, directive_location
from .errors import (
    ConditionIsFalse,
    ConfiguredFunctionDuplicatedError,
    FunctionNotLoadedError,
    LoadedFunctionDuplicatedError,
    NodeReusedError,
)
from .parser import AST, parse

TASK_SEQ_START = 1000
TRIGGER_SEQ_START = 10000


class LocationStore:
    def __init__(self):
        self._locations: Dict[str, Location] = {}

    def add(self, s: str) -> Location:
        loc = Location.parse(s)
        if loc.fname in self._locations:
            raise LoadedFunctionDuplicatedError(f"'{loc.fname}' in load list")
        self._locations[loc.fname] = loc
        return loc

    def get(self, fname: str) -> Optional[Location]:
        return self._locations.get(fname)

    def __len__(self) -> int:
        return len(self._locations)


class ForEnter:
    def __init__(self, index: int, block: Block):
        self.index = index
        self.back_index = -1
        self.block = block

    def __repr__(self) -> str:
        return self.format()

    def format(self) -> str:
        return f"for: {self.index},{self.back_index}"

    def enter(self) -> bool:
        """Evaluate the loop condition; on true run the loop's rewrites."""
        if not self.block.exec_condition():
            return False
        for stm in self.block.statements():
            self.block.rewrite_var(stm)
        return True


class ForBack:
    def __init__(self, index: int, enter_index: int):
        self.index = index
        self.enter_index = enter_index

    def __repr__(self) -> str:
        return self.format()

    def format(self) -> str:
        return f"btf: {self.index},{self.enter_index}"


class TaskNode:
    """One function call: binds a driver to the `co` block that invokes it."""

    def __init__(self, name: str, driver: Driver):
        self.name = name
        self.driver = driver
        self.fn: Optional[Block] = None
        self.co: Optional[Block] = None
        self.return_var = ""
        self.step = 0
        self.seq = 0
        self.parallel: Optional[TaskNode] = None

    def __repr__(self) -> str:
        return f"TaskNode({self.format()}, step={self.step}, seq={self.seq})"

    def format(self) -> str:
        return f"{self.name}->{self.driver.function_name()}"

    def batch(self) -> List["TaskNode"]:
        out = []
        p: Optional[TaskNode] = self
        while p is not None:
            out.append(p)
            p = p.parallel
        return out

    # ─── Failure policy ──────────────────────────────────────────

    def ignore_failure(self) -> bool:
        ignore = self.driver.manifest().ignore_failure
        if self.fn is not None:
            v = self.fn.get_var_value("ignore_failure")
            if v is not None and v.lower() == "true":
                ignore = True
        return ignore

    def retry_on_failure(self) -> int:
        retries = self.driver.manifest().retry_on_failure
        if self.fn is not None:
            v = self.fn.get_var_value("retry_on_failure")
            if v:
                try:
                    retries = int(v)
                except ValueError:
                    logger.warning("{}: retry_on_failure '{}' is not an integer", self.name, v)
        return retries

    # ─── Execution ───────────────────────────────────────────────

    def args(self) -> Dict[str, str]:
        """Call args: the fn's `args` map overlaid with the inline map of the call."""
        if self.co is not None and self.co.is_directive():
            values = [t.value() for t in (self.co.target1, self.co.target2) if not t.is_empty()]
            return directive_args(values)
        merged: Dict[str, str] = {}
        if self.fn is not None:
            ab = self.fn.args_block()
            if ab is not None:
                merged.update(ab.body.to_dict())
        if self.co is not None and self.co.body is not None and self.co.body.kind == "map":
            merged.update(self.co.body.to_dict())
        return merged

    def condition(self) -> bool:
        return self.co is None or self.co.exec_condition()

    async def exec(self) -> Dict[str, str]:
        if not self.condition():
            raise ConditionIsFalse(f"{self.name}: condition is false")
        if self.fn is not None:
            for stm in self.fn.statements():
                self.fn.rewrite_var(stm)
        rets = await self.driver.run(self.driver.merge_args(self.args()))
        if self.return_var:
            self.save_returns(rets)
        return rets

    def save_returns(self, rets: Dict[str, str]) -> None:
        for key, value in rets.items():
            self.co.add_field_to_var(self.return_var, key, value)


Step = Union[ForEnter, ForBack, TaskNode]
BatchFunc = Callable[[List[TaskNode]], Awaitable[None]]


class RunQueue:
    def __init__(self, ast: AST):
        self.ast = ast
        self.global_block = ast.global_block
        self.locations = LocationStore()
        self.configured: Dict[str, TaskNode] = {}
        self.steps: List[Step] = []
        self.triggers: List[TaskNode] = []

        loads, fns, runs = ast.get_blocks()
        self._gen_locations(loads)
        self._gen_configured(fns)
        self._gen_steps(runs)
        self._gen_triggers(runs)

    @classmethod
    def from_source(cls, source) -> Tuple["RunQueue", AST]:
        ast = parse(source)
        return cls(ast), ast

    # ─── Compile passes ──────────────────────────────────────────

    def _create_node(self, nodename: str, fname: str) -> TaskNode:
        loc = self.locations.get(fname)
        if loc is None:
            raise FunctionNotLoadedError(f"'{fname}'")
        return TaskNode(nodename, new_driver(loc))

    def _node_for(self, name: str) -> TaskNode:
        node = self.configured.get(name)
        if node is None:
            return self._create_node(name, name)
        if node.co is not None:
            raise NodeReusedError(f"'{name}'")
        return node

    def _gen_locations(self, blocks: List[Block]) -> None:
        for b in blocks:
            self.locations.add(b.target1.value())

    def _gen_configured(self, blocks: List[Block]) -> None:
        for b in blocks:
            nodename, fname = b.target1.text, b.target2.text
            if nodename in self.configured:
                raise ConfiguredFunctionDuplicatedError(f"'{nodename}'")
            node = self._create_node(nodename, fname)
            node.fn = b
            self.configured[nodename] = node

    def _gen_steps(self, blocks: List[Block]) -> None:
        step = 0
        seq = TASK_SEQ_START
        open_for: Optional[ForEnter] = None
        for b in blocks:
            if b.is_co() and b.in_event():
                continue
            if b.is_for():
                open_for = ForEnter(len(self.steps), b)
                self.steps.append(open_for)
                continue
            if b.is_btf():
                back = ForBack(len(self.steps), open_for.index)
                open_for.back_index = back.index
                self.steps.append(back)
                open_for = None
                continue

            step += 1
            if b.is_directive():
                nodes = [TaskNode(b.kind.text, new_driver(directive_location(b.kind.text)))]
            elif not b.target1.is_empty():
                nodes = [self._node_for(b.target1.text)]
            else:
                nodes = [self._node_for(name) for name in b.body.to_list()]

            last: Optional[TaskNode] = None
            for node in nodes:
                node.co = b
                node.return_var = b.target2.text if b.is_co() else ""
                node.step = step
                node.seq = seq
                seq += 1
                if last is None:
                    self.steps.append(node)
                else:
                    last.parallel = node
                last = node

    def _gen_triggers(self, blocks: List[Block]) -> None:
        seq = TRIGGER_SEQ_START
        for b in blocks:
            if not (b.is_co() and b.in_event()):
                continue
            node = self._node_for(b.target1.text)
            node.co = b
            node.return_var = b.target2.text
            node.seq = seq
            seq += 1
            self.triggers.append(node)

    # ─── Traversal ───────────────────────────────────────────────

    def walk_nodes(self) -> Iterator[TaskNode]:
        """Task nodes of the main queue in sequence order."""
        for s in self.steps:
            if isinstance(s, TaskNode):
                yield from s.batch()

    def all_nodes(self) -> Iterator[TaskNode]:
        yield from self.walk_nodes()
        yield from self.triggers

    def before_exec(self) -> None:
        for stm in self.global_block.statements():
            self.global_block.rewrite_var(stm)

    async def walk_and_exec(self, exec_batch: BatchFunc) -> None:
        self.before_exec()
        i = 0
        while i < len(self.steps):
            s = self.steps[i]
            if isinstance(s, ForEnter):
                if not s.enter():
                    i = s.back_index + 1
                    continue
            elif isinstance(s, ForBack):
                i = s.enter_index
                continue
            else:
                await exec_batch(s.batch())
            i += 1

    def format(self) -> str:
        lines = []
        for i, s in enumerate(self.steps):
            if isinstance(s, TaskNode):
                group = ", ".join(f"{n.format()}[{n.seq}]" for n in s.batch())
                lines.append(f"{i}: step {s.step}: {group}")
            else:
                lines.append(f"{i}: {s.format()}")
        for t in self.triggers:
            lines.append(f"trigger: {t.format()}[{t.seq}]")
        return "\n".join(lines)
