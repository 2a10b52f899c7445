from __future__ import annotations
import asyncio
from typing import Dict, List

from ..errors import DirectiveError, ExitFlow
from ..manifest import Manifest
from ..resources import Resources
from ..std import parse_duration
from ..tokens import DI_EXIT, DI_IF_NONE_EXIT, DI_PRINTLN, DI_SLEEP
from . import register_driver
from .base import Driver, Location


def directive_location(kind: str) -> Location:
    return Location(driver=BuiltinDriver.name, path=kind, fname=kind)


def directive_args(values: List[str]) -> Dict[str, str]:
    return {str(i): v for i, v in enumerate(values, start=1)}


async def _sleep(res: Resources, args: List[str]) -> None:
    if len(args) != 1:
        raise DirectiveError("sleep: invalid argument count")
    try:
        seconds = parse_duration(args[0])
    except ValueError as e:
        raise DirectiveError(f"sleep: {e}") from e
    await asyncio.sleep(seconds)


async def _println(res: Resources, args: List[str]) -> None:
    for arg in args:
        print(arg, flush=True)
        res.log_writer.write(arg + "\n")


async def _exit(res: Resources, args: List[str]) -> None:
    if not args:
        raise ExitFlow("exit")
    if len(args) != 1:
        raise DirectiveError("exit: invalid argument count")
    raise DirectiveError(args[0])


async def _if_none_exit(res: Resources, args: List[str]) -> None:
    if not args:
        raise DirectiveError("if_none_exit: invalid argument count")
    for i, arg in enumerate(args):
        if arg == "":
            raise DirectiveError(f"none exit: arg is empty at index {i}")


DIRECTIVE_FUNCS = {
    DI_SLEEP: _sleep,
    DI_PRINTLN: _println,
    DI_EXIT: _exit,
    DI_IF_NONE_EXIT: _if_none_exit,
}


@register_driver
class BuiltinDriver(Driver):
    """Executes the sleep/println/exit/if_none_exit directives in-process."""

    name = "builtin"

    async def load(self, resources: Resources) -> None:
        if self.location.path not in DIRECTIVE_FUNCS:
            raise DirectiveError(f"unknown directive '{self.location.path}'")
        self.resources = resources
        self._manifest = Manifest(name=self.location.path, driver=self.name)

    async def run(self, args: Dict[str, str]) -> Dict[str, str]:
        values = [args[k] for k in sorted(args, key=int)]
        await DIRECTIVE_FUNCS[self.location.path](self.resources, values)
        return {}
