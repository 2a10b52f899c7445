"""Native function library and the standard functions.

Native functions are plain Python callables registered with a manifest.
They receive the task's `Resources` and the merged args and return a map of
string outputs. Coroutine functions are awaited; plain functions run in a
worker thread.
"""
from __future__ import annotations
import asyncio
import inspect
import re
import threading
import time as _time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from loguru import logger

from .errors import LoadedFunctionDuplicatedError, RuntimeFlowError
from .manifest import Manifest, Usage, UsageDesc
from .resources import Resources

NativeResult = Dict[str, str]
NativeFunction = Callable[[Resources, Dict[str, str]], Union[NativeResult, Awaitable[NativeResult]]]

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")


def parse_duration(s: str) -> float:
    """Parse a Go-style duration such as `1m30s` or `500ms` into seconds."""
    s = s.strip()
    if not s:
        raise ValueError("empty duration")
    if s == "0":
        return 0.0
    sign = 1.0
    if s[0] in "+-":
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
        if not s:
            raise ValueError("invalid duration")
    pos = 0
    total = 0.0
    while pos < len(s):
        m = _DURATION_PART.match(s, pos)
        if m is None:
            raise ValueError(f"invalid duration '{s}'")
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    return sign * total


class Library:
    """Registry of native functions keyed by name."""

    def __init__(self):
        self._lock = threading.Lock()
        self._functions: Dict[str, Tuple[Manifest, NativeFunction]] = {}
        self.frozen = False

    def __contains__(self, name: str) -> bool:
        return name in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    def register(self, manifest: Manifest, entry: NativeFunction) -> None:
        with self._lock:
            if self.frozen:
                raise RuntimeFlowError("library is frozen")
            if manifest.name in self._functions:
                raise LoadedFunctionDuplicatedError(f"function '{manifest.name}' already registered")
            self._functions[manifest.name] = (manifest, entry)

    def function(self, name: str, args: Optional[Dict[str, str]] = None, desc: str = "",
                 returns: Optional[List[str]] = None, **policy):
        """Decorator form of `register`."""
        def deco(fn: NativeFunction) -> NativeFunction:
            usage = Usage(
                desc=desc,
                args=[UsageDesc(name=k) for k in (args or {})],
                returns=[UsageDesc(name=r) for r in (returns or [])],
            )
            self.register(Manifest(name=name, driver="go", args=dict(args or {}), usage=usage, **policy), fn)
            return fn
        return deco

    def lookup(self, name: str) -> Optional[Tuple[Manifest, NativeFunction]]:
        return self._functions.get(name)

    def manifests(self) -> List[Manifest]:
        return [m for m, _ in sorted(self._functions.values(), key=lambda p: p[0].name)]

    def freeze(self) -> "Library":
        self.frozen = True
        return self

    def copy(self) -> "Library":
        lib = Library()
        lib._functions = dict(self._functions)
        return lib


async def call_native(entry: NativeFunction, res: Resources, args: Dict[str, str]) -> NativeResult:
    if inspect.iscoroutinefunction(entry):
        out = await entry(res, args)
    else:
        loop = asyncio.get_running_loop()
        out = await loop.run_in_executor(None, entry, res, args)
    return {str(k): str(v) for k, v in (out or {}).items()}


# ─── Standard functions ──────────────────────────────────────────

def _print(res: Resources, args: Dict[str, str]) -> NativeResult:
    for k in sorted(args):
        if k.startswith("_"):
            res.log_writer.write(f"{args[k]}\n")
        else:
            res.log_writer.write(f"{k}: {args[k]}\n")
    return {"status": "ok"}


async def _sleep(res: Resources, args: Dict[str, str]) -> NativeResult:
    await asyncio.sleep(parse_duration(args.get("time", "1s")))
    return {}


DEFAULT_TIME_FORMAT = "YYYY-MM-DD hh:mm:ss"
TIME_FORMATS = {
    "YYYY-MM-DD hh:mm:ss": "%Y-%m-%d %H:%M:%S",
    "YYYY/MM/DD hh:mm:ss": "%Y/%m/%d %H:%M:%S",
    "MM-DD-YYYY hh:mm:ss": "%m-%d-%Y %H:%M:%S",
    "MM/DD/YYYY hh:mm:ss": "%m/%d/%Y %H:%M:%S",
}


def _time_now(res: Resources, args: Dict[str, str]) -> NativeResult:
    fmt = args.get("format") or DEFAULT_TIME_FORMAT
    if fmt not in TIME_FORMATS:
        raise RuntimeFlowError(f"time: invalid format argument: {fmt}")
    now = datetime.now()
    out = {
        "now": now.strftime(TIME_FORMATS[fmt]),
        "year": str(now.year),
        "month": str(now.month),
        "day": str(now.day),
        "hour": str(now.hour),
        "minute": str(now.minute),
        "second": str(now.second),
    }
    if args.get("get_timestamp") == "true":
        out["timestamp"] = str(int(_time.time()))
    return out


def _outcome(res: Resources, args: Dict[str, str]) -> NativeResult:
    """Collect the args as one outcome row and echo them, one item per line."""
    res.outcome.append(args)
    for k in sorted(args):
        res.log_writer.write(f"{k}\n")
        for item in re.split(r"[,\n]", args[k]):
            if item.strip():
                res.log_writer.write(f"  ➜ {item.strip()}\n")
    return {}


async def _event_tick(res: Resources, args: Dict[str, str]) -> NativeResult:
    seconds = float(args.get("seconds") or "10")
    await asyncio.sleep(seconds)
    return {"time": datetime.now().isoformat(timespec="seconds")}


async def _command(res: Resources, args: Dict[str, str]) -> NativeResult:
    cmd = args.get("cmd", "")
    if not cmd:
        raise RuntimeFlowError("command: missing 'cmd'")
    proc = await asyncio.create_subprocess_exec(
        "/bin/sh", "-c", cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        out, _ = await proc.communicate()
    except asyncio.CancelledError:
        proc.kill()
        raise
    res.log_writer.write(out.decode(errors="replace"))
    return {"status": str(proc.returncode)}


def _build_default() -> Library:
    lib = Library()
    lib.function("print", desc="print args to the task log", returns=["status"])(_print)
    lib.function("sleep", args={"time": "1s"}, desc="sleep for a duration")(_sleep)
    lib.function("time", args={"format": "", "get_timestamp": "false"}, desc="current local time",
                 returns=["now", "year", "month", "day", "hour", "minute", "second", "timestamp"])(_time_now)
    lib.function("event_tick", args={"seconds": "10"}, desc="fires every n seconds",
                 returns=["time"])(_event_tick)
    lib.function("command", args={"cmd": ""}, desc="run a shell command", returns=["status"])(_command)
    lib.function("outcome", desc="collect args into the flow outcome")(_outcome)
    logger.trace("standard library: {} functions", len(lib))
    return lib.freeze()


DEFAULT_LIBRARY = _build_default()
