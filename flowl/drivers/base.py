from __future__ import annotations
import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

from ..errors import RuntimeFlowError
from ..manifest import Manifest
from ..resources import Resources


@dataclass(frozen=True)
class Location:
    """Where a loaded function lives: `driver:path[@version]`."""
    driver: str
    path: str
    fname: str
    version: str = ""

    @classmethod
    def parse(cls, s: str) -> "Location":
        driver, sep, rest = s.partition(":")
        if not sep or not driver or not rest:
            raise RuntimeFlowError(f"invalid load location '{s}'")
        path, _, version = rest.partition("@")
        fname = posixpath.basename(path.rstrip("/"))
        if not fname:
            raise RuntimeFlowError(f"invalid load location '{s}'")
        return cls(driver=driver, path=path, fname=fname, version=version)

    def __str__(self) -> str:
        s = f"{self.driver}:{self.path}"
        return f"{s}@{self.version}" if self.version else s


class Driver(ABC):
    """Loads and runs the functions of one kind."""

    name = ""

    def __init__(self, location: Location):
        self.location = location
        self.resources: Optional[Resources] = None
        self._manifest: Optional[Manifest] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.location})"

    def function_name(self) -> str:
        return self.location.fname

    def manifest(self) -> Manifest:
        if self._manifest is None:
            raise RuntimeFlowError(f"function '{self.function_name()}' is not loaded")
        return self._manifest

    def merge_args(self, args: Dict[str, str]) -> Dict[str, str]:
        """Overlay caller args on the manifest defaults."""
        merged = dict(self.manifest().args)
        merged.update(args)
        return merged

    @abstractmethod
    async def load(self, resources: Resources) -> None:
        ...

    @abstractmethod
    async def run(self, args: Dict[str, str]) -> Dict[str, str]:
        ...

    async def stop_and_release(self) -> None:
        pass
