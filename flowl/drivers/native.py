from __future__ import annotations
from typing import Dict

from ..errors import FunctionNotLoadedError
from ..resources import Resources
from ..std import DEFAULT_LIBRARY, call_native
from . import register_driver
from .base import Driver


@register_driver
class NativeDriver(Driver):
    """Runs Python functions registered in a native `Library`."""

    name = "go"

    def __init__(self, location):
        super().__init__(location)
        self._entry = None

    async def load(self, resources: Resources) -> None:
        library = resources.library if resources.library is not None else DEFAULT_LIBRARY
        found = library.lookup(self.location.path)
        if found is None:
            raise FunctionNotLoadedError(f"native function '{self.location.path}' not found")
        self._manifest, self._entry = found
        self.resources = resources

    async def run(self, args: Dict[str, str]) -> Dict[str, str]:
        if self._entry is None:
            raise FunctionNotLoadedError(f"native function '{self.location.path}' not loaded")
        return await call_native(self._entry, self.resources, args)
