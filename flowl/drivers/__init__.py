"""Function drivers, selected by the driver name of a load location."""
from __future__ import annotations
from typing import Dict, Type

from ..errors import DriverNotFoundError
from .base import Driver, Location

_DRIVERS: Dict[str, Type[Driver]] = {}


def register_driver(cls: Type[Driver]) -> Type[Driver]:
    _DRIVERS[cls.name] = cls
    return cls


def driver_names():
    return sorted(_DRIVERS)


def new_driver(location: Location) -> Driver:
    cls = _DRIVERS.get(location.driver)
    if cls is None:
        raise DriverNotFoundError(f"driver '{location.driver}' for '{location}'")
    return cls(location)


from . import builtin, native, shell  # noqa: E402,F401

__all__ = ["Driver", "Location", "register_driver", "new_driver", "driver_names"]
