"""
Test configuration and fixtures for the flowl test suite.
"""
import asyncio
import sys
import pytest
from pathlib import Path

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from flowl.config import Settings
from flowl.flow import FlowID
from flowl.runtime import Runtime
from flowl.std import DEFAULT_LIBRARY, Library


@pytest.fixture
def library() -> Library:
    """An extendable copy of the standard library."""
    return DEFAULT_LIBRARY.copy()


@pytest.fixture
def calls():
    """Shared call log for native test functions."""
    return []


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(home=tmp_path, trigger_backoff=0.01)


@pytest.fixture
def runtime(settings, library) -> Runtime:
    return Runtime(settings=settings, library=library)


@pytest.fixture
def load_flow(runtime):
    """Parse and initialize a flow from source; returns (flow_id, flow)."""
    async def _load(source: str, name: str = "test"):
        fid = FlowID.from_source(name, source)
        flow = runtime.parse_flow(fid, source)
        await runtime.init_flow(fid)
        return fid, flow
    return _load


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll `predicate` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(interval)


@pytest.fixture
def until():
    return wait_until
