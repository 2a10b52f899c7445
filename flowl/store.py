from __future__ import annotations
import threading
from typing import Callable, Dict, List

from .errors import FlowExistsError, FlowNotFoundError
from .flow import Flow


class FlowStore:
    """Flows known to a runtime, keyed by flow id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._flows: Dict[str, Flow] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._flows)

    def add(self, flow: Flow) -> None:
        with self._lock:
            if flow.id.id in self._flows:
                raise FlowExistsError(f"flow {flow.id}")
            self._flows[flow.id.id] = flow

    def get(self, fid: str) -> Flow:
        with self._lock:
            flow = self._flows.get(fid)
        if flow is None:
            raise FlowNotFoundError(f"flow '{fid}'")
        return flow

    def delete(self, fid: str) -> None:
        with self._lock:
            if self._flows.pop(fid, None) is None:
                raise FlowNotFoundError(f"flow '{fid}'")

    def foreach(self, fn: Callable[[Flow], None]) -> None:
        for flow in self.flows():
            fn(flow)

    def flows(self) -> List[Flow]:
        with self._lock:
            return list(self._flows.values())
