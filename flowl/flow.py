"""Flow objects: a compiled run queue plus its execution statistics."""
from __future__ import annotations
import hashlib
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import ConditionIsFalse, FlowStateError
from .parser import AST
from .resources import LogBucket, OutcomeSink
from .runq import RunQueue, TaskNode
from .schemas import FlowRunningInsight, NodeRunningInsight


@dataclass(frozen=True)
class FlowID:
    """Stable identity of a flow: its name and the md5 of its source."""
    name: str
    id: str

    @classmethod
    def from_source(cls, name: str, source: Union[str, bytes]) -> "FlowID":
        data = source.encode("utf-8") if isinstance(source, str) else source
        return cls(name=name, id=hashlib.md5(data).hexdigest())

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "FlowID":
        p = Path(path)
        return cls.from_source(p.stem, p.read_bytes())

    def __str__(self) -> str:
        return f"{self.name}({self.id})"


class FlowStatus(str, Enum):
    ADDED = "added"
    READY = "ready"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    KILLED = "killed"
    CANCELLED = "cancelled"


class NodeStatus(str, Enum):
    READY = "ready"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"


class NodeStatistics:
    def __init__(self, node: TaskNode):
        self._lock = threading.Lock()
        self.node = node
        self.status = NodeStatus.READY
        self.runs = 0
        self.executed = False
        self.last_error: Optional[BaseException] = None
        self.begin: Optional[float] = None
        self.end: Optional[float] = None
        self.duration = 0.0

    def to_running(self) -> None:
        with self._lock:
            self.status = NodeStatus.RUNNING
            self.begin = time.monotonic()
            self.end = None

    def to_stopped(self, err: Optional[BaseException] = None) -> None:
        with self._lock:
            self.end = time.monotonic()
            if self.begin is not None:
                self.duration = self.end - self.begin
            self.status = NodeStatus.STOPPED
            if isinstance(err, ConditionIsFalse):
                self.executed = False
                return
            self.runs += 1
            self.executed = True
            if err is not None:
                self.status = NodeStatus.ERROR
                self.last_error = err

    def reset(self) -> None:
        """Back to READY; `runs` keeps counting across replays."""
        with self._lock:
            self.status = NodeStatus.READY
            self.executed = False
            self.last_error = None
            self.begin = self.end = None
            self.duration = 0.0

    def insight(self) -> NodeRunningInsight:
        with self._lock:
            n = self.node
            return NodeRunningInsight(
                seq=n.seq,
                step=n.step,
                name=n.name,
                function=n.driver.function_name(),
                driver=n.driver.name,
                status=self.status.value,
                last_error=str(self.last_error) if self.last_error else "",
                runs=self.runs,
                executed=self.executed,
                duration_ms=int(self.duration * 1000),
            )


@dataclass
class Progress:
    total: int = 0
    running: List[int] = field(default_factory=list)
    done: List[int] = field(default_factory=list)
    registered: List[int] = field(default_factory=list)


class Flow:
    def __init__(self, fid: FlowID, ast: AST, runq: RunQueue, log_dir: Optional[Path] = None):
        self.lock = threading.RLock()
        self.id = fid
        self.ast = ast
        self.runq = runq
        self.status = FlowStatus.ADDED
        self.begin_time: Optional[datetime] = None
        self._begin: Optional[float] = None
        self.duration = 0.0
        self.last_error: Optional[BaseException] = None
        self.stats: Dict[int, NodeStatistics] = {}
        self.progress = Progress()
        self.bucket = LogBucket(log_dir)
        self.outcome = OutcomeSink()
        self.cancel_requested = False

    def __repr__(self) -> str:
        return f"Flow({self.id}, {self.status.value})"

    @property
    def desc(self) -> str:
        return self.ast.desc

    def has_event(self) -> bool:
        return bool(self.runq.triggers)

    def statistics(self, seq: int) -> NodeStatistics:
        return self.stats[seq]

    def node_statistics(self, name: str) -> List[NodeStatistics]:
        return [s for s in self.stats.values() if s.node.name == name]

    # ─── Status transitions ──────────────────────────────────────

    def _expect(self, *allowed: FlowStatus) -> None:
        if self.status not in allowed:
            raise FlowStateError(f"flow {self.id} is {self.status.value}")

    def register(self, node: TaskNode) -> None:
        with self.lock:
            self.stats[node.seq] = NodeStatistics(node)
            if node.seq not in self.progress.registered:
                self.progress.registered.append(node.seq)

    def to_ready(self) -> None:
        """Reset node statistics and truncate task logs for a replay."""
        with self.lock:
            self._expect(FlowStatus.ADDED, FlowStatus.READY, FlowStatus.STOPPED, FlowStatus.ERROR,
                         FlowStatus.CANCELLED)
            for s in self.stats.values():
                s.reset()
            self.bucket.reset()
            self.status = FlowStatus.READY
            self.last_error = None
            self.duration = 0.0
            self.progress.running = []
            self.progress.done = []

    def to_running(self) -> None:
        with self.lock:
            self.status = FlowStatus.RUNNING
            self.begin_time = datetime.now()
            self._begin = time.monotonic()

    def _stop(self, status: FlowStatus, err: Optional[BaseException] = None) -> None:
        with self.lock:
            self.status = status
            self.last_error = err
            if self._begin is not None:
                self.duration = time.monotonic() - self._begin

    def to_stopped(self) -> None:
        self._stop(FlowStatus.STOPPED)

    def to_error(self, err: BaseException) -> None:
        self._stop(FlowStatus.ERROR, err)

    def to_cancelled(self) -> None:
        self._stop(FlowStatus.CANCELLED)

    def to_killed(self) -> None:
        self._stop(FlowStatus.KILLED)

    def is_ready(self) -> bool:
        return self.status == FlowStatus.READY

    def is_running(self) -> bool:
        return self.status == FlowStatus.RUNNING

    # ─── Snapshot ────────────────────────────────────────────────

    def refresh(self) -> None:
        """Recompute the progress snapshot from node statistics."""
        with self.lock:
            main = [s for s in self.stats.values() if s.node.step > 0]
            self.progress.total = len(main)
            self.progress.running = sorted(s.node.seq for s in main if s.status == NodeStatus.RUNNING)
            finished = [s for s in main
                        if s.status in (NodeStatus.STOPPED, NodeStatus.ERROR) and s.end is not None]
            finished.sort(key=lambda s: s.end)
            self.progress.done = [s.node.seq for s in finished]

    def export(self) -> FlowRunningInsight:
        with self.lock:
            duration = self.duration
            if self.status == FlowStatus.RUNNING and self._begin is not None:
                duration = time.monotonic() - self._begin
            nodes = [self.stats[n.seq].insight() for n in self.runq.walk_nodes() if n.seq in self.stats]
            return FlowRunningInsight(
                name=self.id.name,
                id=self.id.id,
                desc=self.desc,
                status=self.status.value,
                last_error=str(self.last_error) if self.last_error else "",
                begin_time=self.begin_time,
                duration_ms=int(duration * 1000),
                total=self.progress.total,
                running=list(self.progress.running),
                done=list(self.progress.done),
                nodes=nodes,
            )
