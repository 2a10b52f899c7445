"""Resources handed to drivers when a function is loaded."""
from __future__ import annotations
import io
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


class MemoryWriter:
    """In-memory task log."""

    def __init__(self):
        self._lock = threading.Lock()
        self._buf = io.StringIO()

    def write(self, s: str) -> int:
        with self._lock:
            return self._buf.write(s)

    def getvalue(self) -> str:
        with self._lock:
            return self._buf.getvalue()

    def reset(self) -> None:
        with self._lock:
            self._buf = io.StringIO()


class FileWriter:
    """Task log appended to a file under the flow's log directory."""

    def __init__(self, path: Path):
        self._lock = threading.Lock()
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch()

    def write(self, s: str) -> int:
        with self._lock:
            with self.path.open("a", encoding="utf-8") as f:
                return f.write(s)

    def getvalue(self) -> str:
        with self._lock:
            return self.path.read_text(encoding="utf-8")

    def reset(self) -> None:
        with self._lock:
            self.path.write_text("", encoding="utf-8")


Writer = Union[MemoryWriter, FileWriter]


class LogBucket:
    """One log writer per task sequence number."""

    def __init__(self, log_dir: Optional[Path] = None):
        self._lock = threading.Lock()
        self.log_dir = Path(log_dir) if log_dir else None
        self._writers: Dict[int, Writer] = {}

    def writer(self, seq: int) -> Writer:
        with self._lock:
            w = self._writers.get(seq)
            if w is None:
                if self.log_dir is not None:
                    w = FileWriter(self.log_dir / f"{seq}.log")
                else:
                    w = MemoryWriter()
                self._writers[seq] = w
            return w

    def read(self, seq: int) -> str:
        with self._lock:
            w = self._writers.get(seq)
        return w.getvalue() if w is not None else ""

    def reset(self) -> None:
        with self._lock:
            writers = list(self._writers.values())
        for w in writers:
            w.reset()


@dataclass
class Labels:
    flow_id: str = ""
    node_seq: int = 0
    node_name: str = ""

    def as_dict(self) -> Dict[str, Any]:
        return {"flow_id": self.flow_id, "node_seq": self.node_seq, "node_name": self.node_name}


class OutcomeSink:
    """Append-only table of rows produced by tasks."""

    def __init__(self):
        self._lock = threading.Lock()
        self._rows: List[Dict[str, str]] = []

    def append(self, row: Dict[str, str]) -> None:
        with self._lock:
            self._rows.append(dict(row))

    def rows(self) -> List[Dict[str, str]]:
        with self._lock:
            return [dict(r) for r in self._rows]


@dataclass
class Resources:
    log_writer: Writer = field(default_factory=MemoryWriter)
    labels: Labels = field(default_factory=Labels)
    outcome: OutcomeSink = field(default_factory=OutcomeSink)
    # trigger handles are passed through untouched
    cron_trigger: Any = None
    http_trigger: Any = None
    library: Any = None
    shell_dir: Optional[Path] = None
