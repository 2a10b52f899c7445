"""Pydantic models of the read-only insight snapshot exported to UIs."""

from __future__ import annotations
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class NodeRunningInsight(BaseModel):
    """Statistics of one task node."""
    seq: int
    step: int
    name: str
    function: str
    driver: str
    status: str
    last_error: str = ""
    runs: int = 0
    executed: bool = False
    duration_ms: int = 0


class FlowRunningInsight(BaseModel):
    """Snapshot of a flow, sampled under one acquisition of the flow lock."""
    name: str
    id: str
    desc: str = ""
    status: str
    last_error: str = ""
    begin_time: Optional[datetime] = None
    duration_ms: int = 0
    total: int = 0
    running: List[int] = Field(default_factory=list, description="seqs of running nodes")
    done: List[int] = Field(default_factory=list, description="seqs of finished nodes, in completion order")
    nodes: List[NodeRunningInsight] = Field(default_factory=list)
