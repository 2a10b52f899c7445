"""flowl: a small workflow language and its asynchronous runtime."""
from loguru import logger

from .config import Settings
from .errors import FlowlError, ParseError, RuntimeFlowError, StepError
from .flow import Flow, FlowID, FlowStatus, NodeStatus
from .parser import AST, parse
from .runq import RunQueue, TaskNode
from .runtime import Runtime
from .std import DEFAULT_LIBRARY, Library

logger.disable("flowl")

__all__ = [
    "AST",
    "DEFAULT_LIBRARY",
    "Flow",
    "FlowID",
    "FlowStatus",
    "FlowlError",
    "Library",
    "NodeStatus",
    "ParseError",
    "RunQueue",
    "Runtime",
    "RuntimeFlowError",
    "Settings",
    "StepError",
    "TaskNode",
    "parse",
]
