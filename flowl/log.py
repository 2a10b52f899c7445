"""Logging and tracing setup for the command line."""
from __future__ import annotations
import sys

from loguru import logger
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor

LOG_FORMAT = "<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <7}</level> | {name}:{line} - {message}"


def setup_logging(level: str = "INFO", sink=sys.stderr) -> None:
    logger.remove()
    logger.add(sink, level=level.upper(), format=LOG_FORMAT)
    logger.enable("flowl")


def setup_tracing() -> None:
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
