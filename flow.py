#!/usr/bin/env python
import asyncio
import argparse
import sys
from pathlib import Path

from loguru import logger

from flowl import DEFAULT_LIBRARY, FlowID, FlowlError, RunQueue, Runtime, Settings
from flowl.log import setup_logging, setup_tracing


def find_flow_file(target: str):
    potential_paths = [
        Path(target),
        Path(f"{target}.flowl"),
    ]
    for p in potential_paths:
        if p.exists() and p.is_file():
            return p
    return None


async def run_flow(path: Path, settings: Settings) -> int:
    rt = Runtime(settings=settings)
    fid = FlowID.from_path(path)
    rt.parse_flow(fid, path)
    await rt.init_flow(fid)
    code = 0
    try:
        await rt.exec_flow(fid)
    except FlowlError as e:
        logger.error("{}", e)
        code = 1
    finally:
        print(rt.inspect_flow(fid).model_dump_json(indent=2))
    return code


def main(argv=None):
    parser = argparse.ArgumentParser(prog="flow", description="flowl CLI - run and inspect flowl workflows")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run a .flowl file")
    run_parser.add_argument("file", help="Path of the flowl file")
    run_parser.add_argument("--log-level", default=None, help="Log level (default FLOWL_LOG_LEVEL or INFO)")
    run_parser.add_argument("--log-dir", default=None, help="Directory for per-task log files")
    run_parser.add_argument("--trace", action="store_true", help="Print OpenTelemetry spans to stdout")

    parse_parser = subparsers.add_parser("parse", help="Parse a .flowl file and print its run queue")
    parse_parser.add_argument("file", help="Path of the flowl file")

    subparsers.add_parser("std", help="List the standard library functions")

    args = parser.parse_args(argv)

    if args.command in ("run", "parse"):
        flow_file = find_flow_file(args.file)
        if not flow_file:
            print(f"Error: Could not find flow file for '{args.file}'")
            return 1

    if args.command == "run":
        settings = Settings.from_env()
        if args.log_dir:
            settings.log_dir = Path(args.log_dir)
        setup_logging(args.log_level or settings.log_level)
        if args.trace:
            setup_tracing()
        try:
            return asyncio.run(run_flow(flow_file, settings))
        except FlowlError as e:
            print(f"[Error] {e}")
            return 1
        except KeyboardInterrupt:
            return 130
    elif args.command == "parse":
        try:
            runq, ast = RunQueue.from_source(flow_file)
        except FlowlError as e:
            print(f"[Error] {e}")
            return 1
        if ast.desc:
            print(f"// {ast.desc}")
        print(runq.format())
    elif args.command == "std":
        for m in DEFAULT_LIBRARY.manifests():
            args_desc = ", ".join(f"{k}={v!r}" for k, v in m.args.items())
            print(f"{m.name:<12} {m.usage.desc}" + (f" ({args_desc})" if args_desc else ""))
    else:
        parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
