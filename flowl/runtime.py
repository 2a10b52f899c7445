"""Asynchronous scheduler executing compiled flows.

One pass walks the run queue batch by batch. Every member of a batch runs in
its own asyncio task and the batch is drained through a queue sized to the
batch before the next one starts. Flows holding an `event` block repeat:
the trigger calls race, the first to complete cancels the others and one
pass runs.
"""
from __future__ import annotations
import asyncio
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, TypeVar, Union

from loguru import logger
from opentelemetry import trace

from .config import Settings
from .errors import (
    ConditionIsFalse,
    ExitFlow,
    FlowCancelledError,
    FlowlError,
    FlowStateError,
    RuntimeFlowError,
    StepError,
)
from .flow import Flow, FlowID, FlowStatus, NodeStatus
from .resources import Labels, Resources
from .runq import RunQueue, TaskNode
from .schemas import FlowRunningInsight
from .std import Library
from .store import FlowStore

T = TypeVar("T")

MAX_BACKOFF_FACTOR = 5


class Runtime:
    def __init__(self, settings: Optional[Settings] = None, library: Optional[Library] = None):
        self.settings = settings or Settings.from_env()
        self.library = library
        self.store = FlowStore()
        self.tracer = trace.get_tracer(__name__)
        self._running: Dict[str, asyncio.Task] = {}

    # ─── Registration ────────────────────────────────────────────

    def parse_flow(self, fid: FlowID, source: Union[str, Path]) -> Flow:
        """Parse and compile `source`, then register the flow in ADDED state."""
        runq, ast = RunQueue.from_source(source)
        log_dir = self.settings.log_dir / fid.id if self.settings.log_dir else None
        flow = Flow(fid, ast, runq, log_dir=log_dir)
        self.store.add(flow)
        logger.info("flow {} parsed: {} steps, {} triggers", fid, len(runq.steps), len(runq.triggers))
        return flow

    async def init_flow(self, fid: FlowID) -> None:
        """Load every function through its driver and allocate statistics."""
        flow = self.store.get(fid.id)
        with flow.lock:
            if flow.status != FlowStatus.ADDED:
                raise FlowStateError(f"flow {fid} is {flow.status.value}, expect added")
        for node in flow.runq.all_nodes():
            res = Resources(
                log_writer=flow.bucket.writer(node.seq),
                labels=Labels(flow_id=fid.id, node_seq=node.seq, node_name=node.name),
                outcome=flow.outcome,
                library=self.library,
                shell_dir=self.settings.shell_dir,
            )
            await node.driver.load(res)
            flow.register(node)
        flow.refresh()
        with flow.lock:
            flow.status = FlowStatus.READY
        logger.info("flow {} initialized", fid)

    # ─── Execution ───────────────────────────────────────────────

    async def exec_flow(self, fid: FlowID) -> None:
        """Run a READY flow: one pass, or the event loop when it has triggers.

        Raises `StepError` when a pass fails and `FlowCancelledError` when the
        run was cancelled through `cancel_running_flow`.
        """
        flow = self.store.get(fid.id)
        with flow.lock:
            if not flow.is_ready():
                raise FlowStateError(f"flow {fid} is {flow.status.value}, expect ready")
            flow.cancel_requested = False
        logger.info("flow {} started", fid)

        body = self._event_loop(flow) if flow.has_event() else self._pass(flow)
        task = asyncio.ensure_future(body)
        self._running[fid.id] = task
        try:
            await task
        except asyncio.CancelledError:
            if not flow.cancel_requested:
                raise
            flow.to_cancelled()
            logger.info("flow {} cancelled", fid)
            raise FlowCancelledError(f"flow {fid} cancelled") from None
        finally:
            self._running.pop(fid.id, None)
        logger.info("flow {} stopped: {}", fid, flow.status.value)

    async def cancel_running_flow(self, fid: FlowID) -> bool:
        """Cancel the running pass; returns False when nothing was running."""
        flow = self.store.get(fid.id)
        task = self._running.get(fid.id)
        if task is None or task.done():
            return False
        flow.cancel_requested = True
        task.cancel()
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        return True

    async def _pass(self, flow: Flow) -> None:
        flow.to_running()
        try:
            with self.tracer.start_as_current_span(f"flow:{flow.id.name}"):
                await flow.runq.walk_and_exec(lambda batch: self._exec_batch(flow, batch))
        except ExitFlow:
            logger.info("flow {} exited", flow.id)
            flow.to_stopped()
        except asyncio.CancelledError:
            flow.to_cancelled()
            raise
        except Exception as e:
            flow.to_error(e)
            raise
        else:
            flow.to_stopped()
        finally:
            flow.refresh()

    async def _exec_batch(self, flow: Flow, batch: List[TaskNode]) -> None:
        step = batch[0].step
        logger.debug("flow {} step {}: {}", flow.id, step, ", ".join(n.name for n in batch))
        with self.tracer.start_as_current_span(f"step:{step}"):
            for n in batch:
                flow.statistics(n.seq).to_running()
            flow.refresh()

            results: asyncio.Queue = asyncio.Queue(len(batch))
            workers = [asyncio.create_task(self._worker(flow, n, results)) for n in batch]
            errors: List[BaseException] = []
            exited = False
            try:
                for _ in batch:
                    node, err = await results.get()
                    flow.refresh()
                    if err is None or isinstance(err, ConditionIsFalse):
                        continue
                    if isinstance(err, ExitFlow):
                        exited = True
                        continue
                    if node.ignore_failure():
                        logger.warning("{}: ignored failure: {}", node.name, err)
                        continue
                    errors.append(err)
            finally:
                for w in workers:
                    if not w.done():
                        w.cancel()
                await asyncio.gather(*workers, return_exceptions=True)
                # workers cancelled mid-call never reach to_stopped
                for n in batch:
                    stats = flow.statistics(n.seq)
                    if stats.status == NodeStatus.RUNNING:
                        stats.to_stopped(FlowCancelledError(f"{n.name}: cancelled"))

        if errors:
            raise StepError(step, errors)
        if exited:
            raise ExitFlow("exit")

    async def _worker(self, flow: Flow, node: TaskNode, results: asyncio.Queue) -> None:
        stats = flow.statistics(node.seq)
        attempts = node.retry_on_failure() + 1
        err: Optional[BaseException] = None
        for attempt in range(attempts):
            try:
                await node.exec()
                err = None
            except (ConditionIsFalse, ExitFlow) as e:
                stats.to_stopped(e if isinstance(e, ConditionIsFalse) else None)
                err = e
                break
            except asyncio.CancelledError:
                raise
            except Exception as e:
                err = e
            stats.to_stopped(err)
            if err is None:
                break
            if attempt + 1 < attempts:
                logger.warning("{}: attempt {} failed, retrying: {}", node.name, attempt + 1, err)
                stats.to_running()
        logger.debug("{} finished: {}", node.name, err or "ok")
        await results.put((node, err))

    # ─── Event mode ──────────────────────────────────────────────

    async def _event_loop(self, flow: Flow) -> None:
        failures = 0
        while True:
            try:
                await self._wait_trigger(flow)
            except RuntimeFlowError as e:
                failures += 1
                delay = min(failures, MAX_BACKOFF_FACTOR) * self.settings.trigger_backoff
                logger.warning("flow {} trigger failed ({}), retry in {}s", flow.id, e, delay)
                await asyncio.sleep(delay)
                continue
            failures = 0
            flow.to_ready()
            try:
                await self._pass(flow)
            except FlowlError as e:
                logger.error("flow {}: pass failed: {}", flow.id, e)

    async def _wait_trigger(self, flow: Flow) -> TaskNode:
        """Race the trigger calls; return the first one that completes without error."""
        tasks: Dict[asyncio.Task, TaskNode] = {}
        for node in flow.runq.triggers:
            flow.statistics(node.seq).to_running()
            tasks[asyncio.create_task(node.exec())] = node
        pending = set(tasks)
        errors: List[BaseException] = []
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for t in done:
                    node = tasks[t]
                    err = t.exception()
                    flow.statistics(node.seq).to_stopped(err)
                    if err is None:
                        logger.debug("flow {} triggered by {}", flow.id, node.name)
                        return node
                    errors.append(err)
        finally:
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            for t in pending:
                flow.statistics(tasks[t].seq).reset()
        raise RuntimeFlowError("all triggers failed: " + "; ".join(str(e) for e in errors))

    # ─── Inspection and management ───────────────────────────────

    def fetch_flow(self, fid: FlowID, reader: Callable[[Flow], T]) -> T:
        """Call `reader` with the flow while holding its lock."""
        flow = self.store.get(fid.id)
        with flow.lock:
            return reader(flow)

    def inspect_flow(self, fid: FlowID) -> FlowRunningInsight:
        return self.store.get(fid.id).export()

    def to_ready(self, fid: FlowID) -> None:
        self.store.get(fid.id).to_ready()

    def has_trigger(self, fid: FlowID) -> bool:
        return self.store.get(fid.id).has_event()

    async def stop_flow(self, fid: FlowID) -> None:
        """Cancel any running pass, release every driver and mark the flow KILLED."""
        flow = self.store.get(fid.id)
        try:
            await self.cancel_running_flow(fid)
        finally:
            for node in flow.runq.all_nodes():
                await node.driver.stop_and_release()
            flow.to_killed()
        logger.info("flow {} killed", fid)

    async def delete_flow(self, fid: FlowID) -> None:
        flow = self.store.get(fid.id)
        if flow.is_running() or fid.id in self._running:
            raise FlowStateError(f"flow {fid} is running")
        self.store.delete(fid.id)
        logger.info("flow {} deleted", fid)
