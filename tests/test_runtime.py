"""
End-to-end tests of the asynchronous runtime: passes, failure policy,
cancellation and event-driven flows.
"""
import asyncio

import pytest

from flowl.errors import (
    ERR_VARIABLE_HAS_CYCLE,
    FlowCancelledError,
    FlowNotFoundError,
    FlowStateError,
    RuntimeFlowError,
    StepError,
    VariableError,
)
from flowl.flow import FlowID, FlowStatus, NodeStatus
from flowl.runtime import Runtime
from flowl.std import Library


def stats_of(flow, name):
    found = flow.node_statistics(name)
    assert len(found) == 1
    return found[0]


@pytest.mark.asyncio
async def test_for_loop_with_return_capture(settings):
    lib = Library()
    printed = []
    clock = {"n": 0, "sleeps": 0}

    @lib.function("time")
    async def fake_time(res, args):
        clock["n"] += 1
        return {"Now": f"X{clock['n']}"}

    @lib.function("print")
    async def fake_print(res, args):
        printed.append(args["Time"])
        return {}

    @lib.function("sleep")
    async def fake_sleep(res, args):
        clock["sleeps"] += 1
        if clock["sleeps"] == 2:
            raise RuntimeFlowError("woke up")
        return {}

    rt = Runtime(settings=settings, library=lib)
    source = (
        'load "go:print" load "go:sleep" load "go:time"\n'
        'var t\n'
        'for { co time -> t\n'
        '      co print { "Time": "$(t.Now)" }\n'
        '      co sleep }\n'
    )
    fid = FlowID.from_source("clock", source)
    flow = rt.parse_flow(fid, source)
    await rt.init_flow(fid)

    with pytest.raises(StepError) as exc:
        await rt.exec_flow(fid)
    assert exc.value.step == 3
    assert printed == ["X1", "X2"]
    assert flow.status == FlowStatus.ERROR
    assert stats_of(flow, "sleep").status == NodeStatus.ERROR
    assert stats_of(flow, "time").runs == 2


@pytest.mark.asyncio
async def test_switch_gates_calls(runtime, library, load_flow, calls):
    @library.function("function")
    async def f(res, args):
        calls.append("function")
        return {}

    @library.function("function2")
    async def f2(res, args):
        calls.append("function2")
        return {}

    fid, flow = await load_flow(
        'load "go:function" load "go:function2"\n'
        'var v = 1\n'
        'switch { case $(v) == 1 { co function }\n'
        '         default       { co function2 } }\n'
    )
    await runtime.exec_flow(fid)
    assert calls == ["function"]
    s1, s2 = stats_of(flow, "function"), stats_of(flow, "function2")
    assert (s1.executed, s1.runs, s1.status) == (True, 1, NodeStatus.STOPPED)
    assert (s2.executed, s2.runs, s2.status) == (False, 0, NodeStatus.STOPPED)
    assert flow.status == FlowStatus.STOPPED


@pytest.mark.asyncio
async def test_if_uses_loop_variable(runtime, library, load_flow, calls):
    @library.function("even")
    async def even(res, args):
        calls.append(args["i"])
        return {}

    fid, flow = await load_flow(
        'load "go:even"\n'
        'var i = 0\n'
        'for $(i) < 4 {\n'
        '  i <- $(i) + 1\n'
        '  if $(i) % 2 == 0 { co even { "i": "$(i)" } }\n'
        '}\n'
    )
    await runtime.exec_flow(fid)
    assert calls == ["2", "4"]
    assert stats_of(flow, "even").runs == 2


@pytest.mark.asyncio
async def test_self_reference_rewrite_in_flow(runtime, library, load_flow, calls):
    @library.function("show")
    async def show(res, args):
        calls.append(args["a"])
        return {}

    fid, flow = await load_flow('load "go:show"\nvar a = 1\na <- $(a) + 1\nco show { "a": "$(a)" }\n')
    await runtime.exec_flow(fid)
    assert calls == ["2"]


@pytest.mark.asyncio
async def test_retry_from_fn_variable(runtime, library, load_flow, calls):
    @library.function("flaky")
    async def flaky(res, args):
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeFlowError("not yet")
        return {}

    fid, flow = await load_flow('load "go:flaky"\nfn f = flaky {\n  var retry_on_failure = 2\n}\nco f\n')
    await runtime.exec_flow(fid)
    s = stats_of(flow, "f")
    assert len(calls) == 3
    assert s.runs == 3
    assert s.status == NodeStatus.STOPPED
    assert flow.status == FlowStatus.STOPPED


@pytest.mark.asyncio
async def test_retry_from_manifest_gives_up(runtime, library, load_flow, calls):
    @library.function("broken", retry_on_failure=1)
    async def broken(res, args):
        calls.append(1)
        raise RuntimeFlowError("always")

    fid, flow = await load_flow('load "go:broken"\nco broken\n')
    with pytest.raises(StepError):
        await runtime.exec_flow(fid)
    assert len(calls) == 2
    assert stats_of(flow, "broken").runs == 2


@pytest.mark.asyncio
async def test_ignored_failure_does_not_stop_the_pass(runtime, library, load_flow, calls):
    @library.function("bad", ignore_failure=True)
    async def bad(res, args):
        raise RuntimeFlowError("boom")

    @library.function("after")
    async def after(res, args):
        calls.append("after")
        return {}

    fid, flow = await load_flow('load "go:bad" load "go:after"\nco bad\nco after\n')
    await runtime.exec_flow(fid)
    assert calls == ["after"]
    s = stats_of(flow, "bad")
    assert s.status == NodeStatus.ERROR
    assert "boom" in str(s.last_error)
    assert flow.status == FlowStatus.STOPPED


@pytest.mark.asyncio
async def test_failure_stops_the_pass(runtime, library, load_flow, calls):
    @library.function("bad")
    async def bad(res, args):
        raise RuntimeFlowError("boom")

    @library.function("after")
    async def after(res, args):
        calls.append("after")
        return {}

    fid, flow = await load_flow('load "go:bad" load "go:after"\nco bad\nco after\n')
    with pytest.raises(StepError) as exc:
        await runtime.exec_flow(fid)
    assert exc.value.step == 1
    assert calls == []
    assert flow.status == FlowStatus.ERROR
    assert stats_of(flow, "after").status == NodeStatus.READY
    assert "boom" in runtime.inspect_flow(fid).last_error


@pytest.mark.asyncio
async def test_exit_directive_ends_the_pass(runtime, library, load_flow, calls):
    @library.function("a")
    async def a(res, args):
        calls.append("a")
        return {}

    @library.function("b")
    async def b(res, args):
        calls.append("b")
        return {}

    fid, flow = await load_flow('load "go:a" load "go:b"\nco a\nexit\nco b\n')
    await runtime.exec_flow(fid)
    assert calls == ["a"]
    assert flow.status == FlowStatus.STOPPED


@pytest.mark.asyncio
async def test_exit_with_message_is_an_error(runtime, load_flow):
    fid, flow = await load_flow('exit "bye"\n')
    with pytest.raises(StepError) as exc:
        await runtime.exec_flow(fid)
    assert "bye" in str(exc.value)
    assert flow.status == FlowStatus.ERROR


@pytest.mark.asyncio
async def test_parallel_group_runs_concurrently(runtime, library, load_flow):
    e1, e2 = asyncio.Event(), asyncio.Event()

    @library.function("p1")
    async def p1(res, args):
        e1.set()
        await asyncio.wait_for(e2.wait(), 2)
        return {}

    @library.function("p2")
    async def p2(res, args):
        e2.set()
        await asyncio.wait_for(e1.wait(), 2)
        return {}

    fid, flow = await load_flow('load "go:p1" load "go:p2"\nco { p1 p2 }\n')
    await runtime.exec_flow(fid)
    assert flow.status == FlowStatus.STOPPED
    assert sorted(flow.progress.done) == [1000, 1001]


@pytest.mark.asyncio
async def test_step_barrier(runtime, library, load_flow):
    timeline = []
    holder = {}

    @library.function("slow")
    async def slow(res, args):
        await asyncio.sleep(0.05)
        timeline.append("slow")
        return {}

    @library.function("fast")
    async def fast(res, args):
        timeline.append("fast")
        return {}

    @library.function("next")
    async def next_(res, args):
        flow = holder["flow"]
        assert not any(s.status == NodeStatus.RUNNING for s in flow.stats.values() if s.node.step == 1)
        timeline.append("next")
        return {}

    fid, flow = await load_flow('load "go:slow" load "go:fast" load "go:next"\nco { slow fast }\nco next\n')
    holder["flow"] = flow
    await runtime.exec_flow(fid)
    assert timeline == ["fast", "slow", "next"]
    assert flow.progress.done == [1001, 1000, 1002]


@pytest.mark.asyncio
async def test_cancel_running_flow(runtime, library, load_flow, until, calls):
    started = asyncio.Event()

    @library.function("slow")
    async def slow(res, args):
        started.set()
        await asyncio.sleep(10)
        return {}

    @library.function("after")
    async def after(res, args):
        calls.append("after")
        return {}

    fid, flow = await load_flow('load "go:slow" load "go:after"\nco slow\nco after\n')
    task = asyncio.ensure_future(runtime.exec_flow(fid))
    await asyncio.wait_for(started.wait(), 2)

    assert await runtime.cancel_running_flow(fid) is True
    with pytest.raises(FlowCancelledError):
        await asyncio.wait_for(task, 1)
    assert calls == []
    assert flow.status == FlowStatus.CANCELLED
    assert await runtime.cancel_running_flow(fid) is False

    slow_stats = stats_of(flow, "slow")
    assert slow_stats.status == NodeStatus.ERROR
    assert "cancelled" in str(slow_stats.last_error)
    assert stats_of(flow, "after").status == NodeStatus.READY
    insight = runtime.inspect_flow(fid)
    assert insight.running == []
    assert insight.done == [1000]


@pytest.mark.asyncio
async def test_event_driven_repetition(runtime, library, load_flow, until, calls):
    @library.function("work")
    async def work(res, args):
        calls.append(1)
        return {}

    fid, flow = await load_flow(
        'load "go:event_tick" load "go:work"\n'
        'event { co event_tick { "seconds": "0.02" } }\n'
        'co work\n'
    )
    assert runtime.has_trigger(fid)
    task = asyncio.ensure_future(runtime.exec_flow(fid))
    await until(lambda: len(calls) >= 3)

    assert await runtime.cancel_running_flow(fid) is True
    with pytest.raises(FlowCancelledError):
        await asyncio.wait_for(task, 1)

    fired = stats_of(flow, "event_tick").runs
    assert stats_of(flow, "work").runs == len(calls)
    assert fired - len(calls) in (0, 1)
    assert flow.status == FlowStatus.CANCELLED


@pytest.mark.asyncio
async def test_event_loop_survives_failing_pass(runtime, library, load_flow, until, calls):
    @library.function("work")
    async def work(res, args):
        calls.append(1)
        raise RuntimeFlowError("fails every time")

    fid, flow = await load_flow(
        'load "go:event_tick" load "go:work"\n'
        'event { co event_tick { "seconds": "0.01" } }\n'
        'co work\n'
    )
    task = asyncio.ensure_future(runtime.exec_flow(fid))
    await until(lambda: len(calls) >= 2)
    await runtime.cancel_running_flow(fid)
    with pytest.raises(FlowCancelledError):
        await asyncio.wait_for(task, 1)


@pytest.mark.asyncio
async def test_event_loop_survives_evaluation_error(runtime, library, load_flow, until, calls):
    @library.function("work")
    async def work(res, args):
        calls.append(1)
        return {}

    fid, flow = await load_flow(
        'load "go:event_tick" load "go:work"\n'
        'var n = "abc"\n'
        'event { co event_tick { "seconds": "0.01" } }\n'
        'for $(n) > 1 { co work }\n'
    )
    task = asyncio.ensure_future(runtime.exec_flow(fid))
    await until(lambda: stats_of(flow, "event_tick").runs >= 3)
    assert not task.done()
    assert "abc" in str(flow.last_error)

    assert await runtime.cancel_running_flow(fid) is True
    with pytest.raises(FlowCancelledError):
        await asyncio.wait_for(task, 1)
    assert calls == []


@pytest.mark.asyncio
async def test_cyclic_rewrite_fails_every_pass(runtime, load_flow):
    fid, flow = await load_flow(
        'load "go:print"\n'
        'var a = 1\n'
        'var b = $(a)\n'
        'a <- $(b)\n'
        'co print { "b": "$(b)" }\n'
    )
    for _ in range(2):
        with pytest.raises(VariableError) as exc:
            await runtime.exec_flow(fid)
        assert exc.value.rule == ERR_VARIABLE_HAS_CYCLE
        assert flow.status == FlowStatus.ERROR
        runtime.to_ready(fid)
    assert flow.runq.global_block.calc_var("b")[0] == "1"


@pytest.mark.asyncio
async def test_outcome_rows_from_flow(runtime, load_flow):
    fid, flow = await load_flow(
        'load "go:outcome"\n'
        'var who = "flowl"\n'
        'co outcome { "who": "$(who)" }\n'
    )
    await runtime.exec_flow(fid)
    assert flow.outcome.rows() == [{"who": "flowl"}]


@pytest.mark.asyncio
async def test_replay_needs_to_ready(runtime, library, load_flow, calls):
    @library.function("a")
    async def a(res, args):
        calls.append("a")
        return {}

    fid, flow = await load_flow('load "go:a"\nco a\n')
    await runtime.exec_flow(fid)
    with pytest.raises(FlowStateError):
        await runtime.exec_flow(fid)

    runtime.to_ready(fid)
    assert stats_of(flow, "a").status == NodeStatus.READY
    await runtime.exec_flow(fid)
    assert calls == ["a", "a"]
    assert stats_of(flow, "a").runs == 2


@pytest.mark.asyncio
async def test_init_twice_is_rejected(runtime, load_flow):
    fid, _ = await load_flow('load "go:print"\nco print\n')
    with pytest.raises(FlowStateError):
        await runtime.init_flow(fid)


@pytest.mark.asyncio
async def test_unknown_native_function_fails_init(runtime):
    source = 'load "go:missing"\nco missing\n'
    fid = FlowID.from_source("missing", source)
    runtime.parse_flow(fid, source)
    with pytest.raises(RuntimeFlowError):
        await runtime.init_flow(fid)


@pytest.mark.asyncio
async def test_stop_and_delete(runtime, load_flow):
    fid, flow = await load_flow('load "go:print"\nco print\n')
    await runtime.stop_flow(fid)
    assert flow.status == FlowStatus.KILLED
    await runtime.delete_flow(fid)
    with pytest.raises(FlowNotFoundError):
        runtime.inspect_flow(fid)


@pytest.mark.asyncio
async def test_insight_and_task_log(runtime, load_flow):
    fid, flow = await load_flow('// greeting\nload "go:print"\nco print { "_msg": "hello" "b": "2" }\n')
    await runtime.exec_flow(fid)

    insight = runtime.inspect_flow(fid)
    assert insight.name == "test"
    assert insight.desc == "greeting"
    assert insight.status == "stopped"
    assert (insight.total, insight.running, insight.done) == (1, [], [1000])
    node = insight.nodes[0]
    assert (node.name, node.function, node.driver, node.runs) == ("print", "print", "go", 1)
    assert '"status":"stopped"' in insight.model_dump_json()

    assert flow.bucket.read(1000) == "hello\nb: 2\n"
    assert runtime.fetch_flow(fid, lambda f: f.status) == FlowStatus.STOPPED
