"""Tests for the scheduler and run management."""

import asyncio

import httpx
import pytest

from nodeflow.core.exceptions import ExecutionEngineError
from nodeflow.core.execution_engine import ExecutionEngine, RunManager, run
from nodeflow.core.executors import Collaborators, ExecutorRegistry
from nodeflow.core.human_input import PendingInputRegistry
from nodeflow.core.run_history import RunHistory
from nodeflow.models.core import LogLevel, NodeStatus, NodeType, RunStatusEnum


@pytest.fixture
def engine(collaborators):
    return ExecutionEngine(collaborators=collaborators)


class TestScheduler:

    @pytest.mark.asyncio
    async def test_no_trigger_completes_with_single_warning(self, engine, graph_builder):
        graph = graph_builder.graph(
            [graph_builder.node("s", "script", code="return 1"), graph_builder.node("o", "output")],
            [graph_builder.edge("s", "o")],
        )
        events = []

        result = await engine.run(graph, listeners=[events.append])

        assert result.status == RunStatusEnum.COMPLETED
        assert len(result.logs) == 1
        assert result.logs[0].level == LogLevel.WARN
        assert result.steps == 0
        assert all(state.status == NodeStatus.IDLE for state in result.node_states.values())
        assert not any(e.event_type == "node_status" and e.data["status"] == "running" for e in events)

    @pytest.mark.asyncio
    async def test_single_upstream_output_passed_verbatim(self, engine, graph_builder):
        graph = graph_builder.graph(
            [
                graph_builder.node("t", "trigger"),
                graph_builder.node("m", "script", code='return {"n": 1, "items": [1, 2]}'),
                graph_builder.node("n", "script", code="return input"),
            ],
            [graph_builder.edge("t", "m"), graph_builder.edge("m", "n")],
        )

        result = await engine.run(graph)

        assert result.context["n"] == result.context["m"] == {"n": 1, "items": [1, 2]}

    @pytest.mark.asyncio
    async def test_no_upstream_resolves_to_empty_string(self, engine, graph_builder):
        graph = graph_builder.graph([graph_builder.node("t", "trigger")], [])
        state = engine.create_state(graph)
        assert state.resolve_input("t") == ""

    @pytest.mark.asyncio
    async def test_multiple_upstream_last_one_stringified(self, engine, graph_builder):
        graph = graph_builder.graph(
            [
                graph_builder.node("a", "trigger"),
                graph_builder.node("b", "trigger"),
                graph_builder.node("c", "output"),
            ],
            [graph_builder.edge("a", "c"), graph_builder.edge("b", "c")],
        )
        state = engine.create_state(graph)
        state.context.record("a", {"first": True})
        state.context.record("b", {"second": True})

        assert state.resolve_input("c") == '{"second": true}'

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expression, expected, skipped", [
        ("True", "on_true", "on_false"),
        ("False", "on_false", "on_true"),
    ])
    async def test_condition_follows_only_matching_handle(self, engine, graph_builder, expression, expected, skipped):
        graph = graph_builder.graph(
            [
                graph_builder.node("t", "trigger"),
                graph_builder.node("c", "condition", expression=expression),
                graph_builder.node("on_true", "output"),
                graph_builder.node("on_false", "output"),
            ],
            [
                graph_builder.edge("t", "c"),
                graph_builder.edge("c", "on_true", handle="true"),
                graph_builder.edge("c", "on_false", handle="false"),
            ],
        )

        result = await engine.run(graph)

        assert expected in result.execution_order
        assert skipped not in result.execution_order
        assert result.node_states[skipped].status == NodeStatus.IDLE

    @pytest.mark.asyncio
    async def test_cycle_halts_at_step_ceiling(self, engine, graph_builder):
        graph = graph_builder.graph(
            [
                graph_builder.node("t", "trigger"),
                graph_builder.node("a", "script", code="return 1"),
                graph_builder.node("b", "script", code="return 2"),
            ],
            [graph_builder.edge("t", "a"), graph_builder.edge("a", "b"), graph_builder.edge("b", "a")],
        )

        result = await engine.run(graph)

        assert result.status == RunStatusEnum.ABORTED
        assert result.steps == 50
        assert len(result.execution_order) == 50
        assert result.logs[-1].level == LogLevel.ERROR
        assert "Step limit of 50" in result.logs[-1].message

    @pytest.mark.asyncio
    async def test_custom_step_ceiling(self, collaborators, graph_builder):
        graph = graph_builder.graph(
            [graph_builder.node("t", "trigger"), graph_builder.node("loop", "script", code="return 1")],
            [graph_builder.edge("t", "loop"), graph_builder.edge("loop", "loop")],
        )

        result = await run(graph, collaborators=collaborators, max_steps=5)

        assert result.steps == 5
        assert len(result.execution_order) == 5

    @pytest.mark.asyncio
    async def test_rerun_returning_none_clears_last_output(self, collaborators, graph_builder):
        graph = graph_builder.graph(
            [
                graph_builder.node("t", "trigger"),
                graph_builder.node("s", "script", code='if "s" not in context:\n    return "first pass"'),
            ],
            [graph_builder.edge("t", "s"), graph_builder.edge("s", "s")],
        )

        result = await run(graph, collaborators=collaborators, max_steps=3)

        assert result.execution_order == ["t", "s", "s"]
        assert result.context["s"] is None
        assert result.node_states["s"].last_output is None

    @pytest.mark.asyncio
    async def test_failing_node_does_not_stop_siblings(self, engine, graph_builder):
        graph = graph_builder.graph(
            [
                graph_builder.node("t", "trigger"),
                graph_builder.node("bad", "condition", label="Broken check"),
                graph_builder.node("after_bad", "output"),
                graph_builder.node("good", "script", code='return "fine"'),
            ],
            [
                graph_builder.edge("t", "bad"),
                graph_builder.edge("t", "good"),
                graph_builder.edge("bad", "after_bad", handle="true"),
            ],
        )

        result = await engine.run(graph)

        assert result.status == RunStatusEnum.COMPLETED
        assert result.node_states["bad"].status == NodeStatus.ERROR
        assert result.node_states["good"].status == NodeStatus.COMPLETED
        assert result.node_states["after_bad"].status == NodeStatus.IDLE
        assert "bad" not in result.context
        error_entries = [entry for entry in result.logs if entry.level == LogLevel.ERROR]
        assert len(error_entries) == 1
        assert error_entries[0].node_id == "bad"
        assert error_entries[0].message.startswith("Broken check failed:")

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_contained(self, graph_builder):
        async def explode(invocation):
            raise RuntimeError("kaboom")

        registry = ExecutorRegistry({NodeType.SCRIPT: explode})
        engine = ExecutionEngine(collaborators=Collaborators(default_node_delay_ms=0), registry=registry)
        graph = graph_builder.graph(
            [graph_builder.node("t", "trigger"), graph_builder.node("s", "script")],
            [graph_builder.edge("t", "s")],
        )

        result = await engine.run(graph)

        assert result.status == RunStatusEnum.COMPLETED
        assert result.node_states["s"].status == NodeStatus.ERROR
        assert any(entry.message == "s failed: kaboom" for entry in result.logs)

    @pytest.mark.asyncio
    async def test_rerun_gives_same_execution_order(self, engine, graph_builder):
        graph = graph_builder.graph(
            [
                graph_builder.node("t1", "trigger"),
                graph_builder.node("t2", "trigger"),
                graph_builder.node("a", "script", code="return 1"),
                graph_builder.node("b", "script", code="return 2"),
                graph_builder.node("c", "output"),
            ],
            [
                graph_builder.edge("t1", "a"),
                graph_builder.edge("t2", "b"),
                graph_builder.edge("a", "c"),
                graph_builder.edge("b", "c"),
            ],
        )

        first = await engine.run(graph)
        second = await engine.run(graph)

        assert first.execution_order == ["t1", "t2", "a", "b", "c", "c"]
        assert second.execution_order == first.execution_order
        assert first.run_id != second.run_id

    @pytest.mark.asyncio
    async def test_unknown_edge_target_is_skipped(self, engine, graph_builder):
        graph = graph_builder.graph(
            [graph_builder.node("t", "trigger")],
            [graph_builder.edge("t", "ghost")],
        )

        result = await engine.run(graph)

        assert result.status == RunStatusEnum.COMPLETED
        assert result.execution_order == ["t"]
        assert any(entry.level == LogLevel.WARN and "ghost" in entry.message for entry in result.logs)

    @pytest.mark.asyncio
    async def test_cancellation_before_start(self, engine, graph_builder):
        graph = graph_builder.graph([graph_builder.node("t", "trigger")], [])
        cancel_event = asyncio.Event()
        cancel_event.set()

        result = await engine.run(graph, cancel_event=cancel_event)

        assert result.status == RunStatusEnum.CANCELLED
        assert result.execution_order == []
        assert result.logs[-1].level == LogLevel.WARN
        assert result.logs[-1].message == "Execution cancelled by user"

    @pytest.mark.asyncio
    async def test_final_output_and_summary_event(self, engine, graph_builder):
        graph = graph_builder.graph(
            [graph_builder.node("t", "trigger", label="Hello"), graph_builder.node("o", "output")],
            [graph_builder.edge("t", "o")],
        )
        events = []

        result = await engine.run(graph, listeners=[events.append])

        assert result.final_output == "Hello"
        event_types = [e.event_type for e in events]
        assert event_types[0] == "run_started"
        assert event_types[-2:] == ["run_finished", "run_summary"]
        assert events[-1].data["final_output"] == "Hello"

    @pytest.mark.asyncio
    async def test_no_summary_without_output_node(self, engine, graph_builder):
        graph = graph_builder.graph([graph_builder.node("t", "trigger")], [])
        events = []

        await engine.run(graph, listeners=[events.append])

        assert "run_summary" not in [e.event_type for e in events]

    def test_max_steps_must_be_positive(self):
        with pytest.raises(ValueError):
            ExecutionEngine(max_steps=0)


class TestScenarios:

    @pytest.mark.asyncio
    async def test_trigger_into_script(self, engine, graph_builder):
        graph = graph_builder.graph(
            [graph_builder.node("t", "trigger"), graph_builder.node("s", "script", code='return input + "!"')],
            [graph_builder.edge("t", "s")],
        )

        result = await engine.run(graph)

        assert result.context["t"] == "Start"
        assert result.context["s"] == "Start!"
        assert result.node_states["s"].last_output == "Start!"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("expression", ['input === "Start"', 'input == "Start"'])
    async def test_condition_routes_to_true_output(self, engine, graph_builder, expression):
        graph = graph_builder.graph(
            [
                graph_builder.node("t", "trigger"),
                graph_builder.node("c", "condition", expression=expression),
                graph_builder.node("out1", "output"),
                graph_builder.node("out2", "output"),
            ],
            [
                graph_builder.edge("t", "c"),
                graph_builder.edge("c", "out1", handle="true"),
                graph_builder.edge("c", "out2", handle="false"),
            ],
        )

        result = await engine.run(graph)

        assert result.execution_order == ["t", "c", "out1"]
        assert result.final_output == "Start"
        assert result.node_states["out1"].last_output == "Start"
        assert result.node_states["out2"].status == NodeStatus.IDLE

    @pytest.mark.asyncio
    async def test_condition_passes_its_input_downstream(self, engine, graph_builder):
        graph = graph_builder.graph(
            [
                graph_builder.node("t", "trigger"),
                graph_builder.node("m", "script", code='return {"score": 7}'),
                graph_builder.node("c", "condition", expression='input["score"] > 5'),
                graph_builder.node("s", "script", code='return input["score"] * 2'),
            ],
            [
                graph_builder.edge("t", "m"),
                graph_builder.edge("m", "c"),
                graph_builder.edge("c", "s", handle="true"),
            ],
        )

        result = await engine.run(graph)

        assert result.context["c"] == {"score": 7}
        assert result.context["s"] == 14
        assert result.node_states["c"].last_output is True
        assert any(entry.message == "Condition evaluated to true" for entry in result.logs)

    @pytest.mark.asyncio
    async def test_request_node_get(self, graph_builder):
        def handler(request):
            return httpx.Response(200, json={"id": 1})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            engine = ExecutionEngine(collaborators=Collaborators(http_client=client))
            graph = graph_builder.graph(
                [
                    graph_builder.node("t", "trigger"),
                    graph_builder.node("r", "request", url="https://api.example.test/item", method="GET"),
                ],
                [graph_builder.edge("t", "r")],
            )
            result = await engine.run(graph)

        assert result.context["r"] == {"id": 1}
        request_logs = [entry for entry in result.logs if entry.node_id == "r"]
        assert request_logs[0].level == LogLevel.INFO
        assert request_logs[0].message == "GET https://api.example.test/item"


class TestRunManager:

    @pytest.mark.asyncio
    async def test_start_and_wait(self, engine, graph_builder):
        manager = RunManager(engine)
        graph = graph_builder.graph(
            [graph_builder.node("t", "trigger"), graph_builder.node("o", "output")],
            [graph_builder.edge("t", "o")],
        )

        run_id = await manager.start_run(graph, graph_id="g1")
        result = await manager.wait_for(run_id, timeout=5)

        assert result.status == RunStatusEnum.COMPLETED
        assert not manager.is_active(run_id)
        assert manager.list_runs()[0].graph_id == "g1"
        assert manager.snapshot(run_id)["status"] == "completed"
        assert manager.snapshot("missing") is None
        assert [summary.run_id for summary in manager.list_runs()] == [run_id]

    @pytest.mark.asyncio
    async def test_active_run_limit(self, graph_builder):
        pending = PendingInputRegistry()
        engine = ExecutionEngine(collaborators=Collaborators(human_input=pending))
        manager = RunManager(engine, pending_inputs=pending, max_active_runs=1)
        graph = graph_builder.graph(
            [graph_builder.node("t", "trigger"), graph_builder.node("ask", "input")],
            [graph_builder.edge("t", "ask")],
        )

        run_id = await manager.start_run(graph)
        with pytest.raises(ExecutionEngineError):
            await manager.start_run(graph)

        manager.cancel_run(run_id)
        result = await manager.wait_for(run_id, timeout=5)
        assert result.status == RunStatusEnum.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_declines_pending_input(self, graph_builder):
        pending = PendingInputRegistry()
        engine = ExecutionEngine(collaborators=Collaborators(human_input=pending))
        manager = RunManager(engine, pending_inputs=pending)
        graph = graph_builder.graph(
            [
                graph_builder.node("t", "trigger"),
                graph_builder.node("ask", "input", prompt="Name?"),
                graph_builder.node("o", "output"),
            ],
            [graph_builder.edge("t", "ask"), graph_builder.edge("ask", "o")],
        )

        run_id = await manager.start_run(graph)
        for _ in range(100):
            if pending.list_pending(run_id):
                break
            await asyncio.sleep(0.01)
        assert pending.list_pending(run_id)[0].prompt == "Name?"

        assert manager.cancel_run(run_id) is True
        result = await manager.wait_for(run_id, timeout=5)

        assert result.status == RunStatusEnum.CANCELLED
        assert result.node_states["ask"].status == NodeStatus.ERROR
        assert result.node_states["o"].status == NodeStatus.IDLE
        assert manager.cancel_run(run_id) is False

    @pytest.mark.asyncio
    async def test_provided_input_flows_downstream(self, graph_builder):
        pending = PendingInputRegistry()
        engine = ExecutionEngine(collaborators=Collaborators(human_input=pending))
        manager = RunManager(engine, pending_inputs=pending)
        graph = graph_builder.graph(
            [
                graph_builder.node("t", "trigger"),
                graph_builder.node("ask", "input"),
                graph_builder.node("o", "output"),
            ],
            [graph_builder.edge("t", "ask"), graph_builder.edge("ask", "o")],
        )

        run_id = await manager.start_run(graph)
        for _ in range(100):
            if pending.list_pending(run_id):
                break
            await asyncio.sleep(0.01)
        pending.provide(run_id, "ask", "Ada")
        result = await manager.wait_for(run_id, timeout=5)

        assert result.status == RunStatusEnum.COMPLETED
        assert result.final_output == "Ada"

    @pytest.mark.asyncio
    async def test_unknown_run(self, engine):
        manager = RunManager(engine)
        with pytest.raises(ExecutionEngineError):
            manager.get_run("nope")
        with pytest.raises(ExecutionEngineError):
            manager.cancel_run("nope")

    @pytest.mark.asyncio
    async def test_finished_runs_are_persisted(self, engine, graph_builder, session_factory):
        history = RunHistory(session_factory)
        manager = RunManager(engine, run_history=history)
        graph = graph_builder.graph(
            [graph_builder.node("t", "trigger"), graph_builder.node("o", "output")],
            [graph_builder.edge("t", "o")],
        )

        run_id = await manager.start_run(graph)
        await manager.wait_for(run_id, timeout=5)

        stored = history.get_run(run_id)
        assert stored is not None
        assert stored.final_output == "Start"
        assert [entry.message for entry in stored.logs] == [entry.message for entry in manager.get_run(run_id).logs]

    @pytest.mark.asyncio
    async def test_shutdown_cancels_active_runs(self, graph_builder):
        pending = PendingInputRegistry()
        engine = ExecutionEngine(collaborators=Collaborators(human_input=pending))
        manager = RunManager(engine, pending_inputs=pending)
        graph = graph_builder.graph(
            [graph_builder.node("t", "trigger"), graph_builder.node("ask", "input")],
            [graph_builder.edge("t", "ask")],
        )

        run_id = await manager.start_run(graph)
        await asyncio.sleep(0.05)
        await manager.shutdown(timeout=2)

        assert manager.get_active_runs() == []
        assert manager.get_run(run_id).status == RunStatusEnum.CANCELLED
