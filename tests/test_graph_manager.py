"""Tests for graph storage and run history."""

from datetime import datetime, timedelta, timezone

import pytest

from nodeflow.core.exceptions import ErrorCategory, GraphValidationError, StorageError
from nodeflow.core.graph_manager import GraphManager
from nodeflow.core.run_history import RunHistory
from nodeflow.models.core import LogEntry, LogLevel, NodeState, NodeStatus, RunResult, RunStatusEnum
from nodeflow.storage.models import RunModel


@pytest.fixture
def graph_manager(session_factory):
    return GraphManager(session_factory)


@pytest.fixture
def run_history(session_factory):
    return RunHistory(session_factory)


@pytest.fixture
def sample_graph(graph_builder):
    return graph_builder.graph(
        [
            graph_builder.node("t", "trigger", label="Begin"),
            graph_builder.node("c", "condition", expression="True"),
            graph_builder.node("o", "output"),
        ],
        [graph_builder.edge("t", "c"), graph_builder.edge("c", "o", handle="true")],
        name="Sample",
    )


def make_result(run_id: str, started_at: datetime) -> RunResult:
    return RunResult(
        run_id=run_id,
        status=RunStatusEnum.COMPLETED,
        steps=2,
        execution_order=["t", "o"],
        context={"t": "Start", "o": "Start"},
        node_states={"t": NodeState(status=NodeStatus.COMPLETED, last_output="Start")},
        logs=[
            LogEntry(id=1, timestamp=started_at, level=LogLevel.INFO, message="Starting execution from 1 trigger node(s)"),
            LogEntry(id=2, timestamp=started_at, node_id="t", node_label="t", level=LogLevel.SUCCESS, message="t completed"),
        ],
        final_output="Start",
        started_at=started_at,
        completed_at=started_at,
    )


class TestGraphManager:

    def test_create_and_get_round_trip(self, graph_manager, sample_graph):
        graph_id = graph_manager.create_graph(sample_graph)
        loaded = graph_manager.get_graph(graph_id)

        assert loaded.name == "Sample"
        assert [n.id for n in loaded.nodes] == ["t", "c", "o"]
        assert loaded.edges[1].source_handle == "true"
        assert loaded.get_node("t").data["label"] == "Begin"

    def test_summary_counts(self, graph_manager, sample_graph):
        graph_id = graph_manager.create_graph(sample_graph)
        summary = graph_manager.get_summary(graph_id)
        assert summary.node_count == 3
        assert summary.edge_count == 2

    def test_duplicate_name_conflicts(self, graph_manager, sample_graph):
        graph_manager.create_graph(sample_graph)
        with pytest.raises(GraphValidationError) as exc_info:
            graph_manager.create_graph(sample_graph)
        assert exc_info.value.category == ErrorCategory.CONFLICT

    def test_missing_graph(self, graph_manager):
        with pytest.raises(StorageError) as exc_info:
            graph_manager.get_graph("missing")
        assert exc_info.value.category == ErrorCategory.NOT_FOUND

    def test_update_graph(self, graph_manager, sample_graph, graph_builder):
        graph_id = graph_manager.create_graph(sample_graph)
        replacement = graph_builder.graph([graph_builder.node("t", "trigger")], [], name="Renamed")

        summary = graph_manager.update_graph(graph_id, replacement)

        assert summary.name == "Renamed"
        assert summary.node_count == 1
        assert graph_manager.get_graph(graph_id).edges == []

    def test_list_and_delete(self, graph_manager, sample_graph, graph_builder):
        first = graph_manager.create_graph(sample_graph)
        graph_manager.create_graph(graph_builder.graph([], [], name="Other"))

        assert {s.name for s in graph_manager.list_graphs()} == {"Sample", "Other"}
        assert graph_manager.delete_graph(first) is True
        assert graph_manager.delete_graph(first) is False
        assert [s.name for s in graph_manager.list_graphs()] == ["Other"]

    def test_validate_graph_reports_warnings(self, graph_manager, graph_builder):
        result = graph_manager.validate_graph(graph_builder.graph([graph_builder.node("s", "script")], []))
        assert result.is_valid
        assert result.warnings


class TestRunHistory:

    def test_save_and_load(self, run_history):
        started = datetime.now(timezone.utc)
        run_history.save_run(make_result("run-1", started))

        loaded = run_history.get_run("run-1")

        assert loaded.status == RunStatusEnum.COMPLETED
        assert loaded.execution_order == ["t", "o"]
        assert loaded.final_output == "Start"
        assert loaded.node_states["t"].last_output == "Start"
        assert [entry.id for entry in loaded.logs] == [1, 2]
        assert loaded.logs[1].level == LogLevel.SUCCESS
        assert loaded.started_at.tzinfo is not None

    def test_unknown_run(self, run_history):
        assert run_history.get_run("missing") is None
        assert run_history.get_logs("missing") == []

    def test_list_runs_by_graph(self, run_history, graph_manager, sample_graph):
        graph_id = graph_manager.create_graph(sample_graph)
        now = datetime.now(timezone.utc)
        run_history.save_run(make_result("run-a", now - timedelta(minutes=1)), graph_id=graph_id, graph=sample_graph)
        run_history.save_run(make_result("run-b", now))

        assert [s.run_id for s in run_history.list_runs()] == ["run-b", "run-a"]
        assert [s.run_id for s in run_history.list_runs(graph_id=graph_id)] == ["run-a"]

    def test_cleanup_removes_old_runs(self, run_history, session_factory):
        now = datetime.now(timezone.utc)
        run_history.save_run(make_result("old", now - timedelta(hours=48)))
        run_history.save_run(make_result("new", now))

        assert run_history.cleanup_runs(max_age_hours=24) == 1
        assert run_history.get_run("old") is None
        assert run_history.get_run("new") is not None

        db = session_factory()
        try:
            assert db.query(RunModel).count() == 1
        finally:
            db.close()
