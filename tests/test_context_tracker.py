"""Tests for the execution context and the run tracker."""

import pytest

from nodeflow.core.context import ExecutionContext
from nodeflow.core.tracker import RunTracker
from nodeflow.models.core import LogLevel, NodeStatus


class TestExecutionContext:

    def test_record_and_read(self):
        context = ExecutionContext()
        context.record("a", {"x": 1})

        assert context["a"] == {"x": 1}
        assert context.get("missing", "fallback") == "fallback"
        assert "a" in context
        assert len(context) == 1

    def test_rerun_overwrites_own_entry(self):
        context = ExecutionContext()
        context.record("a", 1)
        context.record("a", 2)
        assert dict(context) == {"a": 2}

    def test_snapshot_is_read_only_live_view(self):
        context = ExecutionContext()
        snapshot = context.snapshot()
        context.record("a", 1)

        assert snapshot["a"] == 1
        with pytest.raises(TypeError):
            snapshot["b"] = 2


class TestRunTracker:

    def test_status_and_output(self):
        tracker = RunTracker("run-1")
        tracker.register_node("n")
        assert tracker.status_of("n") == NodeStatus.IDLE

        tracker.set_status("n", NodeStatus.RUNNING)
        tracker.set_status("n", NodeStatus.COMPLETED, last_output={"ok": True})

        state = tracker.node_states["n"]
        assert state.status == NodeStatus.COMPLETED
        assert state.last_output == {"ok": True}

    def test_status_without_output_keeps_previous_output(self):
        tracker = RunTracker("run-1")
        tracker.set_output("n", "partial")
        tracker.set_status("n", NodeStatus.ERROR)
        assert tracker.node_states["n"].last_output == "partial"

    def test_explicit_none_output_replaces_previous(self):
        tracker = RunTracker("run-1")
        tracker.set_status("n", NodeStatus.COMPLETED, last_output="first pass")
        tracker.set_status("n", NodeStatus.COMPLETED, last_output=None)
        assert tracker.node_states["n"].last_output is None

    def test_log_entries_are_ordered(self):
        tracker = RunTracker("run-1")
        tracker.log(LogLevel.INFO, "first")
        tracker.log(LogLevel.WARN, "second", node_id="n", node_label="Node")

        logs = tracker.logs
        assert [entry.id for entry in logs] == [1, 2]
        assert logs[1].level == LogLevel.WARN
        assert logs[1].node_label == "Node"

    def test_listeners_receive_events(self):
        events = []
        tracker = RunTracker("run-1", listeners=[events.append])

        tracker.set_status("n", NodeStatus.RUNNING)
        tracker.set_output("n", "abc")
        tracker.log(LogLevel.SUCCESS, "done", node_id="n")

        assert [e.event_type for e in events] == ["node_status", "node_output", "log"]
        assert all(e.run_id == "run-1" for e in events)
        assert events[2].data["message"] == "done"
        assert events[2].data["level"] == "success"

    def test_failing_listener_does_not_propagate(self):
        received = []

        def broken(event):
            raise RuntimeError("listener down")

        tracker = RunTracker("run-1", listeners=[broken, received.append])
        tracker.log(LogLevel.INFO, "still delivered")

        assert len(received) == 1
        assert len(tracker.logs) == 1

    def test_remove_listener(self):
        received = []
        tracker = RunTracker("run-1", listeners=[received.append])
        tracker.remove_listener(received.append)
        tracker.log(LogLevel.INFO, "nobody listens")
        assert received == []
