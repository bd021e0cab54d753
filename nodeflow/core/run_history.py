"""Persistent history of finished runs."""

from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import GraphDefinition, LogEntry, NodeState, RunResult, RunStatusEnum, RunSummary
from ..storage.database import get_session_factory
from ..storage.models import LogEntryModel, RunModel
from .exceptions import StorageError
from .logging import get_logger


logger = get_logger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RunHistory:
    """Stores finished RunResults with their logs."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        factory = self._session_factory or get_session_factory()
        db = factory()
        try:
            yield db
        finally:
            db.close()

    def save_run(self, result: RunResult, graph_id: Optional[str] = None,
                 graph: Optional[GraphDefinition] = None) -> None:
        """
        Persist a finished run and its log entries.

        Args:
            result: Final result of the run
            graph_id: Stored graph the run was started from, if any
            graph: Snapshot that was executed

        Raises:
            StorageError: If storage operation fails
        """
        try:
            with self._session() as db:
                run_model = RunModel(
                    id=result.run_id,
                    graph_id=graph_id,
                    graph_snapshot=graph.model_dump(mode="json", by_alias=True) if graph else None,
                    status=result.status.value,
                    steps=result.steps,
                    execution_order=result.execution_order,
                    context=result.context,
                    node_states={k: v.model_dump(mode="json") for k, v in result.node_states.items()},
                    final_output=result.final_output,
                    started_at=result.started_at,
                    completed_at=result.completed_at,
                )
                for entry in result.logs:
                    run_model.logs.append(LogEntryModel(
                        sequence=entry.id,
                        timestamp=entry.timestamp,
                        node_id=entry.node_id,
                        node_label=entry.node_label,
                        level=entry.level.value,
                        message=entry.message,
                        details=entry.details,
                    ))
                db.add(run_model)
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error while saving run {result.run_id}: {str(e)}")
            raise StorageError(f"Failed to save run: {str(e)}", operation="save_run", table="runs")

        logger.debug(f"Saved run {result.run_id} with {len(result.logs)} log entries")

    def get_run(self, run_id: str) -> Optional[RunResult]:
        try:
            with self._session() as db:
                run_model = db.query(RunModel).filter(RunModel.id == run_id).first()
                if run_model is None:
                    return None
                return self._to_result(run_model)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load run: {str(e)}", operation="get_run", table="runs")

    def get_logs(self, run_id: str) -> List[LogEntry]:
        result = self.get_run(run_id)
        return result.logs if result else []

    def list_runs(self, graph_id: Optional[str] = None, limit: int = 50) -> List[RunSummary]:
        try:
            with self._session() as db:
                query = db.query(RunModel)
                if graph_id:
                    query = query.filter(RunModel.graph_id == graph_id)
                run_models = query.order_by(RunModel.started_at.desc()).limit(limit).all()
                return [
                    RunSummary(
                        run_id=model.id,
                        graph_id=model.graph_id,
                        status=RunStatusEnum(model.status),
                        steps=model.steps,
                        final_output=model.final_output,
                        started_at=_as_utc(model.started_at),
                        completed_at=_as_utc(model.completed_at),
                    )
                    for model in run_models
                ]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list runs: {str(e)}", operation="list_runs", table="runs")

    def cleanup_runs(self, max_age_hours: int = 24 * 7) -> int:
        """Delete runs older than ``max_age_hours`` and return how many were removed."""
        cutoff = datetime.now(timezone.utc) - timedelta(hours=max_age_hours)
        try:
            with self._session() as db:
                old_runs = db.query(RunModel).filter(RunModel.started_at < cutoff).all()
                for run_model in old_runs:
                    db.delete(run_model)
                db.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to clean up runs: {str(e)}", operation="cleanup_runs", table="runs")

        if old_runs:
            logger.info(f"Cleaned up {len(old_runs)} runs older than {max_age_hours}h")
        return len(old_runs)

    @staticmethod
    def _to_result(model: RunModel) -> RunResult:
        return RunResult(
            run_id=model.id,
            status=RunStatusEnum(model.status),
            steps=model.steps,
            execution_order=model.execution_order or [],
            context=model.context or {},
            node_states={k: NodeState(**v) for k, v in (model.node_states or {}).items()},
            logs=[
                LogEntry(
                    id=entry.sequence,
                    timestamp=_as_utc(entry.timestamp),
                    node_id=entry.node_id,
                    node_label=entry.node_label,
                    level=entry.level,
                    message=entry.message,
                    details=entry.details,
                )
                for entry in model.logs
            ],
            final_output=model.final_output,
            started_at=_as_utc(model.started_at),
            completed_at=_as_utc(model.completed_at),
        )
