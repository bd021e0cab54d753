"""SQLAlchemy models for stored graphs and run history."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class GraphModel(Base):
    """Editor graph snapshot."""
    __tablename__ = "graphs"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, default="")
    definition = Column(JSON, nullable=False)
    node_count = Column(Integer, nullable=False, default=0)
    edge_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class RunModel(Base):
    """A finished run."""
    __tablename__ = "runs"

    id = Column(String, primary_key=True)
    graph_id = Column(String, ForeignKey("graphs.id", ondelete="SET NULL"), nullable=True)
    graph_snapshot = Column(JSON)
    status = Column(String, nullable=False)
    steps = Column(Integer, nullable=False, default=0)
    execution_order = Column(JSON)
    context = Column(JSON)
    node_states = Column(JSON)
    final_output = Column(JSON)
    started_at = Column(DateTime, default=_utcnow)
    completed_at = Column(DateTime)

    logs = relationship(
        "LogEntryModel",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="LogEntryModel.sequence",
    )


class LogEntryModel(Base):
    """One entry of a run's ordered log."""
    __tablename__ = "log_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("runs.id"), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    timestamp = Column(DateTime, default=_utcnow)
    node_id = Column(String)
    node_label = Column(String)
    level = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSON)

    run = relationship("RunModel", back_populates="logs")
