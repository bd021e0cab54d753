"""Graph Manager for stored editor graph snapshots."""

import uuid
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models.core import GraphDefinition, GraphSummary, ValidationResult
from ..storage.database import get_session_factory
from ..storage.models import GraphModel
from .exceptions import ErrorCategory, GraphValidationError, StorageError
from .logging import get_logger


logger = get_logger(__name__)


class GraphManager:
    """Stores, lists and validates graph snapshots authored in the editor.

    The execution engine never reads from here; callers load a snapshot and
    hand it to the engine.
    """

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

    def validate_graph(self, graph_definition: GraphDefinition) -> ValidationResult:
        """
        Validate a graph snapshot.

        Structural problems are reported as warnings only; the editor's shape
        is accepted verbatim and the scheduler copes with all of them.
        """
        return graph_definition.validate_structure()

    def create_graph(self, graph_definition: GraphDefinition) -> str:
        """
        Store a new graph and return its unique identifier.

        Args:
            graph_definition: The graph snapshot to store

        Returns:
            str: Unique graph identifier

        Raises:
            GraphValidationError: If a graph with the same name exists
            StorageError: If storage operation fails
        """
        logger.info(f"Creating new graph: {graph_definition.name}")

        validation_result = self.validate_graph(graph_definition)
        if validation_result.warnings:
            logger.warning(f"Graph validation warnings: {'; '.join(validation_result.warnings)}")

        graph_id = str(uuid.uuid4())
        try:
            with self._session() as db:
                self._ensure_unique_name(db, graph_definition.name)
                db.add(GraphModel(
                    id=graph_id,
                    name=graph_definition.name,
                    description=graph_definition.description,
                    definition=graph_definition.model_dump(mode="json", by_alias=True),
                    node_count=len(graph_definition.nodes),
                    edge_count=len(graph_definition.edges),
                ))
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error while creating graph: {str(e)}")
            raise StorageError(f"Failed to store graph: {str(e)}", operation="create_graph", table="graphs")

        logger.info(f"Created graph '{graph_definition.name}' with ID: {graph_id}")
        return graph_id

    def get_graph(self, graph_id: str) -> GraphDefinition:
        """
        Retrieve a graph snapshot by its ID.

        Raises:
            StorageError: If the graph does not exist or storage fails
        """
        logger.debug(f"Retrieving graph with ID: {graph_id}")
        try:
            with self._session() as db:
                graph_model = self._require(db, graph_id)
                return GraphDefinition(**graph_model.definition)
        except SQLAlchemyError as e:
            logger.error(f"Database error while retrieving graph: {str(e)}")
            raise StorageError(f"Failed to retrieve graph: {str(e)}", operation="get_graph", table="graphs")

    def get_summary(self, graph_id: str) -> GraphSummary:
        try:
            with self._session() as db:
                return self._to_summary(self._require(db, graph_id))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to retrieve graph: {str(e)}", operation="get_summary", table="graphs")

    def update_graph(self, graph_id: str, graph_definition: GraphDefinition) -> GraphSummary:
        """
        Replace a stored graph with a new snapshot.

        Args:
            graph_id: The unique identifier of the graph
            graph_definition: The new snapshot

        Returns:
            GraphSummary: Summary of the updated graph

        Raises:
            GraphValidationError: If another graph already uses the new name
            StorageError: If the graph does not exist or storage fails
        """
        logger.info(f"Updating graph with ID: {graph_id}")
        try:
            with self._session() as db:
                graph_model = self._require(db, graph_id)
                if graph_model.name != graph_definition.name:
                    self._ensure_unique_name(db, graph_definition.name)

                graph_model.name = graph_definition.name
                graph_model.description = graph_definition.description
                graph_model.definition = graph_definition.model_dump(mode="json", by_alias=True)
                graph_model.node_count = len(graph_definition.nodes)
                graph_model.edge_count = len(graph_definition.edges)
                db.commit()
                db.refresh(graph_model)
                return self._to_summary(graph_model)
        except SQLAlchemyError as e:
            logger.error(f"Database error while updating graph: {str(e)}")
            raise StorageError(f"Failed to update graph: {str(e)}", operation="update_graph", table="graphs")

    def list_graphs(self) -> List[GraphSummary]:
        """
        List all stored graphs with summary information, newest first.

        Raises:
            StorageError: If storage operation fails
        """
        try:
            with self._session() as db:
                graph_models = db.query(GraphModel).order_by(GraphModel.created_at.desc()).all()
                summaries = [self._to_summary(model) for model in graph_models]
        except SQLAlchemyError as e:
            logger.error(f"Database error while listing graphs: {str(e)}")
            raise StorageError(f"Failed to list graphs: {str(e)}", operation="list_graphs", table="graphs")

        logger.debug(f"Retrieved {len(summaries)} graph summaries")
        return summaries

    def delete_graph(self, graph_id: str) -> bool:
        """
        Delete a graph by its ID.

        Returns:
            bool: True if graph was deleted, False if not found

        Raises:
            StorageError: If storage operation fails
        """
        logger.info(f"Deleting graph with ID: {graph_id}")
        try:
            with self._session() as db:
                graph_model = db.query(GraphModel).filter(GraphModel.id == graph_id).first()
                if not graph_model:
                    logger.warning(f"Graph with ID '{graph_id}' not found for deletion")
                    return False
                db.delete(graph_model)
                db.commit()
        except SQLAlchemyError as e:
            logger.error(f"Database error while deleting graph: {str(e)}")
            raise StorageError(f"Failed to delete graph: {str(e)}", operation="delete_graph", table="graphs")

        logger.info(f"Deleted graph with ID: {graph_id}")
        return True

    def _require(self, db: Session, graph_id: str) -> GraphModel:
        graph_model = db.query(GraphModel).filter(GraphModel.id == graph_id).first()
        if not graph_model:
            raise StorageError(
                f"Graph with ID '{graph_id}' not found",
                operation="get_graph",
                category=ErrorCategory.NOT_FOUND,
            )
        return graph_model

    def _ensure_unique_name(self, db: Session, name: str):
        if db.query(GraphModel).filter(GraphModel.name == name).first():
            raise GraphValidationError(
                f"Graph with name '{name}' already exists",
                graph_name=name,
                category=ErrorCategory.CONFLICT,
            )

    @staticmethod
    def _to_summary(model: GraphModel) -> GraphSummary:
        return GraphSummary(
            id=model.id,
            name=model.name,
            description=model.description or "",
            created_at=model.created_at,
            updated_at=model.updated_at,
            node_count=model.node_count,
            edge_count=model.edge_count,
        )
