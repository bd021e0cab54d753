"""FastAPI REST and WebSocket endpoints."""

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, Field

from ..core.exceptions import APIError, WorkflowEngineError, create_error_response, http_status_for
from ..core.execution_engine import RunManager
from ..core.graph_manager import GraphManager
from ..core.human_input import PendingInput, PendingInputRegistry
from ..core.logging import get_logger
from ..core.websocket_manager import WebSocketManager
from ..models.core import (
    GraphDefinition,
    GraphSummary,
    LogEntry,
    RunResult,
    RunSummary,
    ValidationResult,
)


logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1", tags=["nodeflow"])

_graph_manager: Optional[GraphManager] = None
_run_manager: Optional[RunManager] = None
_pending_inputs: Optional[PendingInputRegistry] = None
_websocket_manager: Optional[WebSocketManager] = None


def init_dependencies(
    graph_manager: GraphManager,
    run_manager: RunManager,
    pending_inputs: PendingInputRegistry,
    websocket_manager: Optional[WebSocketManager] = None
):
    """Initialize the global dependencies."""
    global _graph_manager, _run_manager, _pending_inputs, _websocket_manager
    _graph_manager = graph_manager
    _run_manager = run_manager
    _pending_inputs = pending_inputs
    _websocket_manager = websocket_manager


def get_graph_manager() -> GraphManager:
    if _graph_manager is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Graph manager not initialized")
    return _graph_manager


def get_run_manager() -> RunManager:
    if _run_manager is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Run manager not initialized")
    return _run_manager


def get_pending_inputs() -> PendingInputRegistry:
    if _pending_inputs is None:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Input registry not initialized")
    return _pending_inputs


def _http_error(error: WorkflowEngineError) -> HTTPException:
    logger.warning(f"Engine error: {error.error_code}: {error.message}")
    return HTTPException(status_code=http_status_for(error), detail=create_error_response(error))


# Request/Response models

class GraphRequest(BaseModel):
    """Request body carrying an editor graph snapshot."""
    graph: GraphDefinition = Field(..., description="Graph snapshot")


class CreateGraphResponse(BaseModel):
    graph_id: str = Field(..., description="Unique identifier of the created graph")
    message: str = Field(..., description="Success message")
    validation_warnings: List[str] = Field(default_factory=list, description="Validation warnings")


class GraphDetailResponse(BaseModel):
    summary: GraphSummary
    graph: GraphDefinition


class RunResponse(BaseModel):
    run_id: str = Field(..., description="Unique identifier for the run")
    status: str = Field(..., description="Initial run status")
    message: str = Field(..., description="Success message")


class CancelRunResponse(BaseModel):
    run_id: str
    cancelled: bool
    message: str


class ProvideInputRequest(BaseModel):
    value: str = Field(..., description="Answer for the waiting input node")


class MessageResponse(BaseModel):
    message: str


# Graphs

@router.post(
    "/graphs",
    response_model=CreateGraphResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Store a graph snapshot"
)
async def create_graph(
    request: GraphRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> CreateGraphResponse:
    try:
        validation_result = graph_manager.validate_graph(request.graph)
        graph_id = graph_manager.create_graph(request.graph)
    except WorkflowEngineError as e:
        raise _http_error(e)

    return CreateGraphResponse(
        graph_id=graph_id,
        message=f"Graph '{request.graph.name}' created successfully",
        validation_warnings=validation_result.warnings
    )


@router.get("/graphs", response_model=List[GraphSummary], summary="List stored graphs")
async def list_graphs(graph_manager: GraphManager = Depends(get_graph_manager)) -> List[GraphSummary]:
    try:
        return graph_manager.list_graphs()
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/graphs/validate", response_model=ValidationResult, summary="Validate a graph snapshot")
async def validate_graph(
    request: GraphRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> ValidationResult:
    return graph_manager.validate_graph(request.graph)


@router.get("/graphs/{graph_id}", response_model=GraphDetailResponse, summary="Get a stored graph")
async def get_graph(
    graph_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> GraphDetailResponse:
    try:
        return GraphDetailResponse(
            summary=graph_manager.get_summary(graph_id),
            graph=graph_manager.get_graph(graph_id),
        )
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.put("/graphs/{graph_id}", response_model=GraphSummary, summary="Replace a stored graph")
async def update_graph(
    graph_id: str,
    request: GraphRequest,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> GraphSummary:
    try:
        return graph_manager.update_graph(graph_id, request.graph)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.delete("/graphs/{graph_id}", response_model=MessageResponse, summary="Delete a stored graph")
async def delete_graph(
    graph_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager)
) -> MessageResponse:
    try:
        deleted = graph_manager.delete_graph(graph_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    if not deleted:
        raise _http_error(APIError(
            f"Graph with ID '{graph_id}' not found",
            status_code=status.HTTP_404_NOT_FOUND,
            endpoint="delete_graph"
        ))
    return MessageResponse(message=f"Graph {graph_id} deleted")


@router.post(
    "/graphs/{graph_id}/run",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run a stored graph"
)
async def run_stored_graph(
    graph_id: str,
    graph_manager: GraphManager = Depends(get_graph_manager),
    run_manager: RunManager = Depends(get_run_manager)
) -> RunResponse:
    try:
        graph = graph_manager.get_graph(graph_id)
        run_id = await run_manager.start_run(graph, graph_id=graph_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    return RunResponse(run_id=run_id, status="running", message=f"Run started for graph {graph_id}")


# Runs

@router.post(
    "/runs",
    response_model=RunResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Run an inline graph snapshot"
)
async def create_run(
    request: GraphRequest,
    run_manager: RunManager = Depends(get_run_manager)
) -> RunResponse:
    try:
        run_id = await run_manager.start_run(request.graph)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return RunResponse(run_id=run_id, status="running", message="Run started")


@router.get("/runs", response_model=List[RunSummary], summary="List recent runs")
async def list_runs(
    limit: int = Query(50, ge=1, le=500),
    run_manager: RunManager = Depends(get_run_manager)
) -> List[RunSummary]:
    try:
        return run_manager.list_runs(limit=limit)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/runs/{run_id}", response_model=RunResult, summary="Get live or final run state")
async def get_run(run_id: str, run_manager: RunManager = Depends(get_run_manager)) -> RunResult:
    try:
        return run_manager.get_run(run_id)
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.get("/runs/{run_id}/logs", response_model=List[LogEntry], summary="Get the ordered run log")
async def get_run_logs(run_id: str, run_manager: RunManager = Depends(get_run_manager)) -> List[LogEntry]:
    try:
        return run_manager.get_run(run_id).logs
    except WorkflowEngineError as e:
        raise _http_error(e)


@router.post("/runs/{run_id}/cancel", response_model=CancelRunResponse, summary="Cancel a run")
async def cancel_run(run_id: str, run_manager: RunManager = Depends(get_run_manager)) -> CancelRunResponse:
    try:
        cancelled = run_manager.cancel_run(run_id)
    except WorkflowEngineError as e:
        raise _http_error(e)

    message = "Cancellation requested" if cancelled else "Run already finished"
    return CancelRunResponse(run_id=run_id, cancelled=cancelled, message=message)


@router.get("/runs/{run_id}/inputs", response_model=List[PendingInput], summary="List input requests")
async def list_pending_inputs(
    run_id: str,
    pending_inputs: PendingInputRegistry = Depends(get_pending_inputs)
) -> List[PendingInput]:
    return pending_inputs.list_pending(run_id)


@router.post("/runs/{run_id}/inputs/{node_id}", response_model=MessageResponse, summary="Answer an input request")
async def provide_input(
    run_id: str,
    node_id: str,
    request: ProvideInputRequest,
    pending_inputs: PendingInputRegistry = Depends(get_pending_inputs)
) -> MessageResponse:
    try:
        pending_inputs.provide(run_id, node_id, request.value)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return MessageResponse(message=f"Input delivered to node {node_id}")


@router.post(
    "/runs/{run_id}/inputs/{node_id}/decline",
    response_model=MessageResponse,
    summary="Decline an input request"
)
async def decline_input(
    run_id: str,
    node_id: str,
    pending_inputs: PendingInputRegistry = Depends(get_pending_inputs)
) -> MessageResponse:
    try:
        pending_inputs.decline(run_id, node_id)
    except WorkflowEngineError as e:
        raise _http_error(e)
    return MessageResponse(message=f"Input declined for node {node_id}")


# Monitoring

def _event(event_type: str, **fields) -> Dict[str, Any]:
    return {"event_type": event_type, "timestamp": datetime.now(timezone.utc).isoformat(), **fields}


@router.websocket("/ws/monitor")
async def websocket_monitor(websocket: WebSocket):
    """
    Stream run events to the editor.

    Client messages: ``{"action": "subscribe" | "unsubscribe" | "ping" | "get_status", "run_id": "..."}``.
    Server messages carry ``event_type``, ``run_id``, ``timestamp`` and ``data``;
    run events are ``log``, ``node_status``, ``node_output``, ``run_started``,
    ``run_finished`` and ``run_summary``. A ``run_snapshot`` with the run's
    current state follows each subscription to a known run.
    """
    if _websocket_manager is None:
        await websocket.close(code=1011, reason="WebSocket monitoring not available")
        return

    connection_id = await _websocket_manager.connect(websocket)
    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                await _websocket_manager.send_to_connection(
                    connection_id, _event("error", message="Invalid JSON message format")
                )
                continue

            action = message.get("action") if isinstance(message, dict) else None
            run_id = message.get("run_id") if isinstance(message, dict) else None

            if action == "subscribe" and run_id:
                if not await _websocket_manager.subscribe_to_run(connection_id, run_id):
                    await _websocket_manager.send_to_connection(
                        connection_id, _event("error", message=f"Failed to subscribe to run {run_id}")
                    )
            elif action == "unsubscribe" and run_id:
                await _websocket_manager.unsubscribe_from_run(connection_id, run_id)
                await _websocket_manager.send_to_connection(connection_id, _event("unsubscribed", run_id=run_id))
            elif action == "ping":
                await _websocket_manager.send_to_connection(connection_id, _event("pong"))
            elif action == "get_status":
                await _websocket_manager.send_to_connection(
                    connection_id, _event("status_info", data=_websocket_manager.get_connection_info())
                )
            else:
                await _websocket_manager.send_to_connection(
                    connection_id, _event("error", message=f"Unknown action: {action}")
                )
    except WebSocketDisconnect:
        logger.info(f"WebSocket client disconnected: {connection_id}")
    finally:
        await _websocket_manager.disconnect(connection_id)
