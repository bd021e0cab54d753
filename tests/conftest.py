"""Pytest configuration and fixtures."""

from types import SimpleNamespace
from typing import Any, Dict, List, Optional

import pytest

from nodeflow.config import get_testing_config, reset_config
from nodeflow.core.executors import Collaborators
from nodeflow.models.core import GraphDefinition
from nodeflow.storage.database import init_database, reset_database_engine


@pytest.fixture
def test_config():
    """Configuration used by tests: in-memory database, no node delays."""
    reset_config()
    return get_testing_config()


@pytest.fixture
def session_factory():
    """Fresh in-memory database for every test."""
    reset_database_engine()
    factory = init_database("sqlite:///:memory:")
    yield factory
    reset_database_engine()


@pytest.fixture
def collaborators():
    """Collaborators without providers and with instant default nodes."""
    return Collaborators(default_node_delay_ms=0)


def node(node_id: str, node_type: str, **data) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "position": {"x": 0, "y": 0}, "data": data}


def edge(source: str, target: str, handle: Optional[str] = None) -> Dict[str, Any]:
    payload = {"id": f"{source}-{target}", "source": source, "target": target}
    if handle is not None:
        payload["sourceHandle"] = handle
    return payload


def build_graph(nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]], name: str = "Test graph") -> GraphDefinition:
    return GraphDefinition(name=name, nodes=nodes, edges=edges)


@pytest.fixture
def graph_builder():
    """Access to the node/edge/graph helpers from test functions."""
    return SimpleNamespace(node=node, edge=edge, graph=build_graph)
