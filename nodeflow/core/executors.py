"""Per-node-type executors and the registry the scheduler dispatches through."""

import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..models.core import LogLevel, NodeDefinition, NodeType, stringify
from .context import ExecutionContext
from .evaluator import Evaluator, ScriptConsole, SnippetEvaluator
from .exceptions import (
    ErrorCategory,
    HumanInputDeclinedError,
    NodeConfigurationError,
    NodeExecutionError,
    ProviderConfigurationError,
    ScriptError,
)
from .human_input import HumanInputChannel, NoHumanInputChannel
from .logging import get_logger
from .providers import ModelResolver
from .tracker import RunTracker


logger = get_logger(__name__)

INPUT_TOKEN = "{{input}}"
DEFAULT_TRIGGER_LABEL = "Start"
DELAY_MARKER = "Delay complete"
DEFAULT_DELAY_MS = 1000
DEFAULT_IMAGE_SIZE = "1024x1024"

ImageGenerator = Callable[[str, str, Optional[str]], Awaitable[str]]

_CONSOLE_LEVELS = {"info": LogLevel.INFO, "warn": LogLevel.WARN, "error": LogLevel.ERROR}


class Collaborators:
    """External capabilities the executors call out to."""

    def __init__(
        self,
        model_resolver: Optional[ModelResolver] = None,
        image_generator: Optional[ImageGenerator] = None,
        human_input: Optional[HumanInputChannel] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        evaluator: Optional[Evaluator] = None,
        default_node_delay_ms: int = 500,
        request_timeout: float = 30.0
    ):
        self.model_resolver = model_resolver
        self.image_generator = image_generator
        self.human_input = human_input or NoHumanInputChannel()
        self.http_client = http_client
        self.evaluator = evaluator or SnippetEvaluator()
        self.default_node_delay_ms = default_node_delay_ms
        self.request_timeout = request_timeout


class NodeInvocation:
    """Everything one executor call may use."""

    def __init__(
        self,
        run_id: str,
        node: NodeDefinition,
        input: Any,
        context: ExecutionContext,
        tracker: RunTracker,
        collaborators: Collaborators,
        on_final_output: Optional[Callable[[Any], None]] = None
    ):
        self.run_id = run_id
        self.node = node
        self.input = input
        self.context = context
        self.tracker = tracker
        self.collaborators = collaborators
        self._on_final_output = on_final_output

    @property
    def data(self) -> Dict[str, Any]:
        return self.node.data

    def log(self, level: LogLevel, message: str, details: Optional[Any] = None):
        self.tracker.log(level, message, node_id=self.node.id, node_label=self.node.label, details=details)

    def set_final_output(self, value: Any):
        if self._on_final_output is not None:
            self._on_final_output(value)


NodeExecutor = Callable[[NodeInvocation], Awaitable[Any]]


async def execute_trigger(invocation: NodeInvocation) -> Any:
    return invocation.data.get("label") or DEFAULT_TRIGGER_LABEL


async def execute_agent(invocation: NodeInvocation) -> Any:
    """Stream a completion for the templated prompt and return the full text."""
    resolver = invocation.collaborators.model_resolver
    model_id = invocation.data.get("model")
    if resolver is None:
        raise ProviderConfigurationError("No active provider configured", model_id=model_id)

    model = resolver.resolve(model_id)

    text_input = stringify(invocation.input)
    template = invocation.data.get("userPromptTemplate")
    prompt = template.replace(INPUT_TOKEN, text_input) if template else text_input
    role = invocation.data.get("role") or ""

    invocation.log(LogLevel.INFO, f"Calling model {model.model_id}")
    text = ""
    async for chunk in model.stream(prompt, role):
        text += chunk
        invocation.tracker.set_output(invocation.node.id, text)
    return text


async def execute_script(invocation: NodeInvocation) -> Any:
    """Run the node's code; failures become an ``Error: ...`` string result."""
    node = invocation.node

    def sink(level: str, message: str):
        invocation.log(_CONSOLE_LEVELS.get(level, LogLevel.INFO), message)

    console = ScriptConsole(sink)
    try:
        return invocation.collaborators.evaluator.run_script(
            invocation.data.get("code") or "",
            invocation.input,
            invocation.context.snapshot(),
            console,
        )
    except ScriptError as e:
        logger.debug(f"Script on node {node.id} raised: {e.message}")
        invocation.log(LogLevel.WARN, f"Script raised an error: {e.message}")
        return f"Error: {e.message}"


async def execute_condition(invocation: NodeInvocation) -> Any:
    expression = (invocation.data.get("expression") or "").strip()
    if not expression:
        raise NodeConfigurationError("Condition node has no expression", field="expression", node_id=invocation.node.id)

    result = invocation.collaborators.evaluator.evaluate_condition(expression, invocation.input)
    invocation.log(LogLevel.INFO, f"Condition evaluated to {'true' if result else 'false'}")
    return result


def _parse_headers(raw: Any) -> Dict[str, str]:
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            raise NodeConfigurationError("Request headers are not valid JSON", field="headers")
    if not isinstance(raw, dict):
        raise NodeConfigurationError("Request headers must be an object", field="headers")
    return {str(key): str(value) for key, value in raw.items()}


def _parse_body(raw: Any) -> Optional[Any]:
    if raw is None:
        return None
    if isinstance(raw, str):
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise NodeConfigurationError(f"Request body is not valid JSON: {e.msg}", field="body")
    return raw


async def execute_request(invocation: NodeInvocation) -> Any:
    """
    Issue the configured HTTP request and return the parsed JSON response.

    Raises:
        NodeConfigurationError: If the URL is missing or the body is not JSON
        NodeExecutionError: On transport failure or a non-JSON response
    """
    data = invocation.data
    url = (data.get("url") or "").strip()
    if not url:
        raise NodeConfigurationError("Request node has no URL configured", field="url", node_id=invocation.node.id)

    method = (data.get("method") or "GET").upper()
    headers = {"Content-Type": "application/json"}
    headers.update(_parse_headers(data.get("headers")))
    body = _parse_body(data.get("body")) if method != "GET" else None

    invocation.log(LogLevel.INFO, f"{method} {url}")

    client = invocation.collaborators.http_client
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=invocation.collaborators.request_timeout) as own_client:
                response = await _send(own_client, method, url, headers, body)
        else:
            response = await _send(client, method, url, headers, body)
    except httpx.HTTPError as e:
        raise NodeExecutionError(f"Request failed: {e}", node_id=invocation.node.id, category=ErrorCategory.NETWORK)

    if response.status_code >= 400:
        invocation.log(LogLevel.WARN, f"HTTP {response.status_code} from {url}")

    try:
        return response.json()
    except ValueError:
        raise NodeExecutionError(
            f"Response from {url} is not valid JSON",
            node_id=invocation.node.id,
            details={"status_code": response.status_code, "body": response.text[:200]},
        )


async def _send(client: httpx.AsyncClient, method: str, url: str, headers: Dict[str, str], body: Any) -> httpx.Response:
    content = json.dumps(body) if body is not None else None
    return await client.request(method, url, headers=headers, content=content)


async def execute_delay(invocation: NodeInvocation) -> Any:
    raw = invocation.data.get("duration", DEFAULT_DELAY_MS)
    try:
        duration_ms = float(raw) if raw not in (None, "") else DEFAULT_DELAY_MS
    except (TypeError, ValueError):
        raise NodeConfigurationError(f"Invalid delay duration: {raw!r}", field="duration", node_id=invocation.node.id)

    await asyncio.sleep(max(duration_ms, 0) / 1000)
    return DELAY_MARKER


async def execute_input(invocation: NodeInvocation) -> Any:
    prompt = invocation.data.get("prompt") or invocation.data.get("label") or "Enter input"
    value = await invocation.collaborators.human_input.request(invocation.run_id, invocation.node.id, prompt)
    if value is None:
        raise HumanInputDeclinedError(node_id=invocation.node.id)
    return value


async def execute_image_gen(invocation: NodeInvocation) -> Any:
    prompt = (invocation.data.get("prompt") or "").strip()
    if not prompt:
        raise NodeConfigurationError("Image generation prompt is missing", field="prompt", node_id=invocation.node.id)
    size = invocation.data.get("size") or DEFAULT_IMAGE_SIZE
    model_id = invocation.data.get("model")

    generator = invocation.collaborators.image_generator
    if generator is None:
        resolver = invocation.collaborators.model_resolver
        if resolver is None:
            raise ProviderConfigurationError("No active provider configured for image generation", model_id=model_id)
        generator = resolver.generate_image

    invocation.log(LogLevel.INFO, f"Generating image ({size})")
    return await generator(prompt, size, model_id)


async def execute_output(invocation: NodeInvocation) -> Any:
    invocation.set_final_output(invocation.input)
    return invocation.input


async def execute_default(invocation: NodeInvocation) -> Any:
    await asyncio.sleep(invocation.collaborators.default_node_delay_ms / 1000)
    return invocation.node.label


DEFAULT_EXECUTORS: Dict[NodeType, NodeExecutor] = {
    NodeType.TRIGGER: execute_trigger,
    NodeType.AGENT: execute_agent,
    NodeType.SCRIPT: execute_script,
    NodeType.CONDITION: execute_condition,
    NodeType.REQUEST: execute_request,
    NodeType.DELAY: execute_delay,
    NodeType.INPUT: execute_input,
    NodeType.IMAGE_GEN: execute_image_gen,
    NodeType.OUTPUT: execute_output,
    NodeType.DEFAULT: execute_default,
}


class ExecutorRegistry:
    """Maps node types to executors; unknown types fall back to ``default``."""

    def __init__(self, executors: Optional[Dict[NodeType, NodeExecutor]] = None):
        self._executors: Dict[NodeType, NodeExecutor] = dict(DEFAULT_EXECUTORS)
        if executors:
            self._executors.update(executors)

    def register(self, node_type: NodeType, executor: NodeExecutor):
        """
        Register or replace the executor for a node type.

        Args:
            node_type: Node type to handle
            executor: Async callable receiving a NodeInvocation

        Raises:
            ValueError: If executor is not callable
        """
        if not callable(executor):
            raise ValueError(f"Executor for {node_type} must be callable")
        self._executors[NodeType(node_type)] = executor
        logger.debug(f"Registered executor for node type {NodeType(node_type).value}")

    def get(self, node_type: NodeType) -> NodeExecutor:
        return self._executors.get(node_type, self._executors[NodeType.DEFAULT])
