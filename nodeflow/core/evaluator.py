"""Evaluation of script bodies and condition expressions authored on nodes."""

import json
import re
import textwrap
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .exceptions import ScriptError
from .logging import get_logger


logger = get_logger(__name__)

_SCRIPT_FUNCTION = "__nodeflow_script__"

SAFE_BUILTINS: Dict[str, Any] = {
    "abs": abs, "all": all, "any": any, "bool": bool, "dict": dict,
    "enumerate": enumerate, "filter": filter, "float": float, "format": format,
    "int": int, "isinstance": isinstance, "len": len, "list": list, "map": map,
    "max": max, "min": min, "range": range, "repr": repr, "reversed": reversed,
    "round": round, "set": set, "sorted": sorted, "str": str, "sum": sum,
    "tuple": tuple, "zip": zip,
    "Exception": Exception, "ValueError": ValueError, "TypeError": TypeError,
    "KeyError": KeyError, "IndexError": IndexError,
    "True": True, "False": False, "None": None,
}

# Editor-authored snippets often use JSON literals.
_LITERAL_ALIASES = {"true": True, "false": False, "null": None, "undefined": None}

_STRING_LITERAL = re.compile(r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')""")

# Order matters: strict (in)equality before the bare negation.
_JS_OPERATORS = [
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\.includes\("), ".__contains__("),
]


def translate_editor_expression(expression: str) -> str:
    """
    Rewrite the JavaScript operators the editor's condition fields use.

    ``===``/``!==`` become ``==``/``!=``, ``&&``/``||``/``!`` become
    ``and``/``or``/``not`` and ``x.includes(y)`` becomes a containment check.
    String literals are left untouched. Plain Python expressions pass through
    unchanged.
    """
    parts = _STRING_LITERAL.split(expression)
    for index in range(0, len(parts), 2):
        code = parts[index]
        for pattern, replacement in _JS_OPERATORS:
            code = pattern.sub(replacement, code)
        parts[index] = code
    return "".join(parts).strip()


class ScriptConsole:
    """``console`` binding for scripts; every call lands in the run log."""

    def __init__(self, sink: Optional[Callable[[str, str], None]] = None):
        self._sink = sink
        self.lines = []

    def _write(self, level: str, *args):
        message = " ".join(a if isinstance(a, str) else json.dumps(a, default=str) for a in args)
        self.lines.append(message)
        if self._sink is not None:
            self._sink(level, message)

    def log(self, *args):
        self._write("info", *args)

    info = log

    def warn(self, *args):
        self._write("warn", *args)

    warning = warn

    def error(self, *args):
        self._write("error", *args)


class Evaluator(Protocol):
    """Capability used by script and condition nodes to run authored code."""

    def run_script(self, source: str, input: Any, context: Mapping[str, Any], console: ScriptConsole) -> Any:
        ...

    def evaluate_condition(self, expression: str, input: Any) -> bool:
        ...


class SnippetEvaluator:
    """
    Runs snippets as Python with a reduced builtins table.

    Scripts are compiled as the body of a function taking ``input``,
    ``context`` and ``console``; ``print`` is routed to ``console.log``.
    Conditions are single expressions with ``input`` bound.

    The reduced builtins keep ``import``, ``open``, ``eval`` and friends out of
    reach of ordinary snippets but this is not an isolation boundary. Swap in
    a different Evaluator when graphs come from untrusted authors.
    """

    def __init__(self, extra_globals: Optional[Dict[str, Any]] = None):
        self.extra_globals = dict(extra_globals or {})

    def _globals(self, console: Optional[ScriptConsole] = None) -> Dict[str, Any]:
        builtins = dict(SAFE_BUILTINS)
        if console is not None:
            builtins["print"] = console.log
        namespace = {"__builtins__": builtins, "json": json}
        namespace.update(_LITERAL_ALIASES)
        namespace.update(self.extra_globals)
        return namespace

    def run_script(self, source: str, input: Any, context: Mapping[str, Any], console: ScriptConsole) -> Any:
        """
        Execute a script body and return its ``return`` value.

        Args:
            source: Function body authored on the node
            input: Resolved input of the node
            context: Read-only view of the run's outputs so far
            console: Console the script logs through

        Returns:
            Whatever the body returns, None when it falls off the end

        Raises:
            ScriptError: If the body does not compile or raises
        """
        if not source or not source.strip():
            return None

        body = textwrap.indent(textwrap.dedent(source).strip("\n"), "    ")
        wrapped = f"def {_SCRIPT_FUNCTION}(input, context, console):\n{body}\n    pass\n"
        namespace = self._globals(console)

        try:
            code = compile(wrapped, "<script>", "exec")
        except SyntaxError as e:
            raise ScriptError(f"Syntax error: {e.msg} (line {e.lineno})", source=source)

        try:
            exec(code, namespace)
            return namespace[_SCRIPT_FUNCTION](input, context, console)
        except ScriptError:
            raise
        except Exception as e:
            raise ScriptError(f"{type(e).__name__}: {e}", source=source)

    def evaluate_condition(self, expression: str, input: Any) -> bool:
        """
        Evaluate a boolean expression against the node's input.

        Expressions may be written in Python or with the editor's JavaScript
        operators (``input === "Start" && !input.includes("x")``).

        Raises:
            ScriptError: If the expression does not compile or raises
        """
        try:
            code = compile(translate_editor_expression(expression), "<condition>", "eval")
        except SyntaxError as e:
            raise ScriptError(f"Invalid condition expression: {e.msg}", source=expression)

        try:
            result = eval(code, self._globals(), {"input": input})
        except Exception as e:
            raise ScriptError(f"Condition evaluation failed: {type(e).__name__}: {e}", source=expression)

        logger.debug(f"Condition '{expression}' evaluated to {result!r}")
        return bool(result)
