"""Sandboxed execution of operator-authored scripts.

Scripts are a restricted Python subset. Before running, the source is parsed
and rejected if it imports modules, touches private, dunder or frame
attributes, declares classes, uses global/nonlocal, async constructs or bare
``except``. The globals only expose an allow-list of builtins and the script
bindings:

    getVariable(name)            -> str | None
    setVariable(name, value)
    variables.name               (read and write)
    json.loads / json.dumps

Client mode adds browser-like globals built from the turn's client hints:
``location`` (assigning ``location.href`` or calling ``location.assign()``
requests a redirect), ``navigator``, ``document`` and ``window``.

Each run happens in a short-lived child process that only receives a copy of
the session variables. The parent waits for the time budget and kills the
child when it is exceeded, so long-running builtins (huge ``**`` or deep
comparisons) cannot hold the turn. Inside the child a line tracer stops plain
Python loops at the same deadline.

Variable writes are staged and only returned when the script completes, so a
failing script never leaves partial mutations behind.
"""

import ast
import json
import logging
import multiprocessing
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from multiprocessing.connection import Connection
from types import CodeType, FrameType, SimpleNamespace
from typing import Any

from chatflow.core.errors import ScriptExecutionError, ScriptPolicyError, ScriptTimeoutError
from chatflow.core.messages import ClientContext
from chatflow.core.variables import VariableStore

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = "<chatflow-script>"
MAX_RANGE_LENGTH = 100_000

# Seconds allowed for the child process to come up before the budget starts
STARTUP_TIMEOUT = 10.0
# Slack on top of the budget for the child to report its own deadline
REPORT_GRACE = 0.05

_START_METHOD = (
    "forkserver" if "forkserver" in multiprocessing.get_all_start_methods() else "spawn"
)

_FORBIDDEN_NODES: dict[type[ast.AST], str] = {
    ast.Import: "import statements",
    ast.ImportFrom: "import statements",
    ast.Global: "global declarations",
    ast.Nonlocal: "nonlocal declarations",
    ast.ClassDef: "class definitions",
    ast.AsyncFunctionDef: "async functions",
    ast.Await: "await",
    ast.AsyncFor: "async for",
    ast.AsyncWith: "async with",
    ast.Yield: "generators",
    ast.YieldFrom: "generators",
}

# str.format can reach attributes through "{0.__class__}". Generator, frame,
# traceback and code attributes lead to f_globals and from there to sys.modules.
_FORBIDDEN_ATTRIBUTES = frozenset(
    {
        "format",
        "format_map",
        "mro",
        "gi_frame",
        "gi_code",
        "gi_yieldfrom",
        "gi_suspended",
        "cr_frame",
        "cr_code",
        "cr_await",
        "ag_frame",
        "ag_code",
        "ag_await",
        "f_back",
        "f_builtins",
        "f_code",
        "f_globals",
        "f_locals",
        "f_trace",
        "tb_frame",
        "tb_next",
        "co_code",
        "co_consts",
        "func_code",
        "func_globals",
        "with_traceback",
    }
)


class ScriptMode(str, Enum):
    CLIENT = "client"
    SERVER = "server"


@dataclass(frozen=True)
class VariableMutation:
    name: str
    value: str


@dataclass
class ScriptResult:
    """Outcome of a successful script run."""

    redirect_url: str | None = None
    mutations: list[VariableMutation] = field(default_factory=list)
    value: Any = None
    output: list[str] = field(default_factory=list)

    def apply(self, store: VariableStore) -> None:
        for mutation in self.mutations:
            store.set(mutation.name, mutation.value)


class _Deadline(BaseException):
    """Raised by the tracer; not catchable by ``except Exception`` in scripts."""


class _PolicyVisitor(ast.NodeVisitor):
    def generic_visit(self, node: ast.AST) -> None:
        reason = _FORBIDDEN_NODES.get(type(node))
        if reason:
            raise ScriptPolicyError(f"Scripts cannot use {reason} (line {_line(node)})")
        super().generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if node.attr.startswith("_") or node.attr in _FORBIDDEN_ATTRIBUTES:
            raise ScriptPolicyError(
                f"Access to attribute '{node.attr}' is not allowed (line {_line(node)})"
            )
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if node.id.startswith("__"):
            raise ScriptPolicyError(f"Name '{node.id}' is not allowed (line {_line(node)})")
        self.generic_visit(node)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is None:
            raise ScriptPolicyError(
                f"Bare 'except:' is not allowed, use 'except Exception:' (line {_line(node)})"
            )
        self.generic_visit(node)


def _line(node: ast.AST) -> int:
    return getattr(node, "lineno", 0)


def _stringify(value: Any) -> str:
    """String form of a script value, matching what authors expect from JS."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def _safe_range(*args: int) -> range:
    r = range(*args)
    if len(r) > MAX_RANGE_LENGTH:
        raise ValueError(f"range() longer than {MAX_RANGE_LENGTH} items is not allowed")
    return r


def _safe_builtins(output: list[str]) -> dict[str, Any]:
    def _print(*args: Any) -> None:
        output.append(" ".join(str(a) for a in args))

    return {
        "abs": abs,
        "all": all,
        "any": any,
        "bool": bool,
        "dict": dict,
        "enumerate": enumerate,
        "filter": filter,
        "float": float,
        "int": int,
        "isinstance": isinstance,
        "len": len,
        "list": list,
        "map": map,
        "max": max,
        "min": min,
        "print": _print,
        "range": _safe_range,
        "reversed": reversed,
        "round": round,
        "set": set,
        "sorted": sorted,
        "str": str,
        "sum": sum,
        "tuple": tuple,
        "zip": zip,
        "Exception": Exception,
        "ValueError": ValueError,
        "KeyError": KeyError,
        "TypeError": TypeError,
        "True": True,
        "False": False,
        "None": None,
    }


class _Bindings:
    """Staged view of the store that scripts read and write."""

    def __init__(self, store: VariableStore) -> None:
        self.store = store
        self.staged: dict[str, str] = {}
        self.redirect_url: str | None = None
        self.output: list[str] = []

    def get_variable(self, name: str) -> str | None:
        name = str(name)
        if name in self.staged:
            return self.staged[name]
        return self.store.get(name)

    def set_variable(self, name: str, value: Any) -> None:
        name = str(name)
        if not name:
            raise ValueError("setVariable() needs a variable name")
        self.staged[name] = _stringify(value)

    def request_redirect(self, url: Any) -> None:
        self.redirect_url = _stringify(url)

    def mutations(self) -> list[VariableMutation]:
        return [VariableMutation(name, value) for name, value in self.staged.items()]


class VariablesView:
    """``variables.name`` access for scripts; missing names read as None."""

    def __init__(self, bindings: _Bindings) -> None:
        object.__setattr__(self, "_bindings", bindings)

    def __getattr__(self, name: str) -> str | None:
        return object.__getattribute__(self, "_bindings").get_variable(name)

    def __setattr__(self, name: str, value: Any) -> None:
        object.__getattribute__(self, "_bindings").set_variable(name, value)


class LocationProxy:
    """Browser-like ``location``; navigating records a redirect."""

    def __init__(self, bindings: _Bindings, current_url: str) -> None:
        object.__setattr__(self, "_bindings", bindings)
        object.__setattr__(self, "_current", current_url)

    @property
    def href(self) -> str:
        bindings = object.__getattribute__(self, "_bindings")
        return bindings.redirect_url or object.__getattribute__(self, "_current")

    @href.setter
    def href(self, url: Any) -> None:
        object.__getattribute__(self, "_bindings").request_redirect(url)

    def assign(self, url: Any) -> None:
        object.__getattribute__(self, "_bindings").request_redirect(url)

    def replace(self, url: Any) -> None:
        object.__getattribute__(self, "_bindings").request_redirect(url)

    def __setattr__(self, name: str, value: Any) -> None:
        if name != "href":
            raise AttributeError(f"location.{name} is read-only")
        object.__setattr__(self, name, value)


def _compile(source: str, kind: str, max_code_length: int) -> CodeType:
    source = (source or "").strip()
    if len(source) > max_code_length:
        raise ScriptPolicyError(
            f"Script is {len(source)} characters long, limit is {max_code_length}"
        )
    try:
        tree = ast.parse(source, filename=SCRIPT_FILENAME, mode=kind)
    except SyntaxError as e:
        raise ScriptExecutionError(f"Syntax error on line {e.lineno}: {e.msg}") from e
    _PolicyVisitor().visit(tree)
    return compile(tree, SCRIPT_FILENAME, kind)


def _namespace(
    bindings: _Bindings, mode: ScriptMode, client: ClientContext | None
) -> dict[str, Any]:
    namespace: dict[str, Any] = {
        "__builtins__": _safe_builtins(bindings.output),
        "getVariable": bindings.get_variable,
        "setVariable": bindings.set_variable,
        "variables": VariablesView(bindings),
        "json": SimpleNamespace(loads=json.loads, dumps=json.dumps),
    }
    if mode == ScriptMode.CLIENT:
        hints = client or ClientContext()
        location = LocationProxy(bindings, hints.url)
        navigator = SimpleNamespace(userAgent=hints.user_agent, language=hints.language)
        document = SimpleNamespace(title=hints.title, referrer=hints.referrer, URL=hints.url)
        namespace.update(
            location=location,
            navigator=navigator,
            document=document,
            window=SimpleNamespace(location=location, navigator=navigator, document=document),
        )
    return namespace


@dataclass(frozen=True)
class _ScriptJob:
    """Everything the child process needs to run one script."""

    source: str
    kind: str
    variables: dict[str, str]
    mode: ScriptMode
    client: ClientContext | None
    timeout_ms: int
    max_code_length: int

    def execute(self) -> ScriptResult:
        compiled = _compile(self.source, self.kind, self.max_code_length)
        bindings = _Bindings(VariableStore(self.variables))
        namespace = _namespace(bindings, self.mode, self.client)
        value = self._traced(compiled, namespace)
        return ScriptResult(
            redirect_url=bindings.redirect_url,
            mutations=bindings.mutations(),
            value=_stringify(value) if self.kind == "eval" else None,
            output=bindings.output,
        )

    def _traced(self, compiled: CodeType, namespace: dict[str, Any]) -> Any:
        deadline = time.monotonic() + self.timeout_ms / 1000

        def local_trace(frame: FrameType, event: str, arg: Any) -> Any:
            if time.monotonic() > deadline:
                raise _Deadline()
            return local_trace

        def global_trace(frame: FrameType, event: str, arg: Any) -> Any:
            if frame.f_code.co_filename != SCRIPT_FILENAME:
                return None
            return local_trace(frame, event, arg)

        previous = sys.gettrace()
        sys.settrace(global_trace)
        try:
            if self.kind == "eval":
                return eval(compiled, namespace)
            exec(compiled, namespace)
            return None
        except _Deadline:
            raise ScriptTimeoutError(f"Script exceeded {self.timeout_ms} ms") from None
        except ScriptExecutionError:
            raise
        except Exception as e:
            raise ScriptExecutionError(f"{type(e).__name__}: {e}") from e
        finally:
            sys.settrace(previous)


def _child_main(job: _ScriptJob, connection: Connection) -> None:
    """Entry point of the script process: report ready, then the outcome."""
    connection.send(None)
    try:
        outcome: ScriptResult | ScriptExecutionError = job.execute()
    except ScriptExecutionError as e:
        outcome = e
    connection.send(outcome)
    connection.close()


def _process_context() -> Any:
    context = multiprocessing.get_context(_START_METHOD)
    if _START_METHOD == "forkserver":
        context.set_forkserver_preload([__name__])
    return context


class ScriptSandbox:
    """Runs scripts with a restricted binding surface and a time budget."""

    def __init__(self, timeout_ms: int = 250, max_code_length: int = 10_000) -> None:
        self.timeout_ms = timeout_ms
        self.max_code_length = max_code_length

    def run(
        self,
        code: str,
        store: VariableStore,
        mode: ScriptMode = ScriptMode.SERVER,
        client: ClientContext | None = None,
    ) -> ScriptResult:
        """Execute a script.

        Args:
            code: Script source
            store: Variables of the current session (read-only here)
            mode: CLIENT exposes browser-like globals, SERVER does not
            client: Client hints for CLIENT mode

        Returns:
            ScriptResult with staged mutations and optional redirect

        Raises:
            ScriptPolicyError: If the script uses a forbidden construct
            ScriptTimeoutError: If the script exceeds the time budget
            ScriptExecutionError: If the script raises
        """
        return self._dispatch(code, "exec", store, mode, client)

    def evaluate(
        self,
        expression: str,
        store: VariableStore,
        mode: ScriptMode = ScriptMode.CLIENT,
        client: ClientContext | None = None,
    ) -> ScriptResult:
        """Evaluate a single expression; its string form is returned in ``value``."""
        return self._dispatch(expression, "eval", store, mode, client)

    def _dispatch(
        self,
        source: str,
        kind: str,
        store: VariableStore,
        mode: ScriptMode,
        client: ClientContext | None,
    ) -> ScriptResult:
        # Policy and syntax errors surface before a process is started
        _compile(source, kind, self.max_code_length)
        job = _ScriptJob(
            source=source,
            kind=kind,
            variables=store.as_dict(),
            mode=mode,
            client=client,
            timeout_ms=self.timeout_ms,
            max_code_length=self.max_code_length,
        )
        result = self._run_in_child(job)
        for line in result.output:
            logger.debug(f"script output: {line}", extra={"script_mode": mode.value})
        return result

    def _run_in_child(self, job: _ScriptJob) -> ScriptResult:
        context = _process_context()
        receiver, sender = context.Pipe(duplex=False)
        process = context.Process(target=_child_main, args=(job, sender), daemon=True)
        process.start()
        sender.close()
        try:
            if not receiver.poll(STARTUP_TIMEOUT):
                raise ScriptExecutionError("Script process did not start")
            receiver.recv()
            if not receiver.poll(self.timeout_ms / 1000 + REPORT_GRACE):
                raise ScriptTimeoutError(f"Script exceeded {self.timeout_ms} ms")
            outcome = receiver.recv()
        except EOFError:
            process.join()
            raise ScriptExecutionError(
                f"Script process exited with code {process.exitcode}"
            ) from None
        finally:
            receiver.close()
            if process.is_alive():
                process.kill()
            process.join()
        if isinstance(outcome, ScriptExecutionError):
            raise outcome
        return outcome
