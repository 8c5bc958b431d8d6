"""
Sandboxed execution of generated scripts.

A script is the body of an implicit function whose only parameters are the
bound primitives. Execution goes through three gates:

  1. Static check: the script is parsed and walked; imports, scope
     escapes, class/async/generator constructs and every underscore name or
     attribute are refused before anything runs.
  2. Restricted run: the compiled function sees a builtins table of pure
     helpers only, and a trace hook bounds the number of executed lines and
     the wall-clock time spent inside generated code. Operators and
     ``range`` that could build a huge value in one call are size-checked,
     so no single line runs unbounded between two trace events.
  3. Shape check: the return value must be a solid or a non-empty list of
     parts; the accepted value becomes an explicit SingleSolid / PartList.

Outcomes are memoized by exact script text in a bounded, lock-guarded cache.
"""

from __future__ import annotations

import ast
import copy
import logging
import math
import re
import sys
import textwrap
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Union

from .errors import ScriptRejected
from .primitives import PRIMITIVES, Solid, is_empty, is_solid

logger = logging.getLogger(__name__)

SCRIPT_FILENAME = "<generated-script>"
FUNCTION_NAME = "generate_model"
SHAPE_ERROR = "must return a solid or a list of {solid, color?, name?} parts"

# Per-call size ceilings. The trace hook only sees line events, so a single
# builtin call must not be able to do unbounded work between two of them.
MAX_RANGE = 1_000_000
MAX_SEQUENCE = 1_000_000
MAX_INT_BITS = 4096

_SEQUENCES = (str, bytes, list, tuple)


class BudgetExceeded(BaseException):
    pass


def _bounded_range(*args: Any) -> range:
    values = range(*args)
    try:
        size = len(values)
    except OverflowError:
        size = MAX_RANGE + 1
    if size > MAX_RANGE:
        raise BudgetExceeded(f"range() of more than {MAX_RANGE} items is not allowed")
    return values


SAFE_BUILTINS: dict[str, Any] = {
    "range": _bounded_range,
    "len": len,
    "min": min,
    "max": max,
    "abs": abs,
    "round": round,
    "sum": sum,
    "enumerate": enumerate,
    "zip": zip,
    "float": float,
    "int": int,
    "bool": bool,
    "str": str,
    "list": list,
    "tuple": tuple,
    "dict": dict,
    "sorted": sorted,
    "reversed": reversed,
    "any": any,
    "all": all,
    "True": True,
    "False": False,
    "None": None,
    "pi": math.pi,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "sqrt": math.sqrt,
    "atan2": math.atan2,
    "radians": math.radians,
    "degrees": math.degrees,
    # Exception types so scripts can raise on bad PARAMS.
    "ValueError": ValueError,
    "TypeError": TypeError,
}

_FORBIDDEN_NODES: dict[type, str] = {
    ast.Import: "import statements are not allowed",
    ast.ImportFrom: "import statements are not allowed",
    ast.Global: "global is not allowed",
    ast.Nonlocal: "nonlocal is not allowed",
    ast.ClassDef: "class definitions are not allowed",
    ast.AsyncFunctionDef: "async functions are not allowed",
    ast.Await: "await is not allowed",
    ast.AsyncFor: "async for is not allowed",
    ast.AsyncWith: "async with is not allowed",
    ast.With: "with statements are not allowed",
    ast.Yield: "yield is not allowed",
    ast.YieldFrom: "yield is not allowed",
    ast.Delete: "del is not allowed",
}

# Frame, generator, coroutine, code and traceback internals.
_FORBIDDEN_ATTR_PREFIXES = ("f_", "gi_", "cr_", "ag_", "co_", "tb_")
_FORBIDDEN_ATTRS = frozenset({
    "format", "format_map", "mro",
    # string methods whose output size comes from an argument
    "join", "replace", "ljust", "rjust", "center", "zfill", "expandtabs",
})

_WIDE_FORMAT = re.compile(r"\*|\d{4,}")
_WIDE_PERCENT = re.compile(r"%[-+ #0]*(?:\*|\d{4,}|\d*\.(?:\*|\d{4,}))")


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Part:
    solid: Solid
    color: str | None = None
    name: str | None = None


@dataclass(frozen=True)
class SingleSolid:
    solid: Solid

    @property
    def parts(self) -> list[Part]:
        return [Part(solid=self.solid)]


@dataclass(frozen=True)
class PartList:
    items: tuple[Part, ...]

    @property
    def parts(self) -> list[Part]:
        return list(self.items)


Model = Union[SingleSolid, PartList]


@dataclass(frozen=True)
class Accepted:
    model: Model
    elapsed: float = 0.0

    ok = True

    @property
    def parts(self) -> list[Part]:
        return self.model.parts


@dataclass(frozen=True)
class Rejected:
    error: str
    elapsed: float = 0.0

    ok = False


ExecutionOutcome = Union[Accepted, Rejected]


# ---------------------------------------------------------------------------
# Static check
# ---------------------------------------------------------------------------

def _wrap(script: str, names: tuple[str, ...]) -> str:
    # Trailing pass keeps comment-only scripts parseable.
    body = textwrap.indent(script.rstrip(), "    ")
    return f"def {FUNCTION_NAME}({', '.join(names)}):\n{body}\n    pass\n"


def check_script(script: str, names: tuple[str, ...]) -> ast.Module:
    """Parse the wrapped script and refuse anything outside the allowed subset."""
    try:
        tree = ast.parse(_wrap(script, names), filename=SCRIPT_FILENAME)
    except SyntaxError as exc:
        line = (exc.lineno or 1) - 1
        raise ScriptRejected(f"SyntaxError: {exc.msg} (line {max(line, 1)})") from None

    for node in ast.walk(tree):
        reason = _FORBIDDEN_NODES.get(type(node))
        if reason:
            raise ScriptRejected(f"{reason} (line {max(node.lineno - 1, 1)})")
        if isinstance(node, ast.ExceptHandler) and node.type is None:
            raise ScriptRejected(f"bare except is not allowed (line {node.lineno - 1})")
        if isinstance(node, ast.Attribute) and (
            node.attr.startswith("_")
            or node.attr.startswith(_FORBIDDEN_ATTR_PREFIXES)
            or node.attr in _FORBIDDEN_ATTRS
        ):
            raise ScriptRejected(f"access to '{node.attr}' is not allowed (line {node.lineno - 1})")
        if isinstance(node, ast.Name) and node.id.startswith("_"):
            raise ScriptRejected(f"name '{node.id}' is not allowed (line {node.lineno - 1})")
        if isinstance(node, ast.arg) and node.arg.startswith("_"):
            raise ScriptRejected(f"name '{node.arg}' is not allowed (line {node.lineno - 1})")
        if isinstance(node, ast.AugAssign) and type(node.op) in _GUARDS and not (
            isinstance(node.target, ast.Name) or _simple_subscript(node.target)
        ):
            raise ScriptRejected(f"augmented assignment to a computed target is not allowed (line {node.lineno - 1})")
        if isinstance(node, ast.FormattedValue) and node.format_spec is not None and any(
            not isinstance(part, ast.Constant) or _WIDE_FORMAT.search(str(part.value))
            for part in node.format_spec.values
        ):
            raise ScriptRejected(f"format spec is not allowed (line {max(node.lineno - 1, 1)})")

    func = tree.body[0]
    nested = [n for n in ast.walk(func) if isinstance(n, (ast.FunctionDef, ast.Lambda)) and n is not func]
    has_return = any(isinstance(n, ast.Return) for n in ast.walk(func))
    if not has_return and not nested:
        raise ScriptRejected("script has no return statement")
    return tree


# ---------------------------------------------------------------------------
# Operator guards
# ---------------------------------------------------------------------------

def _too_big(what: str) -> BudgetExceeded:
    return BudgetExceeded(f"{what} exceeds the size limit")


def _guard_mul(a: Any, b: Any) -> Any:
    if isinstance(a, int) and isinstance(b, int):
        if a.bit_length() + b.bit_length() > MAX_INT_BITS:
            raise _too_big("integer product")
    else:
        for seq, count in ((a, b), (b, a)):
            if isinstance(seq, _SEQUENCES) and isinstance(count, int) and len(seq) * count > MAX_SEQUENCE:
                raise _too_big("repeated sequence")
    return a * b


def _guard_pow(a: Any, b: Any) -> Any:
    if isinstance(a, int) and isinstance(b, int) and b > 0 and abs(a) > 1:
        if math.log2(abs(a)) * b > MAX_INT_BITS:
            raise _too_big("integer power")
    return a ** b


def _guard_lshift(a: Any, b: Any) -> Any:
    if isinstance(a, int) and isinstance(b, int) and b > 0 and a.bit_length() + b > MAX_INT_BITS:
        raise _too_big("shifted integer")
    return a << b


def _guard_add(a: Any, b: Any) -> Any:
    if isinstance(a, _SEQUENCES) and isinstance(b, _SEQUENCES) and len(a) + len(b) > MAX_SEQUENCE:
        raise _too_big("concatenated sequence")
    return a + b


def _guard_mod(a: Any, b: Any) -> Any:
    if isinstance(a, str) and _WIDE_PERCENT.search(a):
        raise _too_big("%-format width")
    return a % b


_GUARDS: dict[type, tuple[str, Callable[[Any, Any], Any]]] = {
    ast.Mult: ("_guard_mul", _guard_mul),
    ast.Pow: ("_guard_pow", _guard_pow),
    ast.LShift: ("_guard_lshift", _guard_lshift),
    ast.Add: ("_guard_add", _guard_add),
    ast.Mod: ("_guard_mod", _guard_mod),
}

GUARD_GLOBALS = {name: fn for name, fn in _GUARDS.values()}


def _simple_subscript(target: ast.expr) -> bool:
    return (
        isinstance(target, ast.Subscript)
        and isinstance(target.value, ast.Name)
        and isinstance(target.slice, (ast.Name, ast.Constant))
    )


class _GuardOperators(ast.NodeTransformer):
    """Rewrite size-growing operators into calls to the guards above.

    Runs after the static check, so the underscore guard names cannot clash
    with anything the script itself refers to.
    """

    def visit_BinOp(self, node: ast.BinOp) -> ast.expr:
        self.generic_visit(node)
        guard = _GUARDS.get(type(node.op))
        if guard is None:
            return node
        call = ast.Call(func=ast.Name(id=guard[0], ctx=ast.Load()), args=[node.left, node.right], keywords=[])
        return ast.copy_location(call, node)

    def visit_AugAssign(self, node: ast.AugAssign) -> ast.stmt:
        self.generic_visit(node)
        guard = _GUARDS.get(type(node.op))
        if guard is None:
            return node
        # Targets are a bare name or name[name|constant]; re-reading them has no side effects.
        load = copy.deepcopy(node.target)
        for sub in ast.walk(load):
            if isinstance(sub, (ast.Name, ast.Subscript)) and isinstance(sub.ctx, ast.Store):
                sub.ctx = ast.Load()
        call = ast.Call(func=ast.Name(id=guard[0], ctx=ast.Load()), args=[load, node.value], keywords=[])
        assign = ast.Assign(targets=[node.target], value=ast.copy_location(call, node))
        return ast.copy_location(assign, node)


def guard_operators(tree: ast.Module) -> ast.Module:
    return ast.fix_missing_locations(_GuardOperators().visit(tree))


# ---------------------------------------------------------------------------
# Budgeted run
# ---------------------------------------------------------------------------

class _Budget:
    """Trace hook counting line events in generated code only."""

    def __init__(self, max_steps: int, timeout_seconds: float):
        self.max_steps = max_steps
        self.deadline = time.monotonic() + timeout_seconds
        self.timeout_seconds = timeout_seconds
        self.steps = 0

    def global_trace(self, frame, event, arg):
        if event == "call" and frame.f_code.co_filename == SCRIPT_FILENAME:
            return self.local_trace
        return None

    def local_trace(self, frame, event, arg):
        if event == "line":
            self.steps += 1
            if self.steps > self.max_steps:
                raise BudgetExceeded(f"script exceeded the step limit of {self.max_steps}")
            if time.monotonic() > self.deadline:
                raise BudgetExceeded(f"script exceeded the time limit of {self.timeout_seconds:g}s")
        return self.local_trace


def _run(tree: ast.Module, primitives: Mapping[str, Callable[..., Any]], max_steps: int, timeout: float) -> Any:
    code = compile(guard_operators(tree), SCRIPT_FILENAME, "exec")
    namespace: dict[str, Any] = {"__builtins__": dict(SAFE_BUILTINS), **GUARD_GLOBALS}
    exec(code, namespace)
    fn = namespace[FUNCTION_NAME]

    budget = _Budget(max_steps, timeout)
    previous = sys.gettrace()
    sys.settrace(budget.global_trace)
    try:
        return fn(*primitives.values())
    finally:
        sys.settrace(previous)


# ---------------------------------------------------------------------------
# Shape check
# ---------------------------------------------------------------------------

def _as_part(element: Any) -> Part | None:
    if is_solid(element):
        return Part(solid=element)
    if not isinstance(element, Mapping):
        return None
    solid = element.get("solid", element.get("geometry"))
    if not is_solid(solid):
        return None
    color = element.get("color")
    name = element.get("name")
    if color is not None and not isinstance(color, str):
        return None
    if name is not None and not isinstance(name, str):
        return None
    return Part(solid=solid, color=color, name=name)


def validate_result(value: Any) -> Model:
    """Turn a script's return value into a tagged model or raise ScriptRejected."""
    if is_solid(value):
        if is_empty(value):
            raise ScriptRejected("returned solid is empty")
        return SingleSolid(value)
    if isinstance(value, (list, tuple)) and value:
        parts: list[Part] = []
        for idx, element in enumerate(value):
            part = _as_part(element)
            if part is None:
                raise ScriptRejected(f"element {idx} is not a valid solid")
            if is_empty(part.solid):
                raise ScriptRejected(f"element {idx} is an empty solid")
            parts.append(part)
        return PartList(tuple(parts))
    raise ScriptRejected(SHAPE_ERROR)


# ---------------------------------------------------------------------------
# Executor + cache
# ---------------------------------------------------------------------------

@dataclass
class CompilationCache:
    """Bounded script-text → outcome map; the oldest key is evicted first."""

    capacity: int = 64
    _entries: OrderedDict[str, ExecutionOutcome] = field(default_factory=OrderedDict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, script: str) -> ExecutionOutcome | None:
        with self._lock:
            return self._entries.get(script)

    def put(self, script: str, outcome: ExecutionOutcome) -> None:
        with self._lock:
            if script in self._entries:
                self._entries[script] = outcome
                return
            while len(self._entries) >= self.capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("cache evicted script (%d chars)", len(evicted))
            self._entries[script] = outcome

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, script: object) -> bool:
        with self._lock:
            return script in self._entries

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def _describe(exc: BaseException) -> str:
    """``Type: message (line n)`` using the innermost frame inside the script."""
    line = None
    tb = exc.__traceback__
    while tb is not None:
        if tb.tb_frame.f_code.co_filename == SCRIPT_FILENAME:
            line = tb.tb_lineno - 1
        tb = tb.tb_next
    text = f"{type(exc).__name__}: {exc}"
    if line is not None and line >= 1:
        text += f" (line {line})"
    return text


class SandboxExecutor:
    """Runs scripts against the bound primitives; safe to share across threads."""

    def __init__(
        self,
        primitives: Mapping[str, Callable[..., Any]] | None = None,
        cache_size: int = 64,
        max_steps: int = 200_000,
        timeout_seconds: float = 20.0,
    ):
        self.primitives = dict(primitives if primitives is not None else PRIMITIVES)
        self.names = tuple(self.primitives)
        self.cache = CompilationCache(capacity=cache_size)
        self.max_steps = max_steps
        self.timeout_seconds = timeout_seconds

    def execute(self, script: str) -> ExecutionOutcome:
        cached = self.cache.get(script)
        if cached is not None:
            logger.debug("cache hit (%d chars)", len(script))
            return cached

        t0 = time.time()
        try:
            tree = check_script(script, self.names)
            value = _run(tree, self.primitives, self.max_steps, self.timeout_seconds)
            outcome: ExecutionOutcome = Accepted(validate_result(value), elapsed=time.time() - t0)
        except ScriptRejected as exc:
            outcome = Rejected(str(exc), elapsed=time.time() - t0)
        except BudgetExceeded as exc:
            outcome = Rejected(str(exc), elapsed=time.time() - t0)
        except RecursionError:
            outcome = Rejected("RecursionError: maximum recursion depth exceeded", elapsed=time.time() - t0)
        except Exception as exc:
            outcome = Rejected(_describe(exc), elapsed=time.time() - t0)

        if isinstance(outcome, Rejected):
            logger.info("script rejected: %s", outcome.error[:200])
        else:
            logger.info("script accepted: %d part(s) in %.2fs", len(outcome.parts), outcome.elapsed)

        self.cache.put(script, outcome)
        return outcome
