"""METRIQ — Sandbox Child Process.

Started by ``sandbox.run_in_sandbox`` as ``python -I sandbox_runner.py``.
Reads one JSON request on stdin and compiles the generated code with
RestrictedPython. The child then gives up root and lowers its resource
limits before running the code against restricted builtins and an import
allowlist. One JSON result goes back on stdout.
"""

import builtins
import io
import json
import operator
import os
import sys
import traceback
from types import CodeType, FrameType, ModuleType, TracebackType

from RestrictedPython import compile_restricted_exec, safe_builtins
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

# Modules generated code may import. Loaded before limits are applied.
ALLOWED_MODULES = (
    "math",
    "statistics",
    "datetime",
    "calendar",
    "collections",
    "collections.abc",
    "itertools",
    "functools",
    "re",
    "json",
    "decimal",
)

# Added on top of RestrictedPython's safe_builtins
EXTRA_BUILTINS = (
    "all", "any", "dict", "enumerate", "filter", "format", "frozenset",
    "hasattr", "iter", "list", "map", "max", "min", "next", "reversed",
    "set", "sum",
)

# Values that lead back to interpreter internals
BLOCKED_TYPES = (FrameType, TracebackType, CodeType)

# uid/gid of "nobody" on common Linux images
UNPRIVILEGED_ID = 65534

INPLACE_OPERATORS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "@=": operator.imatmul,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "|=": operator.ior,
    "^=": operator.ixor,
}

_MISSING = object()

for _name in ALLOWED_MODULES:
    __import__(_name)

try:
    import resource
except ImportError:  # non-POSIX hosts only get the wall-clock deadline
    resource = None


# ── Process hardening ──


def _drop_privileges() -> None:
    """Switch a root child to the unprivileged user before running code."""
    if not hasattr(os, "getuid") or os.getuid() != 0:
        return
    try:
        os.setgroups([])
        os.setgid(UNPRIVILEGED_ID)
        os.setuid(UNPRIVILEGED_ID)
    except OSError as e:
        sys.stderr.write(f"could not drop privileges: {e}\n")


def _apply_limits(cpu_seconds: int, memory_mb: int) -> None:
    """Lower CPU, address-space, process and file-descriptor limits."""
    if resource is None:
        return
    limits = [
        (resource.RLIMIT_CPU, cpu_seconds),
        (resource.RLIMIT_AS, memory_mb * 1024 * 1024),
        # stdio stays usable; nothing new can be opened
        (resource.RLIMIT_NOFILE, 0),
    ]
    if hasattr(resource, "RLIMIT_NPROC"):
        limits.append((resource.RLIMIT_NPROC, 0))
    for which, value in limits:
        try:
            _, hard = resource.getrlimit(which)
            if hard != resource.RLIM_INFINITY:
                value = min(value, hard)
            resource.setrlimit(which, (value, value))
        except (ValueError, OSError) as e:
            sys.stderr.write(f"could not apply rlimit {which}: {e}\n")


# ── Guards installed into the restricted namespace ──


def _is_foreign_module(value) -> bool:
    return isinstance(value, ModuleType) and value.__name__ not in ALLOWED_MODULES


def _guarded_getattr(obj, name, default=_MISSING):
    """Attribute access for restricted code.

    On top of RestrictedPython's underscore and ``str.format`` checks,
    refuses modules outside the allowlist and frame, traceback and code
    objects, the usual routes back to the host interpreter.
    """
    if _is_foreign_module(obj):
        raise AttributeError(f"Module '{obj.__name__}' is not available in transformers")
    value = safer_getattr(obj, name, _MISSING)
    if value is _MISSING:
        if default is _MISSING:
            raise AttributeError(f"'{type(obj).__name__}' object has no attribute '{name}'")
        return default
    if isinstance(value, BLOCKED_TYPES) or _is_foreign_module(value):
        raise AttributeError(f"Attribute '{name}' is not available in transformers")
    return value


def _inplacevar(op, target, value):
    return INPLACE_OPERATORS[op](target, value)


def _apply(func, *args, **kwargs):
    return func(*args, **kwargs)


def _restricted_import(name, globals=None, locals=None, fromlist=(), level=0):
    if level != 0 or name not in ALLOWED_MODULES:
        raise ImportError(f"Import of '{name}' is not allowed in transformers")
    module = sys.modules[name]
    if not fromlist and "." in name:
        return sys.modules[name.split(".", 1)[0]]
    return module


def _build_builtins() -> dict:
    table = dict(safe_builtins)
    for name in EXTRA_BUILTINS:
        table[name] = getattr(builtins, name)
    table["__import__"] = _restricted_import
    return table


def _build_namespace(bindings: dict) -> dict:
    namespace = dict(bindings)
    namespace.update({
        "__builtins__": _build_builtins(),
        "__name__": "transformer",
        "_getattr_": _guarded_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_write_": full_write_guard,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_print_": PrintCollector,
    })
    return namespace


# ── Execution ──


def _json_default(value):
    if hasattr(value, "isoformat"):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


def compile_transformer(code: str):
    """Compile generated code under the restricted policy.

    Returns:
        (code object, None) on success, or (None, error message).
    """
    try:
        compile(code, "<transformer>", "exec")
    except SyntaxError as e:
        return None, f"Syntax error: {e.msg} (line {e.lineno})"

    result = compile_restricted_exec(code, filename="<transformer>")
    if result.errors:
        return None, "Restricted code rejected: " + "; ".join(result.errors)
    return result.code, None


def execute(compiled, request: dict) -> dict:
    entrypoint = request.get("entrypoint", "transform")
    bindings = request.get("bindings") or {}
    namespace = _build_namespace(bindings)

    captured = io.StringIO()
    real_stdout = sys.stdout
    sys.stdout = captured
    try:
        exec(compiled, namespace)
        func = namespace.get(entrypoint)
        if not callable(func):
            return {
                "success": False,
                "error": f"Transformer code must define a '{entrypoint}' function",
            }
        result = func(*bindings.values())
    except Exception as e:
        return {"success": False, "error": _describe(e)}
    finally:
        sys.stdout = real_stdout

    try:
        json.dumps(result, default=_json_default)
    except (TypeError, ValueError) as e:
        return {"success": False, "error": f"Transformer returned a non-serializable value: {e}"}
    return {"success": True, "data": result}


def run(request: dict) -> dict:
    """Compile and execute in the current process, without hardening."""
    compiled, error = compile_transformer(request["code"])
    if error:
        return {"success": False, "error": error}
    return execute(compiled, request)


def main() -> int:
    request = json.loads(sys.stdin.read())
    limits = request.get("limits") or {}
    try:
        # Compiling may import lazily, so it happens before the limits
        compiled, error = compile_transformer(request["code"])
        if error:
            response = {"success": False, "error": error}
        else:
            _drop_privileges()
            _apply_limits(int(limits.get("cpu_seconds", 5)), int(limits.get("memory_mb", 256)))
            response = execute(compiled, request)
    except MemoryError:
        response = {"success": False, "error": "MemoryError: transformer exceeded memory limit"}
    except RecursionError as e:
        response = {"success": False, "error": _describe(e)}
    except BaseException:
        response = {"success": False, "error": traceback.format_exc(limit=1).strip()}
    sys.stdout.write(json.dumps(response, default=_json_default))
    sys.stdout.flush()
    return 0


if __name__ == "__main__":
    sys.exit(main())
