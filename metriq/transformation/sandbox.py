"""METRIQ — Sandbox Host.

Runs one generated transformer in a separate interpreter process with
an empty environment, a throwaway working directory, restricted builtins
and a wall-clock deadline. Only JSON crosses the process boundary:
datetimes are sent as ISO-8601 strings and nothing the child returns
references host objects.
"""

import asyncio
import json
import sys
import tempfile
import time
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel

from metriq.config import settings
from metriq.core.errors import SandboxRuntimeFailure
from metriq.core.logging import get_logger

logger = get_logger("sandbox")

RUNNER_PATH = Path(__file__).resolve().with_name("sandbox_runner.py")
STDERR_TAIL_CHARS = 500


class SandboxResult(BaseModel):
    """Raw outcome of one sandboxed run, before any shape validation."""

    success: bool
    data: Any = None
    error: Optional[str] = None

    def unwrap(self) -> Any:
        """Return the script's output or raise SandboxRuntimeFailure."""
        if not self.success:
            raise SandboxRuntimeFailure(self.error or "Unknown sandbox error")
        return self.data


def to_portable(value: Any) -> Any:
    """JSON ``default`` hook: datetimes and pydantic models become plain data."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    raise TypeError(f"Object of type {type(value).__name__} cannot cross the sandbox boundary")


def encode_request(
    code: str, bindings: Dict[str, Any], entrypoint: str = "transform"
) -> bytes:
    request = {
        "code": code,
        "entrypoint": entrypoint,
        "bindings": bindings,
        "limits": {
            "cpu_seconds": settings.sandbox_cpu_seconds,
            "memory_mb": settings.sandbox_memory_limit_mb,
        },
    }
    return json.dumps(request, default=to_portable).encode("utf-8")


def _abnormal_exit(returncode: int, stderr: bytes) -> str:
    if returncode < 0:
        return f"Sandbox process was killed by signal {-returncode}"
    tail = stderr.decode("utf-8", errors="replace").strip()[-STDERR_TAIL_CHARS:]
    return f"Sandbox process exited with code {returncode}" + (f": {tail}" if tail else "")


async def run_in_sandbox(
    code: str,
    bindings: Dict[str, Any],
    entrypoint: str = "transform",
    timeout: Optional[float] = None,
) -> SandboxResult:
    """Execute ``entrypoint(*bindings.values())`` from ``code`` in isolation.

    Args:
        code: Python source defining the entrypoint function.
        bindings: Named inputs, passed positionally in insertion order and
                  also visible as module globals.
        entrypoint: Function to call after the module body runs.
        timeout: Wall-clock deadline in seconds. Defaults to
                 ``settings.sandbox_timeout_seconds``.

    Returns:
        SandboxResult — never raises for problems caused by the script.
    """
    timeout = settings.sandbox_timeout_seconds if timeout is None else timeout
    try:
        payload = encode_request(code, bindings, entrypoint)
    except (TypeError, ValueError) as e:
        return SandboxResult(success=False, error=f"Bindings are not serializable: {e}")

    started = time.monotonic()
    with tempfile.TemporaryDirectory(prefix="metriq-sandbox-") as workdir:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-I",
            str(RUNNER_PATH),
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=workdir,
            env={},
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(payload), timeout=timeout
            )
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Sandbox deadline hit after {timeout:g}s, killing pid {proc.pid}")
            return SandboxResult(
                success=False,
                error=f"Script execution timed out after {timeout:g}s",
            )
        finally:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

    duration_ms = round((time.monotonic() - started) * 1000)

    try:
        response = json.loads(stdout.decode("utf-8")) if stdout else None
    except ValueError:
        response = None

    if not isinstance(response, dict):
        error = _abnormal_exit(proc.returncode or 0, stderr)
        logger.warning(f"Sandbox failed without a result: {error}", extra={"duration_ms": duration_ms})
        return SandboxResult(success=False, error=error)

    if not response.get("success"):
        logger.info(
            f"Sandboxed script failed: {response.get('error')}",
            extra={"duration_ms": duration_ms},
        )
        return SandboxResult(success=False, error=response.get("error") or "Unknown sandbox error")

    logger.debug("Sandboxed script succeeded", extra={"duration_ms": duration_ms})
    return SandboxResult(success=True, data=response.get("data"))
