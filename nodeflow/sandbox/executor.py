"""Sandboxed evaluation of code and condition nodes.

Each evaluation runs in a fresh, isolated child interpreter
(``python -I``, empty environment, address-space limit) driven by
``nodeflow/sandbox/runtime.py``. The child only sees the bindings passed
to it plus a small set of safe builtins; imports and underscore names are
rejected before anything runs. The parent enforces a hard wall-clock
timeout by killing the child.

Exceeding the timeout raises ``SandboxTimeoutError``, which is also a
``TimeoutError``.
"""

import asyncio
import json
import logging
import subprocess
import sys
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)

RUNTIME_PATH = Path(__file__).with_name("runtime.py")


class SandboxError(Exception):
    """Error in sandbox execution."""

    pass


class SandboxPolicyError(SandboxError):
    """Source was rejected before execution (syntax, imports, private names)."""

    pass


class SandboxExecutionError(SandboxError):
    """User code raised, or the child process died."""

    pass


class SandboxTimeoutError(SandboxError, TimeoutError):
    """Evaluation exceeded its wall-clock budget."""

    pass


class ExecutionResult(BaseModel):
    """Decoded response from the child runtime."""

    ok: bool
    value: Any = None
    kind: str | None = None
    error: str | None = None
    logs: list[str] = []


def _truncate_output(output: str, max_bytes: int) -> str:
    """Truncate output to max_bytes, adding truncation notice if needed."""
    if len(output.encode("utf-8", errors="replace")) <= max_bytes:
        return output

    truncated = output.encode("utf-8", errors="replace")[:max_bytes].decode(
        "utf-8", errors="ignore"
    )
    return truncated + f"\n\n[OUTPUT TRUNCATED - exceeded {max_bytes} bytes]"


@lru_cache(maxsize=1)
def _runtime_source() -> str:
    return RUNTIME_PATH.read_text(encoding="utf-8")


@dataclass
class SandboxConfig:
    """Limits for sandboxed evaluation."""

    # Timeouts
    code_timeout: float = 5.0
    condition_timeout: float = 1.0

    # Resource limits
    memory_mb: int = 256

    # Output limits (prevent OOM from unbounded stderr on crashes)
    max_output_bytes: int = 64 * 1024


class _ChildRunner:
    """Runs one request through the child runtime."""

    def __init__(self, config: SandboxConfig | None = None):
        self.config = config or SandboxConfig()

    def _run_child(self, mode: str, source: str, bindings: dict, timeout: float) -> ExecutionResult:
        payload = json.dumps(
            {
                "mode": mode,
                "source": source,
                "bindings": bindings,
                "memory_mb": self.config.memory_mb,
            },
            default=str,
        ).encode("utf-8")

        try:
            result = subprocess.run(
                [sys.executable, "-I", "-c", _runtime_source()],
                input=payload,
                capture_output=True,
                timeout=timeout,
                env={},
            )
        except subprocess.TimeoutExpired:
            raise SandboxTimeoutError(f"{mode.capitalize()} execution timed out after {timeout}s")

        stdout = result.stdout.decode("utf-8", errors="replace")
        if result.returncode != 0 or not stdout:
            stderr = _truncate_output(
                result.stderr.decode("utf-8", errors="replace"), self.config.max_output_bytes
            )
            raise SandboxExecutionError(
                f"Sandbox process exited with code {result.returncode}: {stderr.strip()}"
            )

        try:
            response = ExecutionResult.model_validate_json(stdout)
        except ValueError as e:
            raise SandboxExecutionError(f"Malformed sandbox response: {e}") from e

        for line in response.logs:
            logger.debug(f"[{mode}] {line}")
        return response

    async def _evaluate(self, mode: str, source: str, bindings: dict, timeout: float) -> Any:
        response = await asyncio.to_thread(self._run_child, mode, source, bindings, timeout)
        if response.ok:
            return response.value

        prefix = "Code execution failed" if mode == "code" else "Condition evaluation failed"
        if response.kind == "policy":
            raise SandboxPolicyError(f"{prefix}: {response.error}")
        raise SandboxExecutionError(f"{prefix}: {response.error}")


class CodeSandbox(_ChildRunner):
    """Runs code node bodies. ``return value`` sets the node output."""

    async def run(
        self,
        code: str,
        input_data: Any,
        context: dict[str, Any],
        attachments: list[dict[str, str]] | None = None,
    ) -> Any:
        bindings = {
            "input": input_data,
            "context": context,
            "attachments": attachments or [],
        }
        return await self._evaluate("code", code, bindings, self.config.code_timeout)


class ConditionSandbox(_ChildRunner):
    """Evaluates condition expressions to a strict boolean."""

    async def evaluate(
        self,
        expression: str,
        input_data: Any,
        context: dict[str, Any],
        attachments: list[dict[str, str]] | None = None,
    ) -> bool:
        if not expression.strip():
            raise SandboxPolicyError("Condition evaluation failed: expression is empty")
        bindings = {
            "input": input_data,
            "context": context,
            "attachments": attachments or [],
        }
        result = await self._evaluate(
            "condition", expression, bindings, self.config.condition_timeout
        )
        return bool(result)
