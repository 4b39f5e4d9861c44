"""Prompt node execution.

``PromptRunner`` turns a prompt node plus its computed input context into a
``WorkflowPromptRequest`` and hands it to a ``CompletionBackend``. The
default backend pipes a rendered prompt into an AI CLI (``claude -p`` unless
configured otherwise).
"""

import asyncio
import json
import logging
import re
import subprocess
from pathlib import Path
from typing import Any, Protocol

from jinja2 import FileSystemLoader, StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

from nodeflow.core.graph_schema import PromptNode
from nodeflow.core.models import ExecutionContext, WorkflowInputContext, WorkflowPromptRequest

logger = logging.getLogger(__name__)

# "@agent" at start or after whitespace; "@notes.md" and "a@b.c" are not mentions
AGENT_MENTION_RE = re.compile(r"(?:^|\s)@([\w-]+)(?![\w-]|\.\w)")
CODE_FENCE_RE = re.compile(r"```(?:json)?\n?|\n?```")

TEMPLATE_DIR = Path(__file__).parent.parent / "prompts"
STEP_TEMPLATE = "workflow_step.j2"


class PromptExecutionError(Exception):
    """The completion backend failed to produce a response."""

    pass


class CompletionBackend(Protocol):
    """AI-completion collaborator. Returns ``{"content": str}`` or raises."""

    async def complete(self, request: WorkflowPromptRequest) -> Any: ...


def extract_agent_from_prompt(prompt: str) -> tuple[str | None, str]:
    """Split an ``@agent-id`` mention out of a prompt.

    Returns:
        Tuple of (agent_id or None, prompt with the mention removed)
    """
    match = AGENT_MENTION_RE.search(prompt)
    if not match:
        return None, prompt
    clean = (prompt[: match.start()].rstrip() + " " + prompt[match.end() :].lstrip()).strip()
    return match.group(1), clean


def _extract_json_from_text(text: str) -> Any:
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(text[start : end + 1])
    except json.JSONDecodeError:
        return None


def parse_structured_output(result: Any) -> Any:
    """Parse a JSON object out of an AI response.

    Tries the fence-stripped text, then the outermost ``{...}`` span. When
    neither parses the response is returned unchanged.
    """
    if isinstance(result, str):
        content = result
    elif isinstance(result, dict) and "content" in result:
        content = str(result["content"])
    else:
        return result

    cleaned = CODE_FENCE_RE.sub("", content).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        extracted = _extract_json_from_text(cleaned)
        if extracted is not None:
            return extracted
        logger.warning(f"Failed to parse structured output as JSON ({e}): {cleaned[:100]!r}")
        return result


def format_output(value: Any) -> str:
    """Human-readable text for a node output."""
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("content"), str):
        return value["content"]
    return json.dumps(value, indent=2, default=str, ensure_ascii=False)


class PromptRunner:
    """Builds prompt requests and parses the backend's answer."""

    def __init__(self, backend: CompletionBackend):
        self.backend = backend

    async def run(
        self,
        node: PromptNode,
        input_context: WorkflowInputContext,
        context: ExecutionContext,
    ) -> Any:
        data = node.data
        agent_id, task = extract_agent_from_prompt(data.prompt)

        logger.debug(
            f"Running prompt step {node.id} (agent={agent_id or 'none'}, "
            f"structured={data.structured_output}, context={len(input_context.context)})"
        )

        request = WorkflowPromptRequest(
            agent_id=agent_id,
            workflow_id=context.workflow_id,
            run_id=context.run_id,
            node_id=node.id,
            step_label=data.label or "Unnamed step",
            step_description=data.description,
            input_context=input_context,
            task=task,
            structured_output=data.structured_output,
            output_schema=data.output_schema,
        )

        result = await self.backend.complete(request)

        if data.structured_output and result:
            return parse_structured_output(result)
        return result


class CommandCompletionBackend:
    """Completion backend that shells out to an AI CLI.

    The request is rendered through a sandboxed Jinja2 template and written
    to the command's stdin; stdout becomes ``{"content": ...}``.
    """

    def __init__(self, command: list[str], timeout: float = 300.0, cwd: Path | None = None):
        self.command = list(command)
        self.timeout = timeout
        self.cwd = cwd

        # SECURITY: prompt text is user-authored; keep template evaluation sandboxed
        self.jinja_env = SandboxedEnvironment(
            loader=FileSystemLoader(TEMPLATE_DIR),
            undefined=StrictUndefined,
            autoescape=False,  # Plain text prompts
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.jinja_env.filters["to_text"] = format_output

    def render(self, request: WorkflowPromptRequest) -> str:
        template = self.jinja_env.get_template(STEP_TEMPLATE)
        return template.render(request=request).strip() + "\n"

    def _run(self, prompt: str) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                self.command,
                input=prompt,
                capture_output=True,
                text=True,
                cwd=self.cwd,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            raise PromptExecutionError(
                f"AI command '{self.command[0]}' timed out after {self.timeout}s"
            )
        except FileNotFoundError:
            raise PromptExecutionError(f"AI command not found: {self.command[0]}")

    async def complete(self, request: WorkflowPromptRequest) -> dict[str, str]:
        prompt = self.render(request)
        result = await asyncio.to_thread(self._run, prompt)
        if result.returncode != 0:
            raise PromptExecutionError(
                f"AI command exited with code {result.returncode}: {result.stderr.strip()[:500]}"
            )
        return {"content": result.stdout.strip()}
