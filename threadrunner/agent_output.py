"""Parsing of the coding agent's JSON-lines output.

The agent runs in ``--mode json`` and prints one JSON event per line. A turn
only counts as finished if an ``agent_end`` event is present, whatever the
process exit code was.
"""

import json
from dataclasses import dataclass
from typing import Any

import structlog

from threadrunner.errors import ExecutionError

logger = structlog.get_logger(__name__)


@dataclass
class AgentOutput:
    """Final answer extracted from one agent run."""

    content: str
    model: str | None = None


@dataclass
class GeneratedFile:
    """An artifact collected from the sandbox after a turn.

    ``data`` is None when the file was listed but could not be downloaded.
    """

    path: str
    filename: str
    data: bytes | None = None


def _iter_events(stdout: str) -> list[dict[str, Any]]:
    events: list[dict[str, Any]] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue  # progress noise
        if isinstance(event, dict):
            events.append(event)
    return events


def _text_parts(message: dict[str, Any]) -> list[str]:
    content = message.get("content") or []
    if isinstance(content, str):
        return [content] if content else []
    return [
        part["text"]
        for part in content
        if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
    ]


def parse_agent_output(stdout: str) -> AgentOutput:
    """Extract the final answer and model from the agent's event stream.

    The answer is the text of the last assistant message in the first
    ``agent_end`` event that has any text, parts joined by newlines. The
    model is taken from the first assistant ``message_start`` event.

    Args:
        stdout: Raw standard output of the agent process.

    Returns:
        The parsed output. ``content`` is empty if no assistant text exists.

    Raises:
        ExecutionError: If no ``agent_end`` event is present.
    """
    events = _iter_events(stdout)

    agent_end = next((e for e in events if e.get("type") == "agent_end"), None)
    if agent_end is None:
        raise ExecutionError("Agent execution failed: no agent_end event in output")

    content = ""
    for message in reversed(agent_end.get("messages") or []):
        if not isinstance(message, dict) or message.get("role") != "assistant":
            continue
        parts = _text_parts(message)
        if parts:
            content = "\n".join(parts)
            break

    model: str | None = None
    for event in events:
        message = event.get("message")
        if (
            event.get("type") == "message_start"
            and isinstance(message, dict)
            and message.get("role") == "assistant"
        ):
            model = message.get("model")
            break

    return AgentOutput(content=content, model=model)
