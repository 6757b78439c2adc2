from __future__ import annotations

import json
import logging
import subprocess
import tempfile
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Protocol

from deepagents import create_deep_agent
from deepagents.backends import FilesystemBackend
from langchain_core.messages import AIMessage
from langgraph.errors import GraphRecursionError

from .errors import AgentInvocationError
from .llm import DEFAULT_MODEL, get_chat_model
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

DEEPAGENT_SYSTEM_PROMPT = (
    "You are an autonomous software engineer working inside a git repository. "
    "Use the filesystem tools to inspect and edit files. "
    "Always finish with the exact output blocks and transition directive the user message asks for."
)


class AgentEventKind(str, Enum):
    SESSION = "session"
    TEXT_DELTA = "text_delta"
    ASSISTANT_TEXT = "assistant_text"
    TOOL_USE = "tool_use"
    RESULT = "result"


@dataclass(frozen=True)
class AgentEvent:
    """One item of an agent session stream.

    ``TEXT_DELTA`` events are for live display only; the parseable payload is
    carried by ``ASSISTANT_TEXT`` events.
    """

    kind: AgentEventKind
    text: str = ""
    session_id: str | None = None
    tool_name: str | None = None
    is_error: bool = False


@dataclass(frozen=True)
class AgentOptions:
    max_turns: int
    working_directory: Path
    permission_mode: str = "bypassPermissions"
    model: str | None = None


class AgentRunner(Protocol):
    """External agent collaborator."""

    def stream(self, brief: str, options: AgentOptions) -> Iterator[AgentEvent]: ...


@dataclass
class AgentTranscript:
    text: str
    session_id: str | None = None
    tool_calls: list[str] = field(default_factory=list)
    result_text: str = ""


def collect_agent_output(
    events: Iterable[AgentEvent],
    *,
    on_text: Callable[[str], None] | None = None,
) -> AgentTranscript:
    """Drain an agent stream into a transcript.

    Args:
        events: Stream produced by :meth:`AgentRunner.stream`.
        on_text: Optional display callback receiving text deltas.

    Returns:
        Transcript whose ``text`` joins every assistant text fragment.

    Raises:
        AgentInvocationError: If the stream fails or ends with an error result.
    """
    fragments: list[str] = []
    session_id: str | None = None
    tool_calls: list[str] = []
    result_text = ""
    for event in events:
        if event.session_id and session_id is None:
            session_id = event.session_id
        if event.kind == AgentEventKind.TEXT_DELTA:
            if on_text is not None and event.text:
                on_text(event.text)
        elif event.kind == AgentEventKind.ASSISTANT_TEXT:
            if event.text:
                fragments.append(event.text)
        elif event.kind == AgentEventKind.TOOL_USE:
            if event.tool_name:
                tool_calls.append(event.tool_name)
        elif event.kind == AgentEventKind.RESULT:
            if event.is_error:
                raise AgentInvocationError(
                    f"Agent session ended with an error: {event.text or 'unknown error'}",
                    session_id=session_id,
                )
            result_text = event.text
    return AgentTranscript(
        text="\n".join(fragments),
        session_id=session_id,
        tool_calls=tool_calls,
        result_text=result_text,
    )


def _content_to_text(content: Any) -> str:
    """Recursively extract plain text from heterogeneous LLM message content."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for item in content:
            if isinstance(item, str):
                chunks.append(item)
                continue
            if isinstance(item, dict):
                if item.get("type", "text") != "text":
                    continue
                text_value = item.get("text")
                if isinstance(text_value, str):
                    chunks.append(text_value)
                continue
            chunks.append(str(item))
        return "".join(chunks)
    if isinstance(content, dict):
        return _content_to_text(content.get("content", ""))
    return str(content)


def parse_stream_event(data: dict[str, Any]) -> list[AgentEvent]:
    """Translate one Claude Code ``stream-json`` line into agent events."""
    event_type = data.get("type", "")
    session_id = data.get("session_id")

    if event_type == "system":
        if data.get("subtype") == "init":
            return [AgentEvent(kind=AgentEventKind.SESSION, session_id=session_id)]
        return []

    if event_type == "stream_event":
        inner = data.get("event") or {}
        delta = inner.get("delta") or {}
        if inner.get("type") == "content_block_delta" and delta.get("type") == "text_delta":
            return [AgentEvent(kind=AgentEventKind.TEXT_DELTA, text=delta.get("text", ""), session_id=session_id)]
        return []

    if event_type == "assistant":
        message = data.get("message") or {}
        content = message.get("content") or []
        if isinstance(content, str):
            return [AgentEvent(kind=AgentEventKind.ASSISTANT_TEXT, text=content, session_id=session_id)]
        events: list[AgentEvent] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                events.append(AgentEvent(kind=AgentEventKind.ASSISTANT_TEXT, text=block["text"], session_id=session_id))
            elif block_type == "tool_use":
                events.append(AgentEvent(kind=AgentEventKind.TOOL_USE, tool_name=block.get("name"), session_id=session_id))
        return events

    if event_type == "result":
        is_error = bool(data.get("is_error")) or data.get("subtype", "success") != "success"
        if is_error:
            errors = data.get("errors")
            detail = ", ".join(str(item) for item in errors) if isinstance(errors, list) and errors else ""
            text = detail or str(data.get("subtype") or data.get("result") or "unknown error")
        else:
            text = str(data.get("result") or "")
        return [AgentEvent(kind=AgentEventKind.RESULT, text=text, session_id=session_id, is_error=is_error)]

    return []


class ClaudeCodeRunner:
    """Runs the ``claude`` CLI in print mode and streams its JSON events."""

    def __init__(self, *, executable: str = "claude") -> None:
        self.executable = executable

    def build_args(self, brief: str, options: AgentOptions) -> list[str]:
        args = [
            self.executable,
            "-p",
            brief,
            "--output-format",
            "stream-json",
            "--verbose",
            "--include-partial-messages",
            "--max-turns",
            str(options.max_turns),
            "--permission-mode",
            options.permission_mode,
        ]
        if options.model:
            args.extend(["--model", options.model])
        return args

    def stream(self, brief: str, options: AgentOptions) -> Iterator[AgentEvent]:
        args = self.build_args(brief, options)
        logger.debug("Launching %s in %s", self.executable, options.working_directory)
        with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as stderr_handle:
            try:
                process = subprocess.Popen(
                    args,
                    cwd=str(options.working_directory),
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=stderr_handle,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except OSError as exc:
                raise AgentInvocationError(f"Unable to start agent executable {self.executable!r}: {exc}") from exc

            saw_result = False
            try:
                if process.stdout is None:
                    raise RuntimeError("agent process was started without a stdout pipe")
                try:
                    for line in process.stdout:
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            logger.debug("Skipping non-JSON agent output line: %s", line[:200])
                            continue
                        if not isinstance(data, dict):
                            continue
                        for event in parse_stream_event(data):
                            if event.kind == AgentEventKind.RESULT:
                                saw_result = True
                            yield event
                except (OSError, ValueError) as exc:
                    raise AgentInvocationError(f"Unable to read agent output: {exc}") from exc
                returncode = process.wait()
            finally:
                if process.poll() is None:
                    process.kill()
                    process.wait()

            if returncode != 0 and not saw_result:
                stderr_handle.seek(0)
                stderr_tail = stderr_handle.read()[-2000:].strip()
                raise AgentInvocationError(
                    f"Agent executable exited with status {returncode}: {stderr_tail or 'no stderr output'}"
                )


class DeepAgentRunner:
    """Runs a LangChain deep agent over the working directory.

    The deep agent graph counts roughly two supersteps per turn (model call
    plus tool execution), so the turn budget is mapped onto its recursion limit.
    """

    def __init__(
        self,
        *,
        model_name: str = DEFAULT_MODEL,
        system_prompt: str = DEEPAGENT_SYSTEM_PROMPT,
        model_factory: Callable[..., Any] = get_chat_model,
    ) -> None:
        self.model_name = model_name
        self.system_prompt = system_prompt
        self.model_factory = model_factory

    def stream(self, brief: str, options: AgentOptions) -> Iterator[AgentEvent]:
        model = self.model_factory(
            model_name=options.model or self.model_name,
            repo_root=options.working_directory,
        )
        backend = FilesystemBackend(root_dir=options.working_directory, virtual_mode=True)
        agent = create_deep_agent(
            model=model,
            tools=[],
            backend=backend,
            system_prompt=self.system_prompt,
            name="phase-loop-agent",
        )
        thread_id = f"phase-loop-{uuid.uuid4().hex[:8]}"
        yield AgentEvent(kind=AgentEventKind.SESSION, session_id=thread_id)

        config = {
            "recursion_limit": options.max_turns * 2 + 1,
            "configurable": {"thread_id": thread_id},
        }
        current_id: str | None = None
        buffer: list[str] = []
        try:
            for chunk, _metadata in agent.stream(
                {"messages": [{"role": "user", "content": brief}]},
                config=config,
                stream_mode="messages",
            ):
                if not isinstance(chunk, AIMessage):
                    continue
                if chunk.id != current_id:
                    if buffer:
                        yield AgentEvent(kind=AgentEventKind.ASSISTANT_TEXT, text="".join(buffer), session_id=thread_id)
                    buffer = []
                    current_id = chunk.id
                text = _content_to_text(chunk.content)
                if text:
                    buffer.append(text)
                    yield AgentEvent(kind=AgentEventKind.TEXT_DELTA, text=text, session_id=thread_id)
                for tool_chunk in getattr(chunk, "tool_call_chunks", None) or []:
                    name = tool_chunk.get("name")
                    if name:
                        yield AgentEvent(kind=AgentEventKind.TOOL_USE, tool_name=name, session_id=thread_id)
        except GraphRecursionError as exc:
            raise AgentInvocationError(
                f"Deep agent exceeded its turn budget of {options.max_turns}", session_id=thread_id
            ) from exc
        except Exception as exc:  # noqa: BLE001
            raise AgentInvocationError(f"Deep agent invocation failed: {exc}", session_id=thread_id) from exc

        if buffer:
            yield AgentEvent(kind=AgentEventKind.ASSISTANT_TEXT, text="".join(buffer), session_id=thread_id)
        yield AgentEvent(kind=AgentEventKind.RESULT, session_id=thread_id)


def build_runner(settings: RuntimeSettings) -> AgentRunner:
    """Return the agent runner selected by ``settings.agent_backend``."""
    if settings.agent_backend == "deepagent":
        return DeepAgentRunner(model_name=settings.model or DEFAULT_MODEL)
    return ClaudeCodeRunner(executable=settings.agent_executable)
