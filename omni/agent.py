import argparse
import asyncio
import functools
import json
import logging
import signal
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from importlib import metadata
from pathlib import Path

import tiktoken

from . import fmt
from .approval import POLICIES, ApprovalGate, ConsoleApprover, build_request
from .config import CONFIG_KEYS, _UNSET, apply_config_to_args, config_paths, data_dir, load_config
from .providers import (
    PROVIDERS,
    Backend,
    Finish,
    ModelConnector,
    TextDelta,
    ToolCall,
    ToolResult as ProviderToolResult,
    Usage,
    api_key_for,
    available_providers,
    create_connector,
    parse_provider_model,
)
from .report import (
    APPROVAL_DENIED,
    INVALID_ARGUMENTS,
    UNKNOWN_TOOL,
    AgentError,
    ConfigError,
    ReportCollector,
)
from .session import SessionStore, load_checkpoint_file, write_checkpoint
from .tools import SANDBOX_MODES, ToolRegistry, ToolResult, ToolSpec, build_registry

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_CONTEXT_CHARS = 10_000
PRIMARY_CONTEXT_FILE = "OMNI.md"
FALLBACK_CONTEXT_FILES = ("AGENTS.md", "CLAUDE.md", "GEMINI.md")

_encoder = tiktoken.get_encoding("cl100k_base")


class LoopState(str, Enum):
    STREAMING = "streaming"
    AWAITING_APPROVAL = "awaiting_approval"
    EXECUTING_TOOL = "executing_tool"
    DONE = "done"
    ABORTED = "aborted"


def estimate_tokens(messages: list, tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    total = 0
    for m in messages:
        content = m.get("content") or ""
        if not isinstance(content, str):
            content = json.dumps(content)
        for tc in m.get("tool_calls") or ():
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(_encoder.encode(content))
    if tools:
        total += len(_encoder.encode(json.dumps(tools)))
    # ~4 tokens of per-message overhead (role, separators)
    total += 4 * len(messages)
    return total


def load_context_files(base_dir: str, context_file: str | None = None) -> tuple[str, list[str]]:
    """Load project instructions from the workspace.

    An explicit context_file wins. Otherwise OMNI.md is used, else the first
    of AGENTS.md, CLAUDE.md, GEMINI.md that exists. Returns (text, loaded).
    """
    base = Path(base_dir).resolve()
    if context_file:
        candidates = [Path(context_file)]
    else:
        candidates = [base / PRIMARY_CONTEXT_FILE, *(base / n for n in FALLBACK_CONTEXT_FILES)]

    for path in candidates:
        if not path.is_file():
            continue
        try:
            with path.open(encoding="utf-8", errors="replace") as f:
                content = f.read(MAX_CONTEXT_CHARS + 1)
        except OSError:
            logger.debug("could not read %s", path, exc_info=True)
            continue
        if len(content) > MAX_CONTEXT_CHARS:
            content = (
                content[:MAX_CONTEXT_CHARS]
                + f"\n[truncated: {path.name} exceeds {MAX_CONTEXT_CHARS} characters]"
            )
        text = f'<project-instructions source="{path.name}">\n{content}\n</project-instructions>'
        return text, [path.name]
    return "", []


def build_system_prompt(
    base_dir: str,
    *,
    system_prompt: str | None = None,
    context_file: str | None = None,
    no_context_files: bool = False,
    sandbox: str = "workspace-write",
    approval_policy: str = "on-request",
) -> str:
    base = system_prompt or DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()
    parts = [
        base,
        f"Workspace: {Path(base_dir).resolve()}\n"
        f"Sandbox mode: {sandbox}\n"
        f"Approval policy: {approval_policy}",
    ]
    if not no_context_files:
        text, _ = load_context_files(base_dir, context_file)
        if text:
            parts.append(text)
    return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class OutputSink:
    """Observability hooks. Every method is optional; failures are ignored."""

    def on_token(self, text: str) -> None:
        pass

    def on_tool_call(self, name: str, args: dict) -> None:
        pass

    def on_tool_result(self, name: str, result: ToolResult) -> None:
        pass

    def on_turn_end(self, elapsed: float, finish_reason: str | None) -> None:
        pass


class ConsoleSink(OutputSink):
    """Streams model text to stdout and tool activity to the stderr console."""

    def __init__(self, verbose: bool = True, stream_text: bool = True):
        self.verbose = verbose
        self.stream_text = stream_text
        self.wrote_text = False

    def on_token(self, text):
        if self.stream_text:
            sys.stdout.write(text)
            sys.stdout.flush()
            self.wrote_text = True

    def end_line(self):
        if self.wrote_text:
            sys.stdout.write("\n")
            sys.stdout.flush()
            self.wrote_text = False

    def on_tool_call(self, name, args):
        if self.verbose and name != "think":
            self.end_line()
            fmt.tool_call(name, args)

    def on_tool_result(self, name, result):
        if not self.verbose or name == "think":
            return
        if result.success:
            fmt.tool_result(name, result.output or "")
        elif result.kind == APPROVAL_DENIED:
            fmt.approval_denied(name)
        else:
            fmt.tool_error(name, result.error or "")

    def on_turn_end(self, elapsed, finish_reason):
        if self.verbose:
            self.end_line()
            fmt.llm_timing(elapsed, finish_reason)


@dataclass
class AgentResponse:
    content: str = ""
    tool_calls: list[dict] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    step_limited: bool = False
    steps: int = 0

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "tool_calls": self.tool_calls,
            "usage": self.usage.to_dict(),
            "step_limited": self.step_limited,
            "steps": self.steps,
        }


class Agent:
    """Drives submit(): stream a model turn, gate and run its tool calls,
    fold results back, and repeat until a turn requests no tools or the
    step bound is reached.

    Callers must not run two submits on one Agent concurrently.
    """

    def __init__(
        self,
        connector: ModelConnector,
        registry: ToolRegistry,
        gate: ApprovalGate,
        *,
        system_prompt: str | None = None,
        prompt_builder=None,
        base_dir: str = ".",
        max_steps: int = 10,
        max_checkpoints: int = 10,
        sink: OutputSink | None = None,
        report: ReportCollector | None = None,
        checkpoint_dir: Path | None = None,
    ):
        if max_steps < 1:
            raise ValueError("max_steps must be at least 1")
        self.connector = connector
        self.registry = registry
        self.gate = gate
        self.base_dir = base_dir
        self.max_steps = max_steps
        self.sink = sink or OutputSink()
        self.report = report
        self.prompt_builder = prompt_builder
        if system_prompt is None:
            system_prompt = prompt_builder() if prompt_builder else ""
        self.session = SessionStore(system_prompt, max_checkpoints=max_checkpoints)
        self.checkpoint_dir = checkpoint_dir
        self.state = LoopState.DONE

    @property
    def messages(self) -> list[dict]:
        return self.session.messages

    @property
    def stats(self):
        return self.session.stats

    def context(self) -> dict:
        return {
            "provider": str(self.connector.backend),
            "model": self.connector.model,
            "working_dir": str(Path(self.base_dir).resolve()),
        }

    def _emit(self, hook: str, *args) -> None:
        try:
            getattr(self.sink, hook)(*args)
        except Exception:
            logger.debug("output sink %s failed", hook, exc_info=True)

    async def submit(self, text: str) -> AgentResponse:
        """Run one user request to completion.

        Raises ConnectorError when the backend fails; the session then holds
        everything committed before the failure and nothing partial.
        """
        self.session.append({"role": "user", "content": text})
        response = AgentResponse()
        try:
            turn = 0
            while not response.step_limited:
                turn += 1
                dispatched = await self._turn(response, turn)
                if not dispatched:
                    break
            self.state = LoopState.DONE
            return response
        except BaseException:
            self.state = LoopState.ABORTED
            raise
        finally:
            self.stats.add_usage(response.usage)

    async def _turn(self, response: AgentResponse, turn: int) -> int:
        """Stream one model turn. Returns the number of tool calls dispatched."""
        self.state = LoopState.STREAMING
        pending = ""
        dispatched = 0
        finish = None
        t0 = time.monotonic()
        stream = self.connector.stream(self.session.messages, self.registry.schemas())
        try:
            async for event in stream:
                if isinstance(event, TextDelta):
                    pending += event.text
                    response.content += event.text
                    self._emit("on_token", event.text)
                elif isinstance(event, ToolCall):
                    await self._dispatch(event, pending, response)
                    pending = ""
                    dispatched += 1
                    response.steps += 1
                    if response.steps >= self.max_steps:
                        response.step_limited = True
                        break
                    self.state = LoopState.STREAMING
                elif isinstance(event, ProviderToolResult):
                    result = ToolResult(
                        success=bool(event.result.get("success", True)),
                        output=event.result.get("output"),
                        error=event.result.get("error"),
                    )
                    response.tool_calls.append(
                        {"name": event.name, "args": None, "result": result.to_dict()}
                    )
                    self._emit("on_tool_result", event.name, result)
                elif isinstance(event, Finish):
                    finish = event
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        elapsed = time.monotonic() - t0
        usage = finish.usage if finish is not None else self.connector.usage
        if usage is not None:
            response.usage = response.usage + usage
        finish_reason = finish.finish_reason if finish else None
        if self.report:
            self.report.record_llm_call(turn, elapsed, finish_reason)
        self._emit("on_turn_end", elapsed, finish_reason)

        if pending or not dispatched:
            self.session.append({"role": "assistant", "content": pending})
        return dispatched

    def _commit(self, call: ToolCall, preface: str, result: ToolResult) -> None:
        self.session.append(
            {
                "role": "assistant",
                "content": preface or None,
                "tool_calls": [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": call.arguments},
                    }
                ],
            }
        )
        self.session.append(
            {
                "role": "tool",
                "tool_call_id": call.id,
                "content": result.as_content(),
                "success": result.success,
            }
        )

    async def _dispatch(self, call: ToolCall, preface: str, response: AgentResponse) -> None:
        self.stats.bump("tool_calls")
        step = response.steps + 1
        args = None
        try:
            args = json.loads(call.arguments or "{}")
        except json.JSONDecodeError as e:
            result = ToolResult.failure(f"invalid JSON in tool arguments: {e}", kind=INVALID_ARGUMENTS)
        else:
            if not isinstance(args, dict):
                result = ToolResult.failure(
                    "tool arguments must be a JSON object", kind=INVALID_ARGUMENTS
                )
                args = None
            else:
                result = None

        spec = self.registry.get(call.name)
        if result is None and spec is None:
            result = ToolResult.failure(f"Unknown tool: {call.name}", kind=UNKNOWN_TOOL)

        if result is None:
            self._emit("on_tool_call", call.name, args)
            self.state = LoopState.AWAITING_APPROVAL
            try:
                approved, prompted = await self.gate.check(spec, args)
            except asyncio.CancelledError:
                denied = ToolResult.failure(f"{call.name} was not approved (interrupted)", kind=APPROVAL_DENIED)
                self._commit(call, preface, denied)
                raise
            if spec.requires_approval and self.report:
                self.report.record_approval(call.name, approved, prompted)
            if approved:
                result = await self._execute(spec, args, step)
                if not result.success and self.gate.should_retry(spec):
                    self.state = LoopState.AWAITING_APPROVAL
                    request = build_request(spec, args)
                    if await self.gate.ask(request):
                        result = await self._execute(spec, args, step)
            else:
                result = ToolResult.failure(f"{call.name} was not approved", kind=APPROVAL_DENIED)

        if result.kind in (UNKNOWN_TOOL, INVALID_ARGUMENTS, APPROVAL_DENIED) and self.report:
            self.report.record_tool_call(
                step, call.name, args, False, 0.0, kind=result.kind, error=result.error
            )
        self._commit(call, preface, result)
        response.tool_calls.append({"name": call.name, "args": args, "result": result.to_dict()})
        self._emit("on_tool_result", call.name, result)

    async def _execute(self, spec: ToolSpec, args: dict, step: int) -> ToolResult:
        self.state = LoopState.EXECUTING_TOOL
        if spec.stat:
            self.stats.bump(spec.stat)
        t0 = time.monotonic()
        result = await self.registry.execute(spec.name, args)
        elapsed = time.monotonic() - t0
        if self.report:
            self.report.record_tool_call(
                step, spec.name, args, result.success, elapsed, kind=result.kind, error=result.error
            )
        return result

    # -- session operations --------------------------------------------------

    def save_checkpoint(self, tag: str | None = None):
        cp = self.session.save_checkpoint(self.context(), tag)
        if self.checkpoint_dir is not None:
            try:
                write_checkpoint(cp, self.checkpoint_dir / self.session.id)
            except OSError as e:
                fmt.warning(f"could not write checkpoint {cp.id}: {e}")
        return cp

    def restore_checkpoint(self, id_or_tag: str):
        return self.session.restore_checkpoint(id_or_tag)

    def clear(self) -> None:
        self.session.clear()

    def compact(self) -> int:
        return self.session.compact()

    def refresh_context(self) -> str:
        """Rebuild the system prompt (context files included) in place."""
        if self.prompt_builder is not None:
            self.session.set_system_prompt(self.prompt_builder())
        return self.session.system_prompt

    def switch_provider(self, provider, model: str | None = None, **kwargs) -> ModelConnector:
        self.connector = create_connector(provider, model, **kwargs)
        return self.connector

    def close(self) -> None:
        self.registry.close()


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="omni",
        usage="%(prog)s [options] [prompt]",
        description="A terminal agent that talks to a language model and acts on your workspace "
        "under a configurable approval policy. Without a prompt, starts an interactive session.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "--list-providers",
        action="store_true",
        help="List model backends, their default models and API key status, then exit.",
    )
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Print the effective configuration and config file locations, then exit.",
    )
    parser.add_argument("prompt", nargs="?", default=None, help="Run this request once and exit.")
    parser.add_argument(
        "-p",
        "--provider",
        choices=[b.value for b in Backend],
        default=_UNSET,
        help="Model backend (default: openai).",
    )
    parser.add_argument(
        "-m",
        "--model",
        default=_UNSET,
        help='Model name, optionally prefixed with the provider ("anthropic:claude-sonnet-4-20250514").',
    )
    parser.add_argument("--api-key", default=_UNSET, help="API key (overrides env var).")
    parser.add_argument("--base-url", default=_UNSET, help="Custom API base URL.")
    parser.add_argument(
        "--sandbox",
        choices=SANDBOX_MODES,
        default=_UNSET,
        help="What tools may touch (default: workspace-write).",
    )
    parser.add_argument(
        "-a",
        "--approval-policy",
        choices=POLICIES,
        default=_UNSET,
        help="When tool calls need confirmation (default: on-request).",
    )
    parser.add_argument(
        "--full-auto",
        action="store_true",
        help="Shorthand for --approval-policy never.",
    )
    parser.add_argument(
        "--retry-on-failure",
        action="store_true",
        default=_UNSET,
        help="Under on-failure, ask before retrying a failed tool call once.",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=_UNSET,
        help="Maximum tool calls per request (default: 10).",
    )
    parser.add_argument(
        "--max-checkpoints",
        type=int,
        default=_UNSET,
        help="Checkpoints kept per session (default: 10).",
    )
    parser.add_argument("--system-prompt", default=_UNSET, help="Replace the built-in system prompt.")
    parser.add_argument(
        "--context-file", default=_UNSET, help="Load project instructions from this file."
    )
    parser.add_argument(
        "--no-context-files",
        action="store_true",
        default=_UNSET,
        help="Don't load OMNI.md / AGENTS.md / CLAUDE.md / GEMINI.md.",
    )
    parser.add_argument(
        "--base-dir",
        default=".",
        help="Workspace directory for file and shell tools (default: current directory).",
    )
    parser.add_argument("--profile", default=_UNSET, help="Config profile to apply.")
    parser.add_argument(
        "--resume",
        default=None,
        metavar="FILE",
        help="Start from a checkpoint file saved by an earlier session.",
    )
    parser.add_argument(
        "--json", action="store_true", help="Print the response as JSON (one-shot mode)."
    )
    parser.add_argument("-o", "--output", default=None, help="Write the final answer to a file.")
    parser.add_argument("--report", default=None, help="Write a JSON run report to a file.")

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color", action="store_true", default=_UNSET, help="Force ANSI color."
    )
    color_group.add_argument(
        "--no-color", action="store_true", default=_UNSET, help="Disable ANSI color."
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print the answer.",
    )
    parser.add_argument(
        "--debug", action="store_true", default=_UNSET, help="Enable debug logging."
    )
    return parser


def resolve_provider_model(provider: str, model: str | None) -> tuple[Backend, str | None]:
    """Apply a "provider:model" prefix in model, except for openrouter's org/model ids."""
    backend = Backend(provider)
    if model and backend is not Backend.OPENROUTER:
        parsed = parse_provider_model(model)
        if parsed:
            return parsed
    return backend, model


def usable_backend(
    backend: Backend, api_key: str | None = None, base_url: str | None = None
) -> Backend:
    """Keep backend when it has credentials, otherwise the first backend that does.

    An explicit key or base URL always keeps the requested backend.
    """
    if api_key or base_url:
        return backend
    available = available_providers()
    if backend in available:
        return backend
    return available[0]


def _print_providers() -> None:
    for backend in Backend:
        info = PROVIDERS[backend]
        ready = backend is Backend.OLLAMA or api_key_for(backend) is not None
        print(f"{'✓' if ready else '✗'} {backend.value} ({info.display_name})")
        print(f"  default model: {info.default_model}")
        print(f"  models: {len(info.models)}")
        if not ready:
            print(f"  no API key: set {' or '.join(info.env_keys)}")


def _print_config(args) -> None:
    settings = {key: getattr(args, key, None) for key in CONFIG_KEYS}
    if settings["api_key"]:
        settings["api_key"] = "***"
    global_path, project_path = config_paths(Path(args.base_dir))
    print(
        json.dumps(
            {
                "settings": settings,
                "config_files": {
                    "global": {"path": str(global_path), "exists": global_path.is_file()},
                    "project": {"path": str(project_path), "exists": project_path.is_file()},
                },
            },
            indent=2,
        )
    )


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("omni-cli")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.list_providers:
        _print_providers()
        sys.exit(0)

    if args.report and args.prompt is None:
        parser.error("--report needs a prompt (it is not available in interactive mode)")
    if args.json and args.prompt is None:
        parser.error("--json needs a prompt")

    try:
        profile = None if args.profile is _UNSET else args.profile
        config = load_config(Path(args.base_dir), profile=profile)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    if args.full_auto:
        args.approval_policy = "never"
    if args.show_config:
        _print_config(args)
        sys.exit(0)
    if args.max_steps < 1:
        parser.error("--max-steps must be at least 1")
    if args.max_checkpoints < 1:
        parser.error("--max-checkpoints must be at least 1")

    fmt.init(color=args.color, no_color=args.no_color, debug=args.debug)
    args.verbose = not args.quiet

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, usage=None, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.prompt or "",
            model=getattr(args, "_resolved_model", args.model or "unknown"),
            provider=getattr(args, "_resolved_provider", args.provider),
            settings={
                "sandbox": args.sandbox,
                "approval_policy": args.approval_policy,
                "retry_on_failure": args.retry_on_failure,
                "max_steps": args.max_steps,
                "profile": args.profile,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            usage=usage,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        code = asyncio.run(_run_main(args, report, _write_report))
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        fmt.warning("interrupted")
        sys.exit(130)
    sys.exit(code)


async def _run_main(args, report, _write_report) -> int:
    base_dir = str(Path(args.base_dir).resolve())
    if not Path(base_dir).is_dir():
        raise AgentError(f"workspace is not a directory: {args.base_dir}")

    backend, model = resolve_provider_model(args.provider, args.model)
    usable = usable_backend(backend, args.api_key, args.base_url)
    if usable is not backend:
        fmt.warning(f"no API key for {backend.value}; switching to available provider {usable.value}")
        backend, model = usable, None
    connector = create_connector(backend, model, api_key=args.api_key, base_url=args.base_url)
    args._resolved_provider = str(connector.backend)
    args._resolved_model = connector.model

    interactive = args.prompt is None
    if interactive and not sys.stdin.isatty():
        raise AgentError("no prompt given and stdin is not a terminal")

    approver = ConsoleApprover() if sys.stdin.isatty() else None
    if approver is None and args.approval_policy in ("untrusted", "on-request") and args.verbose:
        fmt.info("no terminal for approvals: tools that need approval will be denied")
    gate = ApprovalGate(args.approval_policy, approver, retry_on_failure=args.retry_on_failure)

    registry = build_registry(base_dir, args.sandbox)
    prompt_builder = functools.partial(
        build_system_prompt,
        base_dir,
        system_prompt=args.system_prompt,
        context_file=args.context_file,
        no_context_files=args.no_context_files,
        sandbox=args.sandbox,
        approval_policy=args.approval_policy,
    )
    sink = ConsoleSink(verbose=args.verbose, stream_text=not (args.json or args.output))
    agent = Agent(
        connector,
        registry,
        gate,
        prompt_builder=prompt_builder,
        base_dir=base_dir,
        max_steps=args.max_steps,
        max_checkpoints=args.max_checkpoints,
        sink=sink,
        report=report,
        checkpoint_dir=data_dir() / "checkpoints",
    )
    if args.resume:
        try:
            cp = load_checkpoint_file(Path(args.resume))
        except (OSError, ValueError, KeyError) as e:
            raise AgentError(f"could not load checkpoint {args.resume}: {e}") from e
        agent.session.load_checkpoint(cp)
        if args.verbose:
            fmt.info(f"resumed checkpoint {cp.id} ({len(cp.messages)} messages)")
    if args.verbose:
        fmt.model_info(f"Using {connector.label}")
        fmt.context_stats("System prompt", estimate_tokens(agent.messages[:1]))

    try:
        if interactive:
            await repl_loop(agent, sandbox=args.sandbox, verbose=args.verbose)
            return 0
        return await _one_shot(agent, args, _write_report)
    finally:
        agent.close()


async def _one_shot(agent: Agent, args, _write_report) -> int:
    response = await agent.submit(args.prompt)
    agent.sink.end_line()
    exit_code = 2 if response.step_limited else 0

    if args.json:
        print(json.dumps(response.to_dict(), indent=2, default=str))
    elif args.output:
        Path(args.output).write_text(response.content + "\n", encoding="utf-8")
        if args.verbose:
            fmt.info(f"Answer written to {args.output}")

    if args.verbose:
        if response.step_limited:
            fmt.step_limit(response.steps)
        u = response.usage
        fmt.usage(u.prompt_tokens, u.completion_tokens, u.total_tokens)

    _write_report(
        "step_limited" if response.step_limited else "success",
        answer=response.content,
        exit_code=exit_code,
        usage=response.usage.to_dict(),
    )
    return exit_code


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help(agent: Agent, arg: str) -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                      Show this help message\n"
        "  /clear                     Reset the conversation and statistics\n"
        "  /compact                   Fold older messages into a short summary\n"
        "  /save [tag]                Save a checkpoint\n"
        "  /restore <id|tag>          Restore a checkpoint\n"
        "  /checkpoints               List checkpoints\n"
        "  /stats                     Show session statistics\n"
        "  /model [provider[:model]]  Show or switch the model\n"
        "  /approval [policy]         Show or change the approval policy\n"
        "  /refresh                   Reload context files into the system prompt\n"
        "  /exit, /quit               Exit the REPL"
    )


def _repl_clear(agent: Agent, arg: str) -> None:
    dropped = len(agent.messages) - 1
    agent.clear()
    fmt.info(f"context cleared ({dropped} messages removed)")


def _repl_compact(agent: Agent, arg: str) -> None:
    before = estimate_tokens(agent.messages)
    elided = agent.compact()
    if not elided:
        fmt.info("nothing to compact")
        return
    after = estimate_tokens(agent.messages)
    fmt.info(f"compacted {elided} messages: {before} -> {after} tokens ({before - after} saved)")


def _repl_save(agent: Agent, arg: str) -> None:
    cp = agent.save_checkpoint(arg.strip() or None)
    fmt.checkpoint_saved(cp.id, cp.tag)


def _repl_restore(agent: Agent, arg: str) -> None:
    key = arg.strip()
    if not key:
        fmt.warning("/restore requires a checkpoint id or tag")
        return
    cp = agent.restore_checkpoint(key)
    if cp is None:
        fmt.warning(f"no checkpoint matches {key!r}")
        return
    fmt.info(f"restored checkpoint {cp.id} ({len(cp.messages)} messages)")


def _repl_checkpoints(agent: Agent, arg: str) -> None:
    store = agent.session
    if not store.checkpoints:
        fmt.info("no checkpoints saved")
        return
    rows = [
        (i, cp.id, cp.tag or "", cp.timestamp.strftime("%Y-%m-%d %H:%M:%S"), len(cp.messages))
        for i, cp in enumerate(store.checkpoints)
    ]
    fmt.checkpoint_table(rows, store.current)


def _repl_stats(agent: Agent, arg: str) -> None:
    stats = agent.stats.to_dict()
    stats["model"] = agent.connector.label
    stats["messages"] = len(agent.messages)
    fmt.stats_table(stats, estimate_tokens(agent.messages, agent.registry.schemas()))


def _repl_model(agent: Agent, arg: str) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"model: {agent.connector.label}")
        return
    parsed = parse_provider_model(arg)
    if parsed:
        agent.switch_provider(*parsed)
    elif arg.lower() in {b.value for b in Backend}:
        agent.switch_provider(arg)
    else:
        # bare model name: stay on the current backend
        agent.switch_provider(agent.connector.backend, arg)
    fmt.info(f"switched to {agent.connector.label}")


def _repl_approval(agent: Agent, arg: str) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"approval policy: {agent.gate.policy}")
        return
    if arg not in POLICIES:
        fmt.warning(f"unknown policy {arg!r} (choose from {', '.join(POLICIES)})")
        return
    agent.gate.policy = arg
    fmt.info(f"approval policy set to {arg}")


def _repl_refresh(agent: Agent, arg: str) -> None:
    agent.refresh_context()
    fmt.context_stats("System prompt reloaded", estimate_tokens(agent.messages[:1]))


REPL_COMMANDS = {
    "/help": _repl_help,
    "/clear": _repl_clear,
    "/compact": _repl_compact,
    "/save": _repl_save,
    "/restore": _repl_restore,
    "/checkpoints": _repl_checkpoints,
    "/stats": _repl_stats,
    "/model": _repl_model,
    "/approval": _repl_approval,
    "/refresh": _repl_refresh,
}


async def _repl_submit(agent: Agent, line: str) -> None:
    """Run one submit; Ctrl-C cancels it and returns to the prompt."""
    loop = asyncio.get_running_loop()
    task = asyncio.ensure_future(agent.submit(line))
    try:
        loop.add_signal_handler(signal.SIGINT, task.cancel)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        await task
    except asyncio.CancelledError:
        if not task.cancelled():
            raise
        fmt.warning("interrupted")
    except AgentError as e:
        fmt.error(str(e))
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
        end_line = getattr(agent.sink, "end_line", None)
        if end_line:
            end_line()


async def repl_loop(
    agent: Agent,
    *,
    sandbox: str = "workspace-write",
    verbose: bool = True,
    history_path: Path | None = None,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = history_path or data_dir() / "history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    session = PromptSession(history=FileHistory(str(history_path)), enable_history_search=True)
    prompt_text = FormattedText([("bold fg:ansigreen", "omni> ")])

    if verbose:
        fmt.repl_banner(
            str(agent.connector.backend), agent.connector.model, sandbox, agent.gate.policy
        )

    while True:
        try:
            print(file=sys.stderr)
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd, _, cmd_arg = line.partition(" ")
        handler = REPL_COMMANDS.get(cmd.lower())
        if handler is not None:
            handler(agent, cmd_arg)
            continue
        # unknown /foo input goes to the model
        await _repl_submit(agent, line)

