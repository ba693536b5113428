"""Tests for the CLI parser and the interactive REPL commands."""

import asyncio
import os
import signal
import sys
from io import StringIO
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from rich.console import Console

from omni import fmt
from omni.agent import (
    Agent,
    _repl_approval,
    _repl_checkpoints,
    _repl_clear,
    _repl_compact,
    _repl_help,
    _repl_model,
    _repl_refresh,
    _repl_restore,
    _repl_save,
    _repl_stats,
    _repl_submit,
    build_parser,
    repl_loop,
    resolve_provider_model,
)
from omni.approval import ApprovalGate
from omni.config import _UNSET
from omni.providers import Backend, Finish, ModelConnector, TextDelta, Usage
from omni.report import ConnectorError
from omni.tools import ToolRegistry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class EchoConnector(ModelConnector):
    """Answers every request with "echo: <last user message>"."""

    backend = Backend.OPENAI
    model = "echo"

    def __init__(self):
        self.calls = 0

    async def stream(self, messages, tools):
        self.calls += 1
        last = messages[-1]["content"]
        yield TextDelta(f"echo: {last}")
        yield Finish(Usage(2, 2, 4), "stop")


def _agent(tmp_path, connector=None, **kwargs):
    return Agent(
        connector or EchoConnector(),
        ToolRegistry(),
        ApprovalGate("on-request"),
        system_prompt=kwargs.pop("system_prompt", "sys"),
        base_dir=str(tmp_path),
        **kwargs,
    )


def _converse(agent, *lines):
    for line in lines:
        asyncio.run(agent.submit(line))


@pytest.fixture
def out():
    """Capture fmt output as plain text."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=200)
    yield buf
    fmt._console = old


def _mock_session(inputs):
    """A PromptSession stand-in whose prompt_async() returns inputs in order."""
    session = MagicMock()
    session.prompt_async = AsyncMock(side_effect=list(inputs))
    return session


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


class TestArgumentParsing:
    def test_prompt_optional(self):
        args = build_parser().parse_args([])
        assert args.prompt is None
        assert args.provider is _UNSET
        assert args.approval_policy is _UNSET

    def test_one_shot_options(self):
        args = build_parser().parse_args(
            ["-p", "anthropic", "-a", "untrusted", "--sandbox", "read-only", "--json", "fix it"]
        )
        assert args.prompt == "fix it"
        assert args.provider == "anthropic"
        assert args.approval_policy == "untrusted"
        assert args.sandbox == "read-only"
        assert args.json is True

    def test_invalid_policy_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["-a", "sometimes"])

    def test_color_flags_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--color", "--no-color"])

    @pytest.mark.parametrize(
        "provider, model, expected",
        [
            ("openai", None, (Backend.OPENAI, None)),
            ("openai", "gpt-4o-mini", (Backend.OPENAI, "gpt-4o-mini")),
            ("openai", "anthropic:claude-3-5-haiku-20241022", (Backend.ANTHROPIC, "claude-3-5-haiku-20241022")),
            ("openrouter", "anthropic/claude-3.5-sonnet", (Backend.OPENROUTER, "anthropic/claude-3.5-sonnet")),
        ],
    )
    def test_resolve_provider_model(self, provider, model, expected):
        assert resolve_provider_model(provider, model) == expected


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestHelpCommand:
    def test_lists_commands(self, tmp_path, out):
        _repl_help(_agent(tmp_path), "")
        text = out.getvalue()
        for cmd in ("/clear", "/compact", "/save", "/restore", "/checkpoints", "/stats", "/model"):
            assert cmd in text


class TestClearCommand:
    def test_clear(self, tmp_path, out):
        agent = _agent(tmp_path)
        _converse(agent, "one", "two")
        _repl_clear(agent, "")
        assert agent.messages == [{"role": "system", "content": "sys"}]
        assert agent.stats.total_tokens == 0
        assert "4 messages removed" in out.getvalue()


class TestCompactCommand:
    def test_nothing_to_compact(self, tmp_path, out):
        agent = _agent(tmp_path)
        _converse(agent, "only")
        _repl_compact(agent, "")
        assert "nothing to compact" in out.getvalue()
        assert len(agent.messages) == 3

    def test_compacts(self, tmp_path, out):
        agent = _agent(tmp_path)
        _converse(agent, "a", "b", "c", "d")
        _repl_compact(agent, "")
        assert len(agent.messages) == 6
        assert "compacted 4 messages" in out.getvalue()


class TestCheckpointCommands:
    def test_save_list_restore(self, tmp_path, out):
        agent = _agent(tmp_path)
        _converse(agent, "first")
        _repl_save(agent, "  before-refactor ")
        cp = agent.session.checkpoints[0]
        assert cp.tag == "before-refactor"
        assert "before-refactor" in out.getvalue()

        _converse(agent, "second")
        _repl_checkpoints(agent, "")
        assert cp.id in out.getvalue()

        _repl_restore(agent, "before-refactor")
        assert agent.messages == cp.messages
        assert f"restored checkpoint {cp.id} (3 messages)" in out.getvalue()

    def test_restore_needs_argument(self, tmp_path, out):
        _repl_restore(_agent(tmp_path), "")
        assert "requires a checkpoint id or tag" in out.getvalue()

    def test_restore_unknown(self, tmp_path, out):
        agent = _agent(tmp_path)
        _converse(agent, "x")
        before = list(agent.messages)
        _repl_restore(agent, "ghost")
        assert agent.messages == before
        assert "no checkpoint matches 'ghost'" in out.getvalue()

    def test_no_checkpoints(self, tmp_path, out):
        _repl_checkpoints(_agent(tmp_path), "")
        assert "no checkpoints saved" in out.getvalue()


class TestStatsCommand:
    def test_shows_counters(self, tmp_path, out):
        agent = _agent(tmp_path)
        _converse(agent, "hi")
        _repl_stats(agent, "")
        text = out.getvalue()
        assert "openai/echo" in text
        assert "total_tokens" in text
        assert "context (est.)" in text


class TestModelCommand:
    def test_show(self, tmp_path, out):
        _repl_model(_agent(tmp_path), "")
        assert "model: openai/echo" in out.getvalue()

    def test_switch_with_prefix(self, tmp_path, out):
        agent = _agent(tmp_path)
        _converse(agent, "keep me")
        _repl_model(agent, "anthropic:claude-3-5-haiku-20241022")
        assert agent.connector.label == "anthropic/claude-3-5-haiku-20241022"
        assert agent.messages[1]["content"] == "keep me"

    def test_switch_provider_only(self, tmp_path, out):
        agent = _agent(tmp_path)
        _repl_model(agent, "ollama")
        assert agent.connector.label == "ollama/llama3.2"

    def test_bare_model_keeps_backend(self, tmp_path, out):
        agent = _agent(tmp_path)
        _repl_model(agent, "gpt-4o-mini")
        assert agent.connector.label == "openai/gpt-4o-mini"


class TestApprovalCommand:
    def test_show_and_set(self, tmp_path, out):
        agent = _agent(tmp_path)
        _repl_approval(agent, "")
        assert "approval policy: on-request" in out.getvalue()
        _repl_approval(agent, "never")
        assert agent.gate.policy == "never"

    def test_unknown_policy(self, tmp_path, out):
        agent = _agent(tmp_path)
        _repl_approval(agent, "yolo")
        assert agent.gate.policy == "on-request"
        assert "unknown policy" in out.getvalue()


class TestRefreshCommand:
    def test_reloads_prompt(self, tmp_path, out):
        notes = tmp_path / "notes.txt"
        notes.write_text("v1")
        agent = Agent(
            EchoConnector(),
            ToolRegistry(),
            ApprovalGate("on-request"),
            prompt_builder=notes.read_text,
            base_dir=str(tmp_path),
        )
        notes.write_text("v2")
        _repl_refresh(agent, "")
        assert agent.messages[0] == {"role": "system", "content": "v2"}
        assert "System prompt reloaded" in out.getvalue()


# ---------------------------------------------------------------------------
# Submitting and the loop itself
# ---------------------------------------------------------------------------


class TestReplSubmit:
    def test_connector_error_is_reported(self, tmp_path, out):
        class Failing(EchoConnector):
            async def stream(self, messages, tools):
                raise ConnectorError("LLM call failed: timeout")
                yield

        agent = _agent(tmp_path, Failing())
        asyncio.run(_repl_submit(agent, "hello"))
        assert "timeout" in out.getvalue()
        assert agent.messages[-1] == {"role": "user", "content": "hello"}

    @pytest.mark.skipif(sys.platform == "win32", reason="signal handlers need a unix event loop")
    def test_ctrl_c_cancels_the_request(self, tmp_path, out):
        class Hanging(EchoConnector):
            async def stream(self, messages, tools):
                yield TextDelta("partial")
                await asyncio.Event().wait()

        agent = _agent(tmp_path, Hanging())

        async def scenario():
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, os.kill, os.getpid(), signal.SIGINT)
            await _repl_submit(agent, "slow question")

        asyncio.run(scenario())
        assert "interrupted" in out.getvalue()
        assert agent.state == "aborted"
        assert all(m["role"] != "assistant" for m in agent.messages)


class TestReplLoop:
    def _run(self, agent, tmp_path, inputs):
        with patch("prompt_toolkit.PromptSession", return_value=_mock_session(inputs)):
            asyncio.run(repl_loop(agent, verbose=False, history_path=tmp_path / "hist" / "history"))

    def test_exit_command(self, tmp_path, out):
        agent = _agent(tmp_path)
        self._run(agent, tmp_path, ["/exit"])
        assert len(agent.messages) == 1
        assert agent.connector.calls == 0

    def test_eof_exits(self, tmp_path, out):
        agent = _agent(tmp_path)
        self._run(agent, tmp_path, ["hello", EOFError()])
        assert agent.messages[-1] == {"role": "assistant", "content": "echo: hello"}

    def test_commands_do_not_reach_the_model(self, tmp_path, out):
        agent = _agent(tmp_path)
        self._run(agent, tmp_path, ["/help", "/stats", "  ", "/quit"])
        assert agent.connector.calls == 0

    def test_unknown_slash_goes_to_model(self, tmp_path, out):
        agent = _agent(tmp_path)
        self._run(agent, tmp_path, ["/frobnicate now", "/exit"])
        assert agent.messages[-1]["content"] == "echo: /frobnicate now"

    def test_conversation_with_checkpoints(self, tmp_path, out):
        agent = _agent(tmp_path)
        self._run(agent, tmp_path, ["one", "/save s1", "two", "/restore s1", "/exit"])
        assert [m["content"] for m in agent.messages] == ["sys", "one", "echo: one"]
        assert agent.connector.calls == 2
