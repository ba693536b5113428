"""Tests for project instruction loading and system prompt assembly."""

from omni.agent import MAX_CONTEXT_CHARS, build_system_prompt, estimate_tokens, load_context_files


# ---------------------------------------------------------------------------
# File discovery
# ---------------------------------------------------------------------------


class TestFileDiscovery:
    def test_no_context_files(self, tmp_path):
        assert load_context_files(str(tmp_path)) == ("", [])

    def test_omni_md_wins(self, tmp_path):
        (tmp_path / "OMNI.md").write_text("Use tabs.", encoding="utf-8")
        (tmp_path / "AGENTS.md").write_text("Use spaces.", encoding="utf-8")
        text, loaded = load_context_files(str(tmp_path))
        assert loaded == ["OMNI.md"]
        assert text == '<project-instructions source="OMNI.md">\nUse tabs.\n</project-instructions>'

    def test_fallback_order(self, tmp_path):
        (tmp_path / "GEMINI.md").write_text("gemini", encoding="utf-8")
        (tmp_path / "CLAUDE.md").write_text("claude", encoding="utf-8")
        text, loaded = load_context_files(str(tmp_path))
        assert loaded == ["CLAUDE.md"]
        assert "claude" in text and "gemini" not in text

    def test_explicit_file(self, tmp_path):
        (tmp_path / "OMNI.md").write_text("default", encoding="utf-8")
        custom = tmp_path / "docs" / "rules.md"
        custom.parent.mkdir()
        custom.write_text("custom rules", encoding="utf-8")
        text, loaded = load_context_files(str(tmp_path), str(custom))
        assert loaded == ["rules.md"]
        assert "custom rules" in text

    def test_missing_explicit_file(self, tmp_path):
        (tmp_path / "OMNI.md").write_text("default", encoding="utf-8")
        assert load_context_files(str(tmp_path), str(tmp_path / "nope.md")) == ("", [])

    def test_directory_named_like_context_file(self, tmp_path):
        (tmp_path / "OMNI.md").mkdir()
        (tmp_path / "AGENTS.md").write_text("agents", encoding="utf-8")
        assert load_context_files(str(tmp_path))[1] == ["AGENTS.md"]


class TestTruncation:
    def test_at_limit_not_truncated(self, tmp_path):
        (tmp_path / "OMNI.md").write_text("a" * MAX_CONTEXT_CHARS, encoding="utf-8")
        text, _ = load_context_files(str(tmp_path))
        assert "[truncated" not in text

    def test_over_limit_truncated(self, tmp_path):
        (tmp_path / "OMNI.md").write_text("a" * MAX_CONTEXT_CHARS + "TAIL", encoding="utf-8")
        text, _ = load_context_files(str(tmp_path))
        assert "TAIL" not in text
        assert f"[truncated: OMNI.md exceeds {MAX_CONTEXT_CHARS} characters]" in text


# ---------------------------------------------------------------------------
# System prompt
# ---------------------------------------------------------------------------


class TestSystemPrompt:
    def test_default_prompt_with_environment(self, tmp_path):
        prompt = build_system_prompt(str(tmp_path), sandbox="read-only", approval_policy="untrusted")
        assert f"Workspace: {tmp_path.resolve()}" in prompt
        assert "Sandbox mode: read-only" in prompt
        assert "Approval policy: untrusted" in prompt
        assert "project-instructions" not in prompt

    def test_custom_prompt_replaces_default(self, tmp_path):
        prompt = build_system_prompt(str(tmp_path), system_prompt="You are terse.")
        assert prompt.startswith("You are terse.\n\nWorkspace:")

    def test_context_appended(self, tmp_path):
        (tmp_path / "OMNI.md").write_text("Run make test.", encoding="utf-8")
        prompt = build_system_prompt(str(tmp_path))
        assert prompt.endswith("Run make test.\n</project-instructions>")

    def test_no_context_files(self, tmp_path):
        (tmp_path / "OMNI.md").write_text("Run make test.", encoding="utf-8")
        assert "Run make test." not in build_system_prompt(str(tmp_path), no_context_files=True)


class TestEstimateTokens:
    def test_grows_with_content(self):
        short = estimate_tokens([{"role": "user", "content": "hi"}])
        long = estimate_tokens([{"role": "user", "content": "hi " * 200}])
        assert 0 < short < long

    def test_counts_tool_calls_and_schemas(self):
        msgs = [
            {
                "role": "assistant",
                "content": None,
                "tool_calls": [{"id": "c", "function": {"name": "read_file", "arguments": '{"path": "a.py"}'}}],
            }
        ]
        bare = estimate_tokens([{"role": "assistant", "content": None}])
        with_call = estimate_tokens(msgs)
        assert with_call > bare
        tools = [{"type": "function", "function": {"name": "x", "description": "does x"}}]
        assert estimate_tokens(msgs, tools) > with_call
