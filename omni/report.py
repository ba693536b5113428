"""Error types and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (unknown provider, bad types, etc.)."""


class ConnectorError(AgentError):
    """Raised when the model backend fails mid-request or cannot be reached."""


# Failure kinds carried in ToolResult.metadata["kind"]. These are folded into
# the conversation as failed tool results and never abort a submit.
UNKNOWN_TOOL = "unknown_tool"
APPROVAL_DENIED = "approval_denied"
TOOL_FAILURE = "tool_failure"
INVALID_ARGUMENTS = "invalid_arguments"


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.approvals = {"approved": 0, "denied": 0}
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0
        self.max_step_seen = 0
        self._last_report: dict | None = None

    def record_llm_call(self, step: int, duration: float, finish_reason: str | None):
        self.llm_calls += 1
        self.total_llm_time += duration
        self.events.append(
            {
                "step": step,
                "type": "llm_call",
                "duration_s": round(duration, 3),
                "finish_reason": finish_reason,
            }
        )

    def record_tool_call(
        self,
        step: int,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        kind: str | None = None,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        if step > self.max_step_seen:
            self.max_step_seen = step
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "step": step,
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
        }
        if kind is not None:
            event["kind"] = kind
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_approval(self, name: str, approved: bool, prompted: bool):
        self.approvals["approved" if approved else "denied"] += 1
        self.events.append(
            {
                "type": "approval",
                "name": name,
                "approved": approved,
                "prompted": prompted,
            }
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        usage: dict | None = None,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "steps": self.max_step_seen,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "approvals": dict(self.approvals),
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
                "usage": usage or {},
            },
            "timeline": self.events,
        }

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")
