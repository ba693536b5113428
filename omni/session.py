"""Conversation history, running statistics and checkpoints."""

import copy
import json
import logging
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path

from .providers import Usage

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHECKPOINTS = 10
COMPACT_KEEP = 4
SUMMARY_CHARS = 200
SUMMARY_START = "[Previous conversation summary]"
SUMMARY_END = "[End summary]"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionStats:
    start_time: datetime = field(default_factory=_now)
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    tool_calls: int = 0
    file_reads: int = 0
    file_writes: int = 0
    shell_commands: int = 0

    COUNTERS = ("tool_calls", "file_reads", "file_writes", "shell_commands")

    def add_usage(self, usage: Usage) -> None:
        self.prompt_tokens += usage.prompt_tokens
        self.completion_tokens += usage.completion_tokens
        self.total_tokens += usage.total_tokens

    def bump(self, counter: str) -> None:
        if counter not in self.COUNTERS:
            raise ValueError(f"unknown stats counter {counter!r}")
        setattr(self, counter, getattr(self, counter) + 1)

    def to_dict(self) -> dict:
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        out["start_time"] = self.start_time.isoformat()
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "SessionStats":
        kwargs = {f.name: data[f.name] for f in fields(cls) if f.name in data}
        if "start_time" in kwargs:
            kwargs["start_time"] = datetime.fromisoformat(kwargs["start_time"])
        return cls(**kwargs)


@dataclass(frozen=True)
class Checkpoint:
    """Immutable snapshot; build it with ``Checkpoint.capture``."""

    id: str
    tag: str | None
    timestamp: datetime
    messages: list[dict]
    context: dict
    stats: SessionStats

    @classmethod
    def capture(
        cls, messages: list[dict], stats: SessionStats, context: dict, tag: str | None = None
    ) -> "Checkpoint":
        return cls(
            id=uuid.uuid4().hex[:12],
            tag=tag,
            timestamp=_now(),
            messages=copy.deepcopy(messages),
            context=dict(context),
            stats=copy.deepcopy(stats),
        )

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "messages": copy.deepcopy(self.messages),
            "context": dict(self.context),
            "stats": self.stats.to_dict(),
        }
        if self.tag is not None:
            out["tag"] = self.tag
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "Checkpoint":
        messages = data["messages"]
        if not isinstance(messages, list) or not messages:
            raise ValueError("checkpoint has no messages")
        if not isinstance(messages[0], dict) or messages[0].get("role") != "system":
            raise ValueError("checkpoint does not start with a system message")
        return cls(
            id=data["id"],
            tag=data.get("tag"),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            messages=copy.deepcopy(messages),
            context=dict(data.get("context", {})),
            stats=SessionStats.from_dict(data.get("stats", {})),
        )


class SessionStore:
    """The live Conversation plus stats and a bounded checkpoint list.

    ``messages[0]`` is always the system message: it is replaced by
    ``set_system_prompt`` and never removed.
    """

    def __init__(
        self,
        system_prompt: str,
        *,
        max_checkpoints: int = DEFAULT_MAX_CHECKPOINTS,
        session_id: str | None = None,
    ):
        if max_checkpoints < 1:
            raise ValueError("max_checkpoints must be at least 1")
        self.id = session_id or uuid.uuid4().hex[:12]
        self.messages: list[dict] = [{"role": "system", "content": system_prompt}]
        self.stats = SessionStats()
        self.checkpoints: list[Checkpoint] = []
        self.current = -1
        self.max_checkpoints = max_checkpoints

    @property
    def system_prompt(self) -> str:
        return self.messages[0]["content"]

    def set_system_prompt(self, text: str) -> None:
        self.messages[0] = {"role": "system", "content": text}

    def append(self, message: dict) -> None:
        self.messages.append(message)

    # -- checkpoints ---------------------------------------------------------

    def save_checkpoint(self, context: dict, tag: str | None = None) -> Checkpoint:
        cp = Checkpoint.capture(self.messages, self.stats, context, tag)
        self.checkpoints.append(cp)
        self.current = len(self.checkpoints) - 1
        if len(self.checkpoints) > self.max_checkpoints:
            evicted = self.checkpoints.pop(0)
            self.current = max(0, self.current - 1)
            logger.debug("evicted checkpoint %s", evicted.id)
        return cp

    def find_checkpoint(self, id_or_tag: str) -> int | None:
        for i, cp in enumerate(self.checkpoints):
            if cp.id == id_or_tag:
                return i
        for i, cp in enumerate(self.checkpoints):
            if cp.tag is not None and cp.tag == id_or_tag:
                return i
        return None

    def restore_checkpoint(self, id_or_tag: str) -> Checkpoint | None:
        """Replace the Conversation with a checkpoint's messages.

        Returns None (state untouched) when nothing matches.
        """
        index = self.find_checkpoint(id_or_tag)
        if index is None:
            return None
        cp = self.checkpoints[index]
        self.messages = copy.deepcopy(cp.messages)
        self.current = index
        return cp

    def load_checkpoint(self, cp: Checkpoint) -> None:
        """Adopt a checkpoint read from disk as the newest one and restore it."""
        self.checkpoints.append(cp)
        if len(self.checkpoints) > self.max_checkpoints:
            self.checkpoints.pop(0)
        self.current = len(self.checkpoints) - 1
        self.messages = copy.deepcopy(cp.messages)

    # -- housekeeping --------------------------------------------------------

    def clear(self) -> None:
        self.messages = [self.messages[0]]
        self.stats = SessionStats()

    def compact(self) -> int:
        """Fold everything between the system message and the last few
        messages into one truncated summary message.

        Returns the number of messages elided (0 when nothing changed).
        """
        if len(self.messages) <= COMPACT_KEEP:
            return 0
        old = self.messages[1:-COMPACT_KEEP]
        if not old:
            return 0
        lines = []
        for m in old:
            content = m.get("content")
            if content is None and m.get("tool_calls"):
                names = ", ".join(tc.get("function", {}).get("name", "?") for tc in m["tool_calls"])
                text = f"[called {names}]"
            elif content is None:
                text = ""
            elif isinstance(content, str):
                text = content[:SUMMARY_CHARS]
            else:
                text = "[complex content]"
            lines.append(f"{m['role']}: {text}")
        summary = {
            "role": "system",
            "content": SUMMARY_START + "\n" + "\n".join(lines) + "\n" + SUMMARY_END,
        }
        self.messages = [self.messages[0], summary, *self.messages[-COMPACT_KEEP:]]
        return len(old)


def write_checkpoint(cp: Checkpoint, directory: Path) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{cp.id}.json"
    tmp = path.with_suffix(".json.tmp")
    tmp.write_text(json.dumps(cp.to_dict(), indent=2, default=str), encoding="utf-8")
    tmp.replace(path)
    return path


def load_checkpoint_file(path: Path) -> Checkpoint:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return Checkpoint.from_dict(data)
