"""Tool registry and built-in tool implementations for an LLM agent."""

import asyncio
import fnmatch
import inspect
import logging
import os
import re
import signal
import subprocess
import sys
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .report import INVALID_ARGUMENTS, TOOL_FAILURE, UNKNOWN_TOOL

logger = logging.getLogger(__name__)

SANDBOX_MODES = ("read-only", "workspace-write", "full-access")
CATEGORIES = ("file", "shell", "web", "mcp", "memory", "system")
PARAM_TYPES = ("string", "number", "integer", "boolean", "array", "object")

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_INLINE_OUTPUT = 10 * 1024  # 10 KB of command output returned inline
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024
MAX_LIST_RESULTS = 500
MAX_SEARCH_MATCHES = 100
MAX_TIMEOUT = 120
SCRATCH_DIR = ".omni"

_SKIP_DIRS = frozenset({".git", ".hg", ".svn", "node_modules", "__pycache__", SCRATCH_DIR})


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Param:
    """One parameter of a tool, rendered into JSON schema on demand."""

    type: str
    description: str
    required: bool = False
    default: Any = None
    enum: tuple | None = None
    items: str | None = None

    def __post_init__(self):
        if self.type not in PARAM_TYPES:
            raise ValueError(f"unknown parameter type {self.type!r}")

    def schema(self) -> dict:
        out: dict = {"type": self.type, "description": self.description}
        if self.default is not None:
            out["default"] = self.default
        if self.enum is not None:
            out["enum"] = list(self.enum)
        if self.type == "array":
            out["items"] = {"type": self.items or "string"}
        return out


@dataclass
class ToolResult:
    success: bool
    output: str | None = None
    error: str | None = None
    metadata: dict = field(default_factory=dict)

    @classmethod
    def failure(cls, error: str, kind: str = TOOL_FAILURE, **metadata) -> "ToolResult":
        return cls(success=False, error=error, metadata={"kind": kind, **metadata})

    @property
    def kind(self) -> str | None:
        return self.metadata.get("kind")

    def as_content(self) -> str:
        """Text the model sees for this result."""
        if self.success:
            return self.output if self.output else "Success"
        return f"error: {self.error}"

    def to_dict(self) -> dict:
        out: dict = {"success": self.success}
        if self.output is not None:
            out["output"] = self.output
        if self.error is not None:
            out["error"] = self.error
        if self.metadata:
            out["metadata"] = dict(self.metadata)
        return out


@dataclass(frozen=True)
class ToolSpec:
    """A named capability the model may invoke.

    ``execute`` takes the parsed argument dict and returns a ToolResult; it
    may be a plain function (run in a worker thread) or a coroutine function.
    ``stat`` names the SessionStats counter bumped per invocation.
    """

    name: str
    category: str
    description: str
    parameters: dict[str, Param]
    requires_approval: bool
    execute: Callable[[dict], Any]
    stat: str | None = None

    def __post_init__(self):
        if self.category not in CATEGORIES:
            raise ValueError(f"unknown tool category {self.category!r}")

    def schema(self) -> dict:
        """OpenAI function-calling schema for this tool."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": {k: p.schema() for k, p in self.parameters.items()},
                    "required": [k for k, p in self.parameters.items() if p.required],
                },
            },
        }

    def missing_arguments(self, args: dict) -> list[str]:
        return [k for k, p in self.parameters.items() if p.required and k not in args]


class ToolRegistry:
    """Name -> ToolSpec mapping, populated once at startup."""

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}
        self._teardown: list[Callable[[], Any]] = []

    def register(self, spec: ToolSpec) -> None:
        self._tools[spec.name] = spec

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        return list(self._tools.values())

    def schemas(self) -> list[dict]:
        return [t.schema() for t in self._tools.values()]

    def on_close(self, hook: Callable[[], Any]) -> None:
        self._teardown.append(hook)

    async def execute(self, name: str, args: dict) -> ToolResult:
        """Run a tool. Never raises: faults come back as failed results."""
        spec = self._tools.get(name)
        if spec is None:
            return ToolResult.failure(f"Unknown tool: {name}", kind=UNKNOWN_TOOL)

        missing = spec.missing_arguments(args)
        if missing:
            return ToolResult.failure(
                f"missing required argument(s): {', '.join(missing)}",
                kind=INVALID_ARGUMENTS,
            )

        try:
            if inspect.iscoroutinefunction(spec.execute):
                result = await spec.execute(args)
            else:
                result = await asyncio.to_thread(spec.execute, args)
        except Exception as e:
            logger.debug("tool %s raised", name, exc_info=True)
            return ToolResult.failure(f"Tool execution failed: {e}")

        if isinstance(result, str):
            result = _as_result(result)
        elif not isinstance(result, ToolResult):
            return ToolResult.failure(
                f"Tool execution failed: executor returned {type(result).__name__}"
            )
        if not result.success and "kind" not in result.metadata:
            result.metadata["kind"] = TOOL_FAILURE
        return result

    def close(self) -> None:
        """Run teardown hooks (terminate background processes, ...)."""
        for hook in self._teardown:
            try:
                hook()
            except Exception:
                logger.warning("tool teardown hook failed", exc_info=True)


def _as_result(text: str) -> ToolResult:
    """Convert an implementation's string return into a ToolResult."""
    if text.startswith("error: "):
        return ToolResult.failure(text[len("error: ") :])
    return ToolResult(success=True, output=text)


# ---------------------------------------------------------------------------
# Path handling
# ---------------------------------------------------------------------------


def safe_resolve(file_path: str, base_dir: str, unrestricted: bool = False) -> Path:
    """Resolve a file path, ensuring it stays within base_dir.

    Resolves symlinks for both the base directory and the target path.
    When unrestricted is True, only the filesystem root is refused.

    Raises:
        ValueError: If the resolved path escapes base_dir (when not unrestricted).
    """
    base = Path(base_dir).resolve()
    path = Path(file_path).expanduser()
    resolved = path.resolve() if path.is_absolute() else (base / path).resolve()

    if unrestricted:
        if resolved == Path(resolved.anchor):
            raise ValueError(
                f"Path {file_path!r} resolves to the filesystem root, "
                f"which is not allowed even in full-access mode"
            )
        return resolved

    if resolved.is_relative_to(base):
        return resolved

    raise ValueError(
        f"Path {file_path!r} resolves to {resolved}, "
        f"which is outside the workspace {base}"
    )


def _check_writable(sandbox: str) -> str | None:
    if sandbox == "read-only":
        return "error: sandbox is read-only, writes are not allowed"
    return None


# ---------------------------------------------------------------------------
# File tools
# ---------------------------------------------------------------------------


def _read_file(
    file_path: str,
    base_dir: str,
    offset: int = 1,
    limit: int = 2000,
    unrestricted: bool = False,
) -> str:
    """Read a text file, returning numbered lines."""
    try:
        resolved = safe_resolve(file_path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"

    if not resolved.exists():
        return f"error: path does not exist: {file_path}"
    if resolved.is_dir():
        return f"error: {file_path} is a directory, use list_directory"

    try:
        with open(resolved, "rb") as f:
            chunk = f.read(BINARY_CHECK_BYTES)
    except OSError as exc:
        return f"error: {exc}"
    if b"\x00" in chunk:
        return f"error: binary file detected: {file_path}"

    try:
        text = resolved.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        return f"error: failed to decode {file_path} as UTF-8: {exc}"
    except OSError as exc:
        return f"error: {exc}"

    lines = text.splitlines()
    start = max(int(offset) - 1, 0)
    selected = lines[start : start + int(limit)]

    output_parts = []
    total_bytes = 0
    emitted = 0
    for i, line in enumerate(selected, start=start + 1):
        numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
        encoded_len = len(numbered.encode("utf-8")) + 1
        if total_bytes + encoded_len > MAX_OUTPUT_BYTES:
            break
        output_parts.append(numbered)
        total_bytes += encoded_len
        emitted += 1

    result = "\n".join(output_parts)
    remaining = len(lines) - (start + emitted)
    if remaining > 0:
        result += f"\n[{remaining} more lines, use offset={start + emitted + 1} to continue]"
    return result


def _list_directory(
    path: str, base_dir: str, recursive: bool = False, unrestricted: bool = False
) -> str:
    """List a directory, subdirectories suffixed with '/'."""
    try:
        root = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if not root.exists():
        return f"error: path does not exist: {path}"
    if not root.is_dir():
        return f"error: path is not a directory: {path}"

    entries: list[str] = []
    truncated = False
    try:
        if recursive:
            for dirpath, dirnames, filenames in os.walk(root):
                dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
                rel = Path(dirpath).relative_to(root)
                for d in dirnames:
                    entries.append(str(rel / d) + "/")
                for name in sorted(filenames):
                    entries.append(str(rel / name))
                if len(entries) >= MAX_LIST_RESULTS:
                    truncated = True
                    break
        else:
            for child in sorted(root.iterdir()):
                entries.append(child.name + ("/" if child.is_dir() else ""))
    except PermissionError as exc:
        return f"error: {exc}"

    entries = [e.removeprefix("./") for e in entries[:MAX_LIST_RESULTS]]
    if not entries:
        return "(empty directory)"
    result = "\n".join(entries)
    if truncated:
        result += f"\n[truncated at {MAX_LIST_RESULTS} entries]"
    return result


def _search_files(
    pattern: str,
    path: str,
    base_dir: str,
    include: str | None = None,
    unrestricted: bool = False,
) -> str:
    """Search file contents for a regex, grouped by file with line numbers."""
    try:
        regex = re.compile(pattern)
    except re.error as exc:
        return f"error: invalid regex {pattern!r}: {exc}"
    try:
        root = safe_resolve(path, base_dir, unrestricted)
    except ValueError as exc:
        return f"error: {exc}"
    if not root.exists():
        return f"error: path does not exist: {path}"

    files = [root] if root.is_file() else []
    if root.is_dir():
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
            for name in sorted(filenames):
                if include and not fnmatch.fnmatch(name, include):
                    continue
                files.append(Path(dirpath) / name)

    matches: dict[str, list[str]] = {}
    count = 0
    for fp in files:
        try:
            with open(fp, "rb") as f:
                if b"\x00" in f.read(BINARY_CHECK_BYTES):
                    continue
            text = fp.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        for lineno, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                rel = fp.relative_to(root) if root.is_dir() else Path(fp.name)
                matches.setdefault(str(rel), []).append(
                    f"  {lineno}: {line[:MAX_LINE_LENGTH]}"
                )
                count += 1
                if count >= MAX_SEARCH_MATCHES:
                    break
        if count >= MAX_SEARCH_MATCHES:
            break

    if not matches:
        return "No matches found."
    parts = [f"{name}:\n" + "\n".join(lines) for name, lines in matches.items()]
    result = "\n".join(parts)
    if count >= MAX_SEARCH_MATCHES:
        result += f"\n[results truncated at {MAX_SEARCH_MATCHES} matches]"
    return result


def _write_file(
    file_path: str, content: str, base_dir: str, sandbox: str = "workspace-write"
) -> str:
    """Create or overwrite a file with content."""
    err = _check_writable(sandbox)
    if err:
        return err
    try:
        resolved = safe_resolve(file_path, base_dir, sandbox == "full-access")
    except ValueError as exc:
        return f"error: {exc}"

    resolved.parent.mkdir(parents=True, exist_ok=True)
    data = content.encode("utf-8")
    resolved.write_bytes(data)
    return f"Wrote {len(data)} bytes to {file_path}"


def _edit_file(
    file_path: str,
    old_string: str,
    new_string: str,
    base_dir: str,
    replace_all: bool = False,
    sandbox: str = "workspace-write",
) -> str:
    """Replace old_string with new_string in an existing file."""
    err = _check_writable(sandbox)
    if err:
        return err
    try:
        resolved = safe_resolve(file_path, base_dir, sandbox == "full-access")
    except ValueError as exc:
        return f"error: {exc}"

    if not resolved.is_file():
        return f"error: file does not exist: {file_path}"
    if not old_string:
        return "error: old_string must not be empty"

    try:
        content = resolved.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return f"error: {exc}"

    occurrences = content.count(old_string)
    if occurrences == 0:
        return f"error: old_string not found in {file_path}"
    if occurrences > 1 and not replace_all:
        return (
            f"error: old_string occurs {occurrences} times in {file_path}; "
            "add more context or set replace_all"
        )

    count = -1 if replace_all else 1
    resolved.write_text(content.replace(old_string, new_string, count), encoding="utf-8")
    return f"Edited {file_path} ({occurrences if replace_all else 1} replacement(s))"


def _delete_file(file_path: str, base_dir: str, sandbox: str = "workspace-write") -> str:
    """Delete a single file."""
    err = _check_writable(sandbox)
    if err:
        return err
    try:
        resolved = safe_resolve(file_path, base_dir, sandbox == "full-access")
    except ValueError as exc:
        return f"error: {exc}"

    if not resolved.exists() and not resolved.is_symlink():
        return f"error: path does not exist: {file_path}"
    if resolved.is_dir():
        return f"error: {file_path} is a directory, only files can be deleted"
    try:
        resolved.unlink()
    except OSError as exc:
        return f"error: {exc}"
    return f"Deleted {file_path}"


# ---------------------------------------------------------------------------
# Shell tools
# ---------------------------------------------------------------------------

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _shell_argv(command: str) -> list[str]:
    if sys.platform == "win32":
        return ["cmd.exe", "/c", command]
    return ["/bin/sh", "-c", command]


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F.
    """
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        logger.warning("process %s did not exit after kill", proc.pid)


def _popen_kwargs(base_dir: str) -> dict:
    kwargs: dict = dict(stdin=subprocess.DEVNULL, cwd=base_dir)
    if sys.platform != "win32":
        kwargs["start_new_session"] = True
    return kwargs


def _capture_process(proc: subprocess.Popen, timeout: int) -> str:
    """Capture output from a running subprocess with timeout enforcement."""
    output_chunks: list[bytes] = []
    output_total = 0

    def _reader():
        nonlocal output_total
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if output_total < MAX_OUTPUT_BYTES:
                    output_chunks.append(chunk)
                output_total += len(chunk)  # keep draining to prevent backpressure
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()

    raw_output = b"".join(output_chunks).decode("utf-8", errors="replace")
    if len(raw_output.encode("utf-8")) > MAX_INLINE_OUTPUT:
        raw_output = (
            raw_output.encode("utf-8")[:MAX_INLINE_OUTPUT].decode("utf-8", errors="ignore")
            + f"\n[output truncated, {output_total} bytes total]"
        )

    if timed_out:
        return f"error: command timed out after {timeout}s\n{raw_output}".rstrip()
    parts: list[str] = []
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")
    if raw_output:
        parts.append(raw_output)
    return "\n".join(parts) if parts else "(no output)"


@dataclass
class _Background:
    proc: subprocess.Popen
    command: str
    log_path: Path


class ProcessTracker:
    """Background processes started by the shell tool."""

    def __init__(self):
        self._procs: dict[str, _Background] = {}
        self._lock = threading.Lock()

    def start(self, command: str, base_dir: str) -> tuple[str, Path]:
        proc_id = uuid.uuid4().hex[:8]
        log_path = Path(base_dir) / SCRATCH_DIR / f"bg_{proc_id}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "wb") as log:
            proc = subprocess.Popen(
                _shell_argv(command),
                stdout=log,
                stderr=subprocess.STDOUT,
                **_popen_kwargs(base_dir),
            )
        with self._lock:
            self._procs[proc_id] = _Background(proc, command, log_path)
        logger.debug("started background process %s (pid %s)", proc_id, proc.pid)
        return proc_id, log_path

    def list(self) -> list[tuple[str, int, str, str]]:
        with self._lock:
            items = list(self._procs.items())
        rows = []
        for proc_id, bg in items:
            code = bg.proc.poll()
            status = "running" if code is None else f"exited ({code})"
            rows.append((proc_id, bg.proc.pid, bg.command, status))
        return rows

    def kill(self, proc_id: str) -> bool:
        with self._lock:
            bg = self._procs.pop(proc_id, None)
        if bg is None:
            return False
        if bg.proc.poll() is None:
            _kill_process_tree(bg.proc)
        return True

    def kill_all(self) -> int:
        with self._lock:
            ids = list(self._procs)
        killed = sum(1 for proc_id in ids if self.kill(proc_id))
        if killed:
            logger.debug("terminated %d background process(es)", killed)
        return killed


def _run_shell(
    command: str,
    base_dir: str,
    timeout: int = 30,
    background: bool = False,
    sandbox: str = "workspace-write",
    processes: ProcessTracker | None = None,
) -> str:
    """Run a shell string in the workspace."""
    if sandbox == "read-only":
        return "error: sandbox is read-only, shell commands are not allowed"
    if not isinstance(command, str) or not command.strip():
        return "error: command must be a non-empty string"
    if not Path(base_dir).is_dir():
        return f"error: workspace is not a directory: {base_dir}"

    if background:
        if processes is None:
            return "error: background processes are not available"
        try:
            proc_id, log_path = processes.start(command, base_dir)
        except OSError as e:
            return f"error: failed to start background command: {e}"
        rel = log_path.relative_to(Path(base_dir))
        return f"Started background process {proc_id}; output is written to {rel}"

    timeout = max(1, min(int(timeout), MAX_TIMEOUT))
    try:
        proc = subprocess.Popen(
            _shell_argv(command),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            **_popen_kwargs(base_dir),
        )
    except OSError as e:
        return f"error: failed to start shell command: {e}"
    return _capture_process(proc, timeout)


def _list_processes(processes: ProcessTracker) -> str:
    rows = processes.list()
    if not rows:
        return "No background processes."
    return "\n".join(f"{pid_id}  pid={pid}  {status}  {cmd}" for pid_id, pid, cmd, status in rows)


def _kill_process(proc_id: str, processes: ProcessTracker) -> str:
    if processes.kill(proc_id):
        return f"Killed background process {proc_id}"
    return f"error: no background process with id {proc_id!r}"


# ---------------------------------------------------------------------------
# Registry bootstrap
# ---------------------------------------------------------------------------


def _think(args: dict) -> ToolResult:
    return ToolResult(success=True, output=f"Thought: {args['thought']}")


def builtin_tools(
    base_dir: str, sandbox: str = "workspace-write", processes: ProcessTracker | None = None
) -> list[ToolSpec]:
    """Build the built-in tool specs bound to a workspace and sandbox mode."""
    from .fetch import fetch_url

    if sandbox not in SANDBOX_MODES:
        raise ValueError(f"unknown sandbox mode {sandbox!r}")
    unrestricted = sandbox == "full-access"
    processes = processes if processes is not None else ProcessTracker()

    path = Param("string", "Path relative to the workspace (or absolute).", required=True)

    def read_file(args):
        return _as_result(
            _read_file(
                args["path"],
                base_dir,
                offset=args.get("offset", 1),
                limit=args.get("limit", 2000),
                unrestricted=unrestricted,
            )
        )

    def list_directory(args):
        return _as_result(
            _list_directory(
                args.get("path", "."),
                base_dir,
                recursive=bool(args.get("recursive", False)),
                unrestricted=unrestricted,
            )
        )

    def search_files(args):
        return _as_result(
            _search_files(
                args["pattern"],
                args.get("path", "."),
                base_dir,
                include=args.get("include"),
                unrestricted=unrestricted,
            )
        )

    def write_file(args):
        return _as_result(_write_file(args["path"], args["content"], base_dir, sandbox))

    def edit_file(args):
        return _as_result(
            _edit_file(
                args["path"],
                args["old_string"],
                args["new_string"],
                base_dir,
                replace_all=bool(args.get("replace_all", False)),
                sandbox=sandbox,
            )
        )

    def delete_file(args):
        return _as_result(_delete_file(args["path"], base_dir, sandbox))

    def shell(args):
        return _as_result(
            _run_shell(
                args["command"],
                base_dir,
                timeout=args.get("timeout", 30),
                background=bool(args.get("background", False)),
                sandbox=sandbox,
                processes=processes,
            )
        )

    def list_processes(args):
        return _as_result(_list_processes(processes))

    def kill_process(args):
        return _as_result(_kill_process(args["id"], processes))

    def fetch(args):
        return _as_result(
            fetch_url(
                args["url"],
                format=args.get("format", "text"),
                timeout=args.get("timeout", 30),
            )
        )

    return [
        ToolSpec(
            "read_file",
            "file",
            "Read a text file. Returns lines prefixed with line numbers; "
            "use offset/limit to paginate.",
            {
                "path": path,
                "offset": Param("integer", "1-based line to start from.", default=1),
                "limit": Param("integer", "Maximum number of lines.", default=2000),
            },
            requires_approval=False,
            execute=read_file,
            stat="file_reads",
        ),
        ToolSpec(
            "list_directory",
            "file",
            "List the entries of a directory. Subdirectories end with '/'.",
            {
                "path": Param("string", "Directory to list.", default="."),
                "recursive": Param("boolean", "Walk subdirectories too.", default=False),
            },
            requires_approval=False,
            execute=list_directory,
            stat="file_reads",
        ),
        ToolSpec(
            "search_files",
            "file",
            "Search file contents for a regex. Matches are grouped by file with line numbers.",
            {
                "pattern": Param("string", "Python regular expression.", required=True),
                "path": Param("string", "File or directory to search.", default="."),
                "include": Param("string", 'Filename glob filter, e.g. "*.py".'),
            },
            requires_approval=False,
            execute=search_files,
            stat="file_reads",
        ),
        ToolSpec(
            "write_file",
            "file",
            "Create or overwrite a file, creating parent directories as needed.",
            {"path": path, "content": Param("string", "Full file content.", required=True)},
            requires_approval=True,
            execute=write_file,
            stat="file_writes",
        ),
        ToolSpec(
            "edit_file",
            "file",
            "Replace an exact string in an existing file.",
            {
                "path": path,
                "old_string": Param("string", "Exact text to find.", required=True),
                "new_string": Param("string", "Replacement text.", required=True),
                "replace_all": Param("boolean", "Replace every occurrence.", default=False),
            },
            requires_approval=True,
            execute=edit_file,
            stat="file_writes",
        ),
        ToolSpec(
            "delete_file",
            "file",
            "Delete a file.",
            {"path": path},
            requires_approval=True,
            execute=delete_file,
            stat="file_writes",
        ),
        ToolSpec(
            "shell",
            "shell",
            "Run a shell command in the workspace and return its output. "
            "Set background=true for long-running processes.",
            {
                "command": Param("string", "Shell command line.", required=True),
                "timeout": Param("integer", "Timeout in seconds (1-120).", default=30),
                "background": Param("boolean", "Run without waiting.", default=False),
            },
            requires_approval=True,
            execute=shell,
            stat="shell_commands",
        ),
        ToolSpec(
            "list_processes",
            "shell",
            "List background processes started with the shell tool.",
            {},
            requires_approval=False,
            execute=list_processes,
        ),
        ToolSpec(
            "kill_process",
            "shell",
            "Terminate a background process by id.",
            {"id": Param("string", "Process id returned by shell.", required=True)},
            requires_approval=True,
            execute=kill_process,
            stat="shell_commands",
        ),
        ToolSpec(
            "fetch_url",
            "web",
            "Fetch a web page over http(s) and return it as text or raw HTML.",
            {
                "url": Param("string", "URL to fetch.", required=True),
                "format": Param("string", "Output format.", default="text", enum=("text", "html")),
                "timeout": Param("integer", "Timeout in seconds (1-120).", default=30),
            },
            requires_approval=False,
            execute=fetch,
        ),
        ToolSpec(
            "think",
            "system",
            "Think through a problem step by step before acting.",
            {"thought": Param("string", "Your thought process.", required=True)},
            requires_approval=False,
            execute=_think,
        ),
    ]


def build_registry(
    base_dir: str,
    sandbox: str = "workspace-write",
    extra_tools: list[ToolSpec] = (),
) -> ToolRegistry:
    """Create the registry: built-in tools, then any extra ones (last write wins)."""
    processes = ProcessTracker()
    registry = ToolRegistry()
    for spec in builtin_tools(base_dir, sandbox, processes):
        registry.register(spec)
    for spec in extra_tools:
        registry.register(spec)
    registry.on_close(processes.kill_all)
    return registry
