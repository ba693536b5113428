"""Approval policy: decide whether a tool call may run, and ask a human when needed."""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from . import fmt
from .tools import ToolSpec

logger = logging.getLogger(__name__)

UNTRUSTED = "untrusted"
ON_FAILURE = "on-failure"
ON_REQUEST = "on-request"
NEVER = "never"
POLICIES = (UNTRUSTED, ON_FAILURE, ON_REQUEST, NEVER)

APPROVE = "approve"
PROMPT = "prompt"
DENY = "deny"

REQUEST_TYPES = ("file-write", "file-delete", "shell-command", "network-request", "mcp-call")


@dataclass(frozen=True)
class ApprovalRequest:
    id: str
    type: str
    description: str
    details: dict
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if self.type not in REQUEST_TYPES:
            raise ValueError(f"unknown approval request type {self.type!r}")


# An approver is any async callable taking an ApprovalRequest and returning bool.
Approver = Callable[[ApprovalRequest], Awaitable[bool]]


def request_type(spec: ToolSpec) -> str:
    if spec.category == "file":
        return "file-delete" if "delete" in spec.name else "file-write"
    if spec.category == "shell":
        return "shell-command"
    if spec.category == "web":
        return "network-request"
    return "mcp-call"


def build_request(spec: ToolSpec, args: dict) -> ApprovalRequest:
    return ApprovalRequest(
        id=uuid.uuid4().hex,
        type=request_type(spec),
        description=f"{spec.name}: {json.dumps(args, default=str)}",
        details={"tool": spec.name, "category": spec.category, "args": args},
    )


def decide(spec: ToolSpec, policy: str, approver_available: bool) -> str:
    """Map (tool, policy, approver presence) to approve, prompt or deny.

    Never blocks: PROMPT tells the caller to consult the approver.
    """
    if policy not in POLICIES:
        raise ValueError(f"unknown approval policy {policy!r}")
    if not spec.requires_approval or policy in (NEVER, ON_FAILURE):
        return APPROVE
    return PROMPT if approver_available else DENY


class ApprovalGate:
    """Applies the decision table and runs the approver when it says PROMPT.

    Only the awaiting tool-call step suspends while a prompt is outstanding.
    If that step is cancelled, the pending wait resolves to a denial before
    the cancellation propagates.
    """

    def __init__(
        self,
        policy: str = ON_REQUEST,
        approver: Approver | None = None,
        retry_on_failure: bool = False,
    ):
        if policy not in POLICIES:
            raise ValueError(f"unknown approval policy {policy!r}")
        self.policy = policy
        self.approver = approver
        self.retry_on_failure = retry_on_failure
        self.pending: dict[str, asyncio.Future] = {}

    def decide(self, spec: ToolSpec) -> str:
        return decide(spec, self.policy, self.approver is not None)

    def should_retry(self, spec: ToolSpec) -> bool:
        """True when a failed call deserves a second approval round."""
        return (
            self.retry_on_failure
            and self.policy == ON_FAILURE
            and spec.requires_approval
            and self.approver is not None
        )

    async def ask(self, request: ApprovalRequest) -> bool:
        """Consult the approver; faults and cancellation count as denial."""
        if self.approver is None:
            return False

        loop = asyncio.get_running_loop()
        waiter = loop.create_future()
        self.pending[request.id] = waiter
        try:
            try:
                approved = bool(await self.approver(request))
            except Exception:
                logger.warning("approver failed for %s, treating as denied", request.id, exc_info=True)
                approved = False
            if not waiter.done():
                waiter.set_result(approved)
            return approved
        finally:
            if not waiter.done():
                waiter.set_result(False)
            del self.pending[request.id]

    async def check(self, spec: ToolSpec, args: dict) -> tuple[bool, bool]:
        """Return (approved, prompted) for one tool call."""
        decision = self.decide(spec)
        if decision == APPROVE:
            return True, False
        if decision == DENY:
            return False, False
        return await self.ask(build_request(spec, args)), True


class ConsoleApprover:
    """Asks on the terminal with a [y/N] prompt. Ctrl-C and Ctrl-D answer no."""

    def __init__(self, prompt: str = "Approve? [y/N] "):
        from prompt_toolkit import PromptSession

        self._session = PromptSession()
        self._prompt = prompt

    async def __call__(self, request: ApprovalRequest) -> bool:
        fmt.approval_request(request.type, request.description)
        try:
            answer = await self._session.prompt_async(self._prompt)
        except (EOFError, KeyboardInterrupt):
            return False
        return answer.strip().lower() in ("y", "yes")
