from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Literal


Language = Literal["node", "dotnet", "python", "java"]
StatusCategory = Literal["new", "indeterminate", "done", "unknown"]
WorkItemState = Literal[
    "queued",
    "analyzing",
    "branching",
    "pr_created",
    "pr_reused",
    "monitoring",
    "closed",
    "failed",
    "needs_attention",
    "abandoned",
]
ServicePhase = Literal["initializing", "reconciling", "scanning", "processing", "waiting", "paused"]

TICKET_KEY_PATTERN = re.compile(r"\b([A-Z][A-Z0-9]+-\d+)\b")


def branch_name_for_ticket(ticket_key: str) -> str:
    return f"chore/{ticket_key}-workflow-setup"


def is_feature_branch(ref: str) -> bool:
    return ref.startswith("chore/") and ref.endswith("-workflow-setup")


def extract_ticket_key(*candidates: str | None) -> str | None:
    """Return the first ticket key found, scanning candidates in order."""
    for candidate in candidates:
        if not candidate:
            continue
        match = TICKET_KEY_PATTERN.search(candidate)
        if match is not None:
            return match.group(1)
    return None


def project_key_for_ticket(ticket_key: str) -> str:
    return ticket_key.rsplit("-", 1)[0]


@dataclass(frozen=True)
class TicketFields:
    """Explicit per-ticket overrides read from tracker custom fields."""

    repo: str | None = None
    language: str | None = None
    build_command: str | None = None
    test_command: str | None = None
    deploy_target: str | None = None
    files: tuple[str, ...] = ()


@dataclass(frozen=True)
class Ticket:
    key: str
    summary: str
    description: str
    priority_name: str
    priority_rank: int
    fields: TicketFields = field(default_factory=TicketFields)
    status_name: str = ""
    status_category: StatusCategory = "unknown"

    @property
    def project_key(self) -> str:
        return project_key_for_ticket(self.key)


@dataclass(frozen=True)
class RepositoryConfig:
    language: Language
    build_command: str
    test_command: str
    run_command: str
    deploy_target: str
    default_branch: str


@dataclass(frozen=True)
class RepositoryInfo:
    full_name: str
    default_branch: str
    can_push: bool


@dataclass(frozen=True)
class ContentEntry:
    name: str
    path: str
    entry_type: str


@dataclass(frozen=True)
class PullRequest:
    number: int
    html_url: str


@dataclass(frozen=True)
class OpenPullRequestResult:
    pull_request: PullRequest
    is_new: bool


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    body: str
    html_url: str
    node_id: str
    head_ref: str
    head_sha: str
    base_ref: str
    draft: bool
    state: str
    merged: bool
    user_login: str
    labels: tuple[str, ...] = ()
    created_at: str = ""


@dataclass(frozen=True)
class PullRequestComment:
    comment_id: int
    body: str
    user_login: str
    created_at: str


@dataclass(frozen=True)
class CheckRunSnapshot:
    name: str
    status: str
    conclusion: str | None
    html_url: str


@dataclass(frozen=True)
class WorkflowRunSnapshot:
    run_id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str
    head_sha: str
    head_branch: str
    created_at: str


@dataclass(frozen=True)
class WorkflowJobSnapshot:
    job_id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str
    step_names: tuple[str, ...] = ()


MergeOutcome = Literal["merged", "conflict", "failed"]


@dataclass(frozen=True)
class SubPullRequestAdvance:
    """What one advance pass did to a delegated sub-pull-request."""

    held: bool = False
    marked_ready: bool = False
    approved: bool = False
    auto_merge_enabled: bool = False
    merge_outcome: MergeOutcome | None = None
    errors: tuple[str, ...] = ()

    @property
    def conflict(self) -> bool:
        return self.merge_outcome == "conflict"


@dataclass(frozen=True)
class OrgPullRequestHit:
    repo_full_name: str
    number: int
    title: str
    body: str
    html_url: str


@dataclass(frozen=True)
class ReconciledPullRequest:
    ticket_key: str
    repo_full_name: str
    pr_number: int
    pr_url: str
    head_ref: str
    head_sha: str


@dataclass(frozen=True)
class WorkItem:
    ticket_key: str
    repo_full_name: str
    branch_name: str
    state: WorkItemState
    pr_url: str | None = None
    pr_number: int | None = None
    head_sha: str | None = None
    checks: tuple[CheckRunSnapshot, ...] = ()
    latest_run_id: int | None = None
    latest_run_conclusion: str | None = None
    sub_pr_url: str | None = None
    sub_pr_number: int | None = None
    sub_pr_created_at: str | None = None
    sub_pr_merged: bool = False
    sub_pr_conflict_sha: str | None = None
    failure_reported_run_id: int | None = None
    deploy_target: str = ""
    last_error: str | None = None
    updated_at: float = 0.0


@dataclass(frozen=True)
class HistoryEntry:
    ticket_key: str
    outcome: str
    detail: str
    recorded_at: float


@dataclass(frozen=True)
class QueuedTicket:
    key: str
    summary: str
    priority_name: str
    state: WorkItemState


@dataclass(frozen=True)
class RegistrySnapshot:
    phase: ServicePhase
    current_ticket_key: str | None
    paused: bool
    queue: tuple[QueuedTicket, ...]
    active: tuple[WorkItem, ...]
    history: tuple[HistoryEntry, ...]
    processed_count: int
    next_poll_at: float | None
    last_scan_at: float | None
