from __future__ import annotations

import base64
from dataclasses import dataclass, field
import json
import logging
import re
from typing import Literal, cast
from urllib.parse import quote, urlencode

from ticketmerge.models import (
    CheckRunSnapshot,
    ContentEntry,
    MergeOutcome,
    OpenPullRequestResult,
    OrgPullRequestHit,
    PullRequest,
    PullRequestComment,
    PullRequestSnapshot,
    RepositoryInfo,
    SubPullRequestAdvance,
    WorkflowJobSnapshot,
    WorkflowRunSnapshot,
)
from ticketmerge.observability import log_event
from ticketmerge.shell import CommandError, run


LOGGER = logging.getLogger("ticketmerge.github_gateway")
UpsertResult = Literal["created", "updated", "unchanged"]

_WIP_TITLE_PATTERN = re.compile(r"(\[wip\]|\bwip\b|work in progress)", re.IGNORECASE)
_WIP_LABELS = frozenset({"wip", "work in progress", "do not merge", "do-not-merge"})
_DELEGATE_LOGIN_PATTERN = re.compile(r"copilot|github-actions", re.IGNORECASE)
_DELEGATE_TITLE_PATTERN = re.compile(r"copilot|automation|suggest", re.IGNORECASE)

_MARK_READY_MUTATION = """
mutation($pullRequestId: ID!) {
  markPullRequestReadyForReview(input: {pullRequestId: $pullRequestId}) {
    pullRequest { isDraft }
  }
}
"""
_ENABLE_AUTO_MERGE_MUTATION = """
mutation($pullRequestId: ID!) {
  enablePullRequestAutoMerge(input: {pullRequestId: $pullRequestId, mergeMethod: SQUASH}) {
    pullRequest { number }
  }
}
"""


class GitHubApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GitHubNotFoundError(GitHubApiError):
    """Resource does not exist; usually a valid "not yet" signal."""


class GitHubAuthenticationError(GitHubApiError):
    """Credentials are missing, invalid, or lack permission."""


class GitHubConflictError(GitHubApiError):
    """The write collided with existing state and needs a human decision."""


class GitHubPollingError(GitHubApiError):
    """Recoverable GitHub failure; caller should retry next cycle."""


def is_work_in_progress(title: str, labels: tuple[str, ...] = ()) -> bool:
    if _WIP_TITLE_PATTERN.search(title):
        return True
    return any(label.strip().lower() in _WIP_LABELS for label in labels)


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    timeout_seconds: int = 60
    _etags_by_path: dict[str, str] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )
    _cached_get_payload_by_path: dict[str, object] = field(
        default_factory=dict,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def _repo_path(self, suffix: str) -> str:
        return f"/repos/{self.owner}/{self.name}{suffix}"

    def get_repository(self) -> RepositoryInfo:
        payload_obj = _require_object(self._api_json("GET", self._repo_path("")), "repository")
        permissions = _as_object_dict(payload_obj.get("permissions")) or {}
        info = RepositoryInfo(
            full_name=_as_string(payload_obj.get("full_name")) or self.full_name,
            default_branch=_as_string(payload_obj.get("default_branch")) or "main",
            can_push=permissions.get("push") is True,
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="repository",
            repo_full_name=info.full_name,
            can_push=info.can_push,
        )
        return info

    def list_directory(self, path: str = "") -> tuple[ContentEntry, ...]:
        try:
            payload = self._api_json("GET", self._repo_path(f"/contents/{_quote_path(path)}"))
        except GitHubNotFoundError:
            return ()
        if not isinstance(payload, list):
            return ()
        entries: list[ContentEntry] = []
        for item in payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            entries.append(
                ContentEntry(
                    name=_as_string(item_obj.get("name")),
                    path=_as_string(item_obj.get("path")),
                    entry_type=_as_string(item_obj.get("type")),
                )
            )
        log_event(LOGGER, "github_read", endpoint="contents_list", path=path, count=len(entries))
        return tuple(entries)

    def get_file_text(self, path: str, *, ref: str | None = None) -> str | None:
        payload_obj = self._get_content_object(path, ref=ref)
        if payload_obj is None:
            return None
        encoded = _as_string(payload_obj.get("content"))
        if _as_string(payload_obj.get("encoding")) != "base64":
            return encoded
        return base64.b64decode(encoded).decode("utf-8", errors="replace")

    def file_exists(self, path: str, *, ref: str | None = None) -> bool:
        return self._get_content_object(path, ref=ref) is not None

    def upsert_file(
        self, *, branch: str, path: str, content: str, message: str
    ) -> UpsertResult:
        existing = self._get_content_object(path, ref=branch)
        encoded = base64.b64encode(content.encode("utf-8")).decode("ascii")
        payload: dict[str, object] = {"message": message, "content": encoded, "branch": branch}
        if existing is not None:
            existing_content = _as_string(existing.get("content")).replace("\n", "")
            if existing_content == encoded:
                log_event(LOGGER, "github_file_unchanged", path=path, branch=branch)
                return "unchanged"
            payload["sha"] = _as_string(existing.get("sha"))
        self._api_json("PUT", self._repo_path(f"/contents/{_quote_path(path)}"), payload=payload)
        result: UpsertResult = "updated" if existing is not None else "created"
        log_event(
            LOGGER,
            "github_file_upserted",
            repo_full_name=self.full_name,
            path=path,
            branch=branch,
            result=result,
        )
        return result

    def get_branch_sha(self, branch: str) -> str | None:
        try:
            payload = self._api_json("GET", self._repo_path(f"/git/ref/heads/{_quote_path(branch)}"))
        except GitHubNotFoundError:
            return None
        payload_obj = _require_object(payload, "git ref")
        target = _as_object_dict(payload_obj.get("object")) or {}
        sha = _as_string(target.get("sha"))
        return sha or None

    def ensure_branch(self, *, base: str, name: str) -> bool:
        """Create ``name`` from the tip of ``base``; returns False if it already existed."""
        if self.get_branch_sha(name) is not None:
            log_event(LOGGER, "github_branch_exists", repo_full_name=self.full_name, branch=name)
            return False
        base_sha = self.get_branch_sha(base)
        if base_sha is None:
            raise GitHubNotFoundError(f"Base branch {base} not found in {self.full_name}")
        try:
            self._api_json(
                "POST",
                self._repo_path("/git/refs"),
                payload={"ref": f"refs/heads/{name}", "sha": base_sha},
            )
        except GitHubConflictError:
            log_event(
                LOGGER,
                "github_branch_create_raced",
                repo_full_name=self.full_name,
                branch=name,
            )
            return False
        log_event(
            LOGGER,
            "github_branch_created",
            repo_full_name=self.full_name,
            branch=name,
            base=base,
        )
        return True

    def list_branches(self) -> tuple[str, ...]:
        payload = self._api_json("GET", self._repo_path("/branches?per_page=100"))
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list for branches")
        names = [
            _as_string(item_obj.get("name"))
            for item in payload
            if (item_obj := _as_object_dict(item)) is not None
        ]
        return tuple(name for name in names if name)

    def get_branch_protection(self, branch: str) -> dict[str, object] | None:
        try:
            payload = self._api_json(
                "GET", self._repo_path(f"/branches/{_quote_path(branch)}/protection")
            )
        except GitHubNotFoundError:
            return None
        return _as_object_dict(payload)

    def list_releases(self, *, limit: int = 5) -> tuple[str, ...]:
        payload = self._api_json("GET", self._repo_path(f"/releases?per_page={limit}"))
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list for releases")
        tags = [
            _as_string(item_obj.get("tag_name"))
            for item in payload
            if (item_obj := _as_object_dict(item)) is not None
        ]
        return tuple(tag for tag in tags if tag)

    def list_repo_secret_names(self) -> tuple[str, ...]:
        try:
            payload_obj = _require_object(
                self._api_json("GET", self._repo_path("/actions/secrets?per_page=100")),
                "secrets",
            )
        except GitHubApiError as exc:
            log_event(
                LOGGER,
                "github_secret_names_unavailable",
                repo_full_name=self.full_name,
                error_type=type(exc).__name__,
            )
            return ()
        secrets = payload_obj.get("secrets")
        if not isinstance(secrets, list):
            return ()
        names = [
            _as_string(item_obj.get("name"))
            for item in secrets
            if (item_obj := _as_object_dict(item)) is not None
        ]
        return tuple(sorted(name for name in names if name))

    def list_workflow_files(self) -> tuple[str, ...]:
        return tuple(
            entry.name
            for entry in self.list_directory(".github/workflows")
            if entry.entry_type == "file" and entry.name.endswith((".yml", ".yaml"))
        )

    def dispatch_workflow(self, workflow_file: str, *, ref: str) -> None:
        self._api_json(
            "POST",
            self._repo_path(f"/actions/workflows/{quote(workflow_file, safe='')}/dispatches"),
            payload={"ref": ref},
        )
        log_event(
            LOGGER,
            "github_workflow_dispatched",
            repo_full_name=self.full_name,
            workflow=workflow_file,
            ref=ref,
        )

    def find_pull_request_by_head(self, *, head: str, base: str | None = None) -> PullRequest | None:
        query_items: dict[str, str] = {
            "state": "open",
            "head": f"{self.owner}:{head}",
            "per_page": "100",
        }
        if base is not None:
            query_items["base"] = base
        payload = self._api_json("GET", self._repo_path(f"/pulls?{urlencode(query_items)}"))
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list for pull lookup")

        candidates = [
            PullRequest(
                number=_as_int(item_obj.get("number"), field="number"),
                html_url=_as_string(item_obj.get("html_url")),
            )
            for item in payload
            if (item_obj := _as_object_dict(item)) is not None
        ]
        if not candidates:
            log_event(
                LOGGER,
                "github_read",
                endpoint="pull_request_lookup_by_head",
                head=head,
                base=base,
                found=False,
            )
            return None
        selected = min(candidates, key=lambda pr: pr.number)
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request_lookup_by_head",
            head=head,
            base=base,
            found=True,
            pr_number=selected.number,
        )
        return selected

    def create_pull_request(self, *, title: str, head: str, base: str, body: str) -> PullRequest:
        try:
            payload_obj = _require_object(
                self._api_json(
                    "POST",
                    self._repo_path("/pulls"),
                    payload={"title": title, "head": head, "base": base, "body": body},
                ),
                "pull request",
            )
            number = _as_int(payload_obj.get("number"), field="number")
            html_url = _as_string(payload_obj.get("html_url"))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_pr_create_failed",
                repo_full_name=self.full_name,
                base=base,
                head=head,
                error_type=type(exc).__name__,
            )
            raise
        log_event(
            LOGGER,
            "github_pr_created",
            repo_full_name=self.full_name,
            pr_number=number,
            pr_url=html_url,
            base=base,
            head=head,
        )
        return PullRequest(number=number, html_url=html_url)

    def open_or_reuse_pull_request(
        self, *, head: str, base: str, title: str, body: str
    ) -> OpenPullRequestResult:
        existing = self.find_pull_request_by_head(head=head, base=base)
        if existing is not None:
            return OpenPullRequestResult(pull_request=existing, is_new=False)
        try:
            created = self.create_pull_request(title=title, head=head, base=base, body=body)
        except GitHubConflictError:
            # A concurrent caller opened it between the lookup and the create.
            raced = self.find_pull_request_by_head(head=head, base=base)
            if raced is None:
                raise
            return OpenPullRequestResult(pull_request=raced, is_new=False)
        return OpenPullRequestResult(pull_request=created, is_new=True)

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        payload_obj = _require_object(
            self._api_json("GET", self._repo_path(f"/pulls/{pr_number}")), "pull request"
        )
        snapshot = _parse_pull_request(payload_obj)
        log_event(LOGGER, "github_read", endpoint="pull_request", pr_number=snapshot.number)
        return snapshot

    def list_open_pull_requests(self, *, base: str | None = None) -> tuple[PullRequestSnapshot, ...]:
        query_items = {"state": "open", "per_page": "100"}
        if base is not None:
            query_items["base"] = base
        payload = self._api_json("GET", self._repo_path(f"/pulls?{urlencode(query_items)}"))
        if not isinstance(payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected list for pull requests")
        pulls = [
            _parse_pull_request(item_obj)
            for item in payload
            if (item_obj := _as_object_dict(item)) is not None
        ]
        log_event(LOGGER, "github_read", endpoint="pull_requests", base=base, count=len(pulls))
        return tuple(sorted(pulls, key=lambda pr: pr.number))

    def list_issue_comments(self, issue_number: int) -> list[PullRequestComment]:
        comments: list[PullRequestComment] = []
        page = 1
        while True:
            path = self._repo_path(
                f"/issues/{issue_number}/comments?{urlencode({'per_page': 100, 'page': page})}"
            )
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise GitHubPollingError("Unexpected GitHub response: expected list of comments")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                user_obj = _as_object_dict(item_obj.get("user"))
                comments.append(
                    PullRequestComment(
                        comment_id=_as_int(item_obj.get("id"), field="id"),
                        body=_as_string(item_obj.get("body")),
                        user_login=_as_login(user_obj.get("login") if user_obj else None),
                        created_at=_as_string(item_obj.get("created_at")),
                    )
                )
            if len(payload) < 100:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            count=len(comments),
        )
        return comments

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        try:
            self._api_json(
                "POST", self._repo_path(f"/issues/{issue_number}/comments"), payload={"body": body}
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                repo_full_name=self.full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def find_delegated_sub_pr(
        self, *, parent_pr_number: int, feature_branch: str
    ) -> PullRequestSnapshot | None:
        """Locate the pull request a delegated agent opened against ``feature_branch``.

        Explicit links win: PR URLs posted on the parent, then open PRs based on the
        feature branch that reference the parent. Among the remaining PRs based on the
        feature branch, an author/title match beats the oldest one. Only PRs based on
        the feature branch are ever returned. ``None`` is the normal answer while the
        agent has not acted yet.
        """
        link_pattern = re.compile(
            rf"https://github\.com/{re.escape(self.owner)}/{re.escape(self.name)}/pull/(\d+)",
            re.IGNORECASE,
        )
        seen: set[int] = set()
        for comment in self.list_issue_comments(parent_pr_number):
            for match in link_pattern.finditer(comment.body):
                number = int(match.group(1))
                if number == parent_pr_number or number in seen:
                    continue
                seen.add(number)
                try:
                    candidate = self.get_pull_request(number)
                except GitHubNotFoundError:
                    continue
                if candidate.base_ref == feature_branch and candidate.state == "open":
                    return self._discovered(candidate, parent_pr_number, source="comment_link")

        open_pulls = [
            pr for pr in self.list_open_pull_requests() if pr.number != parent_pr_number
        ]
        based_on_feature = [pr for pr in open_pulls if pr.base_ref == feature_branch]
        parent_refs = (f"#{parent_pr_number}", f"/pull/{parent_pr_number}")
        for pr in based_on_feature:
            if any(ref in pr.body for ref in parent_refs):
                return self._discovered(pr, parent_pr_number, source="body_reference")
        for pr in based_on_feature:
            if _DELEGATE_LOGIN_PATTERN.search(pr.user_login) or _DELEGATE_TITLE_PATTERN.search(
                pr.title
            ):
                return self._discovered(pr, parent_pr_number, source="heuristic")
        if based_on_feature:
            return self._discovered(based_on_feature[0], parent_pr_number, source="base_branch")
        return None

    def _discovered(
        self, pr: PullRequestSnapshot, parent_pr_number: int, *, source: str
    ) -> PullRequestSnapshot:
        log_event(
            LOGGER,
            "sub_pr_candidate_found",
            repo_full_name=self.full_name,
            parent_pr_number=parent_pr_number,
            pr_number=pr.number,
            source=source,
        )
        return pr

    def mark_ready_for_review(self, pr: PullRequestSnapshot) -> None:
        self._graphql(_MARK_READY_MUTATION, {"pullRequestId": pr.node_id})
        log_event(LOGGER, "github_pr_marked_ready", pr_number=pr.number)

    def approve_pull_request(self, pr_number: int) -> None:
        self._api_json(
            "POST",
            self._repo_path(f"/pulls/{pr_number}/reviews"),
            payload={"event": "APPROVE", "body": "Approved by ticketmerge."},
        )
        log_event(LOGGER, "github_pr_approved", pr_number=pr_number)

    def enable_auto_merge(self, pr: PullRequestSnapshot) -> None:
        self._graphql(_ENABLE_AUTO_MERGE_MUTATION, {"pullRequestId": pr.node_id})
        log_event(LOGGER, "github_pr_auto_merge_enabled", pr_number=pr.number)

    def merge_pull_request(self, pr_number: int) -> MergeOutcome:
        try:
            self._api_json(
                "PUT",
                self._repo_path(f"/pulls/{pr_number}/merge"),
                payload={"merge_method": "squash"},
            )
        except GitHubConflictError as exc:
            log_event(
                LOGGER,
                "github_pr_merge_conflict",
                repo_full_name=self.full_name,
                pr_number=pr_number,
                error=str(exc),
            )
            return "conflict"
        log_event(LOGGER, "github_pr_merged", repo_full_name=self.full_name, pr_number=pr_number)
        return "merged"

    def is_pull_request_merged(self, pr_number: int) -> bool:
        try:
            self._api_json("GET", self._repo_path(f"/pulls/{pr_number}/merge"))
        except GitHubNotFoundError:
            return False
        return True

    def advance_sub_pr(
        self, pr: PullRequestSnapshot, *, feature_branch: str
    ) -> SubPullRequestAdvance:
        """Push a delegated sub-PR toward merge, one best-effort step at a time.

        A PR that is not based on ``feature_branch`` is never touched.
        """
        if pr.base_ref != feature_branch:
            log_event(
                LOGGER,
                "sub_pr_base_mismatch",
                pr_number=pr.number,
                base_ref=pr.base_ref,
                feature_branch=feature_branch,
            )
            return SubPullRequestAdvance(held=True)
        if is_work_in_progress(pr.title, pr.labels):
            log_event(LOGGER, "sub_pr_held_wip", pr_number=pr.number, title=pr.title)
            return SubPullRequestAdvance(held=True)

        errors: list[str] = []
        marked_ready = False
        approved = False
        auto_merge_enabled = False
        merge_outcome: MergeOutcome | None = None

        if pr.draft:
            try:
                self.mark_ready_for_review(pr)
                marked_ready = True
            except Exception as exc:  # noqa: BLE001
                errors.append(self._step_failed("mark_ready", pr.number, exc))
        try:
            self.approve_pull_request(pr.number)
            approved = True
        except Exception as exc:  # noqa: BLE001
            errors.append(self._step_failed("approve", pr.number, exc))

        protection: dict[str, object] | None = None
        try:
            protection = self.get_branch_protection(pr.base_ref)
        except Exception as exc:  # noqa: BLE001
            errors.append(self._step_failed("branch_protection", pr.number, exc))
        if protection is not None:
            try:
                self.enable_auto_merge(pr)
                auto_merge_enabled = True
            except Exception as exc:  # noqa: BLE001
                errors.append(self._step_failed("auto_merge", pr.number, exc))

        if not auto_merge_enabled:
            try:
                merge_outcome = self.merge_pull_request(pr.number)
            except Exception as exc:  # noqa: BLE001
                errors.append(self._step_failed("merge", pr.number, exc))
                merge_outcome = "failed"

        return SubPullRequestAdvance(
            marked_ready=marked_ready,
            approved=approved,
            auto_merge_enabled=auto_merge_enabled,
            merge_outcome=merge_outcome,
            errors=tuple(errors),
        )

    def _step_failed(self, step: str, pr_number: int, exc: Exception) -> str:
        log_event(
            LOGGER,
            "sub_pr_step_failed",
            repo_full_name=self.full_name,
            pr_number=pr_number,
            step=step,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        return f"{step}: {exc}"

    def list_check_runs_for_ref(self, ref: str) -> tuple[CheckRunSnapshot, ...]:
        payload_obj = _require_object(
            self._api_json(
                "GET", self._repo_path(f"/commits/{_quote_path(ref)}/check-runs?per_page=100")
            ),
            "check runs",
        )
        runs_payload = payload_obj.get("check_runs")
        if not isinstance(runs_payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected check_runs list")
        checks = [
            CheckRunSnapshot(
                name=_as_string(item_obj.get("name")),
                status=_as_string(item_obj.get("status")).strip().lower(),
                conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                html_url=_as_string(item_obj.get("html_url")),
            )
            for item in runs_payload
            if (item_obj := _as_object_dict(item)) is not None
        ]
        log_event(LOGGER, "github_read", endpoint="check_runs", ref=ref, count=len(checks))
        return tuple(checks)

    def get_latest_run_for_ref(
        self, *, branch: str, head_sha: str | None = None
    ) -> WorkflowRunSnapshot | None:
        """Newest workflow run for this exact SHA (or branch when no SHA is known).

        Runs for other refs are never returned, even when they are newer.
        """
        query: dict[str, str] = {"per_page": "20"}
        if head_sha:
            query["head_sha"] = head_sha
        else:
            query["branch"] = branch
        payload_obj = _require_object(
            self._api_json("GET", self._repo_path(f"/actions/runs?{urlencode(query)}")),
            "workflow runs",
        )
        runs_payload = payload_obj.get("workflow_runs")
        if not isinstance(runs_payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected workflow_runs list")

        runs: list[WorkflowRunSnapshot] = []
        for item in runs_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            run_snapshot = WorkflowRunSnapshot(
                run_id=_as_int(item_obj.get("id"), field="id"),
                name=_as_string(item_obj.get("name")),
                status=_as_string(item_obj.get("status")).strip().lower(),
                conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                html_url=_as_string(item_obj.get("html_url")),
                head_sha=_as_string(item_obj.get("head_sha")),
                head_branch=_as_string(item_obj.get("head_branch")),
                created_at=_as_string(item_obj.get("created_at")),
            )
            if head_sha and run_snapshot.head_sha != head_sha:
                continue
            if not head_sha and run_snapshot.head_branch != branch:
                continue
            runs.append(run_snapshot)

        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_runs",
            branch=branch,
            head_sha=head_sha,
            count=len(runs),
        )
        if not runs:
            return None
        return max(runs, key=lambda run_snapshot: (run_snapshot.created_at, run_snapshot.run_id))

    def list_workflow_jobs(self, run_id: int) -> tuple[WorkflowJobSnapshot, ...]:
        payload_obj = _require_object(
            self._api_json("GET", self._repo_path(f"/actions/runs/{run_id}/jobs?per_page=100")),
            "workflow jobs",
        )
        jobs_payload = payload_obj.get("jobs")
        if not isinstance(jobs_payload, list):
            raise GitHubPollingError("Unexpected GitHub response: expected jobs list")

        jobs: list[WorkflowJobSnapshot] = []
        for item in jobs_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            steps = item_obj.get("steps")
            step_names: list[str] = []
            if isinstance(steps, list):
                for step in steps:
                    step_obj = _as_object_dict(step)
                    if step_obj is not None and isinstance(step_obj.get("name"), str):
                        step_names.append(cast(str, step_obj["name"]))
            jobs.append(
                WorkflowJobSnapshot(
                    job_id=_as_int(item_obj.get("id"), field="id"),
                    name=_as_string(item_obj.get("name")),
                    status=_as_string(item_obj.get("status")).strip().lower(),
                    conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                    html_url=_as_string(item_obj.get("html_url")),
                    step_names=tuple(step_names),
                )
            )

        log_event(LOGGER, "github_read", endpoint="workflow_jobs", run_id=run_id, count=len(jobs))
        return tuple(sorted(jobs, key=lambda job: job.job_id))

    def _get_content_object(self, path: str, *, ref: str | None) -> dict[str, object] | None:
        suffix = f"/contents/{_quote_path(path)}"
        if ref:
            suffix = f"{suffix}?{urlencode({'ref': ref})}"
        try:
            payload = self._api_json("GET", self._repo_path(suffix))
        except GitHubNotFoundError:
            return None
        return _as_object_dict(payload)

    def _graphql(self, query: str, variables: dict[str, object]) -> dict[str, object]:
        payload_obj = _require_object(
            self._api_json("POST", "graphql", payload={"query": query, "variables": variables}),
            "graphql",
        )
        errors = payload_obj.get("errors")
        if isinstance(errors, list) and errors:
            messages = [
                _as_string(error_obj.get("message"))
                for error in errors
                if (error_obj := _as_object_dict(error)) is not None
            ]
            raise GitHubPollingError(f"GitHub GraphQL request failed: {'; '.join(messages)}")
        return _as_object_dict(payload_obj.get("data")) or {}

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        etag = self._etags_by_path.get(path) if method_upper == "GET" else None
        status_code, headers, body = _gh_request(
            method_upper,
            path,
            payload=payload,
            etag=etag,
            timeout_seconds=self.timeout_seconds,
        )
        if status_code == 304:
            cached_payload = self._cached_get_payload_by_path.get(path)
            if cached_payload is None:
                raise GitHubPollingError(f"GitHub returned 304 for uncached path: {path}")
            return cached_payload

        parsed = _decode_body(body, path=path)
        response_etag = headers.get("etag")
        if method_upper == "GET" and response_etag and parsed is not None:
            self._etags_by_path[path] = response_etag
            self._cached_get_payload_by_path[path] = parsed
        return parsed


@dataclass(frozen=True)
class GitHubOrgGateway:
    """Organization-wide reads that are not tied to a single repository."""

    org: str
    timeout_seconds: int = 60

    def search_open_pull_requests(self, *, max_pages: int = 4) -> tuple[OrgPullRequestHit, ...]:
        hits: list[OrgPullRequestHit] = []
        for page in range(1, max_pages + 1):
            query = urlencode({"q": f"org:{self.org} is:pr is:open", "per_page": 50, "page": page})
            _status, _headers, body = _gh_request(
                "GET", f"/search/issues?{query}", timeout_seconds=self.timeout_seconds
            )
            payload_obj = _require_object(_decode_body(body, path="/search/issues"), "search")
            items = payload_obj.get("items")
            if not isinstance(items, list):
                raise GitHubPollingError("Unexpected GitHub response: expected search items list")
            for item in items:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                repo_full_name = _repo_from_api_url(_as_string(item_obj.get("repository_url")))
                if repo_full_name is None:
                    continue
                hits.append(
                    OrgPullRequestHit(
                        repo_full_name=repo_full_name,
                        number=_as_int(item_obj.get("number"), field="number"),
                        title=_as_string(item_obj.get("title")),
                        body=_as_string(item_obj.get("body")),
                        html_url=_as_string(item_obj.get("html_url")),
                    )
                )
            if len(items) < 50:
                break
        log_event(LOGGER, "github_read", endpoint="org_pull_search", org=self.org, count=len(hits))
        return tuple(hits)


def _gh_request(
    method: str,
    path: str,
    *,
    payload: dict[str, object] | None = None,
    etag: str | None = None,
    timeout_seconds: int | None = None,
) -> tuple[int, dict[str, str], str]:
    cmd = ["gh", "api", "--method", method]
    if etag:
        cmd.extend(["--header", f"If-None-Match: {etag}"])
    cmd.extend(["--include", path])
    stdin_payload: str | None = None
    if payload is not None:
        cmd.extend(["--input", "-"])
        stdin_payload = json.dumps(payload)

    try:
        raw = run(cmd, input_text=stdin_payload, check=False, timeout_seconds=timeout_seconds)
    except CommandError as exc:
        log_event(
            LOGGER,
            "github_request_failed",
            method=method,
            path=path,
            error_type=type(exc).__name__,
        )
        raise GitHubPollingError(f"GitHub API {method} failed for path {path}: {exc}") from exc

    try:
        status_code, headers, body = _parse_http_response(raw)
    except RuntimeError as exc:
        error = _classify_github_failure(method=method, path=path, status_code=None, body=raw)
        log_event(
            LOGGER,
            "github_request_failed",
            method=method,
            path=path,
            error_type=type(error).__name__,
            raw_preview=_preview_for_log(raw),
        )
        raise error from exc

    if status_code == 304 or 200 <= status_code < 300:
        return status_code, headers, body

    error = _classify_github_failure(method=method, path=path, status_code=status_code, body=body)
    if not isinstance(error, GitHubNotFoundError):
        log_event(
            LOGGER,
            "github_request_failed",
            method=method,
            path=path,
            status_code=status_code,
            error_type=type(error).__name__,
            raw_preview=_preview_for_log(body),
        )
    raise error


def _classify_github_failure(
    *, method: str, path: str, status_code: int | None, body: str
) -> GitHubApiError:
    message = body.strip() or "<empty>"
    detail = f"GitHub API {method} failed for path {path} (status {status_code}): {message}"
    lowered = message.lower()
    if status_code is None:
        if "gh auth login" in lowered or "authentication" in lowered:
            return GitHubAuthenticationError(f"GitHub CLI is not authenticated: {detail}")
        return GitHubPollingError(detail)
    if status_code == 404:
        return GitHubNotFoundError(detail, status_code=status_code)
    if status_code == 401:
        return GitHubAuthenticationError(detail, status_code=status_code)
    if status_code == 403:
        if "rate limit" in lowered:
            return GitHubPollingError(detail, status_code=status_code)
        return GitHubAuthenticationError(detail, status_code=status_code)
    if status_code in {405, 409}:
        return GitHubConflictError(detail, status_code=status_code)
    if status_code == 422 and ("already exists" in lowered or "not mergeable" in lowered):
        return GitHubConflictError(detail, status_code=status_code)
    return GitHubPollingError(detail, status_code=status_code)


def _decode_body(body: str, *, path: str) -> object:
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except json.JSONDecodeError as exc:
        raise GitHubPollingError(f"GitHub returned invalid JSON for path {path}") from exc


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index
            break

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")
    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    return status_code, headers, "\n".join(lines[body_start:])


def _parse_pull_request(payload_obj: dict[str, object]) -> PullRequestSnapshot:
    head = _as_object_dict(payload_obj.get("head"))
    base = _as_object_dict(payload_obj.get("base"))
    if head is None or base is None:
        raise GitHubPollingError("Unexpected GitHub response: missing pull request head/base")
    user_obj = _as_object_dict(payload_obj.get("user"))
    labels: list[str] = []
    labels_obj = payload_obj.get("labels")
    if isinstance(labels_obj, list):
        for entry in labels_obj:
            entry_obj = _as_object_dict(entry)
            if entry_obj is not None and isinstance(entry_obj.get("name"), str):
                labels.append(cast(str, entry_obj["name"]))
    merged_raw = payload_obj.get("merged")
    merged = merged_raw if isinstance(merged_raw, bool) else payload_obj.get("merged_at") is not None
    return PullRequestSnapshot(
        number=_as_int(payload_obj.get("number"), field="number"),
        title=_as_string(payload_obj.get("title")),
        body=_as_string(payload_obj.get("body")),
        html_url=_as_string(payload_obj.get("html_url")),
        node_id=_as_string(payload_obj.get("node_id")),
        head_ref=_as_string(head.get("ref")),
        head_sha=_as_string(head.get("sha")),
        base_ref=_as_string(base.get("ref")),
        draft=payload_obj.get("draft") is True,
        state=_as_string(payload_obj.get("state")).strip().lower(),
        merged=merged,
        user_login=_as_login(user_obj.get("login") if user_obj else None),
        labels=tuple(labels),
        created_at=_as_string(payload_obj.get("created_at")),
    )


def _repo_from_api_url(url: str) -> str | None:
    _, sep, tail = url.partition("/repos/")
    if not sep:
        return None
    parts = tail.strip("/").split("/")
    if len(parts) < 2 or not parts[0] or not parts[1]:
        return None
    return f"{parts[0]}/{parts[1]}"


def _quote_path(path: str) -> str:
    return quote(path.strip("/"), safe="/")


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _require_object(value: object, what: str) -> dict[str, object]:
    payload_obj = _as_object_dict(value)
    if payload_obj is None:
        raise GitHubPollingError(f"Unexpected GitHub response: expected object for {what}")
    return payload_obj


def _normalize_optional_lower_str(value: object) -> str | None:
    if value is None:
        return None
    normalized = _as_string(value).strip().lower()
    return normalized or None


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_login(value: object) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip().lower()


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubPollingError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubPollingError(
                f"Unexpected GitHub response value for {field}: {value}"
            ) from exc
    raise GitHubPollingError(f"Unexpected GitHub response type for {field}")
