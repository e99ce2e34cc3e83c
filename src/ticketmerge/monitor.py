from __future__ import annotations

from collections.abc import Callable
import logging
import re

from ticketmerge.config import AppConfig
from ticketmerge.github_gateway import GitHubGateway
from ticketmerge.jira_gateway import JiraGateway
from ticketmerge.models import (
    PullRequestSnapshot,
    WorkItem,
    WorkflowJobSnapshot,
    WorkflowRunSnapshot,
)
from ticketmerge.observability import log_event, logging_ticket_context
from ticketmerge.registry import TicketRegistry


LOGGER = logging.getLogger("ticketmerge.monitor")

FAILED_CONCLUSIONS = frozenset({"failure", "timed_out", "startup_failure"})
GREEN_CONCLUSIONS = frozenset({"success", "neutral", "skipped"})
_DEPLOY_PATTERN = re.compile(r"azure|webapp|deploy", re.IGNORECASE)


def summarize_failure(
    run: WorkflowRunSnapshot,
    jobs: tuple[WorkflowJobSnapshot, ...],
    *,
    deploy_target: str,
) -> str:
    failed_jobs = [job for job in jobs if job.conclusion in FAILED_CONCLUSIONS]
    names = ", ".join(job.name for job in failed_jobs) or run.name or "unknown"
    lines = [f"CI run failed. Failed job(s): {names}.", "", "Logs:", f"- Run: {run.html_url}"]
    lines.extend(f"- {job.name}: {job.html_url}" for job in failed_jobs if job.html_url)

    lines.extend(
        [
            "",
            "Common fixes:",
            "- Verify the required secrets exist (AZURE_WEBAPP_* or ACR_*). "
            "Reference them as ${{ secrets.NAME }}.",
            "- Fix build or test errors shown in the logs, then re-run the workflow.",
            "- Make sure the deploy job's branch and event conditions are met.",
        ]
    )

    deploy_related = any(
        _DEPLOY_PATTERN.search(job.name) or any(_DEPLOY_PATTERN.search(step) for step in job.step_names)
        for job in failed_jobs
    )
    if deploy_related and deploy_target.strip().lower() in {"azure-webapp", "azure"}:
        lines.extend(
            [
                "",
                "Azure Web App hints:",
                "- AZURE_WEBAPP_PUBLISH_PROFILE must hold the full publish profile XML.",
                "- AZURE_WEBAPP_NAME must match the app name exactly.",
                "- If deploying to a slot, check the slot name.",
                "- Confirm the workflow's GITHUB_TOKEN permissions allow the deploy step.",
            ]
        )
    elif deploy_related:
        lines.extend(
            [
                "",
                f"Deploy hints ({deploy_target}):",
                "- Check the registry or target credentials referenced by the deploy job.",
            ]
        )
    return "\n".join(lines)


class PullRequestMonitor:
    """Periodic reconciliation of every in-flight WorkItem against the code host.

    Transient errors leave the WorkItem in place for the next tick. Only an
    observed merge or close retires it.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        tracker: JiraGateway,
        registry: TicketRegistry,
        gateway_for: Callable[[str], GitHubGateway],
    ) -> None:
        self._config = config
        self._tracker = tracker
        self._registry = registry
        self._gateway_for = gateway_for

    def tick(self) -> int:
        items = self._registry.active_items()
        for item in items:
            with logging_ticket_context(item.ticket_key):
                try:
                    self.reconcile_item(item)
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        LOGGER,
                        "monitor_item_failed",
                        ticket_key=item.ticket_key,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    self._registry.update(item.ticket_key, last_error=f"{type(exc).__name__}: {exc}")
        return len(items)

    def reconcile_item(self, item: WorkItem) -> None:
        if item.pr_number is None:
            return
        gateway = self._gateway_for(item.repo_full_name)
        pr = gateway.get_pull_request(item.pr_number)
        if pr.merged:
            self._finish_merged(item, pr, gateway)
            return
        if pr.state == "closed":
            self._tracker.comment(
                item.ticket_key,
                f"Pull request {pr.html_url} was closed without merging. Monitoring stopped.",
            )
            self._registry.retire(item.ticket_key, outcome="abandoned", detail=pr.html_url)
            log_event(LOGGER, "work_item_retired", ticket_key=item.ticket_key, outcome="abandoned")
            return

        head_sha = pr.head_sha or None
        run = gateway.get_latest_run_for_ref(branch=item.branch_name, head_sha=head_sha)
        checks = gateway.list_check_runs_for_ref(head_sha or item.branch_name)
        item = (
            self._registry.update(
                item.ticket_key,
                state="needs_attention" if item.sub_pr_conflict_sha else "monitoring",
                head_sha=head_sha,
                checks=checks,
                latest_run_id=run.run_id if run is not None else None,
                latest_run_conclusion=run.conclusion if run is not None else None,
                last_error=None,
            )
            or item
        )

        item = self._advance_delegated(item, gateway)
        if run is not None:
            self._report_failure(item, run, gateway)

    def _advance_delegated(self, item: WorkItem, gateway: GitHubGateway) -> WorkItem:
        sub: PullRequestSnapshot | None = None
        if item.pr_number is None:
            return item
        if item.sub_pr_number is None:
            sub = gateway.find_delegated_sub_pr(
                parent_pr_number=item.pr_number, feature_branch=item.branch_name
            )
            if sub is None:
                return item
            log_event(
                LOGGER,
                "sub_pr_discovered",
                ticket_key=item.ticket_key,
                pr_number=sub.number,
                parent_pr_number=item.pr_number,
            )
            item = (
                self._registry.update(
                    item.ticket_key,
                    sub_pr_number=sub.number,
                    sub_pr_url=sub.html_url,
                    sub_pr_created_at=sub.created_at,
                )
                or item
            )
        if item.sub_pr_merged or item.sub_pr_number is None:
            return item

        if sub is None:
            sub = gateway.get_pull_request(item.sub_pr_number)
        if sub.base_ref != item.branch_name:
            log_event(
                LOGGER,
                "sub_pr_base_mismatch",
                ticket_key=item.ticket_key,
                pr_number=sub.number,
                base_ref=sub.base_ref,
            )
            return self._forget_sub_pr(item)
        if sub.merged:
            return self._mark_sub_pr_merged(item, sub)
        if sub.state == "closed":
            log_event(LOGGER, "sub_pr_closed", ticket_key=item.ticket_key, pr_number=sub.number)
            return self._forget_sub_pr(item)
        if item.sub_pr_conflict_sha is not None and item.sub_pr_conflict_sha == sub.head_sha:
            return item

        result = gateway.advance_sub_pr(sub, feature_branch=item.branch_name)
        if result.held:
            return item
        if result.conflict:
            self._tracker.comment(
                item.ticket_key,
                f"The delegated pull request {sub.html_url} cannot be merged because of a "
                "conflict. It needs a human to resolve it; merging resumes after new commits.",
            )
            self._tracker.transition(item.ticket_key, self._config.workflow.attention_status)
            log_event(LOGGER, "sub_pr_conflict", ticket_key=item.ticket_key, pr_number=sub.number)
            return (
                self._registry.update(
                    item.ticket_key,
                    sub_pr_conflict_sha=sub.head_sha,
                    state="needs_attention",
                )
                or item
            )

        merged = result.merge_outcome == "merged"
        if not merged and not result.auto_merge_enabled:
            merged = gateway.is_pull_request_merged(sub.number)
        if merged:
            return self._mark_sub_pr_merged(item, sub)
        return item

    def _forget_sub_pr(self, item: WorkItem) -> WorkItem:
        return (
            self._registry.update(
                item.ticket_key,
                sub_pr_number=None,
                sub_pr_url=None,
                sub_pr_created_at=None,
                sub_pr_conflict_sha=None,
            )
            or item
        )

    def _mark_sub_pr_merged(self, item: WorkItem, sub: PullRequestSnapshot) -> WorkItem:
        log_event(LOGGER, "sub_pr_merged", ticket_key=item.ticket_key, pr_number=sub.number)
        self._tracker.comment(
            item.ticket_key,
            f"Delegated changes merged into the feature branch: {sub.html_url}",
        )
        return (
            self._registry.update(
                item.ticket_key,
                sub_pr_merged=True,
                sub_pr_conflict_sha=None,
                state="monitoring",
            )
            or item
        )

    def _report_failure(
        self, item: WorkItem, run: WorkflowRunSnapshot, gateway: GitHubGateway
    ) -> None:
        if run.status != "completed" or run.conclusion not in FAILED_CONCLUSIONS:
            return
        if item.failure_reported_run_id == run.run_id:
            return
        try:
            jobs = gateway.list_workflow_jobs(run.run_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "workflow_jobs_unavailable",
                ticket_key=item.ticket_key,
                run_id=run.run_id,
                error_type=type(exc).__name__,
            )
            jobs = ()
        summary = summarize_failure(run, jobs, deploy_target=item.deploy_target)
        if not self._tracker.comment(item.ticket_key, summary):
            return
        self._registry.update(item.ticket_key, failure_reported_run_id=run.run_id)
        log_event(LOGGER, "ci_failure_reported", ticket_key=item.ticket_key, run_id=run.run_id)

    def _finish_merged(
        self, item: WorkItem, pr: PullRequestSnapshot, gateway: GitHubGateway
    ) -> None:
        run = gateway.get_latest_run_for_ref(branch=item.branch_name, head_sha=pr.head_sha or None)
        if run is not None and run.status != "completed":
            self._registry.update(item.ticket_key, state="monitoring", head_sha=pr.head_sha)
            return

        workflow = self._config.workflow
        if run is None or run.conclusion in GREEN_CONCLUSIONS:
            self._tracker.comment(
                item.ticket_key,
                f"Pull request {pr.html_url} merged with passing CI. Closing the ticket.",
            )
            self._tracker.transition(item.ticket_key, workflow.done_status)
            outcome = "closed"
        else:
            self._tracker.comment(
                item.ticket_key,
                f"Pull request {pr.html_url} merged, but its last CI run concluded "
                f"{run.conclusion}: {run.html_url}",
            )
            self._tracker.transition(item.ticket_key, workflow.attention_status)
            outcome = "needs_attention"
        self._registry.retire(item.ticket_key, outcome=outcome, detail=pr.html_url)
        log_event(LOGGER, "work_item_retired", ticket_key=item.ticket_key, outcome=outcome)
