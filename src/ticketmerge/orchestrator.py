from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
import logging
import re

from ticketmerge.advisor import PlanningAdvisor
from ticketmerge.config import AppConfig
from ticketmerge.github_gateway import (
    GitHubConflictError,
    GitHubGateway,
    GitHubOrgGateway,
)
from ticketmerge.jira_gateway import JiraGateway
from ticketmerge.models import (
    ReconciledPullRequest,
    RepositoryConfig,
    Ticket,
    WorkItem,
    branch_name_for_ticket,
    extract_ticket_key,
    is_feature_branch,
)
from ticketmerge.observability import log_event, logging_ticket_context
from ticketmerge.pipeline_templates import (
    marker_path,
    needs_dockerfile,
    render_dockerfile,
    render_marker,
    render_workflow,
    workflow_path,
)
from ticketmerge.prompts import (
    build_delegation_prompt,
    build_pull_request_body,
    pull_request_title,
)
from ticketmerge.registry import TicketRegistry
from ticketmerge.repo_inspector import LANGUAGE_DEFAULTS, RepositoryInspector


LOGGER = logging.getLogger("ticketmerge.orchestrator")

FAILURE_MARKER = "[ticketmerge:attempt-failed]"
_CI_TOKEN = re.compile(r"(?<![a-z0-9])ci(?![a-z0-9])")


@dataclass(frozen=True)
class TicketPlan:
    repo_full_name: str
    config: RepositoryConfig
    secret_names: tuple[str, ...] = ()
    fix_strategy: str | None = None
    pipeline_draft: str | None = None


class TicketOrchestrator:
    """Ingests actionable tickets and drives each one to an open pull request.

    Each ticket moves through Analyzing, Branching, then PR created or reused.
    The resulting WorkItem goes to the registry, where the monitor picks it up.
    The tracker's status is the only retry queue: failures either return the
    ticket to the queue status or, past the attempt limit, park it at the
    attention status.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        tracker: JiraGateway,
        registry: TicketRegistry,
        inspector: RepositoryInspector,
        gateway_for: Callable[[str], GitHubGateway],
        org_gateway_for: Callable[[str], GitHubOrgGateway],
        advisor: PlanningAdvisor | None = None,
    ) -> None:
        self._config = config
        self._tracker = tracker
        self._registry = registry
        self._inspector = inspector
        self._gateway_for = gateway_for
        self._org_gateway_for = org_gateway_for
        self._advisor = advisor

    def list_projects(self) -> tuple[str, ...]:
        return self._tracker.list_project_keys(force_refresh=True)

    def poll_once(self) -> int:
        if self._registry.paused:
            self._registry.set_phase("waiting")
            log_event(LOGGER, "ticket_poll_skipped", reason="paused")
            return 0

        self._registry.set_phase("scanning")
        try:
            tickets = self._tracker.fetch_actionable_tickets()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ticket_poll_failed",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._registry.set_phase("waiting")
            return 0

        self._registry.record_scan(tickets)
        processed = 0
        for ticket in tickets:
            if self._registry.paused:
                log_event(LOGGER, "ticket_poll_interrupted", reason="paused")
                break
            self._registry.set_phase("processing", ticket_key=ticket.key)
            try:
                self.process_ticket(ticket)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "ticket_processing_crashed",
                    ticket_key=ticket.key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            finally:
                self._registry.finish_queued(ticket.key)
            processed += 1
        self._registry.set_phase("waiting")
        return processed

    def process_ticket(self, ticket: Ticket) -> WorkItem | None:
        with logging_ticket_context(ticket.key):
            log_event(
                LOGGER,
                "ticket_processing_started",
                ticket_key=ticket.key,
                priority=ticket.priority_name,
            )
            self._registry.mark_queued_state(ticket.key, "analyzing")

            repo_full_name = self._resolve_repo(ticket)
            if repo_full_name is None:
                self._escalate(
                    ticket,
                    "No target repository could be determined. Set the repository field "
                    "on the ticket or configure a default repository for the project.",
                )
                return None

            owner = repo_full_name.split("/", 1)[0]
            if not self._config.github.allows_owner(owner):
                log_event(
                    LOGGER,
                    "ticket_out_of_scope",
                    ticket_key=ticket.key,
                    repo_full_name=repo_full_name,
                )
                allowed = ", ".join(self._config.github.allowed_orgs)
                self._record_failure(
                    ticket,
                    f"Repository {repo_full_name} belongs to organization {owner}, "
                    f"which is outside the allowed organizations ({allowed}). "
                    "No branch or pull request was created.",
                )
                return None

            gateway = self._gateway_for(repo_full_name)
            plan = self._analyze(ticket, repo_full_name, gateway)
            try:
                item = self._materialize(ticket, plan, gateway)
            except GitHubConflictError as exc:
                self._escalate(ticket, f"Conflict while preparing the pull request: {exc}")
                return None
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "ticket_processing_failed",
                    ticket_key=ticket.key,
                    repo_full_name=repo_full_name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                self._record_failure(ticket, f"{type(exc).__name__}: {exc}")
                return None

            log_event(
                LOGGER,
                "ticket_processing_finished",
                ticket_key=ticket.key,
                pr_number=item.pr_number,
                state=item.state,
            )
            return item

    def reconcile_on_startup(self) -> tuple[WorkItem, ...]:
        """Rebuild the monitoring set from open pull requests and tracker state."""
        self._registry.set_phase("reconciling")
        candidates: dict[str, ReconciledPullRequest] = {}
        for org in self._config.github.allowed_orgs:
            try:
                hits = self._org_gateway_for(org).search_open_pull_requests(
                    max_pages=self._config.runtime.reconcile_max_pages
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "reconciliation_search_failed",
                    org=org,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            for hit in hits:
                try:
                    pr = self._gateway_for(hit.repo_full_name).get_pull_request(hit.number)
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        LOGGER,
                        "reconciliation_pr_read_failed",
                        repo_full_name=hit.repo_full_name,
                        pr_number=hit.number,
                        error_type=type(exc).__name__,
                    )
                    continue
                if is_feature_branch(pr.base_ref):
                    continue
                ticket_key = extract_ticket_key(pr.title, pr.body, pr.head_ref)
                if ticket_key is None:
                    continue
                candidate = ReconciledPullRequest(
                    ticket_key=ticket_key,
                    repo_full_name=hit.repo_full_name,
                    pr_number=pr.number,
                    pr_url=pr.html_url,
                    head_ref=pr.head_ref,
                    head_sha=pr.head_sha,
                )
                existing = candidates.get(ticket_key)
                expected_branch = branch_name_for_ticket(ticket_key)
                if existing is None or (
                    existing.head_ref != expected_branch and candidate.head_ref == expected_branch
                ):
                    candidates[ticket_key] = candidate

        adopted: list[WorkItem] = []
        for ticket_key, candidate in sorted(candidates.items()):
            try:
                ticket = self._tracker.get_ticket(ticket_key)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "reconciliation_ticket_read_failed",
                    ticket_key=ticket_key,
                    error_type=type(exc).__name__,
                )
                continue
            if ticket.status_category == "done":
                log_event(
                    LOGGER,
                    "reconciliation_ticket_skipped",
                    ticket_key=ticket_key,
                    status=ticket.status_name,
                )
                continue
            adopted.append(
                self._registry.track(
                    WorkItem(
                        ticket_key=ticket_key,
                        repo_full_name=candidate.repo_full_name,
                        branch_name=candidate.head_ref,
                        state="monitoring",
                        pr_url=candidate.pr_url,
                        pr_number=candidate.pr_number,
                        head_sha=candidate.head_sha,
                        deploy_target=ticket.fields.deploy_target
                        or self._config.workflow.default_deploy_target,
                    )
                )
            )

        log_event(
            LOGGER,
            "reconciliation_finished",
            candidates=len(candidates),
            adopted=len(adopted),
        )
        self._registry.set_phase("waiting")
        return tuple(adopted)

    def _resolve_repo(self, ticket: Ticket) -> str | None:
        candidate = ticket.fields.repo or self._config.default_repo_for(ticket.project_key)
        if candidate is None:
            return None
        candidate = candidate.strip().removeprefix("https://github.com/").strip("/")
        owner, _, name = candidate.partition("/")
        if not owner or not name or "/" in name:
            return None
        return candidate

    def _analyze(self, ticket: Ticket, repo_full_name: str, gateway: GitHubGateway) -> TicketPlan:
        ticket_text = f"{ticket.summary}\n{ticket.description}"
        try:
            config = self._inspector.resolve_config(
                repo_full_name, ticket.fields, ticket_text=ticket_text
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ticket_analysis_degraded",
                ticket_key=ticket.key,
                stage="resolve_config",
                error_type=type(exc).__name__,
            )
            build, test, run = LANGUAGE_DEFAULTS["node"]
            config = RepositoryConfig(
                language="node",
                build_command=build,
                test_command=test,
                run_command=run,
                deploy_target=self._config.workflow.default_deploy_target,
                default_branch="main",
            )

        plan = TicketPlan(repo_full_name=repo_full_name, config=config)
        try:
            secret_names = gateway.list_repo_secret_names()
            fix_strategy: str | None = None
            pipeline_draft: str | None = None
            if self._advisor is not None:
                summary = self._inspector.describe_repository(repo_full_name)
                fix_strategy = self._advisor.plan_fix(
                    ticket=ticket,
                    repo_full_name=repo_full_name,
                    config=config,
                    repo_summary=summary,
                )
                pipeline_draft = self._advisor.draft_pipeline(
                    ticket=ticket,
                    repo_full_name=repo_full_name,
                    config=config,
                    secret_names=secret_names,
                )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ticket_analysis_degraded",
                ticket_key=ticket.key,
                stage="advisor",
                error_type=type(exc).__name__,
            )
            return plan
        return TicketPlan(
            repo_full_name=repo_full_name,
            config=config,
            secret_names=secret_names,
            fix_strategy=fix_strategy,
            pipeline_draft=pipeline_draft,
        )

    def _materialize(self, ticket: Ticket, plan: TicketPlan, gateway: GitHubGateway) -> WorkItem:
        workflow = self._config.workflow
        self._tracker.transition(ticket.key, workflow.in_progress_status)
        self._registry.mark_queued_state(ticket.key, "branching")

        branch = branch_name_for_ticket(ticket.key)
        base = plan.config.default_branch
        gateway.ensure_branch(base=base, name=branch)
        written = self._write_pipeline_files(ticket, plan, gateway, branch)

        result = gateway.open_or_reuse_pull_request(
            head=branch,
            base=base,
            title=pull_request_title(ticket, plan.config),
            body=build_pull_request_body(
                ticket=ticket,
                repo_full_name=plan.repo_full_name,
                config=plan.config,
                written_paths=written,
                secret_names=plan.secret_names,
                fix_strategy=plan.fix_strategy,
            ),
        )
        pr = result.pull_request
        if result.is_new and self._config.delegation.enabled:
            self._post_delegation_prompt(ticket, plan, gateway, branch, pr.number)

        if result.is_new:
            self._tracker.comment(ticket.key, f"Pull request opened: {pr.html_url}")
        else:
            self._tracker.comment(ticket.key, f"Pull request already open, reusing it: {pr.html_url}")
        self._tracker.transition(ticket.key, self._config.post_pr_status_for(ticket.project_key))

        item = self._registry.track(
            WorkItem(
                ticket_key=ticket.key,
                repo_full_name=plan.repo_full_name,
                branch_name=branch,
                state="pr_created" if result.is_new else "pr_reused",
                pr_url=pr.html_url,
                pr_number=pr.number,
                deploy_target=plan.config.deploy_target,
            )
        )
        self._registry.record_history(
            ticket.key,
            outcome=item.state,
            detail=pr.html_url,
        )
        return item

    def _write_pipeline_files(
        self, ticket: Ticket, plan: TicketPlan, gateway: GitHubGateway, branch: str
    ) -> tuple[str, ...]:
        written: list[str] = []
        repo_name = plan.repo_full_name.split("/", 1)[1]
        existing = gateway.list_workflow_files()
        if existing:
            path = marker_path(ticket.key)
            gateway.upsert_file(
                branch=branch,
                path=path,
                content=render_marker(ticket.key, plan.config, existing),
                message=f"{ticket.key}: record CI/CD automation settings",
            )
            written.append(path)
            chosen = _pick_existing_workflow(existing, plan.config.language)
            try:
                gateway.dispatch_workflow(chosen, ref=branch)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "workflow_dispatch_failed",
                    ticket_key=ticket.key,
                    workflow=chosen,
                    error_type=type(exc).__name__,
                )
        else:
            path = workflow_path(repo_name)
            gateway.upsert_file(
                branch=branch,
                path=path,
                content=plan.pipeline_draft or render_workflow(repo_name, plan.config),
                message=f"{ticket.key}: add CI/CD workflow",
            )
            written.append(path)

        if needs_dockerfile(plan.config) and not gateway.file_exists("Dockerfile", ref=branch):
            gateway.upsert_file(
                branch=branch,
                path="Dockerfile",
                content=render_dockerfile(plan.config),
                message=f"{ticket.key}: add Dockerfile",
            )
            written.append("Dockerfile")
        return tuple(written)

    def _post_delegation_prompt(
        self,
        ticket: Ticket,
        plan: TicketPlan,
        gateway: GitHubGateway,
        branch: str,
        pr_number: int,
    ) -> None:
        body = build_delegation_prompt(
            ticket=ticket,
            repo_full_name=plan.repo_full_name,
            config=plan.config,
            branch_name=branch,
            pr_number=pr_number,
            secret_names=plan.secret_names,
            mention=self._config.delegation.mention,
            fix_strategy=plan.fix_strategy,
        )
        try:
            gateway.post_issue_comment(pr_number, body)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "delegation_prompt_failed",
                ticket_key=ticket.key,
                pr_number=pr_number,
                error_type=type(exc).__name__,
            )

    def _record_failure(self, ticket: Ticket, message: str) -> None:
        limit = self._config.runtime.max_ticket_attempts
        attempt = self._tracker.count_comments_containing(ticket.key, FAILURE_MARKER) + 1
        if attempt >= limit:
            self._tracker.comment(
                ticket.key,
                f"{FAILURE_MARKER} Attempt {attempt} of {limit} failed: {message}\n\n"
                "Attempt limit reached. Parking the ticket for a human to look at.",
            )
            self._tracker.transition(ticket.key, self._config.workflow.attention_status)
            self._registry.record_history(ticket.key, outcome="needs_attention", detail=message)
            log_event(LOGGER, "ticket_escalated", ticket_key=ticket.key, attempts=attempt)
            return

        self._tracker.comment(
            ticket.key,
            f"{FAILURE_MARKER} Attempt {attempt} of {limit} failed: {message}\n\n"
            f"Returning the ticket to {self._config.workflow.queue_status} for another attempt.",
        )
        self._tracker.transition(ticket.key, self._config.workflow.queue_status)
        self._registry.record_history(ticket.key, outcome="failed", detail=message)

    def _escalate(self, ticket: Ticket, message: str) -> None:
        self._tracker.comment(ticket.key, f"Needs attention: {message}")
        self._tracker.transition(ticket.key, self._config.workflow.attention_status)
        self._registry.record_history(ticket.key, outcome="needs_attention", detail=message)
        log_event(LOGGER, "ticket_escalated", ticket_key=ticket.key, reason=message)


def _pick_existing_workflow(names: tuple[str, ...], language: str) -> str:
    for name in names:
        if _CI_TOKEN.search(name.lower()):
            return name
    for name in names:
        if language in name.lower():
            return name
    return names[0]
