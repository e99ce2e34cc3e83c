from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import logging
import threading
import time
from typing import Literal

from ticketmerge.advisor import PlanningAdvisor
from ticketmerge.codex_adapter import CodexSuggestionAgent
from ticketmerge.config import AppConfig
from ticketmerge.github_gateway import GitHubGateway, GitHubOrgGateway
from ticketmerge.jira_gateway import JiraGateway
from ticketmerge.models import RegistrySnapshot
from ticketmerge.monitor import PullRequestMonitor
from ticketmerge.observability import log_event
from ticketmerge.orchestrator import TicketOrchestrator
from ticketmerge.registry import TicketRegistry
from ticketmerge.repo_inspector import RepositoryInspector


LOGGER = logging.getLogger("ticketmerge.service_runner")

_JOIN_POLL_SECONDS = 0.5

ServiceSignalKind = Literal["refresh", "fatal_error"]


@dataclass(frozen=True)
class ServiceSignal:
    kind: ServiceSignalKind
    detail: str | None = None


class GatewayPool:
    """One GitHubGateway per repository so ETag caches survive across cycles."""

    def __init__(self, *, timeout_seconds: int) -> None:
        self._timeout_seconds = timeout_seconds
        self._gateways: dict[str, GitHubGateway] = {}
        self._lock = threading.Lock()

    def __call__(self, repo_full_name: str) -> GitHubGateway:
        with self._lock:
            gateway = self._gateways.get(repo_full_name)
            if gateway is None:
                owner, _, name = repo_full_name.partition("/")
                gateway = GitHubGateway(owner, name, timeout_seconds=self._timeout_seconds)
                self._gateways[repo_full_name] = gateway
            return gateway

    def org(self, org: str) -> GitHubOrgGateway:
        return GitHubOrgGateway(org, timeout_seconds=self._timeout_seconds)


@dataclass
class ServiceController:
    """Runs the ingestion and monitor loops and takes operator commands."""

    config: AppConfig
    registry: TicketRegistry
    orchestrator: TicketOrchestrator
    monitor: PullRequestMonitor
    signal_sink: Callable[[ServiceSignal], None] | None = None
    stop_event: threading.Event = field(default_factory=threading.Event)
    _poll_now: threading.Event = field(default_factory=threading.Event, init=False, repr=False)

    def run(self, *, once: bool) -> None:
        if once:
            self._reconcile()
            self._guarded("ingest", self.orchestrator.poll_once)
            self._guarded("monitor", self.monitor.tick)
            return

        ingest_thread = threading.Thread(
            target=self._ingest_loop, name="ticketmerge-ingest", daemon=True
        )
        monitor_thread = threading.Thread(
            target=self._monitor_loop, name="ticketmerge-monitor", daemon=True
        )
        ingest_thread.start()
        monitor_thread.start()
        try:
            while ingest_thread.is_alive():
                ingest_thread.join(timeout=_JOIN_POLL_SECONDS)
        finally:
            self.stop()
            ingest_thread.join(timeout=_JOIN_POLL_SECONDS)
            monitor_thread.join(timeout=self.config.runtime.monitor_interval_seconds + 5)

    def stop(self) -> None:
        self.stop_event.set()
        self._poll_now.set()

    def request_poll(self) -> None:
        log_event(LOGGER, "manual_poll_requested")
        self._poll_now.set()

    def pause(self) -> None:
        self._set_paused(True)

    def resume(self) -> None:
        self._set_paused(False)

    def toggle_pause(self) -> bool:
        paused = not self.registry.paused
        self._set_paused(paused)
        return paused

    def list_projects(self) -> tuple[str, ...]:
        return self.orchestrator.list_projects()

    def snapshot(self) -> RegistrySnapshot:
        return self.registry.snapshot()

    def _set_paused(self, paused: bool) -> None:
        self.registry.set_paused(paused)
        log_event(LOGGER, "ingestion_paused" if paused else "ingestion_resumed")
        self._emit(ServiceSignal(kind="refresh"))

    def _reconcile(self) -> None:
        if self.config.runtime.reconcile_on_startup:
            self._guarded("reconcile", self.orchestrator.reconcile_on_startup)

    def _ingest_loop(self) -> None:
        self._reconcile()
        interval = self.config.runtime.poll_interval_seconds
        while not self.stop_event.is_set():
            self._guarded("ingest", self.orchestrator.poll_once)
            self.registry.set_next_poll_at(time.time() + interval)
            self._emit(ServiceSignal(kind="refresh"))
            self._poll_now.wait(interval)
            self._poll_now.clear()

    def _monitor_loop(self) -> None:
        interval = self.config.runtime.monitor_interval_seconds
        while not self.stop_event.is_set():
            self._guarded("monitor", self.monitor.tick)
            self._emit(ServiceSignal(kind="refresh"))
            self.stop_event.wait(interval)

    def _guarded(self, loop: str, fn: Callable[[], object]) -> None:
        try:
            fn()
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "service_loop_failed",
                loop=loop,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self._emit(ServiceSignal(kind="fatal_error", detail=f"{loop}: {exc}"))

    def _emit(self, signal: ServiceSignal) -> None:
        if self.signal_sink is not None:
            self.signal_sink(signal)


def build_service(
    config: AppConfig,
    *,
    signal_sink: Callable[[ServiceSignal], None] | None = None,
) -> ServiceController:
    pool = GatewayPool(timeout_seconds=config.github.command_timeout_seconds)
    registry = TicketRegistry(history_limit=config.runtime.history_limit)
    tracker = JiraGateway(
        base_url=config.jira.base_url,
        email=config.jira.email,
        api_token=config.jira.api_token(),
        fields=config.jira.fields,
        project_keys=config.jira.project_keys,
        fallback_project_keys=config.jira.fallback_project_keys,
        project_cache_ttl_seconds=config.jira.project_cache_ttl_seconds,
        max_results=config.jira.max_results,
        timeout_seconds=config.jira.request_timeout_seconds,
    )
    advisor = (
        PlanningAdvisor(CodexSuggestionAgent(config.advisor)) if config.advisor.enabled else None
    )
    orchestrator = TicketOrchestrator(
        config,
        tracker=tracker,
        registry=registry,
        inspector=RepositoryInspector(
            pool, default_deploy_target=config.workflow.default_deploy_target
        ),
        gateway_for=pool,
        org_gateway_for=pool.org,
        advisor=advisor,
    )
    monitor = PullRequestMonitor(config, tracker=tracker, registry=registry, gateway_for=pool)
    return ServiceController(
        config=config,
        registry=registry,
        orchestrator=orchestrator,
        monitor=monitor,
        signal_sink=signal_sink,
    )
