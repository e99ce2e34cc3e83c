from __future__ import annotations

from collections.abc import Callable
from queue import Empty, SimpleQueue
import time
from typing import Protocol

from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Vertical
from textual.widgets import DataTable, Footer, Header, Static

from ticketmerge.models import HistoryEntry, QueuedTicket, RegistrySnapshot, WorkItem
from ticketmerge.service_runner import ServiceSignal


_SERVICE_SIGNAL_DRAIN_SECONDS = 0.2
_ERROR_MAX_CHARS = 48


class StatusController(Protocol):
    def snapshot(self) -> RegistrySnapshot: ...

    def toggle_pause(self) -> bool: ...

    def request_poll(self) -> None: ...

    def list_projects(self) -> tuple[str, ...]: ...


class StatusApp(App[None]):
    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("p", "toggle_pause", "Pause/Resume"),
        Binding("r", "poll_now", "Poll Now"),
        Binding("j", "show_projects", "Projects"),
    ]
    CSS = """
    Screen {
        layout: vertical;
    }
    .panel-title {
        text-style: bold;
        padding-left: 1;
    }
    #summary {
        height: 3;
        padding: 0 1;
    }
    DataTable {
        height: 1fr;
    }
    """

    def __init__(
        self,
        *,
        controller: StatusController,
        refresh_seconds: int = 2,
        service_signal_queue: SimpleQueue[ServiceSignal] | None = None,
        on_shutdown: Callable[[], None] | None = None,
    ) -> None:
        super().__init__()
        self._controller = controller
        self._refresh_seconds = refresh_seconds
        self._service_signal_queue = service_signal_queue
        self._on_shutdown = on_shutdown
        self._shutdown_notified = False
        self._last_service_error: str | None = None

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)
        with Vertical():
            yield Static("", id="summary")
            yield Static("Queue", classes="panel-title")
            yield DataTable(id="queue-table")
            yield Static("In Flight", classes="panel-title")
            yield DataTable(id="active-table")
            yield Static("History", classes="panel-title")
            yield DataTable(id="history-table")
        yield Footer()

    def on_mount(self) -> None:
        self.query_one("#queue-table", DataTable).add_columns(
            "Ticket", "Priority", "State", "Summary"
        )
        self.query_one("#active-table", DataTable).add_columns(
            "Ticket", "Repo", "State", "PR", "CI", "Sub-PR", "Error"
        )
        self.query_one("#history-table", DataTable).add_columns(
            "When", "Ticket", "Outcome", "Detail"
        )
        self.refresh_data()
        self.set_interval(self._refresh_seconds, self.refresh_data)
        if self._service_signal_queue is not None:
            self.set_interval(_SERVICE_SIGNAL_DRAIN_SECONDS, self._drain_service_signals)

    @property
    def last_service_error(self) -> str | None:
        return self._last_service_error

    def refresh_data(self) -> None:
        snapshot = self._controller.snapshot()
        self.query_one("#summary", Static).update(
            _summary_text(snapshot, now=time.time(), last_error=self._last_service_error)
        )
        _fill_table(
            self.query_one("#queue-table", DataTable),
            tuple(_queue_row(row) for row in snapshot.queue),
        )
        _fill_table(
            self.query_one("#active-table", DataTable),
            tuple(_active_row(item) for item in snapshot.active),
        )
        _fill_table(
            self.query_one("#history-table", DataTable),
            tuple(_history_row(entry) for entry in snapshot.history),
        )

    def action_toggle_pause(self) -> None:
        paused = self._controller.toggle_pause()
        self.notify("Ingestion paused" if paused else "Ingestion resumed")
        self.refresh_data()

    def action_poll_now(self) -> None:
        self._controller.request_poll()
        self.notify("Poll requested")

    def action_show_projects(self) -> None:
        self.run_worker(self._load_projects, thread=True, exclusive=True)

    async def action_quit(self) -> None:
        self._notify_shutdown()
        await super().action_quit()

    def _load_projects(self) -> None:
        try:
            keys = self._controller.list_projects()
        except Exception as exc:  # noqa: BLE001
            self.call_from_thread(
                self.notify, f"Project lookup failed: {exc}", severity="error"
            )
            return
        self.call_from_thread(self.notify, _projects_text(keys), title="Projects")

    def _drain_service_signals(self) -> None:
        if self._service_signal_queue is None:
            return
        should_refresh = False
        while True:
            try:
                signal = self._service_signal_queue.get_nowait()
            except Empty:
                break
            if signal.kind == "fatal_error":
                self._last_service_error = signal.detail
            should_refresh = True
        if should_refresh:
            self.refresh_data()

    def _notify_shutdown(self) -> None:
        if self._shutdown_notified or self._on_shutdown is None:
            return
        self._shutdown_notified = True
        self._on_shutdown()


def run_status_tui(
    *,
    controller: StatusController,
    refresh_seconds: int = 2,
    service_signal_queue: SimpleQueue[ServiceSignal] | None = None,
    on_shutdown: Callable[[], None] | None = None,
) -> None:
    app = StatusApp(
        controller=controller,
        refresh_seconds=refresh_seconds,
        service_signal_queue=service_signal_queue,
        on_shutdown=on_shutdown,
    )
    try:
        app.run()
    finally:
        if on_shutdown is not None:
            on_shutdown()


def _fill_table(table: DataTable, rows: tuple[tuple[str, ...], ...]) -> None:
    table.clear(columns=False)
    for row in rows:
        table.add_row(*row)


def _summary_text(snapshot: RegistrySnapshot, *, now: float, last_error: str | None) -> str:
    current = snapshot.current_ticket_key or "-"
    parts = [
        f"phase={snapshot.phase}",
        f"current={current}",
        f"queued={len(snapshot.queue)}",
        f"in_flight={len(snapshot.active)}",
        f"processed={snapshot.processed_count}",
        f"next_poll={_render_countdown(snapshot.next_poll_at, now=now)}",
    ]
    if snapshot.paused:
        parts.append("PAUSED")
    text = " ".join(parts)
    if last_error:
        text += f"\nlast service error: {_truncate(last_error, max_chars=120)}"
    return text


def _render_countdown(when: float | None, *, now: float) -> str:
    if when is None:
        return "-"
    remaining = max(0.0, when - now)
    return f"{remaining:.0f}s"


def _queue_row(row: QueuedTicket) -> tuple[str, ...]:
    return (row.key, row.priority_name or "-", row.state, row.summary)


def _active_row(item: WorkItem) -> tuple[str, ...]:
    pr = f"#{item.pr_number}" if item.pr_number is not None else "-"
    if item.sub_pr_number is None:
        sub_pr = "-"
    elif item.sub_pr_merged:
        sub_pr = f"#{item.sub_pr_number} merged"
    else:
        sub_pr = f"#{item.sub_pr_number}"
    return (
        item.ticket_key,
        item.repo_full_name,
        item.state,
        pr,
        _ci_label(item),
        sub_pr,
        _truncate(item.last_error or "", max_chars=_ERROR_MAX_CHARS),
    )


def _ci_label(item: WorkItem) -> str:
    if item.latest_run_id is None:
        return "-"
    return item.latest_run_conclusion or "running"


def _history_row(entry: HistoryEntry) -> tuple[str, ...]:
    when = time.strftime("%H:%M:%S", time.localtime(entry.recorded_at))
    return (when, entry.ticket_key, entry.outcome, entry.detail)


def _projects_text(keys: tuple[str, ...]) -> str:
    if not keys:
        return "No projects in scope."
    return ", ".join(keys)


def _truncate(value: str, *, max_chars: int) -> str:
    if len(value) <= max_chars:
        return value
    return value[: max_chars - 3] + "..."
