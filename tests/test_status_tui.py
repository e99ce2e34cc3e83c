from __future__ import annotations

import asyncio
from queue import SimpleQueue
import time

import pytest
from textual.widgets import DataTable

from ticketmerge import status_tui as tui
from ticketmerge.models import HistoryEntry, QueuedTicket, RegistrySnapshot, WorkItem
from ticketmerge.service_runner import ServiceSignal


def _item(**overrides: object) -> WorkItem:
    values: dict[str, object] = {
        "ticket_key": "ABC-1",
        "repo_full_name": "acme/web",
        "branch_name": "chore/ABC-1-workflow-setup",
        "state": "monitoring",
        "pr_number": 5,
    }
    values.update(overrides)
    return WorkItem(**values)  # type: ignore[arg-type]


def _snapshot(**overrides: object) -> RegistrySnapshot:
    values: dict[str, object] = {
        "phase": "waiting",
        "current_ticket_key": None,
        "paused": False,
        "queue": (
            QueuedTicket(key="ABC-2", summary="Add CI", priority_name="High", state="queued"),
        ),
        "active": (_item(),),
        "history": (
            HistoryEntry(ticket_key="ABC-0", outcome="closed", detail="merged", recorded_at=0.0),
        ),
        "processed_count": 3,
        "next_poll_at": 130.0,
        "last_scan_at": 100.0,
    }
    values.update(overrides)
    return RegistrySnapshot(**values)  # type: ignore[arg-type]


class FakeController:
    def __init__(self) -> None:
        self.paused = False
        self.poll_requests = 0
        self.snapshots = 0

    def snapshot(self) -> RegistrySnapshot:
        self.snapshots += 1
        return _snapshot(paused=self.paused)

    def toggle_pause(self) -> bool:
        self.paused = not self.paused
        return self.paused

    def request_poll(self) -> None:
        self.poll_requests += 1

    def list_projects(self) -> tuple[str, ...]:
        return ("ABC", "XYZ")


def test_summary_text() -> None:
    text = tui._summary_text(_snapshot(), now=100.0, last_error=None)
    assert text == "phase=waiting current=- queued=1 in_flight=1 processed=3 next_poll=30s"

    paused = tui._summary_text(
        _snapshot(phase="paused", paused=True, next_poll_at=None, current_ticket_key="ABC-2"),
        now=100.0,
        last_error="ingest: jira down",
    )
    assert "current=ABC-2" in paused
    assert "next_poll=-" in paused
    assert paused.splitlines()[0].endswith("PAUSED")
    assert paused.splitlines()[1] == "last service error: ingest: jira down"


def test_row_helpers() -> None:
    assert tui._render_countdown(90.0, now=100.0) == "0s"
    assert tui._queue_row(
        QueuedTicket(key="ABC-2", summary="Add CI", priority_name="", state="analyzing")
    ) == ("ABC-2", "-", "analyzing", "Add CI")

    assert tui._active_row(_item()) == ("ABC-1", "acme/web", "monitoring", "#5", "-", "-", "")
    row = tui._active_row(
        _item(
            pr_number=None,
            latest_run_id=9,
            latest_run_conclusion=None,
            sub_pr_number=8,
            sub_pr_merged=True,
            last_error="x" * 80,
        )
    )
    assert row[3:6] == ("-", "running", "#8 merged")
    assert len(row[6]) == 48
    assert row[6].endswith("...")
    assert tui._active_row(_item(sub_pr_number=8))[5] == "#8"
    assert tui._ci_label(_item(latest_run_id=9, latest_run_conclusion="failure")) == "failure"

    entry = HistoryEntry(ticket_key="ABC-0", outcome="closed", detail="merged", recorded_at=0.0)
    expected_time = time.strftime("%H:%M:%S", time.localtime(0.0))
    assert tui._history_row(entry) == (expected_time, "ABC-0", "closed", "merged")

    assert tui._projects_text(()) == "No projects in scope."
    assert tui._projects_text(("ABC", "XYZ")) == "ABC, XYZ"
    assert tui._truncate("short", max_chars=10) == "short"


def test_run_status_tui_runs_app_and_notifies_shutdown(monkeypatch: pytest.MonkeyPatch) -> None:
    called: dict[str, object] = {"shutdowns": 0}

    class FakeApp:
        def __init__(self, **kwargs) -> None:  # type: ignore[no-untyped-def]
            called["kwargs"] = kwargs

        def run(self) -> None:
            called["ran"] = True

    def on_shutdown() -> None:
        called["shutdowns"] = int(called["shutdowns"]) + 1  # type: ignore[arg-type]

    monkeypatch.setattr(tui, "StatusApp", FakeApp)
    controller = FakeController()
    tui.run_status_tui(controller=controller, refresh_seconds=3, on_shutdown=on_shutdown)

    assert called["ran"] is True
    kwargs = called["kwargs"]
    assert isinstance(kwargs, dict)
    assert kwargs["controller"] is controller
    assert kwargs["refresh_seconds"] == 3
    assert called["shutdowns"] == 1


def test_status_app_refresh_and_keybindings() -> None:
    controller = FakeController()
    signals: SimpleQueue[ServiceSignal] = SimpleQueue()
    shutdowns: list[bool] = []
    app = tui.StatusApp(
        controller=controller,
        refresh_seconds=60,
        service_signal_queue=signals,
        on_shutdown=lambda: shutdowns.append(True),
    )

    async def run_app() -> None:
        async with app.run_test() as pilot:
            await pilot.pause()
            assert app.query_one("#queue-table", DataTable).row_count == 1
            assert app.query_one("#active-table", DataTable).row_count == 1
            assert app.query_one("#history-table", DataTable).row_count == 1

            await pilot.press("p")
            assert controller.paused is True
            await pilot.press("r")
            assert controller.poll_requests == 1

            signals.put(ServiceSignal(kind="refresh"))
            signals.put(ServiceSignal(kind="fatal_error", detail="monitor: boom"))
            before = controller.snapshots
            app._drain_service_signals()
            assert app.last_service_error == "monitor: boom"
            assert controller.snapshots == before + 1

            await pilot.press("q")

    asyncio.run(run_app())
    assert shutdowns == [True]
