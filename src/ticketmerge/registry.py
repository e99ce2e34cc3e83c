from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import replace
import threading
import time

from ticketmerge.models import (
    HistoryEntry,
    QueuedTicket,
    RegistrySnapshot,
    ServicePhase,
    Ticket,
    WorkItem,
    WorkItemState,
)


class TicketRegistry:
    """In-memory ticket and WorkItem state shared by both loops.

    Every method takes the lock briefly and never calls out to the network.
    WorkItems are immutable; updates swap in a new instance.
    """

    def __init__(
        self,
        *,
        history_limit: int = 50,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lock = threading.Lock()
        self._clock = clock
        self._items: dict[str, WorkItem] = {}
        self._queue: dict[str, QueuedTicket] = {}
        self._history: deque[HistoryEntry] = deque(maxlen=history_limit)
        self._phase: ServicePhase = "initializing"
        self._current_ticket_key: str | None = None
        self._paused = False
        self._processed_count = 0
        self._next_poll_at: float | None = None
        self._last_scan_at: float | None = None

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    def set_paused(self, paused: bool) -> None:
        with self._lock:
            self._paused = paused

    def set_phase(self, phase: ServicePhase, *, ticket_key: str | None = None) -> None:
        with self._lock:
            self._phase = phase
            self._current_ticket_key = ticket_key

    def set_next_poll_at(self, when: float | None) -> None:
        with self._lock:
            self._next_poll_at = when

    def record_scan(self, tickets: list[Ticket]) -> None:
        with self._lock:
            self._last_scan_at = self._clock()
            self._queue = {
                ticket.key: QueuedTicket(
                    key=ticket.key,
                    summary=ticket.summary,
                    priority_name=ticket.priority_name,
                    state="queued",
                )
                for ticket in tickets
            }

    def mark_queued_state(self, ticket_key: str, state: WorkItemState) -> None:
        with self._lock:
            queued = self._queue.get(ticket_key)
            if queued is not None:
                self._queue[ticket_key] = replace(queued, state=state)

    def finish_queued(self, ticket_key: str) -> None:
        with self._lock:
            self._queue.pop(ticket_key, None)
            self._processed_count += 1

    def track(self, item: WorkItem) -> WorkItem:
        """Add or refresh the single WorkItem for ``item.ticket_key``.

        Monitor-owned progress on an existing item (sub-PR, reported failures)
        is carried over when the same branch and PR are tracked again.
        """
        with self._lock:
            existing = self._items.get(item.ticket_key)
            if existing is not None and existing.pr_number == item.pr_number:
                item = replace(
                    item,
                    checks=existing.checks,
                    latest_run_id=existing.latest_run_id,
                    latest_run_conclusion=existing.latest_run_conclusion,
                    sub_pr_url=existing.sub_pr_url,
                    sub_pr_number=existing.sub_pr_number,
                    sub_pr_created_at=existing.sub_pr_created_at,
                    sub_pr_merged=existing.sub_pr_merged,
                    sub_pr_conflict_sha=existing.sub_pr_conflict_sha,
                    failure_reported_run_id=existing.failure_reported_run_id,
                )
            item = replace(item, updated_at=self._clock())
            self._items[item.ticket_key] = item
            return item

    def contains(self, ticket_key: str) -> bool:
        with self._lock:
            return ticket_key in self._items

    def get(self, ticket_key: str) -> WorkItem | None:
        with self._lock:
            return self._items.get(ticket_key)

    def update(self, ticket_key: str, **changes: object) -> WorkItem | None:
        with self._lock:
            existing = self._items.get(ticket_key)
            if existing is None:
                return None
            updated = replace(existing, updated_at=self._clock(), **changes)  # type: ignore[arg-type]
            self._items[ticket_key] = updated
            return updated

    def active_items(self) -> tuple[WorkItem, ...]:
        with self._lock:
            return tuple(self._items.values())

    def retire(self, ticket_key: str, *, outcome: str, detail: str = "") -> WorkItem | None:
        with self._lock:
            removed = self._items.pop(ticket_key, None)
            self._append_history(ticket_key, outcome, detail)
            return removed

    def record_history(self, ticket_key: str, *, outcome: str, detail: str = "") -> None:
        with self._lock:
            self._append_history(ticket_key, outcome, detail)

    def _append_history(self, ticket_key: str, outcome: str, detail: str) -> None:
        self._history.appendleft(
            HistoryEntry(
                ticket_key=ticket_key,
                outcome=outcome,
                detail=detail,
                recorded_at=self._clock(),
            )
        )

    def snapshot(self) -> RegistrySnapshot:
        with self._lock:
            return RegistrySnapshot(
                phase="paused" if self._paused and self._phase == "waiting" else self._phase,
                current_ticket_key=self._current_ticket_key,
                paused=self._paused,
                queue=tuple(self._queue.values()),
                active=tuple(sorted(self._items.values(), key=lambda item: item.ticket_key)),
                history=tuple(self._history),
                processed_count=self._processed_count,
                next_poll_at=self._next_poll_at,
                last_scan_at=self._last_scan_at,
            )
