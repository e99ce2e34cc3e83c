from __future__ import annotations

from collections.abc import Callable
import logging
import threading
import time
from typing import cast

import requests

from ticketmerge.config import JiraFieldMap
from ticketmerge.models import StatusCategory, Ticket, TicketFields
from ticketmerge.observability import log_event


LOGGER = logging.getLogger("ticketmerge.jira_gateway")

PRIORITY_RANKS: dict[str, int] = {
    "highest": 5,
    "blocker": 5,
    "high": 4,
    "critical": 4,
    "medium": 3,
    "low": 2,
    "lowest": 1,
    "trivial": 1,
}
_DEFAULT_PRIORITY_RANK = 3

# Target status name -> names the same status goes by in other workflows.
STATUS_ALIASES: dict[str, tuple[str, ...]] = {
    "to do": ("To Do", "Open", "Backlog", "New", "Reopen", "Reopened"),
    "in progress": ("In Progress", "In Dev", "Active"),
    "in review": ("In Review", "Code Review", "Review"),
    "done": ("Done", "Closed", "Resolved"),
    "needs attention": ("Needs Attention", "Blocked", "On Hold"),
}


class JiraApiError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class JiraGateway:
    def __init__(
        self,
        *,
        base_url: str,
        email: str,
        api_token: str,
        fields: JiraFieldMap | None = None,
        project_keys: tuple[str, ...] = (),
        fallback_project_keys: tuple[str, ...] = (),
        project_cache_ttl_seconds: int = 3600,
        max_results: int = 50,
        timeout_seconds: int = 30,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.fields = fields or JiraFieldMap()
        self.static_project_keys = project_keys
        self.fallback_project_keys = fallback_project_keys
        self.project_cache_ttl_seconds = project_cache_ttl_seconds
        self.max_results = max_results
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.session.auth = (email, api_token)
        self.session.headers.update({"Accept": "application/json"})
        self._clock = clock
        self._project_cache: tuple[str, ...] = ()
        self._project_cache_at: float | None = None
        self._project_lock = threading.Lock()

    def list_project_keys(self, *, force_refresh: bool = False) -> tuple[str, ...]:
        if self.static_project_keys:
            return self.static_project_keys

        with self._project_lock:
            now = self._clock()
            fresh = (
                self._project_cache_at is not None
                and now - self._project_cache_at < self.project_cache_ttl_seconds
            )
            if fresh and not force_refresh:
                return self._project_cache
            cached = self._project_cache

        try:
            payload = self._request("GET", "/rest/api/3/project")
        except JiraApiError as exc:
            log_event(
                LOGGER,
                "jira_project_discovery_failed",
                error=str(exc),
                cached_count=len(cached),
            )
            return cached or self.fallback_project_keys

        keys: list[str] = []
        if isinstance(payload, list):
            for item in payload:
                if isinstance(item, dict) and isinstance(item.get("key"), str):
                    keys.append(cast(str, item["key"]))
        discovered = tuple(keys) or self.fallback_project_keys
        with self._project_lock:
            self._project_cache = discovered
            self._project_cache_at = self._clock()
        log_event(LOGGER, "jira_projects_discovered", count=len(discovered), keys=discovered)
        return discovered

    def fetch_actionable_tickets(self) -> list[Ticket]:
        """Tickets in a To Do category, highest priority first, ties in fetch order."""
        project_keys = self.list_project_keys()
        if not project_keys:
            log_event(LOGGER, "jira_no_projects_in_scope")
            return []

        quoted = ", ".join(f'"{key}"' for key in project_keys)
        jql = f'project IN ({quoted}) AND statusCategory = "To Do" ORDER BY priority DESC'
        payload = self._request(
            "POST",
            "/rest/api/3/search/jql",
            json={
                "jql": jql,
                "maxResults": self.max_results,
                "fields": ["summary", "description", "priority", "status", *self.fields.field_ids()],
            },
        )
        issues = payload.get("issues") if isinstance(payload, dict) else None
        if not isinstance(issues, list):
            raise JiraApiError("Unexpected Jira response: expected issues list")

        tickets = [self._parse_ticket(item) for item in issues if isinstance(item, dict)]
        tickets.sort(key=lambda ticket: -ticket.priority_rank)
        log_event(LOGGER, "jira_tickets_fetched", count=len(tickets), projects=project_keys)
        return tickets

    def get_ticket(self, key: str) -> Ticket:
        payload = self._request("GET", f"/rest/api/3/issue/{key}")
        if not isinstance(payload, dict):
            raise JiraApiError(f"Unexpected Jira response for issue {key}")
        return self._parse_ticket(payload)

    def transition(self, key: str, target_status: str) -> bool:
        """Move ``key`` to ``target_status``; never raises."""
        try:
            payload = self._request("GET", f"/rest/api/3/issue/{key}/transitions")
            transitions = payload.get("transitions") if isinstance(payload, dict) else None
            if not isinstance(transitions, list):
                raise JiraApiError("Unexpected Jira response: expected transitions list")
            transition_id = _match_transition(transitions, target_status)
            if transition_id is None:
                available = [
                    str(item.get("name")) for item in transitions if isinstance(item, dict)
                ]
                LOGGER.warning(
                    "event=jira_transition_missing ticket_key=%s target=%s available=%s",
                    key,
                    target_status,
                    ",".join(available) or "<none>",
                )
                return False
            self._request(
                "POST",
                f"/rest/api/3/issue/{key}/transitions",
                json={"transition": {"id": transition_id}},
            )
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "jira_transition_failed",
                ticket_key=key,
                target=target_status,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        log_event(LOGGER, "jira_transitioned", ticket_key=key, target=target_status)
        return True

    def comment(self, key: str, text: str) -> bool:
        """Post ``text`` on ``key``; never raises."""
        body = {
            "body": {
                "version": 1,
                "type": "doc",
                "content": [_adf_paragraph(line) for line in text.split("\n\n") if line.strip()],
            }
        }
        try:
            self._request("POST", f"/rest/api/3/issue/{key}/comment", json=body)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "jira_comment_failed",
                ticket_key=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        log_event(LOGGER, "jira_comment_posted", ticket_key=key)
        return True

    def count_comments_containing(self, key: str, marker: str) -> int:
        try:
            payload = self._request(
                "GET", f"/rest/api/3/issue/{key}/comment", params={"maxResults": "100"}
            )
        except JiraApiError as exc:
            log_event(LOGGER, "jira_comment_count_failed", ticket_key=key, error=str(exc))
            return 0
        comments = payload.get("comments") if isinstance(payload, dict) else None
        if not isinstance(comments, list):
            return 0
        return sum(
            1
            for comment in comments
            if isinstance(comment, dict) and marker in adf_to_text(comment.get("body"))
        )

    def _parse_ticket(self, item: dict[str, object]) -> Ticket:
        key = str(item.get("key") or "")
        raw_fields = item.get("fields")
        fields = cast(dict[str, object], raw_fields) if isinstance(raw_fields, dict) else {}
        priority = fields.get("priority")
        priority_name = ""
        if isinstance(priority, dict) and isinstance(priority.get("name"), str):
            priority_name = cast(str, priority["name"])
        status_name, status_category = _parse_status(fields.get("status"))
        return Ticket(
            key=key,
            summary=_field_text(fields.get("summary")) or "",
            description=adf_to_text(fields.get("description")),
            priority_name=priority_name,
            priority_rank=PRIORITY_RANKS.get(priority_name.strip().lower(), _DEFAULT_PRIORITY_RANK),
            fields=TicketFields(
                repo=_field_text(fields.get(self.fields.repo)),
                language=_field_text(fields.get(self.fields.language)),
                build_command=_field_text(fields.get(self.fields.build_command)),
                test_command=_field_text(fields.get(self.fields.test_command)),
                deploy_target=_field_text(fields.get(self.fields.deploy_target)),
                files=_field_list(fields.get(self.fields.files)),
            ),
            status_name=status_name,
            status_category=status_category,
        )

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, object] | None = None,
        params: dict[str, str] | None = None,
    ) -> object:
        try:
            response = self.session.request(
                method=method,
                url=f"{self.base_url}{path}",
                json=json,
                params=params,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise JiraApiError(f"Jira {method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise JiraApiError(
                f"Jira {method} {path} failed with status {response.status_code}: "
                f"{response.text[:200]}",
                status_code=response.status_code,
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise JiraApiError(f"Jira {method} {path} returned invalid JSON") from exc


def _match_transition(transitions: list[object], target_status: str) -> str | None:
    wanted = target_status.strip().lower()
    names = {alias.lower() for alias in STATUS_ALIASES.get(wanted, ())}
    names.add(wanted)
    for item in transitions:
        if not isinstance(item, dict):
            continue
        transition_name = str(item.get("name") or "").strip().lower()
        to_obj = item.get("to")
        to_name = ""
        if isinstance(to_obj, dict):
            to_name = str(to_obj.get("name") or "").strip().lower()
        if transition_name in names or to_name in names:
            return str(item.get("id"))
    return None


def _parse_status(value: object) -> tuple[str, StatusCategory]:
    if not isinstance(value, dict):
        return "", "unknown"
    name = str(value.get("name") or "")
    category = value.get("statusCategory")
    category_key = ""
    if isinstance(category, dict):
        category_key = str(category.get("key") or "").strip().lower()
    if category_key in {"new", "indeterminate", "done"}:
        return name, cast(StatusCategory, category_key)
    return name, "unknown"


def _adf_paragraph(text: str) -> dict[str, object]:
    return {"type": "paragraph", "content": [{"type": "text", "text": text}]}


def adf_to_text(value: object) -> str:
    """Flatten an Atlassian Document Format node (or plain string) to text."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(adf_to_text(item) for item in value)
    if not isinstance(value, dict):
        return ""
    if value.get("type") == "text":
        return str(value.get("text") or "")
    if value.get("type") == "hardBreak":
        return "\n"
    inner = adf_to_text(value.get("content"))
    if value.get("type") in {"paragraph", "heading", "listItem", "codeBlock"}:
        return f"{inner}\n"
    return inner


def _field_text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, dict):
        for key in ("value", "name"):
            if isinstance(value.get(key), str):
                return _field_text(value[key])
        text = adf_to_text(value)
    elif isinstance(value, str):
        text = value
    else:
        text = str(value)
    stripped = text.strip()
    return stripped or None


def _field_list(value: object) -> tuple[str, ...]:
    if isinstance(value, list):
        items = [_field_text(item) for item in value]
        return tuple(item for item in items if item)
    text = _field_text(value)
    if text is None:
        return ()
    parts = [part.strip() for part in text.replace("\n", ",").split(",")]
    return tuple(part for part in parts if part)
