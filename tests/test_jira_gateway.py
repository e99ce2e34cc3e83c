from __future__ import annotations

import json as jsonlib
import logging

import pytest
import requests

from ticketmerge.config import JiraFieldMap
from ticketmerge.jira_gateway import JiraApiError, JiraGateway, adf_to_text


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: object = None, text: str | None = None) -> None:
        self.status_code = status_code
        self._payload = payload
        if text is not None:
            self.text = text
        elif payload is None:
            self.text = ""
        else:
            self.text = jsonlib.dumps(payload)
        self.content = self.text.encode("utf-8")

    def json(self) -> object:
        return jsonlib.loads(self.text)


class FakeSession:
    def __init__(self) -> None:
        self.auth: object = None
        self.headers: dict[str, str] = {}
        self.routes: dict[tuple[str, str], list[object]] = {}
        self.calls: list[dict[str, object]] = []

    def add(self, method: str, path: str, *responses: object) -> None:
        self.routes[(method, path)] = list(responses)

    def request(self, **kwargs: object) -> FakeResponse:
        self.calls.append(kwargs)
        url = str(kwargs["url"])
        path = url.removeprefix("https://jira.example.com")
        queue = self.routes.get((str(kwargs["method"]), path))
        if not queue:
            return FakeResponse(404, {"errorMessages": ["not found"]})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        assert isinstance(response, FakeResponse)
        return response

    def posts(self, path: str) -> list[object]:
        return [
            call.get("json")
            for call in self.calls
            if call["method"] == "POST" and str(call["url"]).endswith(path)
        ]


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _gateway(session: FakeSession, **overrides: object) -> JiraGateway:
    values: dict[str, object] = {
        "base_url": "https://jira.example.com/",
        "email": "bot@example.com",
        "api_token": "secret-token",
        "session": session,
    }
    values.update(overrides)
    return JiraGateway(**values)  # type: ignore[arg-type]


def _issue(key: str, priority: str, **fields: object) -> dict[str, object]:
    return {
        "key": key,
        "fields": {
            "summary": f"Summary {key}",
            "description": {
                "type": "doc",
                "content": [
                    {"type": "paragraph", "content": [{"type": "text", "text": "Use python"}]}
                ],
            },
            "priority": {"name": priority},
            "status": {"name": "To Do", "statusCategory": {"key": "new"}},
            **fields,
        },
    }


def test_session_auth_uses_basic_credentials() -> None:
    session = FakeSession()
    _gateway(session)
    assert session.auth == ("bot@example.com", "secret-token")
    assert session.headers["Accept"] == "application/json"


def test_fetch_actionable_tickets_sorts_by_priority_stably() -> None:
    session = FakeSession()
    session.add(
        "POST",
        "/rest/api/3/search/jql",
        FakeResponse(
            payload={
                "issues": [
                    _issue("ABC-1", "Medium"),
                    _issue("ABC-2", "Highest", customfield_repo="acme/web"),
                    _issue("ABC-3", "Unknown"),
                    _issue(
                        "ABC-4",
                        "High",
                        customfield_language={"value": "Java"},
                        customfield_files=["pom.xml", " ", "src/App.java"],
                    ),
                ]
            }
        ),
    )
    gateway = _gateway(session, project_keys=("ABC", "OPS"))

    tickets = gateway.fetch_actionable_tickets()

    assert [ticket.key for ticket in tickets] == ["ABC-2", "ABC-4", "ABC-1", "ABC-3"]
    assert tickets[0].fields.repo == "acme/web"
    assert tickets[1].fields.language == "Java"
    assert tickets[1].fields.files == ("pom.xml", "src/App.java")
    assert tickets[2].description.strip() == "Use python"
    assert tickets[2].status_category == "new"
    assert tickets[3].priority_rank == 3

    body = session.posts("/rest/api/3/search/jql")[0]
    assert isinstance(body, dict)
    assert body["jql"] == (
        'project IN ("ABC", "OPS") AND statusCategory = "To Do" ORDER BY priority DESC'
    )
    assert "customfield_repo" in body["fields"]
    assert body["maxResults"] == 50


def test_fetch_actionable_tickets_rejects_bad_shape() -> None:
    session = FakeSession()
    session.add("POST", "/rest/api/3/search/jql", FakeResponse(payload={"nope": []}))
    with pytest.raises(JiraApiError, match="expected issues list"):
        _gateway(session, project_keys=("ABC",)).fetch_actionable_tickets()


def test_fetch_actionable_tickets_without_projects_skips_search() -> None:
    session = FakeSession()
    session.add("GET", "/rest/api/3/project", FakeResponse(payload=[]))

    assert _gateway(session).fetch_actionable_tickets() == []
    assert session.posts("/rest/api/3/search/jql") == []


def test_project_discovery_is_cached_and_falls_back() -> None:
    session = FakeSession()
    clock = FakeClock()
    session.add(
        "GET",
        "/rest/api/3/project",
        FakeResponse(payload=[{"key": "ABC"}, {"key": "XYZ"}, {"id": "1"}]),
        FakeResponse(500, text="boom"),
    )
    gateway = _gateway(
        session,
        clock=clock,
        project_cache_ttl_seconds=60,
        fallback_project_keys=("OPS",),
    )

    assert gateway.list_project_keys() == ("ABC", "XYZ")
    clock.now += 30
    assert gateway.list_project_keys() == ("ABC", "XYZ")
    assert len(session.calls) == 1

    clock.now += 60
    assert gateway.list_project_keys() == ("ABC", "XYZ")
    assert len(session.calls) == 2

    empty_session = FakeSession()
    empty_session.add("GET", "/rest/api/3/project", requests.ConnectionError("down"))
    fallback = _gateway(empty_session, fallback_project_keys=("OPS",))
    assert fallback.list_project_keys() == ("OPS",)


def test_static_project_keys_skip_discovery() -> None:
    session = FakeSession()
    assert _gateway(session, project_keys=("ABC",)).list_project_keys(force_refresh=True) == (
        "ABC",
    )
    assert session.calls == []


def test_transition_matches_alias_on_name_or_target_status() -> None:
    session = FakeSession()
    session.add(
        "GET",
        "/rest/api/3/issue/ABC-1/transitions",
        FakeResponse(
            payload={
                "transitions": [
                    {"id": "11", "name": "Start", "to": {"name": "In Dev"}},
                    {"id": "21", "name": "Send to Code Review", "to": {"name": "Code Review"}},
                    {"id": "31", "name": "Resolve", "to": {"name": "Resolved"}},
                ]
            }
        ),
    )
    session.add("POST", "/rest/api/3/issue/ABC-1/transitions", FakeResponse(204))
    gateway = _gateway(session)

    assert gateway.transition("ABC-1", "In Progress") is True
    assert gateway.transition("ABC-1", "In Review") is True
    assert gateway.transition("ABC-1", "done") is True
    assert session.posts("/rest/api/3/issue/ABC-1/transitions") == [
        {"transition": {"id": "11"}},
        {"transition": {"id": "21"}},
        {"transition": {"id": "31"}},
    ]


def test_transition_missing_returns_false_and_warns(
    caplog: pytest.LogCaptureFixture, monkeypatch: pytest.MonkeyPatch
) -> None:
    session = FakeSession()
    session.add(
        "GET",
        "/rest/api/3/issue/ABC-1/transitions",
        FakeResponse(payload={"transitions": [{"id": "1", "name": "Archive", "to": {"name": "Archived"}}]}),
    )
    monkeypatch.setattr(logging.getLogger("ticketmerge"), "propagate", True)
    caplog.set_level("WARNING", logger="ticketmerge.jira_gateway")

    assert _gateway(session).transition("ABC-1", "Needs Attention") is False
    assert session.posts("/rest/api/3/issue/ABC-1/transitions") == []
    assert any("event=jira_transition_missing" in record.getMessage() for record in caplog.records)


def test_transition_and_comment_never_raise() -> None:
    session = FakeSession()
    session.add("GET", "/rest/api/3/issue/ABC-1/transitions", requests.Timeout("slow"))
    session.add("POST", "/rest/api/3/issue/ABC-1/comment", FakeResponse(403, text="forbidden"))
    gateway = _gateway(session)

    assert gateway.transition("ABC-1", "Done") is False
    assert gateway.comment("ABC-1", "hello") is False


def test_comment_posts_adf_paragraphs() -> None:
    session = FakeSession()
    session.add("POST", "/rest/api/3/issue/ABC-1/comment", FakeResponse(201, {"id": "1"}))

    assert _gateway(session).comment("ABC-1", "First line\n\nSecond\n\n  ") is True

    body = session.posts("/rest/api/3/issue/ABC-1/comment")[0]
    assert isinstance(body, dict)
    doc = body["body"]
    assert doc["type"] == "doc"
    assert [p["content"][0]["text"] for p in doc["content"]] == ["First line", "Second"]


def test_count_comments_containing_marker() -> None:
    session = FakeSession()
    session.add(
        "GET",
        "/rest/api/3/issue/ABC-1/comment",
        FakeResponse(
            payload={
                "comments": [
                    {"body": {"type": "doc", "content": [{"type": "paragraph", "content": [{"type": "text", "text": "[m] failed"}]}]}},
                    {"body": "plain [m]"},
                    {"body": "other"},
                ]
            }
        ),
    )
    gateway = _gateway(session)

    assert gateway.count_comments_containing("ABC-1", "[m]") == 2
    assert gateway.count_comments_containing("ABC-2", "[m]") == 0


def test_get_ticket_reads_status_and_custom_field_map() -> None:
    session = FakeSession()
    session.add(
        "GET",
        "/rest/api/3/issue/ABC-9",
        FakeResponse(
            payload={
                "key": "ABC-9",
                "fields": {
                    "summary": "Deploy",
                    "status": {"name": "Closed", "statusCategory": {"key": "done"}},
                    "customfield_10001": "acme/api",
                },
            }
        ),
    )
    gateway = _gateway(session, fields=JiraFieldMap(repo="customfield_10001"))

    ticket = gateway.get_ticket("ABC-9")

    assert ticket.status_category == "done"
    assert ticket.status_name == "Closed"
    assert ticket.fields.repo == "acme/api"
    assert ticket.priority_name == ""


def test_request_rejects_invalid_json() -> None:
    session = FakeSession()
    session.add("GET", "/rest/api/3/issue/ABC-1", FakeResponse(200, text="<html>"))
    with pytest.raises(JiraApiError, match="invalid JSON"):
        _gateway(session).get_ticket("ABC-1")


def test_adf_to_text_handles_nested_nodes() -> None:
    doc = {
        "type": "doc",
        "content": [
            {"type": "heading", "content": [{"type": "text", "text": "Title"}]},
            {
                "type": "paragraph",
                "content": [
                    {"type": "text", "text": "a"},
                    {"type": "hardBreak"},
                    {"type": "text", "text": "b"},
                ],
            },
        ],
    }
    assert adf_to_text(doc) == "Title\na\nb\n"
    assert adf_to_text(None) == ""
    assert adf_to_text(7) == ""
