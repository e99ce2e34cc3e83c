from __future__ import annotations

import json
from pathlib import Path

import pytest

from ticketmerge.codex_adapter import CodexSuggestionAgent, _extract_final_agent_message
from ticketmerge.config import AdvisorConfig
from ticketmerge.shell import CommandTimeoutError


def _enabled_config() -> AdvisorConfig:
    return AdvisorConfig(
        enabled=True,
        model="gpt-5-codex",
        sandbox="read-only",
        profile="default",
        extra_args=("--full-auto",),
        timeout_seconds=42,
    )


def _agent_message_event(text: str) -> str:
    return json.dumps({"type": "item.completed", "item": {"type": "agent_message", "text": text}})


def test_disabled_agent_raises() -> None:
    with pytest.raises(RuntimeError, match="disabled"):
        CodexSuggestionAgent(AdvisorConfig(enabled=False)).request_code_suggestion("p")


def test_request_reads_output_file_and_passes_options(monkeypatch: pytest.MonkeyPatch) -> None:
    seen: dict[str, object] = {}

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        seen["cmd"] = cmd
        seen["kwargs"] = kwargs
        output_path = Path(cmd[cmd.index("--output-last-message") + 1])
        output_path.write_text("  Use node 20.  \n", encoding="utf-8")
        return _agent_message_event("ignored")

    monkeypatch.setattr("ticketmerge.codex_adapter.run", fake_run)

    answer = CodexSuggestionAgent(_enabled_config()).request_code_suggestion("plan it")

    assert answer == "Use node 20."
    cmd = seen["cmd"]
    assert isinstance(cmd, list)
    assert cmd[:4] == ["codex", "exec", "--json", "--skip-git-repo-check"]
    assert cmd[cmd.index("--model") + 1] == "gpt-5-codex"
    assert cmd[cmd.index("--sandbox") + 1] == "read-only"
    assert cmd[cmd.index("--profile") + 1] == "default"
    assert "--full-auto" in cmd
    assert cmd[-1] == "-"
    assert seen["kwargs"] == {"input_text": "plan it", "timeout_seconds": 42}


def test_request_falls_back_to_event_stream(monkeypatch: pytest.MonkeyPatch) -> None:
    events = "\n".join(
        [
            "not json",
            json.dumps({"type": "thread.started"}),
            _agent_message_event("first"),
            _agent_message_event("final answer"),
        ]
    )
    monkeypatch.setattr("ticketmerge.codex_adapter.run", lambda cmd, **kwargs: events)

    assert CodexSuggestionAgent(_enabled_config()).request_code_suggestion("p") == "final answer"


def test_request_propagates_timeouts(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_run(cmd: list[str], **kwargs: object) -> str:
        _ = cmd, kwargs
        raise CommandTimeoutError("Command timed out after 42s")

    monkeypatch.setattr("ticketmerge.codex_adapter.run", fake_run)

    with pytest.raises(CommandTimeoutError):
        CodexSuggestionAgent(_enabled_config()).request_code_suggestion("p")


def test_extract_final_agent_message_requires_message() -> None:
    with pytest.raises(RuntimeError, match="did not emit"):
        _extract_final_agent_message('{"type": "item.completed", "item": {"type": "reasoning"}}\n{bad')
