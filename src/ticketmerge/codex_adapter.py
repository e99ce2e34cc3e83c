from __future__ import annotations

import json
import logging
from pathlib import Path
import tempfile
import time

from ticketmerge.agent_adapter import CodeSuggestionAgent
from ticketmerge.config import AdvisorConfig
from ticketmerge.observability import log_event
from ticketmerge.shell import run


LOGGER = logging.getLogger("ticketmerge.codex_adapter")


class CodexSuggestionAgent(CodeSuggestionAgent):
    def __init__(self, config: AdvisorConfig) -> None:
        self._config = config

    def request_code_suggestion(self, prompt: str) -> str:
        if not self._config.enabled:
            raise RuntimeError("Codex advisor is disabled in config")

        started = time.monotonic()
        log_event(LOGGER, "codex_invocation_started", prompt_chars=len(prompt))
        with tempfile.TemporaryDirectory(prefix="ticketmerge_codex_") as tmp:
            output_path = Path(tmp) / "last_message.txt"
            cmd = [
                "codex",
                "exec",
                "--json",
                "--skip-git-repo-check",
                "--output-last-message",
                str(output_path),
            ]
            self._append_common_options(cmd)
            cmd.append("-")

            raw_events = run(
                cmd,
                input_text=prompt,
                timeout_seconds=self._config.timeout_seconds,
            )
            answer = output_path.read_text(encoding="utf-8").strip() if output_path.exists() else ""

        if not answer:
            answer = _extract_final_agent_message(raw_events)
        log_event(
            LOGGER,
            "codex_invocation_finished",
            duration_seconds=round(time.monotonic() - started, 2),
            answer_chars=len(answer),
        )
        return answer

    def _append_common_options(self, cmd: list[str]) -> None:
        if self._config.model:
            cmd.extend(["--model", self._config.model])
        if self._config.sandbox:
            cmd.extend(["--sandbox", self._config.sandbox])
        if self._config.profile:
            cmd.extend(["--profile", self._config.profile])
        if self._config.extra_args:
            cmd.extend(self._config.extra_args)


def _extract_final_agent_message(raw_events: str) -> str:
    last_message: str | None = None
    for line in raw_events.splitlines():
        text = line.strip()
        if not text.startswith("{"):
            continue
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            continue
        if not isinstance(payload, dict) or payload.get("type") != "item.completed":
            continue
        item = payload.get("item")
        if not isinstance(item, dict):
            continue
        if item.get("type") == "agent_message" and isinstance(item.get("text"), str):
            last_message = item["text"]
    if not last_message:
        raise RuntimeError("Codex did not emit a final agent message")
    return last_message
