from __future__ import annotations

import logging

from ticketmerge.agent_adapter import CodeSuggestionAgent
from ticketmerge.models import RepositoryConfig, Ticket
from ticketmerge.observability import log_event
from ticketmerge.prompts import build_fix_plan_prompt, build_pipeline_prompt


LOGGER = logging.getLogger("ticketmerge.advisor")


def strip_code_fences(text: str) -> str:
    """Drop one pair of wrapping ``` fences, if present."""
    stripped = text.strip()
    if not stripped.startswith("```"):
        return stripped
    lines = stripped.splitlines()
    lines = lines[1:]
    if lines and lines[-1].strip().startswith("```"):
        lines = lines[:-1]
    return "\n".join(lines).strip()


class PlanningAdvisor:
    """Advisory text only. Every failure degrades to ``None``."""

    def __init__(self, agent: CodeSuggestionAgent) -> None:
        self._agent = agent

    def plan_fix(
        self,
        *,
        ticket: Ticket,
        repo_full_name: str,
        config: RepositoryConfig,
        repo_summary: str,
    ) -> str | None:
        prompt = build_fix_plan_prompt(
            ticket=ticket,
            repo_full_name=repo_full_name,
            config=config,
            repo_summary=repo_summary,
        )
        return self._ask("fix_plan", ticket.key, prompt)

    def draft_pipeline(
        self,
        *,
        ticket: Ticket,
        repo_full_name: str,
        config: RepositoryConfig,
        secret_names: tuple[str, ...],
    ) -> str | None:
        prompt = build_pipeline_prompt(
            ticket=ticket,
            repo_full_name=repo_full_name,
            config=config,
            secret_names=secret_names,
        )
        draft = self._ask("pipeline", ticket.key, prompt)
        if draft is None:
            return None
        if "jobs:" not in draft:
            log_event(LOGGER, "advisor_pipeline_rejected", ticket_key=ticket.key, reason="no_jobs")
            return None
        return f"{draft}\n"

    def _ask(self, kind: str, ticket_key: str, prompt: str) -> str | None:
        try:
            answer = strip_code_fences(self._agent.request_code_suggestion(prompt))
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "advisor_failed",
                kind=kind,
                ticket_key=ticket_key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        if not answer:
            return None
        log_event(LOGGER, "advisor_answered", kind=kind, ticket_key=ticket_key, chars=len(answer))
        return answer
