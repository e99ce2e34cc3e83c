from __future__ import annotations

from abc import ABC, abstractmethod


class CodeSuggestionAgent(ABC):
    """Anything that turns a prompt into free text within a bounded time.

    Implementations raise on failure or timeout; callers decide how to degrade.
    """

    @abstractmethod
    def request_code_suggestion(self, prompt: str) -> str:
        """Return the agent's final answer for ``prompt``."""
