"""
Shared fixtures for the orchestrator test suite.

The fake LLM service tells the two prompt kinds apart (search intent JSON
versus one-word formality label) so a single instance can back a whole
pipeline.
"""

import asyncio
from typing import List, Optional

import pytest

from src.intent_router.llm import LLMOptions
from src.intent_router.patterns import PatternClassifier
from src.intent_router.rules import RuleConfigManager


NO_SEARCH_JSON = (
    '{"intent": "casual_chat", "needsSearch": false, "searchType": "none", '
    '"confidence": 80, "reasoning": "chit chat"}'
)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeLLMService:
    """Scripted LLMService.

    ``search`` and ``tone`` are each a string, an exception, or a list of
    those consumed in order (the last item repeats).
    """

    def __init__(self, search=NO_SEARCH_JSON, tone="semi_formal", delay: float = 0.0):
        self.search = search
        self.tone = tone
        self.delay = delay
        self.calls = {"search": 0, "tone": 0}
        self.prompts: List[str] = []
        self.options: List[LLMOptions] = []

    @staticmethod
    def _next(script, index: int):
        if isinstance(script, list):
            return script[min(index, len(script) - 1)]
        return script

    async def generate_completion(self, prompt: str, options: LLMOptions) -> str:
        kind = "tone" if prompt.rstrip().endswith("Formality:") else "search"
        index = self.calls[kind]
        self.calls[kind] += 1
        self.prompts.append(prompt)
        self.options.append(options)

        if self.delay:
            await asyncio.sleep(self.delay)

        reply = self._next(self.search if kind == "search" else self.tone, index)
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeMemoryStore:
    """In-memory MemoryStore returning canned turns."""

    def __init__(self, turns=None, error: Optional[Exception] = None):
        self.turns = turns or []
        self.error = error
        self.requests = []

    async def get_recent_context(self, user_id: str, limit: int):
        self.requests.append((user_id, limit))
        if self.error is not None:
            raise self.error
        return list(self.turns)[-limit:]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rules():
    return RuleConfigManager()


@pytest.fixture
def patterns(rules):
    return PatternClassifier(rules)


@pytest.fixture
def fake_llm():
    return FakeLLMService()
