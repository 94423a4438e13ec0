"""Shared fixtures and fakes for the test suite."""

import asyncio
from typing import Dict, List, Optional, Sequence

import pytest

from gemish_chat.config import Settings
from gemish_chat.domain.models import (
    Attachment,
    Message,
    StreamEnd,
    StreamError,
    StreamEvent,
    TextDelta,
    UserMessage,
)
from gemish_chat.repositories.memory import InMemoryMessageStore
from gemish_chat.services.llm import ModelStreamAdapter


class ScriptedAdapter(ModelStreamAdapter):
    """Replays a fixed list of events and records every call."""

    def __init__(
        self,
        events: Optional[Sequence[StreamEvent]] = None,
        gate_after: Optional[int] = None,
        raise_after: Optional[int] = None,
        delay: float = 0,
    ):
        self.events = list(events) if events is not None else [
            TextDelta(text="Hello "),
            TextDelta(text="there!"),
            StreamEnd(),
        ]
        self.calls: List[Dict] = []
        self.gate = asyncio.Event()
        self.gate_after = gate_after
        self.raise_after = raise_after
        self.delay = delay
        self.consumed = 0

    async def _stream(self, context, variant, system_instruction):
        self.calls.append({
            "context": list(context),
            "variant": variant,
            "system_instruction": system_instruction,
        })
        for index, event in enumerate(self.events):
            if self.gate_after is not None and index == self.gate_after:
                await self.gate.wait()
            if self.raise_after is not None and index == self.raise_after:
                raise RuntimeError("connection reset by provider")
            if self.delay:
                await asyncio.sleep(self.delay)
            self.consumed += 1
            yield event


class RecordingStore(InMemoryMessageStore):
    """In-memory store that counts reads and writes."""

    def __init__(self, fail_saves: bool = False):
        super().__init__()
        self.fail_saves = fail_saves
        self.saves: List[List[Message]] = []
        self.ownership_checks = 0
        self.history_loads = 0

    async def check_ownership(self, chat_id, user_id):
        self.ownership_checks += 1
        return await super().check_ownership(chat_id, user_id)

    async def load_history(self, chat_id):
        self.history_loads += 1
        return await super().load_history(chat_id)

    async def save_exchange(self, chat_id, user_id, messages):
        if self.fail_saves:
            raise ConnectionError("database unreachable")
        await super().save_exchange(chat_id, user_id, messages)
        self.saves.append(list(messages))

    @property
    def calls(self) -> int:
        return self.ownership_checks + self.history_loads + len(self.saves)


def user_message(content: str, message_id: str = "m-1", attachments: Sequence[Attachment] = ()) -> UserMessage:
    return UserMessage(id=message_id, content=content, attachments=list(attachments))


def pdf_attachment() -> Attachment:
    return Attachment(url="https://files.example.com/report.pdf", content_type="application/pdf", name="report.pdf")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        gemini_api_key=None,
        smooth_delay_ms=0,
        turn_timeout_seconds=5,
        cache_ttl_seconds=3600,
    )


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def error_stream() -> List[StreamEvent]:
    return [
        TextDelta(text="Partial "),
        TextDelta(text="answer "),
        StreamError(message="upstream 503"),
    ]
