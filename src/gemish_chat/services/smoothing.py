"""Pacing transform that re-chunks text deltas into word-sized pieces."""

import asyncio
import re
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..domain.models import StreamEvent, TextDelta

WORD_CHUNK = re.compile(r"\s*\S+\s+")


async def smooth_stream(
    events: AsyncIterator[StreamEvent],
    delay_ms: int = 20,
    chunk_pattern: "re.Pattern[str]" = WORD_CHUNK,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> AsyncIterator[StreamEvent]:
    """Yield text one word at a time with a fixed delay between words.

    Text that does not yet end a word is held back until more text arrives,
    a non-text event is seen (the buffer is flushed first) or the stream ends.
    Non-text events pass through unchanged and in order.
    """
    sleep = sleep or asyncio.sleep
    delay = delay_ms / 1000
    buffer = ""

    async for event in events:
        if not isinstance(event, TextDelta):
            if buffer:
                yield TextDelta(text=buffer)
                buffer = ""
            yield event
            continue

        buffer += event.text
        while True:
            match = chunk_pattern.match(buffer)
            if match is None:
                break
            chunk = match.group(0)
            buffer = buffer[len(chunk):]
            yield TextDelta(text=chunk)
            if delay:
                await sleep(delay)

    if buffer:
        yield TextDelta(text=buffer)
