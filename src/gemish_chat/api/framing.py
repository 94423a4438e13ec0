"""Line framing for streamed chat responses.

Each frame is ``{code}:{json}\\n``. Codes: ``f`` step start, ``0`` text,
``g`` reasoning, ``h`` source, ``e`` step finish, ``d`` finish,
``3`` error.
"""

import json
from contextlib import aclosing
from typing import Any, AsyncIterable, AsyncIterator, List, Tuple

from fastapi.responses import StreamingResponse

from ..domain.models import (
    ReasoningDelta,
    SourceCitation,
    StepFinish,
    StepStart,
    StreamEnd,
    StreamError,
    TextDelta,
    Usage,
)
from ..services.relay import Frame, TurnStream

STREAM_HEADERS = {
    "x-vercel-ai-data-stream": "v1",
    "cache-control": "no-cache",
}
MEDIA_TYPE = "text/plain; charset=utf-8"


def _line(code: str, value: Any) -> str:
    return f"{code}:{json.dumps(value, separators=(',', ':'), ensure_ascii=False)}\n"


def _usage(usage: Usage) -> dict:
    return {"promptTokens": usage.prompt_tokens, "completionTokens": usage.completion_tokens}


def encode_frame(frame: Frame) -> str:
    if isinstance(frame, TextDelta):
        return _line("0", frame.text)
    if isinstance(frame, ReasoningDelta):
        return _line("g", frame.text)
    if isinstance(frame, SourceCitation):
        return _line("h", {"sourceType": "url", "id": frame.id, "url": frame.url, "title": frame.title})
    if isinstance(frame, StepStart):
        return _line("f", {"messageId": frame.message_id})
    if isinstance(frame, StepFinish):
        return _line("e", {
            "finishReason": frame.finish_reason,
            "usage": _usage(frame.usage),
            "isContinued": False,
        })
    if isinstance(frame, StreamEnd):
        return _line("d", {"finishReason": frame.finish_reason, "usage": _usage(frame.usage)})
    if isinstance(frame, StreamError):
        return _line("3", frame.message)
    raise TypeError(f"Cannot frame {type(frame).__name__}")


async def encode_stream(frames: AsyncIterable[Frame]) -> AsyncIterator[str]:
    async with aclosing(frames.__aiter__()) as stream:
        async for frame in stream:
            yield encode_frame(frame)


class TurnStreamingResponse(StreamingResponse):
    """Streams a turn's frames and detaches the turn if the body is not fully sent.

    A client that goes away mid-stream surfaces as a failed ``send`` or a
    cancelled response task. Either way the turn stops buffering frames while
    its generation and save carry on in the background.
    """

    def __init__(self, turn: TurnStream, **kwargs):
        super().__init__(encode_stream(turn), media_type=MEDIA_TYPE, headers=STREAM_HEADERS, **kwargs)
        self.turn = turn

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self.body_iterator.aclose()
            if not self.turn.finished:
                self.turn.detach()


def parse_frames(body: str) -> List[Tuple[str, Any]]:
    """Split a streamed body back into ``(code, value)`` pairs."""
    parsed = []
    for line in body.splitlines():
        if not line:
            continue
        code, _, payload = line.partition(":")
        parsed.append((code, json.loads(payload)))
    return parsed
