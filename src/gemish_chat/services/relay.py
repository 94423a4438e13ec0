"""
Stream Relay

Takes one chat turn from the HTTP layer to durable storage:

    validate -> check ownership -> load history -> merge message
    -> stream from the model adapter -> forward to client -> save exchange

Generation runs in a background task owned by the relay. The client reads
frames through a ``TurnStream``; if it goes away, the task keeps draining
the provider stream so the completed exchange is still saved.
"""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional, Set, Union

from structlog import get_logger

from ..domain.errors import (
    ChatError,
    InvalidRequest,
    NotFound,
    Unauthenticated,
    UpstreamFailure,
)
from ..domain.models import (
    AssistantMessage,
    Message,
    ModelVariant,
    Principal,
    ReasoningDelta,
    SourceCitation,
    StepFinish,
    StepStart,
    StreamEnd,
    StreamError,
    StreamEvent,
    TextDelta,
    UserMessage,
)
from ..metrics import PERSIST_FAILURES, TURN_FAILURES, TURNS
from ..repositories.base import MessageStore
from .history import (
    append_client_message,
    append_response_messages,
    select_variant,
    strip_placeholder,
)
from .ids import IdGenerator
from .llm import ModelStreamAdapter
from .smoothing import smooth_stream

logger = get_logger()

SYSTEM_INSTRUCTION = "You are a helpful assistant. Respond to the user in Markdown format."
GENERIC_ERROR = "An error occurred."

Frame = Union[StepStart, StreamEvent]

_CLOSED = object()


@dataclass
class TurnOutcome:
    """How a turn ended: ``saved`` is True only after a successful durable write."""

    chat_id: str
    saved: bool = False
    messages: List[Message] = field(default_factory=list)
    error: Optional[str] = None


class ResponseAccumulator:
    """Collapses stream fragments into assistant messages."""

    def __init__(self, generate_id: IdGenerator):
        self._generate_id = generate_id
        self._messages: List[AssistantMessage] = []
        self._current: Optional[dict] = None

    def _close_step(self) -> None:
        if self._current is not None:
            self._messages.append(AssistantMessage(**self._current))
            self._current = None

    def feed(self, event: StreamEvent) -> List[Frame]:
        """Record an event and return the frames to forward for it."""
        frames: List[Frame] = []
        if isinstance(event, StepFinish):
            if self._current is not None:
                frames.append(event)
            self._close_step()
            return frames

        if self._current is None:
            message_id = self._generate_id()
            self._current = {"id": message_id, "content": "", "reasoning": "", "sources": []}
            frames.append(StepStart(message_id=message_id))

        if isinstance(event, TextDelta):
            self._current["content"] += event.text
        elif isinstance(event, ReasoningDelta):
            self._current["reasoning"] += event.text
        elif isinstance(event, SourceCitation):
            self._current["sources"].append(event)
        frames.append(event)
        return frames

    def finish(self, end: StreamEnd) -> List[Frame]:
        frames: List[Frame] = []
        if self._current is not None:
            frames.append(StepFinish(finish_reason=end.finish_reason, usage=end.usage))
        self._close_step()
        frames.append(end)
        return frames

    @property
    def messages(self) -> List[AssistantMessage]:
        return list(self._messages)


class TurnStream:
    """Client-side view of a turn: an async iterator of frames.

    Leaving the iteration early (disconnect, cancellation) detaches the
    client; the background task keeps running.
    """

    def __init__(self, chat_id: str, variant: ModelVariant):
        self.chat_id = chat_id
        self.variant = variant
        self._queue: asyncio.Queue = asyncio.Queue()
        self._detached = False
        self._finished = False
        self.task: Optional[asyncio.Task] = None

    @property
    def detached(self) -> bool:
        return self._detached

    @property
    def finished(self) -> bool:
        """True once the client has read every frame of the turn."""
        return self._finished

    def publish(self, frame: Frame) -> None:
        if not self._detached:
            self._queue.put_nowait(frame)

    def close(self) -> None:
        self._queue.put_nowait(_CLOSED)

    def detach(self) -> None:
        if not self._detached:
            self._detached = True
            # Nothing reads the queue after a detach.
            while not self._queue.empty():
                self._queue.get_nowait()
            logger.info("turn_client_detached", chat_id=self.chat_id)

    async def __aiter__(self) -> AsyncIterator[Frame]:
        try:
            while True:
                frame = await self._queue.get()
                if frame is _CLOSED:
                    self._finished = True
                    return
                yield frame
        finally:
            if not self._finished:
                self.detach()

    async def wait(self) -> TurnOutcome:
        """Wait for generation and persistence to finish."""
        return await asyncio.shield(self.task)


class StreamRelay:
    """Orchestrates chat turns against a message store and a model adapter."""

    def __init__(
        self,
        store: MessageStore,
        adapter: ModelStreamAdapter,
        generate_id: Optional[IdGenerator] = None,
        smooth_delay_ms: int = 20,
        turn_timeout: float = 30.0,
        system_instruction: str = SYSTEM_INSTRUCTION,
    ):
        self.store = store
        self.adapter = adapter
        self.generate_id = generate_id or IdGenerator()
        self.smooth_delay_ms = smooth_delay_ms
        self.turn_timeout = turn_timeout
        self.system_instruction = system_instruction
        self._tasks: Set[asyncio.Task] = set()

    async def handle_turn(
        self,
        chat_id: Optional[str],
        message: Optional[Message],
        model: Optional[str],
        principal: Optional[Principal],
    ) -> TurnStream:
        """Validate a turn and start streaming it.

        Raises ``InvalidRequest``, ``Unauthenticated``, ``UnsupportedModel``,
        ``NotFound`` or ``PersistenceFailure`` before any upstream call.
        """
        if message is None or not chat_id:
            raise InvalidRequest()
        if not isinstance(chat_id, str):
            raise InvalidRequest("Chat ID must be a string")
        if model is not None and not isinstance(model, str):
            raise InvalidRequest("Model must be a string")
        if not isinstance(message, UserMessage):
            raise InvalidRequest("Only user messages can start a turn")
        if principal is None:
            raise Unauthenticated()
        requested = ModelVariant.resolve(model or ModelVariant.FAST.value)

        if not await self.store.check_ownership(chat_id, principal.user_id):
            logger.warning("turn_chat_not_owned", chat_id=chat_id, user_id=principal.user_id)
            raise NotFound()

        history = strip_placeholder(await self.store.load_history(chat_id), chat_id)
        context = append_client_message(history, message)
        variant = select_variant(context, requested)
        events = self.adapter.generate(context, variant, self.system_instruction)

        logger.info(
            "turn_started",
            chat_id=chat_id,
            user_id=principal.user_id,
            requested_variant=requested.value,
            variant=variant.value,
            context_length=len(context),
        )
        TURNS.labels(variant=variant.value).inc()

        turn = TurnStream(chat_id, variant)
        task = asyncio.create_task(self._run(turn, principal.user_id, context, events))
        turn.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return turn

    async def _consume(
        self,
        turn: TurnStream,
        events: AsyncIterator[StreamEvent],
        accumulator: ResponseAccumulator,
    ) -> StreamEnd:
        async with aclosing(events), aclosing(smooth_stream(events, self.smooth_delay_ms)) as smoothed:
            async for event in smoothed:
                if isinstance(event, StreamError):
                    raise UpstreamFailure(event.message)
                if isinstance(event, StreamEnd):
                    return event
                for frame in accumulator.feed(event):
                    turn.publish(frame)
        raise UpstreamFailure("provider stream ended without an end event")

    async def _run(
        self,
        turn: TurnStream,
        user_id: str,
        context: List[Message],
        events: AsyncIterator[StreamEvent],
    ) -> TurnOutcome:
        outcome = TurnOutcome(chat_id=turn.chat_id)
        accumulator = ResponseAccumulator(self.generate_id)
        try:
            end = await asyncio.wait_for(
                self._consume(turn, events, accumulator),
                timeout=self.turn_timeout,
            )
        except (UpstreamFailure, asyncio.TimeoutError) as e:
            outcome.error = str(e) or "timed out"
            logger.error("turn_failed", chat_id=turn.chat_id, error=outcome.error)
            TURN_FAILURES.inc()
            turn.publish(StreamError(message=GENERIC_ERROR))
            turn.close()
            return outcome
        except asyncio.CancelledError:
            logger.warning("turn_cancelled", chat_id=turn.chat_id)
            turn.close()
            raise
        except Exception as e:
            outcome.error = str(e)
            logger.exception("turn_failed", chat_id=turn.chat_id, error=str(e))
            TURN_FAILURES.inc()
            turn.publish(StreamError(message=GENERIC_ERROR))
            turn.close()
            return outcome

        for frame in accumulator.finish(end):
            turn.publish(frame)

        full = append_response_messages(context, accumulator.messages)
        try:
            await self.store.save_exchange(turn.chat_id, user_id, full)
        except Exception as e:
            outcome.error = e.detail if isinstance(e, ChatError) else str(e)
            logger.error(
                "turn_persist_failed",
                chat_id=turn.chat_id,
                user_id=user_id,
                error=outcome.error,
                client_detached=turn.detached,
            )
            PERSIST_FAILURES.inc()
        else:
            outcome.saved = True
            outcome.messages = full
            logger.info(
                "turn_saved",
                chat_id=turn.chat_id,
                message_count=len(full),
                finish_reason=end.finish_reason,
                client_detached=turn.detached,
            )
        finally:
            turn.close()
        return outcome

    async def drain(self) -> None:
        """Wait for every in-flight turn to finish (used on shutdown)."""
        tasks = list(self._tasks)
        if tasks:
            logger.info("relay_draining", turns=len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def active_turns(self) -> int:
        return len(self._tasks)
