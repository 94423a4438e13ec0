"""Pure helpers that reconcile persisted history with the messages of a new turn."""

from datetime import timedelta
from typing import List, Sequence

from ..domain.models import Message, ModelVariant, placeholder_id


def strip_placeholder(history: Sequence[Message], chat_id: str) -> List[Message]:
    """Return the history without the empty-chat placeholder.

    A chat that has never completed a turn is persisted as exactly one empty
    record carrying the chat's placeholder id; that record must never reach a
    prompt. Real messages are kept even when their content is empty.
    """
    if (
        len(history) == 1
        and history[0].id == placeholder_id(chat_id)
        and history[0].content == ""
        and not history[0].has_attachments
    ):
        return []
    return list(history)


def append_client_message(history: Sequence[Message], message: Message) -> List[Message]:
    """Merge the incoming client message into the history without mutating it.

    A client resubmitting the last message (same id) replaces it instead of
    duplicating it.
    """
    merged = list(history)
    if merged and merged[-1].id == message.id:
        merged[-1] = message
    else:
        merged.append(message)
    return merged


def context_has_attachments(messages: Sequence[Message]) -> bool:
    return any(m.has_attachments for m in messages)


def select_variant(messages: Sequence[Message], requested: ModelVariant) -> ModelVariant:
    """Attachments anywhere in the context force the multimodal (normal) variant."""
    if context_has_attachments(messages):
        return ModelVariant.NORMAL
    return requested


def append_response_messages(messages: Sequence[Message], responses: Sequence[Message]) -> List[Message]:
    """Append generated messages, each stamped strictly after the message before it."""
    merged = list(messages)
    for response in responses:
        if merged and response.created_at <= merged[-1].created_at:
            response = response.model_copy(
                update={"created_at": merged[-1].created_at + timedelta(milliseconds=1)}
            )
        merged.append(response)
    return merged
