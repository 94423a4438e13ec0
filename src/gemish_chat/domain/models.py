"""Domain models for the chat relay."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from .errors import UnsupportedModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _WireModel(BaseModel):
    """Base for models exchanged with the browser client (camelCase on the wire)."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )


class ModelVariant(str, Enum):
    """Named configurations of the upstream model."""

    FAST = "fast"
    NORMAL = "normal"  # multimodal-capable

    @classmethod
    def resolve(cls, name: Optional[str]) -> "ModelVariant":
        """Map a caller-supplied model name to a variant."""
        if name == "capable":
            return cls.NORMAL
        try:
            return cls(name)
        except ValueError:
            raise UnsupportedModel(f"Unsupported model variant: {name!r}") from None


class Attachment(_WireModel):
    """Reference to an uploaded file."""

    url: str
    content_type: str
    name: Optional[str] = None


class SourceCitation(_WireModel):
    """A source the model cited while generating."""

    type: Literal["source"] = "source"
    id: str
    url: str
    title: Optional[str] = None


class _MessageBase(_WireModel):
    id: str = Field(min_length=1)
    content: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    attachments: List[Attachment] = Field(
        default_factory=list,
        validation_alias=AliasChoices("attachments", "experimental_attachments", "experimentalAttachments"),
    )

    @field_validator("attachments", mode="before")
    @classmethod
    def _none_means_empty(cls, value):
        return [] if value is None else value

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)


class UserMessage(_MessageBase):
    role: Literal["user"] = "user"


class AssistantMessage(_MessageBase):
    role: Literal["assistant"] = "assistant"
    reasoning: str = ""
    sources: List[SourceCitation] = Field(default_factory=list)


class SystemMessage(_MessageBase):
    role: Literal["system"] = "system"


class DataMessage(_MessageBase):
    role: Literal["data"] = "data"


Message = Annotated[
    Union[UserMessage, AssistantMessage, SystemMessage, DataMessage],
    Field(discriminator="role"),
]

message_adapter: TypeAdapter = TypeAdapter(Message)
message_list_adapter: TypeAdapter = TypeAdapter(List[Message])


class ChatSession(BaseModel):
    """A chat owned by exactly one user."""

    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    created_at: datetime = Field(default_factory=utcnow)


def placeholder_id(chat_id: str) -> str:
    """Id of the empty record a chat holds before its first completed turn."""
    return f"{chat_id}-init"


# Stream events produced by a model adapter for one generation request.


class Usage(_WireModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0


class TextDelta(_WireModel):
    type: Literal["text"] = "text"
    text: str


class ReasoningDelta(_WireModel):
    type: Literal["reasoning"] = "reasoning"
    text: str


class StepFinish(_WireModel):
    """Marks the end of one assistant message within a turn."""

    type: Literal["step-finish"] = "step-finish"
    finish_reason: str = "stop"
    usage: Usage = Field(default_factory=Usage)


class StreamEnd(_WireModel):
    type: Literal["end"] = "end"
    finish_reason: str = "stop"
    usage: Usage = Field(default_factory=Usage)


class StreamError(_WireModel):
    type: Literal["error"] = "error"
    message: str


StreamEvent = Union[TextDelta, ReasoningDelta, SourceCitation, StepFinish, StreamEnd, StreamError]


class StepStart(_WireModel):
    """Opens a new assistant message; carries the id it will be persisted under."""

    type: Literal["step-start"] = "step-start"
    message_id: str


class Principal(BaseModel):
    """An authenticated caller."""

    model_config = ConfigDict(frozen=True)

    user_id: str
