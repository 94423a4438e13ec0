"""Model stream adapters wrapping the upstream generation endpoint."""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional, Sequence, Set

import google.generativeai as genai
import httpx
import structlog
from google.api_core import exceptions

from ..config import Settings
from ..domain.errors import UnsupportedModel
from ..domain.models import (
    Attachment,
    Message,
    ModelVariant,
    ReasoningDelta,
    SourceCitation,
    StreamEnd,
    StreamError,
    StreamEvent,
    TextDelta,
    Usage,
)

logger = structlog.get_logger()

FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content-filter",
    "RECITATION": "content-filter",
}


class ModelStreamAdapter(ABC):
    """Produces a single-pass event stream for one generation request.

    Streams end with exactly one ``StreamEnd`` or ``StreamError`` event.
    """

    supported_variants: Sequence[ModelVariant] = tuple(ModelVariant)

    def generate(
        self,
        context: Sequence[Message],
        variant: ModelVariant,
        system_instruction: str,
    ) -> AsyncIterator[StreamEvent]:
        """Validate the variant, then return the lazy event stream."""
        if variant not in self.supported_variants:
            raise UnsupportedModel(f"Unsupported model variant: {variant!r}")
        return self._stream(list(context), variant, system_instruction)

    @abstractmethod
    def _stream(
        self,
        context: List[Message],
        variant: ModelVariant,
        system_instruction: str,
    ) -> AsyncIterator[StreamEvent]:
        pass


class GeminiStreamAdapter(ModelStreamAdapter):
    """Adapter for Google's Gemini models."""

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        """Configure the Gemini client and the variant table."""
        if settings.gemini_api_key:
            genai.configure(api_key=settings.gemini_api_key)
        self.model_names: Dict[ModelVariant, str] = {
            ModelVariant.FAST: settings.fast_model,
            ModelVariant.NORMAL: settings.normal_model,
        }
        self._http_client = http_client
        logger.info(
            "llm_adapter_init",
            provider="gemini",
            models={v.value: name for v, name in self.model_names.items()},
            api_key_configured=bool(settings.gemini_api_key),
        )

    async def _fetch_attachment(self, attachment: Attachment) -> dict:
        if self._http_client is None:
            async with httpx.AsyncClient(timeout=30.0) as client:
                response = await client.get(attachment.url)
        else:
            response = await self._http_client.get(attachment.url)
        response.raise_for_status()
        return {
            "inline_data": {
                "mime_type": attachment.content_type,
                "data": response.content,
            }
        }

    async def _to_contents(self, context: List[Message], system_instruction: str):
        """Convert chat messages into Gemini contents plus the effective system instruction."""
        system_parts = [system_instruction]
        contents = []
        for message in context:
            if message.role == "system":
                system_parts.append(message.content)
                continue
            if message.role == "data":
                continue
            parts: List = [await self._fetch_attachment(a) for a in message.attachments]
            if message.content:
                parts.append(message.content)
            if not parts:
                continue
            contents.append({
                "role": "model" if message.role == "assistant" else "user",
                "parts": parts,
            })
        return contents, "\n\n".join(p for p in system_parts if p)

    async def _stream(
        self,
        context: List[Message],
        variant: ModelVariant,
        system_instruction: str,
    ) -> AsyncIterator[StreamEvent]:
        model_name = self.model_names[variant]
        usage = Usage()
        finish_reason = "stop"
        seen_sources: Set[str] = set()

        try:
            contents, system = await self._to_contents(context, system_instruction)
            model = genai.GenerativeModel(model_name, system_instruction=system)
            response = await model.generate_content_async(contents, stream=True)

            async for chunk in response:
                for candidate in chunk.candidates:
                    for part in candidate.content.parts:
                        if not part.text:
                            continue
                        if getattr(part, "thought", False):
                            yield ReasoningDelta(text=part.text)
                        else:
                            yield TextDelta(text=part.text)

                    grounding = getattr(candidate, "grounding_metadata", None)
                    for grounding_chunk in getattr(grounding, "grounding_chunks", None) or []:
                        web = getattr(grounding_chunk, "web", None)
                        if web is None or not web.uri or web.uri in seen_sources:
                            continue
                        seen_sources.add(web.uri)
                        yield SourceCitation(id=f"src-{len(seen_sources)}", url=web.uri, title=web.title or None)

                    if candidate.finish_reason:
                        finish_reason = FINISH_REASONS.get(candidate.finish_reason.name, "other")

                metadata = getattr(chunk, "usage_metadata", None)
                if metadata is not None:
                    usage = Usage(
                        prompt_tokens=metadata.prompt_token_count or 0,
                        completion_tokens=metadata.candidates_token_count or 0,
                    )

        except exceptions.GoogleAPIError as e:
            logger.error("gemini_stream_error", model=model_name, error=str(e))
            yield StreamError(message=f"upstream error: {e}")
            return
        except httpx.HTTPError as e:
            logger.error("attachment_fetch_error", model=model_name, error=str(e))
            yield StreamError(message=f"attachment fetch failed: {e}")
            return
        except Exception as e:
            logger.error("response_generation_error", model=model_name, error=str(e))
            yield StreamError(message=f"malformed upstream stream: {e}")
            return

        yield StreamEnd(finish_reason=finish_reason, usage=usage)
