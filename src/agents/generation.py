from __future__ import annotations

import asyncio
import inspect
from typing import Any, Dict, Protocol

from src.utils.context_store import ConversationContextStore
from src.utils.errors import UpstreamFailure, ValidationError
from src.utils.logging import get_logger
from src.utils.observability import get_metrics, time_phase
from src.utils.settings import Settings

log = get_logger(__name__)

NO_RESPONSE_FALLBACK = "No response generated."
GROUNDED_ERROR_SENTINEL = "Error retrieving from Knowledge Base"
FREEFORM_ERROR_SENTINEL = "Error in AI generation"

FREEFORM_PARAMS: Dict[str, Any] = {
    "max_tokens": 200,
    "temperature": 0.5,
    "top_p": 0.9,
    "top_k": 50,
}


class GroundedBackend(Protocol):
    def retrieve_and_generate(
        self,
        prompt: str,
        *,
        knowledge_base_id: str | None,
        model_arn: str | None,
        kms_key_arn: str | None = None,
        data_source_id: str | None = None,
    ) -> str: ...


class FreeformBackend(Protocol):
    def generate(self, prompt: str, *, model_id: str, params: Dict[str, Any]) -> Any: ...


def build_prompt(context: str, query: str) -> str:
    return f"Context: {context}\nUser: {query}"


def build_lookup_prompt(query: str) -> str:
    return f"User query: {query}"


async def _invoke(fn: Any, *args: Any, **kwargs: Any) -> Any:
    if inspect.iscoroutinefunction(fn):
        return await fn(*args, **kwargs)
    return await asyncio.to_thread(fn, *args, **kwargs)


class GenerationGateway:
    """Builds context-augmented prompts and normalises backend replies.

    The grounded and free-form chat entry points absorb backend failures and
    return a textual sentinel. ``retrieve_and_generate`` and ``instant_lookup``
    raise instead. A successful exchange is recorded in the context store as
    a user turn followed by a bot turn before the reply is returned.
    """

    def __init__(
        self,
        *,
        grounded_backend: GroundedBackend,
        freeform_backend: FreeformBackend,
        context_store: ConversationContextStore,
        settings: Settings,
    ) -> None:
        self.grounded_backend = grounded_backend
        self.freeform_backend = freeform_backend
        self.context_store = context_store
        self.settings = settings

    @property
    def freeform_model_id(self) -> str:
        if self.settings.freeform_provider == "openai":
            return self.settings.openai_model
        return self.settings.freeform_model_id

    async def _grounded(self, query: str, user_id: str) -> str:
        prompt = build_prompt(self.context_store.get_context(user_id), query)
        with time_phase(get_metrics(), "generation_grounded"):
            text = await _invoke(
                self.grounded_backend.retrieve_and_generate,
                prompt,
                knowledge_base_id=self.settings.knowledge_base_id,
                model_arn=self.settings.model_arn,
                kms_key_arn=self.settings.kms_key_arn,
            )
        reply = text or NO_RESPONSE_FALLBACK
        self.context_store.append_turns(user_id, [("user", query), ("assistant", reply)])
        return reply

    async def _freeform(self, query: str, user_id: str) -> str:
        prompt = build_prompt(self.context_store.get_context(user_id), query)
        with time_phase(get_metrics(), "generation_freeform"):
            text = await _invoke(
                self.freeform_backend.generate,
                prompt,
                model_id=self.freeform_model_id,
                params=dict(FREEFORM_PARAMS),
            )
        reply = text or NO_RESPONSE_FALLBACK
        self.context_store.append_turns(user_id, [("user", query), ("assistant", reply)])
        return reply

    async def answer_grounded(self, query: str, user_id: str) -> str:
        try:
            return await self._grounded(query, user_id)
        except Exception as exc:
            get_metrics().increment_counter("generation_fallback::grounded")
            log.error("grounded_generation_failed", user_id=user_id, error=str(exc))
            return GROUNDED_ERROR_SENTINEL

    async def answer_freeform(self, query: str, user_id: str) -> str:
        try:
            return await self._freeform(query, user_id)
        except Exception as exc:
            get_metrics().increment_counter("generation_fallback::freeform")
            log.error("freeform_generation_failed", user_id=user_id, error=str(exc))
            return FREEFORM_ERROR_SENTINEL

    async def retrieve_and_generate(self, query: str, user_id: str) -> str:
        try:
            return await self._grounded(query, user_id)
        except Exception as exc:
            log.error("retrieve_and_generate_failed", user_id=user_id, error=str(exc))
            raise UpstreamFailure("Failed to retrieve and generate response") from exc

    async def answer(self, query: str, user_id: str, mode: str = "grounded") -> str:
        if mode == "freeform":
            return await self.answer_freeform(query, user_id)
        if mode == "grounded":
            return await self.answer_grounded(query, user_id)
        raise ValidationError(f"Unknown generation mode: {mode}")

    def resolve_data_source(self, data_source: str) -> str:
        sources = self.settings.named_data_sources
        if data_source not in sources:
            raise ValidationError(f"Unknown data source: {data_source}")
        source_id = sources[data_source]
        if not source_id:
            raise ValidationError(f"Data source {data_source} is not configured")
        return source_id

    async def instant_lookup(self, query: str, data_source: str) -> str:
        query = (query or "").strip()
        data_source = (data_source or "").strip()
        if not query or not data_source:
            raise ValidationError("Query and Data Source are required")
        source_id = self.resolve_data_source(data_source)
        try:
            with time_phase(get_metrics(), "generation_lookup"):
                text = await _invoke(
                    self.grounded_backend.retrieve_and_generate,
                    build_lookup_prompt(query),
                    knowledge_base_id=self.settings.knowledge_base_id,
                    model_arn=self.settings.model_arn,
                    kms_key_arn=self.settings.kms_key_arn,
                    data_source_id=source_id,
                )
        except Exception as exc:
            log.error("instant_lookup_failed", data_source=data_source, error=str(exc))
            raise UpstreamFailure("Failed to process instant lookup") from exc
        log.info("instant_lookup_completed", data_source=data_source)
        return text or NO_RESPONSE_FALLBACK
