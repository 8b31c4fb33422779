from __future__ import annotations

import asyncio
import math
import re
import threading
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Protocol, Tuple, Union

import openai
from openai import AsyncOpenAI

from chatrelay.config import CompletionBackendMode, Settings
from chatrelay.logging import get_logger, sanitize_error_message
from chatrelay.service.errors import CompletionError
from chatrelay.storage.models import Credential, Usage

logger = get_logger(__name__)


@dataclass
class CompletionRequest:
    model: str
    prompt: str
    system_prompt: Optional[str] = None
    # prior turns as chat messages, oldest first
    context: List[dict] = field(default_factory=list)
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    parent_message_id: Optional[str] = None
    conversation_id: Optional[str] = None

    def messages(self) -> List[dict]:
        messages: List[dict] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.extend(self.context)
        messages.append({"role": "user", "content": self.prompt})
        return messages


@dataclass
class PartialEvent:
    """Incremental output. ``text`` is cumulative, ``delta`` is what just arrived."""

    id: Optional[str]
    conversation_id: Optional[str]
    text: str
    delta: str = ""
    finish_reason: Optional[str] = None


@dataclass
class FinalResult:
    id: Optional[str]
    conversation_id: Optional[str]
    text: str
    finish_reason: Optional[str] = "stop"
    usage: Usage = field(default_factory=Usage)


CompletionEvent = Union[PartialEvent, FinalResult]


class CompletionBackend(Protocol):
    """Streams one completion.

    Implementations yield zero or more ``PartialEvent`` followed by exactly
    one ``FinalResult``, or raise ``CompletionError`` part way through.
    """

    def stream(
        self, request: CompletionRequest, credential: Credential
    ) -> AsyncIterator[CompletionEvent]: ...


def estimate_token_count(text: str) -> int:
    """Conservative token estimate for upstreams that omit usage.

    Takes the larger of the whitespace word count and ``len / 4`` so text
    without spaces is not undercounted.
    """

    if not text:
        return 0
    normalized = text.strip()
    wordish = len(re.findall(r"\S+", normalized))
    char_estimate = math.ceil(len(normalized) / 4)
    return max(wordish, char_estimate)


def estimate_usage(messages: List[dict], completion_text: str) -> Usage:
    prompt_tokens = sum(estimate_token_count(m.get("content") or "") for m in messages)
    completion_tokens = estimate_token_count(completion_text)
    return Usage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        estimated=True,
    )


class OpenAIChatBackend:
    """Streams chat completions through the OpenAI SDK.

    One ``AsyncOpenAI`` client is kept per (secret, base_url) pair so
    credentials from the pool can point at different compatible endpoints.
    """

    mode = CompletionBackendMode.OPENAI

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: int = 2,
    ) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self.max_retries = max_retries
        self._clients: Dict[Tuple[str, Optional[str]], AsyncOpenAI] = {}
        self._clients_lock = threading.Lock()

    def _client(self, credential: Credential) -> AsyncOpenAI:
        base_url = credential.base_url or self.base_url
        key = (credential.secret, base_url)
        with self._clients_lock:
            client = self._clients.get(key)
            if client is None:
                client = AsyncOpenAI(
                    api_key=credential.secret,
                    base_url=base_url,
                    timeout=self.timeout,
                    max_retries=self.max_retries,
                )
                self._clients[key] = client
            return client

    async def stream(
        self, request: CompletionRequest, credential: Credential
    ) -> AsyncIterator[CompletionEvent]:
        client = self._client(credential)
        messages = request.messages()
        conversation_id = request.conversation_id or str(uuid.uuid4())
        message_id: Optional[str] = None
        text = ""
        finish_reason: Optional[str] = None
        usage: Optional[Usage] = None
        params: dict = {
            "model": request.model,
            "messages": messages,
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.temperature is not None:
            params["temperature"] = request.temperature
        if request.top_p is not None:
            params["top_p"] = request.top_p

        try:
            response = await client.chat.completions.create(**params)
            async for chunk in response:
                message_id = chunk.id or message_id
                if chunk.usage:
                    usage = Usage(
                        prompt_tokens=chunk.usage.prompt_tokens or 0,
                        completion_tokens=chunk.usage.completion_tokens or 0,
                        total_tokens=chunk.usage.total_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
                delta = (choice.delta.content if choice.delta else None) or ""
                if not delta:
                    continue
                text += delta
                yield PartialEvent(
                    id=message_id,
                    conversation_id=conversation_id,
                    text=text,
                    delta=delta,
                    finish_reason=finish_reason,
                )
        except openai.APIError as exc:
            logger.warning(
                "completion_upstream_error",
                model=request.model,
                error_type=type(exc).__name__,
                status_code=getattr(exc, "status_code", None),
            )
            raise CompletionError(
                sanitize_error_message(str(exc)),
                detail={"model": request.model, "upstream": type(exc).__name__},
            ) from exc

        if usage is None or usage.is_empty():
            usage = estimate_usage(messages, text)
        yield FinalResult(
            id=message_id,
            conversation_id=conversation_id,
            text=text,
            finish_reason=finish_reason or "stop",
            usage=usage,
        )


class StubCompletionBackend:
    """Deterministic offline backend used in test mode.

    Echoes the prompt word by word so streaming, cancellation and usage
    accounting can be exercised without network access.
    """

    mode = CompletionBackendMode.STUB

    def __init__(self, *, delay: float = 0.0) -> None:
        self.delay = delay

    async def stream(
        self, request: CompletionRequest, credential: Credential
    ) -> AsyncIterator[CompletionEvent]:
        message_id = f"stub-{uuid.uuid4().hex[:12]}"
        conversation_id = request.conversation_id or str(uuid.uuid4())
        reply = f"[stub model={request.model}] {request.prompt}"
        text = ""
        for word in reply.split(" "):
            delta = word if not text else f" {word}"
            text += delta
            await asyncio.sleep(self.delay)
            yield PartialEvent(
                id=message_id,
                conversation_id=conversation_id,
                text=text,
                delta=delta,
            )
        yield FinalResult(
            id=message_id,
            conversation_id=conversation_id,
            text=text,
            usage=estimate_usage(request.messages(), text),
        )


def build_completion_backend(settings: Settings) -> CompletionBackend:
    if settings.test_mode or settings.completion_backend == CompletionBackendMode.STUB:
        return StubCompletionBackend()
    return OpenAIChatBackend(
        base_url=settings.openai_base_url,
        timeout=settings.turn_timeout_seconds,
    )
