from typing import AsyncIterator, Dict, List, Optional, Protocol
import logging

import httpx
from openai import AsyncOpenAI, BadRequestError

from core.config import Settings, settings
from core.utils.perf import profile_stage

logger = logging.getLogger(__name__)

Message = Dict[str, str]

_HTTP_LIMITS = httpx.Limits(max_keepalive_connections=20, max_connections=40)


class ModelCallCancelled(RuntimeError):
    """Raised from inside a model stream once the caller's token is cancelled."""


class CancellationToken:
    """Cooperative cancel flag handed down through every model call."""

    def __init__(self):
        self._cancelled = False

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ModelCallCancelled("model call cancelled by caller")


class LanguageModel(Protocol):
    def send_prompt(self, messages: List[Message], token: Optional[CancellationToken] = None) -> AsyncIterator[str]:
        ...


def user_message(content: str) -> Message:
    return {"role": "user", "content": content}


def system_message(content: str) -> Message:
    return {"role": "system", "content": content}


class OpenAIChatModel:
    """Streams chat completions from OpenAI, checking the cancellation token between chunks."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        config: Settings = settings,
    ):
        self._client = client or AsyncOpenAI(
            api_key=config.OPENAI_API_KEY,
            http_client=httpx.AsyncClient(timeout=config.OPENAI_TIMEOUT_SECS, limits=_HTTP_LIMITS),
        )
        self.model = model or config.LLM_MODEL
        self.temperature = config.LLM_TEMPERATURE_DEFAULT if temperature is None else temperature
        self.max_tokens = max_tokens or config.LLM_MAX_TOKENS

    async def _open_stream(self, messages: List[Message]):
        params = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "stream": True,
        }
        try:
            return await self._client.chat.completions.create(**params)
        except BadRequestError as e:
            # Some models only accept the default temperature
            msg = str(e)
            if "temperature" in msg and "unsupported" in msg.lower():
                logger.warning(f"[LLM] {self.model} rejected temperature, retrying without it")
                params.pop("temperature", None)
                return await self._client.chat.completions.create(**params)
            raise

    async def send_prompt(self, messages: List[Message], token: Optional[CancellationToken] = None) -> AsyncIterator[str]:
        if token:
            token.raise_if_cancelled()
        stream = await self._open_stream(messages)
        async for chunk in stream:
            if token and token.is_cancelled:
                await stream.close()
                raise ModelCallCancelled("model call cancelled by caller")
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta.content
            if delta:
                yield delta


def build_default_model(config: Settings = settings) -> Optional[LanguageModel]:
    """None when no API key is configured; callers then take their no-model paths."""
    if not config.OPENAI_API_KEY:
        logger.warning("[LLM] OPENAI_API_KEY not set; running without a language model")
        return None
    return OpenAIChatModel(config=config)


@profile_stage("llm_round_trip")
async def collect_text(
    model: LanguageModel,
    messages: List[Message],
    token: Optional[CancellationToken] = None,
) -> str:
    """Drain a model stream into one string."""
    parts: List[str] = []
    async for fragment in model.send_prompt(messages, token):
        parts.append(fragment)
    return "".join(parts)
