"""
Completion providers: streamed chat completions plus query embeddings.

Two backends, selected by LLM_PROVIDER:
    openai  AsyncOpenAI chat completions + embeddings (default)
    ollama  self-hosted Ollama chat (ollama.AsyncClient) + /api/embeddings

complete() separates the two failure phases callers care about. Anything that
goes wrong before the first fragment is raised from complete() itself, so the
caller can still answer with a clean error status. Anything after that is
raised from the returned iterator with mid_stream=True.
"""
from typing import AsyncIterator, List, Optional, Sequence
import asyncio
import time

import httpx
import ollama
import openai
import requests
from fastapi.concurrency import run_in_threadpool
from openai import AsyncOpenAI

from app.config import Settings
from app.errors import CompletionError
from app.models import ChatMessage
from app.rag.generation import build_messages
from app.logging_config import get_logger

logger = get_logger(__name__)


def kind_for_status(status: Optional[int]) -> str:
    """HTTP status from a provider -> CompletionError kind."""
    if status is None:
        return "other"
    if status == 402:
        return "quota"
    if status in (401, 403):
        return "auth"
    if status in (429, 503, 529):
        return "overloaded"
    if status in (408, 504):
        return "timeout"
    if status in (400, 404, 413, 422):
        return "bad_request"
    return "other"


async def _no_fragments():
    return
    yield


class CompletionClient:
    """
    Base class. Subclasses implement _fragments(), embed() and classify_error().

    One instance is built at startup and shared by every request.
    """
    provider_name = "base"

    def __init__(self, model: str, temperature: float = 0.7, timeout_seconds: float = 60.0):
        self.model = model
        self.temperature = temperature
        self.timeout_seconds = timeout_seconds

    def _fragments(self, messages: List[dict]) -> AsyncIterator[str]:
        raise NotImplementedError

    async def embed(self, text: str) -> List[float]:
        raise NotImplementedError

    def classify_error(self, exc: BaseException, mid_stream: bool = False) -> CompletionError:
        raise NotImplementedError

    async def complete(self, system_prompt: str, history: Sequence[ChatMessage]) -> AsyncIterator[str]:
        """
        Start a streamed completion.

        Returns an async iterator of non-empty text fragments once the provider
        has accepted the request and produced its first fragment.

        Raises:
            CompletionError: the request was rejected or failed before streaming began
        """
        messages = build_messages(system_prompt, history)
        upstream = self._fragments(messages)

        llm_start = time.time()
        try:
            first = await upstream.__anext__()
        except StopAsyncIteration:
            logger.warning(f"{self.provider_name} returned an empty completion")
            return _no_fragments()
        except CompletionError:
            raise
        except Exception as e:
            raise self.classify_error(e) from e

        ttft = (time.time() - llm_start) * 1000
        logger.info(f"Using model: {self.model} ({self.provider_name}), time to first fragment: {ttft:.0f}ms")
        return self._relay(first, upstream)

    async def _relay(self, first: str, upstream: AsyncIterator[str]):
        try:
            yield first
            async for fragment in upstream:
                yield fragment
        except CompletionError as e:
            e.mid_stream = True
            raise
        except Exception as e:
            raise self.classify_error(e, mid_stream=True) from e
        finally:
            # Stops upstream generation when the consumer goes away early
            await upstream.aclose()


# ============================================================================
# OpenAI
# ============================================================================

class OpenAICompletionClient(CompletionClient):
    provider_name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        model: str = "gpt-4o",
        embedding_model: str = "text-embedding-3-small",
        embedding_dimensions: Optional[int] = None,
        temperature: float = 0.7,
        timeout_seconds: float = 60.0,
        client: Optional[AsyncOpenAI] = None,
    ):
        super().__init__(model, temperature, timeout_seconds)
        self.embedding_model = embedding_model
        self.embedding_dimensions = embedding_dimensions
        self.client = client or AsyncOpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=1)
        logger.info(f"Initialized OpenAI completion client: chat={model} embeddings={embedding_model}")

    async def _fragments(self, messages: List[dict]):
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            stream=True,
            temperature=self.temperature,
        )
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield content
        finally:
            await stream.close()

    async def embed(self, text: str) -> List[float]:
        kwargs = {}
        # Only the text-embedding-3 family accepts a dimensions override
        if self.embedding_dimensions and self.embedding_model.startswith("text-embedding-3"):
            kwargs["dimensions"] = self.embedding_dimensions
        response = await self.client.embeddings.create(model=self.embedding_model, input=text, **kwargs)
        return response.data[0].embedding

    def classify_error(self, exc: BaseException, mid_stream: bool = False) -> CompletionError:
        detail = str(exc)
        if isinstance(exc, openai.APITimeoutError):
            kind, status = "timeout", None
        elif isinstance(exc, openai.APIConnectionError):
            kind, status = "network", None
        elif isinstance(exc, openai.RateLimitError):
            status = exc.status_code
            kind = "quota" if getattr(exc, "code", None) == "insufficient_quota" else "overloaded"
        elif isinstance(exc, openai.APIStatusError):
            status = exc.status_code
            kind = kind_for_status(status)
        elif isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
            kind, status = "timeout", None
        elif isinstance(exc, (httpx.NetworkError, ConnectionError)):
            kind, status = "network", None
        else:
            kind, status = "other", None
        return CompletionError(kind, detail, mid_stream=mid_stream, status_code=status)


# ============================================================================
# Ollama (self-hosted)
# ============================================================================

class OllamaCompletionClient(CompletionClient):
    provider_name = "ollama"

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        embedding_model: str = "nomic-embed-text",
        temperature: float = 0.7,
        timeout_seconds: float = 60.0,
        client: Optional[ollama.AsyncClient] = None,
    ):
        super().__init__(model, temperature, timeout_seconds)
        self.base_url = base_url
        self.embedding_model = embedding_model
        self.client = client or ollama.AsyncClient(host=base_url, timeout=timeout_seconds)
        logger.info(f"Initialized Ollama completion client: chat={model} embeddings={embedding_model} at {base_url}")

    async def _fragments(self, messages: List[dict]):
        stream = await self.client.chat(
            model=self.model,
            messages=messages,
            stream=True,
            options={'temperature': self.temperature},
            keep_alive=-1,
        )
        async for part in stream:
            content = part['message']['content']
            if content:
                yield content

    def _embed_sync(self, text: str) -> List[float]:
        response = requests.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.embedding_model, "prompt": text},
            timeout=self.timeout_seconds,
        )
        response.raise_for_status()
        return response.json()["embedding"]

    async def embed(self, text: str) -> List[float]:
        return await run_in_threadpool(self._embed_sync, text)

    def ping(self) -> bool:
        """True when the Ollama server answers /api/tags."""
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            response.raise_for_status()
            return True
        except requests.exceptions.RequestException as e:
            logger.warning(f"Could not connect to Ollama at {self.base_url}: {e}")
            return False

    def classify_error(self, exc: BaseException, mid_stream: bool = False) -> CompletionError:
        detail = str(exc)
        status = None
        if isinstance(exc, ollama.ResponseError):
            status = exc.status_code
            kind = kind_for_status(status)
        elif isinstance(exc, (asyncio.TimeoutError, httpx.TimeoutException)):
            kind = "timeout"
        elif isinstance(exc, (httpx.NetworkError, ConnectionError)):
            kind = "network"
        else:
            kind = "other"
        return CompletionError(kind, detail, mid_stream=mid_stream, status_code=status)


def build_completion_client(settings: Settings) -> CompletionClient:
    """Construct the configured provider once at startup."""
    if settings.llm_provider == "ollama":
        client = OllamaCompletionClient(
            base_url=settings.ollama_base_url,
            model=settings.ollama_model,
            embedding_model=settings.ollama_embedding_model,
            temperature=settings.chat_temperature,
            timeout_seconds=settings.completion_timeout_seconds,
        )
        client.ping()
        return client

    if settings.llm_provider != "openai":
        raise ValueError(f"Unknown LLM_PROVIDER '{settings.llm_provider}' (expected 'openai' or 'ollama')")

    if not settings.openai_api_key:
        logger.error("OpenAI API key is missing!")
        raise ValueError("OPENAI_API_KEY is required when LLM_PROVIDER=openai")

    return OpenAICompletionClient(
        api_key=settings.openai_api_key,
        model=settings.openai_chat_model,
        embedding_model=settings.openai_embedding_model,
        embedding_dimensions=settings.embedding_dimensions,
        temperature=settings.chat_temperature,
        timeout_seconds=settings.completion_timeout_seconds,
    )
