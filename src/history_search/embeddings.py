"""
Embedding providers for vector-based semantic search.

Every backend satisfies the ``EmbeddingProvider`` protocol: fixed-dimension
float vectors for text, a stable ``identity`` string, and batched embedding
that fails atomically. Provider-specific endpoints, auth and payload shapes
stay inside the variant classes; callers only see ``ProviderError``.
"""

from __future__ import annotations

import os
import threading
from typing import Any, Protocol, Sequence

import httpx
import structlog
from google.genai import Client as GenAIClient
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from .errors import ConfigError, ProviderError, ProviderErrorKind
from .index_config import IndexConfig, ProviderKind

logger = structlog.get_logger(__name__)

OPENAI_ENDPOINT = "https://api.openai.com/v1/embeddings"
VOYAGE_ENDPOINT = "https://api.voyageai.com/v1/embeddings"
CUSTOM_FALLBACK_ENDPOINT = "http://localhost:8080/embeddings"

_DEFAULT_MODELS: dict[str, str] = {
    "openai": "text-embedding-3-small",
    "voyage": "voyage-3-lite",
    "gemini": "gemini-embedding-001",
    "local": "BAAI/bge-small-en-v1.5",
    "custom": "text-embedding-3-small",
}
_DEFAULT_BATCH_SIZE = 32
_DEFAULT_TIMEOUT = 30.0


class EmbeddingProvider(Protocol):
    """Protocol shared by all embedding backends."""

    @property
    def dimension(self) -> int:
        """Length of every vector this provider returns."""

    @property
    def identity(self) -> str:
        """Stable identifier of backend, model and dimension."""

    def embed(self, text: str) -> list[float]:
        """Embed a single document text."""

    def embed_query(self, text: str) -> list[float]:
        """Embed a search query."""

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed texts, returning vectors in input order or failing as a whole."""


class BaseEmbeddingProvider:
    """Batching, ordering and dimension checks shared by the variants."""

    kind: str = "base"

    def __init__(self, *, model: str, dim: int, batch_size: int = _DEFAULT_BATCH_SIZE) -> None:
        if dim <= 0:
            raise ConfigError("embedding dimension must be > 0")
        if batch_size <= 0:
            raise ConfigError("batch_size must be > 0")
        self.model = model
        self.dim = dim
        self.batch_size = batch_size

    @property
    def dimension(self) -> int:
        return self.dim

    @property
    def identity(self) -> str:
        return f"{self.kind}:{self.model}:{self.dim}"

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_query(self, text: str) -> list[float]:
        return self.embed(text)

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        all_embeddings: list[list[float]] = []
        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start : start + self.batch_size])
            vectors = self._embed_batch(batch)
            if len(vectors) != len(batch):
                raise ProviderError(
                    "malformed_response",
                    f"expected {len(batch)} embeddings, got {len(vectors)}",
                )
            all_embeddings.extend(self._checked(vector) for vector in vectors)
        return all_embeddings

    def close(self) -> None:
        """Release any network resources held by the provider."""

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    def _checked(self, vector: Sequence[Any]) -> list[float]:
        if len(vector) != self.dim:
            raise ProviderError(
                "dimension_mismatch",
                f"{self.identity} returned a vector of length {len(vector)}",
            )
        try:
            return [float(value) for value in vector]
        except (TypeError, ValueError) as exc:
            raise ProviderError("malformed_response", f"non-numeric embedding: {exc}") from exc


class OpenAIEmbeddingProvider(BaseEmbeddingProvider):
    """OpenAI-style ``/v1/embeddings`` endpoint over HTTP."""

    kind = "openai"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        dim: int = 1536,
        endpoint: str = OPENAI_ENDPOINT,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        timeout: float = _DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(model=model or _DEFAULT_MODELS[self.kind], dim=dim, batch_size=batch_size)
        self.endpoint = endpoint
        self._api_key = api_key
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout))

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def _payload(self, texts: list[str]) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": self.model, "input": texts}
        # Only the text-embedding-3 family accepts a dimensions override.
        if "text-embedding-3" in self.model:
            payload["dimensions"] = self.dim
        return payload

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        try:
            response = self._client.post(
                self.endpoint,
                json=self._payload(texts),
                headers=self._headers(),
            )
        except httpx.TimeoutException as exc:
            raise ProviderError("timeout", f"{self.endpoint} timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError("network", f"{self.endpoint}: {exc}") from exc

        if response.status_code != 200:
            raise _status_error(response)
        return _parse_openai_response(response)


class VoyageEmbeddingProvider(OpenAIEmbeddingProvider):
    """Voyage AI embeddings; same wire shape, different endpoint and knobs."""

    kind = "voyage"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        dim: int = 512,
        endpoint: str = VOYAGE_ENDPOINT,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        timeout: float = _DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(
            api_key=api_key,
            model=model or _DEFAULT_MODELS[self.kind],
            dim=dim,
            endpoint=endpoint,
            batch_size=batch_size,
            timeout=timeout,
            client=client,
        )

    def _payload(self, texts: list[str]) -> dict[str, Any]:
        return {"model": self.model, "input": texts, "output_dimension": self.dim}


class CustomEmbeddingProvider(OpenAIEmbeddingProvider):
    """User-supplied endpoint speaking the OpenAI embeddings protocol."""

    kind = "custom"

    def __init__(
        self,
        *,
        endpoint: str | None,
        api_key: str | None = None,
        model: str | None = None,
        dim: int = 1536,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        timeout: float = _DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        super().__init__(
            api_key=api_key or None,
            model=model,
            dim=dim,
            endpoint=normalize_endpoint(endpoint),
            batch_size=batch_size,
            timeout=timeout,
            client=client,
        )

    @property
    def identity(self) -> str:
        return f"{self.kind}:{self.endpoint}:{self.model}:{self.dim}"


class GeminiEmbeddingProvider(BaseEmbeddingProvider):
    """Generate text embeddings via Google GenAI."""

    kind = "gemini"

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str | None = None,
        dim: int = 768,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        timeout: float = _DEFAULT_TIMEOUT,
        client: Any | None = None,
    ) -> None:
        super().__init__(model=model or _DEFAULT_MODELS[self.kind], dim=dim, batch_size=batch_size)
        if client is not None:
            self._client = client
        else:
            resolved_key = api_key or os.getenv("GOOGLE_API_KEY")
            if resolved_key is None:
                raise ConfigError(
                    "GOOGLE_API_KEY not found. "
                    "Provide api_key or set the environment variable."
                )
            self._client = GenAIClient(
                api_key=resolved_key,
                # HttpOptions.timeout is in milliseconds.
                http_options=genai_types.HttpOptions(timeout=int(timeout * 1000)),
            )

    def embed_query(self, text: str) -> list[float]:
        return self._checked(self._embed_content([text], task_type="RETRIEVAL_QUERY")[0])

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        return self._embed_content(texts, task_type="RETRIEVAL_DOCUMENT")

    def _embed_content(self, texts: list[str], *, task_type: str) -> list[list[float]]:
        try:
            result = self._client.models.embed_content(
                model=self.model,
                contents=texts,
                config={
                    "task_type": task_type,
                    "output_dimensionality": self.dim,
                },
            )
        except genai_errors.APIError as exc:
            raise ProviderError(
                _kind_for_status(exc.code),
                exc.message or str(exc),
                status_code=exc.code,
            ) from exc
        except httpx.TimeoutException as exc:
            raise ProviderError("timeout", f"{self.model} request timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderError("network", f"{self.model}: {exc}") from exc
        if not result.embeddings:
            raise ProviderError("malformed_response", "response contained no embeddings")
        return [list(emb.values or []) for emb in result.embeddings]


class LocalEmbeddingProvider(BaseEmbeddingProvider):
    """On-device embeddings through a fastembed ONNX model."""

    kind = "local"

    def __init__(
        self,
        *,
        model: str | None = None,
        dim: int = 384,
        batch_size: int = _DEFAULT_BATCH_SIZE,
        text_model: Any | None = None,
        max_chars: int = 5000,
    ) -> None:
        super().__init__(model=model or _DEFAULT_MODELS[self.kind], dim=dim, batch_size=batch_size)
        self.max_chars = max_chars
        self._text_model = text_model
        self._load_lock = threading.Lock()

    def _load(self) -> Any:
        with self._load_lock:
            if self._text_model is None:
                try:
                    from fastembed import TextEmbedding
                except ImportError as exc:
                    raise ProviderError(
                        "unavailable",
                        "fastembed is not installed; install history-search[local]",
                    ) from exc
                try:
                    self._text_model = TextEmbedding(model_name=self.model)
                except (RuntimeError, ValueError, OSError) as exc:
                    raise ProviderError(
                        "unavailable", f"local model {self.model} failed to load: {exc}"
                    ) from exc
                logger.info("local embedding model loaded", model=self.model)
        return self._text_model

    def _embed_batch(self, texts: list[str]) -> list[list[float]]:
        model = self._load()
        truncated = [text[: self.max_chars] for text in texts]
        try:
            # fastembed yields numpy arrays lazily.
            return [list(vector) for vector in model.embed(truncated)]
        except (RuntimeError, ValueError, OSError) as exc:
            raise ProviderError("unavailable", f"local model failed: {exc}") from exc


def normalize_endpoint(endpoint: str | None) -> str:
    """Ensure a custom endpoint URL ends with ``/embeddings``."""
    url = (endpoint or "").strip()
    if not url:
        return CUSTOM_FALLBACK_ENDPOINT
    url = url.rstrip("/")
    if not url.endswith("/embeddings"):
        url += "/embeddings"
    return url


def create_embedding_provider(
    config: IndexConfig,
    *,
    client: httpx.Client | None = None,
) -> BaseEmbeddingProvider:
    """Build the provider variant selected by ``config.provider_kind``."""
    kind: ProviderKind = config.provider_kind
    common: dict[str, Any] = {
        "model": config.model,
        "dim": config.dimension,
        "batch_size": config.batch_size,
    }
    if kind == "openai":
        api_key = config.api_key or os.getenv("OPENAI_API_KEY")
        if not api_key:
            raise ConfigError("OpenAI embeddings require an api_key.")
        return OpenAIEmbeddingProvider(
            api_key=api_key,
            endpoint=config.endpoint or OPENAI_ENDPOINT,
            timeout=config.request_timeout,
            client=client,
            **common,
        )
    if kind == "voyage":
        api_key = config.api_key or os.getenv("VOYAGE_API_KEY")
        if not api_key:
            raise ConfigError("Voyage embeddings require an api_key.")
        return VoyageEmbeddingProvider(
            api_key=api_key,
            endpoint=config.endpoint or VOYAGE_ENDPOINT,
            timeout=config.request_timeout,
            client=client,
            **common,
        )
    if kind == "custom":
        return CustomEmbeddingProvider(
            endpoint=config.endpoint,
            api_key=config.api_key,
            timeout=config.request_timeout,
            client=client,
            **common,
        )
    if kind == "gemini":
        return GeminiEmbeddingProvider(
            api_key=config.api_key, timeout=config.request_timeout, **common
        )
    return LocalEmbeddingProvider(**common)


def _kind_for_status(status_code: int | None) -> ProviderErrorKind:
    if status_code in (401, 403):
        return "auth"
    if status_code == 429:
        return "rate_limit"
    if status_code is not None and status_code >= 500:
        return "unavailable"
    return "network"


def _status_error(response: httpx.Response) -> ProviderError:
    body = response.text[:500] if response.text else "Unknown error"
    logger.warning(
        "embedding request rejected",
        url=str(response.request.url),
        status=response.status_code,
    )
    return ProviderError(
        _kind_for_status(response.status_code),
        body,
        status_code=response.status_code,
    )


def _parse_openai_response(response: httpx.Response) -> list[list[float]]:
    try:
        body = response.json()
        data = body["data"]
        ordered = sorted(data, key=lambda item: int(item["index"]))
        return [list(item["embedding"]) for item in ordered]
    except (ValueError, KeyError, TypeError) as exc:
        raise ProviderError("malformed_response", f"unexpected response body: {exc}") from exc
