"""Tests for the embedding providers."""

from __future__ import annotations

import json
import sys
import threading
import types
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import pytest
from google.genai import errors as genai_errors

import history_search.embeddings as embeddings_module
from history_search.embeddings import (
    CUSTOM_FALLBACK_ENDPOINT,
    CustomEmbeddingProvider,
    GeminiEmbeddingProvider,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
    VoyageEmbeddingProvider,
    create_embedding_provider,
    normalize_endpoint,
)
from history_search.errors import ConfigError, ProviderError
from history_search.index_config import IndexConfig


# ---------------------------------------------------------------------------
# Mock helpers
# ---------------------------------------------------------------------------


def _openai_body(vectors: list[list[float]], *, reverse: bool = False) -> dict[str, Any]:
    data = [
        {"object": "embedding", "index": index, "embedding": vector}
        for index, vector in enumerate(vectors)
    ]
    if reverse:
        data.reverse()
    return {"object": "list", "data": data, "model": "m"}


class _Recorder:
    """MockTransport handler that records requests and answers from a callback."""

    def __init__(self, respond: Callable[[httpx.Request, dict[str, Any]], httpx.Response]):
        self.requests: list[httpx.Request] = []
        self.payloads: list[dict[str, Any]] = []
        self._respond = respond

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.requests.append(request)
        self.payloads.append(payload)
        return self._respond(request, payload)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


def _echo_vectors(dim: int) -> Callable[[httpx.Request, dict[str, Any]], httpx.Response]:
    def respond(request: httpx.Request, payload: dict[str, Any]) -> httpx.Response:
        vectors = [[float(len(text))] * dim for text in payload["input"]]
        return httpx.Response(200, json=_openai_body(vectors))

    return respond


@dataclass
class _FakeEmbedding:
    values: list[float]


@dataclass
class _FakeEmbedResult:
    embeddings: list[_FakeEmbedding]


class _FakeModels:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls: list[dict[str, Any]] = []
        self.error = error

    def embed_content(self, *, model: str, contents: list[str], config: dict) -> _FakeEmbedResult:
        self.calls.append({"model": model, "contents": contents, "config": config})
        if self.error is not None:
            raise self.error
        dim = config["output_dimensionality"]
        return _FakeEmbedResult(
            embeddings=[_FakeEmbedding(values=[float(i)] * dim) for i in range(len(contents))]
        )


class _FakeGenAIClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.models = _FakeModels(error)


class _FakeTextModel:
    def __init__(self, dim: int) -> None:
        self.dim = dim
        self.seen: list[list[str]] = []

    def embed(self, texts: list[str]):
        self.seen.append(list(texts))
        for text in texts:
            yield [float(len(text))] * self.dim


# ---------------------------------------------------------------------------
# OpenAI-style HTTP providers
# ---------------------------------------------------------------------------


def test_openai_sends_dimensions_for_text_embedding_3() -> None:
    recorder = _Recorder(_echo_vectors(4))
    provider = OpenAIEmbeddingProvider(api_key="sk-test", dim=4, client=recorder.client())

    vectors = provider.embed_batch(["hello", "hi"])

    assert vectors == [[5.0] * 4, [2.0] * 4]
    assert recorder.payloads[0] == {
        "model": "text-embedding-3-small",
        "input": ["hello", "hi"],
        "dimensions": 4,
    }
    assert recorder.requests[0].headers["Authorization"] == "Bearer sk-test"
    assert str(recorder.requests[0].url) == "https://api.openai.com/v1/embeddings"


def test_openai_omits_dimensions_for_older_models() -> None:
    recorder = _Recorder(_echo_vectors(3))
    provider = OpenAIEmbeddingProvider(
        api_key="sk-test",
        model="text-embedding-ada-002",
        dim=3,
        client=recorder.client(),
    )

    provider.embed("hello")

    assert "dimensions" not in recorder.payloads[0]


def test_results_are_reordered_by_index() -> None:
    def respond(request: httpx.Request, payload: dict[str, Any]) -> httpx.Response:
        vectors = [[float(i)] * 2 for i in range(len(payload["input"]))]
        return httpx.Response(200, json=_openai_body(vectors, reverse=True))

    provider = OpenAIEmbeddingProvider(
        api_key="k", dim=2, client=_Recorder(respond).client()
    )

    assert provider.embed_batch(["a", "b", "c"]) == [[0.0, 0.0], [1.0, 1.0], [2.0, 2.0]]


def test_batches_are_split_and_kept_in_order() -> None:
    recorder = _Recorder(_echo_vectors(2))
    provider = OpenAIEmbeddingProvider(
        api_key="k", dim=2, batch_size=2, client=recorder.client()
    )

    vectors = provider.embed_batch(["a", "bb", "ccc", "dddd", "eeeee"])

    assert [len(payload["input"]) for payload in recorder.payloads] == [2, 2, 1]
    assert [vector[0] for vector in vectors] == [1.0, 2.0, 3.0, 4.0, 5.0]


def test_failed_sub_batch_fails_the_whole_call() -> None:
    def respond(request: httpx.Request, payload: dict[str, Any]) -> httpx.Response:
        if payload["input"] == ["c"]:
            return httpx.Response(503, text="overloaded")
        return _echo_vectors(2)(request, payload)

    provider = OpenAIEmbeddingProvider(
        api_key="k", dim=2, batch_size=2, client=_Recorder(respond).client()
    )

    with pytest.raises(ProviderError) as exc_info:
        provider.embed_batch(["a", "b", "c"])

    assert exc_info.value.kind == "unavailable"
    assert exc_info.value.status_code == 503


@pytest.mark.parametrize(
    ("status", "kind"),
    [(401, "auth"), (403, "auth"), (429, "rate_limit"), (500, "unavailable"), (404, "network")],
)
def test_http_status_maps_to_error_kind(status: int, kind: str) -> None:
    recorder = _Recorder(lambda request, payload: httpx.Response(status, text="nope"))
    provider = OpenAIEmbeddingProvider(api_key="k", dim=2, client=recorder.client())

    with pytest.raises(ProviderError) as exc_info:
        provider.embed("x")

    assert exc_info.value.kind == kind


def test_wrong_vector_length_is_dimension_mismatch() -> None:
    provider = OpenAIEmbeddingProvider(
        api_key="k", dim=4, client=_Recorder(_echo_vectors(3)).client()
    )

    with pytest.raises(ProviderError) as exc_info:
        provider.embed("x")

    assert exc_info.value.kind == "dimension_mismatch"


def test_missing_vectors_are_malformed() -> None:
    def respond(request: httpx.Request, payload: dict[str, Any]) -> httpx.Response:
        return httpx.Response(200, json=_openai_body([[1.0, 1.0]]))

    provider = OpenAIEmbeddingProvider(api_key="k", dim=2, client=_Recorder(respond).client())

    with pytest.raises(ProviderError) as exc_info:
        provider.embed_batch(["a", "b"])

    assert exc_info.value.kind == "malformed_response"


def test_unparseable_body_is_malformed() -> None:
    recorder = _Recorder(lambda request, payload: httpx.Response(200, text="<html>"))
    provider = OpenAIEmbeddingProvider(api_key="k", dim=2, client=recorder.client())

    with pytest.raises(ProviderError) as exc_info:
        provider.embed("x")

    assert exc_info.value.kind == "malformed_response"


def test_transport_errors_are_wrapped() -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    def stall(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("read timed out", request=request)

    refused = OpenAIEmbeddingProvider(
        api_key="k", dim=2, client=httpx.Client(transport=httpx.MockTransport(refuse))
    )
    stalled = OpenAIEmbeddingProvider(
        api_key="k", dim=2, client=httpx.Client(transport=httpx.MockTransport(stall))
    )

    with pytest.raises(ProviderError) as refused_info:
        refused.embed("x")
    with pytest.raises(ProviderError) as stalled_info:
        stalled.embed("x")

    assert refused_info.value.kind == "network"
    assert stalled_info.value.kind == "timeout"


def test_voyage_payload_uses_output_dimension() -> None:
    recorder = _Recorder(_echo_vectors(4))
    provider = VoyageEmbeddingProvider(api_key="pa-test", dim=4, client=recorder.client())

    provider.embed("hello")

    assert recorder.payloads[0]["output_dimension"] == 4
    assert "dimensions" not in recorder.payloads[0]
    assert str(recorder.requests[0].url) == "https://api.voyageai.com/v1/embeddings"
    assert provider.identity == "voyage:voyage-3-lite:4"


def test_custom_endpoint_is_normalized_and_key_is_optional() -> None:
    recorder = _Recorder(_echo_vectors(2))
    provider = CustomEmbeddingProvider(
        endpoint="http://embed.local:9000/v1/", dim=2, client=recorder.client()
    )

    provider.embed("hello")

    assert str(recorder.requests[0].url) == "http://embed.local:9000/v1/embeddings"
    assert "Authorization" not in recorder.requests[0].headers
    assert provider.identity.startswith("custom:http://embed.local:9000/v1/embeddings:")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, CUSTOM_FALLBACK_ENDPOINT),
        ("  ", CUSTOM_FALLBACK_ENDPOINT),
        ("http://host:1234", "http://host:1234/embeddings"),
        ("http://host:1234/v1/", "http://host:1234/v1/embeddings"),
        ("http://host/v1/embeddings", "http://host/v1/embeddings"),
    ],
)
def test_normalize_endpoint(raw: str | None, expected: str) -> None:
    assert normalize_endpoint(raw) == expected


# ---------------------------------------------------------------------------
# Gemini and local providers
# ---------------------------------------------------------------------------


def test_gemini_task_types_for_documents_and_queries() -> None:
    client = _FakeGenAIClient()
    provider = GeminiEmbeddingProvider(dim=4, client=client)

    documents = provider.embed_batch(["a", "b"])
    query = provider.embed_query("q")

    assert len(documents) == 2 and len(query) == 4
    assert client.models.calls[0]["config"]["task_type"] == "RETRIEVAL_DOCUMENT"
    assert client.models.calls[1]["config"]["task_type"] == "RETRIEVAL_QUERY"
    assert client.models.calls[0]["config"]["output_dimensionality"] == 4


def test_gemini_api_errors_become_provider_errors() -> None:
    error = genai_errors.ClientError(
        429,
        {"error": {"code": 429, "message": "quota exceeded", "status": "RESOURCE_EXHAUSTED"}},
    )
    provider = GeminiEmbeddingProvider(dim=4, client=_FakeGenAIClient(error))

    with pytest.raises(ProviderError) as exc_info:
        provider.embed("x")

    assert exc_info.value.kind == "rate_limit"
    assert exc_info.value.status_code == 429


@pytest.mark.parametrize(
    ("error", "kind"),
    [
        (httpx.ConnectError("connection refused"), "network"),
        (httpx.ReadTimeout("read timed out"), "timeout"),
    ],
)
def test_gemini_transport_errors_become_provider_errors(error: Exception, kind: str) -> None:
    provider = GeminiEmbeddingProvider(dim=4, client=_FakeGenAIClient(error))

    with pytest.raises(ProviderError) as exc_info:
        provider.embed_query("x")

    assert exc_info.value.kind == kind


def test_gemini_client_gets_request_timeout(monkeypatch) -> None:
    built: dict[str, Any] = {}

    def fake_client(**kwargs: Any) -> _FakeGenAIClient:
        built.update(kwargs)
        return _FakeGenAIClient()

    monkeypatch.setattr(embeddings_module, "GenAIClient", fake_client)

    create_embedding_provider(
        IndexConfig(provider_kind="gemini", api_key="g-key", dimension=4, request_timeout=2.5)
    )

    assert built["api_key"] == "g-key"
    assert built["http_options"].timeout == 2500


def test_gemini_requires_api_key(monkeypatch) -> None:
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)

    with pytest.raises(ConfigError):
        GeminiEmbeddingProvider(dim=4)


def test_local_provider_truncates_and_checks_dimension() -> None:
    model = _FakeTextModel(dim=3)
    provider = LocalEmbeddingProvider(dim=3, text_model=model, max_chars=10)

    vectors = provider.embed_batch(["short", "x" * 50])

    assert vectors == [[5.0] * 3, [10.0] * 3]
    assert model.seen == [["short", "x" * 10]]

    mismatched = LocalEmbeddingProvider(dim=4, text_model=_FakeTextModel(dim=3))
    with pytest.raises(ProviderError) as exc_info:
        mismatched.embed("hello")
    assert exc_info.value.kind == "dimension_mismatch"


def _fake_fastembed(monkeypatch, text_embedding: Callable[..., Any]) -> None:
    module = types.ModuleType("fastembed")
    module.TextEmbedding = text_embedding
    monkeypatch.setitem(sys.modules, "fastembed", module)


def test_local_model_load_failure_is_unavailable(monkeypatch) -> None:
    def broken(model_name: str) -> Any:
        raise ValueError(f"Model {model_name} is not supported in TextEmbedding.")

    _fake_fastembed(monkeypatch, broken)
    provider = LocalEmbeddingProvider(dim=3)

    with pytest.raises(ProviderError) as exc_info:
        provider.embed_query("hello")

    assert exc_info.value.kind == "unavailable"


def test_local_model_is_loaded_once_under_concurrency(monkeypatch) -> None:
    loads: list[str] = []
    lock = threading.Lock()

    def slow_load(model_name: str) -> _FakeTextModel:
        with lock:
            loads.append(model_name)
        threading.Event().wait(0.05)
        return _FakeTextModel(dim=3)

    _fake_fastembed(monkeypatch, slow_load)
    provider = LocalEmbeddingProvider(dim=3)

    threads = [threading.Thread(target=provider.embed, args=("text",)) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert loads == ["BAAI/bge-small-en-v1.5"]


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def test_factory_builds_each_variant(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    client = _Recorder(_echo_vectors(8)).client()

    openai = create_embedding_provider(
        IndexConfig(provider_kind="openai", api_key="sk", dimension=8), client=client
    )
    custom = create_embedding_provider(
        IndexConfig(provider_kind="custom", endpoint="http://localhost:7000", dimension=8),
        client=client,
    )
    local = create_embedding_provider(IndexConfig())

    assert isinstance(openai, OpenAIEmbeddingProvider)
    assert openai.identity == "openai:text-embedding-3-small:8"
    assert isinstance(custom, CustomEmbeddingProvider)
    assert custom.endpoint == "http://localhost:7000/embeddings"
    assert isinstance(local, LocalEmbeddingProvider)
    assert local.dimension == 384


def test_factory_reads_api_key_from_environment(monkeypatch) -> None:
    monkeypatch.setenv("VOYAGE_API_KEY", "pa-env")

    provider = create_embedding_provider(IndexConfig(provider_kind="voyage", dimension=8))

    assert isinstance(provider, VoyageEmbeddingProvider)


def test_factory_rejects_missing_remote_key(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)

    with pytest.raises(ConfigError):
        create_embedding_provider(IndexConfig(provider_kind="openai", dimension=8))
