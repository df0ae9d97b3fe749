"""
Vector Generator adapters.

Contract shared by every provider (what the Vectorizer relies on):
- `await embed(texts)` returns exactly one vector per input, same order
- an empty list marks a failure for that one input
- provider/transport failures never raise: they log and degrade to an
  all-empty result, so per-record retry accounting stays uniform

Providers:
1. OpenAICompatibleEmbeddings: LM Studio (local, no auth) or OpenRouter
   (Bearer key) via POST {base_url}/embeddings
2. GeminiOptimizedEmbeddings: google-genai, RETRIEVAL_DOCUMENT task type,
   MRL output dimensionality with manual L2 normalization
"""

import asyncio
import logging
from typing import Dict, List, Optional, Protocol, Sequence

import httpx
import numpy as np

from app.core.config import settings

logger = logging.getLogger(__name__)


class VectorGenerator(Protocol):
    """Batch embedding function: text[] -> vector[]."""

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        ...


def _empty_result(count: int) -> List[List[float]]:
    return [[] for _ in range(count)]


def l2_normalize(vector: Sequence[float]) -> List[float]:
    """
    Apply L2 normalization to vector.

    Required for Gemini MRL dimensions other than 3072.
    Zero vectors are returned unchanged.
    """
    arr = np.array(vector, dtype=np.float32)
    norm = np.linalg.norm(arr)
    if norm > 0:
        return (arr / norm).tolist()
    logger.warning("Zero vector encountered during normalization")
    return list(vector)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 if either has zero magnitude."""
    va = np.array(a, dtype=np.float64)
    vb = np.array(b, dtype=np.float64)
    if va.size == 0 or va.shape != vb.shape:
        return 0.0
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 0.0
    return float(np.dot(va, vb) / denom)


# =============================================================================
# OPENAI-COMPATIBLE (LM Studio / OpenRouter)
# =============================================================================

class OpenAICompatibleEmbeddings:
    """
    Embeddings over an OpenAI-compatible `/embeddings` endpoint.

    Usage:
        generator = OpenAICompatibleEmbeddings.for_lmstudio()
        vectors = await generator.embed(["text1", "text2"])
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        api_key: Optional[str] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._extra_headers = dict(extra_headers or {})
        self._timeout = timeout or settings.embedding_timeout_seconds
        self._client = client

    @classmethod
    def for_lmstudio(cls, client: Optional[httpx.AsyncClient] = None) -> "OpenAICompatibleEmbeddings":
        return cls(base_url=settings.ai_host, model=settings.embedding_model, client=client)

    @classmethod
    def for_openrouter(cls, client: Optional[httpx.AsyncClient] = None) -> "OpenAICompatibleEmbeddings":
        if not settings.openrouter_api_key:
            logger.warning("OpenRouter API key not configured. Embeddings will fail.")
        return cls(
            base_url=settings.openrouter_base_url,
            model=settings.openrouter_embedding_model,
            api_key=settings.openrouter_api_key,
            extra_headers={
                "HTTP-Referer": settings.openrouter_referer,
                "X-Title": settings.openrouter_title,
            },
            client=client,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self):
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", **self._extra_headers}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed a batch of texts.

        Empty inputs are not sent; their slot stays empty. Response items are
        placed by their `index` when present, else by position.
        """
        results = _empty_result(len(texts))
        cleaned = [(i, t.strip()) for i, t in enumerate(texts) if t and t.strip()]
        if not cleaned:
            return results

        try:
            client = await self._get_client()
            response = await client.post(
                f"{self._base_url}/embeddings",
                json={"model": self._model, "input": [text for _, text in cleaned]},
                headers=self._headers(),
            )
        except httpx.TimeoutException:
            logger.warning(f"Embedding request timed out for {len(cleaned)} inputs")
            return results
        except httpx.HTTPError as e:
            logger.error(f"Embedding request failed: {e}")
            return results

        if response.status_code != 200:
            logger.warning(
                f"Embedding provider returned {response.status_code}: {response.text[:200]}"
            )
            return results

        try:
            data = response.json().get("data")
        except (ValueError, AttributeError):
            data = None
        if not isinstance(data, list):
            logger.error("Embedding response missing 'data' list")
            return results

        placed = 0
        for position, item in enumerate(data):
            if not isinstance(item, dict):
                continue
            index = item.get("index", position)
            vector = item.get("embedding")
            if not isinstance(index, int) or not 0 <= index < len(cleaned):
                continue
            if isinstance(vector, list) and vector:
                results[cleaned[index][0]] = [float(v) for v in vector]
                placed += 1

        if placed == 0:
            logger.error("Embedding response contained no valid vectors")
        else:
            logger.debug(f"Embedded {placed}/{len(texts)} texts with {self._model}")
        return results


# =============================================================================
# GEMINI
# =============================================================================

class GeminiOptimizedEmbeddings:
    """
    Gemini embedding-001 with MRL (Matryoshka Representation Learning).

    Implements:
    - Configurable output dimensions (768 default) for storage/perf balance
    - Manual L2 Normalization (required for non-3072 dimensions)
    - RETRIEVAL_DOCUMENT task type for stored records
    """

    MODEL_NAME = "models/gemini-embedding-001"
    OUTPUT_DIMENSIONS = 768
    TASK_TYPE_DOCUMENT = "RETRIEVAL_DOCUMENT"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: Optional[str] = None,
        dimensions: Optional[int] = None,
    ):
        self._api_key = api_key or settings.google_api_key
        self._model_name = model_name or settings.google_embedding_model or self.MODEL_NAME
        self._dimensions = dimensions or settings.embedding_dimensions or self.OUTPUT_DIMENSIONS
        self._client = None

        if not self._api_key:
            logger.warning("Google API key not configured. Embeddings will fail.")

    @property
    def client(self):
        """Lazy initialization of Google GenAI client."""
        if self._client is None:
            from google import genai
            self._client = genai.Client(api_key=self._api_key)
            logger.info(f"Initialized Gemini client with model: {self._model_name}")
        return self._client

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _embed_one(self, text: str) -> List[float]:
        from google.genai import types

        response = self.client.models.embed_content(
            model=self._model_name,
            contents=text,
            config=types.EmbedContentConfig(
                task_type=self.TASK_TYPE_DOCUMENT,
                output_dimensionality=self._dimensions,
            ),
        )
        return l2_normalize(response.embeddings[0].values)

    def embed_documents(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed documents synchronously.

        A failed item yields [] rather than a zero vector so the caller can
        tell failure from a real embedding.
        """
        results: List[List[float]] = []
        for i, text in enumerate(texts):
            if not text or not text.strip():
                results.append([])
                continue
            try:
                results.append(self._embed_one(text))
            except Exception as e:
                logger.error(f"Failed to embed document {i}: {e}")
                results.append([])

            if (i + 1) % 10 == 0:
                logger.debug(f"Embedded {i + 1}/{len(texts)} documents")
        return results

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        if not texts:
            return []
        try:
            return await asyncio.to_thread(self.embed_documents, list(texts))
        except Exception as e:
            # client construction failure (missing key, bad config)
            logger.error(f"Gemini embedding batch failed: {e}")
            return _empty_result(len(texts))


# =============================================================================
# FACTORY
# =============================================================================

def get_vector_generator(provider: Optional[str] = None) -> VectorGenerator:
    """
    Get a configured Vector Generator for the selected provider.

    Args:
        provider: lmstudio, openrouter or google (defaults to settings)
    """
    provider = (provider or settings.embedding_provider).lower()
    if provider == "openrouter":
        return OpenAICompatibleEmbeddings.for_openrouter()
    if provider == "google":
        return GeminiOptimizedEmbeddings()
    return OpenAICompatibleEmbeddings.for_lmstudio()
