# src/embedding/embedder.py
from openai import OpenAI, OpenAIError
from typing import Any, List, Optional
from src.config.settings import Settings
from src.models.errors import EmbeddingError
import logging

logger = logging.getLogger(__name__)


def _is_vector(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and len(value) > 0 and all(
        isinstance(x, (int, float)) and not isinstance(x, bool) for x in value
    )


def extract_vector(response: Any) -> Optional[List[float]]:
    """
    Normalize an embeddings response to a single vector.

    Accepts an SDK response with ``.data`` items carrying ``.embedding``, a
    batch-of-one list of vectors, or a single flat vector.
    """
    data = getattr(response, "data", response)
    if not isinstance(data, (list, tuple)) or not data:
        return None

    first = data[0]
    embedding = getattr(first, "embedding", None)
    if embedding is not None:
        first = embedding
    elif isinstance(first, dict) and "embedding" in first:
        first = first["embedding"]

    if _is_vector(first):
        return [float(x) for x in first]
    if _is_vector(data):
        return [float(x) for x in data]
    return None


class Embedder:
    """OpenAI embedding client."""

    def __init__(self, config: Settings):
        self.config = config
        self.client = OpenAI(api_key=config.openai_api_key, max_retries=0) if config.openai_api_key else None
        self.model = config.openai_embedding_model

    @property
    def is_available(self) -> bool:
        return self.client is not None

    def embed_single(self, text: str) -> List[float]:
        """
        Generate embedding for a single text.

        Args:
            text: Text string to embed

        Returns:
            Embedding vector

        Raises:
            EmbeddingError: If the capability is not configured or returns no usable vector
        """
        if self.client is None:
            raise EmbeddingError("Missing capability: embeddings")

        try:
            response = self.client.embeddings.create(
                model=self.model,
                input=[text]
            )
        except OpenAIError as e:
            raise EmbeddingError(f"Embedding request failed: {e}") from e

        vector = extract_vector(response)
        if vector is None:
            raise EmbeddingError("Embedding unavailable")
        return vector
