# DocGraph Embeddings Module
# Computes chunk embeddings with sentence transformers

import asyncio
import logging
from typing import List, Optional, Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "all-MiniLM-L6-v2"


def serialize_embedding(embedding: Sequence[float]) -> str:
    """Serialize an embedding as comma-joined floats for a string metadata field."""
    values = np.asarray(embedding, dtype=np.float32)
    return ",".join(f"{value:.6g}" for value in values.tolist())


def deserialize_embedding(data: str) -> np.ndarray:
    if not data:
        return np.zeros(0, dtype=np.float32)
    return np.array([float(value) for value in data.split(",")], dtype=np.float32)


class EmbeddingManager:
    """Generates chunk embeddings.

    The model is loaded on first use so that importing the module, or running
    without enrichment, never pays the model load cost.
    """

    def __init__(self, model_name: str = DEFAULT_MODEL):
        self.model_name = model_name
        self.model: Optional[SentenceTransformer] = None

    def _load_model(self) -> SentenceTransformer:
        if self.model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self.model = SentenceTransformer(self.model_name)
            logger.info(f"Model loaded. Embedding dimension: {self.model.get_sentence_embedding_dimension()}")
        return self.model

    def generate_embedding(self, text: str) -> np.ndarray:
        model = self._load_model()
        text = (text or "").strip()
        if not text:
            return np.zeros(model.get_sentence_embedding_dimension(), dtype=np.float32)
        return model.encode(text, convert_to_numpy=True)

    def generate_embeddings_batch(self, texts: List[str]) -> List[np.ndarray]:
        model = self._load_model()
        cleaned_texts = [text.strip() if text else "" for text in texts]
        embeddings = model.encode(cleaned_texts, convert_to_numpy=True, show_progress_bar=False)
        return [emb for emb in embeddings]

    async def embed(self, text: str) -> np.ndarray:
        """Encode off the event loop."""
        return await asyncio.to_thread(self.generate_embedding, text)
