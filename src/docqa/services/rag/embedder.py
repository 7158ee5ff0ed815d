from __future__ import annotations

import hashlib

import numpy as np


def _hash_vector(text: str, dimensions: int) -> np.ndarray:
    # blake2b blocks keyed by a counter, read as signed bytes.
    payload = text.encode("utf-8")
    blocks = bytearray()
    counter = 0
    while len(blocks) < dimensions:
        blocks += hashlib.blake2b(payload, digest_size=64, salt=counter.to_bytes(16, "big")).digest()
        counter += 1

    vector = np.frombuffer(bytes(blocks[:dimensions]), dtype=np.int8).astype(np.float64) + 0.5
    return vector / np.linalg.norm(vector)


class HashingEmbeddingClient:
    """Offline embedder: identical text maps to the identical unit vector.

    Carries no semantics beyond exact-text equality; meant for local runs
    without provider credentials.
    """

    def __init__(self, *, dimensions: int) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be > 0")
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def embed_texts(
        self, texts: list[str], *, timeout: float | None = None
    ) -> list[list[float]]:
        return [_hash_vector(text, self._dimensions).tolist() for text in texts]
