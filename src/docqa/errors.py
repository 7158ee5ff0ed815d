from __future__ import annotations


class RagError(RuntimeError):
    kind = "RagError"


class InvalidConfigError(RagError):
    kind = "InvalidConfig"


class ProviderResponseError(RagError):
    """A provider answered, but not with something usable."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        diagnostic: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.diagnostic = diagnostic

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class EmbeddingError(ProviderResponseError):
    kind = "EmbeddingError"


class GenerationError(ProviderResponseError):
    kind = "GenerationError"


class ShapeMismatchError(RagError):
    kind = "ShapeMismatch"


class DimensionMismatchError(RagError):
    kind = "DimensionMismatch"


class CollectionNotFoundError(RagError):
    kind = "CollectionNotFound"


class RequestTimeoutError(RagError):
    kind = "Timeout"


class ProviderUnavailableError(RagError):
    kind = "ProviderUnavailable"


class DocumentLoadError(RagError):
    kind = "DocumentLoad"
