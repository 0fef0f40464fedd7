class MiniLightRAGError(Exception):
    """Base class for every error raised by mini-lightrag."""


class InputError(MiniLightRAGError, ValueError):
    """Malformed caller input (bad path, empty query, wrong vector shape). Not retryable."""


class BackendUnavailable(MiniLightRAGError):
    """The embedding backend is not ready or failed. Callers may retry with backoff."""


class StoreError(MiniLightRAGError):
    """The vector store cannot be opened or queried. Fatal to the running operation."""


class IndexingInProgressError(MiniLightRAGError):
    """An indexing run was requested while another one is still running."""
