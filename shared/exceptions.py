"""Error taxonomy shared by the storage, ingestion, sync and search layers."""


class KnowledgeError(Exception):
    """Base class for every error raised by the knowledge engine."""

    pass


class TransientIOError(KnowledgeError):
    """Raised for network or database hiccups that are worth retrying later."""

    pass


class CircuitOpenError(TransientIOError):
    """Raised when the storage circuit breaker fast-fails a call."""

    pass


class UnsupportedFormatError(KnowledgeError):
    """Raised when no document loader exists for a file extension."""

    pass


class ExtractionError(KnowledgeError):
    """Raised when a document loader fails to extract text from a file."""

    pass


class ConflictError(KnowledgeError):
    """Raised when a document is created with an id that already exists."""

    pass


class ValidationError(KnowledgeError):
    """Raised for malformed input such as a bad cursor or filter."""

    pass


class PersistenceError(KnowledgeError):
    """Raised when the backend rejects an operation after retries."""

    pass


class RemoteRequestError(KnowledgeError):
    """Raised when a remote HTTP backend answers with a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
