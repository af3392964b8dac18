"""Exception hierarchy for DocGraph pipelines."""

from typing import Optional


class DocGraphError(Exception):
    """Base class for all DocGraph errors."""
    pass


class IngestionError(DocGraphError):
    """Raised when a single source cannot be turned into a document."""

    def __init__(self, message: str, source: str, format: Optional[str] = None):
        super().__init__(message)
        self.source = source
        self.format = format

    def __str__(self) -> str:
        base = super().__str__()
        if self.format:
            return f"{base} (source={self.source}, format={self.format})"
        return f"{base} (source={self.source})"


class UnsupportedFormatError(IngestionError):
    """Raised when a source's extension maps to no known format."""
    pass


class FetchError(IngestionError):
    """Raised when a remote source could not be downloaded."""

    def __init__(self, message: str, source: str, status_code: int = 0):
        super().__init__(message, source)
        self.status_code = status_code


class DuplicateDocumentError(IngestionError):
    """Raised when a source was already imported and duplicates are not allowed.

    Callers can retry with ``reimport=True``.
    """

    def __init__(self, source: str, existing_id: str, format: Optional[str] = None):
        super().__init__(f"Document already imported as {existing_id}", source, format)
        self.existing_id = existing_id


class GraphStoreError(DocGraphError):
    """Raised when the graph store rejects a statement or cannot be reached."""

    def __init__(self, message: str, code: Optional[str] = None, transient: bool = False):
        super().__init__(message)
        self.message = message
        self.code = code
        self.transient = transient


class PersistenceError(DocGraphError):
    """Raised when a document node could not be created."""

    def __init__(self, message: str, document_id: str):
        super().__init__(message)
        self.document_id = document_id
