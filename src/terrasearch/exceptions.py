"""Error taxonomy shared by every terrasearch component."""


class TerraSearchError(Exception):
    """Base class for all errors raised by terrasearch."""


class ValidationError(TerraSearchError, ValueError):
    """Input rejected before touching storage (identifiers, geo input, options)."""


class SchemaError(TerraSearchError):
    """Index or table creation, migration or layout failure."""


class InvalidIdentifierError(ValidationError, SchemaError):
    """A table or index name failed the identifier grammar check."""


class StorageError(TerraSearchError):
    """Query or mutation failure against the backing SQLite engine."""


class IndexNotFoundError(StorageError):
    """The named index has no document table."""

    def __init__(self, name: str):
        super().__init__(f"index not found: {name}")
        self.index_name = name


class IndexingError(TerraSearchError):
    """Document processing failure inside the indexer."""

    def __init__(self, message: str, *, document_id: str | None = None):
        super().__init__(message)
        self.document_id = document_id


class CacheError(TerraSearchError):
    """Query cache persistence failure. Never escapes the cache boundary."""
