"""
Error taxonomy for the ingestion pipeline and the persistence adapter.

Per-item errors (MissingIdentity, UnmatchedStatus) are contained to the item
that raised them. MalformedPayload never leaves the normalizer.
PersistenceOperationFailure is mapped to a 500 at the route boundary.
"""


class IngestionError(Exception):
    """Base class for webhook ingestion errors."""
    pass


class MalformedPayload(IngestionError):
    """Envelope does not match the entry -> changes -> value shape."""
    pass


class MissingIdentity(IngestionError):
    """A message, status or contact event lacks its correlation id."""
    pass


class UnmatchedStatus(IngestionError):
    """A status event references no stored message."""
    pass


class PersistenceUnavailable(IngestionError):
    """The durable store could not be reached at startup."""
    pass


class PersistenceOperationFailure(IngestionError):
    """A single store operation failed during request handling."""
    pass
