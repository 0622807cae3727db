"""Exception hierarchy for CalmFeed."""


class CalmFeedError(Exception):
    """Base class for all CalmFeed errors."""


class AdapterError(CalmFeedError):
    """An adapter could not complete a call to its external source."""

    def __init__(self, message: str, source_id: str | None = None):
        super().__init__(message)
        self.source_id = source_id


class AdapterTransportError(AdapterError):
    """Network or API failure. Retry on a later run, not immediately."""


class AdapterNotFoundError(AdapterError):
    """The source no longer exists upstream. Not retryable."""


class ValidationError(CalmFeedError):
    """Malformed or duplicate input, e.g. adding a source twice."""


class NotFoundError(CalmFeedError):
    """A requested record does not exist (or belongs to someone else)."""

    def __init__(self, resource: str, identifier: str | None = None):
        message = f"{resource} not found"
        if identifier:
            message = f"{message}: {identifier}"
        super().__init__(message)
        self.resource = resource
        self.identifier = identifier


class SourceNotFoundError(NotFoundError):
    def __init__(self, identifier: str | None = None):
        super().__init__("Content source", identifier)


class ContentNotFoundError(NotFoundError):
    def __init__(self, identifier: str | None = None):
        super().__init__("Content item", identifier)


class PersistenceError(CalmFeedError):
    """The store failed while deduplicating or writing."""
