class ExtractionError(Exception):
    """Base class for failures raised by the extraction pipeline."""


class NoMessagesError(ExtractionError):
    """The conversation has no messages to analyze. Never retried."""

    def __init__(self, conversation_id: str):
        super().__init__(f"No messages found for conversation {conversation_id}")
        self.conversation_id = conversation_id


class EndpointError(ExtractionError):
    """The remote text-generation endpoint failed or was unreachable."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(EndpointError):
    """The endpoint answered, but not with a usable JSON object."""


class StorageError(ExtractionError):
    """Persisting extraction results failed."""
