"""Custom exceptions for the maktaba pipeline."""


class MaktabaError(Exception):
    """Base exception for all maktaba errors."""
    pass


class ModelInvocationError(MaktabaError):
    """Every model in a cascade failed for a task with no safe fallback."""

    def __init__(self, task: str, attempts: int, last_error: str | None):
        self.task = task
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"All {attempts} model(s) failed for task '{task}': {last_error}"
        )


class ExtractionError(MaktabaError):
    """A PDF could not be opened or produced no usable page."""
    pass


class StorageError(MaktabaError):
    """Error in vector store or document registry operations."""
    pass
