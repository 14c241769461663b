"""Exceptions raised at the recommender's public boundaries."""


class RecommenderError(Exception):
    """Base class for protocol recommender errors."""


class NotFoundError(RecommenderError, LookupError):
    """Raised when a protocol id is not present in the catalog."""

    def __init__(self, protocol_id: str):
        super().__init__(f"Unknown protocol: {protocol_id}")
        self.protocol_id = protocol_id


class SchemaVersionMismatch(RecommenderError):
    """Raised when two feature vectors were built with different schemas."""

    def __init__(self, expected: int, actual: int, detail: str = ""):
        message = f"Feature schema mismatch: expected v{expected}, got v{actual}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ValidationError(RecommenderError, ValueError):
    """Raised when input data falls outside its declared range or vocabulary."""
