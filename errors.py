class IronInsightError(Exception):
    """Base class for all errors raised by the data layer."""


class NotInitializedError(IronInsightError, RuntimeError):
    """Raised when the database is used before ``ensure_schema`` completed."""

    def __init__(self, message: str = "database not initialized") -> None:
        super().__init__(message)


class NotFoundError(IronInsightError, ValueError):
    """Raised when a referenced row does not exist."""


class ConstraintViolationError(IronInsightError, ValueError):
    """Raised for foreign key, uniqueness or payload validation failures."""


class MalformedMetricError(IronInsightError, ValueError):
    """Raised when a serialized metrics bag cannot be decoded."""


class MigrationError(IronInsightError, RuntimeError):
    """Raised when schema creation or a migration step fails."""

    def __init__(self, message: str, migration: str | None = None) -> None:
        super().__init__(message)
        self.migration = migration
