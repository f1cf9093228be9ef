from typing import Any, List, Optional


class RegistryError(Exception):
    """Base class for schema registry failures."""


class NotFoundError(RegistryError):
    """
    Table or application unknown to the registry.
    The caller is expected to sync before trying again.
    """


class QueryValidationError(RegistryError):
    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__(f"Invalid query: {', '.join(self.errors)}")


class TransientIOError(RegistryError):
    """Store or remote call failed; safe to retry."""


class SchemaIntegrityError(RegistryError):
    """Stored schema content could not be parsed."""

    def __init__(self, table_id: str, reason: str):
        self.table_id = table_id
        super().__init__(f"Stored schema for table {table_id} is unreadable: {reason}")


class PlatformError(TransientIOError):
    """HTTP failure talking to the remote platform."""

    def __init__(self, message: str, status_code: int = 500, details: Any = None):
        self.status_code = status_code
        self.details = details
        super().__init__(message)

    def to_user_message(self) -> str:
        message = str(self)
        if self.status_code == 401:
            return "Authentication failed. Check BUDIBASE_API_KEY."
        if self.status_code == 403:
            return "Access denied. The API key may lack permissions."
        if self.status_code == 429:
            return "Rate limit exceeded. Wait before retrying."
        if self.status_code in (500, 502, 503):
            if "timed out" in message.lower():
                return "Request timed out. Check the platform status and retry."
            return "Platform server error. Service may be temporarily unavailable."
        return message
