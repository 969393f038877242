"""
Error taxonomy shared by the gateway, query layer, and attachment handling.

Everything a user can see derives from CRMError and carries a ``kind`` so the
query layer can turn it into a structured ErrorInfo without isinstance chains.
"""
from typing import Dict, Optional


class CRMError(Exception):
    """Base class for user-visible CRM failures."""
    kind = "CRMError"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(CRMError):
    """Raised locally when form fields fail validation. Never reaches the store."""
    kind = "ValidationFailed"

    def __init__(self, field_errors: Dict[str, str]):
        self.field_errors = dict(field_errors)
        summary = "; ".join(f"{k}: {v}" for k, v in sorted(self.field_errors.items()))
        super().__init__(summary or "Validation failed")


class NotFound(CRMError):
    """Raised when a single entity does not exist."""
    kind = "NotFound"


class RemoteOperationFailed(CRMError):
    """Raised when the store reports an error for a read or write."""
    kind = "RemoteOperationFailed"


class UploadFailed(CRMError):
    """Raised when a single file could not be stored."""
    kind = "UploadFailed"

    def __init__(self, message: str, file_name: Optional[str] = None):
        super().__init__(message)
        self.file_name = file_name


class DeleteAttachmentFailed(CRMError):
    """Raised when a stored attachment could not be removed."""
    kind = "DeleteAttachmentFailed"


class StoreError(Exception):
    """Raised by table and storage backends; carries the store's own message."""
    pass


class ConfigError(Exception):
    """Raised when configuration is invalid or incomplete."""
    pass
