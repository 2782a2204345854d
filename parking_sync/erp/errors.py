from enum import Enum

class SyncErrorCode(str, Enum):
    AUTH_FAILED = "AUTH_FAILED"
    REMOTE_ERROR = "REMOTE_ERROR"
    CONFIG_INVALID = "CONFIG_INVALID"
    PRECONDITION_FAILED = "PRECONDITION_FAILED"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"

class SyncError(Exception):
    """Base class for run-aborting sync errors."""
    def __init__(self, message: str, code: SyncErrorCode = SyncErrorCode.UNKNOWN, details: dict = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}

class AuthError(SyncError):
    """Raised when the SoftOne login is rejected."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, SyncErrorCode.AUTH_FAILED, details)

class RemoteError(SyncError):
    """Raised when a SoftOne read fails (HTTP, transport or success=false)."""
    def __init__(self, message: str, transient: bool = False, details: dict = None):
        super().__init__(message, SyncErrorCode.REMOTE_ERROR, details)
        self.transient = transient

class ConfigurationError(SyncError):
    """Raised when an integration is missing required mapping fields."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, SyncErrorCode.CONFIG_INVALID, details)

class FullSyncPreconditionError(SyncError):
    """Raised when a destructive full sync cannot start safely."""
    def __init__(self, message: str, details: dict = None):
        super().__init__(message, SyncErrorCode.PRECONDITION_FAILED, details)
