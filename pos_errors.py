"""
Error types shared by the POS store, the pending queue and the sync engine.

Only ValidationError is meant to reach UI callers; remote and storage
failures are absorbed by queueing or by degrading to in-memory state.
"""
from typing import Optional


class PosError(Exception):
    """Base class for POS errors."""


class ValidationError(PosError):
    """Payload or user input is structurally invalid; never sent remotely."""


class StorageError(PosError):
    """Local durable storage could not be read or written."""


# Remote error categories (see RemoteError.category)
VALIDATION = 'validation'
CONSTRAINT = 'constraint'
SCHEMA = 'schema'
AUTH = 'auth'
OFFLINE = 'offline'
TRANSIENT = 'transient'

TERMINAL_CATEGORIES = (VALIDATION, CONSTRAINT, SCHEMA)


class RemoteError(PosError):
    def __init__(self, message: str, category: str = TRANSIENT,
                 code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.category = category
        self.code = code
        self.status = status

    @property
    def terminal(self) -> bool:
        return self.category in TERMINAL_CATEGORIES

    @property
    def auth(self) -> bool:
        return self.category == AUTH

    def __str__(self) -> str:
        parts = [self.message]
        if self.code:
            parts.append(f"code={self.code}")
        if self.status:
            parts.append(f"status={self.status}")
        return ' '.join(parts)


class NotFoundError(PosError):
    """Referenced entity does not exist in local state."""
