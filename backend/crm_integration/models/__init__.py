"""SQLAlchemy model exports."""
from .base import Base
from .contact import Contact, ContactValidationError, SyncStatus
from .task import Task, TaskState

__all__ = [
    "Base",
    "Contact",
    "ContactValidationError",
    "SyncStatus",
    "Task",
    "TaskState",
]
