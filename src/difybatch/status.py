from enum import Enum


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    CLOSED = "closed"
    ARCHIVED = "archived"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    PENDING = "pending"
    AGGREGATED = "aggregated"
    SENT = "sent"
    RECEIVED = "received"
    FAILED = "failed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    RETRYING = "retrying"


RETRIABLE_TASK_STATUSES = (TaskStatus.FAILED, TaskStatus.TIMEOUT)
TERMINAL_TASK_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.TIMEOUT)


class ErrorKind(str, Enum):
    """
    Closed set of failure kinds reported by retry operations.
    """

    NOT_FOUND = "not_found"
    ALREADY_RETRIED = "already_retried"
    TRANSIENT = "transient"
    FATAL = "fatal"


class ClaimOutcome(str, Enum):
    CLAIMED = "claimed"
    NOT_FOUND = "not_found"
    ALREADY_RETRIED = "already_retried"
    IN_PROGRESS = "in_progress"
