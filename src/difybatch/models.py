import typing as t

from pydantic import BaseModel, ConfigDict, Field

from difybatch.status import ErrorKind


class ProcessBatch(BaseModel):
    """A closed batch handed to the dispatch queue."""

    model_config = ConfigDict(frozen=True)

    kind: t.Literal["process_batch"] = "process_batch"
    task_pk: str
    task_id: str
    content: str
    message_ids: tuple[str, ...]


class RetryFailed(BaseModel):
    """A retry request for one failure record."""

    model_config = ConfigDict(frozen=True)

    kind: t.Literal["retry_failed"] = "retry_failed"
    failed_message_id: str
    task_id: str | None = None
    context: dict[str, t.Any] = Field(default_factory=dict)
    retry_whole_batch: bool = False


WorkItem = ProcessBatch | RetryFailed


class ChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    answer: str = ""
    conversation_id: str | None = None
    message_id: str | None = None


class BatchOutcome(BaseModel):
    task_id: str
    success: bool
    reply: str | None = None
    error: str | None = None
    assistant_message_id: str | None = None
    failed_message_ids: list[str] = Field(default_factory=list)


class RetryResult(BaseModel):
    failed_message_id: str
    success: bool
    message: str
    error_kind: ErrorKind | None = None


class RetrySummary(BaseModel):
    success: bool
    message: str | None = None
    retried_count: int = 0
    total_count: int = 0
    results: list[RetryResult] = Field(default_factory=list)
    request_task_id: str | None = None
