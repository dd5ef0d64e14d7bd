"""JSON messages exchanged with websocket clients."""

from __future__ import annotations

import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, TypeAdapter

from genqueue.jobs.models import TaskStatus, TaskView


class TaskPayload(BaseModel):
    """Client-facing task record."""

    id: int
    prompt: str
    status: TaskStatus
    result_path: str | None = None
    created_at: datetime.datetime
    updated_at: datetime.datetime

    @classmethod
    def from_view(cls, task: TaskView) -> TaskPayload:
        return cls(
            id=task.id,
            prompt=task.prompt,
            status=task.status,
            result_path=task.result_path,
            created_at=task.created_at,
            updated_at=task.updated_at,
        )


class OutboundMessage(BaseModel):
    type: Literal["history", "new_task", "update"]
    data: TaskPayload | list[TaskPayload]

    def to_json(self) -> str:
        return self.model_dump_json()


class GetHistoryRequest(BaseModel):
    type: Literal["get_history"]


class CreateTaskRequest(BaseModel):
    type: Literal["create_task"]
    prompt: str = Field(min_length=1)


InboundMessage = Annotated[GetHistoryRequest | CreateTaskRequest, Field(discriminator="type")]

_INBOUND_ADAPTER: TypeAdapter[GetHistoryRequest | CreateTaskRequest] = TypeAdapter(InboundMessage)


def parse_inbound(raw: str | bytes) -> GetHistoryRequest | CreateTaskRequest:
    """Parse one client frame; raises ``pydantic.ValidationError`` when invalid."""

    return _INBOUND_ADAPTER.validate_json(raw)


def history_message(tasks: list[TaskView]) -> OutboundMessage:
    return OutboundMessage(type="history", data=[TaskPayload.from_view(task) for task in tasks])


def new_task_message(task: TaskView) -> OutboundMessage:
    return OutboundMessage(type="new_task", data=TaskPayload.from_view(task))


def update_message(task: TaskView) -> OutboundMessage:
    return OutboundMessage(type="update", data=TaskPayload.from_view(task))
