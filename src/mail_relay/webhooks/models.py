from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class WebhookAttachment(BaseModel):
    model_config = ConfigDict(extra="ignore")

    file_name: str
    url: str
    size_bytes: int = 0


class TaskDetail(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task_id: str
    task_title: str = ""
    task_url: str = ""
    message: str = ""
    stop_reason: str = ""
    attachments: list[WebhookAttachment] = Field(default_factory=list)


class TaskWebhookPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event_id: str = ""
    event_type: str | None = None
    task_detail: TaskDetail | None = None
