from __future__ import annotations

import base64
import logging
from typing import Any, Protocol
from urllib.parse import quote

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from mail_relay.config.settings import Settings
from mail_relay.email.models import Attachment
from mail_relay.errors import ExternalServiceError
from mail_relay.transport import HttpTransport

logger = logging.getLogger(__name__)


class CreatedTask(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task_id: str
    task_title: str = ""
    task_url: str = ""


class TaskStatusReport(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str = ""
    credit_usage: int = Field(default=0, ge=0)
    output: list[Any] = Field(default_factory=list)

    @field_validator("credit_usage", mode="before")
    @classmethod
    def _missing_usage_is_zero(cls, value: Any) -> Any:
        return 0 if value is None else value


class PublicKeyInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    public_key: str
    algorithm: str = "RSA-SHA256"


class TaskBackend(Protocol):
    """Interface for the external task-execution service."""

    def create_task(
        self, prompt: str, *, attachments: list[Attachment] | None = None
    ) -> CreatedTask: ...

    def get_task(self, task_id: str) -> TaskStatusReport: ...

    def download_attachment(self, url: str) -> bytes: ...

    def fetch_public_key(self) -> PublicKeyInfo: ...


class HttpTaskBackend:
    """REST client for the task backend using bearer authentication."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://api.manus.ai/v1",
        agent_profile: str = "",
        timeout_s: float = 15.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.agent_profile = agent_profile
        self.transport = HttpTransport(
            service="Task backend",
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout_s=timeout_s,
            max_retries=max_retries,
            backoff_s=backoff_s,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpTaskBackend:
        return cls(
            api_key=settings.backend_api_key,
            base_url=settings.backend_api_base,
            agent_profile=settings.backend_agent_profile,
            timeout_s=settings.http_timeout_s,
            max_retries=settings.http_max_retries,
            backoff_s=settings.http_backoff_s,
        )

    def create_task(
        self, prompt: str, *, attachments: list[Attachment] | None = None
    ) -> CreatedTask:
        payload: dict[str, Any] = {"prompt": prompt}
        if self.agent_profile:
            payload["agent_profile"] = self.agent_profile
        if attachments:
            payload["attachments"] = [
                {
                    "type": "base64",
                    "data": base64.b64encode(a.content).decode("ascii"),
                    "filename": a.filename,
                }
                for a in attachments
            ]
        # A lost response may hide a created task; a retry would start a second one.
        created = _parse(
            CreatedTask, self.transport.post_json("/tasks", payload, retry=False)
        )
        logger.info("backend event=task_created task_id=%s", created.task_id)
        return created

    def get_task(self, task_id: str) -> TaskStatusReport:
        return _parse(TaskStatusReport, self.transport.get_json(f"/tasks/{quote(task_id, safe='')}"))

    def download_attachment(self, url: str) -> bytes:
        # Attachment URLs are pre-signed; the API key must not leak to them.
        body, _ = self.transport.send("GET", url, authenticated=False)
        return body

    def fetch_public_key(self) -> PublicKeyInfo:
        return _parse(PublicKeyInfo, self.transport.get_json("/webhook/public_key"))


def _parse(model: type[BaseModel], data: dict[str, Any]) -> Any:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise ExternalServiceError(
            f"Task backend returned an unexpected {model.__name__} payload"
        ) from exc
