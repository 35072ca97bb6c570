from mail_relay.backend.client import (
    CreatedTask,
    HttpTaskBackend,
    PublicKeyInfo,
    TaskBackend,
    TaskStatusReport,
)

__all__ = [
    "CreatedTask",
    "HttpTaskBackend",
    "PublicKeyInfo",
    "TaskBackend",
    "TaskStatusReport",
]
