"""Blocking JSON-over-HTTP helper shared by the mail provider and task backend adapters."""

from __future__ import annotations

import json
import logging
import time
from email.message import Message
from http import client as http_client
from typing import Any
from urllib import error, request

from mail_relay.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class HttpTransport:
    """Sends requests with bounded retries and wraps every failure in `ExternalServiceError`."""

    def __init__(
        self,
        *,
        service: str,
        base_url: str = "",
        headers: dict[str, str] | None = None,
        timeout_s: float = 15.0,
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.service = service
        self.base_url = base_url.rstrip("/")
        self.headers = dict(headers or {})
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def get_json(self, path: str) -> dict[str, Any]:
        body, _ = self.send("GET", path)
        return self._decode(body)

    def post_json(
        self, path: str, payload: dict[str, Any], *, retry: bool = True
    ) -> dict[str, Any]:
        body, _ = self.send("POST", path, payload=payload, retry=retry)
        return self._decode(body)

    def send(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | None = None,
        authenticated: bool = True,
        retry: bool = True,
    ) -> tuple[bytes, Message]:
        """Return `(body, response_headers)` or raise after the last attempt.

        Pass `retry=False` for calls that must not be repeated, such as creating a task
        whose first attempt may have succeeded before the response was lost.
        """
        url = path if path.startswith(("http://", "https://")) else f"{self.base_url}{path}"
        max_retries = self.max_retries if retry else 0
        last_error: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                return self._request(method, url, payload, authenticated)
            except error.HTTPError as exc:
                last_error = exc
                logger.warning(
                    "%s request failed attempt=%d/%d method=%s url=%s status=%s",
                    self.service,
                    attempt + 1,
                    max_retries + 1,
                    method,
                    url,
                    exc.code,
                )
                # Client errors other than rate limiting will not improve on retry.
                if 400 <= exc.code < 500 and exc.code != 429:
                    break
            except (
                TimeoutError,
                ConnectionError,
                error.URLError,
                http_client.HTTPException,
            ) as exc:
                last_error = exc
                logger.warning(
                    "%s request failed attempt=%d/%d method=%s url=%s reason=%s",
                    self.service,
                    attempt + 1,
                    max_retries + 1,
                    method,
                    url,
                    exc,
                )
            if attempt < max_retries and self.backoff_s > 0:
                time.sleep(self.backoff_s)
        raise ExternalServiceError(
            f"{self.service} {method} {url} failed: {last_error}"
        ) from last_error

    def _request(
        self,
        method: str,
        url: str,
        payload: dict[str, Any] | None,
        authenticated: bool,
    ) -> tuple[bytes, Message]:
        headers = dict(self.headers) if authenticated else {}
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            headers["Content-Type"] = "application/json"
        req = request.Request(url=url, data=data, method=method, headers=headers)
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                return response.read(), response.headers
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise error.HTTPError(
                exc.url,
                exc.code,
                f"{self.service} API request failed: {raw_error}",
                exc.headers,
                exc.fp,
            ) from exc

    def _decode(self, body: bytes) -> dict[str, Any]:
        if not body:
            return {}
        try:
            decoded = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise ExternalServiceError(f"{self.service} returned invalid JSON") from exc
        if not isinstance(decoded, dict):
            raise ExternalServiceError(f"{self.service} returned a non-object JSON body")
        return decoded
