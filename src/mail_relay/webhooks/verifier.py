"""Signature and freshness checks for completion webhooks.

The backend signs `"{timestamp}.{url}.{sha256_hex(body)}"` with RSA PKCS#1 v1.5 over
SHA-256 and publishes the PEM public key at a key endpoint. The key is cached per
verifier instance and refetched lazily once it is older than the TTL.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import NoReturn

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from mail_relay.errors import VerificationFailure

logger = logging.getLogger(__name__)


@dataclass
class CachedKey:
    key: rsa.RSAPublicKey
    fetched_at: float
    ttl: float

    def is_fresh(self, now: float) -> bool:
        return now - self.fetched_at < self.ttl


class WebhookVerifier:
    def __init__(
        self,
        key_source: Callable[[], str],
        *,
        ttl_s: float = 3600.0,
        tolerance_s: int = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.key_source = key_source
        self.ttl_s = ttl_s
        self.tolerance_s = tolerance_s
        self.clock = clock
        self._cached: CachedKey | None = None

    def verify(
        self,
        signature: str | None,
        timestamp: str | None,
        url: str,
        raw_body: bytes,
    ) -> None:
        """Raise `VerificationFailure` unless the request is fresh and correctly signed."""
        if timestamp is None:
            self._fail("missing_timestamp")
        try:
            sent_at = int(timestamp)
        except ValueError:
            self._fail("malformed_timestamp")
        if abs(self.clock() - sent_at) > self.tolerance_s:
            self._fail("stale_timestamp", skew=int(self.clock()) - sent_at)
        if not signature:
            self._fail("missing_signature")
        try:
            decoded = base64.b64decode(signature, validate=True)
        except (binascii.Error, ValueError):
            self._fail("malformed_signature")

        body_hash = hashlib.sha256(raw_body).hexdigest()
        signing_string = f"{timestamp}.{url}.{body_hash}".encode("utf-8")
        try:
            self.public_key().verify(
                decoded, signing_string, padding.PKCS1v15(), hashes.SHA256()
            )
        except InvalidSignature:
            self._fail("bad_signature", url=url)

    def public_key(self) -> rsa.RSAPublicKey:
        now = self.clock()
        cached = self._cached
        if cached is not None and cached.is_fresh(now):
            return cached.key
        # Concurrent refreshes may both fetch; the last assignment wins.
        key = _load_rsa_key(self.key_source())
        self._cached = CachedKey(key=key, fetched_at=now, ttl=self.ttl_s)
        logger.info("webhook event=public_key_refreshed ttl_s=%s", self.ttl_s)
        return key

    @staticmethod
    def _fail(reason: str, **context: object) -> NoReturn:
        details = " ".join(f"{k}={v}" for k, v in context.items())
        logger.warning("webhook event=verification_failed reason=%s %s", reason, details)
        raise VerificationFailure(reason)


def _load_rsa_key(pem: str) -> rsa.RSAPublicKey:
    try:
        key = serialization.load_pem_public_key(pem.encode("utf-8"))
    except ValueError as exc:
        raise VerificationFailure("invalid_public_key") from exc
    if not isinstance(key, rsa.RSAPublicKey):
        raise VerificationFailure("invalid_public_key")
    return key
