from __future__ import annotations

import base64
import hashlib
from collections.abc import Callable

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa

from mail_relay.config.settings import Settings
from mail_relay.email.models import InboundEmail
from mail_relay.storage.memory import InMemoryRelayStorage
from mail_relay.storage.models import UserRecord, WorkflowRecord

from fakes import FakeMailSender, FakeTaskBackend


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="",
        from_domain="relay.test",
        relay_address="relay@relay.test",
        subject_tag="[Relay]",
        signup_url="https://relay.test/signup",
        backend_mail_domain="backend.test",
        http_backoff_s=0.0,
    )


@pytest.fixture
def storage() -> InMemoryRelayStorage:
    return InMemoryRelayStorage()


@pytest.fixture
def mail_sender() -> FakeMailSender:
    return FakeMailSender()


@pytest.fixture(scope="session")
def private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def public_key_pem(private_key: rsa.RSAPrivateKey) -> str:
    return (
        private_key.public_key()
        .public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        .decode("utf-8")
    )


@pytest.fixture
def backend(public_key_pem: str) -> FakeTaskBackend:
    return FakeTaskBackend(public_key_pem)


@pytest.fixture
def sign(private_key: rsa.RSAPrivateKey) -> Callable[[str, str, bytes], str]:
    def _sign(timestamp: str, url: str, body: bytes) -> str:
        body_hash = hashlib.sha256(body).hexdigest()
        signing_string = f"{timestamp}.{url}.{body_hash}".encode("utf-8")
        signature = private_key.sign(signing_string, padding.PKCS1v15(), hashes.SHA256())
        return base64.b64encode(signature).decode("ascii")

    return _sign


@pytest.fixture
def alice(storage: InMemoryRelayStorage) -> UserRecord:
    return storage.create_user("alice@example.com", credits=10, is_approved=True)


@pytest.fixture
def research(storage: InMemoryRelayStorage) -> WorkflowRecord:
    return storage.upsert_workflow(
        "research",
        credits_per_task=10,
        kind="native",
        execution_address="research-agent@backend.test",
    )


@pytest.fixture
def digest(storage: InMemoryRelayStorage) -> WorkflowRecord:
    return storage.upsert_workflow(
        "digest",
        credits_per_task=3,
        kind="api",
        instruction="Summarize the following email.",
    )


@pytest.fixture
def make_email() -> Callable[..., InboundEmail]:
    def _make(**overrides: object) -> InboundEmail:
        values: dict[str, object] = {
            "from_address": "alice@example.com",
            "to_address": "research@relay.test",
            "subject": "Market sizing",
            "text": "Please research the EU heat pump market.",
            "message_id": "orig-1@example.com",
        }
        values.update(overrides)
        return InboundEmail(**values)

    return _make
