from __future__ import annotations

import struct
from collections.abc import Generator
from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from apn_delivery.config import ApnCredentials, Settings
from apn_delivery.errors import WriteError
from apn_delivery.models.notification import ErrorResponse
from apn_delivery.protocol.codec import (
    decode_error_frame,
    decode_feedback_records,
    encode_error_frame,
    encode_feedback_record,
)
from apn_delivery.storage.repository import InMemoryBacklog

FIXED_NOW = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)
TEST_CERT = b"-----BEGIN CERTIFICATE-----\ntest\n-----END CERTIFICATE-----\n"


def token_for(n: int) -> str:
    return f"{n:064x}"


class FakeGatewayConnection:
    def __init__(self, gateway: FakeGateway) -> None:
        self.gateway = gateway
        self.frames: list[bytes] = []
        self.error: ErrorResponse | None = None
        self.reset_pending = False
        self.writes_since_error = 0
        self.polls = 0
        self.opened = False
        self.closed = False

    @property
    def written_ids(self) -> list[int]:
        return [struct.unpack(">i", frame[1:5])[0] for frame in self.frames]

    def __enter__(self) -> FakeGatewayConnection:
        self.opened = True
        if self.gateway.unknown_failure is not None and len(self.gateway.connections) == 1:
            self.error = self.gateway.error_response(1, self.gateway.unknown_failure)
        return self

    def __exit__(self, *exc_info) -> None:
        self.closed = True

    def write(self, frame: bytes) -> None:
        if self.reset_pending:
            if self.writes_since_error >= self.gateway.writes_after_error:
                raise WriteError("connection reset by peer")
            self.writes_since_error += 1
        if self.gateway.drop_after is not None and len(self.frames) >= self.gateway.drop_after:
            raise WriteError("broken pipe")

        self.frames.append(frame)
        self.gateway.frames.append(frame)
        identifier = struct.unpack(">i", frame[1:5])[0]
        if self.reset_pending:
            return
        status = self.gateway.reject.pop(identifier, None)
        if status is None and self.gateway.reject_first and len(self.frames) == 1:
            status = 1
        if status is not None:
            self.error = self.gateway.error_response(status, identifier)
            self.reset_pending = True

    def poll_error(self, timeout: float = 1.0) -> ErrorResponse | None:
        self.polls += 1
        error, self.error = self.error, None
        return error


class FakeGateway:
    """Scripted push gateway shared by every connection it hands out."""

    def __init__(
        self,
        reject: dict[int, int] | None = None,
        reject_first: bool = False,
        writes_after_error: int = 2,
        drop_after: int | None = None,
        unknown_failure: int | None = None,
    ) -> None:
        self.reject = dict(reject or {})
        self.reject_first = reject_first
        self.writes_after_error = writes_after_error
        self.drop_after = drop_after
        self.unknown_failure = unknown_failure
        self.connections: list[FakeGatewayConnection] = []
        self.frames: list[bytes] = []
        self.credentials: list[ApnCredentials] = []

    @staticmethod
    def error_response(status: int, identifier: int) -> ErrorResponse:
        return decode_error_frame(encode_error_frame(8, status, identifier))

    def __call__(self, credentials: ApnCredentials) -> FakeGatewayConnection:
        self.credentials.append(credentials)
        conn = FakeGatewayConnection(self)
        self.connections.append(conn)
        return conn


class FakeFeedbackConnection:
    def __init__(self, records: list[tuple[datetime, str]]) -> None:
        self.payload = b"".join(encode_feedback_record(at, token) for at, token in records)
        self.closed = False

    def __enter__(self) -> FakeFeedbackConnection:
        return self

    def __exit__(self, *exc_info) -> None:
        self.closed = True

    def read_all(self):
        return decode_feedback_records(self.payload)


class FakeFeedback:
    def __init__(self, records: list[tuple[datetime, str]]) -> None:
        self.records = records
        self.calls: list[tuple[bytes, str, int, str]] = []
        self.connections: list[FakeFeedbackConnection] = []

    def __call__(self, certificate: bytes, host: str, port: int, passphrase: str = "") -> FakeFeedbackConnection:
        self.calls.append((certificate, host, port, passphrase))
        conn = FakeFeedbackConnection(self.records)
        self.connections.append(conn)
        return conn


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        apn_env="SANDBOX",
        gateway_host_override="",
        feedback_host_override="",
        poll_timeout_seconds=0.05,
        max_delivery_attempts=None,
        oversized_policy="abort",
        database_url="sqlite://",
    )


@pytest.fixture
def credentials(test_settings: Settings) -> ApnCredentials:
    return test_settings.credentials_for(TEST_CERT)


@pytest.fixture
def backlog() -> InMemoryBacklog:
    return InMemoryBacklog()


@pytest.fixture
def db_session(tmp_path, monkeypatch) -> Generator:
    import apn_delivery.models.db as db_module
    from apn_delivery.models.db import Base, init_db

    db_file = tmp_path / "test.db"
    engine = create_engine(f"sqlite:///{db_file}", connect_args={"check_same_thread": False}, future=True)
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)

    monkeypatch.setattr(db_module, "engine", engine, raising=False)
    monkeypatch.setattr(db_module, "SessionLocal", TestingSessionLocal, raising=False)

    init_db()
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def fake_gateway() -> type[FakeGateway]:
    return FakeGateway


@pytest.fixture
def fake_feedback() -> type[FakeFeedback]:
    return FakeFeedback


@pytest.fixture
def make_token():
    return token_for


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def test_cert() -> bytes:
    return TEST_CERT
