from __future__ import annotations

from pathlib import Path

import pytest

from civil_protection import (
    CivilProtection,
    Config,
    ConfigStore,
    Email,
    Identity,
    SendError,
    Transport,
)

ALICE = Identity("Alice", "alice@example.com")
BOB = Identity("Bob", "bob@example.com")
CAROL = Identity("Carol", "carol@example.com")


class FakeTransport(Transport):
    """Records emails instead of sending them."""

    def __init__(
        self,
        sender: Identity,
        fail_for: set[str] | None = None,
        open_error: Exception | None = None,
    ) -> None:
        super().__init__(sender)
        self.fail_for = fail_for or set()
        self.open_error = open_error
        self.sent: list[Email] = []
        self.opened = 0
        self.closed = 0

    def open(self) -> None:
        if self.open_error is not None:
            raise self.open_error
        self.opened += 1

    def close(self) -> None:
        self.closed += 1

    def send(self, email: Email) -> None:
        if email.to.email in self.fail_for:
            raise SendError("mailbox unavailable", failures={email.to.email: "mailbox unavailable"})
        self.sent.append(email)


class FakeTransportFactory:
    def __init__(self, fail_for: set[str] | None = None, open_error: Exception | None = None) -> None:
        self.fail_for = fail_for
        self.open_error = open_error
        self.transports: list[FakeTransport] = []

    def __call__(self, config: Config) -> FakeTransport:
        transport = FakeTransport(config.identity, fail_for=self.fail_for, open_error=self.open_error)
        self.transports.append(transport)
        return transport

    @property
    def sent(self) -> list[Email]:
        return [email for transport in self.transports for email in transport.sent]


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "resistance" / "config.json"


@pytest.fixture
def store(config_path: Path) -> ConfigStore:
    return ConfigStore(config_path)


@pytest.fixture
def transports() -> FakeTransportFactory:
    return FakeTransportFactory()


@pytest.fixture
def cp(store: ConfigStore, transports: FakeTransportFactory) -> CivilProtection:
    return CivilProtection(store, transport_factory=transports)


@pytest.fixture
def configured(cp: CivilProtection) -> CivilProtection:
    cp.create_config_sendmail(ALICE)
    return cp
