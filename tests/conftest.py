"""Shared fixtures: a controllable clock, fast KDF settings, and a wired gateway."""

import pytest
from eth_account import Account

from turnstile.audit import AuditTrail
from turnstile.config import IdentitySettings, TurnstileConfig
from turnstile.gateway import Gateway
from turnstile.identity import IdentityIssuer
from turnstile.kvstore import MemoryStore
from turnstile.ledger import LocalLedger
from turnstile.sessions import SessionStore


OPERATOR = Account.create()
START = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def identity_settings():
    return IdentitySettings(secrets={1: "test-secret"}, kdf_iterations=1000)


@pytest.fixture
def issuer(identity_settings):
    return IdentityIssuer(identity_settings)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sessions(store, issuer, clock):
    return SessionStore(store, issuer, clock=clock)


@pytest.fixture
def ledger(clock):
    return LocalLedger(clock=clock)


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secrets" / "audit.key")


@pytest.fixture
def config(tmp_path, identity_settings):
    cfg = TurnstileConfig(data_dir=tmp_path)
    cfg.identity = identity_settings
    cfg.sweep.operator_address = OPERATOR.address
    cfg.sweep.sweep_delay_seconds = 0
    cfg.sweep.confirm_timeout_seconds = 1
    cfg.server.admin_token = "admin-secret"
    return cfg


@pytest.fixture
def gateway(config, ledger, audit, clock):
    gw = Gateway(config, MemoryStore(), ledger, audit=audit, clock=clock, sleep=lambda s: None)
    yield gw
    gw.close()
