"""
Runtime configuration.

Every tunable lives in a dataclass with a development-friendly default.
`TurnstileConfig.from_env()` overlays TURNSTILE_* environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ConfigError
from .money import ether_to_wei


DEFAULT_DATA_DIR = Path.home() / ".turnstile"
DEFAULT_OPERATOR_ADDRESS = "0x0000000000000000000000000000000000000000"


@dataclass
class SessionSettings:
    trial_seconds: int = 180                # 3 minute free trial
    session_ttl_seconds: int = 86400        # absolute lifetime
    fingerprint_mode: str = "warn"          # "warn" logs only, "strict" rejects
    reap_interval_seconds: int = 300


@dataclass
class PaymentSettings:
    price_wei: int = ether_to_wei("0.0009")
    paid_seconds: int = 3600
    tolerance: str = "0.01"
    replay_window_seconds: int = 86400
    lookback: int = 20
    require_correlator: bool = False
    allow_balance_fallback: bool = False
    instructions_ttl_seconds: int = 1800
    verify_on_access_check: bool = False


@dataclass
class IdentitySettings:
    secrets: dict[int, str] = field(default_factory=dict)
    current_version: int = 1
    kdf_iterations: int = 100_000
    salt_bytes: int = 16
    max_derivations_per_minute: int = 120


@dataclass
class SweepSettings:
    operator_address: str = DEFAULT_OPERATOR_ADDRESS
    min_sweep_wei: int = ether_to_wei("0.0005")
    gas_reserve_wei: int = ether_to_wei("0.00005")
    gas_limit: int = 21_000
    confirm_timeout_seconds: float = 60.0
    sweep_delay_seconds: float = 1.0
    interval_seconds: int = 600
    lease_seconds: int = 300
    include_unpaid_funded: bool = True
    sweep_after_payment: bool = True


@dataclass
class LedgerSettings:
    rpc_urls: list[str] = field(default_factory=list)
    explorer_url: Optional[str] = None
    explorer_fallback_urls: list[str] = field(default_factory=list)
    explorer_api_key: Optional[str] = None
    chain_id: int = 84532
    timeout_seconds: float = 10.0
    max_retries: int = 2
    retry_delay_seconds: float = 0.5


@dataclass
class ServerSettings:
    admin_token: Optional[str] = None
    session_rate_limit_per_minute: int = 100
    host: str = "127.0.0.1"
    port: int = 8402


@dataclass
class TurnstileConfig:
    sessions: SessionSettings = field(default_factory=SessionSettings)
    payments: PaymentSettings = field(default_factory=PaymentSettings)
    identity: IdentitySettings = field(default_factory=IdentitySettings)
    sweep: SweepSettings = field(default_factory=SweepSettings)
    ledger: LedgerSettings = field(default_factory=LedgerSettings)
    server: ServerSettings = field(default_factory=ServerSettings)
    data_dir: Path = DEFAULT_DATA_DIR
    dev_mode: bool = False

    def validate(self) -> None:
        if not self.identity.secrets:
            raise ConfigError("No identity secret configured (TURNSTILE_IDENTITY_SECRET)")
        if self.identity.current_version not in self.identity.secrets:
            raise ConfigError(
                f"Identity secret version {self.identity.current_version} is not configured"
            )
        if self.identity.salt_bytes < 16:
            raise ConfigError("Identity salt must be at least 16 bytes")
        if self.sweep.gas_reserve_wei < 0 or self.sweep.min_sweep_wei < 0:
            raise ConfigError("Sweep thresholds must be non-negative")
        if self.sessions.fingerprint_mode not in {"warn", "strict"}:
            raise ConfigError(f"Unknown fingerprint mode: {self.sessions.fingerprint_mode}")

    @classmethod
    def from_env(cls, environ: Optional[dict[str, str]] = None) -> "TurnstileConfig":
        env = os.environ if environ is None else environ
        cfg = cls()
        cfg.dev_mode = _env_bool(env, "TURNSTILE_DEV_MODE", False)
        if env.get("TURNSTILE_DATA_DIR"):
            cfg.data_dir = Path(env["TURNSTILE_DATA_DIR"])

        s = cfg.sessions
        s.trial_seconds = _env_int(env, "TURNSTILE_TRIAL_SECONDS", s.trial_seconds)
        s.session_ttl_seconds = _env_int(env, "TURNSTILE_SESSION_TTL_SECONDS", s.session_ttl_seconds)
        s.fingerprint_mode = env.get("TURNSTILE_FINGERPRINT_MODE", s.fingerprint_mode)
        s.reap_interval_seconds = _env_int(env, "TURNSTILE_REAP_INTERVAL_SECONDS", s.reap_interval_seconds)

        p = cfg.payments
        if env.get("TURNSTILE_PRICE_ETH"):
            p.price_wei = ether_to_wei(env["TURNSTILE_PRICE_ETH"])
        p.paid_seconds = _env_int(env, "TURNSTILE_PAID_SECONDS", p.paid_seconds)
        p.tolerance = env.get("TURNSTILE_TOLERANCE", p.tolerance)
        p.replay_window_seconds = _env_int(env, "TURNSTILE_REPLAY_WINDOW_SECONDS", p.replay_window_seconds)
        p.lookback = _env_int(env, "TURNSTILE_LOOKBACK", p.lookback)
        p.require_correlator = _env_bool(env, "TURNSTILE_REQUIRE_CORRELATOR", p.require_correlator)
        p.allow_balance_fallback = _env_bool(env, "TURNSTILE_ALLOW_BALANCE_FALLBACK", p.allow_balance_fallback)
        p.verify_on_access_check = _env_bool(env, "TURNSTILE_VERIFY_ON_ACCESS_CHECK", p.verify_on_access_check)

        i = cfg.identity
        secret = env.get("TURNSTILE_IDENTITY_SECRET")
        if secret:
            i.current_version = _env_int(env, "TURNSTILE_IDENTITY_SECRET_VERSION", i.current_version)
            i.secrets[i.current_version] = secret
        # Retired secrets stay derivable: TURNSTILE_IDENTITY_SECRET_V<n>
        for key, value in env.items():
            if key.startswith("TURNSTILE_IDENTITY_SECRET_V") and key[27:].isdigit():
                i.secrets.setdefault(int(key[27:]), value)
        i.kdf_iterations = _env_int(env, "TURNSTILE_KDF_ITERATIONS", i.kdf_iterations)
        i.salt_bytes = _env_int(env, "TURNSTILE_SALT_BYTES", i.salt_bytes)
        if cfg.dev_mode and not i.secrets:
            i.secrets[i.current_version] = "dev-only-identity-secret"

        w = cfg.sweep
        w.operator_address = env.get("TURNSTILE_OPERATOR_ADDRESS", w.operator_address)
        if env.get("TURNSTILE_MIN_SWEEP_ETH"):
            w.min_sweep_wei = ether_to_wei(env["TURNSTILE_MIN_SWEEP_ETH"])
        if env.get("TURNSTILE_GAS_RESERVE_ETH"):
            w.gas_reserve_wei = ether_to_wei(env["TURNSTILE_GAS_RESERVE_ETH"])
        w.interval_seconds = _env_int(env, "TURNSTILE_SWEEP_INTERVAL_SECONDS", w.interval_seconds)
        w.sweep_after_payment = _env_bool(env, "TURNSTILE_SWEEP_AFTER_PAYMENT", w.sweep_after_payment)

        lg = cfg.ledger
        if env.get("TURNSTILE_RPC_URLS"):
            lg.rpc_urls = [u.strip() for u in env["TURNSTILE_RPC_URLS"].split(",") if u.strip()]
        lg.explorer_url = env.get("TURNSTILE_EXPLORER_URL", lg.explorer_url)
        if env.get("TURNSTILE_EXPLORER_FALLBACK_URLS"):
            lg.explorer_fallback_urls = [
                u.strip() for u in env["TURNSTILE_EXPLORER_FALLBACK_URLS"].split(",") if u.strip()
            ]
        lg.explorer_api_key = env.get("TURNSTILE_EXPLORER_API_KEY", lg.explorer_api_key)
        lg.chain_id = _env_int(env, "TURNSTILE_CHAIN_ID", lg.chain_id)

        sv = cfg.server
        sv.admin_token = env.get("TURNSTILE_ADMIN_TOKEN", sv.admin_token)
        sv.session_rate_limit_per_minute = _env_int(
            env, "TURNSTILE_SESSION_RATE_LIMIT", sv.session_rate_limit_per_minute
        )
        return cfg


def _env_int(env, name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}") from None


def _env_bool(env, name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}
