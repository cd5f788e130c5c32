"""Tests for identity issuance and key re-derivation."""

import dataclasses

import pytest
from eth_account import Account

from turnstile.config import IdentitySettings
from turnstile.errors import KeyDerivationError, RateLimitedError
from turnstile.identity import IdentityIssuer, IdentityRecord

SESSION = "ab" * 32


class TestIdentityIssuer:
    def test_issue_records_no_private_key(self, issuer):
        record = issuer.issue(SESSION)
        assert set(record.to_dict()) == {"address", "salt", "kdf_iterations", "secret_version"}
        assert len(bytes.fromhex(record.salt)) == 16
        assert record.secret_version == 1

    def test_derivation_reproduces_issued_address(self, issuer):
        record = issuer.issue(SESSION)
        key = issuer.derive_private_key(SESSION, record)
        assert Account.from_key(key).address == record.address
        assert issuer.account_for(SESSION, record).address == record.address

    def test_fresh_salt_per_issue(self, issuer):
        a = issuer.issue(SESSION)
        b = issuer.issue(SESSION)
        assert a.salt != b.salt
        assert a.address != b.address

    def test_tampered_salt_fails(self, issuer):
        record = issuer.issue(SESSION)
        tampered = dataclasses.replace(record, salt="00" * 16)
        with pytest.raises(KeyDerivationError):
            issuer.derive_private_key(SESSION, tampered)

    def test_wrong_session_id_fails(self, issuer):
        record = issuer.issue(SESSION)
        with pytest.raises(KeyDerivationError):
            issuer.derive_private_key("cd" * 32, record)

    def test_salt_alone_is_insufficient(self, identity_settings):
        record = IdentityIssuer(identity_settings).issue(SESSION)
        other = IdentityIssuer(IdentitySettings(secrets={1: "another-secret"}, kdf_iterations=1000))
        with pytest.raises(KeyDerivationError):
            other.derive_private_key(SESSION, record)

    def test_corrupt_salt_fails(self, issuer):
        record = dataclasses.replace(issuer.issue(SESSION), salt="not-hex")
        with pytest.raises(KeyDerivationError):
            issuer.derive_private_key(SESSION, record)

    def test_record_round_trips_through_dict(self, issuer):
        record = issuer.issue(SESSION)
        assert IdentityRecord.from_dict(record.to_dict()) == record


class TestSecretRotation:
    def test_old_identities_derive_with_retired_secret(self):
        old = IdentityIssuer(IdentitySettings(secrets={1: "v1"}, kdf_iterations=1000))
        record = old.issue(SESSION)

        rotated = IdentityIssuer(
            IdentitySettings(secrets={1: "v1", 2: "v2"}, current_version=2, kdf_iterations=1000)
        )
        assert rotated.issue(SESSION).secret_version == 2
        key = rotated.derive_private_key(SESSION, record)
        assert Account.from_key(key).address == record.address

    def test_dropped_secret_version_fails(self):
        record = IdentityIssuer(IdentitySettings(secrets={1: "v1"}, kdf_iterations=1000)).issue(SESSION)
        only_v2 = IdentityIssuer(
            IdentitySettings(secrets={2: "v2"}, current_version=2, kdf_iterations=1000)
        )
        with pytest.raises(KeyDerivationError, match="version 1"):
            only_v2.derive_private_key(SESSION, record)

    def test_missing_current_secret_rejected(self):
        with pytest.raises(KeyDerivationError):
            IdentityIssuer(IdentitySettings(secrets={}))


class TestDerivationRateLimit:
    def test_limit_enforced_within_window(self, clock):
        settings = IdentitySettings(secrets={1: "s"}, kdf_iterations=1000, max_derivations_per_minute=2)
        issuer = IdentityIssuer(settings, clock=clock)
        record = issuer.issue(SESSION)

        issuer.derive_private_key(SESSION, record)
        issuer.derive_private_key(SESSION, record)
        with pytest.raises(RateLimitedError):
            issuer.derive_private_key(SESSION, record)

        clock.advance(61)
        issuer.derive_private_key(SESSION, record)
