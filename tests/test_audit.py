"""Tests for tamper-evident audit trail behavior."""

import json
import stat

import pytest

from turnstile.audit import AuditChainError, AuditTrail, EventType


def _trail(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.SESSION_CREATED, session_id="s-1", address="0xabc")
    trail.log(EventType.PAYMENT_VERIFIED, session_id="s-1", tx_ref="0x01", amount_wei=900)

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    second = json.loads(lines[1])
    second["amount_wei"] = "9999"
    lines[1] = json.dumps(second, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(AuditChainError, match="Audit chain broken"):
        trail.read_events()


def test_deleted_event_breaks_chain(tmp_path):
    trail = _trail(tmp_path)
    for i in range(3):
        trail.log(EventType.SWEEP_COMPLETED, session_id=f"s-{i}")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text(lines[0] + "\n" + lines[2] + "\n")

    with pytest.raises(AuditChainError, match="previous hash") as exc:
        trail.verify()
    assert exc.value.line_number == 2


def test_filters_and_wei_precision(tmp_path):
    trail = _trail(tmp_path)
    big = 2**64 + 1
    trail.log(EventType.SESSION_CREATED, session_id="a")
    trail.log(EventType.PAYMENT_VERIFIED, session_id="a", amount_wei=big)
    trail.log(EventType.PAYMENT_VERIFIED, session_id="b", amount_wei=1)

    paid = trail.read_events(event_type=EventType.PAYMENT_VERIFIED)
    assert [e.session_id for e in paid] == ["a", "b"]
    assert int(paid[0].amount_wei) == big

    assert len(trail.read_events(session_id="a")) == 2
    assert len(trail.read_events(limit=1)) == 1


def test_chain_continues_across_instances(tmp_path):
    _trail(tmp_path).log(EventType.SESSION_CREATED, session_id="a")
    reopened = _trail(tmp_path)
    reopened.log(EventType.SESSION_REAPED, session_id="a")
    events = reopened.read_events()
    assert events[1].prev_hash == events[0].event_hash


def test_summary_counts_failures(tmp_path):
    trail = _trail(tmp_path)
    trail.log(EventType.SWEEP_COMPLETED, session_id="a")
    trail.log(EventType.SWEEP_FAILED, session_id="b", success=False, reason="nonce")
    trail.log(EventType.PAYMENT_VERIFIED, session_id="b", amount_wei=900)
    trail.log(EventType.SWEEP_COMPLETED, session_id="b", amount_wei=850)

    summary = trail.summary()
    assert summary["total_events"] == 4
    assert summary["failures"] == 1
    assert summary["by_type"] == {"sweep_completed": 2, "sweep_failed": 1, "payment_verified": 1}
    assert summary["verified_wei"] == "900"
    assert summary["swept_wei"] == "850"


def test_files_are_private(tmp_path, monkeypatch):
    monkeypatch.delenv("TURNSTILE_AUDIT_HMAC_KEY", raising=False)
    _trail(tmp_path).log(EventType.SESSION_CREATED)
    assert stat.S_IMODE((tmp_path / "audit.jsonl").stat().st_mode) == 0o600
    assert stat.S_IMODE((tmp_path / "secret" / "audit_hmac.key").stat().st_mode) == 0o600


def test_in_dir_layout(tmp_path, monkeypatch):
    monkeypatch.delenv("TURNSTILE_AUDIT_HMAC_KEY", raising=False)
    trail = AuditTrail.in_dir(tmp_path)
    trail.log(EventType.SESSION_CREATED, session_id="a")
    assert trail.path == tmp_path / "audit.jsonl"
    assert (tmp_path / "secrets" / "audit_hmac.key").exists()
    assert trail.verify() == 1


def test_empty_trail_verifies(tmp_path):
    trail = _trail(tmp_path)
    assert trail.verify() == 0
    assert trail.read_events() == []
    assert trail.summary()["last_event"] is None
