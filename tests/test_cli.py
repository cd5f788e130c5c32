"""CLI command tests."""

import json

from click.testing import CliRunner

from turnstile.cli import main


def _invoke(gateway, args):
    return CliRunner().invoke(main, args, obj={"gateway": gateway})


def test_session_new_and_status(gateway):
    result = _invoke(gateway, ["session", "new", "--json"])
    assert result.exit_code == 0
    session_id = json.loads(result.output)["session_id"]

    result = _invoke(gateway, ["session", "status", session_id])
    assert result.exit_code == 0
    assert "trial (trial-active)" in result.output


def test_session_status_rejects_bad_id(gateway):
    result = _invoke(gateway, ["session", "status", "not-a-session"])
    assert result.exit_code == 1
    assert "❌" in result.output


def test_pay_info(gateway):
    session_id = gateway.create_or_resume_session()["session_id"]
    result = _invoke(gateway, ["pay-info", session_id])
    assert result.exit_code == 0
    assert "0.0009 ETH (900000000000000 wei)" in result.output


def test_check_exit_codes(gateway, ledger):
    session_id = gateway.create_or_resume_session()["session_id"]
    assert _invoke(gateway, ["check", session_id]).exit_code == 1

    ledger.online = False
    result = _invoke(gateway, ["check", session_id])
    assert result.exit_code == 2
    assert "Ledger unavailable" in result.output

    ledger.online = True
    info = gateway.get_payment_instructions(session_id)
    tx = ledger.deposit(info["address"], int(info["amount_wei"]))
    result = _invoke(gateway, ["check", session_id, "--tx", tx.ref])
    assert result.exit_code == 0
    assert "✅ Payment verified" in result.output


def test_sweep_and_stats(gateway, ledger):
    session_id = gateway.create_or_resume_session()["session_id"]
    info = gateway.get_payment_instructions(session_id)
    ledger.deposit(info["address"], int(info["amount_wei"]))
    gateway.check_payment(session_id)

    result = _invoke(gateway, ["sweep"])
    assert result.exit_code == 0
    assert "succeeded=1" in result.output

    result = _invoke(gateway, ["stats", "--json"])
    data = json.loads(result.output)
    assert data["users"]["paid_users"] == 1
    assert data["transfers"]["runs"] == 1


def test_sweep_failure_exits_nonzero(gateway, ledger):
    gateway.sweep.settings.operator_address = "0x0000000000000000000000000000000000000000"
    session_id = gateway.create_or_resume_session()["session_id"]
    info = gateway.get_payment_instructions(session_id)
    ledger.deposit(info["address"], int(info["amount_wei"]))

    result = _invoke(gateway, ["sweep", "--session", session_id])
    assert result.exit_code == 1
    assert "Operator address not configured" in result.output


def test_reap(gateway, clock):
    gateway.create_or_resume_session()
    clock.advance(86400)
    result = _invoke(gateway, ["reap"])
    assert "Reaped 1 expired session(s)" in result.output


def test_missing_configuration_is_reported(tmp_path, monkeypatch):
    for name in ("TURNSTILE_IDENTITY_SECRET", "TURNSTILE_DEV_MODE", "TURNSTILE_RPC_URLS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TURNSTILE_DATA_DIR", str(tmp_path))

    result = CliRunner().invoke(main, ["session", "new"])
    assert result.exit_code == 1
    assert "Configuration error" in result.output


def test_dev_mode_builds_gateway_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("TURNSTILE_DEV_MODE", "1")
    monkeypatch.setenv("TURNSTILE_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("TURNSTILE_KDF_ITERATIONS", "1000")
    monkeypatch.delenv("TURNSTILE_RPC_URLS", raising=False)

    result = CliRunner().invoke(main, ["session", "new"])
    assert result.exit_code == 0
    assert "✅ Session created" in result.output
    assert (tmp_path / "turnstile.db").exists()


def test_audit_lists_and_verifies(gateway, ledger):
    session_id = gateway.create_or_resume_session()["session_id"]
    info = gateway.get_payment_instructions(session_id)
    ledger.deposit(info["address"], int(info["amount_wei"]))
    gateway.check_payment(session_id)

    result = _invoke(gateway, ["audit", "--session", session_id])
    assert result.exit_code == 0
    assert "payment_verified" in result.output
    assert "0.000900 ETH" in result.output

    result = _invoke(gateway, ["audit", "--verify"])
    assert result.exit_code == 0
    assert "Audit chain intact" in result.output

    summary = json.loads(_invoke(gateway, ["stats", "--json"]).output)["audit"]
    assert summary["verified_wei"] == "900000000000000"


def test_audit_reports_broken_chain(gateway):
    gateway.create_or_resume_session()
    gateway.create_or_resume_session()
    lines = gateway.audit.path.read_text().splitlines()
    gateway.audit.path.write_text(lines[1] + "\n")

    result = _invoke(gateway, ["audit", "--verify"])
    assert result.exit_code == 1
