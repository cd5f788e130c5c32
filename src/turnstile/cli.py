"""
Turnstile CLI — operator commands for the payment gateway.

Commands:
    turnstile serve           Run the HTTP API with background reaper/sweeper
    turnstile session new     Create a session
    turnstile session status  Show a session's status and address
    turnstile pay-info        Show payment instructions for a session
    turnstile check           Check the ledger for a session's payment
    turnstile sweep           Sweep funded addresses to the operator
    turnstile stats           Show user and revenue statistics
    turnstile reap            Delete expired sessions now
    turnstile audit           View or verify the audit trail

Configuration comes from TURNSTILE_* environment variables.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from typing import Optional

import click

from .audit import AuditChainError
from .config import TurnstileConfig
from .errors import TurnstileError
from .gateway import Gateway
from .money import format_ether


def _gateway(ctx: click.Context) -> Gateway:
    """Gateway passed in via ctx.obj, or one built from the environment."""
    obj = ctx.ensure_object(dict)
    if obj.get("gateway") is None:
        try:
            gateway = Gateway.from_config(TurnstileConfig.from_env())
        except TurnstileError as e:
            click.echo(f"❌ Configuration error: {e}", err=True)
            sys.exit(1)
        obj["gateway"] = gateway
        ctx.call_on_close(gateway.close)
    return obj["gateway"]


def _ts(value: Optional[float]) -> str:
    if value is None:
        return "-"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(value))


def _emit_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.version_option(version="0.1.0")
@click.pass_context
def main(ctx: click.Context):
    """Turnstile — session and on-chain payment gateway."""
    ctx.ensure_object(dict)


@main.command()
@click.option("--host", default=None, help="Bind address (default from config)")
@click.option("--port", type=int, default=None, help="Port (default from config)")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
)
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int], log_level: str):
    """Run the HTTP API."""
    import uvicorn

    from .server import create_app

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    gateway = _gateway(ctx)
    settings = gateway.config.server
    gateway.start()
    uvicorn.run(
        create_app(gateway),
        host=host or settings.host,
        port=port or settings.port,
        log_level=log_level.lower(),
    )


@main.group("session")
def session_group():
    """Create and inspect sessions."""
    pass


@session_group.command("new")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def session_new(ctx: click.Context, as_json: bool):
    """Create a new trial session."""
    result = _gateway(ctx).create_or_resume_session()
    if as_json:
        _emit_json(result)
        return
    click.echo(f"✅ Session created: {result['session_id']}")
    click.echo(f"   Access:    {result['reason']}")
    click.echo(f"   Trial until: {_ts(result['trial_expires_at'])}")


@session_group.command("status")
@click.argument("session_id")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def session_status(ctx: click.Context, session_id: str, as_json: bool):
    """Show a session's status."""
    try:
        info = _gateway(ctx).session_status(session_id)
    except TurnstileError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    if as_json:
        _emit_json(info)
        return
    click.echo(f"Session:  {info['session_id']}")
    click.echo(f"Status:   {info['status']} ({info['reason']})")
    click.echo(f"Address:  {info['address']}")
    click.echo(f"Payments: {info['payments']}")
    click.echo(f"Access until: {_ts(info['access_expires_at'])}")
    click.echo(f"Expires:  {_ts(info['expires_at'])}")


@main.command("pay-info")
@click.argument("session_id")
@click.pass_context
def pay_info(ctx: click.Context, session_id: str):
    """Show where and how much to pay."""
    try:
        info = _gateway(ctx).get_payment_instructions(session_id)
    except TurnstileError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    click.echo(f"Send:       {info['amount']} {info['currency']} ({info['amount_wei']} wei)")
    click.echo(f"To:         {info['address']}")
    click.echo(f"Chain:      {info['chain_id']}")
    click.echo(f"Reference:  {info['correlator']}")
    click.echo(f"Valid until: {_ts(info['expires_at'])}")


@main.command()
@click.argument("session_id")
@click.option("--tx", "tx_ref", default=None, help="Verify this transaction hash")
@click.option("--sender", default=None, help="Require this sender address")
@click.pass_context
def check(ctx: click.Context, session_id: str, tx_ref: Optional[str], sender: Optional[str]):
    """Check the ledger for a session's payment."""
    gateway = _gateway(ctx)
    try:
        if tx_ref:
            result = gateway.verify_transaction(session_id, tx_ref, sender=sender)
        else:
            result = gateway.check_payment(session_id, sender=sender)
    except TurnstileError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if result["verified"]:
        click.echo(f"✅ Payment {result['status']}: {result['tx_ref']}")
        click.echo(f"   Access: {result['reason']} until {_ts(result['access_expires_at'])}")
    elif result["status"] == "unavailable":
        click.echo(f"⚠️  Ledger unavailable: {result['detail']}", err=True)
        sys.exit(2)
    else:
        click.echo(f"❌ No payment yet ({result['status']}): {result['detail'] or ''}")
        sys.exit(1)


@main.command()
@click.option("--session", "session_id", default=None, help="Sweep only this session")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def sweep(ctx: click.Context, session_id: Optional[str], as_json: bool):
    """Sweep funded session addresses to the operator address."""
    gateway = _gateway(ctx)
    try:
        if session_id:
            outcome = gateway.admin_sweep("one", session_id)
        else:
            outcome = gateway.admin_sweep("all")
    except TurnstileError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if as_json:
        _emit_json(outcome.to_dict())
    else:
        click.echo(
            f"Sweep: attempted={outcome.attempted} succeeded={outcome.succeeded} "
            f"failed={outcome.failed} skipped={outcome.skipped}"
        )
        click.echo(f"Moved: {outcome.to_dict()['moved_display']}")
        for err in outcome.errors:
            click.echo(f"  ❌ {err['address']}: {err['reason']}")
    if outcome.failed:
        sys.exit(1)


@main.command()
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
@click.pass_context
def stats(ctx: click.Context, as_json: bool):
    """Show user and revenue statistics."""
    gateway = _gateway(ctx)
    data = gateway.admin_stats()
    transfers = gateway.admin_transfer_stats()
    if as_json:
        report = {"users": data, "transfers": transfers}
        if gateway.audit is not None:
            try:
                report["audit"] = gateway.audit.summary()
            except AuditChainError as e:
                report["audit"] = {"error": str(e)}
        _emit_json(report)
        return
    click.echo(f"Users:     {data['total_users']} total, {data['trial_users']} trial, {data['paid_users']} paid")
    click.echo(f"Collected: {data['total_collected']}")
    click.echo(f"Operator:  {transfers['operator_address']}")
    click.echo(f"Sweep threshold: {transfers['threshold']}")
    if data["recent_payments"]:
        click.echo("Recent payments:")
        for p in data["recent_payments"]:
            click.echo(f"  {_ts(p['received_at'])}  {p['amount']}  {p['tx_ref'][:18]}  ({p['session_id']})")


@main.command()
@click.pass_context
def reap(ctx: click.Context):
    """Delete expired sessions now."""
    removed = _gateway(ctx).reap()
    click.echo(f"Reaped {removed} expired session(s)")


@main.command()
@click.option("--session", "session_id", default=None, help="Filter by session ID")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--verify", "verify_only", is_flag=True, help="Only check the hash chain")
@click.pass_context
def audit(ctx: click.Context, session_id: Optional[str], limit: int, verify_only: bool):
    """View or verify the audit trail."""
    trail = _gateway(ctx).audit
    if trail is None:
        click.echo("❌ No audit trail configured", err=True)
        sys.exit(1)
    try:
        if verify_only:
            click.echo(f"✅ Audit chain intact ({trail.verify()} events)")
            return
        events = trail.read_events(session_id=session_id, limit=limit)
    except AuditChainError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return
    for event in events:
        status = "✅" if event.success else "❌"
        amount = f" {format_ether(int(event.amount_wei))}" if event.amount_wei else ""
        session = f" [{event.session_id[:8]}]" if event.session_id else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {_ts(event.timestamp)} {status} {event.event_type}{session}{amount}{reason}")


if __name__ == "__main__":
    main()
