"""membership_lifecycle.run_membership

Unified membership CLI.

Modes:
  transactions   apply paid payment transactions (joins and renewals)
  expirations    deliver due action-schedule entries (reminders, expiry)
  migrations     migrate legacy member rows into the member list

Every run:
  - loads the YAML run config (action specs, groups, reply-to)
  - holds the data-directory lock while it loads, processes and saves
  - writes per-record errors to --errors-path and a JSON run report
  - persists the working set (unless --dry-run) even when some records failed,
    then exits non-zero if any record failed

Usage:
    membership-run --mode transactions --data-dir ./data --config config/membership.yml
    membership-run --mode expirations --data-dir ./data --today 2026-03-01 --dry-run
"""

from __future__ import annotations

import html
import logging
import os
import sys
import uuid
from datetime import date, datetime, timezone
from pathlib import Path

import click
import yaml

from membership_lifecycle.action_specs import (
    ACTION_SPEC_HEADERS,
    ActionSpec,
    ConfigValidationError,
    RunConfig,
    load_run_config,
    specs_from_rows,
)
from membership_lifecycle.dates import parse_date
from membership_lifecycle.migrate_members import build_migrations_report, migrate_members
from membership_lifecycle.notify import Message, SendEmail
from membership_lifecycle.process_expirations import (
    build_expirations_report,
    process_expirations,
)
from membership_lifecycle.process_transactions import (
    build_transactions_report,
    process_transactions,
)
from membership_lifecycle.shared import RecordError, RejectWriter, RunContext, write_run_report
from membership_lifecycle.store import (
    RunLockedError,
    load_working_set,
    read_sheet,
    run_lock,
    save_working_set,
)
from membership_lifecycle.transports import (
    DEFAULT_GROUP_API_URL,
    HttpGroupClient,
    LoggingEmailSender,
    LoggingGroupClient,
    SmtpEmailSender,
)

log = logging.getLogger(__name__)


def _fatal(run_id: str, message: str) -> None:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _build_email_sender(
    run_id: str,
    config: RunConfig,
    log_only: bool,
    smtp_host: str | None,
    smtp_port: int,
    smtp_user: str | None,
    smtp_pass_env: str,
    smtp_from: str | None,
    smtp_starttls: bool,
) -> SendEmail:
    if log_only:
        return LoggingEmailSender(reply_to=config.reply_to)
    if not smtp_host or not smtp_from:
        _fatal(run_id, "--smtp-host and --smtp-from are required unless --log-only-emails or --dry-run is set")
    # Read credentials from env, never from CLI args
    password = os.environ.get(smtp_pass_env) if smtp_user else None
    if smtp_user and not password:
        _fatal(run_id, f"env var {smtp_pass_env} must be set when --smtp-user is given")
    return SmtpEmailSender(
        host=smtp_host,  # type: ignore[arg-type]
        sender=smtp_from,  # type: ignore[arg-type]
        port=smtp_port,
        username=smtp_user,
        password=password,
        reply_to=config.reply_to,
        starttls=smtp_starttls,
    )


def _build_group_client(
    run_id: str,
    log_only: bool,
    group_api_url: str,
    group_token_env: str,
) -> LoggingGroupClient | HttpGroupClient:
    if log_only:
        return LoggingGroupClient()
    token = os.environ.get(group_token_env, "")
    if not token:
        _fatal(run_id, f"env var {group_token_env} must be set unless --log-only-groups or --dry-run is set")
    return HttpGroupClient(token=token, base_url=group_api_url)


def _load_sheet_specs(run_id: str, path: Path) -> dict[str, ActionSpec]:
    """Action specs from an ActionSpecs sheet; invalid rows are reported and skipped."""
    headers, rows = read_sheet(path)
    missing = set(ACTION_SPEC_HEADERS) - set(headers)
    if missing:
        _fatal(run_id, f"{path} missing headers: {sorted(missing)}")
    spec_errors: list[str] = []
    specs = specs_from_rows(rows, spec_errors)
    for msg in spec_errors:
        click.echo(f"[{run_id}] WARNING: {path.name} {msg}", err=True)
    if not specs:
        _fatal(run_id, f"{path} has no valid action specs")
    return specs


def _notify_errors(
    send_email: SendEmail,
    to: str,
    run_id: str,
    mode: str,
    errors: list[RecordError],
) -> None:
    """Mail a summary of collected record errors; a failed send is only logged."""
    items = "".join(f"<li>{html.escape(str(e))}</li>" for e in errors)
    message = Message(
        to=to,
        subject=f"Membership {mode} run {run_id}: {len(errors)} error(s)",
        html_body=f"<p>The following records could not be processed:</p><ul>{items}</ul>",
    )
    try:
        send_email(message)
    except Exception as exc:
        log.error("Error notification to %s failed: %s", to, exc)


@click.command()
@click.option(
    "--mode",
    default="transactions",
    type=click.Choice(["transactions", "expirations", "migrations"]),
    show_default=True,
    help="Processing mode",
)
@click.option("--data-dir", required=True, type=click.Path(file_okay=False), help="Directory holding the sheet CSV files")
@click.option("--config", "config_path", default="config/membership.yml", show_default=True, type=click.Path(), help="Run-config YAML")
@click.option("--action-specs-path", default=None, type=click.Path(dir_okay=False), help="ActionSpecs sheet CSV (Type, Offset, Subject, Body); replaces the action_specs in --config")
@click.option("--today", default=None, help="Run date (YYYY-MM-DD); defaults to the local date")
@click.option("--dry-run", is_flag=True, default=False, help="Log side effects and skip write-back")
# transports
@click.option("--log-only-emails", is_flag=True, default=False, help="Log emails instead of sending them")
@click.option("--log-only-groups", is_flag=True, default=False, help="Log group adds/removes instead of calling the API")
@click.option("--smtp-host", default=None)
@click.option("--smtp-port", default=587, type=int, show_default=True)
@click.option("--smtp-user", default=None)
@click.option("--smtp-pass-env", default="MEMBERSHIP_SMTP_PASSWORD", show_default=True, help="Env var name holding the SMTP password")
@click.option("--smtp-from", default=None, help="From address for member email")
@click.option("--smtp-starttls/--no-smtp-starttls", default=True, show_default=True)
@click.option("--group-api-url", default=DEFAULT_GROUP_API_URL, show_default=True)
@click.option("--group-token-env", default="MEMBERSHIP_GROUP_TOKEN", show_default=True, help="Env var name holding the group API bearer token")
# reporting
@click.option(
    "--errors-path",
    default="./artifacts/rejects/membership_errors.csv",
    show_default=True,
)
@click.option("--reports-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--error-notify-to", default=None, help="Email a summary of record errors to this address")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    data_dir: str,
    config_path: str,
    action_specs_path: str | None,
    today: str | None,
    dry_run: bool,
    log_only_emails: bool,
    log_only_groups: bool,
    smtp_host: str | None,
    smtp_port: int,
    smtp_user: str | None,
    smtp_pass_env: str,
    smtp_from: str | None,
    smtp_starttls: bool,
    group_api_url: str,
    group_token_env: str,
    errors_path: str,
    reports_dir: str,
    run_id: str | None,
    error_notify_to: str | None,
    log_level: str,
) -> None:
    """Membership lifecycle runner."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    try:
        config = load_run_config(Path(config_path))
    except (FileNotFoundError, ConfigValidationError, yaml.YAMLError) as e:
        _fatal(run_id, f"invalid run config {config_path}: {e}")
    click.echo(f"[{run_id}] Config version={config.version} hash={config.yaml_hash[:12]}")

    run_today = date.today() if today is None else parse_date(today)
    if run_today is None:
        _fatal(run_id, f"--today is not a date: {today!r}")

    action_specs = config.action_specs
    if action_specs_path:
        action_specs = _load_sheet_specs(run_id, Path(action_specs_path))
        click.echo(f"[{run_id}] Loaded {len(action_specs)} action spec(s) from {action_specs_path}")

    ctx = RunContext(
        today=run_today,  # type: ignore[arg-type]
        action_specs=action_specs,
        groups=config.auto_groups,
        schedule_immediate_actions=config.schedule_immediate_actions,
    )
    send_email = _build_email_sender(
        run_id, config, log_only_emails or dry_run,
        smtp_host, smtp_port, smtp_user, smtp_pass_env, smtp_from, smtp_starttls,
    )
    groups = _build_group_client(run_id, log_only_groups or dry_run, group_api_url, group_token_env)

    data_path = Path(data_dir)
    rejects = RejectWriter(Path(errors_path))
    try:
        with run_lock(data_path):
            ws = load_working_set(data_path, rejects)
            click.echo(f"[{run_id}] Processing {mode} for {ctx.today.isoformat()}...")

            if mode == "transactions":
                result = process_transactions(
                    ws.transactions, ws.members, ws.schedule, ctx, groups.add, send_email,
                )
                report = build_transactions_report(result, dry_run=dry_run)
                if result.has_pending_payments:
                    click.echo(f"[{run_id}] Some transactions are awaiting payment and were left open.")
            elif mode == "expirations":
                result = process_expirations(
                    ws.members, ws.schedule, ctx, groups.remove, send_email, ws.expired_members,
                )
                report = build_expirations_report(result, dry_run=dry_run)
            else:
                result = migrate_members(
                    ws.legacy_rows, ws.members, ws.schedule, ctx, groups.add, send_email,
                )
                report = build_migrations_report(result, dry_run=dry_run)

            click.echo(report)
            for error in result.errors:
                rejects.write_record_error(error)

            if dry_run:
                click.echo(f"[{run_id}] [dry-run] No changes written.")
            else:
                written = save_working_set(ws)
                click.echo(f"[{run_id}] Saved {len(written)} sheet(s) to {data_path}")
    except RunLockedError as e:
        _fatal(run_id, str(e))
    finally:
        rejects.close()

    report_path = write_run_report(
        run_id, started_at, mode, dry_run,
        {
            "data_dir": str(data_path),
            "config_path": config_path,
            "config_version": config.version,
            "config_hash": config.yaml_hash,
            "action_specs_path": action_specs_path or "",
            "today": ctx.today.isoformat(),
        },
        result.counters,
        reports_dir=Path(reports_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if result.errors:
        click.echo(f"[{run_id}] Errors written to {errors_path}", err=True)
        if error_notify_to:
            _notify_errors(send_email, error_notify_to, run_id, mode, result.errors)
        click.echo(
            f"[{run_id}] {len(result.errors)} record error(s); exiting non-zero",
            err=True,
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
