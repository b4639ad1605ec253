"""Operator CLI for the admin role ledger.

Why:
    Two tasks cannot run through the web panel. Seeding the very first
    SuperAdmin (no actor holds a tier yet) and verifying the activity log's
    hash chain after an incident or a restore.

Usage:
    python -m tools.admin_roles_cli seed-super-admin <SUBJECT_ID>
    python -m tools.admin_roles_cli verify-audit

Both commands read the same environment as the web service
(`ADMIN_ROLES_BACKEND`, DSN variables, `DIRECTORY_BACKEND`). Against the
in-memory backend they only make sense in tests.
"""
from __future__ import annotations

import json
import logging

import click

from admin_roles.config import AdminRolesConfig
from admin_roles.errors import AdminRolesError, AuditWriteFailure
from admin_roles.wiring import build_service

logger = logging.getLogger("campus.tools.admin_roles")


def _load_service(ctx: click.Context):
    service = (ctx.obj or {}).get("service")
    if service is not None:
        return service
    try:
        config = AdminRolesConfig.from_env()
    except ValueError as exc:
        raise click.ClickException(f"Invalid configuration: {exc}") from exc
    return build_service(config)


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log at DEBUG level.")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Administer role grants outside the web panel."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(levelname)s:%(name)s:%(message)s")
    ctx.ensure_object(dict)


@cli.command("seed-super-admin")
@click.argument("subject_id")
@click.pass_context
def seed_super_admin(ctx: click.Context, subject_id: str) -> None:
    """Grant SuperAdmin to SUBJECT_ID as the system (granted_by = NULL).

    Fails when the identity is unknown to the directory or already holds an
    active SuperAdmin grant. The grant is audited with an empty actor.
    """
    service = _load_service(ctx)
    try:
        grant = service.seed_super_admin(subject_id)
    except AuditWriteFailure as exc:
        # Grant is persisted; operators must reconcile the missing audit entry.
        grant_id = exc.grant.id if exc.grant is not None else "?"
        raise click.ClickException(f"Grant {grant_id} persisted but audit write failed: {exc.detail}") from exc
    except AdminRolesError as exc:
        raise click.ClickException(f"Seeding failed: {exc.code}") from exc
    except ValueError as exc:
        raise click.ClickException(f"Seeding failed: {exc}") from exc
    click.echo(f"Seeded SuperAdmin grant {grant.id} for {grant.subject_id}")


@cli.command("verify-audit")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print the verification report as JSON.")
@click.pass_context
def verify_audit(ctx: click.Context, as_json: bool) -> None:
    """Walk the activity log hash chain; exit non-zero when it is broken."""
    service = _load_service(ctx)
    try:
        report = service.audit.verify()
    except AdminRolesError as exc:
        raise click.ClickException(f"Verification failed: {exc.code}") from exc
    if as_json:
        click.echo(json.dumps(report, sort_keys=True))
    elif report["valid"]:
        click.echo(f"Audit chain intact ({report['checked']} entries checked)")
    else:
        click.echo(
            f"Audit chain BROKEN at sequence {report['broken_at']} ({report['reason']})",
            err=True,
        )
    if not report["valid"]:
        ctx.exit(1)


if __name__ == "__main__":  # pragma: no cover
    cli()
