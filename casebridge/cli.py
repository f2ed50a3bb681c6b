"""CLI tools for casebridge administration."""

import asyncio
from uuid import UUID

import click

from casebridge.db.enums import POLLED_ENTITY_TYPES
from casebridge.db.models import LegacyCredential, Office
from casebridge.db.session import SessionLocal
from casebridge.services import (
    job_service,
    legacy_client,
    outbox_service,
    reconciliation_service,
    reference_data_service,
)


@click.group()
def cli():
    """casebridge CLI tools."""
    pass


@cli.command()
@click.option("--name", required=True, help="Office name")
@click.option("--subdomain", required=True, help="Legacy subdomain (https://<subdomain>.farier.com)")
@click.option("--autonomous/--no-autonomous", default=False, help="Auto-accept confident triage")
@click.option("--threshold", default=0.9, show_default=True, help="Autonomy confidence threshold")
def create_office(name: str, subdomain: str, autonomous: bool, threshold: float):
    """
    Register an office.

    Example:
        casebridge create-office --name "Anytown Office" --subdomain anytown
    """
    subdomain = subdomain.lower().strip()
    if not subdomain.replace("-", "").isalnum():
        raise click.ClickException("Subdomain must be alphanumeric (with optional hyphens)")
    if not 0.0 <= threshold <= 1.0:
        raise click.ClickException("Threshold must be between 0 and 1")

    db = SessionLocal()
    try:
        if db.query(Office).filter(Office.subdomain == subdomain).first():
            raise click.ClickException(f"Office with subdomain '{subdomain}' already exists")
        office = Office(
            name=name,
            subdomain=subdomain,
            autonomous_triage=autonomous,
            autonomy_threshold=threshold,
        )
        db.add(office)
        db.commit()
        click.echo(f"✓ Created office: {name}")
        click.echo(f"  ID: {office.id}")
        click.echo(f"  Subdomain: {subdomain}")
    finally:
        db.close()


@cli.command()
@click.option("--office-id", required=True, type=click.UUID)
@click.option("--email", required=True, help="Legacy API login")
@click.option("--password", prompt=True, hide_input=True)
@click.option("--base-url", default=None, help="Override the legacy base URL")
def set_credentials(office_id: UUID, email: str, password: str, base_url: str | None):
    """Store (encrypted) legacy API credentials for an office."""
    db = SessionLocal()
    try:
        if db.get(Office, office_id) is None:
            raise click.ClickException(f"Office {office_id} not found")
        credential = (
            db.query(LegacyCredential).filter(LegacyCredential.office_id == office_id).first()
        )
        if credential is None:
            credential = LegacyCredential(office_id=office_id)
            db.add(credential)
        credential.email = email
        credential.password = password
        credential.api_base_url = base_url
        db.commit()
        legacy_client.invalidate_session(office_id)
        click.echo(f"✓ Credentials saved for office {office_id}")
    finally:
        db.close()


async def _with_client(office_id: UUID, action):
    db = SessionLocal()
    try:
        async with legacy_client.build_client(db, office_id) as client:
            return await action(db, client)
    finally:
        db.close()


@cli.command()
@click.option("--office-id", required=True, type=click.UUID)
@click.option(
    "--entity-type",
    type=click.Choice([e.value for e in POLLED_ENTITY_TYPES]),
    default=None,
    help="Only poll one entity type",
)
@click.option("--full", is_flag=True, help="Ignore the watermark and re-read everything")
def poll(office_id: UUID, entity_type: str | None, full: bool):
    """Run one reconciliation cycle against legacy."""
    types = [entity_type] if entity_type else [e.value for e in POLLED_ENTITY_TYPES]

    async def action(db, client):
        return [
            await reconciliation_service.poll_entity(db, office_id, t, client=client, full=full)
            for t in types
        ]

    try:
        results = asyncio.run(_with_client(office_id, action))
    except legacy_client.LegacyApiError as e:
        raise click.ClickException(f"Legacy API error: {e}")
    for result in results:
        status = "skipped (already running)" if result.skipped else (
            f"{result.pages} pages, {result.seen} seen, {result.created} new, "
            f"{result.conflicts} conflicts, {result.invalid} invalid"
        )
        click.echo(f"✓ {result.entity_type}: {status}")


@cli.command()
@click.option("--office-id", required=True, type=click.UUID)
def sync_reference_data(office_id: UUID):
    """Refresh case types, statuses, caseworkers and other reference lists."""

    async def action(db, client):
        return await reference_data_service.sync_reference_data(db, office_id, client=client)

    try:
        counts = asyncio.run(_with_client(office_id, action))
    except legacy_client.LegacyApiError as e:
        raise click.ClickException(f"Legacy API error: {e}")
    for ref_type, count in counts.items():
        click.echo(f"✓ {ref_type}: {count}")


@cli.command()
@click.option("--older-than-days", type=int, default=None, help="Defaults to QUEUE_RETENTION_DAYS")
def purge_queue(older_than_days: int | None):
    """Delete finished jobs and outbox rows past the retention window."""
    db = SessionLocal()
    try:
        jobs = job_service.purge_terminal_jobs(db, older_than_days=older_than_days)
        outbox = outbox_service.purge_processed(db, older_than_days=older_than_days)
        click.echo(f"✓ Deleted {jobs} jobs and {outbox} outbox messages")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
