"""CLI tools for Ministry Mapper administration."""

from datetime import datetime, timezone
from uuid import UUID

import click
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from mapper.db.enums import Role
from mapper.db.models import Congregation, Option, Territory, User
from mapper.db.session import SessionLocal
from mapper.services import aggregation_service, assignment_service


@click.group()
def cli():
    """Ministry Mapper CLI tools."""
    pass


@cli.command()
@click.option("--name", required=True, help="Congregation name")
@click.option("--admin-email", required=True, help="Administrator email address")
@click.option("--admin-name", required=True, help="Administrator display name")
@click.option("--max-tries", default=1, show_default=True, help="Not-home retries before an address counts as done")
@click.option("--expiry-hours", default=None, type=int, help="Quicklink assignment lifetime in hours")
@click.option("--timezone", "tz", default="UTC", show_default=True, help="Congregation timezone")
def create_congregation(
    name: str,
    admin_email: str,
    admin_name: str,
    max_tries: int,
    expiry_hours: int | None,
    tz: str,
):
    """
    Create a congregation with its default option and first administrator.

    Example:
        python -m mapper.cli create-congregation --name "North" \\
            --admin-email "admin@example.com" --admin-name "Admin"
    """
    db = SessionLocal()
    try:
        existing = db.execute(
            select(User).where(User.email == admin_email.lower())
        ).scalars().first()
        if existing:
            click.echo(f"❌ User already exists: {admin_email}")
            return

        congregation = Congregation(
            name=name,
            max_tries=max_tries,
            expiry_hours=expiry_hours,
            timezone=tz,
        )
        db.add(congregation)
        db.flush()

        # Every congregation needs exactly one default option
        db.add(Option(
            congregation_id=congregation.id,
            code="default",
            description="Default",
            sequence=1,
            is_countable=True,
            is_default=True,
        ))
        db.add(User(
            congregation_id=congregation.id,
            email=admin_email.lower(),
            name=admin_name,
            role=Role.ADMINISTRATOR.value,
        ))
        db.commit()

        click.echo(f"✓ Created congregation: {name}")
        click.echo(f"  ID: {congregation.id}")
        click.echo(f"✓ Created administrator {admin_email}")
    except SQLAlchemyError as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
@click.option("--email", required=True, help="User email to revoke sessions for")
def revoke_sessions(email: str):
    """
    Revoke all sessions for a user by bumping their token_version.

    Example:
        python -m mapper.cli revoke-sessions --email "user@example.com"
    """
    db = SessionLocal()
    try:
        user = db.execute(select(User).where(User.email == email.lower())).scalars().first()
        if not user:
            click.echo(f"❌ User not found: {email}")
            return

        old_version = user.token_version
        user.token_version += 1
        db.commit()

        click.echo(f"✓ Revoked all sessions for {email}")
        click.echo(f"  Token version: {old_version} → {user.token_version}")
    except SQLAlchemyError as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command()
@click.option("--territory-id", required=True, help="Territory UUID")
def recompute_territory(territory_id: str):
    """Recompute every map of a territory, then the territory itself."""
    db = SessionLocal()
    try:
        if not aggregation_service.refresh_territory_and_maps(db, UUID(territory_id)):
            click.echo(f"❌ Recompute failed for territory {territory_id}")
            raise SystemExit(1)
        click.echo(f"✓ Recomputed territory {territory_id}")
    finally:
        db.close()


@cli.command()
def recompute_all():
    """Recompute aggregates of every territory."""
    db = SessionLocal()
    try:
        territory_ids = db.execute(select(Territory.id)).scalars().all()
        failed = 0
        for territory_id in territory_ids:
            if not aggregation_service.refresh_territory_and_maps(db, territory_id):
                failed += 1
                click.echo(f"❌ Failed: {territory_id}")
        click.echo(f"✓ Recomputed {len(territory_ids) - failed} of {len(territory_ids)} territories")
        if failed:
            raise SystemExit(1)
    finally:
        db.close()


@cli.command()
def cleanup_assignments():
    """Delete every expired assignment."""
    db = SessionLocal()
    try:
        removed = assignment_service.cleanup_expired_assignments(db, datetime.now(timezone.utc))
        db.commit()
        click.echo(f"✓ Removed {removed} expired assignments")
    except SQLAlchemyError as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


if __name__ == "__main__":
    cli()
