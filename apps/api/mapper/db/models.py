"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from mapper.db.base import Base
from mapper.db.enums import AddressStatus, AssignmentType, MapType, Role
from mapper.db.types import AggregatesType, MapAggregates


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Congregation & Users
# =============================================================================

class Congregation(Base):
    """
    Tenant root. Every territory, map, address, option and assignment
    belongs to exactly one congregation.
    """
    __tablename__ = "congregations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    # Not-home retries before an address counts as completed
    max_tries: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    # Lifetime of quicklink assignments; None falls back to 24h
    expiry_hours: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timezone: Mapped[str] = mapped_column(String(50), default="UTC", nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    territories: Mapped[list["Territory"]] = relationship(back_populates="congregation")
    options: Mapped[list["Option"]] = relationship(back_populates="congregation")


class User(Base):
    """Congregation member (publisher, conductor or administrator)."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    congregation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("congregations.id", ondelete="CASCADE"), nullable=False
    )
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(30), default=Role.READ_ONLY.value, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Bumped to revoke every outstanding session token
    token_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    congregation: Mapped[Congregation] = relationship()


# =============================================================================
# Territory / Map / Address containment tree
# =============================================================================

class Territory(Base):
    """
    Group of maps. `progress` and `aggregates` are derived from the
    territory's addresses and only written by the aggregation service.
    """
    __tablename__ = "territories"
    __table_args__ = (
        UniqueConstraint("congregation_id", "code", name="uq_territory_code"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    congregation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("congregations.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    aggregates: Mapped[MapAggregates | None] = mapped_column(AggregatesType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    congregation: Mapped[Congregation] = relationship(back_populates="territories")
    maps: Mapped[list["Map"]] = relationship(back_populates="territory")


class Map(Base):
    """
    Unit of canvassing work: a block or street, optionally split into floors.

    `coordinates` is stored as raw JSON text ({"lat": .., "lng": ..}) and may
    be malformed; readers must tolerate that.
    """
    __tablename__ = "maps"
    __table_args__ = (
        Index("idx_maps_territory", "territory_id"),
        Index("idx_maps_updated", "updated_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    congregation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("congregations.id", ondelete="CASCADE"), nullable=False
    )
    territory_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("territories.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    type: Mapped[str] = mapped_column(String(10), default=MapType.SINGLE.value, nullable=False)
    # Floor count recorded at creation, kept in step by add/remove floor.
    # Only consulted when the map has no addresses to derive floors from.
    floors: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    coordinates: Mapped[str | None] = mapped_column(Text, nullable=True)
    aggregates: Mapped[MapAggregates | None] = mapped_column(AggregatesType, nullable=True)
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    territory: Mapped[Territory] = relationship(back_populates="maps")


address_options = Table(
    "address_options",
    Base.metadata,
    Column("address_id", Uuid, ForeignKey("addresses.id", ondelete="CASCADE"), primary_key=True),
    Column("option_id", Uuid, ForeignKey("options.id", ondelete="CASCADE"), primary_key=True),
)


class Address(Base):
    """
    One unit on one floor of a map.

    `code` repeats across floors of the same map; `sequence` orders codes
    and is shared by every row with the same code.
    """
    __tablename__ = "addresses"
    __table_args__ = (
        Index("idx_addresses_map_floor", "map_id", "floor"),
        Index("idx_addresses_map_code", "map_id", "code"),
        Index("idx_addresses_territory_status", "territory_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    congregation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("congregations.id", ondelete="CASCADE"), nullable=False
    )
    territory_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("territories.id", ondelete="CASCADE"), nullable=False
    )
    map_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("maps.id", ondelete="CASCADE"), nullable=False
    )
    floor: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=AddressStatus.NOT_DONE.value, nullable=False
    )
    not_home_tries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    dnc_time: Mapped[datetime | None] = mapped_column(nullable=True)
    last_notes_updated: Mapped[datetime | None] = mapped_column(nullable=True)
    last_notes_updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)

    # The address "type": zero or more congregation options
    options: Mapped[list["Option"]] = relationship(secondary=address_options, lazy="selectin")


class Option(Base):
    """
    Per-congregation address type label.

    Exactly one option per congregation is the default; countable options
    decide which addresses contribute to progress.
    """
    __tablename__ = "options"
    __table_args__ = (
        UniqueConstraint("congregation_id", "code", name="uq_option_code"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    congregation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("congregations.id", ondelete="CASCADE"), nullable=False
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str | None] = mapped_column(String(200), nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_countable: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    congregation: Mapped[Congregation] = relationship(back_populates="options")


# =============================================================================
# Assignments
# =============================================================================

class Assignment(Base):
    """
    Time-limited claim on a map by a publisher or an anonymous link.

    Active = type normal and expiry_date in the future.
    """
    __tablename__ = "assignments"
    __table_args__ = (
        Index("idx_assignments_map_active", "map_id", "type", "expiry_date"),
        Index("idx_assignments_expiry", "expiry_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    map_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("maps.id", ondelete="CASCADE"), nullable=False
    )
    congregation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("congregations.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    type: Mapped[str] = mapped_column(
        String(20), default=AssignmentType.NORMAL.value, nullable=False
    )
    publisher: Mapped[str | None] = mapped_column(String(255), nullable=True)
    expiry_date: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
