"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, schema rebuilt for every test
- Seed congregation, options, users and territory
- JWT session cookies per role
- HTTPX AsyncClient with the CSRF header
"""
import os
import uuid
from dataclasses import dataclass
from typing import AsyncGenerator, Generator

# Must be set before any mapper module reads settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ.setdefault("INTERNAL_SECRET", "test-internal-secret")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from mapper.core.deps import COOKIE_NAME, get_db
from mapper.core.security import create_session_token
from mapper.db.base import Base
from mapper.db.enums import AddressStatus, MapType, Role
from mapper.db.models import Address, Congregation, Map, Option, Territory, User
from mapper.db.session import SessionLocal, engine
from mapper.main import app


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    The in-memory engine uses a single shared connection, so sessions opened
    by code under test (internal endpoints, CLI) see the same data.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def congregation(db: Session) -> Congregation:
    congregation = Congregation(name="Test Congregation", max_tries=2, expiry_hours=None)
    db.add(congregation)
    db.flush()
    return congregation


@pytest.fixture(scope="function")
def default_option(db: Session, congregation: Congregation) -> Option:
    option = Option(
        congregation_id=congregation.id,
        code="HDB",
        description="Residential",
        sequence=1,
        is_countable=True,
        is_default=True,
    )
    db.add(option)
    db.flush()
    return option


@pytest.fixture(scope="function")
def business_option(db: Session, congregation: Congregation) -> Option:
    option = Option(
        congregation_id=congregation.id,
        code="BIZ",
        description="Business",
        sequence=2,
        is_countable=False,
        is_default=False,
    )
    db.add(option)
    db.flush()
    return option


@pytest.fixture(scope="function")
def territory(db: Session, congregation: Congregation, default_option: Option) -> Territory:
    territory = Territory(congregation_id=congregation.id, code="T1", description="North")
    db.add(territory)
    db.commit()
    return territory


def _make_user(db: Session, congregation: Congregation, role: Role) -> User:
    user = User(
        congregation_id=congregation.id,
        email=f"{role.value}-{uuid.uuid4().hex[:8]}@test.com",
        name=f"Test {role.value}",
        role=role.value,
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture(scope="function")
def admin_user(db: Session, congregation: Congregation) -> User:
    return _make_user(db, congregation, Role.ADMINISTRATOR)


@pytest.fixture(scope="function")
def conductor_user(db: Session, congregation: Congregation) -> User:
    return _make_user(db, congregation, Role.CONDUCTOR)


@pytest.fixture(scope="function")
def publisher_user(db: Session, congregation: Congregation) -> User:
    return _make_user(db, congregation, Role.READ_ONLY)


# =============================================================================
# Builders
# =============================================================================

def _make_map(
    db: Session,
    territory: Territory,
    option: Option,
    codes: list[str],
    floors: list[int] | None = None,
    coordinates: str | None = '{"lat": 1.3, "lng": 103.8}',
    description: str = "Block 1",
    progress: int = 0,
) -> Map:
    """Map with one not_done address per (floor, code), sequences 1..n."""
    floors = floors or [1]
    map_record = Map(
        congregation_id=territory.congregation_id,
        territory_id=territory.id,
        description=description,
        type=MapType.MULTI.value if len(floors) > 1 else MapType.SINGLE.value,
        floors=len(floors),
        coordinates=coordinates,
        progress=progress,
    )
    db.add(map_record)
    db.flush()
    for floor in floors:
        for sequence, code in enumerate(codes, start=1):
            db.add(Address(
                congregation_id=territory.congregation_id,
                territory_id=territory.id,
                map_id=map_record.id,
                floor=floor,
                code=code,
                sequence=sequence,
                status=AddressStatus.NOT_DONE.value,
                options=[option],
            ))
    db.commit()
    return map_record


def _set_statuses(db: Session, map_record: Map, statuses: list[tuple[str, int]]) -> None:
    """Assign (status, not_home_tries) to the map's addresses in sequence order."""
    addresses = (
        db.query(Address)
        .filter(Address.map_id == map_record.id)
        .order_by(Address.floor, Address.sequence)
        .all()
    )
    for address, (status, tries) in zip(addresses, statuses):
        address.status = status
        address.not_home_tries = tries
    db.commit()


@pytest.fixture
def make_map():
    return _make_map


@pytest.fixture
def set_statuses():
    return _set_statuses


# =============================================================================
# Auth Fixtures
# =============================================================================

@dataclass
class TestAuth:
    """Test authentication context."""
    user: User
    token: str
    cookie_name: str = COOKIE_NAME


def make_auth(user: User) -> TestAuth:
    token = create_session_token(
        user_id=user.id,
        congregation_id=user.congregation_id,
        role=user.role,
        token_version=user.token_version,
    )
    return TestAuth(user=user, token=token)


def _override_db(db: Session):
    def override_get_db():
        yield db
    return override_get_db


async def _client_for(db: Session, auth: TestAuth | None) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_db] = _override_db(db)
    cookies = {auth.cookie_name: auth.token} if auth else None
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        cookies=cookies,
        headers={"X-Requested-With": "XMLHttpRequest"},  # CSRF header
    ) as c:
        yield c
    app.dependency_overrides.clear()


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated client."""
    async for c in _client_for(db, None):
        yield c


@pytest.fixture(scope="function")
async def admin_client(db: Session, admin_user: User) -> AsyncGenerator[AsyncClient, None]:
    async for c in _client_for(db, make_auth(admin_user)):
        yield c


@pytest.fixture(scope="function")
async def conductor_client(db: Session, conductor_user: User) -> AsyncGenerator[AsyncClient, None]:
    async for c in _client_for(db, make_auth(conductor_user)):
        yield c


@pytest.fixture(scope="function")
async def publisher_client(db: Session, publisher_user: User) -> AsyncGenerator[AsyncClient, None]:
    async for c in _client_for(db, make_auth(publisher_user)):
        yield c
