from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from typing import AsyncGenerator, Dict, Optional
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.auth.security import create_access_token
from app.core.models import (
    AcademicYear,
    Branch,
    DistanceSlab,
    Enrollment,
    SchoolClass,
    TransportAssignment,
    TransportRoute,
    TuitionFeeStructure,
)
from app.db.session import Base, get_db
from app.main import app


TEST_DATABASE_URL = "sqlite+aiosqlite://"


@pytest.fixture()
async def engine():
    """Fresh in-memory database per test; StaticPool keeps every session on the same connection."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture()
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
async def client(session_factory) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client bound to the FastAPI app; each request gets its own session."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture()
async def seed(db_session: AsyncSession) -> SimpleNamespace:
    """
    One branch, one ACTIVE academic year, class "10th" with tuition 20,000 + book 1,500,
    and one transport route with an 8,000 distance slab.
    """
    branch = Branch(name="Main Campus", institution_type="SCHOOL")
    db_session.add(branch)
    await db_session.flush()
    year = AcademicYear(
        branch_id=branch.id,
        name="2025-2026",
        start_date=date(2025, 6, 1),
        end_date=date(2026, 3, 31),
        is_current=True,
        status="ACTIVE",
    )
    school_class = SchoolClass(branch_id=branch.id, name="10th")
    route = TransportRoute(branch_id=branch.id, route_no="R1", route_name="North loop")
    db_session.add_all([year, school_class, route])
    await db_session.flush()
    slab = DistanceSlab(
        branch_id=branch.id,
        academic_year_id=year.id,
        slab_name="0-5 km",
        min_distance_km=Decimal("0"),
        max_distance_km=Decimal("5"),
        fee_amount=Decimal("8000.00"),
    )
    structure = TuitionFeeStructure(
        branch_id=branch.id,
        academic_year_id=year.id,
        class_id=school_class.id,
        tuition_fee=Decimal("20000.00"),
        book_fee=Decimal("1500.00"),
    )
    db_session.add_all([slab, structure])
    await db_session.commit()
    return SimpleNamespace(
        branch_id=branch.id,
        academic_year_id=year.id,
        class_id=school_class.id,
        route_id=route.id,
        slab_id=slab.id,
        section_id=uuid4(),
    )


async def add_enrollment(
    session: AsyncSession,
    seed: SimpleNamespace,
    admission_no: str,
    *,
    with_transport: bool = False,
    class_id=None,
    status: str = "ACTIVE",
) -> Enrollment:
    enrollment = Enrollment(
        branch_id=seed.branch_id,
        academic_year_id=seed.academic_year_id,
        student_id=uuid4(),
        admission_no=admission_no,
        student_name=f"Student {admission_no}",
        class_id=class_id or seed.class_id,
        section_id=seed.section_id,
        status=status,
    )
    session.add(enrollment)
    await session.flush()
    if with_transport:
        session.add(
            TransportAssignment(
                enrollment_id=enrollment.id,
                route_id=seed.route_id,
                distance_slab_id=seed.slab_id,
                pickup_point="Gate 2",
            )
        )
    await session.commit()
    return enrollment


def make_token(
    seed: SimpleNamespace,
    *,
    role: str = "ACCOUNTANT",
    permissions: Optional[Dict[str, Dict[str, bool]]] = None,
    academic_year_status: str = "ACTIVE",
) -> str:
    if permissions is None:
        permissions = {"fees": {"create": True, "read": True, "update": True, "delete": True}}
    return create_access_token(
        subject={
            "user_id": uuid4(),
            "branch_id": seed.branch_id,
            "role": role,
            "permissions": permissions,
            "academic_year_id": seed.academic_year_id,
            "academic_year_status": academic_year_status,
        }
    )


@pytest.fixture()
def auth_headers(seed) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(seed)}"}


@pytest.fixture()
def admin_headers(seed) -> Dict[str, str]:
    return {"Authorization": f"Bearer {make_token(seed, role='ADMIN')}"}
