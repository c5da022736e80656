import os

os.environ.setdefault("DATABASE_URL_OVERRIDE", "sqlite+aiosqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import UTC, datetime, timedelta  # noqa: E402
from uuid import uuid4  # noqa: E402

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import peerrent.models  # noqa: E402,F401
from peerrent.config import settings  # noqa: E402
from peerrent.core.immutability import register_immutability_enforcement  # noqa: E402
from peerrent.core.security import Actor, ActorRole, create_actor_token  # noqa: E402
from peerrent.database import Base  # noqa: E402
from peerrent.domain.rental_state import DepositStatus, PaymentStatus, RentalStatus  # noqa: E402
from peerrent.gateways.base import PaymentResult, RefundResult, TransferResult  # noqa: E402
from peerrent.gateways.manual import ManualGateway  # noqa: E402
from peerrent.models.rental import Rental  # noqa: E402
from peerrent.services.dispute_service import DisputeService  # noqa: E402
from peerrent.services.refund_service import RefundService  # noqa: E402
from peerrent.services.rental_service import RentalService  # noqa: E402
from peerrent.services.settlement_service import SettlementService  # noqa: E402

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

register_immutability_enforcement()


class FlakyGateway(ManualGateway):
    """Manual gateway whose processor calls can be made to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_transfers = False
        self.fail_charges = False
        self.fail_deposit_captures = False
        self.fail_deposit_releases = False
        self.refund_failure: RefundResult | None = None
        self.transfer_calls = 0

    async def charge(self, *args, **kwargs):
        if self.fail_charges:
            return PaymentResult(success=False, error_message="card processor unavailable")
        return await super().charge(*args, **kwargs)

    async def transfer(self, *args, **kwargs):
        self.transfer_calls += 1
        if self.fail_transfers:
            return TransferResult(success=False, error_message="processor timeout")
        return await super().transfer(*args, **kwargs)

    async def refund(self, *args, **kwargs):
        if self.refund_failure is not None:
            return self.refund_failure
        return await super().refund(*args, **kwargs)

    async def capture_hold(self, *args, **kwargs):
        if self.fail_deposit_captures:
            return PaymentResult(success=False, error_message="capture declined")
        return await super().capture_hold(*args, **kwargs)

    async def release_hold(self, *args, **kwargs):
        if self.fail_deposit_releases:
            return PaymentResult(success=False, error_message="processor timeout")
        return await super().release_hold(*args, **kwargs)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def gateway():
    return FlakyGateway()


@pytest.fixture
def owner():
    return Actor(id=uuid4(), name="Olivia Owner", role=ActorRole.USER)


@pytest.fixture
def renter():
    return Actor(id=uuid4(), name="Ray Renter", role=ActorRole.USER)


@pytest.fixture
def admin():
    return Actor(id=uuid4(), name="Ada Admin", role=ActorRole.ADMIN)


@pytest.fixture
def outsider():
    return Actor(id=uuid4(), name="Nosy Neighbour", role=ActorRole.USER)


@pytest.fixture
def refund_service(gateway):
    return RefundService(gateway)


@pytest.fixture
def settlement_service(gateway):
    return SettlementService(gateway, settings)


@pytest.fixture
def rental_service(gateway, refund_service, settlement_service):
    return RentalService(
        gateway,
        settings,
        refunds=refund_service,
        settlement=settlement_service,
    )


@pytest.fixture
def dispute_service(gateway, refund_service, settlement_service):
    return DisputeService(
        gateway,
        settings,
        refunds=refund_service,
        settlement=settlement_service,
    )


@pytest.fixture
def make_rental(db, owner, renter):
    """Insert a committed rental directly in the requested state."""

    async def _make(
        status: RentalStatus = RentalStatus.APPROVED,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        total_price: int = 12000,
        security_deposit: int = 0,
        payout_eligible_at: datetime | None = None,
        payout_frozen: bool = False,
        owner_payout_account: str | None = "acct_owner_1",
    ) -> Rental:
        start_date = start_date or NOW + timedelta(hours=30)
        end_date = end_date or start_date + timedelta(days=2)
        paid = status not in (
            RentalStatus.PENDING,
            RentalStatus.APPROVED,
            RentalStatus.DECLINED,
            RentalStatus.CANCELLED,
        )
        if security_deposit:
            deposit_status = DepositStatus.HELD if paid else DepositStatus.PENDING
        else:
            deposit_status = DepositStatus.NONE
        if status == RentalStatus.COMPLETED_PENDING_PAYOUT and payout_eligible_at is None:
            payout_eligible_at = NOW + timedelta(hours=48)

        rental = Rental(
            item_id=uuid4(),
            item_title="Cordless drill",
            owner_id=owner.id,
            owner_name=owner.name,
            renter_id=renter.id,
            renter_name=renter.name,
            start_date=start_date,
            end_date=end_date,
            total_price=total_price,
            currency="usd",
            security_deposit=security_deposit,
            deposit_status=deposit_status.value,
            deposit_id="manual_au_seed" if deposit_status == DepositStatus.HELD else None,
            status=status.value,
            payment_status=(PaymentStatus.PAID if paid else PaymentStatus.UNPAID).value,
            payment_reference="manual_ch_seed" if paid else None,
            renter_confirmed_return=payout_eligible_at is not None,
            payout_eligible_at=payout_eligible_at,
            payout_frozen=payout_frozen,
            owner_payout_account=owner_payout_account,
            created_at=NOW - timedelta(days=3),
        )
        db.add(rental)
        await db.commit()
        return rental

    return _make


# ==================== HTTP ====================


@pytest.fixture
def auth_headers():
    def _headers(actor: Actor) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_actor_token(actor)}"}

    return _headers


@pytest.fixture
async def client(session_factory, gateway):
    from peerrent.api import deps
    from peerrent.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_now] = lambda: NOW
    app.dependency_overrides[deps.get_payment_gateway] = lambda: gateway
    app.dependency_overrides[deps.get_session_factory] = lambda: session_factory

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
