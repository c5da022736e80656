"""Reads and conditional writes on rental records."""

from typing import Any
from uuid import UUID

from sqlalchemy import ColumnElement, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from peerrent.core.exceptions import RecordNotFound
from peerrent.models.rental import Rental


async def compare_and_set(
    db: AsyncSession,
    rental: Rental,
    expected_status: str,
    values: dict[str, Any],
    *conditions: ColumnElement[bool],
) -> bool:
    """Write ``values`` only if the rental is unchanged since it was read.

    The row must still have ``expected_status`` and the version the caller
    read; extra ``conditions`` narrow the match further. The check and the
    write are a single UPDATE statement, so two callers racing out of the
    same source state cannot both succeed.

    Returns:
        True if this caller won and ``rental`` now reflects the new row.
    """
    stmt = (
        update(Rental)
        .where(
            Rental.id == rental.id,
            Rental.status == expected_status,
            Rental.version == rental.version,
            *conditions,
        )
        .values(version=Rental.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount != 1:
        return False
    await db.refresh(rental)
    return True


async def reload(db: AsyncSession, rental: Rental) -> Rental:
    """Re-read ``rental`` from the store, discarding in-memory state."""
    await db.refresh(rental)
    return rental


async def load_rental(db: AsyncSession, rental_id: UUID) -> Rental:
    """Fetch a rental fresh from the store or raise ``RecordNotFound``."""
    result = await db.execute(
        select(Rental)
        .where(Rental.id == rental_id)
        .execution_options(populate_existing=True)
    )
    rental = result.scalar_one_or_none()
    if rental is None:
        raise RecordNotFound("Rental", str(rental_id))
    return rental
