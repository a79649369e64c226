"""
Item lock map.

A product committed to an accepted offer or an open trade has a row in
item_locks. Locks are taken inside the caller's unit of work; the primary key
on product_id makes the check-and-set atomic across workers.
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import select, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ItemLocked, DependencyFailure
from app.models.item_lock import ItemLock
from app.services.collaborators import CatalogService, call_dependency

logger = logging.getLogger(__name__)


async def find_locked(db: AsyncSession, product_ids: Iterable[str]) -> Dict[str, ItemLock]:
    """Existing locks for the given products, keyed by product id."""
    ids = list(product_ids)
    if not ids:
        return {}
    result = await db.execute(select(ItemLock).where(ItemLock.product_id.in_(ids)))
    return {lock.product_id: lock for lock in result.scalars().all()}


async def ensure_unlocked(
    db: AsyncSession,
    product_ids: Iterable[str],
    holder_type: Optional[str] = None,
    holder_id: Optional[str] = None,
) -> None:
    """
    Raise ItemLocked if any product is held by another negotiation.

    Locks already owned by (holder_type, holder_id) are ignored.
    """
    for product_id, lock in (await find_locked(db, product_ids)).items():
        if lock.holder_type == holder_type and lock.holder_id == holder_id:
            continue
        raise ItemLocked(product_id)


async def acquire(
    db: AsyncSession,
    catalog: CatalogService,
    holder_type: str,
    holder_id: str,
    owners: Dict[str, str],
) -> List[str]:
    """
    Lock products for a holder within the current transaction.

    Args:
        owners: product_id -> owner_id for every product to lock

    Returns:
        Product ids newly locked (already-held ones are skipped)

    Raises:
        ItemLocked: If another negotiation holds any of the products
        DependencyFailure: If the catalog refuses the lock
    """
    existing = await find_locked(db, owners.keys())
    acquired = []
    for product_id, owner_id in owners.items():
        lock = existing.get(product_id)
        if lock is not None:
            if lock.holder_type == holder_type and lock.holder_id == holder_id:
                continue
            raise ItemLocked(product_id)
        db.add(ItemLock(
            product_id=product_id,
            holder_type=holder_type,
            holder_id=holder_id,
            owner_id=owner_id,
        ))
        acquired.append(product_id)

    try:
        await db.flush()
    except IntegrityError as e:
        # Another worker inserted the same product between our read and flush
        raise ItemLocked(acquired[0] if acquired else "") from e

    locked_in_catalog: List[str] = []
    try:
        for product_id in acquired:
            await call_dependency("catalog", catalog.lock_item(product_id))
            locked_in_catalog.append(product_id)
    except DependencyFailure:
        await unlock_in_catalog(catalog, locked_in_catalog)
        raise

    if acquired:
        logger.info(f"Locked {len(acquired)} item(s) for {holder_type} {holder_id}")
    return acquired


async def release(
    db: AsyncSession,
    holder_type: str,
    holder_id: str,
    product_ids: Optional[Iterable[str]] = None,
) -> List[str]:
    """
    Delete lock rows owned by a holder within the current transaction.

    Only locks owned by the holder are touched; releasing twice is a no-op.
    With product_ids None every lock of the holder is released. Pass the
    returned ids to unlock_in_catalog once the transaction has committed.
    """
    stmt = select(ItemLock.product_id).where(
        ItemLock.holder_type == holder_type,
        ItemLock.holder_id == holder_id,
    )
    if product_ids is not None:
        stmt = stmt.where(ItemLock.product_id.in_(list(product_ids)))
    released = list((await db.execute(stmt)).scalars().all())
    if not released:
        return []

    await db.execute(
        delete(ItemLock).where(
            ItemLock.holder_type == holder_type,
            ItemLock.holder_id == holder_id,
            ItemLock.product_id.in_(released),
        )
    )
    logger.info(f"Released {len(released)} item lock(s) for {holder_type} {holder_id}")
    return released


async def unlock_in_catalog(catalog: CatalogService, product_ids: Iterable[str]) -> None:
    """
    Clear catalog-side locks whose rows are gone.

    Called after a release commits, and after a unit of work that locked
    items rolls back. The database is authoritative; a catalog failure is
    logged for manual cleanup and never undoes the committed change.
    """
    for product_id in product_ids:
        try:
            await call_dependency("catalog", catalog.unlock_item(product_id))
        except DependencyFailure:
            logger.error(f"Could not unlock product {product_id} in catalog", exc_info=True)
