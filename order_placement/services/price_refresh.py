import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from order_placement.adapters.base import ErrorKind, invoke
from order_placement.adapters.registry import build_adapter
from order_placement.core.config import settings
from order_placement.core.enums import ChallengeRequestType, CredentialStatus
from order_placement.core.exceptions import CredentialBusy
from order_placement.core.redis import credential_lock
from order_placement.models.supplier_credential import SupplierCredential
from order_placement.models.supplier_product import SupplierProduct
from order_placement.utils.money import to_money
from order_placement.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class RefreshSummary:
    updated: int = 0
    errors: List[str] = field(default_factory=list)
    duration: float = 0.0


async def refresh_credential_prices(
    db: AsyncSession,
    credential_id: int,
    adapter_factory: Callable = build_adapter,
    challenges=None,
) -> int:
    """Re-scrape cached prices for one supplier login. Returns how many changed."""
    credential = await db.get(SupplierCredential, credential_id)
    supplier = credential.supplier
    res = await db.execute(select(SupplierProduct).where(SupplierProduct.supplier_id == supplier.id))
    products = {p.supplier_sku: p for p in res.scalars().all()}
    if not products:
        return 0

    adapter = adapter_factory(credential)
    try:
        scraped = await invoke(adapter, "scrape_prices", list(products))
    finally:
        await invoke(adapter, "close")

    if not scraped.ok:
        if scraped.kind == ErrorKind.AUTHENTICATION:
            credential.mark_failed(scraped.message)
            await db.commit()
            raise RuntimeError(f"{supplier.name}: Authentication failed")
        if scraped.kind == ErrorKind.TWO_FACTOR_REQUIRED and challenges is not None:
            await challenges.open_challenge(scraped.error, credential, ChallengeRequestType.PRICE_REFRESH)
            raise RuntimeError(f"{supplier.name}: verification code required")
        raise RuntimeError(f"{supplier.name}: {scraped.message or scraped.kind}")

    now = utcnow()
    updated = 0
    for row in scraped.value or []:
        product = products.get(row.get("supplier_sku"))
        price = row.get("current_price")
        if product is None or price is None:
            continue
        if product.current_price is None or to_money(product.current_price) != to_money(price):
            product.update_price(price, in_stock=row.get("in_stock") is not False, now=now)
            updated += 1
    await db.commit()
    logger.info(f"[QuickPriceUpdate] {supplier.name}: updated {updated} prices")
    return updated


async def refresh_prices(
    session_factory: Callable,
    user_id: int,
    supplier_id: Optional[int] = None,
    adapter_factory: Callable = build_adapter,
    challenge_manager_factory: Optional[Callable] = None,
    branch_timeout: Optional[float] = None,
    total_budget: Optional[float] = None,
    redis=None,
) -> RefreshSummary:
    """Refresh prices for every active credential of a user, concurrently.

    With ``redis``, each branch holds its credential lock; a login already in
    use by another job is reported as an error rather than shared.
    """
    branch_timeout = settings.VERIFICATION_BRANCH_TIMEOUT if branch_timeout is None else branch_timeout
    total_budget = settings.VERIFICATION_TOTAL_BUDGET if total_budget is None else total_budget
    start_time = time.time()
    summary = RefreshSummary()

    async with session_factory() as db:
        query = select(SupplierCredential).where(
            SupplierCredential.user_id == user_id,
            SupplierCredential.status == CredentialStatus.ACTIVE,
        )
        if supplier_id is not None:
            query = query.where(SupplierCredential.supplier_id == supplier_id)
        credentials = [(c.id, c.supplier.name) for c in (await db.execute(query)).scalars().all()]

    if not credentials:
        logger.info(f"[QuickPriceUpdate] No active credentials for user {user_id}")
        return summary

    async def branch(credential_id: int) -> int:
        async with session_factory() as db:
            challenges = challenge_manager_factory(db) if challenge_manager_factory else None
            async with credential_lock(redis, credential_id):
                return await asyncio.wait_for(
                    refresh_credential_prices(db, credential_id, adapter_factory, challenges),
                    timeout=branch_timeout,
                )

    tasks = {asyncio.ensure_future(branch(cid)): name for cid, name in credentials}
    done, pending = await asyncio.wait(tasks.keys(), timeout=total_budget)
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)

    for task, name in tasks.items():
        if task in pending:
            summary.errors.append(f"{name}: exceeded time budget")
        elif task.exception() is not None:
            exc = task.exception()
            if isinstance(exc, asyncio.TimeoutError):
                summary.errors.append(f"{name}: timed out")
            elif isinstance(exc, CredentialBusy):
                summary.errors.append(f"{name}: login in use by another job")
            else:
                logger.error(f"[QuickPriceUpdate] Error for {name}: {exc}")
                summary.errors.append(str(exc))
        else:
            summary.updated += task.result()

    summary.duration = time.time() - start_time
    logger.info(
        f"[QuickPriceUpdate] Completed in {summary.duration:.2f}s. Updated {summary.updated} prices, "
        f"{len(summary.errors)} error(s)"
    )
    return summary
