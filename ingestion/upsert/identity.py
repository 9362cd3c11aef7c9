"""
Identity resolver: (company, source product code) → stable golden product id.
"""

from typing import Optional, Tuple
from sqlalchemy import select, func, text
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.exceptions import IdentityError
from models.product import ProductIdent, Product, PRODUCT_ID_SEQ, PRODUCT_IDENT_ID_SEQ

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Find or create the active identity of a source product.

    Creation races are settled by the partial unique index on
    (group_company_id, source_product_cd) WHERE is_active: the losing insert
    does nothing and the winner's row is re-read.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def ensure_identity(
        self,
        group_company_id: int,
        source_product_cd: str,
        source_product_management_cd: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> Tuple[int, bool]:
        """
        Returns:
            (g_product_id, is_new)

        Raises:
            IdentityError: the identity could neither be created nor re-read
        """
        existing = await self.find_active(group_company_id, source_product_cd)
        if existing is not None:
            return existing, False

        ident_id, g_product_id = await self._allocate_ids()

        stmt = (
            insert(ProductIdent)
            .values(
                ident_id=ident_id,
                g_product_id=g_product_id,
                group_company_id=group_company_id,
                source_product_cd=source_product_cd,
                source_product_management_cd=source_product_management_cd,
                ident_kind="AUTO",
                is_primary=True,
                is_active=True,
                provenance={"batch_id": batch_id, "origin": "UPSERT"},
                batch_id=batch_id,
            )
            .on_conflict_do_nothing(
                index_elements=["group_company_id", "source_product_cd"],
                index_where=text("is_active"),
            )
            .returning(ProductIdent.g_product_id)
        )
        inserted = (await self.session.execute(stmt)).scalar_one_or_none()
        if inserted is not None:
            logger.info(f"New identity {source_product_cd} → g_product_id={inserted}")
            return inserted, True

        # Lost the race: another transaction created it first
        existing = await self.find_active(group_company_id, source_product_cd)
        if existing is not None:
            logger.info(f"Identity {source_product_cd} created concurrently, re-read g_product_id={existing}")
            return existing, False

        raise IdentityError(
            "Identity insert conflicted but no active identity was found",
            context={"group_company_id": group_company_id, "source_product_cd": source_product_cd},
        )

    async def find_active(self, group_company_id: int, source_product_cd: str) -> Optional[int]:
        result = await self.session.execute(
            select(ProductIdent.g_product_id)
            .where(
                ProductIdent.group_company_id == group_company_id,
                ProductIdent.source_product_cd == source_product_cd,
                ProductIdent.is_active.is_(True),
            )
            .order_by(ProductIdent.ident_id)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _allocate_ids(self) -> Tuple[int, int]:
        try:
            async with self.session.begin_nested():
                ident_id = (await self.session.execute(select(PRODUCT_IDENT_ID_SEQ.next_value()))).scalar_one()
                g_product_id = (await self.session.execute(select(PRODUCT_ID_SEQ.next_value()))).scalar_one()
            return ident_id, g_product_id
        except ProgrammingError as e:
            logger.warning(f"Id sequences unavailable, falling back to max+1: {e}")

        ident_id = (await self.session.execute(
            select(func.coalesce(func.max(ProductIdent.ident_id), 0) + 1)
        )).scalar_one()
        max_ident_product = (await self.session.execute(
            select(func.coalesce(func.max(ProductIdent.g_product_id), 0))
        )).scalar_one()
        max_product = (await self.session.execute(
            select(func.coalesce(func.max(Product.g_product_id), 0))
        )).scalar_one()
        return ident_id, max(max_ident_product, max_product) + 1
