"""
Management aggregate: source products of the management company roll up
into one m_product_management row (plus its EAV mirror) per management code.
"""

from typing import List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.exceptions import ProductManagementError
from models.base import DataType
from models.product import Product, ProductManagement, ProductManagementEav
from ingestion.upsert.diff import ID, JSON, apply_changes, diff_columns
from ingestion.upsert.eav import EavSynchronizer, EavSyncStats, EavValue

logger = logging.getLogger(__name__)


class ProductManagementWriter:
    """
    Upsert one management aggregate.

    Callers run this inside a savepoint so a failure here never undoes the
    product's own master/EAV writes.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.eav = EavSynchronizer(session, ProductManagementEav, "g_product_management_id")

    async def upsert(
        self,
        product: Product,
        management_cd: str,
        description_text: Optional[str],
        eav_values: List[EavValue],
        batch_id: str,
        company_cd: str,
    ) -> Tuple[bool, EavSyncStats]:
        """
        Returns:
            (management row inserted or updated, EAV sync stats)
        """
        if product.g_category_id is None:
            raise ProductManagementError(
                "Management aggregate needs the product category",
                context={"source_product_management_cd": management_cd, "g_product_id": product.g_product_id},
            )

        provenance = {
            "source_system": company_cd,
            "ingest_profile": f"{company_cd}_PRODUCT",
            "idem_key": f"{batch_id}:{company_cd}:{management_cd}",
        }

        result = await self.session.execute(
            select(ProductManagement)
            .where(
                ProductManagement.group_company_id == product.group_company_id,
                ProductManagement.source_product_management_cd == management_cd,
                ProductManagement.is_provisional.is_(False),
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        management = result.scalar_one_or_none()

        if management is None:
            management = ProductManagement(
                group_company_id=product.group_company_id,
                source_product_management_cd=management_cd,
                g_brand_id=product.g_brand_id,
                g_category_id=product.g_category_id,
                description_text=description_text,
                is_provisional=False,
                source_product_cd=product.source_product_cd,
                provenance=provenance,
                batch_id=batch_id,
                is_active=True,
            )
            self.session.add(management)
            await self.session.flush()
            logger.info(f"Management {management_cd} created: id={management.g_product_management_id}")
            changed = True
        else:
            changes = diff_columns(management, [
                ("g_brand_id", ID, product.g_brand_id),
                ("g_category_id", ID, product.g_category_id),
                ("description_text", DataType.TEXT.value, description_text),
                ("source_product_cd", DataType.TEXT.value, product.source_product_cd),
                ("provenance", JSON, provenance),
            ])
            if not management.is_active:
                management.is_active = True
                changed = True
            else:
                changed = bool(changes)
            if changes:
                apply_changes(management, changes)
            if changed:
                management.batch_id = batch_id
                logger.info(
                    f"Management {management_cd} updated: "
                    f"{', '.join(c.column for c in changes) or 'reactivated'}"
                )

        stats = await self.eav.sync(management.g_product_management_id, eav_values, batch_id)
        return changed, stats
