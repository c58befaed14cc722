import logging
from typing import List, Optional

from gateways import PersistenceGateway
from schemas import Category, Product, ProductRecord

logger = logging.getLogger(__name__)


def to_product(record: ProductRecord) -> Product:
    """Normalise a stored product into the display shape."""
    return Product(
        id=record.id,
        name=record.name,
        slug=record.slug,
        description=record.description,
        price=record.price,
        market_price=record.market_price,
        image_url=record.images[0] if record.images else "",
        images=list(record.images),
        category=record.category or "uncategorized",
        trending=record.is_featured,
        stock=record.stock_quantity,
    )


class CatalogReader:
    """Read-only view of products and categories.

    Failed reads are logged and come back empty, so browsing pages render an
    empty shelf rather than an error.
    """

    def __init__(self, persistence: PersistenceGateway):
        self.persistence = persistence

    async def list_products(self, category: Optional[str] = None) -> List[Product]:
        records, error = await self.persistence.list_products()
        if error:
            logger.error("Error fetching products: %s", error)
            return []
        products = [to_product(r) for r in records]
        if category:
            products = [p for p in products if p.category == category]
        return products

    async def list_featured(self, limit: int = 8) -> List[Product]:
        records, error = await self.persistence.list_featured_products(limit)
        if error:
            logger.error("Error fetching featured products: %s", error)
            return []
        return [to_product(r) for r in records]

    async def get_product_by_slug(self, slug: str) -> Optional[Product]:
        record, error = await self.persistence.get_product_by_slug(slug)
        if error:
            logger.error("Error fetching product %s: %s", slug, error)
            return None
        if record is None or not record.is_active:
            return None
        return to_product(record)

    async def get_product(self, product_id: str) -> Optional[Product]:
        record, error = await self.persistence.get_product(product_id)
        if error:
            logger.error("Error fetching product %s: %s", product_id, error)
            return None
        if record is None or not record.is_active:
            return None
        return to_product(record)

    async def list_categories(self) -> List[Category]:
        categories, error = await self.persistence.list_categories()
        if error:
            logger.error("Error fetching categories: %s", error)
            return []
        return categories
