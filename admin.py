"""
Back-office operations: product inventory, order management and leads.

Callers are expected to have checked that the acting user is an admin.
"""

import logging
import re
import secrets
from typing import List, Optional

from pydantic import BaseModel

from catalog import to_product
from errors import FormValidationError, GatewayError, NotFoundError
from gateways import PersistenceGateway
from schemas import ORDER_STATUSES, ContactLead, Order, Product, ProductRecord

logger = logging.getLogger(__name__)


class ProductForm(BaseModel):
    name: str = ""
    price: Optional[float] = None
    market_price: Optional[float] = None
    image_url: str = ""
    description: str = ""
    category: str = ""
    trending: bool = False
    stock: int = 0


def validate_product(form: ProductForm) -> Optional[str]:
    if not form.name.strip():
        return "Name is required"
    if form.price is None:
        return "Price is required"
    if form.price < 0:
        return "Price must be 0 or more"
    if not form.image_url.strip():
        return "Image URL is required"
    if not form.description.strip():
        return "Description is required"
    if not form.category.strip():
        return "Category is required"
    if form.stock < 0:
        return "Stock must be 0 or more"
    return None


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-") or "product"


class AdminConsole:

    def __init__(self, persistence: PersistenceGateway):
        self.persistence = persistence

    @staticmethod
    def _record(form: ProductForm, slug: str, current: Optional[ProductRecord] = None) -> ProductRecord:
        """Build the stored record from ``form``, keeping what the form cannot edit."""
        cover = form.image_url.strip()
        fields = dict(
            name=form.name.strip(),
            slug=slug,
            description=form.description.strip(),
            price=form.price,
            market_price=form.market_price,
            images=[cover],
            category=form.category.strip(),
            is_featured=form.trending,
            stock_quantity=form.stock,
        )
        if current is None:
            return ProductRecord(**fields)
        # The form edits the cover image; the rest of the gallery stays
        fields["images"] = [cover] + [url for url in current.images[1:] if url != cover]
        return current.model_copy(update=fields)

    async def _unique_slug(self, name: str, product_id: Optional[str] = None) -> str:
        slug = slugify(name)
        existing, error = await self.persistence.get_product_by_slug(slug)
        if error:
            raise GatewayError("Failed to save product. Please try again.")
        if existing is not None and existing.id != product_id:
            slug = f"{slug}-{secrets.token_hex(2)}"
        return slug

    async def list_products(self) -> List[Product]:
        records, error = await self.persistence.list_products()
        if error:
            raise GatewayError("Failed to load data. Please check your connection and try again.")
        return [to_product(r) for r in records]

    async def create_product(self, form: ProductForm) -> Product:
        error = validate_product(form)
        if error:
            raise FormValidationError(error)
        record = self._record(form, await self._unique_slug(form.name))
        created, error = await self.persistence.insert_product(record)
        if error:
            raise GatewayError("Failed to save product. Please try again.")
        logger.info("Product %s created", created.id)
        return to_product(created)

    async def update_product(self, product_id: str, form: ProductForm) -> Product:
        error = validate_product(form)
        if error:
            raise FormValidationError(error)
        current, error = await self.persistence.get_product(product_id)
        if error:
            raise GatewayError("Failed to save product. Please try again.")
        if current is None:
            raise NotFoundError("Product not found")
        record = self._record(form, await self._unique_slug(form.name, product_id), current)
        updated, error = await self.persistence.update_product(product_id, record)
        if error:
            raise GatewayError("Failed to save product. Please try again.")
        if updated is None:
            raise NotFoundError("Product not found")
        logger.info("Product %s updated", product_id)
        return to_product(updated)

    async def delete_product(self, product_id: str, confirmed: bool = False) -> None:
        if not confirmed:
            raise FormValidationError("Deleting a product must be confirmed")
        deleted, error = await self.persistence.delete_product(product_id)
        if error:
            raise GatewayError("Failed to delete product. Please try again.")
        if not deleted:
            raise NotFoundError("Product not found")
        logger.info("Product %s deleted", product_id)

    async def list_orders(self) -> List[Order]:
        orders, error = await self.persistence.list_orders()
        if error:
            raise GatewayError("Failed to load data. Please check your connection and try again.")
        return sorted(orders, key=lambda o: o.date, reverse=True)

    async def update_order_status(self, order_id: str, status: str) -> None:
        # Any status may follow any other
        if status not in ORDER_STATUSES:
            raise FormValidationError(f"Status must be one of {', '.join(ORDER_STATUSES)}")
        updated, error = await self.persistence.update_order_status(order_id, status)
        if error:
            raise GatewayError("Failed to update order status. Please try again.")
        if not updated:
            raise NotFoundError("Order not found")
        logger.info("Order %s set to %s", order_id, status)

    async def list_leads(self) -> List[ContactLead]:
        leads, error = await self.persistence.list_contact_messages()
        if error:
            raise GatewayError("Failed to load data. Please check your connection and try again.")
        return leads
