"""
Persistence gateways.

MongoPersistenceGateway talks to the hosted database through pymongo; calls
run in the threadpool so request handlers never block the event loop.
InMemoryPersistenceGateway keeps everything in dicts and backs the app when
no database is configured.
"""

import logging
from collections import defaultdict
from typing import Dict, List

from bson import ObjectId
from bson.errors import InvalidId
from fastapi.concurrency import run_in_threadpool
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from database import create_document, get_documents
from gateways import PersistenceGateway, Result
from schemas import (
    Address,
    Category,
    ContactLead,
    Order,
    OrderItemRecord,
    OrderLine,
    OrderRecord,
    OrderStatus,
    ProductRecord,
)

logger = logging.getLogger(__name__)


class StorageError(Exception):
    pass


def build_order(record: OrderRecord, items: List[OrderItemRecord]) -> Order:
    return Order(
        id=record.id,
        user_id=record.user_id,
        date=record.created_at,
        items=[
            OrderLine(product_id=i.product_id, name=i.name, price=i.unit_price, quantity=i.quantity)
            for i in items
        ],
        subtotal=record.subtotal,
        delivery_surcharge=record.delivery_surcharge,
        total=record.total,
        status=record.status,
        shipping_address=record.shipping_address,
        payment_method=record.payment_method,
        has_payment_proof=bool(record.payment_proof),
        guest_info=record.guest_info,
    )


def serialize_doc(doc):
    if not doc:
        return doc
    doc = dict(doc)
    _id = doc.pop("_id", None)
    if _id is not None:
        doc["id"] = str(_id)
    return doc


class MongoPersistenceGateway(PersistenceGateway):

    def __init__(self, db):
        self.db = db

    async def _call(self, what: str, fn, *args) -> Result:
        try:
            data = await run_in_threadpool(fn, *args)
        except (PyMongoError, InvalidId, StorageError) as e:
            logger.error("Error %s: %s", what, e)
            return None, str(e)
        return data, None

    def describe(self):
        info = {"backend": type(self).__name__, "database_name": self.db.name, "collections": []}
        try:
            info["collections"] = self.db.list_collection_names()[:10]
            info["connection_status"] = "Connected"
        except PyMongoError as e:
            info["connection_status"] = f"Connected but Error: {str(e)[:80]}"
        return info

    # Products

    def _products(self, query, limit=None):
        cursor = self.db["product"].find(query).sort("created_at", DESCENDING)
        if limit:
            cursor = cursor.limit(limit)
        return [ProductRecord(**serialize_doc(d)) for d in cursor]

    async def list_products(self):
        return await self._call("fetching products", self._products, {"is_active": True})

    async def list_featured_products(self, limit=8):
        return await self._call(
            "fetching featured products", self._products, {"is_active": True, "is_featured": True}, limit
        )

    def _find_product(self, query):
        doc = self.db["product"].find_one(query)
        return ProductRecord(**serialize_doc(doc)) if doc else None

    def _find_product_by_id(self, product_id):
        if not ObjectId.is_valid(product_id):
            return None
        return self._find_product({"_id": ObjectId(product_id)})

    async def get_product(self, product_id):
        return await self._call("fetching product", self._find_product_by_id, product_id)

    async def get_product_by_slug(self, slug):
        return await self._call("fetching product", self._find_product, {"slug": slug})

    def _insert_product(self, product: ProductRecord):
        product_id = create_document("product", product.model_dump(exclude={"id"}), database=self.db)
        return product.model_copy(update={"id": product_id})

    async def insert_product(self, product):
        return await self._call("creating product", self._insert_product, product)

    def _update_product(self, product_id, product: ProductRecord):
        if not ObjectId.is_valid(product_id):
            return None
        update = product.model_dump(exclude={"id", "created_at"})
        res = self.db["product"].update_one({"_id": ObjectId(product_id)}, {"$set": update})
        if res.matched_count == 0:
            return None
        return self._find_product({"_id": ObjectId(product_id)})

    async def update_product(self, product_id, product):
        return await self._call("updating product", self._update_product, product_id, product)

    def _delete_product(self, product_id):
        if not ObjectId.is_valid(product_id):
            return False
        return self.db["product"].delete_one({"_id": ObjectId(product_id)}).deleted_count > 0

    async def delete_product(self, product_id):
        return await self._call("deleting product", self._delete_product, product_id)

    async def count_products(self):
        return await self._call("counting products", self.db["product"].count_documents, {})

    # Categories

    def _categories(self):
        docs = self.db["category"].find({"is_active": True}).sort("name")
        return [Category(**serialize_doc(d)) for d in docs]

    async def list_categories(self):
        return await self._call("fetching categories", self._categories)

    def _insert_category(self, category: Category):
        category_id = create_document("category", category.model_dump(exclude={"id"}), database=self.db)
        return category.model_copy(update={"id": category_id})

    async def insert_category(self, category):
        return await self._call("creating category", self._insert_category, category)

    # Orders

    def _create_order(self, order: OrderRecord, items: List[OrderItemRecord]):
        order_id = create_document("order", order.model_dump(exclude={"id"}), database=self.db)
        docs = [dict(item.model_dump(), order_id=order_id) for item in items]
        try:
            if docs:
                self.db["order_item"].insert_many(docs)
        except PyMongoError:
            logger.error("Order items failed for %s, removing the order", order_id)
            self.db["order_item"].delete_many({"order_id": order_id})
            self.db["order"].delete_one({"_id": ObjectId(order_id)})
            raise
        return order.model_copy(update={"id": order_id})

    async def create_order(self, order, items):
        return await self._call("creating order", self._create_order, order, items)

    def _list_orders(self, user_id):
        query = {} if user_id is None else {"user_id": user_id}
        headers = [OrderRecord(**serialize_doc(d)) for d in self.db["order"].find(query).sort("created_at", DESCENDING)]
        by_order = defaultdict(list)
        if headers:
            item_docs = get_documents("order_item", {"order_id": {"$in": [h.id for h in headers]}}, database=self.db)
            for doc in item_docs:
                by_order[doc["order_id"]].append(OrderItemRecord(**serialize_doc(doc)))
        return [build_order(h, by_order[h.id]) for h in headers]

    async def list_orders(self, user_id=None):
        return await self._call("fetching orders", self._list_orders, user_id)

    def _update_order_status(self, order_id, status):
        if not ObjectId.is_valid(order_id):
            return False
        res = self.db["order"].update_one({"_id": ObjectId(order_id)}, {"$set": {"status": status}})
        return res.matched_count > 0

    async def update_order_status(self, order_id, status):
        return await self._call("updating order status", self._update_order_status, order_id, status)

    # Contact messages

    def _insert_contact_message(self, lead: ContactLead):
        lead_id = create_document("contact_message", lead.model_dump(exclude={"id"}), database=self.db)
        return lead.model_copy(update={"id": lead_id})

    async def insert_contact_message(self, lead):
        return await self._call("submitting message", self._insert_contact_message, lead)

    def _contact_messages(self):
        docs = self.db["contact_message"].find({}).sort("created_at", DESCENDING)
        return [ContactLead(**serialize_doc(d)) for d in docs]

    async def list_contact_messages(self):
        return await self._call("fetching contact messages", self._contact_messages)

    # Profile addresses

    def _get_addresses(self, user_id):
        doc = self.db["user"].find_one({"_id": ObjectId(user_id)}, {"addresses": 1})
        return [Address(**a) for a in (doc or {}).get("addresses") or []]

    async def get_addresses(self, user_id):
        return await self._call("fetching addresses", self._get_addresses, user_id)

    def _set_addresses(self, user_id, addresses: List[Address]):
        res = self.db["user"].update_one(
            {"_id": ObjectId(user_id)}, {"$set": {"addresses": [a.model_dump() for a in addresses]}}
        )
        if res.matched_count == 0:
            raise StorageError(f"Profile not found: {user_id}")
        return list(addresses)

    async def set_addresses(self, user_id, addresses):
        return await self._call("saving addresses", self._set_addresses, user_id, addresses)


class InMemoryPersistenceGateway(PersistenceGateway):
    """Dict-backed store. ``calls`` records every operation by name."""

    def __init__(self):
        self.products: Dict[str, ProductRecord] = {}
        self.categories: Dict[str, Category] = {}
        self.orders: Dict[str, OrderRecord] = {}
        self.order_items: List[OrderItemRecord] = []
        self.contact_messages: Dict[str, ContactLead] = {}
        self.addresses: Dict[str, List[Address]] = {}
        self.calls: List[str] = []

    @staticmethod
    def _new_id() -> str:
        return str(ObjectId())

    @staticmethod
    def _newest_first(records):
        return sorted(reversed(list(records)), key=lambda r: r.created_at, reverse=True)

    async def list_products(self):
        self.calls.append("list_products")
        return self._newest_first(p for p in self.products.values() if p.is_active), None

    async def list_featured_products(self, limit=8):
        self.calls.append("list_featured_products")
        featured = [p for p in self.products.values() if p.is_active and p.is_featured]
        return self._newest_first(featured)[:limit], None

    async def get_product(self, product_id):
        self.calls.append("get_product")
        return self.products.get(product_id), None

    async def get_product_by_slug(self, slug):
        self.calls.append("get_product_by_slug")
        return next((p for p in self.products.values() if p.slug == slug), None), None

    async def insert_product(self, product):
        self.calls.append("insert_product")
        stored = product.model_copy(update={"id": self._new_id()})
        self.products[stored.id] = stored
        return stored, None

    async def update_product(self, product_id, product):
        self.calls.append("update_product")
        current = self.products.get(product_id)
        if current is None:
            return None, None
        stored = product.model_copy(update={"id": product_id, "created_at": current.created_at})
        self.products[product_id] = stored
        return stored, None

    async def delete_product(self, product_id):
        self.calls.append("delete_product")
        return self.products.pop(product_id, None) is not None, None

    async def count_products(self):
        return len(self.products), None

    async def list_categories(self):
        self.calls.append("list_categories")
        active = [c for c in self.categories.values() if c.is_active]
        return sorted(active, key=lambda c: c.name), None

    async def insert_category(self, category):
        self.calls.append("insert_category")
        stored = category.model_copy(update={"id": self._new_id()})
        self.categories[stored.id] = stored
        return stored, None

    def _write_items(self, order_id: str, items: List[OrderItemRecord]) -> None:
        self.order_items.extend(item.model_copy(update={"order_id": order_id}) for item in items)

    async def create_order(self, order, items):
        self.calls.append("create_order")
        stored = order.model_copy(update={"id": self._new_id()})
        self.orders[stored.id] = stored
        try:
            self._write_items(stored.id, items)
        except StorageError as e:
            logger.error("Error creating order items: %s", e)
            del self.orders[stored.id]
            return None, str(e)
        return stored, None

    async def list_orders(self, user_id=None):
        self.calls.append("list_orders")
        headers = [o for o in self.orders.values() if user_id is None or o.user_id == user_id]
        return [
            build_order(h, [i for i in self.order_items if i.order_id == h.id])
            for h in self._newest_first(headers)
        ], None

    async def update_order_status(self, order_id, status: OrderStatus):
        self.calls.append("update_order_status")
        order = self.orders.get(order_id)
        if order is None:
            return False, None
        self.orders[order_id] = order.model_copy(update={"status": status})
        return True, None

    async def insert_contact_message(self, lead):
        self.calls.append("insert_contact_message")
        stored = lead.model_copy(update={"id": self._new_id()})
        self.contact_messages[stored.id] = stored
        return stored, None

    async def list_contact_messages(self):
        self.calls.append("list_contact_messages")
        return self._newest_first(self.contact_messages.values()), None

    async def get_addresses(self, user_id):
        self.calls.append("get_addresses")
        return list(self.addresses.get(user_id, [])), None

    async def set_addresses(self, user_id, addresses):
        self.calls.append("set_addresses")
        self.addresses[user_id] = list(addresses)
        return list(addresses), None
