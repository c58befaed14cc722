"""
Interfaces to the external services the storefront depends on.

Persistence calls answer with a ``(data, error)`` pair and never raise; the
caller checks the error slot. Notification calls answer with a
NotificationResult. Identity calls answer with ``(result, error)`` pairs and
push session changes to subscribers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from schemas import (
    Address,
    Category,
    ContactLead,
    OrderItemRecord,
    OrderRecord,
    OrderStatus,
    ProductRecord,
)

# (data, error)
Result = Tuple[Any, Optional[str]]


class PersistenceGateway(ABC):

    @abstractmethod
    async def list_products(self) -> Result:
        """Active products, newest first."""

    @abstractmethod
    async def list_featured_products(self, limit: int = 8) -> Result: ...

    @abstractmethod
    async def get_product(self, product_id: str) -> Result: ...

    @abstractmethod
    async def get_product_by_slug(self, slug: str) -> Result: ...

    @abstractmethod
    async def insert_product(self, product: ProductRecord) -> Result: ...

    @abstractmethod
    async def update_product(self, product_id: str, product: ProductRecord) -> Result: ...

    @abstractmethod
    async def delete_product(self, product_id: str) -> Result: ...

    @abstractmethod
    async def count_products(self) -> Result: ...

    @abstractmethod
    async def list_categories(self) -> Result: ...

    @abstractmethod
    async def insert_category(self, category: Category) -> Result: ...

    @abstractmethod
    async def create_order(self, order: OrderRecord, items: List[OrderItemRecord]) -> Result:
        """Write the order header and its items as one logical write.

        If the items cannot be written the header is removed again and the
        error is returned.
        """

    @abstractmethod
    async def list_orders(self, user_id: Optional[str] = None) -> Result:
        """Orders with their items, newest first. ``None`` lists every order."""

    @abstractmethod
    async def update_order_status(self, order_id: str, status: OrderStatus) -> Result: ...

    @abstractmethod
    async def insert_contact_message(self, lead: ContactLead) -> Result: ...

    @abstractmethod
    async def list_contact_messages(self) -> Result: ...

    @abstractmethod
    async def get_addresses(self, user_id: str) -> Result: ...

    @abstractmethod
    async def set_addresses(self, user_id: str, addresses: List[Address]) -> Result: ...

    def describe(self) -> Dict[str, Any]:
        return {"backend": type(self).__name__}


@dataclass
class NotificationResult:
    success: bool
    error: Optional[str] = None


@dataclass
class OrderNotice:
    order_id: str
    customer_name: str
    customer_email: str
    customer_phone: str
    order_total: str
    payment_method: str
    delivery_window: str
    address: str
    order_items: str


@dataclass
class LeadNotice:
    name: str
    email: str
    phone: str
    message: str
    source: str


class NotificationGateway(ABC):

    @abstractmethod
    async def send_customer_confirmation(self, notice: OrderNotice) -> NotificationResult: ...

    @abstractmethod
    async def send_operator_alert(self, notice: OrderNotice) -> NotificationResult: ...

    @abstractmethod
    async def send_lead_alert(self, notice: LeadNotice) -> NotificationResult: ...

    @abstractmethod
    async def send_verification_code(self, name: str, email: str, code: str) -> NotificationResult: ...


# Session change events pushed by the identity provider
SIGNED_IN = "SIGNED_IN"
SIGNED_OUT = "SIGNED_OUT"
USER_UPDATED = "USER_UPDATED"

AuthListener = Callable[[str, Optional[Dict[str, Any]]], None]


class IdentityGateway(ABC):
    """
    Provider sessions are dicts shaped ``{"access_token": str, "user": {...}}``
    where the user carries ``id``, ``email``, ``created_at`` and
    ``user_metadata`` (``full_name``, ``role``).
    """

    @abstractmethod
    async def get_session(self, token: Optional[str]) -> Result: ...

    @abstractmethod
    async def sign_in_with_password(self, email: str, password: str) -> Result: ...

    @abstractmethod
    async def sign_up(self, email: str, password: str, metadata: Dict[str, Any]) -> Result: ...

    @abstractmethod
    async def sign_out(self, token: str) -> Result: ...

    @abstractmethod
    async def update_user(self, token: str, metadata: Optional[Dict[str, Any]] = None, password: Optional[str] = None) -> Result: ...

    @abstractmethod
    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""


class VerificationGateway(ABC):
    """One-time code verification. Each attempt is all-or-nothing."""

    @abstractmethod
    async def send_code(self, destination: str, name: str = "", recaptcha_token: Optional[str] = None) -> Result:
        """Returns an opaque confirmation handle."""

    @abstractmethod
    async def confirm(self, handle: str, code: str, destination: str) -> Result:
        """Returns True when the code matches and was sent to ``destination``."""
