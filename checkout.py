"""
Order submission workflow.

A checkout moves strictly through SHIPPING -> PAYMENT -> CONFIRMATION. The
only way back is PAYMENT -> SHIPPING, and the shipping form is validated
again when it is resubmitted.

Placing the order writes the order and its items as one logical write,
optionally saves the shipping address, and then sends the customer
confirmation and the operator alert concurrently. Email failures never undo
an order: if both sends fail the customer gets a degraded success message.
Only a failed order write keeps the checkout on the payment step, with the
cart untouched so the customer can retry.
"""

import asyncio
import base64
import logging
import re
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, EmailStr, TypeAdapter, ValidationError

from addresses import AddressBook
from cart import CartManager
from errors import CheckoutStateError, FormValidationError, NotFoundError, OrderPersistenceError
from gateways import NotificationGateway, NotificationResult, OrderNotice, PersistenceGateway
from schemas import Address, GuestInfo, OrderItemRecord, OrderRecord, User

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("upi", "cod")
DELIVERY_WINDOWS = {"standard": "5-7 business days", "fast": "2-3 business days"}

SUCCESS_MESSAGE = "Order placed successfully! A confirmation email is on its way."
DEGRADED_MESSAGE = "Order placed, but notification may have failed."
RETRY_MESSAGE = "We couldn't place your order. Please try again."

REQUIRED_FIELDS = [
    ("first_name", "First name"),
    ("last_name", "Last name"),
    ("email", "Email address"),
    ("phone", "Phone number"),
    ("street", "Address"),
    ("city", "City"),
    ("state", "State"),
    ("zip", "PIN code"),
]
PHONE_RE = re.compile(r"^\d{10}$")
ZIP_RE = re.compile(r"^\d{6}$")

_email_adapter = TypeAdapter(EmailStr)


class CheckoutStep(str, Enum):
    SHIPPING = "shipping"
    PAYMENT = "payment"
    CONFIRMATION = "confirmation"


class ShippingForm(BaseModel):
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    street: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    save_address: bool = False

    def cleaned(self) -> "ShippingForm":
        return self.model_copy(update={
            name: getattr(self, name).strip() for name, _ in REQUIRED_FIELDS
        })

    def address(self) -> Address:
        return Address(**self.model_dump(exclude={"email", "save_address"}))

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


def validate_shipping(form: ShippingForm) -> Optional[str]:
    """Return the first broken rule as a message, or None."""
    for name, label in REQUIRED_FIELDS:
        if not getattr(form, name).strip():
            return f"{label} is required."
    try:
        _email_adapter.validate_python(form.email.strip())
    except ValidationError:
        return "Please enter a valid email address."
    if not PHONE_RE.match(form.phone.strip()):
        return "Please enter a valid 10-digit phone number."
    if not ZIP_RE.match(form.zip.strip()):
        return "Please enter a valid 6-digit PIN code."
    return None


@dataclass(frozen=True)
class Registered:
    user_id: str


@dataclass(frozen=True)
class Guest:
    contact: GuestInfo


Actor = Union[Registered, Guest]


def resolve_actor(user: Optional[User], shipping: ShippingForm) -> Actor:
    if user is not None:
        return Registered(user.id)
    return Guest(GuestInfo(name=shipping.full_name, email=shipping.email, phone=shipping.phone))


@dataclass
class PaymentProof:
    content: bytes
    content_type: str
    filename: str = ""

    @property
    def data_url(self) -> str:
        return f"data:{self.content_type};base64,{base64.b64encode(self.content).decode()}"


@dataclass
class Quote:
    subtotal: float
    surcharge: float
    total: float


@dataclass
class PlacementResult:
    order_id: str
    total: float
    message: str
    customer_notified: bool
    operator_notified: bool

    @property
    def degraded(self) -> bool:
        return not (self.customer_notified or self.operator_notified)


def format_money(amount: float, symbol: str = "₹") -> str:
    if float(amount).is_integer():
        return f"{symbol}{amount:,.0f}"
    return f"{symbol}{amount:,.2f}"


class CheckoutWorkflow:

    def __init__(
        self,
        cart: CartManager,
        persistence: PersistenceGateway,
        notifications: NotificationGateway,
        address_book: AddressBook,
        delivery_surcharge: float = 100,
        currency_symbol: str = "₹",
        max_proof_bytes: int = 5 * 1024 * 1024,
        session_id: Optional[str] = None,
    ):
        self.id = uuid.uuid4().hex
        self.session_id = session_id
        self.cart = cart
        self.persistence = persistence
        self.notifications = notifications
        self.address_book = address_book
        self.delivery_surcharge = delivery_surcharge
        self.currency_symbol = currency_symbol
        self.max_proof_bytes = max_proof_bytes

        self.step = CheckoutStep.SHIPPING
        self.shipping: Optional[ShippingForm] = None
        self.proof: Optional[PaymentProof] = None
        self.error: Optional[str] = None
        self.processing = False
        self.placement: Optional[PlacementResult] = None

    def _require(self, step: CheckoutStep, action: str) -> None:
        if self.step is not step:
            raise CheckoutStateError(f"Cannot {action} during the {self.step.value} step")

    def _reject(self, message: str):
        self.error = message
        raise FormValidationError(message)

    # Shipping

    def submit_shipping(self, form: ShippingForm) -> None:
        self._require(CheckoutStep.SHIPPING, "submit shipping details")
        error = validate_shipping(form)
        if error:
            self._reject(error)
        self.shipping = form.cleaned()
        self.error = None
        self.step = CheckoutStep.PAYMENT

    def go_back(self) -> None:
        self._require(CheckoutStep.PAYMENT, "go back to shipping")
        if self.processing:
            raise CheckoutStateError("Order is being placed")
        self.error = None
        self.step = CheckoutStep.SHIPPING

    # Payment

    def attach_proof(self, content: bytes, content_type: str, filename: str = "") -> None:
        self._require(CheckoutStep.PAYMENT, "attach a payment proof")
        if not content:
            self._reject("The uploaded file is empty.")
        if not (content_type or "").startswith("image/"):
            self._reject("Please upload an image of your payment.")
        if len(content) > self.max_proof_bytes:
            self._reject("The payment screenshot is too large.")
        self.proof = PaymentProof(content, content_type, filename)
        self.error = None

    def quote(self, delivery_speed: str = "standard") -> Quote:
        subtotal = self.cart.total
        surcharge = self.delivery_surcharge if delivery_speed == "fast" else 0
        return Quote(subtotal=subtotal, surcharge=surcharge, total=subtotal + surcharge)

    async def submit_payment(self, actor: Actor, payment_method: str, delivery_speed: str = "standard") -> PlacementResult:
        self._require(CheckoutStep.PAYMENT, "place the order")
        if self.processing or self.cart.placing:
            raise CheckoutStateError("Order is already being placed")
        if payment_method not in PAYMENT_METHODS:
            self._reject("Please select a payment method.")
        if delivery_speed not in DELIVERY_WINDOWS:
            self._reject("Please select a delivery option.")
        if payment_method == "upi" and self.proof is None:
            self._reject("Please upload the payment screenshot to continue.")
        if self.cart.is_empty():
            raise CheckoutStateError("Your cart is empty")

        self.processing = self.cart.placing = True
        try:
            return await self._place(actor, payment_method, delivery_speed)
        finally:
            self.processing = self.cart.placing = False

    async def _place(self, actor: Actor, payment_method: str, delivery_speed: str) -> PlacementResult:
        lines = [line.model_copy() for line in self.cart.lines]
        quote = self.quote(delivery_speed)
        shipping = self.shipping

        record = OrderRecord(
            user_id=actor.user_id if isinstance(actor, Registered) else None,
            subtotal=quote.subtotal,
            delivery_surcharge=quote.surcharge,
            delivery_speed=delivery_speed,
            total=quote.total,
            shipping_address=shipping.address(),
            customer_email=shipping.email,
            payment_method=payment_method,
            payment_proof=self.proof.data_url if payment_method == "upi" else None,
            guest_info=actor.contact if isinstance(actor, Guest) else None,
        )
        items = [
            OrderItemRecord(product_id=l.product_id, name=l.name, unit_price=l.price, quantity=l.quantity)
            for l in lines
        ]

        order, error = await self.persistence.create_order(record, items)
        if error:
            logger.error("Order placement failed for checkout %s: %s", self.id, error)
            self.error = RETRY_MESSAGE
            raise OrderPersistenceError(RETRY_MESSAGE)
        logger.info("Order %s placed, total %s", order.id, quote.total)

        if isinstance(actor, Registered) and shipping.save_address:
            _, error = await self.address_book.save(actor.user_id, shipping.address())
            if error:
                logger.warning("Could not save address for %s: %s", actor.user_id, error)

        customer_ok, operator_ok = await self._notify(self._notice(order.id, lines, quote, payment_method, delivery_speed))

        self.cart.release(lines)
        self.step = CheckoutStep.CONFIRMATION
        self.error = None
        self.placement = PlacementResult(
            order_id=order.id,
            total=quote.total,
            message=SUCCESS_MESSAGE if customer_ok or operator_ok else DEGRADED_MESSAGE,
            customer_notified=customer_ok,
            operator_notified=operator_ok,
        )
        return self.placement

    def _notice(self, order_id, lines, quote: Quote, payment_method: str, delivery_speed: str) -> OrderNotice:
        shipping = self.shipping
        return OrderNotice(
            order_id=order_id,
            customer_name=shipping.full_name,
            customer_email=shipping.email,
            customer_phone=shipping.phone,
            order_total=format_money(quote.total, self.currency_symbol),
            payment_method="UPI" if payment_method == "upi" else "Cash on Delivery",
            delivery_window=f"Within {DELIVERY_WINDOWS[delivery_speed]}",
            address=shipping.address().one_line(),
            order_items="\n".join(
                f"{l.name} x{l.quantity} - {format_money(l.price * l.quantity, self.currency_symbol)}"
                for l in lines
            ),
        )

    async def _notify(self, notice: OrderNotice):
        results = await asyncio.gather(
            self.notifications.send_customer_confirmation(notice),
            self.notifications.send_operator_alert(notice),
            return_exceptions=True,
        )
        return [
            self._settled(what, result, notice.order_id)
            for what, result in zip(("customer confirmation", "operator alert"), results)
        ]

    @staticmethod
    def _settled(what: str, result, order_id: str) -> bool:
        if isinstance(result, BaseException):
            logger.warning("Order %s: %s raised %r", order_id, what, result)
            return False
        if isinstance(result, NotificationResult) and result.success:
            logger.info("Order %s: %s sent", order_id, what)
            return True
        logger.warning("Order %s: %s failed: %s", order_id, what, getattr(result, "error", None))
        return False

    # Presentation

    @property
    def should_redirect(self) -> bool:
        return self.cart.is_empty() and self.step is not CheckoutStep.CONFIRMATION

    def view(self) -> Dict:
        data = {
            "id": self.id,
            "step": self.step.value,
            "error": self.error,
            "processing": self.processing,
            "redirect": self.should_redirect,
            "items": [line.model_dump() for line in self.cart.lines],
            "shipping": self.shipping.model_dump() if self.shipping else None,
            "has_payment_proof": self.proof is not None,
            "quotes": {speed: vars(self.quote(speed)) for speed in DELIVERY_WINDOWS},
            "placement": None,
        }
        if self.placement is not None:
            data["placement"] = dict(vars(self.placement), degraded=self.placement.degraded)
        return data


class CheckoutStore:
    """The live checkout of each session.

    Starting a new checkout replaces the session's previous one.
    """

    def __init__(
        self,
        persistence: PersistenceGateway,
        notifications: NotificationGateway,
        address_book: AddressBook,
        delivery_surcharge: float = 100,
        currency_symbol: str = "₹",
        max_proof_bytes: int = 5 * 1024 * 1024,
    ):
        self.persistence = persistence
        self.notifications = notifications
        self.address_book = address_book
        self.delivery_surcharge = delivery_surcharge
        self.currency_symbol = currency_symbol
        self.max_proof_bytes = max_proof_bytes
        self._workflows: Dict[str, CheckoutWorkflow] = {}

    def __len__(self) -> int:
        return len(self._workflows)

    def start(self, session_id: str, cart: CartManager) -> CheckoutWorkflow:
        if cart.is_empty():
            raise CheckoutStateError("Your cart is empty")
        if cart.placing:
            raise CheckoutStateError("Order is already being placed")
        workflow = CheckoutWorkflow(
            cart,
            self.persistence,
            self.notifications,
            self.address_book,
            delivery_surcharge=self.delivery_surcharge,
            currency_symbol=self.currency_symbol,
            max_proof_bytes=self.max_proof_bytes,
            session_id=session_id,
        )
        self._workflows[session_id] = workflow
        return workflow

    def get(self, checkout_id: str, session_id: str) -> CheckoutWorkflow:
        workflow = self._workflows.get(session_id)
        if workflow is None or workflow.id != checkout_id:
            raise NotFoundError("Checkout not found")
        return workflow

    def discard(self, session_id: str) -> None:
        self._workflows.pop(session_id, None)
