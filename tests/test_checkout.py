import asyncio

import pytest

from addresses import AddressBook
from checkout import (
    DEGRADED_MESSAGE,
    RETRY_MESSAGE,
    SUCCESS_MESSAGE,
    CheckoutStep,
    CheckoutStore,
    CheckoutWorkflow,
    Guest,
    Registered,
    ShippingForm,
    format_money,
    resolve_actor,
    validate_shipping,
)
from conftest import make_product, run, shipping_data
from errors import CheckoutStateError, FormValidationError, NotFoundError, OrderPersistenceError
from persistence import InMemoryPersistenceGateway, StorageError
from schemas import GuestInfo, User

PNG = b"\x89PNG\r\n\x1a\nfake"


def guest():
    return Guest(GuestInfo(name="Asha Rao", email="asha@example.com", phone="9876543210"))


def workflow_for(cart, persistence, notifications):
    return CheckoutWorkflow(cart, persistence, notifications, AddressBook(persistence), delivery_surcharge=100)


@pytest.fixture
def workflow(cart, persistence, notifications):
    product = make_product("p1", 500)
    cart.add(product)
    cart.add(product)
    return workflow_for(cart, persistence, notifications)


def at_payment(workflow, **overrides):
    workflow.submit_shipping(ShippingForm(**shipping_data(**overrides)))
    return workflow


class TestShippingValidation:

    def test_valid_form_passes(self):
        assert validate_shipping(ShippingForm(**shipping_data())) is None

    def test_nine_digit_phone_is_rejected(self, workflow):
        with pytest.raises(FormValidationError) as exc:
            workflow.submit_shipping(ShippingForm(**shipping_data(phone="987654321")))

        assert str(exc.value) == "Please enter a valid 10-digit phone number."
        assert workflow.error == "Please enter a valid 10-digit phone number."
        assert workflow.step is CheckoutStep.SHIPPING

    def test_first_failing_rule_is_reported(self):
        form = ShippingForm(**shipping_data(first_name="  ", phone="12"))
        assert validate_shipping(form) == "First name is required."

    def test_missing_city(self):
        assert validate_shipping(ShippingForm(**shipping_data(city=""))) == "City is required."

    def test_bad_email(self):
        form = ShippingForm(**shipping_data(email="asha.example.com"))
        assert validate_shipping(form) == "Please enter a valid email address."

    def test_pin_code_must_be_six_digits(self):
        form = ShippingForm(**shipping_data(zip="40001"))
        assert validate_shipping(form) == "Please enter a valid 6-digit PIN code."

    def test_valid_shipping_moves_to_payment(self, workflow):
        at_payment(workflow, city="  Mumbai ")
        assert workflow.step is CheckoutStep.PAYMENT
        assert workflow.shipping.city == "Mumbai"
        assert workflow.error is None


class TestNavigation:

    def test_back_from_payment_keeps_details(self, workflow):
        at_payment(workflow)
        workflow.go_back()

        assert workflow.step is CheckoutStep.SHIPPING
        assert workflow.shipping.first_name == "Asha"

    def test_resubmitted_shipping_is_validated_again(self, workflow):
        at_payment(workflow)
        workflow.go_back()
        with pytest.raises(FormValidationError):
            workflow.submit_shipping(ShippingForm(**shipping_data(zip="1")))
        assert workflow.step is CheckoutStep.SHIPPING

    def test_back_is_only_allowed_from_payment(self, workflow):
        with pytest.raises(CheckoutStateError):
            workflow.go_back()

    def test_payment_before_shipping_is_rejected(self, workflow, persistence):
        with pytest.raises(CheckoutStateError):
            run(workflow.submit_payment(guest(), "cod"))
        assert "create_order" not in persistence.calls

    def test_shipping_cannot_be_submitted_twice(self, workflow):
        at_payment(workflow)
        with pytest.raises(CheckoutStateError):
            workflow.submit_shipping(ShippingForm(**shipping_data()))

    def test_redirect_when_cart_empties_before_confirmation(self, workflow, cart):
        assert not workflow.should_redirect
        cart.clear()
        assert workflow.should_redirect


class TestPaymentProof:

    def test_upi_without_proof_is_rejected(self, workflow, persistence):
        at_payment(workflow)
        with pytest.raises(FormValidationError) as exc:
            run(workflow.submit_payment(guest(), "upi"))

        assert str(exc.value) == "Please upload the payment screenshot to continue."
        assert workflow.step is CheckoutStep.PAYMENT
        assert persistence.orders == {}

    def test_non_image_proof_is_rejected(self, workflow):
        at_payment(workflow)
        with pytest.raises(FormValidationError):
            workflow.attach_proof(b"%PDF", "application/pdf", "receipt.pdf")
        assert workflow.proof is None

    def test_oversized_proof_is_rejected(self, cart, persistence, notifications):
        cart.add(make_product())
        workflow = CheckoutWorkflow(cart, persistence, notifications, AddressBook(persistence), max_proof_bytes=4)
        at_payment(workflow)
        with pytest.raises(FormValidationError):
            workflow.attach_proof(PNG, "image/png")

    def test_upi_order_stores_proof(self, workflow, persistence):
        at_payment(workflow)
        workflow.attach_proof(PNG, "image/png", "paid.png")
        run(workflow.submit_payment(guest(), "upi"))

        (order,) = persistence.orders.values()
        assert order.payment_method == "upi"
        assert order.payment_proof.startswith("data:image/png;base64,")

    def test_cod_order_has_no_proof(self, workflow, persistence):
        at_payment(workflow)
        workflow.attach_proof(PNG, "image/png")
        run(workflow.submit_payment(guest(), "cod"))

        (order,) = persistence.orders.values()
        assert order.payment_proof is None


class TestPlacement:

    def test_fast_delivery_adds_surcharge(self, workflow, persistence, notifications):
        at_payment(workflow)
        result = run(workflow.submit_payment(guest(), "cod", "fast"))

        assert result.total == 1100
        (order,) = persistence.orders.values()
        assert order.subtotal == 1000
        assert order.delivery_surcharge == 100
        assert order.total == 1100
        assert order.delivery_speed == "fast"
        assert notifications.last("customer").order_total == "₹1,100"
        assert notifications.last("customer").delivery_window == "Within 2-3 business days"

    def test_standard_delivery_has_no_surcharge(self, workflow):
        assert workflow.quote("standard").total == 1000
        assert workflow.quote("fast").surcharge == 100

    def test_successful_order(self, workflow, persistence, notifications, cart):
        at_payment(workflow)
        result = run(workflow.submit_payment(guest(), "cod"))

        assert persistence.calls.count("create_order") == 1
        assert result.message == SUCCESS_MESSAGE
        assert not result.degraded
        assert workflow.step is CheckoutStep.CONFIRMATION
        assert cart.is_empty()
        assert not workflow.should_redirect
        assert sorted(notifications.kinds()) == ["customer", "operator"]

        (item,) = persistence.order_items
        assert item.order_id == result.order_id
        assert (item.product_id, item.unit_price, item.quantity) == ("p1", 500, 2)

    def test_guest_order_carries_contact(self, workflow, persistence):
        at_payment(workflow)
        run(workflow.submit_payment(guest(), "cod"))

        (order,) = persistence.orders.values()
        assert order.user_id is None
        assert order.guest_info.email == "asha@example.com"
        assert order.customer_email == "asha@example.com"

    def test_registered_order_has_owner(self, workflow, persistence):
        at_payment(workflow)
        run(workflow.submit_payment(Registered("u1"), "cod"))

        (order,) = persistence.orders.values()
        assert order.user_id == "u1"
        assert order.guest_info is None

    def test_one_notification_failing_still_succeeds(self, workflow, notifications, persistence):
        notifications.fail = {"customer"}
        at_payment(workflow)
        result = run(workflow.submit_payment(guest(), "cod"))

        assert result.message == SUCCESS_MESSAGE
        assert result.customer_notified is False
        assert result.operator_notified is True
        assert len(persistence.orders) == 1

    def test_both_notifications_failing_is_degraded(self, workflow, notifications, persistence, cart):
        notifications.fail = {"customer", "operator"}
        at_payment(workflow)
        result = run(workflow.submit_payment(guest(), "cod"))

        assert result.message == DEGRADED_MESSAGE
        assert result.degraded
        assert workflow.step is CheckoutStep.CONFIRMATION
        assert cart.is_empty()
        assert len(persistence.orders) == 1

    def test_raising_notification_counts_as_failure(self, workflow, notifications):
        async def explode(notice):
            raise RuntimeError("smtp down")

        notifications.send_operator_alert = explode
        at_payment(workflow)
        result = run(workflow.submit_payment(guest(), "cod"))

        assert result.operator_notified is False
        assert result.customer_notified is True
        assert result.message == SUCCESS_MESSAGE

    def test_notifications_are_sent_concurrently(self, workflow, notifications):
        # Each send waits for the other to start; sequential sends would time out.
        started = {}

        def pairing(kind, other, original):
            async def send(notice):
                started.setdefault(kind, asyncio.Event()).set()
                await asyncio.wait_for(started.setdefault(other, asyncio.Event()).wait(), timeout=2)
                return await original(notice)
            return send

        notifications.send_customer_confirmation = pairing(
            "customer", "operator", notifications.send_customer_confirmation
        )
        notifications.send_operator_alert = pairing("operator", "customer", notifications.send_operator_alert)
        at_payment(workflow)
        result = run(workflow.submit_payment(guest(), "cod"))

        assert result.customer_notified and result.operator_notified

    def test_notice_lists_items(self, workflow, notifications):
        at_payment(workflow)
        run(workflow.submit_payment(guest(), "cod"))

        notice = notifications.last("operator")
        assert notice.order_items == "Engraved Pen x2 - ₹1,000"
        assert notice.payment_method == "Cash on Delivery"
        assert notice.customer_name == "Asha Rao"
        assert "Mumbai" in notice.address

    def test_empty_cart_is_rejected(self, workflow, cart):
        at_payment(workflow)
        cart.clear()
        with pytest.raises(CheckoutStateError):
            run(workflow.submit_payment(guest(), "cod"))

    def test_unknown_payment_method(self, workflow):
        at_payment(workflow)
        with pytest.raises(FormValidationError):
            run(workflow.submit_payment(guest(), "card"))

    def test_no_second_submit_after_confirmation(self, workflow, persistence):
        at_payment(workflow)
        run(workflow.submit_payment(guest(), "cod"))
        with pytest.raises(CheckoutStateError):
            run(workflow.submit_payment(guest(), "cod"))
        assert persistence.calls.count("create_order") == 1


class FailingItemsPersistence(InMemoryPersistenceGateway):

    def _write_items(self, order_id, items):
        raise StorageError("order_item insert failed")


class TestPersistenceFailure:

    @pytest.fixture
    def failing(self, cart, notifications):
        cart.add(make_product("p1", 500))
        persistence = FailingItemsPersistence()
        return persistence, workflow_for(cart, persistence, notifications)

    def test_failed_write_keeps_payment_step_and_cart(self, failing, cart, notifications):
        persistence, workflow = failing
        at_payment(workflow)
        with pytest.raises(OrderPersistenceError):
            run(workflow.submit_payment(guest(), "cod"))

        assert workflow.step is CheckoutStep.PAYMENT
        assert workflow.error == RETRY_MESSAGE
        assert workflow.processing is False
        assert cart.count == 1
        assert notifications.sent == []

    def test_failed_item_write_leaves_no_order_header(self, failing):
        persistence, workflow = failing
        at_payment(workflow)
        with pytest.raises(OrderPersistenceError):
            run(workflow.submit_payment(guest(), "cod"))

        assert persistence.orders == {}
        assert persistence.order_items == []


class TestAddressSaving:

    def test_registered_customer_address_is_saved_once(self, cart, persistence, notifications):
        for _ in range(2):
            cart.add(make_product())
            workflow = workflow_for(cart, persistence, notifications)
            at_payment(workflow, save_address=True)
            run(workflow.submit_payment(Registered("u1"), "cod"))

        saved = run(AddressBook(persistence).get("u1"))
        assert len(saved) == 1
        assert saved[0].zip == "400001"

    def test_guest_address_is_not_saved(self, workflow, persistence):
        at_payment(workflow, save_address=True)
        run(workflow.submit_payment(guest(), "cod"))
        assert persistence.addresses == {}

    def test_address_failure_does_not_fail_order(self, cart, notifications):
        class NoAddresses(InMemoryPersistenceGateway):
            async def get_addresses(self, user_id):
                return None, "profile unavailable"

        persistence = NoAddresses()
        cart.add(make_product())
        workflow = workflow_for(cart, persistence, notifications)
        at_payment(workflow, save_address=True)
        result = run(workflow.submit_payment(Registered("u1"), "cod"))

        assert result.message == SUCCESS_MESSAGE
        assert workflow.step is CheckoutStep.CONFIRMATION


def test_resolve_actor():
    form = ShippingForm(**shipping_data())
    assert resolve_actor(User(id="u1", email="asha@example.com", display_name="Asha"), form) == Registered("u1")

    actor = resolve_actor(None, form)
    assert isinstance(actor, Guest)
    assert actor.contact.name == "Asha Rao"
    assert actor.contact.phone == "9876543210"


def test_format_money():
    assert format_money(1100) == "₹1,100"
    assert format_money(99.5) == "₹99.50"


class TestCheckoutStore:

    @pytest.fixture
    def store(self, persistence, notifications):
        return CheckoutStore(persistence, notifications, AddressBook(persistence))

    def test_cannot_start_with_empty_cart(self, store, cart):
        with pytest.raises(CheckoutStateError):
            store.start("s1", cart)

    def test_checkout_is_bound_to_its_session(self, store, cart):
        cart.add(make_product())
        workflow = store.start("s1", cart)

        assert store.get(workflow.id, "s1") is workflow
        with pytest.raises(NotFoundError):
            store.get(workflow.id, "s2")
        with pytest.raises(NotFoundError):
            store.get("missing", "s1")

    def test_view(self, store, cart):
        cart.add(make_product())
        workflow = store.start("s1", cart)
        view = workflow.view()

        assert view["step"] == "shipping"
        assert view["quotes"]["fast"]["total"] == 600
        assert view["placement"] is None


class SlowPersistence(InMemoryPersistenceGateway):
    """Yields to the event loop before writing, like a threadpool call does."""

    def __init__(self):
        super().__init__()
        self.writing = None

    async def create_order(self, order, items):
        self.writing.set()
        await asyncio.sleep(0.01)
        return await super().create_order(order, items)


class TestInFlightPlacement:

    @pytest.fixture
    def slow(self):
        return SlowPersistence()

    def test_two_checkouts_on_one_cart_place_one_order(self, slow, cart, notifications):
        cart.add(make_product("p1", 500))
        store = CheckoutStore(slow, notifications, AddressBook(slow))
        first = at_payment(store.start("s1", cart))
        second = at_payment(CheckoutWorkflow(cart, slow, notifications, AddressBook(slow), session_id="s1"))

        async def both():
            slow.writing = asyncio.Event()
            return await asyncio.gather(
                first.submit_payment(guest(), "cod"),
                second.submit_payment(guest(), "cod"),
                return_exceptions=True,
            )

        results = run(both())

        assert len(slow.orders) == 1
        assert sum(isinstance(r, CheckoutStateError) for r in results) == 1
        assert cart.is_empty()
        assert cart.placing is False

    def test_items_added_during_placement_stay_in_cart(self, slow, cart, notifications):
        cart.add(make_product("p1", 500))
        workflow = at_payment(workflow_for(cart, slow, notifications))

        async def place_while_shopping():
            slow.writing = asyncio.Event()
            task = asyncio.ensure_future(workflow.submit_payment(guest(), "cod"))
            await slow.writing.wait()
            cart.add(make_product("p2", 120))
            cart.add(make_product("p1", 500))
            return await task

        run(place_while_shopping())

        assert [(i.product_id, i.quantity) for i in slow.order_items] == [("p1", 1)]
        assert [(l.product_id, l.quantity) for l in cart.lines] == [("p1", 1), ("p2", 1)]
        assert notifications.last("customer").order_items == "Engraved Pen x1 - ₹500"

    def test_no_new_checkout_while_placing(self, cart, persistence, notifications):
        cart.add(make_product())
        store = CheckoutStore(persistence, notifications, AddressBook(persistence))
        cart.placing = True
        with pytest.raises(CheckoutStateError):
            store.start("s1", cart)


class TestSessionWorkflows:

    @pytest.fixture
    def store(self, persistence, notifications):
        return CheckoutStore(persistence, notifications, AddressBook(persistence))

    def test_new_checkout_replaces_previous(self, store, cart):
        cart.add(make_product())
        first = store.start("s1", cart)
        second = store.start("s1", cart)

        assert len(store) == 1
        assert store.get(second.id, "s1") is second
        with pytest.raises(NotFoundError):
            store.get(first.id, "s1")

    def test_discard(self, store, cart):
        cart.add(make_product())
        workflow = store.start("s1", cart)
        store.discard("s1")

        assert len(store) == 0
        with pytest.raises(NotFoundError):
            store.get(workflow.id, "s1")
