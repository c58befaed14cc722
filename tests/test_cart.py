from cart import CartStore
from conftest import make_product


def test_adding_same_product_twice_increments_quantity(cart):
    product = make_product()
    cart.add(product)
    cart.add(product)

    assert len(cart.lines) == 1
    assert cart.get("p1").quantity == 2


def test_total_and_count(cart):
    cart.add(make_product("p1", 500))
    cart.add(make_product("p1", 500))
    cart.add(make_product("p2", 120.5))

    assert cart.total == 500 * 2 + 120.5
    assert cart.count == 3


def test_line_keeps_product_snapshot(cart):
    line = cart.add(make_product("p9", 250, name="Mug", category="birthdays"))

    assert line.name == "Mug"
    assert line.price == 250
    assert line.category == "birthdays"
    assert line.image_url == "https://img.example.com/p9.jpg"


def test_update_quantity(cart):
    product = make_product()
    cart.add(product)
    cart.update_quantity("p1", 2)
    assert cart.get("p1").quantity == 3

    cart.update_quantity("p1", -1)
    assert cart.get("p1").quantity == 2


def test_removing_last_unit_removes_line(cart):
    cart.add(make_product())
    assert cart.update_quantity("p1", -1) is None
    assert cart.is_empty()


def test_large_negative_delta_removes_line(cart):
    cart.add(make_product())
    cart.add(make_product())
    cart.update_quantity("p1", -5)
    assert cart.get("p1") is None


def test_unknown_ids_are_ignored(cart):
    cart.add(make_product())
    cart.update_quantity("nope", 1)
    cart.remove("nope")
    assert cart.count == 1


def test_remove_and_clear(cart):
    cart.add(make_product("p1"))
    cart.add(make_product("p2"))
    cart.remove("p1")
    assert [line.product_id for line in cart.lines] == ["p2"]

    cart.clear()
    assert cart.is_empty()
    assert cart.total == 0


def test_drawer_flag_is_independent_of_contents(cart):
    cart.open_drawer()
    cart.add(make_product())
    cart.clear()
    assert cart.is_open

    assert cart.toggle_drawer() is False
    cart.add(make_product())
    assert cart.is_open is False


def test_cart_store_keeps_one_cart_per_session():
    store = CartStore()
    store.get("a").add(make_product())

    assert store.get("a").count == 1
    assert store.get("b").is_empty()

    store.discard("a")
    assert store.get("a").is_empty()


def test_release_keeps_lines_added_after_the_snapshot(cart):
    cart.add(make_product("p1"))
    ordered = [line.model_copy() for line in cart.lines]
    cart.add(make_product("p1"))
    cart.add(make_product("p2"))

    cart.release(ordered)
    assert cart.get("p1").quantity == 1
    assert cart.get("p2").quantity == 1


class FakeClock:

    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_idle_sessions_are_dropped():
    clock = FakeClock()
    store = CartStore(idle_timeout=60, clock=clock)
    dropped = []
    store.on_discard(dropped.append)

    store.get("a").add(make_product())
    clock.now = 30
    store.get("b")
    clock.now = 61
    store.get("b")

    assert dropped == ["a"]
    assert len(store) == 1
    assert store.get("a").is_empty()


def test_session_placing_an_order_is_kept():
    clock = FakeClock()
    store = CartStore(idle_timeout=60, clock=clock)
    store.get("a").placing = True

    clock.now = 120
    assert store.sweep() == []
    assert len(store) == 1
