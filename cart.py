"""
Shopping cart state.

A cart belongs to one browser session and never touches the database. All
operations are synchronous and cannot fail; unknown product ids are ignored.
"""

import time
from typing import Callable, Dict, List, Optional, Tuple

from schemas import CartLine, Product


class CartManager:

    def __init__(self):
        self._lines: Dict[str, CartLine] = {}
        self.is_open = False
        # Set while an order for these lines is being written
        self.placing = False

    @property
    def lines(self) -> List[CartLine]:
        return list(self._lines.values())

    @property
    def total(self) -> float:
        return sum(line.price * line.quantity for line in self._lines.values())

    @property
    def count(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def is_empty(self) -> bool:
        return not self._lines

    def get(self, product_id: str) -> Optional[CartLine]:
        return self._lines.get(product_id)

    def add(self, product: Product) -> CartLine:
        line = self._lines.get(product.id)
        if line is not None:
            line.quantity += 1
            return line
        line = CartLine(
            product_id=product.id,
            name=product.name,
            price=product.price,
            image_url=product.image_url,
            category=product.category,
            quantity=1,
        )
        self._lines[product.id] = line
        return line

    def update_quantity(self, product_id: str, delta: int) -> Optional[CartLine]:
        """Shift a line's quantity; the line goes away once it would reach zero."""
        line = self._lines.get(product_id)
        if line is None:
            return None
        quantity = line.quantity + delta
        if quantity <= 0:
            del self._lines[product_id]
            return None
        line.quantity = max(1, quantity)
        return line

    def remove(self, product_id: str) -> None:
        self._lines.pop(product_id, None)

    def clear(self) -> None:
        self._lines.clear()

    def release(self, ordered: List[CartLine]) -> None:
        """Take ordered quantities out of the cart, keeping anything added since."""
        for line in ordered:
            self.update_quantity(line.product_id, -line.quantity)

    # Drawer visibility, unrelated to the cart contents

    def open_drawer(self) -> None:
        self.is_open = True

    def close_drawer(self) -> None:
        self.is_open = False

    def toggle_drawer(self) -> bool:
        self.is_open = not self.is_open
        return self.is_open

    def snapshot(self) -> dict:
        return {
            "items": [line.model_dump() for line in self._lines.values()],
            "total": self.total,
            "count": self.count,
            "is_open": self.is_open,
        }


class CartStore:
    """One cart per session id, created on first access.

    Sessions untouched for ``idle_timeout`` seconds are dropped on the next
    access, unless an order is being placed for them. Listeners registered
    with ``on_discard`` hear about every dropped session.
    """

    def __init__(self, idle_timeout: float = 24 * 60 * 60, clock: Callable[[], float] = time.monotonic):
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._carts: Dict[str, Tuple[CartManager, float]] = {}
        self._listeners: List[Callable[[str], None]] = []

    def __len__(self) -> int:
        return len(self._carts)

    def on_discard(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def get(self, session_id: str) -> CartManager:
        now = self.clock()
        self.sweep(now)
        entry = self._carts.get(session_id)
        cart = entry[0] if entry else CartManager()
        self._carts[session_id] = (cart, now)
        return cart

    def sweep(self, now: Optional[float] = None) -> List[str]:
        now = self.clock() if now is None else now
        idle = [
            sid for sid, (cart, seen) in self._carts.items()
            if now - seen > self.idle_timeout and not cart.placing
        ]
        for sid in idle:
            self.discard(sid)
        return idle

    def discard(self, session_id: str) -> None:
        if self._carts.pop(session_id, None) is None:
            return
        for listener in self._listeners:
            listener(session_id)
