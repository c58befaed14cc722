import logging
from typing import List

from gateways import PersistenceGateway
from schemas import Address

logger = logging.getLogger(__name__)


class AddressBook:
    """Saved shipping addresses kept on the user's profile.

    Two addresses are the same when street, city, state and zip match
    exactly; the name and phone on them are not compared.
    """

    def __init__(self, persistence: PersistenceGateway):
        self.persistence = persistence

    async def get(self, user_id: str) -> List[Address]:
        addresses, error = await self.persistence.get_addresses(user_id)
        if error:
            logger.error("Error fetching addresses for %s: %s", user_id, error)
            return []
        return addresses or []

    async def save(self, user_id: str, address: Address):
        """Append ``address`` unless it is already saved. Returns ``(addresses, error)``."""
        current, error = await self.persistence.get_addresses(user_id)
        if error:
            return None, error
        current = current or []
        if any(saved.dedup_key() == address.dedup_key() for saved in current):
            logger.info("Address already saved for %s, skipping", user_id)
            return current, None
        return await self.persistence.set_addresses(user_id, current + [address])
