"""
Service wiring.

Every component receives its gateways through its constructor; this module
is the one place that decides which concrete gateway backs each of them.
"""

import logging
from dataclasses import dataclass, fields
from typing import Optional

from addresses import AddressBook
from admin import AdminConsole
from cart import CartStore
from catalog import CatalogReader
from checkout import CheckoutStore
from config import Settings, get_settings
from database import db
from gateways import IdentityGateway, NotificationGateway, PersistenceGateway, VerificationGateway
from identity import InMemoryIdentityGateway, MongoIdentityGateway
from leads import LeadCapture
from notifications import EmailJSNotificationGateway
from persistence import InMemoryPersistenceGateway, MongoPersistenceGateway
from verification import EmailCodeVerification, FirebasePhoneVerification

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    persistence: PersistenceGateway
    identity: IdentityGateway
    notifications: NotificationGateway
    verifier: VerificationGateway
    carts: CartStore
    catalog: CatalogReader
    address_book: AddressBook
    checkouts: CheckoutStore
    admin: AdminConsole
    leads: LeadCapture

    async def aclose(self) -> None:
        for f in fields(self):
            close = getattr(getattr(self, f.name), "aclose", None)
            if close is not None:
                await close()


def build_services(
    settings: Optional[Settings] = None,
    persistence: Optional[PersistenceGateway] = None,
    identity: Optional[IdentityGateway] = None,
    notifications: Optional[NotificationGateway] = None,
    verifier: Optional[VerificationGateway] = None,
) -> Services:
    settings = settings or get_settings()

    if db is not None:
        persistence = persistence or MongoPersistenceGateway(db)
        identity = identity or MongoIdentityGateway(db, settings.auth_salt)
    else:
        if persistence is None or identity is None:
            logger.warning("Database not configured, using in-memory storage")
        persistence = persistence or InMemoryPersistenceGateway()
        identity = identity or InMemoryIdentityGateway(settings.auth_salt)

    notifications = notifications or EmailJSNotificationGateway(settings)

    channel = settings.lead_verification
    if verifier is None:
        if channel == "phone" and settings.firebase_api_key:
            verifier = FirebasePhoneVerification(settings.firebase_api_key)
        else:
            if channel == "phone":
                logger.warning("FIREBASE_API_KEY not set, verifying leads by email")
            channel = "email"
            verifier = EmailCodeVerification(notifications)

    address_book = AddressBook(persistence)
    carts = CartStore(idle_timeout=settings.session_idle_seconds)
    checkouts = CheckoutStore(
        persistence,
        notifications,
        address_book,
        delivery_surcharge=settings.delivery_surcharge,
        currency_symbol=settings.currency_symbol,
        max_proof_bytes=settings.max_proof_bytes,
    )
    carts.on_discard(checkouts.discard)

    return Services(
        settings=settings,
        persistence=persistence,
        identity=identity,
        notifications=notifications,
        verifier=verifier,
        carts=carts,
        catalog=CatalogReader(persistence),
        address_book=address_book,
        checkouts=checkouts,
        admin=AdminConsole(persistence),
        leads=LeadCapture(persistence, notifications, verifier, channel=channel),
    )
