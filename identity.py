"""
Identity provider access.

TokenIdentityGateway plays the external auth provider: users live in the
"user" collection with a salted password hash and an opaque session token.
IdentityAdapter wraps whatever provider is plugged in and keeps the
normalized User for one browser session.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from bson import ObjectId
from fastapi.concurrency import run_in_threadpool
from pymongo.errors import PyMongoError

from gateways import (
    SIGNED_IN,
    SIGNED_OUT,
    USER_UPDATED,
    AuthListener,
    IdentityGateway,
    Result,
)
from schemas import User

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


class TokenIdentityGateway(IdentityGateway):
    """Email/password auth with one session token per user.

    Subclasses provide the storage hooks.
    """

    def __init__(self, salt: str = "storefront"):
        self.salt = salt
        self._listeners: List[AuthListener] = []

    # storage hooks

    def _find_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _find_by_token(self, token: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _insert_user(self, doc: Dict[str, Any]) -> str:
        raise NotImplementedError

    def _update_user(self, user_id: str, fields: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def _run(self, fn, *args):
        return fn(*args)

    # helpers

    def hash_password(self, password: str) -> str:
        return hashlib.sha256((password + self.salt).encode()).hexdigest()

    @staticmethod
    def provider_user(doc: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "id": doc["id"],
            "email": doc["email"],
            "created_at": doc.get("created_at"),
            "user_metadata": dict(doc.get("user_metadata") or {}),
        }

    def _session(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return {"access_token": doc["token"], "user": self.provider_user(doc)}

    def _emit(self, event: str, session: Optional[Dict[str, Any]]) -> None:
        for listener in list(self._listeners):
            listener(event, session)

    def on_auth_state_change(self, listener: AuthListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # provider API

    async def get_session(self, token):
        if not token:
            return None, None
        try:
            doc = await self._run(self._find_by_token, token)
        except PyMongoError as e:
            logger.error("Error fetching session: %s", e)
            return None, str(e)
        return (self._session(doc) if doc else None), None

    async def sign_up(self, email, password, metadata):
        if len(password or "") < MIN_PASSWORD_LENGTH:
            return None, f"Password should be at least {MIN_PASSWORD_LENGTH} characters"
        email = email.strip().lower()
        try:
            if await self._run(self._find_by_email, email):
                return None, "Email already registered"
            doc = {
                "email": email,
                "password_hash": self.hash_password(password),
                "token": secrets.token_hex(16),
                "user_metadata": {"role": "user", **(metadata or {})},
                "created_at": datetime.now(timezone.utc),
                "addresses": [],
            }
            doc["id"] = await self._run(self._insert_user, doc)
        except PyMongoError as e:
            logger.error("Error signing up: %s", e)
            return None, str(e)
        session = self._session(doc)
        self._emit(SIGNED_IN, session)
        return session, None

    async def sign_in_with_password(self, email, password):
        try:
            doc = await self._run(self._find_by_email, (email or "").strip().lower())
            if not doc or doc.get("password_hash") != self.hash_password(password or ""):
                return None, "Invalid login credentials"
            doc["token"] = secrets.token_hex(16)
            await self._run(self._update_user, doc["id"], {"token": doc["token"]})
        except PyMongoError as e:
            logger.error("Error signing in: %s", e)
            return None, str(e)
        session = self._session(doc)
        self._emit(SIGNED_IN, session)
        return session, None

    async def sign_out(self, token):
        try:
            doc = await self._run(self._find_by_token, token) if token else None
            if doc:
                await self._run(self._update_user, doc["id"], {"token": None})
        except PyMongoError as e:
            logger.error("Error signing out: %s", e)
            return False, str(e)
        if doc:
            self._emit(SIGNED_OUT, {"access_token": token, "user": self.provider_user(doc)})
        return True, None

    async def update_user(self, token, metadata=None, password=None):
        if password is not None and len(password) < MIN_PASSWORD_LENGTH:
            return None, f"Password should be at least {MIN_PASSWORD_LENGTH} characters"
        try:
            doc = await self._run(self._find_by_token, token) if token else None
            if not doc:
                return None, "Auth session missing!"
            fields = {}
            if metadata:
                doc["user_metadata"] = {**(doc.get("user_metadata") or {}), **metadata}
                fields["user_metadata"] = doc["user_metadata"]
            if password is not None:
                fields["password_hash"] = self.hash_password(password)
            if fields:
                await self._run(self._update_user, doc["id"], fields)
        except PyMongoError as e:
            logger.error("Error updating user: %s", e)
            return None, str(e)
        session = self._session(doc)
        self._emit(USER_UPDATED, session)
        return session["user"], None

    async def ensure_admin(self, email: str, password: str) -> None:
        """Create the operator account, or promote it if it already exists."""
        email = email.strip().lower()
        doc = await self._run(self._find_by_email, email)
        if doc is None:
            session, error = await self.sign_up(email, password, {"full_name": "Admin", "role": "admin"})
            if error:
                logger.error("Could not create admin account: %s", error)
            return
        if (doc.get("user_metadata") or {}).get("role") != "admin":
            metadata = {**(doc.get("user_metadata") or {}), "role": "admin"}
            await self._run(self._update_user, doc["id"], {"user_metadata": metadata})


class MongoIdentityGateway(TokenIdentityGateway):

    def __init__(self, db, salt: str = "storefront"):
        super().__init__(salt)
        self.db = db

    async def _run(self, fn, *args):
        return await run_in_threadpool(fn, *args)

    @staticmethod
    def _with_id(doc):
        if doc is None:
            return None
        doc = dict(doc)
        doc["id"] = str(doc.pop("_id"))
        return doc

    def _find_by_email(self, email):
        return self._with_id(self.db["user"].find_one({"email": email}))

    def _find_by_token(self, token):
        return self._with_id(self.db["user"].find_one({"token": token}))

    def _insert_user(self, doc):
        stored = {k: v for k, v in doc.items() if k != "id"}
        return str(self.db["user"].insert_one(stored).inserted_id)

    def _update_user(self, user_id, fields):
        self.db["user"].update_one({"_id": ObjectId(user_id)}, {"$set": fields})


class InMemoryIdentityGateway(TokenIdentityGateway):

    def __init__(self, salt: str = "storefront"):
        super().__init__(salt)
        self.users: Dict[str, Dict[str, Any]] = {}

    def _find_by_email(self, email):
        doc = next((u for u in self.users.values() if u["email"] == email), None)
        return dict(doc) if doc else None

    def _find_by_token(self, token):
        doc = next((u for u in self.users.values() if u.get("token") == token), None)
        return dict(doc) if doc else None

    def _insert_user(self, doc):
        user_id = str(ObjectId())
        self.users[user_id] = dict(doc, id=user_id)
        return user_id

    def _update_user(self, user_id, fields):
        self.users[user_id].update(fields)


def normalize_user(provider_user: Dict[str, Any]) -> User:
    metadata = provider_user.get("user_metadata") or {}
    email = provider_user.get("email") or ""
    role = metadata.get("role")
    return User(
        id=provider_user["id"],
        email=email,
        display_name=metadata.get("full_name") or email.split("@")[0],
        join_date=provider_user.get("created_at"),
        role=role if role in ("user", "admin") else "user",
    )


class IdentityAdapter:
    """The signed-in user for one browser session.

    ``loading`` stays True until the initial session lookup finishes, so
    callers can tell "signed out" apart from "not known yet".
    """

    def __init__(self, gateway: IdentityGateway):
        self.gateway = gateway
        self.user: Optional[User] = None
        self.token: Optional[str] = None
        self.loading = True
        self._unsubscribe = gateway.on_auth_state_change(self._on_auth_change)

    def _apply(self, session: Optional[Dict[str, Any]]) -> None:
        if session and session.get("user"):
            self.token = session["access_token"]
            self.user = normalize_user(session["user"])
        else:
            self.token = None
            self.user = None

    def _on_auth_change(self, event: str, session: Optional[Dict[str, Any]]) -> None:
        # Only changes to this adapter's own session apply
        if self.token is None or not session or session.get("access_token") != self.token:
            return
        self._apply(None if event == SIGNED_OUT else session)
        self.loading = False

    async def initialize(self, token: Optional[str]) -> Optional[User]:
        session, error = await self.gateway.get_session(token)
        if error:
            logger.warning("Could not restore session: %s", error)
        self._apply(session)
        self.loading = False
        return self.user

    async def login(self, email: str, password: str):
        session, error = await self.gateway.sign_in_with_password(email, password)
        if error:
            return None, error
        self._apply(session)
        return self.user, None

    async def register(self, name: str, email: str, password: str):
        session, error = await self.gateway.sign_up(email, password, {"full_name": name, "role": "user"})
        if error:
            return None, error
        self._apply(session)
        return self.user, None

    async def logout(self) -> None:
        if self.token:
            _, error = await self.gateway.sign_out(self.token)
            if error:
                logger.warning("Sign out failed: %s", error)
        self._apply(None)

    async def update_profile(self, name: str):
        if self.user is None:
            return None, "Not signed in"
        provider_user, error = await self.gateway.update_user(self.token, metadata={"full_name": name})
        if error:
            return None, error
        self.user = normalize_user(provider_user)
        return self.user, None

    async def change_password(self, password: str):
        if self.user is None:
            return False, "Not signed in"
        _, error = await self.gateway.update_user(self.token, password=password)
        if error:
            return False, error
        return True, None

    def close(self) -> None:
        self._unsubscribe()
