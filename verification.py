"""
One-time code verification for lead capture.

EmailCodeVerification mails a six digit code through the notification
gateway. FirebasePhoneVerification uses Firebase phone auth over its REST
API. Both hand back an opaque handle from send_code and check a code
against it with confirm. A handle only confirms the destination it was
issued for.
"""

import hashlib
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Dict, Optional

import httpx

from gateways import NotificationGateway, VerificationGateway

logger = logging.getLogger(__name__)

CODE_TTL_SECONDS = 10 * 60
MAX_ATTEMPTS = 5
IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"

EXPIRED_MESSAGE = "Verification code expired. Please request a new one."
INVALID_MESSAGE = "Invalid OTP. Please try again."
MISMATCH_MESSAGE = "This code was sent to a different contact. Please request a new one."
EXHAUSTED_MESSAGE = "Too many attempts. Please request a new code."


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode()).hexdigest()


def _same_destination(a: str, b: str) -> bool:
    return a.strip().lower() == (b or "").strip().lower()


@dataclass
class _Pending:
    destination: str
    digest: str
    expires_at: float
    failures: int = 0


class EmailCodeVerification(VerificationGateway):

    def __init__(self, notifications: NotificationGateway, ttl: int = CODE_TTL_SECONDS,
                 max_attempts: int = MAX_ATTEMPTS):
        self.notifications = notifications
        self.ttl = ttl
        self.max_attempts = max_attempts
        self._pending: Dict[str, _Pending] = {}

    @staticmethod
    def generate_code() -> str:
        return str(100000 + secrets.randbelow(900000))

    def sweep(self) -> None:
        now = time.monotonic()
        for handle in [h for h, p in self._pending.items() if p.expires_at < now]:
            del self._pending[handle]

    async def send_code(self, destination, name="", recaptcha_token=None):
        self.sweep()
        code = self.generate_code()
        result = await self.notifications.send_verification_code(name, destination, code)
        if not result.success:
            return None, result.error or "Failed to send OTP email."
        handle = secrets.token_urlsafe(16)
        self._pending[handle] = _Pending(destination.strip(), _digest(code), time.monotonic() + self.ttl)
        logger.info("Verification code sent to %s", destination)
        return handle, None

    async def confirm(self, handle, code, destination):
        pending = self._pending.get(handle)
        if pending is None or pending.expires_at < time.monotonic():
            self._pending.pop(handle, None)
            return False, EXPIRED_MESSAGE
        if not _same_destination(pending.destination, destination):
            del self._pending[handle]
            logger.warning("Verification handle for %s used for %s", pending.destination, destination)
            return False, MISMATCH_MESSAGE
        if not secrets.compare_digest(pending.digest, _digest((code or "").strip())):
            pending.failures += 1
            if pending.failures >= self.max_attempts:
                del self._pending[handle]
                return False, EXHAUSTED_MESSAGE
            return False, INVALID_MESSAGE
        del self._pending[handle]
        return True, None


class FirebasePhoneVerification(VerificationGateway):

    def __init__(self, api_key: str, client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=15)

    async def aclose(self) -> None:
        await self.client.aclose()

    @staticmethod
    def to_e164(phone: str) -> str:
        phone = phone.strip()
        return phone if phone.startswith("+") else f"+91{phone}"

    async def _post(self, method: str, body: dict):
        try:
            response = await self.client.post(
                f"{IDENTITY_TOOLKIT_URL}/accounts:{method}", params={"key": self.api_key}, json=body
            )
        except httpx.HTTPError as e:
            logger.error("Phone verification %s failed: %s", method, e)
            return None, str(e) or type(e).__name__
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if response.status_code != 200:
            message = (data.get("error") or {}).get("message") or f"status {response.status_code}"
            logger.error("Phone verification %s failed: %s", method, message)
            return None, message
        return data, None

    async def send_code(self, destination, name="", recaptcha_token=None):
        body = {"phoneNumber": self.to_e164(destination)}
        if recaptcha_token:
            body["recaptchaToken"] = recaptcha_token
        data, error = await self._post("sendVerificationCode", body)
        if error:
            return None, error
        return data.get("sessionInfo"), None

    async def confirm(self, handle, code, destination):
        data, error = await self._post("signInWithPhoneNumber", {"sessionInfo": handle, "code": code})
        if error:
            return False, error
        if not data.get("idToken"):
            return False, INVALID_MESSAGE
        # Firebase reports the number the session was opened for
        verified = data.get("phoneNumber")
        if not verified or verified != self.to_e164(destination or ""):
            logger.warning("Phone verification for %s used for %s", verified, destination)
            return False, MISMATCH_MESSAGE
        return True, None
