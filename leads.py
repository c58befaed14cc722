"""
Feedback and contact capture.

A visitor first asks for a one-time code, then submits the form with it.
The operator email is best effort; the lead is stored either way.
"""

import logging
import re
from typing import Optional

from pydantic import BaseModel, EmailStr, TypeAdapter, ValidationError

from errors import FormValidationError, GatewayError
from gateways import LeadNotice, NotificationGateway, PersistenceGateway, VerificationGateway
from schemas import ContactLead

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^\d{10}$")
_email_adapter = TypeAdapter(EmailStr)


class LeadForm(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    message: str = ""
    source: str = "feedback_modal"


def validate_lead(form: LeadForm) -> Optional[str]:
    if not form.name.strip():
        return "Please enter your name."
    if not PHONE_RE.match(form.phone.strip()):
        return "Please enter a valid 10-digit mobile number."
    try:
        _email_adapter.validate_python(form.email.strip())
    except ValidationError:
        return "Please enter a valid email address."
    if not form.message.strip():
        return "Please enter your feedback message."
    return None


class LeadCapture:

    def __init__(
        self,
        persistence: PersistenceGateway,
        notifications: NotificationGateway,
        verifier: VerificationGateway,
        channel: str = "email",
    ):
        self.persistence = persistence
        self.notifications = notifications
        self.verifier = verifier
        self.channel = channel

    def _check(self, form: LeadForm) -> None:
        error = validate_lead(form)
        if error:
            raise FormValidationError(error)

    def destination(self, form: LeadForm) -> str:
        return form.phone.strip() if self.channel == "phone" else form.email.strip()

    async def request_code(self, form: LeadForm, recaptcha_token: Optional[str] = None) -> str:
        self._check(form)
        destination = self.destination(form)
        handle, error = await self.verifier.send_code(destination, form.name.strip(), recaptcha_token=recaptcha_token)
        if error:
            raise GatewayError(error)
        return handle

    async def submit(self, form: LeadForm, handle: str, code: str) -> ContactLead:
        self._check(form)
        ok, error = await self.verifier.confirm(handle, code, self.destination(form))
        if not ok:
            raise FormValidationError(error or "Invalid OTP. Please try again.")

        notice = LeadNotice(
            name=form.name.strip(),
            email=form.email.strip(),
            phone=form.phone.strip(),
            message=form.message.strip(),
            source=form.source,
        )
        result = await self.notifications.send_lead_alert(notice)
        if not result.success:
            logger.warning("Failed to send lead email: %s", result.error)

        lead, error = await self.persistence.insert_contact_message(ContactLead(
            name=notice.name,
            email=notice.email,
            phone=notice.phone,
            message=notice.message,
            source=notice.source,
        ))
        if error:
            raise GatewayError("Something went wrong. Please try again.")
        logger.info("Lead %s stored from %s", lead.id, lead.source)
        return lead
