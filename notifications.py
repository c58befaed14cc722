"""
Transactional email through the EmailJS REST API.

Every send returns a NotificationResult; transport errors are reported in it
and never raised. Nothing is retried.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional
from zoneinfo import ZoneInfo

import httpx

from config import Settings
from gateways import LeadNotice, NotificationGateway, NotificationResult, OrderNotice

logger = logging.getLogger(__name__)

EMAILJS_SEND_URL = "https://api.emailjs.com/api/v1.0/email/send"
LOCAL_TZ = ZoneInfo("Asia/Kolkata")


class EmailJSNotificationGateway(NotificationGateway):

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self.client = client or httpx.AsyncClient(timeout=15)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def _send(self, what: str, template_id: Optional[str], params: Dict[str, Any]) -> NotificationResult:
        if not self.settings.email_configured or not template_id:
            logger.warning("Email service not configured, skipping %s", what)
            return NotificationResult(False, "Email service not configured")
        payload = {
            "service_id": self.settings.emailjs_service_id,
            "template_id": template_id,
            "user_id": self.settings.emailjs_public_key,
            "template_params": params,
        }
        if self.settings.emailjs_private_key:
            payload["accessToken"] = self.settings.emailjs_private_key
        try:
            response = await self.client.post(EMAILJS_SEND_URL, json=payload)
        except httpx.HTTPError as e:
            logger.error("Failed to send %s: %s", what, e)
            return NotificationResult(False, str(e) or type(e).__name__)
        if response.status_code != 200:
            text = response.text or f"EmailJS returned status: {response.status_code}"
            logger.error("Failed to send %s: %s %s", what, response.status_code, text)
            return NotificationResult(False, text)
        logger.info("Sent %s", what)
        return NotificationResult(True)

    async def send_customer_confirmation(self, notice: OrderNotice) -> NotificationResult:
        params = {
            "to_name": notice.customer_name.split(" ")[0],
            "to_email": notice.customer_email,
            "order_id": notice.order_id,
            "order_total": notice.order_total,
            "delivery_date": notice.delivery_window,
            "order_items": notice.order_items,
            "message": "Thank you for your order! We will deliver it as per the scheduled date.",
        }
        return await self._send("order confirmation", self.settings.emailjs_template_customer, params)

    async def send_operator_alert(self, notice: OrderNotice) -> NotificationResult:
        params = {
            "to_email": self.settings.operator_email,
            "order_id": notice.order_id,
            "customer_name": notice.customer_name,
            "customer_phone": notice.customer_phone,
            "customer_email": notice.customer_email,
            "order_total": notice.order_total,
            "payment_method": notice.payment_method,
            "delivery_details": f"{notice.delivery_window} | {notice.address}",
            "order_items": notice.order_items,
            "message": "New Order Received! Check Admin Panel for details.",
        }
        return await self._send("operator order alert", self.settings.emailjs_template_operator, params)

    async def send_lead_alert(self, notice: LeadNotice) -> NotificationResult:
        params = {
            "to_email": self.settings.operator_email,
            "user_name": notice.name,
            "user_mobile": f"+91 {notice.phone}",
            "user_email": notice.email,
            "message": notice.message,
            "submission_time": datetime.now(LOCAL_TZ).strftime("%d %B %Y, %I:%M:%S %p"),
            "source": notice.source,
        }
        return await self._send("lead alert", self.settings.emailjs_template_lead, params)

    async def send_verification_code(self, name: str, email: str, code: str) -> NotificationResult:
        params = {
            "to_email": email,
            "to_name": name or email.split("@")[0],
            "otp": code,
            "message": f"Your verification code is {code}",
        }
        return await self._send("verification code", self.settings.emailjs_template_otp, params)
