import logging
from typing import Optional

import httpx

from config import Settings
from results import Err, Ok, Result

logger = logging.getLogger(__name__)

EMAIL_ENDPOINTS = {
    "signup": "/api/sendSignupCode",
    "reset": "/api/sendResetCode",
    "resend": "/api/sendResendCode",
}


def sms_recipient(phone: str) -> str:
    if phone.startswith("0"):
        return "254" + phone[1:]
    if phone.startswith("+"):
        return phone[1:]
    return phone


class Notifier:
    """Sends one-time codes through the email and SMS gateways."""

    def __init__(self, settings: Settings, http: httpx.Client):
        self.settings = settings
        self.http = http

    def send_email_code(self, email: str, code: str, kind: str) -> Result[None]:
        base = self.settings.email_api_url.rstrip("/")
        endpoint = base + EMAIL_ENDPOINTS.get(kind, EMAIL_ENDPOINTS["signup"])
        try:
            response = self.http.post(endpoint, json={
                "email": email,
                "username": email.split("@")[0],
                "code": code,
            })
        except httpx.HTTPError as e:
            logger.error("Email send to %s failed: %s", email, e)
            return Err(str(e))
        if response.is_error:
            logger.error("Email API error (%s): %s", response.status_code, response.text[:200])
            return Err("Email API error", status_code=response.status_code, detail=response.text)
        return Ok(None)

    def send_sms_code(self, phone: str, code: str) -> Result[None]:
        if not self.settings.sms_api_token:
            logger.error("SMS API token not configured")
            return Err("SMS API token not configured")
        try:
            response = self.http.post(
                self.settings.sms_api_url,
                json={
                    "recipient": sms_recipient(phone),
                    "sender_id": self.settings.sms_sender_id,
                    "type": "plain",
                    "message": f"Your JEWEL HAVEN Code is: {code}. Valid for 10 minutes.",
                },
                headers={"Authorization": f"Bearer {self.settings.sms_api_token}"},
            )
        except httpx.HTTPError as e:
            logger.error("SMS send to %s failed: %s", phone, e)
            return Err(str(e))
        if response.is_error:
            logger.error("SMS API error (%s): %s", response.status_code, response.text[:200])
            return Err("SMS API error", status_code=response.status_code, detail=response.text)
        return Ok(None)

    def send_code(self, *, email: str, code: str, kind: str, phone: Optional[str] = None,
                  preference: str = "email") -> Result[None]:
        """Route a code by the user's preference: SMS when chosen and a phone is known, else email."""
        if preference == "sms" and phone:
            return self.send_sms_code(phone, code)
        return self.send_email_code(email, code, kind)
