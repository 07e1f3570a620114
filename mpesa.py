import logging
import math
import re
from typing import Any, Dict, Union

import httpx

from config import Settings
from results import Err, Ok, Result

logger = logging.getLogger(__name__)

COUNTRY_CODE = "254"


def normalize_phone(phone: Union[str, int]) -> str:
    """Bring a Kenyan phone number into the 254XXXXXXXXX form the gateway expects.

    >>> normalize_phone("0712345678")
    '254712345678'
    >>> normalize_phone("+254 712 345 678")
    '254712345678'
    """
    digits = re.sub(r"[^\d+]", "", str(phone).strip()).replace("+", "")
    if digits.startswith("0"):
        return COUNTRY_CODE + digits[1:]
    if digits.startswith("7") and len(digits) == 9:
        return COUNTRY_CODE + digits
    if not digits.startswith(COUNTRY_CODE):
        return COUNTRY_CODE + digits
    return digits


def parse_amount(amount: Any) -> int:
    """Parse a positive amount and round it up to whole shillings.

    Raises ValueError for anything that is not a positive number.
    """
    try:
        value = float(amount)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid amount: {amount!r}")
    if not math.isfinite(value) or value <= 0:
        raise ValueError(f"Invalid amount: {amount!r}")
    return math.ceil(value)


def is_completed(payload: Dict[str, Any]) -> bool:
    """True when a verify-transaction reply reports a settled payment with a receipt."""
    if payload.get("success") is not True or payload.get("status") != "completed":
        return False
    data = payload.get("data") or {}
    return data.get("ResultCode") in (0, "0") and bool(data.get("MpesaReceiptNumber"))


class MpesaClient:
    """Client for the M-Pesa aggregator: STK push initiation and transaction status."""

    def __init__(self, settings: Settings, http: httpx.Client):
        self.base_url = settings.mpesa_api_url.rstrip("/")
        self.http = http

    def _post(self, path: str, body: dict) -> Result[Dict[str, Any]]:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.post(url, json=body, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            logger.error("M-Pesa request to %s failed: %s", path, e)
            return Err(f"M-Pesa gateway unreachable: {e}")
        logger.info("M-Pesa %s responded %s", path, response.status_code)
        try:
            payload = response.json()
        except ValueError:
            logger.error("M-Pesa %s returned non-JSON body: %s", path, response.text[:200])
            return Err("Invalid response from M-Pesa API", status_code=response.status_code,
                       detail=response.text)
        if not isinstance(payload, dict):
            return Err("Invalid response from M-Pesa API", status_code=response.status_code,
                       detail=payload)
        return Ok(payload)

    def stk_push(self, phone_number: str, amount: int) -> Result[Dict[str, Any]]:
        logger.info("Initiating STK push for %s, amount %s", phone_number, amount)
        return self._post("/api/payJewelHaven.php", {
            "phoneNumber": phone_number,
            "amount": str(amount),
        })

    def verify_transaction(self, checkout_request_id: str) -> Result[Dict[str, Any]]:
        return self._post("/api/verify-transaction.php", {"checkoutRequestId": checkout_request_id})
