"""Order and payment workflow.

create order -> STK push -> client polls verification -> order paid -> stock taken.

Stock is taken at most once per order: the transition into a paid state claims
the order's ``stock_deducted`` flag in the same atomic write that records the
payment, and only the claimant decrements products. With transactions enabled
the claim and the product writes commit together.
"""

import logging
import secrets
import string
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from pymongo import MongoClient
from pymongo.errors import DuplicateKeyError

from config import Settings
from mpesa import MpesaClient, is_completed, normalize_phone, parse_amount
from results import Err, Ok, Result
from schemas import Order, OrderItem
from storage import Storage

logger = logging.getLogger(__name__)

ORDER_PREFIX = "JH"
BASE36 = string.digits + string.ascii_uppercase
ORDER_NUMBER_ATTEMPTS = 3


class OrderError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


def to_base36(value: int) -> str:
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(BASE36[rem])
    return "".join(reversed(out))


def generate_order_number() -> str:
    timestamp = to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(BASE36) for _ in range(4))
    return f"{ORDER_PREFIX}{timestamp}{suffix}"


def stock_fields(quantity: int) -> Dict[str, Any]:
    quantity = max(0, quantity)
    return {
        "stock_quantity": quantity,
        "stock_status": "out of stock" if quantity == 0 else "in stock",
        "in_stock": quantity > 0,
    }


class OrderWorkflow:
    def __init__(self, settings: Settings, storage: Storage, mpesa: MpesaClient,
                 client: Optional[MongoClient] = None):
        self.settings = settings
        self.storage = storage
        self.mpesa = mpesa
        self.client = client

    def _atomic(self, fn: Callable[[Any], Any]):
        """Run ``fn(session)`` in a transaction when enabled, else with no session."""
        if self.settings.mongo_transactions and self.client is not None:
            with self.client.start_session() as session:
                return session.with_transaction(fn)
        return fn(None)

    # --------------------- Creation ---------------------

    def create_order(self, user_id: str, items: List[Dict[str, Any]], delivery: Dict[str, Any],
                     payment_method: str, subtotal: float, delivery_fee: float, total: float) -> dict:
        line_items: List[Tuple[dict, Dict[str, Any]]] = []
        for item in items:
            product = self.storage.get_product_by_id(item["product_id"])
            if product is None:
                logger.warning("Skipping order item for missing product %s", item["product_id"])
                continue
            line_items.append((product, item))

        computed = round(sum(float(i["price"]) * int(i["quantity"]) for _, i in line_items), 2)
        if abs(computed - float(subtotal)) > 0.01:
            logger.warning("Client subtotal %s differs from item subtotal %s", subtotal, computed)

        def write(session):
            for attempt in range(ORDER_NUMBER_ATTEMPTS):
                order = Order(
                    user_id=user_id,
                    order_number=generate_order_number(),
                    payment_method=payment_method,
                    subtotal=subtotal,
                    delivery_fee=delivery_fee,
                    total=total,
                    **delivery,
                )
                try:
                    created = self.storage.create_order(order, session=session)
                    break
                except DuplicateKeyError:
                    logger.warning("Order number %s already taken, retrying", order.order_number)
                    if attempt == ORDER_NUMBER_ATTEMPTS - 1:
                        raise
            self.storage.create_order_items(
                (
                    OrderItem(
                        order_id=created["id"],
                        product_id=product["id"],
                        product_name=product["name"],
                        product_image=product.get("image", ""),
                        price=item["price"],
                        quantity=item["quantity"],
                    )
                    for product, item in line_items
                ),
                session=session,
            )
            return created

        created = self._atomic(write)
        logger.info("Created order %s with %d item(s)", created["order_number"], len(line_items))
        return created

    # --------------------- Payment ---------------------

    def initiate_payment(self, order_id: Optional[str], phone_number: Any, amount: Any) -> Result[Dict[str, Any]]:
        if not phone_number or not amount:
            raise OrderError("Phone number and amount are required")
        try:
            rounded = parse_amount(amount)
        except ValueError:
            raise OrderError("Invalid amount")
        phone = normalize_phone(phone_number)

        result = self.mpesa.stk_push(phone, rounded)
        if isinstance(result, Err):
            return result
        payload = result.value
        checkout_id = payload.get("CheckoutRequestID")
        if payload.get("success") and checkout_id and order_id:
            if self.storage.update_order(order_id, {"mpesa_checkout_id": checkout_id}) is None:
                logger.warning("STK push succeeded for unknown order %s", order_id)
            else:
                logger.info("Order %s awaiting payment, checkout %s", order_id, checkout_id)
        return Ok(payload)

    def verify_payment(self, checkout_request_id: str) -> Result[Dict[str, Any]]:
        """Ask the gateway for the transaction state and settle the order when it completed.

        The gateway payload is returned unchanged for the caller to relay.
        """
        result = self.mpesa.verify_transaction(checkout_request_id)
        if isinstance(result, Err):
            return result
        payload = result.value
        if is_completed(payload):
            order = self.storage.get_order_by_checkout_id(checkout_request_id)
            if order is None:
                logger.warning("Completed payment for unknown checkout %s", checkout_request_id)
            else:
                self.mark_paid(order["id"], receipt=payload["data"]["MpesaReceiptNumber"])
        return Ok(payload)

    def mark_paid(self, order_id: str, receipt: Optional[str] = None, status: str = "processing") -> dict:
        changes = {"payment_status": "paid", "status": status}
        if receipt:
            changes["mpesa_receipt_number"] = receipt
        return self._settle(order_id, changes)

    # --------------------- Stock ---------------------

    def _settle(self, order_id: str, changes: Dict[str, Any]) -> dict:
        """Write ``changes`` and take stock, unless stock was already taken.

        A repeated settle only rewrites ``changes``; products stay untouched.
        """
        def apply(session):
            claimed = self.storage.claim_stock_deduction(order_id, changes, session=session)
            if claimed is None:
                return self.storage.update_order(order_id, changes, session=session), False
            self._deduct_stock(order_id, session=session)
            return claimed, True

        order, deducted = self._atomic(apply)
        if order is None:
            raise OrderError("Order not found", status_code=404)
        if not deducted:
            logger.info("Stock already taken for order %s, skipping", order_id)
        return order

    def _deduct_stock(self, order_id: str, session=None) -> None:
        for item in self.storage.get_order_items(order_id, session=session):
            if not item.get("product_id"):
                continue
            product = self.storage.get_product_by_id(item["product_id"], session=session)
            if product is None:
                continue
            before = product.get("stock_quantity", 0)
            fields = stock_fields(before - item["quantity"])
            self.storage.update_product(product["id"], fields, session=session)
            logger.info("Updated product %s stock from %s to %s", product["id"], before, fields["stock_quantity"])

    # --------------------- Admin transitions ---------------------

    def update_status(self, order_id: str, status: str) -> dict:
        """Set any status; delivered COD and processing paid M-Pesa orders take stock once."""
        order = self.storage.get_order_by_id(order_id)
        if order is None:
            raise OrderError("Order not found", status_code=404)

        if status == "delivered" and order["payment_method"] == "cod":
            return self._settle(order_id, {"status": status, "payment_status": "paid"})
        if status == "processing" and order["payment_method"] == "mpesa" and order["payment_status"] == "paid":
            return self._settle(order_id, {"status": status})
        return self.storage.update_order(order_id, {"status": status})
