import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.database import Database

from database import create_document, now, serialize_doc, session_kwargs, to_object_id
from schemas import CartItem, Contact, ContactReply, Order, OrderItem, OtpCode, Product, User

logger = logging.getLogger(__name__)

SORTS = {
    "price-asc": [("price", ASCENDING)],
    "price-desc": [("price", DESCENDING)],
    "name-asc": [("name", ASCENDING)],
}
NEWEST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def parse_price_range(price: Optional[str]):
    """'1000-5000' -> (1000, 5000), '20000+' -> (20000, None), 'all' -> (None, None)."""
    if not price or price == "all":
        return None, None
    try:
        if price.endswith("+"):
            return float(price[:-1]), None
        low, high = price.split("-", 1)
        return float(low), float(high)
    except ValueError:
        return None, None


class Storage:
    """Collection accessors for the storefront. Every read returns serialized dicts."""

    def __init__(self, db: Database):
        self.db = db

    def _by_id(self, collection: str, doc_id: str, session=None) -> Optional[dict]:
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        return serialize_doc(self.db[collection].find_one({"_id": oid}, **session_kwargs(session)))

    def _update(self, collection: str, doc_id: str, data: Dict[str, Any], session=None) -> Optional[dict]:
        oid = to_object_id(doc_id)
        if oid is None:
            return None
        update = dict(data)
        update["updated_at"] = now()
        doc = self.db[collection].find_one_and_update(
            {"_id": oid}, {"$set": update}, return_document=ReturnDocument.AFTER, **session_kwargs(session)
        )
        return serialize_doc(doc)

    def _delete(self, collection: str, doc_id: str) -> bool:
        oid = to_object_id(doc_id)
        if oid is None:
            return False
        return self.db[collection].delete_one({"_id": oid}).deleted_count > 0

    def _list(self, collection: str, filter_dict=None, sort=NEWEST, limit: int = 0) -> List[dict]:
        cursor = self.db[collection].find(filter_dict or {}).sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return [serialize_doc(d) for d in cursor]

    # --------------------- Users ---------------------

    def create_user(self, user: User) -> dict:
        return self.get_user_by_id(create_document(self.db, "user", user))

    def get_user_by_email(self, email: str) -> Optional[dict]:
        return serialize_doc(self.db["user"].find_one({"email": email}))

    def get_user_by_id(self, user_id: str) -> Optional[dict]:
        return self._by_id("user", user_id)

    def update_user(self, user_id: str, data: Dict[str, Any]) -> Optional[dict]:
        return self._update("user", user_id, {k: v for k, v in data.items() if v is not None})

    def get_all_users(self) -> List[dict]:
        return self._list("user")

    def get_user_count(self) -> int:
        return self.db["user"].count_documents({})

    # --------------------- OTP codes ---------------------

    def create_otp_code(self, otp: OtpCode) -> str:
        return create_document(self.db, "otp_code", otp)

    def get_otp_code(self, email: str, code: str, kind: str) -> Optional[dict]:
        return self.db["otp_code"].find_one({"email": email, "code": code, "type": kind})

    def delete_otp_codes(self, email: str, kind: str) -> None:
        self.db["otp_code"].delete_many({"email": email, "type": kind})

    # --------------------- Products ---------------------

    def create_product(self, product: Product) -> dict:
        return self.get_product_by_id(create_document(self.db, "product", product))

    def get_product_by_id(self, product_id: str, session=None) -> Optional[dict]:
        return self._by_id("product", product_id, session=session)

    def update_product(self, product_id: str, data: Dict[str, Any], session=None) -> Optional[dict]:
        return self._update("product", product_id, data, session=session)

    def delete_product(self, product_id: str) -> bool:
        return self._delete("product", product_id)

    def get_all_products(self) -> List[dict]:
        return self._list("product")

    def get_products(self, search: Optional[str] = None, category: Optional[str] = None,
                     price_min: Optional[float] = None, price_max: Optional[float] = None,
                     sort: Optional[str] = None, page: int = 1, limit: int = 12,
                     featured: bool = False) -> Dict[str, Any]:
        page = max(page or 1, 1)
        limit = max(limit or 12, 1)
        query: Dict[str, Any] = {}
        if search:
            pattern = re.escape(search)
            query["$or"] = [
                {"name": {"$regex": pattern, "$options": "i"}},
                {"description": {"$regex": pattern, "$options": "i"}},
            ]
        if category and category != "all":
            query["category"] = category
        if featured:
            query["featured"] = True
        if price_min is not None or price_max is not None:
            price_filter = {}
            if price_min is not None:
                price_filter["$gte"] = float(price_min)
            if price_max is not None:
                price_filter["$lte"] = float(price_max)
            query["price"] = price_filter

        total = self.db["product"].count_documents(query)
        cursor = (
            self.db["product"].find(query)
            .sort(SORTS.get(sort, NEWEST))
            .skip((page - 1) * limit)
            .limit(limit)
        )
        return {
            "products": [serialize_doc(d) for d in cursor],
            "total": total,
            "total_pages": math.ceil(total / limit),
        }

    def get_featured_products(self) -> List[dict]:
        return self._list("product", {"featured": True}, limit=8)

    def get_latest_products(self) -> List[dict]:
        return self._list("product", limit=8)

    def get_related_products(self, product_id: str, category: str) -> List[dict]:
        return self._list("product", {"category": category, "_id": {"$ne": to_object_id(product_id)}}, limit=4)

    def get_product_count(self) -> int:
        return self.db["product"].count_documents({})

    # --------------------- Orders ---------------------

    def create_order(self, order: Order, session=None) -> dict:
        order_id = create_document(self.db, "order", order, session=session)
        return self.get_order_by_id(order_id, session=session)

    def get_order_by_id(self, order_id: str, session=None) -> Optional[dict]:
        return self._by_id("order", order_id, session=session)

    def get_order_by_number(self, order_number: str) -> Optional[dict]:
        return serialize_doc(self.db["order"].find_one({"order_number": order_number}))

    def get_order_by_checkout_id(self, checkout_id: str) -> Optional[dict]:
        return serialize_doc(self.db["order"].find_one({"mpesa_checkout_id": checkout_id}))

    def update_order(self, order_id: str, data: Dict[str, Any], session=None) -> Optional[dict]:
        return self._update("order", order_id, data, session=session)

    def claim_stock_deduction(self, order_id: str, data: Dict[str, Any], session=None) -> Optional[dict]:
        """Apply ``data`` and set stock_deducted in one atomic write.

        Returns the updated order only for the caller that flipped the flag;
        None when stock was already taken for this order.
        """
        update = dict(data)
        update["stock_deducted"] = True
        update["updated_at"] = now()
        doc = self.db["order"].find_one_and_update(
            {"_id": to_object_id(order_id), "stock_deducted": {"$ne": True}},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
            **session_kwargs(session),
        )
        return serialize_doc(doc)

    def get_user_orders(self, user_id: str) -> List[dict]:
        return self._list("order", {"user_id": user_id})

    def get_all_orders(self) -> List[dict]:
        return self._list("order")

    def get_order_count(self) -> int:
        return self.db["order"].count_documents({})

    def get_total_revenue(self) -> float:
        rows = self.db["order"].aggregate([
            {"$match": {"payment_status": "paid"}},
            {"$group": {"_id": None, "total": {"$sum": "$total"}}},
        ])
        row = next(iter(rows), None)
        return float(row["total"]) if row else 0.0

    def get_recent_orders(self, limit: int) -> List[dict]:
        return self._list("order", limit=limit)

    # --------------------- Order items ---------------------

    def create_order_items(self, items: Iterable[OrderItem], session=None) -> List[str]:
        docs = [item.model_dump(exclude_none=True) for item in items]
        if not docs:
            return []
        result = self.db["order_item"].insert_many(docs, **session_kwargs(session))
        return [str(i) for i in result.inserted_ids]

    def get_order_items(self, order_id: str, session=None) -> List[dict]:
        cursor = self.db["order_item"].find({"order_id": order_id}, **session_kwargs(session)).sort("_id", ASCENDING)
        return [serialize_doc(d) for d in cursor]

    def with_items(self, order: dict) -> dict:
        return {**order, "items": self.get_order_items(order["id"])}

    # --------------------- Cart ---------------------

    def add_to_cart(self, item: CartItem) -> dict:
        existing = self.db["cart_item"].find_one({"user_id": item.user_id, "product_id": item.product_id})
        if existing:
            return self.update_cart_item(str(existing["_id"]), existing["quantity"] + item.quantity)
        return self._by_id("cart_item", create_document(self.db, "cart_item", item))

    def update_cart_item(self, item_id: str, quantity: int) -> Optional[dict]:
        return self._update("cart_item", item_id, {"quantity": quantity})

    def get_cart_item(self, item_id: str) -> Optional[dict]:
        return self._by_id("cart_item", item_id)

    def remove_from_cart(self, item_id: str) -> bool:
        return self._delete("cart_item", item_id)

    def get_user_cart(self, user_id: str) -> List[dict]:
        return self._list("cart_item", {"user_id": user_id}, sort=[("_id", ASCENDING)])

    def clear_user_cart(self, user_id: str) -> None:
        self.db["cart_item"].delete_many({"user_id": user_id})

    # --------------------- Contacts ---------------------

    def create_contact(self, contact: Contact) -> dict:
        return self.get_contact_by_id(create_document(self.db, "contact", contact))

    def get_contact_by_id(self, contact_id: str) -> Optional[dict]:
        return self._by_id("contact", contact_id)

    def get_contacts(self, user_id: Optional[str] = None) -> List[dict]:
        return self._list("contact", {"user_id": user_id} if user_id else {})

    def get_contacts_by_email(self, email: str) -> List[dict]:
        return self._list("contact", {"email": email})

    def update_contact(self, contact_id: str, data: Dict[str, Any]) -> Optional[dict]:
        return self._update("contact", contact_id, data)

    def delete_contact(self, contact_id: str) -> bool:
        deleted = self._delete("contact", contact_id)
        if deleted:
            self.db["contact_reply"].delete_many({"contact_id": contact_id})
        return deleted

    def create_contact_reply(self, reply: ContactReply) -> dict:
        return self._by_id("contact_reply", create_document(self.db, "contact_reply", reply))

    def get_contact_replies(self, contact_id: str) -> List[dict]:
        return self._list("contact_reply", {"contact_id": contact_id}, sort=[("created_at", ASCENDING), ("_id", ASCENDING)])

    def with_replies(self, contacts: List[dict]) -> List[dict]:
        return [{**c, "replies": self.get_contact_replies(c["id"])} for c in contacts]
