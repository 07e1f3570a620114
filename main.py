import logging
import time
import traceback
from datetime import timedelta
from typing import List, Literal, Optional, Union

import httpx
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, EmailStr, Field

from auth import (
    create_token,
    generate_otp,
    get_current_user,
    get_optional_user,
    get_settings,
    get_storage,
    hash_password,
    is_admin,
    public_user,
    require_admin,
    require_superadmin,
    verify_password,
)
from config import Settings, setup_logging
from database import as_utc, connect, ensure_indexes, now
from invoice import render_invoice
from mpesa import MpesaClient
from notifications import Notifier
from orders import OrderError, OrderWorkflow
from results import Err
from schemas import (
    CartItem,
    Contact as ContactSchema,
    ContactReply as ContactReplySchema,
    ContactStatus,
    OrderStatus,
    OtpCode,
    PaymentMethod,
    Product as ProductSchema,
    User as UserSchema,
)
from storage import Storage, parse_price_range

logger = logging.getLogger(__name__)
security_log = logging.getLogger("security")

IMAGE_TOO_LARGE = "Image too large. Please use an image under 7MB."

router = APIRouter()

# --------------------- Dependencies ---------------------

def get_notifier(request: Request) -> Notifier:
    return request.app.state.notifier


def get_workflow(request: Request) -> OrderWorkflow:
    workflow = request.app.state.workflow
    if workflow is None:
        raise HTTPException(status_code=500, detail="Database not configured")
    return workflow


def _image_too_large(settings: Settings, image: Optional[str]) -> bool:
    # limit applies to the encoded data URI; 10 MB of base64 is about 7 MB of image
    return bool(image) and image.startswith("data:image/") and len(image) > settings.max_image_bytes


def _issue_code(storage: Storage, notifier: Notifier, settings: Settings, *, email: str, kind: str,
                template: Optional[str] = None, phone: Optional[str] = None, preference: str = "email") -> bool:
    """Store a fresh code (replacing older ones of the same kind) and send it.

    Delivery failures are logged and reported back, never raised.
    """
    code = generate_otp()
    storage.delete_otp_codes(email, kind)
    storage.create_otp_code(OtpCode(
        email=email,
        phone=phone,
        code=code,
        type=kind,
        expires_at=now() + timedelta(minutes=settings.otp_ttl_minutes),
    ))
    result = notifier.send_code(email=email, code=code, kind=template or kind, phone=phone, preference=preference)
    if isinstance(result, Err):
        logger.warning("Could not deliver %s code to %s: %s", kind, email, result.message)
        return False
    return True


def _valid_otp(storage: Storage, email: str, code: str, kind: str) -> bool:
    otp = storage.get_otp_code(email, code, kind)
    return otp is not None and as_utc(otp["expires_at"]) > now()

# --------------------- Models ---------------------

class SignupRequest(BaseModel):
    name: str = Field(min_length=2)
    email: EmailStr
    phone: Optional[str] = None
    password: str = Field(min_length=6)
    otp_preference: Literal["email", "sms"] = "email"


class VerifyRequest(BaseModel):
    email: EmailStr
    code: str = Field(min_length=6, max_length=6)


class EmailRequest(BaseModel):
    email: EmailStr


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=6)


class ResetPasswordRequest(BaseModel):
    email: EmailStr
    code: str = Field(min_length=6, max_length=6)
    new_password: str = Field(min_length=6)


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class PasswordChange(BaseModel):
    current_password: str
    new_password: str = Field(min_length=6)


class PictureUpdate(BaseModel):
    picture: Optional[str] = None


class ProductCreate(ProductSchema):
    pass


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    image: Optional[str] = None
    images: Optional[List[str]] = None
    category: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    original_price: Optional[float] = Field(None, ge=0)
    in_stock: Optional[bool] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    warranty: Optional[str] = None
    return_policy: Optional[str] = None
    delivery_fee: Optional[float] = Field(None, ge=0)
    delivery_time: Optional[str] = None
    featured: Optional[bool] = None


class CartAdd(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CartUpdate(BaseModel):
    quantity: int = Field(..., ge=1)


class OrderItemIn(BaseModel):
    product_id: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    delivery_name: str
    delivery_phone: str
    delivery_address: str
    notes: Optional[str] = None
    payment_method: PaymentMethod
    subtotal: float = Field(..., ge=0)
    delivery_fee: float = Field(0, ge=0)
    total: float = Field(..., ge=0)


class StkPushRequest(BaseModel):
    order_id: Optional[str] = None
    phone_number: Optional[Union[str, int]] = None
    amount: Optional[Union[float, str]] = None


class VerifyPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # the storefront checkout page posts the gateway spelling
    checkout_request_id: str = Field(..., alias="checkoutRequestId")


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class RoleUpdate(BaseModel):
    role: str


class UserUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    is_verified: Optional[bool] = None


class ContactCreate(BaseModel):
    name: str = Field(min_length=2)
    email: EmailStr
    phone: str = Field(min_length=10)
    subject: str = Field(min_length=5)
    message: str = Field(min_length=10)


class ContactStatusUpdate(BaseModel):
    status: ContactStatus


class ReplyRequest(BaseModel):
    message: Optional[str] = None


# --------------------- Routes ---------------------

@router.get("/")
def root():
    return {"message": "Jewel Haven API is running"}


@router.get("/api/health")
def health(request: Request):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "collections": [],
    }
    db = request.app.state.db
    if db is None:
        return response
    try:
        response["collections"] = db.list_collection_names()[:10]
        response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
    return response


# Auth
@router.post("/api/auth/signup")
def signup(req: SignupRequest, storage: Storage = Depends(get_storage),
           notifier: Notifier = Depends(get_notifier), settings: Settings = Depends(get_settings)):
    if storage.get_user_by_email(req.email):
        raise HTTPException(status_code=400, detail="Email already registered")
    role = "superadmin" if storage.get_user_count() == 0 else "user"
    user = storage.create_user(UserSchema(
        name=req.name,
        email=req.email,
        phone=req.phone,
        password_hash=hash_password(req.password),
        role=role,
        is_verified=False,
        otp_preference=req.otp_preference,
    ))
    sent = _issue_code(storage, notifier, settings, email=req.email, kind="signup",
                       phone=req.phone, preference=req.otp_preference)
    return {"message": "Verification code sent", "user_id": user["id"], "otp_sent": sent}


@router.post("/api/auth/verify")
def verify_account(req: VerifyRequest, storage: Storage = Depends(get_storage)):
    if not _valid_otp(storage, req.email, req.code, "signup"):
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    user = storage.get_user_by_email(req.email)
    if not user:
        raise HTTPException(status_code=400, detail="User not found")
    storage.update_user(user["id"], {"is_verified": True})
    storage.delete_otp_codes(req.email, "signup")
    return {"message": "Account verified successfully"}


@router.post("/api/auth/resend-code")
def resend_code(req: EmailRequest, storage: Storage = Depends(get_storage),
                notifier: Notifier = Depends(get_notifier), settings: Settings = Depends(get_settings)):
    user = storage.get_user_by_email(req.email)
    if not user:
        raise HTTPException(status_code=400, detail="User not found")
    sent = _issue_code(storage, notifier, settings, email=req.email, kind="signup", template="resend",
                       phone=user.get("phone"), preference=user.get("otp_preference", "email"))
    return {"message": "Code resent", "otp_sent": sent}


@router.post("/api/auth/login")
def login(req: LoginRequest, storage: Storage = Depends(get_storage),
          notifier: Notifier = Depends(get_notifier), settings: Settings = Depends(get_settings)):
    user = storage.get_user_by_email(req.email)
    if not user or not verify_password(req.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.get("is_verified"):
        _issue_code(storage, notifier, settings, email=req.email, kind="signup",
                    phone=user.get("phone"), preference=user.get("otp_preference", "email"))
        return {"requires_verification": True}
    token = create_token(settings, user["id"], user["role"])
    return {"token": token, "user": public_user(user)}


@router.post("/api/auth/forgot-password")
def forgot_password(req: EmailRequest, storage: Storage = Depends(get_storage),
                    notifier: Notifier = Depends(get_notifier), settings: Settings = Depends(get_settings)):
    if storage.get_user_by_email(req.email):
        _issue_code(storage, notifier, settings, email=req.email, kind="reset")
    return {"message": "If the email exists, a reset code has been sent"}


@router.post("/api/auth/reset-password")
def reset_password(req: ResetPasswordRequest, storage: Storage = Depends(get_storage)):
    if not _valid_otp(storage, req.email, req.code, "reset"):
        raise HTTPException(status_code=400, detail="Invalid or expired code")
    user = storage.get_user_by_email(req.email)
    if not user:
        raise HTTPException(status_code=400, detail="User not found")
    storage.update_user(user["id"], {"password_hash": hash_password(req.new_password)})
    storage.delete_otp_codes(req.email, "reset")
    return {"message": "Password reset successfully"}


# Current user
@router.get("/api/user/me")
def me(user: dict = Depends(get_current_user)):
    return public_user(user)


@router.patch("/api/user/profile")
def update_profile(body: ProfileUpdate, user: dict = Depends(get_current_user),
                   storage: Storage = Depends(get_storage)):
    updated = storage.update_user(user["id"], body.model_dump(exclude_none=True))
    return {"user": public_user(updated)}


@router.patch("/api/user/password")
def change_password(body: PasswordChange, user: dict = Depends(get_current_user),
                    storage: Storage = Depends(get_storage)):
    if not verify_password(body.current_password, user.get("password_hash", "")):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    storage.update_user(user["id"], {"password_hash": hash_password(body.new_password)})
    return {"message": "Password updated"}


@router.patch("/api/user/picture")
def update_picture(body: PictureUpdate, user: dict = Depends(get_current_user),
                   storage: Storage = Depends(get_storage), settings: Settings = Depends(get_settings)):
    if not body.picture:
        raise HTTPException(status_code=400, detail="Picture is required")
    if not body.picture.startswith("data:image/"):
        raise HTTPException(status_code=400, detail="Invalid image format")
    if _image_too_large(settings, body.picture):
        raise HTTPException(status_code=413, detail=IMAGE_TOO_LARGE)
    updated = storage.update_user(user["id"], {"profile_picture": body.picture})
    return {"user": public_user(updated)}


@router.get("/api/user/orders")
def my_orders(user: dict = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return storage.get_user_orders(user["id"])


@router.get("/api/user/contacts")
def my_contacts(user: dict = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return storage.with_replies(storage.get_contacts(user["id"]))


# Products
@router.get("/api/products")
def list_products(search: Optional[str] = None, category: Optional[str] = None, price: Optional[str] = None,
                  sort: Optional[str] = None, page: int = 1, limit: int = 12, featured: bool = False,
                  storage: Storage = Depends(get_storage)):
    price_min, price_max = parse_price_range(price)
    return storage.get_products(search=search, category=category, price_min=price_min, price_max=price_max,
                                sort=sort, page=page, limit=limit, featured=featured)


@router.get("/api/products/featured")
def featured_products(storage: Storage = Depends(get_storage)):
    return storage.get_featured_products()


@router.get("/api/products/latest")
def latest_products(storage: Storage = Depends(get_storage)):
    return storage.get_latest_products()


@router.get("/api/products/related/{product_id}")
def related_products(product_id: str, storage: Storage = Depends(get_storage)):
    product = storage.get_product_by_id(product_id)
    if not product:
        return []
    return storage.get_related_products(product["id"], product["category"])


@router.get("/api/products/{product_id}")
def get_product(product_id: str, storage: Storage = Depends(get_storage)):
    product = storage.get_product_by_id(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


# Cart
@router.get("/api/cart")
def get_cart(user: dict = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return storage.get_user_cart(user["id"])


@router.post("/api/cart")
def add_to_cart(body: CartAdd, user: dict = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    if not storage.get_product_by_id(body.product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return storage.add_to_cart(CartItem(user_id=user["id"], product_id=body.product_id, quantity=body.quantity))


def _own_cart_item(storage: Storage, user: dict, item_id: str) -> dict:
    item = storage.get_cart_item(item_id)
    if not item or item["user_id"] != user["id"]:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return item


@router.patch("/api/cart/{item_id}")
def update_cart_item(item_id: str, body: CartUpdate, user: dict = Depends(get_current_user),
                     storage: Storage = Depends(get_storage)):
    _own_cart_item(storage, user, item_id)
    return storage.update_cart_item(item_id, body.quantity)


@router.delete("/api/cart/{item_id}")
def remove_cart_item(item_id: str, user: dict = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    _own_cart_item(storage, user, item_id)
    storage.remove_from_cart(item_id)
    return {"message": "Item removed"}


@router.delete("/api/cart")
def clear_cart(user: dict = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    storage.clear_user_cart(user["id"])
    return {"message": "Cart cleared"}


# Orders
@router.post("/api/orders")
def create_order(body: OrderCreate, user: dict = Depends(get_current_user),
                 workflow: OrderWorkflow = Depends(get_workflow)):
    return workflow.create_order(
        user_id=user["id"],
        items=[i.model_dump() for i in body.items],
        delivery={
            "delivery_name": body.delivery_name,
            "delivery_phone": body.delivery_phone,
            "delivery_address": body.delivery_address,
            "notes": body.notes,
        },
        payment_method=body.payment_method,
        subtotal=body.subtotal,
        delivery_fee=body.delivery_fee,
        total=body.total,
    )


def _visible_order(storage: Storage, user: dict, order_number: str) -> dict:
    order = storage.get_order_by_number(order_number)
    if not order or (order.get("user_id") != user["id"] and not is_admin(user)):
        raise HTTPException(status_code=404, detail="Order not found")
    return order


@router.get("/api/orders/{order_number}")
def get_order(order_number: str, user: dict = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return storage.with_items(_visible_order(storage, user, order_number))


@router.get("/api/orders/{order_number}/invoice")
def download_invoice(order_number: str, copy_type: str = Query("customer", alias="type"),
                     user: dict = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    order = _visible_order(storage, user, order_number)
    items = storage.get_order_items(order["id"])
    admin_copy = copy_type == "admin" and is_admin(user)
    invoice = render_invoice(order, items, admin_copy=admin_copy)
    logger.info("Sending %s invoice for %s (%d bytes)", invoice.media_type, order_number, len(invoice.content))
    return Response(
        content=invoice.content,
        media_type=invoice.media_type,
        headers={"Content-Disposition": f"attachment; filename={invoice.filename}"},
    )


# Payments (M-Pesa)
@router.post("/api/payments/mpesa/stkpush")
def mpesa_stk_push(body: StkPushRequest, user: dict = Depends(get_current_user),
                   workflow: OrderWorkflow = Depends(get_workflow), storage: Storage = Depends(get_storage)):
    if body.order_id:
        order = storage.get_order_by_id(body.order_id)
        if not order or (order.get("user_id") != user["id"] and not is_admin(user)):
            raise HTTPException(status_code=404, detail="Order not found")
    result = workflow.initiate_payment(body.order_id, body.phone_number, body.amount)
    if isinstance(result, Err):
        return JSONResponse(status_code=502, content={
            "detail": "Failed to initiate payment",
            "error": result.message,
        })
    return result.value


@router.post("/api/payments/mpesa/verify")
@router.post("/api/payments/mpesa/callback")
def mpesa_verify(body: VerifyPaymentRequest, workflow: OrderWorkflow = Depends(get_workflow)):
    result = workflow.verify_payment(body.checkout_request_id)
    if isinstance(result, Err):
        return JSONResponse(status_code=500, content={
            "success": False,
            "status": "error",
            "data": {"message": "Failed to verify payment", "error": result.message},
        })
    return result.value


# Contact
@router.post("/api/contact")
def submit_contact(body: ContactCreate, user: Optional[dict] = Depends(get_optional_user),
                   storage: Storage = Depends(get_storage)):
    contact = storage.create_contact(ContactSchema(
        user_id=user["id"] if user else None,
        **body.model_dump(),
    ))
    return {"message": "Message sent successfully", "success": True, "data": contact}


@router.get("/api/contact/messages")
def contact_messages(email: Optional[str] = None, storage: Storage = Depends(get_storage)):
    if not email:
        raise HTTPException(status_code=400, detail="Valid email is required")
    return storage.with_replies(storage.get_contacts_by_email(email))


# --------------------- Admin ---------------------

@router.get("/api/admin/dashboard")
def admin_dashboard(admin: dict = Depends(require_admin), storage: Storage = Depends(get_storage)):
    return {
        "total_products": storage.get_product_count(),
        "total_orders": storage.get_order_count(),
        "total_users": storage.get_user_count(),
        "total_revenue": storage.get_total_revenue(),
        "recent_orders": storage.get_recent_orders(5),
    }


@router.get("/api/admin/products")
def admin_products(admin: dict = Depends(require_admin), storage: Storage = Depends(get_storage)):
    return storage.get_all_products()


@router.post("/api/admin/products")
def admin_create_product(body: ProductCreate, admin: dict = Depends(require_admin),
                         storage: Storage = Depends(get_storage), settings: Settings = Depends(get_settings)):
    if _image_too_large(settings, body.image):
        raise HTTPException(status_code=413, detail=IMAGE_TOO_LARGE)
    body.stock_status = "out of stock" if body.stock_quantity == 0 else "in stock"
    product = storage.create_product(body)
    logger.info("Admin %s created product %s", admin["id"], product["id"])
    return product


@router.patch("/api/admin/products/{product_id}")
def admin_update_product(product_id: str, body: ProductUpdate, admin: dict = Depends(require_admin),
                         storage: Storage = Depends(get_storage), settings: Settings = Depends(get_settings)):
    if _image_too_large(settings, body.image):
        raise HTTPException(status_code=413, detail=IMAGE_TOO_LARGE)
    update = body.model_dump(exclude_none=True)
    if "stock_quantity" in update:
        update["stock_status"] = "out of stock" if update["stock_quantity"] == 0 else "in stock"
    product = storage.update_product(product_id, update)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@router.delete("/api/admin/products/{product_id}")
def admin_delete_product(product_id: str, admin: dict = Depends(require_admin),
                         storage: Storage = Depends(get_storage)):
    if not storage.delete_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"message": "Product deleted"}


@router.get("/api/admin/orders")
def admin_orders(admin: dict = Depends(require_admin), storage: Storage = Depends(get_storage)):
    return [storage.with_items(o) for o in storage.get_all_orders()]


@router.patch("/api/admin/orders/{order_id}/status")
def admin_update_order_status(order_id: str, body: OrderStatusUpdate, admin: dict = Depends(require_admin),
                              workflow: OrderWorkflow = Depends(get_workflow)):
    order = workflow.update_status(order_id, body.status)
    logger.info("Admin %s set order %s to %s", admin["id"], order_id, body.status)
    return order


@router.get("/api/admin/users")
def admin_users(admin: dict = Depends(require_admin), storage: Storage = Depends(get_storage)):
    return [public_user(u) for u in storage.get_all_users()]


@router.patch("/api/admin/users/{user_id}/role")
def admin_update_role(user_id: str, body: RoleUpdate, admin: dict = Depends(require_superadmin),
                      storage: Storage = Depends(get_storage)):
    if body.role not in ("user", "admin"):
        raise HTTPException(status_code=400, detail="Invalid role")
    user = storage.update_user(user_id, {"role": body.role})
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


@router.patch("/api/admin/users/{user_id}")
def admin_update_user(user_id: str, body: UserUpdate, admin: dict = Depends(require_admin),
                      storage: Storage = Depends(get_storage)):
    user = storage.get_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    if user["role"] == "superadmin":
        raise HTTPException(status_code=403, detail="Cannot edit super admin")
    if body.email and body.email != user["email"]:
        existing = storage.get_user_by_email(body.email)
        if existing and existing["id"] != user_id:
            raise HTTPException(status_code=400, detail="Email already in use")
    updated = storage.update_user(user_id, body.model_dump(exclude_none=True))
    return public_user(updated)


@router.get("/api/admin/contacts")
def admin_contacts(admin: dict = Depends(require_admin), storage: Storage = Depends(get_storage)):
    return storage.with_replies(storage.get_contacts())


@router.patch("/api/admin/contacts/{contact_id}")
def admin_update_contact(contact_id: str, body: ContactStatusUpdate, admin: dict = Depends(require_admin),
                         storage: Storage = Depends(get_storage)):
    contact = storage.update_contact(contact_id, {"status": body.status})
    if not contact:
        raise HTTPException(status_code=404, detail="Contact message not found")
    return {"success": True, "message": "Contact message status updated", "data": contact}


@router.post("/api/admin/contacts/{contact_id}/reply")
def admin_reply_contact(contact_id: str, body: ReplyRequest, admin: dict = Depends(require_admin),
                        storage: Storage = Depends(get_storage)):
    if not body.message:
        raise HTTPException(status_code=400, detail="Reply message is required")
    if not storage.get_contact_by_id(contact_id):
        raise HTTPException(status_code=404, detail="Contact message not found")
    reply = storage.create_contact_reply(ContactReplySchema(
        contact_id=contact_id,
        admin_id=admin["id"],
        admin_name=admin["name"],
        message=body.message,
    ))
    storage.update_contact(contact_id, {"status": "replied"})
    return {"success": True, "message": "Reply sent successfully", "data": reply}


@router.delete("/api/admin/contacts/{contact_id}")
def admin_delete_contact(contact_id: str, admin: dict = Depends(require_admin),
                         storage: Storage = Depends(get_storage)):
    if not storage.delete_contact(contact_id):
        raise HTTPException(status_code=404, detail="Contact message not found")
    return {"success": True, "message": "Contact message deleted"}


# --------------------- Application ---------------------

def _install_middleware(app: FastAPI, settings: Settings) -> None:
    # last registered runs outermost
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            content = {"detail": "Internal Server Error", "error": str(e)}
            if not settings.is_production:
                content["stack"] = traceback.format_exc()
            response = JSONResponse(status_code=500, content=content)
        if request.url.path.startswith("/api"):
            elapsed = (time.perf_counter() - start) * 1000
            logger.info("%s %s %s in %.0fms", request.method, request.url.path, response.status_code, elapsed)
        return response

    @app.middleware("http")
    async def strict_origin(request: Request, call_next):
        path = request.url.path
        if (
            settings.is_production
            and path.startswith("/api/")
            and path != "/api/health"
            and request.method in ("POST", "PUT", "PATCH", "DELETE")
        ):
            origin = request.headers.get("origin")
            referer = request.headers.get("referer") or ""
            if origin != settings.allowed_origin and not referer.startswith(settings.allowed_origin):
                security_log.warning("Blocked API %s: invalid origin/referer for %s", request.method, path)
                return JSONResponse(status_code=403, content={
                    "detail": f"Access forbidden. This API only accepts requests from {settings.allowed_origin}",
                    "code": "STRICT_ORIGIN_REQUIRED",
                })
        return await call_next(request)

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if settings.is_production:
            response.headers["Content-Security-Policy"] = (
                f"default-src 'self' {settings.allowed_origin}; "
                "img-src 'self' data: https:; "
                f"connect-src 'self' {settings.allowed_origin}; "
                "frame-ancestors 'none';"
            )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.is_production,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Origin", "X-Requested-With", "Content-Type", "Accept", "Authorization"],
        max_age=86400,
    )


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if not errors:
            return JSONResponse(status_code=400, content={"detail": "Invalid request"})
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = first.get("msg", "Invalid value")
        return JSONResponse(status_code=400, content={"detail": f"{field}: {message}" if field else message})

    @app.exception_handler(OrderError)
    async def order_error(request: Request, exc: OrderError):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app(settings: Optional[Settings] = None, db=None, http: Optional[httpx.Client] = None) -> FastAPI:
    """Build the API. ``db`` and ``http`` may be injected; otherwise they come from ``settings``."""
    settings = settings or Settings.from_env()
    setup_logging(settings)

    client = None
    if db is None:
        client = connect(settings)
        db = client[settings.database_name] if client is not None else None
    if db is not None:
        ensure_indexes(db)
    http = http or httpx.Client(timeout=settings.http_timeout)
    storage = Storage(db) if db is not None else None

    app = FastAPI(title="Jewel Haven API", version="1.0.0")
    app.state.settings = settings
    app.state.db = db
    app.state.storage = storage
    app.state.notifier = Notifier(settings, http)
    app.state.workflow = (
        OrderWorkflow(settings, storage, MpesaClient(settings, http), client) if storage is not None else None
    )

    _install_middleware(app, settings)
    _install_error_handlers(app)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=app.state.settings.port)
