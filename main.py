import json
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field, field_validator
from starlette.concurrency import run_in_threadpool

import auth
import orders
import reviews
from auth import current_identity
from config import settings
from database import create_document, get_documents, get_store, now, serialize
from errors import BadRequest, NotFound, install_error_handlers
from payments import PaymentGateway, get_gateway
from rbac import Identity, require_role, require_user
from schemas import (
    HEX_COLOR,
    URL,
    Address as AddressSchema,
    Banner as BannerSchema,
    Cart as CartSchema,
    CartItem as CartItemSchema,
    Category as CategorySchema,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    Product as ProductSchema,
    Role,
    Wishlist as WishlistSchema,
    as_utc,
)

logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
install_error_handlers(app)

ADMIN = [Role.ADMIN]


# Request models
class SignUpRequest(BaseModel):
    name: str = Field(..., min_length=2)
    email: EmailStr
    password: str = Field(..., min_length=8)

class SignInRequest(BaseModel):
    email: EmailStr
    password: str

class AuthResponse(BaseModel):
    user_id: str
    name: str
    email: EmailStr
    role: Role
    token: str

class PasswordResetRequest(BaseModel):
    email: EmailStr

class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=8)

def _reject_null(v):
    if v is None:
        raise ValueError("Field cannot be null")
    return v

class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2)
    description: Optional[str] = None

    @field_validator("name", mode="before")
    @classmethod
    def name_not_null(cls, v):
        return _reject_null(v)

class ProductUpdate(BaseModel):
    """Partial update; only description and category_id can be cleared with null"""
    name: Optional[str] = Field(None, min_length=2)
    description: Optional[str] = None
    price: Optional[float] = Field(None, gt=0)
    stock: Optional[int] = Field(None, ge=0)
    category_id: Optional[str] = None
    images: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    featured: Optional[bool] = None

    @field_validator("name", "price", "stock", "images", "sizes", "colors", "featured", mode="before")
    @classmethod
    def not_null(cls, v):
        return _reject_null(v)

class WishlistRequest(BaseModel):
    product_id: str = Field(..., min_length=1)

class AddressRequest(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=5)
    line1: str = Field(..., min_length=1)
    line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=3)
    country: str = "IN"

class CheckoutRequest(BaseModel):
    address_id: str = Field(..., min_length=1)
    payment_method: PaymentMethod = PaymentMethod.COD

class StatusUpdate(BaseModel):
    status: OrderStatus

class AssignRequest(BaseModel):
    assigned_to_id: str = Field(..., min_length=1)

class DeliveryStatusUpdate(BaseModel):
    status: OrderStatus
    delivery_proof_url: Optional[str] = Field(None, pattern=r"^https?://")

class RoleUpdate(BaseModel):
    role: Role

class ReviewRequest(BaseModel):
    title: str = Field(..., min_length=3)
    comment: str = Field(..., min_length=10)
    rating: int = Field(..., ge=1, le=5)

class BannerUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=3)
    text: Optional[str] = None
    image_url: Optional[str] = Field(None, pattern=URL)
    link_url: Optional[str] = Field(None, pattern=URL)
    active: Optional[bool] = None
    priority: Optional[int] = None
    text_color: Optional[str] = Field(None, pattern=HEX_COLOR)
    background_color: Optional[str] = Field(None, pattern=HEX_COLOR)
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None

    @field_validator("title", "active", "priority", mode="before")
    @classmethod
    def not_null(cls, v):
        return _reject_null(v)

    @field_validator("starts_at", "ends_at")
    @classmethod
    def assume_utc(cls, v):
        return as_utc(v)


# Routes
@app.get("/")
def root():
    return {"message": "Storefront API running"}

@app.get("/health")
def health():
    resp = {
        "backend": "running",
        "database": "not configured",
        "database_url": "set" if settings.database_url else "not set",
        "collections": [],
    }
    if not settings.database_url:
        return resp
    try:
        resp["collections"] = get_store().ping()
        resp["database"] = "connected"
    except Exception as e:
        logger.warning("Health check could not reach the database: %s", e)
        resp["database"] = f"error: {str(e)[:80]}"
    return resp


# Auth
@app.post("/auth/signup", status_code=201)
def signup(payload: SignUpRequest, store=Depends(get_store)):
    return auth.signup(store, payload.name, payload.email, payload.password)

@app.post("/auth/signin", response_model=AuthResponse)
def signin(payload: SignInRequest, store=Depends(get_store)):
    return auth.signin(store, payload.email, payload.password)

@app.post("/auth/signout")
def signout(authorization: Optional[str] = Header(None), store=Depends(get_store)):
    token = auth.bearer_token(authorization)
    if token:
        auth.signout(store, token)
    return {"ok": True}

@app.post("/auth/password-reset/request")
def password_reset_request(payload: PasswordResetRequest, store=Depends(get_store)):
    return {"message": auth.request_password_reset(store, payload.email)}

@app.post("/auth/password-reset/reset")
def password_reset(payload: PasswordResetConfirm, store=Depends(get_store)):
    auth.reset_password(store, payload.token, payload.password)
    return {"message": "Password has been reset."}

@app.get("/users/me")
def me(identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    return auth.public_user(store.find_one("user", {"_id": identity.user_id}))


# Categories
@app.get("/categories")
def list_categories(store=Depends(get_store)):
    categories = [serialize(c) for c in store.find("category", sort=[("name", 1)])]
    for c in categories:
        c["product_count"] = store.count("product", {"category_id": c["id"]})
    return categories

@app.post("/categories", status_code=201)
def create_category(category: CategorySchema, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    cid = create_document(store, "category", category)
    return serialize(store.find_one("category", {"_id": cid}))

@app.put("/categories/{category_id}")
def update_category(category_id: str, payload: CategoryUpdate, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    updated = store.update_one("category", {"_id": category_id}, values=payload.model_dump(exclude_unset=True))
    if not updated:
        raise NotFound("Category")
    return serialize(updated)

@app.delete("/categories/{category_id}")
def delete_category(category_id: str, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    if store.count("product", {"category_id": category_id}):
        raise BadRequest("Category still has products.")
    if not store.delete_one("category", {"_id": category_id}):
        raise NotFound("Category")
    return {"message": "Category deleted."}


# Products
def _check_category(store, category_id: Optional[str]) -> None:
    if category_id and not store.find_one("category", {"_id": category_id}):
        raise BadRequest("Invalid category")

@app.get("/products")
def list_products(category_id: Optional[str] = None, featured: Optional[bool] = None, limit: int = 100, store=Depends(get_store)):
    query = {}
    if category_id:
        query["category_id"] = category_id
    if featured:
        query["featured"] = True
    return get_documents(store, "product", query, limit=max(1, min(limit, 100)))

@app.get("/products/{product_id}")
def get_product(product_id: str, store=Depends(get_store)):
    product = store.find_one("product", {"_id": product_id})
    if not product:
        raise NotFound("Product")
    view = serialize(product)
    view.update(reviews.rating_summary(store, view["id"]))
    return view

@app.get("/products/{product_id}/reviews")
def list_reviews(product_id: str, store=Depends(get_store)):
    return reviews.list_reviews(store, product_id)

@app.post("/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewRequest, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return reviews.add_review(store, identity, product_id, payload.title, payload.comment, payload.rating)

@app.get("/search")
def search_products(q: str = "", limit: int = 20, store=Depends(get_store)):
    q = q.strip()
    if not q:
        return []
    return [serialize(p) for p in store.search("product", ["name", "description"], q, limit=max(1, min(limit, 50)))]

@app.post("/products", status_code=201)
def create_product(product: ProductSchema, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    _check_category(store, product.category_id)
    pid = create_document(store, "product", product)
    return serialize(store.find_one("product", {"_id": pid}))

@app.put("/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    changes = payload.model_dump(exclude_unset=True)
    _check_category(store, changes.get("category_id"))
    updated = store.update_one("product", {"_id": product_id}, values=changes)
    if not updated:
        raise NotFound("Product")
    return serialize(updated)

@app.delete("/products/{product_id}")
def delete_product(product_id: str, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    if not store.delete_one("product", {"_id": product_id}):
        raise NotFound("Product")
    return {"message": "Product deleted."}


# Cart
def _cart_view(store, user_id: str) -> dict:
    cart = store.find_one("cart", {"user_id": user_id})
    if not cart:
        return {"items": [], "total": 0}
    # enrich with product info
    items = []
    total = 0.0
    for item in cart.get("items", []):
        prod = store.find_one("product", {"_id": item["product_id"]})
        if prod:
            subtotal = prod["price"] * item["quantity"]
            total += subtotal
            items.append({
                "product_id": item["product_id"],
                "name": prod["name"],
                "price": prod["price"],
                "quantity": item["quantity"],
                "stock": prod["stock"],
                "image_url": (prod.get("images") or [None])[0],
                "subtotal": subtotal,
            })
    return {"items": items, "total": round(total, 2)}

@app.get("/cart")
def get_cart(identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    return _cart_view(store, identity.user_id)

@app.post("/cart")
def add_to_cart(payload: CartItemSchema, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    if not store.find_one("product", {"_id": payload.product_id}):
        raise NotFound("Product")

    cart = store.find_one("cart", {"user_id": identity.user_id})
    if not cart:
        create_document(store, "cart", CartSchema(user_id=identity.user_id, items=[payload]))
    else:
        # update quantity or add new item
        items = cart.get("items", [])
        for item in items:
            if item["product_id"] == payload.product_id:
                item["quantity"] += payload.quantity
                break
        else:
            items.append(payload.model_dump())
        store.update_one("cart", {"_id": cart["_id"]}, values={"items": items})
    return _cart_view(store, identity.user_id)

@app.put("/cart")
def update_cart_item(payload: CartItemSchema, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    cart = store.find_one("cart", {"user_id": identity.user_id})
    if not cart:
        raise NotFound("Cart")
    items = cart.get("items", [])
    for item in items:
        if item["product_id"] == payload.product_id:
            item["quantity"] = payload.quantity
            break
    else:
        raise NotFound("Product in cart")
    store.update_one("cart", {"_id": cart["_id"]}, values={"items": items})
    return _cart_view(store, identity.user_id)

@app.delete("/cart/{product_id}")
def remove_from_cart(product_id: str, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    cart = store.find_one("cart", {"user_id": identity.user_id})
    if not cart:
        raise NotFound("Cart")
    items = [i for i in cart.get("items", []) if i["product_id"] != product_id]
    if len(items) == len(cart.get("items", [])):
        raise NotFound("Product in cart")
    store.update_one("cart", {"_id": cart["_id"]}, values={"items": items})
    return {"message": "Item removed from cart."}

@app.post("/cart/clear")
def clear_cart(identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    store.update_one("cart", {"user_id": identity.user_id}, values={"items": []})
    return {"message": "Cart cleared."}


# Wishlist
@app.get("/wishlist")
def get_wishlist(identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    wishlist = store.find_one("wishlist", {"user_id": identity.user_id})
    items = []
    for pid in (wishlist or {}).get("product_ids", []):
        prod = store.find_one("product", {"_id": pid})
        if prod:
            items.append(serialize(prod))
    return {"items": items}

@app.post("/wishlist")
def add_to_wishlist(payload: WishlistRequest, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    if not store.find_one("product", {"_id": payload.product_id}):
        raise NotFound("Product")
    wishlist = store.find_one("wishlist", {"user_id": identity.user_id})
    if not wishlist:
        create_document(store, "wishlist", WishlistSchema(user_id=identity.user_id, product_ids=[payload.product_id]))
    elif payload.product_id not in wishlist.get("product_ids", []):
        store.update_one("wishlist", {"_id": wishlist["_id"]}, values={"product_ids": wishlist.get("product_ids", []) + [payload.product_id]})
    return {"message": "Added to wishlist."}

@app.delete("/wishlist/{product_id}")
def remove_from_wishlist(product_id: str, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    wishlist = store.find_one("wishlist", {"user_id": identity.user_id})
    if not wishlist or product_id not in wishlist.get("product_ids", []):
        raise NotFound("Product in wishlist")
    store.update_one("wishlist", {"_id": wishlist["_id"]}, values={"product_ids": [p for p in wishlist["product_ids"] if p != product_id]})
    return {"message": "Removed from wishlist."}


# Addresses
@app.get("/addresses")
def list_addresses(identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    return get_documents(store, "address", {"user_id": identity.user_id})

@app.post("/addresses", status_code=201)
def create_address(payload: AddressRequest, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    aid = create_document(store, "address", AddressSchema(user_id=identity.user_id, **payload.model_dump()))
    return serialize(store.find_one("address", {"_id": aid}))

@app.delete("/addresses/{address_id}")
def delete_address(address_id: str, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    identity = require_user(identity)
    address = store.find_one("address", {"_id": address_id})
    if not address or address["user_id"] != identity.user_id:
        raise NotFound("Address")
    store.delete_one("address", {"_id": address_id})
    return {"message": "Address deleted."}


# Checkout and orders
@app.post("/checkout", status_code=201)
def checkout(
    payload: CheckoutRequest,
    identity: Optional[Identity] = Depends(current_identity),
    store=Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
):
    return orders.place_order(store, identity, payload.payment_method, payload.address_id, gateway)

@app.get("/orders")
def list_orders(identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return orders.list_orders(store, identity)

@app.get("/orders/{order_id}")
def get_order(order_id: str, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return orders.get_order(store, identity, order_id)

@app.put("/orders/{order_id}/cancel")
def cancel_order(order_id: str, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return orders.cancel_order(store, identity, order_id)

@app.post("/payment/webhook")
async def payment_webhook(
    request: Request,
    x_payment_signature: Optional[str] = Header(None),
    store=Depends(get_store),
    gateway: PaymentGateway = Depends(get_gateway),
):
    body = await request.body()
    if not x_payment_signature:
        raise BadRequest("Signature missing")
    if not gateway.verify_signature(body, x_payment_signature):
        logger.warning("Payment webhook with invalid signature")
        raise BadRequest("Invalid signature")
    try:
        event = json.loads(body)
        payment = event["payload"]["payment"]["entity"]
        payment_ref = payment["order_id"]
        payment_id = payment.get("id")
    except (ValueError, KeyError, TypeError, AttributeError):
        raise BadRequest("Malformed webhook payload")
    if not isinstance(payment_ref, str) or not payment_ref:
        raise BadRequest("Malformed webhook payload")

    if event.get("event") == "payment.captured":
        await run_in_threadpool(orders.capture_payment, store, payment_ref, payment_id)
    elif event.get("event") == "payment.failed":
        await run_in_threadpool(orders.fail_payment, store, payment_ref)
    else:
        logger.info("Ignoring payment webhook event %s", event.get("event"))
    return {"status": "ok"}


# Admin
@app.get("/admin/orders")
def admin_list_orders(status: Optional[OrderStatus] = None, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return orders.admin_list_orders(store, identity, status)

@app.put("/admin/orders/{order_id}")
def admin_update_order_status(order_id: str, payload: StatusUpdate, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return orders.update_status(store, identity, order_id, payload.status)

@app.post("/admin/orders/{order_id}/assign")
def admin_assign_order(order_id: str, payload: AssignRequest, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return orders.assign_order(store, identity, order_id, payload.assigned_to_id)

@app.get("/admin/users")
def admin_list_users(role: Optional[Role] = None, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    query = {"role": role.value} if role else {}
    return [auth.public_user(u) for u in store.find("user", query, sort=[("created_at", -1)])]

@app.put("/admin/users/{user_id}/role")
def admin_update_role(user_id: str, payload: RoleUpdate, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    admin = require_role(identity, ADMIN)
    if admin.user_id == user_id:
        raise BadRequest("You cannot change your own role")
    if not store.find_one("user", {"_id": user_id}):
        raise NotFound("User")
    updated = store.update_one("user", {"_id": user_id}, values={"role": payload.role.value})
    logger.info("User %s role set to %s by %s", user_id, payload.role.value, admin.user_id)
    return {"message": "User role updated successfully", "user": auth.public_user(updated)}

@app.get("/admin/stats")
def admin_stats(identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return orders.stats(store, identity)

@app.get("/admin/search/orders")
def admin_search_orders(
    q: str = "",
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    payment_method: Optional[PaymentMethod] = None,
    identity: Optional[Identity] = Depends(current_identity),
    store=Depends(get_store),
):
    return orders.search_orders(store, identity, q, status, payment_status, payment_method)

@app.get("/admin/search/users")
def admin_search_users(q: str = "", role: Optional[Role] = None, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    query = {"role": role.value} if role else {}
    q = q.strip()
    found = store.search("user", ["name", "email"], q, query) if q else store.find("user", query)
    users = [auth.public_user(u) for u in found]
    for u in users:
        u["order_count"] = store.count("order", {"user_id": u["id"]})
    return users

@app.get("/admin/search/products")
def admin_search_products(
    q: str = "",
    category_id: Optional[str] = None,
    featured: Optional[bool] = None,
    in_stock: Optional[bool] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    identity: Optional[Identity] = Depends(current_identity),
    store=Depends(get_store),
):
    require_role(identity, ADMIN)
    query = {}
    if category_id:
        query["category_id"] = category_id
    if featured is not None:
        query["featured"] = featured
    if in_stock is not None:
        query["stock"] = {"$gt": 0} if in_stock else 0
    price = {}
    if min_price is not None:
        price["$gte"] = min_price
    if max_price is not None:
        price["$lte"] = max_price
    if price:
        query["price"] = price
    q = q.strip()
    newest_first = [("created_at", -1)]
    if q:
        found = store.search("product", ["name", "description"], q, query, sort=newest_first)
    else:
        found = store.find("product", query, sort=newest_first)
    return [serialize(p) for p in found]


# Banners
@app.get("/banners")
def list_banners(store=Depends(get_store)):
    """Active banners whose display window includes now"""
    current = now()
    banners = store.find("banner", {"active": True}, sort=[("priority", -1), ("created_at", -1)])
    return [
        serialize(b) for b in banners
        if (b.get("starts_at") is None or as_utc(b["starts_at"]) <= current)
        and (b.get("ends_at") is None or as_utc(b["ends_at"]) >= current)
    ]

@app.get("/admin/banners")
def admin_list_banners(identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    return [serialize(b) for b in store.find("banner", sort=[("priority", -1), ("created_at", -1)])]

@app.post("/banners", status_code=201)
def create_banner(banner: BannerSchema, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    bid = create_document(store, "banner", banner)
    return serialize(store.find_one("banner", {"_id": bid}))

@app.put("/banners/{banner_id}")
def update_banner(banner_id: str, payload: BannerUpdate, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    updated = store.update_one("banner", {"_id": banner_id}, values=payload.model_dump(exclude_unset=True))
    if not updated:
        raise NotFound("Banner")
    return serialize(updated)

@app.delete("/banners/{banner_id}")
def delete_banner(banner_id: str, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    require_role(identity, ADMIN)
    if not store.delete_one("banner", {"_id": banner_id}):
        raise NotFound("Banner")
    return {"message": "Banner successfully deleted."}


# Delivery
@app.get("/delivery/orders")
def delivery_orders(identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return orders.assigned_orders(store, identity)

@app.post("/delivery/orders/{order_id}/status")
def delivery_update_status(order_id: str, payload: DeliveryStatusUpdate, identity: Optional[Identity] = Depends(current_identity), store=Depends(get_store)):
    return orders.delivery_update_status(store, identity, order_id, payload.status, payload.delivery_proof_url)
