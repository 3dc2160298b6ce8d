"""
Order lifecycle and inventory transitions.

An order is placed PENDING with its line item quantities taken out of
product stock. Leaving PENDING for CANCELLED (customer cancel or failed
payment) puts the quantities back. Both directions run inside a single
store transaction so stock and status move together or not at all.

Status graph:
    PENDING -> CANCELLED                       owner or admin, restocks
    PENDING -> CANCELLED                       failed gateway payment, restocks
    PENDING -> PROCESSING                      captured gateway payment
    * -> PROCESSING|SHIPPED|OUT_FOR_DELIVERY|DELIVERED
                                               admin, unless CANCELLED/DELIVERED
    PROCESSING|SHIPPED -> OUT_FOR_DELIVERY     assigned delivery agent
    OUT_FOR_DELIVERY -> DELIVERED|DELIVERY_FAILED
                                               assigned delivery agent
"""

import logging
from typing import List, Optional, Tuple

from database import create_document, serialize
from errors import BadRequest, Forbidden, InvalidTransition, NotFound
from payments import PaymentGateway
from rbac import Identity, is_admin, is_delivery, require_role, require_user
from schemas import Order, OrderItem, OrderStatus, PaymentMethod, PaymentStatus, Role

logger = logging.getLogger(__name__)

ADMIN_TARGETS = {
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
}
FINAL_STATUSES = {OrderStatus.CANCELLED, OrderStatus.DELIVERED}
DELIVERY_TRANSITIONS = {
    OrderStatus.PROCESSING: {OrderStatus.OUT_FOR_DELIVERY},
    OrderStatus.SHIPPED: {OrderStatus.OUT_FOR_DELIVERY},
    OrderStatus.OUT_FOR_DELIVERY: {OrderStatus.DELIVERED, OrderStatus.DELIVERY_FAILED},
}
NEWEST_FIRST = [("created_at", -1)]


def load_order(store, order_id: str) -> dict:
    order = store.find_one("order", {"_id": order_id})
    if not order:
        raise NotFound("Order")
    return order


def restore_stock(tx, order: dict) -> None:
    """Give each line item's quantity back to its product."""
    for item in order.get("items", []):
        product = tx.update_one("product", {"_id": item["product_id"]}, inc={"stock": item["quantity"]})
        if product is None:
            logger.warning("Product %s of order %s no longer exists; stock not restored", item["product_id"], order["_id"])


def _cancel_in(tx, order_id, payment_status: Optional[PaymentStatus] = None) -> dict:
    current = tx.find_one("order", {"_id": order_id})
    if not current:
        raise NotFound("Order")
    if current["status"] != OrderStatus.PENDING:
        raise InvalidTransition(f"Cannot cancel order with status {current['status']}.")
    restore_stock(tx, current)
    values = {"status": OrderStatus.CANCELLED.value}
    if payment_status is not None:
        values["payment_status"] = payment_status.value
    cancelled = tx.update_one("order", {"_id": current["_id"], "status": OrderStatus.PENDING.value}, values=values)
    if cancelled is None:
        raise InvalidTransition(f"Cannot cancel order with status {current['status']}.")
    return cancelled


def cancel_order(store, identity: Optional[Identity], order_id: str) -> dict:
    identity = require_user(identity)
    order = load_order(store, order_id)
    if order["user_id"] != identity.user_id and not is_admin(identity):
        raise Forbidden()
    if order["status"] != OrderStatus.PENDING:
        raise InvalidTransition(f"Cannot cancel order with status {order['status']}.")
    with store.transaction() as tx:
        cancelled = _cancel_in(tx, order["_id"])
    logger.info("Order %s cancelled by %s", order["_id"], identity.user_id)
    return serialize(cancelled)


def _quote(store, cart_items: List[dict]) -> Tuple[List[OrderItem], float]:
    items = []
    total = 0.0
    for entry in cart_items:
        product = store.find_one("product", {"_id": entry["product_id"]})
        if not product:
            raise BadRequest("Invalid product in cart")
        if product["stock"] < entry["quantity"]:
            raise BadRequest(
                f"Not enough stock for {product['name']}. Available: {product['stock']}, Requested: {entry['quantity']}"
            )
        items.append(OrderItem(product_id=str(product["_id"]), name=product["name"], price=product["price"], quantity=entry["quantity"]))
        total += product["price"] * entry["quantity"]
    return items, round(total, 2)


def place_order(
    store,
    identity: Optional[Identity],
    payment_method: PaymentMethod,
    address_id: str,
    gateway: Optional[PaymentGateway] = None,
) -> dict:
    """Turn the caller's cart into a PENDING order and reserve its stock."""
    identity = require_user(identity)
    cart = store.find_one("cart", {"user_id": identity.user_id})
    if not cart or not cart.get("items"):
        raise BadRequest("Cannot create order from an empty cart.")
    address = store.find_one("address", {"_id": address_id})
    if not address or address["user_id"] != identity.user_id:
        raise NotFound("Address")

    items, total = _quote(store, cart["items"])
    payment = None
    if payment_method == PaymentMethod.GATEWAY:
        if gateway is None:
            raise ValueError("gateway checkout needs a PaymentGateway")
        payment = gateway.create_order(total, receipt=str(cart["_id"]))

    with store.transaction() as tx:
        items, reserved_total = _quote(tx, cart["items"])
        if payment is not None and reserved_total != total:
            raise BadRequest("Cart prices changed during checkout. Please try again.")
        for item in items:
            tx.update_one("product", {"_id": item.product_id}, inc={"stock": -item.quantity})
        order = Order(
            user_id=identity.user_id,
            items=items,
            total_amount=reserved_total,
            status=OrderStatus.PENDING,
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING,
            payment_ref=payment["id"] if payment else None,
            shipping_address_id=str(address["_id"]),
        )
        order_id = create_document(tx, "order", order)
        tx.update_one("cart", {"_id": cart["_id"]}, values={"items": []})
        created = tx.find_one("order", {"_id": order_id})

    logger.info("Order %s placed by %s (%s, %.2f)", order_id, identity.user_id, created["payment_method"], reserved_total)
    result = serialize(created)
    if payment is not None:
        result["payment"] = payment
    return result


def capture_payment(store, payment_ref: str, payment_id: Optional[str] = None) -> Optional[dict]:
    order = store.find_one("order", {"payment_ref": payment_ref})
    if not order:
        logger.warning("Captured payment for unknown payment order %s", payment_ref)
        return None
    if order["payment_status"] == PaymentStatus.PAID:
        return serialize(order)
    values = {"payment_status": PaymentStatus.PAID.value, "payment_id": payment_id}
    if order["status"] == OrderStatus.PENDING:
        values["status"] = OrderStatus.PROCESSING.value
    else:
        logger.warning("Payment captured for order %s with status %s", order["_id"], order["status"])
    updated = store.update_one("order", {"_id": order["_id"]}, values=values)
    logger.info("Payment %s captured for order %s", payment_id, order["_id"])
    return serialize(updated)


def fail_payment(store, payment_ref: str) -> Optional[dict]:
    order = store.find_one("order", {"payment_ref": payment_ref})
    if not order:
        logger.warning("Failed payment for unknown payment order %s", payment_ref)
        return None
    if order["status"] != OrderStatus.PENDING:
        return serialize(order)
    with store.transaction() as tx:
        cancelled = _cancel_in(tx, order["_id"], payment_status=PaymentStatus.FAILED)
    logger.info("Order %s cancelled after failed payment", order["_id"])
    return serialize(cancelled)


def _apply_status(store, order: dict, status: OrderStatus, extra: Optional[dict] = None) -> dict:
    values = {"status": status.value, **(extra or {})}
    if status == OrderStatus.DELIVERED and order.get("payment_method") == PaymentMethod.COD:
        values["payment_status"] = PaymentStatus.PAID.value
    updated = store.update_one("order", {"_id": order["_id"], "status": order["status"]}, values=values)
    if updated is None:
        raise InvalidTransition("Order status changed concurrently. Please retry.")
    logger.info("Order %s moved from %s to %s", order["_id"], order["status"], status.value)
    return serialize(updated)


def update_status(store, identity: Optional[Identity], order_id: str, status: OrderStatus) -> dict:
    require_role(identity, [Role.ADMIN])
    if status == OrderStatus.CANCELLED:
        raise BadRequest("Use the cancel endpoint to cancel an order.")
    if status not in ADMIN_TARGETS:
        raise BadRequest(f"Status {status.value} cannot be set manually.")
    order = load_order(store, order_id)
    if order["status"] in FINAL_STATUSES:
        raise InvalidTransition(f"Cannot change status of order with status {order['status']}.")
    return _apply_status(store, order, status)


def assign_order(store, identity: Optional[Identity], order_id: str, assigned_to_id: str) -> dict:
    require_role(identity, [Role.ADMIN])
    order = load_order(store, order_id)
    if assigned_to_id == "unassign":
        return serialize(store.update_one("order", {"_id": order["_id"]}, values={"assigned_to_id": None}))
    agent = store.find_one("user", {"_id": assigned_to_id})
    if not agent or agent.get("role") != Role.DELIVERY:
        raise BadRequest("The selected user is not a delivery person.")
    updated = store.update_one("order", {"_id": order["_id"]}, values={"assigned_to_id": str(agent["_id"])})
    logger.info("Order %s assigned to %s", order["_id"], agent["_id"])
    return serialize(updated)


def delivery_update_status(
    store,
    identity: Optional[Identity],
    order_id: str,
    status: OrderStatus,
    delivery_proof_url: Optional[str] = None,
) -> dict:
    agent = require_role(identity, [Role.DELIVERY])
    order = load_order(store, order_id)
    if order.get("assigned_to_id") != agent.user_id:
        raise Forbidden("You are not assigned to this order.")
    allowed = DELIVERY_TRANSITIONS.get(OrderStatus(order["status"]), set())
    if status not in allowed:
        raise InvalidTransition(f"Invalid status transition from {order['status']} to {status.value}.")
    extra = {"delivery_proof_url": delivery_proof_url} if delivery_proof_url else None
    return _apply_status(store, order, status, extra)


def list_orders(store, identity: Optional[Identity]) -> List[dict]:
    identity = require_user(identity)
    return [serialize(o) for o in store.find("order", {"user_id": identity.user_id}, sort=NEWEST_FIRST)]


def get_order(store, identity: Optional[Identity], order_id: str) -> dict:
    identity = require_user(identity)
    order = load_order(store, order_id)
    assignee = is_delivery(identity) and order.get("assigned_to_id") == identity.user_id
    if not is_admin(identity) and order["user_id"] != identity.user_id and not assignee:
        raise Forbidden()
    return serialize(order)


def admin_list_orders(store, identity: Optional[Identity], status: Optional[OrderStatus] = None) -> List[dict]:
    require_role(identity, [Role.ADMIN])
    query = {"status": status.value} if status else {}
    return [serialize(o) for o in store.find("order", query, sort=NEWEST_FIRST)]


def search_orders(
    store,
    identity: Optional[Identity],
    q: str = "",
    status: Optional[OrderStatus] = None,
    payment_status: Optional[PaymentStatus] = None,
    payment_method: Optional[PaymentMethod] = None,
) -> List[dict]:
    """Admin search: q matches the order id, the payment id or the customer's name or email."""
    require_role(identity, [Role.ADMIN])
    query = {}
    if status:
        query["status"] = status.value
    if payment_status:
        query["payment_status"] = payment_status.value
    if payment_method:
        query["payment_method"] = payment_method.value
    found = store.find("order", query, sort=NEWEST_FIRST)
    q = q.strip().lower()
    if q:
        customers = {str(u["_id"]) for u in store.search("user", ["name", "email"], q)}
        found = [
            o for o in found
            if q in str(o["_id"]) or q in (o.get("payment_id") or "").lower() or o["user_id"] in customers
        ]
    return [serialize(o) for o in found]


def assigned_orders(store, identity: Optional[Identity]) -> List[dict]:
    agent = require_role(identity, [Role.DELIVERY, Role.ADMIN])
    return [serialize(o) for o in store.find("order", {"assigned_to_id": agent.user_id}, sort=NEWEST_FIRST)]


def stats(store, identity: Optional[Identity]) -> dict:
    require_role(identity, [Role.ADMIN])
    paid = store.find("order", {"payment_status": PaymentStatus.PAID.value})
    return {
        "total_users": store.count("user"),
        "total_orders": store.count("order"),
        "total_revenue": round(sum(o["total_amount"] for o in paid), 2),
        "pending_payments": store.count("order", {"payment_status": PaymentStatus.PENDING.value}),
        "cod_orders": store.count("order", {"payment_method": PaymentMethod.COD.value}),
        "online_orders": store.count("order", {"payment_method": PaymentMethod.GATEWAY.value}),
    }
