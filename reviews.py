"""
Product reviews.

A review is only accepted from a customer with a PAID order containing the
product, at most one per customer and product. The review and its rating
are written in one store transaction.
"""

import logging
from typing import List, Optional

from database import create_document, serialize
from errors import Conflict, Forbidden, NotFound
from rbac import Identity, require_user
from schemas import PaymentStatus, Rating, Review

logger = logging.getLogger(__name__)

NEWEST_FIRST = [("created_at", -1)]


def has_purchased(store, user_id: str, product_id: str) -> bool:
    paid = store.find("order", {"user_id": user_id, "payment_status": PaymentStatus.PAID.value})
    return any(item["product_id"] == product_id for order in paid for item in order.get("items", []))


def _review_view(store, review: dict) -> dict:
    view = serialize(review)
    user = store.find_one("user", {"_id": review["user_id"]})
    view["user"] = {"id": review["user_id"], "name": user["name"] if user else None}
    rating = store.find_one("rating", {"review_id": view["id"]})
    view["rating"] = rating["value"] if rating else None
    return view


def list_reviews(store, product_id: str) -> List[dict]:
    return [_review_view(store, r) for r in store.find("review", {"product_id": product_id}, sort=NEWEST_FIRST)]


def rating_summary(store, product_id: str) -> dict:
    values = [r["value"] for r in store.find("rating", {"product_id": product_id})]
    average = round(sum(values) / len(values), 1) if values else None
    return {"average_rating": average, "review_count": len(values)}


def add_review(
    store,
    identity: Optional[Identity],
    product_id: str,
    title: str,
    comment: str,
    rating: int,
) -> dict:
    identity = require_user(identity)
    product = store.find_one("product", {"_id": product_id})
    if not product:
        raise NotFound("Product")
    product_id = str(product["_id"])
    if not has_purchased(store, identity.user_id, product_id):
        raise Forbidden("You can only review products you have purchased.")

    with store.transaction() as tx:
        if tx.find_one("review", {"user_id": identity.user_id, "product_id": product_id}):
            raise Conflict("You have already reviewed this product.")
        review_id = create_document(tx, "review", Review(
            product_id=product_id, user_id=identity.user_id, title=title, comment=comment,
        ))
        create_document(tx, "rating", Rating(
            product_id=product_id, user_id=identity.user_id, review_id=review_id, value=rating,
        ))
        created = _review_view(tx, tx.find_one("review", {"_id": review_id}))

    logger.info("Review %s added to product %s by %s", review_id, product_id, identity.user_id)
    return created
