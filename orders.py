"""
Order lifecycle.

    PENDING_PAYMENT --mark_paid (buyer)--------------> PAYMENT_CONFIRMED
    PAYMENT_VERIFICATION_PENDING --confirm_payment (admin)--> PAYMENT_CONFIRMED
    PAYMENT_CONFIRMED --mark_payout_sent (admin)------> COMPLETED

PAYMENT_VERIFICATION_PENDING is only entered by administrative tooling; the
buyer's mark_paid skips it. CANCELLED exists as a status but nothing moves an
order into it.

Each transition is one conditional update keyed on the expected status, so a
failed or concurrent attempt leaves the stored order untouched.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

from books import claim_book, get_book, release_book
from chat import ensure_thread_quietly, thread_ids_for_orders
from database import create_document, object_id, serialize, utc_now
from errors import Forbidden, InvalidAction, InvalidState, NotFound, ValidationFailed
from schemas import (COMPLETED, PAYMENT_CONFIRMED, PAYMENT_VERIFICATION_PENDING, PENDING_PAYMENT, Order,
                     SessionUser)

logger = logging.getLogger(__name__)

BUYER = "buyer"
ADMIN = "admin"


@dataclass(frozen=True)
class Transition:
    actor: str
    source: str
    target: str
    stamps: Tuple[str, ...]
    opens_chat: bool = False


TRANSITIONS: Dict[str, Transition] = {
    "mark_paid": Transition(BUYER, PENDING_PAYMENT, PAYMENT_CONFIRMED,
                            ("payment_marked_at", "payment_confirmed_at"), opens_chat=True),
    "confirm_payment": Transition(ADMIN, PAYMENT_VERIFICATION_PENDING, PAYMENT_CONFIRMED,
                                  ("payment_confirmed_at",), opens_chat=True),
    "mark_payout_sent": Transition(ADMIN, PAYMENT_CONFIRMED, COMPLETED, ("payout_sent_at",)),
}

ADMIN_QUEUE_STATUSES = (PAYMENT_VERIFICATION_PENDING, PAYMENT_CONFIRMED)
CONTACT_FIELDS = {"name": 1, "email": 1, "phone": 1}
NEWEST_FIRST = [("created_at", DESCENDING), ("_id", DESCENDING)]


def is_party(actor: SessionUser, order: Dict[str, Any]) -> bool:
    return actor.id in (order["buyer_id"], order["seller_id"]) or actor.is_admin


def may_apply(actor: SessionUser, order: Dict[str, Any], transition: Transition) -> bool:
    if transition.actor == BUYER:
        return actor.id == order["buyer_id"]
    return actor.is_admin


def load_order(db: Database, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": object_id(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")
    return order


def create_order(db: Database, buyer: SessionUser, book_id: str) -> Dict[str, Any]:
    book = get_book(db, book_id)
    if book["seller_id"] == buyer.id:
        raise Forbidden("Cannot buy your own book")
    book = claim_book(db, book)
    order = Order(
        book_id=str(book["_id"]),
        buyer_id=buyer.id,
        seller_id=book["seller_id"],
        seller_price=book["seller_price"],
        platform_price=book["platform_price"],
        status=PENDING_PAYMENT,
    )
    try:
        order_id = create_document(db, "order", order)
    except PyMongoError:
        logger.exception("Order insert failed for book %s, releasing it", book["_id"])
        release_book(db, book["_id"])
        raise
    logger.info("Order %s created: book %s bought by %s", order_id, book["_id"], buyer.id)
    return db["order"].find_one({"_id": object_id(order_id)})


def apply_action(db: Database, actor: SessionUser, order_id: str, action: str) -> Dict[str, Any]:
    order = load_order(db, order_id)
    transition = TRANSITIONS.get(action)
    if transition is None:
        raise InvalidAction(f"Unknown action: {action}")
    if not may_apply(actor, order, transition):
        raise Forbidden()

    now = utc_now()
    changes = {"status": transition.target, "updated_at": now}
    for field in transition.stamps:
        changes[field] = now
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": transition.source},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        current = db["order"].find_one({"_id": order["_id"]}, {"status": 1}) or order
        raise InvalidState(f"Cannot {action} an order in status {current['status']}")
    logger.info("Order %s: %s by %s (%s -> %s)", order_id, action, actor.id, transition.source, transition.target)

    if transition.opens_chat:
        ensure_thread_quietly(db, updated)
    return updated


# Read side

def _users(db: Database, ids: List[str]) -> Dict[str, Dict[str, Any]]:
    oids = [ObjectId(i) for i in set(ids) if ObjectId.is_valid(i)]
    return {str(u["_id"]): serialize(u) for u in db["user"].find({"_id": {"$in": oids}}, CONTACT_FIELDS)}


def expand_orders(db: Database, orders: List[Dict[str, Any]], heal: bool = True) -> List[Dict[str, Any]]:
    """Attach book, buyer/seller contact details and thread id to each order."""
    if not orders:
        return []
    threads = thread_ids_for_orders(db, orders, heal=heal)
    books = {str(b["_id"]): serialize(b) for b in db["book"].find(
        {"_id": {"$in": [object_id(o["book_id"]) for o in orders]}})}
    people = _users(db, [o["buyer_id"] for o in orders] + [o["seller_id"] for o in orders])
    out = []
    for order in orders:
        item = serialize(order)
        item["book"] = books.get(order["book_id"])
        item["buyer"] = people.get(order["buyer_id"])
        item["seller"] = people.get(order["seller_id"])
        item["thread_id"] = threads.get(str(order["_id"]))
        out.append(item)
    return out


def get_order(db: Database, actor: SessionUser, order_id: str) -> Dict[str, Any]:
    order = load_order(db, order_id)
    if not is_party(actor, order):
        raise Forbidden()
    return expand_orders(db, [order])[0]


def list_orders(db: Database, actor: SessionUser, kind: Optional[str] = "buy") -> List[Dict[str, Any]]:
    if kind == "buy":
        filt = {"buyer_id": actor.id}
    elif kind == "sell":
        filt = {"seller_id": actor.id}
    else:
        raise ValidationFailed("type must be 'buy' or 'sell'")
    orders = list(db["order"].find(filt).sort(NEWEST_FIRST))
    return expand_orders(db, orders)


def list_admin_orders(db: Database) -> List[Dict[str, Any]]:
    orders = list(db["order"].find({"status": {"$in": list(ADMIN_QUEUE_STATUSES)}}).sort(NEWEST_FIRST))
    return expand_orders(db, orders)
