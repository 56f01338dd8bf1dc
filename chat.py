"""
Order chat: access rules, thread creation and messages.

A thread exists once an order has been paid for (or is awaiting payment
verification); messages can only be read or sent while the order is
PAYMENT_CONFIRMED or COMPLETED.
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bson import ObjectId
from pymongo import DESCENDING
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from broker import ChatBroker
from database import object_id, serialize, utc_now
from errors import ChatNotYetAvailable, Forbidden, NotFound, ValidationFailed
from schemas import (COMPLETED, MESSAGE_MAX_LENGTH, PAYMENT_CONFIRMED, PAYMENT_VERIFICATION_PENDING, ChatMessage,
                     ChatThread, SessionUser)

logger = logging.getLogger(__name__)

THREAD_STATUSES = (PAYMENT_VERIFICATION_PENDING, PAYMENT_CONFIRMED, COMPLETED)
CHAT_STATUSES = (PAYMENT_CONFIRMED, COMPLETED)
MESSAGE_HISTORY_LIMIT = 200


# Access rules

def can_access_thread(actor: SessionUser, thread: Dict[str, Any]) -> bool:
    return actor.id in (thread.get("buyer_id"), thread.get("seller_id")) or actor.is_admin


def can_chat_now(order_status: Optional[str]) -> bool:
    return order_status in CHAT_STATUSES


def clean_content(content: Any) -> str:
    if not isinstance(content, str):
        raise ValidationFailed("Message content must be text")
    content = content.strip()
    if not content:
        raise ValidationFailed("Message cannot be empty")
    if len(content) > MESSAGE_MAX_LENGTH:
        raise ValidationFailed(f"Message cannot exceed {MESSAGE_MAX_LENGTH} characters")
    return content


# Threads

def insert_thread(db: Database, order: Dict[str, Any]) -> Tuple[Dict[str, Any], bool]:
    """Insert the order's thread; if another caller already did, return theirs.

    The flag is True only when this call inserted the row.
    """
    now = utc_now()
    doc = ChatThread(order_id=str(order["_id"]), buyer_id=order["buyer_id"], seller_id=order["seller_id"]).model_dump()
    doc.update(created_at=now, updated_at=now)
    try:
        db["chatthread"].insert_one(doc)
    except DuplicateKeyError:
        existing = db["chatthread"].find_one({"order_id": doc["order_id"]})
        if existing is not None:
            return existing, False
        raise
    logger.info("Chat thread %s opened for order %s", doc["_id"], doc["order_id"])
    return doc, True


def create_thread(db: Database, order: Dict[str, Any]) -> Dict[str, Any]:
    return insert_thread(db, order)[0]


def ensure_thread(db: Database, order: Dict[str, Any]) -> Dict[str, Any]:
    existing = db["chatthread"].find_one({"order_id": str(order["_id"])})
    if existing is not None:
        return existing
    return create_thread(db, order)


def ensure_thread_quietly(db: Database, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """ensure_thread for side paths: a storage failure is logged, not raised."""
    try:
        return ensure_thread(db, order)
    except PyMongoError:
        logger.exception("Could not create chat thread for order %s", order.get("_id"))
        return None


def thread_ids_for_orders(db: Database, orders: Iterable[Dict[str, Any]], heal: bool = True) -> Dict[str, str]:
    """Map order id -> thread id, creating threads that should exist but don't."""
    orders = list(orders)
    order_ids = [str(o["_id"]) for o in orders]
    found = {t["order_id"]: str(t["_id"])
             for t in db["chatthread"].find({"order_id": {"$in": order_ids}}, {"order_id": 1})}
    if heal:
        for order in orders:
            oid = str(order["_id"])
            if oid in found or order.get("status") not in THREAD_STATUSES:
                continue
            thread = ensure_thread_quietly(db, order)
            if thread is not None:
                found[oid] = str(thread["_id"])
    return found


def backfill_threads(db: Database) -> int:
    """Create missing threads for every order past payment. Returns how many were created."""
    orders = list(db["order"].find({"status": {"$in": list(THREAD_STATUSES)}}))
    have = {t["order_id"] for t in db["chatthread"].find(
        {"order_id": {"$in": [str(o["_id"]) for o in orders]}}, {"order_id": 1})}
    created = 0
    for order in orders:
        if str(order["_id"]) in have:
            continue
        _, inserted = insert_thread(db, order)
        created += inserted
    logger.info("Backfilled %d chat thread(s)", created)
    return created


def get_thread(db: Database, thread_id: str) -> Dict[str, Any]:
    thread = db["chatthread"].find_one({"_id": object_id(thread_id, "Thread")})
    if not thread:
        raise NotFound("Thread not found")
    return thread


def authorize_thread(db: Database, actor: SessionUser, thread_id: str,
                     need_chat: bool = True) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Load a thread and its order, checking membership and then the payment gate."""
    thread = get_thread(db, thread_id)
    if not can_access_thread(actor, thread):
        raise Forbidden()
    order = db["order"].find_one({"_id": object_id(thread["order_id"], "Order")})
    if not order:
        raise NotFound("Order not found")
    if need_chat and not can_chat_now(order.get("status")):
        raise ChatNotYetAvailable()
    return thread, order


def thread_for_order(db: Database, actor: SessionUser, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": object_id(order_id, "Order")})
    if not order:
        raise NotFound("Order not found")
    if not can_access_thread(actor, order):
        raise Forbidden()
    thread = db["chatthread"].find_one({"order_id": str(order["_id"])})
    if thread is None and order.get("status") in THREAD_STATUSES:
        thread = ensure_thread_quietly(db, order)
    if thread is None:
        raise NotFound("No chat for this order yet")
    return {"thread_id": str(thread["_id"]), "status": order["status"]}


def list_threads(db: Database, actor: SessionUser) -> List[Dict[str, Any]]:
    threads = list(db["chatthread"].find(
        {"$or": [{"buyer_id": actor.id}, {"seller_id": actor.id}]}
    ).sort("updated_at", DESCENDING))
    orders = {str(o["_id"]): o for o in db["order"].find(
        {"_id": {"$in": [object_id(t["order_id"]) for t in threads]}})}
    books = {str(b["_id"]): b for b in db["book"].find(
        {"_id": {"$in": [object_id(o["book_id"]) for o in orders.values()]}}, {"title": 1, "author": 1})}
    names = user_names(db, [t["buyer_id"] for t in threads] + [t["seller_id"] for t in threads])
    out = []
    for thread in threads:
        item = serialize(thread)
        order = orders.get(thread["order_id"])
        if order is not None:
            item["order_status"] = order["status"]
            book = books.get(order["book_id"])
            item["book"] = serialize(book)
        item["buyer_name"] = names.get(thread["buyer_id"])
        item["seller_name"] = names.get(thread["seller_id"])
        out.append(item)
    return out


# Messages

def user_names(db: Database, user_ids: Iterable[str]) -> Dict[str, str]:
    ids = [ObjectId(uid) for uid in set(user_ids) if isinstance(uid, str) and ObjectId.is_valid(uid)]
    if not ids:
        return {}
    return {str(u["_id"]): u.get("name") for u in db["user"].find({"_id": {"$in": ids}}, {"name": 1})}


def message_out(doc: Dict[str, Any], sender_name: Optional[str] = None) -> Dict[str, Any]:
    return {
        "id": str(doc["_id"]),
        "thread_id": doc["thread_id"],
        "sender_id": doc["sender_id"],
        "sender_name": sender_name,
        "content": doc["content"],
        "created_at": doc["created_at"],
    }


def list_messages(db: Database, actor: SessionUser, thread_id: str) -> Dict[str, Any]:
    thread, order = authorize_thread(db, actor, thread_id)
    # newest 200, returned oldest first
    docs = list(db["chatmessage"].find({"thread_id": str(thread["_id"])})
                .sort([("created_at", DESCENDING), ("_id", DESCENDING)])
                .limit(MESSAGE_HISTORY_LIMIT))
    docs.reverse()
    names = user_names(db, [d["sender_id"] for d in docs])
    info = serialize(thread)
    info["order_status"] = order["status"]
    return {"thread": info, "messages": [message_out(d, names.get(d["sender_id"])) for d in docs]}


def send_message(db: Database, broker: ChatBroker, actor: SessionUser, thread_id: str, content: Any) -> Dict[str, Any]:
    thread, _ = authorize_thread(db, actor, thread_id)
    content = clean_content(content)
    now = utc_now()
    doc = ChatMessage(thread_id=str(thread["_id"]), sender_id=actor.id, content=content).model_dump()
    doc["created_at"] = now
    db["chatmessage"].insert_one(doc)
    db["chatthread"].update_one({"_id": thread["_id"]}, {"$set": {"updated_at": now}})
    message = message_out(doc, actor.name)
    broker.publish(doc["thread_id"], {"type": "message", "message": message})
    return message
