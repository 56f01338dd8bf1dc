"""Book listings: creation with platform pricing, lookup, deletion, and the sold flag."""
import logging
import re
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import create_document, get_documents, object_id, serialize, utc_now
from errors import Conflict, Forbidden, NotFound
from schemas import AVAILABLE, SOLD, Book, BookIn, SessionUser

logger = logging.getLogger(__name__)

PLATFORM_FEE_PERCENT = 10


def platform_price_for(seller_price: int) -> int:
    """Seller price plus the platform fee, rounded up to a whole unit."""
    return -(-seller_price * (100 + PLATFORM_FEE_PERCENT) // 100)


def create_book(db: Database, seller: SessionUser, payload: BookIn) -> Dict[str, Any]:
    book = Book(
        **payload.model_dump(),
        platform_price=platform_price_for(payload.seller_price),
        status=AVAILABLE,
        seller_id=seller.id,
    )
    book_id = create_document(db, "book", book)
    logger.info("Book %s listed by %s at %s", book_id, seller.id, book.platform_price)
    return serialize(db["book"].find_one({"_id": object_id(book_id)}))


def list_books(db: Database, search: Optional[str] = None, status: str = AVAILABLE,
               seller_id: Optional[str] = None) -> List[Dict[str, Any]]:
    filt: Dict[str, Any] = {"status": status}
    if seller_id:
        filt["seller_id"] = seller_id
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        filt["$or"] = [{"title": pattern}, {"author": pattern}]
    docs = get_documents(db, "book", filt, sort=[("created_at", -1), ("_id", -1)])
    return [serialize(d) for d in docs]


def get_book(db: Database, book_id: str) -> Dict[str, Any]:
    doc = db["book"].find_one({"_id": object_id(book_id, "Book")})
    if not doc:
        raise NotFound("Book not found")
    return doc


def delete_book(db: Database, user: SessionUser, book_id: str) -> None:
    book = get_book(db, book_id)
    if book["seller_id"] != user.id:
        raise Forbidden("Only the seller can delete this book")
    result = db["book"].delete_one({"_id": book["_id"], "status": AVAILABLE})
    if result.deleted_count == 0:
        raise Conflict("Cannot delete a sold book")
    logger.info("Book %s deleted by %s", book_id, user.id)


def claim_book(db: Database, book: Dict[str, Any]) -> Dict[str, Any]:
    """Flip an AVAILABLE book to SOLD, failing if someone else got there first."""
    claimed = db["book"].find_one_and_update(
        {"_id": book["_id"], "status": AVAILABLE},
        {"$set": {"status": SOLD, "updated_at": utc_now()}},
        return_document=ReturnDocument.AFTER,
    )
    if claimed is None:
        raise Conflict("Book already sold")
    return claimed


def release_book(db: Database, book_id) -> None:
    db["book"].update_one({"_id": book_id, "status": SOLD},
                          {"$set": {"status": AVAILABLE, "updated_at": utc_now()}})
