import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import books
import chat
import orders
from auth import (clear_session_cookie, create_token, get_admin_user, get_current_user, get_optional_user,
                  hash_password, is_admin_email, set_session_cookie, verify_password)
from broker import ChatBroker
from database import create_document, db, ensure_indexes, get_db, object_id, serialize
from errors import Conflict, Unauthenticated
from schemas import (AVAILABLE, BookIn, BookStatus, CreateOrderRequest, LoginRequest, OrderActionRequest,
                     SendMessageRequest, SessionUser, SignupRequest, User)
from stream import MEDIA_TYPE, ChatStream

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("bookswap")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if db is not None:
        ensure_indexes(db)
    yield


# App setup
app = FastAPI(title="BookSwap API", version="0.1.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One broker per process; every request handler shares it.
app.state.broker = ChatBroker()


def get_broker(request: Request) -> ChatBroker:
    return request.app.state.broker


# Errors
def _without_input(errors):
    # never echo the rejected payload back
    return [{k: v for k, v in e.items() if k != "input"} for e in errors]


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={"detail": {"code": "validation_error", "message": "Invalid input",
                            "errors": jsonable_encoder(_without_input(exc.errors()))}},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": {"code": "internal_error",
                                                             "message": "Internal server error"}})


# Health and helpers
@app.get("/")
def root():
    return {"message": "BookSwap API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
def _user_out(user: dict) -> dict:
    return {"id": str(user["_id"]), "name": user["name"], "email": user["email"],
            "phone": user.get("phone"), "is_admin": user.get("is_admin", False)}


@app.post("/api/auth/signup")
def signup(payload: SignupRequest, response: Response, db: Database = Depends(get_db)):
    if db["user"].find_one({"email": payload.email}):
        raise Conflict("Email already exists")
    user = User(
        name=payload.name,
        email=payload.email,
        phone=payload.phone,
        password_hash=hash_password(payload.password),
        is_admin=is_admin_email(payload.email),
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise Conflict("Email already exists")
    created = db["user"].find_one({"_id": object_id(user_id)})
    token = create_token(created)
    set_session_cookie(response, token)
    logger.info("User %s signed up", user_id)
    return {"token": token, "user": _user_out(created)}


@app.post("/api/auth/login")
def login(payload: LoginRequest, response: Response, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise Unauthenticated("Invalid email or password")
    token = create_token(user)
    set_session_cookie(response, token)
    return {"token": token, "user": _user_out(user)}


@app.post("/api/auth/logout")
def logout(response: Response):
    clear_session_cookie(response)
    return {"success": True}


@app.get("/api/auth/me")
def me(user: Optional[SessionUser] = Depends(get_optional_user), db: Database = Depends(get_db)):
    if user is None:
        return {"user": None}
    doc = db["user"].find_one({"_id": object_id(user.id, "User")})
    if not doc:
        return {"user": None}
    return {"user": _user_out(doc)}


# Books
@app.get("/api/books")
def list_books(search: Optional[str] = None, status: BookStatus = AVAILABLE, seller_id: Optional[str] = None,
               db: Database = Depends(get_db)):
    return {"books": books.list_books(db, search=search, status=status, seller_id=seller_id)}


@app.post("/api/books")
def create_book(payload: BookIn, user: SessionUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"book": books.create_book(db, user, payload)}


@app.get("/api/books/{book_id}")
def get_book(book_id: str, db: Database = Depends(get_db)):
    return {"book": serialize(books.get_book(db, book_id))}


@app.delete("/api/books/{book_id}")
def delete_book(book_id: str, user: SessionUser = Depends(get_current_user), db: Database = Depends(get_db)):
    books.delete_book(db, user, book_id)
    return {"success": True}


# Orders
@app.get("/api/orders")
def list_orders(kind: str = Query("buy", alias="type"), user: SessionUser = Depends(get_current_user),
                db: Database = Depends(get_db)):
    return {"orders": orders.list_orders(db, user, kind)}


@app.post("/api/orders")
def create_order(payload: CreateOrderRequest, user: SessionUser = Depends(get_current_user),
                 db: Database = Depends(get_db)):
    order = orders.create_order(db, user, payload.book_id)
    return {"order": orders.expand_orders(db, [order])[0]}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: SessionUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"order": orders.get_order(db, user, order_id)}


@app.patch("/api/orders/{order_id}")
def update_order(order_id: str, payload: OrderActionRequest, user: SessionUser = Depends(get_current_user),
                 db: Database = Depends(get_db)):
    updated = orders.apply_action(db, user, order_id, payload.action)
    return {"order": orders.expand_orders(db, [updated], heal=False)[0]}


@app.get("/api/admin/orders")
def admin_orders(user: SessionUser = Depends(get_admin_user), db: Database = Depends(get_db)):
    return {"orders": orders.list_admin_orders(db)}


# Chat
@app.get("/api/chat/threads")
def list_threads(user: SessionUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return {"threads": chat.list_threads(db, user)}


@app.get("/api/chat/order/{order_id}")
def thread_for_order(order_id: str, user: SessionUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return chat.thread_for_order(db, user, order_id)


@app.get("/api/chat/threads/{thread_id}/messages")
def list_messages(thread_id: str, user: SessionUser = Depends(get_current_user), db: Database = Depends(get_db)):
    return chat.list_messages(db, user, thread_id)


@app.post("/api/chat/threads/{thread_id}/messages")
def send_message(thread_id: str, payload: SendMessageRequest, user: SessionUser = Depends(get_current_user),
                 db: Database = Depends(get_db), broker: ChatBroker = Depends(get_broker)):
    return {"message": chat.send_message(db, broker, user, thread_id, payload.content)}


@app.get("/api/chat/threads/{thread_id}/stream")
async def stream_thread(thread_id: str, request: Request, user: SessionUser = Depends(get_current_user),
                        db: Database = Depends(get_db), broker: ChatBroker = Depends(get_broker)):
    thread, _ = chat.authorize_thread(db, user, thread_id)
    # subscribes on first iteration, so a response that never starts holds nothing
    live = ChatStream(broker, str(thread["_id"]))
    return StreamingResponse(
        live.events(request.is_disconnected),
        media_type=MEDIA_TYPE,
        headers={"Cache-Control": "no-cache, no-transform", "X-Accel-Buffering": "no"},
    )


@app.post("/api/chat/fix-threads")
def fix_threads(user: SessionUser = Depends(get_admin_user), db: Database = Depends(get_db)):
    created = chat.backfill_threads(db)
    return {"success": True, "created": created,
            "message": f"Created {created} chat thread(s) for existing orders"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
