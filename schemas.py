"""
Database Schemas for the used-book marketplace

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class ChatThread -> collection "chatthread"
"""
from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, StringConstraints

# Statuses

AVAILABLE = "AVAILABLE"
SOLD = "SOLD"

PENDING_PAYMENT = "PENDING_PAYMENT"
PAYMENT_VERIFICATION_PENDING = "PAYMENT_VERIFICATION_PENDING"
PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
COMPLETED = "COMPLETED"
CANCELLED = "CANCELLED"  # reserved, nothing transitions into it yet

BookCondition = Literal["NEW", "LIKE_NEW", "GOOD", "FAIR"]
BookStatus = Literal["AVAILABLE", "SOLD"]
OrderStatus = Literal[
    "PENDING_PAYMENT",
    "PAYMENT_VERIFICATION_PENDING",
    "PAYMENT_CONFIRMED",
    "COMPLETED",
    "CANCELLED",
]

MESSAGE_MAX_LENGTH = 1000

MessageContent = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=MESSAGE_MAX_LENGTH)]


# Core domain models

class User(BaseModel):
    name: str
    email: EmailStr
    phone: str
    password_hash: str
    is_admin: bool = False


class Book(BaseModel):
    title: str
    author: str
    condition: BookCondition
    description: str
    seller_price: int = Field(..., gt=0, description="Amount the seller receives")
    platform_price: int = Field(..., gt=0, description="Buyer-facing price, seller price plus the platform fee")
    image_url: Optional[str] = None
    status: BookStatus = AVAILABLE
    seller_id: str


class Order(BaseModel):
    book_id: str
    buyer_id: str
    seller_id: str
    seller_price: int = Field(..., gt=0, description="Snapshot of the book's seller price at purchase time")
    platform_price: int = Field(..., gt=0, description="Snapshot of the book's platform price at purchase time")
    status: OrderStatus = PENDING_PAYMENT
    payment_marked_at: Optional[datetime] = None
    payment_confirmed_at: Optional[datetime] = None
    payout_sent_at: Optional[datetime] = None


class ChatThread(BaseModel):
    order_id: str
    buyer_id: str
    seller_id: str


class ChatMessage(BaseModel):
    thread_id: str
    sender_id: str
    content: MessageContent


# Session

class SessionUser(BaseModel):
    """Identity carried by a session token."""
    id: str
    email: str
    name: str
    is_admin: bool = False


# Request bodies

class SignupRequest(BaseModel):
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    email: EmailStr
    phone: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class BookIn(BaseModel):
    title: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    author: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    condition: BookCondition
    description: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    seller_price: int = Field(..., gt=0)
    image_url: Optional[str] = None


class CreateOrderRequest(BaseModel):
    book_id: str = Field(..., min_length=1)


class OrderActionRequest(BaseModel):
    action: str


class SendMessageRequest(BaseModel):
    # checked by chat.clean_content once thread access is settled
    content: Any = None

