"""
Database Schemas for the LWG Orders API

Each Pydantic model that is persisted maps to a MongoDB collection named
after the lowercase class name (CanonicalOrder is stored in "order").
Request models accept camelCase keys as sent by the storefront as well as
the snake_case field names.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Role(str, Enum):
    admin = "admin"


class AdminUser(BaseModel):
    username: str = Field(..., min_length=3)
    password_hash: str
    role: Role = Role.admin
    is_active: bool = True


class Product(BaseModel):
    key: str
    title: str
    price: float = Field(ge=0)
    image: str = ""
    desc: str = ""
    stock: int = Field(default=0, ge=0)
    category: str = ""
    tags: List[str] = []
    active: bool = True


class OrderStatus(str, Enum):
    new = "New"
    processing = "Processing"
    shipped = "Shipped"
    completed = "Completed"
    cancelled = "Cancelled"


class PaymentStatus(str, Enum):
    pending = "Pending"
    paid = "Paid"
    failed = "Failed"
    refunded = "Refunded"


# Inbound (untrusted) shapes

class LineItemInput(CamelModel):
    product_key: str = Field(..., min_length=1)
    quantity: int = Field(..., strict=True)
    unit_title: str = Field(..., min_length=1)
    unit_price: float = Field(..., strict=True)


class CustomerInfo(CamelModel):
    name: str = ""
    phone: Optional[str] = None
    email: Optional[str] = None
    payment_method: str = ""
    address: str = ""
    delivery_zone: Optional[str] = None
    payment_details: Optional[Dict[str, str]] = None
    note: Optional[str] = None


class ProofAttachment(CamelModel):
    filename: Optional[str] = None
    content_type: Optional[str] = None
    data: str = Field(..., min_length=1)


class IncomingOrder(CamelModel):
    reference_hint: Optional[str] = None
    items: List[LineItemInput]
    info: CustomerInfo
    subtotal: Optional[float] = None
    delivery_fee: Optional[float] = None
    grand_total: Optional[float] = None
    proof: Optional[ProofAttachment] = None


# Persisted shapes

class LineItem(CamelModel):
    product_key: str
    title: str
    unit_price: float
    quantity: int
    line_total: float


class CanonicalOrder(CamelModel):
    reference: str
    created_at: datetime
    updated_at: datetime
    items: List[LineItem]
    info: CustomerInfo
    subtotal: float
    delivery_fee: float
    grand_total: float
    proof_url: Optional[str] = None
    payment_status: PaymentStatus = PaymentStatus.pending
    status: OrderStatus = OrderStatus.new
    notes: List[str] = []

    def to_document(self) -> dict:
        return self.model_dump(mode="json") | {
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: dict) -> "CanonicalOrder":
        data = {k: v for k, v in doc.items() if k != "_id"}
        return cls.model_validate(data)

    def public_view(self, order_id: Optional[str] = None) -> dict:
        """Customer-facing view: payment details are withheld."""
        view = self.model_dump(mode="json", by_alias=True, exclude={"info": {"payment_details"}})
        view["id"] = order_id
        return view


class OrderUpdate(CamelModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    note: Optional[str] = None


class StatusChange(BaseModel):
    status: OrderStatus
