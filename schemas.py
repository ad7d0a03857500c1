"""
Database Schemas for the shop backend

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
References between collections (user_id, seller_id, product_id) are stored
as ObjectId so the seller order view can join on them.
"""
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Role(str, Enum):
    customer = "customer"
    shopkeeper = "shopkeeper"


class User(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., description="Full name")
    email: EmailStr
    password_hash: str = Field(..., description="Salted password hash")
    phone: str = ""
    address: str = ""
    role: Role = Role.customer


class Product(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    description: str
    price: float = Field(..., ge=0)
    image_url: str
    category: str
    stock: int = Field(..., ge=0)
    seller_id: ObjectId


class CartLine(BaseModel):
    """One product+quantity entry embedded in a cart"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    product_id: ObjectId
    quantity: int = Field(1, ge=1)

    def to_mongo(self) -> dict:
        return {"_id": self.id, "product_id": self.product_id, "quantity": self.quantity}


class OrderStatus(str, Enum):
    pending = "Pending"
    processing = "Processing"
    shipped = "Shipped"
    delivered = "Delivered"
    cancelled = "Cancelled"


ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.pending: frozenset({
        OrderStatus.processing, OrderStatus.shipped, OrderStatus.delivered, OrderStatus.cancelled,
    }),
    OrderStatus.processing: frozenset({OrderStatus.shipped, OrderStatus.delivered, OrderStatus.cancelled}),
    OrderStatus.shipped: frozenset({OrderStatus.delivered}),
    OrderStatus.delivered: frozenset(),
    OrderStatus.cancelled: frozenset(),
}


def can_transition(current: OrderStatus, new: OrderStatus) -> bool:
    return new == current or new in ORDER_TRANSITIONS[current]


class OrderLine(BaseModel):
    """Frozen copy of a purchased line"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: ObjectId = Field(default_factory=ObjectId, alias="_id")
    product_id: ObjectId
    product_name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image_url: str = ""

    def to_mongo(self) -> dict:
        data = self.model_dump()
        data["_id"] = data.pop("id")
        return data


class CustomerSnapshot(BaseModel):
    name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""


class Order(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: ObjectId
    total_amount: float = Field(..., ge=0)
    status: OrderStatus = OrderStatus.pending
    items: List[OrderLine]
    customer: CustomerSnapshot
    order_date: Optional[datetime] = None

    def to_mongo(self) -> dict:
        return {
            "user_id": self.user_id,
            "total_amount": self.total_amount,
            "status": self.status.value,
            "items": [line.to_mongo() for line in self.items],
            "customer": self.customer.model_dump(),
            "order_date": self.order_date,
        }
