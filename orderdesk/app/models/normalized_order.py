"""
Transient order record produced by the row normalizer.

Never persisted as-is: the upsert engine maps it onto customers, orders
and order items.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class NormalizedCustomer(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    @property
    def has_contact(self) -> bool:
        return bool(self.phone or self.email)


class NormalizedItem(BaseModel):
    sku: Optional[str] = None
    title: Optional[str] = None
    qty: int = 1
    price: Optional[float] = Field(default=None, description="None when unparseable; never guessed")
    currency: Optional[str] = None


class NormalizedOrder(BaseModel):
    external_key: str = ""
    customer: Optional[NormalizedCustomer] = None
    items: List[NormalizedItem] = Field(default_factory=list)
    total: Optional[float] = None
    currency: Optional[str] = None
    notes: Optional[str] = None
