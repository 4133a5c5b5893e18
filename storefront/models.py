# storefront/models.py
from decimal import Decimal
from typing import List, Optional, Union

from pydantic import BaseModel


class CartItemIn(BaseModel):
    product_id: Optional[int] = None
    size: Optional[str] = None
    quantity: int = 1


class CartItemPatch(BaseModel):
    quantity: int


class CheckoutIn(BaseModel):
    payment_method: str = "credit_card"
    shipping_address: Optional[dict] = None  # street, city, zipcode required
    notes: Optional[str] = None


class OrderStatusPatch(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None
    tracking_code: Optional[str] = None


class ProductIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[Decimal] = None
    category_id: Optional[int] = None
    brand: Optional[str] = None
    team: Optional[str] = None
    sport: Optional[str] = None
    size_options: Optional[Union[List[str], str]] = None
    stock_quantity: Optional[int] = None
    sku: Optional[str] = None


class ProductPatch(ProductIn):
    is_active: Optional[bool] = None


def envelope(message: str, data=None, **extra) -> dict:
    body = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    body.update(extra)
    return body
