"""
Order placement and lookup.

Totals are always computed from live product prices; anything the client
sends besides product id and quantity is ignored for pricing. Stock is
reserved with a conditional decrement per product, so two concurrent
checkouts can never both take the last unit.
"""
import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pydantic import BaseModel, Field

from database import create_document, db, get_documents
from errors import (
    EmptyCart,
    Forbidden,
    InsufficientStock,
    NotFound,
    PaymentMethodUnavailable,
    ProductNotFound,
)
from schemas import ApiModel, Order, OrderItem, PaymentMethod, PaymentResult, ShippingAddress

logger = logging.getLogger(__name__)

TAX_RATE = Decimal("0.1")
FREE_SHIPPING_OVER = 1000
SHIPPING_FEE = 100
ENABLED_PAYMENT_METHODS = {"COD"}


class OrderItemIn(ApiModel):
    product: str
    qty: int = Field(..., ge=1)
    # display-only, never used for totals
    name: Optional[str] = None
    price: Optional[float] = None
    image: Optional[str] = None


class OrderCreateBody(ApiModel):
    order_items: List[OrderItemIn] = []
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = "COD"


class PriceBreakdown(BaseModel):
    items_price: float
    tax_price: float
    shipping_price: float
    total_price: float


def round2(value) -> float:
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def compute_prices(items_price: float) -> PriceBreakdown:
    items = Decimal(str(items_price))
    tax = Decimal(str(round2(TAX_RATE * items)))
    shipping = 0 if items > FREE_SHIPPING_OVER else SHIPPING_FEE
    return PriceBreakdown(
        items_price=round2(items),
        tax_price=float(tax),
        shipping_price=shipping,
        total_price=round2(items + tax + shipping),
    )


def _object_id(value: str, error):
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise error


def reserve_stock(product_id: ObjectId, qty: int) -> bool:
    """Decrement stock only if enough is left. False means nothing changed."""
    result = db["product"].update_one(
        {"_id": product_id, "count_in_stock": {"$gte": qty}},
        {"$inc": {"count_in_stock": -qty}, "$set": {"updated_at": datetime.now(timezone.utc)}},
    )
    return result.modified_count == 1


def release_stock(product_id: ObjectId, qty: int) -> None:
    db["product"].update_one({"_id": product_id}, {"$inc": {"count_in_stock": qty}})


def place_order(user_id: str, body: OrderCreateBody) -> dict:
    if not body.order_items:
        raise EmptyCart()
    if body.payment_method not in ENABLED_PAYMENT_METHODS:
        raise PaymentMethodUnavailable()

    wanted: Dict[ObjectId, int] = {}
    lines: List[OrderItem] = []
    items_price = Decimal("0")
    for item in body.order_items:
        pid = _object_id(item.product, ProductNotFound())
        product = db["product"].find_one({"_id": pid})
        if not product:
            raise ProductNotFound()
        wanted[pid] = wanted.get(pid, 0) + item.qty
        if product.get("count_in_stock", 0) < wanted[pid]:
            raise InsufficientStock()
        items_price += Decimal(str(product["price"])) * item.qty
        lines.append(
            OrderItem(
                product=str(pid),
                name=product["name"],
                qty=item.qty,
                price=product["price"],
                image=product.get("image"),
            )
        )

    prices = compute_prices(float(items_price))

    reserved = []
    try:
        for pid, qty in wanted.items():
            if not reserve_stock(pid, qty):
                logger.warning("Stock reservation lost a race for product %s (qty %s)", pid, qty)
                raise InsufficientStock()
            reserved.append((pid, qty))
        order = Order(
            user_id=user_id,
            order_items=lines,
            shipping_address=body.shipping_address,
            payment_method=body.payment_method,
            **prices.model_dump(),
        )
        order_id = create_document("order", order)
    except Exception:
        for pid, qty in reserved:
            release_stock(pid, qty)
        raise

    logger.info("Order %s placed by user %s, total %.2f", order_id, user_id, prices.total_price)
    return db["order"].find_one({"_id": ObjectId(order_id)})


def list_orders(user_id: Optional[str] = None) -> list:
    filt = {"user_id": user_id} if user_id else {}
    return get_documents("order", filt, sort=[("created_at", -1), ("_id", -1)])


def get_order(order_id: str, user: dict) -> dict:
    order = db["order"].find_one({"_id": _object_id(order_id, NotFound("Order not found"))})
    if not order:
        raise NotFound("Order not found")
    if order["user_id"] != str(user["_id"]) and not user.get("is_admin"):
        raise Forbidden()
    return order


def _set_order(order: dict, fields: dict) -> dict:
    fields["updated_at"] = datetime.now(timezone.utc)
    db["order"].update_one({"_id": order["_id"]}, {"$set": fields})
    return db["order"].find_one({"_id": order["_id"]})


def mark_paid(order_id: str, user: dict, payment_result: Optional[PaymentResult] = None) -> dict:
    order = get_order(order_id, user)
    fields = {"is_paid": True, "paid_at": datetime.now(timezone.utc)}
    if payment_result is not None:
        fields["payment_result"] = payment_result.model_dump()
    logger.info("Order %s marked paid", order_id)
    return _set_order(order, fields)


def mark_delivered(order_id: str, user: dict) -> dict:
    order = get_order(order_id, user)
    logger.info("Order %s marked delivered", order_id)
    return _set_order(order, {"is_delivered": True, "delivered_at": datetime.now(timezone.utc)})
