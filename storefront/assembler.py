"""
Storefront — 注文の組み立て

I/O を持たない純粋な計算。小計・送料・税・合計を算出し、
Pending 状態の注文を作る。

    subtotal = Σ item.total
    shipping = 設定値 (固定)
    tax      = subtotal × 税率 (10%)、1セント単位で四捨五入
    total    = subtotal + shipping + tax
"""

import secrets
import string
import time
from decimal import ROUND_HALF_UP, Decimal

from .config import Settings
from .models import Address, Order, OrderItem, OrderStatus, PaymentStatus
from .store import new_id

_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    """ORD-<epoch ミリ秒>-<英大文字・数字6桁>。一意性はベストエフォート。"""
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(6))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def compute_totals(
    items: list[OrderItem],
    shipping: float,
    tax_rate: float,
) -> tuple[float, float, float, float]:
    """
    税は Decimal で計算し ROUND_HALF_UP で 0.01 に丸める。
    float の round() は 0.105 のような値を切り捨てる場合がある。
    """
    subtotal = sum(item.total for item in items)
    tax = float(
        (Decimal(str(subtotal)) * Decimal(str(tax_rate))).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
    )
    total = subtotal + shipping + tax
    return subtotal, shipping, tax, total


def assemble_order(
    settings: Settings,
    user_id: str,
    items: list[OrderItem],
    shipping_address: Address,
    billing_address: Address | None = None,
    payment_method: str | None = None,
) -> Order:
    subtotal, shipping, tax, total = compute_totals(
        items, settings.shipping_flat_rate, settings.tax_rate
    )
    return Order(
        id=new_id(),
        order_number=generate_order_number(),
        user_id=user_id,
        items=items,
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        total=total,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        payment_method=payment_method or settings.default_payment_method,
        shipping_address=shipping_address,
        billing_address=billing_address,
    )
