"""
Storefront — クエリハンドラ (CQRS の Read 側)

注文の参照。ページングとフィルタはメモリ上で行う。
"""

import math
from datetime import datetime
from typing import TypeVar

from pydantic import BaseModel

from .aggregate import OrderAggregate
from .errors import NotFoundError
from .models import Order, as_utc
from .repositories import Repositories

T = TypeVar("T")


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


def paginate(items: list[T], page: int, limit: int) -> tuple[list[T], Pagination]:
    total = len(items)
    start = (page - 1) * limit
    return items[start:start + limit], Pagination(
        page=page,
        limit=limit,
        total=total,
        total_pages=math.ceil(total / limit),
    )


async def get_order(repos: Repositories, user_id: str, order_id: str) -> Order:
    """本人の注文だけを返す。"""
    order = await get_any_order(repos, order_id)
    OrderAggregate(order).ensure_owner(user_id)
    return order


async def get_any_order(repos: Repositories, order_id: str) -> Order:
    order = await repos.orders.get(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def list_orders(
    repos: Repositories,
    user_id: str,
    page: int = 1,
    limit: int = 10,
    status: str | None = None,
) -> tuple[list[Order], Pagination]:
    """本人の注文履歴(新しい順)"""
    orders = await repos.orders.list_for_user(user_id)
    if status:
        orders = [o for o in orders if o.status.value == status]
    return paginate(orders, page, limit)


async def list_all_orders(
    repos: Repositories,
    page: int = 1,
    limit: int = 20,
    status: str | None = None,
    search: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
) -> tuple[list[Order], Pagination]:
    """
    管理者向け注文一覧

    search は注文番号またはユーザー ID の部分一致(大文字小文字を区別しない)。
    date_from / date_to は作成日時の範囲(両端を含む)。
    """
    orders = await repos.orders.list_all()
    if status:
        orders = [o for o in orders if o.status.value == status]
    if search:
        needle = search.lower()
        orders = [
            o for o in orders
            if needle in o.order_number.lower() or needle in o.user_id.lower()
        ]
    if date_from:
        orders = [o for o in orders if o.created_at >= as_utc(date_from)]
    if date_to:
        orders = [o for o in orders if o.created_at <= as_utc(date_to)]
    return paginate(orders, page, limit)
