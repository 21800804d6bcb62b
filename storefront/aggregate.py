"""
Storefront — 注文集約 (Order Aggregate)

注文の状態遷移ルールを持つ。

    状態遷移:
        Pending → Processing → Shipped → Delivered   (管理者操作)
        Pending / Processing → Cancelled             (在庫を戻す)
        Delivered / Cancelled / Refunded は終端状態
"""

from .errors import ForbiddenError, InvalidOrderStatusError, OrderNotCancellableError
from .models import Order, OrderStatus, utcnow

TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)
CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


class OrderAggregate:
    def __init__(self, order: Order) -> None:
        self.order = order

    @property
    def is_terminal(self) -> bool:
        return self.order.status in TERMINAL_STATUSES

    @property
    def can_cancel(self) -> bool:
        return self.order.status in CANCELLABLE_STATUSES and not self.order.restocked

    def ensure_owner(self, user_id: str) -> None:
        if self.order.user_id != user_id:
            raise ForbiddenError()

    def cancel(self) -> None:
        """
        Cancelled へ遷移する。

        restocked は在庫の戻しが完了した印で、状態と同じコミットで書き込む。
        二重キャンセルによる二重の在庫戻しを防ぐ。
        """
        if not self.can_cancel:
            raise OrderNotCancellableError(self.order.id, self.order.status.value)
        self.order.status = OrderStatus.CANCELLED
        self.order.restocked = True
        self.order.updated_at = utcnow()

    def advance(self, status: OrderStatus) -> None:
        """管理者による状態変更(キャンセル以外)"""
        if self.is_terminal:
            raise InvalidOrderStatusError(
                f"Order in status {self.order.status.value} cannot change status"
            )
        if status == OrderStatus.CANCELLED:
            raise InvalidOrderStatusError("Cancellation must restock the order")
        self.order.status = status
        self.order.updated_at = utcnow()
