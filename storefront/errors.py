"""
Storefront — エラー定義

HTTP 境界で構造化レスポンスに変換されるドメインエラー。
検証系は 4xx、ストア/トランザクション系は 5xx / 409 に対応する。
"""


class StorefrontError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(StorefrontError):
    status_code = 400
    code = "validation_error"


class EmptyCartError(StorefrontError):
    status_code = 400
    code = "empty_cart"

    def __init__(self, user_id: str) -> None:
        super().__init__("Cart is empty")
        self.user_id = user_id


class InsufficientStockError(StorefrontError):
    status_code = 400
    code = "insufficient_stock"

    def __init__(self, product_id: str, name: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for {name}: requested={requested}, available={available}"
        )
        self.product_id = product_id
        self.name = name
        self.requested = requested
        self.available = available


class ProductUnavailableError(StorefrontError):
    status_code = 400
    code = "product_unavailable"


class OrderNotCancellableError(StorefrontError):
    status_code = 400
    code = "order_not_cancellable"

    def __init__(self, order_id: str, status: str) -> None:
        super().__init__(f"Order cannot be cancelled in status {status}")
        self.order_id = order_id
        self.status = status


class InvalidOrderStatusError(StorefrontError):
    status_code = 400
    code = "invalid_status"


class ForbiddenError(StorefrontError):
    status_code = 403
    code = "forbidden"

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


class NotFoundError(StorefrontError):
    status_code = 404
    code = "not_found"


class ProductNotFoundError(NotFoundError):
    code = "product_not_found"

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class AddressNotFoundError(NotFoundError):
    code = "address_not_found"

    def __init__(self, address_id: str) -> None:
        super().__init__(f"Address {address_id} not found")
        self.address_id = address_id


class StockConflictError(StorefrontError):
    """同時チェックアウトとの競合がリトライ上限まで解消しなかった。"""

    status_code = 409
    code = "stock_conflict"


class StoreUnavailableError(StorefrontError):
    status_code = 503
    code = "store_unavailable"
