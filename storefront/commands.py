"""
Storefront — コマンドハンドラ (CQRS の Write 側)

状態を変更する操作。チェックアウトとキャンセルはドキュメントストアの
楽観的トランザクションで在庫を更新し、コミット後にイベントを発行する。
カートの操作もユーザー単位のドキュメントを同じトランザクションで
読み直してから丸ごと置き換える。
"""

import logging

from .aggregate import OrderAggregate
from .assembler import assemble_order
from .config import Settings
from .errors import (
    AddressNotFoundError,
    EmptyCartError,
    InsufficientStockError,
    InvalidOrderStatusError,
    NotFoundError,
    ProductNotFoundError,
    ProductUnavailableError,
    StockConflictError,
    ValidationError,
)
from .events import EventPublisher, OrderCancelled, OrderPlaced, OrderStatusChanged
from .inventory import commit_decrements, commit_restock, read_products, validate_lines
from .models import Address, Cart, CartLine, Order, OrderStatus, ProductStatus
from .repositories import Repositories
from .store import Transaction, TransactionConflict, new_id

logger = logging.getLogger(__name__)


# ── チェックアウト ───────────────────────────────


async def read_cart_for_checkout(repos: Repositories, tx: Transaction, user_id: str) -> Cart:
    """カートをトランザクション内で読む。存在しない・空の場合はチェックアウトできない。"""
    cart = await repos.carts.get_in(tx, user_id)
    if cart is None or not cart.items:
        raise EmptyCartError(user_id)
    return cart


async def _load_address(repos: Repositories, user_id: str, address_id: str) -> Address:
    address = await repos.addresses.get(address_id)
    if address is None or address.user_id != user_id:
        raise AddressNotFoundError(address_id)
    return address


async def place_order(
    repos: Repositories,
    events: EventPublisher,
    settings: Settings,
    user_id: str,
    shipping_address_id: str,
    billing_address_id: str | None = None,
    payment_method: str | None = None,
) -> Order:
    """
    注文作成コマンド(チェックアウト)

    1. 住所のスナップショットを取る(以後の住所編集は注文に影響しない)
    2. トランザクション内でカートと商品を読み、在庫を検証する
    3. 注文を組み立てる
    4. 在庫の減算・注文の作成・カートを空にする書き込みを1つのコミットで行う
       競合したら 2 からやり直す
    5. OrderPlaced イベントを発行

    カートのバージョンもコミットの条件になるため、同じカートからの
    二重チェックアウトは片方が競合し、読み直した空のカートで
    EmptyCartError になる。チェックアウト中のカート編集も失われない。
    """
    shipping_address = await _load_address(repos, user_id, shipping_address_id)
    billing_address = None
    if billing_address_id:
        billing_address = await _load_address(repos, user_id, billing_address_id)

    async def checkout(tx: Transaction) -> Order:
        cart = await read_cart_for_checkout(repos, tx, user_id)
        items, products = await validate_lines(repos, tx, cart.items)
        order = assemble_order(
            settings,
            user_id,
            items,
            shipping_address,
            billing_address,
            payment_method,
        )
        commit_decrements(repos, tx, products, items)
        repos.orders.create_in(tx, order)
        repos.carts.save_in(tx, Cart(user_id=user_id))
        return order

    try:
        order = await repos.store.run_transaction(checkout, settings.checkout_max_attempts)
    except TransactionConflict as e:
        logger.warning("Checkout for user %s gave up after conflicts", user_id)
        raise StockConflictError("Stock changed during checkout, please retry") from e

    logger.info("Order %s placed by user %s (total=%s)", order.order_number, user_id, order.total)

    await events.publish(
        OrderPlaced(
            order_id=order.id,
            order_number=order.order_number,
            user_id=user_id,
            items=[item.model_dump() for item in order.items],
            total=order.total,
            timestamp=order.created_at,
        )
    )
    return order


# ── キャンセル(在庫を戻す) ─────────────────────


async def cancel_order(
    repos: Repositories,
    events: EventPublisher,
    settings: Settings,
    user_id: str | None,
    order_id: str,
) -> Order:
    """
    注文キャンセルコマンド

    在庫の戻しと Cancelled への遷移は同じトランザクションでコミットする。
    user_id が None の場合は管理者操作として所有者チェックを省く。
    """

    async def cancel(tx: Transaction) -> tuple[Order, list[str]]:
        order = await repos.orders.get_in(tx, order_id)
        if order is None:
            raise NotFoundError("Order not found")

        agg = OrderAggregate(order)
        if user_id is not None:
            agg.ensure_owner(user_id)
        agg.cancel()

        products = await read_products(repos, tx, [item.product_id for item in order.items])
        skipped = commit_restock(repos, tx, products, order.items)
        repos.orders.write_status(tx, order)
        return order, skipped

    try:
        order, skipped = await repos.store.run_transaction(cancel, settings.checkout_max_attempts)
    except TransactionConflict as e:
        raise StockConflictError("Stock changed during cancellation, please retry") from e

    logger.info("Order %s cancelled, stock restored", order.order_number)
    await events.publish(
        OrderCancelled(
            order_id=order.id,
            user_id=order.user_id,
            restocked_items=[
                {"product_id": item.product_id, "quantity": item.quantity}
                for item in order.items
                if item.product_id not in skipped
            ],
            skipped_product_ids=skipped,
            timestamp=order.updated_at,
        )
    )
    return order


async def update_order_status(
    repos: Repositories,
    events: EventPublisher,
    settings: Settings,
    order_id: str,
    status: str,
) -> Order:
    """管理者による状態変更。Cancelled への変更はキャンセル経路に回す。"""
    try:
        new_status = OrderStatus(status)
    except ValueError:
        raise InvalidOrderStatusError(f"Invalid status {status}") from None

    if new_status == OrderStatus.CANCELLED:
        return await cancel_order(repos, events, settings, None, order_id)

    async def advance(tx: Transaction) -> tuple[Order, OrderStatus]:
        order = await repos.orders.get_in(tx, order_id)
        if order is None:
            raise NotFoundError("Order not found")
        previous = order.status
        OrderAggregate(order).advance(new_status)
        repos.orders.write_status(tx, order)
        return order, previous

    try:
        order, previous = await repos.store.run_transaction(advance, settings.checkout_max_attempts)
    except TransactionConflict as e:
        raise StockConflictError("Order changed concurrently, please retry") from e

    logger.info("Order %s status %s -> %s", order.order_number, previous.value, new_status.value)
    await events.publish(
        OrderStatusChanged(
            order_id=order.id,
            previous_status=previous.value,
            status=new_status.value,
            timestamp=order.updated_at,
        )
    )
    return order


async def reorder_items(repos: Repositories, user_id: str, order_id: str) -> Cart:
    """過去の注文の明細をカートに戻す。価格は注文時のもの。"""
    order = await repos.orders.get(order_id)
    if order is None:
        raise NotFoundError("Order not found")
    OrderAggregate(order).ensure_owner(user_id)

    async def merge(tx: Transaction) -> Cart:
        cart = await repos.carts.get_in(tx, user_id) or Cart(user_id=user_id)
        for item in order.items:
            line = _find_line_by_product(cart, item.product_id)
            if line is not None:
                line.quantity += item.quantity
            else:
                cart.items.append(
                    CartLine(
                        id=new_id(),
                        product_id=item.product_id,
                        quantity=item.quantity,
                        price=item.price,
                    )
                )
        _save_cart_in(repos, tx, cart)
        return cart

    return await _run_cart_transaction(repos, merge)


# ── カート ───────────────────────────────────────


def _find_line_by_product(cart: Cart, product_id: str) -> CartLine | None:
    return next((line for line in cart.items if line.product_id == product_id), None)


def _save_cart_in(repos: Repositories, tx: Transaction, cart: Cart) -> None:
    cart.recompute_total()
    repos.carts.save_in(tx, cart)


async def _run_cart_transaction(repos: Repositories, fn) -> Cart:
    """
    カートの読み取りから書き戻しまでを1つのトランザクションで行う。

    チェックアウトが間にコミットした場合は競合となり、空になった
    カートを読み直して適用し直す。
    """
    try:
        return await repos.store.run_transaction(fn)
    except TransactionConflict as e:
        raise StockConflictError("Cart changed concurrently, please retry") from e


async def get_or_create_cart(repos: Repositories, user_id: str) -> Cart:
    cart = await repos.carts.get(user_id)
    if cart is not None:
        return cart

    async def create(tx: Transaction) -> Cart:
        existing = await repos.carts.get_in(tx, user_id)
        if existing is not None:
            return existing
        cart = Cart(user_id=user_id)
        repos.carts.save_in(tx, cart)
        return cart

    return await _run_cart_transaction(repos, create)


async def add_to_cart(
    repos: Repositories,
    user_id: str,
    product_id: str,
    quantity: int = 1,
) -> Cart:
    """
    カートに商品を追加する。

    既存の明細があれば数量を足し、価格を現在の商品価格に更新する。
    """
    if quantity < 1:
        raise ValidationError("Valid quantity is required")

    product = await repos.products.get(product_id)
    if product is None:
        raise ProductNotFoundError(product_id)

    async def add(tx: Transaction) -> Cart:
        cart = await repos.carts.get_in(tx, user_id) or Cart(user_id=user_id)
        line = _find_line_by_product(cart, product_id)
        wanted = quantity + (line.quantity if line else 0)
        if product.status != ProductStatus.ACTIVE or product.stock < wanted:
            raise ProductUnavailableError("Product not available")

        if line is not None:
            line.quantity = wanted
            line.price = product.price
        else:
            cart.items.append(
                CartLine(id=new_id(), product_id=product_id, quantity=quantity, price=product.price)
            )
        _save_cart_in(repos, tx, cart)
        return cart

    return await _run_cart_transaction(repos, add)


async def update_cart_item(repos: Repositories, user_id: str, item_id: str, quantity: int) -> Cart:
    if quantity < 1:
        raise ValidationError("Valid quantity is required")

    async def update(tx: Transaction) -> Cart:
        cart = await repos.carts.get_in(tx, user_id)
        if cart is None:
            raise NotFoundError("Cart not found")
        line = next((line for line in cart.items if line.id == item_id), None)
        if line is None:
            raise NotFoundError("Cart item not found")

        product = await repos.products.get(line.product_id)
        if product is not None and product.stock < quantity:
            raise InsufficientStockError(product.id, product.name, quantity, product.stock)

        line.quantity = quantity
        _save_cart_in(repos, tx, cart)
        return cart

    return await _run_cart_transaction(repos, update)


async def remove_cart_item(repos: Repositories, user_id: str, item_id: str) -> Cart:
    async def remove(tx: Transaction) -> Cart:
        cart = await repos.carts.get_in(tx, user_id)
        if cart is None:
            raise NotFoundError("Cart not found")
        cart.items = [line for line in cart.items if line.id != item_id]
        _save_cart_in(repos, tx, cart)
        return cart

    return await _run_cart_transaction(repos, remove)


async def clear_cart(repos: Repositories, user_id: str) -> Cart:
    cart = Cart(user_id=user_id)
    await repos.carts.save(cart)
    return cart
