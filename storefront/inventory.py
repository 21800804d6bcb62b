"""
Storefront — 在庫の検証とコミット

在庫の検証(Stock Validator)と引き当て(Inventory Committer)は
同じ楽観的トランザクションの中で行う。商品の読み取りでバージョンが
記録され、減算の書き込みはそのバージョンを条件にコミットされる。
別のチェックアウトが先に在庫を変更していればコミットは競合となり、
全商品の減算がまとめて破棄される(部分的な減算は起こらない)。

価格はカート明細のスナップショットを使い、在庫だけを最新値で確認する。
"""

import logging
from collections import Counter

from .errors import InsufficientStockError, ProductNotFoundError
from .models import CartLine, OrderItem, Product
from .repositories import Repositories
from .store import Transaction

logger = logging.getLogger(__name__)


async def read_products(
    repos: Repositories,
    tx: Transaction,
    product_ids: list[str],
) -> dict[str, Product | None]:
    """重複を除いた商品をトランザクション内で読み取る。"""
    products: dict[str, Product | None] = {}
    for product_id in product_ids:
        if product_id not in products:
            products[product_id] = await repos.products.get_in(tx, product_id)
    return products


async def validate_lines(
    repos: Repositories,
    tx: Transaction,
    lines: list[CartLine],
) -> tuple[list[OrderItem], dict[str, Product]]:
    """
    カート明細ごとに商品の存在と在庫を確認し、注文明細を作る。

    同じ商品が複数の明細にある場合は合計数量で判定する。
    """
    products = await read_products(repos, tx, [line.product_id for line in lines])

    items: list[OrderItem] = []
    requested: Counter[str] = Counter()
    for line in lines:
        product = products[line.product_id]
        if product is None:
            raise ProductNotFoundError(line.product_id)

        requested[product.id] += line.quantity
        if product.stock < requested[product.id]:
            raise InsufficientStockError(
                product.id, product.name, requested[product.id], product.stock
            )

        items.append(
            OrderItem(
                product_id=product.id,
                name=product.name,
                price=line.price,
                quantity=line.quantity,
                total=line.price * line.quantity,
            )
        )
    return items, products


def commit_decrements(
    repos: Repositories,
    tx: Transaction,
    products: dict[str, Product],
    items: list[OrderItem],
) -> None:
    """注文明細の数量を在庫から減算する書き込みをトランザクションに積む。"""
    demand: Counter[str] = Counter()
    for item in items:
        demand[item.product_id] += item.quantity

    for product_id, quantity in demand.items():
        product = products[product_id]
        if product.stock < quantity:
            raise InsufficientStockError(product.id, product.name, quantity, product.stock)
        product.stock -= quantity
        repos.products.write_stock(tx, product)


def commit_restock(
    repos: Repositories,
    tx: Transaction,
    products: dict[str, Product | None],
    items: list[OrderItem],
) -> list[str]:
    """
    注文明細の数量を在庫に戻す書き込みをトランザクションに積む。

    チェックアウト後に削除された商品はスキップし、その ID を返す。
    """
    returned: Counter[str] = Counter()
    for item in items:
        returned[item.product_id] += item.quantity

    skipped: list[str] = []
    for product_id, quantity in returned.items():
        product = products.get(product_id)
        if product is None:
            logger.warning("Product %s no longer exists, skipping restock", product_id)
            skipped.append(product_id)
            continue
        product.stock += quantity
        repos.products.write_stock(tx, product)
    return skipped
