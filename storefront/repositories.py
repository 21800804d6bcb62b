"""
Storefront — リポジトリ

エンティティごとの型付きリポジトリ。コレクション名の文字列で分岐せず、
Collection と pydantic モデルの組をクラスごとに固定する。
ストアの JSON (ISO 文字列の日時を含む) はここでモデルに復元される。
"""

from typing import Generic, TypeVar

from pydantic import BaseModel

from .models import Address, Cart, Order, Product, Session, User, utcnow
from .store import Collection, DocumentStore, Transaction

M = TypeVar("M", bound=BaseModel)


def dump(entity: BaseModel) -> dict:
    """ストア保存用の JSON 互換 dict (id はドキュメントキーなので除く)"""
    return entity.model_dump(mode="json", exclude={"id"})


class Repository(Generic[M]):
    collection: Collection
    model: type[M]

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    def _load(self, doc: dict | None) -> M | None:
        if doc is None:
            return None
        return self.model.model_validate(doc)

    async def get(self, doc_id: str) -> M | None:
        return self._load(await self.store.get(self.collection, doc_id))

    async def get_in(self, tx: Transaction, doc_id: str) -> M | None:
        return self._load(await tx.get(self.collection, doc_id))

    async def find(self, **equals) -> list[M]:
        return [self._load(doc) for doc in await self.store.query(self.collection, **equals)]


class ProductRepository(Repository[Product]):
    collection = Collection.PRODUCTS
    model = Product

    def write_stock(self, tx: Transaction, product: Product) -> None:
        tx.update(
            self.collection,
            product.id,
            {"stock": product.stock, "updated_at": utcnow().isoformat()},
        )


class CartRepository(Repository[Cart]):
    """カートのドキュメント ID はユーザー ID。更新は常に丸ごと置き換える。"""

    collection = Collection.CARTS
    model = Cart

    async def save(self, cart: Cart) -> None:
        await self.store.set(self.collection, cart.user_id, dump(cart))

    def save_in(self, tx: Transaction, cart: Cart) -> None:
        tx.set(self.collection, cart.user_id, dump(cart))


class OrderRepository(Repository[Order]):
    collection = Collection.ORDERS
    model = Order

    def create_in(self, tx: Transaction, order: Order) -> None:
        tx.create(self.collection, order.id, dump(order))

    def write_status(self, tx: Transaction, order: Order) -> None:
        tx.update(
            self.collection,
            order.id,
            {
                "status": order.status.value,
                "restocked": order.restocked,
                "updated_at": order.updated_at.isoformat(),
            },
        )

    async def list_for_user(self, user_id: str) -> list[Order]:
        return self._newest_first(await self.find(user_id=user_id))

    async def list_all(self) -> list[Order]:
        return self._newest_first(await self.find())

    @staticmethod
    def _newest_first(orders: list[Order]) -> list[Order]:
        return sorted(orders, key=lambda o: o.created_at, reverse=True)


class AddressRepository(Repository[Address]):
    collection = Collection.ADDRESSES
    model = Address


class UserRepository(Repository[User]):
    collection = Collection.USERS
    model = User


class SessionRepository(Repository[Session]):
    collection = Collection.SESSIONS
    model = Session

    async def find_by_token(self, token: str) -> Session | None:
        sessions = await self.find(token=token)
        return sessions[0] if sessions else None


class Repositories:
    """リクエストハンドラに渡すリポジトリ一式"""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self.products = ProductRepository(store)
        self.carts = CartRepository(store)
        self.orders = OrderRepository(store)
        self.addresses = AddressRepository(store)
        self.users = UserRepository(store)
        self.sessions = SessionRepository(store)
