"""
Storefront — ドキュメントストア

コレクション + ID で識別される JSON ドキュメントを保存する。
各ドキュメントはバージョン番号を持ち、楽観的トランザクションの
競合検知に使う:

  1. トランザクション内の読み取りはドキュメントのバージョンを記録する
  2. 書き込みはコミットまでバッファされる
  3. コミット時に記録したバージョンを条件にまとめて書き込む
     (UPDATE ... WHERE version = :expected)
  4. 1件でも条件が外れたら全体をロールバックし TransactionConflict を送出

run_transaction() は競合時に関数ごと再実行する(上限あり)。
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar
from uuid import uuid4

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .errors import NotFoundError, StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Collection(str, Enum):
    PRODUCTS = "products"
    CARTS = "carts"
    ORDERS = "orders"
    ADDRESSES = "addresses"
    USERS = "users"
    SESSIONS = "sessions"


class TransactionConflict(Exception):
    """コミット時に読み取り後の変更を検知した。"""


@dataclass
class Write:
    op: str  # create | set | update | delete
    collection: Collection
    doc_id: str
    data: dict | None = None


DocKey = tuple[Collection, str]


def new_id() -> str:
    return uuid4().hex


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _strip_id(data: dict) -> dict:
    return {k: v for k, v in data.items() if k != "id"}


def _with_id(doc_id: str, data: dict) -> dict:
    return {"id": doc_id, **data}


class Transaction:
    """
    楽観的トランザクション

    読み取りはすべて書き込みより前に行う。書き込みはコミット時に
    読み取り時のバージョンを条件として適用される。
    """

    def __init__(self, store: "DocumentStore") -> None:
        self._store = store
        self.reads: dict[DocKey, int | None] = {}
        self.writes: list[Write] = []

    async def get(self, collection: Collection, doc_id: str) -> dict | None:
        if self.writes:
            raise RuntimeError("Transaction reads must be executed before writes")
        doc, version = await self._store._read(collection, doc_id)
        self.reads[(collection, doc_id)] = version
        return _with_id(doc_id, doc) if doc is not None else None

    def _buffer(self, write: Write) -> None:
        key = (write.collection, write.doc_id)
        if any((w.collection, w.doc_id) == key for w in self.writes):
            raise ValueError(f"Document {write.collection.value}/{write.doc_id} written twice")
        self.writes.append(write)

    def create(self, collection: Collection, doc_id: str, data: dict) -> None:
        self._buffer(Write("create", collection, doc_id, _strip_id(data)))

    def set(self, collection: Collection, doc_id: str, data: dict) -> None:
        self._buffer(Write("set", collection, doc_id, _strip_id(data)))

    def update(self, collection: Collection, doc_id: str, fields: dict) -> None:
        self._buffer(Write("update", collection, doc_id, _strip_id(fields)))

    def delete(self, collection: Collection, doc_id: str) -> None:
        self._buffer(Write("delete", collection, doc_id))

    async def commit(self) -> None:
        await self._store._commit(self.reads, self.writes)


class DocumentStore:
    """
    ストアの共通インターフェース

    バックエンドは _read / _query / _commit の3つだけを実装する。
    単発の書き込みも条件なしのコミットとして表現する。
    """

    async def _read(self, collection: Collection, doc_id: str) -> tuple[dict | None, int | None]:
        raise NotImplementedError

    async def _query(self, collection: Collection) -> list[tuple[str, dict]]:
        raise NotImplementedError

    async def _commit(self, reads: dict[DocKey, int | None], writes: list[Write]) -> None:
        raise NotImplementedError

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # ── 単発操作 ────────────────────────────────────

    async def get(self, collection: Collection, doc_id: str) -> dict | None:
        doc, _ = await self._read(collection, doc_id)
        return _with_id(doc_id, doc) if doc is not None else None

    async def query(self, collection: Collection, **equals: Any) -> list[dict]:
        """トップレベルフィールドの等値条件で検索する(作成順)。"""
        return [
            _with_id(doc_id, data)
            for doc_id, data in await self._query(collection)
            if all(data.get(k) == v for k, v in equals.items())
        ]

    async def add(self, collection: Collection, data: dict) -> str:
        doc_id = new_id()
        await self._commit({}, [Write("create", collection, doc_id, _strip_id(data))])
        return doc_id

    async def set(self, collection: Collection, doc_id: str, data: dict) -> None:
        await self._commit({}, [Write("set", collection, doc_id, _strip_id(data))])

    async def update(self, collection: Collection, doc_id: str, fields: dict) -> None:
        await self._commit({}, [Write("update", collection, doc_id, _strip_id(fields))])

    async def delete(self, collection: Collection, doc_id: str) -> None:
        await self._commit({}, [Write("delete", collection, doc_id)])

    async def batch(self, writes: list[Write]) -> None:
        """条件なしの一括書き込み。"""
        await self._commit({}, writes)

    # ── トランザクション ────────────────────────────

    def transaction(self) -> Transaction:
        return Transaction(self)

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: int = 3,
    ) -> T:
        """
        fn をトランザクション内で実行してコミットする。

        コミットが競合した場合は fn を最初から再実行する。
        fn が送出したドメインエラーはコミットせずにそのまま伝播する。
        """
        for attempt in range(1, max_attempts + 1):
            tx = self.transaction()
            result = await fn(tx)
            try:
                await tx.commit()
            except TransactionConflict:
                logger.info("Transaction conflict (attempt %s/%s)", attempt, max_attempts)
                if attempt == max_attempts:
                    raise
                continue
            return result
        raise TransactionConflict("no attempts made")


def document_not_found(write: Write) -> NotFoundError:
    return NotFoundError(f"Document {write.collection.value}/{write.doc_id} not found")


class SqlDocumentStore(DocumentStore):
    """
    SQLAlchemy (asyncio) 上のドキュメントストア

    本番は PostgreSQL + asyncpg。ドキュメントは JSON テキストとして
    1テーブルに保存し、version 列で楽観的ロックを行う。
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def initialize(self) -> None:
        try:
            async with self.engine.begin() as conn:
                await conn.execute(
                    text("""
                        CREATE TABLE IF NOT EXISTS documents (
                            collection VARCHAR(64) NOT NULL,
                            id VARCHAR(64) NOT NULL,
                            data TEXT NOT NULL,
                            version INTEGER NOT NULL,
                            created_at VARCHAR(40) NOT NULL,
                            updated_at VARCHAR(40) NOT NULL,
                            PRIMARY KEY (collection, id)
                        )
                    """)
                )
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to initialize store: {e}") from e

    async def close(self) -> None:
        await self.engine.dispose()

    async def _read(self, collection: Collection, doc_id: str) -> tuple[dict | None, int | None]:
        try:
            async with self.engine.connect() as conn:
                row = await self._select(conn, collection, doc_id)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to read {collection.value}/{doc_id}: {e}") from e
        if not row:
            return None, None
        return self._decode(row.data), row.version

    async def _query(self, collection: Collection) -> list[tuple[str, dict]]:
        try:
            async with self.engine.connect() as conn:
                result = await conn.execute(
                    text("""
                        SELECT id, data FROM documents
                        WHERE collection = :c
                        ORDER BY created_at ASC, id ASC
                    """),
                    {"c": collection.value},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to query {collection.value}: {e}") from e
        return [(row.id, self._decode(row.data)) for row in rows]

    async def _commit(self, reads: dict[DocKey, int | None], writes: list[Write]) -> None:
        written = {(w.collection, w.doc_id) for w in writes}
        try:
            async with self.engine.begin() as conn:
                for write in writes:
                    expected = reads.get((write.collection, write.doc_id), ...)
                    await self._apply(conn, write, expected)

                # 書き込まなかった読み取りも変更されていないことを確認
                for (collection, doc_id), expected in reads.items():
                    if (collection, doc_id) in written:
                        continue
                    row = await self._select(conn, collection, doc_id)
                    current = row.version if row else None
                    if current != expected:
                        raise TransactionConflict(f"{collection.value}/{doc_id} changed")
        except IntegrityError as e:
            raise TransactionConflict(str(e)) from e
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Failed to commit: {e}") from e

    async def _apply(self, conn: AsyncConnection, write: Write, expected: Any) -> None:
        """expected が ... の場合はトランザクション内で未読のドキュメント。"""
        key = {"c": write.collection.value, "id": write.doc_id}
        now = _now()

        if write.op == "create" or (write.op == "set" and expected is None):
            await conn.execute(
                text("""
                    INSERT INTO documents (collection, id, data, version, created_at, updated_at)
                    VALUES (:c, :id, :data, 1, :now, :now)
                """),
                {**key, "data": self._encode(write.data), "now": now},
            )
            return

        if write.op == "set" and expected is ...:
            await conn.execute(
                text("""
                    INSERT INTO documents (collection, id, data, version, created_at, updated_at)
                    VALUES (:c, :id, :data, 1, :now, :now)
                    ON CONFLICT (collection, id) DO UPDATE SET
                        data = excluded.data,
                        version = documents.version + 1,
                        updated_at = excluded.updated_at
                """),
                {**key, "data": self._encode(write.data), "now": now},
            )
            return

        if write.op == "delete":
            if expected is ...:
                await conn.execute(
                    text("DELETE FROM documents WHERE collection = :c AND id = :id"), key
                )
                return
            if expected is None:
                if await self._select(conn, write.collection, write.doc_id):
                    raise TransactionConflict(f"{write.collection.value}/{write.doc_id} created")
                return
            result = await conn.execute(
                text("DELETE FROM documents WHERE collection = :c AND id = :id AND version = :v"),
                {**key, "v": expected},
            )
            if result.rowcount != 1:
                raise TransactionConflict(f"{write.collection.value}/{write.doc_id} changed")
            return

        data = write.data
        if write.op == "update":
            row = await self._select(conn, write.collection, write.doc_id)
            if not row:
                if expected is ... or expected is None:
                    raise document_not_found(write)
                raise TransactionConflict(f"{write.collection.value}/{write.doc_id} deleted")
            if expected is ...:
                expected = row.version
            data = {**self._decode(row.data), **write.data}

        result = await conn.execute(
            text("""
                UPDATE documents
                SET data = :data, version = version + 1, updated_at = :now
                WHERE collection = :c AND id = :id AND version = :v
            """),
            {**key, "data": self._encode(data), "now": now, "v": expected},
        )
        if result.rowcount != 1:
            raise TransactionConflict(f"{write.collection.value}/{write.doc_id} changed")

    @staticmethod
    async def _select(conn: AsyncConnection, collection: Collection, doc_id: str):
        result = await conn.execute(
            text("SELECT data, version FROM documents WHERE collection = :c AND id = :id"),
            {"c": collection.value, "id": doc_id},
        )
        return result.fetchone()

    @staticmethod
    def _encode(data: dict | None) -> str:
        return json.dumps(data or {}, default=str)

    @staticmethod
    def _decode(data: Any) -> dict:
        return json.loads(data) if isinstance(data, str) else data
