"""Tests for the document store backends.

Each test runs against the in-memory store and the SQL store (SQLite via
aiosqlite). The SQL engine is created, used and disposed within a single
event loop.
"""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import create_async_engine

from storefront.errors import NotFoundError, ValidationError
from storefront.memory_store import InMemoryDocumentStore
from storefront.store import Collection, SqlDocumentStore, TransactionConflict, Write

P = Collection.PRODUCTS


@pytest.fixture(params=["memory", "sql"])
def run_store(request, tmp_path):
    """run_store(fn) executes `await fn(store)` on a fresh store."""

    def factory():
        if request.param == "memory":
            return InMemoryDocumentStore()
        url = f"sqlite+aiosqlite:///{tmp_path / 'store.db'}"
        return SqlDocumentStore(create_async_engine(url))

    def run(fn):
        async def main():
            store = factory()
            await store.initialize()
            try:
                return await fn(store)
            finally:
                await store.close()

        return asyncio.run(main())

    return run


class TestSingleOperations:
    def test_set_get_update_delete(self, run_store):
        async def fn(store):
            await store.set(P, "p1", {"name": "Widget", "stock": 3})
            created = await store.get(P, "p1")
            await store.update(P, "p1", {"stock": 5})
            updated = await store.get(P, "p1")
            await store.delete(P, "p1")
            return created, updated, await store.get(P, "p1")

        created, updated, deleted = run_store(fn)
        assert created == {"id": "p1", "name": "Widget", "stock": 3}
        assert updated == {"id": "p1", "name": "Widget", "stock": 5}
        assert deleted is None

    def test_set_replaces_whole_document(self, run_store):
        async def fn(store):
            await store.set(P, "p1", {"name": "Widget", "stock": 3})
            await store.set(P, "p1", {"name": "Gadget"})
            return await store.get(P, "p1")

        assert run_store(fn) == {"id": "p1", "name": "Gadget"}

    def test_id_field_is_not_stored(self, run_store):
        async def fn(store):
            await store.set(P, "p1", {"id": "other", "name": "Widget"})
            return await store.get(P, "p1")

        assert run_store(fn) == {"id": "p1", "name": "Widget"}

    def test_get_missing(self, run_store):
        assert run_store(lambda store: store.get(P, "nope")) is None

    def test_update_missing(self, run_store):
        with pytest.raises(NotFoundError):
            run_store(lambda store: store.update(P, "nope", {"stock": 1}))

    def test_add_and_query(self, run_store):
        async def fn(store):
            first = await store.add(Collection.ORDERS, {"user_id": "u1", "total": 1})
            await store.add(Collection.ORDERS, {"user_id": "u2", "total": 2})
            await store.add(Collection.ORDERS, {"user_id": "u1", "total": 3})
            return first, await store.query(Collection.ORDERS, user_id="u1"), await store.query(Collection.ORDERS)

        first, mine, everything = run_store(fn)
        assert sorted(doc["total"] for doc in mine) == [1, 3]
        assert first in {doc["id"] for doc in mine}
        assert len(everything) == 3

    def test_query_is_scoped_to_collection(self, run_store):
        async def fn(store):
            await store.set(P, "x", {"user_id": "u1"})
            return await store.query(Collection.CARTS, user_id="u1")

        assert run_store(fn) == []

    def test_batch(self, run_store):
        async def fn(store):
            await store.set(P, "p1", {"stock": 1})
            await store.batch([
                Write("set", P, "p2", {"stock": 2}),
                Write("update", P, "p1", {"stock": 9}),
                Write("delete", P, "missing"),
            ])
            return await store.get(P, "p1"), await store.get(P, "p2")

        p1, p2 = run_store(fn)
        assert p1["stock"] == 9
        assert p2["stock"] == 2


class TestTransactions:
    def test_commit_applies_all_writes(self, run_store):
        async def fn(store):
            await store.set(P, "p1", {"stock": 5})
            tx = store.transaction()
            doc = await tx.get(P, "p1")
            tx.update(P, "p1", {"stock": doc["stock"] - 2})
            tx.create(Collection.ORDERS, "o1", {"total": 10})
            await tx.commit()
            return await store.get(P, "p1"), await store.get(Collection.ORDERS, "o1")

        product, order = run_store(fn)
        assert product["stock"] == 3
        assert order == {"id": "o1", "total": 10}

    def test_concurrent_change_is_a_conflict(self, run_store):
        async def fn(store):
            await store.set(P, "p1", {"stock": 5})
            tx = store.transaction()
            doc = await tx.get(P, "p1")
            await store.update(P, "p1", {"stock": 4})
            tx.update(P, "p1", {"stock": doc["stock"] - 1})
            tx.create(Collection.ORDERS, "o1", {"total": 10})
            with pytest.raises(TransactionConflict):
                await tx.commit()
            return await store.get(P, "p1"), await store.get(Collection.ORDERS, "o1")

        product, order = run_store(fn)
        assert product["stock"] == 4
        assert order is None

    def test_unwritten_read_is_checked(self, run_store):
        async def fn(store):
            await store.set(P, "p1", {"stock": 5})
            await store.set(P, "p2", {"stock": 5})
            tx = store.transaction()
            await tx.get(P, "p1")
            await tx.get(P, "p2")
            await store.update(P, "p2", {"stock": 0})
            tx.update(P, "p1", {"stock": 4})
            with pytest.raises(TransactionConflict):
                await tx.commit()
            return await store.get(P, "p1")

        assert run_store(fn)["stock"] == 5

    def test_document_created_after_read_of_missing(self, run_store):
        async def fn(store):
            tx = store.transaction()
            assert await tx.get(P, "p1") is None
            await store.set(P, "p1", {"stock": 1})
            tx.set(P, "p1", {"stock": 7})
            with pytest.raises(TransactionConflict):
                await tx.commit()
            return await store.get(P, "p1")

        assert run_store(fn)["stock"] == 1

    def test_create_existing_is_a_conflict(self, run_store):
        async def fn(store):
            await store.set(P, "p1", {"stock": 1})
            tx = store.transaction()
            tx.create(P, "p1", {"stock": 2})
            with pytest.raises(TransactionConflict):
                await tx.commit()
            return await store.get(P, "p1")

        assert run_store(fn)["stock"] == 1

    def test_reads_must_precede_writes(self, run_store):
        async def fn(store):
            tx = store.transaction()
            tx.set(P, "p1", {"stock": 1})
            with pytest.raises(RuntimeError):
                await tx.get(P, "p2")

        run_store(fn)

    def test_same_document_written_twice(self, run_store):
        async def fn(store):
            tx = store.transaction()
            tx.set(P, "p1", {"stock": 1})
            with pytest.raises(ValueError):
                tx.update(P, "p1", {"stock": 2})

        run_store(fn)


class TestRunTransaction:
    def test_retries_after_conflict(self, run_store):
        attempts = []

        async def fn(store):
            await store.set(P, "p1", {"stock": 5})

            async def decrement(tx):
                doc = await tx.get(P, "p1")
                attempts.append(doc["stock"])
                if len(attempts) == 1:
                    # 読み取り後に別の書き込みが割り込む
                    await store.update(P, "p1", {"stock": 3})
                tx.update(P, "p1", {"stock": doc["stock"] - 1})
                return doc["stock"] - 1

            result = await store.run_transaction(decrement, max_attempts=3)
            return result, await store.get(P, "p1")

        result, product = run_store(fn)
        assert attempts == [5, 3]
        assert result == 2
        assert product["stock"] == 2

    def test_gives_up_after_max_attempts(self, run_store):
        attempts = []

        async def fn(store):
            await store.set(P, "p1", {"stock": 5})

            async def always_interrupted(tx):
                doc = await tx.get(P, "p1")
                attempts.append(doc["stock"])
                await store.update(P, "p1", {"stock": doc["stock"] + 1})
                tx.update(P, "p1", {"stock": 0})

            with pytest.raises(TransactionConflict):
                await store.run_transaction(always_interrupted, max_attempts=2)
            return await store.get(P, "p1")

        product = run_store(fn)
        assert len(attempts) == 2
        assert product["stock"] == 7

    def test_domain_error_is_not_retried_or_committed(self, run_store):
        attempts = []

        async def fn(store):
            await store.set(P, "p1", {"stock": 5})

            async def rejects(tx):
                attempts.append(1)
                await tx.get(P, "p1")
                tx.update(P, "p1", {"stock": 0})
                raise ValidationError("nope")

            with pytest.raises(ValidationError):
                await store.run_transaction(rejects)
            return await store.get(P, "p1")

        assert run_store(fn)["stock"] == 5
        assert attempts == [1]
