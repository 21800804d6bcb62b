"""
Storefront — インメモリドキュメントストア

テストとローカル実行用。SqlDocumentStore と同じ楽観的トランザクションの
意味論を持つ。コミットの検証と適用の間に await を挟まないため、
同一イベントループ上では不可分に実行される。
"""

import asyncio
import copy

from .store import Collection, DocKey, DocumentStore, TransactionConflict, Write, document_not_found


class InMemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        # (collection, id) -> (data, version)
        self._docs: dict[DocKey, tuple[dict, int]] = {}

    async def _read(self, collection: Collection, doc_id: str) -> tuple[dict | None, int | None]:
        # 読み取りごとにイベントループへ制御を返し、同時実行を再現する
        await asyncio.sleep(0)
        entry = self._docs.get((collection, doc_id))
        if entry is None:
            return None, None
        data, version = entry
        return copy.deepcopy(data), version

    async def _query(self, collection: Collection) -> list[tuple[str, dict]]:
        await asyncio.sleep(0)
        return [
            (doc_id, copy.deepcopy(data))
            for (c, doc_id), (data, _) in self._docs.items()
            if c == collection
        ]

    async def _commit(self, reads: dict[DocKey, int | None], writes: list[Write]) -> None:
        await asyncio.sleep(0)

        # ── 検証 ──
        for key, expected in reads.items():
            current = self._docs.get(key)
            if (current[1] if current else None) != expected:
                raise TransactionConflict(f"{key[0].value}/{key[1]} changed")

        staged: dict[DocKey, tuple[dict, int] | None] = {}
        for write in writes:
            key = (write.collection, write.doc_id)
            current = self._docs.get(key)
            version = current[1] if current else 0
            if write.op == "create":
                if current is not None:
                    raise TransactionConflict(f"{key[0].value}/{key[1]} already exists")
                staged[key] = (copy.deepcopy(write.data), 1)
            elif write.op == "set":
                staged[key] = (copy.deepcopy(write.data), version + 1)
            elif write.op == "update":
                if current is None:
                    raise document_not_found(write)
                staged[key] = ({**copy.deepcopy(current[0]), **copy.deepcopy(write.data)}, version + 1)
            elif write.op == "delete":
                staged[key] = None

        # ── 適用 ──
        for key, entry in staged.items():
            if entry is None:
                self._docs.pop(key, None)
            else:
                self._docs[key] = entry

