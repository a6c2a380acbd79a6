from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import DuplicateKeyError

from src.compliance.db.mongo import MongoManager
from src.compliance.errors import DuplicateRecordError

logger = logging.getLogger(__name__)


class EntityKind(str, Enum):
    """Record kinds known to the store; values are the backing collection names."""

    business = "businesses"
    user = "users"
    shift = "shifts"
    agent_configuration = "agent_configurations"
    certification = "staff_certifications"
    rule = "compliance_rules"
    alert = "compliance_alerts"


SortSpec = Sequence[Tuple[str, int]]


class DocumentStore(Protocol):
    """
    Narrow document-store contract used by the compliance engine.

    Records are plain dicts carrying an ``_id``. ``update_by_id`` is atomic and returns the
    post-update record, or None when no record matched (unknown id or unmet ``expected`` fields).
    """

    async def find(
        self, kind: EntityKind, filter: Dict[str, Any], *, sort: Optional[SortSpec] = None, limit: Optional[int] = None
    ) -> List[dict]: ...

    async def find_one(self, kind: EntityKind, filter: Dict[str, Any]) -> Optional[dict]: ...

    async def get_by_id(self, kind: EntityKind, record_id: Any) -> Optional[dict]: ...

    async def update_by_id(
        self, kind: EntityKind, record_id: Any, patch: Dict[str, Any], *, expected: Optional[Dict[str, Any]] = None
    ) -> Optional[dict]: ...

    async def insert(self, kind: EntityKind, record: Dict[str, Any]) -> dict: ...

    async def count(self, kind: EntityKind, filter: Dict[str, Any]) -> int: ...

    async def delete_by_id(self, kind: EntityKind, record_id: Any) -> bool: ...


async def _run_in_thread(func, *args, **kwargs):
    """Run blocking pymongo calls in a worker thread."""
    return await asyncio.to_thread(func, *args, **kwargs)


def _to_object_id(record_id: Any) -> Any:
    if isinstance(record_id, ObjectId):
        return record_id
    if isinstance(record_id, str) and ObjectId.is_valid(record_id):
        return ObjectId(record_id)
    return record_id


class MongoDocumentStore:
    """DocumentStore backed by the app's MongoDB collections."""

    def __init__(self, mongo: MongoManager):
        self._mongo = mongo

    def _collection(self, kind: EntityKind) -> Collection:
        return self._mongo.app_db()[kind.value]

    async def find(
        self, kind: EntityKind, filter: Dict[str, Any], *, sort: Optional[SortSpec] = None, limit: Optional[int] = None
    ) -> List[dict]:
        col = self._collection(kind)

        def _query() -> List[dict]:
            cursor = col.find(filter)
            if sort:
                cursor = cursor.sort(list(sort))
            if limit:
                cursor = cursor.limit(int(limit))
            return list(cursor)

        return await _run_in_thread(_query)

    async def find_one(self, kind: EntityKind, filter: Dict[str, Any]) -> Optional[dict]:
        return await _run_in_thread(self._collection(kind).find_one, filter)

    async def get_by_id(self, kind: EntityKind, record_id: Any) -> Optional[dict]:
        return await _run_in_thread(self._collection(kind).find_one, {"_id": _to_object_id(record_id)})

    async def update_by_id(
        self, kind: EntityKind, record_id: Any, patch: Dict[str, Any], *, expected: Optional[Dict[str, Any]] = None
    ) -> Optional[dict]:
        query: Dict[str, Any] = {"_id": _to_object_id(record_id)}
        if expected:
            query.update(expected)
        try:
            return await _run_in_thread(
                self._collection(kind).find_one_and_update,
                query,
                {"$set": patch},
                return_document=ReturnDocument.AFTER,
            )
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(f"{kind.value} update violates a unique key", meta={"id": str(record_id)}) from exc

    async def insert(self, kind: EntityKind, record: Dict[str, Any]) -> dict:
        doc = dict(record)
        try:
            res = await _run_in_thread(self._collection(kind).insert_one, doc)
        except DuplicateKeyError as exc:
            raise DuplicateRecordError(f"{kind.value} insert violates a unique key") from exc
        doc["_id"] = res.inserted_id
        return doc

    async def count(self, kind: EntityKind, filter: Dict[str, Any]) -> int:
        return int(await _run_in_thread(self._collection(kind).count_documents, filter))

    async def delete_by_id(self, kind: EntityKind, record_id: Any) -> bool:
        res = await _run_in_thread(self._collection(kind).delete_one, {"_id": _to_object_id(record_id)})
        return bool(res.deleted_count)


def doc_id(doc: dict) -> str:
    """String form of a record's ``_id``."""
    return str(doc.get("_id") or "")
