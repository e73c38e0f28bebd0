"""
backend/tests/_fake_mongo.py

Purpose:
    In-memory stand-in for the subset of the motor collection API used by the
    sportsync services (find/sort/skip/limit/to_list, find_one, insert_one,
    update_one with upsert, delete_one). Shared by the service tests.
"""

from __future__ import annotations

import copy
from types import SimpleNamespace

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

_MISSING = object()


def _get_nested(doc: dict, dotted_key: str):
    target = doc
    for part in dotted_key.split("."):
        if not isinstance(target, dict) or part not in target:
            return _MISSING
        target = target[part]
    return target


def _set_nested(doc: dict, dotted_key: str, value) -> None:
    parts = dotted_key.split(".")
    target = doc
    for part in parts[:-1]:
        node = target.get(part)
        if not isinstance(node, dict):
            node = {}
            target[part] = node
        target = node
    target[parts[-1]] = value


def _unset_nested(doc: dict, dotted_key: str) -> None:
    parts = dotted_key.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


def matches(doc: dict, query: dict | None) -> bool:
    for key, expected in (query or {}).items():
        actual = _get_nested(doc, key)
        value = None if actual is _MISSING else actual
        if isinstance(expected, dict) and any(op.startswith("$") for op in expected):
            for op, operand in expected.items():
                if op == "$in" and value not in operand:
                    return False
                if op == "$ne" and value == operand:
                    return False
                if op == "$exists" and bool(operand) != (actual is not _MISSING):
                    return False
                if op in ("$gt", "$gte", "$lt", "$lte"):
                    if value is None:
                        return False
                    if op == "$gt" and not value > operand:
                        return False
                    if op == "$gte" and not value >= operand:
                        return False
                    if op == "$lt" and not value < operand:
                        return False
                    if op == "$lte" and not value <= operand:
                        return False
            continue
        if value != expected:
            return False
    return True


class FakeCursor:
    def __init__(self, docs: list[dict]) -> None:
        self._docs = docs
        self._skip = 0
        self._limit = None

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, order in reversed(keys):
            present = [doc for doc in self._docs if _get_nested(doc, field) not in (_MISSING, None)]
            absent = [doc for doc in self._docs if _get_nested(doc, field) in (_MISSING, None)]
            present.sort(key=lambda doc: _get_nested(doc, field), reverse=int(order) < 0)
            self._docs = present + absent
        return self

    def skip(self, value: int):
        self._skip = int(value)
        return self

    def limit(self, value: int):
        self._limit = int(value)
        return self

    async def to_list(self, length=None):
        items = self._docs[self._skip:]
        if self._limit:
            items = items[: self._limit]
        if length is not None:
            items = items[: int(length)]
        return [copy.deepcopy(doc) for doc in items]


class FakeCollection:
    def __init__(self, docs: list[dict] | None = None) -> None:
        self.docs: list[dict] = [copy.deepcopy(doc) for doc in (docs or [])]
        self.calls: list[dict] = []

    def find(self, query=None, _projection=None):
        return FakeCursor([doc for doc in self.docs if matches(doc, query)])

    async def find_one(self, query=None, projection=None):
        for doc in self.docs:
            if matches(doc, query):
                if projection:
                    return {key: copy.deepcopy(doc[key]) for key in projection if key in doc}
                return copy.deepcopy(doc)
        return None

    async def count_documents(self, query=None):
        return sum(1 for doc in self.docs if matches(doc, query))

    async def insert_one(self, doc: dict):
        self.calls.append({"op": "insert_one", "doc": doc})
        row = copy.deepcopy(doc)
        row.setdefault("_id", ObjectId())
        if any(existing["_id"] == row["_id"] for existing in self.docs):
            raise DuplicateKeyError(f"E11000 duplicate key error _id: {row['_id']}")
        self.docs.append(row)
        return SimpleNamespace(inserted_id=row["_id"])

    async def update_one(self, query, update, upsert=False):
        self.calls.append({"op": "update_one", "query": query, "update": update, "upsert": upsert})
        target = next((doc for doc in self.docs if matches(doc, query)), None)
        upserted_id = None
        if target is None:
            if not upsert:
                return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
            target = {key: value for key, value in query.items() if not isinstance(value, dict)}
            target.setdefault("_id", ObjectId())
            upserted_id = target["_id"]
            for key, value in (update.get("$setOnInsert") or {}).items():
                _set_nested(target, key, copy.deepcopy(value))
            self.docs.append(target)
        for key, value in (update.get("$set") or {}).items():
            _set_nested(target, key, copy.deepcopy(value))
        for key, value in (update.get("$inc") or {}).items():
            current = _get_nested(target, key)
            _set_nested(target, key, (0 if current is _MISSING or current is None else current) + value)
        for key in (update.get("$unset") or {}):
            _unset_nested(target, key)
        return SimpleNamespace(
            matched_count=0 if upserted_id is not None else 1,
            modified_count=0 if upserted_id is not None else 1,
            upserted_id=upserted_id,
        )

    async def delete_one(self, query):
        self.calls.append({"op": "delete_one", "query": query})
        for index, doc in enumerate(self.docs):
            if matches(doc, query):
                del self.docs[index]
                return SimpleNamespace(deleted_count=1)
        return SimpleNamespace(deleted_count=0)

    def writes(self) -> list[dict]:
        return [call for call in self.calls if call["op"] in ("insert_one", "update_one")]


class FakeDB:
    def __init__(self) -> None:
        self._collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self._collections:
            self._collections[name] = FakeCollection()
        return self._collections[name]

    def __getattr__(self, name: str) -> FakeCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    async def command(self, name: str):
        return {"ok": 1.0}
