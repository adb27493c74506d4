"""
Shared fixtures and MongoDB test doubles for the migration tests.

The mocks implement just the motor surface the migration engine uses:
find / insert_many / bulk_write / count_documents / aggregate / create_index.
"""
import sys
from pathlib import Path

import pytest
from pymongo.errors import BulkWriteError

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from services.migration.config import RetentionRules
from services.migration.data_filter import DataFilter
from services.migration.sources import InMemoryQueryExecutor


_MISSING = object()


def _get(doc, path):
    value = doc
    for part in path.split("."):
        if isinstance(value, dict) and part in value:
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return _MISSING
    return value


def _value(doc, path):
    value = _get(doc, path)
    return None if value is _MISSING else value


def _matches_operator(value, op, arg):
    present = value is not _MISSING
    value = None if value is _MISSING else value
    if op == "$exists":
        return present == arg
    if op == "$in":
        return value in arg
    if op == "$nin":
        return value not in arg
    if op == "$ne":
        return value != arg
    if op == "$gt":
        return value is not None and value > arg
    raise NotImplementedError(op)


def matches(doc, query):
    """Evaluate the subset of the MongoDB query language the code uses."""
    for key, condition in query.items():
        if key == "$or":
            if not any(matches(doc, q) for q in condition):
                return False
        elif key == "$expr":
            op, (left, right) = next(iter(condition.items()))
            assert op == "$gt"
            a, b = _value(doc, left[1:]), _value(doc, right[1:])
            if a is None or b is None or not a > b:
                return False
        elif isinstance(condition, dict) and any(k.startswith("$") for k in condition):
            value = _get(doc, key)
            if not all(_matches_operator(value, op, arg) for op, arg in condition.items()):
                return False
        elif _value(doc, key) != condition:
            return False
    return True


class MockAsyncCursor:
    """Mock async cursor for find() and aggregate()."""

    def __init__(self, docs):
        self._docs = list(docs)
        self._index = 0

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._index >= len(self._docs):
            raise StopAsyncIteration
        doc = self._docs[self._index]
        self._index += 1
        return doc

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]


class MockInsertResult:
    def __init__(self, ids):
        self.inserted_ids = ids


class MockBulkWriteResult:
    def __init__(self, matched_count, modified_count):
        self.matched_count = matched_count
        self.modified_count = modified_count


class MockAsyncCollection:
    """
    Mock MongoDB async collection.

    `unique_key` simulates a unique index: inserting a document whose key is
    already stored produces a duplicate-key (11000) write error.
    """

    def __init__(self, name="collection", unique_key=None):
        self.name = name
        self.unique_key = unique_key
        self.documents = []
        self.indexes = []
        self.insert_calls = 0
        self.bulk_write_calls = 0
        self._next_id = 1

    def seed(self, docs):
        for doc in docs:
            self._store(dict(doc))

    def _store(self, doc):
        doc.setdefault("_id", self._next_id)
        self._next_id += 1
        self.documents.append(doc)

    def find(self, query=None, projection=None):
        docs = [d for d in self.documents if matches(d, query or {})]
        if projection:
            fields = [k for k, v in projection.items() if v and k != "_id"]
            docs = [{f: d[f] for f in fields if f in d} for d in docs]
        return MockAsyncCursor(docs)

    async def insert_many(self, docs, ordered=True):
        self.insert_calls += 1
        inserted = []
        write_errors = []
        for index, doc in enumerate(docs):
            if self.unique_key and any(
                d.get(self.unique_key) == doc.get(self.unique_key) for d in self.documents
            ):
                write_errors.append({
                    "index": index,
                    "code": 11000,
                    "errmsg": f"E11000 duplicate key error {self.unique_key}: {doc.get(self.unique_key)}",
                })
                if ordered:
                    break
                continue
            stored = dict(doc)
            self._store(stored)
            inserted.append(stored["_id"])

        if write_errors:
            raise BulkWriteError({"nInserted": len(inserted), "writeErrors": write_errors})
        return MockInsertResult(inserted)

    async def bulk_write(self, operations, ordered=True):
        self.bulk_write_calls += 1
        matched = 0
        for op in operations:
            for doc in self.documents:
                if matches(doc, op._filter):
                    doc.update(op._doc["$set"])
                    matched += 1
                    break
        return MockBulkWriteResult(matched, matched)

    async def count_documents(self, query):
        return sum(1 for d in self.documents if matches(d, query))

    def aggregate(self, pipeline):
        rows = list(self.documents)
        for stage in pipeline:
            (op, arg), = stage.items()
            if op == "$match":
                rows = [r for r in rows if matches(r, arg)]
            elif op == "$group":
                field_name = arg["_id"][1:]
                counts = {}
                for row in rows:
                    key = _value(row, field_name)
                    counts[key] = counts.get(key, 0) + 1
                rows = [{"_id": k, "count": v} for k, v in counts.items()]
            elif op == "$sort":
                (sort_field, direction), = arg.items()
                rows.sort(key=lambda r: r[sort_field], reverse=direction < 0)
            elif op == "$limit":
                rows = rows[:arg]
            else:
                raise NotImplementedError(op)
        return MockAsyncCursor(rows)

    async def create_index(self, keys, **kwargs):
        self.indexes.append((keys, kwargs))
        return str(keys)


class MockAsyncDatabase:
    """Collections are created on first access."""

    def __init__(self):
        self.collections = {}

    def __getitem__(self, name):
        if name not in self.collections:
            self.collections[name] = MockAsyncCollection(name)
        return self.collections[name]


class MockMotorClient:
    def __init__(self, db=None):
        self.db = db or MockAsyncDatabase()
        self.closed = False
        self.requested = []

    def __getitem__(self, name):
        self.requested.append(name)
        return self.db

    def close(self):
        self.closed = True


@pytest.fixture
def mongo_db():
    return MockAsyncDatabase()


@pytest.fixture
def source():
    return InMemoryQueryExecutor(name="test_source")


@pytest.fixture
def data_filter():
    return DataFilter(RetentionRules())
