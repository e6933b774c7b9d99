import asyncio
from types import SimpleNamespace

import pytest

from src.brainstorm.errors import StoreError
from src.brainstorm.infrastructure import store_mongo
from src.brainstorm.infrastructure.store import get_store, reset_store
from src.brainstorm.infrastructure.store_mongo import MongoBrainstormStore


class _FakeCollection:
    def __init__(self):
        self.docs = []

    async def create_index(self, *args, **kwargs):
        return "ok"

    async def insert_one(self, doc):
        self.docs.append(dict(doc, _id=len(self.docs)))
        return SimpleNamespace(inserted_id=len(self.docs))

    async def find_one(self, query, sort=None):
        for doc in self.docs:
            if all(doc.get(k) == v for k, v in query.items()):
                return dict(doc)
        return None

    async def update_one(self, query, update):
        marker = query["triggered_thresholds"]["$ne"]
        for doc in self.docs:
            if doc["session_id"] == query["session_id"] and marker not in doc["triggered_thresholds"]:
                doc["triggered_thresholds"].append(update["$addToSet"]["triggered_thresholds"])
                return SimpleNamespace(modified_count=1)
        return SimpleNamespace(modified_count=0)

    async def find_one_and_update(self, query, update, return_document=None):
        for doc in self.docs:
            if all(doc.get(k) == v for k, v in query.items()):
                doc.update(update.get("$set", {}))
                return dict(doc)
        return None


class _FakeDB(dict):
    def __missing__(self, name):
        self[name] = _FakeCollection()
        return self[name]


class _FakeClient:
    def __init__(self, url, serverSelectionTimeoutMS=None):
        self.url = url
        self.db = _FakeDB()

    async def server_info(self):
        return {"version": "7.0"}

    def __getitem__(self, name):
        return self.db


class _DownClient(_FakeClient):
    async def server_info(self):
        raise ConnectionError("no route to host")


def test_get_store_selects_mongo(monkeypatch):
    monkeypatch.setenv("BRAINSTORM_STORE_IMPL", "mongo")
    reset_store(None)
    assert isinstance(get_store(), MongoBrainstormStore)


def test_missing_driver_falls_back_to_memory(monkeypatch):
    monkeypatch.setattr(store_mongo, "AsyncIOMotorClient", None)
    store = MongoBrainstormStore()

    async def scenario():
        sess = await store.create_session("T", None, "u1")
        return sess, await store.get_session_by_slug(sess.slug)

    sess, found = asyncio.run(scenario())
    assert found.session_id == sess.session_id
    assert store._fallback is not None


def test_unreachable_server_falls_back_to_memory(monkeypatch):
    monkeypatch.setattr(store_mongo, "AsyncIOMotorClient", _DownClient)
    store = MongoBrainstormStore()

    async def scenario():
        sess = await store.create_session("T", None, "u1")
        return await store.claim_threshold(sess.session_id, "count:15")

    assert asyncio.run(scenario()) is True
    assert store._fallback is not None


def test_sessions_and_thresholds_against_driver(monkeypatch):
    monkeypatch.setattr(store_mongo, "AsyncIOMotorClient", _FakeClient)
    store = MongoBrainstormStore()

    async def scenario():
        sess = await store.create_session("  Mascot ", "  ", "u1")
        found = await store.get_session_by_slug(sess.slug)
        first = await store.claim_threshold(sess.session_id, "count:15")
        second = await store.claim_threshold(sess.session_id, "count:15")
        return sess, found, first, second, await store.get_session(sess.session_id)

    sess, found, first, second, reloaded = asyncio.run(scenario())
    assert store._fallback is None
    assert sess.title == "Mascot" and sess.goal is None
    assert found.session_id == sess.session_id
    assert (first, second) == (True, False)
    assert reloaded.triggered_thresholds == ["count:15"]


def test_driver_errors_become_store_errors(monkeypatch):
    monkeypatch.setattr(store_mongo, "AsyncIOMotorClient", _FakeClient)
    store = MongoBrainstormStore()

    async def broken(*args, **kwargs):
        raise RuntimeError("socket closed")

    async def scenario():
        await store.create_session("T", None, "u1")
        store._col("sessions").find_one = broken
        await store.get_session("anything")

    with pytest.raises(StoreError):
        asyncio.run(scenario())


def test_node_update_skips_nulls_against_driver(monkeypatch):
    monkeypatch.setattr(store_mongo, "AsyncIOMotorClient", _FakeClient)
    store = MongoBrainstormStore()

    async def scenario():
        sess = await store.create_session("T", None, "u1")
        node = await store.create_node(sess.session_id, "Fox", 10, 20)
        await store.update_node(node.node_id, {"highlight": "#FFD700"})
        return await store.update_node(node.node_id, {"label": None, "x": None, "highlight": None, "y": 5})

    updated = asyncio.run(scenario())
    assert (updated.label, updated.x, updated.y) == ("Fox", 10, 5)
    assert updated.highlight is None
