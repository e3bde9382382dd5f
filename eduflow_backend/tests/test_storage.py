"""
JSON storage backend tests
"""
import logging
import os

import pytest
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from eduflow_backend.storage import JsonStore, open_store


@pytest.fixture
def json_store(tmp_path):
    store = JsonStore(str(tmp_path))
    store.ensure_indexes()
    return store


def test_ensure_indexes_creates_files(tmp_path, json_store):
    assert os.path.exists(tmp_path / "certificates.json")
    assert os.path.exists(tmp_path / "verification_records.json")


def test_insert_and_find(json_store):
    json_store.insert("users", {"id": "1", "username": "a", "email": "a@x.com"})
    assert json_store.find_one("users", {"username": "a"})["id"] == "1"
    assert json_store.find_one("users", {"username": "b"}) is None


def test_unique_fields(json_store):
    json_store.insert("users", {"id": "1", "username": "a", "email": "a@x.com"})
    with pytest.raises(DuplicateKeyError) as exc:
        json_store.insert("users", {"id": "2", "username": "b", "email": "a@x.com"})
    assert exc.value.details["keyValue"] == {"email": "a@x.com"}
    assert json_store.count("users") == 1


def test_unique_ignores_missing_values(json_store):
    json_store.insert("transactions", {"id": "1", "transactionHash": None})
    json_store.insert("transactions", {"id": "2", "transactionHash": None})
    assert json_store.count("transactions") == 2


def test_find_sort_skip_limit(json_store):
    for number in (3, 1, 2):
        json_store.insert("blocks", {"blockNumber": number, "miner": "m"})
    docs = json_store.find("blocks", sort=[("blockNumber", DESCENDING)])
    assert [d["blockNumber"] for d in docs] == [3, 2, 1]
    docs = json_store.find("blocks", sort=[("blockNumber", ASCENDING)], skip=1, limit=1)
    assert [d["blockNumber"] for d in docs] == [2]


def test_update_conditional(json_store):
    json_store.insert("certificates", {"id": "c1", "certificateNumber": "C1", "status": "pending"})
    assert json_store.update("certificates", {"id": "c1", "status": "pending"}, {"status": "issued"})
    # A second transition from the same precondition no longer matches
    assert not json_store.update("certificates", {"id": "c1", "status": "pending"}, {"status": "revoked"})
    assert json_store.find_one("certificates", {"id": "c1"})["status"] == "issued"


def test_returned_documents_are_copies(json_store):
    json_store.insert("nodes", {"nodeId": "n1", "name": "Node"})
    doc = json_store.find_one("nodes", {"nodeId": "n1"})
    doc["name"] = "Changed"
    assert json_store.find_one("nodes", {"nodeId": "n1"})["name"] == "Node"


def test_data_survives_reopen(tmp_path, json_store):
    json_store.insert("nodes", {"nodeId": "n1", "name": "Node"})
    assert JsonStore(str(tmp_path)).count("nodes") == 1


def test_open_store_without_uri(tmp_path):
    store = open_store("", str(tmp_path), logging.getLogger("test"))
    assert isinstance(store, JsonStore)
