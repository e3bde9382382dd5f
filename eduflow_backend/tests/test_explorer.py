"""
Blockchain explorer tests
"""
import json

from eduflow_backend import explorer

SENDER = "0x" + "1" * 40
RECEIVER = "0x" + "2" * 40


def test_overview(client, chain, issued_certificate):
    response = client.get("/api/blockchain/overview")
    assert response.status_code == 200
    data = json.loads(response.data)["data"]
    assert data["blockHeight"] == chain.get_block_number()
    assert data["totalTransactions"] == 1
    assert data["nodesCount"] == 0
    assert float(data["tps"]) >= 0


def test_overview_ledger_failure(client, chain, monkeypatch):
    def broken():
        raise ConnectionError("down")

    monkeypatch.setattr(chain, "get_block_number", broken)
    response = client.get("/api/blockchain/overview")
    assert response.status_code == 500
    assert json.loads(response.data)["message"] == "blockchain operation failed"


def test_block_detail_read_through(client, store, issued_certificate):
    block_number = issued_certificate["blockchainInfo"]["blockNumber"]
    assert store.count("blocks") == 0

    response = client.get(f"/api/blockchain/blocks/{block_number}")
    assert response.status_code == 200
    data = json.loads(response.data)["data"]
    assert data["block"]["blockNumber"] == block_number
    assert data["block"]["transactionCount"] == 1
    assert [t["transactionHash"] for t in data["transactions"]] == [
        issued_certificate["blockchainInfo"]["transactionHash"]
    ]
    assert store.count("blocks") == 1

    # Second read is served from the cache without a duplicate
    client.get(f"/api/blockchain/blocks/{block_number}")
    assert store.count("blocks") == 1


def test_block_detail_not_found(client):
    response = client.get("/api/blockchain/blocks/999")
    assert response.status_code == 404
    assert json.loads(response.data)["success"] is False


def test_latest_blocks_paginated(client, runner, issued_certificate):
    runner.invoke(args=["sync-blocks"])
    data = json.loads(client.get("/api/blockchain/blocks?limit=1").data)
    assert data["count"] == 1
    assert data["pagination"]["total"] == 2
    assert data["data"][0]["blockNumber"] == 1


def test_transaction_detail_cached(client, issued_certificate):
    tx_hash = issued_certificate["blockchainInfo"]["transactionHash"]
    data = json.loads(client.get(f"/api/blockchain/transactions/{tx_hash}").data)["data"]
    assert data["transactionType"] == "certificateIssue"


def test_transaction_detail_read_through(client, store, chain):
    receipt = chain.send_transaction(SENDER, RECEIVER, "0xdeadbeef")
    tx_hash = receipt["transactionHash"]

    response = client.get(f"/api/blockchain/transactions/{tx_hash}")
    assert response.status_code == 200
    data = json.loads(response.data)["data"]
    assert data["transactionType"] == "other"
    assert data["relatedEntity"] is None
    assert data["status"] == "success"
    assert data["from"] == SENDER

    client.get(f"/api/blockchain/transactions/{tx_hash}")
    assert store.count("transactions", {"transactionHash": tx_hash}) == 1


def test_transaction_detail_not_found(client):
    response = client.get("/api/blockchain/transactions/0x" + "f" * 64)
    assert response.status_code == 404


def test_latest_transactions_type_filter(client, school, issued_certificate):
    data = json.loads(client.get("/api/blockchain/transactions?type=certificateIssue").data)
    assert data["count"] == 1
    data = json.loads(client.get("/api/blockchain/transactions?type=certificateRevoke").data)
    assert data["count"] == 0
    assert client.get("/api/blockchain/transactions?type=bogus").status_code == 400


def test_cache_insert_race_returns_existing(store, chain):
    block = chain.get_block(0)
    first = explorer.block_document(block)
    store.insert("blocks", first)
    second = explorer._cache_insert(store, "blocks", explorer.block_document(block), "blockNumber")
    assert second["id"] == first["id"]
    assert store.count("blocks") == 1


def test_search_block_number(client, runner, issued_certificate):
    runner.invoke(args=["sync-blocks"])
    data = json.loads(client.get("/api/blockchain/search?query=1").data)
    assert data["type"] == "block"
    assert data["data"]["blockNumber"] == 1


def test_search_block_hash(client, chain, runner):
    runner.invoke(args=["sync-blocks"])
    block_hash = chain.get_block(0)["hash"]
    data = json.loads(client.get(f"/api/blockchain/search?query={block_hash}").data)
    assert data["type"] == "block"
    assert data["data"]["blockHash"] == block_hash


def test_search_transaction_hash(client, issued_certificate):
    tx_hash = issued_certificate["blockchainInfo"]["transactionHash"]
    data = json.loads(client.get(f"/api/blockchain/search?query={tx_hash}").data)
    assert data["type"] == "transaction"
    assert data["data"]["transactionHash"] == tx_hash


def test_search_address(client, chain):
    receipt = chain.send_transaction(SENDER, RECEIVER, "0x01")
    client.get(f"/api/blockchain/transactions/{receipt['transactionHash']}")

    for address in (SENDER, RECEIVER):
        data = json.loads(client.get(f"/api/blockchain/search?query={address}").data)
        assert data["type"] == "address"
        assert len(data["data"]) == 1


def test_search_no_match(client):
    response = client.get("/api/blockchain/search?query=hello")
    assert response.status_code == 404
    assert json.loads(response.data)["message"] == "No matching data found"


def test_search_requires_query(client):
    assert client.get("/api/blockchain/search").status_code == 400


def test_transaction_stats(client, school, issued_certificate):
    response = client.get("/api/blockchain/stats/transactions?days=7")
    assert response.status_code == 200
    data = json.loads(response.data)["data"]
    assert sum(d["count"] for d in data["dailyStats"]) == 1
    assert data["typeStats"] == [{"type": "certificateIssue", "count": 1}]


def test_nodes_sorted_by_name(client, store):
    explorer.seed_nodes(store, [
        {"nodeId": "b", "name": "Bravo"},
        {"nodeId": "a", "name": "Alpha", "nodeType": "observer"},
    ])
    data = json.loads(client.get("/api/blockchain/nodes").data)
    assert data["count"] == 2
    assert [n["name"] for n in data["data"]] == ["Alpha", "Bravo"]


def test_seed_nodes_upserts(store):
    assert explorer.seed_nodes(store, explorer.DEFAULT_NODES) == (4, 0)
    assert explorer.seed_nodes(store, [{"nodeId": "node-0", "name": "Renamed"}]) == (0, 1)
    assert store.find_one("nodes", {"nodeId": "node-0"})["name"] == "Renamed"
    assert store.count("nodes") == 4


def test_sync_blocks(store, chain, issued_certificate):
    assert explorer.sync_blocks(store, chain, 20) == 2
    assert explorer.sync_blocks(store, chain, 20) == 0


def test_transaction_stats_caps_days(client, issued_certificate):
    response = client.get("/api/blockchain/stats/transactions?days=1000000000")
    assert response.status_code == 200
    data = json.loads(response.data)["data"]
    assert sum(d["count"] for d in data["dailyStats"]) == 1
