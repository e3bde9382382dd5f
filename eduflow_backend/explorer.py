"""Ledger explorer: read-through cache of blocks and transactions plus node registry."""
import re
import datetime

from flask import Blueprint, current_app, jsonify, request
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError

from .blockchain import iso_from_epoch
from .errors import BlockchainError, NotFoundError, ValidationError
from .helpers import get_chain, get_store, pagination_args, paginated_response
from .models import NODE_STATUSES, NODE_TYPES, TX_OTHER, TRANSACTION_TYPES
from .storage import new_id, utcnow, utcnow_iso

bp = Blueprint("explorer", __name__, url_prefix="/api/blockchain")

BLOCK_NUMBER_RE = re.compile(r"^\d+$")
HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")
ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")

TPS_WINDOW = 100
MAX_STATS_DAYS = 365

DEFAULT_NODES = [
    {"nodeId": "node-0", "name": "EduFlow Node 0", "ip": "127.0.0.1", "port": 30300,
     "organization": "EduFlow Consortium", "nodeType": "consensus"},
    {"nodeId": "node-1", "name": "EduFlow Node 1", "ip": "127.0.0.1", "port": 30301,
     "organization": "EduFlow Consortium", "nodeType": "consensus"},
    {"nodeId": "node-2", "name": "EduFlow Node 2", "ip": "127.0.0.1", "port": 30302,
     "organization": "EduFlow Consortium", "nodeType": "consensus"},
    {"nodeId": "node-3", "name": "EduFlow Node 3", "ip": "127.0.0.1", "port": 30303,
     "organization": "EduFlow Consortium", "nodeType": "observer"},
]


def _ledger_call(fn, *args):
    try:
        return fn(*args)
    except Exception as e:
        raise BlockchainError(f"{fn.__name__}{args} failed: {e}") from e


def block_document(block):
    return {
        "id": new_id(),
        "blockNumber": block["number"],
        "blockHash": block["hash"],
        "parentHash": block["parentHash"],
        "timestamp": iso_from_epoch(block["timestamp"]),
        "transactionCount": len(block.get("transactions") or []),
        "size": block.get("size"),
        "gasUsed": block.get("gasUsed"),
        "miner": block.get("miner"),
        "extraData": block.get("extraData"),
        "createdAt": utcnow_iso(),
    }


def transaction_document(tx, receipt, block):
    return {
        "id": new_id(),
        "transactionHash": tx["hash"],
        "blockNumber": tx["blockNumber"],
        "blockHash": tx["blockHash"],
        "timestamp": iso_from_epoch(block["timestamp"]) if block else utcnow_iso(),
        "from": tx["from"],
        "to": tx.get("to"),
        "value": tx.get("value"),
        "gas": tx.get("gas"),
        "gasPrice": tx.get("gasPrice"),
        "input": tx.get("input"),
        "status": "success" if receipt and receipt.get("status") else "failed",
        "transactionType": TX_OTHER,
        "relatedEntity": None,
        "createdAt": utcnow_iso(),
    }


def _cache_insert(store, collection, doc, key):
    """Insert a cache copy; when a concurrent fill won the race, return its copy."""
    try:
        return store.insert(collection, doc)
    except DuplicateKeyError:
        return store.find_one(collection, {key: doc[key]})


def get_block_detail(store, chain, block_number):
    block = store.find_one("blocks", {"blockNumber": block_number})
    if not block:
        data = _ledger_call(chain.get_block, block_number)
        if not data:
            raise NotFoundError("Block not found")
        block = _cache_insert(store, "blocks", block_document(data), "blockNumber")
    transactions = store.find("transactions", {"blockNumber": block_number}, sort=[("timestamp", DESCENDING)])
    return block, transactions


def get_transaction_detail(store, chain, tx_hash):
    transaction = store.find_one("transactions", {"transactionHash": tx_hash})
    if transaction:
        return transaction
    data = _ledger_call(chain.get_transaction, tx_hash)
    if not data:
        raise NotFoundError("Transaction not found")
    receipt = _ledger_call(chain.get_transaction_receipt, tx_hash)
    block = _ledger_call(chain.get_block, data["blockNumber"])
    return _cache_insert(store, "transactions", transaction_document(data, receipt, block), "transactionHash")


def _parse_iso(value):
    return datetime.datetime.fromisoformat(value)


def overview(store, chain):
    block_height = _ledger_call(chain.get_block_number)
    recent = store.find("blocks", sort=[("blockNumber", DESCENDING)], limit=TPS_WINDOW)
    tps = 0.0
    if len(recent) > 1:
        total_tx = sum(b.get("transactionCount") or 0 for b in recent)
        span = (_parse_iso(recent[0]["timestamp"]) - _parse_iso(recent[-1]["timestamp"])).total_seconds()
        if span > 0:
            tps = total_tx / span
    return {
        "blockHeight": block_height,
        "totalTransactions": store.count("transactions"),
        "nodesCount": store.count("nodes"),
        "tps": f"{tps:.2f}",
    }


def transaction_stats(store, days):
    start = (utcnow() - datetime.timedelta(days=days)).isoformat()
    daily, by_type = {}, {}
    for tx in store.find("transactions"):
        by_type[tx.get("transactionType")] = by_type.get(tx.get("transactionType"), 0) + 1
        timestamp = tx.get("timestamp") or ""
        if timestamp >= start:
            day = timestamp[:10]
            daily[day] = daily.get(day, 0) + 1
    return {
        "dailyStats": [{"date": day, "count": daily[day]} for day in sorted(daily)],
        "typeStats": [{"type": t, "count": c} for t, c in by_type.items()],
    }


def search(store, query):
    """Returns ``(type, result)``: block number, block or tx hash, then address."""
    if BLOCK_NUMBER_RE.match(query):
        block = store.find_one("blocks", {"blockNumber": int(query)})
        if block:
            return "block", block
    if HASH_RE.match(query):
        block = store.find_one("blocks", {"blockHash": query})
        if block:
            return "block", block
        transaction = store.find_one("transactions", {"transactionHash": query})
        if transaction:
            return "transaction", transaction
    if ADDRESS_RE.match(query):
        sent = store.find("transactions", {"from": query})
        received = store.find("transactions", {"to": query})
        seen = {}
        for tx in sent + received:
            seen.setdefault(tx["transactionHash"], tx)
        transactions = sorted(seen.values(), key=lambda t: t.get("timestamp") or "", reverse=True)[:10]
        if transactions:
            return "address", transactions
    raise NotFoundError("No matching data found")


def seed_nodes(store, nodes):
    """Insert or refresh node metadata keyed by ``nodeId``. Returns ``(created, updated)``."""
    created = updated = 0
    for node in nodes:
        if not node.get("nodeId") or not node.get("name"):
            raise ValidationError("Each node needs a nodeId and a name")
        if node.get("nodeType", "consensus") not in NODE_TYPES:
            raise ValidationError(f"nodeType must be one of: {', '.join(NODE_TYPES)}")
        if node.get("status", "active") not in NODE_STATUSES:
            raise ValidationError(f"status must be one of: {', '.join(NODE_STATUSES)}")
        now = utcnow_iso()
        fields = {
            "name": node["name"],
            "ip": node.get("ip", "127.0.0.1"),
            "port": int(node.get("port", 30300)),
            "organization": node.get("organization", ""),
            "nodeType": node.get("nodeType", "consensus"),
            "status": node.get("status", "active"),
            "blockNumber": node.get("blockNumber", 0),
            "pbftView": node.get("pbftView"),
            "cpuUsage": node.get("cpuUsage"),
            "memoryUsage": node.get("memoryUsage"),
            "diskUsage": node.get("diskUsage"),
            "connectionCount": node.get("connectionCount"),
            "lastUpdateTime": now,
            "updatedAt": now,
        }
        if store.update("nodes", {"nodeId": node["nodeId"]}, fields):
            updated += 1
        else:
            store.insert("nodes", {"id": new_id(), "nodeId": node["nodeId"], "createdAt": now, **fields})
            created += 1
    return created, updated


def sync_blocks(store, chain, count):
    """Pull the latest ``count`` blocks into the cache. Returns how many were new."""
    height = _ledger_call(chain.get_block_number)
    fetched = 0
    for number in range(height, max(height - count, -1), -1):
        if store.find_one("blocks", {"blockNumber": number}):
            continue
        get_block_detail(store, chain, number)
        fetched += 1
    return fetched


@bp.route("/overview", methods=["GET"])
def get_overview():
    return jsonify({"success": True, "data": overview(get_store(), get_chain())})


@bp.route("/blocks", methods=["GET"])
def latest_blocks():
    page, limit, skip = pagination_args()
    store = get_store()
    blocks = store.find("blocks", sort=[("blockNumber", DESCENDING)], skip=skip, limit=limit)
    return paginated_response(blocks, store.count("blocks"), page, limit)


@bp.route("/blocks/<int:block_number>", methods=["GET"])
def block_detail(block_number):
    block, transactions = get_block_detail(get_store(), get_chain(), block_number)
    return jsonify({"success": True, "data": {"block": block, "transactions": transactions}})


@bp.route("/transactions", methods=["GET"])
def latest_transactions():
    page, limit, skip = pagination_args()
    query = {}
    tx_type = request.args.get("type")
    if tx_type:
        if tx_type not in TRANSACTION_TYPES:
            raise ValidationError(f"type must be one of: {', '.join(TRANSACTION_TYPES)}")
        query["transactionType"] = tx_type
    store = get_store()
    transactions = store.find("transactions", query, sort=[("timestamp", DESCENDING)], skip=skip, limit=limit)
    return paginated_response(transactions, store.count("transactions", query), page, limit)


@bp.route("/transactions/<tx_hash>", methods=["GET"])
def transaction_detail(tx_hash):
    return jsonify({"success": True, "data": get_transaction_detail(get_store(), get_chain(), tx_hash)})


@bp.route("/nodes", methods=["GET"])
def nodes():
    data = get_store().find("nodes", sort=[("name", ASCENDING)])
    return jsonify({"success": True, "count": len(data), "data": data})


@bp.route("/stats/transactions", methods=["GET"])
def stats():
    try:
        days = int(request.args.get("days", 7))
    except ValueError:
        days = 7
    if days <= 0:
        days = 7
    days = min(days, MAX_STATS_DAYS)
    return jsonify({"success": True, "data": transaction_stats(get_store(), days)})


@bp.route("/search", methods=["GET"])
def search_ledger():
    query = (request.args.get("query") or "").strip()
    if not query:
        raise ValidationError("Please provide a search query")
    result_type, result = search(get_store(), query)
    current_app.logger.debug("Search %r matched %s", query, result_type)
    return jsonify({"success": True, "type": result_type, "data": result})
