"""Document storage.

Two backends share one small API: ``MongoStore`` wraps a pymongo database and
``JsonStore`` keeps one JSON file per collection under the data directory. The
JSON store is what runs when no MongoDB URI is configured (local runs, tests).

Queries are plain equality filters. Both backends enforce the unique fields in
``UNIQUE_FIELDS`` and raise ``pymongo.errors.DuplicateKeyError`` on conflict.
"""
import os
import json
import uuid
import datetime
import threading

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

COLLECTIONS = (
    "users",
    "certificates",
    "transactions",
    "verification_records",
    "blocks",
    "nodes",
)

UNIQUE_FIELDS = {
    "users": ("username", "email"),
    "certificates": ("certificateNumber",),
    "transactions": ("transactionHash",),
    "blocks": ("blockNumber",),
    "nodes": ("nodeId",),
}

# Non-unique lookup indexes (MongoDB only)
LOOKUP_INDEXES = {
    "certificates": ("schoolId", "studentId", "status"),
    "transactions": ("blockNumber", "timestamp", "transactionType"),
    "verification_records": ("verifierId", "certificateId"),
    "blocks": ("blockHash",),
}


def new_id():
    return uuid.uuid4().hex


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def utcnow_iso():
    return utcnow().isoformat()


def _duplicate(collection, field, value):
    return DuplicateKeyError(
        f"E11000 duplicate key error collection: {collection} index: {field}_1",
        11000,
        {"keyValue": {field: value}},
    )


def _matches(doc, query):
    return all(doc.get(key) == value for key, value in (query or {}).items())


def _sort_key(value):
    # None sorts before everything, numbers and strings among their own kind
    if value is None:
        return (0, "")
    if isinstance(value, bool):
        return (1, int(value))
    if isinstance(value, (int, float)):
        return (1, value)
    return (2, str(value))


class JsonStore:
    """File-backed store, one ``<collection>.json`` array per collection."""

    def __init__(self, data_dir):
        self.data_dir = data_dir
        self._lock = threading.RLock()
        os.makedirs(data_dir, exist_ok=True)

    def _path(self, collection):
        return os.path.join(self.data_dir, f"{collection}.json")

    def _load(self, collection):
        path = self._path(collection)
        if not os.path.exists(path):
            return []
        with open(path, "r") as f:
            return json.load(f)

    def _save(self, collection, docs):
        with open(self._path(collection), "w") as f:
            json.dump(docs, f, indent=2)

    def ensure_indexes(self):
        with self._lock:
            for collection in COLLECTIONS:
                if not os.path.exists(self._path(collection)):
                    self._save(collection, [])

    def insert(self, collection, doc):
        with self._lock:
            docs = self._load(collection)
            for field in UNIQUE_FIELDS.get(collection, ()):
                value = doc.get(field)
                if value is not None and any(d.get(field) == value for d in docs):
                    raise _duplicate(collection, field, value)
            stored = json.loads(json.dumps(doc))
            docs.append(stored)
            self._save(collection, docs)
            return dict(stored)

    def find_one(self, collection, query):
        with self._lock:
            return next((dict(d) for d in self._load(collection) if _matches(d, query)), None)

    def find(self, collection, query=None, sort=None, skip=0, limit=0):
        with self._lock:
            docs = [d for d in self._load(collection) if _matches(d, query)]
        # Apply sort keys last-to-first so the first key wins
        for field, direction in reversed(sort or []):
            docs.sort(key=lambda d: _sort_key(d.get(field)), reverse=direction == DESCENDING)
        docs = docs[skip:]
        if limit:
            docs = docs[:limit]
        return docs

    def count(self, collection, query=None):
        with self._lock:
            return sum(1 for d in self._load(collection) if _matches(d, query))

    def update(self, collection, query, changes):
        """Apply ``changes`` to the first match. Returns whether a document matched."""
        with self._lock:
            docs = self._load(collection)
            for doc in docs:
                if _matches(doc, query):
                    doc.update(json.loads(json.dumps(changes)))
                    self._save(collection, docs)
                    return True
            return False


class MongoStore:
    def __init__(self, uri=None, client=None):
        self.client = client or MongoClient(uri, serverSelectionTimeoutMS=3000)
        self.db = self.client.get_database()

    def ping(self):
        # trigger server selection
        self.client.server_info()

    def ensure_indexes(self):
        for collection, fields in UNIQUE_FIELDS.items():
            for field in fields:
                self.db[collection].create_index([(field, ASCENDING)], unique=True)
        for collection, fields in LOOKUP_INDEXES.items():
            for field in fields:
                self.db[collection].create_index([(field, ASCENDING)])

    def insert(self, collection, doc):
        self.db[collection].insert_one(dict(doc))
        return dict(doc)

    def find_one(self, collection, query):
        return self.db[collection].find_one(query, {"_id": 0})

    def find(self, collection, query=None, sort=None, skip=0, limit=0):
        cursor = self.db[collection].find(query or {}, {"_id": 0})
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def count(self, collection, query=None):
        return self.db[collection].count_documents(query or {})

    def update(self, collection, query, changes):
        result = self.db[collection].update_one(query, {"$set": changes})
        return result.matched_count > 0


def open_store(mongo_uri, data_dir, logger):
    """Connect to MongoDB when a URI is given, otherwise (or on failure) use JSON files."""
    if mongo_uri:
        try:
            store = MongoStore(mongo_uri)
            store.ping()
            logger.info("Connected to MongoDB")
            return store
        except ServerSelectionTimeoutError:
            logger.warning("Could not connect to MongoDB, falling back to JSON storage")
    else:
        logger.info("MONGO_URI not set; using JSON storage in %s", data_dir)
    return JsonStore(data_dir)
