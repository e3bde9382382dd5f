"""Ledger adapters.

Domain code talks to the ledger only through ``BlockchainAdapter``. Block and
transaction dicts use the field names of an Ethereum-style JSON-RPC node
(``number``, ``hash``, ``parentHash``, ``blockNumber``, ``from``, ...), with
hashes as ``0x``-prefixed hex strings and block timestamps as epoch seconds.
"""
import time
import secrets
import datetime
import threading

from web3 import Web3
from web3.exceptions import BlockNotFound, TransactionNotFound

from .errors import BlockchainError


class BlockchainAdapter:
    def get_block_number(self):
        raise NotImplementedError

    def get_block(self, number):
        """Block dict, or None when the ledger has no such block."""
        raise NotImplementedError

    def get_transaction(self, tx_hash):
        """Transaction dict, or None when the ledger has no such transaction."""
        raise NotImplementedError

    def get_transaction_receipt(self, tx_hash):
        raise NotImplementedError

    def send_transaction(self, sender, to, data):
        """Submit ``data`` and wait for it to be mined.

        Returns ``{transactionHash, blockNumber, blockHash, timestamp, gasUsed}``
        with ``timestamp`` as an ISO-8601 string.
        """
        raise NotImplementedError


def _random_hash():
    return "0x" + secrets.token_hex(32)


def iso_from_epoch(seconds):
    return datetime.datetime.fromtimestamp(seconds, datetime.timezone.utc).isoformat()


class MockLedger(BlockchainAdapter):
    """In-process append-only ledger: every submitted transaction gets its own block."""

    def __init__(self):
        self._lock = threading.Lock()
        self._blocks = []
        self._transactions = {}
        self._receipts = {}
        self._append_block([])

    def _append_block(self, tx_hashes):
        parent = self._blocks[-1]["hash"] if self._blocks else "0x" + "0" * 64
        block = {
            "number": len(self._blocks),
            "hash": _random_hash(),
            "parentHash": parent,
            "timestamp": int(time.time()),
            "transactions": list(tx_hashes),
            "size": 512 + 128 * len(tx_hashes),
            "gasUsed": 21000 * len(tx_hashes),
            "miner": "0x" + "0" * 40,
            "extraData": "0x",
        }
        self._blocks.append(block)
        return block

    def get_block_number(self):
        with self._lock:
            return len(self._blocks) - 1

    def get_block(self, number):
        with self._lock:
            if 0 <= number < len(self._blocks):
                return dict(self._blocks[number])
            return None

    def get_transaction(self, tx_hash):
        with self._lock:
            tx = self._transactions.get(tx_hash)
            return dict(tx) if tx else None

    def get_transaction_receipt(self, tx_hash):
        with self._lock:
            receipt = self._receipts.get(tx_hash)
            return dict(receipt) if receipt else None

    def send_transaction(self, sender, to, data):
        with self._lock:
            tx_hash = _random_hash()
            block = self._append_block([tx_hash])
            self._transactions[tx_hash] = {
                "hash": tx_hash,
                "blockNumber": block["number"],
                "blockHash": block["hash"],
                "from": sender,
                "to": to,
                "value": "0",
                "gas": 21000,
                "gasPrice": "0",
                "input": data,
                "transactionIndex": 0,
            }
            self._receipts[tx_hash] = {
                "transactionHash": tx_hash,
                "blockNumber": block["number"],
                "status": 1,
                "gasUsed": 21000,
            }
        return {
            "transactionHash": tx_hash,
            "blockNumber": block["number"],
            "blockHash": block["hash"],
            "timestamp": iso_from_epoch(block["timestamp"]),
            "gasUsed": 21000,
        }


def _hex(value):
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return value


class Web3Adapter(BlockchainAdapter):
    """Adapter for a node reachable over JSON-RPC (FISCO BCOS web3 endpoint, Ganache, ...)."""

    def __init__(self, provider_url=None, account=None, w3=None):
        self.w3 = w3 if w3 is not None else Web3(Web3.HTTPProvider(provider_url))
        self.account = account

    def get_block_number(self):
        return self.w3.eth.block_number

    def get_block(self, number):
        try:
            block = self.w3.eth.get_block(number)
        except BlockNotFound:
            return None
        return {
            "number": block["number"],
            "hash": _hex(block["hash"]),
            "parentHash": _hex(block["parentHash"]),
            "timestamp": block["timestamp"],
            "transactions": [_hex(tx) for tx in block["transactions"]],
            "size": block.get("size"),
            "gasUsed": block.get("gasUsed"),
            "miner": block.get("miner"),
            "extraData": _hex(block.get("extraData")),
        }

    def get_transaction(self, tx_hash):
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        return {
            "hash": _hex(tx["hash"]),
            "blockNumber": tx["blockNumber"],
            "blockHash": _hex(tx["blockHash"]),
            "from": tx["from"],
            "to": tx.get("to"),
            "value": str(tx.get("value", 0)),
            "gas": tx.get("gas"),
            "gasPrice": str(tx.get("gasPrice", 0)),
            "input": _hex(tx.get("input")),
            "transactionIndex": tx.get("transactionIndex"),
        }

    def get_transaction_receipt(self, tx_hash):
        try:
            receipt = self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        return {
            "transactionHash": _hex(receipt["transactionHash"]),
            "blockNumber": receipt["blockNumber"],
            "status": receipt.get("status"),
            "gasUsed": receipt.get("gasUsed"),
        }

    def send_transaction(self, sender, to, data):
        # ``sender`` is the application user; the node signs with its own account
        account = self.account or self.w3.eth.accounts[0]
        if isinstance(data, str) and data.startswith("0x"):
            payload = data
        else:
            payload = Web3.to_hex(text=str(data))
        tx_hash = self.w3.eth.send_transaction({"from": account, "to": to or account, "data": payload})
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash)
        block = self.w3.eth.get_block(receipt["blockNumber"])
        return {
            "transactionHash": _hex(receipt["transactionHash"]),
            "blockNumber": receipt["blockNumber"],
            "blockHash": _hex(receipt["blockHash"]),
            "timestamp": iso_from_epoch(block["timestamp"]),
            "gasUsed": receipt.get("gasUsed"),
        }


def build_adapter(config):
    provider = (config.get("BLOCKCHAIN_PROVIDER") or "mock").lower()
    if provider == "mock":
        return MockLedger()
    if provider == "web3":
        return Web3Adapter(config.get("FISCO_NODE_URL"), account=config.get("CHAIN_ACCOUNT"))
    raise ValueError(f"Unknown BLOCKCHAIN_PROVIDER: {provider}")


def submit(chain, sender, to, data):
    """``chain.send_transaction`` with any adapter failure raised as ``BlockchainError``."""
    try:
        return chain.send_transaction(sender, to, data)
    except Exception as e:
        raise BlockchainError(f"send_transaction failed: {e}") from e
