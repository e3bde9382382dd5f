"""
Ledger adapter tests
"""
import pytest
from web3 import Web3
from web3.exceptions import BlockNotFound, TransactionNotFound

from eduflow_backend.blockchain import MockLedger, Web3Adapter, build_adapter, submit
from eduflow_backend.errors import BlockchainError


def test_mock_ledger_starts_with_genesis():
    chain = MockLedger()
    assert chain.get_block_number() == 0
    genesis = chain.get_block(0)
    assert genesis["transactions"] == []
    assert genesis["parentHash"] == "0x" + "0" * 64


def test_mock_ledger_send_transaction():
    chain = MockLedger()
    receipt = chain.send_transaction("school-1", None, "0xabc")
    assert receipt["blockNumber"] == 1
    assert receipt["transactionHash"].startswith("0x")
    assert len(receipt["transactionHash"]) == 66

    tx = chain.get_transaction(receipt["transactionHash"])
    assert tx["input"] == "0xabc"
    assert tx["from"] == "school-1"
    assert chain.get_transaction_receipt(receipt["transactionHash"])["status"] == 1

    block = chain.get_block(1)
    assert block["transactions"] == [receipt["transactionHash"]]
    assert block["parentHash"] == chain.get_block(0)["hash"]


def test_mock_ledger_unknown_lookups():
    chain = MockLedger()
    assert chain.get_block(5) is None
    assert chain.get_transaction("0x" + "0" * 64) is None
    assert chain.get_transaction_receipt("0x" + "0" * 64) is None


def test_build_adapter():
    assert isinstance(build_adapter({"BLOCKCHAIN_PROVIDER": "mock"}), MockLedger)
    with pytest.raises(ValueError):
        build_adapter({"BLOCKCHAIN_PROVIDER": "carrier-pigeon"})


def test_submit_wraps_failures():
    class Broken(MockLedger):
        def send_transaction(self, sender, to, data):
            raise ConnectionError("refused")

    with pytest.raises(BlockchainError) as exc:
        submit(Broken(), "s", None, "0x00")
    assert exc.value.message == "blockchain operation failed"
    assert "refused" in exc.value.detail


class FakeEth:
    """Just enough of ``w3.eth`` for the adapter."""

    accounts = ["0x" + "a" * 40]
    block_number = 7

    def __init__(self):
        self.sent = []

    def get_block(self, number):
        if number != 7:
            raise BlockNotFound(f"Block {number} not found")
        return {
            "number": 7,
            "hash": b"\x01" * 32,
            "parentHash": b"\x00" * 32,
            "timestamp": 1700000000,
            "transactions": [b"\x02" * 32],
            "size": 600,
            "gasUsed": 21000,
            "miner": "0x" + "0" * 40,
            "extraData": b"",
        }

    def get_transaction(self, tx_hash):
        if tx_hash != "0x" + "02" * 32:
            raise TransactionNotFound("missing")
        return {
            "hash": b"\x02" * 32,
            "blockNumber": 7,
            "blockHash": b"\x01" * 32,
            "from": "0x" + "a" * 40,
            "to": None,
            "value": 0,
            "gas": 21000,
            "gasPrice": 0,
            "input": b"\xab\xcd",
            "transactionIndex": 0,
        }

    def get_transaction_receipt(self, tx_hash):
        if tx_hash != "0x" + "02" * 32:
            raise TransactionNotFound("missing")
        return {"transactionHash": b"\x02" * 32, "blockNumber": 7, "blockHash": b"\x01" * 32,
                "status": 1, "gasUsed": 21000}

    def send_transaction(self, tx):
        self.sent.append(tx)
        return b"\x02" * 32

    def wait_for_transaction_receipt(self, tx_hash):
        return self.get_transaction_receipt("0x" + "02" * 32)


class FakeWeb3:
    def __init__(self):
        self.eth = FakeEth()


def test_web3_adapter_reads():
    chain = Web3Adapter(w3=FakeWeb3())
    assert chain.get_block_number() == 7

    block = chain.get_block(7)
    assert block["hash"] == "0x" + "01" * 32
    assert block["transactions"] == ["0x" + "02" * 32]
    assert chain.get_block(8) is None

    tx = chain.get_transaction("0x" + "02" * 32)
    assert tx["input"] == "0xabcd"
    assert tx["value"] == "0"
    assert chain.get_transaction("0x" + "03" * 32) is None
    assert chain.get_transaction_receipt("0x" + "03" * 32) is None


def test_web3_adapter_send_transaction():
    w3 = FakeWeb3()
    chain = Web3Adapter(w3=w3)
    receipt = chain.send_transaction("school-1", None, "Revoke: C1, Reason: test")
    sent = w3.eth.sent[0]
    assert sent["from"] == FakeEth.accounts[0]
    assert sent["data"] == Web3.to_hex(text="Revoke: C1, Reason: test")
    assert receipt["transactionHash"] == "0x" + "02" * 32
    assert receipt["blockNumber"] == 7
    assert receipt["timestamp"].startswith("2023-11-14")


def test_web3_adapter_passes_hex_data_through():
    w3 = FakeWeb3()
    Web3Adapter(w3=w3, account="0x" + "b" * 40).send_transaction("s", None, "0xabcdef")
    assert w3.eth.sent[0]["data"] == "0xabcdef"
    assert w3.eth.sent[0]["from"] == "0x" + "b" * 40
