"""Unit tests for LedgerReplica record types."""

import pytest

from ledgerreplica.core.exceptions import RecordValidationError
from ledgerreplica.core.types import (
    AccountCategory,
    AccountState,
    Cycle,
    EVMAccountState,
    NetworkAccountState,
    Receipt,
    ReceiptAccountState,
    SignedProposal,
    TransactionType,
    UnknownAccountState,
    classify_account_type,
    normalize_bytes_field,
)


@pytest.mark.parametrize("account_type, category", [
    (0, AccountCategory.EVM),
    (2, AccountCategory.EVM),
    (3, AccountCategory.EVM),
    (5, AccountCategory.NETWORK),
    (9, AccountCategory.NETWORK),
    (1, AccountCategory.RECEIPT),
    (10, AccountCategory.RECEIPT),
    (12, AccountCategory.RECEIPT),
    (4, AccountCategory.UNKNOWN),
    (99, AccountCategory.UNKNOWN),
    (None, AccountCategory.UNKNOWN),
])
def test_classify_account_type(account_type, category):
    assert classify_account_type(account_type) is category


def test_account_state_dispatch():
    evm = AccountState.from_dict({"accountId": "a", "data": {"accountType": 0, "ethAddress": "0xABC"}})
    network = AccountState.from_dict({"accountId": "n", "data": {"accountType": 5}})
    receipt = AccountState.from_dict({"accountId": "r", "data": {"accountType": 11, "ethAddress": "0x01"}})
    unknown = AccountState.from_dict({"accountId": "u", "data": {"accountType": 4}})

    assert isinstance(evm, EVMAccountState) and evm.eth_address == "0xabc"
    assert isinstance(network, NetworkAccountState) and network.eth_address == "n"
    assert isinstance(receipt, ReceiptAccountState)
    assert receipt.transaction_type is TransactionType.UnstakeReceipt
    assert receipt.tx_hash == "0x01"
    assert isinstance(unknown, UnknownAccountState)


def test_account_state_requires_data():
    with pytest.raises(RecordValidationError):
        AccountState.from_dict({"accountId": "a", "data": "not-a-dict"})
    with pytest.raises(RecordValidationError):
        AccountState.from_dict({"data": {"accountType": 0}})


def test_code_hash_only_for_account_type():
    eoa = AccountState.from_dict({"accountId": "a", "data": {
        "accountType": 0, "account": {"codeHash": {"0": 197, "1": 210}}}})
    storage = AccountState.from_dict({"accountId": "s", "data": {"accountType": 2}})
    assert eoa.code_hash == "0xc5d2"
    assert storage.code_hash is None


@pytest.mark.parametrize("value, expected", [
    (None, None),
    ("0xABCD", "0xabcd"),
    ("abcd", "0xabcd"),
    ([1, 2], "0x0102"),
    ({"1": 2, "0": 1}, "0x0102"),
    ({"type": "Buffer", "data": [255]}, "0xff"),
])
def test_normalize_bytes_field(value, expected):
    assert normalize_bytes_field(value) == expected


def test_cycle_from_record():
    cycle = Cycle.from_record({"counter": 3, "marker": "m3", "start": 100, "duration": 60})
    assert (cycle.counter, cycle.marker, cycle.start, cycle.duration) == (3, "m3", 100, 60)
    assert Cycle.from_dict(cycle.to_dict()) == cycle


@pytest.mark.parametrize("record", [
    {"counter": 1},
    {"counter": -1, "marker": "m"},
    {"counter": "1", "marker": "m"},
    "garbage",
])
def test_invalid_cycle_records_are_rejected(record):
    with pytest.raises(RecordValidationError):
        Cycle.from_record(record)


def test_receipt_requires_tx_id_cycle_and_timestamp(receipt_factory, make_tx_id):
    raw = receipt_factory(make_tx_id(1))
    receipt = Receipt.from_dict(raw)
    assert receipt.tx_id == make_tx_id(1)
    assert receipt.proposal.account_ids == raw["signedReceipt"]["proposal"]["accountIDs"]

    with pytest.raises(RecordValidationError):
        Receipt.from_dict(dict(raw, tx={}))
    missing_cycle = dict(raw)
    del missing_cycle["cycle"]
    with pytest.raises(RecordValidationError):
        Receipt.from_dict(missing_cycle)


def test_signed_proposal_arrays_must_align():
    with pytest.raises(RecordValidationError):
        SignedProposal(account_ids=["a", "b"], before_state_hashes=["1"], after_state_hashes=["2", "3"])
