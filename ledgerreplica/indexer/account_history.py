"""
Per-account history states.

History rows pair an account's before/after state hash with the block of the receipt
that changed it. They are written by the receipt indexer and can be rebuilt from stored
receipts with ``backfill_account_history``.
"""

import logging

from ledgerreplica.core.exceptions import RecordValidationError
from ledgerreplica.core.types import Account, AccountCategory, AccountHistoryState, Receipt
from ledgerreplica.core.utils import hex_to_int
from ledgerreplica.storage.base import StorageBackend

logger = logging.getLogger(__name__)

BACKFILL_PAGE_SIZE = 100
BUCKET_SIZE = 1000


def build_history_rows(receipt: Receipt, block_number: int | None,
                       block_hash: str | None) -> list[AccountHistoryState]:
    """
    History rows of one receipt, one per ``(account id, before hash, after hash)`` triple
    of its signed proposal.

    Global-modification receipts, receipts without a signed proposal and receipts
    without block placement produce no rows.
    """
    try:
        proposal = receipt.proposal
    except RecordValidationError as e:
        logger.warning(f"Receipt {receipt.tx_id}: {e}")
        return []

    if receipt.global_modification:
        logger.info(f"Receipt {receipt.tx_id} with timestamp {receipt.timestamp} has globalModification as true")
        return []
    if proposal is None:
        logger.error(f"Receipt {receipt.tx_id} with timestamp {receipt.timestamp} has no signedReceipt")
        return []
    if block_number is None or not block_hash:
        logger.error(f"Receipt {receipt.tx_id} with timestamp {receipt.timestamp} has no blockNumber or blockHash")
        return []

    return [
        AccountHistoryState(
            account_id=account_id,
            before_state_hash=before,
            after_state_hash=after,
            timestamp=receipt.timestamp,
            block_number=block_number,
            block_hash=block_hash,
            receipt_id=receipt.tx_id,
        )
        for account_id, before, after in zip(proposal.account_ids,
                                              proposal.before_state_hashes,
                                              proposal.after_state_hashes)
    ]


def receipt_block_placement(receipt: Receipt) -> tuple[int | None, str | None]:
    """Block number and hash of a stored receipt, read from its readable receipt."""
    readable = ((receipt.app_receipt_data or {}).get("data") or {}).get("readableReceipt")
    if not readable:
        for state in receipt.after_states:
            if state.category is AccountCategory.RECEIPT:
                readable = state.readable_receipt
                break
    readable = readable or {}
    return hex_to_int(readable.get("blockNumber")), readable.get("blockHash")


def backfill_account_history(storage: StorageBackend, page_size: int = BACKFILL_PAGE_SIZE) -> int:
    """
    Rebuild account history rows from every stored receipt.

    Returns:
        int: Number of history rows written
    """
    total_receipts = storage.count_receipts()
    logger.info(f"Backfilling account history from {total_receipts} receipts")
    written = 0
    pending: list[AccountHistoryState] = []

    for skip in range(0, total_receipts, page_size):
        for receipt in storage.get_receipts(skip=skip, limit=page_size):
            block_number, block_hash = receipt_block_placement(receipt)
            pending.extend(build_history_rows(receipt, block_number, block_hash))
            if len(pending) >= BUCKET_SIZE:
                storage.upsert_account_history_states(pending)
                written += len(pending)
                pending = []
    if pending:
        storage.upsert_account_history_states(pending)
        written += len(pending)

    logger.info(f"Account history backfill wrote {written} rows "
                f"(total {storage.count_account_history_states()})")
    return written


def query_account_history_state(storage: StorageBackend, account_id: str,
                                block_number: int | None = None) -> Account | None:
    """
    Account state as of the last change before ``block_number``.

    The account is rebuilt from the after-state carried by the receipt that the history
    row references.
    """
    history = storage.get_account_history_state(account_id, before_block=block_number)
    if history is None:
        return None
    receipt = storage.get_receipt(history.receipt_id)
    if receipt is None:
        logger.warning(f"Unable to find receipt for AccountHistoryState {history.receipt_id}")
        return None
    for state in receipt.after_states:
        if state.account_id == account_id:
            return Account.from_state(state, receipt.cycle)
    logger.warning(f"Unable to find account in receipt for AccountHistoryState {history.receipt_id}")
    return None
