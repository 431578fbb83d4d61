"""
SQL Storage Backend for LedgerReplica.

This module implements the persistent storage layer using SQLAlchemy. Writes are bulk
``INSERT ... ON CONFLICT DO UPDATE`` statements; the dialect-specific insert construct
is picked once when the backend is created, so SQLite and PostgreSQL share every code path.
"""

import logging
from typing import Any, Callable

from sqlalchemy import create_engine, func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, scoped_session

from ledgerreplica.core.exceptions import StorageError
from ledgerreplica.core.types import (
    Account,
    AccountEntry,
    AccountHistoryState,
    AccountState,
    BLOCK_TRANSACTION_TYPES,
    Block,
    Cycle,
    OriginalTxData,
    OriginalTxData2,
    Receipt,
    TallyEntry,
    TokenTransfer,
    Transaction,
    TransactionType,
)
from ledgerreplica.storage.base import StorageBackend
from ledgerreplica.storage.models import (
    AccountEntryModel,
    AccountHistoryStateModel,
    AccountModel,
    Base,
    BlockModel,
    CycleModel,
    OriginalTx2Model,
    OriginalTxModel,
    ReceiptModel,
    TokenTransferModel,
    TransactionModel,
)

logger = logging.getLogger(__name__)

# Rows per INSERT statement; keeps SQLite under its bound-parameter limit
UPSERT_CHUNK_SIZE = 500


def _dialect_insert(dialect_name: str) -> Callable:
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise StorageError(f"Unsupported database dialect: {dialect_name}")
    return insert


class SqlStorageBackend(StorageBackend):
    """
    Persistent storage backend using a SQL database.
    """

    def __init__(self, connection_string: str | None = None, echo: bool = False):
        """
        Initialize the SQL Storage Backend.

        Args:
            connection_string: SQL connection string (e.g., sqlite:///ledgerreplica.db)
            echo: Log emitted SQL
        """
        if connection_string is None:
            from ledgerreplica.config.settings import settings
            connection_string = settings.DATABASE_URL
        self.db_url = connection_string
        self.engine = create_engine(self.db_url, echo=echo)
        self._insert = _dialect_insert(self.engine.dialect.name)

        # Create all tables (if they don't exist)
        Base.metadata.create_all(self.engine)

        # Create thread-safe session factory
        self.Session = scoped_session(sessionmaker(bind=self.engine, expire_on_commit=False))

        logger.info(f"SqlStorageBackend initialized with {self.engine.url!r}")

    # ------------------------------------------------------------------
    # Generic helpers
    # ------------------------------------------------------------------

    def _upsert(self, model, rows: list[dict[str, Any]], keys: tuple[str, ...],
                only_if_newer: bool = False) -> None:
        """Bulk upsert rows on their natural key; duplicate keys within a call keep the last row."""
        if not rows:
            return
        unique = {tuple(row[k] for k in keys): row for row in rows}
        rows = list(unique.values())

        session = self.Session()
        try:
            for offset in range(0, len(rows), UPSERT_CHUNK_SIZE):
                stmt = self._insert(model).values(rows[offset:offset + UPSERT_CHUNK_SIZE])
                update_cols = {
                    column.name: stmt.excluded[column.name]
                    for column in model.__table__.columns
                    if column.name not in keys and column.name != "id"
                }
                where = None
                if only_if_newer:
                    where = model.__table__.c.timestamp < stmt.excluded.timestamp
                stmt = stmt.on_conflict_do_update(index_elements=list(keys), set_=update_cols, where=where)
                session.execute(stmt)
            session.commit()
            logger.debug(f"Upserted {len(rows)} rows into {model.__tablename__}")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to upsert into {model.__tablename__}: {e}")
            raise StorageError(f"Upsert into {model.__tablename__} failed") from e
        finally:
            session.close()

    def _query(self, fn: Callable):
        session = self.Session()
        try:
            return fn(session)
        except SQLAlchemyError as e:
            logger.error(f"Query failed: {e}")
            raise StorageError("Query failed") from e
        finally:
            session.close()

    def _tally(self, model, start: int, end: int) -> list[TallyEntry]:
        def run(session):
            rows = (session.query(model.cycle, func.count())
                    .filter(model.cycle >= start, model.cycle <= end)
                    .group_by(model.cycle)
                    .order_by(model.cycle.asc())
                    .all())
            return [TallyEntry(cycle=cycle, count=count) for cycle, count in rows]
        return self._query(run)

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def upsert_cycles(self, cycles: list[Cycle]) -> None:
        rows = [{"counter": c.counter, "marker": c.marker, "record": c.record} for c in cycles]
        self._upsert(CycleModel, rows, ("counter",))

    def get_cycle_by_marker(self, marker: str) -> Cycle | None:
        return self._query(lambda s: _to_cycle(s.query(CycleModel).filter_by(marker=marker).first()))

    def get_cycle_by_counter(self, counter: int) -> Cycle | None:
        return self._query(lambda s: _to_cycle(s.get(CycleModel, counter)))

    def get_cycles_between(self, start: int, end: int) -> list[Cycle]:
        return self._query(lambda s: [
            _to_cycle(m) for m in s.query(CycleModel)
            .filter(CycleModel.counter >= start, CycleModel.counter <= end)
            .order_by(CycleModel.counter.asc()).all()
        ])

    def get_latest_cycle(self) -> Cycle | None:
        return self._query(lambda s: _to_cycle(
            s.query(CycleModel).order_by(CycleModel.counter.desc()).first()))

    def count_cycles(self) -> int:
        return self._query(lambda s: s.query(CycleModel).count())

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    def upsert_receipts(self, receipts: list[Receipt]) -> None:
        rows = [{
            "receipt_id": r.receipt_id,
            "tx": r.tx,
            "cycle": r.cycle,
            "timestamp": r.timestamp,
            "before_states": [s.to_dict() for s in r.before_states],
            "after_states": [s.to_dict() for s in r.after_states],
            "app_receipt_data": r.app_receipt_data,
            "signed_receipt": r.signed_receipt,
            "global_modification": r.global_modification,
        } for r in receipts]
        self._upsert(ReceiptModel, rows, ("receipt_id",))

    def get_receipt(self, receipt_id: str) -> Receipt | None:
        return self._query(lambda s: _to_receipt(s.get(ReceiptModel, receipt_id)))

    def get_receipts(self, skip: int = 0, limit: int = 100) -> list[Receipt]:
        return self._query(lambda s: [
            _to_receipt(m) for m in s.query(ReceiptModel)
            .order_by(ReceiptModel.cycle.asc(), ReceiptModel.timestamp.asc())
            .offset(skip).limit(limit).all()
        ])

    def count_receipts(self) -> int:
        return self._query(lambda s: s.query(ReceiptModel).count())

    def count_receipts_by_cycles(self, start: int, end: int) -> list[TallyEntry]:
        return self._tally(ReceiptModel, start, end)

    def get_latest_receipt_cycle(self) -> int | None:
        return self._query(lambda s: s.query(func.max(ReceiptModel.cycle)).scalar())

    # ------------------------------------------------------------------
    # Original transactions
    # ------------------------------------------------------------------

    def upsert_original_txs(self, txs: list[OriginalTxData]) -> None:
        rows = [{
            "tx_id": t.tx_id,
            "timestamp": t.timestamp,
            "cycle": t.cycle,
            "original_tx_data": t.original_tx_data,
            "sign": t.sign,
        } for t in txs]
        self._upsert(OriginalTxModel, rows, ("tx_id",))

    def upsert_original_txs2(self, txs: list[OriginalTxData2]) -> None:
        rows = [{
            "tx_id": t.tx_id,
            "timestamp": t.timestamp,
            "cycle": t.cycle,
            "tx_hash": t.tx_hash,
            "transaction_type": int(t.transaction_type),
        } for t in txs]
        self._upsert(OriginalTx2Model, rows, ("tx_id",))

    def get_original_tx(self, tx_id: str) -> OriginalTxData | None:
        def run(session):
            m = session.get(OriginalTxModel, tx_id)
            if m is None:
                return None
            return OriginalTxData(tx_id=m.tx_id, timestamp=m.timestamp, cycle=m.cycle,
                                  original_tx_data=m.original_tx_data, sign=m.sign)
        return self._query(run)

    def get_original_tx2(self, tx_id: str) -> OriginalTxData2 | None:
        def run(session):
            m = session.get(OriginalTx2Model, tx_id)
            if m is None:
                return None
            return OriginalTxData2(tx_id=m.tx_id, timestamp=m.timestamp, cycle=m.cycle,
                                   tx_hash=m.tx_hash, transaction_type=TransactionType(m.transaction_type))
        return self._query(run)

    def count_original_txs(self) -> int:
        return self._query(lambda s: s.query(OriginalTxModel).count())

    def count_original_txs_by_cycles(self, start: int, end: int) -> list[TallyEntry]:
        return self._tally(OriginalTxModel, start, end)

    def get_latest_original_tx_cycle(self) -> int | None:
        return self._query(lambda s: s.query(func.max(OriginalTxModel.cycle)).scalar())

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def upsert_accounts(self, accounts: list[Account]) -> None:
        # Sort so the newest snapshot of an id wins the in-call dedup
        accounts = sorted(accounts, key=lambda a: a.timestamp)
        rows = [{
            "account_id": a.account_id,
            "eth_address": a.eth_address,
            "cycle": a.cycle,
            "timestamp": a.timestamp,
            "account_type": a.account_type,
            "data": a.data,
            "hash": a.hash,
            "is_global": a.is_global,
            "contract_info": a.contract_info,
            "contract_type": a.contract_type,
        } for a in accounts]
        self._upsert(AccountModel, rows, ("account_id",), only_if_newer=True)

    def get_account(self, account_id: str) -> Account | None:
        def run(session):
            m = session.get(AccountModel, account_id)
            if m is None:
                return None
            return Account(account_id=m.account_id, eth_address=m.eth_address, cycle=m.cycle,
                           timestamp=m.timestamp, account_type=m.account_type, data=m.data,
                           hash=m.hash, is_global=m.is_global, contract_info=m.contract_info,
                           contract_type=m.contract_type)
        return self._query(run)

    def count_accounts_between_cycles(self, start: int, end: int) -> int:
        return self._query(lambda s: s.query(AccountModel)
                           .filter(AccountModel.cycle >= start, AccountModel.cycle <= end).count())

    def upsert_account_entries(self, entries: list[AccountEntry]) -> None:
        rows = [{"account_id": e.account_id, "timestamp": e.timestamp, "data": e.data} for e in entries]
        self._upsert(AccountEntryModel, rows, ("account_id",), only_if_newer=True)

    # ------------------------------------------------------------------
    # Transactions and token transfers
    # ------------------------------------------------------------------

    def upsert_transactions(self, transactions: list[Transaction]) -> None:
        rows = [{
            "tx_id": t.tx_id,
            "tx_hash": t.tx_hash,
            "cycle": t.cycle,
            "block_number": t.block_number,
            "block_hash": t.block_hash,
            "timestamp": t.timestamp,
            "transaction_type": int(t.transaction_type),
            "tx_from": t.tx_from,
            "tx_to": t.tx_to,
            "nominee": t.nominee,
            "wrapped_account_data": t.wrapped_account_data,
            "original_tx_data": t.original_tx_data,
        } for t in transactions]
        self._upsert(TransactionModel, rows, ("tx_id", "tx_hash"))

    def get_transaction(self, tx_id: str) -> Transaction | None:
        return self._query(lambda s: _to_transaction(
            s.query(TransactionModel).filter_by(tx_id=tx_id)
            .order_by(TransactionModel.timestamp.desc()).first()))

    def get_transactions_by_block(self, block_number: int) -> list[Transaction]:
        types = [int(t) for t in BLOCK_TRANSACTION_TYPES]
        return self._query(lambda s: [
            _to_transaction(m) for m in s.query(TransactionModel)
            .filter(TransactionModel.block_number == block_number,
                    TransactionModel.transaction_type.in_(types))
            .order_by(TransactionModel.timestamp.asc(), TransactionModel.id.asc()).all()
        ])

    def count_transactions_between_cycles(self, start: int, end: int) -> int:
        return self._query(lambda s: s.query(TransactionModel)
                           .filter(TransactionModel.cycle >= start, TransactionModel.cycle <= end).count())

    def upsert_token_transfers(self, transfers: list[TokenTransfer]) -> None:
        rows = [{
            "tx_id": t.tx_id,
            "log_index": t.log_index,
            "tx_hash": t.tx_hash,
            "cycle": t.cycle,
            "timestamp": t.timestamp,
            "token_type": int(t.token_type),
            "token_from": t.token_from,
            "token_to": t.token_to,
            "token_operator": t.token_operator,
            "token_value": t.token_value,
            "token_id": t.token_id,
            "contract_address": t.contract_address,
            "transaction_fee": t.transaction_fee,
            "contract_info": t.contract_info,
        } for t in transfers]
        self._upsert(TokenTransferModel, rows, ("tx_id", "log_index"))

    def get_token_transfers(self, tx_id: str) -> list[TokenTransfer]:
        def run(session):
            models = (session.query(TokenTransferModel).filter_by(tx_id=tx_id)
                      .order_by(TokenTransferModel.log_index.asc()).all())
            return [TokenTransfer(
                tx_id=m.tx_id, tx_hash=m.tx_hash, cycle=m.cycle, timestamp=m.timestamp,
                log_index=m.log_index, token_type=TransactionType(m.token_type),
                token_from=m.token_from, token_to=m.token_to, token_value=m.token_value,
                contract_address=m.contract_address, transaction_fee=m.transaction_fee,
                token_operator=m.token_operator, token_id=m.token_id,
                contract_info=m.contract_info or {},
            ) for m in models]
        return self._query(run)

    # ------------------------------------------------------------------
    # Blocks
    # ------------------------------------------------------------------

    def upsert_blocks(self, blocks: list[Block]) -> None:
        rows = [{
            "number": b.number,
            "number_hex": b.number_hex,
            "hash": b.hash,
            "parent_hash": b.parent_hash,
            "timestamp": b.timestamp,
            "cycle": b.cycle,
            "transactions_root": b.transactions_root,
            "readable_block": b.readable_block,
        } for b in blocks]
        self._upsert(BlockModel, rows, ("number",))

    def get_block_by_number(self, number: int) -> Block | None:
        return self._query(lambda s: _to_block(s.get(BlockModel, number)))

    def get_block_by_hash(self, block_hash: str) -> Block | None:
        return self._query(lambda s: _to_block(s.query(BlockModel).filter_by(hash=block_hash).first()))

    def get_latest_block(self) -> Block | None:
        return self._query(lambda s: _to_block(
            s.query(BlockModel).order_by(BlockModel.number.desc()).first()))

    def count_blocks(self) -> int:
        return self._query(lambda s: s.query(BlockModel).count())

    # ------------------------------------------------------------------
    # Account history
    # ------------------------------------------------------------------

    def upsert_account_history_states(self, states: list[AccountHistoryState]) -> None:
        rows = [{
            "account_id": h.account_id,
            "before_state_hash": h.before_state_hash,
            "after_state_hash": h.after_state_hash,
            "timestamp": h.timestamp,
            "block_number": h.block_number,
            "block_hash": h.block_hash,
            "receipt_id": h.receipt_id,
        } for h in states]
        self._upsert(AccountHistoryStateModel, rows, ("account_id", "timestamp"))

    def get_account_history_state(self, account_id: str,
                                  before_block: int | None = None) -> AccountHistoryState | None:
        def run(session):
            query = session.query(AccountHistoryStateModel).filter_by(account_id=account_id)
            if before_block is not None:
                query = query.filter(AccountHistoryStateModel.block_number < before_block)
            m = query.order_by(AccountHistoryStateModel.block_number.desc(),
                               AccountHistoryStateModel.timestamp.desc()).first()
            if m is None:
                return None
            return AccountHistoryState(
                account_id=m.account_id, before_state_hash=m.before_state_hash,
                after_state_hash=m.after_state_hash, timestamp=m.timestamp,
                block_number=m.block_number, block_hash=m.block_hash, receipt_id=m.receipt_id,
            )
        return self._query(run)

    def count_account_history_states(self) -> int:
        return self._query(lambda s: s.query(AccountHistoryStateModel).count())

    def close(self):
        """Close connection pool."""
        self.Session.remove()
        self.engine.dispose()


def _to_cycle(m: CycleModel | None) -> Cycle | None:
    if m is None:
        return None
    return Cycle(counter=m.counter, marker=m.marker, record=m.record)


def _to_receipt(m: ReceiptModel | None) -> Receipt | None:
    if m is None:
        return None
    return Receipt(
        receipt_id=m.receipt_id,
        tx=m.tx,
        cycle=m.cycle,
        timestamp=m.timestamp,
        before_states=[AccountState.from_dict(s) for s in m.before_states or []],
        after_states=[AccountState.from_dict(s) for s in m.after_states or []],
        app_receipt_data=m.app_receipt_data,
        signed_receipt=m.signed_receipt,
        global_modification=m.global_modification,
    )


def _to_transaction(m: TransactionModel | None) -> Transaction | None:
    if m is None:
        return None
    return Transaction(
        tx_id=m.tx_id,
        tx_hash=m.tx_hash,
        cycle=m.cycle,
        block_number=m.block_number,
        block_hash=m.block_hash,
        timestamp=m.timestamp,
        transaction_type=TransactionType(m.transaction_type),
        tx_from=m.tx_from,
        tx_to=m.tx_to,
        wrapped_account_data=m.wrapped_account_data or {},
        original_tx_data=m.original_tx_data or {},
        nominee=m.nominee,
    )


def _to_block(m: BlockModel | None) -> Block | None:
    if m is None:
        return None
    return Block(
        number=m.number,
        number_hex=m.number_hex,
        hash=m.hash,
        parent_hash=m.parent_hash,
        timestamp=m.timestamp,
        cycle=m.cycle,
        transactions_root=m.transactions_root,
        readable_block=m.readable_block,
    )
