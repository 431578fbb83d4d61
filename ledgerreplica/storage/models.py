"""
SQLAlchemy Models for LedgerReplica Storage.

This module defines the database schema of the replica: raw ledger artifacts (cycles,
receipts, original transactions) and the derived read model (accounts, transactions,
token transfers, synthetic blocks and account history).
"""

from sqlalchemy import BigInteger, Boolean, Column, Integer, JSON, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class CycleModel(Base):
    """A cycle record keyed by its counter."""
    __tablename__ = 'cycles'

    counter = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=False)
    marker = Column(String(128), unique=True, nullable=False, index=True)
    record = Column(JSON, nullable=False)

    def __repr__(self):
        return f"<Cycle(counter={self.counter}, marker='{self.marker[:8]}...')>"


class ReceiptModel(Base):
    """Raw receipt archive."""
    __tablename__ = 'receipts'

    receipt_id = Column(String(128), primary_key=True)
    tx = Column(JSON, nullable=False)
    cycle = Column(BigInteger, nullable=False, index=True)
    timestamp = Column(BigInteger, nullable=False)
    before_states = Column(JSON, nullable=True)
    after_states = Column(JSON, nullable=True)
    app_receipt_data = Column(JSON, nullable=True)
    signed_receipt = Column(JSON, nullable=True)
    global_modification = Column(Boolean, nullable=False, default=False)

    def __repr__(self):
        return f"<Receipt(id='{self.receipt_id[:8]}...', cycle={self.cycle})>"


class OriginalTxModel(Base):
    """Original submitted transaction."""
    __tablename__ = 'original_txs'

    tx_id = Column(String(128), primary_key=True)
    timestamp = Column(BigInteger, nullable=False)
    cycle = Column(BigInteger, nullable=False, index=True)
    original_tx_data = Column(JSON, nullable=False)
    sign = Column(JSON, nullable=True)


class OriginalTx2Model(Base):
    """Type-indexed summary of an original transaction."""
    __tablename__ = 'original_txs2'

    tx_id = Column(String(128), primary_key=True)
    timestamp = Column(BigInteger, nullable=False)
    cycle = Column(BigInteger, nullable=False, index=True)
    tx_hash = Column(String(128), nullable=False, index=True)
    transaction_type = Column(Integer, nullable=False, index=True)


class AccountModel(Base):
    """Latest known state of an account (last-writer-wins by timestamp)."""
    __tablename__ = 'accounts'

    account_id = Column(String(128), primary_key=True)
    eth_address = Column(String(128), nullable=True, index=True)
    cycle = Column(BigInteger, nullable=False, index=True)
    timestamp = Column(BigInteger, nullable=False)
    account_type = Column(Integer, nullable=False)
    data = Column(JSON, nullable=False)
    hash = Column(String(128), nullable=True)
    is_global = Column(Boolean, nullable=False, default=False)
    contract_info = Column(JSON, nullable=True)
    contract_type = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<Account(id='{self.account_id[:8]}...', ts={self.timestamp})>"


class AccountEntryModel(Base):
    """Account copy in the secondary indexer layout."""
    __tablename__ = 'account_entries'

    account_id = Column(String(128), primary_key=True)
    timestamp = Column(BigInteger, nullable=False)
    data = Column(JSON, nullable=False)


class TransactionModel(Base):
    """A transaction derived from a receipt-bearing account."""
    __tablename__ = 'transactions'
    __table_args__ = (UniqueConstraint('tx_id', 'tx_hash', name='uq_transactions_tx_id_tx_hash'),)

    # Insertion order breaks timestamp ties inside a block
    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_id = Column(String(128), nullable=False, index=True)
    tx_hash = Column(String(128), nullable=False, index=True)
    cycle = Column(BigInteger, nullable=False, index=True)
    block_number = Column(BigInteger, nullable=True, index=True)
    block_hash = Column(String(128), nullable=True)
    timestamp = Column(BigInteger, nullable=False)
    transaction_type = Column(Integer, nullable=False)
    tx_from = Column(String(128), nullable=True)
    tx_to = Column(String(128), nullable=True)
    nominee = Column(String(128), nullable=True)
    wrapped_account_data = Column(JSON, nullable=True)
    original_tx_data = Column(JSON, nullable=True)

    def __repr__(self):
        return f"<Transaction(tx_hash='{self.tx_hash[:10]}...', block={self.block_number})>"


class TokenTransferModel(Base):
    """A decoded token transfer."""
    __tablename__ = 'token_transfers'
    __table_args__ = (UniqueConstraint('tx_id', 'log_index', name='uq_token_transfers_tx_id_log_index'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    tx_id = Column(String(128), nullable=False, index=True)
    log_index = Column(Integer, nullable=False)
    tx_hash = Column(String(128), nullable=False)
    cycle = Column(BigInteger, nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    token_type = Column(Integer, nullable=False)
    token_from = Column(String(128), nullable=True, index=True)
    token_to = Column(String(128), nullable=True, index=True)
    token_operator = Column(String(128), nullable=True)
    token_value = Column(String(130), nullable=False)
    token_id = Column(String(130), nullable=True)
    contract_address = Column(String(128), nullable=True, index=True)
    transaction_fee = Column(String(130), nullable=True)
    contract_info = Column(JSON, nullable=True)


class BlockModel(Base):
    """A synthetic block keyed by its number."""
    __tablename__ = 'blocks'

    number = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=False)
    number_hex = Column(String(32), nullable=False)
    hash = Column(String(66), unique=True, nullable=False, index=True)
    parent_hash = Column(String(66), nullable=False)
    timestamp = Column(BigInteger, nullable=False)
    cycle = Column(BigInteger, nullable=False, index=True)
    transactions_root = Column(String(66), nullable=False)
    readable_block = Column(JSON, nullable=False)

    def __repr__(self):
        return f"<Block(number={self.number}, hash='{self.hash[:10]}...')>"


class AccountHistoryStateModel(Base):
    """Before/after state hash of an account at a block."""
    __tablename__ = 'account_history_states'
    __table_args__ = (UniqueConstraint('account_id', 'timestamp', name='uq_account_history_account_ts'),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String(128), nullable=False, index=True)
    before_state_hash = Column(String(128), nullable=True)
    after_state_hash = Column(String(128), nullable=True)
    timestamp = Column(BigInteger, nullable=False)
    block_number = Column(BigInteger, nullable=False, index=True)
    block_hash = Column(String(66), nullable=False)
    receipt_id = Column(String(128), nullable=False)
