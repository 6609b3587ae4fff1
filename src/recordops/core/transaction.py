"""Savepoint-based transactions over a store.

A transaction brackets a sequence of batch executor calls. Savepoints are
pushed onto a stack; rolling back to one reverts the store to the state it
had when the savepoint was taken and discards every later savepoint.
"""

import threading
import time
import uuid
from contextlib import contextmanager
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

from recordops.errors import InvalidSavepointError, TransactionStateError
from recordops.logging import bind_context, get_logger, unbind_context
from recordops.metrics import get_metrics_collector
from recordops.persistence import Store

logger = get_logger(__name__, component="transaction")
metrics = get_metrics_collector()


class TransactionState(str, Enum):
    """States of a transaction manager."""

    NO_ACTIVE_TRANSACTION = "no_active_transaction"
    ACTIVE = "active"


class Savepoint(BaseModel):
    """Opaque checkpoint handed back by ``TransactionManager.mark``."""

    model_config = {"extra": "forbid", "frozen": True, "arbitrary_types_allowed": True}

    savepoint_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    transaction_id: str = Field(description="Transaction the savepoint belongs to")
    name: str = Field(description="Caller-facing label")
    depth: int = Field(ge=1, description="Stack depth after this savepoint was pushed")
    token: Any = Field(description="Store checkpoint token")
    created_at: float = Field(default_factory=time.time)


class TransactionManager:
    """Owns the savepoint stack for one transaction context.

    One instance is a single-owner handle: calls are serialized by an
    internal lock, but interleaving two callers' savepoints on one stack has
    no defined meaning.

    Example:
        >>> tm = TransactionManager(store)
        >>> tm.begin()
        >>> sp = tm.mark("before_import")
        >>> executor.execute(request)
        >>> tm.rollback_to(sp)
        >>> tm.commit()
    """

    def __init__(self, store: Store):
        self.store = store
        self._lock = threading.RLock()
        self._state = TransactionState.NO_ACTIVE_TRANSACTION
        self._transaction_id: Optional[str] = None
        self._base_token: Any = None
        self._stack: List[Savepoint] = []
        self._started_at: Optional[float] = None

    @property
    def state(self) -> TransactionState:
        with self._lock:
            return self._state

    @property
    def transaction_id(self) -> Optional[str]:
        with self._lock:
            return self._transaction_id

    @property
    def depth(self) -> int:
        with self._lock:
            return len(self._stack)

    @property
    def savepoints(self) -> Tuple[Savepoint, ...]:
        with self._lock:
            return tuple(self._stack)

    def begin(self, transaction_id: Optional[str] = None) -> str:
        """Begin a transaction.

        Args:
            transaction_id: Optional identifier; generated when omitted.

        Returns:
            The transaction identifier.

        Raises:
            TransactionStateError: If a transaction is already active.
        """
        with self._lock:
            if self._state == TransactionState.ACTIVE:
                raise TransactionStateError(
                    f"Transaction {self._transaction_id} is already active",
                    state=self._state.value,
                )
            self._base_token = self.store.begin_savepoint()
            self._transaction_id = transaction_id or f"tx_{uuid.uuid4().hex[:8]}"
            self._stack = []
            self._state = TransactionState.ACTIVE
            self._started_at = time.time()
            bind_context(transaction_id=self._transaction_id)
            logger.info("transaction_started", transaction_id=self._transaction_id)
            return self._transaction_id

    def mark(self, name: Optional[str] = None) -> Savepoint:
        """Push a savepoint capturing the current store state."""
        with self._lock:
            self._require_active("mark")
            savepoint = Savepoint(
                transaction_id=self._transaction_id,
                name=name or f"sp_{len(self._stack) + 1}",
                depth=len(self._stack) + 1,
                token=self.store.begin_savepoint(),
            )
            self._stack.append(savepoint)
            logger.debug(
                "savepoint_marked",
                savepoint=savepoint.name,
                savepoint_id=savepoint.savepoint_id,
                depth=savepoint.depth,
            )
            return savepoint

    def rollback_to(self, savepoint: Savepoint) -> None:
        """Revert the store to ``savepoint`` and drop every later savepoint.

        ``savepoint`` itself stays on the stack and can be rolled back to
        again.

        Raises:
            InvalidSavepointError: If ``savepoint`` is not on the stack.
        """
        with self._lock:
            self._require_active("rollback_to")
            position = self._position(savepoint)
            self.store.rollback(savepoint.token)
            discarded = len(self._stack) - position - 1
            del self._stack[position + 1:]
            metrics.increment_rollback()
            logger.info(
                "rolled_back_to_savepoint",
                savepoint=savepoint.name,
                savepoint_id=savepoint.savepoint_id,
                discarded=discarded,
                depth=len(self._stack),
            )

    def release(self, savepoint: Savepoint) -> None:
        """Drop ``savepoint`` and every later savepoint, keeping their effects."""
        with self._lock:
            self._require_active("release")
            position = self._position(savepoint)
            self.store.release(savepoint.token)
            del self._stack[position:]
            logger.debug("savepoint_released", savepoint=savepoint.name, depth=len(self._stack))

    def commit(self) -> None:
        """Finalize every pending mutation and end the transaction."""
        with self._lock:
            self._require_active("commit")
            self.store.commit()
            logger.info(
                "transaction_committed",
                transaction_id=self._transaction_id,
                savepoints=len(self._stack),
                duration_ms=self._elapsed_ms(),
            )
            self._end()

    def rollback(self) -> None:
        """Revert everything since ``begin`` and end the transaction."""
        with self._lock:
            self._require_active("rollback")
            self.store.rollback(self._base_token)
            self.store.release(self._base_token)
            metrics.increment_rollback()
            logger.info(
                "transaction_rolled_back",
                transaction_id=self._transaction_id,
                duration_ms=self._elapsed_ms(),
            )
            self._end()

    @contextmanager
    def savepoint(self, name: Optional[str] = None) -> Iterator[Savepoint]:
        """Mark a savepoint; roll back to it if the block raises.

        The savepoint is released when the block exits either way.
        """
        savepoint = self.mark(name)
        try:
            yield savepoint
        except Exception:
            logger.warning("savepoint_block_failed", savepoint=savepoint.name)
            with self._lock:
                if self._contains(savepoint):
                    self.rollback_to(savepoint)
                    self.release(savepoint)
            raise
        with self._lock:
            if self._contains(savepoint):
                self.release(savepoint)

    @contextmanager
    def transaction(self, transaction_id: Optional[str] = None) -> Iterator["TransactionManager"]:
        """Commit on success, roll back on exception."""
        self.begin(transaction_id)
        try:
            yield self
        except Exception:
            with self._lock:
                if self._state == TransactionState.ACTIVE:
                    self.rollback()
            raise
        with self._lock:
            if self._state == TransactionState.ACTIVE:
                self.commit()

    def get_stats(self) -> Dict[str, Any]:
        """Snapshot of the manager's state."""
        with self._lock:
            return {
                "state": self._state.value,
                "transaction_id": self._transaction_id,
                "depth": len(self._stack),
                "savepoints": [sp.name for sp in self._stack],
            }

    def _require_active(self, action: str) -> None:
        if self._state != TransactionState.ACTIVE:
            raise TransactionStateError(
                f"Cannot {action}: no active transaction",
                state=self._state.value,
            )

    def _contains(self, savepoint: Savepoint) -> bool:
        return any(sp.savepoint_id == savepoint.savepoint_id for sp in self._stack)

    def _position(self, savepoint: Savepoint) -> int:
        for position, known in enumerate(self._stack):
            if known.savepoint_id == savepoint.savepoint_id:
                return position
        logger.error(
            "invalid_savepoint",
            savepoint=savepoint.name,
            savepoint_id=savepoint.savepoint_id,
            transaction_id=self._transaction_id,
        )
        raise InvalidSavepointError(
            f"Savepoint {savepoint.name} is not active in this transaction",
            savepoint_id=savepoint.savepoint_id,
        )

    def _elapsed_ms(self) -> int:
        return int((time.time() - (self._started_at or time.time())) * 1000)

    def _end(self) -> None:
        unbind_context("transaction_id")
        self._state = TransactionState.NO_ACTIVE_TRANSACTION
        self._transaction_id = None
        self._base_token = None
        self._stack = []
        self._started_at = None
