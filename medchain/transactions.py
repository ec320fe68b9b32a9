"""
Lifecycle tracking for state-changing transactions.

Each submission is represented by a ``TransactionHandle`` that moves through

    BUILDING -> SUBMITTED -> PENDING -> CONFIRMED
    BUILDING -> SUBMITTED -> FAILED            (also PENDING -> FAILED)
    BUILDING -> REJECTED                       (user declined to sign)
    BUILDING -> ABANDONED                      (caller gave up before signing)
    SUBMITTED/PENDING -> INDETERMINATE         (timeout, cancellation or lost connection)

A manager drives one transaction at a time: while one is being submitted, is
SUBMITTED/PENDING or is unreconciled INDETERMINATE, a new one is refused locally.
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from medchain.constants import CONFIRMATIONS, RECEIPT_POLL_INTERVAL
from medchain.errors import (
    IndeterminateState, InvalidState, MalformedAmount, MedchainError, TransactionInFlight,
    UserRejectedSigning, classify_error, error_for_reason,
)
from medchain.ledger import LedgerClient
from medchain.session import Session

logger = logging.getLogger(__name__)


class TxState(str, Enum):
    BUILDING = "building"
    SUBMITTED = "submitted"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    REJECTED = "rejected"
    ABANDONED = "abandoned"
    INDETERMINATE = "indeterminate"


TRANSITIONS = {
    TxState.BUILDING: {TxState.SUBMITTED, TxState.REJECTED, TxState.ABANDONED, TxState.FAILED},
    TxState.SUBMITTED: {TxState.PENDING, TxState.FAILED, TxState.INDETERMINATE},
    TxState.PENDING: {TxState.CONFIRMED, TxState.FAILED, TxState.INDETERMINATE},
    TxState.INDETERMINATE: {TxState.PENDING, TxState.CONFIRMED, TxState.FAILED},
    TxState.CONFIRMED: set(),
    TxState.FAILED: set(),
    TxState.REJECTED: set(),
    TxState.ABANDONED: set(),
}

TERMINAL = {TxState.CONFIRMED, TxState.FAILED, TxState.REJECTED, TxState.ABANDONED}


class TransactionHandle:
    def __init__(self, function: str, args: Tuple[Any, ...], value: int, session: Session):
        self.id = uuid.uuid4().hex[:12]
        self.function = function
        self.args = args
        self.value = value
        self.session = session
        self.sender = session.address
        self.state = TxState.BUILDING
        self.tx: Optional[Dict[str, Any]] = None
        self.tx_hash: Optional[str] = None
        self.receipt: Optional[Dict[str, Any]] = None
        self.error: Optional[MedchainError] = None
        self.history: List[TxState] = [TxState.BUILDING]

    @property
    def confirmed(self) -> bool:
        return self.state is TxState.CONFIRMED

    @property
    def done(self) -> bool:
        return self.state in TERMINAL

    @property
    def outcome(self) -> Optional[str]:
        """"success", "failure", or None while unresolved"""
        if self.state is TxState.CONFIRMED:
            return "success"
        if self.state in (TxState.FAILED, TxState.REJECTED, TxState.ABANDONED):
            return "failure"
        return None

    def abandon(self) -> None:
        """Give up before anything was signed or sent."""
        if self.state is not TxState.BUILDING:
            raise InvalidState(f"Cannot abandon a transaction in state {self.state.value}")
        self._move(TxState.ABANDONED)

    def _move(self, new_state: TxState) -> TxState:
        old_state = self.state
        if new_state not in TRANSITIONS[old_state]:
            raise InvalidState(f"Illegal transition {old_state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        return old_state

    def __repr__(self) -> str:
        return f"TransactionHandle({self.function}, state={self.state.value}, tx_hash={self.tx_hash})"


class TransactionLifecycleManager:
    def __init__(self, ledger: LedgerClient,
                 confirmations: int = CONFIRMATIONS, poll_interval: float = RECEIPT_POLL_INTERVAL):
        self.ledger = ledger
        self.confirmations = max(1, confirmations)
        self.poll_interval = poll_interval
        self._active: Optional[TransactionHandle] = None
        self._listeners: List[Callable[[TransactionHandle, TxState, TxState], None]] = []

    @property
    def active(self) -> Optional[TransactionHandle]:
        if self._active is not None and self._active.state not in TERMINAL:
            return self._active
        return None

    def on_transition(self, callback: Callable[[TransactionHandle, TxState, TxState], None]) -> None:
        """Register callback(handle, old_state, new_state)."""
        self._listeners.append(callback)

    def begin(self, session: Session, function: str, args: Tuple[Any, ...] = (), value: int = 0) -> TransactionHandle:
        """
        Validate local preconditions and return a handle in BUILDING.

        Raises:
            TransactionInFlight: If another transaction of this manager is unresolved
            WalletNotConnected: If the session cannot sign
            MalformedAmount: If the attached value is not a non-negative integer
        """
        self.ensure_idle()
        session.require_connected()
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise MalformedAmount(detail=f"attached value must be a non-negative wei integer, got {value!r}")
        return TransactionHandle(function, tuple(args), value, session)

    async def run(self, session: Session, function: str, args: Tuple[Any, ...] = (), value: int = 0,
                  timeout: Optional[float] = None) -> TransactionHandle:
        return await self.submit(self.begin(session, function, args, value), timeout=timeout)

    async def submit(self, handle: TransactionHandle, timeout: Optional[float] = None) -> TransactionHandle:
        """
        Build, sign, send and track a transaction until it is final.

        Args:
            handle: A handle in BUILDING, from ``begin``
            timeout: Optional upper bound in seconds on waiting for finality

        Returns:
            TransactionHandle: The handle, CONFIRMED

        Raises:
            MedchainError: The mapped error when the transaction ends REJECTED
                or FAILED; IndeterminateState when the timeout expires or the
                network fails after the transaction was sent
        """
        if handle.state is not TxState.BUILDING:
            raise InvalidState(f"Transaction already {handle.state.value}")
        self.ensure_idle()
        self._active = handle

        try:
            handle.tx = await self.ledger.build_transaction(handle.function, handle.args, handle.sender, handle.value)
            raw = await handle.session.signer.sign_transaction(handle.tx)
        except asyncio.CancelledError:
            self._move(handle, TxState.ABANDONED)
            raise
        except Exception as e:
            error = classify_error(e)
            if isinstance(error, UserRejectedSigning):
                handle.error = error
                self._move(handle, TxState.REJECTED)
                raise error from e
            self._fail(handle, error)

        self._move(handle, TxState.SUBMITTED)
        try:
            handle.tx_hash = await self.ledger.send_raw_transaction(raw)
        except asyncio.CancelledError:
            # the signed transaction may or may not have reached the network
            self._indeterminate(handle)
            raise
        except Exception as e:
            self._fail(handle, classify_error(e))
        logger.info(f"Submitted {handle.function} as {handle.tx_hash}")

        return await self._track(handle, timeout)

    async def reconcile(self, handle: TransactionHandle, timeout: Optional[float] = None) -> TransactionHandle:
        """Resume tracking a transaction left INDETERMINATE."""
        if handle.state is not TxState.INDETERMINATE:
            raise InvalidState(f"Only indeterminate transactions can be reconciled, not {handle.state.value}")
        if handle.tx_hash is None:
            raise InvalidState("The network never acknowledged this transaction; re-read ledger state and release it")
        return await self._track(handle, timeout)

    def release(self, handle: TransactionHandle) -> None:
        """
        Free the in-flight slot held by an unresolved transaction.

        This is the manual escape hatch for a handle that is INDETERMINATE (or
        otherwise not final) once the caller has re-read ledger state and
        decided its outcome. The handle keeps its state.
        """
        if handle.done:
            raise InvalidState(f"Transaction already {handle.state.value}; nothing to release")
        if self._active is handle:
            self._active = None
            logger.warning(f"{handle.function} ({handle.tx_hash}) released while {handle.state.value}")

    async def _track(self, handle: TransactionHandle, timeout: Optional[float]) -> TransactionHandle:
        try:
            if timeout is None:
                return await self._poll(handle)
            return await asyncio.wait_for(self._poll(handle), timeout)
        except asyncio.CancelledError:
            # the transaction is on the network; only its tracking stops
            if not handle.done:
                self._indeterminate(handle)
            raise
        except asyncio.TimeoutError:
            self._indeterminate(handle)
            raise IndeterminateState(handle.tx_hash) from None
        except Exception as e:
            if handle.done:
                raise
            self._indeterminate(handle, classify_error(e))
            raise IndeterminateState(handle.tx_hash) from e

    async def _poll(self, handle: TransactionHandle) -> TransactionHandle:
        while True:
            receipt = await self.ledger.get_receipt(handle.tx_hash)
            if receipt is not None:
                handle.receipt = receipt
                if handle.state is not TxState.PENDING:
                    self._move(handle, TxState.PENDING)
                if receipt["status"] == 0:
                    reason = await self.ledger.failure_reason(handle.tx, receipt["blockNumber"])
                    self._fail(handle, error_for_reason(reason))
                current = await self.ledger.block_number()
                if current - receipt["blockNumber"] + 1 >= self.confirmations:
                    self._move(handle, TxState.CONFIRMED)
                    logger.info(f"{handle.function} confirmed in block {receipt['blockNumber']}")
                    return handle
            await asyncio.sleep(self.poll_interval)

    def ensure_idle(self) -> None:
        """Raise TransactionInFlight if a transaction of this manager is unresolved."""
        if self.active is not None:
            raise TransactionInFlight(detail=f"{self._active.function} is {self._active.state.value}")

    def _indeterminate(self, handle: TransactionHandle, error: Optional[MedchainError] = None) -> None:
        handle.error = error or IndeterminateState(handle.tx_hash)
        if handle.state is not TxState.INDETERMINATE:
            self._move(handle, TxState.INDETERMINATE)
        logger.warning(f"{handle.function} ({handle.tx_hash}) not final ({handle.error.kind}); "
                       f"reconcile by re-reading ledger state")

    def _fail(self, handle: TransactionHandle, error: MedchainError) -> None:
        handle.error = error
        self._move(handle, TxState.FAILED)
        logger.error(f"{handle.function} failed: {error.kind}: {error.detail or error.user_message}")
        raise error

    def _move(self, handle: TransactionHandle, new_state: TxState) -> None:
        old_state = handle._move(new_state)
        logger.info(f"Transaction {handle.id} ({handle.function}): {old_state.value} -> {new_state.value}")
        if new_state in TERMINAL and self._active is handle:
            self._active = None
        for callback in self._listeners:
            callback(handle, old_state, new_state)
