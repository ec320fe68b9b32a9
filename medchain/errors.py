"""
Error taxonomy for the medchain client layer.

Every failure surfaced to a caller is a ``MedchainError`` subclass carrying a
stable ``kind`` string and a human-readable ``user_message``. Low-level web3,
HTTP and wallet errors are translated with ``classify_error``.
"""

import asyncio
import logging
import re
from typing import List, Optional, Tuple, Type

import requests
from web3.exceptions import ContractLogicError, TimeExhausted

logger = logging.getLogger(__name__)


class MedchainError(Exception):
    """Base class for all errors raised by medchain."""

    kind = "Error"
    default_message = "Something went wrong."

    def __init__(self, user_message: Optional[str] = None, *, detail: Optional[str] = None):
        self.user_message = user_message or self.default_message
        self.detail = detail
        super().__init__(self.user_message)

    def to_dict(self) -> dict:
        data = {"kind": self.kind, "message": self.user_message}
        if self.detail:
            data["detail"] = self.detail
        return data


class WalletNotConnected(MedchainError):
    kind = "WalletNotConnected"
    default_message = "Please connect your wallet."


class MalformedAmount(MedchainError):
    kind = "MalformedAmount"
    default_message = "Amount must be a non-negative decimal number with at most 18 decimal places."


class InvalidQuantity(MedchainError):
    kind = "InvalidQuantity"
    default_message = "Quantity must be a positive whole number."


class InsufficientStock(MedchainError):
    kind = "InsufficientStock"
    default_message = "Not enough stock available for this medicine."


class InactiveListing(MedchainError):
    kind = "InactiveListing"
    default_message = "This medicine is not currently available for purchase."


class StaleQuote(MedchainError):
    kind = "StaleQuote"
    default_message = "The price changed since it was shown. Please review the new amount."

    def __init__(self, expected: int, actual: int, user_message: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        super().__init__(user_message, detail=f"quoted {expected} wei, ledger requires {actual} wei")


class IncorrectFee(MedchainError):
    kind = "IncorrectFee"
    default_message = "The attached amount does not match the required fee."


class InsufficientFunds(MedchainError):
    kind = "InsufficientFunds"
    default_message = "Insufficient funds to cover the amount and gas."


class UserRejectedSigning(MedchainError):
    kind = "UserRejectedSigning"
    default_message = "The transaction was rejected in the wallet."


class TransactionInFlight(MedchainError):
    kind = "TransactionInFlight"
    default_message = "Another transaction is still being processed. Please wait for it to finish."


class IndeterminateState(MedchainError):
    kind = "IndeterminateState"
    default_message = "The transaction has not been finalized yet. Refresh to check its status."

    def __init__(self, tx_hash: Optional[str] = None, user_message: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(user_message, detail=tx_hash)


class RevertedByContract(MedchainError):
    kind = "RevertedByContract"
    default_message = "The transaction was rejected by the contract."

    def __init__(self, reason: Optional[str] = None, user_message: Optional[str] = None):
        self.reason = reason or "unknown reason"
        super().__init__(user_message or f"The transaction was rejected by the contract: {self.reason}",
                         detail=self.reason)


class NetworkUnavailable(MedchainError):
    kind = "NetworkUnavailable"
    default_message = "The network is unavailable. Please try again later."


class DegradedMetadata(MedchainError):
    """Non-fatal: off-chain details could not be loaded. Logged, never raised by the resolver."""

    kind = "DegradedMetadata"
    default_message = "Some details could not be loaded."


class NotAuthorized(MedchainError):
    kind = "NotAuthorized"
    default_message = "Your account is not allowed to perform this action."


class UnknownRecord(MedchainError):
    kind = "UnknownRecord"
    default_message = "The referenced record does not exist."


class InvalidState(MedchainError):
    kind = "InvalidState"
    default_message = "This action is not possible in the record's current state."


class InvalidAddress(MedchainError):
    kind = "InvalidAddress"
    default_message = "That is not a valid account address."


# Known revert reasons and wallet messages, matched case-insensitively.
# Order matters: the first matching pattern wins.
REVERT_PATTERNS: List[Tuple[re.Pattern, Type[MedchainError]]] = [
    (re.compile(r"user (rejected|denied)|rejected the request|request rejected|code.?4001"), UserRejectedSigning),
    (re.compile(r"insufficient funds"), InsufficientFunds),
    (re.compile(r"incorrect (registration |appointment )?fee|incorrect (payment|amount)|"
                r"insufficient payment|wrong (fee|amount)|fee mismatch"), IncorrectFee),
    (re.compile(r"(not enough|insufficient) (stock|quantity|medicine)|out of stock|exceeds available"),
     InsufficientStock),
    (re.compile(r"(medicine|listing) (is )?not active|inactive"), InactiveListing),
]

NETWORK_PATTERNS = re.compile(r"connection (refused|reset|aborted|error)|could not connect|"
                              r"failed to establish|name or service not known|timed out")


def revert_reason(exc: BaseException) -> str:
    """Extract the revert reason string from a web3 error."""
    message = getattr(exc, "message", None) or str(exc)
    if isinstance(exc, ContractLogicError) and message.startswith("execution reverted: "):
        message = message[len("execution reverted: "):]
    return message.strip()


def classify_message(message: str) -> Optional[Type[MedchainError]]:
    lowered = message.lower()
    for pattern, error_cls in REVERT_PATTERNS:
        if pattern.search(lowered):
            return error_cls
    return None


def error_for_reason(reason: str) -> MedchainError:
    """Error for a revert reason reported by the ledger."""
    error_cls = classify_message(reason)
    if error_cls is not None:
        return error_cls(detail=reason)
    return RevertedByContract(reason)


def classify_error(exc: BaseException) -> MedchainError:
    """
    Map a low-level exception to the medchain error taxonomy.

    Args:
        exc: The exception raised by web3, requests, the signer or medchain itself

    Returns:
        MedchainError: The matching error kind; ``RevertedByContract`` when a
        revert reason matches no known pattern
    """
    if isinstance(exc, MedchainError):
        return exc

    if isinstance(exc, TimeExhausted):
        return IndeterminateState()

    reason = revert_reason(exc)
    error_cls = classify_message(reason)
    if error_cls is not None:
        return error_cls(detail=reason)

    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout,
                        ConnectionError, asyncio.TimeoutError)):
        return NetworkUnavailable(detail=reason)
    if isinstance(exc, OSError) or NETWORK_PATTERNS.search(reason.lower()):
        return NetworkUnavailable(detail=reason)

    if not isinstance(exc, ContractLogicError):
        logger.warning(f"Unrecognized error treated as a contract revert: {type(exc).__name__}: {reason}")
    return RevertedByContract(reason)
