"""
Session context: the connected address plus a capability to sign transactions.

A ``Session`` is passed explicitly to every workflow call. Signing is opaque to
the rest of the package; ``LocalSigner`` signs with a private key, and a
wallet-backed signer only has to implement ``sign_transaction`` (raising
``UserRejectedSigning`` when the user declines).
"""

import logging
from typing import Any, Dict, Optional

from eth_account import Account

from medchain.constants import PRIVATE_KEY
from medchain.errors import WalletNotConnected

logger = logging.getLogger(__name__)


class Signer:
    address: str

    async def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        raise NotImplementedError


class LocalSigner(Signer):
    """Signs with a private key held in memory (scripts, tests, development)."""

    def __init__(self, private_key: str):
        self.account = Account.from_key(private_key)
        self.address = self.account.address

    async def sign_transaction(self, tx: Dict[str, Any]) -> bytes:
        signed = self.account.sign_transaction(tx)
        return signed.raw_transaction


class Session:
    def __init__(self, address: Optional[str] = None, signer: Optional[Signer] = None):
        self.address = address or (signer.address if signer else None)
        self.signer = signer

    @classmethod
    def from_private_key(cls, private_key: str) -> "Session":
        return cls(signer=LocalSigner(private_key))

    @classmethod
    def from_env(cls) -> "Session":
        if not PRIVATE_KEY:
            logger.warning("PRIVATE_KEY not set; session is read-only")
            return cls()
        return cls.from_private_key(PRIVATE_KEY)

    @property
    def connected(self) -> bool:
        return bool(self.address) and self.signer is not None

    def require_connected(self) -> None:
        if not self.connected:
            raise WalletNotConnected()

    def __repr__(self) -> str:
        return f"Session(address={self.address!r}, connected={self.connected})"
