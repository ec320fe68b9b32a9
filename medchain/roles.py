"""
Role resolution for connected accounts.

A ``Role`` is produced once per address by ``RoleResolver`` and matched
exhaustively by callers through ``Role.match`` instead of comparing role
strings throughout the code.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel, ConfigDict

from medchain.constants import ROLES
from medchain.errors import NotAuthorized, WalletNotConnected
from medchain.gateway import LedgerReadGateway

logger = logging.getLogger(__name__)


class RoleKind(str, Enum):
    NONE = ROLES["NONE"]
    PATIENT = ROLES["PATIENT"]
    DOCTOR = ROLES["DOCTOR"]
    ADMIN = ROLES["ADMIN"]


class Role(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: RoleKind
    address: str = ""
    id: Optional[int] = None
    approved: Optional[bool] = None

    @classmethod
    def none(cls, address: str = "") -> "Role":
        return cls(kind=RoleKind.NONE, address=address)

    def match(self, *, none: Callable[["Role"], Any], patient: Callable[["Role"], Any],
              doctor: Callable[["Role"], Any], admin: Callable[["Role"], Any]) -> Any:
        """Dispatch on the role kind; every kind must be handled."""
        handlers = {
            RoleKind.NONE: none,
            RoleKind.PATIENT: patient,
            RoleKind.DOCTOR: doctor,
            RoleKind.ADMIN: admin,
        }
        return handlers[self.kind](self)

    @property
    def is_approved_doctor(self) -> bool:
        return self.kind is RoleKind.DOCTOR and bool(self.approved)


def same_address(a: Optional[str], b: Optional[str]) -> bool:
    """Addresses are case-insensitive identifiers."""
    return bool(a) and bool(b) and a.lower() == b.lower()


def require_patient(role: Role) -> int:
    if not role.address:
        raise WalletNotConnected()
    if role.kind is not RoleKind.PATIENT or not role.id:
        raise NotAuthorized("Only registered patients can do this.")
    return role.id


def require_doctor(role: Role, approved: bool = True) -> int:
    if not role.address:
        raise WalletNotConnected()
    if role.kind is not RoleKind.DOCTOR or not role.id:
        raise NotAuthorized("Only registered doctors can do this.")
    if approved and not role.approved:
        raise NotAuthorized("Your doctor account has not been approved yet.")
    return role.id


def require_admin(role: Role) -> None:
    if not role.address:
        raise WalletNotConnected()
    if role.kind is not RoleKind.ADMIN:
        raise NotAuthorized("Only the administrator can do this.")


class RoleResolver:
    def __init__(self, gateway: LedgerReadGateway):
        self.gateway = gateway

    async def resolve_role(self, address: Optional[str]) -> Role:
        """
        Determine the role of an address.

        The address is compared case-insensitively with the contract's admin;
        otherwise the registered user type decides, and doctors and patients
        get their on-chain id (and approval flag for doctors). Any failed read
        yields ``Role.none`` so that routing is never blocked.

        Args:
            address: The connected wallet address, or None when disconnected

        Returns:
            Role: The resolved role
        """
        if not address:
            return Role.none()
        try:
            return await self._resolve(address)
        except Exception as e:
            logger.warning(f"Role resolution for {address} failed, treating as unregistered: {e}")
            return Role.none(address)

    async def _resolve(self, address: str) -> Role:
        exists, info = await asyncio.gather(
            self.gateway.user_exists(address),
            self.gateway.contract_info(),
        )

        if info is not None and same_address(address, info.admin):
            return Role(kind=RoleKind.ADMIN, address=address)
        if not exists:
            return Role.none(address)

        profile = await self.gateway.user_profile(address)
        tag = (profile.user_type if profile else "").strip().lower()

        if tag == RoleKind.ADMIN.value:
            # the admin tag alone is not enough: the admin address may have been transferred
            logger.warning(f"{address} is tagged admin but is not the contract admin")
            return Role.none(address)

        if tag == RoleKind.DOCTOR.value:
            doctor_id = await self.gateway.doctor_id_for(address)
            if not doctor_id:
                return Role.none(address)
            doctor = await self.gateway.read_one("doctor", doctor_id)
            return Role(kind=RoleKind.DOCTOR, address=address, id=doctor_id,
                        approved=bool(doctor and doctor.is_approved))

        if tag == RoleKind.PATIENT.value:
            patient_id = await self.gateway.patient_id_for(address)
            if not patient_id:
                return Role.none(address)
            return Role(kind=RoleKind.PATIENT, address=address, id=patient_id)

        if tag:
            logger.warning(f"Unknown user type {tag!r} for {address}")
        return Role.none(address)
