"""
Multi-step use cases: registration, appointment booking and medicine purchase.

Every workflow follows the same shape: validate local preconditions, re-read
the records it depends on, compute the exact amount to attach, submit one
transaction and, once it is confirmed, re-issue fresh reads for the affected
query kinds. Nothing local is mutated before confirmation; on failure the
mapped ``MedchainError`` propagates to the caller.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from medchain.content_store import ContentStore
from medchain.errors import (
    InactiveListing, InsufficientStock, InvalidState, RevertedByContract, UnknownRecord, classify_error,
)
from medchain.fees import FeeCalculator, FeeKind, purchase_amount, validate_quantity
from medchain.gateway import LedgerReadGateway, Query
from medchain.ledger import Functions, LedgerClient
from medchain.metadata import MetadataResolver
from medchain.models import ContractInfo, Quote, ReadBatch
from medchain.roles import RoleKind, RoleResolver, require_patient
from medchain.session import Session
from medchain.transactions import TransactionHandle, TransactionLifecycleManager

logger = logging.getLogger(__name__)


class WorkflowResult(BaseModel):
    """Outcome of a confirmed workflow"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    handle: TransactionHandle
    amount_wei: int = 0
    refreshed: ReadBatch = Field(default_factory=ReadBatch)
    info: Optional[ContractInfo] = None

    @property
    def tx_hash(self) -> Optional[str]:
        return self.handle.tx_hash


class AppointmentRequest(BaseModel):
    """Slot requested by a patient"""
    from_time: str = Field(min_length=1)
    to_time: str = Field(min_length=1)
    appointment_date: str = Field(min_length=1)
    condition: str = ""
    message: str = ""
    doctor_name: str = ""


class Workflow:
    """Shared wiring: one transaction manager per workflow instance."""

    def __init__(self, ledger: LedgerClient, gateway: Optional[LedgerReadGateway] = None,
                 roles: Optional[RoleResolver] = None, fees: Optional[FeeCalculator] = None,
                 transactions: Optional[TransactionLifecycleManager] = None,
                 metadata: Optional[MetadataResolver] = None, timeout: Optional[float] = None):
        self.ledger = ledger
        self.gateway = gateway or LedgerReadGateway(ledger)
        self.roles = roles or RoleResolver(self.gateway)
        self.fees = fees or FeeCalculator(self.gateway)
        self.transactions = transactions or TransactionLifecycleManager(ledger)
        self.metadata = metadata
        self.timeout = timeout

    def _precheck(self, session: Session) -> None:
        session.require_connected()
        self.transactions.ensure_idle()

    async def _submit(self, session: Session, function: str, args: tuple, value: int = 0) -> TransactionHandle:
        handle = self.transactions.begin(session, function, args, value)
        return await self.transactions.submit(handle, timeout=self.timeout)

    async def _refresh(self, queries: Dict[str, Query]) -> ReadBatch:
        return await self.gateway.read_many(queries)


class PurchaseWorkflow(Workflow):
    async def run(self, session: Session, medicine_id: int, quantity: int,
                  quote: Union[Quote, int, None] = None) -> WorkflowResult:
        """
        Buy ``quantity`` units of a medicine as the session's patient.

        Args:
            session: Connected session of a registered patient
            medicine_id: Medicine to buy
            quantity: Units to buy
            quote: Amount previously shown to the user, if any

        Returns:
            WorkflowResult: Confirmed handle plus fresh medicines and orders

        Raises:
            InvalidQuantity, InactiveListing, InsufficientStock: Before any transaction
            StaleQuote: If price, discount or quantity changed since ``quote``
        """
        self._precheck(session)
        validate_quantity(quantity)

        role = await self.roles.resolve_role(session.address)
        patient_id = require_patient(role)

        medicine = await self.gateway.fetch_one("medicine", medicine_id)
        if medicine is None:
            raise UnknownRecord(f"Medicine #{medicine_id} does not exist.")
        if not medicine.active:
            raise InactiveListing()
        if quantity > medicine.quantity:
            raise InsufficientStock(detail=f"requested {quantity}, available {medicine.quantity}")

        amount = self.fees.check_quote(quote, purchase_amount(medicine, quantity))

        try:
            handle = await self._submit(session, Functions.BUY_MEDICINE, (patient_id, medicine.id, quantity), amount)
        except RevertedByContract as e:
            raise await self._explain_revert(e, medicine_id, quantity) from e

        refreshed = await self._refresh({
            "medicines": "medicines",
            "orders": ("patient_orders", patient_id),
        })
        return WorkflowResult(handle=handle, amount_wei=amount, refreshed=refreshed)

    async def _explain_revert(self, error: RevertedByContract, medicine_id: int, quantity: int) -> Exception:
        # another session may have bought the remaining stock first
        current = await self.gateway.read_one("medicine", medicine_id)
        if current is not None and not current.active:
            return InactiveListing(detail=error.reason)
        if current is not None and quantity > current.quantity:
            return InsufficientStock(detail=error.reason)
        return error


class BookingWorkflow(Workflow):
    async def run(self, session: Session, doctor_id: int, request: AppointmentRequest,
                  quote: Union[Quote, int, None] = None) -> WorkflowResult:
        """Book an appointment with an approved doctor, paying the live appointment fee."""
        self._precheck(session)

        role = await self.roles.resolve_role(session.address)
        patient_id = require_patient(role)

        doctor = await self.gateway.fetch_one("doctor", doctor_id)
        if doctor is None:
            raise UnknownRecord(f"Doctor #{doctor_id} does not exist.")
        if not doctor.is_approved:
            raise InvalidState("This doctor is not accepting appointments yet.")

        doctor_name = request.doctor_name
        if not doctor_name and self.metadata is not None:
            doctor_name = (await self.metadata.resolve(doctor.metadata_ref, "Doctor", doctor.id)).name

        fee = await self.fees.confirm(FeeKind.APPOINTMENT, quote)

        handle = await self._submit(session, Functions.BOOK_APPOINTMENT, (
            patient_id,
            doctor.id,
            request.from_time,
            request.to_time,
            request.appointment_date,
            request.condition,
            request.message,
            doctor.account_address,
            doctor_name,
        ), fee)

        refreshed = await self._refresh({
            "patient_appointments": ("patient_appointments", patient_id),
            "doctor_appointments": ("doctor_appointments", doctor.id),
            "doctors": "approved_doctors",
        })
        return WorkflowResult(handle=handle, amount_wei=fee, refreshed=refreshed)


class RegistrationWorkflow(Workflow):
    def __init__(self, ledger: LedgerClient, store: Optional[ContentStore] = None, **kwargs):
        super().__init__(ledger, **kwargs)
        self.store = store

    async def register_patient(self, session: Session, name: str, metadata_ref: Optional[str] = None,
                               profile: Optional[Dict[str, Any]] = None,
                               medical_history: Optional[List[str]] = None,
                               doctor_address: Optional[str] = None, doctor_name: str = "General",
                               amount: Union[Quote, int, None] = None) -> WorkflowResult:
        """
        Register the session's address as a patient.

        ``amount`` is the fee the user agreed to; it is compared with the fee
        read from the contract right now and a difference raises StaleQuote
        before anything is submitted.
        """
        self._precheck(session)
        await self._require_unregistered(session)

        fee = await self.fees.confirm(FeeKind.PATIENT_REGISTRATION, amount)
        ref = await self._metadata_ref(metadata_ref, profile, name, "patient")

        handle = await self._submit(session, Functions.ADD_PATIENT, (
            ref,
            list(medical_history or ["No medical history"]),
            session.address,
            [],
            name,
            doctor_address or session.address,
            doctor_name,
            RoleKind.PATIENT.value,
        ), fee)

        refreshed = await self._refresh({"patients": "patients"})
        return WorkflowResult(handle=handle, amount_wei=fee, refreshed=refreshed)

    async def register_doctor(self, session: Session, name: str, metadata_ref: Optional[str] = None,
                              profile: Optional[Dict[str, Any]] = None,
                              amount: Union[Quote, int, None] = None) -> WorkflowResult:
        """Register the session's address as a doctor; approval by the admin comes later."""
        self._precheck(session)
        await self._require_unregistered(session)

        fee = await self.fees.confirm(FeeKind.DOCTOR_REGISTRATION, amount)
        ref = await self._metadata_ref(metadata_ref, profile, name, "doctor")

        handle = await self._submit(session, Functions.ADD_DOCTOR,
                                    (ref, session.address, name, RoleKind.DOCTOR.value), fee)

        refreshed = await self._refresh({"doctors": "doctors"})
        return WorkflowResult(handle=handle, amount_wei=fee, refreshed=refreshed)

    async def _require_unregistered(self, session: Session) -> None:
        role = await self.roles.resolve_role(session.address)
        if role.kind is not RoleKind.NONE:
            raise InvalidState(f"This address is already registered as {role.kind.value}.")

    async def _metadata_ref(self, metadata_ref: Optional[str], profile: Optional[Dict[str, Any]],
                            name: str, kind: str) -> str:
        if metadata_ref:
            return metadata_ref
        if profile is None:
            raise InvalidState("A metadata reference or a profile document is required.")
        if self.store is None:
            raise InvalidState("No content store configured to publish the profile.")
        document = {**profile, "name": profile.get("name", name), "type": f"{kind}-profile"}
        try:
            cid = await asyncio.to_thread(self.store.pin_json, document, f"{kind}-metadata-{name}", f"{kind}-metadata")
        except Exception as e:
            raise classify_error(e) from e
        return self.store.url(cid)
