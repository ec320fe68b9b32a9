"""
Administrator, doctor and messaging actions.

These are single-transaction use cases without attached value. Like the
workflows they check the caller's role and the referenced records first and
refetch only the query kinds the transaction changed.
"""

import asyncio
import logging
from typing import Union

from web3 import Web3

from medchain.amounts import to_smallest_unit
from medchain.errors import InvalidAddress, InvalidQuantity, InvalidState, MalformedAmount, NotAuthorized, UnknownRecord
from medchain.fees import FeeKind
from medchain.ledger import Functions
from medchain.models import MedicineRecord
from medchain.roles import require_admin, require_doctor
from medchain.session import Session
from medchain.workflows import Workflow, WorkflowResult

logger = logging.getLogger(__name__)

FEE_SETTERS = {
    FeeKind.DOCTOR_REGISTRATION: Functions.UPDATE_DOCTOR_FEE,
    FeeKind.PATIENT_REGISTRATION: Functions.UPDATE_PATIENT_FEE,
    FeeKind.APPOINTMENT: Functions.UPDATE_APPOINTMENT_FEE,
}

MEDICINE_QUERIES = {"medicines": "medicines"}


def _checked_address(address: str) -> str:
    if not address or not Web3.is_address(address):
        raise InvalidAddress(detail=repr(address))
    return Web3.to_checksum_address(address)


def _checked_discount(discount) -> int:
    if not isinstance(discount, int) or isinstance(discount, bool) or not 0 <= discount <= 100:
        raise MalformedAmount("Discount must be a whole percentage between 0 and 100.", detail=repr(discount))
    return discount


def _checked_stock(quantity) -> int:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 0:
        raise InvalidQuantity("Stock must be a whole number of units, zero or more.", detail=repr(quantity))
    return quantity


class AdminActions(Workflow):
    async def _as_admin(self, session: Session) -> None:
        self._precheck(session)
        require_admin(await self.roles.resolve_role(session.address))

    async def _medicine(self, medicine_id: int) -> MedicineRecord:
        medicine = await self.gateway.fetch_one("medicine", medicine_id)
        if medicine is None:
            raise UnknownRecord(f"Medicine #{medicine_id} does not exist.")
        return medicine

    async def add_medicine(self, session: Session, metadata_ref: str, price: Union[str, int],
                           quantity: int, discount: int = 0, location: str = "") -> WorkflowResult:
        """
        List a new medicine.

        Args:
            session: The admin's session
            metadata_ref: Content reference of the medicine's description document
            price: Unit price in ether as a decimal string ("0.05")
            quantity: Units in stock
            discount: Discount in percent (0-100)
            location: Where the stock is kept
        """
        price_wei = to_smallest_unit(price)
        _checked_stock(quantity)
        _checked_discount(discount)
        if not metadata_ref:
            raise InvalidState("A metadata reference is required.")
        await self._as_admin(session)

        handle = await self._submit(session, Functions.ADD_MEDICINE,
                                    (metadata_ref, price_wei, quantity, discount, location))
        return WorkflowResult(handle=handle, refreshed=await self._refresh(MEDICINE_QUERIES))

    async def update_price(self, session: Session, medicine_id: int, price: Union[str, int]) -> WorkflowResult:
        price_wei = to_smallest_unit(price)
        await self._as_admin(session)
        medicine = await self._medicine(medicine_id)
        handle = await self._submit(session, Functions.UPDATE_MEDICINE_PRICE, (medicine.id, price_wei))
        return WorkflowResult(handle=handle, refreshed=await self._refresh(MEDICINE_QUERIES))

    async def update_quantity(self, session: Session, medicine_id: int, quantity: int) -> WorkflowResult:
        _checked_stock(quantity)
        await self._as_admin(session)
        medicine = await self._medicine(medicine_id)
        handle = await self._submit(session, Functions.UPDATE_MEDICINE_QUANTITY, (medicine.id, quantity))
        return WorkflowResult(handle=handle, refreshed=await self._refresh(MEDICINE_QUERIES))

    async def update_discount(self, session: Session, medicine_id: int, discount: int) -> WorkflowResult:
        _checked_discount(discount)
        await self._as_admin(session)
        medicine = await self._medicine(medicine_id)
        handle = await self._submit(session, Functions.UPDATE_MEDICINE_DISCOUNT, (medicine.id, discount))
        return WorkflowResult(handle=handle, refreshed=await self._refresh(MEDICINE_QUERIES))

    async def update_location(self, session: Session, medicine_id: int, location: str) -> WorkflowResult:
        await self._as_admin(session)
        medicine = await self._medicine(medicine_id)
        handle = await self._submit(session, Functions.UPDATE_MEDICINE_LOCATION, (medicine.id, location))
        return WorkflowResult(handle=handle, refreshed=await self._refresh(MEDICINE_QUERIES))

    async def toggle_active(self, session: Session, medicine_id: int) -> WorkflowResult:
        """Flip a listing between active and inactive."""
        await self._as_admin(session)
        medicine = await self._medicine(medicine_id)
        handle = await self._submit(session, Functions.UPDATE_MEDICINE_ACTIVE, (medicine.id,))
        return WorkflowResult(handle=handle, refreshed=await self._refresh(MEDICINE_QUERIES))

    async def approve_doctor(self, session: Session, doctor_id: int) -> WorkflowResult:
        """Approve a registered doctor, then refetch only the doctor lists."""
        await self._as_admin(session)
        doctor = await self.gateway.fetch_one("doctor", doctor_id)
        if doctor is None:
            raise UnknownRecord(f"Doctor #{doctor_id} does not exist.")
        if doctor.is_approved:
            raise InvalidState(f"Doctor #{doctor_id} is already approved.")

        handle = await self._submit(session, Functions.APPROVE_DOCTOR, (doctor.id,))
        refreshed = await self._refresh({"doctors": "doctors", "approved_doctors": "approved_doctors"})
        return WorkflowResult(handle=handle, refreshed=refreshed)

    async def update_fee(self, session: Session, kind: FeeKind, amount: Union[str, int]) -> WorkflowResult:
        """Set a registration or appointment fee from a decimal ether amount."""
        kind = FeeKind(kind)
        if kind not in FEE_SETTERS:
            raise InvalidState(f"The {kind.value} amount is not a configurable fee.")
        fee_wei = to_smallest_unit(amount)
        await self._as_admin(session)

        handle = await self._submit(session, FEE_SETTERS[kind], (fee_wei,))
        logger.info(f"{kind.value} fee set to {fee_wei} wei")
        return WorkflowResult(handle=handle, amount_wei=fee_wei, info=await self.gateway.contract_info())

    async def update_admin(self, session: Session, new_admin: str) -> WorkflowResult:
        """Hand the admin role to another address. The current session loses admin rights."""
        new_admin = _checked_address(new_admin)
        await self._as_admin(session)

        handle = await self._submit(session, Functions.UPDATE_ADMIN, (new_admin,))
        logger.warning(f"Admin role transferred from {session.address} to {new_admin}")
        return WorkflowResult(handle=handle, info=await self.gateway.contract_info())


class DoctorActions(Workflow):
    async def prescribe(self, session: Session, medicine_id: int, patient_id: int) -> WorkflowResult:
        """Prescribe a medicine; both records must exist and the doctor must be approved."""
        self._precheck(session)
        require_doctor(await self.roles.resolve_role(session.address))

        medicine, patient = await asyncio.gather(
            self.gateway.fetch_one("medicine", medicine_id),
            self.gateway.fetch_one("patient", patient_id),
        )
        if medicine is None:
            raise UnknownRecord(f"Medicine #{medicine_id} does not exist.")
        if patient is None:
            raise UnknownRecord(f"Patient #{patient_id} does not exist.")

        handle = await self._submit(session, Functions.PRESCRIBE_MEDICINE, (medicine.id, patient.id))
        refreshed = await self._refresh({"prescriptions": ("patient_prescriptions", patient.id)})
        return WorkflowResult(handle=handle, refreshed=refreshed)

    async def add_medical_history(self, session: Session, patient_id: int, entry: str) -> WorkflowResult:
        """Append one entry to a patient's medical history."""
        if not entry or not entry.strip():
            raise InvalidState("A medical history entry cannot be empty.")
        self._precheck(session)
        require_doctor(await self.roles.resolve_role(session.address))

        patient = await self.gateway.fetch_one("patient", patient_id)
        if patient is None:
            raise UnknownRecord(f"Patient #{patient_id} does not exist.")

        handle = await self._submit(session, Functions.UPDATE_MEDICAL_HISTORY, (patient.id, entry.strip()))
        refreshed = await self._refresh({"medical_history": ("medical_history", patient.id)})
        return WorkflowResult(handle=handle, refreshed=refreshed)

    async def complete_appointment(self, session: Session, appointment_id: int) -> WorkflowResult:
        """Close an open appointment of this doctor."""
        self._precheck(session)
        doctor_id = require_doctor(await self.roles.resolve_role(session.address))

        appointment = await self.gateway.fetch_one("appointment", appointment_id)
        if appointment is None:
            raise UnknownRecord(f"Appointment #{appointment_id} does not exist.")
        if appointment.doctor_id != doctor_id:
            raise NotAuthorized("This appointment belongs to another doctor.")
        if not appointment.is_open:
            raise InvalidState(f"Appointment #{appointment_id} is already completed.")

        handle = await self._submit(session, Functions.COMPLETE_APPOINTMENT, (appointment.id,))
        refreshed = await self._refresh({"doctor_appointments": ("doctor_appointments", doctor_id)})
        return WorkflowResult(handle=handle, refreshed=refreshed)


class Messaging(Workflow):
    async def send_message(self, session: Session, friend: str, text: str) -> WorkflowResult:
        friend = _checked_address(friend)
        if not text or not text.strip():
            raise InvalidState("A message cannot be empty.")
        self._precheck(session)

        handle = await self._submit(session, Functions.SEND_MESSAGE, (friend, session.address, text))
        refreshed = await self._refresh({"messages": ("messages", friend, session.address)})
        return WorkflowResult(handle=handle, refreshed=refreshed)
