"""
Read gateway for ledger state.

All reads are side-effect free. Raw contract tuples are normalized into the
pydantic records in ``medchain.models``. Public read methods never raise:
failures degrade to empty results (or ``None``) and are logged; ``read_many``
additionally reports which sections failed. The ``fetch_*`` methods are the
strict variants used by the write path, which must not act on a silently
empty read.
"""

import asyncio
import logging
from collections.abc import Iterable, Mapping
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from web3 import Web3

from medchain.errors import MedchainError, RevertedByContract, classify_error
from medchain.ledger import Functions, LedgerClient
from medchain.models import (
    AppointmentRecord, ChatMessage, ContractInfo, DoctorRecord, Friend, MedicineRecord,
    NotificationRecord, OrderRecord, PatientRecord, PrescriptionRecord, ReadBatch, UserProfile,
)

logger = logging.getLogger(__name__)

# Positional layouts of the contract structs
MEDICINE_FIELDS = ("id", "IPFS_URL", "price", "quantity", "discount", "currentLocation", "active")
DOCTOR_FIELDS = ("id", "IPFS_URL", "accountAddress", "appointmentCount", "successfulTreatmentCount", "isApproved")
PATIENT_FIELDS = ("id", "IPFS_URL", "medicalHistory", "accountAddress", "boughtMedicines")
APPOINTMENT_FIELDS = ("id", "patientId", "doctorId", "date", "from", "to", "appointmentDate",
                      "condition", "message", "isOpen")
PRESCRIPTION_FIELDS = ("id", "medicineId", "patientId", "doctorId", "date")
ORDER_FIELDS = ("medicineId", "price", "payAmount", "quantity", "patientId", "date")
NOTIFICATION_FIELDS = ("id", "userAddress", "message", "timestamp", "categoryType")
MESSAGE_FIELDS = ("sender", "timestamp", "msg")
FRIEND_FIELDS = ("pubkey", "name")
USER_FIELDS = ("name", "userType", "friendList")


def _fields(raw: Any, names: Sequence[str]) -> Dict[str, Any]:
    """Map a struct returned by web3 (tuple, named tuple or mapping) to a dict keyed by field name."""
    if isinstance(raw, Mapping):
        return {name: raw.get(name) for name in names}
    if hasattr(raw, "_asdict"):
        return _fields(raw._asdict(), names)
    if isinstance(raw, (str, bytes)) or not isinstance(raw, Iterable):
        raise ValueError(f"Expected a struct with {len(names)} fields, got {type(raw).__name__}")
    values = list(raw)
    if len(values) < len(names):
        raise ValueError(f"Expected {len(names)} fields, got {len(values)}")
    return dict(zip(names, values))


def to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, (bytes, bytearray)):
        return int.from_bytes(value, "big")
    return int(value)


def to_bool(value: Any) -> bool:
    """Rebuild a flag from bool, integer, hex/bytes or string encodings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, (bytes, bytearray)):
        return any(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered.startswith("0x"):
            return int(lowered, 16) != 0
        return lowered in ("true", "1", "yes")
    return bool(value)


def to_address(value: Any) -> str:
    if not value:
        return ""
    try:
        return Web3.to_checksum_address(value)
    except (ValueError, TypeError):
        return str(value)


def normalize_medicine(raw: Any) -> MedicineRecord:
    f = _fields(raw, MEDICINE_FIELDS)
    return MedicineRecord(
        id=to_int(f["id"]),
        metadata_ref=f["IPFS_URL"] or "",
        price_wei=to_int(f["price"]),
        quantity=to_int(f["quantity"]),
        discount_percent=to_int(f["discount"]),
        location=f["currentLocation"] or "",
        active=to_bool(f["active"]),
    )


def normalize_doctor(raw: Any) -> DoctorRecord:
    f = _fields(raw, DOCTOR_FIELDS)
    return DoctorRecord(
        id=to_int(f["id"]),
        metadata_ref=f["IPFS_URL"] or "",
        account_address=to_address(f["accountAddress"]),
        appointment_count=to_int(f["appointmentCount"]),
        successful_treatment_count=to_int(f["successfulTreatmentCount"]),
        is_approved=to_bool(f["isApproved"]),
    )


def normalize_patient(raw: Any) -> PatientRecord:
    f = _fields(raw, PATIENT_FIELDS)
    return PatientRecord(
        id=to_int(f["id"]),
        metadata_ref=f["IPFS_URL"] or "",
        medical_history=[str(entry) for entry in (f["medicalHistory"] or [])],
        account_address=to_address(f["accountAddress"]),
        bought_medicines=[to_int(m) for m in (f["boughtMedicines"] or [])],
    )


def normalize_appointment(raw: Any) -> AppointmentRecord:
    f = _fields(raw, APPOINTMENT_FIELDS)
    return AppointmentRecord(
        id=to_int(f["id"]),
        patient_id=to_int(f["patientId"]),
        doctor_id=to_int(f["doctorId"]),
        date=to_int(f["date"]),
        from_time=f["from"] or "",
        to_time=f["to"] or "",
        appointment_date=f["appointmentDate"] or "",
        condition=f["condition"] or "",
        message=f["message"] or "",
        is_open=to_bool(f["isOpen"]),
    )


def normalize_prescription(raw: Any) -> PrescriptionRecord:
    f = _fields(raw, PRESCRIPTION_FIELDS)
    return PrescriptionRecord(
        id=to_int(f["id"]),
        medicine_id=to_int(f["medicineId"]),
        patient_id=to_int(f["patientId"]),
        doctor_id=to_int(f["doctorId"]),
        date=to_int(f["date"]),
    )


def normalize_order(raw: Any) -> OrderRecord:
    f = _fields(raw, ORDER_FIELDS)
    return OrderRecord(
        medicine_id=to_int(f["medicineId"]),
        unit_price_wei=to_int(f["price"]),
        pay_amount_wei=to_int(f["payAmount"]),
        quantity=to_int(f["quantity"]),
        patient_id=to_int(f["patientId"]),
        date=to_int(f["date"]),
    )


def normalize_notification(raw: Any) -> NotificationRecord:
    f = _fields(raw, NOTIFICATION_FIELDS)
    return NotificationRecord(
        id=to_int(f["id"]),
        user_address=to_address(f["userAddress"]),
        message=f["message"] or "",
        timestamp=to_int(f["timestamp"]),
        category=f["categoryType"] or "",
    )


def normalize_message(raw: Any) -> ChatMessage:
    f = _fields(raw, MESSAGE_FIELDS)
    return ChatMessage(sender=to_address(f["sender"]), timestamp=to_int(f["timestamp"]), text=f["msg"] or "")


def normalize_friend(raw: Any) -> Friend:
    f = _fields(raw, FRIEND_FIELDS)
    return Friend(address=to_address(f["pubkey"]), name=f["name"] or "")


def normalize_user(raw: Any) -> UserProfile:
    f = _fields(raw, USER_FIELDS)
    return UserProfile(name=f["name"] or "", user_type=f["userType"] or "")


# List queries: kind -> (contract function, item normalizer)
LIST_QUERIES: Dict[str, Tuple[str, Callable[[Any], Any]]] = {
    "medicines": (Functions.GET_ALL_MEDICINES, normalize_medicine),
    "doctors": (Functions.GET_ALL_DOCTORS, normalize_doctor),
    "approved_doctors": (Functions.GET_ALL_APPROVED_DOCTORS, normalize_doctor),
    "patients": (Functions.GET_ALL_PATIENTS, normalize_patient),
    "appointments": (Functions.GET_ALL_APPOINTMENTS, normalize_appointment),
    "prescriptions": (Functions.GET_ALL_PRESCRIPTIONS, normalize_prescription),
    "patient_orders": (Functions.GET_PATIENT_ORDERS, normalize_order),
    "patient_prescriptions": (Functions.GET_PATIENT_PRESCRIPTIONS, normalize_prescription),
    "patient_appointments": (Functions.GET_PATIENT_APPOINTMENTS, normalize_appointment),
    "doctor_appointments": (Functions.GET_DOCTOR_APPOINTMENTS, normalize_appointment),
    "medical_history": (Functions.GET_MEDICAL_HISTORY, str),
    "notifications": (Functions.GET_NOTIFICATIONS, normalize_notification),
    "friend_list": (Functions.GET_FRIEND_LIST, normalize_friend),
    "messages": (Functions.GET_MESSAGES, normalize_message),
}

# Single-record queries: kind -> (contract function, normalizer)
RECORD_QUERIES: Dict[str, Tuple[str, Callable[[Any], Any]]] = {
    "medicine": (Functions.GET_MEDICINE_DETAILS, normalize_medicine),
    "doctor": (Functions.GET_DOCTOR_DETAILS, normalize_doctor),
    "patient": (Functions.GET_PATIENT_DETAILS, normalize_patient),
    "appointment": (Functions.GET_APPOINTMENT, normalize_appointment),
    "prescription": (Functions.GET_PRESCRIPTION, normalize_prescription),
}

DASHBOARD_SECTIONS = {
    "medicines": "medicines",
    "doctors": "doctors",
    "patients": "patients",
    "appointments": "appointments",
}

# A section is either a kind name or (kind, *args)
Query = Union[str, Tuple[Any, ...]]


class LedgerReadGateway:
    def __init__(self, ledger: LedgerClient):
        self.ledger = ledger

    async def _call(self, function: str, *args) -> Any:
        try:
            return await self.ledger.call(function, *args)
        except Exception as e:
            raise classify_error(e) from e

    # strict reads

    async def fetch_all(self, kind: str, *args) -> List[Any]:
        """Read and normalize a list query; raises a MedchainError on failure."""
        if kind not in LIST_QUERIES:
            raise KeyError(f"Unknown list query: {kind}")
        function, normalize = LIST_QUERIES[kind]
        raw = await self._call(function, *args)
        return [normalize(item) for item in (raw or [])]

    async def fetch_one(self, kind: str, record_id: int) -> Optional[Any]:
        """
        Read a single record; None if it does not exist.

        The contract returns a zeroed struct (or reverts) for unknown ids, so
        both are reported as missing. Network errors are raised.
        """
        if kind not in RECORD_QUERIES:
            raise KeyError(f"Unknown record query: {kind}")
        if record_id is None or int(record_id) <= 0:
            return None
        function, normalize = RECORD_QUERIES[kind]
        try:
            raw = await self._call(function, int(record_id))
        except RevertedByContract as e:
            logger.info(f"{kind} #{record_id} not found: {e.reason}")
            return None
        record = normalize(raw)
        return record if record.id else None

    async def fetch_value(self, function: str, *args) -> int:
        """Read a single integer getter (fees, counters)."""
        return to_int(await self._call(function, *args))

    async def fetch_contract_info(self) -> ContractInfo:
        results = await asyncio.gather(
            self._call(Functions.ADMIN),
            self._call(Functions.DOCTOR_FEE),
            self._call(Functions.PATIENT_FEE),
            self._call(Functions.APPOINTMENT_FEE),
            self._call(Functions.MEDICINE_COUNT),
            self._call(Functions.DOCTOR_COUNT),
            self._call(Functions.PATIENT_COUNT),
            self._call(Functions.PRESCRIPTION_COUNT),
            self._call(Functions.APPOINTMENT_COUNT),
        )
        admin, doctor_fee, patient_fee, appointment_fee, *counts = results
        return ContractInfo(
            admin=to_address(admin),
            registration_doctor_fee_wei=to_int(doctor_fee),
            registration_patient_fee_wei=to_int(patient_fee),
            appointment_fee_wei=to_int(appointment_fee),
            medicine_count=to_int(counts[0]),
            doctor_count=to_int(counts[1]),
            patient_count=to_int(counts[2]),
            prescription_count=to_int(counts[3]),
            appointment_count=to_int(counts[4]),
        )

    async def fetch_id_for(self, role: str, address: str) -> Optional[int]:
        """Doctor or patient id registered for an address; None when unregistered."""
        function = Functions.GET_DOCTOR_ID if role == "doctor" else Functions.GET_PATIENT_ID
        record_id = to_int(await self._call(function, to_address(address)))
        return record_id or None

    # tolerant reads

    async def read_all(self, kind: str, *args) -> List[Any]:
        """All records of a kind; an empty list if the read fails."""
        try:
            return await self.fetch_all(kind, *args)
        except (MedchainError, ValueError, TypeError) as e:
            logger.warning(f"Read of {kind} failed, returning no records: {e}")
            return []

    async def read_one(self, kind: str, record_id: int) -> Optional[Any]:
        try:
            return await self.fetch_one(kind, record_id)
        except (MedchainError, ValueError, TypeError) as e:
            logger.warning(f"Read of {kind} #{record_id} failed: {e}")
            return None

    async def read_many(self, queries: Dict[str, Query]) -> ReadBatch:
        """
        Issue independent list queries in parallel and wait for all of them.

        A failing query yields an empty section and an entry in
        ``ReadBatch.failures``; it never aborts the others.

        Args:
            queries: Section name -> kind, or (kind, *args) for queries taking arguments

        Returns:
            ReadBatch: Sections in the order given, plus the failure markers
        """
        names = list(queries)
        calls = []
        for name in names:
            query = queries[name]
            kind, args = (query, ()) if isinstance(query, str) else (query[0], tuple(query[1:]))
            calls.append(self.fetch_all(kind, *args))

        results = await asyncio.gather(*calls, return_exceptions=True)

        batch = ReadBatch()
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(f"Partial failure: section {name} unavailable ({type(result).__name__}: {result})")
                batch.sections[name] = []
                batch.failures[name] = str(result)
            else:
                batch.sections[name] = result
        return batch

    async def dashboard(self) -> ReadBatch:
        """Medicines, doctors, patients and appointments, fetched in parallel."""
        return await self.read_many(DASHBOARD_SECTIONS)

    async def contract_info(self) -> Optional[ContractInfo]:
        try:
            return await self.fetch_contract_info()
        except (MedchainError, ValueError, TypeError) as e:
            logger.warning(f"Could not read contract info: {e}")
            return None

    async def user_exists(self, address: str) -> bool:
        try:
            return to_bool(await self._call(Functions.USER_EXISTS, to_address(address)))
        except (MedchainError, ValueError, TypeError) as e:
            logger.warning(f"Could not check whether {address} exists: {e}")
            return False

    async def user_profile(self, address: str) -> Optional[UserProfile]:
        try:
            return normalize_user(await self._call(Functions.USER_TYPE, to_address(address)))
        except (MedchainError, ValueError, TypeError) as e:
            logger.warning(f"Could not read user type of {address}: {e}")
            return None

    async def doctor_id_for(self, address: str) -> Optional[int]:
        try:
            return await self.fetch_id_for("doctor", address)
        except (MedchainError, ValueError, TypeError) as e:
            logger.warning(f"Could not read doctor id of {address}: {e}")
            return None

    async def patient_id_for(self, address: str) -> Optional[int]:
        try:
            return await self.fetch_id_for("patient", address)
        except (MedchainError, ValueError, TypeError) as e:
            logger.warning(f"Could not read patient id of {address}: {e}")
            return None

    async def patient_orders(self, patient_id: int) -> List[OrderRecord]:
        return await self.read_all("patient_orders", patient_id)

    async def patient_prescriptions(self, patient_id: int) -> List[PrescriptionRecord]:
        return await self.read_all("patient_prescriptions", patient_id)

    async def patient_appointments(self, patient_id: int) -> List[AppointmentRecord]:
        return await self.read_all("patient_appointments", patient_id)

    async def doctor_appointments(self, doctor_id: int) -> List[AppointmentRecord]:
        return await self.read_all("doctor_appointments", doctor_id)

    async def patient_medical_history(self, patient_id: int) -> List[str]:
        return await self.read_all("medical_history", patient_id)

    async def notifications(self, address: str) -> List[NotificationRecord]:
        return await self.read_all("notifications", to_address(address))

    async def friend_list(self, address: str) -> List[Friend]:
        return await self.read_all("friend_list", to_address(address))

    async def messages(self, friend: str, me: str) -> List[ChatMessage]:
        return await self.read_all("messages", to_address(friend), to_address(me))

    async def most_popular_doctor(self) -> Optional[DoctorRecord]:
        try:
            doctor = normalize_doctor(await self._call(Functions.GET_MOST_POPULAR_DOCTOR))
        except (MedchainError, ValueError, TypeError) as e:
            logger.warning(f"Could not read most popular doctor: {e}")
            return None
        return doctor if doctor.id else None
