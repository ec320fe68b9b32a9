from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Optional

from medchain.amounts import discounted_unit_price


class DoctorRecord(BaseModel):
    """Doctor as stored on-chain"""
    id: int
    account_address: str
    metadata_ref: str = ""
    is_approved: bool = False
    appointment_count: int = 0
    successful_treatment_count: int = 0


class PatientRecord(BaseModel):
    """Patient as stored on-chain; medical_history is append-only"""
    id: int
    account_address: str
    metadata_ref: str = ""
    medical_history: List[str] = []
    bought_medicines: List[int] = []


class MedicineRecord(BaseModel):
    """Medicine listing; prices are in wei"""
    id: int
    metadata_ref: str = ""
    price_wei: int = Field(ge=0)
    quantity: int = Field(ge=0)
    discount_percent: int = Field(default=0, ge=0, le=100)
    active: bool = True
    location: str = ""

    @property
    def discounted_price_wei(self) -> int:
        return discounted_unit_price(self.price_wei, self.discount_percent)


class AppointmentRecord(BaseModel):
    """Appointment; is_open goes from True to False exactly once"""
    id: int
    patient_id: int
    doctor_id: int
    from_time: str = ""
    to_time: str = ""
    date: int = 0
    appointment_date: str = ""
    condition: str = ""
    message: str = ""
    is_open: bool = True


class PrescriptionRecord(BaseModel):
    id: int
    medicine_id: int
    doctor_id: int
    patient_id: int
    date: int = 0


class OrderRecord(BaseModel):
    medicine_id: int
    patient_id: int
    quantity: int
    unit_price_wei: int = 0
    pay_amount_wei: int
    date: int = 0


class ContractInfo(BaseModel):
    """Snapshot of the contract's admin address, fees and counters"""
    admin: str
    registration_doctor_fee_wei: int = 0
    registration_patient_fee_wei: int = 0
    appointment_fee_wei: int = 0
    medicine_count: int = 0
    doctor_count: int = 0
    patient_count: int = 0
    prescription_count: int = 0
    appointment_count: int = 0


class UserProfile(BaseModel):
    name: str = ""
    user_type: str = ""


class Friend(BaseModel):
    address: str
    name: str = ""


class ChatMessage(BaseModel):
    sender: str
    timestamp: int = 0
    text: str = ""


class NotificationRecord(BaseModel):
    id: int
    user_address: str
    message: str = ""
    timestamp: int = 0
    category: str = ""


class Metadata(BaseModel):
    """Off-chain document describing an entity; unknown keys are kept"""
    model_config = ConfigDict(extra="allow")

    name: str = ""
    description: str = ""
    image: Optional[str] = None
    degraded: bool = False


class Enriched(BaseModel):
    """An on-chain record paired with its off-chain metadata"""
    record: Any
    metadata: Metadata


class ReadBatch(BaseModel):
    """Result of a fan-out read; failed sections are empty and listed in failures"""
    sections: Dict[str, List[Any]] = {}
    failures: Dict[str, str] = {}

    @property
    def partial(self) -> bool:
        return bool(self.failures)

    def __getitem__(self, section: str) -> List[Any]:
        return self.sections.get(section, [])


class Quote(BaseModel):
    """Amount shown to the user before submission"""
    kind: str
    amount_wei: int
    amount: str
    display: str
    params: Dict[str, Any] = {}
