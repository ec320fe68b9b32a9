"""
Binding to the healthcare ledger contract.

``LedgerClient`` is the only place that talks to web3. It exposes the small
surface the rest of the package needs: view calls, transaction building,
raw submission and receipt lookups. Tests substitute an in-memory double with
the same methods.
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional

from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TransactionNotFound

from medchain.constants import ABI_PATH, CONTRACT_ADDRESS, GAS_PRICE_PREMIUM, RPC_URL

logger = logging.getLogger(__name__)


class Functions:
    """Contract function names, grouped by entity"""

    # medicine
    ADD_MEDICINE = "ADD_MEDICINE"
    UPDATE_MEDICINE_PRICE = "UPDATE_MEDICINE_PRICE"
    UPDATE_MEDICINE_QUANTITY = "UPDATE_MEDICINE_QUANTITY"
    UPDATE_MEDICINE_DISCOUNT = "UPDATE_MEDICINE_DISCOUNT"
    UPDATE_MEDICINE_LOCATION = "UPDATE_MEDICINE_LOCATION"
    UPDATE_MEDICINE_ACTIVE = "UPDATE_MEDICINE_ACTIVE"
    GET_ALL_MEDICINES = "GET_ALL_REGISTERED_MEDICINES"
    GET_MEDICINE_DETAILS = "GET_MEDICINE_DETAILS"

    # doctor
    ADD_DOCTOR = "ADD_DOCTOR"
    APPROVE_DOCTOR = "APPROVE_DOCTOR_STATUS"
    GET_DOCTOR_ID = "GET_DOCTOR_ID"
    GET_DOCTOR_DETAILS = "GET_DOCTOR_DETAILS"
    GET_ALL_DOCTORS = "GET_ALL_REGISTERED_DOCTORS"
    GET_ALL_APPROVED_DOCTORS = "GET_ALL_APPROVED_DOCTORS"
    GET_MOST_POPULAR_DOCTOR = "GET_MOST_POPULAR_DOCTOR"

    # patient
    ADD_PATIENT = "ADD_PATIENTS"
    GET_PATIENT_ID = "GET_PATIENT_ID"
    GET_PATIENT_DETAILS = "GET_PATIENT_DETAILS"
    GET_ALL_PATIENTS = "GET_ALL_REGISTERED_PATIENTS"
    UPDATE_MEDICAL_HISTORY = "UPDATE_PATIENT_MEDICAL_HISTORY"
    GET_MEDICAL_HISTORY = "GET_PATIENT_MEDICIAL_HISTORY"

    # appointment
    BOOK_APPOINTMENT = "BOOK_APPOINTMENT"
    COMPLETE_APPOINTMENT = "COMPLETE_APPOINTMENT"
    GET_ALL_APPOINTMENTS = "GET_ALL_APPOINTMENTS"
    GET_APPOINTMENT = "GET_PATIENT_APPOINTMENT"
    GET_PATIENT_APPOINTMENTS = "GET_PATIENT_APPOINTMENT_HISTORYS"
    GET_DOCTOR_APPOINTMENTS = "GET_DOCTOR_APPOINTMENTS_HISTORYS"

    # prescription
    PRESCRIBE_MEDICINE = "PRESCRIBE_MEDICINE"
    GET_ALL_PRESCRIPTIONS = "GET_ALL_PRESCRIBED_MEDICINES"
    GET_PRESCRIPTION = "GET_PRESCRIPTION_DETAILS"
    GET_PATIENT_PRESCRIPTIONS = "GET_ALL_PRESCRIBED_MEDICINES_OF_PATIENT"

    # order
    BUY_MEDICINE = "BUY_MEDICINE"
    GET_PATIENT_ORDERS = "GET_ALL_PATIENT_ORDERS"

    # messaging and notifications
    SEND_MESSAGE = "_SEND_MESSAGE"
    GET_MESSAGES = "GET_READ_MESSAGE"
    GET_FRIEND_LIST = "GET_MY_FRIEND_LIST"
    GET_NOTIFICATIONS = "GET_NOTIFICATIONS"

    # admin
    UPDATE_DOCTOR_FEE = "UPDATE_REGISTRATION_FEE"
    UPDATE_PATIENT_FEE = "UPDATE_REGISTRATION_PATIENT_FEE"
    UPDATE_APPOINTMENT_FEE = "UPDATE_APPOINTMENT_FEE"
    UPDATE_ADMIN = "UPDATE_ADMIN_ADDRESS"

    # introspection
    ADMIN = "admin"
    DOCTOR_FEE = "registrationDoctorFee"
    PATIENT_FEE = "registrationPatientFee"
    APPOINTMENT_FEE = "appointmentFee"
    MEDICINE_COUNT = "medicineCount"
    DOCTOR_COUNT = "doctorCount"
    PATIENT_COUNT = "patientCount"
    PRESCRIPTION_COUNT = "prescriptionCount"
    APPOINTMENT_COUNT = "appointmentCount"
    USER_EXISTS = "CHECK_USER_EXISTS"
    USER_TYPE = "GET_USERNAME_TYPE"


def load_contract_abi(path: str = ABI_PATH) -> List[Dict[str, Any]]:
    """Load the contract ABI from a compiled artifact ({"abi": [...]}) or a bare ABI list."""
    with open(path, "r") as f:
        artifact = json.load(f)
    abi = artifact["abi"] if isinstance(artifact, dict) else artifact
    logger.debug(f"Loaded contract ABI from {os.path.basename(path)} ({len(abi)} entries)")
    return abi


class LedgerClient:
    """Async web3 binding to a single deployed contract."""

    def __init__(self, w3: Optional[AsyncWeb3] = None, contract_address: str = CONTRACT_ADDRESS,
                 abi: Optional[List[Dict[str, Any]]] = None, rpc_url: str = RPC_URL):
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(
            rpc_url,
            request_kwargs={"timeout": 60},
        ))
        self.address = AsyncWeb3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.address, abi=abi or load_contract_abi())

    async def call(self, function: str, *args) -> Any:
        """Call a view function."""
        return await getattr(self.contract.functions, function)(*args).call()

    async def build_transaction(self, function: str, args: tuple, sender: str, value: int = 0) -> Dict[str, Any]:
        """
        Build an unsigned transaction for a state-changing function.

        Gas is estimated by the node, so a call that would revert fails here
        with ContractLogicError before anything is signed.
        """
        sender = AsyncWeb3.to_checksum_address(sender)
        nonce = await self.w3.eth.get_transaction_count(sender, "pending")
        gas_price = await self.w3.eth.gas_price
        return await getattr(self.contract.functions, function)(*args).build_transaction({
            "from": sender,
            "value": value,
            "nonce": nonce,
            "gasPrice": int(gas_price * GAS_PRICE_PREMIUM),
        })

    async def send_raw_transaction(self, raw_transaction: bytes) -> str:
        tx_hash = await self.w3.eth.send_raw_transaction(raw_transaction)
        return AsyncWeb3.to_hex(tx_hash)

    async def get_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt of an included transaction, or None while it is not yet included."""
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def failure_reason(self, tx: Dict[str, Any], block_number: int) -> str:
        """Replay a failed transaction at its block to recover the revert reason."""
        call = {k: tx[k] for k in ("from", "to", "data", "value") if k in tx}
        try:
            await self.w3.eth.call(call, block_identifier=block_number)
        except ContractLogicError as e:
            return getattr(e, "message", None) or str(e)
        return "transaction reverted"
