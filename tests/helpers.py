import json
import logging
import threading
import time
from collections import defaultdict

import requests
from web3.exceptions import ContractLogicError

from medchain.content_store import extract_cid
from medchain.gateway import (
    APPOINTMENT_FIELDS, DOCTOR_FIELDS, MEDICINE_FIELDS, PATIENT_FIELDS, PRESCRIPTION_FIELDS,
)
from medchain.ledger import Functions
from medchain.session import Session, Signer

for name in ("medchain.gateway", "medchain.metadata", "medchain.roles", "medchain.transactions"):
    logging.getLogger(name).setLevel(logging.CRITICAL)

# Well-known development accounts
ADMIN = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"
PATIENT = "0x70997970C51812dc3A010C7d01b50e0d17dc79C8"
DOCTOR = "0x3C44CdDdB6a900fa2b585dd299e03d12FA4293BC"
OTHER = "0x90F79bf6EB2c4f870365E785982E1f101E93b906"

ETHER = 10 ** 18


def _zeroed(fields):
    return {name: None for name in fields}


class FakeLedger:
    """
    In-memory stand-in for LedgerClient.

    Records are stored as mappings keyed by contract field names. Submitted
    transactions are executed when their receipt is first requested, unless
    ``auto_mine`` is off, in which case they stay pending.
    """

    def __init__(self, admin=ADMIN):
        self.admin = admin
        self.fees = {
            Functions.DOCTOR_FEE: ETHER // 100,
            Functions.PATIENT_FEE: ETHER // 200,
            Functions.APPOINTMENT_FEE: ETHER // 400,
        }
        self.medicines = {}
        self.doctors = {}
        self.patients = {}
        self.appointments = {}
        self.prescriptions = {}
        self.orders = defaultdict(list)
        self.users = {}
        self.messages = defaultdict(list)
        self.block = 100
        self.auto_mine = True

        self.calls = []
        self.built = []
        self.sent = []
        self.failing = set()
        self.build_errors = {}
        self.revert_next = None
        self._pending = {}
        self._receipts = {}
        self._reasons = {}

    # seeding

    def add_user(self, address, name, user_type):
        self.users[address.lower()] = {"name": name, "userType": user_type, "friendList": []}

    def add_medicine(self, price_wei, quantity, discount=0, active=True, ref="ipfs://QmMedicine", location="Pharmacy"):
        medicine_id = len(self.medicines) + 1
        self.medicines[medicine_id] = {
            "id": medicine_id, "IPFS_URL": f"{ref}{medicine_id}", "price": price_wei, "quantity": quantity,
            "discount": discount, "currentLocation": location, "active": active,
        }
        return medicine_id

    def add_doctor(self, address, approved=True, name="Dr. Grey", ref="ipfs://QmDoctor"):
        doctor_id = len(self.doctors) + 1
        self.doctors[doctor_id] = {
            "id": doctor_id, "IPFS_URL": f"{ref}{doctor_id}", "accountAddress": address,
            "appointmentCount": 0, "successfulTreatmentCount": 0, "isApproved": approved,
        }
        self.add_user(address, name, "doctor")
        return doctor_id

    def add_patient(self, address, name="Pat", ref="ipfs://QmPatient"):
        patient_id = len(self.patients) + 1
        self.patients[patient_id] = {
            "id": patient_id, "IPFS_URL": f"{ref}{patient_id}", "medicalHistory": ["No medical history"],
            "accountAddress": address, "boughtMedicines": [],
        }
        self.add_user(address, name, "patient")
        return patient_id

    def add_appointment(self, patient_id, doctor_id, is_open=True):
        appointment_id = len(self.appointments) + 1
        self.appointments[appointment_id] = {
            "id": appointment_id, "patientId": patient_id, "doctorId": doctor_id, "date": 1700000000,
            "from": "10:00", "to": "10:30", "appointmentDate": "2026-11-02", "condition": "Checkup",
            "message": "", "isOpen": is_open,
        }
        return appointment_id

    # LedgerClient surface

    async def call(self, function, *args):
        self.calls.append((function, args))
        if function in self.failing:
            raise ConnectionError(f"connection refused while calling {function}")
        handler = getattr(self, f"_view_{function}", None)
        if handler is None:
            raise AssertionError(f"FakeLedger has no view {function}")
        return handler(*args)

    async def build_transaction(self, function, args, sender, value=0):
        if function in self.build_errors:
            raise self.build_errors[function]
        tx = {"function": function, "args": list(args), "from": sender, "value": value, "nonce": len(self.built)}
        self.built.append(tx)
        return tx

    async def send_raw_transaction(self, raw):
        tx = json.loads(raw.decode())
        tx_hash = "0x%064x" % (len(self.sent) + 1)
        self.sent.append(tx)
        self._pending[tx_hash] = tx
        return tx_hash

    async def get_receipt(self, tx_hash):
        if tx_hash in self._receipts:
            return self._receipts[tx_hash]
        if not self.auto_mine:
            return None
        self.mine(tx_hash)
        return self._receipts[tx_hash]

    async def block_number(self):
        return self.block

    async def failure_reason(self, tx, block_number):
        return self._reasons.get(tx["nonce"], "transaction reverted")

    # mining

    def mine(self, tx_hash):
        tx = self._pending.pop(tx_hash)
        reason = self.revert_next or self._execute(tx["function"], tx["args"], tx["value"], tx["from"])
        self.revert_next = None
        self.block += 1
        if reason:
            self._reasons[tx["nonce"]] = reason
        self._receipts[tx_hash] = {"status": 0 if reason else 1, "blockNumber": self.block,
                                   "transactionHash": tx_hash}

    def _execute(self, function, args, value, sender):
        """Apply a transaction; returns a revert reason or None."""
        if function == Functions.BUY_MEDICINE:
            patient_id, medicine_id, quantity = args
            medicine = self.medicines[medicine_id]
            if not medicine["active"]:
                return "Medicine is not active"
            if quantity > medicine["quantity"]:
                return "Insufficient quantity"
            unit = medicine["price"] * (100 - medicine["discount"]) // 100
            if value != unit * quantity:
                return "Incorrect payment amount"
            medicine["quantity"] -= quantity
            self.orders[patient_id].append({
                "medicineId": medicine_id, "price": medicine["price"], "payAmount": value,
                "quantity": quantity, "patientId": patient_id, "date": 1700000000,
            })
            self.patients[patient_id]["boughtMedicines"].append(medicine_id)
        elif function == Functions.BOOK_APPOINTMENT:
            if value != self.fees[Functions.APPOINTMENT_FEE]:
                return "Incorrect appointment fee"
            patient_id, doctor_id, start, end, day, condition, message = args[:7]
            appointment_id = self.add_appointment(patient_id, doctor_id)
            self.appointments[appointment_id].update(
                {"from": start, "to": end, "appointmentDate": day, "condition": condition, "message": message})
            self.doctors[doctor_id]["appointmentCount"] += 1
        elif function == Functions.ADD_PATIENT:
            if value != self.fees[Functions.PATIENT_FEE]:
                return "Incorrect registration fee"
            ref, history, address, _, name = args[:5]
            patient_id = self.add_patient(address, name=name, ref="")
            self.patients[patient_id].update({"IPFS_URL": ref, "medicalHistory": list(history)})
        elif function == Functions.ADD_DOCTOR:
            if value != self.fees[Functions.DOCTOR_FEE]:
                return "Incorrect registration fee"
            ref, address, name = args[:3]
            doctor_id = self.add_doctor(address, approved=False, name=name, ref="")
            self.doctors[doctor_id]["IPFS_URL"] = ref
        elif function == Functions.APPROVE_DOCTOR:
            self.doctors[args[0]]["isApproved"] = True
        elif function == Functions.ADD_MEDICINE:
            ref, price, quantity, discount, location = args
            medicine_id = self.add_medicine(price, quantity, discount, location=location)
            self.medicines[medicine_id]["IPFS_URL"] = ref
        elif function == Functions.UPDATE_MEDICINE_PRICE:
            self.medicines[args[0]]["price"] = args[1]
        elif function == Functions.UPDATE_MEDICINE_QUANTITY:
            self.medicines[args[0]]["quantity"] = args[1]
        elif function == Functions.UPDATE_MEDICINE_DISCOUNT:
            self.medicines[args[0]]["discount"] = args[1]
        elif function == Functions.UPDATE_MEDICINE_LOCATION:
            self.medicines[args[0]]["currentLocation"] = args[1]
        elif function == Functions.UPDATE_MEDICINE_ACTIVE:
            self.medicines[args[0]]["active"] = not self.medicines[args[0]]["active"]
        elif function == Functions.UPDATE_DOCTOR_FEE:
            self.fees[Functions.DOCTOR_FEE] = args[0]
        elif function == Functions.UPDATE_PATIENT_FEE:
            self.fees[Functions.PATIENT_FEE] = args[0]
        elif function == Functions.UPDATE_APPOINTMENT_FEE:
            self.fees[Functions.APPOINTMENT_FEE] = args[0]
        elif function == Functions.UPDATE_ADMIN:
            self.admin = args[0]
        elif function == Functions.PRESCRIBE_MEDICINE:
            medicine_id, patient_id = args
            prescription_id = len(self.prescriptions) + 1
            self.prescriptions[prescription_id] = {
                "id": prescription_id, "medicineId": medicine_id, "patientId": patient_id,
                "doctorId": self._doctor_id(sender), "date": 1700000000,
            }
        elif function == Functions.UPDATE_MEDICAL_HISTORY:
            self.patients[args[0]]["medicalHistory"].append(args[1])
        elif function == Functions.COMPLETE_APPOINTMENT:
            appointment = self.appointments[args[0]]
            if not appointment["isOpen"]:
                return "Appointment already completed"
            appointment["isOpen"] = False
            self.doctors[appointment["doctorId"]]["successfulTreatmentCount"] += 1
        elif function == Functions.SEND_MESSAGE:
            friend, me, text = args
            self.messages[frozenset((friend.lower(), me.lower()))].append(
                {"sender": me, "timestamp": 1700000000, "msg": text})
        return None

    def _doctor_id(self, address):
        for doctor_id, doctor in self.doctors.items():
            if doctor["accountAddress"].lower() == address.lower():
                return doctor_id
        return 0

    def _patient_id(self, address):
        for patient_id, patient in self.patients.items():
            if patient["accountAddress"].lower() == address.lower():
                return patient_id
        return 0

    # views

    def _view_admin(self):
        return self.admin

    def _view_registrationDoctorFee(self):
        return self.fees[Functions.DOCTOR_FEE]

    def _view_registrationPatientFee(self):
        return self.fees[Functions.PATIENT_FEE]

    def _view_appointmentFee(self):
        return self.fees[Functions.APPOINTMENT_FEE]

    def _view_medicineCount(self):
        return len(self.medicines)

    def _view_doctorCount(self):
        return len(self.doctors)

    def _view_patientCount(self):
        return len(self.patients)

    def _view_prescriptionCount(self):
        return len(self.prescriptions)

    def _view_appointmentCount(self):
        return len(self.appointments)

    def _view_CHECK_USER_EXISTS(self, address):
        return address.lower() in self.users

    def _view_GET_USERNAME_TYPE(self, address):
        return self.users.get(address.lower(), {"name": "", "userType": "", "friendList": []})

    def _view_GET_DOCTOR_ID(self, address):
        return self._doctor_id(address)

    def _view_GET_PATIENT_ID(self, address):
        return self._patient_id(address)

    def _view_GET_ALL_REGISTERED_MEDICINES(self):
        return [dict(m) for m in self.medicines.values()]

    def _view_GET_MEDICINE_DETAILS(self, medicine_id):
        return dict(self.medicines.get(medicine_id, _zeroed(MEDICINE_FIELDS)))

    def _view_GET_ALL_REGISTERED_DOCTORS(self):
        return [dict(d) for d in self.doctors.values()]

    def _view_GET_ALL_APPROVED_DOCTORS(self):
        return [dict(d) for d in self.doctors.values() if d["isApproved"]]

    def _view_GET_DOCTOR_DETAILS(self, doctor_id):
        return dict(self.doctors.get(doctor_id, _zeroed(DOCTOR_FIELDS)))

    def _view_GET_MOST_POPULAR_DOCTOR(self):
        if not self.doctors:
            return _zeroed(DOCTOR_FIELDS)
        return dict(max(self.doctors.values(), key=lambda d: d["successfulTreatmentCount"]))

    def _view_GET_ALL_REGISTERED_PATIENTS(self):
        return [dict(p) for p in self.patients.values()]

    def _view_GET_PATIENT_DETAILS(self, patient_id):
        return dict(self.patients.get(patient_id, _zeroed(PATIENT_FIELDS)))

    def _view_GET_PATIENT_MEDICIAL_HISTORY(self, patient_id):
        return list(self.patients[patient_id]["medicalHistory"])

    def _view_GET_ALL_APPOINTMENTS(self):
        return [dict(a) for a in self.appointments.values()]

    def _view_GET_PATIENT_APPOINTMENT(self, appointment_id):
        return dict(self.appointments.get(appointment_id, _zeroed(APPOINTMENT_FIELDS)))

    def _view_GET_PATIENT_APPOINTMENT_HISTORYS(self, patient_id):
        return [dict(a) for a in self.appointments.values() if a["patientId"] == patient_id]

    def _view_GET_DOCTOR_APPOINTMENTS_HISTORYS(self, doctor_id):
        return [dict(a) for a in self.appointments.values() if a["doctorId"] == doctor_id]

    def _view_GET_ALL_PRESCRIBED_MEDICINES(self):
        return [dict(p) for p in self.prescriptions.values()]

    def _view_GET_PRESCRIPTION_DETAILS(self, prescription_id):
        return dict(self.prescriptions.get(prescription_id, _zeroed(PRESCRIPTION_FIELDS)))

    def _view_GET_ALL_PRESCRIBED_MEDICINES_OF_PATIENT(self, patient_id):
        return [dict(p) for p in self.prescriptions.values() if p["patientId"] == patient_id]

    def _view_GET_ALL_PATIENT_ORDERS(self, patient_id):
        return [dict(o) for o in self.orders[patient_id]]

    def _view_GET_NOTIFICATIONS(self, address):
        return []

    def _view_GET_MY_FRIEND_LIST(self, address):
        return list(self.users.get(address.lower(), {}).get("friendList", []))

    def _view_GET_READ_MESSAGE(self, friend, me):
        return list(self.messages[frozenset((friend.lower(), me.lower()))])


class FakeSigner(Signer):
    """Signs by serializing the transaction; FakeLedger decodes it on submission."""

    def __init__(self, address):
        self.address = address
        self.signed = 0

    async def sign_transaction(self, tx):
        self.signed += 1
        return json.dumps(tx).encode()


class RejectingSigner(Signer):
    """A wallet whose user declines every request."""

    def __init__(self, address):
        self.address = address

    async def sign_transaction(self, tx):
        raise Exception("MetaMask Tx Signature: User denied transaction signature. (code 4001)")


def session_for(address):
    return Session(signer=FakeSigner(address))


class FakeContentStore:
    """In-memory content store; ``fetch`` runs in a worker thread like the real one."""

    def __init__(self, documents=None, delay=0.05):
        self.documents = dict(documents or {})
        self.failing = set()
        self.delay = delay
        self.fetches = defaultdict(int)
        self.pinned = []
        self._lock = threading.Lock()

    def url(self, ref):
        return f"https://gateway.test/ipfs/{extract_cid(ref)}"

    def fetch(self, ref):
        cid = extract_cid(ref)
        with self._lock:
            self.fetches[cid] += 1
        time.sleep(self.delay)
        if cid in self.failing or cid not in self.documents:
            raise requests.exceptions.ConnectionError(f"gateway unreachable for {cid}")
        return dict(self.documents[cid])

    def pin_json(self, document, name, kind="healthcare-json"):
        cid = f"bafyfake{len(self.pinned) + 1}"
        self.pinned.append((name, kind, document))
        self.documents[cid] = document
        return cid


def revert(reason):
    return ContractLogicError(f"execution reverted: {reason}")


def seeded_ledger():
    """Admin, one approved doctor, one patient and two medicines."""
    ledger = FakeLedger()
    ledger.add_user(ADMIN, "Admin", "admin")
    ledger.add_doctor(DOCTOR)
    ledger.add_patient(PATIENT)
    ledger.add_medicine(ETHER // 10, quantity=3, discount=10)
    ledger.add_medicine(ETHER // 20, quantity=50, active=False)
    return ledger
