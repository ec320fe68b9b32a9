import asyncio

import pytest

from medchain.amounts import to_smallest_unit
from medchain.errors import (
    InactiveListing, InsufficientStock, InvalidQuantity, InvalidState, NotAuthorized, StaleQuote,
    UnknownRecord, WalletNotConnected,
)
from medchain.fees import FeeKind
from medchain.ledger import Functions
from medchain.metadata import MetadataResolver
from medchain.session import Session
from medchain.transactions import TxState
from medchain.workflows import AppointmentRequest, BookingWorkflow, PurchaseWorkflow, RegistrationWorkflow

from tests.helpers import DOCTOR, ETHER, OTHER, PATIENT, FakeContentStore, seeded_ledger, session_for


@pytest.fixture
def ledger():
    return seeded_ledger()


@pytest.fixture
def store():
    return FakeContentStore({"QmDoctor1": {"name": "Dr. Meredith Grey"}})


@pytest.fixture
def purchase(ledger):
    workflow = PurchaseWorkflow(ledger)
    workflow.transactions.poll_interval = 0
    return workflow


@pytest.fixture
def booking(ledger, store):
    workflow = BookingWorkflow(ledger, metadata=MetadataResolver(store))
    workflow.transactions.poll_interval = 0
    return workflow


@pytest.fixture
def registration(ledger, store):
    workflow = RegistrationWorkflow(ledger, store=store)
    workflow.transactions.poll_interval = 0
    return workflow


@pytest.fixture
def patient():
    return session_for(PATIENT)


def test_purchase_pays_exact_amount_and_refreshes(purchase, ledger, patient):
    result = asyncio.run(purchase.run(patient, 1, 2))

    assert result.handle.confirmed
    assert result.amount_wei == to_smallest_unit("0.18")
    assert ledger.sent[0]["value"] == result.amount_wei
    assert ledger.sent[0]["args"] == [1, 1, 2]
    assert not result.refreshed.partial
    assert result.refreshed["medicines"][0].quantity == 1
    assert result.refreshed["orders"][0].pay_amount_wei == result.amount_wei


def test_purchase_more_than_stock_submits_nothing(purchase, ledger, patient):
    # 3 units available, 5 requested
    with pytest.raises(InsufficientStock):
        asyncio.run(purchase.run(patient, 1, 5))

    assert ledger.built == []
    assert ledger.sent == []


def test_purchase_inactive_listing(purchase, ledger, patient):
    with pytest.raises(InactiveListing):
        asyncio.run(purchase.run(patient, 2, 1))
    assert ledger.built == []


@pytest.mark.parametrize("quantity", [0, -2, 1.5])
def test_purchase_invalid_quantity(purchase, ledger, patient, quantity):
    with pytest.raises(InvalidQuantity):
        asyncio.run(purchase.run(patient, 1, quantity))
    assert ledger.calls == []


def test_purchase_with_stale_quote(purchase, ledger, patient):
    quote = asyncio.run(purchase.fees.quote(FeeKind.PURCHASE, medicine_id=1, quantity=1))
    ledger.medicines[1]["discount"] = 20

    with pytest.raises(StaleQuote):
        asyncio.run(purchase.run(patient, 1, 1, quote=quote))
    assert ledger.sent == []


def test_purchase_requires_a_patient(purchase, ledger):
    with pytest.raises(NotAuthorized):
        asyncio.run(purchase.run(session_for(DOCTOR), 1, 1))
    with pytest.raises(WalletNotConnected):
        asyncio.run(purchase.run(Session(), 1, 1))
    with pytest.raises(UnknownRecord):
        asyncio.run(purchase.run(session_for(PATIENT), 99, 1))
    assert ledger.built == []


def test_purchase_race_is_reported_as_stock(purchase, ledger, patient):
    # another buyer takes the stock after our checks; the revert reason is not descriptive
    def sell_out(handle, old, new):
        if new is TxState.SUBMITTED:
            ledger.medicines[1]["quantity"] = 1
            ledger.revert_next = "VM Exception while processing transaction"

    purchase.transactions.on_transition(sell_out)

    with pytest.raises(InsufficientStock):
        asyncio.run(purchase.run(patient, 1, 2))
    assert purchase.transactions.active is None


def test_booking(booking, ledger, patient):
    request = AppointmentRequest(from_time="09:00", to_time="09:30", appointment_date="2026-11-03",
                                 condition="Fever")

    result = asyncio.run(booking.run(patient, 1, request))

    assert result.amount_wei == ETHER // 400
    args = ledger.sent[0]["args"]
    assert args[:5] == [1, 1, "09:00", "09:30", "2026-11-03"]
    assert args[-2:] == [DOCTOR, "Dr. Meredith Grey"]
    assert result.refreshed["patient_appointments"][0].condition == "Fever"
    assert result.refreshed["doctors"][0].appointment_count == 1


def test_booking_unapproved_doctor(booking, ledger, patient):
    ledger.doctors[1]["isApproved"] = False
    request = AppointmentRequest(from_time="09:00", to_time="09:30", appointment_date="2026-11-03")

    with pytest.raises(InvalidState):
        asyncio.run(booking.run(patient, 1, request))
    assert ledger.built == []


def test_booking_with_changed_fee(booking, ledger, patient):
    request = AppointmentRequest(from_time="09:00", to_time="09:30", appointment_date="2026-11-03",
                                 doctor_name="Dr. Grey")
    quote = asyncio.run(booking.fees.quote(FeeKind.APPOINTMENT))
    ledger.fees[Functions.APPOINTMENT_FEE] += 1

    with pytest.raises(StaleQuote):
        asyncio.run(booking.run(patient, 1, request, quote=quote))
    assert ledger.sent == []


def test_register_patient_pins_profile(registration, ledger, store):
    session = session_for(OTHER)
    quote = asyncio.run(registration.fees.quote(FeeKind.PATIENT_REGISTRATION))

    result = asyncio.run(registration.register_patient(
        session, "Alex", profile={"age": 41}, amount=quote))

    assert result.amount_wei == ETHER // 200
    name, kind, document = store.pinned[0]
    assert kind == "patient-metadata"
    assert document == {"age": 41, "name": "Alex", "type": "patient-profile"}
    assert ledger.sent[0]["args"][0] == "https://gateway.test/ipfs/bafyfake1"
    assert [p.account_address for p in result.refreshed["patients"]] == [PATIENT, OTHER]


def test_register_patient_with_stale_fee(registration, ledger):
    quote = asyncio.run(registration.fees.quote(FeeKind.PATIENT_REGISTRATION))
    ledger.fees[Functions.PATIENT_FEE] = ETHER // 100

    with pytest.raises(StaleQuote):
        asyncio.run(registration.register_patient(
            session_for(OTHER), "Alex", metadata_ref="ipfs://QmAlex", amount=quote))
    assert ledger.sent == []


def test_register_twice(registration, ledger):
    with pytest.raises(InvalidState):
        asyncio.run(registration.register_patient(session_for(PATIENT), "Pat", metadata_ref="ipfs://QmPat"))
    assert ledger.built == []


def test_register_doctor_awaits_approval(registration, ledger):
    result = asyncio.run(registration.register_doctor(
        session_for(OTHER), "Dr. Shepherd", metadata_ref="ipfs://QmShepherd", amount=ETHER // 100))

    doctor = result.refreshed["doctors"][-1]
    assert doctor.account_address == OTHER
    assert doctor.is_approved is False
    assert ledger.sent[0]["args"] == ["ipfs://QmShepherd", OTHER, "Dr. Shepherd", "doctor"]


def test_register_needs_metadata(registration):
    with pytest.raises(InvalidState):
        asyncio.run(registration.register_doctor(session_for(OTHER), "Dr. Shepherd"))
