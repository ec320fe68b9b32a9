import asyncio

import pytest

from medchain.errors import NotAuthorized, WalletNotConnected
from medchain.gateway import LedgerReadGateway
from medchain.ledger import Functions
from medchain.roles import Role, RoleKind, RoleResolver, require_admin, require_doctor, require_patient

from tests.helpers import ADMIN, DOCTOR, OTHER, PATIENT, seeded_ledger


@pytest.fixture
def ledger():
    return seeded_ledger()


@pytest.fixture
def resolver(ledger):
    return RoleResolver(LedgerReadGateway(ledger))


def resolve(resolver, address):
    return asyncio.run(resolver.resolve_role(address))


def test_admin_is_matched_case_insensitively(resolver):
    role = resolve(resolver, ADMIN.lower())
    assert role.kind is RoleKind.ADMIN


def test_admin_without_registration(resolver, ledger):
    del ledger.users[ADMIN.lower()]
    assert resolve(resolver, ADMIN).kind is RoleKind.ADMIN


def test_stale_admin_tag_is_ignored(resolver, ledger):
    ledger.admin = OTHER
    assert resolve(resolver, ADMIN).kind is RoleKind.NONE
    assert resolve(resolver, OTHER).kind is RoleKind.ADMIN


def test_patient_and_doctor(resolver, ledger):
    patient = resolve(resolver, PATIENT)
    doctor = resolve(resolver, DOCTOR)

    assert (patient.kind, patient.id) == (RoleKind.PATIENT, 1)
    assert (doctor.kind, doctor.id) == (RoleKind.DOCTOR, 1)
    assert doctor.is_approved_doctor

    ledger.doctors[1]["isApproved"] = False
    assert not resolve(resolver, DOCTOR).is_approved_doctor


def test_unregistered_and_disconnected(resolver):
    assert resolve(resolver, OTHER) == Role.none(OTHER)
    assert resolve(resolver, None).kind is RoleKind.NONE


def test_failed_reads_resolve_to_none(resolver, ledger):
    ledger.failing.update({Functions.ADMIN, Functions.USER_EXISTS})
    assert resolve(resolver, PATIENT).kind is RoleKind.NONE


def test_match_dispatches_on_kind():
    handlers = dict(
        none=lambda r: "register",
        patient=lambda r: f"patient {r.id}",
        doctor=lambda r: "doctor",
        admin=lambda r: "admin",
    )
    assert Role(kind=RoleKind.PATIENT, address=PATIENT, id=4).match(**handlers) == "patient 4"
    assert Role.none().match(**handlers) == "register"


def test_require_helpers():
    patient = Role(kind=RoleKind.PATIENT, address=PATIENT, id=1)
    pending_doctor = Role(kind=RoleKind.DOCTOR, address=DOCTOR, id=2, approved=False)

    assert require_patient(patient) == 1
    assert require_doctor(pending_doctor, approved=False) == 2
    with pytest.raises(NotAuthorized):
        require_doctor(pending_doctor)
    with pytest.raises(NotAuthorized):
        require_admin(patient)
    with pytest.raises(WalletNotConnected):
        require_patient(Role.none())
