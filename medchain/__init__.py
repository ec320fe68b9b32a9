"""
medchain: client layer for the on-chain healthcare registry.

Reads ledger state, resolves off-chain metadata, computes fees and drives
state-changing transactions to a definite outcome.
"""

from medchain.actions import AdminActions, DoctorActions, Messaging
from medchain.content_store import ContentStore
from medchain.errors import MedchainError, classify_error
from medchain.fees import FeeCalculator, FeeKind
from medchain.gateway import LedgerReadGateway
from medchain.ledger import Functions, LedgerClient
from medchain.metadata import MetadataResolver
from medchain.roles import Role, RoleKind, RoleResolver
from medchain.session import LocalSigner, Session, Signer
from medchain.transactions import TransactionHandle, TransactionLifecycleManager, TxState
from medchain.workflows import (
    AppointmentRequest, BookingWorkflow, PurchaseWorkflow, RegistrationWorkflow, WorkflowResult,
)

__version__ = "0.1.0"
