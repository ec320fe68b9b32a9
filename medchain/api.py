import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from web3 import Web3

from medchain.amounts import format_amount, to_decimal_string
from medchain.constants import CONTRACT_ADDRESS, RPC_URL
from medchain.errors import InvalidAddress, MedchainError, NetworkUnavailable, UnknownRecord
from medchain.fees import FeeCalculator, FeeKind
from medchain.gateway import LedgerReadGateway
from medchain.ledger import LedgerClient
from medchain.metadata import MetadataResolver
from medchain.roles import RoleResolver

logger = logging.getLogger(__name__)

app = FastAPI(title="Medchain Read API")

# Enable CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_gateway: Optional[LedgerReadGateway] = None
_metadata: Optional[MetadataResolver] = None


def get_gateway() -> LedgerReadGateway:
    """Gateway bound to the configured RPC endpoint and contract, created on first use."""
    global _gateway
    if _gateway is None:
        logger.info(f"Connecting to contract {CONTRACT_ADDRESS} via {RPC_URL}")
        _gateway = LedgerReadGateway(LedgerClient())
    return _gateway


def get_metadata() -> MetadataResolver:
    global _metadata
    if _metadata is None:
        _metadata = MetadataResolver()
    return _metadata


def success_response(data=None, message=None):
    """
    Create a standardized success response.

    Args:
        data: Optional data to include in the response
        message: Optional message to include in the response

    Returns:
        dict: A standardized success response
    """
    response = {"status": "success"}

    if data is not None:
        response["data"] = data

    if message is not None:
        response["message"] = message

    return response


def error_response(message, status_code=400, kind=None):
    """
    Create a standardized error response and raise an HTTPException.

    Args:
        message: Error message
        status_code: HTTP status code
        kind: Optional error kind from the medchain error taxonomy

    Raises:
        HTTPException: With the specified status code and error details
    """
    detail = {"status": "error", "error": message}
    if kind:
        detail["kind"] = kind
    raise HTTPException(status_code=status_code, detail=detail)


def raise_medchain_error(error: MedchainError):
    if isinstance(error, UnknownRecord):
        status_code = 404
    elif isinstance(error, NetworkUnavailable):
        status_code = 503
    else:
        status_code = 400
    error_response(error.user_message, status_code=status_code, kind=error.kind)


def _amount(wei: int) -> dict:
    return {"wei": str(wei), "amount": to_decimal_string(wei), "display": format_amount(wei)}


@app.get("/health")
@app.get("/api/health")
async def health_check():
    """Health check endpoint for Docker healthcheck"""
    return success_response(
        data={"timestamp": int(time.time())},
        message="Service is healthy"
    )


@app.get("/api/contract")
async def get_contract_info(gateway: LedgerReadGateway = Depends(get_gateway)):
    """Admin address, fees and record counts"""
    info = await gateway.contract_info()
    if info is None:
        error_response("Could not read contract state", status_code=503, kind=NetworkUnavailable.kind)

    data = info.model_dump()
    data["fees"] = {
        "doctor_registration": _amount(info.registration_doctor_fee_wei),
        "patient_registration": _amount(info.registration_patient_fee_wei),
        "appointment": _amount(info.appointment_fee_wei),
    }
    return success_response(data=data)


@app.get("/api/role/{address}")
async def get_role(address: str, gateway: LedgerReadGateway = Depends(get_gateway)):
    """Role of an address: none, patient, doctor or admin"""
    if not Web3.is_address(address):
        error_response(InvalidAddress.default_message, kind=InvalidAddress.kind)

    role = await RoleResolver(gateway).resolve_role(address)
    return success_response(data=role.model_dump(mode="json"))


@app.get("/api/dashboard")
async def get_dashboard(gateway: LedgerReadGateway = Depends(get_gateway)):
    """Medicines, doctors, patients and appointments; failed sections are listed, not fatal"""
    batch = await gateway.dashboard()
    data = {name: [record.model_dump() for record in records] for name, records in batch.sections.items()}
    return success_response(
        data={"sections": data, "failures": batch.failures, "partial": batch.partial},
        message="Some sections could not be loaded" if batch.partial else None,
    )


@app.get("/api/medicines")
async def get_medicines(active_only: bool = False,
                        gateway: LedgerReadGateway = Depends(get_gateway),
                        metadata: MetadataResolver = Depends(get_metadata)):
    """Medicine listings with their off-chain details"""
    medicines = await gateway.read_all("medicines")
    if active_only:
        medicines = [m for m in medicines if m.active]

    items = []
    for enriched in await metadata.enrich(medicines, "Medicine"):
        medicine = enriched.record
        item = medicine.model_dump()
        item["price"] = _amount(medicine.price_wei)
        item["discounted_price"] = _amount(medicine.discounted_price_wei)
        item["metadata"] = enriched.metadata.model_dump()
        if enriched.metadata.image:
            item["image_url"] = metadata.image_url(enriched.metadata.image)
        items.append(item)
    return success_response(data=items)


@app.get("/api/patients/{patient_id}/orders")
async def get_patient_orders(patient_id: int, gateway: LedgerReadGateway = Depends(get_gateway)):
    orders = await gateway.patient_orders(patient_id)
    return success_response(data=[
        {**order.model_dump(), "paid": _amount(order.pay_amount_wei)} for order in orders
    ])


@app.get("/api/quote/purchase")
async def quote_purchase(medicine_id: int = Query(..., gt=0), quantity: int = Query(..., gt=0),
                         gateway: LedgerReadGateway = Depends(get_gateway)):
    """Exact amount to attach when buying, computed from the live listing"""
    try:
        quote = await FeeCalculator(gateway).quote(FeeKind.PURCHASE, medicine_id=medicine_id, quantity=quantity)
    except MedchainError as e:
        raise_medchain_error(e)
    return success_response(data=quote.model_dump())


@app.get("/api/quote/{kind}")
async def quote_fee(kind: FeeKind, gateway: LedgerReadGateway = Depends(get_gateway)):
    """Live registration or appointment fee"""
    if kind is FeeKind.PURCHASE:
        error_response("Use /api/quote/purchase with medicine_id and quantity")
    try:
        quote = await FeeCalculator(gateway).quote(kind)
    except MedchainError as e:
        raise_medchain_error(e)
    return success_response(data=quote.model_dump())
