"""Rutas HTTP del registro de tickets"""
from fastapi import APIRouter, Depends, Path, Request
from fastapi.responses import Response
from starlette.responses import JSONResponse
from typing import Annotated
import logging

from shared.auth.dependencies import get_current_identity
from shared.utils.qr_generator import encode_scan_payload, render_qr_png
from shared.utils.rate_limiter import limiter, RATE_LIMITS
from services.ticket_registry.errors import RegistryError
from services.ticket_registry.models.registry import (
    ADDRESS_PATTERN,
    AuditTrail,
    ConsumptionRecord,
    CreateRegistryRequest,
    CreateRegistryResponse,
    CredentialState,
    IssuanceReceipt,
    IssueRequest,
    OwnerTicketsResponse,
    RegistryInfo,
    SetPriceRequest,
    SetVerifierRequest,
    TransferRequest,
    ValidityResult,
    WithdrawReceipt,
)
from services.ticket_registry.services.base import RegistryBackend

logger = logging.getLogger(__name__)

router = APIRouter()

ReferencePath = Annotated[str, Path(pattern=ADDRESS_PATTERN)]
CredentialIdPath = Annotated[int, Path(ge=0)]


def get_registry(request: Request) -> RegistryBackend:
    """Backend configurado en el lifespan de la app"""
    return request.app.state.registry


def registry_error_handler(request: Request, exc: RegistryError) -> Response:
    """Errores del registro como JSON {error, detail}"""
    if exc.status_code >= 500:
        logger.error(f"Registry error - Path: {request.url.path}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "detail": str(exc)},
    )


@router.post("", response_model=CreateRegistryResponse, status_code=201)
@limiter.limit(RATE_LIMITS["admin"])
async def create_registry(
    request: Request,
    body: CreateRegistryRequest,
    caller: str = Depends(get_current_identity),
    registry: RegistryBackend = Depends(get_registry),
):
    """Crear el registro de un evento; el caller queda como administrador"""
    reference = await registry.create_registry(caller, body.capacity, body.price, body.metadata)
    return CreateRegistryResponse(reference=reference)


@router.get("/{reference}", response_model=RegistryInfo)
@limiter.limit(RATE_LIMITS["public"])
async def get_registry_info(
    request: Request,
    reference: ReferencePath,
    registry: RegistryBackend = Depends(get_registry),
):
    """Metadata del evento, precio y capacidad restante"""
    return await registry.registry_info(reference)


@router.post("/{reference}/credentials", response_model=IssuanceReceipt, status_code=201)
@limiter.limit(RATE_LIMITS["issue"])
async def issue_credential(
    request: Request,
    body: IssueRequest,
    reference: ReferencePath,
    caller: str = Depends(get_current_identity),
    registry: RegistryBackend = Depends(get_registry),
):
    return await registry.issue(reference, caller, payment=body.payment, target_owner=body.owner)


@router.get("/{reference}/credentials/{credential_id}", response_model=CredentialState)
@limiter.limit(RATE_LIMITS["public"])
async def query_credential(
    request: Request,
    reference: ReferencePath,
    credential_id: CredentialIdPath,
    registry: RegistryBackend = Depends(get_registry),
):
    return await registry.query(reference, credential_id)


@router.get("/{reference}/credentials/{credential_id}/validity", response_model=ValidityResult)
@limiter.limit(RATE_LIMITS["public"])
async def verify_credential(
    request: Request,
    reference: ReferencePath,
    credential_id: CredentialIdPath,
    registry: RegistryBackend = Depends(get_registry),
):
    return await registry.verify_ticket(reference, credential_id)


@router.post("/{reference}/credentials/{credential_id}/consume", response_model=ConsumptionRecord)
@limiter.limit(RATE_LIMITS["consume"])
async def consume_credential(
    request: Request,
    reference: ReferencePath,
    credential_id: CredentialIdPath,
    caller: str = Depends(get_current_identity),
    registry: RegistryBackend = Depends(get_registry),
):
    """Marcar ticket como usado (solo verificadores autorizados)"""
    return await registry.consume(reference, credential_id, caller)


@router.post("/{reference}/credentials/{credential_id}/transfer", response_model=CredentialState)
@limiter.limit(RATE_LIMITS["public"])
async def transfer_credential(
    request: Request,
    body: TransferRequest,
    reference: ReferencePath,
    credential_id: CredentialIdPath,
    caller: str = Depends(get_current_identity),
    registry: RegistryBackend = Depends(get_registry),
):
    return await registry.transfer(reference, credential_id, caller, body.new_owner)


@router.get("/{reference}/credentials/{credential_id}/qr")
@limiter.limit(RATE_LIMITS["public"])
async def credential_qr(
    request: Request,
    reference: ReferencePath,
    credential_id: CredentialIdPath,
    registry: RegistryBackend = Depends(get_registry),
):
    """QR PNG con el payload escaneable del ticket"""
    state = await registry.query(reference, credential_id)
    payload = encode_scan_payload(reference, state.credential_id, request.app.state.settings.NETWORK_ID)
    return Response(content=render_qr_png(payload), media_type="image/png")


@router.put("/{reference}/verifiers/{identity}")
@limiter.limit(RATE_LIMITS["admin"])
async def set_verifier(
    request: Request,
    body: SetVerifierRequest,
    reference: ReferencePath,
    identity: str = Path(pattern=ADDRESS_PATTERN),
    caller: str = Depends(get_current_identity),
    registry: RegistryBackend = Depends(get_registry),
):
    await registry.set_verifier(reference, caller, identity, body.enabled)
    return {"identity": identity.lower(), "enabled": body.enabled}


@router.get("/{reference}/verifiers/{identity}")
@limiter.limit(RATE_LIMITS["public"])
async def get_verifier(
    request: Request,
    reference: ReferencePath,
    identity: str = Path(pattern=ADDRESS_PATTERN),
    registry: RegistryBackend = Depends(get_registry),
):
    enabled = await registry.is_verifier(reference, identity)
    return {"identity": identity.lower(), "enabled": enabled}


@router.put("/{reference}/price")
@limiter.limit(RATE_LIMITS["admin"])
async def set_price(
    request: Request,
    body: SetPriceRequest,
    reference: ReferencePath,
    caller: str = Depends(get_current_identity),
    registry: RegistryBackend = Depends(get_registry),
):
    await registry.set_price(reference, caller, body.price)
    return {"price": body.price}


@router.post("/{reference}/withdraw", response_model=WithdrawReceipt)
@limiter.limit(RATE_LIMITS["admin"])
async def withdraw(
    request: Request,
    reference: ReferencePath,
    caller: str = Depends(get_current_identity),
    registry: RegistryBackend = Depends(get_registry),
):
    return await registry.withdraw(reference, caller)


@router.get("/{reference}/owners/{owner}/tickets", response_model=OwnerTicketsResponse)
@limiter.limit(RATE_LIMITS["public"])
async def tickets_of_owner(
    request: Request,
    reference: ReferencePath,
    owner: str = Path(pattern=ADDRESS_PATTERN),
    registry: RegistryBackend = Depends(get_registry),
):
    """Tickets de una dirección (vista de wallet)"""
    credential_ids = await registry.tickets_of_owner(reference, owner)
    return OwnerTicketsResponse(owner=owner.lower(), credential_ids=credential_ids)


@router.get("/{reference}/audit", response_model=AuditTrail)
@limiter.limit(RATE_LIMITS["admin"])
async def audit_trail(
    request: Request,
    reference: ReferencePath,
    registry: RegistryBackend = Depends(get_registry),
):
    """Registros de emisión y consumo"""
    return await registry.audit_trail(reference)
