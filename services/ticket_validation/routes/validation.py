"""Rutas de verificación de tickets en puerta"""
from fastapi import APIRouter, Depends, Request
from starlette.responses import JSONResponse
import logging

from shared.utils.rate_limiter import get_real_client_ip
from services.ticket_validation.services.ticket_service import (
    TicketVerificationService,
    internal_error,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def get_verification_service(request: Request) -> TicketVerificationService:
    return request.app.state.verification_service


@router.post("/verify")
async def verify_ticket(
    request: Request,
    service: TicketVerificationService = Depends(get_verification_service),
):
    """
    Verificar ticket escaneado

    Body: {registryReference, credentialId, networkReference, markUsed}
    200 para cualquier decisión, 400 payload inválido, 429 rate limit, 500 error interno
    """
    client_id = get_real_client_ip(request)
    try:
        body = await request.body()
        decision = await service.verify(body, client_id)
    except Exception as e:
        logger.error(f"Verification error: {type(e).__name__}: {e}", exc_info=True)
        decision = internal_error()

    headers = {"Retry-After": str(decision.retry_after)} if decision.retry_after is not None else None
    return JSONResponse(status_code=decision.status_code, content=decision.to_body(), headers=headers)


@router.get("/verify")
async def verify_health(request: Request):
    """Health check del endpoint de verificación"""
    return {
        "status": "ok",
        "message": "Verification API is running",
        "supportedNetworks": [request.app.state.settings.NETWORK_ID],
    }
