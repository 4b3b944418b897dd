"""Servicio de verificación de tickets en puerta

Pipeline (cada etapa puede cortar con una decisión):
1. rate limit por cliente
2. validación estricta del payload
3. guard de envíos duplicados (solo con markUsed)
4. consulta autoritativa de consumo en el registro
5. predicado de validez del registro
6. consumo en el registro y admisión

El registro es la fuente de verdad; el guard local es solo una optimización.
"""
from functools import partial
from typing import Any, Awaitable, Callable, Optional, Set
import asyncio
import logging

from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.qr_generator import InvalidScanPayload, decode_scan_payload
from shared.utils.rate_limiter import ScanRateLimiter
from services.ticket_registry.errors import (
    CredentialNotFound,
    NotAuthorizedVerifier,
    RegistryError,
    RegistryNotFound,
    RegistryUnavailable,
    TicketAlreadyUsed,
    TransientInfrastructureError,
)
from services.ticket_registry.services.base import RegistryBackend
from services.ticket_validation.models.ticket import (
    DenyReason,
    VerificationDecision,
    VerificationRequest,
    VerificationResponse,
)

logger = logging.getLogger(__name__)

MSG_TOO_MANY_REQUESTS = "Too many requests. Please try again later."
MSG_RECENT_DUPLICATE = "This ticket was just verified. Please wait before scanning again."
MSG_ALREADY_USED = "This ticket has already been used for entry"
MSG_NOT_VALID = "Ticket is not valid"
MSG_NOT_FOUND = "Ticket does not exist"
MSG_UNKNOWN_REGISTRY = "Ticket belongs to an unknown event"
MSG_VERIFIER_NOT_AUTHORIZED = "This gate is not authorized to admit tickets for this event"
MSG_UNAVAILABLE = "Verification temporarily unavailable. Please try again."
MSG_INTERNAL_ERROR = "Failed to verify ticket. Please try again."


def deny(
    reason: DenyReason,
    error: str,
    status_code: int = 200,
    used: bool = False,
    credential_id: Optional[int] = None,
) -> VerificationDecision:
    return VerificationDecision(
        response=VerificationResponse(
            valid=False,
            error=error,
            used=used,
            reason=reason.value,
            credential_id=str(credential_id) if credential_id is not None else None,
        ),
        status_code=status_code,
        reason=reason,
    )


def internal_error() -> VerificationDecision:
    return deny(DenyReason.INTERNAL_ERROR, MSG_INTERNAL_ERROR, status_code=500)


class TicketVerificationService:
    """Convierte un escaneo en una decisión admit/deny consultando el registro"""

    def __init__(
        self,
        registry: RegistryBackend,
        network_id: int,
        verifier_id: str,
        rate_limiter: ScanRateLimiter,
        guard,
        breaker: Optional[CircuitBreaker] = None,
        registry_timeout: float = 5.0,
    ):
        self.registry = registry
        self.network_id = network_id
        self.verifier_id = verifier_id
        self.rate_limiter = rate_limiter
        self.guard = guard
        self.breaker = breaker or CircuitBreaker()
        self.registry_timeout = registry_timeout
        # Escrituras en vuelo: deben completarse aunque el cliente se desconecte
        self._pending_writes: Set[asyncio.Future] = set()

    async def verify(self, submission: Any, client_id: str) -> VerificationDecision:
        """
        Verificar un escaneo

        Args:
            submission: body crudo (bytes/str JSON) o dict ya decodificado
            client_id: identidad del cliente para rate limiting (IP)

        Returns:
            VerificationDecision con la respuesta y el status HTTP
        """
        limit = await self.rate_limiter.hit(client_id)
        if not limit.allowed:
            logger.warning(f"Rate limit exceeded - cliente: {client_id}")
            decision = deny(DenyReason.TOO_MANY_REQUESTS, MSG_TOO_MANY_REQUESTS, status_code=429)
            decision.retry_after = limit.retry_after
            return decision

        try:
            request = decode_scan_payload(submission, self.network_id, model=VerificationRequest)
        except InvalidScanPayload as e:
            logger.warning(f"Envío inválido - cliente: {client_id}: {e}")
            return deny(DenyReason.INVALID_SUBMISSION, f"Invalid submission: {e}", status_code=400)

        reference = request.registry_reference.lower()
        credential_id = request.credential_id

        if request.mark_used and await self._recently_verified(request.guard_key):
            logger.info(f"Escaneo duplicado - registro: {reference}, id: {credential_id}")
            return deny(DenyReason.RECENT_DUPLICATE, MSG_RECENT_DUPLICATE, used=True, credential_id=credential_id)

        try:
            decision = await self._decide(request, reference, credential_id)
        except TicketAlreadyUsed:
            # Carrera perdida contra otro escaneo concurrente
            decision = deny(DenyReason.ALREADY_USED, MSG_ALREADY_USED, used=True, credential_id=credential_id)
        except CredentialNotFound:
            decision = deny(DenyReason.NOT_VALID, MSG_NOT_FOUND, credential_id=credential_id)
        except RegistryNotFound:
            decision = deny(DenyReason.NOT_VALID, MSG_UNKNOWN_REGISTRY, credential_id=credential_id)
        except NotAuthorizedVerifier:
            logger.error(f"Gateway {self.verifier_id} no es verificador autorizado de {reference}")
            decision = deny(DenyReason.VERIFIER_NOT_AUTHORIZED, MSG_VERIFIER_NOT_AUTHORIZED, credential_id=credential_id)
        except TransientInfrastructureError as e:
            logger.error(f"Registro no disponible - registro: {reference}, id: {credential_id}: {e}")
            decision = deny(DenyReason.VERIFICATION_UNAVAILABLE, MSG_UNAVAILABLE, credential_id=credential_id)
        except RegistryError as e:
            decision = deny(DenyReason.NOT_VALID, f"{MSG_NOT_VALID}: {e}", credential_id=credential_id)

        if decision.admitted:
            logger.info(f"Ticket admitido - registro: {reference}, id: {credential_id}, cliente: {client_id}")
        else:
            logger.warning(
                f"Ticket denegado ({decision.reason.value}) - registro: {reference}, "
                f"id: {credential_id}, cliente: {client_id}"
            )
        return decision

    async def _decide(self, request: VerificationRequest, reference: str, credential_id: int) -> VerificationDecision:
        state = await self._read(self.registry.query, reference, credential_id)
        if state.consumed:
            return deny(DenyReason.ALREADY_USED, MSG_ALREADY_USED, used=True, credential_id=credential_id)

        validity = await self._read(self.registry.verify_ticket, reference, credential_id)
        if not validity.is_valid:
            return deny(DenyReason.NOT_VALID, MSG_NOT_VALID, credential_id=credential_id)

        metadata = await self._read(self.registry.event_metadata, reference)

        if request.mark_used:
            await self.breaker.call(self._consume, reference, credential_id, request.guard_key)
            message = "Ticket verified successfully"
        else:
            message = "Ticket is valid (not marked as used)"

        return VerificationDecision(
            response=VerificationResponse(
                valid=True,
                owner=validity.owner,
                credential_id=str(credential_id),
                event_name=metadata.name,
                event_venue=metadata.venue,
                message=message,
            )
        )

    async def _read(self, func: Callable[..., Awaitable[Any]], *args) -> Any:
        return await self.breaker.call(self._with_timeout, func, *args)

    async def _with_timeout(self, func: Callable[..., Awaitable[Any]], *args) -> Any:
        try:
            return await asyncio.wait_for(func(*args), self.registry_timeout)
        except asyncio.TimeoutError:
            raise RegistryUnavailable(f"Registry call {getattr(func, '__name__', 'registry')} timed out")

    async def _consume(self, reference: str, credential_id: int, guard_key: str) -> None:
        write = asyncio.ensure_future(self.registry.consume(reference, credential_id, self.verifier_id))
        self._pending_writes.add(write)
        write.add_done_callback(self._pending_writes.discard)

        try:
            await asyncio.wait_for(asyncio.shield(write), self.registry_timeout)
        except (asyncio.TimeoutError, asyncio.CancelledError) as e:
            # La escritura sigue en curso y se respeta aunque se abandone la respuesta
            write.add_done_callback(partial(self._record_late_write, guard_key))
            if isinstance(e, asyncio.CancelledError):
                raise
            raise RegistryUnavailable("Registry consume timed out")

        await self._record_guard(guard_key)

    async def _recently_verified(self, guard_key: str) -> bool:
        # Guard caído = sin entrada; decide el registro
        try:
            return await self.guard.recently_verified(guard_key)
        except Exception as e:
            logger.warning(f"Guard de duplicados no disponible al consultar {guard_key}: {e}")
            return False

    async def _record_guard(self, guard_key: str) -> None:
        # Un fallo del guard no cambia un consumo ya confirmado por el registro
        try:
            await self.guard.record(guard_key)
        except Exception as e:
            logger.warning(f"Guard de duplicados no disponible al registrar {guard_key}: {e}")

    def _record_late_write(self, guard_key: str, write: asyncio.Future) -> None:
        if write.cancelled() or write.exception() is not None:
            return
        logger.info(f"Consumo completado tras abandonar la respuesta: {guard_key}")
        task = asyncio.ensure_future(self._record_guard(guard_key))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def drain(self) -> None:
        """Esperar escrituras pendientes (shutdown)"""
        # Una escritura tardía agenda a su vez el registro en el guard
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)
