"""Registro de tickets sobre SQLAlchemy async

Las transiciones críticas son un único UPDATE condicional (compare-and-set):
- consumo: `... WHERE consumed = false AND <verificador autorizado>`
- emisión: `... WHERE issued_count < capacity AND <precio a pagar> <= pago`
Así dos transacciones concurrentes nunca observan ambas el estado previo.
"""
from datetime import datetime, timezone
from typing import List, Optional
import logging

from sqlalchemy import case, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.database.models import (
    ConsumptionLog,
    Credential,
    EventRegistry,
    IssuanceLog,
    MAX_INTEGER_COLUMN,
    VerifierGrant,
)
from services.ticket_registry.errors import (
    CapacityExceeded,
    CredentialNotFound,
    InsufficientPayment,
    InvalidArgument,
    NotAdministrator,
    NotAuthorizedVerifier,
    NotCredentialOwner,
    RegistryNotFound,
    TicketAlreadyUsed,
)
from services.ticket_registry.models.registry import (
    AuditTrail,
    ConsumptionRecord,
    CredentialState,
    EventMetadata,
    IssuanceReceipt,
    IssuanceRecord,
    RegistryInfo,
    ValidityResult,
    WithdrawReceipt,
    normalize_address,
)
from services.ticket_registry.services.base import (
    RegistryBackend,
    derive_reference,
    require_non_negative,
)

logger = logging.getLogger(__name__)


class SqlRegistryBackend(RegistryBackend):
    """Backend persistente; cualquier motor con UPDATE atómico sirve"""

    def __init__(self, session_maker: async_sessionmaker):
        self._session_maker = session_maker

    @staticmethod
    async def _load_registry(session: AsyncSession, reference: str) -> EventRegistry:
        registry = await session.get(EventRegistry, normalize_address(reference))
        if registry is None:
            raise RegistryNotFound(f"Registro {reference} no encontrado", reference=reference)
        return registry

    @staticmethod
    def _fits_column(credential_id: int) -> bool:
        return 0 <= credential_id <= MAX_INTEGER_COLUMN

    @staticmethod
    async def _load_credential(session: AsyncSession, reference: str, credential_id: int) -> Credential:
        # Un id fuera del rango de la columna no puede haber sido emitido
        if not SqlRegistryBackend._fits_column(credential_id):
            credential = None
        else:
            credential = await session.get(Credential, (normalize_address(reference), credential_id))
        if credential is None:
            await SqlRegistryBackend._load_registry(session, reference)
            raise CredentialNotFound(f"Ticket {credential_id} no existe", credential_id=credential_id)
        return credential

    @staticmethod
    def _to_info(registry: EventRegistry) -> RegistryInfo:
        return RegistryInfo(
            reference=registry.reference,
            admin=registry.admin,
            metadata=EventMetadata(
                name=registry.name,
                symbol=registry.symbol,
                venue=registry.venue,
                starts_at=registry.starts_at,
                metadata_uri=registry.metadata_uri,
            ),
            capacity=registry.capacity,
            issued_count=registry.issued_count,
            remaining=registry.capacity - registry.issued_count,
            price=registry.price,
            balance=registry.balance,
        )

    async def create_registry(self, admin: str, capacity: int, price: int, metadata: EventMetadata) -> str:
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise InvalidArgument("capacity debe ser un entero positivo", capacity=capacity)
        if capacity > MAX_INTEGER_COLUMN:
            raise InvalidArgument(f"capacity no puede superar {MAX_INTEGER_COLUMN}", capacity=capacity)
        require_non_negative("price", price)
        reference = derive_reference(admin)
        async with self._session_maker() as session:
            async with session.begin():
                session.add(EventRegistry(
                    reference=reference,
                    admin=normalize_address(admin),
                    name=metadata.name,
                    symbol=metadata.symbol,
                    venue=metadata.venue,
                    starts_at=metadata.starts_at,
                    metadata_uri=metadata.metadata_uri,
                    capacity=capacity,
                    issued_count=0,
                    price=price,
                    balance=0,
                ))
        logger.info(f"Registro creado: {reference} ({metadata.name}, capacidad={capacity})")
        return reference

    async def registry_info(self, reference: str) -> RegistryInfo:
        async with self._session_maker() as session:
            return self._to_info(await self._load_registry(session, reference))

    async def issue(
        self,
        reference: str,
        caller: str,
        payment: int = 0,
        target_owner: Optional[str] = None,
    ) -> IssuanceReceipt:
        require_non_negative("payment", payment)
        reference = normalize_address(reference)
        payer = normalize_address(caller)
        owner = normalize_address(target_owner) if target_owner else payer

        # Emisión iniciada por el administrador: precio exento
        price_due = case((EventRegistry.admin == payer, 0), else_=EventRegistry.price)

        async with self._session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(EventRegistry)
                    .where(
                        EventRegistry.reference == reference,
                        EventRegistry.issued_count < EventRegistry.capacity,
                        price_due <= payment,
                    )
                    .values(
                        issued_count=EventRegistry.issued_count + 1,
                        balance=EventRegistry.balance + price_due,
                    )
                    .execution_options(synchronize_session=False)
                )
                registry = await self._load_registry(session, reference)
                if result.rowcount != 1:
                    if registry.issued_count >= registry.capacity:
                        raise CapacityExceeded("Capacidad del evento agotada", capacity=registry.capacity)
                    raise InsufficientPayment(
                        f"Pago insuficiente: {payment} < {registry.price}",
                        payment=payment,
                        price=registry.price,
                    )

                amount_paid = 0 if registry.admin == payer else registry.price
                credential_id = registry.issued_count - 1
                now = datetime.now(timezone.utc)
                session.add(Credential(
                    registry_reference=reference,
                    credential_id=credential_id,
                    owner=owner,
                    consumed=False,
                    issued_at=now,
                ))
                session.add(IssuanceLog(
                    registry_reference=reference,
                    credential_id=credential_id,
                    owner=owner,
                    payer=payer,
                    amount_paid=amount_paid,
                    created_at=now,
                ))

        logger.info(f"Ticket emitido - registro: {reference}, id: {credential_id}, owner: {owner}")
        return IssuanceReceipt(
            credential_id=credential_id,
            owner=owner,
            amount_paid=amount_paid,
            refund=payment - amount_paid,
        )

    async def query(self, reference: str, credential_id: int) -> CredentialState:
        async with self._session_maker() as session:
            credential = await self._load_credential(session, reference, credential_id)
            return CredentialState(
                credential_id=credential.credential_id,
                exists=True,
                owner=credential.owner,
                consumed=credential.consumed,
            )

    async def verify_ticket(self, reference: str, credential_id: int) -> ValidityResult:
        async with self._session_maker() as session:
            credential = await self._load_credential(session, reference, credential_id)
            return ValidityResult(is_valid=not credential.consumed, owner=credential.owner)

    async def consume(self, reference: str, credential_id: int, caller: str) -> ConsumptionRecord:
        reference = normalize_address(reference)
        verifier = normalize_address(caller)
        authorized = (
            select(VerifierGrant.identity)
            .where(
                VerifierGrant.registry_reference == reference,
                VerifierGrant.identity == verifier,
            )
            .exists()
        )
        now = datetime.now(timezone.utc)

        async with self._session_maker() as session:
            async with session.begin():
                updated = 0
                if self._fits_column(credential_id):
                    result = await session.execute(
                        update(Credential)
                        .where(
                            Credential.registry_reference == reference,
                            Credential.credential_id == credential_id,
                            Credential.consumed.is_(False),
                            authorized,
                        )
                        .values(consumed=True, consumed_by=verifier, consumed_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    updated = result.rowcount
                if updated != 1:
                    await self._load_registry(session, reference)
                    if await session.get(VerifierGrant, (reference, verifier)) is None:
                        raise NotAuthorizedVerifier("Verificador no autorizado", caller=caller)
                    await self._load_credential(session, reference, credential_id)
                    raise TicketAlreadyUsed(f"Ticket {credential_id} ya utilizado", credential_id=credential_id)

                session.add(ConsumptionLog(
                    registry_reference=reference,
                    credential_id=credential_id,
                    verifier=verifier,
                    consumed_at=now,
                ))

        logger.info(f"Ticket consumido - registro: {reference}, id: {credential_id}, verificador: {verifier}")
        return ConsumptionRecord(
            registry_reference=reference,
            credential_id=credential_id,
            verifier=verifier,
            consumed_at=now,
        )

    async def transfer(self, reference: str, credential_id: int, caller: str, new_owner: str) -> CredentialState:
        reference = normalize_address(reference)
        async with self._session_maker() as session:
            async with session.begin():
                updated = 0
                if self._fits_column(credential_id):
                    result = await session.execute(
                        update(Credential)
                        .where(
                            Credential.registry_reference == reference,
                            Credential.credential_id == credential_id,
                            Credential.owner == normalize_address(caller),
                        )
                        .values(owner=normalize_address(new_owner))
                        .execution_options(synchronize_session=False)
                    )
                    updated = result.rowcount
                credential = await self._load_credential(session, reference, credential_id)
                if updated != 1:
                    raise NotCredentialOwner("Solo el dueño puede transferir el ticket", caller=caller)
                return CredentialState(
                    credential_id=credential_id,
                    exists=True,
                    owner=credential.owner,
                    consumed=credential.consumed,
                )

    async def _require_admin(self, session: AsyncSession, reference: str, caller: str) -> EventRegistry:
        registry = await self._load_registry(session, reference)
        if registry.admin != normalize_address(caller):
            raise NotAdministrator("Se requieren permisos de administrador", caller=caller)
        return registry

    async def set_verifier(self, reference: str, caller: str, identity: str, enabled: bool) -> None:
        reference = normalize_address(reference)
        identity = normalize_address(identity)
        async with self._session_maker() as session:
            async with session.begin():
                await self._require_admin(session, reference, caller)
                existing = await session.get(VerifierGrant, (reference, identity))
                if enabled and existing is None:
                    session.add(VerifierGrant(registry_reference=reference, identity=identity))
                elif not enabled:
                    await session.execute(
                        delete(VerifierGrant).where(
                            VerifierGrant.registry_reference == reference,
                            VerifierGrant.identity == identity,
                        )
                    )
        logger.info(f"Verificador {'habilitado' if enabled else 'deshabilitado'} - registro: {reference}, identidad: {identity}")

    async def is_verifier(self, reference: str, identity: str) -> bool:
        async with self._session_maker() as session:
            await self._load_registry(session, reference)
            grant = await session.get(VerifierGrant, (normalize_address(reference), normalize_address(identity)))
            return grant is not None

    async def set_price(self, reference: str, caller: str, new_price: int) -> None:
        require_non_negative("price", new_price)
        async with self._session_maker() as session:
            async with session.begin():
                registry = await self._require_admin(session, reference, caller)
                registry.price = new_price

    async def withdraw(self, reference: str, caller: str) -> WithdrawReceipt:
        reference = normalize_address(reference)
        async with self._session_maker() as session:
            async with session.begin():
                await self._require_admin(session, reference, caller)
                registry = await session.get(EventRegistry, reference, with_for_update=True, populate_existing=True)
                amount = registry.balance
                registry.balance = 0
        logger.info(f"Retiro de fondos - registro: {reference}, monto: {amount}")
        return WithdrawReceipt(recipient=registry.admin, amount=amount)

    async def tickets_of_owner(self, reference: str, owner: str) -> List[int]:
        async with self._session_maker() as session:
            await self._load_registry(session, reference)
            rows = await session.scalars(
                select(Credential.credential_id)
                .where(
                    Credential.registry_reference == normalize_address(reference),
                    Credential.owner == normalize_address(owner),
                )
                .order_by(Credential.credential_id)
            )
            return list(rows)

    async def audit_trail(self, reference: str) -> AuditTrail:
        reference = normalize_address(reference)
        async with self._session_maker() as session:
            await self._load_registry(session, reference)
            issuances = await session.scalars(
                select(IssuanceLog)
                .where(IssuanceLog.registry_reference == reference)
                .order_by(IssuanceLog.id)
            )
            consumptions = await session.scalars(
                select(ConsumptionLog)
                .where(ConsumptionLog.registry_reference == reference)
                .order_by(ConsumptionLog.id)
            )
            return AuditTrail(
                issuances=[
                    IssuanceRecord(
                        registry_reference=row.registry_reference,
                        credential_id=row.credential_id,
                        owner=row.owner,
                        payer=row.payer,
                        amount_paid=row.amount_paid,
                        created_at=row.created_at,
                    )
                    for row in issuances
                ],
                consumptions=[
                    ConsumptionRecord(
                        registry_reference=row.registry_reference,
                        credential_id=row.credential_id,
                        verifier=row.verifier,
                        consumed_at=row.consumed_at,
                    )
                    for row in consumptions
                ],
            )
