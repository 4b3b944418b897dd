"""Registro de tickets en memoria (un único escritor por evento)"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set
import asyncio
import logging

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


@dataclass
class Credential:
    owner: str
    consumed: bool = False


class EventTicketRegistry:
    """
    Máquina de estados de un evento.

    Cada ticket tiene dos estados: válido (emitido, sin consumir) y consumido
    (terminal). Las mutaciones se serializan con un lock por registro.
    """

    def __init__(self, reference: str, admin: str, capacity: int, price: int, metadata: EventMetadata):
        if isinstance(capacity, bool) or not isinstance(capacity, int) or capacity <= 0:
            raise InvalidArgument("capacity debe ser un entero positivo", capacity=capacity)
        self.reference = reference
        self.admin = normalize_address(admin)
        self.capacity = capacity
        self.price = require_non_negative("price", price)
        self.metadata = metadata
        self.balance = 0
        self.credentials: List[Credential] = []
        self.verifiers: Set[str] = set()
        self.issuances: List[IssuanceRecord] = []
        self.consumptions: List[ConsumptionRecord] = []
        self._lock = asyncio.Lock()

    @property
    def issued_count(self) -> int:
        return len(self.credentials)

    def _get(self, credential_id: int) -> Credential:
        if isinstance(credential_id, bool) or not isinstance(credential_id, int):
            raise CredentialNotFound(f"Ticket {credential_id} no existe", credential_id=credential_id)
        if credential_id < 0 or credential_id >= self.issued_count:
            raise CredentialNotFound(f"Ticket {credential_id} no existe", credential_id=credential_id)
        return self.credentials[credential_id]

    def _require_admin(self, caller: str) -> None:
        if normalize_address(caller) != self.admin:
            raise NotAdministrator("Se requieren permisos de administrador", caller=caller)

    def info(self) -> RegistryInfo:
        return RegistryInfo(
            reference=self.reference,
            admin=self.admin,
            metadata=self.metadata,
            capacity=self.capacity,
            issued_count=self.issued_count,
            remaining=self.capacity - self.issued_count,
            price=self.price,
            balance=self.balance,
        )

    async def issue(self, caller: str, payment: int = 0, target_owner: Optional[str] = None) -> IssuanceReceipt:
        require_non_negative("payment", payment)
        payer = normalize_address(caller)
        async with self._lock:
            if self.issued_count >= self.capacity:
                raise CapacityExceeded("Capacidad del evento agotada", capacity=self.capacity)

            # Emisión iniciada por el administrador: precio exento
            price_due = 0 if payer == self.admin else self.price
            if payment < price_due:
                raise InsufficientPayment(
                    f"Pago insuficiente: {payment} < {price_due}",
                    payment=payment,
                    price=price_due,
                )

            credential_id = self.issued_count
            owner = normalize_address(target_owner) if target_owner else payer
            self.credentials.append(Credential(owner=owner))
            self.balance += price_due
            self.issuances.append(
                IssuanceRecord(
                    registry_reference=self.reference,
                    credential_id=credential_id,
                    owner=owner,
                    payer=payer,
                    amount_paid=price_due,
                    created_at=datetime.now(timezone.utc),
                )
            )

        logger.info(f"Ticket emitido - registro: {self.reference}, id: {credential_id}, owner: {owner}")
        return IssuanceReceipt(
            credential_id=credential_id,
            owner=owner,
            amount_paid=price_due,
            refund=payment - price_due,
        )

    async def query(self, credential_id: int) -> CredentialState:
        async with self._lock:
            credential = self._get(credential_id)
            return CredentialState(
                credential_id=credential_id,
                exists=True,
                owner=credential.owner,
                consumed=credential.consumed,
            )

    async def verify_ticket(self, credential_id: int) -> ValidityResult:
        async with self._lock:
            credential = self._get(credential_id)
            return ValidityResult(is_valid=not credential.consumed, owner=credential.owner)

    async def consume(self, credential_id: int, caller: str) -> ConsumptionRecord:
        verifier = normalize_address(caller)
        async with self._lock:
            if verifier not in self.verifiers:
                raise NotAuthorizedVerifier("Verificador no autorizado", caller=caller)
            credential = self._get(credential_id)
            if credential.consumed:
                raise TicketAlreadyUsed(f"Ticket {credential_id} ya utilizado", credential_id=credential_id)

            credential.consumed = True
            record = ConsumptionRecord(
                registry_reference=self.reference,
                credential_id=credential_id,
                verifier=verifier,
                consumed_at=datetime.now(timezone.utc),
            )
            self.consumptions.append(record)

        logger.info(f"Ticket consumido - registro: {self.reference}, id: {credential_id}, verificador: {verifier}")
        return record

    async def transfer(self, credential_id: int, caller: str, new_owner: str) -> CredentialState:
        async with self._lock:
            credential = self._get(credential_id)
            if normalize_address(caller) != credential.owner:
                raise NotCredentialOwner("Solo el dueño puede transferir el ticket", caller=caller)
            credential.owner = normalize_address(new_owner)
            return CredentialState(
                credential_id=credential_id,
                exists=True,
                owner=credential.owner,
                consumed=credential.consumed,
            )

    async def set_verifier(self, caller: str, identity: str, enabled: bool) -> None:
        async with self._lock:
            self._require_admin(caller)
            if enabled:
                self.verifiers.add(normalize_address(identity))
            else:
                self.verifiers.discard(normalize_address(identity))
        logger.info(f"Verificador {'habilitado' if enabled else 'deshabilitado'} - registro: {self.reference}, identidad: {identity}")

    async def set_price(self, caller: str, new_price: int) -> None:
        require_non_negative("price", new_price)
        async with self._lock:
            self._require_admin(caller)
            self.price = new_price

    async def withdraw(self, caller: str) -> WithdrawReceipt:
        async with self._lock:
            self._require_admin(caller)
            amount, self.balance = self.balance, 0
        return WithdrawReceipt(recipient=self.admin, amount=amount)


class InMemoryRegistryBackend(RegistryBackend):
    """
    Backend en memoria, válido para un despliegue de un solo proceso.

    `latency` simula el round-trip de red antes de cada operación.
    """

    def __init__(self, latency: float = 0.0):
        self.latency = latency
        self._registries: Dict[str, EventTicketRegistry] = {}

    async def _registry(self, reference: str) -> EventTicketRegistry:
        if self.latency:
            await asyncio.sleep(self.latency)
        registry = self._registries.get(normalize_address(reference))
        if registry is None:
            raise RegistryNotFound(f"Registro {reference} no encontrado", reference=reference)
        return registry

    async def create_registry(self, admin: str, capacity: int, price: int, metadata: EventMetadata) -> str:
        reference = derive_reference(admin)
        self._registries[reference] = EventTicketRegistry(reference, admin, capacity, price, metadata)
        logger.info(f"Registro creado: {reference} ({metadata.name}, capacidad={capacity})")
        return reference

    async def registry_info(self, reference: str) -> RegistryInfo:
        return (await self._registry(reference)).info()

    async def issue(self, reference, caller, payment=0, target_owner=None):
        return await (await self._registry(reference)).issue(caller, payment, target_owner)

    async def query(self, reference, credential_id):
        return await (await self._registry(reference)).query(credential_id)

    async def verify_ticket(self, reference, credential_id):
        return await (await self._registry(reference)).verify_ticket(credential_id)

    async def consume(self, reference, credential_id, caller):
        return await (await self._registry(reference)).consume(credential_id, caller)

    async def transfer(self, reference, credential_id, caller, new_owner):
        return await (await self._registry(reference)).transfer(credential_id, caller, new_owner)

    async def set_verifier(self, reference, caller, identity, enabled):
        await (await self._registry(reference)).set_verifier(caller, identity, enabled)

    async def is_verifier(self, reference, identity):
        registry = await self._registry(reference)
        return normalize_address(identity) in registry.verifiers

    async def set_price(self, reference, caller, new_price):
        await (await self._registry(reference)).set_price(caller, new_price)

    async def withdraw(self, reference, caller):
        return await (await self._registry(reference)).withdraw(caller)

    async def tickets_of_owner(self, reference, owner):
        registry = await self._registry(reference)
        owner = normalize_address(owner)
        return [i for i, credential in enumerate(registry.credentials) if credential.owner == owner]

    async def audit_trail(self, reference):
        registry = await self._registry(reference)
        return AuditTrail(issuances=list(registry.issuances), consumptions=list(registry.consumptions))
