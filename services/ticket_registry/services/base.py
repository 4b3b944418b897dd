"""Interfaz común de los backends del registro de tickets"""
from abc import ABC, abstractmethod
from typing import List, Optional
import hashlib
import uuid

from services.ticket_registry.errors import InvalidArgument
from services.ticket_registry.models.registry import (
    AuditTrail,
    ConsumptionRecord,
    CredentialState,
    EventMetadata,
    IssuanceReceipt,
    RegistryInfo,
    ValidityResult,
    WithdrawReceipt,
)


def derive_reference(admin: str) -> str:
    """Generar una referencia tipo dirección (0x + 40 hex) para un registro nuevo"""
    seed = f"{admin.lower()}:{uuid.uuid4()}".encode("utf-8")
    return "0x" + hashlib.sha256(seed).hexdigest()[:40]


def require_non_negative(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidArgument(f"{name} debe ser un entero no negativo", value=value)
    return value


class RegistryBackend(ABC):
    """
    Superficie del registro autoritativo.

    Todas las operaciones son atómicas entre sí. `consume` es exactly-once:
    dos llamadas concurrentes sobre el mismo ticket producen un éxito y un
    TicketAlreadyUsed, nunca dos éxitos.
    """

    async def startup(self) -> None:
        """Hook de arranque (conexiones, schema)"""

    async def shutdown(self) -> None:
        """Hook de cierre"""

    @abstractmethod
    async def create_registry(
        self,
        admin: str,
        capacity: int,
        price: int,
        metadata: EventMetadata,
    ) -> str:
        ...

    @abstractmethod
    async def registry_info(self, reference: str) -> RegistryInfo:
        ...

    async def event_metadata(self, reference: str) -> EventMetadata:
        return (await self.registry_info(reference)).metadata

    async def price(self, reference: str) -> int:
        return (await self.registry_info(reference)).price

    async def remaining_capacity(self, reference: str) -> int:
        return (await self.registry_info(reference)).remaining

    @abstractmethod
    async def issue(
        self,
        reference: str,
        caller: str,
        payment: int = 0,
        target_owner: Optional[str] = None,
    ) -> IssuanceReceipt:
        ...

    @abstractmethod
    async def query(self, reference: str, credential_id: int) -> CredentialState:
        ...

    @abstractmethod
    async def verify_ticket(self, reference: str, credential_id: int) -> ValidityResult:
        ...

    @abstractmethod
    async def consume(self, reference: str, credential_id: int, caller: str) -> ConsumptionRecord:
        ...

    @abstractmethod
    async def transfer(
        self,
        reference: str,
        credential_id: int,
        caller: str,
        new_owner: str,
    ) -> CredentialState:
        ...

    @abstractmethod
    async def set_verifier(self, reference: str, caller: str, identity: str, enabled: bool) -> None:
        ...

    @abstractmethod
    async def is_verifier(self, reference: str, identity: str) -> bool:
        ...

    @abstractmethod
    async def set_price(self, reference: str, caller: str, new_price: int) -> None:
        ...

    @abstractmethod
    async def withdraw(self, reference: str, caller: str) -> WithdrawReceipt:
        ...

    @abstractmethod
    async def tickets_of_owner(self, reference: str, owner: str) -> List[int]:
        ...

    @abstractmethod
    async def audit_trail(self, reference: str) -> AuditTrail:
        ...
