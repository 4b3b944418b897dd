"""Modelos Pydantic del registro de tickets"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Referencia tipo dirección: 0x + 40 hex
ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"


def normalize_address(value: str) -> str:
    """Las direcciones se comparan sin distinguir mayúsculas"""
    return value.lower()


class EventMetadata(BaseModel):
    """Datos descriptivos del evento, inmutables desde la creación"""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    symbol: str = ""
    venue: str = Field(min_length=1)
    starts_at: datetime
    metadata_uri: str = ""


class CredentialState(BaseModel):
    credential_id: int
    exists: bool
    owner: str
    consumed: bool


class ValidityResult(BaseModel):
    is_valid: bool
    owner: str


class RegistryInfo(BaseModel):
    reference: str
    admin: str
    metadata: EventMetadata
    capacity: int
    issued_count: int
    remaining: int
    price: int
    balance: int


class IssuanceReceipt(BaseModel):
    credential_id: int
    owner: str
    amount_paid: int
    refund: int


class IssuanceRecord(BaseModel):
    registry_reference: str
    credential_id: int
    owner: str
    payer: str
    amount_paid: int
    created_at: datetime


class ConsumptionRecord(BaseModel):
    registry_reference: str
    credential_id: int
    verifier: str
    consumed_at: datetime


class WithdrawReceipt(BaseModel):
    recipient: str
    amount: int


class AuditTrail(BaseModel):
    issuances: List[IssuanceRecord]
    consumptions: List[ConsumptionRecord]


# ============ REQUESTS HTTP ============

class CreateRegistryRequest(BaseModel):
    capacity: int = Field(gt=0)
    price: int = Field(ge=0)
    metadata: EventMetadata


class CreateRegistryResponse(BaseModel):
    reference: str


class IssueRequest(BaseModel):
    payment: int = Field(default=0, ge=0)
    owner: Optional[str] = Field(default=None, pattern=ADDRESS_PATTERN)


class SetVerifierRequest(BaseModel):
    enabled: bool


class SetPriceRequest(BaseModel):
    price: int = Field(ge=0)


class TransferRequest(BaseModel):
    new_owner: str = Field(pattern=ADDRESS_PATTERN)


class OwnerTicketsResponse(BaseModel):
    owner: str
    credential_ids: List[int]
