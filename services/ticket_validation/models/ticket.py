"""Modelos Pydantic para verificación de tickets en puerta"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, StrictBool

from shared.utils.qr_generator import ScanPayload


class DenyReason(str, Enum):
    TOO_MANY_REQUESTS = "TooManyRequests"
    INVALID_SUBMISSION = "InvalidSubmission"
    RECENT_DUPLICATE = "RecentDuplicate"
    ALREADY_USED = "AlreadyUsed"
    NOT_VALID = "NotValid"
    VERIFIER_NOT_AUTHORIZED = "VerifierNotAuthorized"
    VERIFICATION_UNAVAILABLE = "VerificationUnavailable"
    INTERNAL_ERROR = "InternalError"


class VerificationRequest(ScanPayload):
    """Payload escaneado + markUsed (false = dry-run sin consumir)"""

    mark_used: StrictBool = Field(default=False, alias="markUsed")


class VerificationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    valid: bool
    owner: Optional[str] = None
    credential_id: Optional[str] = Field(default=None, alias="credentialId")
    event_name: Optional[str] = Field(default=None, alias="eventName")
    event_venue: Optional[str] = Field(default=None, alias="eventVenue")
    message: Optional[str] = None
    error: Optional[str] = None
    used: Optional[bool] = None
    reason: Optional[str] = None


@dataclass
class VerificationDecision:
    response: VerificationResponse
    status_code: int = 200
    reason: Optional[DenyReason] = None
    retry_after: Optional[int] = None

    @property
    def admitted(self) -> bool:
        return self.response.valid

    def to_body(self) -> dict:
        return self.response.model_dump(by_alias=True, exclude_none=True)
