"""Codec del payload escaneable de un ticket y generación del QR

El QR contiene exactamente tres campos:
    {"registryReference": "0x...", "credentialId": "12", "networkReference": 11155111}
Cualquier campo extra o faltante invalida el payload.
"""
from typing import Any, List, Mapping, Optional, Type, Union
import io
import json
import logging
import re

import qrcode
from pydantic import BaseModel, ConfigDict, Field, StrictInt, ValidationError, field_validator

from services.ticket_registry.models.registry import ADDRESS_PATTERN

logger = logging.getLogger(__name__)

# uint256 cabe en 78 dígitos decimales
CREDENTIAL_ID_RE = re.compile(r"^[0-9]{1,78}$")


class InvalidScanPayload(ValueError):
    """Payload que no respeta el schema estricto"""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class ScanPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    registry_reference: str = Field(alias="registryReference", pattern=ADDRESS_PATTERN)
    credential_id: int = Field(alias="credentialId")
    network_reference: StrictInt = Field(alias="networkReference")

    @field_validator("credential_id", mode="before")
    @classmethod
    def parse_credential_id(cls, value: Any) -> int:
        if isinstance(value, bool):
            raise ValueError("credentialId must be a non-negative integer")
        if isinstance(value, int):
            if value < 0:
                raise ValueError("credentialId must be a non-negative integer")
            return value
        if isinstance(value, str) and CREDENTIAL_ID_RE.match(value):
            return int(value)
        raise ValueError("credentialId must be a non-negative integer")

    @property
    def guard_key(self) -> str:
        return f"{self.registry_reference.lower()}-{self.credential_id}"


def format_validation_errors(exc: ValidationError) -> List[str]:
    """Mensajes legibles a partir de un ValidationError de pydantic"""
    errors = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())) or "payload"
        errors.append(f"{field}: {error.get('msg')}")
    return errors


def encode_scan_payload(registry_reference: str, credential_id: int, network_reference: int) -> str:
    """Serializar el payload del QR (credentialId como string numérico)"""
    payload = ScanPayload(
        registryReference=registry_reference,
        credentialId=credential_id,
        networkReference=network_reference,
    )
    return json.dumps(
        {
            "registryReference": payload.registry_reference,
            "credentialId": str(payload.credential_id),
            "networkReference": payload.network_reference,
        },
        separators=(",", ":"),
    )


def decode_scan_payload(
    raw: Union[str, bytes, Mapping[str, Any]],
    expected_network: Optional[int] = None,
    model: Type[ScanPayload] = ScanPayload,
) -> ScanPayload:
    """
    Decodificar y validar el payload escaneado

    Raises:
        InvalidScanPayload: JSON inválido, schema incorrecto o red distinta
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            raise InvalidScanPayload(["payload: invalid JSON"])

    if not isinstance(raw, Mapping):
        raise InvalidScanPayload(["payload: must be an object"])

    try:
        payload = model.model_validate(dict(raw))
    except ValidationError as e:
        raise InvalidScanPayload(format_validation_errors(e))

    if expected_network is not None and payload.network_reference != expected_network:
        raise InvalidScanPayload([f"networkReference: unsupported network, expected {expected_network}"])

    return payload


def render_qr_png(data: str, box_size: int = 10, border: int = 4) -> bytes:
    """Generar imagen PNG del QR"""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(data)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    img_buffer = io.BytesIO()
    img.save(img_buffer, format="PNG")
    img_bytes = img_buffer.getvalue()

    logger.debug(f"QR code generado (tamaño: {len(img_bytes)} bytes)")
    return img_bytes
