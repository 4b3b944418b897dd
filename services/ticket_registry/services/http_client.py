"""Cliente HTTP del registro remoto (servicio ticket_registry)"""
from typing import Any, Dict, List, Optional
import logging

import httpx

from shared.auth.jwt_handler import create_access_token
from services.ticket_registry.errors import RegistryError, RegistryUnavailable, error_from_code
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
from services.ticket_registry.services.base import RegistryBackend

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1/registries"


class HttpRegistryClient(RegistryBackend):
    """
    Backend que delega en un servicio de registro remoto.

    Cada llamada firma un JWT con la identidad del caller. Timeouts y errores
    de red/5xx se traducen a RegistryUnavailable; el resto de errores del
    registro se reconstruyen a partir del campo `error` de la respuesta.
    """

    def __init__(
        self,
        base_url: str,
        jwt_secret: str,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.jwt_secret = jwt_secret
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def startup(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )

    async def shutdown(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        caller: Optional[str] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Any:
        if self._client is None:
            await self.startup()

        headers = {}
        if caller:
            headers["Authorization"] = f"Bearer {create_access_token(caller, secret=self.jwt_secret)}"

        try:
            response = await self._client.request(method, f"{API_PREFIX}{path}", json=json, headers=headers)
        except httpx.TimeoutException as e:
            logger.error(f"Timeout llamando al registro: {method} {path}")
            raise RegistryUnavailable(f"Registry timeout: {e}")
        except httpx.TransportError as e:
            logger.error(f"Error de red llamando al registro: {method} {path}: {e}")
            raise RegistryUnavailable(f"Registry unreachable: {e}")

        if response.status_code >= 500:
            raise RegistryUnavailable(f"Registry error {response.status_code}")

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            code = body.get("error") if isinstance(body, dict) else None
            if code:
                raise error_from_code(code, body.get("detail", ""))
            raise RegistryError(f"Registry rejected request ({response.status_code}): {response.text}")

        return response.json()

    async def create_registry(self, admin: str, capacity: int, price: int, metadata: EventMetadata) -> str:
        body = await self._request(
            "POST",
            "",
            caller=admin,
            json={"capacity": capacity, "price": price, "metadata": metadata.model_dump(mode="json")},
        )
        return body["reference"]

    async def registry_info(self, reference: str) -> RegistryInfo:
        return RegistryInfo.model_validate(await self._request("GET", f"/{reference}"))

    async def issue(self, reference, caller, payment=0, target_owner=None):
        body = await self._request(
            "POST",
            f"/{reference}/credentials",
            caller=caller,
            json={"payment": payment, "owner": target_owner},
        )
        return IssuanceReceipt.model_validate(body)

    async def query(self, reference, credential_id):
        body = await self._request("GET", f"/{reference}/credentials/{credential_id}")
        return CredentialState.model_validate(body)

    async def verify_ticket(self, reference, credential_id):
        body = await self._request("GET", f"/{reference}/credentials/{credential_id}/validity")
        return ValidityResult.model_validate(body)

    async def consume(self, reference, credential_id, caller):
        body = await self._request("POST", f"/{reference}/credentials/{credential_id}/consume", caller=caller)
        return ConsumptionRecord.model_validate(body)

    async def transfer(self, reference, credential_id, caller, new_owner):
        body = await self._request(
            "POST",
            f"/{reference}/credentials/{credential_id}/transfer",
            caller=caller,
            json={"new_owner": new_owner},
        )
        return CredentialState.model_validate(body)

    async def set_verifier(self, reference, caller, identity, enabled):
        await self._request("PUT", f"/{reference}/verifiers/{identity}", caller=caller, json={"enabled": enabled})

    async def is_verifier(self, reference, identity):
        body = await self._request("GET", f"/{reference}/verifiers/{identity}")
        return bool(body["enabled"])

    async def set_price(self, reference, caller, new_price):
        await self._request("PUT", f"/{reference}/price", caller=caller, json={"price": new_price})

    async def withdraw(self, reference, caller):
        return WithdrawReceipt.model_validate(await self._request("POST", f"/{reference}/withdraw", caller=caller))

    async def tickets_of_owner(self, reference, owner) -> List[int]:
        body = await self._request("GET", f"/{reference}/owners/{owner}/tickets")
        return list(body["credential_ids"])

    async def audit_trail(self, reference):
        return AuditTrail.model_validate(await self._request("GET", f"/{reference}/audit"))
