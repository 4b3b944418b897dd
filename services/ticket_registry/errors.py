"""Errores del registro de tickets

Taxonomía:
- ClientError: petición mal formada o no autorizada, no se reintenta
- StateConflict: ticket ya usado, capacidad agotada, etc. Deny definitivo
- TransientInfrastructureError: registro inalcanzable o timeout, el caller puede reintentar
"""


class RegistryError(Exception):
    """Error base del registro. `code` es estable y viaja por HTTP."""

    code = "RegistryError"
    status_code = 400

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.code)
        self.context = context


class ClientError(RegistryError):
    code = "ClientError"


class StateConflict(RegistryError):
    code = "StateConflict"
    status_code = 409


class TransientInfrastructureError(RegistryError):
    code = "TransientInfrastructureError"
    status_code = 503


class RegistryNotFound(ClientError):
    code = "RegistryNotFound"
    status_code = 404


class CredentialNotFound(ClientError):
    code = "CredentialNotFound"
    status_code = 404


class InsufficientPayment(ClientError):
    code = "InsufficientPayment"
    status_code = 402


class InvalidArgument(ClientError):
    code = "InvalidArgument"
    status_code = 422


class NotAdministrator(ClientError):
    code = "NotAdministrator"
    status_code = 403


class NotAuthorizedVerifier(ClientError):
    code = "NotAuthorizedVerifier"
    status_code = 403


class NotCredentialOwner(ClientError):
    code = "NotCredentialOwner"
    status_code = 403


class CapacityExceeded(StateConflict):
    code = "CapacityExceeded"


class TicketAlreadyUsed(StateConflict):
    code = "TicketAlreadyUsed"


class RegistryUnavailable(TransientInfrastructureError):
    code = "RegistryUnavailable"


ERRORS_BY_CODE = {
    cls.code: cls
    for cls in (
        RegistryError,
        ClientError,
        StateConflict,
        TransientInfrastructureError,
        RegistryNotFound,
        CredentialNotFound,
        InsufficientPayment,
        InvalidArgument,
        NotAdministrator,
        NotAuthorizedVerifier,
        NotCredentialOwner,
        CapacityExceeded,
        TicketAlreadyUsed,
        RegistryUnavailable,
    )
}


def error_from_code(code: str, message: str = "") -> RegistryError:
    """Reconstruir la excepción a partir del código recibido por HTTP"""
    cls = ERRORS_BY_CODE.get(code, RegistryError)
    return cls(message)
