"""Circuit breaker para proteger el registro de llamadas inútiles"""
from enum import Enum
from typing import Awaitable, Callable, Any, Tuple, Type
import time

from services.ticket_registry.errors import RegistryError, RegistryUnavailable, TransientInfrastructureError


class CircuitState(Enum):
    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Circuit is open, fail fast
    HALF_OPEN = "half_open"  # Testing if service is back


class CircuitBreaker:
    """Circuit breaker pattern implementation"""

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60,
        expected_exception: Tuple[Type[BaseException], ...] = (TransientInfrastructureError,),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.expected_exception = expected_exception
        self._clock = clock

        self.failure_count = 0
        self.last_failure_time = None
        self.state = CircuitState.CLOSED
        self._trial_in_flight = False

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Ejecutar corrutina con circuit breaker"""
        if self.state == CircuitState.OPEN:
            if self._should_attempt_reset():
                self.state = CircuitState.HALF_OPEN
            else:
                raise RegistryUnavailable("Circuit breaker is OPEN")

        # En HALF_OPEN pasa una sola llamada de prueba
        trial = self.state == CircuitState.HALF_OPEN
        if trial:
            if self._trial_in_flight:
                raise RegistryUnavailable("Circuit breaker is HALF_OPEN, trial in progress")
            self._trial_in_flight = True

        try:
            result = await func(*args, **kwargs)
        except self.expected_exception:
            self._on_failure()
            raise
        except RegistryError:
            # Respuesta del registro: está disponible
            self._on_success()
            raise
        finally:
            if trial:
                self._trial_in_flight = False

        self._on_success()
        return result

    def _should_attempt_reset(self) -> bool:
        """Verificar si se debe intentar resetear el circuito"""
        if self.last_failure_time is not None:
            return self._clock() - self.last_failure_time >= self.recovery_timeout
        return True

    def _on_success(self):
        """Manejar éxito"""
        self.failure_count = 0
        if self.state == CircuitState.HALF_OPEN:
            self.state = CircuitState.CLOSED

    def _on_failure(self):
        """Manejar fallo"""
        self.failure_count += 1
        self.last_failure_time = self._clock()

        if self.state == CircuitState.HALF_OPEN or self.failure_count >= self.failure_threshold:
            self.state = CircuitState.OPEN
