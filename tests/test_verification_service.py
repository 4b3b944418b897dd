import asyncio
import json
from collections import Counter

from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.qr_generator import encode_scan_payload
from shared.utils.rate_limiter import ScanRateLimiter
from shared.utils.replay_guard import DuplicateScanGuard, RedisDuplicateScanGuard
from services.ticket_registry.errors import CapacityExceeded
from services.ticket_registry.services.memory_registry import InMemoryRegistryBackend
from services.ticket_validation.models.ticket import DenyReason
from services.ticket_validation.services.ticket_service import TicketVerificationService

from conftest import ADMIN, BUYER, GATE, NETWORK, OTHER, make_metadata, run

CLIENT = "192.168.1.20"


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class CountingRegistry(InMemoryRegistryBackend):
    """Backend en memoria que cuenta llamadas y puede demorar lecturas o consumos"""

    def __init__(self, latency=0.0, read_delay=0.0, consume_delay=0.0):
        super().__init__(latency=latency)
        self.calls = Counter()
        self.read_delay = read_delay
        self.consume_delay = consume_delay

    async def query(self, reference, credential_id):
        self.calls["query"] += 1
        if self.read_delay:
            await asyncio.sleep(self.read_delay)
        return await super().query(reference, credential_id)

    async def verify_ticket(self, reference, credential_id):
        self.calls["verify_ticket"] += 1
        return await super().verify_ticket(reference, credential_id)

    async def registry_info(self, reference):
        self.calls["registry_info"] += 1
        return await super().registry_info(reference)

    async def consume(self, reference, credential_id, caller):
        self.calls["consume"] += 1
        if self.consume_delay:
            await asyncio.sleep(self.consume_delay)
        return await super().consume(reference, credential_id, caller)

    @property
    def total_calls(self):
        return sum(self.calls.values())


class DownRedis:
    """Redis caído: toda operación falla con error de conexión"""

    async def exists(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, value, px=None):
        raise ConnectionError("redis down")


async def _gateway(registry, clock=None, max_requests=30, timeout=1.0, grant=True, breaker=None, guard=None):
    reference = await registry.create_registry(ADMIN, 10, 0, make_metadata())
    if grant:
        await registry.set_verifier(reference, ADMIN, GATE, True)
    await registry.issue(reference, BUYER)
    registry.calls.clear()
    if guard is None:
        guard = DuplicateScanGuard(window_seconds=5.0, clock=clock or FakeClock())
    service = TicketVerificationService(
        registry=registry,
        network_id=NETWORK,
        verifier_id=GATE,
        rate_limiter=ScanRateLimiter(max_requests=max_requests, window_seconds=60),
        guard=guard,
        breaker=breaker,
        registry_timeout=timeout,
    )
    return service, guard, reference


def _scan(reference, credential_id=0, mark_used=True, **overrides):
    payload = json.loads(encode_scan_payload(reference, credential_id, NETWORK))
    payload["markUsed"] = mark_used
    payload.update(overrides)
    return json.dumps(payload)


def test_end_to_end_admit_then_duplicate_then_already_used():
    registry = CountingRegistry()
    clock = FakeClock()

    async def scenario():
        service, guard, reference = await _gateway(registry, clock=clock)
        admitted = await service.verify(_scan(reference), CLIENT)
        calls_after_admit = registry.total_calls
        duplicate = await service.verify(_scan(reference), CLIENT)
        calls_after_duplicate = registry.total_calls
        clock.advance(5.0)
        used = await service.verify(_scan(reference), CLIENT)
        state = await registry.query(reference, 0)
        return admitted, calls_after_admit, duplicate, calls_after_duplicate, used, state

    admitted, calls_after_admit, duplicate, calls_after_duplicate, used, state = run(scenario())

    assert admitted.status_code == 200
    assert admitted.to_body() == {
        "valid": True,
        "owner": BUYER,
        "credentialId": "0",
        "eventName": "Concierto de Prueba",
        "eventVenue": "Teatro Caupolicán",
        "message": "Ticket verified successfully",
    }
    assert registry.calls["consume"] == 1

    assert duplicate.reason == DenyReason.RECENT_DUPLICATE
    assert duplicate.to_body()["used"] is True
    assert calls_after_duplicate == calls_after_admit

    assert used.status_code == 200
    assert used.reason == DenyReason.ALREADY_USED
    assert used.to_body()["error"] == "This ticket has already been used for entry"
    assert used.to_body()["used"] is True
    assert state.consumed is True


def test_dry_run_is_idempotent():
    registry = CountingRegistry()

    async def scenario():
        service, _, reference = await _gateway(registry)
        first = await service.verify(_scan(reference, mark_used=False), CLIENT)
        second = await service.verify(_scan(reference, mark_used=False), CLIENT)
        return first, second, await registry.query(reference, 0)

    first, second, state = run(scenario())
    assert first.admitted and second.admitted
    assert first.to_body()["message"] == "Ticket is valid (not marked as used)"
    assert first.to_body() == second.to_body()
    assert registry.calls["consume"] == 0
    assert state.consumed is False


def test_missing_mark_used_defaults_to_dry_run():
    registry = CountingRegistry()

    async def scenario():
        service, _, reference = await _gateway(registry)
        submission = encode_scan_payload(reference, 0, NETWORK)
        return await service.verify(submission, CLIENT)

    decision = run(scenario())
    assert decision.admitted
    assert registry.calls["consume"] == 0


def test_malformed_submission_never_reaches_registry():
    registry = CountingRegistry()

    async def scenario():
        service, _, reference = await _gateway(registry)
        return [
            await service.verify("{not json", CLIENT),
            await service.verify(_scan(reference, extra="x"), CLIENT),
            await service.verify(_scan(reference, credentialId="-1"), CLIENT),
            await service.verify(_scan(reference, networkReference=1), CLIENT),
            await service.verify(_scan(reference, markUsed="true"), CLIENT),
        ]

    decisions = run(scenario())
    for decision in decisions:
        assert decision.status_code == 400
        assert decision.reason == DenyReason.INVALID_SUBMISSION
        assert decision.to_body()["valid"] is False
    assert registry.total_calls == 0


def test_rate_limit_rejects_before_any_work():
    registry = CountingRegistry()

    async def scenario():
        service, _, reference = await _gateway(registry, max_requests=2)
        results = [await service.verify(_scan(reference, mark_used=False), CLIENT) for _ in range(3)]
        other_client = await service.verify(_scan(reference, mark_used=False), "192.168.1.99")
        return results, other_client

    results, other_client = run(scenario())
    assert [d.status_code for d in results] == [200, 200, 429]
    assert results[2].reason == DenyReason.TOO_MANY_REQUESTS
    assert 0 < results[2].retry_after <= 60
    assert all(d.retry_after is None for d in results[:2])
    assert other_client.admitted
    # Dos verificaciones del cliente limitado + una del otro cliente
    assert registry.calls["query"] == 3


def test_unknown_ticket_and_unknown_event_are_not_valid():
    registry = CountingRegistry()

    async def scenario():
        service, _, reference = await _gateway(registry)
        missing = await service.verify(_scan(reference, credential_id=99), CLIENT)
        unknown_event = await service.verify(_scan("0x" + "00" * 20), CLIENT)
        return missing, unknown_event

    missing, unknown_event = run(scenario())
    assert missing.reason == DenyReason.NOT_VALID
    assert missing.to_body()["error"] == "Ticket does not exist"
    assert unknown_event.reason == DenyReason.NOT_VALID
    assert registry.calls["consume"] == 0


def test_gateway_without_verifier_grant_is_denied():
    registry = CountingRegistry()

    async def scenario():
        service, _, reference = await _gateway(registry, grant=False)
        decision = await service.verify(_scan(reference), CLIENT)
        return decision, await registry.query(reference, 0)

    decision, state = run(scenario())
    assert decision.reason == DenyReason.VERIFIER_NOT_AUTHORIZED
    assert decision.status_code == 200
    assert state.consumed is False


def test_concurrent_scans_admit_exactly_once():
    registry = CountingRegistry(latency=0.001)

    async def scenario():
        service, _, reference = await _gateway(registry)
        return await asyncio.gather(
            *[service.verify(_scan(reference), f"10.0.0.{i}") for i in range(5)]
        )

    decisions = run(scenario())
    admitted = [d for d in decisions if d.admitted]
    denied = [d for d in decisions if not d.admitted]
    assert len(admitted) == 1
    assert len(denied) == 4
    for decision in denied:
        assert decision.reason in (DenyReason.ALREADY_USED, DenyReason.RECENT_DUPLICATE)
        assert decision.to_body()["used"] is True


def test_registry_timeout_becomes_verification_unavailable():
    registry = CountingRegistry(read_delay=0.2)

    async def scenario():
        service, _, reference = await _gateway(registry, timeout=0.05)
        decision = await service.verify(_scan(reference), CLIENT)
        return decision, await registry.query(reference, 0)

    decision, state = run(scenario())
    assert decision.status_code == 200
    assert decision.reason == DenyReason.VERIFICATION_UNAVAILABLE
    assert decision.to_body()["valid"] is False
    assert state.consumed is False


def test_consume_timeout_completes_in_background():
    registry = CountingRegistry(consume_delay=0.1)

    async def scenario():
        service, guard, reference = await _gateway(registry, timeout=0.05)
        decision = await service.verify(_scan(reference), CLIENT)
        await service.drain()
        state = await registry.query(reference, 0)
        recorded = await guard.recently_verified(f"{reference}-0")
        return decision, state, recorded

    decision, state, recorded = run(scenario())
    assert decision.reason == DenyReason.VERIFICATION_UNAVAILABLE
    assert state.consumed is True
    assert recorded is True


def test_open_circuit_skips_registry():
    registry = CountingRegistry(read_delay=0.2)
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60)

    async def scenario():
        service, _, reference = await _gateway(registry, timeout=0.05, breaker=breaker)
        first = await service.verify(_scan(reference), CLIENT)
        calls = registry.total_calls
        second = await service.verify(_scan(reference), CLIENT)
        return first, second, calls

    first, second, calls = run(scenario())
    assert first.reason == DenyReason.VERIFICATION_UNAVAILABLE
    assert second.reason == DenyReason.VERIFICATION_UNAVAILABLE
    assert registry.total_calls == calls


def test_two_seat_event_scenario():
    registry = CountingRegistry()
    clock = FakeClock()

    async def scenario():
        reference = await registry.create_registry(ADMIN, 2, 0, make_metadata())
        await registry.set_verifier(reference, ADMIN, GATE, True)
        await registry.issue(reference, BUYER)
        service = TicketVerificationService(
            registry=registry,
            network_id=NETWORK,
            verifier_id=GATE,
            rate_limiter=ScanRateLimiter(),
            guard=DuplicateScanGuard(window_seconds=5.0, clock=clock),
        )
        admitted = await service.verify(_scan(reference), CLIENT)
        # Pasada la ventana del guard la respuesta viene del registro
        clock.advance(5.0)
        rescanned = await service.verify(_scan(reference), CLIENT)
        second = await registry.issue(reference, OTHER)
        try:
            await registry.issue(reference, BUYER)
        except CapacityExceeded:
            third = "CapacityExceeded"
        else:
            third = "issued"
        return admitted, rescanned, second, third

    admitted, rescanned, second, third = run(scenario())
    assert admitted.admitted
    assert admitted.response.owner == BUYER
    assert rescanned.reason == DenyReason.ALREADY_USED
    assert rescanned.response.used is True
    assert rescanned.response.credential_id == "0"
    assert second.credential_id == 1
    assert third == "CapacityExceeded"


def test_malformed_payload_scenario():
    registry = CountingRegistry()

    async def scenario():
        service, _, _ = await _gateway(registry)
        return await service.verify({"registryReference": "not-an-address", "credentialId": "abc"}, CLIENT)

    decision = run(scenario())
    assert decision.reason == DenyReason.INVALID_SUBMISSION
    assert decision.status_code == 400
    assert registry.total_calls == 0


def test_guard_outage_does_not_turn_admission_into_error():
    registry = CountingRegistry()

    async def scenario():
        service, _, reference = await _gateway(registry, guard=RedisDuplicateScanGuard(DownRedis()))
        admitted = await service.verify(_scan(reference), CLIENT)
        rescanned = await service.verify(_scan(reference), CLIENT)
        return admitted, rescanned, await registry.query(reference, 0)

    admitted, rescanned, state = run(scenario())
    assert admitted.status_code == 200
    assert admitted.admitted
    assert state.consumed is True
    # Sin guard la respuesta viene del registro
    assert rescanned.status_code == 200
    assert rescanned.reason == DenyReason.ALREADY_USED
    assert registry.calls["consume"] == 1


def test_guard_outage_after_late_consume_is_contained():
    registry = CountingRegistry(consume_delay=0.1)

    async def scenario():
        service, _, reference = await _gateway(
            registry, timeout=0.05, guard=RedisDuplicateScanGuard(DownRedis())
        )
        decision = await service.verify(_scan(reference), CLIENT)
        await service.drain()
        return decision, await registry.query(reference, 0), service._pending_writes

    decision, state, pending = run(scenario())
    assert decision.reason == DenyReason.VERIFICATION_UNAVAILABLE
    assert state.consumed is True
    assert not pending
