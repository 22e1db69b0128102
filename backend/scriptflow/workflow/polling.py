"""Coordenador de polling de uma etapa disparada.

idle -> triggered -> polling -> resolved | expired

O loop é estritamente sequencial: cada leitura termina antes de o próximo
intervalo começar, então dois ticks da mesma etapa nunca se sobrepõem.
Relógio e token de cancelamento são injetados para os testes avançarem
o tempo sem dormir de verdade.
"""

import asyncio
import enum
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from scriptflow.schemas import StepOut
from scriptflow.workflow.steps import get_step
from scriptflow.workflow.tracker import StepTracker

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3.0
DEFAULT_CEILING_SECONDS = 300.0

FetchCompleted = Callable[[str, int], Awaitable[StepOut | None]]


class PollState(str, enum.Enum):
    idle = "idle"
    triggered = "triggered"
    polling = "polling"
    resolved = "resolved"
    expired = "expired"


class StepTriggerError(Exception):
    def __init__(self, step_number: int, message: str):
        super().__init__(message)
        self.step_number = step_number
        self.message = message


class PollAlreadyActive(RuntimeError):
    pass


class InvalidPollState(RuntimeError):
    pass


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class CancellationToken:
    def __init__(self, claim_id: str | None = None) -> None:
        self.id = claim_id or uuid.uuid4().hex
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


# apaga a chave só se ela ainda pertence a quem está liberando
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class PollRegistry:
    """Garante no máximo um polling ativo por (projeto, etapa).

    As reservas ficam no Redis, então valem entre o processo da API e os
    work-horses do rq. Cada reserva expira sozinha depois de ``ttl``.
    """

    def __init__(self, conn: Any, ttl: float, prefix: str = "scriptflow:poll"):
        self.conn = conn
        self.ttl = max(1, int(ttl))
        self.prefix = prefix

    def _key(self, project_id: str, step_number: int) -> str:
        return f"{self.prefix}:{project_id}:{step_number}"

    def claim(self, project_id: str, step_number: int) -> CancellationToken:
        token = CancellationToken()
        if not self.conn.set(self._key(project_id, step_number), token.id, nx=True, ex=self.ttl):
            raise PollAlreadyActive(f"step {step_number} of project {project_id} is already being polled")
        return token

    def adopt(self, project_id: str, step_number: int, claim_id: str) -> CancellationToken:
        """Assume uma reserva feita por outro processo (a API, ao disparar a etapa)."""
        key = self._key(project_id, step_number)
        current = self.conn.get(key)
        if current is None:
            return self.claim(project_id, step_number)
        if isinstance(current, bytes):
            current = current.decode()
        if current != claim_id:
            raise PollAlreadyActive(f"step {step_number} of project {project_id} is already being polled")
        self.conn.expire(key, self.ttl)
        return CancellationToken(claim_id)

    def release(self, project_id: str, step_number: int, token: CancellationToken) -> None:
        self.conn.eval(_RELEASE_SCRIPT, 1, self._key(project_id, step_number), token.id)

    def is_active(self, project_id: str, step_number: int) -> bool:
        return bool(self.conn.exists(self._key(project_id, step_number)))


class PollingCoordinator:
    def __init__(
        self,
        tracker: StepTracker,
        step_number: int,
        fetch_completed: FetchCompleted | None = None,
        *,
        clock: MonotonicClock | None = None,
        token: CancellationToken | None = None,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        ceiling: float = DEFAULT_CEILING_SECONDS,
        on_resolved: Callable[[StepOut], Any] | None = None,
        on_expired: Callable[[], Any] | None = None,
        state: PollState = PollState.idle,
    ):
        self.tracker = tracker
        self.project_id = tracker.project_id
        self.step = get_step(step_number)
        self.fetch_completed = fetch_completed
        self.clock = clock or MonotonicClock()
        self.token = token or CancellationToken()
        self.interval = interval
        self.ceiling = ceiling
        self.on_resolved = on_resolved
        self.on_expired = on_expired
        self.state = state
        self.ticks = 0
        self.result: StepOut | None = None

    async def trigger(self, send: Callable[[], Awaitable[Mapping[str, Any]]]) -> Mapping[str, Any]:
        """Dispara a etapa; só passa a triggered se a resposta trouxer success."""
        if self.state != PollState.idle:
            raise InvalidPollState(f"cannot trigger from state {self.state.value}")

        try:
            ack = await send()
        except Exception as exc:
            self.state = PollState.idle
            raise StepTriggerError(self.step.number, f"Failed to start {self.step.name}: {exc}") from exc

        if not isinstance(ack, Mapping) or not ack.get("success"):
            self.state = PollState.idle
            message = ack.get("message") if isinstance(ack, Mapping) else None
            message = message or f"Failed to start {self.step.name}"
            raise StepTriggerError(self.step.number, message)

        self.state = PollState.triggered
        return ack

    def cancel(self) -> None:
        self.token.cancel()

    async def run(self) -> PollState:
        if self.state != PollState.triggered:
            raise InvalidPollState(f"cannot poll from state {self.state.value}")
        if self.fetch_completed is None:
            raise InvalidPollState("no fetcher to poll with")

        self.state = PollState.polling
        started = self.clock.now()
        logger.info("polling %s for project %s", self.step.name, self.project_id)

        while not self.token.cancelled:
            await self.clock.sleep(self.interval)
            if self.token.cancelled:
                break

            if self.clock.now() - started >= self.ceiling:
                self._expire()
                break

            found = await self._tick()
            # leitura que voltou depois do cancelamento é descartada
            if self.token.cancelled:
                break
            if found is not None:
                self._resolve(found)
                break

        if self.state == PollState.polling:
            # cancelado por fora: desiste sem marcar a etapa
            self.state = PollState.expired
        return self.state

    async def _tick(self) -> StepOut | None:
        self.ticks += 1
        try:
            return await self.fetch_completed(self.project_id, self.step.number)
        except Exception:
            logger.exception("erro no polling de %s (projeto %s)", self.step.name, self.project_id)
            return None

    def _resolve(self, step: StepOut) -> None:
        self.token.cancel()
        self.result = self.tracker.merge(step)
        self.state = PollState.resolved
        logger.info("%s complete for project %s", self.step.name, self.project_id)
        if self.on_resolved is not None:
            self.on_resolved(self.result)

    def _expire(self) -> None:
        self.token.cancel()
        self.state = PollState.expired
        logger.warning(
            "%s for project %s produced no result within %.0f seconds",
            self.step.name,
            self.project_id,
            self.ceiling,
        )
        if self.on_expired is not None:
            self.on_expired()
