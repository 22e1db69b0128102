import asyncio
import logging

from redis import Redis
from rq import Queue
from sqlalchemy.orm import Session, sessionmaker

from scriptflow.db import SessionLocal
from scriptflow.models import Project
from scriptflow.projects import advance_project, find_completed_step, load_tracker, mark_step_timed_out
from scriptflow.schemas import StepOut
from scriptflow.settings import settings
from scriptflow.workflow.polling import (
    MonotonicClock,
    PollAlreadyActive,
    PollingCoordinator,
    PollRegistry,
    PollState,
)

logger = logging.getLogger(__name__)


def _redis_conn() -> Redis:
    return Redis.from_url(settings.redis_url)


def _job_timeout() -> int:
    return int(settings.poll_ceiling_seconds + 60)


def poll_registry() -> PollRegistry:
    # um polling por (projeto, etapa) entre todos os processos
    return PollRegistry(_redis_conn(), ttl=_job_timeout())


def enqueue_watch_step(project_id: str, step_number: int, claim_id: str | None = None) -> str:
    q = Queue(settings.queue_name, connection=_redis_conn())
    job = q.enqueue(
        "scriptflow.workers.jobs.watch_step",
        project_id,
        step_number,
        claim_id,
        job_timeout=_job_timeout(),
    )
    return job.id


def _read_completed(session_factory: sessionmaker, project_id: str, step_number: int) -> StepOut | None:
    with session_factory() as db:
        return find_completed_step(db, project_id, step_number)


def watch_step(
    project_id: str,
    step_number: int,
    claim_id: str | None = None,
    clock: MonotonicClock | None = None,
    session_factory: sessionmaker | None = None,
) -> str:
    """
    Job executado pelo worker depois que o webhook aceitou a etapa.
    Faz polling do banco até achar o resultado ou estourar o teto.

    ``claim_id`` é a reserva feita pela API ao disparar a etapa; sem ela
    o job reserva a etapa por conta própria.
    """
    session_factory = session_factory or SessionLocal
    db: Session = session_factory()

    try:
        project = db.get(Project, project_id)
        if not project:
            logger.warning("[JOB] projeto %s não encontrado", project_id)
            return "missing"

        registry = poll_registry()
        try:
            if claim_id:
                token = registry.adopt(project_id, step_number, claim_id)
            else:
                token = registry.claim(project_id, step_number)
        except PollAlreadyActive as exc:
            logger.warning("[JOB] %s", exc)
            return "duplicate"

        tracker = load_tracker(db, project_id)
        # não segura a transação de leitura durante o polling
        db.commit()

        async def fetch(pid: str, n: int) -> StepOut | None:
            return await asyncio.to_thread(_read_completed, session_factory, pid, n)

        def resolved(step: StepOut) -> None:
            db.refresh(project)
            advance_project(db, project, tracker)
            logger.info(
                "[JOB] etapa %s do projeto %s concluída (cost=%s)",
                step.step_number,
                project_id,
                step.processing_cost,
            )

        def expired() -> None:
            mark_step_timed_out(db, project_id, step_number, settings.poll_ceiling_seconds)

        coordinator = PollingCoordinator(
            tracker,
            step_number,
            fetch,
            clock=clock,
            token=token,
            interval=settings.poll_interval_seconds,
            ceiling=settings.poll_ceiling_seconds,
            on_resolved=resolved,
            on_expired=expired,
            state=PollState.triggered,
        )
        try:
            state = asyncio.run(coordinator.run())
        finally:
            registry.release(project_id, step_number, token)

        logger.info("[JOB] polling da etapa %s do projeto %s terminou: %s", step_number, project_id, state.value)
        return state.value

    finally:
        db.close()
