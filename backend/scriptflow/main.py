import logging
from typing import Literal

import httpx
import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from scriptflow import catalog
from scriptflow.db import SessionLocal, get_db, init_db
from scriptflow.forwarder import WebhookError, WebhookForwarder
from scriptflow.logging_setup import setup_logging
from scriptflow.models import ProjectStatus
from scriptflow.projects import (
    ProjectNotFound,
    create_project,
    get_project,
    list_projects,
    load_tracker,
    mark_processing_started,
    update_project,
    upsert_user,
)
from scriptflow.prompts import (
    PromptNotFound,
    PromptValidationError,
    create_new_prompt_version,
    get_active_prompt,
    list_active_prompts,
    list_prompt_versions,
    seed_default_prompts,
)
from scriptflow.schemas import (
    ProjectCreate,
    ProjectDetail,
    ProjectOut,
    ProjectUpdate,
    PromptOut,
    PromptVersionCreate,
    StepStartOut,
)
from scriptflow.settings import settings
from scriptflow.workers.jobs import enqueue_watch_step, poll_registry
from scriptflow.workflow import gate
from scriptflow.workflow.polling import PollAlreadyActive, PollingCoordinator, PollRegistry, StepTriggerError
from scriptflow.workflow.steps import STEPS, StepDefinition, UnknownStep, get_step

logger = logging.getLogger(__name__)

app = FastAPI(title="scriptflow")


@app.on_event("startup")
def on_startup():
    setup_logging()
    init_db()
    with SessionLocal() as db:
        seed_default_prompts(db)


def get_forwarder() -> WebhookForwarder:
    return WebhookForwarder(settings)


def get_enqueue():
    return enqueue_watch_step


def get_poll_registry() -> PollRegistry:
    return poll_registry()


def current_user_id(
    x_user_id: str | None = Header(default=None),
    x_user_email: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> str:
    # identidade vem do proxy de autenticação na frente da API
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    upsert_user(db, x_user_id, email=x_user_email, name=x_user_name)
    return x_user_id


def _project_or_404(db: Session, user_id: str, project_id: str):
    try:
        return get_project(db, user_id, project_id)
    except ProjectNotFound:
        raise HTTPException(status_code=404, detail="Project not found.") from None


def _step_or_404(step_number: int) -> StepDefinition:
    try:
        return get_step(step_number)
    except UnknownStep as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from None


@app.get("/health")
def health():
    return {"ok": True}


def _webhook_route(step: StepDefinition):
    async def relay(request: Request, forwarder: WebhookForwarder = Depends(get_forwarder)):
        try:
            payload = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"success": False, "message": "Request body must be JSON"})

        try:
            result = await forwarder.forward(step, payload)
        except WebhookError as exc:
            return JSONResponse(status_code=500, content={"success": False, "message": exc.message})
        return JSONResponse(content=result)

    relay.__name__ = f"webhook_{step.slug.replace('-', '_')}"
    return relay


for _step in STEPS.values():
    app.add_api_route(_step.webhook_path, _webhook_route(_step), methods=["POST"])


@app.post("/api/projects", response_model=ProjectOut, status_code=201)
def create_project_route(
    data: ProjectCreate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return create_project(db, user_id, data)


@app.get("/api/projects", response_model=list[ProjectOut])
def list_projects_route(
    status: ProjectStatus | None = None,
    sort_by: Literal["title", "status", "created_at", "updated_at"] = "created_at",
    direction: Literal["asc", "desc"] = "desc",
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    return list_projects(db, user_id, status=status, sort_by=sort_by, direction=direction)


@app.get("/api/projects/{project_id}", response_model=ProjectDetail)
def get_project_route(
    project_id: str,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    project = _project_or_404(db, user_id, project_id)
    tracker = load_tracker(db, project.id)
    return ProjectDetail(
        project=ProjectOut.model_validate(project),
        steps=tracker.steps,
        views=gate.step_views(tracker),
        current_step=gate.current_step(project.current_step),
        active_tab=gate.active_tab(project.current_step),
    )


@app.patch("/api/projects/{project_id}", response_model=ProjectOut)
def update_project_route(
    project_id: str,
    changes: ProjectUpdate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    try:
        return update_project(db, user_id, project_id, changes)
    except ProjectNotFound:
        raise HTTPException(status_code=404, detail="Project not found.") from None


@app.delete("/api/projects/{project_id}")
def delete_project_route(project_id: str):
    # só confirma; a remoção é feita por quem chama, direto no banco
    if not project_id.strip():
        return JSONResponse(status_code=400, content={"success": False, "message": "Project ID is required"})
    logger.info("delete acknowledged for project %s", project_id)
    return {"success": True, "message": "Project deletion endpoint ready"}


@app.post("/api/projects/{project_id}/steps/{step_number}/start", response_model=StepStartOut)
async def start_step(
    project_id: str,
    step_number: int,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
    forwarder: WebhookForwarder = Depends(get_forwarder),
    enqueue=Depends(get_enqueue),
    registry: PollRegistry = Depends(get_poll_registry),
):
    step = _step_or_404(step_number)
    project = _project_or_404(db, user_id, project_id)
    tracker = load_tracker(db, project.id)

    if not gate.is_unlocked(tracker, step.number):
        raise HTTPException(
            status_code=409,
            detail=f"{step.name} is locked until step {step.number - 1} is completed.",
        )
    if not gate.can_start(tracker, step.number):
        raise HTTPException(
            status_code=409,
            detail=f"{step.name} is already {tracker.status(step.number).value}.",
        )

    # reserva antes de disparar: dois cliques rápidos não geram dois pollings
    try:
        token = registry.claim(project.id, step.number)
    except PollAlreadyActive:
        raise HTTPException(status_code=409, detail=f"{step.name} is already being polled.") from None
    except RedisError:
        logger.exception("poll registry unavailable for %s (project %s)", step.name, project.id)
        raise HTTPException(status_code=503, detail="Polling backend unavailable.") from None

    coordinator = PollingCoordinator(tracker, step.number, token=token)
    payload = step.build_payload(project, user_id)
    try:
        ack = await coordinator.trigger(lambda: forwarder.forward(step, payload))
    except StepTriggerError as exc:
        registry.release(project.id, step.number, token)
        logger.error("could not start %s for project %s: %s", step.name, project.id, exc.message)
        raise HTTPException(status_code=502, detail=exc.message) from None

    mark_processing_started(db, project)

    job_id = None
    try:
        job_id = enqueue(project.id, step.number, token.id)
    except RedisError:
        logger.exception("could not enqueue polling for %s (project %s)", step.name, project.id)
        try:
            registry.release(project.id, step.number, token)
        except RedisError:
            logger.warning("claim for %s (project %s) will expire on its own", step.name, project.id)

    return StepStartOut(
        step_number=step.number,
        polling=job_id is not None,
        job_id=job_id,
        result=dict(ack),
    )


@app.get("/api/prompts", response_model=list[PromptOut])
def list_prompts_route(
    sort_by: Literal["name", "created_at", "updated_at"] = "created_at",
    direction: Literal["asc", "desc"] = "asc",
    db: Session = Depends(get_db),
):
    return list_active_prompts(db, sort_by=sort_by, direction=direction)


@app.get("/api/prompts/{step_number}", response_model=PromptOut)
def get_prompt_route(step_number: int, db: Session = Depends(get_db)):
    _step_or_404(step_number)
    try:
        return get_active_prompt(db, step_number)
    except PromptNotFound:
        raise HTTPException(status_code=404, detail="Prompt not found.") from None


@app.get("/api/prompts/{step_number}/versions", response_model=list[PromptOut])
def list_prompt_versions_route(step_number: int, db: Session = Depends(get_db)):
    _step_or_404(step_number)
    return list_prompt_versions(db, step_number)


@app.post("/api/prompts/{step_number}/versions", response_model=PromptOut, status_code=201)
def create_prompt_version_route(
    step_number: int,
    data: PromptVersionCreate,
    user_id: str = Depends(current_user_id),
    db: Session = Depends(get_db),
):
    _step_or_404(step_number)
    overrides = data.model_dump(exclude_unset=True, exclude={"user_prompt_text"})
    try:
        prompt = create_new_prompt_version(db, step_number, data.user_prompt_text, **overrides)
    except PromptValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from None
    except PromptNotFound:
        raise HTTPException(status_code=404, detail="Prompt not found.") from None
    logger.info("user %s saved prompt version %s for step %s", user_id, prompt.version, step_number)
    return prompt


@app.get("/api/models")
async def list_models_route():
    try:
        return await catalog.fetch_models()
    except httpx.HTTPError as exc:
        logger.error("could not fetch model catalog: %s", exc)
        raise HTTPException(status_code=502, detail="Failed to fetch models.") from None


def run():
    setup_logging()
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    run()
