from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from scriptflow.models import Project, ProjectStatus, ProjectStep, StepStatus, User, can_transition
from scriptflow.schemas import ProjectCreate, ProjectUpdate, StepOut
from scriptflow.workflow.steps import LAST_STEP
from scriptflow.workflow.tracker import StepTracker

PROJECT_SORT_COLUMNS = {
    "title": Project.title,
    "status": Project.status,
    "created_at": Project.created_at,
    "updated_at": Project.updated_at,
}


class ProjectNotFound(LookupError):
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def upsert_user(db: Session, user_id: str, email: str | None = None, name: str | None = None) -> User:
    user = db.get(User, user_id)
    if user is None:
        user = User(id=user_id)
        db.add(user)
    if email:
        user.email = email
        user.name = name or user.name or email.split("@")[0]
    elif name:
        user.name = name
    user.is_active = True
    user.last_login = _now()
    db.commit()
    return user


def create_project(db: Session, user_id: str, data: ProjectCreate) -> Project:
    project = Project(
        title=data.title.strip(),
        youtube_url=data.youtube_url,
        context=data.context,
        client_info=data.client_info,
        status=ProjectStatus.draft,
        current_step=0,
        created_by=user_id,
    )
    db.add(project)
    db.commit()
    db.refresh(project)
    return project


def list_projects(
    db: Session,
    user_id: str,
    status: ProjectStatus | None = None,
    sort_by: str = "created_at",
    direction: str = "desc",
) -> list[Project]:
    column = PROJECT_SORT_COLUMNS.get(sort_by)
    if column is None:
        raise ValueError(f"cannot sort projects by {sort_by!r}")

    query = select(Project).where(Project.created_by == user_id)
    if status is not None:
        query = query.where(Project.status == status)
    query = query.order_by(column.asc() if direction == "asc" else column.desc())
    return list(db.scalars(query))


def get_project(db: Session, user_id: str, project_id: str) -> Project:
    project = db.get(Project, project_id)
    # projeto de outro usuário é tratado como inexistente
    if project is None or project.created_by != user_id:
        raise ProjectNotFound(project_id)
    return project


def update_project(db: Session, user_id: str, project_id: str, changes: ProjectUpdate) -> Project:
    project = get_project(db, user_id, project_id)
    for field, value in changes.model_dump(exclude_unset=True).items():
        setattr(project, field, value)
    db.commit()
    db.refresh(project)
    return project


def load_tracker(db: Session, project_id: str) -> StepTracker:
    rows = db.scalars(
        select(ProjectStep)
        .where(ProjectStep.project_id == project_id)
        .order_by(ProjectStep.step_number.asc())
    )
    return StepTracker(project_id, (StepOut.model_validate(row) for row in rows))


def find_completed_step(db: Session, project_id: str, step_number: int) -> StepOut | None:
    row = db.scalars(
        select(ProjectStep).where(
            ProjectStep.project_id == project_id,
            ProjectStep.step_number == step_number,
            ProjectStep.status == StepStatus.completed,
        )
    ).first()
    return StepOut.model_validate(row) if row is not None else None


def mark_step_timed_out(db: Session, project_id: str, step_number: int, ceiling: float) -> ProjectStep | None:
    """Marca a etapa como timed_out se ainda não terminou.

    Só mexe em registros que a automação já criou; a linha de project_steps
    pertence a ela.
    """
    step = db.scalars(
        select(ProjectStep).where(
            ProjectStep.project_id == project_id,
            ProjectStep.step_number == step_number,
        )
    ).first()

    if step is None or not can_transition(step.status, StepStatus.timed_out):
        return None

    step.status = StepStatus.timed_out
    step.error_message = f"No result received within {ceiling:.0f} seconds"
    step.completed_at = _now()
    db.commit()
    return step


def mark_processing_started(db: Session, project: Project) -> Project:
    if project.processing_started_at is None:
        project.processing_started_at = _now()
    if project.status == ProjectStatus.draft:
        project.status = ProjectStatus.in_progress
    db.commit()
    return project


def advance_project(db: Session, project: Project, tracker: StepTracker) -> Project:
    completed = tracker.completed_count()
    project.current_step = max(project.current_step or 0, completed)
    if project.current_step >= LAST_STEP:
        project.status = ProjectStatus.completed
        if project.processing_completed_at is None:
            project.processing_completed_at = _now()
        project.total_processing_time = sum(s.processing_time or 0.0 for s in tracker.steps) or None
    elif project.current_step > 0:
        project.status = ProjectStatus.in_progress
    db.commit()
    return project
