"""Prompts versionados por etapa.

Um único prompt ativo por step_number. Salvar cria uma versão nova
(version + 1) e desativa a anterior na mesma transação.
"""

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from scriptflow.models import Prompt
from scriptflow.settings import settings
from scriptflow.workflow.steps import STEPS, get_step

logger = logging.getLogger(__name__)

PROMPT_SORT_COLUMNS = {
    "name": Prompt.step_number,
    "created_at": Prompt.created_at,
    "updated_at": Prompt.updated_at,
}


class PromptValidationError(ValueError):
    pass


class PromptNotFound(LookupError):
    pass


def validate_prompt_text(text: str, max_chars: int | None = None) -> str:
    max_chars = max_chars or settings.prompt_max_chars
    if not text or not text.strip():
        raise PromptValidationError("Prompt text cannot be empty")
    if len(text) > max_chars:
        raise PromptValidationError(f"Prompt text cannot exceed {max_chars:,} characters")
    return text.strip()


def get_active_prompt(db: Session, step_number: int) -> Prompt:
    get_step(step_number)
    prompt = db.scalars(
        select(Prompt).where(Prompt.step_number == step_number, Prompt.is_active.is_(True))
    ).first()
    if prompt is None:
        raise PromptNotFound(f"No active prompt for step {step_number}")
    return prompt


def list_active_prompts(db: Session, sort_by: str = "created_at", direction: str = "asc") -> list[Prompt]:
    column = PROMPT_SORT_COLUMNS.get(sort_by)
    if column is None:
        raise ValueError(f"cannot sort prompts by {sort_by!r}")
    query = (
        select(Prompt)
        .where(Prompt.is_active.is_(True))
        .order_by(column.asc() if direction == "asc" else column.desc(), Prompt.step_number.asc())
    )
    return list(db.scalars(query))


def list_prompt_versions(db: Session, step_number: int) -> list[Prompt]:
    get_step(step_number)
    return list(
        db.scalars(
            select(Prompt).where(Prompt.step_number == step_number).order_by(Prompt.version.desc())
        )
    )


_UNSET: Any = object()


def create_new_prompt_version(
    db: Session,
    step_number: int,
    user_prompt_text: str,
    *,
    system_prompt_text: str | None = None,
    model_provider: str | None = _UNSET,
    model_name: str | None = _UNSET,
    parameters: dict | None = _UNSET,
) -> Prompt:
    text = validate_prompt_text(user_prompt_text)

    try:
        current = db.scalars(
            select(Prompt)
            .where(Prompt.step_number == step_number, Prompt.is_active.is_(True))
            .with_for_update()
        ).first()
        if current is None:
            raise PromptNotFound(f"No active prompt for step {step_number}")

        current.is_active = False
        # o índice parcial exige que a versão antiga saia antes da nova entrar
        db.flush()

        new = Prompt(
            name=current.name,
            step_number=step_number,
            system_prompt_text=current.system_prompt_text if system_prompt_text is None else system_prompt_text,
            user_prompt_text=text,
            model_provider=current.model_provider if model_provider is _UNSET else model_provider,
            model_name=current.model_name if model_name is _UNSET else model_name,
            parameters=current.parameters if parameters is _UNSET else parameters,
            version=current.version + 1,
            is_active=True,
        )
        db.add(new)
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(new)
    logger.info("prompt for step %s updated to version %s", step_number, new.version)
    return new


DEFAULT_PROMPTS = {
    1: (
        "You analyse YouTube video transcripts for a scriptwriting team.",
        "Analyse the transcript of the video and summarise its structure, tone, "
        "target audience and key talking points.",
    ),
    2: (
        "You are a research assistant with web access.",
        "Research the topics identified in the transcript analysis and collect "
        "facts, statistics and sources that support a new video.",
    ),
    3: (
        "You write YouTube script outlines in markdown.",
        "Using the transcript analysis and the research, write a detailed "
        "outline for a new video script.",
    ),
}


def seed_default_prompts(db: Session) -> list[Prompt]:
    created = []
    for number, step in STEPS.items():
        exists = db.scalars(select(Prompt.id).where(Prompt.step_number == number)).first()
        if exists is not None:
            continue
        system_text, user_text = DEFAULT_PROMPTS[number]
        provider = step.default_model.split("/")[0] if step.default_model else None
        prompt = Prompt(
            name=f"{step.name} Prompt",
            step_number=number,
            system_prompt_text=system_text,
            user_prompt_text=user_text,
            model_provider=provider,
            model_name=step.default_model,
            parameters={"temperature": 0.7},
            version=1,
            is_active=True,
        )
        db.add(prompt)
        created.append(prompt)
    if created:
        db.commit()
        logger.info("seeded %d default prompts", len(created))
    return created
