"""Tabela das etapas do pipeline.

Todo o código de disparo e de polling é genérico sobre esta tabela;
nada fora daqui deve ramificar por número de etapa.
"""

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

TRANSCRIPT_ANALYSIS = 1
RESEARCH = 2
OUTLINE_GENERATION = 3


def _transcript_payload(project: Any, user_id: str) -> dict[str, str]:
    return {
        "youtube-url": project.youtube_url,
        "client-info": project.client_info or "",
        "context": project.context,
        "project-id": str(project.id),
        "user-id": user_id,
    }


def _project_payload(project: Any, user_id: str) -> dict[str, str]:
    return {
        "project-id": str(project.id),
        "user-id": user_id,
    }


@dataclass(frozen=True)
class StepDefinition:
    number: int
    name: str
    slug: str
    tab: str
    url_setting: str
    build_payload: Callable[[Any, str], dict[str, str]]
    result_format: str = "json"
    default_model: str | None = None

    @property
    def webhook_path(self) -> str:
        return f"/api/webhook/{self.slug}"

    def webhook_url(self, settings: Any) -> str | None:
        return getattr(settings, self.url_setting, None) or None


STEPS: dict[int, StepDefinition] = {
    TRANSCRIPT_ANALYSIS: StepDefinition(
        number=TRANSCRIPT_ANALYSIS,
        name="Transcript Analysis",
        slug="transcript-analysis",
        tab="transcript",
        url_setting="transcript_analysis_webhook_url",
        build_payload=_transcript_payload,
        default_model="anthropic/claude-3.5-sonnet-20241022",
    ),
    RESEARCH: StepDefinition(
        number=RESEARCH,
        name="Research",
        slug="research",
        tab="research",
        url_setting="research_webhook_url",
        build_payload=_project_payload,
        default_model="perplexity/llama-3.1-sonar-large-128k-online",
    ),
    OUTLINE_GENERATION: StepDefinition(
        number=OUTLINE_GENERATION,
        name="Outline Generation",
        slug="outline-generation",
        tab="outline",
        url_setting="outline_generation_webhook_url",
        build_payload=_project_payload,
        result_format="markdown",
        default_model="anthropic/claude-3-opus-20240229",
    ),
}

STEP_NUMBERS = tuple(sorted(STEPS))
LAST_STEP = STEP_NUMBERS[-1]
STEPS_BY_SLUG: dict[str, StepDefinition] = {step.slug: step for step in STEPS.values()}


class UnknownStep(LookupError):
    pass


def is_valid_step_number(step_number: int) -> bool:
    return step_number in STEPS


def get_step(step_number: int) -> StepDefinition:
    try:
        return STEPS[step_number]
    except KeyError:
        raise UnknownStep(f"Unknown step number: {step_number}") from None


def get_step_by_slug(slug: str) -> StepDefinition:
    try:
        return STEPS_BY_SLUG[slug]
    except KeyError:
        raise UnknownStep(f"Unknown step: {slug}") from None
