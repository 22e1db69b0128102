"""Regras de progressão: quais etapas podem ser abertas e iniciadas.

Funções puras; recalculadas a cada leitura a partir do StepTracker.
"""

import json
import logging
from typing import Any

from scriptflow.models import StepStatus
from scriptflow.schemas import StepOut, StepView
from scriptflow.workflow.steps import LAST_STEP, STEP_NUMBERS, get_step
from scriptflow.workflow.tracker import StepTracker

logger = logging.getLogger(__name__)

AVAILABLE = "available"
UPCOMING = "upcoming"


def is_unlocked(tracker: StepTracker, step_number: int) -> bool:
    if step_number == 1:
        return True
    return tracker.status(step_number - 1) == StepStatus.completed


# etapa concluída é terminal; em andamento já tem polling
BUSY_OR_DONE = frozenset({StepStatus.processing, StepStatus.completed})


def can_start(tracker: StepTracker, step_number: int) -> bool:
    return is_unlocked(tracker, step_number) and tracker.status(step_number) not in BUSY_OR_DONE


def availability(tracker: StepTracker, step_number: int) -> str:
    status = tracker.status(step_number)
    if status is not None:
        return status.value
    return AVAILABLE if is_unlocked(tracker, step_number) else UPCOMING


def current_step(project_current_step: int | None) -> int:
    return min(max(1, (project_current_step or 0) + 1), LAST_STEP)


def active_tab(project_current_step: int | None) -> str:
    return get_step(current_step(project_current_step)).tab


def parse_result(step: StepOut) -> Any | None:
    """Resultado legível da etapa: markdown cru ou o JSON de raw_response."""
    if step.status != StepStatus.completed:
        return None
    definition = get_step(step.step_number)
    if definition.result_format == "markdown":
        return step.raw_response
    if step.raw_response:
        try:
            return json.loads(step.raw_response)
        except ValueError:
            logger.warning("raw_response da etapa %s não é JSON válido", step.step_number)
            return step.raw_response
    return step.step_data


def step_views(tracker: StepTracker) -> list[StepView]:
    views = []
    for n in STEP_NUMBERS:
        definition = get_step(n)
        step = tracker.get(n)
        views.append(
            StepView(
                step_number=n,
                name=definition.name,
                tab=definition.tab,
                status=step.status if step else None,
                availability=availability(tracker, n),
                unlocked=is_unlocked(tracker, n),
                can_start=can_start(tracker, n),
                result_format=definition.result_format,
                result=parse_result(step) if step else None,
            )
        )
    return views
