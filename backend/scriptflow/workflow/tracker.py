from collections.abc import Iterable

from scriptflow.models import StepStatus
from scriptflow.schemas import StepOut


class StepTracker:
    """Snapshots das etapas de um projeto, ordenados por step_number.

    Nunca guarda dois registros para o mesmo step_number.
    """

    def __init__(self, project_id: str, steps: Iterable[StepOut] = ()):
        self.project_id = project_id
        self._steps: dict[int, StepOut] = {}
        for step in steps:
            self.merge(step)

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self):
        return iter(self.steps)

    @property
    def steps(self) -> list[StepOut]:
        return [self._steps[n] for n in sorted(self._steps)]

    def get(self, step_number: int) -> StepOut | None:
        return self._steps.get(step_number)

    def status(self, step_number: int) -> StepStatus | None:
        step = self._steps.get(step_number)
        return step.status if step else None

    def merge(self, step: StepOut) -> StepOut:
        if step.project_id != self.project_id:
            raise ValueError(
                f"step {step.step_number} belongs to project {step.project_id}, not {self.project_id}"
            )
        self._steps[step.step_number] = step
        return step

    def processing_steps(self) -> list[int]:
        return [s.step_number for s in self.steps if s.status == StepStatus.processing]

    def completed_count(self) -> int:
        # conta só as etapas concluídas em sequência a partir da 1
        count = 0
        n = 1
        while self.status(n) == StepStatus.completed:
            count += 1
            n += 1
        return count
