from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class StepSpec:
    id: str
    prompt: str
    depends_on: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkflowSpec:
    goal: str | None
    steps: list[StepSpec]

    def step_ids(self) -> list[str]:
        return [step.id for step in self.steps]
