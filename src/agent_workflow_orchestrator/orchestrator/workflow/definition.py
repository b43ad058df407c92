from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ApprovalMode = Literal["pre", "post"]


class UnknownStateError(ValueError):
    def __init__(self, state: str, available: list[str]) -> None:
        super().__init__(f"Unknown state {state!r}. Available: {', '.join(available)}")
        self.state = state
        self.available = available


class StateDefinition(BaseModel):
    """One named step of a workflow graph.

    `agent` references an agent profile; `persona` is an inline fallback used
    when a state has no profile of its own.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    description: str = ""
    agent: str | None = None
    persona: str | None = None
    tools: tuple[str, ...] | None = None
    extra_skills: tuple[str, ...] = ()
    next: tuple[str, ...] = ()
    requires_approval: bool = False
    approval_mode: ApprovalMode = "pre"
    timeout_minutes: float | None = Field(default=None, gt=0)

    @field_validator("tools", mode="before")
    @classmethod
    def _split_tools(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(t.strip() for t in value.split(",") if t.strip())
        return value

    @field_validator("next")
    @classmethod
    def _dedupe_next(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(dict.fromkeys(value))

    @property
    def pre_approval(self) -> bool:
        return self.requires_approval and self.approval_mode == "pre"

    @property
    def post_approval(self) -> bool:
        return self.requires_approval and self.approval_mode == "post"


class WorkflowDefinition(BaseModel):
    """Immutable workflow graph, consumed already parsed.

    Accepts the mapping shape produced by workflow files:

        {"name": ..., "initial": "planning",
         "states": {"planning": {"agent": "planner", "next": ["review"]}, ...}}
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    description: str = ""
    initial: str
    states: dict[str, StateDefinition]

    @model_validator(mode="after")
    def _check_graph(self) -> WorkflowDefinition:
        if self.initial not in self.states:
            raise ValueError(f"initial state {self.initial!r} is not defined")
        for name, state in self.states.items():
            missing = [n for n in state.next if n not in self.states]
            if missing:
                raise ValueError(f"state {name!r} points at undefined states: {missing}")
        return self

    def state(self, name: str) -> StateDefinition:
        try:
            return self.states[name]
        except KeyError:
            raise UnknownStateError(name, list(self.states)) from None

    def next_states(self, name: str) -> tuple[str, ...]:
        state = self.states.get(name)
        return state.next if state is not None else ()

    def is_terminal(self, name: str, *, terminal_marker: str) -> bool:
        return name == terminal_marker or not self.next_states(name)
