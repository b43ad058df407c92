"""Turning a workflow state into a concrete agent invocation.

Agent profiles and skill catalogs are parsed elsewhere; this module only
consumes the parsed form.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, ConfigDict, field_validator

from agent_workflow_orchestrator.orchestrator.workflow.definition import StateDefinition
from agent_workflow_orchestrator.orchestrator.workflow.handoff import build_handoff
from agent_workflow_orchestrator.orchestrator.workflow.ledger import Ledger

logger = logging.getLogger(__name__)

DEFAULT_TOOLS: tuple[str, ...] = ("read", "grep", "find", "ls")
INLINE_AGENT = "(inline)"


class AgentProfile(BaseModel):
    """An agent persona, already parsed from wherever it is authored."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str
    description: str = ""
    tools: tuple[str, ...] = DEFAULT_TOOLS
    skills: tuple[str, ...] = ()
    model: str | None = None
    system_prompt: str = ""

    @field_validator("tools", "skills", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        if isinstance(value, str):
            return tuple(v.strip() for v in value.split(",") if v.strip())
        return value


@dataclass(frozen=True, slots=True)
class AgentSpec:
    """Everything the supervisor needs to start one agent process."""

    identity: str
    handoff: str
    persona: str = ""
    tools: tuple[str, ...] = DEFAULT_TOOLS
    skill_paths: tuple[Path, ...] = ()
    model: str | None = None
    extra_args: tuple[str, ...] = field(default=())

    def with_handoff_appendix(self, appendix: str) -> AgentSpec:
        return AgentSpec(
            identity=self.identity,
            handoff=f"{self.handoff}\n\n{appendix}",
            persona=self.persona,
            tools=self.tools,
            skill_paths=self.skill_paths,
            model=self.model,
            extra_args=self.extra_args,
        )


class AgentResolver(Protocol):
    def resolve(self, *, ledger: Ledger, state_name: str, state: StateDefinition, task: str) -> AgentSpec: ...


def resolve_skill_paths(names: Sequence[str], search_dirs: Sequence[Path]) -> tuple[Path, ...]:
    """Map skill names to paths: `<dir>/<name>/` or `<dir>/<name>.md`, first hit wins.

    A missing skill is logged and skipped; the agent simply runs without it.
    """

    resolved: list[Path] = []
    for name in dict.fromkeys(names):
        for directory in search_dirs:
            candidates = (directory / name, directory / f"{name}.md")
            hit = next((c for c in candidates if c.exists()), None)
            if hit is not None:
                resolved.append(hit)
                break
        else:
            logger.warning("Skill not found", extra={"skill": name})
    return tuple(resolved)


class DefaultAgentResolver:
    """Resolve states against a catalog of agent profiles.

    Priority: the state's agent reference, then its inline persona, then
    defaults. Project-level skills come first, then the profile's, then the
    state's extras.
    """

    def __init__(
        self,
        profiles: Mapping[str, AgentProfile] | None = None,
        *,
        skill_dirs: Sequence[Path] = (),
        project_settings: str = "",
        project_skills: Sequence[str] = (),
        history_limit: int = 12,
        default_model: str | None = None,
    ) -> None:
        self._profiles = {k.lower(): v for k, v in (profiles or {}).items()}
        self._skill_dirs = tuple(skill_dirs)
        self._project_settings = project_settings
        self._project_skills = tuple(project_skills)
        self._history_limit = history_limit
        self._default_model = default_model

    def profile(self, name: str) -> AgentProfile | None:
        return self._profiles.get(name.lower())

    def resolve(self, *, ledger: Ledger, state_name: str, state: StateDefinition, task: str) -> AgentSpec:
        handoff = build_handoff(
            ledger,
            state_name=state_name,
            state=state,
            task=task,
            project_settings=self._project_settings,
            history_limit=self._history_limit,
        )

        profile = self.profile(state.agent) if state.agent else None
        if state.agent and profile is None:
            logger.warning(
                "Agent profile not found, using defaults",
                extra={"agent": state.agent, "state": state_name},
            )

        skills = [*self._project_skills, *(profile.skills if profile else ()), *state.extra_skills]
        if profile is not None:
            tools = state.tools or profile.tools
            persona = profile.system_prompt
            identity = profile.name
            model = profile.model or self._default_model
        else:
            tools = state.tools or DEFAULT_TOOLS
            persona = state.persona or ""
            identity = state.agent or INLINE_AGENT
            model = self._default_model

        return AgentSpec(
            identity=identity,
            handoff=handoff,
            persona=persona,
            tools=tools,
            skill_paths=resolve_skill_paths(skills, self._skill_dirs),
            model=model,
        )
