"""Routing: which CLI agent, model profile and model run a given step kind.

Routing is resolved once per step attempt and frozen into the step input
metadata, so a rerun of the same workdir can be traced back to the exact
command template and model that produced it.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import UTC, datetime

from build_coordinator.config import AgentSettings

SUPPORTED_AGENTS = ("claude", "codex", "gemini")
SUPPORTED_PROFILES = ("fast", "quality")
ROUTING_SCHEMA_VERSION = 1
DEFAULT_PROFILE = "fast"


@dataclass(frozen=True, slots=True)
class FrozenRouting:
    agent: str
    profile: str
    model: str
    command_template: str
    resolved_at: str
    schema_version: int = ROUTING_SCHEMA_VERSION

    def to_metadata(self) -> dict[str, object]:
        return asdict(self)


@dataclass(slots=True)
class RoutingDefaults:
    """Per-agent command templates and models plus the step kind to profile map."""

    default_agent: str
    kind_profile_map: dict[str, str]
    command_templates: dict[str, str]
    models: dict[str, dict[str, str]]

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> RoutingDefaults:
        default_agent = _supported_agent(settings.default_agent)
        command_templates: dict[str, str] = {}
        models: dict[str, dict[str, str]] = {}
        for agent in SUPPORTED_AGENTS:
            template = getattr(settings, f"{agent}_command_template")
            if not template.strip():
                raise ValueError(f"Empty command template for agent={agent!r}")
            command_templates[agent] = template
            models[agent] = {}
            for profile in SUPPORTED_PROFILES:
                model = getattr(settings, f"{agent}_model_{profile}")
                if not model.strip():
                    raise ValueError(f"Empty model id for agent={agent!r}, profile={profile!r}")
                models[agent][profile] = model
        return cls(
            default_agent=default_agent,
            kind_profile_map={
                kind.strip().lower(): _supported_profile(profile)
                for kind, profile in settings.kind_profile_map.items()
            },
            command_templates=command_templates,
            models=models,
        )

    def profile_for(self, work_kind: str) -> str:
        return self.kind_profile_map.get(work_kind.strip().lower(), DEFAULT_PROFILE)


def resolve_routing(  # noqa: PLR0913
    *,
    defaults: RoutingDefaults,
    work_kind: str,
    agent_override: str | None = None,
    profile_override: str | None = None,
    model_override: str | None = None,
    resolved_at: datetime | None = None,
) -> FrozenRouting:
    """Pick agent, profile, model and command template for one step.

    Explicit overrides win; otherwise the default agent runs with the profile
    mapped to ``work_kind`` (``fast`` when the kind is unmapped).
    """

    agent = defaults.default_agent if agent_override is None else _supported_agent(agent_override)
    profile = (
        defaults.profile_for(work_kind)
        if profile_override is None
        else _supported_profile(profile_override)
    )
    model = model_override if model_override is not None else defaults.models[agent][profile]
    model = model.strip()
    if not model:
        raise ValueError(f"Resolved model is empty for agent={agent!r}, profile={profile!r}")
    command_template = defaults.command_templates[agent].strip()
    if not command_template:
        raise ValueError(f"Resolved command template is empty for agent={agent!r}")
    return FrozenRouting(
        agent=agent,
        profile=profile,
        model=model,
        command_template=command_template,
        resolved_at=(resolved_at or datetime.now(UTC)).isoformat(),
    )


def _supported_agent(value: str) -> str:
    agent = value.strip().lower()
    if agent not in SUPPORTED_AGENTS:
        raise ValueError(f"Unsupported agent: {agent!r}. Use one of {SUPPORTED_AGENTS}.")
    return agent


def _supported_profile(value: str) -> str:
    profile = value.strip().lower()
    if profile not in SUPPORTED_PROFILES:
        raise ValueError(
            f"Unsupported model profile: {profile!r}. Use one of {SUPPORTED_PROFILES}.",
        )
    return profile
