"""Registry of remediation agents: built-ins plus descriptor documents.

A descriptor document is a markdown file starting with YAML front matter::

    ---
    name: lint-fixer
    capabilities: [ruff, formatting]
    problemTypes: [QUALITY_FAILURE]
    priority: 70
    ---
    Free-form instructions for the agent.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

BUILTIN_PATH = "builtin"


class AgentDescriptorError(ValueError):
    """Descriptor document is missing or has ill-typed fields."""


@dataclass(frozen=True, slots=True)
class AgentDescriptor:
    """One remediation agent the coordinator may delegate to."""

    name: str
    capabilities: frozenset[str]
    problem_types: frozenset[str]
    priority: int
    path: str = BUILTIN_PATH
    instructions: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "capabilities": sorted(self.capabilities),
            "problemTypes": sorted(self.problem_types),
            "priority": self.priority,
            "path": self.path,
        }


BUILTIN_AGENTS: tuple[AgentDescriptor, ...] = (
    AgentDescriptor(
        name="environment-setup",
        capabilities=frozenset({"shell", "environment", "permissions", "PATH"}),
        problem_types=frozenset({"ENVIRONMENT_ERROR"}),
        priority=100,
    ),
    AgentDescriptor(
        name="code-fix",
        capabilities=frozenset({"typescript", "javascript", "syntax", "imports"}),
        problem_types=frozenset({"BUILD_FAILURE"}),
        priority=80,
    ),
    AgentDescriptor(
        name="dependency-resolution",
        capabilities=frozenset({"npm", "yarn", "package.json", "versions"}),
        problem_types=frozenset({"BUILD_FAILURE", "TEST_FAILURE"}),
        priority=90,
    ),
    AgentDescriptor(
        name="diagnostic",
        capabilities=frozenset({"analysis", "debugging", "logging"}),
        problem_types=frozenset({"BUILD_FAILURE", "TEST_FAILURE", "QUALITY_FAILURE"}),
        priority=50,
    ),
)


class AgentRegistry:
    """Immutable name -> descriptor lookup, safe to share between workflows."""

    def __init__(self, agents: Iterable[AgentDescriptor]) -> None:
        by_name: dict[str, AgentDescriptor] = {}
        for agent in agents:
            by_name[agent.name] = agent
        self._agents: Mapping[str, AgentDescriptor] = by_name

    def __len__(self) -> int:
        return len(self._agents)

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    @property
    def agents(self) -> tuple[AgentDescriptor, ...]:
        """All agents, highest priority first."""

        return _by_priority(self._agents.values())

    def get(self, name: str) -> AgentDescriptor | None:
        return self._agents.get(name)

    def candidates_for(self, problem_type: str) -> tuple[AgentDescriptor, ...]:
        """Agents that handle ``problem_type``, highest priority first."""

        return _by_priority(
            agent for agent in self._agents.values() if problem_type in agent.problem_types
        )


def parse_agent_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split a descriptor document into its YAML front matter and body.

    Returns ``({}, content)`` when the document has no front matter block.
    Raises ``AgentDescriptorError`` when the block is not valid YAML.
    """

    parts = content.split("---", 2)
    if len(parts) < 3 or parts[0].strip():
        return {}, content
    try:
        frontmatter = yaml.safe_load(parts[1])
    except yaml.YAMLError as error:
        raise AgentDescriptorError(f"Invalid YAML front matter: {error}") from error
    if not isinstance(frontmatter, dict):
        return {}, content
    return frontmatter, parts[2].lstrip("\n")


def parse_agent_descriptor(content: str, *, path: str) -> AgentDescriptor:
    """Build a descriptor from a document; every front matter field is required."""

    frontmatter, body = parse_agent_frontmatter(content)
    if not frontmatter:
        raise AgentDescriptorError("Missing YAML front matter")

    name = frontmatter.get("name")
    if not isinstance(name, str) or not name.strip():
        raise AgentDescriptorError("'name' must be a non-empty string")
    capabilities = _string_list(frontmatter.get("capabilities"), field_name="capabilities")
    problem_types = _string_list(frontmatter.get("problemTypes"), field_name="problemTypes")
    priority = frontmatter.get("priority")
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise AgentDescriptorError("'priority' must be an integer")

    return AgentDescriptor(
        name=name.strip(),
        capabilities=frozenset(capabilities),
        problem_types=frozenset(problem_types),
        priority=priority,
        path=path,
        instructions=body.strip(),
    )


def load_agent_registry(agent_dir: Path | None = None) -> AgentRegistry:
    """Load built-in agents plus every valid descriptor under ``agent_dir``.

    Discovered descriptors override built-ins of the same name.  Unreadable or
    malformed documents are skipped with a warning.
    """

    discovered: list[AgentDescriptor] = []
    if agent_dir is not None and agent_dir.is_dir():
        for path in sorted(agent_dir.glob("*.md")):
            try:
                discovered.append(
                    parse_agent_descriptor(path.read_text("utf-8"), path=str(path)),
                )
            except (OSError, UnicodeDecodeError, AgentDescriptorError) as error:
                logger.warning("Skipping agent descriptor %s: %s", path, error)
    elif agent_dir is not None:
        logger.debug("Agent directory %s not found; using built-in agents only", agent_dir)

    return AgentRegistry([*BUILTIN_AGENTS, *discovered])


def _string_list(value: object, *, field_name: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise AgentDescriptorError(f"'{field_name}' must be a list of strings")
    return value


def _by_priority(agents: Iterable[AgentDescriptor]) -> tuple[AgentDescriptor, ...]:
    return tuple(sorted(agents, key=lambda agent: (-agent.priority, agent.name)))
