"""Prompt text for coordinator problem analysis."""

from __future__ import annotations

import json

from build_coordinator.agents.registry import AgentDescriptor
from build_coordinator.coordinator.models import Problem

_RESPONSE_SHAPE = """\
{
  "decision": "DELEGATE" | "ESCALATE",
  "reasoning": "<why this is the right call>",
  "agent": "<agent name, DELEGATE only>",
  "task": {"type": "<task type>", "instructions": "<what the agent must do>", "context": {}},
  "escalation": {"reason": "<why a human is needed>", "waitForSignal": true, "reportPath": null},
  "modifications": ["<optional plan changes>"]
}"""


def build_analysis_prompt(problem: Problem, agents: tuple[AgentDescriptor, ...]) -> str:
    """Render the single-turn analysis prompt for one problem."""

    ordered = sorted(agents, key=lambda agent: (-agent.priority, agent.name))
    agent_lines = [
        (
            f"- {agent.name} (priority {agent.priority}); "
            f"capabilities: {', '.join(sorted(agent.capabilities)) or 'none'}; "
            f"problem types: {', '.join(sorted(agent.problem_types)) or 'none'}"
        )
        for agent in ordered
    ]
    if not agent_lines:
        agent_lines = ["- (no agents registered; escalate)"]

    sections = [
        "You coordinate an automated package build. A build step failed and you must "
        "decide whether a specialised agent can fix it or a human has to step in.",
        "",
        f"## Problem ({problem.type.value})",
        "```json",
        json.dumps(problem.to_dict(), indent=2, ensure_ascii=False),
        "```",
        "",
        "## Available agents",
        *agent_lines,
        "",
        "## Rules",
        "- DELEGATE to the highest priority agent whose problem types include the problem.",
        "- ESCALATE when no agent fits or this problem has already been attempted repeatedly.",
        "- Always explain the decision in `reasoning`.",
        "",
        "Reply with a single JSON object and nothing else:",
        _RESPONSE_SHAPE,
    ]
    return "\n".join(sections) + "\n"
