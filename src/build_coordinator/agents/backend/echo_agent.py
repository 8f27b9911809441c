"""Local deterministic agent for CLI executor integration tests.

The step payload may carry an ``echo`` object to steer the outcome:
``status`` (written into the result), ``exit_code`` and ``stderr`` (simulate a
crashing CLI), or ``skip_result`` (exit cleanly without writing a result).
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

from build_coordinator.agents.contracts import (
    AgentResultContract,
    read_manifest,
    read_step_input,
    write_agent_result,
)


def main(argv: list[str] | None = None) -> int:
    """Echo the step input back as the agent result."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--task-manifest", required=True)
    parser.add_argument("--prompt-file", required=True)
    args = parser.parse_args(argv)

    manifest = read_manifest(Path(args.task_manifest))
    step_input = read_step_input(Path(manifest.step_input_path))
    prompt_text = Path(args.prompt_file).read_text("utf-8")

    controls = step_input.payload.get("echo", {}) if isinstance(step_input.payload, dict) else {}
    exit_code = int(controls.get("exit_code", 0))
    if exit_code:
        sys.stderr.write(str(controls.get("stderr", "echo agent failure")))
        return exit_code
    if controls.get("skip_result"):
        return 0

    sys.stdout.write(f"echo agent handled {step_input.step_id}\n")
    payload = AgentResultContract(
        status=str(controls.get("status", "OK")),
        content={
            "step_id": step_input.step_id,
            "kind": step_input.kind,
            "prompt": step_input.prompt,
        },
        artifacts={"summary": f"{step_input.kind} done"},
        metrics={
            "backend": "echo_agent",
            "prompt_chars": len(prompt_text),
            "agent": os.getenv("BUILD_COORDINATOR_AGENT", ""),
        },
    )
    write_agent_result(Path(manifest.output_result_path), payload)
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
