"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from pathlib import Path

from build_coordinator.agents.backend.base import BackendRunRequest, BackendRunResult

SUPPORTED_PLACEHOLDERS = ("model", "prompt", "prompt_file", "task_manifest")
CANCELLED_EXIT_CODE = 130
TIMEOUT_EXIT_CODE = 124


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Run a CLI agent from a command template, capturing stdout and stderr to files."""

    def __init__(self, *, poll_interval_seconds: float = 0.1) -> None:
        self.poll_interval_seconds = poll_interval_seconds

    def run(self, request: BackendRunRequest) -> BackendRunResult:
        request.prompt_file.parent.mkdir(parents=True, exist_ok=True)
        request.prompt_file.write_text(request.prompt, "utf-8")
        request.stdout_path.parent.mkdir(parents=True, exist_ok=True)
        request.stderr_path.parent.mkdir(parents=True, exist_ok=True)

        argv = build_run_args(
            command_template=request.command_template,
            model=request.model,
            prompt=request.prompt,
            prompt_file=request.prompt_file,
            manifest_path=request.manifest_path,
        )

        if request.cwd is not None and not request.cwd.is_dir():
            raise BackendRunError(
                f"CLI agent working directory does not exist: {request.cwd}",
                transient=False,
            )

        env = os.environ.copy()
        env["BUILD_COORDINATOR_AGENT"] = request.agent
        env["BUILD_COORDINATOR_MODEL"] = request.model
        env["BUILD_COORDINATOR_MODEL_PROFILE"] = request.profile
        env.update(request.extra_env)

        try:
            with (
                request.stdout_path.open("w", encoding="utf-8") as stdout_handle,
                request.stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    env=env,
                    cwd=request.cwd,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
                return self._wait(process, request)
        except FileNotFoundError as error:
            raise BackendRunError(
                f"CLI agent command not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"CLI agent failed to start: {error}",
                transient=True,
            ) from error

    def _wait(
        self,
        process: subprocess.Popen[str],
        request: BackendRunRequest,
    ) -> BackendRunResult:
        started = time.monotonic()
        shutdown_deadline: float | None = None
        graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

        while True:
            returncode = process.poll()
            now = time.monotonic()
            elapsed = now - started
            if returncode is not None:
                return _result(request, exit_code=returncode, timed_out=False, elapsed=elapsed)

            if elapsed >= request.timeout_seconds:
                _terminate_process(process)
                return _result(
                    request,
                    exit_code=TIMEOUT_EXIT_CODE,
                    timed_out=True,
                    elapsed=elapsed,
                )

            if request.shutdown_requested is not None and request.shutdown_requested():
                if shutdown_deadline is None:
                    shutdown_deadline = now + graceful_seconds
                if now >= shutdown_deadline:
                    _terminate_process(process)
                    return _result(
                        request,
                        exit_code=CANCELLED_EXIT_CODE,
                        timed_out=False,
                        elapsed=elapsed,
                        cancelled=True,
                    )

            time.sleep(self.poll_interval_seconds)


def build_run_args(
    *,
    command_template: str,
    model: str,
    prompt: str,
    prompt_file: Path,
    manifest_path: Path | None,
) -> list[str]:
    """Render a command template into argv; placeholder values are shell-quoted."""

    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "CLI agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )
    try:
        rendered = stripped.format(
            model=shlex.quote(model),
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            task_manifest=shlex.quote(str(manifest_path) if manifest_path is not None else ""),
        )
    except (KeyError, IndexError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}. "
            f"Use one of {', '.join(SUPPORTED_PLACEHOLDERS)}.",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI agent command template rendered empty command.",
            transient=False,
        )
    return argv


def _result(
    request: BackendRunRequest,
    *,
    exit_code: int,
    timed_out: bool,
    elapsed: float,
    cancelled: bool = False,
) -> BackendRunResult:
    return BackendRunResult(
        exit_code=exit_code,
        timed_out=timed_out,
        stdout_path=request.stdout_path,
        stderr_path=request.stderr_path,
        elapsed_seconds=elapsed,
        cancelled=cancelled,
    )


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
