"""Resume detection: audit a package against its plan and pick a phase."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)

PRESENT_GLYPH = "✅"
MISSING_GLYPH = "❌"
MANIFEST_NAMES = ("pyproject.toml", "setup.py", "package.json")
SCAFFOLD_THRESHOLD = 30
TEST_THRESHOLD = 80

_BACKTICK_TOKEN = re.compile(r"`([^`\s]+)`")
_FINDING_LINE = re.compile(rf"^\s*({PRESENT_GLYPH}|{MISSING_GLYPH})\s+(.+?)\s+(exists|missing)\s*$")


class ResumePhase(str, Enum):
    SCAFFOLD = "scaffold"
    IMPLEMENT = "implement"
    TEST = "test"
    COMPLETE = "complete"


@dataclass(frozen=True, slots=True)
class AuditFinding:
    """Presence of one expected artifact, relative to the package root."""

    path: str
    present: bool

    def to_line(self) -> str:
        if self.present:
            return f"{PRESENT_GLYPH} {self.path} exists"
        return f"{MISSING_GLYPH} {self.path} missing"


@dataclass(slots=True)
class PackageAudit:
    findings: list[AuditFinding]
    next_steps: list[str]

    @property
    def completion_percentage(self) -> int:
        if not self.findings:
            return 0
        present = sum(1 for finding in self.findings if finding.present)
        return round(present / len(self.findings) * 100)

    @property
    def complete(self) -> bool:
        return bool(self.findings) and all(finding.present for finding in self.findings)

    @property
    def existing_files(self) -> list[str]:
        return [finding.path for finding in self.findings if finding.present]

    @property
    def missing_files(self) -> list[str]:
        return [finding.path for finding in self.findings if not finding.present]

    def render(self) -> list[str]:
        return [finding.to_line() for finding in self.findings]


@dataclass(slots=True)
class ResumePoint:
    phase: ResumePhase
    completion_percentage: int
    existing_files: list[str]
    missing_files: list[str]
    next_steps: list[str]
    resume_instruction: str


@dataclass(slots=True)
class ResumeContext:
    should_resume: bool
    resume_point: ResumePoint | None = None
    instruction: str | None = None
    findings: list[str] = field(default_factory=list)


def parse_finding_line(line: str) -> AuditFinding:
    """Read back a line produced by ``AuditFinding.to_line``."""

    match = _FINDING_LINE.match(line)
    if match is None:
        raise ValueError(f"Not an audit finding line: {line!r}")
    glyph, path, verb = match.groups()
    present = glyph == PRESENT_GLYPH
    if present != (verb == "exists"):
        raise ValueError(f"Audit finding glyph and verb disagree: {line!r}")
    return AuditFinding(path=path, present=present)


def plan_artifacts(plan_text: str) -> list[str]:
    """Package-relative file paths a plan names in backticks, in order of appearance."""

    artifacts: list[str] = []
    for token in _BACKTICK_TOKEN.findall(plan_text):
        candidate = PurePosixPath(token.rstrip(".,:;"))
        looks_like_path = "/" in token or candidate.suffix != ""
        if (
            not looks_like_path
            or candidate.is_absolute()
            or ".." in candidate.parts
            or "://" in token
        ):
            continue
        normalized = candidate.as_posix()
        if normalized not in artifacts:
            artifacts.append(normalized)
    return artifacts


def audit_package_state(workspace_root: Path, package_path: str, plan_path: Path) -> PackageAudit:
    """Check the package layout plus every artifact the plan names."""

    root = workspace_root / package_path
    findings: list[AuditFinding] = []
    next_steps: list[str] = []

    manifest = next((name for name in MANIFEST_NAMES if (root / name).is_file()), None)
    findings.append(AuditFinding(path=manifest or MANIFEST_NAMES[0], present=manifest is not None))
    if manifest is None:
        next_steps.append("Create a package manifest with dependencies and scripts")

    for directory, step in (
        ("src/", "Create src/ directory with implementation"),
        ("tests/", "Create tests/ directory with test suite"),
    ):
        present = (root / directory).is_dir()
        findings.append(AuditFinding(path=directory, present=present))
        if not present:
            next_steps.append(step)

    plan_file = plan_path if plan_path.is_absolute() else workspace_root / plan_path
    if plan_file.is_file():
        seen = {finding.path for finding in findings}
        for artifact in plan_artifacts(plan_file.read_text("utf-8")):
            if artifact in seen or artifact.rstrip("/") + "/" in seen:
                continue
            seen.add(artifact)
            present = (root / artifact).exists()
            findings.append(AuditFinding(path=artifact, present=present))
            if not present:
                next_steps.append(f"Create {artifact}")
    else:
        logger.warning("Plan %s not found; auditing package layout only", plan_file)

    return PackageAudit(findings=findings, next_steps=next_steps)


def classify_resume_phase(completion_percentage: int, *, complete: bool) -> ResumePhase:
    if complete:
        return ResumePhase.COMPLETE
    if completion_percentage < SCAFFOLD_THRESHOLD:
        return ResumePhase.SCAFFOLD
    if completion_percentage < TEST_THRESHOLD:
        return ResumePhase.IMPLEMENT
    return ResumePhase.TEST


def build_resume_instruction(  # noqa: PLR0913
    phase: ResumePhase,
    *,
    completion_percentage: int,
    existing_files: list[str],
    missing_files: list[str],
    next_steps: list[str],
) -> str:
    """Natural-language instruction for the agent that continues the build."""

    if phase is ResumePhase.COMPLETE:
        return "Package appears complete. Proceed to build and test verification."

    if phase is ResumePhase.SCAFFOLD:
        return "\n".join(
            [
                f"Package is {completion_percentage}% complete. Start with scaffolding:",
                "",
                "Create the basic package structure:",
                _bullets(missing_files),
                "",
                "Focus on creating configuration files and directory structure first.",
            ],
        )

    do_not_regenerate = [
        "### Existing Files (DO NOT REGENERATE):",
        _bullets(existing_files),
    ]
    if phase is ResumePhase.IMPLEMENT:
        return "\n".join(
            [
                f"Package is {completion_percentage}% complete. Continue implementation:",
                "",
                *do_not_regenerate,
                "",
                "### Missing Components (TO BE CREATED):",
                _bullets(missing_files),
                "",
                "### Next Steps:",
                _bullets(next_steps),
                "",
                "IMPORTANT: Focus ONLY on missing components. "
                "Do not regenerate existing files unless they have errors.",
            ],
        )

    return "\n".join(
        [
            f"Package is {completion_percentage}% complete. Finalize and test:",
            "",
            *do_not_regenerate,
            "",
            "### Remaining Tasks:",
            _bullets(next_steps),
            "",
            "Focus on:",
            "- Completing any missing test files",
            "- Fixing any build/lint errors",
            "- Ensuring all requirements are met",
        ],
    )


def detect_resume_point(workspace_root: Path, package_path: str, plan_path: Path) -> ResumePoint:
    """Audit the package and decide which phase the build continues from."""

    audit = audit_package_state(workspace_root, package_path, plan_path)
    return resume_point_from_audit(package_path, audit)


def resume_point_from_audit(package_path: str, audit: PackageAudit) -> ResumePoint:
    percentage = audit.completion_percentage
    phase = classify_resume_phase(percentage, complete=audit.complete)
    logger.info("Resume point for %s: %s (%d%%)", package_path, phase.value, percentage)
    return ResumePoint(
        phase=phase,
        completion_percentage=percentage,
        existing_files=audit.existing_files,
        missing_files=audit.missing_files,
        next_steps=list(audit.next_steps),
        resume_instruction=build_resume_instruction(
            phase,
            completion_percentage=percentage,
            existing_files=audit.existing_files,
            missing_files=audit.missing_files,
            next_steps=audit.next_steps,
        ),
    )


def can_resume_package(workspace_root: Path, package_path: str) -> bool:
    """Cheap precheck: a manifest or a src/ directory is already there."""

    root = workspace_root / package_path
    if not root.is_dir():
        return False
    return (root / "src").is_dir() or any((root / name).is_file() for name in MANIFEST_NAMES)


def get_resume_context(workspace_root: Path, package_path: str, plan_path: Path) -> ResumeContext:
    if not can_resume_package(workspace_root, package_path):
        return ResumeContext(should_resume=False)
    audit = audit_package_state(workspace_root, package_path, plan_path)
    point = resume_point_from_audit(package_path, audit)
    return ResumeContext(
        should_resume=True,
        resume_point=point,
        instruction=point.resume_instruction,
        findings=audit.render(),
    )


def _bullets(items: list[str]) -> str:
    if not items:
        return "- None"
    return "\n".join(f"- {item}" for item in items)
