"""Deterministic classification of failed CLI agent runs."""

from __future__ import annotations

from dataclasses import dataclass

from build_coordinator.engine.models import AgentErrorKind, ResponseStatus

FAILURE_CLASSIFIER_VERSION = 1

_CONTEXT_EXCEEDED_PATTERNS: tuple[str, ...] = (
    "context length",
    "context window",
    "maximum context",
    "prompt is too long",
    "too many tokens",
)
_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "restricted token",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "please retry",
    "try again later",
)

_RESPONSE_STATUS_BY_KIND = {
    AgentErrorKind.RATE_LIMIT: ResponseStatus.RATE_LIMITED,
    AgentErrorKind.CONTEXT_EXCEEDED: ResponseStatus.CONTEXT_EXCEEDED,
}


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: AgentErrorKind
    retryable: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def response_status(self) -> ResponseStatus:
        return _RESPONSE_STATUS_BY_KIND.get(self.kind, ResponseStatus.FAIL)

    def to_details(self, *, agent: str, model: str) -> dict[str, object]:
        """Serialize classifier diagnostics for response metrics."""

        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "resolved_agent": agent,
            "resolved_model": model,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_agent_failure(
    *,
    agent: str,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> FailureClassification:
    """Classify a non-timeout CLI failure into an error kind and retry hint."""

    haystack = f"{stderr}\n{stdout}".lower()

    rules: tuple[tuple[str, tuple[str, ...], AgentErrorKind, bool], ...] = (
        ("context_exceeded", _CONTEXT_EXCEEDED_PATTERNS, AgentErrorKind.CONTEXT_EXCEEDED, False),
        ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, AgentErrorKind.PROVIDER_ERROR, False),
        ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, AgentErrorKind.INVALID_REQUEST, False),
        (
            "model_not_available",
            _MODEL_NOT_AVAILABLE_PATTERNS,
            AgentErrorKind.INVALID_REQUEST,
            False,
        ),
        ("rate_limit", _RATE_LIMIT_PATTERNS, AgentErrorKind.RATE_LIMIT, True),
    )
    for rule, patterns, kind, retryable in rules:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return FailureClassification(
                kind=kind,
                retryable=retryable,
                reason_code=f"{agent}_{rule}",
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return FailureClassification(
            kind=AgentErrorKind.PROVIDER_ERROR,
            retryable=True,
            reason_code=f"{agent}_backend_transient",
            matched_rule="generic_transient" if pattern is not None else "transient_exit_code",
            matched_pattern=pattern,
        )

    return FailureClassification(
        kind=AgentErrorKind.PROVIDER_ERROR,
        retryable=False,
        reason_code=f"{agent}_backend_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
