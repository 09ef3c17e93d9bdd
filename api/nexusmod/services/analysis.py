"""AI/heuristic analysis engine for batched content moderation.

The engine sends one prompt per batch to an LLM and turns the reply into one
ModerationResult per input, in input order. The contract is fail-open:

- no API key configured: every item gets the safe default result
- reply is not valid JSON, not an array, or has the wrong length: every item
  in the batch gets the safe default result
- an element with out-of-range fields: normalized field by field

Only genuine transport errors escape analyze(). Credential failures are
re-raised as AnalyzerAuthError so the scheduler can alert on them instead of
silently requeueing forever.

The model reply is treated as untyped at the boundary; normalize_result() is
the only path from raw JSON to a ModerationResult.
"""

import json
import re
import time
from typing import Any, Optional, Protocol

import structlog

from nexusmod.config import settings
from nexusmod.metrics import analysis_duration, analysis_fallbacks
from nexusmod.models.queue import ModerationAction, Severity
from nexusmod.schemas.moderation import ModerationResult

log = structlog.get_logger(__name__)

MAX_OUTPUT_TOKENS = 2000

CATEGORIES = (
    "spam",
    "harassment",
    "scams",
    "fraud",
    "explicit",
    "hate_speech",
    "violence",
    "self_harm",
    "off_topic",
)

_VALID_SEVERITIES = {s.value for s in Severity}
_VALID_ACTIONS = {a.value for a in ModerationAction}
_BLOCKING_ACTIONS = {"block", "ban", "escalate"}
_FENCE_PATTERN = re.compile(r"```(?:json)?\s*", re.IGNORECASE)


class AnalyzerAuthError(Exception):
    """Raised when the analyzer rejects our credentials. Not recoverable locally."""
    pass


class ModerationModelClient(Protocol):
    provider: str

    async def complete(self, prompt: str) -> str:
        ...


class OpenAIModerationClient:
    """Chat-completions backed analyzer client."""

    provider = "openai"

    def __init__(self, api_key: str, model: Optional[str] = None) -> None:
        self._api_key = api_key
        self._model = model or settings.moderation_openai_model
        self._client = None

    def _get_client(self):
        """Lazy-initialize AsyncOpenAI client on first use."""
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def complete(self, prompt: str) -> str:
        import openai

        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=MAX_OUTPUT_TOKENS,
                temperature=0,
            )
        except (openai.AuthenticationError, openai.PermissionDeniedError) as exc:
            raise AnalyzerAuthError(str(exc)) from exc
        return response.choices[0].message.content or ""


class AnthropicModerationClient:
    """Messages-API backed analyzer client."""

    provider = "anthropic"

    def __init__(self, api_key: str, model: Optional[str] = None) -> None:
        self._api_key = api_key
        self._model = model or settings.moderation_anthropic_model
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def complete(self, prompt: str) -> str:
        import anthropic

        client = self._get_client()
        try:
            response = await client.messages.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=MAX_OUTPUT_TOKENS,
            )
        except (anthropic.AuthenticationError, anthropic.PermissionDeniedError) as exc:
            raise AnalyzerAuthError(str(exc)) from exc
        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )


def build_model_client() -> Optional[ModerationModelClient]:
    """Build the configured analyzer client, or None when its API key is missing."""
    if settings.moderation_llm_provider == "anthropic":
        if not settings.anthropic_api_key:
            log.warning("analyzer_no_api_key", provider="anthropic")
            return None
        return AnthropicModerationClient(settings.anthropic_api_key)

    if not settings.openai_api_key:
        log.warning("analyzer_no_api_key", provider="openai")
        return None
    return OpenAIModerationClient(settings.openai_api_key)


def default_safe_result() -> ModerationResult:
    return ModerationResult(
        allowed=True,
        severity="LOW",
        categories=[],
        action="allow",
        reason="Content approved (AI unavailable)",
        confidence=0.5,
    )


def _normalize_categories(raw: Any) -> list[str]:
    if not isinstance(raw, list):
        return []
    seen: set[str] = set()
    result: list[str] = []
    for value in raw:
        if not isinstance(value, str):
            continue
        tag = value.strip().lower()[:50]
        if tag and tag not in seen:
            seen.add(tag)
            result.append(tag)
    return result


def normalize_result(raw: Any) -> ModerationResult:
    """Coerce one analyzer element into a valid ModerationResult.

    Unknown severities become LOW, unknown actions become allow, confidence
    outside [0, 1] (or not a number) becomes 0.5. A verdict that disallows
    content but carries a non-blocking action is escalated for human review.
    """
    if not isinstance(raw, dict):
        raw = {}

    allowed = raw.get("allowed") is not False

    severity = raw.get("severity")
    severity = severity.upper() if isinstance(severity, str) else ""
    if severity not in _VALID_SEVERITIES:
        severity = Severity.LOW.value

    action = raw.get("action")
    action = action.lower() if isinstance(action, str) else ""
    if action not in _VALID_ACTIONS:
        action = ModerationAction.allow.value

    confidence = raw.get("confidence")
    if (
        isinstance(confidence, bool)
        or not isinstance(confidence, (int, float))
        or not 0.0 <= confidence <= 1.0
    ):
        confidence = 0.5

    reason = raw.get("reason")
    if not isinstance(reason, str) or not reason.strip():
        reason = "No issues detected"

    if not allowed and action not in _BLOCKING_ACTIONS:
        action = ModerationAction.escalate.value

    return ModerationResult(
        allowed=allowed,
        severity=severity,
        categories=_normalize_categories(raw.get("categories")),
        action=action,
        reason=reason,
        confidence=float(confidence),
    )


def build_batch_prompt(contents: list[str]) -> str:
    listing = "\n".join(f"[{i}]: {json.dumps(c)}" for i, c in enumerate(contents))
    return (
        f"Analyze the following {len(contents)} pieces of content for moderation. "
        "Respond with ONLY a valid JSON array, no markdown.\n\n"
        f"Contents:\n{listing}\n\n"
        "For each content, evaluate for: spam, harassment, scams, fraud, off-topic, "
        "explicit content, hate speech, violence, self-harm.\n\n"
        f"Respond with ONLY a JSON array of exactly {len(contents)} objects, in the "
        "same order as the contents (no code blocks):\n"
        "[\n"
        "  {\n"
        '    "allowed": true,\n'
        '    "categories": [],\n'
        '    "severity": "LOW",\n'
        '    "confidence": 0.9,\n'
        '    "action": "allow",\n'
        '    "reason": "Content is appropriate"\n'
        "  }\n"
        "]\n\n"
        "severity: LOW, MEDIUM, HIGH, or CRITICAL\n"
        "action: allow, warn, block, ban, or escalate\n"
        "confidence: 0.0 to 1.0\n"
        f"categories: any of {', '.join(CATEGORIES)}"
    )


def parse_batch_reply(text: str, expected: int) -> list[ModerationResult]:
    """Parse an analyzer reply into exactly ``expected`` results.

    Any shape problem replaces the whole batch with safe defaults.
    """
    cleaned = _FENCE_PATTERN.sub("", text or "").strip()
    try:
        parsed = json.loads(cleaned)
    except ValueError:
        log.warning("analysis_fallback", reason="invalid_json", expected=expected)
        analysis_fallbacks.labels(reason="invalid_json").inc()
        return [default_safe_result() for _ in range(expected)]

    if not isinstance(parsed, list):
        log.warning("analysis_fallback", reason="not_array", expected=expected)
        analysis_fallbacks.labels(reason="not_array").inc()
        return [default_safe_result() for _ in range(expected)]

    if len(parsed) != expected:
        log.warning(
            "analysis_fallback",
            reason="length_mismatch",
            expected=expected,
            received=len(parsed),
        )
        analysis_fallbacks.labels(reason="length_mismatch").inc()
        return [default_safe_result() for _ in range(expected)]

    return [normalize_result(raw) for raw in parsed]


class AnalysisEngine:
    """Batched analyzer front-end.

    When constructed without a client every call answers with safe defaults;
    the queue keeps moving while no provider is configured.
    """

    def __init__(self, client: Optional[ModerationModelClient] = None) -> None:
        self._client = client

    @property
    def provider(self) -> str:
        return self._client.provider if self._client is not None else "none"

    async def analyze(self, contents: list[str]) -> list[ModerationResult]:
        """Return one ModerationResult per input string, in input order.

        Raises:
            AnalyzerAuthError: When the provider rejects our credentials.
            Exception: Transport errors from the provider SDK propagate as-is.
        """
        if not contents:
            return []

        if self._client is None:
            analysis_fallbacks.labels(reason="no_client").inc()
            return [default_safe_result() for _ in contents]

        start = time.monotonic()
        try:
            reply = await self._client.complete(build_batch_prompt(contents))
        finally:
            analysis_duration.labels(provider=self.provider).observe(time.monotonic() - start)

        return parse_batch_reply(reply, len(contents))
