"""Lexical safety heuristics for image generation requests.

Three layers share this module:

* pre-validation, which short-circuits a turn before the model is called
  when an image request is packed with high-risk terms;
* diagnostics for provider content-filter rejections, which explain the
  block per category and suggest safer wording;
* payload normalisation, which backfills risk scores on blocked payloads
  that only carry token counts.

The word lists and the context-exclusion rule are product-tuned. They are
kept exactly as enumerated; adjust them through :class:`CategoryRule`
rather than by special-casing callers.
"""

from __future__ import annotations

import re
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Protocol, Sequence
from uuid import uuid4

from ..schemas.chat import ImageBlockedPayload, TokenSummary

CATEGORY_ORDER: tuple[str, ...] = ("hate", "sexual", "violence", "self_harm")

PROMPT_EXCERPT_LIMIT = 240
SAMPLE_LIMIT = 8
TRIGGER_TOKEN_LIMIT = 6
REPLACEMENT_LIMIT = 4
CONTEXT_WINDOW = 60

CONTENT_FILTER_CODES = frozenset({"contentFilter", "content_policy_violation"})

BLOCKED_BANNER = "🚫 **Image blocked by Azure Content Safety**"
PREVALIDATION_BANNER = "🚫 **Potentially unsafe image request (pre-validation)**"
PREVALIDATION_GUIDANCE = (
    f"{PREVALIDATION_BANNER}\n\nThe prompt contains multiple high-risk terms "
    "likely to trigger the image safety filter. Please soften or remove them "
    "before retrying."
)
ESCALATION_NOTE = (
    "⚠️ Combined violent + hateful terms can elevate severity—remove one or both "
    "categories entirely."
)
INTENSITY_WORDS: tuple[str, ...] = (
    "severe",
    "extreme",
    "brutal",
    "aggressive",
    "bloody",
    "horrific",
)
REFUSAL_SUGGESTION = (
    "General: Remove explicit conflict / harm terms; use neutral descriptive language."
)


def _word_pattern(token: str) -> re.Pattern[str]:
    return re.compile(
        rf"(?<![a-z0-9_]){re.escape(token)}(?![a-z0-9_])", re.IGNORECASE
    )


@dataclass(frozen=True)
class CategoryRule:
    """Word list and remediation text for one safety category."""

    key: str
    label: str
    tokens: tuple[str, ...]
    suggestion: str
    safe_replacements: tuple[str, ...] = ()
    context_exclusions: tuple[re.Pattern[str], ...] = ()
    # Only these tokens are suppressed when an exclusion phrase is nearby
    excludable_tokens: frozenset[str] = frozenset()
    patterns: tuple[tuple[str, re.Pattern[str]], ...] = field(
        init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        object.__setattr__(
            self,
            "patterns",
            tuple((token, _word_pattern(token)) for token in self.tokens),
        )


DEFAULT_RULES: tuple[CategoryRule, ...] = (
    CategoryRule(
        key="violence",
        label="Violence",
        tokens=(
            "battle", "battles", "fight", "fighting", "blood", "bloody", "gore",
            "gory", "weapon", "weapons", "gun", "guns", "rifle", "pistol", "knife",
            "sword", "war", "warfare", "dead body", "corpse", "death", "kill",
            "killing", "attack", "attacking", "destroy", "destruction", "combat",
            "wound", "wounded", "injury", "injuries", "beaten", "shoot", "shooting",
            "explosion", "explosive", "grenade", "burn", "burning",
        ),
        suggestion=(
            "Reduce or remove explicit violence / weapon / gore terms; describe "
            "neutral actions or high-level context."
        ),
        safe_replacements=(
            "training", "practice", "peaceful scene", "historic setting",
            "strategic board game",
        ),
    ),
    CategoryRule(
        key="sexual",
        label="Sexual",
        tokens=(
            "nude", "nudity", "naked", "sexual", "sexually", "erotic", "adult",
            "explicit", "provocative", "seductive", "intimate", "sensual",
            "lingerie", "fetish", "bedroom", "kiss", "kissing", "cleavage",
            "underwear", "topless", "bottomless",
        ),
        suggestion=(
            "Remove sexual descriptors; focus on neutral appearance, pose, or context."
        ),
        safe_replacements=(
            "professional attire", "neutral clothing", "artistic style",
            "portrait style",
        ),
        context_exclusions=tuple(
            re.compile(pattern, re.IGNORECASE)
            for pattern in (
                r"post-apocalyptic",
                r"scene",
                r"environment",
                r"atmosphere",
                r"stylized",
                r"comic book",
                r"emphasizing mood",
            )
        ),
        excludable_tokens=frozenset({"explicit"}),
    ),
    CategoryRule(
        key="hate",
        label="Hate / Harassment",
        tokens=(
            "hate", "hating", "nazi", "terrorist", "terrorism", "supremacist",
            "racist", "racism", "discrimination", "slur", "bigot",
            "ethnic cleansing", "genocide", "kill them", "wipe out",
        ),
        suggestion=(
            "Remove hateful / extremist / dehumanizing language; use neutral, "
            "inclusive wording."
        ),
        safe_replacements=("group", "people", "community", "team", "audience"),
    ),
    CategoryRule(
        key="self_harm",
        label="Self-harm",
        tokens=(
            "suicide", "suicidal", "self-harm", "self harm", "cutting", "overdose",
            "depression", "self-injury", "self injury", "self-mutilation",
            "self mutilation", "harm myself", "end my life", "kill myself",
        ),
        suggestion=(
            "Remove self-harm references; reframe toward supportive, positive, or "
            "recovery-oriented themes."
        ),
        safe_replacements=(
            "support", "help", "well-being", "encouragement", "resilience",
        ),
    ),
)

# Pre-validation uses a shorter list and plain substring matching.
PREVALIDATION_RISK_TOKENS: dict[str, tuple[str, ...]] = {
    "violence": (
        "blood", "bloody", "gore", "gory", "decapitated", "severed",
        "disemboweled", "corpse", "zombie", "kill", "killing",
    ),
    "sexual": ("nude", "nudity", "naked", "sexual", "erotic", "fetish"),
    "hate": ("nazi", "terrorist", "genocide", "supremacist", "racist"),
    "self_harm": ("suicide", "self-harm", "self harm", "kill myself"),
}
PREVALIDATION_SUGGESTIONS: dict[str, str] = {
    "violence": "Violence: reduce graphic or gory terms",
    "sexual": "Sexual: remove sexual descriptors",
    "hate": "Hate: remove extremist/hate references",
    "self_harm": "Self-harm: remove self-injury references",
}
PREVALIDATION_HIT_LIMIT = 5
IMAGE_INTENT_PATTERN = re.compile(
    r"(generate|create|make|draw|design|produce)\s+(an?\s+)?"
    r"(image|picture|logo|icon|illustration|art|artwork)"
    r"|\bimage of\b|\billustration of\b"
)


@dataclass(frozen=True)
class TokenMatch:
    token: str
    index: int


@dataclass
class CategoryHits:
    """Matches per category, in rule order then pattern order."""

    matches: dict[str, list[TokenMatch]] = field(default_factory=dict)

    def tokens(self, category: str) -> list[str]:
        return [match.token for match in self.matches.get(category, [])]

    def count(self, category: str) -> int:
        return len(self.matches.get(category, []))

    def counts(self, category: str) -> Counter[str]:
        return Counter(self.tokens(category))

    def unique_tokens(self, category: str) -> list[str]:
        return list(dict.fromkeys(self.tokens(category)))

    def categories(self) -> list[str]:
        return [key for key, found in self.matches.items() if found]

    @property
    def has_matches(self) -> bool:
        return any(self.matches.values())

    def token_summary(self, sample_limit: int = SAMPLE_LIMIT) -> dict[str, TokenSummary]:
        summary: dict[str, TokenSummary] = {}
        for category in self.categories():
            ranked = self.counts(category).most_common(sample_limit)
            summary[category] = TokenSummary(
                count=self.count(category),
                samples=[token for token, _ in ranked],
            )
        return summary


class SafetyClassifier(Protocol):
    def classify(self, text: str) -> CategoryHits:
        ...


class LexicalSafetyClassifier:
    """Word-boundary token matcher with a per-category context exclusion."""

    def __init__(
        self,
        rules: Sequence[CategoryRule] = DEFAULT_RULES,
        *,
        context_window: int = CONTEXT_WINDOW,
    ) -> None:
        self._rules = tuple(rules)
        self._window = context_window

    @property
    def rules(self) -> tuple[CategoryRule, ...]:
        return self._rules

    def rule(self, key: str) -> CategoryRule | None:
        return next((rule for rule in self._rules if rule.key == key), None)

    def classify(self, text: str) -> CategoryHits:
        hits = CategoryHits({rule.key: [] for rule in self._rules})
        for rule in self._rules:
            for token, pattern in rule.patterns:
                for match in pattern.finditer(text):
                    if token in rule.excludable_tokens and self._excluded(
                        rule, text, match.start(), len(token)
                    ):
                        continue
                    hits.matches[rule.key].append(TokenMatch(token, match.start()))
        return hits

    def _excluded(
        self, rule: CategoryRule, text: str, index: int, length: int
    ) -> bool:
        start = max(0, index - self._window)
        end = min(len(text), index + length + self._window)
        window = text[start:end]
        return any(pattern.search(window) for pattern in rule.context_exclusions)


# Risk scoring -------------------------------------------------------------


def category_contribution(count: int) -> float:
    """Risk contribution of one category: ``min(count/5, 1) * 0.25``."""

    return min(count / 5, 1) * 0.25


def risk_from_counts(counts: Mapping[str, int]) -> tuple[float, dict[str, float]]:
    """Score token counts per category, rounded to three decimals."""

    breakdown: dict[str, float] = {}
    total = 0.0
    for category, count in counts.items():
        contribution = category_contribution(count)
        breakdown[category] = round(contribution, 3)
        total += contribution
    return round(min(total, 1), 3), breakdown


def backfill_risk(payload: ImageBlockedPayload) -> ImageBlockedPayload:
    """Fill in ``risk_score``/``risk_breakdown`` from ``token_summary`` when absent.

    The score is the total token count normalised by 12 and capped at 1;
    each category contributes ``min(count/5, 1) * 0.25`` to the breakdown.
    """

    if payload.risk_score is not None and payload.risk_breakdown is not None:
        return payload

    counts = {
        category: summary.count for category, summary in payload.token_summary.items()
    }
    updates: dict[str, Any] = {}
    if payload.risk_score is None:
        total = sum(counts.values())
        updates["risk_score"] = min(total / 12, 1) if total else 0.0
    if payload.risk_breakdown is None:
        updates["risk_breakdown"] = {
            category: category_contribution(count) for category, count in counts.items()
        }
    return payload.model_copy(update=updates)


# Pre-validation -----------------------------------------------------------


@dataclass(frozen=True)
class PrevalidationResult:
    detected: dict[str, list[str]]
    risk_score: float
    risk_breakdown: dict[str, float]
    blocked: bool
    guidance: str = PREVALIDATION_GUIDANCE

    def to_payload(self, message: str) -> ImageBlockedPayload:
        detail = "; ".join(
            f"{category}({', '.join(tokens)})"
            for category, tokens in self.detected.items()
        )
        return ImageBlockedPayload(
            source="pre_validation",
            message=f"{self.guidance}\n\nDetected: {detail}",
            original_prompt=message[:PROMPT_EXCERPT_LIMIT],
            blocked_categories=list(self.detected),
            token_summary={
                category: TokenSummary(count=len(tokens), samples=list(tokens))
                for category, tokens in self.detected.items()
            },
            suggestions=[
                PREVALIDATION_SUGGESTIONS[category]
                for category in PREVALIDATION_SUGGESTIONS
                if category in self.detected
            ],
            risk_score=self.risk_score,
            risk_breakdown=dict(self.risk_breakdown),
        )


def has_image_intent(message: str) -> bool:
    return IMAGE_INTENT_PATTERN.search(message.lower()) is not None


def prevalidate(message: str, threshold: float) -> PrevalidationResult | None:
    """Assess an incoming message before any model call.

    Returns ``None`` when the message does not ask for an image. Otherwise
    the result's ``blocked`` flag is set when the risk score reaches
    ``threshold`` or any one category has two or more token hits.
    """

    lowered = message.lower()
    if IMAGE_INTENT_PATTERN.search(lowered) is None:
        return None

    detected: dict[str, list[str]] = {}
    for category, tokens in PREVALIDATION_RISK_TOKENS.items():
        hits = [token for token in tokens if token in lowered]
        if hits:
            detected[category] = hits[:PREVALIDATION_HIT_LIMIT]

    risk_score, breakdown = risk_from_counts(
        {category: len(tokens) for category, tokens in detected.items()}
    )
    multiplicity = any(len(tokens) >= 2 for tokens in detected.values())
    return PrevalidationResult(
        detected=detected,
        risk_score=risk_score,
        risk_breakdown=breakdown,
        blocked=risk_score >= threshold or multiplicity,
    )


# Provider content-filter diagnostics --------------------------------------


def prompt_hash(prompt: str) -> str:
    """Rolling ``h * 31 + c`` hash over UTF-16 code units, as 8 hex digits."""

    value = 0
    encoded = prompt.encode("utf-16-le")
    for offset in range(0, len(encoded), 2):
        unit = encoded[offset] | (encoded[offset + 1] << 8)
        value = (value * 31 + unit) & 0xFFFFFFFF
    return f"{value:08x}"


def is_content_filter_error(
    *, code: str | None, status_code: int | None, filter_results: Any
) -> bool:
    return bool(
        (code in CONTENT_FILTER_CODES)
        or status_code == 400
        or filter_results
    )


@dataclass(frozen=True)
class FilterVerdict:
    category: str
    severity: str
    filtered: bool


def parse_filter_results(results: Mapping[str, Any] | None) -> list[FilterVerdict]:
    if not results:
        return []
    verdicts: list[FilterVerdict] = []
    for category in CATEGORY_ORDER:
        result = results.get(category)
        if not isinstance(result, Mapping):
            continue
        severity = str(result.get("severity") or "unknown").lower()
        verdicts.append(FilterVerdict(category, severity, bool(result.get("filtered"))))
    return verdicts


def _format_counts(counts: Counter[str]) -> str:
    return ", ".join(
        f"{token}×{count}" if count > 1 else token
        for token, count in counts.most_common(SAMPLE_LIMIT)
    )


class ContentFilterDiagnostics:
    """Turn a provider content-filter rejection into guidance for the user."""

    def __init__(self, classifier: LexicalSafetyClassifier | None = None) -> None:
        self._classifier = classifier or LexicalSafetyClassifier()

    @property
    def classifier(self) -> LexicalSafetyClassifier:
        return self._classifier

    def build(
        self,
        prompt: str,
        *,
        request_id: str | None = None,
        provider_message: str | None = None,
        filter_results: Mapping[str, Any] | None = None,
    ) -> ImageBlockedPayload:
        lines = [BLOCKED_BANNER]
        if request_id:
            lines.append(f"\n📋 Request ID: {request_id}")
        if provider_message:
            lines.append(f"\n⚠️ {provider_message}")

        verdicts = parse_filter_results(filter_results)
        blocked_categories = [
            f"{verdict.category}:{verdict.severity}"
            for verdict in verdicts
            if verdict.filtered
        ]
        if filter_results:
            lines.append("\n\n📊 **Content Filter Analysis:**")
            for verdict in verdicts:
                state = "❌" if verdict.filtered else "✅"
                outcome = "Blocked" if verdict.filtered else "Allowed"
                lines.append(
                    f"\n• {state} **{verdict.category.upper()}**: {outcome} "
                    f"(severity: {verdict.severity})"
                )
            if blocked_categories:
                lines.append(
                    f"\n\n🚨 **Blocked Categories:** {', '.join(blocked_categories)}"
                )
        else:
            lines.append(
                "\n\n🔍 **Content Filter Details:** Not available in response - "
                "using lexical analysis."
            )

        hits = self._classifier.classify(prompt)
        lines.extend(self._describe_hits(hits))

        if not hits.count("violence"):
            lowered = prompt.lower()
            intensity = [word for word in INTENSITY_WORDS if word in lowered]
            if intensity:
                lines.append(
                    f"\n\nℹ️ Detected intensity terms: {', '.join(intensity)} — "
                    "softening them may help."
                )

        lines.append(
            "\n\n🔄 **Try:** Rephrasing with different words or removing "
            "potentially sensitive terms."
        )
        lines.append(f'\n\n📝 **Original prompt:** "{prompt}"')

        return ImageBlockedPayload(
            source="api_content_filter",
            message="".join(lines),
            original_prompt=prompt[:PROMPT_EXCERPT_LIMIT],
            request_id=request_id,
            block_id=uuid4().hex,
            prompt_hash=prompt_hash(prompt),
            blocked_categories=blocked_categories,
            token_summary=hits.token_summary(),
            suggestions=self.suggestions(hits),
            timestamp=str(int(time.time() * 1000)),
        )

    def suggestions(self, hits: CategoryHits) -> list[str]:
        return [
            f"{rule.label}: {rule.suggestion}"
            for rule in self._classifier.rules
            if hits.count(rule.key)
        ]

    def _describe_hits(self, hits: CategoryHits) -> Iterable[str]:
        if not hits.has_matches:
            yield "\n\n🔍 **No direct high-risk tokens matched**"
            yield (
                "\n💡 The block may be due to contextual phrasing, implied harm, or "
                "internal prompt expansion. Try neutral, descriptive language."
            )
            return

        yield "\n\n🔍 **Detected category indicators (token counts):**"
        for category in hits.categories():
            yield (
                f"\n• {category}: {hits.count(category)} match(es) → "
                f"{_format_counts(hits.counts(category))}"
            )

        yield "\n\n💡 **Suggestions:**"
        for rule in self._classifier.rules:
            if not hits.count(rule.key):
                continue
            triggers = hits.unique_tokens(rule.key)[:TRIGGER_TOKEN_LIMIT]
            line = f"\n• **{rule.label}**: {rule.suggestion}"
            if triggers:
                line += f" (triggered by: {', '.join(triggers)})"
            yield line
            if rule.safe_replacements:
                yield f"\n  → Try: {', '.join(rule.safe_replacements[:REPLACEMENT_LIMIT])}"

        if hits.count("violence") and hits.count("hate"):
            yield f"\n\n{ESCALATION_NOTE}"


def model_refusal_payload(prompt: str) -> ImageBlockedPayload:
    """Payload for a successful call that came back without image data."""

    message = (
        "🚫 **Image request not fulfilled (model_refusal)**\n"
        "The model did not return image data for this request. This often "
        "indicates an internal safety or policy refusal even if no explicit "
        "content filter error was raised.\n\n"
        f'📝 **Original prompt:** "{prompt}"\n\n'
        "🔄 **Try:** Adjust wording to remove explicit conflict, weapons, injury, "
        "or gore; focus on neutral descriptors."
    )
    return ImageBlockedPayload(
        source="model_refusal",
        message=message,
        original_prompt=prompt[:PROMPT_EXCERPT_LIMIT],
        block_id=uuid4().hex,
        prompt_hash=prompt_hash(prompt),
        suggestions=[REFUSAL_SUGGESTION],
        timestamp=str(int(time.time() * 1000)),
    )


__all__ = [
    "BLOCKED_BANNER",
    "CATEGORY_ORDER",
    "DEFAULT_RULES",
    "ESCALATION_NOTE",
    "PREVALIDATION_BANNER",
    "PREVALIDATION_GUIDANCE",
    "CategoryHits",
    "CategoryRule",
    "ContentFilterDiagnostics",
    "FilterVerdict",
    "LexicalSafetyClassifier",
    "PrevalidationResult",
    "SafetyClassifier",
    "TokenMatch",
    "backfill_risk",
    "category_contribution",
    "has_image_intent",
    "is_content_filter_error",
    "model_refusal_payload",
    "parse_filter_results",
    "prevalidate",
    "prompt_hash",
    "risk_from_counts",
]
