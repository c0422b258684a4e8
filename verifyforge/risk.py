"""
Change Risk Classification
==========================

Turns raw change metrics into a coarse risk signal used to pick the initial
verification tier.

Rules are evaluated in a fixed order and the first match wins:

1. files_changed >= 20                      -> ARCHITECTURAL (size)
2. keyword_hits meet the security keywords  -> SECURITY
3. more than one layer, or flagged by caller -> ARCHITECTURAL
4. <= 4 files, <= 99 lines, exactly 1 layer  -> LOW
5. anything else                            -> ARCHITECTURAL

Classification is pure: it never touches session state.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from verifyforge.config import LARGE_CHANGE_FILES, LIGHT_MAX_FILES, LIGHT_MAX_LINES, VerifyConfig


SECURITY_KEYWORDS = frozenset({
    "auth",
    "authentication",
    "authorization",
    "encrypt",
    "encryption",
    "decrypt",
    "permission",
    "token",
    "credential",
    "secret",
    "password",
    "security",
})


class ClassificationError(ValueError):
    """Raised for malformed change metrics; no tier can be selected."""


class RiskSignal(Enum):
    """Coarse risk classes for a pending change."""
    LOW = "low"
    ARCHITECTURAL = "architectural"
    SECURITY = "security"


class ClassificationRule(Enum):
    """Which rule produced a classification."""
    LARGE_CHANGE = "large_change"
    SECURITY_KEYWORD = "security_keyword"
    MULTI_LAYER = "multi_layer"
    SMALL_SINGLE_LAYER = "small_single_layer"
    DEFAULT = "default"


@dataclass(frozen=True)
class ChangeMetrics:
    """Immutable snapshot of a pending change, taken once per verify attempt."""
    files_changed: int
    lines_changed: int
    layers_touched: frozenset = field(default_factory=frozenset)
    keyword_hits: frozenset = field(default_factory=frozenset)
    architecture_change: bool = False

    def __post_init__(self):
        for name in ("files_changed", "lines_changed"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ClassificationError(f"{name} must be an integer, got {value!r}")
            if value < 0:
                raise ClassificationError(f"{name} must be non-negative, got {value}")

        for name in ("layers_touched", "keyword_hits"):
            value = getattr(self, name)
            if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
                raise ClassificationError(f"{name} must be a collection of strings, got {value!r}")
            items = frozenset(value)
            if not all(isinstance(item, str) and item for item in items):
                raise ClassificationError(f"{name} must contain non-empty strings, got {sorted(map(repr, items))}")
            object.__setattr__(self, name, items)

    @classmethod
    def from_dict(cls, data: dict) -> "ChangeMetrics":
        """Build metrics from a change description dict."""
        try:
            return cls(
                files_changed=data["files_changed"],
                lines_changed=data["lines_changed"],
                layers_touched=data.get("layers_touched", ()),
                keyword_hits=data.get("keyword_hits", ()),
                architecture_change=bool(data.get("architecture_change", False)),
            )
        except KeyError as e:
            raise ClassificationError(f"Missing change metric: {e.args[0]}") from e

    def to_dict(self) -> dict:
        return {
            "files_changed": self.files_changed,
            "lines_changed": self.lines_changed,
            "layers_touched": sorted(self.layers_touched),
            "keyword_hits": sorted(self.keyword_hits),
            "architecture_change": self.architecture_change,
        }


@dataclass(frozen=True)
class ChangeRisk:
    """Result of classifying a change."""
    signal: RiskSignal
    rule: ClassificationRule
    large_change: bool = False
    matched_keywords: frozenset = field(default_factory=frozenset)

    def describe(self) -> str:
        if self.rule == ClassificationRule.LARGE_CHANGE:
            return "large change (file count at or above threshold)"
        if self.rule == ClassificationRule.SECURITY_KEYWORD:
            return f"security-sensitive keywords: {', '.join(sorted(self.matched_keywords))}"
        if self.rule == ClassificationRule.MULTI_LAYER:
            return "touches multiple layers or flagged as architecture change"
        if self.rule == ClassificationRule.SMALL_SINGLE_LAYER:
            return "small change within a single layer"
        return "does not qualify as a small single-layer change"


def is_security_term(term: str, keywords: Iterable[str] = SECURITY_KEYWORDS) -> bool:
    """
    True if term names a security concern.

    Matches the whole term or any of its word parts, so "auth-filter" and
    "token_refresh" match while "authoring" does not.
    """
    keywords = frozenset(k.lower() for k in keywords)
    normalized = term.lower()
    if normalized in keywords:
        return True
    parts = normalized.replace("-", " ").replace("_", " ").replace(".", " ").replace("/", " ").split()
    return any(part in keywords for part in parts)


class ChangeClassifier:
    """
    Deterministic first-match classifier over ChangeMetrics.
    """

    def __init__(
        self,
        large_change_files: int = LARGE_CHANGE_FILES,
        light_max_files: int = LIGHT_MAX_FILES,
        light_max_lines: int = LIGHT_MAX_LINES,
        security_keywords: Iterable[str] = SECURITY_KEYWORDS,
    ):
        self.large_change_files = large_change_files
        self.light_max_files = light_max_files
        self.light_max_lines = light_max_lines
        self.security_keywords = frozenset(k.lower() for k in security_keywords)

    @classmethod
    def from_config(cls, config: VerifyConfig) -> "ChangeClassifier":
        return cls(
            large_change_files=config.large_change_files,
            light_max_files=config.light_max_files,
            light_max_lines=config.light_max_lines,
            security_keywords=SECURITY_KEYWORDS | {k.lower() for k in config.extra_security_keywords},
        )

    def security_matches(self, terms: Iterable[str]) -> frozenset:
        return frozenset(t for t in terms if is_security_term(t, self.security_keywords))

    def classify(self, metrics: ChangeMetrics) -> ChangeRisk:
        if not isinstance(metrics, ChangeMetrics):
            raise ClassificationError(f"Expected ChangeMetrics, got {type(metrics).__name__}")

        if metrics.files_changed >= self.large_change_files:
            return ChangeRisk(
                signal=RiskSignal.ARCHITECTURAL,
                rule=ClassificationRule.LARGE_CHANGE,
                large_change=True,
            )

        matched = self.security_matches(metrics.keyword_hits)
        if matched:
            return ChangeRisk(
                signal=RiskSignal.SECURITY,
                rule=ClassificationRule.SECURITY_KEYWORD,
                matched_keywords=matched,
            )

        if len(metrics.layers_touched) > 1 or metrics.architecture_change:
            return ChangeRisk(signal=RiskSignal.ARCHITECTURAL, rule=ClassificationRule.MULTI_LAYER)

        if (
            metrics.files_changed <= self.light_max_files
            and metrics.lines_changed <= self.light_max_lines
            and len(metrics.layers_touched) == 1
        ):
            return ChangeRisk(signal=RiskSignal.LOW, rule=ClassificationRule.SMALL_SINGLE_LAYER)

        # Conservative default: ties never resolve to LOW
        return ChangeRisk(signal=RiskSignal.ARCHITECTURAL, rule=ClassificationRule.DEFAULT)


def classify_change(metrics: ChangeMetrics, config: Optional[VerifyConfig] = None) -> ChangeRisk:
    """Classify with the default (or configured) thresholds."""
    classifier = ChangeClassifier.from_config(config) if config else ChangeClassifier()
    return classifier.classify(metrics)
