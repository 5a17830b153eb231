"""
Prompt Classifier - rule-based prompt analysis used for provider selection.

Each rule scores a prompt: every matching regex pattern adds the rule's
weight, every whole-word keyword adds half of it. Scores accumulate per
category and per mapped LLM.
"""

import json
import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Union

from llm_relay.exceptions import InvalidConfigurationError, InvalidInputError
from llm_relay.routing.models import PromptAnalysis, PromptCategory, PromptFeatures, Scope

logger = logging.getLogger(__name__)

ANALYSIS_VERSION = "1.0"
KEYWORD_WEIGHT_FACTOR = 0.5
SPECIALIZATION_THRESHOLD = 0.8

_CREATIVE_WORDS = frozenset(
    "imagine story poem creative fiction invent dream describe song metaphor character plot".split()
)
_TECHNICAL_WORDS = frozenset(
    "algorithm api function class database server latency protocol compile runtime kernel "
    "query schema deploy docker kubernetes regex thread async memory".split()
)
_LENGTH_HINTS = (
    (re.compile(r"\b(essay|article|report|detailed|in depth|comprehensive)\b", re.I), 800),
    (re.compile(r"\b(explain|describe|list|steps)\b", re.I), 300),
    (re.compile(r"\b(briefly|short|one sentence|tl;?dr|yes or no)\b", re.I), 50),
)
_SCRIPTS = (
    re.compile(r"[A-Za-z]"),
    re.compile(r"[Ѐ-ӿ]"),        # Cyrillic
    re.compile(r"[Ͱ-Ͽ]"),        # Greek
    re.compile(r"[֐-׿]"),        # Hebrew
    re.compile(r"[؀-ۿ]"),        # Arabic
    re.compile(r"[ऀ-ॿ]"),        # Devanagari
    re.compile(r"[぀-ヿ]"),        # Kana
    re.compile(r"[一-鿿]"),        # CJK
    re.compile(r"[가-힯]"),        # Hangul
)


@dataclass
class ClassificationRule:
    id: str
    category: str
    patterns: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    weight: float = 1.0
    llm_mapping: List[str] = field(default_factory=list)
    min_confidence: float = 0.0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClassificationRule":
        try:
            return cls(
                id=str(data["id"]),
                category=str(data["category"]),
                patterns=list(data.get("patterns") or []),
                keywords=list(data.get("keywords") or []),
                weight=float(data.get("weight", 1.0)),
                llm_mapping=list(data.get("llm_mapping") or data.get("llmMapping") or []),
                min_confidence=float(data.get("min_confidence", data.get("minConfidence", 0.0))),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidInputError(f"Invalid classification rule: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "patterns": self.patterns,
            "keywords": self.keywords,
            "weight": self.weight,
            "llm_mapping": self.llm_mapping,
            "min_confidence": self.min_confidence,
        }


class _CompiledRule:
    __slots__ = ("rule", "patterns", "keywords")

    def __init__(self, rule: ClassificationRule):
        self.rule = rule
        try:
            self.patterns: List[Pattern[str]] = [re.compile(p, re.IGNORECASE) for p in rule.patterns]
        except re.error as e:
            raise InvalidInputError(f"Rule '{rule.id}' has an invalid pattern: {e}") from e
        self.keywords: List[Pattern[str]] = [
            re.compile(rf"\b{re.escape(k)}\b", re.IGNORECASE) for k in rule.keywords
        ]

    def score(self, prompt: str) -> float:
        weight = self.rule.weight
        score = sum(weight for p in self.patterns if p.search(prompt))
        score += sum(weight * KEYWORD_WEIGHT_FACTOR for k in self.keywords if k.search(prompt))
        return score


class PromptClassifier:
    """Scores prompts against classification rules and suggests providers."""

    def __init__(self, rules: Optional[List[ClassificationRule]] = None):
        self._rules: Dict[str, _CompiledRule] = {}
        self._scoring_matrix: Dict[str, float] = {}
        for rule in rules or []:
            self._rules[rule.id] = _CompiledRule(rule)
        self._update_scoring_matrix()

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "PromptClassifier":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            rules = [ClassificationRule.from_dict(r) for r in data.get("rules", [])]
        except (OSError, json.JSONDecodeError, InvalidInputError) as e:
            raise InvalidConfigurationError(f"Cannot load classification rules from {path}: {e}") from e
        logger.info("Loaded %d classification rules", len(rules))
        return cls(rules)

    def _update_scoring_matrix(self) -> None:
        matrix: Dict[str, float] = {}
        for compiled in self._rules.values():
            for llm_id in compiled.rule.llm_mapping:
                matrix[llm_id] = matrix.get(llm_id, 0.0) + compiled.rule.weight
        self._scoring_matrix = matrix

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze_prompt(self, prompt: str, scope: Optional[Scope] = None) -> PromptAnalysis:
        category_scores: Dict[str, float] = {}
        llm_scores: Dict[str, float] = {}
        llm_thresholds: Dict[str, float] = {}

        for compiled in self._rules.values():
            score = compiled.score(prompt)
            if score <= 0:
                continue
            rule = compiled.rule
            category_scores[rule.category] = category_scores.get(rule.category, 0.0) + score
            for llm_id in rule.llm_mapping:
                llm_scores[llm_id] = llm_scores.get(llm_id, 0.0) + score
                llm_thresholds[llm_id] = min(llm_thresholds.get(llm_id, rule.min_confidence), rule.min_confidence)

        ranked_categories = sorted(category_scores.items(), key=lambda kv: kv[1], reverse=True)
        primary = ranked_categories[0][0] if ranked_categories else PromptCategory.CONVERSATION.value
        secondary = [category for category, _ in ranked_categories[1:4]]

        total = sum(category_scores.values())
        confidence = category_scores.get(primary, 0.0) / total if total > 0 else 0.5

        # An LLM is suggested when its share of the total score clears the
        # lowest min_confidence among the rules that voted for it
        total_llm = sum(llm_scores.values())
        suggested = [
            llm_id
            for llm_id, score in sorted(llm_scores.items(), key=lambda kv: kv[1], reverse=True)
            if total_llm and score / total_llm >= llm_thresholds.get(llm_id, 0.0)
        ]

        if scope is not None:
            suggested = self.apply_scope_modifiers(suggested, scope)

        return PromptAnalysis(
            primary_category=primary,
            secondary_categories=secondary,
            confidence=confidence,
            suggested_llms=suggested,
            requires_specialization=confidence > SPECIALIZATION_THRESHOLD,
            features=self.analyze_features(prompt),
            metadata={
                "raw_scores": category_scores,
                "llm_scores": llm_scores,
                "analysis_version": ANALYSIS_VERSION,
            },
        )

    def match_llms(self, analysis: PromptAnalysis, scope: Optional[Scope] = None) -> List[str]:
        """Suggested LLMs for an existing analysis, re-filtered for a scope."""
        suggested = list(analysis.suggested_llms)
        if scope is not None:
            suggested = self.apply_scope_modifiers(suggested, scope)
        return suggested

    @staticmethod
    def apply_scope_modifiers(suggested: List[str], scope: Scope) -> List[str]:
        """Preferred LLMs go first, excluded ones are dropped."""
        prefs = scope.llm_preferences
        if prefs is None:
            return suggested
        result = list(suggested)
        for llm_id in reversed(prefs.preferred):
            if llm_id not in result:
                result.insert(0, llm_id)
        return [llm_id for llm_id in result if llm_id not in prefs.excluded]

    def analyze_features(self, prompt: str) -> PromptFeatures:
        words = re.findall(r"\w+", prompt.lower())
        word_count = len(words)
        sentences = max(1, len(re.findall(r"[.!?]+", prompt)))
        unique_ratio = len(set(words)) / word_count if word_count else 0.0

        # Long sentences and varied vocabulary read as complex
        complexity = min(1.0, (word_count / sentences) / 40 + unique_ratio * 0.3)
        creativity = min(1.0, 0.2 + 0.2 * sum(1 for w in words if w in _CREATIVE_WORDS))
        technical = min(1.0, 0.1 + 0.15 * sum(1 for w in words if w in _TECHNICAL_WORDS))
        if "```" in prompt:
            technical = min(1.0, technical + 0.4)

        language_count = sum(1 for script in _SCRIPTS if script.search(prompt)) or 1

        expected_length = 100
        for pattern, length in _LENGTH_HINTS:
            if pattern.search(prompt):
                expected_length = length
                break

        return PromptFeatures(
            complexity=round(complexity, 3),
            creativity=round(creativity, 3),
            technical_level=round(technical, 3),
            language_count=language_count,
            expected_length=expected_length,
        )

    # ------------------------------------------------------------------
    # Rule management
    # ------------------------------------------------------------------

    def add_rule(self, rule: ClassificationRule) -> None:
        if rule.id in self._rules:
            raise InvalidInputError(f"Rule '{rule.id}' already exists")
        self._rules[rule.id] = _CompiledRule(rule)
        self._update_scoring_matrix()

    def remove_rule(self, rule_id: str) -> bool:
        removed = self._rules.pop(rule_id, None) is not None
        if removed:
            self._update_scoring_matrix()
        return removed

    def update_rule(self, rule_id: str, updates: Dict[str, Any]) -> ClassificationRule:
        existing = self._rules.get(rule_id)
        if existing is None:
            raise InvalidInputError(f"Rule '{rule_id}' does not exist")
        allowed = set(existing.rule.to_dict()) - {"id"}
        unknown = set(updates) - allowed
        if unknown:
            raise InvalidInputError(f"Cannot update fields: {sorted(unknown)}")
        updated = replace(existing.rule, **updates)
        self._rules[rule_id] = _CompiledRule(updated)
        self._update_scoring_matrix()
        return updated

    def get_rules(self) -> List[ClassificationRule]:
        return [compiled.rule for compiled in self._rules.values()]

    def get_scoring_matrix(self) -> Dict[str, float]:
        return dict(self._scoring_matrix)
