import pytest

from llm_relay.config.settings import DEFAULT_RULES_PATH
from llm_relay.exceptions import InvalidConfigurationError, InvalidInputError
from llm_relay.routing.classifier import ClassificationRule, PromptClassifier
from llm_relay.routing.models import LLMPreferences, Scope


@pytest.fixture
def classifier():
    return PromptClassifier([
        ClassificationRule(
            id="code",
            category="coding",
            patterns=[r"```"],
            keywords=["python", "bug"],
            weight=2.0,
            llm_mapping=["primary", "secondary"],
        ),
        ClassificationRule(
            id="poem",
            category="creative",
            keywords=["poem"],
            weight=1.0,
            llm_mapping=["secondary"],
        ),
    ])


def test_keyword_scores_pick_primary_category(classifier):
    analysis = classifier.analyze_prompt("fix this python bug")
    assert analysis.primary_category == "coding"
    assert analysis.confidence == 1.0
    assert analysis.requires_specialization
    assert analysis.suggested_llms == ["primary", "secondary"]
    assert analysis.metadata["raw_scores"] == {"coding": 2.0}


def test_mixed_prompt_ranks_llms_by_score(classifier):
    analysis = classifier.analyze_prompt("write a python poem")
    assert analysis.primary_category == "coding"
    assert analysis.secondary_categories == ["creative"]
    assert analysis.confidence == pytest.approx(1.0 / 1.5)
    assert not analysis.requires_specialization
    assert analysis.suggested_llms == ["secondary", "primary"]


def test_pattern_match_adds_full_weight(classifier):
    analysis = classifier.analyze_prompt("```print(1)```")
    assert analysis.metadata["raw_scores"] == {"coding": 2.0}


def test_no_match_defaults_to_conversation(classifier):
    analysis = classifier.analyze_prompt("hello there")
    assert analysis.primary_category == "conversation"
    assert analysis.confidence == 0.5
    assert analysis.suggested_llms == []


def test_keywords_match_whole_words_only(classifier):
    analysis = classifier.analyze_prompt("debugging pythonic poems")
    assert analysis.metadata["raw_scores"] == {}


def test_min_confidence_filters_weak_suggestions():
    classifier = PromptClassifier([
        ClassificationRule(id="code", category="coding", keywords=["python", "bug"], weight=2.0, llm_mapping=["primary"]),
        ClassificationRule(id="poem", category="creative", keywords=["poem"], weight=1.0, llm_mapping=["tertiary"], min_confidence=0.5),
    ])
    analysis = classifier.analyze_prompt("python bug poem")
    assert analysis.suggested_llms == ["primary"]


def test_scope_modifiers(classifier):
    scope = Scope(id="s1", llm_preferences=LLMPreferences(preferred=["tertiary"], excluded=["secondary"]))
    analysis = classifier.analyze_prompt("fix this python bug", scope)
    assert analysis.suggested_llms == ["tertiary", "primary"]


def test_match_llms_reapplies_scope(classifier):
    analysis = classifier.analyze_prompt("fix this python bug")
    assert classifier.match_llms(analysis) == ["primary", "secondary"]
    scope = Scope(id="s1", llm_preferences=LLMPreferences(excluded=["primary"]))
    assert classifier.match_llms(analysis, scope) == ["secondary"]


def test_features():
    classifier = PromptClassifier()
    features = classifier.analyze_features("Briefly explain ```async def``` in Python и по-русски")
    assert features.language_count == 2
    assert features.expected_length == 300
    assert features.technical_level > 0.5

    short = classifier.analyze_features("Answer briefly")
    assert short.expected_length == 50


def test_rule_management(classifier):
    with pytest.raises(InvalidInputError):
        classifier.add_rule(ClassificationRule(id="code", category="coding"))

    updated = classifier.update_rule("poem", {"weight": 3.0})
    assert updated.weight == 3.0
    assert classifier.get_scoring_matrix() == {"primary": 2.0, "secondary": 5.0}

    with pytest.raises(InvalidInputError):
        classifier.update_rule("poem", {"colour": "blue"})
    with pytest.raises(InvalidInputError):
        classifier.update_rule("missing", {"weight": 1.0})

    assert classifier.remove_rule("poem")
    assert not classifier.remove_rule("poem")
    assert [r.id for r in classifier.get_rules()] == ["code"]


def test_rule_from_camel_case_dict():
    rule = ClassificationRule.from_dict(
        {"id": "r", "category": "coding", "llmMapping": ["gpt4"], "minConfidence": 0.3}
    )
    assert rule.llm_mapping == ["gpt4"]
    assert rule.min_confidence == 0.3


def test_invalid_pattern_rejected():
    with pytest.raises(InvalidInputError):
        PromptClassifier([ClassificationRule(id="bad", category="coding", patterns=["(unclosed"])])


def test_bundled_rules():
    classifier = PromptClassifier.from_file(DEFAULT_RULES_PATH)
    analysis = classifier.analyze_prompt("Write a poem about the sea")
    assert analysis.primary_category == "creative"
    assert "anthropic" in analysis.suggested_llms

    coding = classifier.analyze_prompt("Why does this python function raise a bug?")
    assert coding.primary_category == "coding"


def test_missing_rules_file(tmp_path):
    with pytest.raises(InvalidConfigurationError):
        PromptClassifier.from_file(tmp_path / "rules.json")
