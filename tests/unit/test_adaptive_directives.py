"""
Unit Tests for Adaptive Directives

Tests mastery, struggle-ratio and learning-style adaptation.
"""

import pytest

from multi_ai_tutor.adaptive_directives import (
    DirectiveGenerator,
    DirectiveThresholds,
    normalize_learning_style,
    struggle_ratio,
)
from multi_ai_tutor.models import HistoryEntry

from fakes import make_profile, make_settings


def history_with_corrections(total: int, corrections: int):
    entries = []
    for i in range(total):
        reply = "Not quite, try again with the denominators." if i < corrections else "Great work, that's right!"
        entries.append(HistoryEntry(user_message=f"answer {i}", ai_response=reply))
    return entries


class TestDirectiveGenerator:
    """Test suite for DirectiveGenerator."""

    @pytest.fixture
    def generator(self):
        return DirectiveGenerator()

    def test_low_mastery_simplifies_with_three_examples(self, generator):
        """masteryScore=30 gives a simplification directive requiring 3+ examples."""
        directives = generator.generate(make_profile(learning_style=None), [], 30)
        text = "\n".join(directives.difficulty_adjustments)

        assert directives.difficulty_level == "simplified"
        assert "SIMPLIFICATION" in text
        assert "minimum 3 concrete examples" in text

    def test_high_mastery_accelerates(self, generator):
        directives = generator.generate(make_profile(learning_style=None), [], 92)

        assert directives.difficulty_level == "accelerated"
        assert any("ACCELERAT" in line for line in directives.difficulty_adjustments)

    def test_visual_learner_requires_diagram(self, generator):
        for mastery in (10, 65, 95):
            directives = generator.generate(make_profile(learning_style="visual"), [], mastery)
            assert any("SVG diagram" in line for line in directives.style_adjustments)

    def test_heavy_corrections_trigger_maximum_scaffolding(self, generator):
        """5 history entries with 3 corrections -> ratio 0.6 -> maximum scaffolding."""
        history = history_with_corrections(5, 3)
        directives = generator.generate(make_profile(), history, 60)

        assert directives.encouragement_level == "high"
        assert directives.scaffolding_level == "maximum"
        assert any("MAXIMUM" in line for line in directives.scaffolding_needs)

    def test_empty_history_uses_standard_scaffolding(self, generator):
        directives = generator.generate(make_profile(), [], 60)

        assert directives.scaffolding_level == "standard"
        assert directives.encouragement_level == "standard"

    def test_no_corrections_uses_minimal_scaffolding(self, generator):
        directives = generator.generate(make_profile(), history_with_corrections(5, 0), 60)

        assert directives.scaffolding_level == "minimal"
        assert directives.encouragement_level == "minimal"

    @pytest.mark.parametrize("mastery,expected", [
        (49, "simplified"),
        (50, "standard"),
        (80, "standard"),
        (81, "accelerated"),
    ])
    def test_mastery_boundaries(self, generator, mastery, expected):
        directives = generator.generate(make_profile(learning_style=None), [], mastery)
        assert directives.difficulty_level == expected

    @pytest.mark.parametrize("corrections,expected", [
        (1, "minimal"),    # 0.1
        (2, "standard"),   # 0.2 inclusive
        (4, "standard"),   # 0.4 inclusive
        (5, "maximum"),    # 0.5
    ])
    def test_struggle_ratio_boundaries(self, generator, corrections, expected):
        directives = generator.generate(make_profile(), history_with_corrections(10, corrections), 60)
        assert directives.scaffolding_level == expected

    def test_strengths_and_struggles_are_referenced(self, generator):
        profile = make_profile(strengths=["multiplication"], struggles=["fractions"])
        directives = generator.generate(profile, [], 60)
        text = "\n".join(directives.scaffolding_needs)

        assert "LEVERAGE STRENGTHS" in text and "multiplication" in text
        assert "KNOWN STRUGGLES" in text and "fractions" in text

    def test_thresholds_come_from_settings(self):
        settings = make_settings(mastery_low_threshold=60, mastery_high_threshold=90)
        generator = DirectiveGenerator(DirectiveThresholds.from_settings(settings))

        assert generator.generate(make_profile(), [], 55).difficulty_level == "simplified"
        assert generator.generate(make_profile(), [], 85).difficulty_level == "standard"

    def test_format_renders_all_groups(self, generator):
        profile = make_profile(learning_style="visual")
        directives = generator.generate(profile, history_with_corrections(5, 3), 30)
        text = generator.format(directives)

        assert "ADAPTIVE TEACHING DIRECTIVES" in text
        assert "VISUAL LEARNER" in text
        assert "ENCOURAGEMENT LEVEL: HIGH" in text
        assert text.rstrip().endswith("Current Mastery: 30%")
        assert directives.directive_count > 10


class TestHelpers:
    def test_struggle_ratio_of_empty_history_is_zero(self):
        assert struggle_ratio([]) == 0

    def test_struggle_ratio_counts_indicator_replies(self):
        assert struggle_ratio(history_with_corrections(5, 3)) == pytest.approx(0.6)

    def test_normalize_learning_style_aliases(self):
        assert normalize_learning_style("Reading-Writing") == "reading/writing"
        assert normalize_learning_style("interpersonal") == "social"
        assert normalize_learning_style("telepathic") is None
        assert normalize_learning_style(None) is None
