"""
Identity detection, habit template and reflection template tests.
"""

import sys
import os

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.habit_state import EnergyTier, IdentityStage, IdentityType, Persona
from services.habit_templates import TEMPLATES, habits_from_template, initiation_habit_set
from services.identity_detector import detect_identity_type, identity_type_label
from services.reflection_templates import (
    RESONANCE_TEMPLATES,
    archetype_name,
    count_affirmed,
    default_stage_reflection,
    free_user_reflection,
    select_resonance_statements,
)


class TestIdentityDetection:

    @pytest.mark.parametrize(
        "identity, expected",
        [
            ("quit smoking", IdentityType.RECOVERY),
            ("Stop doomscrolling", IdentityType.RECOVERY),
            ("be more patient", IdentityType.CHARACTER),
            ("Become a calm person", IdentityType.CHARACTER),
            ("a runner", IdentityType.SKILL),
            ("learn piano", IdentityType.SKILL),
        ],
    )
    def test_detection(self, identity, expected):
        assert detect_identity_type(identity) == expected

    def test_recovery_wins_over_character(self):
        assert detect_identity_type("be someone who quits sugar") == IdentityType.RECOVERY

    def test_habits_help_skill_detection(self):
        assert detect_identity_type("a pianist") is None
        assert detect_identity_type("a pianist", habits=["Practice scales"]) == IdentityType.SKILL

    def test_labels(self):
        assert identity_type_label(IdentityType.RECOVERY) == "Recovering from Something"


class TestHabitTemplates:

    @pytest.mark.parametrize("template", TEMPLATES, ids=lambda t: t.key)
    def test_three_habits_per_tier(self, template):
        assert len(template.high) == len(template.medium) == len(template.low) == 3

    def test_keyword_match(self):
        match = habits_from_template("I want to be a writer")
        assert match.is_template_match is True
        assert match.identity_type == IdentityType.SKILL
        assert match.habit_set.high[0] == "Write 500 words"
        assert match.habit_set.level == 0
        assert match.habit_set.progression == "SKILL"

    def test_detected_type_drives_progression(self):
        match = habits_from_template("a runner", IdentityType.RECOVERY)
        assert match.habit_set.progression == "RECOVERY"

    def test_fallback(self):
        match = habits_from_template("a beekeeper")
        assert match.is_template_match is False
        assert match.habit_set.is_complete()
        assert match.habit_set.progression is None
        assert match.habit_set.display(EnergyTier.LOW)[0] == "Just show up for 2 minutes"

    def test_initiation_set_is_level_zero(self):
        habit_set = initiation_habit_set("quit smoking", IdentityType.RECOVERY)
        assert habit_set.level == 0
        assert habit_set.novelty == {}
        assert habit_set.progression == "RECOVERY"


class TestReflectionTemplates:

    def test_free_reflection_combines_parts(self):
        text = free_user_reflection(Persona.GRINDER, IdentityStage.INTEGRATION, IdentityType.SKILL)
        assert text.startswith("You showed reliable effort this week.")
        assert "skill-based identity" in text

    def test_free_reflection_without_type(self):
        text = free_user_reflection(Persona.GHOST, IdentityStage.INITIATION, None)
        assert "identity," not in text
        assert text.endswith("new identity.")

    @pytest.mark.parametrize(
        "persona, identity, identity_type, expected",
        [
            (Persona.GRINDER, "a writer", IdentityType.SKILL, "The Consistent Writer"),
            (Persona.TITAN, "Become an athlete", IdentityType.SKILL, "The Peak Athlete"),
            (Persona.SURVIVOR, "sober", IdentityType.RECOVERY, "The Resilient Gentle Sober"),
        ],
    )
    def test_archetype_name(self, persona, identity, identity_type, expected):
        assert archetype_name(persona, identity, identity_type) == expected

    def test_default_stage_reflection_mentions_identity(self):
        for stage in IdentityStage:
            assert "a writer" in default_stage_reflection("a writer", stage)

    def test_resonance_sample_is_deterministic(self):
        first = select_resonance_statements(IdentityStage.EXPANSION, "user-1:2026-W42")
        second = select_resonance_statements(IdentityStage.EXPANSION, "user-1:2026-W42")
        assert first == second
        assert len(first) == 3
        assert set(first) <= set(RESONANCE_TEMPLATES[IdentityStage.EXPANSION])
        assert len(set(first)) == 3

    def test_no_statements_for_automatic_stages(self):
        assert select_resonance_statements(IdentityStage.INTEGRATION, "seed") == []

    def test_count_affirmed_ignores_unknown(self):
        offered = ["a", "b", "c"]
        assert count_affirmed(offered, ["a", "c", "z", "a"]) == 2
