"""
Weekly review text templates.

Reflections and archetype names for users without generated content,
the default stage reflection used when generation fails, and the
resonance statements a user affirms to accept a stage promotion.
"""

import random
import re
from typing import List, Optional

from services.habit_state import IdentityStage, IdentityType, Persona

PERSONA_REFLECTIONS = {
    Persona.TITAN: "You showed strong commitment this week, and your momentum is clearly building.",
    Persona.GRINDER: "You showed reliable effort this week. The foundation of your identity is becoming solid.",
    Persona.SURVIVOR: "You kept going even when the week wasn't easy. This kind of resilience builds identity.",
    Persona.GHOST: "This week was tough, but it doesn't define you. Your identity is still yours to shape.",
}

STAGE_REFLECTIONS = {
    IdentityStage.INITIATION: "At this stage, every action helps you build the base of your new identity.",
    IdentityStage.INTEGRATION: "You're starting to blend this identity into your daily life. It's becoming part of you.",
    IdentityStage.EXPANSION: "You now have enough stability to explore different angles and add variation.",
    IdentityStage.MAINTENANCE: "You've internalized the core of this identity. Now it's about depth, not intensity.",
}

TYPE_REFLECTIONS = {
    IdentityType.SKILL: "As a skill-based identity, tiny technical improvements will amplify your growth.",
    IdentityType.CHARACTER: "As a character-based identity, your small choices shape who you become long-term.",
    IdentityType.RECOVERY: "As a recovery identity, stability and self-compassion matter more than intensity.",
}

ARCHETYPE_PREFIXES = {
    Persona.TITAN: "The Peak ",
    Persona.GRINDER: "The Consistent ",
    Persona.SURVIVOR: "The Resilient ",
    Persona.GHOST: "The Restarting ",
}

# Keyed by the stage the user would be promoted TO
RESONANCE_TEMPLATES = {
    IdentityStage.INITIATION: [],
    IdentityStage.INTEGRATION: [],
    IdentityStage.EXPANSION: [
        "It's starting to feel easier.",
        "I remember to do it more often now.",
        "I'm figuring out a rhythm.",
        "This doesn't feel as heavy anymore.",
        "I notice when I skip it.",
    ],
    IdentityStage.MAINTENANCE: [
        "This is just part of who I am now.",
        "I don't need willpower anymore.",
        "It feels weird not doing this.",
        "This identity feels stable.",
        "I don't think about this much anymore.",
    ],
}

RESONANCE_SAMPLE_SIZE = 3
RESONANCE_MIN_AFFIRMED = 2

_IDENTITY_PREFIX = re.compile(r"^(become|an|a)\s+", re.IGNORECASE)


def free_user_reflection(persona: Persona, stage: IdentityStage, identity_type: Optional[IdentityType]) -> str:
    parts = [
        PERSONA_REFLECTIONS[persona],
        STAGE_REFLECTIONS[stage],
        TYPE_REFLECTIONS.get(identity_type, "") if identity_type else "",
    ]
    return " ".join(p for p in parts if p)


def archetype_name(persona: Persona, identity: str, identity_type: Optional[IdentityType]) -> str:
    """e.g. GRINDER + "a writer" -> "The Consistent Writer"."""
    base = identity.strip()
    # Strip "Become", then the article
    for _ in range(2):
        base = _IDENTITY_PREFIX.sub("", base).strip()
    prefix = ARCHETYPE_PREFIXES.get(persona, "The ")
    if identity_type == IdentityType.RECOVERY:
        prefix += "Gentle "
    return f"{prefix}{base[:1].upper()}{base[1:]}"


def default_stage_reflection(identity: str, stage: IdentityStage) -> str:
    messages = {
        IdentityStage.INITIATION: (
            f"You're in the foundational stage of becoming {identity}. "
            "Every small action is teaching your brain what matters to you."
        ),
        IdentityStage.INTEGRATION: (
            "Your habits are becoming more natural now. "
            f"The {identity} identity is weaving itself into your daily rhythm."
        ),
        IdentityStage.EXPANSION: (
            "You've built a solid foundation. "
            f"This is the stage where {identity} starts to feel less like effort and more like expression."
        ),
        IdentityStage.MAINTENANCE: (
            "You've internalized this identity. "
            f"Being {identity} is now part of who you are, not just what you do."
        ),
    }
    return messages[stage]


def select_resonance_statements(
    target_stage: IdentityStage, seed: str, count: int = RESONANCE_SAMPLE_SIZE
) -> List[str]:
    """Deterministic sample: the same seed always yields the same statements."""
    templates = RESONANCE_TEMPLATES.get(target_stage) or []
    if not templates:
        return []
    rng = random.Random(seed)
    return rng.sample(templates, min(count, len(templates)))


def count_affirmed(offered: List[str], affirmed: List[str]) -> int:
    return len(set(offered) & set(affirmed))
