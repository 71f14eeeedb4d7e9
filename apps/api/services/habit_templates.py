"""
Template habit sets.

Deterministic habit generation for free users and for every generator
failure. Templates are matched by keyword against the identity string;
anything unmatched gets the general fallback set. Every template carries
exactly three habits per energy tier.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from services.habit_state import HabitSet, IdentityType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HabitTemplate:
    key: str
    identity_type: IdentityType
    display_name: str
    keywords: tuple
    high: tuple
    medium: tuple
    low: tuple


@dataclass
class TemplateMatch:
    habit_set: HabitSet
    identity_type: Optional[IdentityType]
    reason: str
    is_template_match: bool


TEMPLATES: List[HabitTemplate] = [
    HabitTemplate(
        key="runner",
        identity_type=IdentityType.SKILL,
        display_name="Runner",
        keywords=("runner", "running", "run", "jog", "marathon", "5k"),
        high=("Run 20 minutes", "Do a 10-minute strides session", "Stretch for 10 minutes after running"),
        medium=("Run 10 minutes", "Walk briskly for 15 minutes", "Do 5 minutes of mobility"),
        low=("Put on running shoes", "Step outside for one minute", "Do one calf stretch"),
    ),
    HabitTemplate(
        key="writer",
        identity_type=IdentityType.SKILL,
        display_name="Writer",
        keywords=("writer", "writing", "write", "author", "novel", "blog"),
        high=("Write 500 words", "Edit one chapter", "Outline the next scene"),
        medium=("Write one paragraph", "Read one page of your notes", "Write three headlines"),
        low=("Open the document", "Write one bad sentence", "Read the last sentence you wrote"),
    ),
    HabitTemplate(
        key="coder",
        identity_type=IdentityType.SKILL,
        display_name="Developer",
        keywords=("coder", "coding", "code", "programmer", "developer", "software"),
        high=("Build for 30 minutes on a side project", "Solve one practice problem", "Read one chapter of a tech book"),
        medium=("Code for 10 minutes", "Review one snippet you wrote", "Read one short article"),
        low=("Open your editor", "Write one line of code", "Read one function"),
    ),
    HabitTemplate(
        key="musician",
        identity_type=IdentityType.SKILL,
        display_name="Musician",
        keywords=("musician", "guitar", "piano", "sing", "music", "instrument"),
        high=("Practice 25 minutes", "Learn a new passage", "Record yourself playing"),
        medium=("Practice 10 minutes", "Play scales for 5 minutes", "Replay yesterday's piece"),
        low=("Pick up the instrument", "Play one note", "Tune up"),
    ),
    HabitTemplate(
        key="calm",
        identity_type=IdentityType.CHARACTER,
        display_name="Calm Person",
        keywords=("calm", "peaceful", "patient", "mindful", "present"),
        high=("Meditate 15 minutes", "Take a phone-free walk", "Journal about one tense moment"),
        medium=("Meditate 5 minutes", "Pause before replying to a message", "Write one gratitude line"),
        low=("Take three slow breaths", "Unclench your jaw", "Look out the window for a minute"),
    ),
    HabitTemplate(
        key="disciplined",
        identity_type=IdentityType.CHARACTER,
        display_name="Disciplined Person",
        keywords=("disciplined", "discipline", "focused", "organized", "reliable"),
        high=("Plan tomorrow in detail", "Do your hardest task first", "Clear your inbox"),
        medium=("Write your top three tasks", "Work 15 focused minutes", "Tidy your desk"),
        low=("Write one task down", "Set a 2-minute timer and start", "Put your phone in another room"),
    ),
    HabitTemplate(
        key="sleep",
        identity_type=IdentityType.RECOVERY,
        display_name="Better Sleeper",
        keywords=("sleep", "insomnia", "bedtime", "night owl"),
        high=("Screens off an hour before bed", "Wind-down routine for 20 minutes", "Same wake time, no snooze"),
        medium=("Screens off 30 minutes before bed", "Dim the lights after dinner", "Read a paper book in bed"),
        low=("Put your phone on the charger", "Set a bedtime alarm", "Drink a glass of water"),
    ),
    HabitTemplate(
        key="smoking",
        identity_type=IdentityType.RECOVERY,
        display_name="Smoke-Free",
        keywords=("smoking", "smoke", "cigarette", "vape", "nicotine"),
        high=("Go through one trigger moment without smoking", "Take a 20-minute walk at a craving", "Log every craving today"),
        medium=("Delay one cigarette by 10 minutes", "Chew gum at the first craving", "Drink water when a craving hits"),
        low=("Take three deep breaths", "Move your lighter out of sight", "Write down one craving"),
    ),
]

FALLBACK = HabitTemplate(
    key="fallback",
    identity_type=IdentityType.SKILL,
    display_name="General",
    keywords=(),
    high=("Work on it for 20 minutes", "Plan the next small step", "Review what went well"),
    medium=("Work on it for 10 minutes", "Do half the usual task", "Tidy your space for it"),
    low=("Just show up for 2 minutes", "Do the very first step", "Set things up for tomorrow"),
)


def _to_habit_set(template: HabitTemplate, identity_type: Optional[IdentityType]) -> HabitSet:
    return HabitSet(
        high=list(template.high),
        medium=list(template.medium),
        low=list(template.low),
        level=0,
        progression=identity_type.value if identity_type else None,
    )


def find_habit_template(identity: str) -> Optional[HabitTemplate]:
    normalized = identity.lower().strip()
    for template in TEMPLATES:
        for keyword in template.keywords:
            if keyword in normalized:
                logger.debug(f"Template match '{template.key}' via keyword '{keyword}'")
                return template
    return None


def habits_from_template(identity: str, identity_type: Optional[IdentityType] = None) -> TemplateMatch:
    """
    Habit set for an identity. The caller's detected type wins over the
    template's own type for the progression table.
    """
    template = find_habit_template(identity)
    if template:
        resolved = identity_type or template.identity_type
        return TemplateMatch(
            habit_set=_to_habit_set(template, resolved),
            identity_type=resolved,
            reason=f"Matched template '{template.display_name}'",
            is_template_match=True,
        )

    logger.info(f"No habit template for '{identity}', using fallback set")
    return TemplateMatch(
        habit_set=_to_habit_set(FALLBACK, identity_type),
        identity_type=identity_type,
        reason="No matching template, using general fallback",
        is_template_match=False,
    )


def initiation_habit_set(identity: str, identity_type: Optional[IdentityType]) -> HabitSet:
    """Level-0 set used by fresh starts and self-healing."""
    return habits_from_template(identity, identity_type).habit_set
