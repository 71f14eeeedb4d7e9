"""
Identity type detection.

Keyword heuristic used when the generator does not classify the identity
(free users, generator failure, identity edited later). Priority order:
RECOVERY keywords, then CHARACTER phrasing, then SKILL verbs. Returns None
when nothing matches so the weekly review can treat the type as unknown.
"""

import logging
import re
from typing import List, Optional

from services.habit_state import IdentityType

logger = logging.getLogger(__name__)

# stop / reduce / fix something
RECOVERY_KEYWORDS = [
    "stop", "reduce", "quit", "break", "fix", "control",
    "avoid", "less", "cut", "recover", "overcome", "end",
    "no more", "get rid", "eliminate", "limit", "manage",
]

# be / become + trait
CHARACTER_PATTERNS = [
    re.compile(r"^be\s+(more\s+)?(\w+)", re.IGNORECASE),
    re.compile(r"^become\s+(a\s+|an\s+)?(\w+)", re.IGNORECASE),
    re.compile(r"^stay\s+(\w+)", re.IGNORECASE),
    re.compile(r"^remain\s+(\w+)", re.IGNORECASE),
]

# get better at something
SKILL_VERBS = [
    "run", "throw", "lift", "write", "code", "play", "practice",
    "study", "learn", "read", "speak", "cook", "build", "draw",
    "paint", "swim", "dance", "sing", "design", "develop",
    "program", "train", "improve", "master", "perfect",
]

IDENTITY_TYPE_LABELS = {
    IdentityType.SKILL: "Learning a Skill",
    IdentityType.CHARACTER: "Becoming a Type of Person",
    IdentityType.RECOVERY: "Recovering from Something",
}


def detect_identity_type(identity: str, habits: Optional[List[str]] = None) -> Optional[IdentityType]:
    identity_lower = identity.lower().strip()
    all_text = " ".join([identity_lower] + [h.lower() for h in habits or []])

    if any(keyword in identity_lower for keyword in RECOVERY_KEYWORDS):
        logger.debug(f"Detected RECOVERY identity: {identity}")
        return IdentityType.RECOVERY

    if any(pattern.search(identity_lower) for pattern in CHARACTER_PATTERNS):
        logger.debug(f"Detected CHARACTER identity: {identity}")
        return IdentityType.CHARACTER

    if any(verb in all_text for verb in SKILL_VERBS):
        logger.debug(f"Detected SKILL identity: {identity}")
        return IdentityType.SKILL

    logger.debug(f"Could not detect identity type for: {identity}")
    return None


def identity_type_label(identity_type: IdentityType) -> str:
    return IDENTITY_TYPE_LABELS[identity_type]
