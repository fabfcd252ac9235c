"""Free-text intent classification.

Routes a plain chat message to one of:
- HEALTH: the user asks whether services are up ("are my services running?")
- REQUEST: the user asks for a title ("I want to watch Dune")
- NONE: not handled by the conversational layer

Rules are ordered and the first match wins. All health patterns are checked
before any request rule, so "can I get the services running" is a health query.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

# =============================================================================
# Types
# =============================================================================


class IntentKind(str, Enum):
    """Classification result."""

    HEALTH = "health"
    REQUEST = "request"
    NONE = "none"


@dataclass(frozen=True)
class Intent:
    """Classified message."""

    kind: IntentKind
    title: str | None = None


Extractor = Callable[[re.Match[str]], str | None]


# =============================================================================
# Rules
# =============================================================================

HEALTH_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(service|services)\b",
        r"\b(are|is).{0,20}\b(running|working|up|down|fine|ok|okay|good)\b",
        r"\b(status|health|check)\b.{0,30}\b(service|sonarr|radarr|jellyfin|prowlarr)\b",
        r"\b(sonarr|radarr|jellyfin|prowlarr)\b.{0,30}\b(status|health|check|running|working|fine|ok)\b",
        r"everything (running|working|fine|ok|okay|up)\b",
        r"\b(check).{0,20}\b(service|everything|system|status)\b",
    )
)

FILLER_PATTERN = re.compile(r"\s*(?:please|for me|thanks?|[?!.]+)\s*$", re.IGNORECASE)


def strip_filler(text: str) -> str:
    """Remove trailing filler ("please", "for me", "thanks", punctuation)."""
    stripped = text.strip()
    while True:
        shorter = FILLER_PATTERN.sub("", stripped).strip()
        if shorter == stripped:
            return stripped
        stripped = shorter


def trailing_title(match: re.Match[str]) -> str | None:
    """Take the captured tail of a request phrase as the title."""
    title = strip_filler(match.group(1))
    return title or None


REQUEST_RULES: tuple[tuple[re.Pattern[str], Extractor], ...] = tuple(
    (re.compile(pattern, re.IGNORECASE), trailing_title)
    for pattern in (
        r"(?:can (?:i|we|you) (?:request|get|have|watch|add))\s+(.+)",
        r"(?:i(?:'d| would) like(?: to watch| to get| to request)?)\s+(.+)",
        r"(?:i want(?: to watch| to see| to request| to get)?)\s+(.+)",
        r"(?:(?:please |can you )?(?:add|find|get|fetch|request|search for|look up))\s+(.+)",
        r"(?:looking for|find me|get me)\s+(.+)",
        r"(?:want to watch)\s+(.+)",
    )
)


# =============================================================================
# Classification
# =============================================================================


def is_health_query(text: str) -> bool:
    return any(pattern.search(text) for pattern in HEALTH_PATTERNS)


def extract_request_title(text: str) -> str | None:
    """Return the title captured by the first matching request rule.

    The first rule that matches decides, also when its title is empty after
    filler stripping.
    """
    for pattern, extractor in REQUEST_RULES:
        match = pattern.search(text)
        if match is not None:
            return extractor(match)
    return None


def classify(text: str) -> Intent:
    """Classify a free-text message.

    Args:
        text: Raw message text

    Returns:
        Intent with the extracted title for REQUEST
    """
    text = (text or "").strip()
    if not text:
        return Intent(IntentKind.NONE)

    if is_health_query(text):
        return Intent(IntentKind.HEALTH)

    title = extract_request_title(text)
    if title:
        return Intent(IntentKind.REQUEST, title=title)

    return Intent(IntentKind.NONE)
