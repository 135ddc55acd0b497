"""Режим взаимодействия события (high/medium/low/passive) по категории и описанию."""
import re
from dataclasses import dataclass, field


@dataclass(frozen=True)
class VibeClassification:
    interaction_mode: str
    confidence: float
    persona_tags: list[str] = field(default_factory=list)
    reasoning: str = ""


@dataclass(frozen=True)
class _Rule:
    patterns: tuple[re.Pattern[str], ...]
    mode: str
    confidence: float
    tags: tuple[str, ...]


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# Порядок важен: первое совпадение побеждает
_KEYWORD_RULES: tuple[_Rule, ...] = (
    _Rule(
        _compile(
            r"workshop", r"masterclass", r"cursus", r"\bles\b", r"training", r"netwerk",
            r"network", r"meet-?up", r"borrel", r"social\s+event", r"speed\s*dat",
            r"pub\s*quiz", r"trivia", r"game\s*night", r"karaoke", r"dance\s*class",
            r"dansles", r"yoga", r"rondleiding", r"proeverij", r"tasting", r"walk",
        ),
        "high", 0.85, ("NightOwl", "Curious"),
    ),
    _Rule(
        _compile(
            r"concert", r"festival", r"markt", r"market", r"\bfair\b", r"beurs", r"braderie",
            r"open\s*dag", r"open\s*day", r"feest", r"party", r"\bclub", r"disco", r"dj\s*set",
            r"live\s*mu(sic|ziek)", r"sport", r"wedstrijd", r"\bmatch\b", r"carnaval",
            r"kermis", r"pride", r"parade",
        ),
        "medium", 0.80, ("NightOwl", "FamilyFriendly"),
    ),
    _Rule(
        _compile(
            r"lezing", r"lecture", r"\btalk\b", r"presentatie", r"presentation", r"seminar",
            r"symposium", r"conferentie", r"conference", r"debat", r"debate", r"discussie",
            r"panel", r"q\s*&\s*a", r"book\s*launch", r"voorlees", r"interview",
        ),
        "low", 0.80, ("Curious", "CultureVulture"),
    ),
    _Rule(
        _compile(
            r"\bfilm\b", r"movie", r"bioscoop", r"cinema", r"screening", r"vertoning",
            r"theat(er|re)", r"toneel", r"musical", r"opera", r"ballet", r"voorstelling",
            r"performance", r"expositie", r"exhibition", r"tentoonstelling", r"museum",
            r"galerie", r"gallery", r"stand-up", r"comedy", r"cabaret",
        ),
        "passive", 0.85, ("CultureVulture", "DateNight"),
    ),
)

CATEGORY_MODE_MAP: dict[str, tuple[str, tuple[str, ...]]] = {
    "WORKSHOP": ("high", ("Curious",)),
    "NETWORKING": ("high", ("NightOwl",)),
    "MEETUP": ("high", ("NightOwl",)),
    "FOOD": ("high", ("Foodie",)),
    "SPORTS": ("medium", ("FamilyFriendly",)),
    "MUSIC": ("medium", ("NightOwl",)),
    "FESTIVAL": ("medium", ("NightOwl", "FamilyFriendly")),
    "MARKET": ("medium", ("FamilyFriendly",)),
    "NIGHTLIFE": ("medium", ("NightOwl",)),
    "LECTURE": ("low", ("Curious", "CultureVulture")),
    "EDUCATION": ("low", ("Curious",)),
    "SEMINAR": ("low", ("Curious",)),
    "CINEMA": ("passive", ("CultureVulture", "DateNight")),
    "THEATER": ("passive", ("CultureVulture", "DateNight")),
    "EXHIBITION": ("passive", ("CultureVulture", "Curious")),
    "CULTURE": ("passive", ("CultureVulture",)),
    "MUSEUM": ("passive", ("CultureVulture", "Curious")),
}


def classify_by_category(category: str) -> VibeClassification:
    normalized = re.sub(r"[-_\s]", "", category.upper())
    if normalized:
        for key, (mode, tags) in CATEGORY_MODE_MAP.items():
            if key in normalized or normalized in key:
                return VibeClassification(mode, 0.6, list(tags), f"category: {key}")
    return VibeClassification("medium", 0.4, [], "default")


def classify_interaction(category: str, description: str = "") -> VibeClassification:
    """Сначала ключевые слова описания, затем общая карта категорий, иначе medium."""
    text = f"{category} {description}".lower()
    for rule in _KEYWORD_RULES:
        for pattern in rule.patterns:
            if pattern.search(text):
                return VibeClassification(
                    rule.mode, rule.confidence, list(rule.tags), f"pattern: {pattern.pattern}",
                )
    return classify_by_category(category)
