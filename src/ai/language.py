"""Лексическое определение языка события: нидерландский / английский / смешанный."""
import re
from dataclasses import dataclass, field
from typing import Literal

DetectedLanguage = Literal["NL", "EN", "Mixed", "Other"]

CONFIDENCE_THRESHOLD = 0.6
MIN_TEXT_LENGTH = 50
MIN_WORDS = 10

# Значение language_profile в SocialFiveEvent
PROFILE_BY_LANGUAGE: dict[str, str] = {
    "NL": "native",
    "EN": "foreign",
    "Mixed": "mixed",
    "Other": "other",
}

DUTCH_WORDS = frozenset({
    "het", "een", "van", "dat", "niet", "voor", "zijn", "maar", "ook",
    "naar", "deze", "meer", "kan", "nog", "wel", "moet", "jouw", "geen",
    "wordt", "worden", "alle", "hier", "daar", "veel", "door", "gratis",
    "aanvang", "zaal", "deuren", "entree", "toegang", "reserveren", "kaartjes",
    "kaarten", "ingang", "uitgang", "programma", "voorstelling", "optreden",
    "maandag", "dinsdag", "woensdag", "donderdag", "vrijdag", "zaterdag", "zondag",
    "januari", "februari", "maart", "mei", "juni", "juli", "augustus", "oktober",
    "uur", "minuten", "morgen", "vanmiddag", "vanavond", "vannacht",
    "tegen", "tijdens", "tussen", "volgens", "vanuit", "vanaf", "omheen",
    "langs", "behalve", "ondanks", "binnen", "buiten", "zonder",
    "ik", "jij", "hij", "zij", "wij", "jullie", "hun", "haar", "mijn",
    "onze", "ons", "hen", "wie", "wat", "waar", "wanneer", "hoe",
})

ENGLISH_WORDS = frozenset({
    "the", "of", "and", "to", "is", "you", "that", "it", "for",
    "are", "with", "as", "at", "this", "but", "his", "by", "from", "they",
    "we", "say", "her", "she", "or", "an", "will", "my", "one", "all",
    "would", "there", "their", "what", "so", "up", "out", "if", "about",
    "doors", "entry", "tickets", "show", "concert", "venue", "event",
    "registration", "free", "admission", "starts", "opens", "ends",
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "january", "february", "march", "may", "june", "july", "august", "october",
})

ENGLISH_MARKERS = (
    "in english",
    "english spoken",
    "english language",
    "performed in english",
    "presented in english",
    "english subtitles",
    "international event",
    "all english",
    "expats welcome",
)

DUTCH_ENDINGS = ("heid", "lijk", "isch", "atie", "eren", "ing", "isme", "isten")
DUTCH_DIGRAPHS = ("ee", "oo", "aa", "uu")

_WORD_RE = re.compile(r"\b[a-z]{2,}\b")


@dataclass
class LanguageDetection:
    language: DetectedLanguage
    confidence: float
    dutch_score: float = 0.0
    english_score: float = 0.0
    indicators: list[str] = field(default_factory=list)

    @property
    def profile(self) -> str:
        return PROFILE_BY_LANGUAGE[self.language]


def analyze_language(text: str) -> LanguageDetection:
    """Посчитать очки NL/EN по словарям, маркерам, окончаниям и диграфам."""
    if not text or len(text) < MIN_TEXT_LENGTH:
        return LanguageDetection("Other", 0.0, indicators=["text too short"])

    normalized = text.lower()
    words = _WORD_RE.findall(normalized)
    if len(words) < MIN_WORDS:
        return LanguageDetection("Other", 0.0, indicators=["not enough words"])

    indicators: list[str] = []
    dutch_points = 0.0
    english_points = 0.0

    for marker in ENGLISH_MARKERS:
        if marker in normalized:
            english_points += 10
            indicators.append(f"marker: {marker}")

    dutch_words = sum(1 for w in words if w in DUTCH_WORDS)
    english_words = sum(1 for w in words if w in ENGLISH_WORDS)
    dutch_points += dutch_words * 2
    english_points += english_words * 2
    if dutch_words:
        indicators.append(f"{dutch_words} Dutch words")
    if english_words:
        indicators.append(f"{english_words} English words")

    for digraph in DUTCH_DIGRAPHS:
        count = normalized.count(digraph)
        if count > 2:
            dutch_points += min(count, 5)

    for word in words:
        if any(word.endswith(e) and len(word) > len(e) + 2 for e in DUTCH_ENDINGS):
            dutch_points += 1

    ij_count = normalized.count("ij")
    if ij_count >= 2:
        dutch_points += ij_count * 2
        indicators.append(f"{ij_count} 'ij' digraphs")

    total = dutch_points + english_points + 1
    nl = dutch_points / total
    en = english_points / total

    if nl > CONFIDENCE_THRESHOLD and en < 0.2:
        language, confidence = "NL", nl
    elif en > CONFIDENCE_THRESHOLD and nl < 0.2:
        language, confidence = "EN", en
    elif nl > 0.3 and en > 0.3:
        language, confidence = "Mixed", max(nl, en)
    elif nl > en:
        language, confidence = "NL", nl
    elif en > nl:
        language, confidence = "EN", en
    else:
        language, confidence = "Other", 0.3

    return LanguageDetection(language, confidence, nl, en, indicators)


def detect_language(text: str) -> str:
    """language_profile для текста: native / foreign / mixed / other."""
    return analyze_language(text).profile


def has_english_marker(text: str) -> bool:
    normalized = text.lower()
    return any(marker in normalized for marker in ENGLISH_MARKERS)
