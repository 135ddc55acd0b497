"""Детерминированная экстракция события без AI: meta-теги, JSON-LD, регулярки."""
import json
import re
from datetime import date, timedelta
from typing import Any
from urllib.parse import urljoin

from bs4 import BeautifulSoup

from src.ai.language import detect_language
from src.ai.schemas import SocialFiveEvent
from src.ai.vibe import classify_interaction

DEFAULT_CATEGORY = "CULTURE"

MONTHS: dict[str, int] = {
    "januari": 1, "jan": 1, "january": 1,
    "februari": 2, "feb": 2, "february": 2,
    "maart": 3, "mrt": 3, "mar": 3, "march": 3,
    "april": 4, "apr": 4,
    "mei": 5, "may": 5,
    "juni": 6, "jun": 6, "june": 6,
    "juli": 7, "jul": 7, "july": 7,
    "augustus": 8, "aug": 8, "august": 8,
    "september": 9, "sep": 9, "sept": 9,
    "oktober": 10, "okt": 10, "oct": 10, "october": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}

_MONTH_ALT = "|".join(sorted(MONTHS, key=len, reverse=True))
_ISO_DATE_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})")
_NUMERIC_DATE_RE = re.compile(r"\b(\d{1,2})[-/.](\d{1,2})[-/.](\d{4})\b")
_DAY_MONTH_RE = re.compile(rf"\b(\d{{1,2}})\s+({_MONTH_ALT})\.?(?:\s+(\d{{4}}))?\b", re.IGNORECASE)
_MONTH_DAY_RE = re.compile(rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?(?:\s+(\d{{4}}))?\b", re.IGNORECASE)

_TIME_RE = re.compile(r"(\d{1,2})[:.](\d{2})")
_START_PATTERNS = (
    re.compile(r"aanvang[:\s]*(\d{1,2})[:.](\d{2})", re.IGNORECASE),
    re.compile(r"\bstart(?:s|tijd)?[:\s]*(\d{1,2})[:.](\d{2})", re.IGNORECASE),
    re.compile(r"\bbegint?[:\s]*(?:om\s+)?(\d{1,2})[:.](\d{2})", re.IGNORECASE),
    re.compile(r"\b(\d{1,2})[:.](\d{2})\s*(?:uur|u\b)", re.IGNORECASE),
    re.compile(r"\b(\d{2}):(\d{2})\b"),
)
_DOORS_RE = re.compile(
    r"(?:deuren\s+open|zaal\s+open|doors(?:\s+open)?)[:\s]*(\d{1,2})[:.](\d{2})", re.IGNORECASE,
)
_END_RE = re.compile(
    r"(?:\d{1,2}[:.]\d{2})\s*(?:-|–|tot|t/m|until|to)\s*(\d{1,2})[:.](\d{2})", re.IGNORECASE,
)
_POSTAL_CITY_RE = re.compile(r"\b(\d{4}\s?[A-Z]{2})\b[,\s]+([A-Z][a-zA-Z'\-]+(?:\s[A-Z][a-zA-Z\-]+)?)")
_STREET_RE = re.compile(
    r"\b([A-Z][a-zà-ÿ'\-]*(?:straat|weg|laan|plein|gracht|kade|singel|dijk|markt|park|dreef|"
    r"pad|steeg|hof|veld|haven)\s+\d+[a-zA-Z]?(?:-\d+)?)"
)
_PRICE_RE = re.compile(r"€\s?\d+(?:[.,]\d{2})?(?:\s?(?:-|–)\s?€?\s?\d+(?:[.,]\d{2})?)?")

_CATEGORY_KEYWORDS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("FAMILY", re.compile(r"\b(kinder|kids|familie|gezin|jeugd)", re.IGNORECASE)),
    ("NIGHTLIFE", re.compile(r"\b(club|clubnacht|party|feest|dj\b|rave|nachtleven)", re.IGNORECASE)),
    ("MUSIC", re.compile(r"\b(concert|muziek|music|optreden|band|live|koor|orkest)", re.IGNORECASE)),
    ("FOOD", re.compile(r"\b(eten|food|culinair|proeverij|tasting|diner|brunch|wijn)", re.IGNORECASE)),
    ("ACTIVE", re.compile(r"\b(sport|yoga|hardloop|run\b|fiets|wandel|fitness|voetbal)", re.IGNORECASE)),
    ("CIVIC", re.compile(r"\b(gemeente|inspraak|raadsvergadering|verkiezing)", re.IGNORECASE)),
    ("COMMUNITY", re.compile(r"\b(buurt|wijk|vrijwilliger|repair\s*caf)", re.IGNORECASE)),
    ("SOCIAL", re.compile(r"\b(borrel|netwerk|network|meetup|quiz|social)", re.IGNORECASE)),
)


def normalize_time(value: str | None) -> str | None:
    """'9.30', '21:00 uur' → 'HH:MM'. None если время не распознано."""
    if not value:
        return None
    match = _TIME_RE.search(value)
    if not match:
        return None
    hours, minutes = int(match.group(1)), int(match.group(2))
    if hours > 23 or minutes > 59:
        return None
    return f"{hours:02d}:{minutes:02d}"


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _infer_year(month: int, day: int, today: date) -> date | None:
    """Дата без года: ближайшая будущая (прошедшая больше месяца назад → следующий год)."""
    candidate = _safe_date(today.year, month, day)
    if candidate is None:
        return None
    if candidate < today - timedelta(days=30):
        candidate = _safe_date(today.year + 1, month, day)
    return candidate


def parse_loose_date(value: str | None, today: date | None = None) -> str | None:
    """ISO, dd-mm-yyyy, '15 februari 2025', 'za 15 feb', 'March 3rd' → YYYY-MM-DD."""
    if not value:
        return None
    today = today or date.today()

    if m := _ISO_DATE_RE.search(value):
        parsed = _safe_date(int(m.group(1)), int(m.group(2)), int(m.group(3)))
        return parsed.isoformat() if parsed else None

    if m := _NUMERIC_DATE_RE.search(value):
        parsed = _safe_date(int(m.group(3)), int(m.group(2)), int(m.group(1)))
        return parsed.isoformat() if parsed else None

    for regex, day_group, month_group in ((_DAY_MONTH_RE, 1, 2), (_MONTH_DAY_RE, 2, 1)):
        m = regex.search(value)
        if not m:
            continue
        month = MONTHS[m.group(month_group).lower()]
        day = int(m.group(day_group))
        if m.group(3):
            parsed = _safe_date(int(m.group(3)), month, day)
        else:
            parsed = _infer_year(month, day, today)
        if parsed:
            return parsed.isoformat()
    return None


def _meta(soup: BeautifulSoup, *, prop: str | None = None, name: str | None = None) -> str | None:
    attrs = {"property": prop} if prop else {"name": name}
    tag = soup.find("meta", attrs=attrs)
    content = tag.get("content") if tag else None
    return content.strip() if isinstance(content, str) and content.strip() else None


def _json_ld_events(soup: BeautifulSoup) -> list[dict[str, Any]]:
    """Объекты schema.org Event из <script type=application/ld+json>."""
    events: list[dict[str, Any]] = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(script.get_text() or "")
        except json.JSONDecodeError:
            continue
        stack = data if isinstance(data, list) else [data]
        while stack:
            node = stack.pop()
            if not isinstance(node, dict):
                continue
            if "@graph" in node and isinstance(node["@graph"], list):
                stack.extend(node["@graph"])
            node_type = node.get("@type")
            types = node_type if isinstance(node_type, list) else [node_type]
            if any(isinstance(t, str) and t.endswith("Event") for t in types):
                events.append(node)
    return events


def _ld_location(ld: dict[str, Any]) -> tuple[str | None, dict[str, Any]]:
    location = ld.get("location")
    if isinstance(location, list):
        location = location[0] if location else None
    if not isinstance(location, dict):
        return None, {}
    address = location.get("address")
    return location.get("name"), address if isinstance(address, dict) else {}


def _extract_title(soup: BeautifulSoup) -> str | None:
    if og := _meta(soup, prop="og:title"):
        return og
    if soup.title and soup.title.string:
        return soup.title.string.split("|")[0].strip() or None
    h1 = soup.find("h1")
    return h1.get_text(" ", strip=True) if h1 else None


def _extract_venue(soup: BeautifulSoup) -> str | None:
    tag = soup.find(class_=re.compile(r"venue|locatie|location", re.IGNORECASE))
    if tag:
        text = tag.get_text(" ", strip=True)
        return text[:120] if text else None
    return None


def detect_category(text: str) -> str:
    for category, pattern in _CATEGORY_KEYWORDS:
        if pattern.search(text):
            return category
    return DEFAULT_CATEGORY


def _first_time(text: str, patterns: tuple[re.Pattern[str], ...]) -> str | None:
    for pattern in patterns:
        if m := pattern.search(text):
            return normalize_time(f"{m.group(1)}:{m.group(2)}")
    return None


class RulesExtractor:
    """Экстрактор на регулярках — fallback, когда AI недоступен."""

    method = "rules"

    def __init__(self, today: date | None = None) -> None:
        self._today = today

    async def extract(
        self, markup: str, base_url: str, hints: dict[str, Any]
    ) -> SocialFiveEvent | None:
        return self.extract_sync(markup, base_url, hints)

    def extract_sync(
        self, markup: str, base_url: str, hints: dict[str, Any]
    ) -> SocialFiveEvent | None:
        """None, если дату события определить не удалось. Ненайденные поля остаются пустыми."""
        today = self._today or date.today()
        soup = BeautifulSoup(markup, "lxml")
        ld = next(iter(_json_ld_events(soup)), {})
        ld_venue, ld_address = _ld_location(ld)

        for tag in soup.find_all(["script", "style", "noscript"]):
            tag.decompose()
        text = " ".join(soup.get_text(" ").split())

        event_date = (
            parse_loose_date(hints.get("date"), today)
            or parse_loose_date(ld.get("startDate"), today)
            or parse_loose_date(text, today)
        )
        if not event_date:
            return None

        title = hints.get("title") or ld.get("name") or _extract_title(soup) or ""
        description = (
            _meta(soup, prop="og:description")
            or _meta(soup, name="description")
            or (ld.get("description") if isinstance(ld.get("description"), str) else None)
        )

        start_time = None
        if isinstance(ld.get("startDate"), str) and "T" in ld["startDate"]:
            start_time = normalize_time(ld["startDate"].split("T", 1)[1])
        start_time = start_time or _first_time(text, _START_PATTERNS)
        doors = _first_time(text, (_DOORS_RE,))
        end_time = None
        if isinstance(ld.get("endDate"), str) and "T" in ld["endDate"]:
            end_time = normalize_time(ld["endDate"].split("T", 1)[1])
        end_time = end_time or _first_time(text, (_END_RE,))

        venue = ld_venue or _extract_venue(soup) or hints.get("location")
        street = ld_address.get("streetAddress")
        postal = ld_address.get("postalCode")
        city = ld_address.get("addressLocality")
        if not street and (m := _STREET_RE.search(text)):
            street = m.group(1)
        if not postal and (m := _POSTAL_CITY_RE.search(text)):
            postal = m.group(1)
            city = city or m.group(2)

        category = detect_category(f"{title} {description or ''}")
        vibe = classify_interaction(category, f"{title} {description or ''}")

        image = _meta(soup, prop="og:image")
        ticket = None
        for link in soup.find_all("a", href=True):
            if re.search(r"ticket|kaart", link["href"], re.IGNORECASE):
                ticket = urljoin(base_url, link["href"])
                break
        price = None
        if m := _PRICE_RE.search(text):
            price = m.group(0)
        elif re.search(r"\b(gratis|free entry|vrije toegang)\b", text, re.IGNORECASE):
            price = "Gratis"

        return SocialFiveEvent(
            title=title.strip()[:300],
            description=description[:500] if description else None,
            event_date=event_date,
            start_time=start_time,
            doors_open_time=doors if doors != start_time else None,
            venue_name=venue.strip()[:200] if venue else None,
            street_address=street,
            city=city,
            postal_code=postal,
            end_time=end_time,
            language_profile=detect_language(text),
            interaction_mode=vibe.interaction_mode,
            category=category,
            persona_tags=list(vibe.persona_tags),
            image_url=urljoin(base_url, image) if image else None,
            ticket_url=ticket,
            price_info=price,
        )
