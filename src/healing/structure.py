"""Структурный анализ листинга: сводка для healer'а, валидация селекторов, карточки."""
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urljoin, urlparse

import soupsieve
from bs4 import BeautifulSoup, Comment, Tag

from src.models.source import REQUIRED_SELECTOR_FIELDS, SelectorConfig

HTML_SAMPLE_LIMIT = 12000
MIN_REPEATING = 3
MAX_REPEATING = 50

EVENT_VOCABULARY = re.compile(
    r"event|card|item|article|listing|agenda|programma|activiteit|voorstelling", re.IGNORECASE,
)
CONTAINER_VOCABULARY = re.compile(r"container|wrapper|list|grid|row|col", re.IGNORECASE)
EVENT_PATH = re.compile(
    r"/(agenda|evenement(en)?|events?|programma|voorstelling(en)?|activiteit(en)?|concert(en)?|"
    r"tickets?|uitagenda)/", re.IGNORECASE,
)

_GENERATED_PREFIX = ("css-", "sc-", "_")
_KEEP_ATTRS = {"class", "id", "href", "datetime", "src", "data-src"}
_SELECTOR_FIELDS = ("title", "date", "time", "location", "link", "description", "image", "price")


def is_generated_class(name: str) -> bool:
    """css-1x2y3z, sc-AbCdE, _a1b2 и хеши — нестабильны между деплоями."""
    if name.startswith(_GENERATED_PREFIX):
        return True
    digits = sum(c.isdigit() for c in name)
    return len(name) >= 6 and digits >= 2 and re.fullmatch(r"[A-Za-z0-9_-]+", name) is not None


def _classes(tag: Tag) -> list[str]:
    value = tag.get("class") or []
    return value if isinstance(value, list) else str(value).split()


def _describe(tag: Tag) -> str:
    classes = [c for c in _classes(tag) if not is_generated_class(c)]
    desc = tag.name
    if tag.get("id"):
        desc += f"#{tag['id']}"
    if classes:
        desc += "." + ".".join(classes[:3])
    return desc


def _path_pattern(href: str) -> str | None:
    path = urlparse(href).path
    if not path or path == "/":
        return None
    segments = []
    for segment in path.strip("/").split("/"):
        if segment.isdigit():
            segments.append("{n}")
        elif re.search(r"\d", segment) or len(segment) > 25 or segment.count("-") >= 2:
            segments.append("{slug}")
        else:
            segments.append(segment)
    return "/" + "/".join(segments)


def truncate_html(html: str, limit: int = HTML_SAMPLE_LIMIT) -> str:
    """Очищенный фрагмент разметки (предпочтительно <main>) не длиннее limit."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup.find_all(["script", "style", "noscript", "svg", "iframe", "head", "link", "meta"]):
        tag.decompose()
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    root = soup.find("main") or soup.body or soup
    for tag in root.find_all(True):
        tag.attrs = {k: v for k, v in tag.attrs.items() if k in _KEEP_ATTRS}
    sample = re.sub(r"\s+", " ", str(root))
    return sample[:limit]


def summarize_structure(html: str) -> dict[str, Any]:
    """Сводка структуры страницы для промпта healer'а."""
    soup = BeautifulSoup(html, "lxml")
    for tag in soup.find_all(["script", "style", "noscript", "svg"]):
        tag.decompose()

    histogram: Counter[str] = Counter()
    event_elements: Counter[str] = Counter()
    containers: list[str] = []
    for tag in soup.find_all(True):
        classes = [c for c in _classes(tag) if len(c) >= 3 and not is_generated_class(c)]
        histogram.update(classes)
        marker = " ".join(classes) + " " + str(tag.get("id") or "")
        if EVENT_VOCABULARY.search(marker):
            event_elements[_describe(tag)] += 1
        if CONTAINER_VOCABULARY.search(marker) and len(containers) < 10:
            children = [c for c in tag.find_all(True, recursive=False)]
            child_classes = Counter(
                tuple(sorted(_classes(c))) for c in children if _classes(c)
            )
            if child_classes and child_classes.most_common(1)[0][1] >= MIN_REPEATING:
                containers.append(f"{_describe(tag)} ({len(children)} children)")

    repeating = {
        name: count for name, count in histogram.most_common()
        if MIN_REPEATING <= count <= MAX_REPEATING
    }
    link_patterns: Counter[str] = Counter()
    for link in soup.find_all("a", href=True):
        pattern = _path_pattern(link["href"])
        if pattern:
            link_patterns[pattern] += 1

    return {
        "class_histogram": dict(histogram.most_common(30)),
        "repeating_classes": dict(list(repeating.items())[:20]),
        "event_elements": dict(event_elements.most_common(15)),
        "containers": containers,
        "link_patterns": dict(link_patterns.most_common(10)),
    }


@dataclass
class SelectorValidation:
    """Результат прогона селекторов по разметке."""

    card_count: int
    field_matches: dict[str, int] = field(default_factory=dict)
    invalid_fields: list[str] = field(default_factory=list)

    @property
    def required_valid_fraction(self) -> float:
        valid = [f for f in REQUIRED_SELECTOR_FIELDS if f not in self.invalid_fields]
        return len(valid) / len(REQUIRED_SELECTOR_FIELDS)

    @property
    def valid(self) -> bool:
        if self.card_count == 0:
            return False
        return not any(f in self.invalid_fields for f in REQUIRED_SELECTOR_FIELDS)


def _safe_select(root: Tag, selector: str) -> list[Tag] | None:
    """None — селектор не парсится."""
    try:
        return root.select(selector)
    except soupsieve.SelectorSyntaxError:
        return None


def validate_selectors(html: str, config: SelectorConfig) -> SelectorValidation:
    """
    Посчитать совпадения по полям. Поле валидно, если селектор парсится
    и находит элемент хотя бы в одной карточке (или в документе).
    """
    soup = BeautifulSoup(html, "lxml")
    cards = _safe_select(soup, config.event_card)
    if cards is None:
        return SelectorValidation(0, {"event_card": 0}, ["event_card"])

    result = SelectorValidation(card_count=len(cards), field_matches={"event_card": len(cards)})
    if not cards:
        result.invalid_fields.append("event_card")

    for name in _SELECTOR_FIELDS:
        selector = getattr(config, name)
        if not selector:
            continue
        matches = 0
        parsed = True
        for card in cards:
            found = _safe_select(card, selector)
            if found is None:
                parsed = False
                break
            if found:
                matches += 1
        if parsed and matches == 0:
            found = _safe_select(soup, selector)
            if found is None:
                parsed = False
            else:
                matches = len(found)
        result.field_matches[name] = matches
        if not parsed or matches == 0:
            result.invalid_fields.append(name)
    return result


def _text(card: Tag, selector: str | None) -> str | None:
    if not selector:
        return None
    found = _safe_select(card, selector)
    if not found:
        return None
    text = found[0].get_text(" ", strip=True)
    if not text and found[0].get("datetime"):
        text = str(found[0]["datetime"])
    return text or None


def _link(card: Tag, selector: str, base_url: str) -> str | None:
    found = _safe_select(card, selector) or []
    candidates = found + ([card] if card.name == "a" else [])
    for element in candidates:
        anchor = element if element.name == "a" else element.find("a", href=True)
        if anchor is not None and anchor.get("href"):
            href = str(anchor["href"]).strip()
            if href.startswith(("javascript:", "mailto:", "#")):
                continue
            return urljoin(base_url, href)
    return None


def _image(card: Tag, selector: str | None, base_url: str) -> str | None:
    if not selector:
        return None
    found = _safe_select(card, selector)
    if not found:
        return None
    element = found[0]
    img = element if element.name == "img" else element.find("img")
    if img is None:
        return None
    src = img.get("data-src") or img.get("src")
    return urljoin(base_url, str(src)) if src else None


def extract_cards(html: str, config: SelectorConfig, base_url: str) -> list[dict[str, Any]]:
    """Карточки событий по селекторам. Без заголовка или ссылки карточка отбрасывается."""
    soup = BeautifulSoup(html, "lxml")
    cards = _safe_select(soup, config.event_card) or []
    results: list[dict[str, Any]] = []
    seen: set[str] = set()
    for card in cards:
        title = _text(card, config.title)
        link = _link(card, config.link, base_url)
        if not title or not link or link in seen:
            continue
        seen.add(link)
        results.append({
            "title": title[:300],
            "url": link,
            "date": _text(card, config.date),
            "time": _text(card, config.time),
            "location": _text(card, config.location),
            "description": (_text(card, config.description) or "")[:500] or None,
            "image": _image(card, config.image, base_url),
            "price": _text(card, config.price),
        })
    return results


def discover_event_links(html: str, base_url: str, limit: int = 100) -> list[dict[str, Any]]:
    """Ссылки на detail-страницы событий без конфигурации селекторов (по пути URL)."""
    soup = BeautifulSoup(html, "lxml")
    base = urlparse(base_url)
    listing_path = base.path.rstrip("/")
    results: list[dict[str, Any]] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        url = urljoin(base_url, str(anchor["href"]).strip()).split("#", 1)[0]
        parsed = urlparse(url)
        if parsed.netloc != base.netloc or parsed.path.rstrip("/") == listing_path:
            continue
        # Нужен сегмент после раздела агенды, иначе это ссылка на сам раздел
        match = EVENT_PATH.search(parsed.path + ("/" if not parsed.path.endswith("/") else ""))
        if not match or not parsed.path[match.end():].strip("/"):
            continue
        title = anchor.get_text(" ", strip=True)
        if len(title) < 3 or url in seen:
            continue
        seen.add(url)
        results.append({"title": title[:300], "url": url})
        if len(results) >= limit:
            break
    return results
