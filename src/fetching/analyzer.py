"""Анализ разметки источника: JS-тяжесть, anti-bot, CMS → рекомендация стратегии."""
import re
from dataclasses import dataclass, field
from typing import Literal

from bs4 import BeautifulSoup
from loguru import logger
from supabase import Client

from src.database import update_source_strategy
from src.models.source import FetchStrategy

FETCHER_COST_ORDER: tuple[FetchStrategy, ...] = (
    FetchStrategy.STATIC,
    FetchStrategy.HEADLESS_BROWSER,
    FetchStrategy.ANTI_BOT_PROXY,
)

JS_HEAVY_THRESHOLD = 0.6
MIN_BODY_TEXT = 100
EMPTY_BODY_TEXT = 500

FRAMEWORK_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "next": (re.compile(r"__NEXT_DATA__"), re.compile(r"/_next/static/")),
    "nuxt": (re.compile(r"window\.__NUXT__"), re.compile(r"/_nuxt/")),
    "react": (re.compile(r"data-reactroot"), re.compile(r"react-dom(\.production)?\.min\.js")),
    "vue": (re.compile(r"data-v-[0-9a-f]{6,}"), re.compile(r"vue(\.runtime)?(\.global)?(\.prod)?\.js")),
    "angular": (re.compile(r"ng-version="), re.compile(r"<app-root")),
    "svelte": (re.compile(r"svelte-[a-z0-9]{5,}"), re.compile(r"__sveltekit")),
}

# (паттерн, вес): при сумме ≥ 0.6 страница рендерится JS'ом
JS_HEAVY_INDICATORS: tuple[tuple[re.Pattern[str], float], ...] = (
    (re.compile(r"__NUXT__"), 0.9),
    (re.compile(r"__NEXT_DATA__"), 0.85),
    (re.compile(r"window\.__INITIAL_STATE__"), 0.8),
    (re.compile(r'<div id="app">\s*</div>'), 0.7),
    (re.compile(r'<div id="root">\s*</div>'), 0.7),
    (re.compile(r'loading="lazy"'), 0.3),
    (re.compile(r"data-src="), 0.4),
    (re.compile(r"IntersectionObserver"), 0.5),
)

CHALLENGE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"<title>\s*Just a moment\.\.\.\s*</title>", re.IGNORECASE),
    re.compile(r"cf-browser-verification|cf_chl_opt|/cdn-cgi/challenge-platform", re.IGNORECASE),
    re.compile(r"Attention Required! \| Cloudflare", re.IGNORECASE),
    re.compile(r"captcha-delivery\.com|datadome", re.IGNORECASE),
    re.compile(r"px-captcha|_pxCaptcha|perimeterx", re.IGNORECASE),
    re.compile(r"g-recaptcha|hcaptcha\.com/1/api\.js", re.IGNORECASE),
)

CMS_PATTERNS: dict[str, tuple[re.Pattern[str], ...]] = {
    "wordpress": (re.compile(r"wp-content|wp-includes"), re.compile(r'generator" content="WordPress', re.I)),
    "drupal": (re.compile(r"Drupal\.settings|drupal-settings-json"), re.compile(r"/sites/default/files/")),
    "joomla": (re.compile(r'generator" content="Joomla', re.I),),
}

EVENT_KEYWORDS = re.compile(
    r"\b(agenda|evenement(en)?|events?|programma|voorstelling(en)?|concert(en)?|"
    r"tickets?|activiteit(en)?|uitagenda|festival)\b",
    re.IGNORECASE,
)


@dataclass
class PageSignals:
    """Сигналы разметки для выбора стратегии."""

    html_length: int
    script_count: int
    script_ratio: float  # доля байтов <script> в разметке
    body_text_length: int
    framework: str | None
    cms: str | None
    js_score: float
    challenge: bool
    has_event_keywords: bool
    reasons: list[str] = field(default_factory=list)

    @property
    def is_js_heavy(self) -> bool:
        return self.js_score >= JS_HEAVY_THRESHOLD

    @property
    def is_empty_shell(self) -> bool:
        """Событийная страница, где текста почти нет — контент дорисует JS."""
        return self.body_text_length < EMPTY_BODY_TEXT and self.has_event_keywords


@dataclass
class StrategyRecommendation:
    action: Literal["upgrade", "downgrade", "keep"]
    strategy: FetchStrategy
    reasons: list[str]


def detect_challenge(html: str) -> bool:
    """Страница anti-bot проверки вместо контента."""
    head = html[:20000]
    return any(p.search(head) for p in CHALLENGE_PATTERNS)


def detect_cms(html: str) -> str | None:
    for cms, patterns in CMS_PATTERNS.items():
        if any(p.search(html) for p in patterns):
            return cms
    return None


def detect_framework(html: str) -> str | None:
    for framework, patterns in FRAMEWORK_PATTERNS.items():
        if any(p.search(html) for p in patterns):
            return framework
    return None


def _body_text(soup: BeautifulSoup) -> str:
    body = soup.body or soup
    for tag in body.find_all(["script", "style", "noscript", "template"]):
        tag.decompose()
    return " ".join(body.get_text(" ").split())


def analyze_markup(html: str) -> PageSignals:
    """Посчитать сигналы разметки."""
    soup = BeautifulSoup(html, "lxml")
    scripts = soup.find_all("script")
    script_bytes = sum(len(s.get_text()) + len(s.get("src", "")) for s in scripts)
    text = _body_text(soup)

    reasons: list[str] = []
    framework = detect_framework(html)
    score = 0.0
    if framework:
        score += 0.3
        reasons.append(f"framework:{framework}")
    for pattern, weight in JS_HEAVY_INDICATORS:
        if pattern.search(html):
            score += weight
            reasons.append(f"indicator:{pattern.pattern}")
    if len(text) < MIN_BODY_TEXT:
        score += 0.5
        reasons.append(f"body_text<{MIN_BODY_TEXT}")

    challenge = detect_challenge(html)
    if challenge:
        reasons.append("anti-bot challenge")

    return PageSignals(
        html_length=len(html),
        script_count=len(scripts),
        script_ratio=round(script_bytes / len(html), 3) if html else 0.0,
        body_text_length=len(text),
        framework=framework,
        cms=detect_cms(html),
        js_score=min(score, 1.0),
        challenge=challenge,
        has_event_keywords=bool(EVENT_KEYWORDS.search(text)),
        reasons=reasons,
    )


def upgrade_strategy(current: FetchStrategy) -> FetchStrategy:
    """Следующая, более способная (и дорогая) стратегия."""
    idx = FETCHER_COST_ORDER.index(current)
    return FETCHER_COST_ORDER[min(idx + 1, len(FETCHER_COST_ORDER) - 1)]


def downgrade_strategy(current: FetchStrategy) -> FetchStrategy:
    """Следующая, более дешёвая стратегия."""
    idx = FETCHER_COST_ORDER.index(current)
    return FETCHER_COST_ORDER[max(idx - 1, 0)]


def recommend_strategy(
    current: FetchStrategy,
    signals: PageSignals,
    fetched_with: FetchStrategy | None = None,
) -> StrategyRecommendation:
    """
    Рекомендация стратегии на будущие загрузки (advisory).

    fetched_with — чем реально загружена разметка. Если дорогая стратегия
    отдала богатый статический контент без JS и challenge — можно дешевле.
    """
    if signals.challenge:
        if current != FetchStrategy.ANTI_BOT_PROXY:
            return StrategyRecommendation(
                "upgrade", FetchStrategy.ANTI_BOT_PROXY, ["anti-bot challenge detected"],
            )
        return StrategyRecommendation("keep", current, ["challenge on strongest strategy"])

    if current == FetchStrategy.STATIC and (signals.is_js_heavy or signals.is_empty_shell):
        reasons = [f"js_score={signals.js_score:.2f}", *signals.reasons]
        return StrategyRecommendation("upgrade", FetchStrategy.HEADLESS_BROWSER, reasons)

    effective = fetched_with or current
    if (
        effective != FetchStrategy.STATIC
        and not signals.is_js_heavy
        and not signals.is_empty_shell
        and signals.framework is None
        and signals.body_text_length >= EMPTY_BODY_TEXT
    ):
        return StrategyRecommendation(
            "downgrade",
            downgrade_strategy(current),
            [f"static-rich markup ({signals.body_text_length} chars text, no JS markers)"],
        )

    return StrategyRecommendation("keep", current, [])


async def apply_recommendation(
    db: Client, source_id: str, recommendation: StrategyRecommendation
) -> bool:
    """Сохранить новую стратегию по умолчанию. Текущую загрузку не повторяет."""
    if recommendation.action == "keep":
        return False
    try:
        await update_source_strategy(db, source_id, recommendation.strategy)
    except Exception as e:
        logger.error(f"[analyzer] Failed to persist strategy for {source_id}: {e}")
        return False
    logger.info(
        f"[analyzer] Source {source_id}: {recommendation.action} → {recommendation.strategy} "
        f"({'; '.join(recommendation.reasons[:3])})"
    )
    return True
