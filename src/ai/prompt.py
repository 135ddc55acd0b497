"""Сборка промптов: экстракция события и лечение селекторов."""
import json
from datetime import date
from typing import Any

_EXTRACTION_PROMPT = """\
You are a precise event data extraction agent for a Dutch social events platform.

Extract the "Social Five" data points from the event page:

1. Start Time & Doors Open: distinguish when doors/entry open from when the main event starts.
2. Precise Location: venue name AND full street address (must be map-ready).
3. Duration/End Time: when the event ends, or estimated duration in minutes.
4. Language Profile: native = Dutch, foreign = English or another non-Dutch language, \
mixed = both, other = cannot tell.
5. Interaction Mode:
   - high = workshops, networking events, meetups (lots of talking to strangers)
   - medium = concerts, markets, festivals (some interaction)
   - low = talks, lectures, presentations (mostly listening)
   - passive = movies, exhibitions, theater (no interaction expected)

Rules:
- Only extract events in {year} or later.
- Use 24-hour time format (HH:MM) and YYYY-MM-DD dates.
- Dutch dates look like "za 15 feb", "15-02-2025", "zaterdag 15 februari".
- If end_time is unknown, estimate estimated_duration_minutes from the event type.
- Detect language from the description and "English spoken" style indicators.
- Use null for optional fields you cannot determine.
"""

_HEALER_PROMPT = """\
You repair CSS selectors of a web scraper for event listing pages.

The selectors below used to extract event cards from this page, but they no longer \
match anything: the site changed its markup. Using the structural summary and the HTML \
sample, propose new selectors.

Rules:
- event_card must match EACH repeating event item (not the list container).
- title, date, time, location, link, description, image, price are relative to the card.
- link must select an <a> element whose href leads to the event detail page.
- Prefer stable class names and semantic tags over positional selectors (nth-child).
- Never use generated class names (css-xxxx, sc-xxxx, hash-like tokens).
- Use null for fields the markup does not contain.
- confidence: your honest estimate 0-1 that the selectors extract the same events.
"""


def build_extraction_messages(
    base_url: str,
    hints: dict[str, Any],
    markdown: str,
    today: date | None = None,
) -> list[dict[str, str]]:
    """Промпт для экстракции события из markdown detail-страницы."""
    today = today or date.today()
    user = (
        f"Today's date: {today.isoformat()}\n"
        f"Event page URL: {base_url}\n\n"
        "Hints from listing page:\n"
        f"- Title: {hints.get('title') or 'Unknown'}\n"
        f"- Date hint: {hints.get('date') or 'Unknown'}\n"
        f"- Location hint: {hints.get('location') or 'Unknown'}\n\n"
        f"Page content (Markdown):\n{markdown}\n\n"
        "Extract the Social Five data."
    )
    return [
        {"role": "system", "content": _EXTRACTION_PROMPT.format(year=today.year)},
        {"role": "user", "content": user},
    ]


def build_healer_messages(
    url: str,
    broken_selectors: dict[str, Any] | None,
    summary: dict[str, Any],
    html_sample: str,
    previous_titles: list[str] | None = None,
) -> list[dict[str, str]]:
    """Промпт для лечения селекторов: сломанный конфиг + структура страницы."""
    parts = [f"Page URL: {url}"]
    if broken_selectors:
        parts.append(f"Broken selectors:\n{json.dumps(broken_selectors, indent=2)}")
    else:
        parts.append("Broken selectors: none (source has no config yet)")
    parts.append(f"Structural summary:\n{json.dumps(summary, indent=2, ensure_ascii=False)}")
    if previous_titles:
        titles = "\n".join(f"- {t}" for t in previous_titles[:10])
        parts.append(f"Event titles previously extracted from this page:\n{titles}")
    parts.append(f"HTML sample:\n{html_sample}")
    return [
        {"role": "system", "content": _HEALER_PROMPT},
        {"role": "user", "content": "\n\n".join(parts)},
    ]
