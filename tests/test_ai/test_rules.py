"""Тесты детерминированной экстракции события."""
from datetime import date

import pytest

from src.ai.rules import RulesExtractor, detect_category, normalize_time, parse_loose_date

TODAY = date(2026, 10, 19)

JSON_LD_PAGE = """
<html><head>
<meta property="og:title" content="Jazz Night">
<meta property="og:description" content="Live jazz met de huisband">
<meta property="og:image" content="/img/jazz.jpg">
<script type="application/ld+json">
{"@context": "https://schema.org", "@graph": [{"@type": "WebPage"}, {
  "@type": "MusicEvent", "name": "Jazz Night",
  "startDate": "2026-11-20T20:30", "endDate": "2026-11-20T23:00",
  "location": {"@type": "Place", "name": "Paradiso", "address": {
    "streetAddress": "Weteringschans 6-8", "postalCode": "1017 SG", "addressLocality": "Amsterdam"}}
}]}
</script>
</head><body>
<p>Deuren open 20:00. Tickets €15,00</p>
<a href="/tickets/jazz-night">Koop kaarten</a>
</body></html>
"""

PLAIN_PAGE = """
<html><body>
<h1>Kinderdisco</h1>
<p>Zaterdag 15 februari, aanvang 14.00 uur. Locatie: Dorpsstraat 12, 1234 AB Ergens. Gratis entree.</p>
</body></html>
"""


class TestParseLooseDate:
    """Тесты parse_loose_date."""

    @pytest.mark.parametrize("value, expected", [
        ("2026-11-20T20:30:00+01:00", "2026-11-20"),
        ("20-11-2026", "2026-11-20"),
        ("20/11/2026", "2026-11-20"),
        ("15 februari 2027", "2027-02-15"),
        ("March 3rd, 2027", "2027-03-03"),
        ("vr 20 nov", "2026-11-20"),
    ])
    def test_formats(self, value: str, expected: str) -> None:
        assert parse_loose_date(value, TODAY) == expected

    def test_past_date_without_year_moves_to_next_year(self) -> None:
        assert parse_loose_date("za 15 feb", TODAY) == "2027-02-15"

    def test_recent_past_date_keeps_year(self) -> None:
        """Событие месяц назад — вероятнее прошедшее, чем через 11 месяцев."""
        assert parse_loose_date("30 september", TODAY) == "2026-09-30"

    @pytest.mark.parametrize("value", [None, "", "geen datum", "31-02-2026", "2026-13-01"])
    def test_unparseable(self, value: str | None) -> None:
        assert parse_loose_date(value, TODAY) is None


class TestNormalizeTime:
    """Тесты normalize_time."""

    @pytest.mark.parametrize("value, expected", [
        ("9.30", "09:30"),
        ("21:00 uur", "21:00"),
        ("2026-11-20T20:30", "20:30"),
        ("25:00", None),
        ("", None),
        (None, None),
    ])
    def test_values(self, value: str | None, expected: str | None) -> None:
        assert normalize_time(value) == expected


class TestDetectCategory:
    """Тесты detect_category."""

    def test_keywords(self) -> None:
        assert detect_category("Kindermiddag in de bieb") == "FAMILY"
        assert detect_category("Live band in het café") == "MUSIC"
        assert detect_category("Repair Café in de buurt") == "COMMUNITY"

    def test_default(self) -> None:
        assert detect_category("Een avond in de stad") == "CULTURE"


class TestRulesExtractor:
    """Тесты RulesExtractor."""

    def test_json_ld_event(self) -> None:
        event = RulesExtractor(TODAY).extract_sync(JSON_LD_PAGE, "https://www.paradiso.nl/agenda/jazz", {})

        assert event is not None
        assert event.title == "Jazz Night"
        assert event.event_date == "2026-11-20"
        assert event.start_time == "20:30"
        assert event.doors_open_time == "20:00"
        assert event.end_time == "23:00"
        assert event.venue_name == "Paradiso"
        assert event.street_address == "Weteringschans 6-8"
        assert event.postal_code == "1017 SG"
        assert event.city == "Amsterdam"
        assert event.category == "MUSIC"
        assert event.price_info == "€15,00"
        assert event.ticket_url == "https://www.paradiso.nl/tickets/jazz-night"
        assert event.image_url == "https://www.paradiso.nl/img/jazz.jpg"

    def test_plain_dutch_page(self) -> None:
        event = RulesExtractor(TODAY).extract_sync(PLAIN_PAGE, "https://ergens.nl/agenda/disco", {})

        assert event is not None
        assert event.title == "Kinderdisco"
        assert event.event_date == "2027-02-15"
        assert event.start_time == "14:00"
        assert event.street_address == "Dorpsstraat 12"
        assert event.postal_code == "1234 AB"
        assert event.city == "Ergens"
        assert event.category == "FAMILY"
        assert event.price_info == "Gratis"
        assert event.venue_name is None

    def test_hints_take_precedence(self) -> None:
        """Подсказки с листинга точнее, чем текст detail-страницы."""
        event = RulesExtractor(TODAY).extract_sync(
            PLAIN_PAGE, "https://ergens.nl/agenda/disco",
            {"title": "Kinderdisco XL", "date": "21 nov", "location": "Buurthuis De Klomp"},
        )

        assert event is not None
        assert event.title == "Kinderdisco XL"
        assert event.event_date == "2026-11-21"
        assert event.venue_name == "Buurthuis De Klomp"

    def test_missing_fields_stay_empty(self) -> None:
        """Без названия, площадки и времени на странице — никаких заглушек."""
        event = RulesExtractor(TODAY).extract_sync("<p>15 november 2026</p>", "https://x.nl/", {})

        assert event is not None
        assert event.event_date == "2026-11-15"
        assert event.title == ""
        assert event.venue_name is None
        assert event.start_time is None

    def test_no_date_returns_none(self) -> None:
        page = "<html><body><h1>Binnenkort</h1><p>Meer informatie volgt.</p></body></html>"
        assert RulesExtractor(TODAY).extract_sync(page, "https://x.nl/", {}) is None

    async def test_async_wrapper(self) -> None:
        event = await RulesExtractor(TODAY).extract(JSON_LD_PAGE, "https://www.paradiso.nl/", {})
        assert event is not None
