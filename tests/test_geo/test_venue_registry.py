"""Тесты реестра площадок."""
import pytest

from src.geo.venue_registry import lookup_venue, normalize_venue_name


class TestNormalizeVenueName:
    """Тесты normalize_venue_name."""

    @pytest.mark.parametrize("name, expected", [
        ("Koninklijk Theater Carré", "koninklijk carre"),
        ("Stadion Feijenoord", "feijenoord"),
        ("'s-Hertogenbosch", "s-hertogenbosch"),
        ("  Ziggo   Dome ", "ziggo"),
    ])
    def test_normalize(self, name: str, expected: str) -> None:
        assert normalize_venue_name(name) == expected


class TestLookupVenue:
    """Тесты lookup_venue."""

    def test_exact_name(self) -> None:
        venue = lookup_venue("Paradiso", "Amsterdam")
        assert venue is not None
        assert venue.lat == pytest.approx(52.3621)

    def test_diacritics_and_suffixes(self) -> None:
        venue = lookup_venue("Koninklijk Theater Carre")
        assert venue is not None and venue.category == "theatre"

    def test_alias(self) -> None:
        venue = lookup_venue("Heineken Music Hall")
        assert venue is not None and venue.name == "AFAS Live"

    def test_partial_match(self) -> None:
        venue = lookup_venue("Paradiso Kleine Zaal", "Amsterdam")
        assert venue is not None and venue.name == "Paradiso"

    def test_city_mismatch(self) -> None:
        """Одноимённая площадка из другого города не подходит."""
        assert lookup_venue("Paradiso", "Rotterdam") is None

    @pytest.mark.parametrize("name", [None, "", "x", "Stadion", "Buurthuis De Klomp"])
    def test_no_match(self, name: str | None) -> None:
        assert lookup_venue(name, "Ergens") is None
