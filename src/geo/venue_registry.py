"""Курируемый реестр крупных площадок Нидерландов — координаты без обращения к геокодеру."""
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Literal

VenueCategory = Literal[
    "stadium", "arena", "theatre", "cinema", "museum", "concert_hall", "venue", "park",
]

_QUOTES_RE = re.compile(r"['\"]")
_SUFFIX_RE = re.compile(
    r"\b(stadium|stadion|theater|theatre|cinema|bioscoop|museum|arena|hall|hallen|park|plaza|dome)\b",
    re.IGNORECASE,
)
_SPACES_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class Venue:
    name: str
    lat: float
    lng: float
    city: str
    category: VenueCategory
    aliases: tuple[str, ...] = field(default_factory=tuple)


VENUE_REGISTRY: tuple[Venue, ...] = (
    # Стадионы
    Venue("Johan Cruijff ArenA", 52.3145, 4.9417, "Amsterdam", "stadium",
          ("Ajax Stadium", "Amsterdam ArenA", "JC ArenA", "Arena", "Ajax Arena")),
    Venue("De Kuip", 51.8939, 4.5231, "Rotterdam", "stadium",
          ("Stadion Feijenoord", "Feyenoord Stadion", "Feyenoord Stadium", "Kuip")),
    Venue("Philips Stadion", 51.4417, 5.4675, "Eindhoven", "stadium",
          ("PSV Stadion", "PSV Stadium", "Philips Stadium")),
    Venue("GelreDome", 51.9631, 5.8927, "Arnhem", "stadium", ("Vitesse Stadion", "Gelredome Arnhem")),
    Venue("AFAS Stadion", 52.6127, 4.7408, "Alkmaar", "stadium",
          ("AZ Stadion", "AZ Alkmaar Stadion", "AFAS Stadium")),
    Venue("Abe Lenstra Stadion", 52.9553, 5.9497, "Heerenveen", "stadium",
          ("Heerenveen Stadion", "SC Heerenveen Stadium")),
    Venue("Euroborg", 53.2064, 6.5917, "Groningen", "stadium", ("FC Groningen Stadion", "Euroborg Stadion")),
    Venue("Goffertstadion", 51.8317, 5.8383, "Nijmegen", "stadium", ("NEC Stadion", "De Goffert")),
    Venue("Rat Verlegh Stadion", 51.5833, 4.7833, "Breda", "stadium", ("NAC Stadion", "NAC Breda Stadion")),
    Venue("MAC³PARK Stadion", 52.5186, 6.1117, "Zwolle", "stadium", ("PEC Zwolle Stadion", "MAC3PARK")),
    Venue("Olympisch Stadion", 52.3428, 4.8533, "Amsterdam", "stadium",
          ("Olympic Stadium Amsterdam", "Olympisch Stadion Amsterdam")),
    # Арены и концертные залы
    Venue("Ziggo Dome", 52.3131, 4.9378, "Amsterdam", "arena", ("Ziggodome", "Ziggo Arena")),
    Venue("Rotterdam Ahoy", 51.8875, 4.4856, "Rotterdam", "arena", ("Ahoy Rotterdam", "Ahoy Arena", "Ahoy")),
    Venue("AFAS Live", 52.3122, 4.9356, "Amsterdam", "concert_hall",
          ("Heineken Music Hall", "HMH", "AFAS Live Amsterdam")),
    Venue("Paradiso", 52.3621, 4.8836, "Amsterdam", "concert_hall", ("Paradiso Amsterdam",)),
    Venue("Melkweg", 52.3644, 4.8811, "Amsterdam", "concert_hall", ("Melkweg Amsterdam", "De Melkweg")),
    Venue("TivoliVredenburg", 52.0919, 5.1128, "Utrecht", "concert_hall",
          ("Tivoli", "Vredenburg", "Tivoli Utrecht")),
    Venue("013", 51.5561, 5.0878, "Tilburg", "concert_hall", ("Poppodium 013", "013 Tilburg", "Popcentrum 013")),
    Venue("De Doelen", 51.9225, 4.4792, "Rotterdam", "concert_hall", ("Doelen Rotterdam", "Concertgebouw De Doelen")),
    Venue("Concertgebouw", 52.3564, 4.8792, "Amsterdam", "concert_hall",
          ("Concertgebouw Amsterdam", "Het Concertgebouw", "Royal Concertgebouw")),
    # Театры
    Venue("Koninklijk Theater Carré", 52.3606, 4.9031, "Amsterdam", "theatre",
          ("Carré", "Theater Carré", "Koninklijk Carré", "Carre Amsterdam")),
    Venue("Stadsschouwburg Amsterdam", 52.3650, 4.8833, "Amsterdam", "theatre",
          ("Internationaal Theater Amsterdam", "ITA", "Stadsschouwburg")),
    Venue("Chassé Theater", 51.5894, 4.7750, "Breda", "theatre", ("Chasse Theater Breda", "Chasse")),
    Venue("Theaters Tilburg", 51.5594, 5.0833, "Tilburg", "theatre", ("Schouwburg Tilburg", "Concertzaal Tilburg")),
    Venue("Parktheater Eindhoven", 51.4356, 5.4797, "Eindhoven", "theatre",
          ("Parktheater", "Park Theater Eindhoven")),
    # Музеи
    Venue("Rijksmuseum", 52.3600, 4.8852, "Amsterdam", "museum", ("Rijksmuseum Amsterdam", "Het Rijksmuseum")),
    Venue("Van Gogh Museum", 52.3584, 4.8811, "Amsterdam", "museum", ("Van Gogh", "Vincent van Gogh Museum")),
    Venue("Anne Frank Huis", 52.3753, 4.8839, "Amsterdam", "museum", ("Anne Frank House", "Anne Frank Museum")),
    Venue("NEMO Science Museum", 52.3739, 4.9122, "Amsterdam", "museum",
          ("NEMO", "NEMO Amsterdam", "Science Center NEMO")),
    Venue("Kunsthal Rotterdam", 51.9128, 4.4719, "Rotterdam", "museum", ("Kunsthal", "Kunsthal Museum")),
    # Кино
    Venue("Pathé Tuschinski", 52.3667, 4.8944, "Amsterdam", "cinema",
          ("Tuschinski", "Theater Tuschinski", "Tuschinski Amsterdam")),
    Venue("Eye Filmmuseum", 52.3844, 4.9011, "Amsterdam", "cinema",
          ("Eye", "Eye Film", "Eye Amsterdam", "EYE Film Institute")),
    Venue("Pathé Arena", 52.3125, 4.9361, "Amsterdam", "cinema", ("Pathe Arena", "Pathé Amsterdam Arena")),
    Venue("Filmhuis Den Haag", 52.0794, 4.3133, "Den Haag", "cinema", ("Filmhuis", "Filmhuis The Hague")),
    # Выставочные центры
    Venue("RAI Amsterdam", 52.3400, 4.8889, "Amsterdam", "venue", ("RAI", "Amsterdam RAI", "RAI Convention Centre")),
    Venue("Jaarbeurs", 52.0889, 5.1022, "Utrecht", "venue", ("Jaarbeurs Utrecht", "Jaarbeursplein")),
    Venue("MECC Maastricht", 50.8386, 5.7153, "Maastricht", "venue",
          ("MECC", "Maastricht Exhibition and Congress Centre")),
    Venue("World Forum", 52.0936, 4.2831, "Den Haag", "venue", ("World Forum The Hague", "World Forum Den Haag")),
    Venue("Martiniplaza", 53.2175, 6.5697, "Groningen", "venue", ("Martini Plaza Groningen", "MartiniPlaza")),
    Venue("Brabanthallen", 51.6833, 5.2917, "'s-Hertogenbosch", "venue",
          ("Brabanthallen Den Bosch", "'s-Hertogenbosch Brabanthallen")),
    # Парки
    Venue("Vondelpark", 52.3579, 4.8686, "Amsterdam", "park", ("Vondelpark Amsterdam", "Het Vondelpark")),
    Venue("Het Park", 51.9053, 4.4664, "Rotterdam", "park", ("Park Rotterdam", "Euromast Park")),
    Venue("Malieveld", 52.0822, 4.3219, "Den Haag", "park", ("Malieveld Den Haag", "The Malieveld")),
    # Meppel
    Venue("Luxor Cinema Meppel", 52.6958, 6.1933, "Meppel", "cinema", ("Luxor Meppel", "Bioscoop Meppel")),
    Venue("Sportpark Ezinge", 52.695, 6.21, "Meppel", "stadium", ("Ezinge Meppel",)),
    Venue("De Plataan", 52.698, 6.203, "Meppel", "venue", ("Plataan Meppel",)),
    Venue("Reestkerk", 52.705, 6.195, "Meppel", "venue", ("Reest Kerk Meppel",)),
)


def normalize_venue_name(name: str) -> str:
    """Нижний регистр без диакритики, кавычек и типовых слов (stadion, theater, ...)."""
    decomposed = unicodedata.normalize("NFD", name.lower())
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    stripped = _QUOTES_RE.sub("", stripped)
    stripped = _SUFFIX_RE.sub("", stripped)
    return _SPACES_RE.sub(" ", stripped).strip()


def _city_matches(venue: Venue, normalized_city: str | None) -> bool:
    return normalized_city is None or normalize_venue_name(venue.city) == normalized_city


def lookup_venue(name: str | None, city: str | None = None) -> Venue | None:
    """
    Найти площадку: точное имя → алиас → частичное совпадение.
    Если передан город, площадка из другого города не подходит.
    """
    if not name or len(name) < 2:
        return None
    query = normalize_venue_name(name)
    if not query:
        return None
    normalized_city = normalize_venue_name(city) if city else None

    for venue in VENUE_REGISTRY:
        if normalize_venue_name(venue.name) == query and _city_matches(venue, normalized_city):
            return venue

    for venue in VENUE_REGISTRY:
        for alias in venue.aliases:
            if normalize_venue_name(alias) == query and _city_matches(venue, normalized_city):
                return venue

    for venue in VENUE_REGISTRY:
        if not _city_matches(venue, normalized_city):
            continue
        for candidate in (venue.name, *venue.aliases):
            normalized = normalize_venue_name(candidate)
            # "Arena" → "" после удаления суффиксов, такой алиас совпал бы со всем
            if len(normalized) < 2:
                continue
            if normalized in query or query in normalized:
                return venue
    return None
