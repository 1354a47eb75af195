"""
Title and identifier normalization for catalog matching

Provider catalogs name the same show in many ways ("The Office (US) [4K]",
"office us 2005"); these helpers reduce names to comparable forms.
"""
import re


_BRACKET_CONTENT = re.compile(r"\[[^\]]*\]")
_PAREN_CONTENT = re.compile(r"\([^)]*\)")
_YEAR_PAREN = re.compile(r"\((19|20)\d{2}\)")
_SEASON_TOKEN = re.compile(r"\b(s|season)\s*\d{1,2}\b", re.IGNORECASE)
_EPISODE_TOKEN = re.compile(r"\b(e|ep|episode)\s*\d{1,3}\b", re.IGNORECASE)
_RELEASE_TAG = re.compile(
    r"\b(2160p|1080p|720p|480p|4k|uhd|fhd|hdr|dv|dovi|hevc|x265|x264|h264|remux|bluray|"
    r"bdrip|webrip|web[- ]?dl|proper|repack|multi|dubbed|dual[- ]?audio)\b",
    re.IGNORECASE,
)
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_MULTI_SPACE = re.compile(r"\s+")
_IMDB_ID = re.compile(r"tt\d{5,10}")
_TMDB_DIGITS = re.compile(r"\d{1,10}")
_YEAR = re.compile(r"(19|20)\d{2}")

TITLE_NOISE_WORDS = frozenset({
    "the", "a", "an", "and", "of", "to", "in", "on",
    "complete", "series", "tv", "show", "season", "seasons",
    "episode", "episodes", "part", "collection", "pack",
})
_NAME_STOP_WORDS = frozenset({"the", "a", "an", "and", "of", "part", "episode", "season", "movie"})

_SEASON_EPISODE_PATTERNS = (
    re.compile(r"\bs(\d{1,2})\s*[.\-_ ]*\s*e(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\b(\d{1,2})x(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\bseason\s*(\d{1,2}).*episode\s*(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\bseason\s*(\d{1,2}).*ep(?:isode)?\s*(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\b(\d{1,2})\.(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\b(\d)(\d{2})\b", re.IGNORECASE),
)
_EPISODE_ONLY_PATTERNS = (
    re.compile(r"\bepisode\s*(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\bep\s*(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\be(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"\bpart\s*(\d{1,3})\b", re.IGNORECASE),
    re.compile(r"[\[(\- ](\d{1,3})[\]) ]?$", re.IGNORECASE),
)


def normalize_lookup_text(value: str | None) -> str:
    """Strip brackets, season/episode markers and release tags, then lowercase to alphanumerics."""
    if not value or not value.strip():
        return ""
    text = _BRACKET_CONTENT.sub(" ", value)
    text = _PAREN_CONTENT.sub(" ", text)
    text = _YEAR_PAREN.sub(" ", text)
    text = _SEASON_TOKEN.sub(" ", text)
    text = _EPISODE_TOKEN.sub(" ", text)
    text = _RELEASE_TAG.sub(" ", text)
    text = _NON_ALNUM.sub(" ", text.lower()).strip()
    return _MULTI_SPACE.sub(" ", text)


def extract_title_tokens(value: str | None) -> frozenset[str]:
    normalized = normalize_lookup_text(value)
    if not normalized:
        return frozenset()
    return frozenset(
        token for token in normalized.split(" ")
        if len(token) >= 3 and token not in TITLE_NOISE_WORDS
    )


def to_canonical_title_key(value: str | None) -> str:
    """Order-insensitive key: sorted significant tokens."""
    return " ".join(sorted(extract_title_tokens(value)))


def normalize_imdb_id(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    cleaned = value.strip().lower()
    match = _IMDB_ID.search(cleaned)
    if match:
        return match.group()
    if cleaned.startswith("tt") and len(cleaned) >= 7:
        return cleaned
    return None


def normalize_tmdb_id(value: str | int | None) -> str | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return str(value) if value > 0 else None
    if not value.strip():
        return None
    match = _TMDB_DIGITS.search(value.strip())
    if not match:
        return None
    return match.group().lstrip("0") or "0"


def parse_year(value: str | None) -> int | None:
    if not value:
        return None
    match = _YEAR.search(value)
    return int(match.group()) if match else None


def extract_season_episode(value: str | None) -> tuple[int, int] | None:
    if not value:
        return None
    lowered = value.lower()
    for pattern in _SEASON_EPISODE_PATTERNS:
        match = pattern.search(lowered)
        if match:
            return int(match.group(1)), int(match.group(2))
    return None


def extract_episode_only(value: str | None) -> int | None:
    if not value:
        return None
    lowered = value.lower()
    for pattern in _EPISODE_ONLY_PATTERNS:
        match = pattern.search(lowered)
        if match and int(match.group(1)) > 0:
            return int(match.group(1))
    return None


def score_name_match(provider_name: str, normalized_input: str) -> int:
    """
    Score how well a provider item name matches a normalized query.

    Args:
        provider_name: Raw provider name
        normalized_input: Query already passed through normalize_lookup_text

    Returns:
        0 for no match, up to 120 for an exact normalized match
    """
    normalized_provider = normalize_lookup_text(provider_name)
    if not normalized_provider or not normalized_input:
        return 0
    if normalized_provider == normalized_input:
        return 120
    if normalized_input in normalized_provider:
        return 90
    if normalized_provider in normalized_input:
        return 70

    provider_words = {w for w in normalized_provider.split(" ") if w and w not in _NAME_STOP_WORDS}
    input_words = {w for w in normalized_input.split(" ") if w and w not in _NAME_STOP_WORDS}
    if not provider_words or not input_words:
        return 0
    overlap = len(provider_words & input_words)
    coverage = overlap / len(input_words)
    if overlap >= 2 and coverage >= 0.75:
        return 75 + overlap
    if overlap >= 2:
        return 55 + overlap
    if overlap == 1 and len(input_words) >= 3 and len(provider_words) >= 3:
        return 42
    if overlap == 1 and len(input_words) <= 2:
        return 35
    return 0


def loose_series_title_score(provider_name: str, normalized_input: str) -> int:
    normalized_provider = normalize_lookup_text(provider_name)
    if not normalized_provider or not normalized_input:
        return 0
    provider_words = {w for w in normalized_provider.split(" ") if len(w) >= 3}
    input_words = {w for w in normalized_input.split(" ") if len(w) >= 3}
    overlap = len(provider_words & input_words)
    if overlap >= 2:
        return 50 + overlap
    if overlap == 1:
        return 24
    return 0


def infer_quality(value: str) -> str:
    lowered = value.lower()
    if "2160" in lowered or "4k" in lowered:
        return "4K"
    if "1080" in lowered:
        return "1080p"
    if "720" in lowered:
        return "720p"
    if "480" in lowered:
        return "480p"
    return "VOD"
