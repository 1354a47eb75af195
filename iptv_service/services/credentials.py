"""
Credential and URL normalization

Turns free-form user input (full provider URLs, "host user pass" triplets,
xtream:// style hosts) into canonical playlist and guide URLs that always
point at the same provider account. Nothing in this module raises; input
that is not recognized is returned trimmed.
"""
import logging
import re
from urllib.parse import parse_qs, urlsplit

from iptv_service.services.iptv_types import ProviderCredentials


logger = logging.getLogger(__name__)

PLAYLIST_SUFFIXES = ("/get.php", "/player_api.php")
GUIDE_SUFFIXES = ("/get.php", "/xmltv.php", "/player_api.php")
XTREAM_PATH_SUFFIXES = GUIDE_SUFFIXES

_USERNAME_PARAMS = ("username", "user", "uname")
_PASSWORD_PARAMS = ("password", "pass", "pwd")
_HOST_PREFIXES = ("xtream://", "xstream://", "xtreamcodes://", "xc://")
_BROKEN_SCHEME = re.compile(r"^(https?):/(?!/)", re.IGNORECASE)


def normalize_playlist_input(raw: str) -> str:
    """Canonicalize user input into a playlist URL."""
    return _normalize_input(raw, PLAYLIST_SUFFIXES, build_playlist_url)


def normalize_guide_input(raw: str) -> str:
    """Canonicalize user input into a guide (XMLTV) URL."""
    return _normalize_input(raw, GUIDE_SUFFIXES, build_guide_url)


def build_playlist_url(base_url: str, username: str, password: str) -> str:
    return f"{base_url}/get.php?username={username}&password={password}&type=m3u_plus&output=ts"


def build_guide_url(base_url: str, username: str, password: str) -> str:
    return f"{base_url}/xmltv.php?username={username}&password={password}"


def resolve_provider_credentials(url: str) -> ProviderCredentials | None:
    """
    Extract Xtream credentials from a provider URL.

    Args:
        url: Playlist or guide URL

    Returns:
        ProviderCredentials when the path ends in a known Xtream endpoint and
        both username and password are present, otherwise None
    """
    parsed = _parse_http_url(url.strip() if url else "")
    if parsed is None:
        return None
    scheme, netloc, path, query = parsed
    if not path.lower().endswith(XTREAM_PATH_SUFFIXES):
        return None

    username = _first_param(query, _USERNAME_PARAMS)
    password = _first_param(query, _PASSWORD_PARAMS)
    if not username or not password:
        return None

    return ProviderCredentials(
        base_url=_to_base_url(scheme, netloc, path),
        username=username,
        password=password,
    )


def resolve_guide_candidates(
    playlist_url: str,
    guide_url: str,
    discovered_guide_url: str | None = None,
    preferred_guide_url: str | None = None,
) -> list[str]:
    """
    Build the ordered list of guide URLs worth trying.

    Derived Xtream URLs use the guide URL's account when it carries one,
    otherwise the playlist's.

    Args:
        playlist_url: Normalized playlist URL
        guide_url: Manually configured guide URL (may be blank)
        discovered_guide_url: url-tvg advertised by the playlist header
        preferred_guide_url: Last derived URL that returned data

    Returns:
        De-duplicated candidate URLs, best first
    """
    candidates: list[str] = []
    manual = guide_url.strip() if guide_url else ""
    if manual:
        candidates.append(manual)

    discovered = (discovered_guide_url or "").strip()
    if discovered.lower().startswith(("http://", "https://")):
        candidates.append(discovered)

    creds = resolve_provider_credentials(manual) or resolve_provider_credentials(playlist_url)
    if creds is not None:
        preferred = (preferred_guide_url or "").strip()
        if preferred and preferred.startswith(creds.base_url):
            candidates.append(preferred)

        base, user, password = creds.base_url, creds.username, creds.password
        candidates.extend([
            build_guide_url(base, user, password),
            f"{base}/get.php?username={user}&password={password}&type=xmltv",
            f"{base}/get.php?username={user}&password={password}&type=xml",
            f"{base}/xmltv.php",
            f"{base}/get.php?username={user}&password={password}",
        ])

    return list(dict.fromkeys(url for url in candidates if url))


def _normalize_input(raw: str, suffixes: tuple[str, ...], builder) -> str:
    value = (raw or "").strip()
    if not value:
        return ""

    triplet = _extract_triplet(value)
    if triplet is not None:
        host, username, password = triplet
        base = _normalize_host(host)
        if base:
            return builder(base, username, password)

    parsed = _parse_http_url(value)
    if parsed is not None:
        scheme, netloc, path, query = parsed
        if path.lower().endswith(suffixes):
            username = _first_param(query, _USERNAME_PARAMS)
            password = _first_param(query, _PASSWORD_PARAMS)
            if username and password:
                return builder(_to_base_url(scheme, netloc, path), username, password)

    return value


def _extract_triplet(value: str) -> tuple[str, str, str] | None:
    lines = [line.strip() for line in value.splitlines() if line.strip()]
    if len(lines) >= 3:
        return lines[0], lines[1], lines[2]

    tokens = value.split()
    if len(tokens) >= 3:
        return tokens[0], tokens[1], tokens[2]
    return None


def _normalize_host(raw_host: str) -> str | None:
    host = raw_host.strip()
    lowered = host.lower()
    for prefix in _HOST_PREFIXES:
        if lowered.startswith(prefix):
            host = host[len(prefix):]
            break
    host = _BROKEN_SCHEME.sub(lambda m: f"{m.group(1)}://", host)
    if not host.lower().startswith(("http://", "https://")):
        host = f"http://{host}"
    host = host.rstrip("/")
    if host.lower() in ("http:", "https:", "http://", "https://"):
        return None
    return host


def _parse_http_url(value: str) -> tuple[str, str, str, dict[str, list[str]]] | None:
    if not value:
        return None
    try:
        parts = urlsplit(value)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None
    return parts.scheme.lower(), parts.netloc, parts.path, parse_qs(parts.query, keep_blank_values=True)


def _first_param(query: dict[str, list[str]], names: tuple[str, ...]) -> str | None:
    for name in names:
        for value in query.get(name, []):
            if value.strip():
                return value.strip()
    return None


def _to_base_url(scheme: str, netloc: str, path: str) -> str:
    trimmed = path.rstrip("/")
    lowered = trimmed.lower()
    for suffix in XTREAM_PATH_SUFFIXES:
        if lowered.endswith(suffix):
            trimmed = trimmed[: -len(suffix)]
            break
    return f"{scheme}://{netloc}{trimmed}".rstrip("/")
