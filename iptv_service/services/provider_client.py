"""
Xtream provider API client

Thin async wrapper around player_api.php. Payload models tolerate the loose
typing providers use (numbers as strings, ids as floats, missing fields).
"""
import json
import logging
import math
import re
from typing import Annotated, Any

import httpx
from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError

from iptv_service.errors import TransportError
from iptv_service.services.iptv_types import ProviderCredentials, SeriesEpisode
from iptv_service.utils.logging_helpers import sanitize_url_for_logging
from iptv_service.utils.text_matching import extract_episode_only, extract_season_episode


logger = logging.getLogger(__name__)

PLAYER_USER_AGENT = "VLC/3.0.20 LibVLC/3.0.20"
BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

_DIGITS = re.compile(r"\d{1,4}")


def parse_flexible_int(value: Any) -> int | None:
    """Coerce provider numbers ("12", 12.0, "S01") to int, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            pass
        try:
            return int(float(raw))
        except (ValueError, OverflowError):
            pass
        match = _DIGITS.search(raw)
        return int(match.group()) if match else None
    return None


def _flexible_str(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    text = str(value).strip()
    return text or None


FlexibleInt = Annotated[int | None, BeforeValidator(parse_flexible_int)]
FlexibleStr = Annotated[str | None, BeforeValidator(_flexible_str)]


class ProviderModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class LiveCategory(ProviderModel):
    category_id: FlexibleStr = None
    category_name: FlexibleStr = None


class LiveStream(ProviderModel):
    stream_id: FlexibleInt = None
    name: FlexibleStr = None
    stream_icon: FlexibleStr = None
    epg_channel_id: FlexibleStr = None
    category_id: FlexibleStr = None


class VodStream(ProviderModel):
    stream_id: FlexibleInt = None
    name: FlexibleStr = None
    container_extension: FlexibleStr = None
    tmdb: FlexibleStr = Field(default=None, validation_alias=AliasChoices("tmdb", "tmdb_id"))
    imdb: FlexibleStr = Field(default=None, validation_alias=AliasChoices("imdb", "imdb_id"))
    year: FlexibleStr = Field(default=None, validation_alias=AliasChoices("year", "releaseDate", "release_date"))


class SeriesItem(ProviderModel):
    series_id: FlexibleInt = None
    name: FlexibleStr = None
    tmdb: FlexibleStr = Field(default=None, validation_alias=AliasChoices("tmdb", "tmdb_id"))
    imdb: FlexibleStr = Field(default=None, validation_alias=AliasChoices("imdb", "imdb_id"))


class ShortEpgListing(ProviderModel):
    id: FlexibleStr = None
    epg_id: FlexibleStr = None
    title: FlexibleStr = None
    lang: FlexibleStr = None
    start: FlexibleStr = None
    end: FlexibleStr = None
    description: FlexibleStr = None
    channel_id: FlexibleStr = None
    start_timestamp: FlexibleInt = None
    stop_timestamp: FlexibleInt = None
    stream_id: FlexibleInt = None


def _validate_items(model: type[ProviderModel], payload: Any) -> list:
    if isinstance(payload, dict):
        payload = list(payload.values())
    if not isinstance(payload, list):
        return []
    items = []
    for raw in payload:
        if not isinstance(raw, dict):
            continue
        try:
            items.append(model.model_validate(raw))
        except ValidationError:
            continue
    return items


class XtreamClient:
    """Calls player_api.php for one provider account."""

    def __init__(self, http_client: httpx.AsyncClient, credentials: ProviderCredentials):
        self._http = http_client
        self.credentials = credentials

    async def request_json(self, url: str, timeout: float | None = None) -> Any | None:
        """
        Fetch a JSON document.

        Returns:
            Parsed JSON, or None for non-2xx responses, blank bodies or invalid JSON

        Raises:
            TransportError: On connection failures and timeouts
        """
        try:
            response = await self._http.get(
                url,
                headers={"User-Agent": PLAYER_USER_AGENT, "Accept": "application/json,*/*"},
                timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
            )
        except httpx.HTTPError as exc:
            raise TransportError(
                f"{type(exc).__name__} calling {sanitize_url_for_logging(url)}"
            ) from exc

        if not response.is_success:
            logger.debug("Provider API %s returned HTTP %s", sanitize_url_for_logging(url), response.status_code)
            return None
        body = response.text.strip()
        if not body:
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError:
            logger.debug("Provider API %s returned invalid JSON", sanitize_url_for_logging(url))
            return None

    async def get_live_categories(self) -> list[LiveCategory]:
        payload = await self.request_json(self.credentials.api_url("get_live_categories"))
        return _validate_items(LiveCategory, payload)

    async def get_live_streams(self) -> list[LiveStream]:
        payload = await self.request_json(self.credentials.api_url("get_live_streams"))
        return _validate_items(LiveStream, payload)

    async def get_vod_streams(self, timeout: float | None = None) -> list[VodStream]:
        payload = await self.request_json(self.credentials.api_url("get_vod_streams"), timeout)
        return _validate_items(VodStream, payload)

    async def get_series(self, timeout: float | None = None) -> list[SeriesItem]:
        payload = await self.request_json(self.credentials.api_url("get_series"), timeout)
        return _validate_items(SeriesItem, payload)

    async def get_short_epg(self, stream_id: int, limit: int = 5) -> list[ShortEpgListing]:
        url = self.credentials.api_url("get_short_epg", stream_id=stream_id, limit=limit)
        payload = await self.request_json(url)
        if isinstance(payload, dict):
            payload = payload.get("epg_listings")
        return _validate_items(ShortEpgListing, payload)

    async def get_series_episodes(self, series_id: int, timeout: float | None = None) -> list[SeriesEpisode]:
        url = self.credentials.api_url("get_series_info", series_id=series_id)
        payload = await self.request_json(url, timeout)
        if not isinstance(payload, dict):
            return []
        return parse_series_episodes(payload)


_SEASON_HINT_FIELDS = ("season", "season_number", "season_num")
_EPISODE_ID_FIELDS = ("id", "stream_id", "episode_id", "episode_num", "episode_number")


def parse_series_episodes(root: dict) -> list[SeriesEpisode]:
    """
    Flatten a get_series_info response into episodes.

    Providers nest episodes as {"1": [...], "2": [...]}, as plain lists, or as
    objects with their own "episodes" key; season numbers come from the key,
    the object, or the episode title.
    """
    collected: list[tuple[dict, int | None]] = []
    _collect_episode_objects(root.get("episodes"), None, collected)
    episodes = []
    for item, season_hint in collected:
        episode = _parse_episode_object(item, season_hint)
        if episode is not None:
            episodes.append(episode)
    return episodes


def _collect_episode_objects(element: Any, season_hint: int | None, out: list) -> None:
    if element is None:
        return
    if isinstance(element, list):
        for child in element:
            _collect_episode_objects(child, season_hint, out)
        return
    if not isinstance(element, dict):
        return

    object_hint = season_hint
    if object_hint is None:
        object_hint = _first_int(element, _SEASON_HINT_FIELDS)

    if _looks_like_episode(element):
        out.append((element, object_hint))
        return

    nested = element.get("episodes")
    if nested is not None:
        _collect_episode_objects(nested, object_hint, out)

    for key, value in element.items():
        if key.lower() == "episodes":
            continue
        keyed_hint = _parse_season_key(key)
        _collect_episode_objects(value, keyed_hint if keyed_hint is not None else object_hint, out)


def _looks_like_episode(obj: dict) -> bool:
    if _first_int(obj, _EPISODE_ID_FIELDS) is not None:
        return True
    info = obj.get("info")
    return isinstance(info, dict) and _first_int(info, _EPISODE_ID_FIELDS) is not None


def _parse_season_key(raw: str) -> int | None:
    if not raw or not raw.strip():
        return None
    try:
        parsed = int(raw)
    except ValueError:
        match = re.search(r"\d{1,2}", raw)
        parsed = int(match.group()) if match else None
    if parsed is None or not 0 <= parsed <= 99:
        return None
    return parsed


def _first_int(obj: dict | None, names: tuple[str, ...]) -> int | None:
    if not obj:
        return None
    for name in names:
        value = parse_flexible_int(obj.get(name))
        if value is not None:
            return value
    return None


def _parse_episode_object(item: dict, season_hint: int | None) -> SeriesEpisode | None:
    info = item.get("info") if isinstance(item.get("info"), dict) else None
    raw_title = (_flexible_str(item.get("title")) or (_flexible_str(info.get("title")) if info else None) or "")
    parsed = extract_season_episode(raw_title)

    season = season_hint
    if season is None:
        season = _first_int(item, _SEASON_HINT_FIELDS)
    if season is None:
        season = _first_int(info, _SEASON_HINT_FIELDS)
    if season is None:
        season = parsed[0] if parsed else 1

    episode = _first_int(item, ("episode_num", "episode", "episode_number", "number", "sort", "sort_order"))
    if episode is None:
        episode = _first_int(info, ("episode_num", "episode", "episode_number", "number", "sort"))
    if episode is None and parsed:
        episode = parsed[1]
    if episode is None:
        episode = extract_episode_only(raw_title)
    if episode is None:
        episode = 1

    episode_id = _first_int(item, ("id", "stream_id", "episode_id"))
    if episode_id is None:
        episode_id = _first_int(info, ("id", "stream_id", "episode_id"))
    if episode_id is None:
        return None

    extension = _flexible_str(item.get("container_extension"))
    if extension is None and info:
        extension = _flexible_str(info.get("container_extension"))

    return SeriesEpisode(
        id=episode_id,
        season=season,
        episode=episode,
        title=raw_title or f"S{season}E{episode}",
        container_extension=extension,
    )
