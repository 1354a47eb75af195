"""
Structured logging helpers for consistent log formatting.

Provider URLs embed account credentials in the query string or path, so
anything that logs a URL goes through sanitize_url_for_logging first.
"""
import logging
import re
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


_SECRET_PARAMS = {"username", "user", "uname", "password", "pass", "pwd"}
_XTREAM_PATH = re.compile(r"^/(live|movie|series)/[^/]+/[^/]+/", re.IGNORECASE)
_BARE_STREAM_PATH = re.compile(r"^/[^/]+/[^/]+/(\d+)$")


def sanitize_url_for_logging(url: str) -> str:
    """Mask credentials in a provider URL."""
    if "://" not in url:
        return url
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    netloc = parts.netloc
    if "@" in netloc:
        netloc = "***:***@" + netloc.split("@", 1)[1]

    query = parts.query
    if query:
        pairs = parse_qsl(query, keep_blank_values=True)
        query = urlencode(
            [(key, "***" if key.lower() in _SECRET_PARAMS else value) for key, value in pairs],
            safe="*",
        )

    path = _XTREAM_PATH.sub(lambda m: f"/{m.group(1)}/***/***/", parts.path)
    path = _BARE_STREAM_PATH.sub(r"/***/***/\1", path)
    return urlunsplit((parts.scheme, netloc, path, query, parts.fragment))


def log_section_start(logger: logging.Logger, section_name: str) -> None:
    """
    Log the start of a processing section.

    Args:
        logger: Logger instance
        section_name: Name of the section being started
    """
    logger.info(f"Starting: {section_name}")


def log_section_end(logger: logging.Logger, section_name: str) -> None:
    """
    Log the end of a processing section.

    Args:
        logger: Logger instance
        section_name: Name of the section being ended
    """
    logger.info(f"Completed: {section_name}")


def log_candidate_attempt(logger: logging.Logger, idx: int, total: int, url: str) -> None:
    """
    Log a guide candidate attempt.

    Args:
        logger: Logger instance
        idx: Current candidate index (1-based)
        total: Total number of candidates tried
        url: Candidate URL being fetched
    """
    logger.info(f"Guide candidate {idx}/{total}: {sanitize_url_for_logging(url)}")


def log_guide_summary(
    logger: logging.Logger,
    source: str,
    channels_with_data: int,
    total_channels: int
) -> None:
    """
    Log guide acquisition summary.

    Args:
        logger: Logger instance
        source: Which source produced the guide
        channels_with_data: Channels with at least one program
        total_channels: Channels in the playlist
    """
    logger.info(
        f"Guide summary ({source}) - channels with data: {channels_with_data}/{total_channels}"
    )
