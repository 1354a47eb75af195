"""
Data merging utilities

This module merges per-channel guides coming from the short guide API and the
full XMLTV document.
"""
import logging
from collections.abc import Mapping

from iptv_service.services.iptv_types import ChannelGuide

logger = logging.getLogger(__name__)


def has_any_program_data(guides: Mapping[str, ChannelGuide] | None) -> bool:
    if not guides:
        return False
    return any(guide.has_program_data for guide in guides.values())


def count_channels_with_data(guides: Mapping[str, ChannelGuide] | None) -> int:
    if not guides:
        return 0
    return sum(1 for guide in guides.values() if guide.has_program_data)


def merge_guides(
    full: Mapping[str, ChannelGuide] | None,
    short: Mapping[str, ChannelGuide] | None,
) -> dict[str, ChannelGuide]:
    """
    Merge full and short guides field by field.

    The short guide is fresher for live state, so its now/next win. Only the
    full guide carries a timeline, so it wins later/upcoming/recent.

    Args:
        full: Guides parsed from XMLTV
        short: Guides built from the short guide API

    Returns:
        New dictionary keyed by channel id
    """
    if not short:
        return dict(full or {})
    if not full:
        return dict(short)

    merged: dict[str, ChannelGuide] = {}
    for channel_id in full.keys() | short.keys():
        full_guide = full.get(channel_id)
        short_guide = short.get(channel_id)
        if full_guide is None or short_guide is None:
            merged[channel_id] = full_guide or short_guide
            continue
        merged[channel_id] = ChannelGuide(
            now=short_guide.now or full_guide.now,
            next=short_guide.next or full_guide.next,
            later=full_guide.later or short_guide.later,
            upcoming=full_guide.upcoming or short_guide.upcoming,
            recent=full_guide.recent or short_guide.recent,
        )

    logger.debug(
        "Merged guides: %s full, %s short, %s total",
        len(full),
        len(short),
        len(merged),
    )
    return merged


def overlay_guides(
    existing: Mapping[str, ChannelGuide] | None,
    fresh: Mapping[str, ChannelGuide],
) -> dict[str, ChannelGuide]:
    """Replace whole entries of existing with those present in fresh."""
    combined = dict(existing or {})
    combined.update(fresh)
    return combined
