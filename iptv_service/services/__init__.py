"""
Services package for the IPTV Guide Service

This package contains all business logic and service layer components.
"""
from iptv_service.services.epg_coordinator import GuideCoordinator
from iptv_service.services.iptv_repository import IptvRepository
from iptv_service.services.playlist_service import PlaylistService
from iptv_service.services.series_resolver import SeriesResolver
from iptv_service.services.vod_service import VodSourceFinder

__all__ = [
    'GuideCoordinator',
    'IptvRepository',
    'PlaylistService',
    'SeriesResolver',
    'VodSourceFinder',
]
