"""
Services package for IPTV Ingest

This package contains the protocol clients, parsers, normalizer, sync engine
and EPG lookups.
"""
from iptv_ingest.services.epg_query_service import EpgCorrelator, EpgIndex, get_now_next
from iptv_ingest.services.m3u_parser_service import parse_m3u
from iptv_ingest.services.normalizer_service import normalize
from iptv_ingest.services.scheduler_service import sync_scheduler
from iptv_ingest.services.sync_service import SyncEngine, SyncResult, get_sync_engine
from iptv_ingest.services.xmltv_parser_service import parse_xmltv

__all__ = [
    'EpgCorrelator',
    'EpgIndex',
    'SyncEngine',
    'SyncResult',
    'get_now_next',
    'get_sync_engine',
    'normalize',
    'parse_m3u',
    'parse_xmltv',
    'sync_scheduler',
]
