"""
Structured logging helpers for consistent log formatting.

Provides utilities for structured, clean logging of sync cycles without
leaking provider credentials.
"""
import logging
import re
from datetime import datetime, timezone

from iptv_ingest.entities import DropSummary, SyncChangeset


_CREDENTIAL_PARAMS = re.compile(r'((?:username|password|login|token|mac)=)[^&#]*', re.IGNORECASE)


def sanitize_url(url: str) -> str:
    """
    Remove credentials from URL for safe logging.

    Masks userinfo (user:pass@host) and credential query parameters.
    """
    if "://" not in url:
        return _CREDENTIAL_PARAMS.sub(r"\1***", url)
    try:
        protocol, rest = url.split("://", 1)
        host_part, sep, tail = rest.partition("/")
        if "@" in host_part:
            host_part = "***:***@" + host_part.split("@", 1)[1]
        rest = host_part + sep + tail
        return _CREDENTIAL_PARAMS.sub(r"\1***", f"{protocol}://{rest}")
    except (ValueError, IndexError):
        return url


def log_sync_start(logger: logging.Logger, playlist_id: str, source_kind: str) -> None:
    """Log sync cycle start."""
    logger.info(
        "Sync started for playlist %s (%s) at %s",
        playlist_id,
        source_kind,
        datetime.now(timezone.utc).isoformat(),
    )


def log_sync_end(logger: logging.Logger, playlist_id: str, changeset: SyncChangeset) -> None:
    """
    Log sync cycle completion with changeset counts.

    Args:
        logger: Logger instance
        playlist_id: Playlist that was synced
        changeset: Changeset produced by the cycle
    """
    counts = changeset.to_dict()
    logger.info(
        "Sync completed for playlist %s - categories %s, channels %s, epg %s",
        playlist_id,
        counts["categories"],
        counts["channels"],
        counts["epg_entries"],
    )


def log_drop_summary(logger: logging.Logger, playlist_id: str, dropped: DropSummary) -> None:
    """
    Log how many records were dropped and why.

    Args:
        logger: Logger instance
        playlist_id: Playlist being normalized
        dropped: Per-reason drop counts
    """
    if not dropped.total:
        return
    logger.warning(
        "Playlist %s: dropped %s record(s) %s",
        playlist_id,
        dropped.total,
        dropped.to_dict(),
    )
