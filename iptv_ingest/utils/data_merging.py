"""
Data merging utilities

This module diffs a freshly normalized playlist against what was stored by the
previous sync.
"""
import logging
from collections.abc import Iterable, Mapping

from iptv_ingest.entities import Channel, EntityChanges, EntityIndex, EpgEntry, SyncChangeset

logger = logging.getLogger(__name__)


def diff_entities(before: Mapping[str, object], after: Mapping[str, object]) -> EntityChanges:
    """
    Compare two id -> entity mappings.

    Entities kept only as stale placeholders (stale channels) that are still
    missing from the new data are not reported as removed a second time.

    Args:
        before: Entities stored by the previous sync
        after: Entities produced by this sync

    Returns:
        EntityChanges with added, updated and removed ids
    """
    added = frozenset(entity_id for entity_id in after if entity_id not in before)
    updated = frozenset(
        entity_id
        for entity_id, entity in after.items()
        if entity_id in before and before[entity_id] != entity
    )
    removed = frozenset(
        entity_id
        for entity_id, entity in before.items()
        if entity_id not in after and not getattr(entity, "stale", False)
    )
    return EntityChanges(added=added, updated=updated, removed=removed)


def _as_mapping(entities: Iterable) -> dict[str, object]:
    return {entity.id: entity for entity in entities}


def build_changeset(
    playlist_id: str,
    before_categories: Iterable,
    before_channels: Iterable,
    before_epg: Iterable,
    after_categories: EntityIndex,
    after_channels: EntityIndex,
    after_epg: EntityIndex,
) -> SyncChangeset:
    """
    Build the changeset that turns the stored state into the new state.

    Returns:
        SyncChangeset; empty when nothing changed
    """
    changeset = SyncChangeset(
        playlist_id=playlist_id,
        categories=diff_entities(_as_mapping(before_categories), _as_mapping(after_categories)),
        channels=diff_entities(_as_mapping(before_channels), _as_mapping(after_channels)),
        epg_entries=diff_entities(_as_mapping(before_epg), _as_mapping(after_epg)),
    )
    logger.debug("Changeset for playlist %s: %s", playlist_id, changeset.to_dict())
    return changeset


def carry_forward_epg(
    playlist_id: str,
    previous: Iterable[EpgEntry],
    channels: Iterable[Channel],
) -> EntityIndex[EpgEntry]:
    """
    Keep the previously stored guide when this cycle's guide could not be fetched.

    Only entries whose channel key is still referenced by a channel survive.

    Args:
        playlist_id: Playlist being synced
        previous: EPG entries stored by the last successful sync
        channels: Channels produced by this sync

    Returns:
        EntityIndex of carried-forward entries
    """
    referenced = {channel.epg_channel_id for channel in channels if channel.epg_channel_id}
    kept: EntityIndex[EpgEntry] = EntityIndex(playlist_id)
    for entry in previous:
        if entry.channel_key in referenced:
            kept.add(entry)
    logger.info("Carried forward %s EPG entries for playlist %s", len(kept), playlist_id)
    return kept
