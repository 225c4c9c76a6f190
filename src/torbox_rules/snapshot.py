"""
Snapshot builder - normalizes remote torrent, usenet and web download lists
into AutomationTarget records
"""

import asyncio
import math
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from torbox_rules.logging import get_logger
from torbox_rules.models import AutomationTarget, DownloadSource, parse_timestamp, utc_now

logger = get_logger(__name__)


def _number(record: Dict[str, Any], key: str, default: float = 0) -> float:
    value = record.get(key)
    if value is None or isinstance(value, bool):
        return default
    try:
        return float(value) if isinstance(value, str) else value
    except ValueError:
        return default


def _file_ids(record: Dict[str, Any]) -> List[int]:
    ids = []
    for entry in record.get('files') or []:
        if isinstance(entry, dict) and entry.get('id') is not None:
            ids.append(entry['id'])
    return ids


def stalled_minutes(updated_at: Any, now: datetime) -> int:
    """Minutes since the last remote update, never negative"""
    updated = parse_timestamp(updated_at)
    if updated is None:
        return 0
    return max(0, math.floor((now - updated).total_seconds() / 60))


def web_download_id(record: Dict[str, Any]) -> Any:
    """Web items may carry webdownload_id or web_id instead of id"""
    for key in ('webdownload_id', 'web_id', 'id'):
        if record.get(key) is not None:
            return record[key]
    return None


def normalize_record(source: DownloadSource, record: Dict[str, Any], now: datetime) -> AutomationTarget:
    """
    Convert one remote record into an AutomationTarget

    Usenet and web items have no swarm data, so peers/ratio/availability are 0
    and tracker is None for them.
    """
    is_torrent = source is DownloadSource.TORRENT
    source_id = web_download_id(record) if source is DownloadSource.WEB else record.get('id')

    return AutomationTarget(
        source=source,
        source_id=source_id,
        name=record.get('name') or '',
        progress=_number(record, 'progress'),
        eta=_number(record, 'eta'),
        download_speed=_number(record, 'download_speed'),
        download_state=record.get('download_state') or '',
        peers=_number(record, 'peers') if is_torrent else 0,
        ratio=_number(record, 'ratio') if is_torrent else 0,
        availability=_number(record, 'availability') if is_torrent else 0,
        created_at=parse_timestamp(record.get('created_at')),
        tracker=record.get('tracker') if is_torrent else None,
        stalled_minutes=stalled_minutes(record.get('updated_at'), now),
        file_ids=_file_ids(record),
        size=_number(record, 'size'),
    )


class SnapshotBuilder:
    """
    Builds the list of automation targets from the remote API

    The three lists are fetched concurrently; if any fetch fails the whole
    snapshot fails, so rules are never evaluated against partial data.
    """

    def __init__(self, api, clock: Callable[[], datetime] = utc_now):
        self.api = api
        self.clock = clock

    async def build_targets(self) -> List[AutomationTarget]:
        torrents, usenet, web = await asyncio.gather(
            asyncio.to_thread(self.api.get_torrents),
            asyncio.to_thread(self.api.get_usenet),
            asyncio.to_thread(self.api.get_web_downloads),
        )

        now = self.clock()
        targets = (
            self._normalize_all(DownloadSource.TORRENT, torrents, now)
            + self._normalize_all(DownloadSource.USENET, usenet, now)
            + self._normalize_all(DownloadSource.WEB, web, now)
        )

        logger.debug(
            f"Snapshot built: {len(targets)} targets "
            f"(torrents={len(torrents or [])}, usenet={len(usenet or [])}, web={len(web or [])})"
        )
        return targets

    @staticmethod
    def _normalize_all(source: DownloadSource, records: Optional[Iterable[Dict[str, Any]]],
                       now: datetime) -> List[AutomationTarget]:
        return [normalize_record(source, record, now) for record in records or []]
