"""
Built-in rule presets

Presets are templates only: creating a rule copies a preset, the preset itself
is never mutated or persisted.
"""

from typing import Dict, List

from torbox_rules.errors import PresetNotFoundError
from torbox_rules.models import Condition, ConditionField as F, Operator as Op, Preset, RuleAction, RuleScope


def _when(field: F, operator: Op, value: str) -> Condition:
    return Condition(field=field, operator=operator, value=value)


PRESET_CATEGORIES = [
    {'key': 'transfer', 'label': 'Downloads & Transfers'},
    {'key': 'completion', 'label': 'Completion & Cleanup'},
    {'key': 'maintenance', 'label': 'Torrent Maintenance'},
    {'key': 'playback', 'label': 'Playback'},
]

PRESETS: List[Preset] = [
    Preset(
        id='pause_stalled_downloads',
        name='Pause stalled downloads',
        description='Pauses active items stalled for more than 20 minutes.',
        check_interval_minutes=10,
        conditions=(_when(F.DOWNLOAD_STALLED_TIME, Op.GREATER_THAN, '20'),),
        action=RuleAction.PAUSE_DOWNLOAD,
        category='transfer',
    ),
    Preset(
        id='resume_when_progress_seen',
        name='Resume paused downloads',
        description='Resumes paused downloads automatically.',
        check_interval_minutes=10,
        conditions=(_when(F.STATUS, Op.EQUALS, 'paused'),),
        action=RuleAction.RESUME_DOWNLOAD,
        category='transfer',
    ),
    Preset(
        id='reannounce_stalled_torrents',
        name='Reannounce stalled torrents',
        description='Reannounces stalled torrents to refresh trackers.',
        check_interval_minutes=15,
        conditions=(_when(F.DOWNLOAD_STALLED_TIME, Op.GREATER_THAN, '15'),),
        action=RuleAction.REANNOUNCE_TORRENT,
        scope=RuleScope.TORRENT,
        category='maintenance',
    ),
    Preset(
        id='completed_notify',
        name='Notify on completion',
        description='Creates a local notification when an item reaches 100%.',
        check_interval_minutes=5,
        conditions=(_when(F.PROGRESS, Op.EQUALS, '100'),),
        action=RuleAction.NOTIFY_USER,
        category='completion',
    ),
    Preset(
        id='notify_errors',
        name='Notify on failed downloads',
        description='Creates a local notification when a download enters error state.',
        check_interval_minutes=5,
        conditions=(_when(F.STATUS, Op.EQUALS, 'error'),),
        action=RuleAction.NOTIFY_USER,
        category='transfer',
    ),
    Preset(
        id='completed_get_link',
        name='Auto-generate download link',
        description='Requests a download link when item completes.',
        check_interval_minutes=10,
        conditions=(_when(F.PROGRESS, Op.EQUALS, '100'),),
        action=RuleAction.REQUEST_DOWNLOAD_LINK,
        category='completion',
    ),
    Preset(
        id='stream_ready_media',
        name='Create stream links for completed media',
        description='Requests stream links for completed items.',
        check_interval_minutes=15,
        conditions=(_when(F.PROGRESS, Op.EQUALS, '100'),),
        action=RuleAction.CREATE_STREAM,
        category='playback',
    ),
    Preset(
        id='delete_very_old_completed',
        name='Delete very old completed',
        description='Deletes completed downloads older than 60 days. DANGEROUS.',
        check_interval_minutes=1440,
        conditions=(
            _when(F.AGE, Op.GREATER_THAN, '60'),
            _when(F.PROGRESS, Op.EQUALS, '100'),
        ),
        action=RuleAction.DELETE_DOWNLOAD,
        is_dangerous=True,
        category='completion',
    ),
    Preset(
        id='auto_delete_old_failed',
        name='Auto-delete old failed downloads',
        description='Deletes failed downloads older than 7 days. DANGEROUS.',
        check_interval_minutes=1440,
        conditions=(
            _when(F.STATUS, Op.EQUALS, 'error'),
            _when(F.AGE, Op.GREATER_THAN, '7'),
        ),
        action=RuleAction.DELETE_DOWNLOAD,
        is_dangerous=True,
        category='completion',
    ),
    Preset(
        id='pause_high_eta_downloads',
        name='Pause very long ETA downloads',
        description='Pauses items with ETA above 2 days (172800s).',
        check_interval_minutes=20,
        conditions=(_when(F.ETA, Op.GREATER_THAN, '172800'),),
        action=RuleAction.PAUSE_DOWNLOAD,
        category='transfer',
    ),
    Preset(
        id='resume_stalled_items',
        name='Resume stalled transfers',
        description='Resumes stalled transfers to kick progress.',
        check_interval_minutes=15,
        conditions=(_when(F.STATUS, Op.CONTAINS, 'stalled'),),
        action=RuleAction.RESUME_DOWNLOAD,
        category='transfer',
    ),
    Preset(
        id='notify_slow_downloads',
        name='Notify on slow downloads',
        description='Sends notification when download speed drops below 10KB/s.',
        check_interval_minutes=10,
        conditions=(
            _when(F.CURRENT_DOWNLOAD_SPEED, Op.LESS_THAN, '10240'),
            _when(F.STATUS, Op.CONTAINS, 'download'),
        ),
        action=RuleAction.NOTIFY_USER,
        category='transfer',
    ),
    Preset(
        id='generate_links_for_cached',
        name='Generate links for cached items',
        description='Requests download links for cached/completed items.',
        check_interval_minutes=30,
        conditions=(_when(F.STATUS, Op.CONTAINS, 'cached'),),
        action=RuleAction.REQUEST_DOWNLOAD_LINK,
        category='completion',
    ),
    Preset(
        id='stream_ready_cached',
        name='Create stream links for cached items',
        description='Builds stream links for cached/completed files.',
        check_interval_minutes=30,
        conditions=(_when(F.STATUS, Op.CONTAINS, 'cached'),),
        action=RuleAction.CREATE_STREAM,
        category='playback',
    ),
    Preset(
        id='notify_torrent_tracker_issues',
        name='Notify tracker-related stalls',
        description='Notifies when torrent tracker field contains warning text.',
        check_interval_minutes=15,
        conditions=(_when(F.TRACKER, Op.CONTAINS, 'error'),),
        action=RuleAction.NOTIFY_USER,
        scope=RuleScope.TORRENT,
        category='maintenance',
    ),
]

_PRESETS_BY_ID: Dict[str, Preset] = {p.id: p for p in PRESETS}


def get_preset(preset_id: str) -> Preset:
    """
    Look up a preset by id

    Raises:
        PresetNotFoundError: If no preset has this id
    """
    try:
        return _PRESETS_BY_ID[preset_id]
    except KeyError:
        raise PresetNotFoundError(preset_id)


def presets_by_category() -> Dict[str, List[Preset]]:
    """Group presets by category, keeping definition order"""
    grouped: Dict[str, List[Preset]] = {}
    for preset in PRESETS:
        grouped.setdefault(preset.category, []).append(preset)
    return grouped
