"""
Rule, preset and target data model

Rules are persisted as plain dictionaries (see Rule.to_dict); targets are
rebuilt from the remote download lists on every run and never persisted.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class RuleAction(str, Enum):
    DELETE_DOWNLOAD = 'delete_download'
    PAUSE_DOWNLOAD = 'pause_download'
    RESUME_DOWNLOAD = 'resume_download'
    REANNOUNCE_TORRENT = 'reannounce_torrent'
    REQUEST_DOWNLOAD_LINK = 'request_download_link'
    CREATE_STREAM = 'create_stream'
    NOTIFY_USER = 'notify_user'


class RuleScope(str, Enum):
    ALL = 'all'
    TORRENT = 'torrent'
    USENET = 'usenet'
    WEB = 'web'


class DownloadSource(str, Enum):
    TORRENT = 'torrent'
    USENET = 'usenet'
    WEB = 'web'


class ConditionField(str, Enum):
    PROGRESS = 'progress'
    ETA = 'eta'
    CURRENT_DOWNLOAD_SPEED = 'current_download_speed'
    AVERAGE_DOWNLOAD_SPEED = 'average_download_speed'
    DOWNLOAD_STALLED_TIME = 'download_stalled_time'
    UPLOAD_STALLED_TIME = 'upload_stalled_time'
    SEEDING_RATIO = 'seeding_ratio'
    PEERS = 'peers'
    AGE = 'age'
    TRACKER = 'tracker'
    AVAILABILITY = 'availability'
    STATUS = 'status'
    DOWNLOAD_TYPE = 'download_type'
    NAME_CONTAINS = 'name_contains'
    SIZE = 'size'


class Operator(str, Enum):
    EQUALS = 'equals'
    NOT_EQUALS = 'not_equals'
    GREATER_THAN = 'greater_than'
    LESS_THAN = 'less_than'
    GREATER_THAN_OR_EQUAL = 'greater_than_or_equal'
    LESS_THAN_OR_EQUAL = 'less_than_or_equal'
    CONTAINS = 'contains'


class RunState(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'


class RunTrigger(str, Enum):
    MANUAL = 'manual'
    SCHEDULED = 'scheduled'


SUPPORTED_ACTIONS = frozenset(a.value for a in RuleAction)

CONDITION_FIELD_LABELS = {
    'progress': 'Progress (%)',
    'eta': 'ETA (seconds)',
    'current_download_speed': 'Current Download Speed (bytes/s)',
    'average_download_speed': 'Average Download Speed (bytes/s)',
    'download_stalled_time': 'Download Stalled Time (minutes)',
    'upload_stalled_time': 'Upload Stalled Time (minutes)',
    'seeding_ratio': 'Seeding Ratio',
    'peers': 'Peers',
    'age': 'Age (days)',
    'tracker': 'Tracker',
    'availability': 'Availability',
    'status': 'Download Status',
    'download_type': 'Download Type',
    'name_contains': 'Name Contains',
    'size': 'Size (bytes)',
}

OPERATOR_LABELS = {
    'equals': '=',
    'not_equals': '!=',
    'greater_than': '>',
    'less_than': '<',
    'greater_than_or_equal': '>=',
    'less_than_or_equal': '<=',
    'contains': 'contains',
}

ACTION_LABELS = {
    'delete_download': 'Delete Download',
    'pause_download': 'Pause Download',
    'resume_download': 'Resume Download',
    'reannounce_torrent': 'Reannounce Torrent',
    'request_download_link': 'Request Download Link',
    'create_stream': 'Create Stream Link',
    'notify_user': 'Notify (Local)',
}

SCOPE_LABELS = {
    'all': 'All Downloads',
    'torrent': 'Torrents Only',
    'usenet': 'Usenet Only',
    'web': 'Web Downloads Only',
}


def utc_now() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp into an aware UTC datetime

    Naive timestamps are taken as UTC. Returns None for empty or unparseable values.
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Format datetime for persistence"""
    return value.isoformat() if value is not None else None


def is_action_supported_for_scope(action, scope) -> bool:
    """Reannounce only makes sense for torrents; every other pairing is allowed"""
    action = RuleAction(action)
    scope = RuleScope(scope or RuleScope.ALL)
    return not (action is RuleAction.REANNOUNCE_TORRENT and scope is not RuleScope.TORRENT)


@dataclass
class Condition:
    field: ConditionField
    operator: Operator
    value: str = ''

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Condition':
        """
        Build condition from a mapping

        Raises:
            ValueError: If field or operator is not supported
        """
        raw_value = data.get('value')
        return cls(
            field=ConditionField(data['field']),
            operator=Operator(data['operator']),
            value='' if raw_value is None else str(raw_value),
        )

    def to_dict(self) -> Dict[str, str]:
        return {'field': self.field.value, 'operator': self.operator.value, 'value': self.value}


@dataclass
class Rule:
    """A persisted, user-owned automation rule"""

    id: str
    name: str
    action: RuleAction
    enabled: bool = False
    check_interval_minutes: int = 10
    conditions: List[Condition] = field(default_factory=list)
    action_value: Optional[str] = None
    scope: RuleScope = RuleScope.ALL
    is_dangerous: bool = False
    is_custom: bool = False
    last_run_at: Optional[datetime] = None
    last_result: Optional[str] = None
    run_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    # In-memory run-lock; never persisted
    run_state: RunState = field(default=RunState.IDLE, compare=False)

    @property
    def is_running(self) -> bool:
        return self.run_state is RunState.RUNNING

    @property
    def interval_seconds(self) -> int:
        return max(1, int(self.check_interval_minutes)) * 60

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for storage (run_state excluded)"""
        return {
            'id': self.id,
            'name': self.name,
            'enabled': self.enabled,
            'check_interval_minutes': self.check_interval_minutes,
            'conditions': [c.to_dict() for c in self.conditions],
            'action': self.action.value,
            'action_value': self.action_value,
            'scope': self.scope.value,
            'is_dangerous': self.is_dangerous,
            'is_custom': self.is_custom,
            'last_run_at': format_timestamp(self.last_run_at),
            'last_result': self.last_result,
            'run_count': self.run_count,
            'created_at': format_timestamp(self.created_at),
        }

    def to_api_dict(self) -> Dict[str, Any]:
        """Serialize for API responses (includes run_state)"""
        data = self.to_dict()
        data['run_state'] = self.run_state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Rule':
        """
        Build rule from a persisted document

        Raises:
            KeyError: If id, name or action is missing
            ValueError: If an enum value is not supported
        """
        return cls(
            id=str(data['id']),
            name=str(data['name']),
            action=RuleAction(data['action']),
            enabled=bool(data.get('enabled', False)),
            check_interval_minutes=max(1, int(data.get('check_interval_minutes', 10))),
            conditions=[Condition.from_dict(c) for c in data.get('conditions') or []],
            action_value=data.get('action_value'),
            scope=RuleScope(data.get('scope') or RuleScope.ALL),
            is_dangerous=bool(data.get('is_dangerous', False)),
            is_custom=bool(data.get('is_custom', False)),
            last_run_at=parse_timestamp(data.get('last_run_at')),
            last_result=data.get('last_result'),
            run_count=int(data.get('run_count', 0)),
            created_at=parse_timestamp(data.get('created_at')) or utc_now(),
        )


@dataclass(frozen=True)
class Preset:
    """Immutable template used to seed a new rule"""

    id: str
    name: str
    description: str
    check_interval_minutes: int
    conditions: tuple
    action: RuleAction
    category: str
    scope: RuleScope = RuleScope.ALL
    is_dangerous: bool = False
    action_value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'check_interval_minutes': self.check_interval_minutes,
            'conditions': [c.to_dict() for c in self.conditions],
            'action': self.action.value,
            'scope': self.scope.value,
            'is_dangerous': self.is_dangerous,
            'category': self.category,
        }


@dataclass
class AutomationTarget:
    """Normalized view of one remote download, rebuilt for every run"""

    source: DownloadSource
    source_id: int
    name: str
    progress: float = 0.0
    eta: float = 0
    download_speed: float = 0
    download_state: str = ''
    peers: int = 0
    ratio: float = 0.0
    availability: float = 0.0
    created_at: Optional[datetime] = None
    tracker: Optional[str] = None
    stalled_minutes: int = 0
    file_ids: List[int] = field(default_factory=list)
    size: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['source'] = self.source.value
        data['created_at'] = format_timestamp(self.created_at)
        return data
