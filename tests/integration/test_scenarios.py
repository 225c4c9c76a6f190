"""Integration tests for complete rule lifecycles: store, scheduler, snapshot and executor together."""

import asyncio

import pytest

from torbox_rules.errors import ConnectionError, RuleValidationError
from torbox_rules.evaluator import matches
from torbox_rules.models import RunTrigger
from torbox_rules.presets import PRESETS
from torbox_rules.scheduler import RunStatus
from torbox_rules.snapshot import normalize_record
from torbox_rules.storage import MemoryRuleStorage, YamlRuleStorage
from torbox_rules.store import RuleStore
from torbox_rules.models import DownloadSource

from conftest import NOW

pytestmark = [pytest.mark.integration, pytest.mark.asyncio]


async def enabled_rule(store, **fields):
    rule = await store.create_custom(
        name=fields.pop('name', 'Rule'),
        check_interval_minutes=10,
        conditions=fields.pop('conditions', []),
        action=fields.pop('action', 'notify_user'),
        scope=fields.pop('scope', 'all'),
    )
    await store.toggle(rule.id, True, confirm=lambda r: True)
    return rule


# ============================================================================
# End-to-end scenarios
# ============================================================================

class TestScenarios:
    async def test_notify_on_completed_downloads(self, scheduler, rule_store, mock_api, notifier,
                                                 completed_torrent, usenet_download):
        mock_api.torrents = [completed_torrent]
        mock_api.usenet = [usenet_download]
        rule = await enabled_rule(
            rule_store,
            name='Completed',
            conditions=[{'field': 'progress', 'operator': 'equals', 'value': '100'}],
        )

        report = await scheduler.run_rule(rule.id, RunTrigger.SCHEDULED)

        assert report.message == 'Processed 1 item.'
        assert len(notifier.get_notifications()) == 1
        assert notifier.get_notifications()[0]['message'] == 'Completed processed 1 item.'
        assert rule_store.get(rule.id).last_result == 'Scheduled run: Processed 1 item.'

    async def test_reannounce_touches_only_torrents(self, scheduler, rule_store, mock_api,
                                                    stalled_torrent, usenet_download):
        mock_api.torrents = [stalled_torrent]
        mock_api.usenet = [usenet_download]
        rule = await enabled_rule(
            rule_store,
            action='reannounce_torrent',
            scope='torrent',
            conditions=[{'field': 'progress', 'operator': 'less_than', 'value': '50'}],
        )

        report = await scheduler.run_rule(rule.id, RunTrigger.SCHEDULED)

        assert report.status is RunStatus.COMPLETED
        assert mock_api.calls['control_torrent'] == [(102, 'reannounce')]
        assert mock_api.calls['control_usenet'] == []
        assert report.message == 'Processed 1 item.'

    async def test_illegal_pairing_is_never_persisted(self, rule_store, memory_storage):
        with pytest.raises(RuleValidationError):
            await rule_store.create_custom(
                name='Reannounce web', check_interval_minutes=10, conditions=[],
                action='reannounce_torrent', scope='web',
            )

        assert rule_store.rules == []
        assert memory_storage.load_rules() == []

    async def test_snapshot_failure_recorded_without_actions(self, scheduler, rule_store, populated_api):
        rule = await enabled_rule(rule_store, action='delete_download')
        populated_api.list_error = ConnectionError('https://api.torbox.app/v1/api/usenet/mylist', 'reset')

        report = await scheduler.run_rule(rule.id, RunTrigger.SCHEDULED)

        stored = rule_store.get(rule.id)
        assert stored.last_result.startswith('Failed: Network request failed')
        assert stored.run_count == 1
        assert populated_api.action_call_count == 0
        assert report.status is RunStatus.FAILED


# ============================================================================
# Properties
# ============================================================================

class TestProperties:
    @pytest.mark.parametrize('preset', PRESETS, ids=lambda p: p.id)
    async def test_presets_create_disabled_rules(self, rule_store, preset):
        rule = await rule_store.create_from_preset(preset.id, confirm=lambda r: True)

        assert rule.enabled is False
        assert rule_store.get(rule.id).enabled is False

    async def test_update_cannot_create_illegal_pairing(self, rule_store):
        rule = await rule_store.create_custom(
            name='Pause web', check_interval_minutes=10, conditions=[], action='pause_download', scope='web',
        )

        with pytest.raises(RuleValidationError):
            await rule_store.update(rule.id, action='reannounce_torrent')

        assert rule_store.get(rule.id).action.value == 'pause_download'

    async def test_empty_conditions_match_every_target(self, rule_factory, completed_torrent, stalled_torrent,
                                                       usenet_download, web_download):
        rule = rule_factory(conditions=[])
        targets = [
            normalize_record(DownloadSource.TORRENT, completed_torrent, NOW),
            normalize_record(DownloadSource.TORRENT, stalled_torrent, NOW),
            normalize_record(DownloadSource.USENET, usenet_download, NOW),
            normalize_record(DownloadSource.WEB, web_download, NOW),
        ]

        assert all(matches(rule, target, NOW) for target in targets)

    async def test_concurrent_triggers_execute_once(self, scheduler, rule_store, populated_api):
        rule = await enabled_rule(rule_store, action='pause_download')

        reports = await asyncio.gather(*(scheduler.run_now(rule.id) for _ in range(3)))

        statuses = sorted(report.status.value for report in reports)
        assert statuses == ['busy', 'busy', 'completed']
        assert populated_api.calls['get_torrents'] == 1
        assert rule_store.get(rule.id).run_count == 1

    async def test_manual_cooldown(self, scheduler, rule_store, populated_api, fake_clock):
        rule = await enabled_rule(rule_store, action='pause_download')
        await scheduler.run_now(rule.id)
        actions = populated_api.action_call_count

        fake_clock.advance(seconds=10)
        report = await scheduler.run_now(rule.id)

        assert report.status is RunStatus.THROTTLED
        assert 'Please wait' in report.message
        assert populated_api.action_call_count == actions

    async def test_stale_actions_pruned_on_load(self, tmp_path):
        path = tmp_path / 'rules.yml'
        storage = YamlRuleStorage(path)
        storage.save_rules([
            {'id': 'keep', 'name': 'Keep', 'action': 'pause_download'},
            {'id': 'stale', 'name': 'Old', 'action': 'set_category'},
        ])

        store = RuleStore(storage)
        rules = await store.load()

        assert [rule.id for rule in rules] == ['keep']

    async def test_history_survives_restart(self, scheduler, rule_store, memory_storage, populated_api):
        rule = await enabled_rule(rule_store)
        await scheduler.run_rule(rule.id, RunTrigger.SCHEDULED)

        reloaded = RuleStore(MemoryRuleStorage(memory_storage.load_rules()))
        await reloaded.load()

        restored = reloaded.get(rule.id)
        assert restored.run_count == 1
        assert restored.last_run_at == NOW
        assert restored.enabled is True
