"""
Scheduler - periodic and manual rule execution

A global tick fires every tick_seconds. Each tick selects the enabled rules
whose check interval has elapsed and starts one run per rule without waiting
for it. The per-rule run-lock (Rule.run_state) keeps at most one run of a rule
in flight across scheduled and manual triggers.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import AsyncIterator, Callable, List, Optional, Set

from torbox_rules.actions import ActionExecutor
from torbox_rules.errors import TorBoxRulesError
from torbox_rules.evaluator import matches
from torbox_rules.logging import get_logger
from torbox_rules.models import Rule, RunState, RunTrigger, is_action_supported_for_scope, utc_now
from torbox_rules.snapshot import SnapshotBuilder
from torbox_rules.store import RuleStore

logger = get_logger(__name__)

DEFAULT_TICK_SECONDS = 30
DEFAULT_MANUAL_COOLDOWN_SECONDS = 30

UNSUPPORTED_COMBINATION_RESULT = 'Unsupported scope/action combination.'

Ticker = Callable[[], AsyncIterator[None]]


class RunStatus(str, Enum):
    COMPLETED = 'completed'
    FAILED = 'failed'
    THROTTLED = 'throttled'
    BUSY = 'busy'
    SKIPPED = 'skipped'


@dataclass
class RunReport:
    """Outcome of one trigger attempt, reported back to the caller"""

    rule_id: str
    status: RunStatus
    message: str

    def to_dict(self):
        return {'rule_id': self.rule_id, 'status': self.status.value, 'message': self.message}


def interval_ticker(seconds: float) -> Ticker:
    """Ticker factory yielding once every `seconds` on the running loop"""
    async def ticks():
        while True:
            await asyncio.sleep(seconds)
            yield
    return ticks


def _failure_message(error: Exception) -> str:
    if isinstance(error, TorBoxRulesError):
        return error.message
    return str(error) or 'Execution failed'


class Scheduler:
    """Runs due rules on a fixed cadence and serves manual runs"""

    def __init__(
        self,
        store: RuleStore,
        builder: SnapshotBuilder,
        executor: ActionExecutor,
        clock: Callable[[], datetime] = utc_now,
        ticker: Optional[Ticker] = None,
        tick_seconds: int = DEFAULT_TICK_SECONDS,
        manual_cooldown_seconds: int = DEFAULT_MANUAL_COOLDOWN_SECONDS,
    ):
        """
        Args:
            store: Rule Store owning the rule list
            builder: Snapshot builder producing automation targets
            executor: Action executor applying rule actions
            clock: Returns the current aware UTC datetime
            ticker: Factory of an async iterator yielding once per tick
            tick_seconds: Tick cadence when no ticker is given
            manual_cooldown_seconds: Minimum gap between last run and a manual run
        """
        self.store = store
        self.builder = builder
        self.executor = executor
        self.clock = clock
        self.tick_seconds = tick_seconds
        self.ticker = ticker or interval_ticker(tick_seconds)
        self.manual_cooldown_seconds = manual_cooldown_seconds

        self._loop_task: Optional[asyncio.Task] = None
        self._runs: Set[asyncio.Task] = set()
        self.tick_count = 0

    # Scheduling

    def due_rules(self, now: Optional[datetime] = None) -> List[Rule]:
        """Enabled, idle rules whose interval has elapsed, in stored order"""
        now = now or self.clock()
        due = []
        for rule in self.store.rules:
            if not rule.enabled or rule.is_running:
                continue
            if rule.last_run_at is None or (now - rule.last_run_at).total_seconds() >= rule.interval_seconds:
                due.append(rule)
        return due

    def tick(self) -> List[asyncio.Task]:
        """
        Start a scheduled run for every due rule

        Must be called on the event loop. Runs are not awaited here.
        """
        self.tick_count += 1
        tasks = []
        for rule in self.due_rules():
            logger.debug(f"Rule '{rule.name}' is due")
            task = asyncio.create_task(self.run_rule(rule.id, RunTrigger.SCHEDULED))
            self._runs.add(task)
            task.add_done_callback(self._runs.discard)
            tasks.append(task)
        return tasks

    async def _run_loop(self):
        logger.info(f"Scheduler started (tick every {self.tick_seconds}s)")
        async for _ in self.ticker():
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick failed: {e}", exc_info=True)

    def start(self):
        """Start the tick loop on the running event loop"""
        if self._loop_task is not None and not self._loop_task.done():
            logger.warning("Scheduler already running")
            return
        self._loop_task = asyncio.create_task(self._run_loop())

    async def stop(self):
        """Stop ticking and wait for in-flight runs to finish"""
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._runs:
            logger.info(f"Waiting for {len(self._runs)} in-flight runs")
            await asyncio.gather(*list(self._runs), return_exceptions=True)
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    # Execution

    async def run_now(self, rule_id: str) -> RunReport:
        """
        Manual trigger, allowed on disabled rules

        Raises:
            RuleNotFoundError: If no rule has this id
        """
        rule = self.store.get(rule_id)
        if rule.last_run_at is not None:
            elapsed = (self.clock() - rule.last_run_at).total_seconds()
            if elapsed < self.manual_cooldown_seconds:
                message = f"Please wait at least {self.manual_cooldown_seconds} seconds between manual runs."
                logger.info(f"Manual run of '{rule.name}' throttled ({elapsed:.0f}s since last run)")
                return RunReport(rule_id, RunStatus.THROTTLED, message)

        return await self.run_rule(rule_id, RunTrigger.MANUAL, allow_disabled=True)

    async def run_rule(self, rule_id: str, trigger: RunTrigger, allow_disabled: bool = False) -> RunReport:
        """
        Run one rule: snapshot, filter, execute, record

        Every attempted run records last_run_at/run_count/last_result, whether
        it succeeded or failed.
        """
        rule = self.store.find(rule_id)
        if rule is None:
            return RunReport(rule_id, RunStatus.SKIPPED, 'Rule not found.')
        if not rule.enabled and not allow_disabled:
            return RunReport(rule_id, RunStatus.SKIPPED, 'Rule is disabled.')
        if rule.is_running:
            logger.debug(f"Rule '{rule.name}' already running; trigger ignored")
            return RunReport(rule_id, RunStatus.BUSY, 'This automation is already running.')
        if not is_action_supported_for_scope(rule.action, rule.scope):
            await self.store.disable_unsupported(rule_id, UNSUPPORTED_COMBINATION_RESULT)
            return RunReport(rule_id, RunStatus.SKIPPED, UNSUPPORTED_COMBINATION_RESULT)

        # Lock is taken before the first await
        self.store.set_run_state(rule_id, RunState.RUNNING)
        trigger = RunTrigger(trigger)
        prefix = 'Manual run' if trigger is RunTrigger.MANUAL else 'Scheduled run'
        logger.info(f"{prefix} of '{rule.name}' started")

        try:
            try:
                targets = await self.builder.build_targets()
                now = self.clock()
                matched = [target for target in targets if matches(rule, target, now)]
                logger.debug(f"Rule '{rule.name}': {len(matched)} of {len(targets)} targets match")
                result = await self.executor.execute(rule, matched)
            except Exception as e:
                message = _failure_message(e)
                logger.error(f"{prefix} of '{rule.name}' failed: {message}")
                await self.store.record_run(rule_id, f"Failed: {message}", self.clock())
                return RunReport(rule_id, RunStatus.FAILED, message)

            await self.store.record_run(rule_id, f"{prefix}: {result.message}", self.clock())
            return RunReport(rule_id, RunStatus.COMPLETED, result.message)
        finally:
            self.store.set_run_state(rule_id, RunState.IDLE)
