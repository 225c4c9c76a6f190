"""
Rule Store - the single in-memory owner of the rule list

Every mutation replaces the affected Rule object and then persists the whole
list through the configured RuleStorage backend. Persistence failures are
logged; the in-memory list stays authoritative until the next successful save.
"""

import asyncio
import inspect
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from torbox_rules.errors import RuleNotFoundError, RuleValidationError
from torbox_rules.logging import get_logger
from torbox_rules.models import (
    SUPPORTED_ACTIONS,
    Condition,
    Rule,
    RuleAction,
    RuleScope,
    RunState,
    is_action_supported_for_scope,
    utc_now,
)
from torbox_rules.presets import get_preset
from torbox_rules.storage.base import RuleStorage

logger = get_logger(__name__)

ConfirmCallback = Callable[[Rule], Union[bool, Awaitable[bool]]]

EDITABLE_FIELDS = frozenset({'name', 'check_interval_minutes', 'conditions', 'action', 'action_value', 'scope'})

UNSUPPORTED_SCOPE_MESSAGE = 'This action is not supported for the selected scope.'
UNSUPPORTED_RULE_MESSAGE = 'This rule uses an action/scope combination not supported by TorBox.'


def generate_rule_id(prefix: str) -> str:
    return f"rule_{prefix}_{uuid.uuid4().hex[:12]}"


async def _confirmed(confirm: Optional[ConfirmCallback], rule: Rule) -> bool:
    """Ask the caller for explicit confirmation; no callback means no confirmation"""
    if confirm is None:
        return False
    answer = confirm(rule)
    if inspect.isawaitable(answer):
        answer = await answer
    return bool(answer)


def _parse_action(rule_name: str, action: Any) -> RuleAction:
    value = action.value if isinstance(action, RuleAction) else action
    if value not in SUPPORTED_ACTIONS:
        raise RuleValidationError(rule_name, f"Unsupported automation action: {value}")
    return RuleAction(value)


def _parse_scope(rule_name: str, scope: Any) -> RuleScope:
    try:
        return RuleScope(scope or RuleScope.ALL)
    except ValueError:
        raise RuleValidationError(rule_name, f"Unsupported scope: {scope}")


def _parse_interval(rule_name: str, value: Any) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        raise RuleValidationError(rule_name, f"Check interval must be a whole number of minutes: {value!r}")


def _parse_conditions(rule_name: str, conditions: Optional[Iterable[Any]]) -> List[Condition]:
    parsed = []
    for index, condition in enumerate(conditions or [], 1):
        if isinstance(condition, Condition):
            parsed.append(replace(condition))
            continue
        try:
            parsed.append(Condition.from_dict(condition))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise RuleValidationError(rule_name, f"Condition #{index} is invalid: {e}")
    return parsed


def _check_combination(rule_name: str, action: RuleAction, scope: RuleScope):
    if not is_action_supported_for_scope(action, scope):
        raise RuleValidationError(rule_name, UNSUPPORTED_SCOPE_MESSAGE)


class RuleStore:
    """CRUD, toggle and run bookkeeping over the persisted rule list"""

    def __init__(self, storage: RuleStorage, clock: Callable[[], datetime] = utc_now):
        self.storage = storage
        self.clock = clock
        self._rules: List[Rule] = []
        self._save_lock = asyncio.Lock()
        self.is_loaded = False

    # Reading

    @property
    def rules(self) -> List[Rule]:
        """Rules in stored order (a copy of the list, not of the rules)"""
        return list(self._rules)

    @property
    def enabled_count(self) -> int:
        return sum(1 for rule in self._rules if rule.enabled)

    def find(self, rule_id: str) -> Optional[Rule]:
        for rule in self._rules:
            if rule.id == rule_id:
                return rule
        return None

    def get(self, rule_id: str) -> Rule:
        """
        Get rule by id

        Raises:
            RuleNotFoundError: If no rule has this id
        """
        rule = self.find(rule_id)
        if rule is None:
            raise RuleNotFoundError(rule_id)
        return rule

    # Persistence

    async def load(self) -> List[Rule]:
        """
        Load rules from storage

        Documents with an action outside the supported set are dropped, as are
        documents that cannot be parsed. A storage failure leaves an empty list.
        """
        try:
            documents = await asyncio.to_thread(self.storage.load_rules)
        except Exception as e:
            logger.error(f"Failed to load rules from {self.storage.backend_name}: {e}")
            documents = []

        rules = []
        seen = set()
        for document in documents:
            if not isinstance(document, dict):
                logger.warning(f"Ignoring malformed rule entry: {document!r}")
                continue
            if document.get('action') not in SUPPORTED_ACTIONS:
                logger.info(f"Dropping rule '{document.get('name', document.get('id'))}' with unsupported action: {document.get('action')}")
                continue
            try:
                rule = Rule.from_dict(document)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring unreadable rule '{document.get('id')}': {e}")
                continue
            if rule.id in seen:
                logger.warning(f"Ignoring duplicate rule id: {rule.id}")
                continue
            seen.add(rule.id)
            rules.append(rule)

        self._rules = rules
        self.is_loaded = True
        logger.info(f"Loaded {len(rules)} rules ({self.enabled_count} enabled)")
        return self.rules

    async def _persist(self):
        """Save the whole current list; failures are logged, not raised"""
        async with self._save_lock:
            documents = [rule.to_dict() for rule in self._rules]
            try:
                await asyncio.to_thread(self.storage.save_rules, documents)
            except Exception as e:
                logger.error(f"Failed to save rules to {self.storage.backend_name}: {e}")

    def _replace(self, rule: Rule):
        self._rules = [rule if r.id == rule.id else r for r in self._rules]

    # Creation

    async def create_from_preset(self, preset_id: str, confirm: Optional[ConfirmCallback] = None) -> Optional[Rule]:
        """
        Create a disabled rule from a preset

        Dangerous presets require confirm(rule) to return True; otherwise
        nothing is created and None is returned.

        Raises:
            PresetNotFoundError: If preset_id is unknown
        """
        preset = get_preset(preset_id)
        rule = Rule(
            id=generate_rule_id(preset.id),
            name=preset.name,
            enabled=False,
            check_interval_minutes=preset.check_interval_minutes,
            conditions=[replace(c) for c in preset.conditions],
            action=preset.action,
            action_value=preset.action_value,
            scope=preset.scope,
            is_dangerous=preset.is_dangerous,
            is_custom=False,
            created_at=self.clock(),
        )

        if rule.is_dangerous and not await _confirmed(confirm, rule):
            logger.info(f"Dangerous preset '{preset_id}' not confirmed; no rule created")
            return None

        self._rules.append(rule)
        await self._persist()
        logger.info(f"Created rule '{rule.name}' ({rule.id}) from preset '{preset_id}'")
        return rule

    async def create_custom(
        self,
        name: str,
        check_interval_minutes: int,
        conditions: Optional[Iterable[Any]],
        action: Any,
        action_value: Optional[str] = None,
        scope: Any = RuleScope.ALL,
    ) -> Rule:
        """
        Create a disabled user-authored rule

        Raises:
            RuleValidationError: If the name is blank, the action, scope or a
                condition is unsupported, or the action/scope pairing is illegal
        """
        name = (name or '').strip()
        if not name:
            raise RuleValidationError('(unnamed)', 'Rule name is required.')

        parsed_action = _parse_action(name, action)
        parsed_scope = _parse_scope(name, scope)
        _check_combination(name, parsed_action, parsed_scope)

        rule = Rule(
            id=generate_rule_id('custom'),
            name=name,
            enabled=False,
            check_interval_minutes=_parse_interval(name, check_interval_minutes),
            conditions=_parse_conditions(name, conditions),
            action=parsed_action,
            action_value=action_value,
            scope=parsed_scope,
            is_dangerous=parsed_action is RuleAction.DELETE_DOWNLOAD,
            is_custom=True,
            created_at=self.clock(),
        )

        self._rules.append(rule)
        await self._persist()
        logger.info(f"Created custom rule '{rule.name}' ({rule.id})")
        return rule

    # Mutation

    async def update(self, rule_id: str, **fields) -> Rule:
        """
        Update editable fields of a rule

        Raises:
            RuleNotFoundError: If no rule has this id
            RuleValidationError: If a field is not editable or invalid, or the
                result would pair reannounce with a non-torrent scope
        """
        existing = self.get(rule_id)

        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise RuleValidationError(existing.name, f"Fields cannot be edited: {', '.join(sorted(unknown))}")

        changes: Dict[str, Any] = {}
        if 'name' in fields:
            name = (fields['name'] or '').strip()
            if not name:
                raise RuleValidationError(existing.name, 'Rule name is required.')
            changes['name'] = name
        if 'check_interval_minutes' in fields:
            changes['check_interval_minutes'] = _parse_interval(existing.name, fields['check_interval_minutes'])
        if 'conditions' in fields:
            changes['conditions'] = _parse_conditions(existing.name, fields['conditions'])
        if 'action' in fields:
            changes['action'] = _parse_action(existing.name, fields['action'])
            changes['is_dangerous'] = changes['action'] is RuleAction.DELETE_DOWNLOAD
        if 'action_value' in fields:
            changes['action_value'] = fields['action_value']
        if 'scope' in fields:
            changes['scope'] = _parse_scope(existing.name, fields['scope'])

        _check_combination(existing.name, changes.get('action', existing.action), changes.get('scope', existing.scope))

        # Becoming dangerous needs a fresh, confirmed enable
        if existing.enabled and changes.get('is_dangerous') and not existing.is_dangerous:
            changes['enabled'] = False
            logger.info(f"Rule '{existing.name}' ({rule_id}) disabled: action changed to delete_download")

        updated = replace(existing, **changes)
        self._replace(updated)
        await self._persist()
        logger.info(f"Updated rule '{updated.name}' ({rule_id}): {', '.join(sorted(changes)) or 'no changes'}")
        return updated

    async def toggle(self, rule_id: str, enabled: bool, confirm: Optional[ConfirmCallback] = None) -> bool:
        """
        Enable or disable a rule

        Enabling a dangerous rule requires confirm(rule) to return True.

        Returns:
            True if the rule now has the requested state

        Raises:
            RuleNotFoundError: If no rule has this id
            RuleValidationError: If enabling a rule with an illegal action/scope pairing
        """
        rule = self.get(rule_id)
        enabled = bool(enabled)

        if enabled and not is_action_supported_for_scope(rule.action, rule.scope):
            raise RuleValidationError(rule.name, UNSUPPORTED_RULE_MESSAGE)

        if rule.enabled == enabled:
            return True

        if enabled and rule.is_dangerous and not await _confirmed(confirm, rule):
            logger.info(f"Enabling dangerous rule '{rule.name}' not confirmed")
            return False

        self._replace(replace(rule, enabled=enabled))
        await self._persist()
        logger.info(f"Rule '{rule.name}' ({rule_id}) {'enabled' if enabled else 'disabled'}")
        return True

    async def delete(self, rule_id: str):
        """
        Remove a rule

        Raises:
            RuleNotFoundError: If no rule has this id
        """
        rule = self.get(rule_id)
        self._rules = [r for r in self._rules if r.id != rule_id]
        await self._persist()
        logger.info(f"Deleted rule '{rule.name}' ({rule_id})")

    # Run bookkeeping (scheduler only)

    def set_run_state(self, rule_id: str, state: RunState):
        """Flip the in-memory run-lock; never persisted"""
        rule = self.find(rule_id)
        if rule is not None:
            rule.run_state = RunState(state)

    async def record_run(self, rule_id: str, result: str, ran_at: Optional[datetime] = None) -> Optional[Rule]:
        """
        Record execution history on the current stored record

        Only last_run_at, last_result and run_count change, so edits made while
        the run was in flight are kept. Returns None if the rule was deleted.
        """
        rule = self.find(rule_id)
        if rule is None:
            logger.debug(f"Rule {rule_id} deleted during run; result not recorded")
            return None

        updated = replace(
            rule,
            last_run_at=ran_at or self.clock(),
            last_result=result,
            run_count=rule.run_count + 1,
        )
        self._replace(updated)
        await self._persist()
        return updated

    async def disable_unsupported(self, rule_id: str, result: str) -> Optional[Rule]:
        """Disable a rule whose persisted action/scope pairing is illegal"""
        rule = self.find(rule_id)
        if rule is None:
            return None

        updated = replace(rule, enabled=False, last_result=result)
        self._replace(updated)
        await self._persist()
        logger.warning(f"Rule '{rule.name}' ({rule_id}) disabled: {result}")
        return updated
