"""
Action execution for automation rules

Each RuleAction has one handler variant carrying its applicability guard and
the API call it makes. ActionExecutor walks matched targets sequentially; a
failure for one target never aborts the batch.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List

from torbox_rules.logging import get_logger
from torbox_rules.models import (
    SUPPORTED_ACTIONS,
    AutomationTarget,
    DownloadSource,
    Rule,
    RuleAction,
)

logger = get_logger(__name__)

NO_MATCHES_MESSAGE = 'No matching downloads found.'
NOTHING_AFFECTED_MESSAGE = 'No supported items matched this action.'


def pluralize_items(count: int) -> str:
    return f"{count} item{'' if count == 1 else 's'}"


def _control(api, target: AutomationTarget, operation: str):
    """Dispatch a control operation to the kind-specific endpoint"""
    if target.source is DownloadSource.TORRENT:
        api.control_torrent(target.source_id, operation)
    elif target.source is DownloadSource.USENET:
        api.control_usenet(target.source_id, operation)
    elif target.source is DownloadSource.WEB:
        api.control_web_download(target.source_id, operation)
    else:
        raise ValueError(f"Unknown source: {target.source}")


class ActionHandler:
    """Base action variant"""

    action: RuleAction
    # False when perform() makes no remote call
    remote = True

    def applies_to(self, target: AutomationTarget) -> bool:
        return True

    def perform(self, api, target: AutomationTarget):
        raise NotImplementedError


class PauseAction(ActionHandler):
    action = RuleAction.PAUSE_DOWNLOAD

    def perform(self, api, target):
        _control(api, target, 'pause')


class ResumeAction(ActionHandler):
    action = RuleAction.RESUME_DOWNLOAD

    def perform(self, api, target):
        _control(api, target, 'resume')


class ReannounceAction(ActionHandler):
    """Torrent-only; other kinds are skipped even if the rule scope was edited by hand"""

    action = RuleAction.REANNOUNCE_TORRENT

    def applies_to(self, target):
        return target.source is DownloadSource.TORRENT

    def perform(self, api, target):
        api.control_torrent(target.source_id, 'reannounce')


class DeleteAction(ActionHandler):
    action = RuleAction.DELETE_DOWNLOAD

    def perform(self, api, target):
        api.delete_item(target.source.value, target.source_id)


class DownloadLinkAction(ActionHandler):
    """Needs an enumerated file; downloads without files yet are skipped"""

    action = RuleAction.REQUEST_DOWNLOAD_LINK

    def applies_to(self, target):
        return bool(target.file_ids)

    def perform(self, api, target):
        api.get_download_link(target.source.value, target.source_id, target.file_ids[0])


class StreamLinkAction(DownloadLinkAction):
    action = RuleAction.CREATE_STREAM

    def perform(self, api, target):
        api.get_stream_link(target.source.value, target.source_id, target.file_ids[0])


class NotifyAction(ActionHandler):
    """The side effect is the summary notification appended after the run"""

    action = RuleAction.NOTIFY_USER
    remote = False

    def perform(self, api, target):
        pass


ACTION_HANDLERS: Dict[RuleAction, ActionHandler] = {
    handler.action: handler
    for handler in (
        PauseAction(),
        ResumeAction(),
        ReannounceAction(),
        DeleteAction(),
        DownloadLinkAction(),
        StreamLinkAction(),
        NotifyAction(),
    )
}

_unhandled = SUPPORTED_ACTIONS - {action.value for action in ACTION_HANDLERS}
if _unhandled:
    raise RuntimeError(f"No handler registered for actions: {', '.join(sorted(_unhandled))}")


def get_handler(action: RuleAction) -> ActionHandler:
    return ACTION_HANDLERS[RuleAction(action)]


@dataclass
class ExecutionResult:
    """Outcome of applying one rule's action to its matched targets"""

    affected: int
    skipped: int
    message: str

    def to_dict(self) -> Dict:
        return {'affected': self.affected, 'skipped': self.skipped, 'message': self.message}


class ActionExecutor:
    """Applies a rule's action to matched targets via the remote API"""

    def __init__(self, api, notifier=None):
        """
        Args:
            api: TorBox API client (synchronous; calls run in a worker thread)
            notifier: NotificationCenter receiving the run summary (optional)
        """
        self.api = api
        self.notifier = notifier

    async def execute(self, rule: Rule, targets: List[AutomationTarget]) -> ExecutionResult:
        """
        Execute rule action on every target

        Targets are processed one at a time. A target that fails the action's
        guard or whose API call raises is counted as skipped; the failure is
        only logged.

        Returns:
            ExecutionResult with affected/skipped counts and summary message
        """
        if not targets:
            return ExecutionResult(affected=0, skipped=0, message=NO_MATCHES_MESSAGE)

        handler = get_handler(rule.action)
        affected = 0

        for target in targets:
            if not handler.applies_to(target):
                logger.debug(f"Rule '{rule.name}': {rule.action.value} does not apply to {target.source.value} {target.source_id}")
                continue

            try:
                if handler.remote:
                    await asyncio.to_thread(handler.perform, self.api, target)
                else:
                    handler.perform(self.api, target)
            except Exception as e:
                logger.warning(
                    f"Rule '{rule.name}': {rule.action.value} failed for "
                    f"{target.source.value} {target.source_id} ({target.name}): {e}"
                )
                continue

            affected += 1
            logger.debug(f"Rule '{rule.name}': {rule.action.value} applied to {target.source.value} {target.source_id}")

        skipped = len(targets) - affected

        if affected > 0:
            await self._notify(rule, affected)
            message = f"Processed {pluralize_items(affected)}."
        else:
            message = NOTHING_AFFECTED_MESSAGE

        logger.info(f"Rule '{rule.name}': {message} (skipped {skipped})")
        return ExecutionResult(affected=affected, skipped=skipped, message=message)

    async def _notify(self, rule: Rule, affected: int):
        if self.notifier is None:
            return
        await asyncio.to_thread(
            self.notifier.append_notification,
            title='Automation ran',
            message=f"{rule.name} processed {pluralize_items(affected)}.",
        )
