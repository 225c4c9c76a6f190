"""
Automation Service - hosts the automation engine

Owns one background thread running an asyncio event loop. The Rule Store,
Scheduler and every rule run live on that loop; HTTP handlers and the CLI call
into it with call(), which blocks until the coroutine completes.
"""

import asyncio
import concurrent.futures
import threading
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from torbox_rules.actions import ActionExecutor
from torbox_rules.api import TorBoxAPI
from torbox_rules.config import Config
from torbox_rules.logging import get_logger
from torbox_rules.notifications import NotificationCenter
from torbox_rules.scheduler import Scheduler
from torbox_rules.snapshot import SnapshotBuilder
from torbox_rules.storage import create_storage
from torbox_rules.store import RuleStore

logger = get_logger(__name__)


class AutomationService:
    """
    Background event loop hosting the Rule Store and Scheduler

    Example:
        >>> service = create_service(config)
        >>> service.start()
        >>> report = service.call(service.scheduler.run_now, 'rule_custom_1')
        >>> service.stop()
    """

    def __init__(self, store: RuleStore, scheduler: Scheduler, notifier: Optional[NotificationCenter] = None,
                 run_scheduler: bool = True):
        """
        Args:
            store: Rule Store
            scheduler: Scheduler driving periodic runs
            notifier: Local notification list (optional)
            run_scheduler: If False, only manual runs happen (e.g., one-shot CLI runs)
        """
        self.store = store
        self.scheduler = scheduler
        self.notifier = notifier
        self.run_scheduler = run_scheduler

        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.thread: Optional[threading.Thread] = None
        self.running = False
        self.started_at: Optional[datetime] = None
        self._ready = threading.Event()

    def start(self, timeout: Optional[float] = 30.0):
        """Start the loop thread, load rules and begin ticking"""
        if self.running and self.is_alive():
            logger.warning("Automation service already running")
            return

        self._ready.clear()
        self.loop = asyncio.new_event_loop()
        self.thread = threading.Thread(target=self._run_loop, daemon=True, name="automation")
        self.thread.start()
        self._ready.wait(timeout)
        self.running = True
        self.started_at = datetime.now(timezone.utc)

        self.call(self.store.load, timeout=timeout)
        if self.run_scheduler:
            self.call(self._start_scheduler, timeout=timeout)

        logger.info("Automation service started")

    def _run_loop(self):
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._ready.set)
        self.loop.run_forever()
        logger.debug("Automation loop exited")

    async def _start_scheduler(self):
        self.scheduler.start()

    def stop(self, timeout: float = 30.0):
        """
        Stop scheduling, wait for in-flight runs and shut the loop down

        Args:
            timeout: Maximum seconds to wait for in-flight runs
        """
        if not self.running:
            return

        logger.info("Stopping automation service...")
        try:
            self.call(self.scheduler.stop, timeout=timeout)
        except concurrent.futures.TimeoutError:
            logger.warning(f"In-flight runs did not finish within {timeout}s timeout")

        self.running = False
        self.loop.call_soon_threadsafe(self.loop.stop)
        self.thread.join(timeout=timeout)

        if self.thread.is_alive():
            logger.warning(f"Automation loop did not stop within {timeout}s timeout")
        else:
            self.loop.close()
            logger.info("Automation service stopped")

    def is_alive(self) -> bool:
        """Check if the loop thread is alive"""
        return self.thread is not None and self.thread.is_alive()

    def call(self, coro_fn: Callable[..., Awaitable[Any]], *args, timeout: Optional[float] = None, **kwargs) -> Any:
        """
        Run a coroutine function on the service loop and wait for its result

        Exceptions raised by the coroutine propagate to the caller.
        """
        if self.loop is None or not self.is_alive():
            raise RuntimeError("Automation service is not running")
        future = asyncio.run_coroutine_threadsafe(coro_fn(*args, **kwargs), self.loop)
        return future.result(timeout)

    def invoke(self, fn: Callable[..., Any], *args, timeout: Optional[float] = None, **kwargs) -> Any:
        """Run a plain function on the service loop (for state owned by the loop)"""
        async def _invoke():
            return fn(*args, **kwargs)
        return self.call(_invoke, timeout=timeout)

    def get_status(self) -> Dict[str, Any]:
        """
        Get service status

        Returns:
            Dictionary with service status information
        """
        rules = self.store.rules
        return {
            'running': self.running,
            'thread_alive': self.is_alive(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'scheduler_running': self.scheduler.is_running,
            'tick_count': self.scheduler.tick_count,
            'rules': len(rules),
            'enabled_rules': sum(1 for rule in rules if rule.enabled),
            'running_rules': sum(1 for rule in rules if rule.is_running),
            'unread_notifications': self.notifier.unread_count() if self.notifier else 0,
        }


def create_service(config: Config, run_scheduler: bool = True) -> AutomationService:
    """
    Wire the engine from configuration

    Raises:
        StorageError: If the storage backend cannot be opened
        ValueError: If the storage backend is unknown
    """
    torbox = config.get_torbox_config()
    api = TorBoxAPI(torbox['api_token'], base_url=torbox['base_url'], timeout=torbox['timeout'])

    storage_config = config.get_storage_config()
    storage = create_storage(**storage_config)

    notifier = NotificationCenter(config.get_notifications_file())
    store = RuleStore(storage)
    scheduler_config = config.get_scheduler_config()
    scheduler = Scheduler(
        store,
        SnapshotBuilder(api),
        ActionExecutor(api, notifier),
        tick_seconds=scheduler_config['tick_seconds'],
        manual_cooldown_seconds=scheduler_config['manual_cooldown_seconds'],
    )

    logger.info(f"Using {storage.backend_name} rule storage")
    return AutomationService(store, scheduler, notifier, run_scheduler=run_scheduler)
