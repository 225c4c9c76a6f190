"""
Centralized argument parsing for the torbox-rules command
"""

import argparse
import asyncio
import os
from pathlib import Path

from torbox_rules.__version__ import __version__, __description__
from torbox_rules.logging import get_logger
from torbox_rules.models import ACTION_LABELS, SCOPE_LABELS
from torbox_rules.presets import PRESET_CATEGORIES, presets_by_category
from torbox_rules.storage import create_storage
from torbox_rules.store import RuleStore


def smart_config_default() -> str:
    """
    Determine smart default for config directory

    Returns ./config if it exists (bare metal), otherwise /config (Docker)
    """
    local_config = Path('./config')
    if local_config.exists() and local_config.is_dir():
        return './config'
    return '/config'


def create_parser() -> argparse.ArgumentParser:
    """
    Create argument parser for the torbox-rules command

    Returns:
        Configured ArgumentParser
    """
    parser = argparse.ArgumentParser(
        description=f'torbox-rules - {__description__}',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        '--config-dir',
        type=Path,
        default=None,
        help=f'Path to configuration directory (default: {smart_config_default()} or CONFIG_DIR env var)'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        help='Set logging verbosity (default: from config or INFO)'
    )

    parser.add_argument(
        '--trace',
        action='store_true',
        help='Enable trace mode with detailed logging (module/function/line)'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'torbox-rules v{__version__}'
    )

    # Utility arguments
    parser.add_argument(
        '--validate',
        action='store_true',
        help='Validate configuration and stored rules without running'
    )

    parser.add_argument(
        '--list-rules',
        action='store_true',
        help='List stored rules and exit'
    )

    parser.add_argument(
        '--list-presets',
        action='store_true',
        help='List built-in presets and exit'
    )

    # Modes
    parser.add_argument(
        '--run',
        metavar='RULE_ID',
        help='Run one rule now (manual run, allowed while disabled) and exit'
    )

    parser.add_argument(
        '--serve',
        action='store_true',
        help='Run the scheduler and HTTP API server (default when no other command is given)'
    )

    # Server options
    parser.add_argument('--server-host', help='Bind address (default: 0.0.0.0)')
    parser.add_argument('--server-port', type=int, help='Bind port (default: 5000)')
    parser.add_argument('--server-api-key', help='API key required by the HTTP API')

    parser.epilog = '''
Examples:
  # Run scheduler and HTTP API
  torbox-rules --serve --config-dir /config

  # Show available presets
  torbox-rules --list-presets

  # Run a single rule once
  torbox-rules --run rule_custom_0a1b2c3d4e5f

  # Validate configuration without running
  torbox-rules --validate
    '''

    return parser


def process_args(args: argparse.Namespace) -> Path:
    """
    Process parsed arguments and set environment variables

    Args:
        args: Parsed arguments from argparse

    Returns:
        Path to configuration directory
    """
    if args.log_level:
        os.environ['LOG_LEVEL'] = args.log_level

    if args.trace:
        os.environ['TRACE_MODE'] = 'true'

    if args.config_dir:
        config_dir = args.config_dir
    elif 'CONFIG_DIR' in os.environ:
        config_dir = Path(os.environ['CONFIG_DIR'])
    else:
        config_dir = Path(smart_config_default())

    return config_dir


def load_rules(config):
    """Load the stored rules outside the service (utility commands)"""
    storage = create_storage(**config.get_storage_config())
    store = RuleStore(storage)
    asyncio.run(store.load())
    return store.rules


def handle_utility_args(args: argparse.Namespace, config) -> bool:
    """
    Handle utility arguments (--validate, --list-rules, --list-presets)

    Args:
        args: Parsed arguments
        config: Loaded configuration object

    Returns:
        True if a utility argument was handled (should exit), False otherwise
    """
    logger = get_logger(__name__)

    if args.validate:
        logger.info("Validating configuration and rules...")

        torbox = config.get_torbox_config()
        if not torbox['api_token']:
            logger.error("Missing TorBox API token (torbox.api_token)")
            return True
        logger.info(f"✓ TorBox API configured: {torbox['base_url']}")

        storage_config = config.get_storage_config()
        try:
            rules = load_rules(config)
        except Exception as e:
            logger.error(f"Validation failed: {e}")
            return True
        logger.info(f"✓ Rule storage: {storage_config['backend']}")

        if not rules:
            logger.warning("No rules stored yet")
        else:
            logger.info(f"✓ Loaded {len(rules)} rules")
            for rule in rules:
                if not rule.conditions:
                    logger.warning(f"  ⚠ '{rule.name}': No conditions, matches every download in scope")
                else:
                    logger.info(f"  ✓ '{rule.name}'")

        logger.info("\nValidation complete! Configuration is valid.")
        return True

    if args.list_rules:
        rules = load_rules(config)

        if not rules:
            logger.info("No rules stored")
            return True

        logger.info(f"\nRules ({len(rules)} total, evaluated in stored order):\n")
        logger.info(f"{'ID':<32} {'Enabled':<9} {'Every':<8} {'Action':<24} {'Scope':<20} {'Name'}")
        logger.info("-" * 120)

        for rule in rules:
            enabled = '✓' if rule.enabled else '✗'
            logger.info(
                f"{rule.id:<32} {enabled:<9} {str(rule.check_interval_minutes) + 'm':<8} "
                f"{ACTION_LABELS[rule.action.value]:<24} {SCOPE_LABELS[rule.scope.value]:<20} {rule.name}"
            )
            if rule.last_result:
                logger.info(f"{'':<32} last: {rule.last_result}")

        logger.info("")
        return True

    if args.list_presets:
        grouped = presets_by_category()
        for category in PRESET_CATEGORIES:
            presets = grouped.get(category['key'], [])
            if not presets:
                continue
            logger.info(f"\n{category['label']}:")
            for preset in presets:
                danger = ' (dangerous)' if preset.is_dangerous else ''
                logger.info(f"  {preset.id:<32} {preset.name}{danger}")
                logger.info(f"  {'':<32} {preset.description}")

        logger.info("")
        return True

    return False
