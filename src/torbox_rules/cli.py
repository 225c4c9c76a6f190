#!/usr/bin/env python3
"""
torbox-rules CLI

Modes:
1. Server mode (--serve, default): scheduler plus HTTP API
2. One-shot run (--run RULE_ID): manual run of a single rule

Utility commands: --validate, --list-rules, --list-presets
"""

import sys

from torbox_rules.arguments import create_parser, handle_utility_args, process_args
from torbox_rules.config import load_config
from torbox_rules.errors import handle_errors
from torbox_rules.logging import get_logger, setup_logging
from torbox_rules.scheduler import RunStatus

logger = None  # Set after logging is configured


def run_server_mode(args, config_obj):
    """
    Run server mode - scheduler and HTTP API in one process

    Args:
        args: Parsed CLI arguments
        config_obj: Loaded configuration object
    """
    logger.info("=" * 60)
    logger.info("Starting torbox-rules server")
    logger.info("=" * 60)

    server_config = config_obj.get_server_config(
        host=args.server_host,
        port=args.server_port,
        api_key=args.server_api_key,
    )

    if not server_config['api_key']:
        logger.error("Server API key is required. Set via:")
        logger.error("  - CLI: --server-api-key <key>")
        logger.error("  - Env: TORBOX_RULES_SERVER_API_KEY or TORBOX_RULES_SERVER_API_KEY_FILE")
        logger.error("  - Config: server.api_key in config.yml")
        sys.exit(1)

    if not config_obj.get_torbox_config()['api_token']:
        logger.warning("No TorBox API token configured; rule runs will fail until one is set")

    # Service is started inside the Gunicorn worker (post_fork)
    from torbox_rules.service import create_service
    service = create_service(config_obj)

    from torbox_rules.server import create_app, run_server
    app = create_app(automation_service=service, api_key=server_config['api_key'])

    logger.info(f"Starting server on {server_config['host']}:{server_config['port']}")
    logger.info("Press Ctrl+C to stop")
    logger.info("=" * 60)

    log_http_access = config_obj.get('logging.http_access', False)

    try:
        run_server(
            app=app,
            host=server_config['host'],
            port=server_config['port'],
            log_http_access=log_http_access
        )
    except KeyboardInterrupt:
        logger.info("\nShutting down...")
        service.stop()
        logger.info("Server stopped")


def run_once_mode(rule_id: str, config_obj) -> int:
    """
    Run a single rule once, without the scheduler

    Returns:
        Process exit code (0 when the run completed)
    """
    from torbox_rules.service import create_service
    service = create_service(config_obj, run_scheduler=False)
    service.start()

    try:
        report = service.call(service.scheduler.run_now, rule_id)
    finally:
        service.stop()

    if report.status is RunStatus.COMPLETED:
        logger.info(f"✓ {report.message}")
        return 0

    if report.status is RunStatus.SKIPPED:
        logger.warning(report.message)
        return 0

    logger.error(f"✗ Run {report.status.value}: {report.message}")
    return 1


@handle_errors
def main():
    """Main entry point for torbox-rules CLI"""
    global logger

    parser = create_parser()
    args = parser.parse_args()

    config_dir = process_args(args)
    config = load_config(config_dir)

    trace_mode = config.get_trace_mode()
    setup_logging(config, trace_mode)
    logger = get_logger(__name__)

    if handle_utility_args(args, config):
        sys.exit(0)

    if args.run:
        sys.exit(run_once_mode(args.run, config))

    run_server_mode(args, config)
    sys.exit(0)


if __name__ == '__main__':
    main()
