"""
User-friendly error handling for TorBox automation rules
Provides clear, actionable error messages without Python stack traces
"""

import sys
from typing import Optional

from torbox_rules.logging import get_logger

logger = get_logger(__name__)


class TorBoxRulesError(Exception):
    """Base exception for all torbox-rules errors"""

    def __init__(self, code: str, message: str, details: Optional[dict] = None, fix: Optional[str] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        self.fix = fix
        super().__init__(self.format_error())

    def format_error(self) -> str:
        """Format error message for user display"""
        lines = [self.message]

        if self.details:
            for key, value in self.details.items():
                lines.append(f"  • {key}: {value}")

        if self.fix:
            lines.append(f"  • Fix: {self.fix}")

        return "\n".join(lines)


class AuthenticationError(TorBoxRulesError):
    """TorBox rejected the API token"""

    def __init__(self, endpoint: str, response_text: Optional[str] = None):
        details = {"Endpoint": endpoint}
        if response_text:
            details["Response"] = response_text[:200]

        super().__init__(
            code="AUTH-001",
            message="Invalid API token. Please check your token and try again.",
            details=details,
            fix="Check TORBOX_RULES_TORBOX_API_TOKEN or torbox.api_token in config.yml"
        )


class ConnectionError(TorBoxRulesError):
    """Cannot reach the TorBox API"""

    def __init__(self, url: str, original_error: str):
        super().__init__(
            code="CONN-001",
            message="Network request failed. Please check your internet connection and try again.",
            details={
                "URL": url,
                "Error": str(original_error)
            },
            fix="Check network connectivity and torbox.base_url"
        )


class APIError(TorBoxRulesError):
    """TorBox API call failed"""

    def __init__(self, endpoint: str, status_code: Optional[int] = None, response_text: Optional[str] = None):
        details = {"Endpoint": endpoint}
        if status_code is not None:
            details["Status Code"] = status_code
        if response_text:
            details["Response"] = response_text[:200]

        if status_code is not None:
            message = f"TorBox API error {status_code}: {response_text or 'Unknown error'}"
        else:
            message = response_text or "TorBox API request failed"

        super().__init__(
            code="API-001",
            message=message,
            details=details,
            fix="Check the TorBox service status and retry later"
        )


class ConfigurationError(TorBoxRulesError):
    """Configuration file error"""

    def __init__(self, file_path: str, reason: str):
        super().__init__(
            code="CFG-001",
            message="Cannot load configuration",
            details={
                "File": file_path,
                "Problem": reason
            },
            fix="Check that the configuration file has valid YAML syntax"
        )


class LoggingSetupError(TorBoxRulesError):
    """Cannot setup file logging"""

    def __init__(self, log_path: str, reason: str):
        super().__init__(
            code="LOG-001",
            message="Cannot setup file logging",
            details={
                "Log Path": log_path,
                "Problem": reason
            },
            fix="Set TORBOX_RULES_LOG_FILE to a writable path or make CONFIG_DIR writable"
        )


class StorageError(TorBoxRulesError):
    """Rule persistence failed"""

    def __init__(self, backend: str, reason: str):
        super().__init__(
            code="STORE-001",
            message="Cannot access rule storage",
            details={
                "Backend": backend,
                "Problem": reason
            },
            fix="Check storage.backend settings and file permissions"
        )


class RuleValidationError(TorBoxRulesError):
    """Rule definition is invalid"""

    def __init__(self, rule_name: str, reason: str):
        self.reason = reason
        super().__init__(
            code="RULE-001",
            message=reason,
            details={"Rule": rule_name},
            fix="Edit the rule so its action, scope and conditions are supported"
        )


class RuleNotFoundError(TorBoxRulesError):
    """No rule with the given id"""

    def __init__(self, rule_id: str):
        self.rule_id = rule_id
        super().__init__(
            code="RULE-002",
            message=f"Rule not found: {rule_id}",
        )


class PresetNotFoundError(TorBoxRulesError):
    """No preset with the given id"""

    def __init__(self, preset_id: str):
        self.preset_id = preset_id
        super().__init__(
            code="RULE-003",
            message=f"Unknown preset: {preset_id}",
            fix="Use --list-presets to see the available presets"
        )


def handle_errors(func):
    """Decorator for user-friendly error handling"""
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except TorBoxRulesError as e:
            logger.error(str(e))
            sys.exit(1)
        except KeyboardInterrupt:
            logger.info("\nOperation cancelled by user")
            sys.exit(0)
        except Exception as e:
            logger.error("Unexpected error occurred")
            logger.error(f"  • Error: {type(e).__name__}: {str(e)}")
            logger.error("  • Fix: Please report this issue with the error details above")
            logger.debug("Full stack trace:", exc_info=True)
            sys.exit(1)
    return wrapper
