"""
YAML Rule Storage

Keeps rules in rules.yml next to config.yml so they can be reviewed and
edited by hand. Writes go to a temporary file that replaces the original.
"""

import os
import logging
from pathlib import Path
from typing import Any, Dict, List

import yaml

from torbox_rules.errors import StorageError
from torbox_rules.storage.base import RuleStorage

logger = logging.getLogger(__name__)


class YamlRuleStorage(RuleStorage):
    """rules.yml backend (default)"""

    backend_name = 'yaml'

    def __init__(self, file_path: str = '/config/rules.yml'):
        self.file_path = Path(file_path)
        logger.info(f"YAML rule storage: {self.file_path}")

    def load_rules(self) -> List[Dict[str, Any]]:
        if not self.file_path.exists():
            return []

        try:
            with open(self.file_path, 'r') as f:
                content = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise StorageError('yaml', f"Invalid YAML syntax in {self.file_path}: {e}")
        except OSError as e:
            raise StorageError('yaml', f"Cannot read {self.file_path}: {e}")

        if content is None:
            return []

        rules = content.get('rules', []) if isinstance(content, dict) else None
        if not isinstance(rules, list):
            raise StorageError('yaml', f"'rules' in {self.file_path} must be a list")

        return rules

    def save_rules(self, rules: List[Dict[str, Any]]) -> None:
        tmp_path = self.file_path.with_name(self.file_path.name + '.tmp')
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w') as f:
                yaml.safe_dump({'rules': rules}, f, sort_keys=False, allow_unicode=True)
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            raise StorageError('yaml', f"Cannot write {self.file_path}: {e}")

        logger.debug(f"Saved {len(rules)} rules to {self.file_path}")

    def health_check(self) -> bool:
        directory = self.file_path.parent
        return directory.exists() and os.access(directory, os.W_OK)
