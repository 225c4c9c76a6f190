"""
Rule Storage - Abstract interface for rule persistence backends

Backends persist the whole rule list at once; there are no incremental
updates. Rules cross this boundary as plain dictionaries (Rule.to_dict).
"""

import copy
from abc import ABC, abstractmethod
from typing import Any, Dict, List


class RuleStorage(ABC):
    """
    Abstract base class for rule storage backends

    Implementations must provide:
    - Whole-list load and save
    - Preservation of rule order
    - A health check
    """

    @abstractmethod
    def load_rules(self) -> List[Dict[str, Any]]:
        """
        Load the persisted rule list

        Returns:
            List of rule dictionaries in stored order (empty if nothing stored)

        Raises:
            StorageError: If stored data cannot be read or decoded
        """
        pass

    @abstractmethod
    def save_rules(self, rules: List[Dict[str, Any]]) -> None:
        """
        Replace the persisted rule list

        Raises:
            StorageError: If the list cannot be written
        """
        pass

    @abstractmethod
    def health_check(self) -> bool:
        """
        Check if the backend is accessible

        Returns:
            True if healthy, False otherwise
        """
        pass

    @property
    def backend_name(self) -> str:
        return self.__class__.__name__


class MemoryRuleStorage(RuleStorage):
    """Non-persistent backend, used for tests and dry runs"""

    backend_name = 'memory'

    def __init__(self, rules: List[Dict[str, Any]] = None):
        self._rules = copy.deepcopy(rules or [])
        self.save_count = 0

    def load_rules(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._rules)

    def save_rules(self, rules: List[Dict[str, Any]]) -> None:
        self._rules = copy.deepcopy(rules)
        self.save_count += 1

    def health_check(self) -> bool:
        return True
