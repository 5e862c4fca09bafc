"""
Rule surface shared with the serialization framework.

The framework builds a RuleContext per field (or per payload) and calls the
registered executor for the rule's type.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional


class RuleMode(Enum):
    """Context a rule runs in."""

    WRITE = "WRITE"
    READ = "READ"
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"

    def __str__(self) -> str:
        return self.value


class FieldType(Enum):
    """Logical type of the field being transformed."""

    RECORD = "RECORD"
    ENUM = "ENUM"
    ARRAY = "ARRAY"
    MAP = "MAP"
    COMBINED = "COMBINED"
    FIXED = "FIXED"
    STRING = "STRING"
    BYTES = "BYTES"
    INT = "INT"
    LONG = "LONG"
    FLOAT = "FLOAT"
    DOUBLE = "DOUBLE"
    BOOLEAN = "BOOLEAN"
    NULL = "NULL"

    def __str__(self) -> str:
        return self.value


@dataclass
class RuleContext:
    """
    Per-invocation rule context.

    ``rule_params`` are the rule's own parameters; ``metadata`` holds the
    schema metadata properties consulted when a rule leaves a parameter out.
    ``field_transformer`` is supplied by the framework to walk a message and
    apply a field transform to each tagged field.
    """

    subject: str
    rule_mode: RuleMode
    rule_params: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, str] = field(default_factory=dict)
    rule_name: str = ""
    field_transformer: Optional[Callable[["RuleContext", Any, Any], Any]] = field(
        default=None, repr=False
    )

    def get_parameter(self, name: str) -> Optional[str]:
        value = self.rule_params.get(name)
        if value is not None:
            return value
        return self.metadata.get(name)


class RuleExecutor(ABC):
    """Executor invoked by the serialization framework for one rule type."""

    @abstractmethod
    def type(self) -> str:
        ...

    @abstractmethod
    def configure(
        self, client_config: Mapping[str, str], config: Optional[Mapping[str, str]] = None
    ) -> None:
        ...

    @abstractmethod
    def transform(self, ctx: RuleContext, message: Any) -> Any:
        ...

    def close(self) -> None:
        pass


_rule_executors: Dict[str, RuleExecutor] = {}
_rule_executors_lock = threading.Lock()


def register_rule_executor(executor: RuleExecutor) -> None:
    with _rule_executors_lock:
        _rule_executors[executor.type()] = executor


def get_rule_executor(name: str) -> Optional[RuleExecutor]:
    with _rule_executors_lock:
        return _rule_executors.get(name)


def get_rule_executors() -> List[RuleExecutor]:
    with _rule_executors_lock:
        return list(_rule_executors.values())


def clear_rule_executors() -> None:
    with _rule_executors_lock:
        _rule_executors.clear()
