"""
Custom exceptions for JOSHUA.

Provides structured error handling with recovery hints and error codes.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Standard error codes for JOSHUA."""
    # General errors (1xxx)
    UNKNOWN_ERROR = "E1000"
    VALIDATION_ERROR = "E1001"
    CONFIGURATION_ERROR = "E1002"

    # Data errors (2xxx)
    INVALID_FACTOR_VALUE = "E2001"
    INSUFFICIENT_HISTORY = "E2002"

    # Model errors (3xxx)
    CYCLIC_DEPENDENCY = "E3001"
    CALIBRATION_FAILED = "E3002"


@dataclass
class RecoveryHint:
    """A hint for recovering from an error."""
    action: str
    description: str
    requires_human: bool = False


@dataclass
class ErrorContext:
    """Context information for an error."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    run_id: Optional[str] = None
    component: str = "joshua"
    additional: Dict[str, Any] = field(default_factory=dict)


class JoshuaError(Exception):
    """
    Base exception for JOSHUA.

    All custom exceptions should inherit from this class.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.UNKNOWN_ERROR,
        recovery_hint: Optional[RecoveryHint] = None,
        context: Optional[ErrorContext] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.recovery_hint = recovery_hint
        self.context = context or ErrorContext()

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
            "timestamp": self.context.timestamp.isoformat(),
        }

        if self.recovery_hint:
            result["recovery"] = {
                "action": self.recovery_hint.action,
                "description": self.recovery_hint.description,
                "requires_human": self.recovery_hint.requires_human,
            }

        if self.context.run_id:
            result["run_id"] = self.context.run_id

        return result

    def __str__(self) -> str:
        return f"[{self.error_code.value}] {self.message}"


class InvalidFactorValueError(JoshuaError):
    """A risk factor violates the data contract (range, category, confidence)."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_FACTOR_VALUE,
            recovery_hint=RecoveryHint(
                action="fix_input",
                description="Supply factor values normalized to [0, 1] with a known category",
            ),
            **kwargs,
        )
        self.field = field
        self.value = value


class ConfigurationError(JoshuaError):
    """Error raised when configuration is invalid."""

    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.CONFIGURATION_ERROR,
            recovery_hint=RecoveryHint(
                action="check_config",
                description="Review configuration settings",
                requires_human=True,
            ),
            **kwargs,
        )
        self.config_key = config_key


class CyclicDependencyError(JoshuaError):
    """Inserting an edge would create a cycle in the dependency network."""

    def __init__(self, parent: str, child: str, **kwargs):
        super().__init__(
            message=f"Edge {parent} -> {child} would create a cycle",
            error_code=ErrorCode.CYCLIC_DEPENDENCY,
            recovery_hint=RecoveryHint(
                action="drop_edge",
                description="Network construction proceeds without the offending edge",
            ),
            **kwargs,
        )
        self.parent = parent
        self.child = child


class InsufficientHistoryError(JoshuaError):
    """Not enough historical points for the requested analysis."""

    def __init__(self, message: str, required: int = 0, available: int = 0, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.INSUFFICIENT_HISTORY,
            recovery_hint=RecoveryHint(
                action="collect_more_data",
                description=f"At least {required} points are needed, {available} available",
            ),
            **kwargs,
        )
        self.required = required
        self.available = available


class CalibrationFailedError(JoshuaError):
    """The model failed its calibration acceptance thresholds."""

    def __init__(self, message: str, report: Any = None, **kwargs):
        super().__init__(
            message=message,
            error_code=ErrorCode.CALIBRATION_FAILED,
            recovery_hint=RecoveryHint(
                action="recalibrate",
                description="Retune category weights or relearn the dependency network",
                requires_human=True,
            ),
            **kwargs,
        )
        self.report = report
