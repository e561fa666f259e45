"""
Hardcoded safety constraints for team lead oversight.

These values are frozen at import time. They are deliberately not part of
``Settings``: no environment variable, config file or agent can change them.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Final


@dataclass(frozen=True)
class CosThresholds:
    CRITICAL: float = 0.3
    WARNING: float = 0.5
    ACCEPTABLE: float = 0.7
    EXCELLENT: float = 0.9


@dataclass(frozen=True)
class TrendThresholds:
    SEVERE_DECLINE: float = -0.3
    MODERATE_DECLINE: float = -0.15
    STABLE: float = 0.05
    IMPROVEMENT: float = 0.15


@dataclass(frozen=True)
class SafetyConstraints:
    """Limits every team lead operates under."""

    # Team leads cannot modify their own knowledge/skills or the persona layer
    SELF_MODIFY_BLOCKED: bool = True
    PERSONA_MODIFY_BLOCKED: bool = True

    MAX_AMENDMENTS_PER_SUBORDINATE: int = 10

    # Financial escalations bypass the team hierarchy
    FINANCIAL_BYPASS_ENABLED: bool = True

    MIN_TASKS_FOR_TREND: int = 5

    COS_SCORE_THRESHOLDS: CosThresholds = field(default_factory=CosThresholds)
    TREND_THRESHOLDS: TrendThresholds = field(default_factory=TrendThresholds)

    def describe(self) -> dict[str, Any]:
        data = asdict(self)
        data["note"] = "These constraints are HARDCODED and cannot be modified"
        return data


SAFETY_CONSTRAINTS: Final[SafetyConstraints] = SafetyConstraints()
