"""
Agent Oversight

Performance reviews, corrective amendments and escalation for a hierarchy
of AI agents, plus a learning ledger that re-ranks knowledge-bot
recommendations by their observed outcomes. State lives in PostgreSQL.
"""

__version__ = "0.1.0"

# Amendments
from oversight.amendments import AmendmentDraft, AmendmentSynthesizer, AmendmentType

# Configuration
from oversight.config import Settings
from oversight.confidence import confidence_score, sample_size_factor
from oversight.constraints import SAFETY_CONSTRAINTS, SafetyConstraints

# Escalation
from oversight.escalation import EscalationResult, escalate

# Reporting
from oversight.insights import BotMetricsReport, InsightMiner

# Learning
from oversight.learning import CandidateRecommendation, ImpactLevel, LearningLedger, OutcomeData

# Review cycle
from oversight.review import ReviewAction, ReviewCycleController, ReviewStatus, SubordinateReview
from oversight.scoring import (
    TaskStatus,
    TrendDirection,
    TrendResult,
    calculate_cos_score,
    calculate_trend,
    count_consecutive_failures,
    success_rate,
)
from oversight.teams import DEFAULT_TEAM_LEADS, TeamLeadProfile, TeamRoster, load_roster

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    "SafetyConstraints",
    "SAFETY_CONSTRAINTS",
    "TeamLeadProfile",
    "TeamRoster",
    "DEFAULT_TEAM_LEADS",
    "load_roster",
    # Scoring
    "TaskStatus",
    "TrendDirection",
    "TrendResult",
    "success_rate",
    "calculate_trend",
    "calculate_cos_score",
    "count_consecutive_failures",
    "confidence_score",
    "sample_size_factor",
    # Review
    "ReviewCycleController",
    "ReviewStatus",
    "ReviewAction",
    "SubordinateReview",
    "AmendmentSynthesizer",
    "AmendmentDraft",
    "AmendmentType",
    "escalate",
    "EscalationResult",
    # Learning
    "LearningLedger",
    "CandidateRecommendation",
    "ImpactLevel",
    "OutcomeData",
    "InsightMiner",
    "BotMetricsReport",
]
