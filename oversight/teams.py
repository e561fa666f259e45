"""Team lead profiles and the roster built from them."""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from types import MappingProxyType
from typing import Any


class ReviewCadence(StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"


@dataclass(frozen=True)
class TeamLeadProfile:
    """Immutable configuration for one team lead.

    A profile can never list its own role among its subordinates, so no
    review, amendment or escalation produced from it can target the lead.
    """

    role: str
    team_id: str
    subordinates: tuple[str, ...]
    review_cadence: ReviewCadence = ReviewCadence.DAILY
    amendment_authority: bool = True
    escalation_target: str = "cos"
    consecutive_failures_threshold: int = 3
    knowledge_bot: str | None = None

    def __post_init__(self) -> None:
        # Accept lists from JSON but always store a tuple
        object.__setattr__(self, "subordinates", tuple(self.subordinates))
        object.__setattr__(self, "review_cadence", ReviewCadence(self.review_cadence))

        if not self.role:
            raise ValueError("Team lead role must be non-empty")
        if self.role in self.subordinates:
            raise ValueError(f"Team lead {self.role} cannot be its own subordinate")
        if len(set(self.subordinates)) != len(self.subordinates):
            raise ValueError(f"Duplicate subordinates for team lead {self.role}")
        if self.consecutive_failures_threshold < 1:
            raise ValueError("consecutive_failures_threshold must be >= 1")
        if self.escalation_target == self.role:
            raise ValueError(f"Team lead {self.role} cannot escalate to itself")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TeamLeadProfile:
        return cls(
            role=data["role"],
            team_id=data["team_id"],
            subordinates=tuple(data.get("subordinates", ())),
            review_cadence=ReviewCadence(data.get("review_cadence", "daily")),
            amendment_authority=bool(data.get("amendment_authority", True)),
            escalation_target=data.get("escalation_target", "cos"),
            consecutive_failures_threshold=int(data.get("consecutive_failures_threshold", 3)),
            knowledge_bot=data.get("knowledge_bot"),
        )


DEFAULT_TEAM_LEADS: tuple[TeamLeadProfile, ...] = (
    TeamLeadProfile(
        role="cto",
        team_id="tech",
        subordinates=(
            "web_dev_lead",
            "app_dev_lead",
            "devops_lead",
            "qa_lead",
            "infrastructure_lead",
        ),
        review_cadence=ReviewCadence.DAILY,
        knowledge_bot="tech_kb",
    ),
    TeamLeadProfile(
        role="cmo",
        team_id="marketing",
        subordinates=("content_lead", "social_media_lead", "seo_growth_lead", "brand_lead"),
        review_cadence=ReviewCadence.DAILY,
        knowledge_bot="marketing_kb",
    ),
    TeamLeadProfile(
        role="cpo",
        team_id="product",
        subordinates=("ux_research_lead", "product_analytics_lead", "feature_spec_lead"),
        review_cadence=ReviewCadence.DAILY,
        knowledge_bot="product_kb",
    ),
    TeamLeadProfile(
        role="coo",
        team_id="operations",
        subordinates=("vendor_management_lead", "process_automation_lead"),
        review_cadence=ReviewCadence.WEEKLY,
        knowledge_bot="operations_kb",
    ),
    TeamLeadProfile(
        role="cfo",
        team_id="finance",
        subordinates=("expense_tracking_lead", "revenue_analytics_lead"),
        review_cadence=ReviewCadence.WEEKLY,
        knowledge_bot="finance_kb",
        # Stricter for finance
        consecutive_failures_threshold=2,
    ),
    TeamLeadProfile(
        role="chro",
        team_id="people",
        subordinates=("hiring_lead", "compliance_lead"),
        review_cadence=ReviewCadence.WEEKLY,
        knowledge_bot="people_kb",
    ),
)


class TeamRoster:
    """Read-only lookups over a fixed set of team lead profiles."""

    def __init__(self, profiles: Iterable[TeamLeadProfile] = DEFAULT_TEAM_LEADS) -> None:
        self._profiles = tuple(profiles)

        by_role: dict[str, TeamLeadProfile] = {}
        by_team: dict[str, TeamLeadProfile] = {}
        lead_for: dict[str, TeamLeadProfile] = {}
        for profile in self._profiles:
            if profile.role in by_role:
                raise ValueError(f"Duplicate team lead role: {profile.role}")
            if profile.team_id in by_team:
                raise ValueError(f"Duplicate team id: {profile.team_id}")
            by_role[profile.role] = profile
            by_team[profile.team_id] = profile
            for subordinate in profile.subordinates:
                lead_for[subordinate] = profile

        self._by_role = MappingProxyType(by_role)
        self._by_team = MappingProxyType(by_team)
        self._lead_for = MappingProxyType(lead_for)

    @property
    def profiles(self) -> tuple[TeamLeadProfile, ...]:
        return self._profiles

    def get(self, role: str) -> TeamLeadProfile | None:
        return self._by_role.get(role)

    def for_team(self, team_id: str) -> TeamLeadProfile | None:
        return self._by_team.get(team_id)

    def team_lead_for(self, subordinate_role: str) -> TeamLeadProfile | None:
        return self._lead_for.get(subordinate_role)

    def is_team_lead(self, role: str) -> bool:
        return role in self._by_role

    def subordinates_for_team(self, team_id: str) -> tuple[str, ...]:
        profile = self._by_team.get(team_id)
        return profile.subordinates if profile else ()


def load_roster(path: Path | None = None) -> TeamRoster:
    """Build a roster from a JSON file, or the built-in profiles when no path is given.

    The file holds a list of objects with the ``TeamLeadProfile`` field names.
    """
    if path is None:
        return TeamRoster()

    raw = json.loads(path.read_text())
    if not isinstance(raw, list):
        raise ValueError(f"{path}: expected a list of team lead profiles")
    return TeamRoster(TeamLeadProfile.from_dict(item) for item in raw)
