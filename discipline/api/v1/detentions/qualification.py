"""
Detention qualification.

Two independent policies exist:
- per-rule evaluation, run when an incident is recorded: active DetentionRules in
  ascending min_points order, first match wins;
- the global points policy (outstanding demerits >= threshold), used by the
  dashboard "qualifying students" view and by bulk auto-assign.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from discipline.core import demerits
from discipline.core.demerits import StudentDemerits
from discipline.core.models import DetentionRule
from discipline.core.models.detention_rule import (
    ACTION_INCIDENT_COUNT,
    ACTION_POINTS_THRESHOLD,
    ACTION_SEVERITY_MATCH,
)


@dataclass
class RuleMatch:
    rule: DetentionRule
    # Points total, incident count or severity-matching count, depending on action_type
    observed: int


def _in_range(value: int, rule: DetentionRule) -> bool:
    if value < (rule.min_points or 0):
        return False
    return rule.max_points is None or value <= rule.max_points


def describe_match(match: RuleMatch) -> str:
    """Free-text qualifying reason stored on the assignment."""
    rule = match.rule
    if rule.action_type == ACTION_POINTS_THRESHOLD:
        detail = f"{match.observed} demerit points"
    elif rule.action_type == ACTION_INCIDENT_COUNT:
        detail = f"{match.observed} incidents"
    else:
        detail = f"{match.observed} {rule.severity} severity incident(s)"
    return f"{rule.name}: {detail} in {rule.time_period_days} days"


class QualificationEvaluator:
    def __init__(self, clock: Callable[[], date] = date.today, points_threshold: int = 10):
        self.clock = clock
        self.points_threshold = points_threshold

    async def active_rules(self, db: AsyncSession, tenant_id: UUID) -> List[DetentionRule]:
        result = await db.execute(
            select(DetentionRule)
            .where(DetentionRule.tenant_id == tenant_id, DetentionRule.is_active.is_(True))
            .order_by(DetentionRule.min_points, DetentionRule.created_at)
        )
        return list(result.scalars().all())

    async def first_match(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        student_id: UUID,
        rules: Optional[Sequence[DetentionRule]] = None,
    ) -> Optional[RuleMatch]:
        if rules is None:
            rules = await self.active_rules(db, tenant_id)
        today = self.clock()
        for rule in sorted(rules, key=lambda r: r.min_points or 0):
            if not rule.is_active:
                continue
            observed = await self._observe(db, tenant_id, student_id, rule, today)
            if observed is not None:
                return RuleMatch(rule=rule, observed=observed)
        return None

    async def evaluate(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        student_id: UUID,
        rules: Optional[Sequence[DetentionRule]] = None,
    ) -> Optional[DetentionRule]:
        """First matching rule for the student, or None. Read only."""
        match = await self.first_match(db, tenant_id, student_id, rules)
        return match.rule if match else None

    async def _observe(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        student_id: UUID,
        rule: DetentionRule,
        today: date,
    ) -> Optional[int]:
        """Observed value when the rule matches, else None."""
        since = today - timedelta(days=rule.time_period_days) if rule.time_period_days else None

        if rule.action_type == ACTION_POINTS_THRESHOLD:
            value = await demerits.outstanding_points(db, tenant_id, student_id, since)
            return value if value > 0 and _in_range(value, rule) else None

        if rule.action_type == ACTION_INCIDENT_COUNT:
            stats = await demerits.incident_stats(db, tenant_id, student_id, since)
            return stats.count if stats.count > 0 and _in_range(stats.count, rule) else None

        if rule.action_type == ACTION_SEVERITY_MATCH:
            if not rule.severity:
                return None
            stats = await demerits.incident_stats(db, tenant_id, student_id, since, severity=rule.severity)
            return stats.count if stats.count > 0 else None

        return None

    async def qualifying_students(
        self,
        db: AsyncSession,
        tenant_id: UUID,
        threshold: Optional[int] = None,
    ) -> List[StudentDemerits]:
        """Global points policy: students with outstanding demerits at or above the threshold."""
        return await demerits.students_at_or_above(
            db, tenant_id, self.points_threshold if threshold is None else threshold
        )
