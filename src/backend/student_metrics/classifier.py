"""
Lifecycle classifier.

Transition rule at reference date D for expiration E, grace end G = E + grace:

    lifetime package          -> LIFETIME (for every D)
    no expiration known       -> ACTIVE_NOT_EXPIRED
    D < E                     -> ACTIVE_NOT_EXPIRED
    renewal r with E < r <= G
      and r <= D              -> RENEWED
    D < G                     -> IN_GRACE
    otherwise                 -> CHURNED

Only records that had started by D are used to pick E, and only renewals
dated on or before D are considered, so any past date can be classified.
A churn happens at G when classifying at G itself yields CHURNED for E.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional

from .configuration import MetricsConfig
from .models import Classification, LifecycleStatus, UnifiedStudent, as_naive

GRACE_PERIOD_DAYS = 45


class LifecycleClassifier:
    def __init__(self, grace_period_days: int = GRACE_PERIOD_DAYS) -> None:
        self.grace_period = timedelta(days=grace_period_days)

    @classmethod
    def from_config(cls, config: Optional[MetricsConfig] = None) -> "LifecycleClassifier":
        config = config or MetricsConfig()
        return cls(grace_period_days=config.lifecycle.grace_period_days)

    def grace_end(self, expiration: datetime) -> datetime:
        if expiration > datetime.max - self.grace_period:
            return datetime.max
        return expiration + self.grace_period

    def expiration_at(self, student: UnifiedStudent, as_of: datetime) -> Optional[datetime]:
        """
        Expiration in force at ``as_of``: the latest end date among the
        student's terms that had started by then. Before the first term
        starts, the earliest known end date is used.
        """

        ends = [term for term in student.terms if term.end is not None]
        if not ends:
            return student.end_date
        started = [term.end for term in ends if term.start <= as_of]
        if started:
            return max(started)
        return min(term.end for term in ends)

    def is_valid_renewal(self, student: UnifiedStudent, renewal_date: datetime) -> bool:
        """
        A renewal counts only if it extends an expiration that had already
        passed: it must be dated strictly after the end date in force just
        before it. Without any earlier expiration it is always valid.
        """

        prior_ends = [
            term.end
            for term in student.terms
            if term.end is not None
            and term.start <= renewal_date
            and not (term.is_renewal and term.start == renewal_date)
        ]
        if prior_ends:
            return renewal_date > max(prior_ends)
        if not student.terms and student.end_date is not None:
            return renewal_date > student.end_date
        return True

    def classify(self, student: UnifiedStudent, as_of: datetime) -> Classification:
        as_of = as_naive(as_of)
        if student.is_lifetime:
            return Classification(status=LifecycleStatus.LIFETIME, is_eligible_for_renewal=False)

        expiration = self.expiration_at(student, as_of)
        if expiration is None:
            return Classification(status=LifecycleStatus.ACTIVE_NOT_EXPIRED, is_eligible_for_renewal=False)

        grace_end = self.grace_end(expiration)
        if as_of < expiration:
            return Classification(
                status=LifecycleStatus.ACTIVE_NOT_EXPIRED,
                is_eligible_for_renewal=False,
                expiration=expiration,
                grace_end=grace_end,
            )

        renewed = any(expiration < renewal <= grace_end and renewal <= as_of for renewal in student.renewal_dates)
        if renewed:
            status = LifecycleStatus.RENEWED
        elif as_of < grace_end:
            status = LifecycleStatus.IN_GRACE
        else:
            status = LifecycleStatus.CHURNED
        return Classification(
            status=status,
            is_eligible_for_renewal=True,
            expiration=expiration,
            grace_end=grace_end,
        )

    def is_active(self, student: UnifiedStudent, as_of: datetime) -> bool:
        """Enrolled by ``as_of`` and not churned."""
        as_of = as_naive(as_of)
        if student.enrollment_date > as_of:
            return False
        return self.classify(student, as_of).status.is_active

    def churn_dates(self, student: UnifiedStudent, as_of: datetime) -> List[datetime]:
        """
        Grace-end instants, up to ``as_of``, at which the student churned: an
        expiration passed its grace period with no renewal and no newer term.
        """

        as_of = as_naive(as_of)
        if student.is_lifetime:
            return []
        ends = sorted({term.end for term in student.terms if term.end is not None})
        if not ends and student.end_date is not None:
            ends = [student.end_date]

        dates: List[datetime] = []
        for expiration in ends:
            grace_end = self.grace_end(expiration)
            if grace_end > as_of:
                break
            classification = self.classify(student, grace_end)
            if classification.status is LifecycleStatus.CHURNED and classification.grace_end == grace_end:
                dates.append(grace_end)
        return dates
