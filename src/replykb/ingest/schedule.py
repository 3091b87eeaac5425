"""Periodic website retraining.

A RetrainSchedule says when one tenant's (or one agent's) website pages
should be re-scraped: every day or every week at a fixed ``HH:MM``. The
ScheduledRetrainer is driven by an external clock (cron, a worker loop) and
retrains whatever is due when ``run_pending`` is called.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from replykb.db.models import KIND_WEBSITE
from replykb.errors import ValidationError
from replykb.ingest.retrain import Retrainer
from replykb.ingest.store import IngestReport, validate_scope

logger = logging.getLogger(__name__)

DAILY = "daily"
WEEKLY = "weekly"
NONE = "none"
_FREQUENCIES = {DAILY: timedelta(days=1), WEEKLY: timedelta(weeks=1)}
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


@dataclass
class RetrainSchedule:
    """When to retrain the website documents of one tenant (optionally one agent).

    Attributes:
        tenant_id: Owning tenant.
        frequency: ``daily``, ``weekly`` or ``none`` (disabled).
        at: Local wall-clock time of day, ``HH:MM``.
        agent_id: Restrict to this agent's documents.
        next_run: Next due time; computed on first use when unset.
        last_run: When the schedule last fired.
    """

    tenant_id: int
    frequency: str = NONE
    at: str = "03:00"
    agent_id: int | None = None
    next_run: datetime | None = None
    last_run: datetime | None = None

    def __post_init__(self) -> None:
        validate_scope(self.tenant_id, self.agent_id)
        if self.frequency not in (DAILY, WEEKLY, NONE):
            raise ValidationError(
                f"frequency must be one of daily, weekly, none; got '{self.frequency}'"
            )
        if not _TIME_RE.match(self.at):
            raise ValidationError(f"at must be HH:MM (24h), got '{self.at}'")

    @property
    def enabled(self) -> bool:
        return self.frequency != NONE

    def first_run_after(self, now: datetime) -> datetime | None:
        """Earliest ``at`` time strictly after *now*, or None when disabled."""
        if not self.enabled:
            return None
        hour, minute = (int(part) for part in self.at.split(":"))
        candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    def is_due(self, now: datetime) -> bool:
        if not self.enabled:
            return False
        if self.next_run is None:
            self.next_run = self.first_run_after(now)
            return False
        return now >= self.next_run

    def mark_run(self, now: datetime) -> None:
        """Record a run at *now* and advance ``next_run`` past it."""
        self.last_run = now
        if not self.enabled:
            self.next_run = None
            return
        step = _FREQUENCIES[self.frequency]
        next_run = self.next_run or self.first_run_after(now)
        while next_run <= now:
            next_run += step
        self.next_run = next_run


class ScheduledRetrainer:
    """Retrain the website documents of every due schedule."""

    def __init__(self, retrainer: Retrainer, schedules: list[RetrainSchedule] | None = None) -> None:
        self.retrainer = retrainer
        self.schedules: list[RetrainSchedule] = list(schedules or [])

    def add(self, schedule: RetrainSchedule) -> None:
        self.schedules = [
            s
            for s in self.schedules
            if (s.tenant_id, s.agent_id) != (schedule.tenant_id, schedule.agent_id)
        ]
        self.schedules.append(schedule)

    def run_pending(
        self, now: datetime | None = None
    ) -> list[tuple[RetrainSchedule, IngestReport]]:
        """Run every schedule that is due at *now*; one report per schedule that fired."""
        now = now or datetime.now()
        reports: list[tuple[RetrainSchedule, IngestReport]] = []
        for schedule in self.schedules:
            if not schedule.is_due(now):
                continue
            documents = self.retrainer.store.repo.list_documents(
                schedule.tenant_id, agent_id=schedule.agent_id, content_kind=KIND_WEBSITE
            )
            ids = [d.id for d in documents]
            if ids:
                logger.info(
                    "Scheduled retrain for tenant %s: %d website documents",
                    schedule.tenant_id,
                    len(ids),
                )
                report = self.retrainer.retrain(schedule.tenant_id, ids)
            else:
                report = IngestReport()
            schedule.mark_run(now)
            reports.append((schedule, report))
        return reports
