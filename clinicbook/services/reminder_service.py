# clinicbook/services/reminder_service.py
"""Periodic reminder job.

Each run opens a ledger row, collects appointments falling in the 24-hour
and same-day windows, sends one reminder per appointment and kind (bounded
retry, paced), writes the outcome back onto the appointment and closes the
ledger row. The ledger row is closed even when the run fails or overruns
its budget.
"""
import asyncio
import time as _time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy.orm import Session, joinedload

from .. import models
from ..config import Settings, get_settings
from ..errors import NotFound
from ..models import MessageKind, ReminderKind, RunStatus, RunTrigger
from ..security import CallerScope
from . import clock, message_templates
from .appointment_service import ACTIVE_BOOKING
from .notification_service import notify_patient

logger = structlog.get_logger(__name__)

JOB_NAME = "appointment-reminders"
DRY_RUN_MESSAGE_ID = "DRY-RUN"

MESSAGE_KIND = {
    ReminderKind.REMINDER_24H: MessageKind.REMINDER_24H,
    ReminderKind.SAME_DAY: MessageKind.REMINDER_SAME_DAY,
}

# ReminderKind -> column prefix on Appointment
TRACK = {
    ReminderKind.REMINDER_24H: "reminder_24h",
    ReminderKind.SAME_DAY: "reminder_same_day",
}


@dataclass
class RunOptions:
    force: bool = False
    dry_run: bool = False
    appointment_id: Optional[int] = None
    kind: Optional[ReminderKind] = None
    clinic_id: Optional[int] = None


@dataclass
class Candidate:
    appointment: models.Appointment
    kind: ReminderKind
    skip_reason: Optional[str] = None


@dataclass
class RunOutcome:
    run_id: int
    status: RunStatus
    trigger: RunTrigger
    appointments_checked: int = 0
    reminders_sent: int = 0
    reminders_failed: int = 0
    reminders_skipped: int = 0
    retries_attempted: int = 0
    duration_ms: int = 0
    error_message: Optional[str] = None
    results: List[Dict[str, Any]] = field(default_factory=list)


def _flag(appointment: models.Appointment, kind: ReminderKind, suffix: str):
    return getattr(appointment, f"{TRACK[kind]}_{suffix}")


def _set_flag(appointment: models.Appointment, kind: ReminderKind, suffix: str, value) -> None:
    setattr(appointment, f"{TRACK[kind]}_{suffix}", value)


def _column(kind: ReminderKind, suffix: str):
    return getattr(models.Appointment, f"{TRACK[kind]}_{suffix}")


class ReminderScheduler:
    def __init__(
        self,
        db: Session,
        transport,
        settings: Optional[Settings] = None,
        now: Callable[[], datetime] = clock.utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        job_name: str = JOB_NAME,
    ):
        self.db = db
        self.transport = transport
        self.settings = settings or get_settings()
        self.now = now
        self.sleep = sleep
        self.job_name = job_name

    # -- candidate selection ---------------------------------------------

    def _window(self, kind: ReminderKind, now: datetime, options: RunOptions) -> List[models.Appointment]:
        s = self.settings
        if kind == ReminderKind.REMINDER_24H:
            start, end = s.reminder_24h_window_start_hours, s.reminder_24h_window_end_hours
        else:
            start, end = s.reminder_same_day_window_start_hours, s.reminder_same_day_window_end_hours

        query = self.db.query(models.Appointment).join(models.AppointmentSlot).options(
            joinedload(models.Appointment.slot).joinedload(models.AppointmentSlot.staff),
            joinedload(models.Appointment.patient),
            joinedload(models.Appointment.clinic),
        ).filter(
            models.Appointment.status.in_(ACTIVE_BOOKING),
            models.AppointmentSlot.starts_at >= now + timedelta(hours=start),
            models.AppointmentSlot.starts_at <= now + timedelta(hours=end),
        )
        if not options.force:
            query = query.filter(
                _column(kind, "sent").is_(False),
                _column(kind, "failed").is_(False),
            )
        if options.clinic_id is not None:
            query = query.filter(models.Appointment.clinic_id == options.clinic_id)

        rows = query.order_by(models.AppointmentSlot.starts_at, models.Appointment.id).limit(
            self.settings.reminder_batch_limit
        ).all()

        if kind == ReminderKind.SAME_DAY:
            # the hour window alone can straddle local midnight
            rows = [
                a for a in rows
                if a.slot.slot_date == clock.local_today(a.clinic.utc_offset_minutes, now)
            ]
        return rows

    def _single(self, now: datetime, options: RunOptions) -> List[Candidate]:
        appointment = self.db.get(models.Appointment, options.appointment_id)
        if appointment is None:
            raise NotFound("Appointment", options.appointment_id)

        kind = options.kind
        if kind is None:
            hours_until = (clock.as_utc(appointment.slot.starts_at) - now).total_seconds() / 3600
            kind = ReminderKind.SAME_DAY if hours_until <= self.settings.reminder_same_day_window_end_hours \
                else ReminderKind.REMINDER_24H

        skip_reason = None
        if appointment.status not in ACTIVE_BOOKING:
            skip_reason = f"appointment is {appointment.status.value}"
        elif clock.as_utc(appointment.slot.starts_at) <= now:
            skip_reason = "appointment already started"
        elif not options.force and _flag(appointment, kind, "sent"):
            skip_reason = f"{kind.value} reminder already sent"
        return [Candidate(appointment, kind, skip_reason)]

    def collect_candidates(self, now: datetime, options: Optional[RunOptions] = None) -> List[Candidate]:
        """Candidates in send order (earliest slot first), each appointment at most once."""
        options = options or RunOptions()
        if options.appointment_id is not None:
            return self._single(now, options)

        kinds = [options.kind] if options.kind else [ReminderKind.REMINDER_24H, ReminderKind.SAME_DAY]
        seen = set()
        candidates: List[Candidate] = []
        for kind in kinds:
            for appointment in self._window(kind, now, options):
                if appointment.id in seen:
                    continue
                seen.add(appointment.id)
                candidates.append(Candidate(appointment, kind))

        candidates.sort(key=lambda c: (clock.as_utc(c.appointment.slot.starts_at), c.appointment.id))
        return candidates

    # -- delivery ---------------------------------------------------------

    async def _deliver(self, candidate: Candidate, options: RunOptions, outcome: RunOutcome) -> Dict[str, Any]:
        appointment, kind = candidate.appointment, candidate.kind
        result: Dict[str, Any] = {"appointment_id": appointment.id, "kind": kind.value}

        if candidate.skip_reason:
            outcome.reminders_skipped += 1
            result.update(status="skipped", error=candidate.skip_reason)
            return result

        message_kind = MESSAGE_KIND[kind]
        body = message_templates.render_for_appointment(message_kind, appointment)

        if options.dry_run:
            logger.info("reminder_dry_run", appointment_id=appointment.id, kind=kind.value, body=body)
            outcome.reminders_sent += 1
            result.update(status="sent", message_id=DRY_RUN_MESSAGE_ID, attempts=0)
            return result

        max_attempts = 1 + self.settings.reminder_max_retries
        error = None
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                outcome.retries_attempted += 1
                await self.sleep(self.settings.reminder_retry_delay_seconds)
            try:
                sent = await notify_patient(
                    self.transport, appointment.patient, body, message_kind, appointment_id=appointment.id
                )
            except Exception as exc:
                logger.warning("reminder_transport_error", appointment_id=appointment.id, attempt=attempt, error=str(exc))
                error = str(exc) or exc.__class__.__name__
                continue
            if sent.success:
                _set_flag(appointment, kind, "sent", True)
                _set_flag(appointment, kind, "sent_at", self.now())
                _set_flag(appointment, kind, "failed", False)
                _set_flag(appointment, kind, "error", None)
                self.db.commit()
                outcome.reminders_sent += 1
                logger.info("reminder_sent", appointment_id=appointment.id, kind=kind.value,
                            message_id=sent.provider_message_id, attempt=attempt)
                result.update(status="sent", message_id=sent.provider_message_id, attempts=attempt)
                return result
            error = sent.error or "send failed"

        _set_flag(appointment, kind, "failed", True)
        _set_flag(appointment, kind, "error", error)
        self.db.commit()
        outcome.reminders_failed += 1
        logger.warning("reminder_failed", appointment_id=appointment.id, kind=kind.value, error=error)
        result.update(status="failed", error=error, attempts=max_attempts)
        return result

    async def _execute(self, options: RunOptions, outcome: RunOutcome) -> None:
        candidates = self.collect_candidates(self.now(), options)
        outcome.appointments_checked = len(candidates)
        logger.info("reminder_candidates", run_id=outcome.run_id, count=len(candidates))

        for index, candidate in enumerate(candidates):
            if index > 0 and not options.dry_run:
                await self.sleep(self.settings.reminder_send_delay_seconds)
            appointment_id = candidate.appointment.id
            try:
                outcome.results.append(await self._deliver(candidate, options, outcome))
            except Exception as exc:
                self.db.rollback()
                outcome.reminders_failed += 1
                outcome.results.append({
                    "appointment_id": appointment_id, "kind": candidate.kind.value,
                    "status": "failed", "error": str(exc),
                })
                logger.exception("reminder_candidate_error", appointment_id=appointment_id)

    # -- ledger -------------------------------------------------------------

    def _open(self, trigger: RunTrigger) -> models.ReminderRun:
        run = models.ReminderRun(
            job_name=self.job_name,
            started_at=self.now(),
            status=RunStatus.RUNNING,
            triggered_by=trigger,
        )
        self.db.add(run)
        self.db.commit()
        return run

    def _close(self, outcome: RunOutcome, started: float, error_stack: Optional[str] = None) -> None:
        outcome.duration_ms = int((_time.monotonic() - started) * 1000)
        run = self.db.get(models.ReminderRun, outcome.run_id)
        run.status = outcome.status
        run.completed_at = self.now()
        run.appointments_checked = outcome.appointments_checked
        run.reminders_sent = outcome.reminders_sent
        run.reminders_failed = outcome.reminders_failed
        run.reminders_skipped = outcome.reminders_skipped
        run.retries_attempted = outcome.retries_attempted
        run.duration_ms = outcome.duration_ms
        run.error_message = outcome.error_message
        run.error_stack = error_stack
        self.db.commit()

    @staticmethod
    def final_status(outcome: RunOutcome) -> RunStatus:
        if outcome.reminders_failed == 0:
            return RunStatus.SUCCESS
        if outcome.reminders_sent > 0:
            return RunStatus.PARTIAL
        return RunStatus.FAILED

    async def run(self, options: Optional[RunOptions] = None, trigger: RunTrigger = RunTrigger.SCHEDULED) -> RunOutcome:
        options = options or RunOptions()
        started = _time.monotonic()
        run = self._open(trigger)
        outcome = RunOutcome(run_id=run.id, status=RunStatus.RUNNING, trigger=trigger)
        log = logger.bind(run_id=outcome.run_id, trigger=trigger.value)
        log.info("reminder_run_started", force=options.force, dry_run=options.dry_run)

        error_stack = None
        try:
            await asyncio.wait_for(
                self._execute(options, outcome), timeout=self.settings.reminder_run_budget_seconds
            )
            outcome.status = self.final_status(outcome)
        except asyncio.TimeoutError:
            self.db.rollback()
            outcome.status = RunStatus.TIMEOUT
            outcome.error_message = f"Run exceeded {self.settings.reminder_run_budget_seconds}s budget"
            log.error("reminder_run_timeout")
        except Exception as exc:
            self.db.rollback()
            outcome.status = RunStatus.FAILED
            outcome.error_message = str(exc) or exc.__class__.__name__
            error_stack = traceback.format_exc()
            log.exception("reminder_run_failed")

        self._close(outcome, started, error_stack)
        log.info(
            "reminder_run_finished",
            status=outcome.status.value,
            checked=outcome.appointments_checked,
            sent=outcome.reminders_sent,
            failed=outcome.reminders_failed,
            skipped=outcome.reminders_skipped,
            retries=outcome.retries_attempted,
            duration_ms=outcome.duration_ms,
        )
        return outcome

    async def run_manual(
        self,
        scope: CallerScope,
        force: bool = False,
        dry_run: bool = False,
        appointment_id: Optional[int] = None,
        kind: Optional[ReminderKind] = None,
    ) -> RunOutcome:
        """On-demand run, logged as 'manual' or, for dry runs, 'test'. Staff are limited to their clinic."""
        scope.ensure_staff()
        clinic_id = scope.clinic_filter()
        if appointment_id is not None:
            appointment = self.db.get(models.Appointment, appointment_id)
            if appointment is None:
                raise NotFound("Appointment", appointment_id)
            if clinic_id is not None and appointment.clinic_id != clinic_id:
                raise NotFound("Appointment", appointment_id)

        options = RunOptions(
            force=force, dry_run=dry_run, appointment_id=appointment_id,
            kind=ReminderKind(kind) if kind else None, clinic_id=clinic_id,
        )
        trigger = RunTrigger.TEST if dry_run else RunTrigger.MANUAL
        return await self.run(options, trigger)


def list_runs(db: Session, limit: int = 20, offset: int = 0, job_name: Optional[str] = None) -> List[models.ReminderRun]:
    query = db.query(models.ReminderRun)
    if job_name:
        query = query.filter(models.ReminderRun.job_name == job_name)
    return query.order_by(models.ReminderRun.started_at.desc(), models.ReminderRun.id.desc()).offset(offset).limit(limit).all()


def get_run(db: Session, run_id: int) -> models.ReminderRun:
    run = db.get(models.ReminderRun, run_id)
    if run is None:
        raise NotFound("Reminder run", run_id)
    return run
