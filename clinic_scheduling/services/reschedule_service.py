"""
Patient reschedule requests.

A patient files a request (optionally with a preferred date and time), staff
look at up to three conflict-free suggestions and approve one, or reject the
request. Approval moves the session and resolves the request in a single
transaction.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterator, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.exceptions import (
    AlreadyResolved, Conflict, NotFound, SchedulingError, TooManyRequests, ValidationError,
)
from ..core.locks import resource_keys
from ..core.security import AuthorizationError, TokenPayload, UserRole
from ..models.reschedule_request import RescheduleRequest, RescheduleRequestStatus
from ..models.session import TherapySession
from ..schemas.scheduling import Slot
from . import notifications
from .notifications import NotificationSender
from .policy import SchedulingPolicy
from .session_service import SessionService
from .state_machine import RESCHEDULABLE, TERMINAL

logger = logging.getLogger(__name__)

# Tried after same-time slots, ordered by magnitude then earlier-first
SHIFT_OFFSETS_MINUTES = (-30, 30, -60, 60)


def candidate_starts(base: datetime, window_days: int) -> Iterator[datetime]:
    """Slot starts in suggestion order: same time first, then shifted times."""
    for day in range(window_days):
        yield base + timedelta(days=day)
    for day in range(window_days):
        for offset in SHIFT_OFFSETS_MINUTES:
            yield base + timedelta(days=day, minutes=offset)


def request_payload(request: RescheduleRequest) -> dict:
    return {
        "request_id": request.id,
        "session_id": request.session_id,
        "clinic_id": request.clinic_id,
        "patient_id": request.patient_id,
        "status": request.status.value,
        "reason": request.reason,
    }


class RescheduleService:
    def __init__(self, db: Session, locks=None, notifier: Optional[NotificationSender] = None):
        self.db = db
        self.sessions = SessionService(db, locks=locks, notifier=notifier)
        self.locks = self.sessions.locks
        self.notifier = self.sessions.notifier
        self.store = self.sessions.store
        self.directory = self.sessions.directory

    def create_request(
        self,
        actor: TokenPayload,
        session_id: int,
        reason: Optional[str],
        requested_date=None,
        requested_time=None,
        now: Optional[datetime] = None,
    ) -> RescheduleRequest:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to request a reschedule")
        if (requested_date is None) != (requested_time is None):
            raise ValidationError("Preferred date and time must be given together")

        session = self.store.get(session_id, actor.clinic_id)
        if actor.role == UserRole.PATIENT:
            self._ensure_own_patient(session.patient_id, actor)
        elif not actor.is_scheduler:
            raise AuthorizationError()
        if session.status in TERMINAL:
            raise ValidationError(f"Cannot reschedule a {session.status.value} session")

        policy = self.directory.get_policy(session.clinic_id)
        with self.locks.hold(resource_keys(session.clinic_id, patient_id=session.patient_id)):
            pending = (
                self.db.query(RescheduleRequest)
                .filter(
                    RescheduleRequest.session_id == session.id,
                    RescheduleRequest.status == RescheduleRequestStatus.PENDING,
                )
                .first()
            )
            if pending:
                raise Conflict("A pending request already exists for this session")

            self._check_weekly_limit(actor, session.clinic_id, policy, now or datetime.utcnow())
            if requested_date is not None:
                self._check_preferred_slot(session, policy, datetime.combine(requested_date, requested_time))

            request = RescheduleRequest(
                clinic_id=session.clinic_id,
                session_id=session.id,
                patient_id=session.patient_id,
                requested_by=actor.sub,
                requested_date=requested_date,
                requested_time=requested_time,
                reason=reason.strip(),
                status=RescheduleRequestStatus.PENDING,
            )
            self.db.add(request)
            self.db.commit()

        self.db.refresh(request)
        logger.info(f"Reschedule request {request.id} created for session {session.id}")
        self.notifier.send(notifications.REQUEST_CREATED, request_payload(request))
        return request

    def get_request(self, request_id: int, actor: TokenPayload) -> RescheduleRequest:
        request = (
            self.db.query(RescheduleRequest)
            .filter(
                RescheduleRequest.id == request_id,
                RescheduleRequest.clinic_id == actor.clinic_id,
            )
            .first()
        )
        if not request:
            raise NotFound(f"Reschedule request {request_id} not found")
        if actor.role == UserRole.PATIENT:
            self._ensure_own_patient(request.patient_id, actor)
        return request

    def list_requests(
        self,
        actor: TokenPayload,
        status: Optional[RescheduleRequestStatus] = None,
        updated_since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[RescheduleRequest]:
        """Query interface for polling clients; newest first."""
        query = self.db.query(RescheduleRequest).filter(RescheduleRequest.clinic_id == actor.clinic_id)
        if actor.role == UserRole.PATIENT:
            patient = self.directory.get_patient_for_user(actor.sub)
            if not patient:
                return []
            query = query.filter(RescheduleRequest.patient_id == patient.id)
        if status is not None:
            query = query.filter(RescheduleRequest.status == status)
        if updated_since is not None:
            query = query.filter(RescheduleRequest.updated_at >= updated_since)
        limit = min(200, max(1, limit))
        return query.order_by(RescheduleRequest.created_at.desc(), RescheduleRequest.id.desc()).limit(limit).all()

    def suggest_slots(self, request_id: int, actor: TokenPayload,
                      now: Optional[datetime] = None) -> List[Slot]:
        request = self.get_request(request_id, actor)
        session = self.store.get(request.session_id)
        # The preferred date moves the search window; the time of day stays the session's own
        base_date = request.requested_date or session.scheduled_at.date()
        return self.suggest_for_session(
            session, datetime.combine(base_date, session.scheduled_at.time()), now=now
        )

    def suggest_for_session(self, session: TherapySession, base: datetime,
                            now: Optional[datetime] = None) -> List[Slot]:
        """Up to ``SUGGESTION_LIMIT`` free slots around ``base``; read-only."""
        now = now or datetime.now()
        found = []
        seen = set()
        for start in candidate_starts(base, settings.SUGGESTION_WINDOW_DAYS):
            if start in seen or start == session.scheduled_at or start < now:
                continue
            seen.add(start)
            if self.sessions.slot_is_free(session, start, now=now):
                found.append(start)
                if len(found) >= settings.SUGGESTION_LIMIT:
                    break
        return [Slot(date=s.date(), time=s.time()) for s in found]

    def approve(self, request_id: int, actor: TokenPayload,
                chosen_slot: Optional[Slot] = None) -> TherapySession:
        request = self.get_request(request_id, actor)
        if request.is_resolved:
            raise AlreadyResolved(f"Reschedule request {request.id} is already {request.status.value}")

        if chosen_slot is not None:
            start = datetime.combine(chosen_slot.date, chosen_slot.time)
        elif request.requested_date and request.requested_time:
            start = datetime.combine(request.requested_date, request.requested_time)
        else:
            raise ValidationError("Choose a slot; the request has no preferred time")

        session = self.store.get(request.session_id)
        session = self.sessions.move_session(session, start, on_applied=self._approval(request, actor.sub))

        logger.info(f"Reschedule request {request.id} approved by user {actor.sub}")
        self.notifier.send(notifications.REQUEST_RESOLVED, request_payload(request))
        return session

    def auto_approve_requests(self, clinic_id: Optional[int] = None, now: Optional[datetime] = None,
                              limit: int = 100) -> List[int]:
        """Approve pending requests whose preferred slot is free under the clinic rules.

        Meant to run periodically. Requests without a preferred slot, or whose
        slot is taken, closed or inside the lead time, stay pending. Returns
        the ids of the approved requests.
        """
        now = now or datetime.now()
        query = self.db.query(RescheduleRequest).filter(
            RescheduleRequest.status == RescheduleRequestStatus.PENDING,
            RescheduleRequest.requested_date.isnot(None),
            RescheduleRequest.requested_time.isnot(None),
        )
        if clinic_id is not None:
            query = query.filter(RescheduleRequest.clinic_id == clinic_id)
        requests = query.order_by(RescheduleRequest.created_at, RescheduleRequest.id).limit(limit).all()

        approved = []
        for request in requests:
            session = self.store.get(request.session_id)
            start = datetime.combine(request.requested_date, request.requested_time)
            if session.status not in RESCHEDULABLE or start < now:
                continue
            if not self.sessions.slot_is_free(session, start, now=now):
                continue
            try:
                self.sessions.move_session(session, start, on_applied=self._approval(request, None))
            except SchedulingError as e:
                # Lost a race since the read-only check; try again on the next run
                logger.warning(f"Auto-approval of request {request.id} skipped: {e.detail}")
                continue
            approved.append(request.id)
            self.notifier.send(notifications.REQUEST_RESOLVED, request_payload(request))

        logger.info(f"Auto-approved {len(approved)} of {len(requests)} pending reschedule requests")
        return approved

    def reject(self, request_id: int, actor: TokenPayload) -> RescheduleRequest:
        request = self.get_request(request_id, actor)
        with self.locks.hold(resource_keys(request.clinic_id, patient_id=request.patient_id)):
            self.db.refresh(request)
            if request.is_resolved:
                raise AlreadyResolved(f"Reschedule request {request.id} is already {request.status.value}")
            request.status = RescheduleRequestStatus.REJECTED
            request.processed_by = actor.sub
            request.processed_at = datetime.utcnow()
            self.db.commit()

        self.db.refresh(request)
        logger.info(f"Reschedule request {request.id} rejected by user {actor.sub}")
        self.notifier.send(notifications.REQUEST_RESOLVED, request_payload(request))
        return request

    def cleanup_stale_requests(self, actor: TokenPayload, now: Optional[datetime] = None) -> int:
        """Cancel pending requests older than the clinic's stale-request window."""
        now = now or datetime.utcnow()
        hours = self.directory.get_policy(actor.clinic_id).stale_request_hours(settings.STALE_REQUEST_HOURS)
        cutoff = now - timedelta(hours=hours)
        cancelled = (
            self.db.query(RescheduleRequest)
            .filter(
                RescheduleRequest.clinic_id == actor.clinic_id,
                RescheduleRequest.status == RescheduleRequestStatus.PENDING,
                RescheduleRequest.created_at < cutoff,
            )
            .update(
                {
                    RescheduleRequest.status: RescheduleRequestStatus.CANCELLED,
                    RescheduleRequest.processed_by: actor.sub,
                    RescheduleRequest.processed_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        logger.info(f"Cancelled {cancelled} stale reschedule requests in clinic {actor.clinic_id}")
        return cancelled

    @staticmethod
    def _approval(request: RescheduleRequest, processed_by: Optional[int]):
        """Callback that marks ``request`` approved inside the session move."""
        def mark_approved(_session):
            # Re-read under the lock: another approver may have won
            if request.status != RescheduleRequestStatus.PENDING:
                raise AlreadyResolved(f"Reschedule request {request.id} is already {request.status.value}")
            request.status = RescheduleRequestStatus.APPROVED
            request.processed_by = processed_by
            request.processed_at = datetime.utcnow()
        return mark_approved

    def _check_weekly_limit(self, actor: TokenPayload, clinic_id: int, policy: SchedulingPolicy,
                            now: datetime) -> None:
        limit = policy.max_requests_per_week
        if not limit:
            return
        filed = (
            self.db.query(RescheduleRequest)
            .filter(
                RescheduleRequest.clinic_id == clinic_id,
                RescheduleRequest.requested_by == actor.sub,
                RescheduleRequest.created_at >= now - timedelta(days=7),
            )
            .count()
        )
        if filed >= limit:
            raise TooManyRequests(f"At most {limit} reschedule requests can be filed per week")

    def _check_preferred_slot(self, session: TherapySession, policy: SchedulingPolicy,
                              start: datetime) -> None:
        policy.check_slot(session.therapy_type, start)
        end = self.sessions.occupied_until(session.clinic_id, session.therapy_type, start,
                                           session.duration_minutes)
        rooms = self.sessions.resolver.rooms_for_window(
            session.clinic_id, session.therapy_type, start, end, exclude_session_id=session.id
        )
        if not rooms:
            raise Conflict(f"No room capacity near {start:%Y-%m-%d %H:%M}")

    def _ensure_own_patient(self, patient_id: int, actor: TokenPayload) -> None:
        patient = self.directory.get_patient_for_user(actor.sub)
        if not patient or patient.id != patient_id:
            raise AuthorizationError("Not allowed to access this session")
