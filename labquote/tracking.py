"""
Tracking synchronization gate.

Decides when the carrier may be polled and feeds poll results back into
the quote lifecycle. Manual refreshes are rate limited per user through
users.tracking_refreshed_at; the stale check runs at most once per login
session and leaves further automatic refreshes to the periodic job.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List

from flask import current_app
from sqlalchemy import or_

from labquote import db
from labquote.errors import CarrierError, CooldownActive, NotFound
from labquote.lifecycle import (
    ACTIVE_TRACKING_STATUSES, ADMIN, CARRIER, TRANSITIONS, QuoteEvent, next_status,
)
from labquote.models.activity_log import ActivityLogEntry, ActivityType
from labquote.models.quote import Quote, QuoteStatus
from labquote.models.tracking_event import SOURCE_CARRIER_SYNC, SOURCE_MANUAL, TrackingEvent
from labquote.models.user import User
from labquote.services.carrier import DELIVERED, IN_TRANSIT, PollResult

STALE_CHECK_SESSION_KEY = "tracking_stale_checked"


@dataclass
class SyncReport:
    source: str
    polled: int = 0
    updated: int = 0
    failed: int = 0
    results: List[dict] = field(default_factory=list)

    def to_dict(self):
        return {
            "source": self.source,
            "polled": self.polled,
            "updated": self.updated,
            "failed": self.failed,
            "results": self.results,
        }


def visible_quotes(actor):
    return Quote.visible_to(actor)


def active_tracking_filter():
    return (
        Quote.tracking_number.isnot(None),
        Quote.tracking_number != "",
        Quote.status.in_([s.value for s in ACTIVE_TRACKING_STATUSES]),
    )


def carrier_path(status, carrier_status):
    """Carrier events that move `status` toward `carrier_status`.

    Only edges present in the transition table are taken, so a quote that
    is already delivered, testing or completed gets an empty path and the
    poll is recorded as an observation without a status change.
    """
    wanted = []
    if carrier_status in (IN_TRANSIT, DELIVERED):
        wanted.append(QuoteEvent.CARRIER_IN_TRANSIT)
    if carrier_status == DELIVERED:
        wanted.append(QuoteEvent.CARRIER_DELIVERED)

    path = []
    current = QuoteStatus(status)
    for event in wanted:
        transition = TRANSITIONS.get((current, event))
        if transition is None:
            continue
        path.append(event)
        current = transition.target
    return path


class TrackingGate:
    def __init__(self, carrier, clock=datetime.utcnow, cooldown=timedelta(minutes=60), stale_after=timedelta(hours=4)):
        self.carrier = carrier
        self.clock = clock
        self.cooldown = cooldown
        self.stale_after = stale_after

    @classmethod
    def from_app(cls, app=None, clock=datetime.utcnow):
        app = app or current_app
        return cls(
            app.extensions["labquote.carrier"],
            clock=clock,
            cooldown=timedelta(minutes=app.config["TRACKING_COOLDOWN_MINUTES"]),
            stale_after=timedelta(hours=app.config["TRACKING_STALE_HOURS"]),
        )

    # --- cooldown ---

    def cooldown_remaining(self, actor):
        if actor.role == ADMIN:
            return 0
        user = db.session.get(User, actor.user_id)
        if user is None or user.tracking_refreshed_at is None:
            return 0
        remaining = (user.tracking_refreshed_at + self.cooldown) - self.clock()
        return max(0, int(remaining.total_seconds()))

    def _claim_cooldown(self, actor, now):
        """Stamp the refresh time; for non-admins only if the window has passed (compare-and-set)."""
        stmt = db.update(User).where(User.id == actor.user_id).values(tracking_refreshed_at=now)
        if actor.role != ADMIN:
            threshold = now - self.cooldown
            stmt = stmt.where(or_(User.tracking_refreshed_at.is_(None), User.tracking_refreshed_at <= threshold))
        result = db.session.execute(stmt.execution_options(synchronize_session=False))
        if result.rowcount != 1:
            db.session.rollback()
            raise CooldownActive(max(1, self.cooldown_remaining(actor)))
        # stamp survives even if the poll fails
        db.session.commit()

    # --- polling entry points ---

    def manual_refresh(self, actor, tracking_number=None):
        now = self.clock()
        if tracking_number:
            quotes = [self._visible_tracked(actor, tracking_number)]
        else:
            quotes = visible_quotes(actor).filter(*active_tracking_filter()).all()
        self._claim_cooldown(actor, now)
        current_app.logger.info(
            "[TRACKING] manual refresh user_id=%s role=%s quotes=%d",
            actor.user_id, actor.role, len(quotes),
        )
        return self._poll_and_apply(quotes, SOURCE_MANUAL, actor.user_id)

    def find_stale(self, scope_query=None):
        threshold = self.clock() - self.stale_after
        query = scope_query if scope_query is not None else Quote.query
        return (
            query.filter(*active_tracking_filter())
            .filter(or_(Quote.tracking_updated_at.is_(None), Quote.tracking_updated_at < threshold))
            .order_by(Quote.id)
            .all()
        )

    def refresh_stale_once(self, actor, session_state):
        """
        Poll every stale quote visible to `actor` in one batch, the first
        time this is called for a session. Returns None when the session
        already checked or nothing was stale.
        """
        if session_state.get(STALE_CHECK_SESSION_KEY):
            return None
        session_state[STALE_CHECK_SESSION_KEY] = True
        stale = self.find_stale(visible_quotes(actor))
        if not stale:
            return None
        current_app.logger.info("[TRACKING] stale check user_id=%s stale=%d", actor.user_id, len(stale))
        return self._poll_and_apply(stale, SOURCE_CARRIER_SYNC, actor.user_id)

    def sync_all(self, source=SOURCE_CARRIER_SYNC):
        quotes = Quote.query.filter(*active_tracking_filter()).order_by(Quote.id).all()
        current_app.logger.info("[TRACKING] periodic sync quotes=%d", len(quotes))
        return self._poll_and_apply(quotes, source, None)

    # --- internals ---

    def _visible_tracked(self, actor, tracking_number):
        quote = (
            visible_quotes(actor)
            .filter(Quote.tracking_number == tracking_number)
            .order_by(Quote.id.desc())
            .first()
        )
        if quote is None:
            raise NotFound(f"no quote with tracking number {tracking_number}")
        return quote

    def _poll_and_apply(self, quotes, source, user_id):
        report = SyncReport(source=source)
        if not quotes:
            return report
        numbers = sorted({q.tracking_number for q in quotes})
        try:
            results = self.carrier.poll_many(numbers)
        except CarrierError as e:
            current_app.logger.warning("[TRACKING] carrier poll failed source=%s error=%s", source, e.message)
            for quote in quotes:
                self._record_failure(quote, source, e.message, report)
            db.session.commit()
            raise
        by_number = {r.tracking_number: r for r in results}
        for quote in quotes:
            result = by_number.get(quote.tracking_number) or PollResult(
                tracking_number=quote.tracking_number, success=False, error="no result returned"
            )
            report.polled += 1
            if not result.success:
                self._record_failure(quote, source, result.error, report)
                continue
            self._apply_success(quote, result, source, user_id, report)
        db.session.commit()
        current_app.logger.info(
            "[TRACKING] sync done source=%s polled=%d updated=%d failed=%d",
            source, report.polled, report.updated, report.failed,
        )
        return report

    def _record_failure(self, quote, source, error, report):
        current_app.logger.warning(
            "[TRACKING] poll failed quote_id=%s tracking=%s error=%s", quote.id, quote.tracking_number, error
        )
        db.session.add(TrackingEvent(
            quote_id=quote.id,
            status=quote.status,
            tracking_number=quote.tracking_number,
            source=source,
            details={"success": False, "error": error},
            created_at=self.clock(),
        ))
        report.failed += 1
        report.results.append({
            "quote_id": quote.id,
            "tracking_number": quote.tracking_number,
            "success": False,
            "error": error,
        })

    def _apply_success(self, quote, result, source, user_id, report):
        now = self.clock()
        old_status = quote.status
        path = carrier_path(old_status, result.new_status)

        status = old_status
        for event in path:
            target = next_status(status, event, CARRIER).value
            if not self._advance(quote.id, status, target, now):
                # someone else moved it; keep whatever is persisted now
                break
            status = target
        if not path or status == old_status:
            db.session.execute(
                db.update(Quote).where(Quote.id == quote.id)
                .values(tracking_updated_at=now)
                .execution_options(synchronize_session=False)
            )
        db.session.refresh(quote)

        db.session.add(TrackingEvent(
            quote_id=quote.id,
            status=quote.status,
            tracking_number=quote.tracking_number,
            source=source,
            details={
                "success": True,
                "carrier_status": result.new_status,
                "old_status": old_status,
                "message": result.message,
            },
            created_at=now,
        ))
        if quote.status != old_status:
            db.session.add(ActivityLogEntry.build(
                quote.id, user_id, ActivityType.STATUS_CHANGE,
                f"Status changed from {old_status} to {quote.status} via tracking update",
                created_at=now,
                old_status=old_status,
                new_status=quote.status,
                source=source,
                tracking_number=quote.tracking_number,
            ))
            report.updated += 1
            current_app.logger.info(
                "[TRACKING] quote_id=%s %s->%s source=%s", quote.id, old_status, quote.status, source
            )
        report.results.append({
            "quote_id": quote.id,
            "tracking_number": quote.tracking_number,
            "success": True,
            "old_status": old_status,
            "new_status": quote.status,
        })

    def _advance(self, quote_id, from_status, to_status, now):
        result = db.session.execute(
            db.update(Quote)
            .where(Quote.id == quote_id, Quote.status == from_status)
            .values(status=to_status, tracking_updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
