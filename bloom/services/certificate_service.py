"""
bloom.services.certificate_service — Top-N Certificates
========================================================

Certificates go to the top recipients of the final ranking once an event
is completed.  Issuance is idempotent: a rank or user that already holds
a certificate for the event is skipped, so a repeated call issues nothing
new.  Fewer distinct recipients than N means fewer certificates.

Certificate numbers look like ``0042-20250131-TOP1-9F3A61C2``: event id,
event end date, rank and a random suffix.  The number column is unique;
a collision just draws a new suffix.  An admin can regenerate a
certificate, which swaps in a fresh number and restarts its validity.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import date, datetime

from sqlalchemy import Engine, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bloom import constants
from bloom.database.engine import get_session
from bloom.database.models import (
    Certificate,
    Enrollment,
    EnrollmentStatus,
    EnrollmentType,
    Event,
    EventStatus,
)
from bloom.engine.calendar import add_years
from bloom.engine.events import Topic
from bloom.engine.ranking import RankEntry
from bloom.errors import (
    BloomError,
    NotFoundError,
    ServiceResult,
    StateConflictError,
)
from bloom.services.approval_service import require_admin
from bloom.services.outbox_service import publish
from bloom.services.ranking_service import compute_final_ranking

logger = logging.getLogger(__name__)

_NUMBER_ATTEMPTS = 3
MAX_CERTIFICATE_RANK = len(constants.HONOR_LEVELS)


@dataclass(frozen=True, slots=True)
class CertificateVerification:
    certificate_number: str
    valid: bool
    reason: str
    certificate: Certificate | None = None

    @property
    def honor_level(self) -> str | None:
        return self.certificate.honor_level if self.certificate else None

    @property
    def rank_display(self) -> str | None:
        return constants.rank_display(self.certificate.rank) if self.certificate else None


def _number_for(event: Event, rank: int) -> str:
    return f"{event.id:04d}-{event.end_date:%Y%m%d}-TOP{rank}-{secrets.token_hex(4).upper()}"


def _taken(session: Session, event_id: int, rank: int, user_id: int) -> bool:
    hit = session.scalar(
        select(Certificate.id).where(
            Certificate.event_id == event_id,
            (Certificate.rank == rank) | (Certificate.user_id == user_id),
        ).limit(1)
    )
    return hit is not None


def issue_for_ranking(
    session: Session,
    event: Event,
    ranking: list[RankEntry],
    *,
    n: int = constants.CERTIFICATE_TOP_N,
    now: datetime | None = None,
    validity_years: int = constants.CERTIFICATE_VALIDITY_YEARS,
) -> list[Certificate]:
    """Insert certificates for ranks ``1..min(n, 3, len(ranking))``.

    Returns only the certificates created by this call.
    """
    now = now or datetime.now()
    limit = max(0, min(n, MAX_CERTIFICATE_RANK, len(ranking)))
    issued: list[Certificate] = []

    for entry in ranking[:limit]:
        if _taken(session, event.id, entry.rank, entry.user_id):
            continue

        for _ in range(_NUMBER_ATTEMPTS):
            certificate = Certificate(
                event_id=event.id,
                user_id=entry.user_id,
                rank=entry.rank,
                total_amount=entry.total_amount,
                certificate_number=_number_for(event, entry.rank),
                honor_level=constants.honor_level(entry.rank),
                issued_at=now,
                expires_at=add_years(event.end_date, validity_years),
            )
            try:
                with session.begin_nested():   # SAVEPOINT
                    session.add(certificate)
                    session.flush()
            except IntegrityError:
                if _taken(session, event.id, entry.rank, entry.user_id):
                    # Issued concurrently.
                    certificate = None
                    break
                logger.warning("Certificate number collision for event %d rank %d, retrying",
                               event.id, entry.rank)
                continue
            break
        else:
            raise StateConflictError("Could not allocate a unique certificate number")

        if certificate is None:
            continue
        issued.append(certificate)
        publish(session, Topic.CERTIFICATE_ISSUED, {
            "certificate_id": certificate.id,
            "certificate_number": certificate.certificate_number,
            "event_id": event.id,
            "user_id": entry.user_id,
            "rank": entry.rank,
            "honor_level": certificate.honor_level,
        }, now=now)
        logger.info("Certificate %s issued to user %d (%s) for event %d",
                    certificate.certificate_number, entry.user_id,
                    constants.rank_display(entry.rank), event.id)

    return issued


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def issue_top_n(
    engine: Engine,
    *,
    event_id: int,
    n: int = constants.CERTIFICATE_TOP_N,
    now: datetime | None = None,
    validity_years: int = constants.CERTIFICATE_VALIDITY_YEARS,
) -> ServiceResult[list[Certificate]]:
    """Issue the top-*n* certificates of a completed event.

    A second call on the same event succeeds with an empty list.
    """
    try:
        with get_session(engine) as session:
            event = session.get(Event, event_id)
            if event is None:
                raise NotFoundError(f"Event {event_id} not found")
            if event.status != EventStatus.COMPLETED:
                raise StateConflictError("Certificates are issued only for completed events")
            participants = session.scalar(
                select(func.count(Enrollment.id)).where(
                    Enrollment.event_id == event_id,
                    Enrollment.enrollment_type == EnrollmentType.PARTICIPANT,
                    Enrollment.status != EnrollmentStatus.CANCELLED,
                )
            )
            if not participants:
                raise StateConflictError("Event has no participants")

            issued = issue_for_ranking(
                session, event, compute_final_ranking(session, event),
                n=n, now=now, validity_years=validity_years,
            )
        return ServiceResult.success(issued)
    except BloomError as exc:
        return ServiceResult.failure(exc)


def event_certificates(engine: Engine, event_id: int) -> list[Certificate]:
    with get_session(engine) as session:
        return list(session.scalars(
            select(Certificate).where(Certificate.event_id == event_id).order_by(Certificate.rank)
        ).all())


def user_certificates(engine: Engine, user_id: int) -> list[Certificate]:
    """All certificates of *user_id*, newest first."""
    with get_session(engine) as session:
        return list(session.scalars(
            select(Certificate)
            .where(Certificate.user_id == user_id)
            .order_by(Certificate.issued_at.desc(), Certificate.id.desc())
        ).all())


def verify_certificate(engine: Engine, number: str, today: date | None = None) -> CertificateVerification:
    """Check that *number* exists, belongs to a completed event and is not expired."""
    today = today or date.today()
    with get_session(engine) as session:
        certificate = session.scalar(
            select(Certificate).where(Certificate.certificate_number == number.strip().upper())
        )
        if certificate is None:
            return CertificateVerification(number, False, "Certificate not found")
        event = session.get(Event, certificate.event_id)
        if event is None or event.status != EventStatus.COMPLETED:
            return CertificateVerification(number, False, "Event is not completed", certificate)
        if certificate.expires_at < today:
            return CertificateVerification(number, False, "Certificate has expired", certificate)
        return CertificateVerification(number, True, "Valid", certificate)


def regenerate_certificate(
    engine: Engine,
    *,
    certificate_number: str,
    admin_id: int,
    now: datetime | None = None,
    validity_years: int = constants.CERTIFICATE_VALIDITY_YEARS,
) -> ServiceResult[Certificate]:
    """Reissue a certificate under a fresh number (admin only).

    The old number stops verifying.  The validity is counted again from
    the event's end date, and the admin and time are recorded.
    """
    now = now or datetime.now()
    try:
        with get_session(engine) as session:
            require_admin(session, admin_id)
            certificate = session.scalar(
                select(Certificate)
                .where(Certificate.certificate_number == certificate_number.strip().upper())
                .with_for_update()
            )
            if certificate is None:
                raise NotFoundError(f"Certificate {certificate_number} not found")
            event = session.get(Event, certificate.event_id)
            previous = certificate.certificate_number

            for _ in range(_NUMBER_ATTEMPTS):
                try:
                    with session.begin_nested():   # SAVEPOINT
                        certificate.certificate_number = _number_for(event, certificate.rank)
                        session.flush()
                except IntegrityError:
                    logger.warning("Certificate number collision regenerating %s, retrying",
                                   previous)
                    continue
                break
            else:
                raise StateConflictError("Could not allocate a unique certificate number")

            certificate.issued_at = now
            certificate.expires_at = add_years(event.end_date, validity_years)
            certificate.regenerated_at = now
            certificate.regenerated_by_id = admin_id
            publish(session, Topic.CERTIFICATE_REGENERATED, {
                "certificate_id": certificate.id,
                "certificate_number": certificate.certificate_number,
                "previous_number": previous,
                "event_id": event.id,
                "user_id": certificate.user_id,
                "regenerated_by": admin_id,
            }, now=now)

        logger.info("Certificate %s regenerated as %s by admin %d",
                    previous, certificate.certificate_number, admin_id)
        return ServiceResult.success(certificate)
    except BloomError as exc:
        return ServiceResult.failure(exc)
