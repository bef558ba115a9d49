"""
Reference Number Generator

Generates sequential, human-readable references:
  - Reviews:   AAPRP-{year}-{seq}        (e.g. AAPRP-2026-001, AAPRP-2026-042)
  - Findings:  {reviewRef}-F{seq}        (e.g. AAPRP-2026-001-F01)

Review references are sequential per calendar year.  The counter row is
locked for update so two concurrent requests cannot receive the same value;
the caller's transaction owns the commit.
"""

from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from peer_review.models import db
from peer_review.models.audit import ReferenceSequence
from peer_review.models.finding import Finding

REVIEW_PREFIX = "AAPRP"


def _locked_sequence(prefix: str, year: int):
    return db.session.execute(
        select(ReferenceSequence)
        .where(ReferenceSequence.prefix == prefix, ReferenceSequence.year == year)
        .with_for_update()
    ).scalar_one_or_none()


def _next_sequence_value(prefix: str, year: int) -> int:
    seq = _locked_sequence(prefix, year)
    if seq is None:
        # first value of the year; a concurrent request may insert the row first
        try:
            with db.session.begin_nested():
                seq = ReferenceSequence(prefix=prefix, year=year, last_value=0)
                db.session.add(seq)
        except IntegrityError:
            seq = _locked_sequence(prefix, year)
    seq.last_value += 1
    db.session.flush()
    return seq.last_value


def generate_review_reference(year: int | None = None) -> str:
    """
    Generate the next review reference for *year* (defaults to the current year).
    Format: AAPRP-{YEAR}-{SEQ}, SEQ zero-padded to 3 digits.
    """
    year = year or datetime.now(timezone.utc).year
    return f"{REVIEW_PREFIX}-{year}-{_next_sequence_value(REVIEW_PREFIX, year):03d}"


def generate_finding_reference(review_id: int, review_reference: str) -> str:
    """
    Generate the next finding reference within a review.
    Format: {reviewRef}-F{SEQ}, SEQ zero-padded to 2 digits.
    """
    count = db.session.execute(
        select(func.count(Finding.id)).where(Finding.review_id == review_id)
    ).scalar() or 0
    return f"{review_reference}-F{count + 1:02d}"
