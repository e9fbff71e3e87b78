# Overview: Document status machine and the at-most-once posting guard.

"""
Stockbook Document Lifecycle

================================================================================
PURPOSE: One state machine for every postable document (purchase, sale,
purchase return, sale return)
================================================================================

STATE MACHINE:
    draft -> pending -> approved -> completed
    draft / pending -> approved         (posts)
    draft / pending -> completed        (posts; single-step processing)
    approved -> completed               (no posting, already posted)
    draft / pending / approved -> cancelled

    completed and cancelled are terminal.

POSTING RULES (NON-NEGOTIABLE):
1. Only the FIRST transition into approved/completed posts to the stock and
   account ledgers.
2. posted_at is claimed with a conditional UPDATE (... WHERE posted_at IS NULL)
   so two concurrent approvals cannot both post.
3. Re-approving a posted document raises DuplicatePostingError; it is never
   a silent no-op.
4. Cancelling a posted (approved) document writes compensating stock
   movements and reversing journal entries. Nothing is deleted.

Callers run transition() inside one unit of work together with the posting
callbacks, so a failed posting leaves the status untouched.
"""

from __future__ import annotations

from sqlalchemy import update

from ..extensions import db
from ..errors import DuplicatePostingError, InvalidTransitionError, ReferentialGapError
from .concurrency import lock_for_update, run_in_unit_of_work
from stockbook.time_utils import utcnow


DRAFT = "draft"
PENDING = "pending"
APPROVED = "approved"
COMPLETED = "completed"
CANCELLED = "cancelled"

VALID_STATUSES = {DRAFT, PENDING, APPROVED, COMPLETED, CANCELLED}
POSTING_STATUSES = {APPROVED, COMPLETED}
TERMINAL_STATUSES = {COMPLETED, CANCELLED}

VALID_TRANSITIONS = {
    (DRAFT, PENDING),
    (DRAFT, APPROVED),
    (PENDING, APPROVED),
    (DRAFT, COMPLETED),
    (PENDING, COMPLETED),
    (APPROVED, COMPLETED),
    (DRAFT, CANCELLED),
    (PENDING, CANCELLED),
    (APPROVED, CANCELLED),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return (from_status, to_status) in VALID_TRANSITIONS


def is_posted(document) -> bool:
    return document.posted_at is not None


def _claim_posting(document) -> None:
    """
    Atomically mark the document as posted.

    The UPDATE matches only while posted_at is still NULL; a zero rowcount
    means another unit of work posted it first.
    """
    model = type(document)
    now = utcnow()
    result = db.session.execute(
        update(model)
        .where(model.id == document.id, model.posted_at.is_(None))
        .values(posted_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.refresh(document)
        raise DuplicatePostingError(document.document_type, document.id, document.status)
    document.posted_at = now


def transition(
    document,
    to_status: str,
    *,
    user_id: int | None = None,
    reason: str | None = None,
    post=None,
    reverse=None,
):
    """
    Move a document to to_status, posting or reversing as the edge requires.

    Args:
        document: a PostableDocumentMixin model instance
        to_status: target status
        user_id: actor recorded on approval/cancellation
        reason: cancellation reason
        post: callable(document) writing stock and ledger effects
        reverse: callable(document) writing compensating effects

    Raises:
        DuplicatePostingError: posting edge requested on a posted document
        InvalidTransitionError: edge not in VALID_TRANSITIONS

    Does not commit.
    """
    from_status = document.status

    if to_status in POSTING_STATUSES and is_posted(document) and not can_transition(from_status, to_status):
        raise DuplicatePostingError(document.document_type, document.id, from_status)

    if not can_transition(from_status, to_status):
        raise InvalidTransitionError(document.document_type, document.id, from_status, to_status)

    now = utcnow()

    if to_status in POSTING_STATUSES and not is_posted(document):
        _claim_posting(document)
        if post is not None:
            post(document)

    if to_status == CANCELLED and is_posted(document):
        if reverse is not None:
            reverse(document)

    if to_status == APPROVED or (to_status == COMPLETED and document.approved_at is None):
        document.approved_at = now
        document.approved_by_user_id = user_id
    if to_status == COMPLETED:
        document.completed_at = now
    if to_status == CANCELLED:
        document.cancelled_at = now
        document.cancelled_by_user_id = user_id
        document.cancel_reason = reason

    document.status = to_status
    db.session.flush()
    return document


def load_for_update(model, document_id: int):
    """Load a document row under SELECT ... FOR UPDATE."""
    document = lock_for_update(model.query.filter_by(id=document_id)).first()
    if document is None:
        raise ReferentialGapError(getattr(model, "document_type", model.__tablename__), document_id)
    return document


def run_transition(
    model,
    document_id: int,
    to_status: str,
    *,
    user_id: int | None = None,
    reason: str | None = None,
    post=None,
    reverse=None,
):
    """
    Standalone entry point: lock the document, transition it and commit, all
    in one unit of work. Any failure rolls back the status change together
    with every stock and ledger write made by post/reverse.
    """
    def _op():
        document = load_for_update(model, document_id)
        return transition(
            document,
            to_status,
            user_id=user_id,
            reason=reason,
            post=post,
            reverse=reverse,
        )

    return run_in_unit_of_work(_op)
