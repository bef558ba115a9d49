"""
Aggregate lookup helpers.

Every service that mutates a review, finding or CAP loads its aggregate root
through ``get_for_update`` so two concurrent mutations serialise on the row
lock (``SELECT ... FOR UPDATE``; SQLite ignores the clause).  Missing rows raise
NotFoundError, which blueprints answer with 404.

Usage:
    review = get_for_update(Review, review_id)
    finding = get_or_404(Finding, finding_id)
"""

import logging

from sqlalchemy import select

from peer_review.core.exceptions import NotFoundError
from peer_review.models import db

logger = logging.getLogger(__name__)


def get_or_404(model, pk: int):
    """Fetch *model* by primary key or raise NotFoundError."""
    instance = db.session.get(model, pk)
    if instance is None:
        logger.debug("get_or_404: %s id=%s not found", model.__name__, pk)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return instance


def get_for_update(model, pk: int):
    """Fetch *model* by primary key with a row lock, or raise NotFoundError.

    The lock lasts until the caller's commit or rollback.  ``populate_existing``
    refreshes an instance already in the identity map with the locked values.
    """
    stmt = (
        select(model)
        .where(model.id == pk)
        .with_for_update(of=model)
        .execution_options(populate_existing=True)
    )
    instance = db.session.execute(stmt).scalar_one_or_none()
    if instance is None:
        logger.debug("get_for_update: %s id=%s not found", model.__name__, pk)
        raise NotFoundError(resource=model.__name__, resource_id=pk)
    return instance
