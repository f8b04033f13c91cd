"""Display-name registry.

Display names are unique across users ignoring case and whitespace. The
DisplayName entity is keyed by the normalized name and records which uid
holds it; reserve_display_name is the only writer.
"""

import logging
import re
import time

from pony.orm import db_session, CommitException, TransactionIntegrityError

from errors import InvalidDisplayNameError, DisplayNameTakenError
from models import DisplayName

logger = logging.getLogger('divelog.display_names')

_WHITESPACE = re.compile(r'\s+')


def normalize_display_name(value):
    """Trim, lowercase and collapse internal whitespace runs to one space."""
    return _WHITESPACE.sub(' ', (value or '').strip().lower())


def reserve_display_name(uid, display_name, previous_display_name=None, validate_only=False):
    """Reserve `display_name` for `uid` in one serializable transaction.

    Raises InvalidDisplayNameError when the name normalizes to nothing and
    DisplayNameTakenError when another user holds it. When
    `previous_display_name` normalizes to a different key, that reservation
    is released in the same transaction. With `validate_only` nothing is
    written. Must be called outside any open db_session.
    """
    normalized = normalize_display_name(display_name)
    if not normalized:
        raise InvalidDisplayNameError('invalid_display_name')

    try:
        with db_session(serializable=True):
            existing = DisplayName.get_for_update(normalized=normalized)
            if existing is not None and existing.uid != uid:
                logger.info('Display name %r already held by another user (requested by uid=%s)', normalized, uid)
                raise DisplayNameTakenError('display_name_taken')
            if validate_only:
                return True

            now_ms = int(time.time() * 1000)
            if existing is None:
                DisplayName(normalized=normalized, uid=uid, display_name=display_name, updated_at=now_ms)
            else:
                existing.display_name = display_name
                existing.updated_at = now_ms

            if previous_display_name:
                previous = normalize_display_name(previous_display_name)
                if previous and previous != normalized:
                    old = DisplayName.get_for_update(normalized=previous)
                    # only release a reservation this user actually holds
                    if old is not None and old.uid == uid:
                        old.delete()
    except (TransactionIntegrityError, CommitException) as e:
        # a concurrent writer inserted the same key between our read and commit
        logger.info('Display name %r lost a concurrent reservation race for uid=%s: %s', normalized, uid, e)
        raise DisplayNameTakenError('display_name_taken')

    logger.debug('Reserved display name %r for uid=%s', normalized, uid)
    return True


@db_session
def reservation_owner(display_name):
    """Return the uid holding the normalized form of `display_name`, or None."""
    normalized = normalize_display_name(display_name)
    if not normalized:
        return None
    rec = DisplayName.get(normalized=normalized)
    return rec.uid if rec else None


def is_display_name_available(display_name):
    if not normalize_display_name(display_name):
        return False
    return reservation_owner(display_name) is None


def release_display_name(uid, display_name):
    """Delete the reservation of `display_name` if `uid` holds it. Returns True when one was removed."""
    normalized = normalize_display_name(display_name)
    if not normalized:
        return False
    with db_session(serializable=True):
        rec = DisplayName.get_for_update(normalized=normalized)
        if rec is None or rec.uid != uid:
            return False
        rec.delete()
    logger.debug('Released display name %r for uid=%s', normalized, uid)
    return True
