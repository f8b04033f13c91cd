"""User profiles, instructor applications and realtime profile updates.

Every function that changes a profile publishes the new snapshot to
``profile_feed`` after its transaction commits, so subscribers (the
server-sent events stream, SessionContext) see committed state only.
"""

import logging
import threading
import time

from pony.orm import db_session, select
from werkzeug.utils import secure_filename

from display_names import release_display_name, reserve_display_name
from errors import (DiveLogError, AuthorizationError, ConflictError, ForbiddenError,
                    NotFoundError, ValidationError)
from models import User, now_iso
from storage import get_store, parse_image_data_url, extension_for

logger = logging.getLogger('divelog.profiles')

MAX_BIO_LENGTH = 500


class Subscription:
    """Handle returned by ProfileFeed.subscribe; call cancel() to release it."""

    def __init__(self, feed, uid, callback):
        self._feed = feed
        self.uid = uid
        self.callback = callback
        self.active = True

    def cancel(self):
        if self.active:
            self.active = False
            self._feed._remove(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.cancel()


class ProfileFeed:
    """In-process publish/subscribe channel for profile snapshots keyed by uid."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers = {}

    def subscribe(self, uid, callback):
        sub = Subscription(self, uid, callback)
        with self._lock:
            self._subscribers.setdefault(uid, []).append(sub)
        return sub

    def _remove(self, sub):
        with self._lock:
            subs = self._subscribers.get(sub.uid, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._subscribers.pop(sub.uid, None)

    def subscriber_count(self, uid):
        with self._lock:
            return len(self._subscribers.get(uid, []))

    def publish(self, uid, profile):
        with self._lock:
            subs = list(self._subscribers.get(uid, []))
        for sub in subs:
            if not sub.active:
                continue
            try:
                sub.callback(profile)
            except Exception:
                # a broken subscriber must not break the write that published
                logger.exception('Profile subscriber failed for uid=%s', uid)


profile_feed = ProfileFeed()


def _require_uid(uid):
    if not uid:
        raise AuthorizationError('User not authenticated')


@db_session
def get_profile(uid):
    """Return the profile dict for `uid`, or None when no profile exists."""
    user = User.get(uid=uid) if uid else None
    return user.to_dict() if user else None


def create_user_profile_if_missing(uid, email='', display_name='', feed=None):
    """Create a diver profile on first sign-in and ensure its name reservation.

    A failed reservation (name taken by someone else) is logged and does not
    prevent sign-in.
    """
    _require_uid(uid)
    feed = feed or profile_feed
    with db_session:
        user = User.get(uid=uid)
        created = user is None
        if created:
            user = User(uid=uid, email=email or '', display_name=(display_name or '').strip(),
                        role='diver', application_status='none', created_at=now_iso())
            logger.info('Created profile for uid=%s', uid)
        effective_name = (display_name or '').strip() or user.display_name
        profile = user.to_dict()

    if effective_name:
        try:
            reserve_display_name(uid, effective_name)
        except DiveLogError as e:
            logger.warning('Failed to ensure display name reservation for uid=%s: %s', uid, e)
    if created:
        feed.publish(uid, profile)
    return profile


def _profile_updates(display_name, bio):
    updates = {}
    if isinstance(display_name, str):
        updates['display_name'] = display_name.strip()
    if isinstance(bio, str):
        if len(bio) > MAX_BIO_LENGTH:
            raise ValidationError(f'bio is limited to {MAX_BIO_LENGTH} characters', code='invalid_profile')
        updates['bio'] = bio
    return updates


def update_profile_fields(uid, display_name=None, bio=None, feed=None):
    """Write display name and/or bio without touching the name registry."""
    _require_uid(uid)
    updates = _profile_updates(display_name, bio)
    with db_session:
        user = User.get(uid=uid)
        if not user:
            raise NotFoundError('user not found')
        if not updates:
            return user.to_dict()
        user.set(updated_at=now_iso(), **updates)
        profile = user.to_dict()
    (feed or profile_feed).publish(uid, profile)
    return profile


def update_account_info(uid, display_name=None, bio=None, feed=None):
    """Change display name and/or bio.

    Every field is validated before the name registry is touched. A new
    display name is then reserved, releasing the previous one, so a taken
    name leaves the profile untouched. If the profile write still fails the
    registry is put back to match the unchanged profile.
    """
    _require_uid(uid)
    _profile_updates(display_name, bio)
    if display_name is None:
        return update_profile_fields(uid, bio=bio, feed=feed)

    current = get_profile(uid)
    if current is None:
        raise NotFoundError('user not found')
    previous = current.get('display_name') or None
    reserve_display_name(uid, display_name, previous_display_name=previous)
    try:
        return update_profile_fields(uid, display_name=display_name, bio=bio, feed=feed)
    except Exception:
        _restore_reservation(uid, previous, display_name)
        raise


def _restore_reservation(uid, previous, attempted):
    if previous:
        try:
            reserve_display_name(uid, previous, previous_display_name=attempted)
            return
        except DiveLogError as e:
            logger.warning('Could not restore display name reservation for uid=%s: %s', uid, e)
    release_display_name(uid, attempted)


def update_profile_photo(uid, data_url, store=None, feed=None):
    """Upload a new avatar from a data URL and delete the previous one."""
    _require_uid(uid)
    store = store or get_store()
    mime, raw = parse_image_data_url(data_url)
    path = f'profile/{uid}/avatar-{int(time.time() * 1000)}.{extension_for(mime, default="jpg")}'
    url = store.put_bytes(path, raw)
    try:
        with db_session:
            user = User.get(uid=uid)
            if not user:
                raise NotFoundError('user not found')
            previous_path = user.photo_path
            user.set(photo_url=url, photo_path=path, updated_at=now_iso())
            profile = user.to_dict()
    except Exception:
        store.delete_quietly(path)
        raise
    if previous_path and previous_path != path:
        store.delete_quietly(previous_path)
    (feed or profile_feed).publish(uid, profile)
    return profile


def subscribe_to_profile(uid, callback, feed=None):
    """Subscribe `callback` to profile changes for `uid`.

    The current profile is delivered immediately when it exists. The caller
    owns the returned Subscription and must cancel() it on sign-out or
    teardown.
    """
    feed = feed or profile_feed
    sub = feed.subscribe(uid, callback)
    snapshot = get_profile(uid)
    if snapshot is not None:
        callback(snapshot)
    return sub


def submit_instructor_application(uid, filename, data, notes='', store=None, feed=None):
    """Upload certificate evidence and move the application to pending.

    Only applications in status none or rejected can be (re)submitted.
    """
    _require_uid(uid)
    if not data:
        raise ValidationError('certificate file required', code='certificate_required')
    store = store or get_store()
    safe_name = secure_filename(filename or '') or 'certificate'

    with db_session:
        user = User.get(uid=uid)
        if not user:
            raise NotFoundError('user not found')
        if user.application_status not in ('none', 'rejected'):
            raise ConflictError(f'application already {user.application_status}', code='application_exists')

    path = f'certifications/{uid}/{int(time.time() * 1000)}-{safe_name}'
    url = store.put_bytes(path, data)
    try:
        with db_session:
            user = User[uid]
            if user.application_status not in ('none', 'rejected'):
                raise ConflictError(f'application already {user.application_status}', code='application_exists')
            previous_path = user.application_certificate_path
            user.set(application_status='pending',
                     application_submitted_at=now_iso(),
                     application_notes=notes or '',
                     application_certificate_url=url,
                     application_certificate_path=path,
                     application_reviewed_at=None,
                     application_reviewed_by=None,
                     application_reviewer_name=None)
            profile = user.to_dict()
    except Exception:
        store.delete_quietly(path)
        raise
    if previous_path and previous_path != path:
        store.delete_quietly(previous_path)
    logger.info('Instructor application submitted by uid=%s', uid)
    (feed or profile_feed).publish(uid, profile)
    return profile


@db_session
def fetch_pending_applications():
    q = select(u for u in User if u.application_status == 'pending').order_by(User.application_submitted_at)
    return [u.to_dict() for u in q]


def _review_application(target_uid, reviewer_uid, decision, reviewer_name=None, feed=None):
    _require_uid(reviewer_uid)
    with db_session:
        reviewer = User.get(uid=reviewer_uid)
        if not reviewer or reviewer.role != 'admin':
            raise ForbiddenError('admin role required')
        target = User.get(uid=target_uid)
        if not target:
            raise NotFoundError('user not found')
        if target.application_status != 'pending':
            raise ConflictError(f'application is {target.application_status}', code='application_not_pending')
        target.set(application_status=decision,
                   application_reviewed_at=now_iso(),
                   application_reviewed_by=reviewer_uid,
                   application_reviewer_name=reviewer_name or reviewer.display_name or reviewer.email or 'admin')
        if decision == 'approved':
            target.role = 'instructor'
        profile = target.to_dict()
    logger.info('Instructor application for uid=%s %s by uid=%s', target_uid, decision, reviewer_uid)
    (feed or profile_feed).publish(target_uid, profile)
    return profile


def approve_instructor_application(target_uid, reviewer_uid, reviewer_name=None, feed=None):
    return _review_application(target_uid, reviewer_uid, 'approved', reviewer_name, feed)


def reject_instructor_application(target_uid, reviewer_uid, reviewer_name=None, feed=None):
    return _review_application(target_uid, reviewer_uid, 'rejected', reviewer_name, feed)
