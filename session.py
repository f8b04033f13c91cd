"""Explicit session state for the signed-in user.

A SessionContext holds the uid and the latest profile snapshot. It is
started on sign-in, kept current through a profile_feed subscription and
closed on sign-out, which releases the subscription. HTTP handlers build a
lightweight, non-subscribed context per request with SessionContext.load().
"""

import logging

from errors import AuthorizationError, ForbiddenError
from profiles import create_user_profile_if_missing, get_profile, profile_feed

logger = logging.getLogger('divelog.session')


class SessionContext:
    def __init__(self, feed=None):
        self.uid = None
        self.profile = None
        self._feed = feed or profile_feed
        self._subscription = None

    @classmethod
    def load(cls, uid):
        """Build a context for `uid` from the stored profile without subscribing.

        A uid whose profile no longer exists yields an anonymous context.
        """
        ctx = cls()
        if uid:
            ctx.profile = get_profile(uid)
            if ctx.profile is not None:
                ctx.uid = uid
            else:
                logger.warning('Session refers to missing profile uid=%s', uid)
        return ctx

    def start(self, uid, email='', display_name='', subscribe=True):
        """Sign in `uid`: ensure the profile exists and follow its updates."""
        if self.uid and self.uid != uid:
            self.close()
        self.uid = uid
        self.profile = create_user_profile_if_missing(uid, email=email, display_name=display_name, feed=self._feed)
        if subscribe and self._subscription is None:
            self._subscription = self._feed.subscribe(uid, self._on_profile)
        return self

    def _on_profile(self, profile):
        self.profile = profile

    def refresh(self):
        self.profile = get_profile(self.uid) if self.uid else None
        return self.profile

    def close(self):
        """Sign out: release the profile subscription and forget the user."""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
        self.uid = None
        self.profile = None

    @property
    def is_authenticated(self):
        return bool(self.uid)

    @property
    def role(self):
        return (self.profile or {}).get('role') or 'diver'

    @property
    def display_name(self):
        return (self.profile or {}).get('display_name') or ''

    def require_user(self):
        if not self.uid:
            raise AuthorizationError('not logged in')
        return self.uid

    def require_admin(self):
        self.require_user()
        if self.role != 'admin':
            raise ForbiddenError('admin role required')
        return self.uid

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
