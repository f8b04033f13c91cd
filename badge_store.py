"""Persistence for user-authored badges.

Custom badges are stored already unlocked. When the icon is sent as a data
URL it is uploaded to ``badges/<uid>/<badge_id>.<ext>`` and the badge keeps
the blob URL and path.
"""

import logging
import re
import time

from pony.orm import db_session, select

from errors import AuthorizationError, NotFoundError, ValidationError
from models import User, CustomBadge, now_iso
from storage import get_store, parse_image_data_url, extension_for

logger = logging.getLogger('divelog.badge_store')

CATEGORIES = ('marine', 'terrain')

_BADGE_ID_RE = re.compile(r'^[A-Za-z0-9_-]{1,64}$')


@db_session
def get_custom_badges(uid):
    if not uid:
        return []
    user = User.get(uid=uid)
    if not user:
        return []
    q = select(b for b in CustomBadge if b.user == user).order_by(CustomBadge.unlocked_at)
    return [b.to_dict() for b in q]


def save_custom_badge(uid, badge, store=None):
    """Create or update a custom badge and return it as a dict."""
    if not uid:
        raise AuthorizationError('User not authenticated')
    store = store or get_store()
    name = str((badge or {}).get('name') or '').strip()
    if not name:
        raise ValidationError('badge name required', code='invalid_badge')
    category = badge.get('category') or 'marine'
    if category not in CATEGORIES:
        raise ValidationError(f'unknown category {category!r}', code='invalid_badge')
    badge_id = str(badge.get('id') or '').strip() or f'custom-{int(time.time() * 1000)}'
    if not _BADGE_ID_RE.match(badge_id):
        raise ValidationError('invalid badge id', code='invalid_badge')

    icon = str(badge.get('icon') or '')
    new_path = None
    if icon.startswith('data:'):
        mime, raw = parse_image_data_url(icon)
        new_path = f'badges/{uid}/{badge_id}.{extension_for(mime)}'
        icon = store.put_bytes(new_path, raw)

    old_path = None
    try:
        with db_session:
            user = User.get(uid=uid)
            if not user:
                raise NotFoundError('user not found')
            rec = CustomBadge.get(user=user, badge_id=badge_id)
            values = {
                'name': name,
                'description': str(badge.get('description') or ''),
                'category': category,
            }
            if rec is None:
                rec = CustomBadge(user=user, badge_id=badge_id, icon=icon, storage_path=new_path,
                                  unlocked_at=badge.get('unlocked_at') or now_iso(), **values)
            else:
                if new_path:
                    old_path = rec.storage_path
                    values.update(icon=icon, storage_path=new_path)
                elif icon:
                    values['icon'] = icon
                rec.set(**values)
            saved = rec.to_dict()
    except Exception:
        if new_path:
            store.delete_quietly(new_path)
        raise

    if old_path and old_path != new_path:
        store.delete_quietly(old_path)
    logger.info('Saved custom badge id=%s for uid=%s', badge_id, uid)
    return saved


def delete_custom_badge(uid, badge_id, store=None):
    if not uid:
        raise AuthorizationError('User not authenticated')
    store = store or get_store()
    with db_session:
        user = User.get(uid=uid)
        rec = CustomBadge.get(user=user, badge_id=badge_id) if user else None
        if not rec:
            raise NotFoundError('badge not found')
        path = rec.storage_path
        rec.delete()
    if path:
        store.delete_quietly(path)
