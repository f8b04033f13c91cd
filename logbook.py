"""Dive log repository.

Wraps the DiveLog entity with the operations the API needs: listing a
user's logs, upserting a log (including uploading inline photos and removing
blobs for photos that were dropped), deleting a log with its blobs, and the
aggregate numbers shown on the dashboard and map.

Blob cleanup is best-effort: failures are logged by BlobStore.delete_quietly
and never fail the save or delete that triggered them.
"""

import logging
import re
import secrets
import time
import uuid

from pony.orm import db_session, select, desc

from badges import newly_unlocked
from errors import AuthorizationError, NotFoundError, ValidationError
from models import User, DiveLog, now_iso
from storage import get_store, parse_image_data_url, extension_for

logger = logging.getLogger('divelog.logbook')

DIVE_TYPES = ('Fun Dive', 'Training', 'Night Dive', 'Deep Dive', 'Wreck Dive', 'Drift Dive', 'Photography')

_LOG_ID_RE = re.compile(r'^[A-Za-z0-9_-]{1,64}$')

_FLOAT_FIELDS = ('max_depth_meters', 'start_pressure_bar', 'end_pressure_bar', 'visibility_meters',
                 'water_temp_celsius', 'suit_thickness_mm', 'weights_kg')
_INT_FIELDS = ('dive_number', 'duration_minutes')
_STR_FIELDS = ('location', 'site_name', 'time_in', 'time_out', 'notes', 'buddies')

# values the log form fills in when a field is left blank
_NUMBER_DEFAULTS = {'start_pressure_bar': 200, 'end_pressure_bar': 50, 'visibility_meters': 10,
                    'water_temp_celsius': 25, 'suit_thickness_mm': 3, 'weights_kg': 4}


def _require_uid(uid):
    if not uid:
        raise AuthorizationError('User not authenticated')


def _to_number(value, field, cast, default=0):
    if value is None or value == '':
        return cast(default)
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValidationError(f'{field} must be a number', code='invalid_log')


def _parse_sightings(raw):
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValidationError('marine_life_sightings must be a list', code='invalid_log')
    out = []
    for item in raw:
        if not isinstance(item, dict) or not str(item.get('name') or '').strip():
            raise ValidationError('each sighting needs a name', code='invalid_log')
        sighting = {'id': str(item.get('id') or uuid.uuid4().hex), 'name': str(item['name']).strip()}
        for key in ('scientific_name', 'description', 'image_url'):
            if item.get(key):
                sighting[key] = str(item[key])
        # inline images belong in photos, where they are uploaded as blobs
        if sighting.get('image_url', '').startswith('data:'):
            del sighting['image_url']
        out.append(sighting)
    return out


def _parse_photos(raw):
    if raw is None:
        return []
    if not isinstance(raw, list) or not all(isinstance(p, str) for p in raw):
        raise ValidationError('photos must be a list of strings', code='invalid_log')
    return raw


def _parse_geo(raw):
    if not raw:
        return None, None, None
    try:
        lat = float(raw.get('lat'))
        lng = float(raw.get('lng'))
    except (AttributeError, TypeError, ValueError):
        raise ValidationError('geo needs numeric lat and lng', code='invalid_log')
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise ValidationError('geo coordinates out of range', code='invalid_log')
    return lat, lng, str(raw.get('name') or '')


def parse_log_payload(payload):
    """Validate a client payload and return DiveLog attribute values.

    Photos are not included; they go through photo reconciliation.
    """
    if not isinstance(payload, dict):
        raise ValidationError('log payload must be an object', code='invalid_log')
    date = str(payload.get('date') or '').strip()
    if not date:
        raise ValidationError('date required', code='invalid_log')

    fields = {'date': date}
    for key in _STR_FIELDS:
        fields[key] = str(payload.get(key) or '')
    for key in _FLOAT_FIELDS:
        fields[key] = _to_number(payload.get(key), key, float, _NUMBER_DEFAULTS.get(key, 0))
    for key in _INT_FIELDS:
        fields[key] = _to_number(payload.get(key), key, int)
    avg = payload.get('avg_depth_meters')
    fields['avg_depth_meters'] = None if avg in (None, '') else _to_number(avg, 'avg_depth_meters', float)

    dive_type = payload.get('dive_type') or DIVE_TYPES[0]
    if dive_type not in DIVE_TYPES:
        raise ValidationError(f'unknown dive_type {dive_type!r}', code='invalid_log')
    fields['dive_type'] = dive_type

    rating = payload.get('rating')
    rating = 3 if rating in (None, '') else _to_number(rating, 'rating', int)
    if not 1 <= rating <= 5:
        raise ValidationError('rating must be between 1 and 5', code='invalid_log')
    fields['rating'] = rating

    fields['geo_lat'], fields['geo_lng'], fields['geo_name'] = _parse_geo(payload.get('geo'))
    fields['marine_life_sightings'] = _parse_sightings(payload.get('marine_life_sightings'))
    return fields


def _photo_path(uid, log_id, index, mime):
    return f'logs/{uid}/{log_id}/{int(time.time() * 1000)}-{index}-{secrets.token_hex(4)}.{extension_for(mime)}'


def process_log_photos(store, uid, log_id, photos, existing_photos=(), existing_paths=()):
    """Upload inline photos and line up storage paths with photo URLs.

    Returns (photos, paths, uploaded, stale): the final URL list, the
    storage path for each URL ('' for URLs this log does not own), the paths
    uploaded by this call and the existing paths no longer referenced.
    """
    known = {url: path for url, path in zip(existing_photos, existing_paths) if url and path}
    final_photos, final_paths, uploaded = [], [], []
    try:
        for i, photo in enumerate(photos or []):
            if not photo:
                continue
            photo = str(photo)
            if photo.startswith('data:'):
                mime, raw = parse_image_data_url(photo)
                path = _photo_path(uid, log_id, i, mime)
                url = store.put_bytes(path, raw)
                uploaded.append(path)
                final_photos.append(url)
                final_paths.append(path)
            else:
                final_photos.append(photo)
                final_paths.append(known.get(photo, ''))
    except Exception:
        for path in uploaded:
            store.delete_quietly(path)
        raise
    kept = set(final_paths)
    stale = [p for p in existing_paths if p and p not in kept]
    return final_photos, final_paths, uploaded, stale


@db_session
def list_logs(uid):
    """Return the user's logs as dicts, highest dive number first."""
    _require_uid(uid)
    user = User.get(uid=uid)
    if not user:
        return []
    q = select(l for l in DiveLog if l.user == user).order_by(desc(DiveLog.dive_number), desc(DiveLog.log_id))
    return [l.to_dict() for l in q]


@db_session
def get_log(uid, log_id):
    _require_uid(uid)
    user = User.get(uid=uid)
    rec = DiveLog.get(user=user, log_id=log_id) if user else None
    if not rec:
        raise NotFoundError('log not found')
    return rec.to_dict()


def save_log(uid, payload, store=None):
    """Create or replace a dive log.

    Returns (saved_log, awarded_badge_ids) where the badge ids are the system
    badges this save unlocked.
    """
    _require_uid(uid)
    store = store or get_store()
    fields = parse_log_payload(payload)
    new_photos = _parse_photos(payload.get('photos'))
    log_id = str(payload.get('id') or '').strip() or uuid.uuid4().hex
    if not _LOG_ID_RE.match(log_id):
        raise ValidationError('invalid log id', code='invalid_log')

    with db_session:
        user = User.get(uid=uid)
        if not user:
            raise NotFoundError('user not found')
        before = [l.to_dict() for l in user.logs]
        existing = DiveLog.get(user=user, log_id=log_id)
        existing_photos = list(existing.photos or []) if existing else []
        existing_paths = list(existing.photo_storage_paths or []) if existing else []

    photos, paths, uploaded, stale = process_log_photos(
        store, uid, log_id, new_photos, existing_photos, existing_paths)

    try:
        with db_session:
            user = User[uid]
            fields.update(photos=photos, photo_storage_paths=paths, updated_at=now_iso())
            rec = DiveLog.get(user=user, log_id=log_id)
            if rec is None:
                rec = DiveLog(user=user, log_id=log_id, **fields)
            else:
                rec.set(**fields)
            saved = rec.to_dict()
            after = [l.to_dict() for l in user.logs]
    except Exception:
        logger.exception('Failed to save log id=%s for uid=%s; removing %d uploaded blobs', log_id, uid, len(uploaded))
        for path in uploaded:
            store.delete_quietly(path)
        raise

    for path in stale:
        store.delete_quietly(path)
    awarded = newly_unlocked(before, after)
    logger.info('Saved log id=%s for uid=%s (photos=%d, stale_removed=%d, awarded=%s)',
                log_id, uid, len(photos), len(stale), awarded)
    return saved, awarded


def delete_log(uid, log_id, store=None):
    """Delete a log and every blob it references."""
    _require_uid(uid)
    store = store or get_store()
    with db_session:
        user = User.get(uid=uid)
        rec = DiveLog.get(user=user, log_id=log_id) if user else None
        if not rec:
            raise NotFoundError('log not found')
        paths = [p for p in (rec.photo_storage_paths or []) if p]
        rec.delete()
    for path in paths:
        store.delete_quietly(path)
    logger.info('Deleted log id=%s for uid=%s with %d blobs', log_id, uid, len(paths))


def dive_stats(logs):
    """Aggregate the dashboard numbers for a list of log dicts."""
    return {
        'total_dives': len(logs),
        'total_time_minutes': sum(int(l.get('duration_minutes') or 0) for l in logs),
        'max_depth': max([float(l.get('max_depth_meters') or 0) for l in logs] or [0]),
        'unique_locations': len({l.get('location') for l in logs}),
    }


def map_points(logs):
    """Reduce geo-tagged logs to the fields the map view plots."""
    points = []
    for log in logs:
        geo = log.get('geo')
        if not geo:
            continue
        points.append({
            'id': log['id'],
            'lat': geo['lat'],
            'lng': geo['lng'],
            'name': geo.get('name') or log.get('location') or '',
            'site_name': log.get('site_name', ''),
            'date': log.get('date'),
            'max_depth_meters': log.get('max_depth_meters'),
        })
    return points
