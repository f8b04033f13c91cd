"""Flask web application for the dive log.

This module defines the HTTP routes for login (mock and OpenID Connect),
the user's profile and its live update stream, dive log CRUD with photo
uploads, statistics and map points, badges, display-name availability,
instructor applications with admin review, AI helpers and media serving.

The app uses PonyORM for persistence and the filesystem blob store in
storage.py for attachments. Service modules own their db_sessions, so
routes call them without opening one.
"""

import json
import logging
import os
import queue
import re
import hashlib
import secrets
import time

from dotenv import load_dotenv
from flask import (Flask, Response, g, jsonify, redirect, request, send_from_directory, session,
                   stream_with_context, url_for)
from pony.orm import db_session

import ai
from auth import build_authorize_url, exchange_code_for_token, fetch_userinfo, generate_pkce_pair, is_configured
from badge_store import delete_custom_badge, get_custom_badges, save_custom_badge
from badges import achievements, catalog, evaluate_badges, get_badge_meta
from display_names import is_display_name_available
from errors import DiveLogError, ForbiddenError, NotFoundError, ValidationError
from logbook import delete_log, dive_stats, get_log, list_logs, map_points, save_log
from models import init_db, User
from profiles import (approve_instructor_application, fetch_pending_applications, reject_instructor_application,
                      get_profile, submit_instructor_application, subscribe_to_profile, update_account_info,
                      update_profile_photo)
from session import SessionContext
from storage import IMAGE_TYPES, get_store

# load .env if present
load_dotenv()

# named logger for the application
logger = logging.getLogger('divelog')

_UID_RE = re.compile(r'^[A-Za-z0-9_-]{1,128}$')

# seconds between keep-alive comments on the profile event stream
STREAM_KEEPALIVE_SECONDS = 15
# seconds between database checks for profile changes made by other workers
STREAM_POLL_SECONDS = 5

# blobs served inline from /media; everything else is a download
INLINE_MEDIA_TYPES = frozenset(IMAGE_TYPES) | {'application/pdf'}


def _configure_logging():
    # Allow explicit override via environment variable LOG_LEVEL or DIVELOG_LOG_LEVEL
    env_level = os.environ.get('LOG_LEVEL') or os.environ.get('DIVELOG_LOG_LEVEL')
    is_dev = (os.environ.get('FLASK_ENV') == 'development') or (os.environ.get('FLASK_DEBUG') == '1')
    if env_level:
        requested = getattr(logging, env_level.strip().upper(), None)
        if not isinstance(requested, int):
            # fallback to INFO if the provided value is invalid
            requested = logging.INFO
    else:
        requested = logging.DEBUG if is_dev else logging.INFO

    # Never allow DEBUG logging in production.
    suppressed_debug = False
    if not is_dev and requested == logging.DEBUG:
        requested = logging.INFO
        suppressed_debug = True
    if not logger.handlers:
        ch = logging.StreamHandler()
        ch.setLevel(requested)
        ch.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
        logger.addHandler(ch)
    logger.setLevel(requested)
    if suppressed_debug:
        logger.warning('DEBUG logging was requested via LOG_LEVEL but suppressed because FLASK_ENV is not development')


def _mask_secret(s):
    s = str(s or '')
    if len(s) <= 8:
        return '*****'
    return s[:4] + '...' + s[-4:]


def uid_from_subject(sub):
    """Map an identity-provider subject to a uid that is safe in storage paths."""
    sub = str(sub or '')
    if _UID_RE.match(sub):
        return sub
    return hashlib.sha256(sub.encode('utf-8')).hexdigest()[:32]


def current_context():
    """Return the request's SessionContext, loading it from the cookie session once."""
    ctx = g.get('session_ctx')
    if ctx is None:
        ctx = SessionContext.load(session.get('uid'))
        g.session_ctx = ctx
    return ctx


def json_error(message, code=400):
    return jsonify({'error': message}), code


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError('JSON object expected', code='invalid_json')
    return data


app = Flask(__name__)
app.secret_key = os.environ.get('SECRET_KEY', os.urandom(24))

# Behind a reverse proxy that sets X-Forwarded-* headers, enable ProxyFix so
# url_for(..., _external=True) builds the public OAuth redirect URI.
if os.environ.get('USE_PROXY_FIX') == '1':
    from werkzeug.middleware.proxy_fix import ProxyFix
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_port=1)

is_dev = (os.environ.get('FLASK_ENV') == 'development') or (os.environ.get('FLASK_DEBUG') == '1')

# Use Secure cookies in production but allow plain HTTP during local
# development so the OAuth redirect flow still works.
app.config.update({
    'SESSION_COOKIE_SECURE': not is_dev,
    'SESSION_COOKIE_HTTPONLY': True,
    'SESSION_COOKIE_SAMESITE': 'Lax',
    'MAX_CONTENT_LENGTH': int(os.environ.get('MAX_UPLOAD_MB') or 16) * 1024 * 1024,
})

# Configure logging early
_configure_logging()


@app.errorhandler(DiveLogError)
def handle_dive_log_error(e):
    if e.status_code >= 500:
        logger.error('Request failed: %s', e)
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(OSError)
def handle_storage_error(e):
    # blob reads/writes on the primary path surface here; cleanup never does
    logger.exception('Storage failure during %s %s', request.method, request.path)
    return json_error('storage-unavailable', 503)


@app.route('/health')
def health():
    # Simple health endpoint for container healthchecks. Keep lightweight.
    return jsonify({'status': 'ok'}), 200


@app.route('/ready')
def ready():
    """Readiness probe: 200 when the database answers a trivial query, 503 otherwise."""
    try:
        with db_session:
            User.select()[:1]
    except Exception as e:
        logger.error('Readiness DB check failed: %s', e)
        return jsonify({'ready': False, 'reason': 'db-unavailable'}), 503
    return jsonify({'ready': True}), 200


# ----------------------- Session -----------------------

@app.route('/login')
def login():
    # Mock login for tests/development: ?user=<uid>[&email=..&name=..] when
    # ALLOW_MOCK_LOGIN=1. Otherwise report the signed-in user or start the
    # identity provider's redirect flow.
    user = request.args.get('user')
    if user and os.environ.get('ALLOW_MOCK_LOGIN') == '1':
        if not _UID_RE.match(user):
            return json_error('invalid user', 400)
        ctx = SessionContext()
        ctx.start(user, email=request.args.get('email', ''), display_name=request.args.get('name', ''),
                  subscribe=False)
        session['uid'] = user
        g.session_ctx = ctx
        return jsonify({'ok': True, 'uid': user}), 200

    ctx = current_context()
    if ctx.is_authenticated:
        return jsonify({'uid': ctx.uid}), 200

    if is_configured():
        return redirect(url_for('login_oidc'))
    return json_error('no-identity-provider', 503)


@app.route('/login-oidc')
def login_oidc():
    if not is_configured():
        return redirect(url_for('login'))
    verifier, challenge = generate_pkce_pair()
    state = secrets.token_urlsafe(16)
    session['pkce_verifier'] = verifier
    session['oauth_state'] = state
    return redirect(build_authorize_url(url_for('login_callback', _external=True), challenge, state))


@app.route('/login-callback')
def login_callback():
    code = request.args.get('code')
    if not code:
        return json_error('code required', 400)
    expected_state = session.pop('oauth_state', None)
    if not expected_state or request.args.get('state') != expected_state:
        return json_error('state-mismatch', 400)
    # pop so the verifier isn't reused
    verifier = session.pop('pkce_verifier', None)

    try:
        token = exchange_code_for_token(code, verifier, url_for('login_callback', _external=True))
    except Exception as e:
        logger.exception('Token exchange failed')
        return jsonify({'error': 'token-exchange-failed', 'detail': str(e)}), 400

    access_token = token.get('access_token')
    try:
        claims = fetch_userinfo(access_token)
    except Exception:
        logger.exception('Failed to fetch userinfo from provider')
        return json_error('no-userinfo', 400)
    if not claims.get('sub'):
        logger.error('Provider userinfo has no subject during login-callback')
        return json_error('no-subject', 400)

    uid = uid_from_subject(claims['sub'])
    ctx = SessionContext()
    ctx.start(uid, email=claims.get('email', ''), display_name=claims.get('name', ''), subscribe=False)
    try:
        expires_in = int(token.get('expires_in') or 0)
    except (TypeError, ValueError):
        expires_in = 0
    with db_session:
        u = User[uid]
        u.access_token = access_token
        u.refresh_token = token.get('refresh_token')
        u.token_expires_at = (time.time() + expires_in) if expires_in else None
    logger.info('Signed in uid=%s via identity provider (token %s)', uid, _mask_secret(access_token))
    session['uid'] = uid
    return redirect(url_for('api_session'))


@app.route('/logout')
def logout():
    uid = session.get('uid')
    if uid:
        # Avoid failing logout due to DB errors; log and continue to clear session
        try:
            with db_session:
                u = User.get(uid=uid)
                if u:
                    u.access_token = None
                    u.refresh_token = None
                    u.token_expires_at = None
        except Exception:
            logger.exception('Failed to clear OAuth tokens for uid=%s during logout', uid)
    current_context().close()
    session.clear()
    return jsonify({'ok': True}), 200


@app.route('/api/session')
def api_session():
    ctx = current_context()
    return jsonify({
        'authenticated': ctx.is_authenticated,
        'uid': ctx.uid,
        'role': ctx.role if ctx.is_authenticated else None,
        'profile': ctx.profile,
    })


# ----------------------- Profile -----------------------

@app.route('/api/profile', methods=['GET', 'POST'])
def api_profile():
    ctx = current_context()
    uid = ctx.require_user()
    if request.method == 'GET':
        return jsonify(ctx.profile)
    data = _json_body()
    profile = update_account_info(uid, display_name=data.get('display_name'), bio=data.get('bio'))
    return jsonify(profile)


@app.route('/api/profile/photo', methods=['POST'])
def api_profile_photo():
    uid = current_context().require_user()
    data = _json_body()
    profile = update_profile_photo(uid, data.get('image'))
    return jsonify(profile)


@app.route('/api/profile/stream')
def api_profile_stream():
    """Server-sent events: the current profile, then every change to it."""
    uid = current_context().require_user()
    updates = queue.Queue()

    def generate():
        sub = subscribe_to_profile(uid, updates.put)
        last_sent = None
        last_write = time.monotonic()
        try:
            while True:
                try:
                    profile = updates.get(timeout=STREAM_POLL_SECONDS)
                except queue.Empty:
                    # the feed only carries changes made in this process; other
                    # workers' commits are picked up from the database
                    profile = get_profile(uid)
                if profile is not None and profile != last_sent:
                    last_sent = profile
                    last_write = time.monotonic()
                    yield f'data: {json.dumps(profile)}\n\n'
                elif time.monotonic() - last_write >= STREAM_KEEPALIVE_SECONDS:
                    last_write = time.monotonic()
                    yield ': keep-alive\n\n'
        finally:
            # client went away; release the subscription
            sub.cancel()

    return Response(stream_with_context(generate()), mimetype='text/event-stream',
                    headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'})


@app.route('/api/check-nickname', methods=['GET', 'POST', 'PUT', 'PATCH', 'DELETE'])
def check_nickname():
    if request.method != 'GET':
        resp = jsonify({'error': 'method_not_allowed'})
        resp.status_code = 405
        resp.headers['Allow'] = 'GET'
        return resp
    name = (request.args.get('name') or '').strip()
    if not name:
        return json_error('name_required', 400)
    try:
        available = is_display_name_available(name)
    except Exception:
        logger.exception('Display name availability check failed')
        return json_error('internal_error', 500)
    return jsonify({'available': available})


# ----------------------- Dive logs -----------------------

@app.route('/api/logs', methods=['GET', 'POST'])
def api_logs():
    uid = current_context().require_user()
    if request.method == 'GET':
        return jsonify({'logs': list_logs(uid)})
    saved, awarded = save_log(uid, _json_body())
    return jsonify({'log': saved, 'awarded_badges': [get_badge_meta(b) for b in awarded]})


@app.route('/api/logs/<log_id>', methods=['GET', 'PUT', 'DELETE'])
def api_log(log_id):
    uid = current_context().require_user()
    if request.method == 'GET':
        return jsonify(get_log(uid, log_id))
    if request.method == 'DELETE':
        delete_log(uid, log_id)
        return jsonify({'ok': True})
    data = _json_body()
    data['id'] = log_id
    saved, awarded = save_log(uid, data)
    return jsonify({'log': saved, 'awarded_badges': [get_badge_meta(b) for b in awarded]})


@app.route('/api/stats')
def api_stats():
    uid = current_context().require_user()
    return jsonify(dive_stats(list_logs(uid)))


@app.route('/api/map')
def api_map():
    uid = current_context().require_user()
    return jsonify({'points': map_points(list_logs(uid))})


# ----------------------- Badges -----------------------

@app.route('/api/badges')
def api_badges():
    uid = current_context().require_user()
    logs = list_logs(uid)
    custom = get_custom_badges(uid)
    computed = evaluate_badges(logs)
    unlocked = [m['id'] for m in catalog() if m['id'] in computed]
    return jsonify({
        'achievements': achievements(logs, custom),
        'unlocked': unlocked + [c['id'] for c in custom],
        'catalog': catalog(),
    })


@app.route('/api/badges/custom', methods=['POST'])
def api_custom_badge_create():
    uid = current_context().require_user()
    return jsonify(save_custom_badge(uid, _json_body()))


@app.route('/api/badges/custom/<badge_id>', methods=['DELETE'])
def api_custom_badge_delete(badge_id):
    uid = current_context().require_user()
    delete_custom_badge(uid, badge_id)
    return jsonify({'ok': True})


# ----------------------- Instructor applications -----------------------

@app.route('/api/instructor/apply', methods=['POST'])
def api_instructor_apply():
    uid = current_context().require_user()
    upload = request.files.get('certificate')
    if upload is None:
        return json_error('certificate required', 400)
    profile = submit_instructor_application(uid, upload.filename, upload.read(), request.form.get('notes', ''))
    return jsonify(profile)


@app.route('/api/admin/applications')
def api_pending_applications():
    current_context().require_admin()
    return jsonify({'applications': fetch_pending_applications()})


@app.route('/api/admin/applications/<target_uid>/<decision>', methods=['POST'])
def api_review_application(target_uid, decision):
    ctx = current_context()
    reviewer = ctx.require_admin()
    if decision == 'approve':
        profile = approve_instructor_application(target_uid, reviewer, ctx.display_name or None)
    elif decision == 'reject':
        profile = reject_instructor_application(target_uid, reviewer, ctx.display_name or None)
    else:
        raise NotFoundError('unknown decision')
    return jsonify(profile)


# ----------------------- AI -----------------------

@app.route('/api/ai/identify', methods=['POST'])
def api_ai_identify():
    current_context().require_user()
    data = _json_body()
    return jsonify({'sighting': ai.identify_marine_life(data.get('image'))})


@app.route('/api/ai/enrich', methods=['POST'])
def api_ai_enrich():
    current_context().require_user()
    data = _json_body()
    return jsonify({'notes': ai.enrich_dive_log_notes(data.get('notes', ''), data.get('location', ''))})


@app.route('/api/ai/advice', methods=['POST'])
def api_ai_advice():
    current_context().require_user()
    question = (_json_body().get('question') or '').strip()
    if not question:
        return json_error('question required', 400)
    return jsonify({'answer': ai.get_dive_advice(question)})


# ----------------------- Media -----------------------

@app.route('/media/<path:blob_path>')
def media(blob_path):
    """Serve a stored blob to its owner; profile photos to any signed-in user, everything to admins."""
    ctx = current_context()
    uid = ctx.require_user()
    parts = blob_path.split('/')
    if len(parts) < 3:
        raise NotFoundError('blob not found')
    area, owner = parts[0], parts[1]
    if owner != uid and area != 'profile' and ctx.role != 'admin':
        raise ForbiddenError('not your file')
    store = get_store()
    if not store.exists(blob_path):
        raise NotFoundError('blob not found')
    mimetype = store.content_type(blob_path)
    if mimetype in INLINE_MEDIA_TYPES:
        resp = send_from_directory(store.root, blob_path, mimetype=mimetype)
    else:
        # certificates may be any file type; never let the browser render them here
        resp = send_from_directory(store.root, blob_path, mimetype='application/octet-stream', as_attachment=True)
    resp.headers['X-Content-Type-Options'] = 'nosniff'
    return resp


if __name__ == '__main__':
    # Initialize DB for development runs
    init_db()
    host = os.environ.get('FLASK_HOST') or os.environ.get('HOST') or '127.0.0.1'
    port = int(os.environ.get('FLASK_PORT') or os.environ.get('PORT') or 5000)
    debug = os.environ.get('FLASK_DEBUG', '1')
    app.run(host=host, port=port, debug=(debug == '1'))
