import os
import logging
from datetime import datetime, timezone
from cryptography.fernet import Fernet, InvalidToken
from pony.orm import Database, PrimaryKey, Required, Optional, Set, Json

"""PonyORM models and initialization.

Defines the User (profile), DiveLog, CustomBadge and DisplayName entities.
The init_db helper binds to Postgres when DATABASE_URL or PG* variables are
present and otherwise to a local sqlite file for development and tests.
"""

logger = logging.getLogger('divelog.models')

db = Database()

ROLES = ('diver', 'instructor', 'admin')
APPLICATION_STATUSES = ('none', 'pending', 'approved', 'rejected')

# Encryption helper for OAuth token fields. If ENCRYPTION_KEY is set we use
# Fernet symmetric encryption; without a key tokens are stored as given so
# local development does not need a key.
ENCRYPTION_FERNET = None
_enc_key = os.environ.get('ENCRYPTION_KEY')
if _enc_key:
    try:
        ENCRYPTION_FERNET = Fernet(_enc_key)
    except ValueError:
        logger.error('ENCRYPTION_KEY is not a valid Fernet key; tokens will be stored unencrypted')
        ENCRYPTION_FERNET = None


def now_iso():
    return datetime.now(timezone.utc).isoformat()


def _encrypt(value):
    if value is None:
        return None
    if ENCRYPTION_FERNET:
        return ENCRYPTION_FERNET.encrypt(value.encode()).decode()
    return value


def _decrypt(raw):
    if raw is None:
        return None
    if ENCRYPTION_FERNET:
        try:
            return ENCRYPTION_FERNET.decrypt(raw.encode()).decode()
        except InvalidToken:
            # rows written before a key was configured hold plaintext
            return raw
    return raw


class User(db.Entity):
    """A signed-in diver's profile document, keyed by the identity provider's uid."""
    uid = PrimaryKey(str)
    email = Optional(str, default='')
    display_name = Optional(str, default='')
    bio = Optional(str, default='')
    photo_url = Optional(str, nullable=True)
    photo_path = Optional(str, nullable=True)
    role = Required(str, default='diver', py_check=lambda v: v in ROLES)
    # ISO-8601 strings with timezone, matching what the API returns
    created_at = Optional(str, default=now_iso)
    updated_at = Optional(str, nullable=True)

    # embedded instructor application
    application_status = Required(str, default='none', py_check=lambda v: v in APPLICATION_STATUSES)
    application_submitted_at = Optional(str, nullable=True)
    application_notes = Optional(str, nullable=True)
    application_certificate_url = Optional(str, nullable=True)
    application_certificate_path = Optional(str, nullable=True)
    application_reviewed_at = Optional(str, nullable=True)
    application_reviewed_by = Optional(str, nullable=True)
    application_reviewer_name = Optional(str, nullable=True)

    # Persist encrypted tokens in *_encrypted fields and expose plain-text
    # via properties.
    access_token_encrypted = Optional(str, nullable=True)
    refresh_token_encrypted = Optional(str, nullable=True)
    token_expires_at = Optional(float)

    logs = Set('DiveLog', cascade_delete=True)
    custom_badges = Set('CustomBadge', cascade_delete=True)

    @property
    def access_token(self):
        return _decrypt(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, v):
        self.access_token_encrypted = _encrypt(v)

    @property
    def refresh_token(self):
        return _decrypt(self.refresh_token_encrypted)

    @refresh_token.setter
    def refresh_token(self, v):
        self.refresh_token_encrypted = _encrypt(v)

    def application_dict(self):
        app = {'status': self.application_status or 'none'}
        for key, attr in (('submitted_at', 'application_submitted_at'),
                          ('notes', 'application_notes'),
                          ('certificate_url', 'application_certificate_url'),
                          ('certificate_path', 'application_certificate_path'),
                          ('reviewed_at', 'application_reviewed_at'),
                          ('reviewed_by', 'application_reviewed_by'),
                          ('reviewer_name', 'application_reviewer_name')):
            val = getattr(self, attr)
            if val is not None:
                app[key] = val
        return app

    def to_dict(self):
        """Return the profile as served to clients (tokens are never included)."""
        return {
            'uid': self.uid,
            'email': self.email,
            'display_name': self.display_name,
            'bio': self.bio,
            'photo_url': self.photo_url,
            'photo_path': self.photo_path,
            'role': self.role,
            'created_at': self.created_at,
            'instructor_application': self.application_dict(),
        }


class DiveLog(db.Entity):
    user = Required(User)
    log_id = Required(str)
    PrimaryKey(user, log_id)
    date = Required(str)
    location = Optional(str, default='')
    site_name = Optional(str, default='')
    dive_number = Optional(int, default=0)
    geo_lat = Optional(float, nullable=True)
    geo_lng = Optional(float, nullable=True)
    geo_name = Optional(str, nullable=True)
    time_in = Optional(str, default='')
    time_out = Optional(str, default='')
    duration_minutes = Optional(int, default=0)
    max_depth_meters = Optional(float, default=0.0)
    avg_depth_meters = Optional(float, nullable=True)
    start_pressure_bar = Optional(float, default=0.0)
    end_pressure_bar = Optional(float, default=0.0)
    visibility_meters = Optional(float, default=0.0)
    water_temp_celsius = Optional(float, default=0.0)
    suit_thickness_mm = Optional(float, default=0.0)
    weights_kg = Optional(float, default=0.0)
    dive_type = Optional(str, default='Fun Dive')
    notes = Optional(str, default='')
    buddies = Optional(str, default='')
    rating = Optional(int, default=3)
    # embedded lists: sightings are dicts, photos/paths are parallel string lists
    marine_life_sightings = Optional(Json, nullable=True)
    photos = Optional(Json, nullable=True)
    photo_storage_paths = Optional(Json, nullable=True)
    updated_at = Optional(str, nullable=True)

    def to_dict(self):
        geo = None
        if self.geo_lat is not None and self.geo_lng is not None:
            geo = {'lat': self.geo_lat, 'lng': self.geo_lng, 'name': self.geo_name or ''}
        return {
            'id': self.log_id,
            'date': self.date,
            'location': self.location,
            'site_name': self.site_name,
            'dive_number': self.dive_number,
            'geo': geo,
            'time_in': self.time_in,
            'time_out': self.time_out,
            'duration_minutes': self.duration_minutes,
            'max_depth_meters': self.max_depth_meters,
            'avg_depth_meters': self.avg_depth_meters,
            'start_pressure_bar': self.start_pressure_bar,
            'end_pressure_bar': self.end_pressure_bar,
            'visibility_meters': self.visibility_meters,
            'water_temp_celsius': self.water_temp_celsius,
            'suit_thickness_mm': self.suit_thickness_mm,
            'weights_kg': self.weights_kg,
            'dive_type': self.dive_type,
            'notes': self.notes,
            'buddies': self.buddies,
            'marine_life_sightings': list(self.marine_life_sightings or []),
            'photos': list(self.photos or []),
            'photo_storage_paths': list(self.photo_storage_paths or []),
            'rating': self.rating,
        }


class CustomBadge(db.Entity):
    user = Required(User)
    badge_id = Required(str)
    PrimaryKey(user, badge_id)
    name = Required(str)
    description = Optional(str, default='')
    # emoji or a URL to an uploaded icon image
    icon = Optional(str, default='')
    storage_path = Optional(str, nullable=True)
    category = Optional(str, default='marine')
    unlocked_at = Optional(str, default=now_iso)

    def to_dict(self):
        """Return a lightweight serializable dict for JSON APIs."""
        return {
            'id': self.badge_id,
            'name': self.name,
            'description': self.description,
            'icon': self.icon,
            'storage_path': self.storage_path,
            'category': self.category or 'marine',
            'unlocked_at': self.unlocked_at,
        }


class DisplayName(db.Entity):
    """Reservation of a normalized display name by exactly one user."""
    normalized = PrimaryKey(str)
    uid = Required(str)
    display_name = Required(str)
    # epoch milliseconds
    updated_at = Optional(int, size=64)


def _postgres_dsn_from_env():
    pg_host = os.environ.get('PGHOST')
    pg_db = os.environ.get('PGDATABASE')
    if not (pg_host and pg_db):
        return None
    pg_port = os.environ.get('PGPORT', '5432')
    pg_user = os.environ.get('PGUSER', os.environ.get('POSTGRES_USER', 'postgres'))
    pg_password = os.environ.get('PGPASSWORD', os.environ.get('POSTGRES_PASSWORD', ''))
    return f"postgresql://{pg_user}:{pg_password}@{pg_host}:{pg_port}/{pg_db}"


def _sqlite_path_from_env():
    # Place the sqlite file next to this module so web and script processes
    # resolve the same absolute path even if their CWDs differ.
    repo_root = os.path.dirname(os.path.abspath(__file__))
    requested_path = os.environ.get('DATABASE_FILE') or os.path.join(repo_root, 'db.sqlite')
    # ':memory:' gives every connection its own database, so requests and
    # test code would not see each other's rows. Map it to a shared file.
    if requested_path == ':memory:':
        requested_path = os.path.join(repo_root, '.run', 'pytest_db.sqlite')
    parent = os.path.dirname(requested_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    return requested_path


def init_db(create_tables=True):
    # If the database is already bound make sure mappings exist in this
    # process and return. Binding happens once per process.
    if getattr(db, 'provider', None) is not None:
        if getattr(db, 'schema', None) is None:
            db.generate_mapping(create_tables=create_tables)
        return db

    # Priority 1: DATABASE_URL, Priority 2: PG* variables, Priority 3: sqlite
    dsn = os.environ.get('DATABASE_URL') or _postgres_dsn_from_env()
    if dsn:
        logger.info('Binding database to postgres')
        db.bind(provider='postgres', dsn=dsn)
    else:
        sqlite_path = _sqlite_path_from_env()
        logger.info('Binding database to sqlite file %s', sqlite_path)
        db.bind(provider='sqlite', filename=sqlite_path, create_db=True)

    db.generate_mapping(create_tables=create_tables)
    return db
