import os
import shutil
import sys
import uuid

import pytest

# Prepend repository root to sys.path so tests import local modules before stdlib
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

RUN_DIR = os.path.join(ROOT, '.run')
DB_FILE = os.path.join(RUN_DIR, 'pytest_db.sqlite')
MEDIA_DIR = os.path.join(RUN_DIR, 'pytest_media')

# Both are read lazily (init_db / get_store), but set them before any test
# module imports backend so nothing ever touches the development files.
os.environ.setdefault('DATABASE_FILE', DB_FILE)
os.environ.setdefault('STORAGE_ROOT', MEDIA_DIR)
os.environ.pop('GEMINI_API_KEY', None)
os.environ.pop('API_KEY', None)


@pytest.fixture(scope='session', autouse=True)
def ensure_clean_test_db():
    """Remove the shared test DB and media directory before and after the session."""
    os.makedirs(RUN_DIR, exist_ok=True)
    if os.path.exists(DB_FILE):
        try:
            os.remove(DB_FILE)
        except OSError:
            # best-effort; continue even if removal fails
            pass
    shutil.rmtree(MEDIA_DIR, ignore_errors=True)

    yield

    try:
        if os.path.exists(DB_FILE):
            os.remove(DB_FILE)
    except OSError:
        pass
    shutil.rmtree(MEDIA_DIR, ignore_errors=True)


@pytest.fixture
def new_uid():
    """Return a factory for uids that are unique across the shared test DB."""
    return lambda prefix='u': f'{prefix}-{uuid.uuid4().hex[:12]}'


PNG_DATA_URL = ('data:image/png;base64,'
                'iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg==')


@pytest.fixture
def png_data_url():
    return PNG_DATA_URL
