"""Filesystem blob storage for photos, badge icons and certificates.

Blobs live under STORAGE_ROOT at relative paths scoped by user id, for
example ``logs/<uid>/<log_id>/<name>.png``. Clients reach them through the
``/media/<path>`` route in backend.py, so the URL of a blob is derived from
its path and never stored separately from it.
"""

import base64
import binascii
import logging
import mimetypes
import os
from urllib.parse import unquote_to_bytes

from errors import ValidationError

logger = logging.getLogger('divelog.storage')

MEDIA_URL_PREFIX = '/media'

# Uploaded images are served back from our own origin, so only raster types
# a browser will never execute are accepted.
IMAGE_TYPES = {'image/png': 'png', 'image/jpeg': 'jpg', 'image/gif': 'gif', 'image/webp': 'webp'}


def parse_data_url(data_url):
    """Split a ``data:<mime>;base64,<payload>`` URL into (mime_type, bytes)."""
    if not data_url or not str(data_url).startswith('data:'):
        raise ValidationError('invalid_image_data', code='invalid_image_data')
    header, sep, payload = str(data_url).partition(',')
    if not sep:
        raise ValidationError('invalid_image_data', code='invalid_image_data')
    mime = header[5:].split(';', 1)[0].strip().lower() or 'image/jpeg'
    try:
        if ';base64' in header:
            raw = base64.b64decode(payload, validate=True)
        else:
            raw = unquote_to_bytes(payload)
    except (binascii.Error, ValueError):
        raise ValidationError('invalid_image_data', code='invalid_image_data')
    return mime, raw


def parse_image_data_url(data_url):
    """Like parse_data_url, but only for the raster types in IMAGE_TYPES."""
    mime, raw = parse_data_url(data_url)
    if mime not in IMAGE_TYPES:
        raise ValidationError(f'unsupported image type {mime!r}', code='unsupported_image_type')
    return mime, raw


def extension_for(mime, default='png'):
    """Return a file extension (without dot) for a mime type like image/jpeg."""
    if mime in IMAGE_TYPES:
        return IMAGE_TYPES[mime]
    ext = (mime or '').split('/')[-1].split('+')[0].strip().lower()
    if ext == 'jpeg':
        return 'jpg'
    return ext or default


class BlobStore:
    def __init__(self, root):
        self.root = os.path.abspath(root)

    def _resolve(self, path):
        if not path or os.path.isabs(path):
            raise ValidationError('invalid storage path', code='invalid_path')
        full = os.path.abspath(os.path.join(self.root, path))
        if not full.startswith(self.root + os.sep):
            raise ValidationError('invalid storage path', code='invalid_path')
        return full

    def url_for(self, path):
        return f'{MEDIA_URL_PREFIX}/{path}'

    def path_from_url(self, url):
        """Return the storage path for a URL produced by url_for, or None."""
        prefix = MEDIA_URL_PREFIX + '/'
        if url and url.startswith(prefix):
            return url[len(prefix):]
        return None

    def put_bytes(self, path, data):
        full = self._resolve(path)
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, 'wb') as fh:
            fh.write(data)
        logger.debug('Stored blob path=%s bytes=%d', path, len(data))
        return self.url_for(path)

    def put_data_url(self, path, data_url):
        _, raw = parse_data_url(data_url)
        return self.put_bytes(path, raw)

    def read(self, path):
        with open(self._resolve(path), 'rb') as fh:
            return fh.read()

    def exists(self, path):
        try:
            return os.path.isfile(self._resolve(path))
        except ValidationError:
            return False

    def content_type(self, path):
        return mimetypes.guess_type(path)[0] or 'application/octet-stream'

    def delete(self, path):
        full = self._resolve(path)
        os.remove(full)
        logger.debug('Deleted blob path=%s', path)
        # prune empty per-record directories, never the root itself
        parent = os.path.dirname(full)
        while parent != self.root and parent.startswith(self.root):
            try:
                os.rmdir(parent)
            except OSError:
                break
            parent = os.path.dirname(parent)

    def delete_quietly(self, path):
        """Best-effort delete used for stale and orphaned blobs.

        Cleanup must never fail the primary operation, so storage errors are
        logged and swallowed. Returns True when the blob was removed.
        """
        if not path:
            return False
        try:
            self.delete(path)
            return True
        except FileNotFoundError:
            logger.debug('Blob already gone path=%s', path)
            return False
        except (OSError, ValidationError) as e:
            logger.warning('Failed to delete storage object path=%s: %s', path, e)
            return False


_store = None


def get_store():
    """Return the process-wide BlobStore rooted at STORAGE_ROOT.

    The store is rebuilt when STORAGE_ROOT changes so tests can point it at a
    temporary directory.
    """
    global _store
    repo_root = os.path.dirname(os.path.abspath(__file__))
    root = os.path.abspath(os.environ.get('STORAGE_ROOT') or os.path.join(repo_root, 'media'))
    if _store is None or _store.root != root:
        os.makedirs(root, exist_ok=True)
        _store = BlobStore(root)
    return _store
