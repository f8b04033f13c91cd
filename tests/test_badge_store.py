import pytest

from badge_store import delete_custom_badge, get_custom_badges, save_custom_badge
from errors import AuthorizationError, NotFoundError, ValidationError
from models import init_db
from profiles import create_user_profile_if_missing
from storage import BlobStore


def setup_module(module):
    init_db()


@pytest.fixture
def diver(new_uid):
    uid = new_uid('badger')
    create_user_profile_if_missing(uid)
    return uid


@pytest.fixture
def store(tmp_path):
    return BlobStore(tmp_path / 'media')


def test_emoji_badge_defaults(diver, store):
    badge = save_custom_badge(diver, {'name': 'Saw a dugong', 'icon': '🐄'}, store=store)
    assert badge['id'].startswith('custom-')
    assert badge['category'] == 'marine'
    assert badge['icon'] == '🐄'
    assert badge['storage_path'] is None
    assert badge['unlocked_at']
    assert [b['id'] for b in get_custom_badges(diver)] == [badge['id']]


def test_icon_upload_and_replacement(diver, store, png_data_url):
    badge = save_custom_badge(diver, {'id': 'summit', 'name': 'Altitude dive', 'icon': png_data_url,
                                      'category': 'terrain'}, store=store)
    assert badge['storage_path'] == f'badges/{diver}/summit.png'
    assert badge['icon'] == store.url_for(badge['storage_path'])

    jpeg = png_data_url.replace('image/png', 'image/jpeg')
    updated = save_custom_badge(diver, {'id': 'summit', 'name': 'Altitude dive 2', 'icon': jpeg}, store=store)
    assert updated['storage_path'] == f'badges/{diver}/summit.jpg'
    assert updated['unlocked_at'] == badge['unlocked_at']
    assert store.exists(updated['storage_path'])
    assert not store.exists(badge['storage_path'])

    delete_custom_badge(diver, 'summit', store=store)
    assert not store.exists(updated['storage_path'])
    assert get_custom_badges(diver) == []
    with pytest.raises(NotFoundError):
        delete_custom_badge(diver, 'summit', store=store)


def test_validation(diver, store):
    with pytest.raises(ValidationError):
        save_custom_badge(diver, {'name': ' '}, store=store)
    with pytest.raises(ValidationError):
        save_custom_badge(diver, {'name': 'x', 'category': 'space'}, store=store)
    with pytest.raises(ValidationError):
        save_custom_badge(diver, {'name': 'x', 'id': '../escape'}, store=store)
    with pytest.raises(AuthorizationError):
        save_custom_badge('', {'name': 'x'}, store=store)
    assert get_custom_badges('') == []
