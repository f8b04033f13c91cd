import os

import pytest

from errors import NotFoundError, ValidationError
from logbook import delete_log, dive_stats, get_log, list_logs, map_points, parse_log_payload, save_log
from models import init_db
from profiles import create_user_profile_if_missing
from storage import BlobStore


def setup_module(module):
    init_db()


@pytest.fixture
def diver(new_uid):
    uid = new_uid('diver')
    create_user_profile_if_missing(uid, email=f'{uid}@example.com')
    return uid


@pytest.fixture
def store(tmp_path):
    return BlobStore(tmp_path / 'media')


def _blobs(store):
    found = []
    for dirpath, _, files in os.walk(store.root):
        for name in files:
            found.append(os.path.relpath(os.path.join(dirpath, name), store.root))
    return sorted(found)


def test_parse_log_payload_defaults_and_validation():
    fields = parse_log_payload({'date': '2024-05-01', 'max_depth_meters': '18.5', 'dive_number': '7'})
    assert fields['max_depth_meters'] == 18.5
    assert fields['dive_number'] == 7
    assert fields['rating'] == 3
    assert fields['dive_type'] == 'Fun Dive'
    assert fields['geo_lat'] is None
    # blank temperature takes the form default rather than reading as 0 °C
    assert fields['water_temp_celsius'] == 25.0

    for bad in ({}, {'date': '2024-05-01', 'rating': 6}, {'date': '2024-05-01', 'dive_type': 'Cave'},
                {'date': '2024-05-01', 'max_depth_meters': 'deep'},
                {'date': '2024-05-01', 'geo': {'lat': 91, 'lng': 0}},
                {'date': '2024-05-01', 'marine_life_sightings': [{'scientific_name': 'Chelonia mydas'}]}):
        with pytest.raises(ValidationError) as exc:
            parse_log_payload(bad)
        assert exc.value.code == 'invalid_log'


def test_save_uploads_photos_and_awards_first_badge(diver, store, png_data_url):
    saved, awarded = save_log(diver, {'date': '2024-05-01', 'location': 'Jeju', 'photos': [png_data_url]},
                              store=store)
    assert awarded == ['first-splash']
    assert len(saved['photos']) == 1
    path = saved['photo_storage_paths'][0]
    assert path.startswith(f'logs/{diver}/{saved["id"]}/')
    assert path.endswith('.png')
    assert saved['photos'][0] == store.url_for(path)
    assert _blobs(store) == [path]
    assert get_log(diver, saved['id']) == saved


def test_resave_keeps_retained_photos_and_deletes_dropped_ones(diver, store, png_data_url):
    saved, _ = save_log(diver, {'date': '2024-05-02', 'photos': [png_data_url, png_data_url]}, store=store)
    keep_url, drop_url = saved['photos']
    keep_path, drop_path = saved['photo_storage_paths']

    # client reorders, drops one photo, adds a new one and links an external image
    payload = dict(saved, photos=['https://example.com/reef.jpg', png_data_url, keep_url])
    resaved, awarded = save_log(diver, payload, store=store)
    assert awarded == []
    assert resaved['photos'][0] == 'https://example.com/reef.jpg'
    assert resaved['photo_storage_paths'][0] == ''
    assert resaved['photos'][2] == keep_url
    assert resaved['photo_storage_paths'][2] == keep_path
    assert drop_url not in resaved['photos']
    assert not store.exists(drop_path)
    assert store.exists(keep_path)
    assert len(_blobs(store)) == 2


def test_failed_save_removes_uploaded_blobs(diver, store, png_data_url, monkeypatch):
    import logbook

    def broken_now():
        raise RuntimeError('db went away')

    monkeypatch.setattr(logbook, 'now_iso', broken_now)
    with pytest.raises(RuntimeError):
        save_log(diver, {'date': '2024-05-03', 'photos': [png_data_url]}, store=store)
    assert _blobs(store) == []
    assert list_logs(diver) == []


def test_invalid_photo_data_fails_before_anything_is_stored(diver, store, png_data_url):
    with pytest.raises(ValidationError):
        save_log(diver, {'date': '2024-05-03', 'photos': [png_data_url, 'data:image/png;base64,@@']}, store=store)
    assert _blobs(store) == []


def test_html_photo_is_rejected(diver, store, png_data_url):
    html = 'data:text/html;base64,PHNjcmlwdD5hbGVydCgxKTwvc2NyaXB0Pg=='
    with pytest.raises(ValidationError) as exc:
        save_log(diver, {'date': '2024-05-03', 'photos': [png_data_url, html]}, store=store)
    assert exc.value.code == 'unsupported_image_type'
    assert _blobs(store) == []
    assert list_logs(diver) == []


@pytest.mark.parametrize('photos', ['https://example.com/a.jpg', {'url': 'https://example.com/a.jpg'},
                                    ['https://example.com/a.jpg', 7]])
def test_photos_must_be_a_list_of_strings(diver, store, photos):
    with pytest.raises(ValidationError) as exc:
        save_log(diver, {'date': '2024-05-03', 'photos': photos}, store=store)
    assert exc.value.code == 'invalid_log'
    assert _blobs(store) == []
    assert list_logs(diver) == []


def test_inline_sighting_images_are_not_stored(diver, store, png_data_url):
    sightings = [{'name': 'Turtle', 'image_url': png_data_url},
                 {'name': 'Ray', 'image_url': 'https://example.com/ray.jpg'}]
    saved, _ = save_log(diver, {'date': '2024-05-03', 'marine_life_sightings': sightings}, store=store)
    turtle, ray = saved['marine_life_sightings']
    assert 'image_url' not in turtle
    assert ray['image_url'] == 'https://example.com/ray.jpg'


def test_delete_removes_record_and_blobs(diver, store, png_data_url):
    saved, _ = save_log(diver, {'date': '2024-05-04', 'photos': [png_data_url]}, store=store)
    delete_log(diver, saved['id'], store=store)
    assert _blobs(store) == []
    with pytest.raises(NotFoundError):
        get_log(diver, saved['id'])
    with pytest.raises(NotFoundError):
        delete_log(diver, saved['id'], store=store)


def test_delete_succeeds_when_blob_cleanup_fails(diver, store, png_data_url, monkeypatch):
    saved, _ = save_log(diver, {'date': '2024-05-04', 'photos': [png_data_url]}, store=store)

    def boom(path):
        raise PermissionError('read-only')

    monkeypatch.setattr(os, 'remove', boom)
    delete_log(diver, saved['id'], store=store)
    assert list_logs(diver) == []


def test_logs_are_private_to_their_owner(diver, new_uid, store):
    other = new_uid('other')
    create_user_profile_if_missing(other)
    saved, _ = save_log(diver, {'date': '2024-05-05'}, store=store)
    assert list_logs(other) == []
    with pytest.raises(NotFoundError):
        get_log(other, saved['id'])


def test_listing_order_stats_and_map(diver, store):
    save_log(diver, {'id': 'a', 'date': '2024-01-01', 'dive_number': 1, 'location': 'Jeju',
                     'duration_minutes': 40, 'max_depth_meters': 18}, store=store)
    save_log(diver, {'id': 'b', 'date': '2024-01-02', 'dive_number': 3, 'location': 'Cebu',
                     'duration_minutes': 55, 'max_depth_meters': 31.5,
                     'geo': {'lat': 10.3, 'lng': 123.9, 'name': 'Moalboal'}}, store=store)
    save_log(diver, {'id': 'c', 'date': '2024-01-03', 'dive_number': 2, 'location': 'Jeju',
                     'duration_minutes': 35, 'max_depth_meters': 12}, store=store)

    logs = list_logs(diver)
    assert [l['id'] for l in logs] == ['b', 'c', 'a']
    assert dive_stats(logs) == {'total_dives': 3, 'total_time_minutes': 130, 'max_depth': 31.5,
                                'unique_locations': 2}
    points = map_points(logs)
    assert points == [{'id': 'b', 'lat': 10.3, 'lng': 123.9, 'name': 'Moalboal', 'site_name': '',
                       'date': '2024-01-02', 'max_depth_meters': 31.5}]


def test_stats_of_empty_history():
    assert dive_stats([]) == {'total_dives': 0, 'total_time_minutes': 0, 'max_depth': 0, 'unique_locations': 0}
    assert map_points([]) == []


def test_save_for_unknown_user_is_not_found(new_uid, store):
    with pytest.raises(NotFoundError):
        save_log(new_uid('ghost'), {'date': '2024-05-01'}, store=store)
