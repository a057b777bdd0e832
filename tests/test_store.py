import sqlite3

import pytest

import eh_sync


def add_gallery(store, gid, posted, **overrides):
    fields = {
        "gid": gid,
        "token": "0123456789",
        "archiver_key": "",
        "title": f"Gallery {gid}",
        "title_jpn": "",
        "category": "Doujinshi",
        "thumb": "",
        "uploader": "someone",
        "posted": posted,
        "filecount": 10,
        "filesize": 100,
        "expunged": False,
        "rating": "4.00",
        "torrentcount": 0,
        "root_gid": 0,
    }
    fields.update(overrides)
    store.upsert_gallery(**fields)


def test_empty_store(store):
    assert store.last_gid() == 0
    assert store.newest_posted() is None
    assert store.offset_gid(24) == 0
    assert store.newest_gallery() is None
    assert store.table_counts() == {"galleries": 0, "torrents": 0, "tags": 0, "tag_links": 0}


def test_upsert_overwrites_columns_but_keeps_bytorrent(store):
    add_gallery(store, 10, 1000, title="old")
    store.conn.execute("UPDATE gallery SET bytorrent = 1 WHERE gid = 10")
    store.conn.commit()

    add_gallery(store, 10, 2000, title="new", expunged=True, root_gid=7)

    row = store.get_gallery(10)
    assert row["title"] == "new"
    assert row["posted"] == 2000
    assert row["expunged"] == 1
    assert row["root_gid"] == 7
    assert row["bytorrent"] == 1
    assert store.table_counts()["galleries"] == 1


def test_insert_torrent_is_idempotent(store):
    torrent = eh_sync.TorrentInfo(hash="a" * 40, name="file.zip", added="1", fsize="2")
    assert store.insert_torrent(10, torrent, "someone") is True
    assert store.insert_torrent(10, torrent, "someone") is False
    # same hash under another gallery is a different row
    assert store.insert_torrent(11, torrent, "someone") is True
    assert store.table_counts()["torrents"] == 2


def test_get_or_create_tag_reuses_existing_id(store):
    first = store.get_or_create_tag("language:english")
    second = store.get_or_create_tag("language:english")
    other = store.get_or_create_tag("female:glasses")
    assert first == second
    assert other != first
    assert store.table_counts()["tags"] == 2


def test_get_or_create_tag_rereads_after_duplicate_insert(store, monkeypatch):
    store.conn.execute("INSERT INTO tag (name) VALUES ('parody:original')")
    store.conn.commit()
    real_find = store.find_tag_id
    lookups = []

    def stale_then_real(name):
        lookups.append(name)
        if len(lookups) == 1:
            return None
        return real_find(name)

    monkeypatch.setattr(store, "find_tag_id", stale_then_real)

    assert store.get_or_create_tag("parody:original") == real_find("parody:original")
    assert len(lookups) == 2
    assert store.table_counts()["tags"] == 1


def test_link_tag_ignores_existing_link(store):
    tag_id = store.get_or_create_tag("other:full color")
    assert store.link_tag(10, tag_id) is True
    assert store.link_tag(10, tag_id) is False
    assert store.gallery_tags(10) == ["other:full color"]


def test_classify_sqlite_errors(store):
    store.conn.execute("INSERT INTO tag (name) VALUES ('x')")
    with pytest.raises(sqlite3.IntegrityError) as unique_info:
        store.conn.execute("INSERT INTO tag (name) VALUES ('x')")
    with pytest.raises(sqlite3.IntegrityError) as not_null_info:
        store.conn.execute("INSERT INTO tag (name) VALUES (NULL)")
    store.conn.rollback()

    assert isinstance(eh_sync.classify_sqlite_error(unique_info.value), eh_sync.UniqueViolation)
    assert isinstance(eh_sync.classify_sqlite_error(not_null_info.value), eh_sync.ConstraintViolation)
    assert isinstance(
        eh_sync.classify_sqlite_error(sqlite3.OperationalError("disk I/O error")),
        eh_sync.StoreUnavailable,
    )


def test_constraint_violation_surfaces_from_writes(store):
    with pytest.raises(eh_sync.ConstraintViolation):
        store.insert_torrent(10, eh_sync.TorrentInfo(hash=None), "someone")


def test_closed_store_is_unavailable(tmp_path):
    store = eh_sync.GalleryStore(tmp_path / "closed.sqlite3")
    store.close()
    with pytest.raises(eh_sync.StoreUnavailable):
        store.last_gid()


def test_offset_gid_picks_newest_gallery_before_threshold(store):
    hour = 3600
    newest = 1_700_000_000
    add_gallery(store, 500, newest)
    add_gallery(store, 400, newest - 1 * hour)
    add_gallery(store, 300, newest - 3 * hour)
    add_gallery(store, 301, newest - 3 * hour)
    add_gallery(store, 200, newest - 10 * hour)

    assert store.last_gid() == 500
    assert store.offset_gid(1) == 400
    # ties on posted resolve to the higher gid
    assert store.offset_gid(2) == 301
    assert store.offset_gid(5) == 200
    # nothing old enough falls back to the newest gid
    assert store.offset_gid(100) == 500


def test_newest_gallery_orders_by_posted_not_gid(store):
    add_gallery(store, 900, 1000)
    add_gallery(store, 100, 5000)
    newest = store.newest_gallery()
    assert newest["gid"] == 100
    assert newest["posted"] == 5000
    assert store.last_gid() == 900
