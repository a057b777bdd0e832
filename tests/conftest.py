import logging
from typing import Any, Callable, Dict, List, Optional

import pytest

import eh_sync


class FakeResponse:
    def __init__(self, status_code: int = 200, text: str = "", headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        self.text = text
        self.headers = headers or {"Content-Type": "text/html"}


class FakeTransport:
    """Stands in for requests.request; ``handler`` decides every reply."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.handler: Callable[[str, str, Any], Any] = lambda method, url, body: FakeResponse()

    def __call__(self, method, url, headers=None, json=None, timeout=None):
        self.calls.append(
            {"method": method, "url": url, "headers": dict(headers or {}), "json": json, "timeout": timeout}
        )
        outcome = self.handler(method, url, json)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class SleepRecorder:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture
def transport(monkeypatch):
    fake = FakeTransport()
    monkeypatch.setattr(eh_sync.requests, "request", fake)
    return fake


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def store(tmp_path):
    gallery_store = eh_sync.GalleryStore(tmp_path / "eh.sqlite3")
    yield gallery_store
    gallery_store.close()


@pytest.fixture
def restore_logging():
    root_logger = logging.getLogger()
    saved_handlers = list(root_logger.handlers)
    saved_level = root_logger.level
    yield
    for handler in list(root_logger.handlers):
        if handler not in saved_handlers:
            root_logger.removeHandler(handler)
            handler.close()
    for handler in saved_handlers:
        if handler not in root_logger.handlers:
            root_logger.addHandler(handler)
    root_logger.setLevel(saved_level)


def gallery_item(gid: int, /, **overrides: Any) -> Dict[str, Any]:
    item = {
        "gid": gid,
        "token": f"{gid:010x}"[-10:],
        "archiver_key": f"key-{gid}",
        "title": f"Gallery {gid}",
        "title_jpn": "",
        "category": "Manga",
        "thumb": f"https://ehgt.org/t/{gid}.jpg",
        "uploader": "uploader",
        "posted": str(1700000000 + gid),
        "filecount": "24",
        "filesize": 1048576,
        "expunged": False,
        "rating": "4.50",
        "torrentcount": "1",
        "torrents": [
            {
                "hash": f"{gid:040x}",
                "added": "1700000100",
                "name": f"gallery-{gid}.zip",
                "tsize": "1000",
                "fsize": "1048576",
            }
        ],
        "tags": ["language:english", "female:glasses"],
    }
    item.update(overrides)
    return item


def listing_row(gid: str, token: str, posted: str) -> str:
    return (
        f"<tr><td class=\"gl2c\"><div onclick=\"return popUp('https://e-hentai.org/"
        f"gallerypopups.php?gid={gid}&t={token}&act=addfav',675,415)\" "
        f"id=\"posted_{gid}\">{posted}</div></td></tr>\n"
    )
