import asyncio

import pytest
import requests

import eh_sync
from conftest import FakeResponse, listing_row


def make_walker(sleeper, *, retries=3, max_ban_cooldowns=8, cookies="igneous=a; ipb_pass_hash=b; ipb_member_id=c"):
    http = eh_sync.HTTPClient(
        timeout_seconds=5,
        max_retries=retries,
        retry_delay_seconds=1,
        sleep=sleeper,
    )
    monitor = eh_sync.BanMonitor(safety_margin_seconds=0, sleep=sleeper)
    return eh_sync.PageWalker(
        host="e-hentai.org",
        cookies=cookies,
        http=http,
        ban_monitor=monitor,
        max_ban_cooldowns=max_ban_cooldowns,
    )


LISTING = (
    "<table class=\"itg gltc\">\n"
    + listing_row("2900003", "abcdef0123", "2024-05-01 10:42")
    + listing_row("2900002", "0123456789", "2024-05-01 10:30")
    + listing_row("2900001", "fedcba9876", "2024-05-01 09:05")
    + "</table>"
)


def test_parse_listing_keeps_document_order():
    entries = eh_sync.parse_listing(LISTING)
    assert entries == [
        eh_sync.PageEntry(gid="2900003", token="abcdef0123", posted="2024-05-01 10:42"),
        eh_sync.PageEntry(gid="2900002", token="0123456789", posted="2024-05-01 10:30"),
        eh_sync.PageEntry(gid="2900001", token="fedcba9876", posted="2024-05-01 09:05"),
    ]


def test_parse_listing_keeps_first_occurrence_of_gid():
    body = (
        listing_row("10", "aaaaaaaaaa", "2024-01-02 00:00")
        + listing_row("9", "bbbbbbbbbb", "2024-01-01 00:00")
        + listing_row("10", "cccccccccc", "2023-12-31 00:00")
    )
    entries = eh_sync.parse_listing(body)
    assert [(e.gid, e.token) for e in entries] == [("10", "aaaaaaaaaa"), ("9", "bbbbbbbbbb")]


def test_parse_listing_without_rows():
    assert eh_sync.parse_listing("<p>No hits found</p>") == []


def test_fetch_page_builds_listing_request(transport, sleeper):
    transport.handler = lambda method, url, body: FakeResponse(text=LISTING)
    walker = make_walker(sleeper)

    entries = asyncio.run(walker.fetch_page("2899990"))

    assert [e.gid for e in entries] == ["2900003", "2900002", "2900001"]
    assert len(transport.calls) == 1
    call = transport.calls[0]
    assert call["method"] == "GET"
    assert call["url"] == (
        "https://e-hentai.org/?prev=2899990&f_cats=0&advsearch=1&f_sname=on&f_stags=on"
        "&f_sh=&f_spf=&f_spt=&f_sfl=on&f_sfu=on"
    )
    assert call["headers"]["Cookie"] == "igneous=a; ipb_pass_hash=b; ipb_member_id=c"
    assert call["headers"]["Referer"] == "https://e-hentai.org"
    assert call["headers"]["DNT"] == "1"
    assert call["timeout"] == 5


def test_fetch_page_without_cookie_sends_no_cookie_header(transport, sleeper):
    transport.handler = lambda method, url, body: FakeResponse(text="")
    walker = make_walker(sleeper, cookies="")

    assert asyncio.run(walker.fetch_page("0")) == []
    assert "Cookie" not in transport.calls[0]["headers"]


def test_fetch_page_waits_out_ban_and_repeats_request(transport, sleeper):
    bodies = iter(["<p>The ban expires in 5 seconds</p>", LISTING])
    transport.handler = lambda method, url, body: FakeResponse(text=next(bodies))
    walker = make_walker(sleeper)

    entries = asyncio.run(walker.fetch_page("1"))

    assert len(entries) == 3
    assert len(transport.calls) == 2
    assert transport.calls[0]["url"] == transport.calls[1]["url"]
    assert sleeper.calls == [1, 1, 1, 1, 1]


def test_fetch_page_gives_up_after_max_ban_cooldowns(transport, sleeper):
    transport.handler = lambda method, url, body: FakeResponse(text="The ban expires in 2 seconds")
    walker = make_walker(sleeper, max_ban_cooldowns=2)

    with pytest.raises(eh_sync.BanLimitExceeded):
        asyncio.run(walker.fetch_page("1"))

    assert len(transport.calls) == 3
    assert sleeper.calls == [1, 1, 1, 1]


def test_fetch_page_raises_after_retry_budget(transport, sleeper):
    transport.handler = lambda method, url, body: FakeResponse(status_code=503, text="busy")
    walker = make_walker(sleeper, retries=3)

    with pytest.raises(eh_sync.FetchError) as info:
        asyncio.run(walker.fetch_page("1"))

    assert not isinstance(info.value, eh_sync.BanLimitExceeded)
    assert "503" in str(info.value)
    assert len(transport.calls) == 3
    assert sleeper.calls == [1, 1]


def test_fetch_page_retries_transport_errors(transport, sleeper):
    outcomes = iter([requests.ConnectionError("reset by peer"), FakeResponse(text=LISTING)])
    transport.handler = lambda method, url, body: next(outcomes)
    walker = make_walker(sleeper)

    entries = asyncio.run(walker.fetch_page("1"))

    assert len(entries) == 3
    assert len(transport.calls) == 2
    assert sleeper.calls == [1]


def test_fetch_page_uses_injected_parser(transport, sleeper):
    transport.handler = lambda method, url, body: FakeResponse(text="gid:7")
    walker = make_walker(sleeper)
    walker.parser = lambda body: [eh_sync.PageEntry(gid=body.split(":")[1], token="t" * 10, posted="-")]

    assert asyncio.run(walker.fetch_page("1"))[0].gid == "7"


def test_retried_attempts_log_warnings_not_errors(transport, sleeper, caplog):
    outcomes = iter([FakeResponse(status_code=502, text="bad gateway"), FakeResponse(text=LISTING)])
    transport.handler = lambda method, url, body: next(outcomes)
    walker = make_walker(sleeper)

    with caplog.at_level("DEBUG", logger="eh-sync"):
        asyncio.run(walker.fetch_page("1"))

    attempt_records = [r for r in caplog.records if "on attempt 1/3" in r.getMessage()]
    assert [r.levelname for r in attempt_records] == ["WARNING"]
    assert not [r for r in caplog.records if r.levelname == "ERROR"]
