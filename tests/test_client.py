from __future__ import annotations

import requests

import urlfetcher
from urlfetcher import KeepAliveAdapter, build_session, parse_proxy


def test_parse_proxy_accepts_valid_url() -> None:
    assert parse_proxy("http://127.0.0.1:8080") == "http://127.0.0.1:8080"
    assert parse_proxy("socks5://user:pw@proxy.test:1080") == "socks5://user:pw@proxy.test:1080"


def test_parse_proxy_rejects_garbage() -> None:
    assert parse_proxy("") is None
    assert parse_proxy("not a url") is None
    assert parse_proxy("http://[::1") is None
    assert parse_proxy("http://proxy.test:notaport") is None


def test_session_defaults() -> None:
    s = build_session()
    assert s.verify is True
    assert s.trust_env is False
    assert s.proxies == {}
    assert s.headers["Connection"] == "close"
    adapter = s.get_adapter("https://example.test/")
    assert isinstance(adapter, KeepAliveAdapter)
    assert adapter.idle_timeout == urlfetcher.IDLE_TIMEOUT
    assert adapter.max_retries.total == 0


def test_session_keep_alive_and_proxy() -> None:
    s = build_session(keep_alive=True, proxy="http://127.0.0.1:3128")
    assert s.headers.get("Connection") != "close"
    assert s.proxies == {"http": "http://127.0.0.1:3128", "https": "http://127.0.0.1:3128"}


def test_unparsable_proxy_falls_back_to_direct() -> None:
    s = build_session(proxy="http://[broken")
    assert s.proxies == {}


def test_redirect_is_not_followed(session: requests.Session, base_url: str, http_server) -> None:
    resp = session.request(
        "GET",
        base_url + "/redirect",
        allow_redirects=False,
        timeout=(urlfetcher.CONNECT_TIMEOUT, urlfetcher.READ_TIMEOUT),
    )
    assert resp.status_code == 302
    assert resp.headers["Location"] == "/target"
    assert [hit["path"] for hit in http_server.hits] == ["/redirect"]


def test_idle_pool_is_cleared(monkeypatch, base_url: str) -> None:
    s = build_session(keep_alive=True)
    adapter = s.get_adapter(base_url)
    cleared = []
    monkeypatch.setattr(adapter.poolmanager, "clear", lambda: cleared.append(True))

    s.get(base_url + "/a", timeout=5)
    assert cleared == []

    adapter._last_used -= urlfetcher.IDLE_TIMEOUT + 1
    s.get(base_url + "/b", timeout=5)
    assert cleared == [True]
    s.close()
