import logging
import time

import pytest

from lygazsum import fetch
from lygazsum.errors import EmptyContentError, FetchError, FetchTimeoutError
from lygazsum.fetch import FetchResponse
from lygazsum.pipelines import content_fetch

URL = "https://ly.example/gazette/1130001.txt"


def _install(monkeypatch, body, content_type="text/plain; charset=utf-8"):
    calls = []

    def _fake_fetch(url, **kwargs):
        calls.append((url, kwargs))
        return FetchResponse(
            url=url, status=200, body=body.encode("utf-8"), headers={"Content-Type": content_type}
        )

    monkeypatch.setattr(content_fetch, "fetch_with_retry", _fake_fetch)
    return calls


def test_plain_text_is_returned_untouched(monkeypatch):
    calls = _install(monkeypatch, "主席：現在開會。")
    prepared = content_fetch.fetch_and_prepare(
        URL, max_length=1000, timeout_seconds=60, logger=logging.getLogger("test")
    )
    assert prepared.text == "主席：現在開會。"
    assert prepared.truncated is False
    _, kwargs = calls[0]
    assert kwargs["deadline"] is not None
    assert kwargs["max_retries"] == content_fetch.CONTENT_FETCH_RETRIES
    assert kwargs["timeout_seconds"] == 60


def test_request_timeout_is_separate_from_the_deadline(monkeypatch):
    calls = _install(monkeypatch, "主席：現在開會。")
    content_fetch.fetch_and_prepare(
        URL,
        max_length=1000,
        timeout_seconds=60,
        request_timeout_seconds=15,
        logger=logging.getLogger("test"),
    )
    _, kwargs = calls[0]
    assert kwargs["timeout_seconds"] == 15


def test_long_text_is_truncated(monkeypatch):
    _install(monkeypatch, "委" * 50)
    prepared = content_fetch.fetch_and_prepare(
        URL, max_length=10, timeout_seconds=60, logger=logging.getLogger("test")
    )
    assert prepared.text == "委" * 10
    assert prepared.truncated is True


def test_whitespace_body_is_empty_content(monkeypatch):
    _install(monkeypatch, " \n\t ")
    with pytest.raises(EmptyContentError) as excinfo:
        content_fetch.fetch_and_prepare(
            URL, max_length=1000, timeout_seconds=60, logger=logging.getLogger("test")
        )
    assert excinfo.value.error_type.value == "EMPTY_RESPONSE"


def test_html_is_reduced_to_readable_text(monkeypatch):
    html = """
    <html><head><style>p { color: red; }</style></head>
    <body>
      <nav>首頁 | 公報</nav>
      <p>主席：現在開會。</p>
      <script>alert(1)</script>
      <p>委員  質詢   財政部。</p>
      <footer>立法院</footer>
    </body></html>
    """
    _install(monkeypatch, html, content_type="text/html; charset=utf-8")
    prepared = content_fetch.fetch_and_prepare(
        URL, max_length=1000, timeout_seconds=60, logger=logging.getLogger("test")
    )
    assert prepared.text == "主席：現在開會。\n委員 質詢 財政部。"


def test_fetch_errors_propagate(monkeypatch):
    def _fake_fetch(url, **kwargs):
        raise FetchError("Client error 404", url=url, status=404)

    monkeypatch.setattr(content_fetch, "fetch_with_retry", _fake_fetch)
    with pytest.raises(FetchError):
        content_fetch.fetch_and_prepare(
            URL, max_length=1000, timeout_seconds=60, logger=logging.getLogger("test")
        )


class _TricklingResponse:
    headers = {"Content-Type": "text/plain; charset=utf-8"}

    def __init__(self, chunks, delay):
        self.chunks = list(chunks)
        self.delay = delay

    def getcode(self):
        return 200

    def read(self, size=-1):
        time.sleep(self.delay)
        return self.chunks.pop(0) if self.chunks else b""

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_trickling_body_cannot_outlive_the_deadline(monkeypatch):
    body = "主席：現在開會。".encode("utf-8")
    monkeypatch.setattr(
        fetch,
        "urlopen",
        lambda request, timeout=None: _TricklingResponse([body] * 10, delay=0.05),
    )
    with pytest.raises(FetchTimeoutError) as excinfo:
        content_fetch.fetch_and_prepare(
            URL, max_length=1000, timeout_seconds=0.2, logger=logging.getLogger("test")
        )
    assert excinfo.value.error_type.value == "TIMEOUT"
