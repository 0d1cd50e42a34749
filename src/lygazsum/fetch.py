from __future__ import annotations

import http.client
import logging
import time
from dataclasses import dataclass, field
from typing import Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import FetchError, FetchTimeoutError
from .utils import log_event

DEFAULT_USER_AGENT = "LyGazetteSummarizerBot/2.1"
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 1.0
READ_CHUNK_BYTES = 64 * 1024

_NETWORK_ERRORS = (URLError, TimeoutError, ConnectionError, http.client.HTTPException)


@dataclass(frozen=True)
class FetchResponse:
    url: str
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def content_type(self) -> str:
        for key, value in self.headers.items():
            if key.lower() == "content-type":
                return value
        return ""

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def fetch_with_retry(
    url: str,
    *,
    logger: logging.Logger,
    max_retries: int = DEFAULT_MAX_RETRIES,
    tag: str = "shared-fetch",
    headers: dict[str, str] | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
    timeout_seconds: float = 30,
    deadline: float | None = None,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> FetchResponse:
    """GET ``url`` with up to ``max_retries`` attempts.

    4xx responses other than 429 fail at once. 5xx, 429 and network errors back off
    ``backoff_seconds * 2 ** attempt`` and retry. ``deadline`` is a ``time.monotonic()``
    value; no request, retry or backoff sleep is started past it.
    """
    request_headers = {"User-Agent": user_agent}
    request_headers.update(headers or {})
    last_status: int | None = None
    last_error: str | None = None

    for attempt in range(max_retries):
        attempt_label = f"{attempt + 1}/{max_retries}"
        timeout = _attempt_timeout(url, timeout_seconds, deadline)
        log_event(logger, logging.INFO, "fetch_attempt", tag=tag, attempt=attempt_label, url=url)
        try:
            request = Request(url, headers=request_headers)
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                body = _read_body(response, url, deadline)
                response_headers = dict(response.headers.items()) if response.headers else {}
            log_event(
                logger,
                logging.INFO,
                "fetch_response",
                tag=tag,
                attempt=attempt_label,
                status=status,
                url=url,
            )
            return FetchResponse(url=url, status=status, body=body, headers=response_headers)
        except HTTPError as exc:
            last_status = exc.code
            last_error = f"{exc.code} {exc.reason}"
            if 400 <= exc.code < 500 and exc.code != 429:
                log_event(
                    logger,
                    logging.ERROR,
                    "fetch_client_error",
                    tag=tag,
                    attempt=attempt_label,
                    status=exc.code,
                    url=url,
                    body=_read_error_body(exc)[:500],
                )
                raise FetchError(
                    f"Client error {exc.code} fetching {url}, not retrying.",
                    url=url,
                    status=exc.code,
                ) from exc
            log_event(
                logger,
                logging.WARNING,
                "fetch_attempt_failed",
                tag=tag,
                attempt=attempt_label,
                status=exc.code,
                url=url,
            )
        except _NETWORK_ERRORS as exc:
            if _deadline_passed(deadline):
                log_event(logger, logging.WARNING, "fetch_deadline_exceeded", tag=tag, url=url)
                raise FetchTimeoutError(
                    f"Fetch deadline exceeded for {url}: {exc}", url=url, status=last_status
                ) from exc
            last_error = str(exc)
            log_event(
                logger,
                logging.WARNING,
                "fetch_attempt_error",
                tag=tag,
                attempt=attempt_label,
                url=url,
                error=last_error,
            )

        if attempt < max_retries - 1:
            delay = backoff_seconds * (2**attempt)
            if deadline is not None and time.monotonic() + delay >= deadline:
                log_event(logger, logging.WARNING, "fetch_deadline_exceeded", tag=tag, url=url)
                raise FetchTimeoutError(
                    f"Fetch deadline would be exceeded before retrying {url}",
                    url=url,
                    status=last_status,
                )
            log_event(logger, logging.INFO, "fetch_backoff", tag=tag, delay_seconds=delay, url=url)
            sleep(delay)

    log_event(
        logger,
        logging.ERROR,
        "fetch_retries_exhausted",
        tag=tag,
        attempts=max_retries,
        status=last_status,
        url=url,
    )
    raise FetchError(
        f"Failed fetch {url} after {max_retries} attempts. "
        f"Last status: {last_status}. Last error: {last_error}",
        url=url,
        status=last_status,
    )


def _attempt_timeout(url: str, timeout_seconds: float, deadline: float | None) -> float:
    if deadline is None:
        return timeout_seconds
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise FetchTimeoutError(f"Fetch deadline exceeded for {url}", url=url)
    return min(timeout_seconds, remaining)


def _deadline_passed(deadline: float | None) -> bool:
    return deadline is not None and time.monotonic() >= deadline


def _read_body(response, url: str, deadline: float | None) -> bytes:
    chunks = []
    while True:
        chunk = response.read(READ_CHUNK_BYTES)
        if _deadline_passed(deadline):
            raise FetchTimeoutError(f"Fetch deadline exceeded reading body of {url}", url=url)
        if not chunk:
            return b"".join(chunks)
        chunks.append(chunk)


def _read_error_body(exc: HTTPError) -> str:
    try:
        raw = exc.read()
    except (OSError, ValueError):
        return "[Could not read error body]"
    if not raw:
        return ""
    return raw.decode("utf-8", errors="replace")
