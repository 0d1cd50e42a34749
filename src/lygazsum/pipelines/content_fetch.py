from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable

from bs4 import BeautifulSoup

from ..errors import EmptyContentError, FetchError
from ..fetch import DEFAULT_USER_AGENT, fetch_with_retry
from ..utils import log_event

CONTENT_FETCH_RETRIES = 2


@dataclass(frozen=True)
class PreparedContent:
    text: str
    truncated: bool


def fetch_and_prepare(
    url: str,
    *,
    max_length: int,
    timeout_seconds: float,
    logger: logging.Logger,
    user_agent: str = DEFAULT_USER_AGENT,
    request_timeout_seconds: float | None = None,
    max_retries: int = CONTENT_FETCH_RETRIES,
    backoff_seconds: float = 1.0,
    tag: str = "content-fetch",
    sleep: Callable[[float], None] = time.sleep,
) -> PreparedContent:
    """Fetch gazette text for analysis.

    The whole fetch, retries included, must finish within ``timeout_seconds``.
    Raises ``FetchTimeoutError`` when it does not, ``EmptyContentError`` when the
    body has no usable text and ``FetchError`` for everything else.
    ``request_timeout_seconds`` bounds each socket call inside that deadline.
    """
    deadline = time.monotonic() + timeout_seconds
    log_event(
        logger,
        logging.INFO,
        "content_fetch_start",
        tag=tag,
        url=url,
        timeout_seconds=timeout_seconds,
    )
    try:
        response = fetch_with_retry(
            url,
            logger=logger,
            max_retries=max_retries,
            tag=tag,
            user_agent=user_agent,
            timeout_seconds=request_timeout_seconds or timeout_seconds,
            deadline=deadline,
            backoff_seconds=backoff_seconds,
            sleep=sleep,
        )
        text = response.text()
        if "html" in response.content_type.lower():
            text = extract_readable_text(text)

        truncated = False
        if len(text) > max_length:
            log_event(
                logger,
                logging.WARNING,
                "content_truncated",
                tag=tag,
                url=url,
                length=len(text),
                limit=max_length,
            )
            text = text[:max_length]
            truncated = True

        if not text.strip():
            raise EmptyContentError(
                "Fetched content is empty or contains only whitespace.", url=url
            )
    except FetchError as exc:
        log_event(
            logger,
            logging.WARNING,
            "content_fetch_failed",
            tag=tag,
            url=url,
            error_type=exc.error_type.value,
            error=str(exc),
        )
        raise

    log_event(
        logger,
        logging.INFO,
        "content_fetch_ok",
        tag=tag,
        url=url,
        size_kb=f"{len(text) / 1024:.1f}",
        truncated=truncated,
    )
    return PreparedContent(text=text, truncated=truncated)


def extract_readable_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "noscript", "nav", "header", "footer"]):
        tag.decompose()
    root = soup.body or soup
    lines = [_normalize_line(line) for line in root.get_text("\n").splitlines()]
    return "\n".join(line for line in lines if line)


def _normalize_line(line: str) -> str:
    return re.sub(r"[ \t　\xa0]+", " ", line).strip()
