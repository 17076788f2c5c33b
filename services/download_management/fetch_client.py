"""
Module Name: fetch_client.py
Description:
    Single-shot resource fetching for download jobs. Performs one HTTP fetch
    per candidate URL, either directly or through the Cloudflare bypass proxy,
    and reports the outcome as a typed FetchResult. Never retries: the worker
    and retry policy own that decision.

Location:
    /services/download_management/fetch_client.py

"""

import math
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, List, Optional
from urllib.parse import urlparse

import requests

from utils.logger import get_module_logger

from .models import FetchFailure, FetchFailureKind, FetchResult, FetchSuccess, ResourceRef

_LOGGER = get_module_logger("DownloadManagement.FetchClient")

# Lower index wins when every candidate URL failed
FAILURE_PRECEDENCE = (
    FetchFailureKind.BYPASS_REQUIRED,
    FetchFailureKind.RATE_LIMITED,
    FetchFailureKind.TRANSIENT,
    FetchFailureKind.NOT_FOUND,
    FetchFailureKind.FATAL,
    FetchFailureKind.RESOLUTION_ERROR,
)

CHALLENGE_MARKERS = (
    "just a moment...",
    "cf-browser-verification",
    "challenge-platform",
    "attention required! | cloudflare",
)


class BaseFetchClient(ABC):
    """
    Abstract base for fetch clients.

    Implementations must return within their configured timeout and must not
    raise for network or server problems; those become FetchFailure values.
    """

    bypass_enabled: bool = False

    @abstractmethod
    def fetch(self, resource_ref: ResourceRef, via_bypass: bool = False) -> FetchResult:
        """Fetch the resource once, trying each candidate URL in order."""

    def close(self):
        """Release any held resources."""


def pick_failure(failures: List[FetchFailure]) -> FetchFailure:
    """Return the most retryable failure of a list of per-URL failures."""
    return min(failures, key=lambda failure: FAILURE_PRECEDENCE.index(failure.kind))


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Parse a Retry-After header given as delta-seconds or an HTTP date."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        return max(0.0, seconds) if math.isfinite(seconds) else None
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (retry_at - now).total_seconds())


class HttpFetchClient(BaseFetchClient):
    """
    requests-based fetch client.

    Features:
    - Direct fetch or fetch through the bypass proxy
      (``GET {proxy_url}{proxy_path}?url=<target>``)
    - Cloudflare challenge detection (BYPASS_REQUIRED)
    - Retry-After parsing for rate limits
    - Whole-request deadline, including body streaming
    """

    USER_AGENT = "BookDownloader/1.0 (+calibre-web-automated ingest)"
    CHUNK_SIZE = 64 * 1024
    MIN_REQUEST_TIMEOUT = 0.01

    def __init__(self, timeout: float = 60.0, bypass_enabled: bool = False,
                 bypass_url: Optional[str] = None, bypass_path: str = "/html",
                 session_factory: Callable[[], requests.Session] = requests.Session,
                 *, logger=None):
        self.logger = logger or _LOGGER
        self.timeout = float(timeout)
        self.bypass_enabled = bool(bypass_enabled and bypass_url)
        self.bypass_url = (bypass_url or "").rstrip("/")
        self.bypass_path = "/" + (bypass_path or "").lstrip("/")
        self._session_factory = session_factory
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()

        if bypass_enabled and not bypass_url:
            self.logger.warning("Bypass fetching requested without a proxy URL; bypass disabled")

    # ============================================================================
    # PUBLIC API
    # ============================================================================

    def fetch(self, resource_ref: ResourceRef, via_bypass: bool = False) -> FetchResult:
        use_bypass = via_bypass and self.bypass_enabled
        urls = [url for url in resource_ref.download_urls if url and url.strip()]

        if not urls:
            return FetchFailure(
                FetchFailureKind.RESOLUTION_ERROR,
                f"No download URLs for book {resource_ref.book_id}",
            )

        deadline = time.monotonic() + self.timeout
        failures: List[FetchFailure] = []
        for url in urls:
            if failures and time.monotonic() >= deadline:
                self.logger.debug(
                    "Fetch deadline for %s reached with %s URL(s) untried",
                    resource_ref.book_id, len(urls) - len(failures),
                )
                failures.append(FetchFailure(
                    FetchFailureKind.TRANSIENT,
                    f"Fetch exceeded {self.timeout:g}s before trying {url}",
                    url=url, via_bypass=use_bypass,
                ))
                break
            result = self._fetch_url(url.strip(), use_bypass, deadline)
            if result.ok:
                self.logger.debug(
                    "Fetched %s bytes for %s from %s%s",
                    len(result.content), resource_ref.book_id, url,
                    " (bypass)" if use_bypass else "",
                )
                return result
            self.logger.debug(
                "Fetch of %s for %s failed: %s (%s)",
                url, resource_ref.book_id, result.kind.value, result.message,
            )
            failures.append(result)

        return pick_failure(failures)

    def close(self):
        with self._sessions_lock:
            sessions, self._sessions = self._sessions, []
        for session in sessions:
            session.close()

    # ============================================================================
    # Internals
    # ============================================================================

    def _get_session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = self._session_factory()
            session.headers["User-Agent"] = self.USER_AGENT
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def _fetch_url(self, url: str, via_bypass: bool, deadline: float) -> FetchResult:
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return FetchFailure(FetchFailureKind.RESOLUTION_ERROR, f"Malformed URL: {url}", url=url)

        if via_bypass:
            request_url = f"{self.bypass_url}{self.bypass_path}"
            params = {"url": url}
        else:
            request_url = url
            params = None

        remaining = max(deadline - time.monotonic(), self.MIN_REQUEST_TIMEOUT)
        try:
            response = self._get_session().get(
                request_url,
                params=params,
                timeout=remaining,
                stream=True,
                allow_redirects=True,
            )
        except (requests.exceptions.MissingSchema, requests.exceptions.InvalidSchema,
                requests.exceptions.InvalidURL) as exc:
            return FetchFailure(FetchFailureKind.RESOLUTION_ERROR, str(exc), url=url, via_bypass=via_bypass)
        except requests.exceptions.Timeout:
            return FetchFailure(FetchFailureKind.TRANSIENT, f"Timed out after {self.timeout:g}s",
                                url=url, via_bypass=via_bypass)
        except requests.RequestException as exc:
            return FetchFailure(FetchFailureKind.TRANSIENT, f"Request failed: {exc}",
                                url=url, via_bypass=via_bypass)

        try:
            return self._read_response(response, url, via_bypass, deadline)
        finally:
            response.close()

    def _read_response(self, response: requests.Response, url: str, via_bypass: bool,
                       deadline: float) -> FetchResult:
        status = response.status_code

        if status >= 400:
            return self._classify_error(response, url, via_bypass)

        chunks = []
        try:
            for chunk in response.iter_content(chunk_size=self.CHUNK_SIZE):
                if chunk:
                    chunks.append(chunk)
                if time.monotonic() > deadline:
                    return FetchFailure(
                        FetchFailureKind.TRANSIENT,
                        f"Download exceeded {self.timeout:g}s",
                        url=url, via_bypass=via_bypass,
                    )
        except requests.RequestException as exc:
            return FetchFailure(FetchFailureKind.TRANSIENT, f"Body transfer failed: {exc}",
                                url=url, via_bypass=via_bypass)

        content = b"".join(chunks)
        if not content:
            return FetchFailure(FetchFailureKind.TRANSIENT, "Empty response body",
                                url=url, via_bypass=via_bypass)

        return FetchSuccess(
            content=content,
            url=url,
            via_bypass=via_bypass,
            content_type=response.headers.get("Content-Type"),
        )

    def _classify_error(self, response: requests.Response, url: str, via_bypass: bool) -> FetchFailure:
        status = response.status_code
        message = f"HTTP {status} from {'bypass proxy' if via_bypass else url}"

        if status in (403, 503) and self._is_challenge(response):
            # The bypass path being challenged too is just a hiccup of the proxy
            kind = FetchFailureKind.TRANSIENT if via_bypass else FetchFailureKind.BYPASS_REQUIRED
            return FetchFailure(kind, f"{message} (anti-bot challenge)", url=url, via_bypass=via_bypass)

        if status in (404, 410):
            return FetchFailure(FetchFailureKind.NOT_FOUND, message, url=url, via_bypass=via_bypass)

        if status == 429:
            return FetchFailure(
                FetchFailureKind.RATE_LIMITED,
                message,
                url=url,
                retry_after=parse_retry_after(response.headers.get("Retry-After")),
                via_bypass=via_bypass,
            )

        if status >= 500 or status == 408:
            return FetchFailure(FetchFailureKind.TRANSIENT, message, url=url, via_bypass=via_bypass)

        return FetchFailure(FetchFailureKind.FATAL, message, url=url, via_bypass=via_bypass)

    def _is_challenge(self, response: requests.Response) -> bool:
        if response.headers.get("cf-mitigated", "").lower() == "challenge":
            return True

        try:
            body = response.content[:16384].decode("utf-8", errors="ignore").lower()
        except requests.RequestException:
            body = ""

        if any(marker in body for marker in CHALLENGE_MARKERS):
            return True

        server = response.headers.get("Server", "").lower()
        return "cloudflare" in server and "<html" in body and "captcha" in body
