"""
TorBox Web API client - requests wrapper

Covers the endpoints the automation engine needs: listing torrents, usenet and
web downloads, control operations (pause/resume/delete/reannounce) and
download/stream link generation.
"""

import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from torbox_rules.config import DEFAULT_BASE_URL
from torbox_rules.errors import APIError, AuthenticationError, ConnectionError
from torbox_rules.logging import get_logger

logger = get_logger(__name__)

LINK_CACHE_TTL_SECONDS = 3 * 60 * 60
BACKOFF_INITIAL_SECONDS = 2.0
BACKOFF_MAX_SECONDS = 60.0
BACKOFF_RESET_SECONDS = 30.0
BACKOFF_JITTER = 0.2

SOURCES = ('torrent', 'usenet', 'web')


def _flag(value: bool) -> str:
    return 'true' if value else 'false'


class TorBoxAPI:
    """
    TorBox Web API client

    Features:
    - Bearer token authentication on a shared requests.Session
    - Exponential backoff after 429 / 5xx responses
    - 3 hour cache of generated download and stream links
    """

    def __init__(self, api_token: str, base_url: str = DEFAULT_BASE_URL, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """
        Initialize API client

        Args:
            api_token: TorBox API token
            base_url: API root (e.g., 'https://api.torbox.app/v1/api')
            timeout: Per-request timeout in seconds passed to requests (None waits indefinitely)
            session: Pre-built session (tests)
            sleep: Sleep function used for backoff waits
            clock: Monotonic clock used for backoff and link cache ages
        """
        self.api_token = api_token
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f'Bearer {api_token}',
            'Content-Type': 'application/json',
        })
        self._sleep = sleep
        self._clock = clock

        self._lock = threading.Lock()
        self.backoff_seconds = 0.0
        self._last_error_time = 0.0
        self._link_cache: Dict[str, Tuple[str, float]] = {}

    # Backoff

    def _apply_jitter(self, seconds: float) -> float:
        jitter = seconds * BACKOFF_JITTER * (random.random() * 2 - 1)
        return max(0.0, seconds + jitter)

    def _wait_for_backoff(self):
        with self._lock:
            backoff = self.backoff_seconds
        if backoff > 0:
            wait = self._apply_jitter(backoff)
            logger.debug(f"Backoff: waiting {wait:.1f}s before next request")
            self._sleep(wait)

    def _track_status(self, status_code: int):
        """Grow backoff on rate limit / server errors, reset it after a quiet period"""
        with self._lock:
            if status_code == 429 or status_code >= 500:
                if self.backoff_seconds == 0:
                    self.backoff_seconds = BACKOFF_INITIAL_SECONDS
                else:
                    self.backoff_seconds = min(self.backoff_seconds * 2, BACKOFF_MAX_SECONDS)
                self._last_error_time = self._clock()
                logger.warning(f"Rate/server error {status_code}, backoff now {self.backoff_seconds:.0f}s")
            elif self._clock() - self._last_error_time > BACKOFF_RESET_SECONDS:
                self.backoff_seconds = 0.0

    # Request plumbing

    def _request(self, method: str, endpoint: str, params: Optional[Dict[str, Any]] = None,
                 json: Optional[Dict[str, Any]] = None) -> Any:
        """
        Perform a request and unwrap the {success, detail, data} envelope

        Returns:
            The envelope's data member

        Raises:
            AuthenticationError: On 401/403
            ConnectionError: If the request could not be sent
            APIError: On other HTTP errors or success=false
        """
        self._wait_for_backoff()
        url = f"{self.base_url}{endpoint}"
        logger.debug(f"{method} {url}")

        try:
            response = self.session.request(method, url, params=params, json=json, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            raise ConnectionError(url, str(e))

        self._track_status(response.status_code)

        if response.status_code in (401, 403):
            raise AuthenticationError(endpoint, response.text)

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.ok:
            detail = payload.get('detail') if isinstance(payload, dict) else None
            raise APIError(endpoint, response.status_code, detail or response.text)

        if not isinstance(payload, dict):
            raise APIError(endpoint, response.status_code, 'Response was not a JSON object')

        if not payload.get('success', False):
            raise APIError(endpoint, response_text=payload.get('detail') or f"Request to {endpoint} failed")

        return payload.get('data')

    def _get_list(self, endpoint: str) -> List[Dict[str, Any]]:
        data = self._request('GET', endpoint, params={'bypass_cache': 'true'})
        return data if isinstance(data, list) else []

    # Listing

    def get_torrents(self) -> List[Dict[str, Any]]:
        """Get all torrents on the account"""
        return self._get_list('/torrents/mylist')

    def get_usenet(self) -> List[Dict[str, Any]]:
        """Get all usenet downloads on the account"""
        return self._get_list('/usenet/mylist')

    def get_web_downloads(self) -> List[Dict[str, Any]]:
        """Get all web downloads on the account"""
        return self._get_list('/webdl/mylist')

    # Control

    def control_torrent(self, torrent_id: int, operation: str):
        """
        Control a torrent

        Args:
            torrent_id: Torrent id
            operation: 'pause', 'resume', 'delete' or 'reannounce'
        """
        self._request('POST', '/torrents/controltorrent',
                      json={'torrent_id': torrent_id, 'operation': operation})
        logger.debug(f"Torrent {torrent_id}: {operation}")

    def control_usenet(self, usenet_id: int, operation: str):
        """Control a usenet download ('pause', 'resume' or 'delete')"""
        self._request('POST', '/usenet/controlusenetdownload',
                      json={'usenet_id': usenet_id, 'operation': operation})
        logger.debug(f"Usenet {usenet_id}: {operation}")

    def control_web_download(self, web_id: int, operation: str):
        """Control a web download ('pause', 'resume' or 'delete')"""
        self._request('POST', '/webdl/controlwebdownload',
                      json={'webdl_id': web_id, 'operation': operation})
        logger.debug(f"Web download {web_id}: {operation}")

    def delete_item(self, source: str, source_id: int):
        """Delete a download of any kind"""
        if source == 'torrent':
            self.control_torrent(source_id, 'delete')
        elif source == 'usenet':
            self.control_usenet(source_id, 'delete')
        elif source == 'web':
            self.control_web_download(source_id, 'delete')
        else:
            raise ValueError(f"Unknown source: {source}")
        logger.info(f"Deleted {source} {source_id}")

    # Links

    def _request_link(self, source: str, source_id: int, file_id: int, zip_link: bool = False,
                      torrent_file: bool = False) -> str:
        params: Dict[str, Any] = {'token': self.api_token, 'file_id': file_id, 'zip_link': _flag(zip_link)}
        if source == 'torrent':
            endpoint = '/torrents/requestdl'
            params['torrent_id'] = source_id
            params['torrent_file'] = _flag(torrent_file)
        elif source == 'usenet':
            endpoint = '/usenet/requestdl'
            params['usenet_id'] = source_id
        elif source == 'web':
            endpoint = '/webdl/requestdl'
            params['webdownload_id'] = source_id
            params['web_id'] = source_id
        else:
            raise ValueError(f"Unknown source: {source}")

        url = self._request('GET', endpoint, params=params)
        if not isinstance(url, str) or not url:
            raise APIError(endpoint, response_text='No download link returned')
        return url

    def _cached_link(self, key: str) -> Optional[str]:
        with self._lock:
            cached = self._link_cache.get(key)
            if cached is None:
                return None
            if self._clock() - cached[1] >= LINK_CACHE_TTL_SECONDS:
                del self._link_cache[key]
                return None
        logger.debug(f"Using cached link for {key}")
        return cached[0]

    def _store_link(self, key: str, url: str):
        with self._lock:
            now = self._clock()
            expired = [k for k, (_, stored_at) in self._link_cache.items()
                       if now - stored_at >= LINK_CACHE_TTL_SECONDS]
            for k in expired:
                del self._link_cache[k]
            self._link_cache[key] = (url, now)

    def get_download_link(self, source: str, source_id: int, file_id: int, zip_link: bool = False,
                          torrent_file: bool = False) -> str:
        """
        Get (or reuse) a download link for one file of a download

        Returns:
            Download URL
        """
        key = f"{source}-{source_id}-{file_id}-zip:{_flag(zip_link)}-torrent:{_flag(torrent_file)}"
        url = self._cached_link(key)
        if url is None:
            url = self._request_link(source, source_id, file_id, zip_link=zip_link, torrent_file=torrent_file)
            self._store_link(key, url)
        return url

    def get_stream_link(self, source: str, source_id: int, file_id: int) -> str:
        """Get (or reuse) a streamable link for one file of a download"""
        key = f"stream-{source}-{source_id}-{file_id}"
        url = self._cached_link(key)
        if url is None:
            url = self._request_link(source, source_id, file_id)
            self._store_link(key, url)
        return url

    def clear_link_cache(self):
        with self._lock:
            self._link_cache.clear()
