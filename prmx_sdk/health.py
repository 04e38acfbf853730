"""
Client for the oracle service's health endpoint.

The health service is diagnostic only. Any failure to reach or parse it
degrades to an explicit "down" status instead of raising.
"""
import asyncio
import logging
import urllib.parse
from typing import Optional

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ._rate_limited_log import rate_limited_log
from .models import HealthStatus

logger = logging.getLogger(__name__)

HEALTH_PATH = "/admin/health"


class HealthClient:
    """Reads liveness of the oracle service and its subsystems"""

    def __init__(
        self,
        base_url: str,
        timeout: int = 10,
        retry_count: int = 2,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the health client

        Args:
            base_url: Oracle service URL (e.g., "http://localhost:3001")
            timeout: Timeout for HTTP requests in seconds
            retry_count: Number of retries for failed requests
            session: Existing requests session to use
            logger: Optional logger instance

        Raises:
            ValueError: If the URL doesn't use https (unless it's localhost/127.0.0.1)
        """
        parsed = urllib.parse.urlparse(base_url)
        host = parsed.hostname or ""
        is_local = host in ("localhost", "127.0.0.1")
        if parsed.scheme != "https" and not is_local:
            raise ValueError(f"base_url must use https:// for security (got: {parsed.scheme}://)")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)

        if session is None:
            session = requests.Session()
            retries = Retry(
                total=retry_count,
                backoff_factor=0.5,
                status_forcelist=[500, 502, 503, 504],
                allowed_methods=["GET"],
                raise_on_status=False
            )
            session.mount("http://", HTTPAdapter(max_retries=retries))
            session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session = session

    def get_status(self) -> HealthStatus:
        """
        Fetch the current health report.

        Returns:
            The reported HealthStatus, or HealthStatus.offline() if the
            service is unreachable or answers with anything unexpected
        """
        url = f"{self.base_url}{HEALTH_PATH}"
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
            if not isinstance(body, dict) or not body.get("success"):
                raise ValueError(f"Unsuccessful health response: {body}")
            status = HealthStatus.model_validate(body.get("data"))
        except (requests.RequestException, ValueError, ValidationError) as e:
            rate_limited_log(
                f"Health service at {self.base_url} unavailable: {e}",
                level="warning",
                logger_instance=self.logger
            )
            return HealthStatus.offline()

        self.logger.debug(f"Health status from {url}: {status.overall_status}")
        return status

    async def get_status_async(self) -> HealthStatus:
        """Fetch the health report without blocking the event loop."""
        return await asyncio.get_running_loop().run_in_executor(None, self.get_status)

    def close(self) -> None:
        self.session.close()
