"""
HTTP client for the tax authority API with strict TLS.
Exactly one request per call: retry policy belongs to the submission worker, which
owns backoff and the retry ceiling. Never uses verify=False.
"""

import logging

import requests
from requests.adapters import HTTPAdapter

logger = logging.getLogger("invoicing")


def requests_session_without_retry() -> requests.Session:
    """Create session whose adapters never retry, including on connect errors."""
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=0)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    return session


def authority_request(
    method: str,
    url: str,
    *,
    json: dict | None = None,
    headers: dict | None = None,
    timeout: float = 20.0,
) -> requests.Response:
    """
    Make one authority request. Network errors and timeouts propagate as
    requests.RequestException for the caller to classify.
    """
    with requests_session_without_retry() as session:
        try:
            return session.request(
                method=method,
                url=url,
                json=json,
                headers=headers,
                timeout=timeout,
                verify=True,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            logger.warning("Authority request %s %s failed: %s", method, url, e, extra={"endpoint": url})
            raise
