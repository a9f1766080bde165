# delivery/container/k8s_client.py
"""
Thin Kubernetes API client.

Uses httpx for requests and tenacity to retry transient failures
(transport errors, 5xx and 429 responses). Only the handful of pod and
job endpoints the container runners need are covered.
"""

import json
import os
from typing import Any, Dict, Iterator, List, Optional

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from ..errors import ConfigurationError, KubernetesApiError
from ..logging import get_logger
from ..settings import Settings, settings as default_settings

logger = get_logger(__name__)

# Default retry configuration
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_WAIT_MIN = 1
DEFAULT_WAIT_MAX = 10


def _is_transient(e: BaseException) -> bool:
    if isinstance(e, httpx.TransportError):
        return True
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code >= 500 or e.response.status_code == 429
    return False


class KubernetesApi:
    """
    Kubernetes REST API client.

    Args:
        base_url: API server URL
        token: Bearer token
        verify: TLS verification (bool or CA bundle path)
        timeout: Request timeout in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
        max_attempts: Attempts per request for transient failures
        wait_min: Minimum backoff in seconds
        wait_max: Maximum backoff in seconds
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        verify: Any = True,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        wait_min: float = DEFAULT_WAIT_MIN,
        wait_max: float = DEFAULT_WAIT_MAX,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            verify=verify,
            timeout=timeout,
            transport=transport,
        )
        self.max_attempts = max_attempts
        self.wait_min = wait_min
        self.wait_max = wait_max

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "KubernetesApi":
        """
        Build a client from settings, falling back to in-cluster configuration.

        Raises:
            ConfigurationError: No API server could be determined
        """
        s = settings or default_settings
        base_url = s.k8s_api_url
        if not base_url:
            host = os.getenv("KUBERNETES_SERVICE_HOST")
            port = os.getenv("KUBERNETES_SERVICE_PORT", "443")
            if not host:
                raise ConfigurationError(
                    "Kubernetes API not configured: set KUBERNETES_API_URL or run in-cluster"
                )
            base_url = f"https://{host}:{port}"

        token = None
        if os.path.exists(s.k8s_token_path):
            with open(s.k8s_token_path, encoding="utf-8") as f:
                token = f.read().strip()
        verify: Any = s.k8s_ca_path if os.path.exists(s.k8s_ca_path) else True

        return cls(base_url, token=token, verify=verify, timeout=s.k8s_timeout_seconds)

    def close(self) -> None:
        self._client.close()

    # --- transport --------------------------------------------------------

    def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Single attempt; transient failures raise so tenacity retries them.

        DO NOT catch exceptions here.
        """
        response = self._client.request(method, path, **kwargs)
        if response.status_code >= 500 or response.status_code == 429:
            response.raise_for_status()
        return response

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.wait_min, max=self.wait_max),
            retry=retry_if_exception(_is_transient),
            reraise=True,
        )
        try:
            return retrying(self._send, method, path, **kwargs)
        except httpx.HTTPStatusError as e:
            logger.warning("k8s_request_failed", method=method, path=path, status=e.response.status_code)
            raise KubernetesApiError(e.response.status_code, e.response.text) from e
        except httpx.TransportError as e:
            logger.warning("k8s_request_failed", method=method, path=path, error=str(e))
            raise KubernetesApiError(0, str(e)) from e

    def _stream_lines(self, path: str, params: Dict[str, str]) -> Iterator[str]:
        try:
            with self._client.stream("GET", path, params=params, timeout=None) as response:
                if response.is_error:
                    response.read()
                    raise KubernetesApiError(response.status_code, response.text)
                yield from response.iter_lines()
        except httpx.HTTPError as e:
            raise KubernetesApiError(0, str(e)) from e

    @staticmethod
    def _json(response: httpx.Response, allow_missing: bool = False) -> Optional[Dict[str, Any]]:
        if allow_missing and response.status_code == 404:
            return None
        if response.is_error:
            raise KubernetesApiError(response.status_code, response.text)
        return response.json()

    # --- pods -------------------------------------------------------------

    def read_pod(self, namespace: str, name: str) -> Dict[str, Any]:
        return self._json(self._request("GET", f"/api/v1/namespaces/{namespace}/pods/{name}"))

    def list_pods(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        response = self._request(
            "GET", f"/api/v1/namespaces/{namespace}/pods", params={"labelSelector": label_selector}
        )
        return self._json(response).get("items") or []

    def delete_pod(self, namespace: str, name: str) -> None:
        self._json(self._request("DELETE", f"/api/v1/namespaces/{namespace}/pods/{name}"), allow_missing=True)

    def watch_pod(self, namespace: str, name: str) -> Iterator[Dict[str, Any]]:
        """
        Stream watch events ({"type": ..., "object": pod}) for a single pod.

        The stream is not retried; callers re-open it if needed.
        """
        params = {"watch": "true", "fieldSelector": f"metadata.name={name}"}
        for line in self._stream_lines(f"/api/v1/namespaces/{namespace}/pods", params):
            if line.strip():
                yield json.loads(line)

    def follow_log(self, namespace: str, pod: str, container: str) -> Iterator[str]:
        """Stream log lines of a container until it exits."""
        params = {"container": container, "follow": "true"}
        yield from self._stream_lines(f"/api/v1/namespaces/{namespace}/pods/{pod}/log", params)

    # --- jobs -------------------------------------------------------------

    def read_job(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Job manifest, or None if the job does not exist."""
        return self._json(
            self._request("GET", f"/apis/batch/v1/namespaces/{namespace}/jobs/{name}"), allow_missing=True
        )

    def list_jobs(self, namespace: str, label_selector: str) -> List[Dict[str, Any]]:
        response = self._request(
            "GET", f"/apis/batch/v1/namespaces/{namespace}/jobs", params={"labelSelector": label_selector}
        )
        return self._json(response).get("items") or []

    def create_job(self, namespace: str, job: Dict[str, Any]) -> Dict[str, Any]:
        return self._json(self._request("POST", f"/apis/batch/v1/namespaces/{namespace}/jobs", json=job))

    def delete_job(self, namespace: str, name: str, propagation_policy: str = "Foreground") -> None:
        body = {"kind": "DeleteOptions", "apiVersion": "v1", "propagationPolicy": propagation_policy}
        self._json(
            self._request("DELETE", f"/apis/batch/v1/namespaces/{namespace}/jobs/{name}", json=body),
            allow_missing=True,
        )
