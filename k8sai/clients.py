"""HTTP clients for the Kubernetes API server and the chat completion service."""

from __future__ import annotations

import json
import ssl
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from k8sai.api import GROUP_VERSION, TASK_PLURAL, Task, TaskList

API_SERVER = "https://kubernetes.default.svc"
SERVICE_ACCOUNT_DIR = Path("/var/run/secrets/kubernetes.io/serviceaccount")
OPENAI_BASE_URL = "https://api.openai.com/v1"


@dataclass(frozen=True)
class NamespacedName:
    """Identifies an object by namespace and name."""

    namespace: str
    name: str

    def __str__(self) -> str:
        if not self.namespace:
            return self.name
        return f"{self.namespace}/{self.name}"


class KubeError(Exception):
    """A request to the Kubernetes API server failed."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    @property
    def not_found(self) -> bool:
        return self.status_code == 404


def _tasks_path(namespace: str | None = None) -> str:
    base = f"/apis/{GROUP_VERSION.group}/{GROUP_VERSION.version}"
    if namespace:
        return f"{base}/namespaces/{namespace}/{TASK_PLURAL}"
    return f"{base}/{TASK_PLURAL}"


class KubeClient:
    """A small client for the Kubernetes REST API authenticated by a bearer token."""

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        verify: ssl.SSLContext | bool = True,
        timeout: float = 30.0,
    ) -> None:
        self._http = httpx.Client(
            base_url=base_url,
            verify=verify,
            timeout=timeout,
            headers={"Authorization": f"Bearer {token}"},
        )

    def __enter__(self) -> KubeClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            return self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise KubeError(f"{method} {url}: {exc}") from exc

    def _json(self, method: str, url: str, **kwargs: Any) -> Any:
        response = self._send(method, url, **kwargs)
        if response.is_error:
            raise KubeError(
                f"{method} {url} returned {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()

    def get_task(self, name: NamespacedName) -> Task:
        """Fetch one task."""
        path = f"{_tasks_path(name.namespace)}/{name.name}"
        return Task.from_dict(self._json("GET", path))

    def list_tasks(self) -> TaskList:
        """List tasks in all namespaces."""
        return TaskList.from_dict(self._json("GET", _tasks_path()))

    def list_objects(self, path: str) -> dict[str, Any]:
        """Fetch the decoded JSON document at an API path."""
        return self._json("GET", path)

    def update_task_status(self, task: Task) -> Task:
        """Replace the status subresource of a task and return the stored task."""
        path = f"{_tasks_path(task.namespace)}/{task.name}/status"
        return Task.from_dict(self._json("PUT", path, json=task.to_dict()))

    def raw_request(self, verb: str, uri: str, data: Mapping[str, Any] | None) -> httpx.Response:
        """Send ``data`` as JSON with the given verb; the response is returned whatever its status."""
        content = json.dumps(data).encode()
        return self._send(verb or "GET", uri, content=content)

    def close(self) -> None:
        self._http.close()


class OpenAIClient:
    """Client for the chat completion endpoint."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = OPENAI_BASE_URL,
        timeout: float = 120.0,
    ) -> None:
        if not api_key:
            raise ValueError("an API key is required")
        self._http = httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}"},
        )

    def __enter__(self) -> OpenAIClient:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def create_chat_completion(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Send a chat completion request and return the decoded response."""
        response = self._http.post("/chat/completions", json=dict(request))
        response.raise_for_status()
        return response.json()

    def close(self) -> None:
        self._http.close()


def in_cluster_client() -> KubeClient:
    """Build a client from the pod's service account token and CA certificate."""
    token = (SERVICE_ACCOUNT_DIR / "token").read_text().strip()
    ca_pem = (SERVICE_ACCOUNT_DIR / "ca.crt").read_text()
    context = ssl.create_default_context(cadata=ca_pem)
    return KubeClient(API_SERVER, token, verify=context)