from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import requests

from .exceptions import TransportError


@dataclass
class HttpConfig:
    user_agent: str
    connect_timeout: float = 15.0
    read_timeout: float = 15.0


class HttpClient:
    """Thin ``requests.Session`` wrapper.

    No retries: a failed request surfaces as ``TransportError`` and the whole
    run is re-invoked later by the supervisor.
    """

    def __init__(self, cfg: HttpConfig):
        self.cfg = cfg
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": cfg.user_agent})

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        timeout = kwargs.pop("timeout", (self.cfg.connect_timeout, self.cfg.read_timeout))
        try:
            resp = self.session.request(method, url, timeout=timeout, **kwargs)
        except requests.Timeout as e:
            raise TransportError(f"fetch_timeout url={url} error={e}") from e
        except requests.RequestException as e:
            raise TransportError(f"fetch_unreachable url={url} error={e}") from e
        return resp

    def get_json(self, url: str, **kwargs: Any) -> Any:
        headers = {"Accept": "application/json", **(kwargs.pop("headers", None) or {})}
        resp = self.request("GET", url, headers=headers, **kwargs)
        if not resp.ok:
            raise TransportError(f"fetch_failed status={resp.status_code} url={resp.url or url}")
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"fetch_invalid_json status={resp.status_code} url={resp.url or url}") from e

    def close(self) -> None:
        self.session.close()
