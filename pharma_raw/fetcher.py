from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List

from .exceptions import MalformedPageError, TransportError
from .http_client import HttpClient, HttpConfig
from .logging_utils import get_logger, log_json
from .models import MedicamentoRecord, PageResult
from .utils import to_int


@dataclass(frozen=True)
class PageContract:
    """Names of the pagination query parameters and response fields."""

    page_param: str = "pagina"
    size_param: str = "tamanioPagina"
    total_field: str = "totalFilas"
    results_field: str = "resultados"

    @classmethod
    def generic(cls) -> "PageContract":
        return cls(page_param="page", size_param="page_size", total_field="total", results_field="results")


def extract_records(data: Any, contract: PageContract) -> List[Any]:
    rows = data.get(contract.results_field) if isinstance(data, dict) else None
    if rows is None:
        raise MalformedPageError(f"response has no '{contract.results_field}' collection")
    if not isinstance(rows, list):
        raise MalformedPageError(f"'{contract.results_field}' is {type(rows).__name__}, expected list")
    return rows


class PageFetcher:
    def __init__(self, base_url: str, client: HttpClient, contract: PageContract | None = None):
        self.base_url = base_url
        self.client = client
        self.contract = contract or PageContract()
        self.logger = get_logger()

    @classmethod
    def from_settings(cls, settings: Any, contract: PageContract | None = None) -> "PageFetcher":
        cfg = HttpConfig(
            user_agent=settings.user_agent,
            connect_timeout=settings.http_timeout_sec,
            read_timeout=settings.http_timeout_sec,
        )
        return cls(settings.source_url, HttpClient(cfg), contract)

    def fetch_page(self, page_index: int, page_size: int) -> PageResult:
        c = self.contract
        params = {c.page_param: page_index, c.size_param: page_size}
        try:
            data = self.client.get_json(self.base_url, params=params)
        except TransportError as e:
            raise TransportError(f"{e} page={page_index}") from e

        total = to_int(data.get(c.total_field) if isinstance(data, dict) else None)
        try:
            rows = extract_records(data, c)
        except MalformedPageError as e:
            log_json(self.logger, logging.WARNING, "malformed_page", page=page_index, reason=str(e))
            rows = []

        return PageResult(
            page=page_index,
            total=total,
            records=[MedicamentoRecord.from_json(r) for r in rows],
        )

    def close(self) -> None:
        self.client.close()
