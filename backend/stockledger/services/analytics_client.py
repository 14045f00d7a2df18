# Overview: Client for the external POS analytics store (ClickHouse HTTP
# interface); returns bill-level sale lines for a business-date window.

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, Protocol

import httpx
from flask import current_app

from .concurrency import is_transient_error, retry_with_classifier


class AnalyticsUnavailableError(Exception):
    """The analytics store could not be reached; safe to retry later."""

    def __init__(self, message: str, attempts: int | None = None):
        super().__init__(message)
        self.attempts = attempts


class AnalyticsQueryError(Exception):
    """The analytics store answered but rejected the query (terminal)."""
    pass


@dataclass(frozen=True)
class SaleLine:
    """
    Quantity of one menu item on one bill.

    sold_at is the bill's LOCAL business datetime; sale_date its local date.
    """
    sale_date: date
    sold_at: datetime
    document_id: str
    branch_code: str
    menu_barcode: str
    quantity: Decimal
    menu_name: str | None = None


class AnalyticsSource(Protocol):
    def fetch_sale_lines(
        self,
        start: date,
        end: date,
        branch_codes: Iterable[str] | None = None,
    ) -> list[SaleLine]:
        ...


_FORMAT_CLAUSE = re.compile(r"\bformat\s+\w+", re.IGNORECASE)


def _escape(value) -> str:
    return str(value or "").replace("\\", "\\\\").replace("'", "''")


def _is_transient_http(exc: BaseException) -> bool:
    if isinstance(exc, AnalyticsQueryError):
        return False
    if isinstance(exc, (httpx.TransportError, httpx.TimeoutException)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in (502, 503, 504)
    return is_transient_error(exc)


class ClickHouseAnalyticsSource:
    """
    Thin HTTP client: POST the SQL, append FORMAT JSON, return payload["data"].

    Transient failures (connection errors, timeouts, 502/503/504) are retried
    with exponential backoff and end in AnalyticsUnavailableError. Any other
    non-2xx answer raises AnalyticsQueryError immediately.
    """

    # POS transaction flag for completed sales
    SALE_TRANSFLAG = 44

    def __init__(
        self,
        *,
        host: str,
        user: str,
        password: str,
        database: str = "dedebi",
        port: int = 8123,
        secure: bool = False,
        shop_id: str = "",
        time_offset_hours: int = 7,
        timeout: float = 60.0,
        max_retries: int = 3,
        retry_delay: float = 4.0,
        transport: httpx.BaseTransport | None = None,
        sleep=None,
    ):
        if not host or not user or not password:
            raise AnalyticsUnavailableError("Missing analytics connection configuration")
        scheme = "https" if secure else "http"
        self.base_url = f"{scheme}://{host}:{port}/"
        self.database = database
        self.shop_id = shop_id
        self.time_offset_hours = int(time_offset_hours)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._client = httpx.Client(
            auth=(user, password),
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "text/plain"},
        )

    @classmethod
    def from_config(cls, config, **overrides) -> "ClickHouseAnalyticsSource":
        kwargs = dict(
            host=config.get("ANALYTICS_HOST"),
            user=config.get("ANALYTICS_USER"),
            password=config.get("ANALYTICS_PASSWORD"),
            database=config.get("ANALYTICS_DATABASE", "dedebi"),
            port=config.get("ANALYTICS_PORT", 8123),
            secure=config.get("ANALYTICS_SECURE", False),
            shop_id=config.get("ANALYTICS_SHOP_ID", ""),
            time_offset_hours=config.get("ANALYTICS_TIME_OFFSET_HOURS", 7),
            timeout=config.get("ANALYTICS_TIMEOUT_SECONDS", 60),
            max_retries=config.get("ANALYTICS_MAX_RETRIES", 3),
            retry_delay=config.get("ANALYTICS_RETRY_DELAY_SECONDS", 4),
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    def close(self) -> None:
        self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def query(self, sql: str) -> list[dict]:
        final_sql = sql.strip()
        if not _FORMAT_CLAUSE.search(final_sql):
            final_sql = f"{final_sql}\nFORMAT JSON"

        def _op() -> list[dict]:
            response = self._client.post(
                self.base_url,
                params={"database": self.database},
                content=final_sql.encode("utf-8"),
            )
            if response.status_code in (502, 503, 504):
                response.raise_for_status()
            if response.is_error:
                raise AnalyticsQueryError(
                    f"Analytics query failed: {response.status_code} {response.text[:500]}"
                )
            payload = response.json()
            return payload.get("data") or []

        kwargs = {}
        if self._sleep is not None:
            kwargs["sleep"] = self._sleep
        return retry_with_classifier(
            _op,
            label="analytics query",
            attempts=self.max_retries,
            delay=self.retry_delay,
            classify=_is_transient_http,
            on_exhausted=lambda exc, attempts: AnalyticsUnavailableError(
                f"Analytics store temporarily unavailable: {exc}", attempts=attempts
            ),
            **kwargs,
        )

    def sale_lines_sql(self, start: date, end: date, branch_codes: Iterable[str] | None = None) -> str:
        offset = self.time_offset_hours
        date_expr = f"toDate(addHours(d.docdatetime, {offset}))"
        local_expr = f"formatDateTime(addHours(d.docdatetime, {offset}), '%F %T')"
        branch_filter = ""
        codes = [c for c in (branch_codes or []) if c]
        if codes:
            joined = ", ".join(f"'{_escape(c)}'" for c in codes)
            branch_filter = f"AND d.branchid IN ({joined})"
        return f"""
            SELECT {date_expr} AS sale_date,
                   {local_expr} AS sale_datetime_local,
                   d.docno AS sale_doc_no,
                   d.branchid AS branch_code,
                   dd.barcode AS barcode,
                   any(dd.itemname) AS menu_name,
                   sum(dd.qty) AS total_qty
            FROM doc d
            JOIN docdetail dd ON d.shopid = dd.shopid AND d.docno = dd.docno
            WHERE d.shopid = '{_escape(self.shop_id)}'
              AND d.transflag = {self.SALE_TRANSFLAG}
              AND dd.transflag = {self.SALE_TRANSFLAG}
              AND d.iscancel = 0
              AND {date_expr} BETWEEN toDate('{start.isoformat()}') AND toDate('{end.isoformat()}')
              {branch_filter}
            GROUP BY sale_date, sale_datetime_local, sale_doc_no, branch_code, barcode
        """

    def fetch_sale_lines(
        self,
        start: date,
        end: date,
        branch_codes: Iterable[str] | None = None,
    ) -> list[SaleLine]:
        rows = self.query(self.sale_lines_sql(start, end, branch_codes))
        lines = []
        for row in rows:
            line = parse_sale_row(row)
            if line is not None:
                lines.append(line)
        current_app.logger.info("Fetched %d sale lines for %s..%s", len(lines), start, end)
        return lines


def parse_sale_row(row: dict) -> SaleLine | None:
    """Map one JSON row to a SaleLine; rows without bill/barcode/qty are dropped."""
    barcode = str(row.get("barcode") or "").strip()
    doc_no = str(row.get("sale_doc_no") or "").strip()
    if not barcode or not doc_no:
        return None
    try:
        quantity = Decimal(str(row.get("total_qty") or 0))
    except InvalidOperation:
        return None
    if not quantity.is_finite() or quantity <= 0:
        return None

    sale_date = date.fromisoformat(str(row.get("sale_date"))[:10])
    local_raw = str(row.get("sale_datetime_local") or "").strip()
    sold_at = datetime.fromisoformat(local_raw) if local_raw else datetime.combine(sale_date, datetime.min.time())

    return SaleLine(
        sale_date=sale_date,
        sold_at=sold_at,
        document_id=doc_no,
        branch_code=str(row.get("branch_code") or "").strip(),
        menu_barcode=barcode,
        quantity=quantity,
        menu_name=row.get("menu_name"),
    )


def default_source() -> ClickHouseAnalyticsSource:
    return ClickHouseAnalyticsSource.from_config(current_app.config)
