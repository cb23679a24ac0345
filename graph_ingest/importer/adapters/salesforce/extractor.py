"""Bulk API 2.0 query export used by the Salesforce adapter."""

from __future__ import annotations

import csv
import io
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Sequence

import requests
from simple_salesforce import Salesforce

from . import ensure_salesforce_adapter_ready

MODSTAMP_FIELD = "SystemModstamp"
TERMINAL_STATES = frozenset({"JobComplete", "Failed", "Aborted"})

logger = logging.getLogger(__name__)


def soql_datetime(value: datetime) -> str:
    """SOQL datetime literal in UTC with millisecond precision."""
    value = value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_soql(
    object_name: str,
    *,
    fields: Sequence[str],
    where: str | None = None,
    last_modstamp: datetime | None = None,
    limit: int | None = None,
) -> str:
    """SELECT over ``object_name`` ordered by modstamp, resuming after ``last_modstamp``."""
    columns = list(dict.fromkeys(fields))
    if MODSTAMP_FIELD not in columns:
        columns.append(MODSTAMP_FIELD)

    filters = [f"({where})"] if where else []
    if last_modstamp is not None:
        filters.append(f"{MODSTAMP_FIELD} > {soql_datetime(last_modstamp)}")

    parts = [f"SELECT {', '.join(columns)}", f"FROM {object_name}"]
    if filters:
        parts.append("WHERE " + " AND ".join(filters))
    parts.append(f"ORDER BY {MODSTAMP_FIELD} ASC")
    if limit is not None:
        parts.append(f"LIMIT {int(limit)}")
    return " ".join(parts)


@dataclass(frozen=True)
class SalesforceBatch:
    job_id: str
    sequence: int
    records: list[dict[str, str]] = field(default_factory=list)
    locator: str | None = None


class SalesforceExtractorError(RuntimeError):
    pass


class SalesforceJobFailed(SalesforceExtractorError):
    pass


class SalesforceJobTimeout(SalesforceExtractorError):
    pass


def _next_locator(response) -> str | None:
    locator = response.headers.get("Sforce-Locator")
    if not locator or locator.lower() in ("null", "none"):
        return None
    return locator


class SalesforceExtractor:
    """
    Run one query job per call to ``extract_batches``.

    The job is created, polled until it reaches a terminal state and its CSV
    result pages are read through the ``Sforce-Locator`` cursor. Rows are
    regrouped into batches of at most ``batch_size`` regardless of how the
    server sized its pages.
    """

    def __init__(
        self,
        *,
        client: Any,
        batch_size: int = 5000,
        api_version: str = "60.0",
        poll_interval: float = 5.0,
        poll_timeout: float = 600.0,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.http: requests.Session = client.session
        self.jobs_url = f"https://{client.sf_instance}/services/data/v{api_version.lstrip('v')}/jobs/query"
        self.headers = {
            "Authorization": f"Bearer {client.session_id}",
            "Sforce-Call-Options": "client=graph-ingest",
        }
        self.batch_size = max(1, int(batch_size))
        self.poll_interval = poll_interval
        self.poll_timeout = poll_timeout
        self.sleep = sleep_fn

    def extract_batches(self, soql: str) -> Iterator[SalesforceBatch]:
        job_id = self._submit(soql)
        state = self._await(job_id)
        if state != "JobComplete":
            raise SalesforceJobFailed(f"Salesforce job {job_id} ended in state {state}")

        sequence = 0
        pending: list[dict[str, str]] = []
        locator: str | None = None
        for rows, locator in self._pages(job_id):
            pending.extend(rows)
            while len(pending) >= self.batch_size:
                sequence += 1
                yield SalesforceBatch(job_id, sequence, pending[: self.batch_size], locator)
                pending = pending[self.batch_size :]
        if pending:
            sequence += 1
            yield SalesforceBatch(job_id, sequence, pending, locator)

    def _submit(self, soql: str) -> str:
        response = self.http.post(
            self.jobs_url,
            headers={**self.headers, "Content-Type": "application/json"},
            json={"operation": "query", "query": soql, "contentType": "CSV", "lineEnding": "LF"},
        )
        if not response.ok:
            logger.error(
                "Salesforce rejected query job",
                extra={"importer_status_code": response.status_code, "importer_soql": soql},
            )
        response.raise_for_status()
        job_id = response.json()["id"]
        logger.debug("Salesforce query job submitted", extra={"importer_job_id": job_id})
        return job_id

    def _await(self, job_id: str) -> str:
        started = time.monotonic()
        while True:
            response = self.http.get(f"{self.jobs_url}/{job_id}", headers=self.headers)
            response.raise_for_status()
            state = response.json().get("state")
            if state in TERMINAL_STATES:
                return state
            if time.monotonic() - started >= self.poll_timeout:
                raise SalesforceJobTimeout(f"Salesforce job {job_id} still {state} after {self.poll_timeout}s")
            self.sleep(self.poll_interval)

    def _pages(self, job_id: str) -> Iterator[tuple[list[dict[str, str]], str | None]]:
        params: dict[str, Any] = {"maxRecords": self.batch_size}
        while True:
            response = self.http.get(
                f"{self.jobs_url}/{job_id}/results",
                headers={**self.headers, "Accept": "text/csv"},
                params=dict(params),
            )
            response.raise_for_status()
            locator = _next_locator(response)
            yield list(csv.DictReader(io.StringIO(response.text))), locator
            if locator is None:
                return
            params["locator"] = locator


def create_salesforce_client() -> Salesforce:
    """Log in with the ``SF_*`` environment credentials."""
    ensure_salesforce_adapter_ready()
    optional = {
        key: os.environ[env]
        for key, env in (("domain", "SF_DOMAIN"), ("client_id", "SF_CLIENT_ID"))
        if os.environ.get(env)
    }
    return Salesforce(
        username=os.environ["SF_USERNAME"],
        password=os.environ["SF_PASSWORD"],
        security_token=os.environ["SF_SECURITY_TOKEN"],
        **optional,
    )
