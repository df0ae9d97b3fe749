"""
Payload Parser - turn a cached raw payload into a list of rows.

Two payload kinds:
- CSV: raw CSV text, header row defines the columns
- API: either an inline JSON document or an endpoint URL returning JSON

Malformed payloads raise PayloadParseError; the Scheduler turns it into a
FAILED job with the error message.
"""

import csv
import io
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from app.core.config import settings
from app.models.ingestion_job import IngestionKind

logger = logging.getLogger(__name__)


class PayloadParseError(ValueError):
    """Raised when a payload cannot be turned into rows."""


def parse_csv(text: str) -> List[Dict[str, str]]:
    """
    Parse CSV text into one dict per data row.

    Empty lines are skipped, cells and headers are stripped, and ragged rows
    are tolerated: missing trailing cells are absent keys, extra cells are
    dropped.
    """
    if text.startswith("\ufeff"):
        text = text[1:]

    try:
        reader = csv.reader(io.StringIO(text))
        header = next(reader, None)
        if header is None:
            return []
        columns = [name.strip() for name in header]

        rows: List[Dict[str, str]] = []
        for cells in reader:
            if not any(cell.strip() for cell in cells):
                continue
            row = {}
            for name, cell in zip(columns, cells):
                if name:
                    row[name] = cell.strip()
            rows.append(row)
    except csv.Error as e:
        raise PayloadParseError(f"Invalid CSV payload: {e}") from e

    logger.debug(f"Parsed {len(rows)} CSV rows ({len(columns)} columns)")
    return rows


def rows_from_json(data: Any) -> List[Any]:
    """A JSON array yields its elements; any other value is a single row."""
    if isinstance(data, list):
        return data
    return [data]


async def fetch_json_rows(url: str, client: Optional[httpx.AsyncClient] = None) -> List[Any]:
    """
    Fetch an endpoint and return its JSON body as rows.

    Raises:
        PayloadParseError: Non-2xx status, transport error or non-JSON body
    """
    owns_client = client is None
    if owns_client:
        client = httpx.AsyncClient(timeout=settings.embedding_timeout_seconds, follow_redirects=True)

    try:
        response = await client.get(url)
        if response.status_code < 200 or response.status_code >= 300:
            raise PayloadParseError(
                f"Endpoint {url} returned {response.status_code}: {response.text[:200]}"
            )
        try:
            data = response.json()
        except ValueError as e:
            raise PayloadParseError(f"Endpoint {url} did not return JSON") from e
    except httpx.HTTPError as e:
        raise PayloadParseError(f"Failed to fetch {url}: {e}") from e
    finally:
        if owns_client:
            await client.aclose()

    rows = rows_from_json(data)
    logger.info(f"Fetched {len(rows)} rows from {url}")
    return rows


async def parse_payload(
    kind: IngestionKind,
    payload: str,
    client: Optional[httpx.AsyncClient] = None,
) -> List[Any]:
    """
    Parse a raw payload into rows.

    Args:
        kind: CSV or API
        payload: CSV text, JSON text, or an endpoint URL (API only)
        client: Optional httpx client used to fetch API endpoints

    Returns:
        List of rows (dicts, or bare values for JSON arrays of scalars)
    """
    if kind == IngestionKind.CSV:
        return parse_csv(payload)

    if kind == IngestionKind.API:
        text = payload.strip()
        if not text:
            raise PayloadParseError("Empty API payload")
        try:
            return rows_from_json(json.loads(text))
        except json.JSONDecodeError:
            pass

        if not text.startswith(("http://", "https://")):
            raise PayloadParseError("API payload is neither JSON nor an http(s) URL")
        return await fetch_json_rows(text, client=client)

    raise PayloadParseError(f"Ingestion kind {kind.value} carries no payload")
