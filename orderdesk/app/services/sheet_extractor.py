"""
Sheet Extractor - reads the current contents of a seller's spreadsheet.

Any Google Sheets link (edit, share, or publish URL, with an optional gid)
or a direct CSV URL is accepted. Google links are expanded into several
CSV endpoints which are tried in order; the first one that answers with
CSV wins.

Rows come back in sheet order with their real 1-based line number, so the
first data row under the header is row 2.
"""

import csv
import io
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlparse

import httpx

from orderdesk.app.core.exceptions import SourceFetchError
from orderdesk.app.core.logging import get_logger

logger = get_logger(__name__)

USER_AGENT = "OrderDesk-Ingest/1.0"
_SHEET_ID_RE = re.compile(r"/spreadsheets/(?:u/\d+/)?d/([a-zA-Z0-9_-]+)")
_GID_RE = re.compile(r"gid=(\d+)")
_DELIMITERS = [",", ";", "\t"]


@dataclass
class SheetRow:
    row_number: int
    fields: Dict[str, str]


def extract_sheet_id_and_gid(uri: str) -> Tuple[Optional[str], Optional[str]]:
    """Pull the spreadsheet id and tab gid out of a Google Sheets URL."""
    parsed = urlparse(uri)
    match = _SHEET_ID_RE.search(parsed.path or "")
    if not match:
        return None, None
    gid = None
    frag = _GID_RE.search(parsed.fragment or "")
    if frag:
        gid = frag.group(1)
    else:
        gid = (parse_qs(parsed.query).get("gid") or [None])[0]
    return match.group(1), gid


def build_candidate_urls(uri: str, tab: Optional[str] = None) -> List[str]:
    """
    Candidate CSV endpoints for a source, most specific first.

    A configured tab overrides the gid found in the URL. Non-Google URLs are
    returned unchanged.
    """
    sheet_id, gid = extract_sheet_id_and_gid(uri)
    if not sheet_id:
        return [uri]
    gid = tab or gid

    urls = []
    bases = [
        f"https://docs.google.com/spreadsheets/d/{sheet_id}/export?format=csv",
        f"https://docs.google.com/spreadsheets/d/{sheet_id}/pub?output=csv",
        f"https://docs.google.com/spreadsheets/d/{sheet_id}/gviz/tq?tqx=out:csv",
    ]
    for base in bases:
        if gid:
            urls.append(f"{base}&gid={gid}")
        urls.append(base)
    return list(dict.fromkeys(urls))


def looks_like_html(text: str) -> bool:
    head = text.lstrip()[:240].lower()
    return head.startswith("<!doctype html") or head.startswith("<html")


def _sniff_delimiter(text: str) -> str:
    sample = text[:2048]
    try:
        return csv.Sniffer().sniff(sample, delimiters="".join(_DELIMITERS)).delimiter
    except csv.Error:
        # Single-column sheets and ragged samples defeat the sniffer
        first_line = sample.splitlines()[0] if sample else ""
        counts = {d: first_line.count(d) for d in _DELIMITERS}
        best = max(counts, key=counts.get)
        return best if counts[best] else ","


def parse_csv_rows(text: str) -> List[SheetRow]:
    """
    Parse CSV text into ordered rows keyed by header.

    The first non-empty line is the header. Empty headers and
    case-insensitive duplicates are dropped (first one wins), cells are
    trimmed and blank lines are skipped without renumbering the rest.
    """
    if text.startswith("\ufeff"):
        text = text[1:]
    if not text.strip():
        return []

    reader = csv.reader(io.StringIO(text), delimiter=_sniff_delimiter(text))
    header: Optional[List[Optional[str]]] = None
    rows: List[SheetRow] = []

    for line_number, cells in enumerate(reader, start=1):
        if not any((c or "").strip() for c in cells):
            continue

        if header is None:
            seen = set()
            header = []
            for cell in cells:
                key = (cell or "").strip()
                if not key or key.lower() in seen:
                    header.append(None)
                    continue
                seen.add(key.lower())
                header.append(key)
            continue

        fields = {}
        for idx, key in enumerate(header):
            if key is None:
                continue
            fields[key] = (cells[idx] if idx < len(cells) else "").strip()
        rows.append(SheetRow(row_number=line_number, fields=fields))

    return rows


class SheetExtractor:
    """Fetches and parses a source's rows over HTTP."""

    def __init__(self, timeout_seconds: float = 20.0, http_client: Optional[httpx.AsyncClient] = None):
        self.timeout_seconds = timeout_seconds
        self._http = http_client

    async def _fetch_text(self, client: httpx.AsyncClient, url: str) -> str:
        try:
            resp = await client.get(
                url,
                headers={"accept": "text/csv, text/plain;q=0.9, */*;q=0.8", "user-agent": USER_AGENT},
                timeout=self.timeout_seconds,
                follow_redirects=True,
            )
        except httpx.TimeoutException as e:
            raise SourceFetchError("timeout", f"Timed out fetching {url}") from e
        except httpx.TransportError as e:
            raise SourceFetchError("network_error", f"{url}: {e}") from e
        if resp.status_code != 200:
            raise SourceFetchError("http_error", f"HTTP {resp.status_code} from {url}")
        return resp.text

    async def fetch_rows(self, uri: str, tab: Optional[str] = None) -> List[SheetRow]:
        """
        Fetch the sheet and return its data rows.

        Raises:
            SourceFetchError: when no candidate endpoint produced CSV
        """
        candidates = build_candidate_urls(uri, tab)
        last_error: Optional[SourceFetchError] = None

        if self._http is not None:
            client, owned = self._http, False
        else:
            client, owned = httpx.AsyncClient(), True
        try:
            for url in candidates:
                try:
                    text = await self._fetch_text(client, url)
                except SourceFetchError as e:
                    logger.debug(f"Sheet candidate failed ({e.code}): {url}")
                    last_error = e
                    continue
                if looks_like_html(text):
                    last_error = SourceFetchError(
                        "sheet_or_gid_not_found",
                        "HTML response (sheet is private or not published)",
                    )
                    continue
                rows = parse_csv_rows(text)
                logger.info(f"Fetched {len(rows)} rows from sheet", extra={"extra_data": {"url": url}})
                return rows
        finally:
            if owned:
                await client.aclose()

        raise last_error or SourceFetchError("sheet_or_gid_not_found", f"No CSV endpoint answered for {uri}")
