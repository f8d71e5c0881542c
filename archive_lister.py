"""
Pages through the newsletter's archive endpoint and builds the ordered, de-duplicated post listing.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from export_coordinator import CancellationToken
from resilient_transport import ResilientTransport, TransportError

log = logging.getLogger(__name__)

ARCHIVE_API_PATH: str = '/api/v1/archive'
PAGE_SIZE: int = 50
PAGE_PAUSE_SECONDS: float = 0.12
CANONICAL_KEY_FIELDS: tuple[str, ...] = ('canonical_url', 'canonicalUrl', 'url')


class ListingError(Exception):
    """
    The archive listing could not be fetched; no export can run without it.
    """


@dataclass(frozen=True)
class ListedItem:
    index: int
    canonical_key: str
    raw_record: dict[str, Any]


def canonical_key_for(record: object) -> str | None:
    """
    Returns the first non-empty canonical url field of a listing record.
    """
    if not isinstance(record, dict):
        return None
    for field_name in CANONICAL_KEY_FIELDS:
        value: object = record.get(field_name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def dedupe_records(records: list[object]) -> list[ListedItem]:
    """
    Keeps the first record for each canonical key, in first-seen order, and re-indexes densely from 0.
    Records without a canonical key are dropped.
    """
    seen: set[str] = set()
    items: list[ListedItem] = []
    for record in records:
        key: str | None = canonical_key_for(record)
        if key is None or key in seen:
            continue
        seen.add(key)
        items.append(ListedItem(index=len(items), canonical_key=key, raw_record=record))  # type: ignore[arg-type]
    return items


class ArchiveLister:
    """
    Materializes the full post listing.
    - Requests fixed-size pages at increasing offsets through the resilient transport.
    - Stops on an empty, short, or non-list page, or when cancellation is observed.
    - Pauses briefly between pages to stay friendly to the server.
    - Converts transport failures into ListingError, which aborts the run.
    """

    def __init__(
        self,
        transport: ResilientTransport,
        site_url: str,
        *,
        page_size: int = PAGE_SIZE,
        page_pause_s: float = PAGE_PAUSE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.transport: ResilientTransport = transport
        self.archive_url: str = f'{site_url.rstrip("/")}{ARCHIVE_API_PATH}'
        self.page_size: int = page_size
        self.page_pause_s: float = page_pause_s
        self._sleep = sleep

    def fetch_page(self, offset: int) -> list[object]:
        params: dict[str, object] = {'sort': 'new', 'search': '', 'offset': offset, 'limit': self.page_size}
        log.info(f'Fetch archive: offset={offset}, limit={self.page_size}')
        try:
            resp = self.transport.get(self.archive_url, params=params)
            data: object = resp.json()
        except TransportError as exc:
            raise ListingError(f'archive listing failed at offset {offset}: {exc}') from exc
        except ValueError as exc:
            raise ListingError(f'archive listing at offset {offset} is not valid JSON') from exc
        if not isinstance(data, list):
            log.warning(f'archive page at offset {offset} is not a list; stopping')
            return []
        return data

    def list_all(self, cancel: CancellationToken) -> list[ListedItem]:
        records: list[object] = []
        offset: int = 0
        while not cancel.cancelled:
            page: list[object] = self.fetch_page(offset)
            if not page:
                break
            records.extend(page)
            offset += len(page)
            if len(page) < self.page_size:
                break
            self._sleep(self.page_pause_s)
        items: list[ListedItem] = dedupe_records(records)
        log.info(f'Archive posts: {len(items)} (from {len(records)} listed record(s))')
        return items
