"""
Paginated Batch Fetcher.

Turns the remote cursor-based pagination into a bounded async stream of
RecordBatch objects. A stream stops on the first of:
- the source reporting no continuation cursor   (stop_reason "exhausted")
- the page ceiling                              (stop_reason "max_pages")
- the request deadline                          (stop_reason "deadline")
- a failed continuation fetch                   (stop_reason "continuation_error")

Only a failure of the first page raises; every other stop leaves the
batches already yielded as the final, partial result.
"""

import asyncio
import time
from typing import AsyncIterator, Callable, Optional, Union

from crowdstats.core.constants import MAX_PAGES, PROGRESS_LOG_EVERY, REQUEST_DEADLINE_SECONDS
from crowdstats.domain import FetchOutcome, RecordBatch
from crowdstats.remote.errors import FirstPageFailure, RemoteQueryRejected, RemoteSourceError
from crowdstats.remote.query import RecordQuery
from crowdstats.utils.log_utils import get_logger

logger = get_logger(__name__)


class Deadline:
    """Absolute wall-clock budget computed once at the start of a request."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.seconds = seconds
        self.started_at = clock()
        self.expires_at = self.started_at + seconds

    @classmethod
    def after(cls, seconds: Optional[float] = None) -> "Deadline":
        return cls(REQUEST_DEADLINE_SECONDS if seconds is None else seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def elapsed(self) -> float:
        return self._clock() - self.started_at

    @property
    def expired(self) -> bool:
        return self._clock() >= self.expires_at


class BatchStream:
    """
    Async iterable over the pages of one query.

    The stream can be consumed once. `outcome` is updated while iterating
    and is final once iteration ends.
    """

    def __init__(
        self,
        source,
        query: Union[RecordQuery, str],
        deadline: Deadline,
        max_pages: int = MAX_PAGES,
        label: Optional[str] = None,
    ):
        if max_pages < 1:
            raise ValueError("max_pages must be at least 1")
        self._source = source
        self._query_text = query.to_text() if isinstance(query, RecordQuery) else query
        self._deadline = deadline
        self._max_pages = max_pages
        self._label = label or (query.entity if isinstance(query, RecordQuery) else "query")
        self._consumed = False
        self.outcome = FetchOutcome()

    def __aiter__(self) -> AsyncIterator[RecordBatch]:
        if self._consumed:
            raise RuntimeError("BatchStream can only be iterated once")
        self._consumed = True
        return self._iterate()

    def _stop(self, reason: str, error: Optional[str] = None):
        self.outcome.stop_reason = reason
        self.outcome.error = error
        self.outcome.elapsed_seconds = self._deadline.elapsed()

    async def _first_page(self):
        try:
            return await self._source.query(self._query_text)
        except RemoteQueryRejected:
            raise
        except RemoteSourceError as e:
            raise FirstPageFailure(
                f"First page of {self._label} failed: {e}", e.status_code, e.error_code
            ) from e
        except Exception as e:
            raise FirstPageFailure(f"First page of {self._label} failed: {e}") from e

    async def _iterate(self) -> AsyncIterator[RecordBatch]:
        if self._deadline.expired:
            logger.warning(f"[Fetcher] {self._label}: deadline exceeded before first page")
            self._stop("deadline")
            return

        page = await self._first_page()
        page_number = 1

        while True:
            self.outcome.pages = page_number
            self.outcome.records += len(page.records)
            self.outcome.elapsed_seconds = self._deadline.elapsed()
            yield RecordBatch(page_number=page_number, records=page.records)

            if page_number % PROGRESS_LOG_EVERY == 0:
                logger.info(
                    f"[Fetcher] {self._label}: [{self._deadline.elapsed():.1f}s] "
                    f"{page_number} pages, {self.outcome.records} records"
                )

            if page.done or not page.next_cursor:
                self._stop("exhausted")
                break
            if page_number >= self._max_pages:
                logger.warning(f"[Fetcher] {self._label}: page ceiling {self._max_pages} reached")
                self._stop("max_pages")
                break
            if self._deadline.expired:
                logger.warning(
                    f"[Fetcher] {self._label}: deadline exceeded after {page_number} pages"
                )
                self._stop("deadline")
                break

            try:
                page = await asyncio.wait_for(
                    self._source.query_more(page.next_cursor),
                    timeout=self._deadline.remaining(),
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"[Fetcher] {self._label}: deadline hit while fetching page {page_number + 1}"
                )
                self._stop("deadline")
                break
            except Exception as e:
                # The cursor is spent; retrying would replay a stale position.
                logger.error(
                    f"[Fetcher] {self._label}: continuation page {page_number + 1} failed: {e}"
                )
                self._stop("continuation_error", str(e))
                break
            page_number += 1

        logger.info(
            f"[Fetcher] {self._label}: stopped ({self.outcome.stop_reason}) after "
            f"{self.outcome.pages} pages, {self.outcome.records} records "
            f"in {self.outcome.elapsed_seconds:.2f}s"
        )


def fetch(
    source,
    query: Union[RecordQuery, str],
    deadline: Deadline,
    max_pages: int = MAX_PAGES,
    label: Optional[str] = None,
) -> BatchStream:
    """Build a bounded batch stream for one query."""
    return BatchStream(source, query, deadline, max_pages=max_pages, label=label)
