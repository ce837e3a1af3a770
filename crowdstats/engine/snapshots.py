"""
Snapshot Store - date-keyed log of aggregate summaries for trend queries.

Provides:
- One snapshot per calendar day (a second write that day replaces the first)
- Retention of the newest SNAPSHOT_RETENTION daily entries
- JSON persistence, read and rewritten whole on every append
- Trend queries answered from the log alone, never from the remote source
"""
import json
import os
import tempfile
import threading
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from crowdstats.core.constants import DEFAULT_TREND_DAYS, SNAPSHOT_RETENTION
from crowdstats.domain import SeriesPoint, Snapshot, TrendPoint
from crowdstats.utils.log_utils import get_logger

logger = get_logger(__name__)

DateLike = Union[date, str]


def _date_str(value: DateLike) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return date.fromisoformat(value).isoformat()


class SnapshotStore:
    """
    Owns the snapshot log exclusively.

    With persist_path=None the log lives in memory only.
    """

    def __init__(
        self,
        persist_path: Optional[str] = None,
        retention: int = SNAPSHOT_RETENTION,
        today: Callable[[], date] = date.today,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._persist_path = Path(persist_path) if persist_path else None
        self._retention = retention
        self._today = today
        self._now = now
        self._memory: List[Snapshot] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _read(self) -> List[Snapshot]:
        """
        Snapshots as stored, newest first.

        Content that is not a valid log reads as empty; an OSError while
        reading propagates so callers never rewrite a log they could not read.
        """
        if not self._persist_path:
            return list(self._memory)
        if not self._persist_path.exists():
            return []
        try:
            with open(self._persist_path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"[SnapshotStore] {self._persist_path} is corrupt; starting a new log: {e}")
            return []
        if not isinstance(data, list):
            logger.warning(f"[SnapshotStore] {self._persist_path} is not a list; ignoring")
            return []
        try:
            return [Snapshot.model_validate(item) for item in data]
        except ValidationError as e:
            logger.error(f"[SnapshotStore] {self._persist_path} has invalid entries; ignoring: {e}")
            return []

    def load(self) -> List[Snapshot]:
        """All snapshots, newest first. An unreadable log reads as empty."""
        try:
            return self._read()
        except OSError as e:
            logger.error(f"[SnapshotStore] Failed to read snapshots: {e}")
            return []

    def _save(self, snapshots: List[Snapshot]):
        if not self._persist_path:
            self._memory = list(snapshots)
            return

        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        payload = [s.to_wire() for s in snapshots]
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._persist_path.parent), prefix=".snapshots-", suffix=".json"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self._persist_path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, series: Union[Mapping[str, int], List[SeriesPoint]]) -> Optional[Snapshot]:
        """
        Create or replace today's snapshot.

        Returns None when the write fails; snapshotting never fails the caller.
        A log that cannot be read is left untouched.
        """
        try:
            if isinstance(series, Mapping):
                points = [SeriesPoint(dimension_key=k, value=int(v)) for k, v in series.items()]
            else:
                points = list(series)
            snapshot = Snapshot(
                date=self._today().isoformat(),
                taken_at=self._now().strftime("%Y-%m-%dT%H:%M:%SZ"),
                series=points,
            )

            with self._lock:
                existing = self._read()
                snapshots = [s for s in existing if s.date != snapshot.date]
                replaced = len(snapshots) != len(existing)
                snapshots.append(snapshot)
                snapshots.sort(key=lambda s: s.date, reverse=True)
                del snapshots[self._retention:]
                self._save(snapshots)

            logger.info(
                f"[SnapshotStore] {'Updated' if replaced else 'Created'} snapshot for "
                f"{snapshot.date} ({len(points)} series)"
            )
            return snapshot
        except Exception as e:
            logger.error(f"[SnapshotStore] Error creating snapshot: {e}")
            return None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_snapshots(
        self,
        start_date: Optional[DateLike] = None,
        end_date: Optional[DateLike] = None,
    ) -> List[Snapshot]:
        snapshots = self.load()
        start = _date_str(start_date) if start_date else None
        end = _date_str(end_date) if end_date else None
        return [
            s for s in snapshots
            if (start is None or s.date >= start) and (end is None or s.date <= end)
        ]

    def since(self, days: int = DEFAULT_TREND_DAYS) -> str:
        return (self._today() - timedelta(days=days)).isoformat()

    def query_trend(self, dimension_key: str, since_date: DateLike) -> List[TrendPoint]:
        """
        Oldest-first (date, value) points, one per snapshot day on or after
        since_date. A snapshot without the series reports 0; days with no
        snapshot are absent.
        """
        points = [
            TrendPoint(date=s.date, count=s.value_for(dimension_key) or 0)
            for s in self.get_snapshots(start_date=since_date)
        ]
        points.sort(key=lambda p: p.date)
        return points

    def all_trends(
        self,
        days: int = DEFAULT_TREND_DAYS,
        series: Optional[List[str]] = None,
    ) -> Dict[str, List[TrendPoint]]:
        since_date = self.since(days)
        snapshots = self.get_snapshots(start_date=since_date)
        keys = series or sorted({p.dimension_key for s in snapshots for p in s.series})
        return {key: self.query_trend(key, since_date) for key in keys}

    def count(self) -> int:
        return len(self.load())
