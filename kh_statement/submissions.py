"""
Submission history and lifecycle.

A period has no row while it is a draft. Every generation appends a row in
state ``generated``; the row with the latest creation time is the period's
current submission. ``submitted`` is terminal and is only reached through
an explicit confirmation.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from .errors import DocumentWriteError, SubmissionHistoryError, SubmissionNotFoundError
from .schema import GenerationRequest, Period, Submission, SubmissionStatus

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubmissionStore(Protocol):
    """Append-only submission history with a single status update."""

    def insert(self, submission: Submission) -> Submission:
        ...

    def get(self, submission_id: str) -> Optional[Submission]:
        ...

    def current(self, period: Period) -> Optional[Submission]:
        """The submission with the greatest ``created_at`` for ``period``."""
        ...

    def list(self, period: Period) -> List[Submission]:
        ...

    def mark_submitted(self, submission_id: str, at: datetime) -> Submission:
        ...


class InMemorySubmissionStore:
    def __init__(self) -> None:
        # Insertion sequence breaks ties between equal creation timestamps.
        self._rows: Dict[str, Tuple[int, Submission]] = {}
        self._seq = 0
        self._lock = threading.Lock()

    def _save(self) -> None:
        pass

    def insert(self, submission: Submission) -> Submission:
        with self._lock:
            self._seq += 1
            self._rows[submission.id] = (self._seq, submission)
            try:
                self._save()
            except Exception:
                del self._rows[submission.id]
                raise
            return submission

    def get(self, submission_id: str) -> Optional[Submission]:
        row = self._rows.get(submission_id)
        return row[1] if row else None

    def _period_rows(self, period: Period) -> List[Tuple[int, Submission]]:
        return [
            (seq, sub)
            for seq, sub in self._rows.values()
            if sub.year == period.year and sub.month == period.month
        ]

    def current(self, period: Period) -> Optional[Submission]:
        with self._lock:
            rows = self._period_rows(period)
            if not rows:
                return None
            _, latest = max(rows, key=lambda row: (row[1].created_at, row[0]))
            return latest

    def list(self, period: Period) -> List[Submission]:
        with self._lock:
            rows = sorted(self._period_rows(period), key=lambda row: (row[1].created_at, row[0]))
            return [sub for _, sub in rows]

    def mark_submitted(self, submission_id: str, at: datetime) -> Submission:
        with self._lock:
            row = self._rows.get(submission_id)
            if row is None:
                raise SubmissionNotFoundError(submission_id)
            seq, submission = row
            if submission.status is SubmissionStatus.SUBMITTED:
                return submission
            updated = submission.model_copy(
                update={"status": SubmissionStatus.SUBMITTED, "submitted_at": at}
            )
            self._rows[submission_id] = (seq, updated)
            try:
                self._save()
            except Exception:
                self._rows[submission_id] = (seq, submission)
                raise
            return updated


class JSONFileSubmissionStore(InMemorySubmissionStore):
    """Submission history kept in a single JSON file (a list of rows)."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)
        for item in self._load():
            self._seq += 1
            submission = Submission.model_validate(item)
            self._rows[submission.id] = (self._seq, submission)

    def _load(self) -> list:
        if not self.path.exists():
            return []
        try:
            return json.loads(self.path.read_text(encoding="utf-8") or "[]")
        except json.JSONDecodeError as exc:
            # An unreadable history must never be replaced by an empty one.
            logger.error("Cannot read submissions file %s: %s", self.path, exc)
            raise SubmissionHistoryError(
                f"Submission history {self.path} is not valid JSON: {exc}"
            ) from exc

    def _save(self) -> None:
        rows = sorted(self._rows.values(), key=lambda row: row[0])
        payload = [sub.model_dump(mode="json") for _, sub in rows]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


class SubmissionManager:
    """
    Creates submissions for generated documents and moves them to
    ``submitted``.

    Parameters
    ----------
    store:
        Where submission rows live.
    output_dir:
        Base directory; documents go to ``<output_dir>/<YYYY-MM>/kh_<YYYY>_<MM>.xml``.
    clock:
        Source of timestamps, injectable for tests.
    """

    def __init__(self, store: SubmissionStore, output_dir: Path, clock: Optional[Clock] = None):
        self.store = store
        self.output_dir = Path(output_dir)
        self.clock = clock or utcnow

    def document_path(self, period: Period) -> Path:
        file_name = f"kh_{period.year}_{period.month:02d}.xml"
        return self.output_dir / period.key / file_name

    def write_document(self, period: Period, document: str) -> Path:
        path = self.document_path(period)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(document, encoding="utf-8")
        except OSError as exc:
            raise DocumentWriteError(f"Cannot write control statement to {path}: {exc}") from exc
        return path

    def create(self, period: Period, request: GenerationRequest, document: str) -> Submission:
        """
        Persist ``document`` and record a new ``generated`` submission.

        The file is written first. If that fails nothing is recorded.
        """
        path = self.write_document(period, document)
        now = self.clock()
        submission = Submission(
            id=str(uuid.uuid4()),
            year=period.year,
            month=period.month,
            filing_type=request.filing_type,
            document=document,
            document_path=str(path),
            status=SubmissionStatus.GENERATED,
            generated_at=now,
            submitted_at=None,
            created_at=now,
        )
        stored = self.store.insert(submission)
        logger.info(
            "Generated control statement %s for %s (%s) at %s",
            stored.id,
            period.key,
            request.filing_type.value,
            path,
        )
        return stored

    def current(self, period: Period) -> Optional[Submission]:
        return self.store.current(period)

    def history(self, period: Period) -> List[Submission]:
        return self.store.list(period)

    def status(self, period: Period) -> SubmissionStatus:
        current = self.store.current(period)
        return current.status if current else SubmissionStatus.DRAFT

    def mark_submitted(self, submission_id: str) -> Submission:
        """Confirm a submission as filed. Repeating the call changes nothing."""
        submission = self.store.mark_submitted(submission_id, self.clock())
        logger.info("Submission %s marked as submitted", submission_id)
        return submission

    def mark_current_submitted(self, period: Period) -> Submission:
        current = self.store.current(period)
        if current is None:
            raise SubmissionNotFoundError(period.key)
        return self.mark_submitted(current.id)
