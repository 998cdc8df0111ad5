from __future__ import annotations

import json
import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from threading import RLock
from typing import Any, Callable, List, Optional, TypeVar

from pydantic import ValidationError

from render_service.models.domain import Job

T = TypeVar("T")


class StoreCorruptError(ValueError):
    """The jobs file exists but does not hold a ``{"jobs": [...]}`` document."""


class JobStore:
    """Durable list of jobs in a single JSON document.

    Writes go to ``<file>.tmp`` first and are moved into place with
    ``os.replace``; the previous document is kept as ``<file>.bak``. Reads
    fall back to the backup, then to the last list this process read or saved, then
    to an empty list, so a damaged file never takes the service down.
    """

    def __init__(self, path: str | Path, retention: int = 500, logger: logging.Logger | None = None) -> None:
        self.path = Path(path)
        self.retention = retention
        self.log = logger or logging.getLogger(__name__)
        self._lock = RLock()
        self._snapshot: Optional[List[dict[str, Any]]] = None

    @property
    def backup_path(self) -> Path:
        return self.path.with_name(self.path.name + ".bak")

    @property
    def tmp_path(self) -> Path:
        return self.path.with_name(self.path.name + ".tmp")

    def load(self) -> List[Job]:
        with self._lock:
            primary_corrupt = False
            if self.path.exists():
                try:
                    jobs = self._retain(self._read(self.path))
                except (OSError, ValueError):
                    primary_corrupt = True
                    self.log.warning("jobs file unreadable", extra={"path": str(self.path)}, exc_info=True)
                else:
                    self._remember(jobs)
                    return jobs

            if self.backup_path.exists():
                try:
                    jobs = self._retain(self._read(self.backup_path))
                except (OSError, ValueError):
                    self.log.warning("jobs backup unreadable", extra={"path": str(self.backup_path)}, exc_info=True)
                else:
                    self._remember(jobs)
                    self.log.warning("jobs restored from backup", extra={"path": str(self.backup_path)})
                    try:
                        self._write(jobs, keep_backup=False)
                    except OSError:
                        self.log.warning("could not re-persist restored jobs", exc_info=True)
                    return jobs

            if primary_corrupt:
                self._set_aside(self.path)
            if self._snapshot is not None:
                self.log.warning("jobs served from in-memory snapshot", extra={"count": len(self._snapshot)})
                return [Job.model_validate(record) for record in self._snapshot]
            return []

    def save(self, jobs: List[Job]) -> None:
        with self._lock:
            self._write(self._retain(jobs), keep_backup=True)

    def update(self, fn: Callable[[List[Job]], T]) -> T:
        """Load, let ``fn`` mutate the list in place, save if anything changed."""
        with self._lock:
            jobs = self.load()
            before = [job.to_record() for job in jobs]
            result = fn(jobs)
            if [job.to_record() for job in jobs] != before:
                self.save(jobs)
            return result

    def get(self, job_id: str) -> Optional[Job]:
        for job in self.load():
            if job.id == job_id:
                return job
        return None

    def append(self, job: Job) -> Job:
        self.update(lambda jobs: jobs.append(job))
        return job

    def _read(self, path: Path) -> List[Job]:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict) or not isinstance(data.get("jobs"), list):
            raise StoreCorruptError(f"{path} has no jobs list")
        jobs: List[Job] = []
        for record in data["jobs"]:
            try:
                jobs.append(Job.model_validate(record))
            except ValidationError:
                self.log.warning("dropping malformed job record", extra={"path": str(path)}, exc_info=True)
        return jobs

    def _write(self, jobs: List[Job], keep_backup: bool) -> None:
        records = [job.to_record() for job in jobs]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.tmp_path, "w", encoding="utf-8") as fh:
            json.dump({"jobs": records}, fh, ensure_ascii=False, indent=2)
            fh.flush()
            os.fsync(fh.fileno())
        if keep_backup and self.path.exists():
            try:
                shutil.copy2(self.path, self.backup_path)
            except OSError:
                self.log.warning("could not refresh jobs backup", extra={"path": str(self.backup_path)}, exc_info=True)
        os.replace(self.tmp_path, self.path)
        self._snapshot = records

    def _remember(self, jobs: List[Job]) -> None:
        self._snapshot = [job.to_record() for job in jobs]

    def _retain(self, jobs: List[Job]) -> List[Job]:
        if self.retention <= 0 or len(jobs) <= self.retention:
            return list(jobs)
        newest = sorted(range(len(jobs)), key=lambda i: (jobs[i].created_at, i), reverse=True)[: self.retention]
        keep = set(newest)
        self.log.info("pruning old jobs", extra={"dropped": len(jobs) - len(keep)})
        return [job for index, job in enumerate(jobs) if index in keep]

    def _set_aside(self, path: Path) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        try:
            path.rename(target)
        except OSError:
            self.log.warning("could not move corrupt jobs file aside", extra={"path": str(path)}, exc_info=True)
        else:
            self.log.warning("corrupt jobs file moved aside", extra={"path": str(target)})
