"""Interview metadata catalog backed by a JSON file."""

import json
import os
from collections.abc import Callable, Iterable
from pathlib import Path

from ragchat.models.interviews import Interview, InterviewSummary
from ragchat.utils.logging import get_logger

logger = get_logger(__name__)

DEFAULT_INTERVIEWS_PATH = "data/interviews.json"


def _file_mtime(path: Path) -> float:
    return path.stat().st_mtime


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


class InterviewCatalog:
    """Read-through cache of interview records.

    The file is parsed again only when its modification time changes. ``stat``
    and ``reader`` are injectable so the cache can be driven without touching
    the filesystem.
    """

    def __init__(
        self,
        path: str | Path,
        stat: Callable[[Path], float] = _file_mtime,
        reader: Callable[[Path], str] = _read_text,
    ):
        self.path = Path(path)
        self._stat = stat
        self._reader = reader
        self._interviews: list[Interview] = []
        self._by_id: dict[str, Interview] = {}
        self._mtime: float | None = None

    def _load(self) -> list[Interview]:
        mtime = self._stat(self.path)
        if self._mtime is None or mtime != self._mtime:
            logger.info(f"Loading interviews from {self.path}")
            raw = json.loads(self._reader(self.path))
            self._interviews = [Interview.model_validate(record) for record in raw]
            self._by_id = {interview.id: interview for interview in self._interviews}
            self._mtime = mtime
        return self._interviews

    def list_interviews(self) -> list[InterviewSummary]:
        """List every interview as ``{id, participant_id}``."""
        return [InterviewSummary(id=i.id, participant_id=i.participant_id) for i in self._load()]

    def get_interview(self, interview_id: str) -> Interview | None:
        self._load()
        return self._by_id.get(interview_id)

    def get_interviews_by_ids(self, ids: Iterable[str]) -> list[Interview]:
        """Look up interviews by id, in first-seen order, skipping unknown and repeated ids."""
        self._load()
        found: list[Interview] = []
        seen: set[str] = set()
        for interview_id in ids:
            if interview_id in seen:
                continue
            seen.add(interview_id)
            interview = self._by_id.get(interview_id)
            if interview is not None:
                found.append(interview)
        return found


_interview_catalog: InterviewCatalog | None = None


def get_interview_catalog() -> InterviewCatalog:
    """Get or create the process-wide interview catalog."""
    global _interview_catalog
    if _interview_catalog is None:
        _interview_catalog = InterviewCatalog(os.getenv("INTERVIEWS_PATH", DEFAULT_INTERVIEWS_PATH))
    return _interview_catalog
