from __future__ import annotations

import threading


class ErrorRegistry:
    """Per-project failures shared between workers.

    Every access goes through ``_lock``; the backing dict is never handed out.
    Each project id is written at most once.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._errors: dict[str, BaseException] = {}

    def record(self, project_id: str, error: BaseException) -> bool:
        with self._lock:
            if project_id in self._errors:
                return False
            self._errors[project_id] = error
            return True

    def get(self, project_id: str) -> BaseException | None:
        with self._lock:
            return self._errors.get(project_id)

    def snapshot(self) -> dict[str, BaseException]:
        with self._lock:
            return dict(self._errors)

    def __contains__(self, project_id: object) -> bool:
        with self._lock:
            return project_id in self._errors

    def __len__(self) -> int:
        with self._lock:
            return len(self._errors)
