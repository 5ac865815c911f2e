from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from ..errors import InvalidTriggerConfig, ResourceAcquisitionFailure

logger = logging.getLogger(__name__)

EVENT_FILTERS: dict[str, frozenset[str]] = {
    "all": frozenset({EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED}),
    "create": frozenset({EVENT_TYPE_CREATED}),
    "modify": frozenset({EVENT_TYPE_MODIFIED}),
    "delete": frozenset({EVENT_TYPE_DELETED}),
}

# (event_type, src_path) -> None
FileEventCallback = Callable[[str, str], None]


def normalize_watch_path(path: str | os.PathLike[str]) -> str:
    return os.path.normcase(os.path.abspath(os.path.expanduser(os.fspath(path))))


class _FilteredHandler(FileSystemEventHandler):
    def __init__(self, accepted: frozenset[str], only_path: str | None, callback: FileEventCallback) -> None:
        self.accepted = accepted
        self.only_path = only_path
        self.callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in self.accepted:
            return
        src_path = os.fsdecode(event.src_path)
        if self.only_path is not None:
            dest_path = os.fsdecode(getattr(event, "dest_path", "") or "")
            candidates = {normalize_watch_path(src_path)}
            if dest_path:
                candidates.add(normalize_watch_path(dest_path))
            if self.only_path not in candidates:
                return
        elif event.is_directory and event.event_type == EVENT_TYPE_MODIFIED:
            # Directory mtime changes accompany every child event.
            return
        try:
            self.callback(event.event_type, src_path)
        except Exception:
            logger.exception("file watch callback failed for %s", src_path)


@dataclass
class FileWatch:
    """One registration: its own observer thread and OS watch handle."""

    flow_id: str
    path: str
    events: str
    observer: Observer = field(repr=False)

    @classmethod
    def open(cls, flow_id: str, path: str, events: str, callback: FileEventCallback) -> FileWatch:
        if events not in EVENT_FILTERS:
            raise InvalidTriggerConfig(f"file watch events must be one of {sorted(EVENT_FILTERS)}, got {events!r}")
        target = Path(normalize_watch_path(path))
        if not target.exists():
            raise ResourceAcquisitionFailure(f"cannot watch {path}: path does not exist")

        # A single file is watched through its directory.
        if target.is_dir():
            watch_dir, only_path = target, None
        else:
            watch_dir, only_path = target.parent, str(target)

        observer = Observer()
        observer.daemon = True
        try:
            observer.schedule(_FilteredHandler(EVENT_FILTERS[events], only_path, callback), str(watch_dir))
            observer.start()
        except OSError as exc:
            observer.unschedule_all()
            raise ResourceAcquisitionFailure(f"cannot watch {path}: {exc}") from exc

        logger.debug("watching %s for %s events", target, events)
        return cls(flow_id=flow_id, path=str(target), events=events, observer=observer)

    def close(self, timeout: float | None = 2.0) -> bool:
        self.observer.stop()
        if self.observer.is_alive():
            self.observer.join(timeout)
        return not self.observer.is_alive()
