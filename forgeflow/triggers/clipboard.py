from __future__ import annotations

import logging
import shutil
import subprocess
import sys
import threading
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

ClipboardContent = str | bytes | None


class ClipboardUnavailable(RuntimeError):
    pass


class ClipboardProvider(Protocol):
    def get_clipboard_content(self) -> ClipboardContent: ...


class CommandClipboard:
    """Reads the clipboard through the platform's command-line tools."""

    def __init__(self, commands: list[list[str]] | None = None, timeout: float = 2.0) -> None:
        self.commands = commands if commands is not None else self.default_commands()
        self.timeout = timeout

    @staticmethod
    def default_commands() -> list[list[str]]:
        if sys.platform == "darwin":
            return [["pbpaste"]]
        if sys.platform.startswith("win"):
            return [["powershell", "-NoProfile", "-Command", "Get-Clipboard -Raw"]]
        return [
            ["xclip", "-selection", "clipboard", "-o"],
            ["xsel", "--clipboard", "--output"],
            ["wl-paste", "--no-newline"],
        ]

    def get_clipboard_content(self) -> ClipboardContent:
        failures: list[str] = []
        for command in self.commands:
            if shutil.which(command[0]) is None:
                failures.append(f"{command[0]}: not installed")
                continue
            try:
                completed = subprocess.run(command, capture_output=True, timeout=self.timeout, check=True)
            except (subprocess.SubprocessError, OSError) as exc:
                failures.append(f"{command[0]}: {exc}")
                continue
            try:
                return completed.stdout.decode("utf-8")
            except UnicodeDecodeError:
                return completed.stdout
        raise ClipboardUnavailable("; ".join(failures) or "no clipboard command configured")


class ClipboardMonitor:
    """Polls a provider and calls back when the content changes.

    The first successful read only records a baseline.
    """

    def __init__(
        self,
        flow_id: str,
        provider: ClipboardProvider,
        on_change: Callable[[ClipboardContent], None],
        text_only: bool = True,
        interval: float = 0.5,
    ) -> None:
        self.flow_id = flow_id
        self.provider = provider
        self.on_change = on_change
        self.text_only = text_only
        self.interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last: ClipboardContent = None
        self._primed = False
        self._unavailable_logged = False

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name=f"clipboard-{self.flow_id}", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 2.0) -> bool:
        self._stop.set()
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def poll(self) -> bool:
        """Reads the clipboard once; returns True if a change was reported."""
        try:
            content = self.provider.get_clipboard_content()
        except ClipboardUnavailable as exc:
            if not self._unavailable_logged:
                logger.warning("clipboard unavailable: %s", exc)
                self._unavailable_logged = True
            return False
        self._unavailable_logged = False

        if self.text_only and not isinstance(content, str):
            return False
        if not self._primed:
            self._primed = True
            self._last = content
            return False
        if content == self._last:
            return False
        self._last = content
        self.on_change(content)
        return True

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll()
            except Exception:
                logger.exception("clipboard poll failed for flow %s", self.flow_id)
            self._stop.wait(self.interval)
