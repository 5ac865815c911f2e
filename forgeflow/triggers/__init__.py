from .clipboard import ClipboardMonitor, ClipboardProvider, ClipboardUnavailable, CommandClipboard
from .filewatch import FileWatch
from .hotkey import HotkeyBackend, NullHotkeyBackend, normalize_hotkey
from .manager import TriggerManager
from .schedule import CronScheduler
from .webhook import WebhookListener, build_webhook_app

__all__ = [
    "ClipboardMonitor",
    "ClipboardProvider",
    "ClipboardUnavailable",
    "CommandClipboard",
    "CronScheduler",
    "FileWatch",
    "HotkeyBackend",
    "NullHotkeyBackend",
    "TriggerManager",
    "WebhookListener",
    "build_webhook_app",
    "normalize_hotkey",
]
