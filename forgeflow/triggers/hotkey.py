from __future__ import annotations

import logging
from typing import Callable, Protocol

from ..errors import InvalidTriggerConfig

logger = logging.getLogger(__name__)

_MODIFIER_ORDER = ("ctrl", "alt", "shift", "meta")
_ALIASES = {
    "control": "ctrl",
    "cmd": "meta",
    "command": "meta",
    "win": "meta",
    "super": "meta",
    "option": "alt",
    "opt": "alt",
    "return": "enter",
    "esc": "escape",
}


def normalize_hotkey(combo: str) -> str:
    """Canonical form of a key combination, e.g. ``Shift+Ctrl+K`` -> ``ctrl+shift+k``."""
    parts = [part.strip().lower() for part in combo.replace(" ", "").split("+")]
    if not parts or any(not part for part in parts):
        raise InvalidTriggerConfig(f"invalid hotkey: {combo!r}")
    parts = [_ALIASES.get(part, part) for part in parts]

    modifiers = {part for part in parts if part in _MODIFIER_ORDER}
    keys = [part for part in parts if part not in _MODIFIER_ORDER]
    if len(keys) != 1:
        raise InvalidTriggerConfig(f"hotkey must contain exactly one non-modifier key: {combo!r}")
    return "+".join([m for m in _MODIFIER_ORDER if m in modifiers] + keys)


class HotkeyBackend(Protocol):
    """Registering a combination that is already held replaces its callback."""

    def register_global_hotkey(self, combo: str, callback: Callable[[], None]) -> None: ...

    def unregister_global_hotkey(self, combo: str) -> None: ...


class NullHotkeyBackend:
    """Keeps no OS hook; combinations are only delivered via ``TriggerManager.handle_hotkey``."""

    def register_global_hotkey(self, combo: str, callback: Callable[[], None]) -> None:
        logger.debug("global hotkey capture not available; %s recorded only", combo)

    def unregister_global_hotkey(self, combo: str) -> None:
        pass
