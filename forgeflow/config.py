from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path

JOIN_POLICIES = ("all", "any")
FAILURE_POLICIES = ("continue", "halt")


@dataclass(frozen=True, slots=True)
class EngineSettings:
    run_timeout_seconds: float = 300.0
    join_policy: str = "all"
    failure_policy: str = "continue"

    def __post_init__(self) -> None:
        if self.join_policy not in JOIN_POLICIES:
            raise ValueError(f"engine.join_policy must be one of {JOIN_POLICIES}, got {self.join_policy!r}")
        if self.failure_policy not in FAILURE_POLICIES:
            raise ValueError(
                f"engine.failure_policy must be one of {FAILURE_POLICIES}, got {self.failure_policy!r}"
            )
        if self.run_timeout_seconds <= 0:
            raise ValueError("engine.run_timeout_seconds must be positive")


@dataclass(frozen=True, slots=True)
class TriggerSettings:
    webhook_host: str = "127.0.0.1"
    webhook_port: int = 8080
    webhook_autostart: bool = True
    webhook_startup_timeout_seconds: float = 5.0
    webhook_grace_seconds: float = 5.0
    clipboard_poll_seconds: float = 0.5
    shutdown_timeout_seconds: float = 10.0


class AppConfig:
    """Reads ``config.ini`` from the project root or the working directory.

    ``FORGEFLOW_CONFIG`` points at an explicit file and wins over both.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        parser = ConfigParser()
        explicit = path or os.environ.get("FORGEFLOW_CONFIG")
        if explicit:
            parser.read(Path(explicit))
        else:
            package_root = Path(__file__).resolve().parent.parent
            parser.read(package_root / "config.ini")
            if not parser.sections():
                parser.read(Path("config.ini"))
        self._parser = parser

    def engine(self) -> EngineSettings:
        return EngineSettings(
            run_timeout_seconds=self._get_float("engine", "run_timeout_seconds", 300.0),
            join_policy=self._get_str("engine", "join_policy", "all").lower(),
            failure_policy=self._get_str("engine", "failure_policy", "continue").lower(),
        )

    def triggers(self) -> TriggerSettings:
        return TriggerSettings(
            webhook_host=self._get_str("triggers", "webhook_host", "127.0.0.1"),
            webhook_port=self._get_int("triggers", "webhook_port", 8080),
            webhook_autostart=self._get_bool("triggers", "webhook_autostart", True),
            webhook_startup_timeout_seconds=self._get_float("triggers", "webhook_startup_timeout_seconds", 5.0),
            webhook_grace_seconds=self._get_float("triggers", "webhook_grace_seconds", 5.0),
            clipboard_poll_seconds=self._get_float("triggers", "clipboard_poll_seconds", 0.5),
            shutdown_timeout_seconds=self._get_float("triggers", "shutdown_timeout_seconds", 10.0),
        )

    def data_dir(self) -> Path:
        return Path(self._get_str("storage", "data_dir", "data")).expanduser()

    def database_path(self) -> Path:
        return self.data_dir() / self._get_str("storage", "database", "forgeflow.db")

    def execution_history_limit(self) -> int:
        return self._get_int("storage", "execution_history_limit", 200)

    def log_level(self) -> str:
        return self._get_str("logging", "level", "INFO")

    def log_json(self) -> bool:
        return self._get_bool("logging", "json", False)

    def _get_str(self, section: str, key: str, fallback: str) -> str:
        return self._parser.get(section, key, fallback=fallback)

    def _get_int(self, section: str, key: str, fallback: int) -> int:
        return self._parser.getint(section, key, fallback=fallback)

    def _get_float(self, section: str, key: str, fallback: float) -> float:
        return self._parser.getfloat(section, key, fallback=fallback)

    def _get_bool(self, section: str, key: str, fallback: bool) -> bool:
        return self._parser.getboolean(section, key, fallback=fallback)
