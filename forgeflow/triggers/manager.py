from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from ..config import TriggerSettings
from ..engine import FlowEngine
from ..errors import ForgeFlowError, InvalidTriggerConfig, NotFound, ResourceAcquisitionFailure
from ..models import (
    ClipboardTriggerConfig,
    FileWatchTriggerConfig,
    Flow,
    HotkeyTriggerConfig,
    ScheduleTriggerConfig,
    WebhookTriggerConfig,
    trigger_config_for,
    utc_now,
)
from ..store import FlowStore
from .clipboard import ClipboardContent, ClipboardMonitor, ClipboardProvider, CommandClipboard
from .filewatch import EVENT_FILTERS, FileWatch, normalize_watch_path
from .hotkey import HotkeyBackend, NullHotkeyBackend, normalize_hotkey
from .schedule import CronScheduler
from .webhook import WEBHOOK_METHODS, WebhookListener, webhook_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScheduleRegistration:
    flow_id: str
    cron: str
    job_id: int


@dataclass(frozen=True, slots=True)
class WebhookRegistration:
    flow_id: str
    method: str
    path: str


@dataclass(frozen=True, slots=True)
class HotkeyRegistration:
    flow_id: str
    hotkey: str


class TriggerManager:
    """Owns every trigger registration and the background activity behind it.

    The five registration tables share one lock. Activations resolve the flow
    through the store and hand it to the engine; their failures are logged and
    never stop the trigger that fired.
    """

    def __init__(
        self,
        engine: FlowEngine,
        store: FlowStore,
        settings: TriggerSettings | None = None,
        clipboard_provider: ClipboardProvider | None = None,
        hotkey_backend: HotkeyBackend | None = None,
        scheduler: CronScheduler | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.settings = settings or TriggerSettings()
        self.clipboard_provider = clipboard_provider or CommandClipboard()
        self.hotkey_backend = hotkey_backend or NullHotkeyBackend()
        self.scheduler = scheduler or CronScheduler()
        self.webhook_listener = WebhookListener(
            self._dispatch_webhook,
            host=self.settings.webhook_host,
            port=self.settings.webhook_port,
            startup_timeout=self.settings.webhook_startup_timeout_seconds,
            grace_period=self.settings.webhook_grace_seconds,
        )

        self._lock = threading.RLock()
        self._schedules: dict[str, ScheduleRegistration] = {}
        self._webhooks: dict[tuple[str, str], WebhookRegistration] = {}
        self._file_watches: dict[tuple[str, str], FileWatch] = {}
        self._clipboard: ClipboardMonitor | None = None
        self._hotkeys: dict[str, HotkeyRegistration] = {}
        self._closed = False

    # Activation

    def activate(self, flow_id: str, event: dict[str, Any]) -> str:
        flow = self.store.load_flow(flow_id)
        return self.engine.run(flow, event)

    def _fire(self, flow_id: str, event: dict[str, Any]) -> str | None:
        try:
            run_id = self.activate(flow_id, event)
        except ForgeFlowError as exc:
            logger.warning("%s trigger for flow %s failed: %s", event.get("trigger"), flow_id, exc)
            return None
        except Exception:
            logger.exception("%s trigger for flow %s failed", event.get("trigger"), flow_id)
            return None
        logger.info(
            "%s trigger started run %s of flow %s",
            event.get("trigger"),
            run_id,
            flow_id,
            extra={"flow_id": flow_id, "run_id": run_id},
        )
        return run_id

    # Schedule

    def register_schedule(self, flow_id: str, cron: str) -> None:
        cron = cron.strip()
        CronScheduler.validate(cron)
        with self._lock:
            self._ensure_open()
            previous = self._schedules.pop(flow_id, None)
            if previous is not None:
                self._remove_job(previous.job_id)
            job_id = self.scheduler.add_job(cron, lambda: self._on_schedule(flow_id, cron))
            self._schedules[flow_id] = ScheduleRegistration(flow_id=flow_id, cron=cron, job_id=job_id)
        self.scheduler.start()
        logger.info("registered schedule trigger %r for flow %s", cron, flow_id)

    def unregister_schedule(self, flow_id: str) -> None:
        with self._lock:
            registration = self._schedules.pop(flow_id, None)
            if registration is None:
                raise NotFound(f"schedule trigger not found for flow: {flow_id}")
            self._remove_job(registration.job_id)
        logger.info("unregistered schedule trigger for flow %s", flow_id)

    def _on_schedule(self, flow_id: str, cron: str) -> None:
        with self._lock:
            registration = self._schedules.get(flow_id)
        if registration is None or registration.cron != cron:
            return
        self._fire(flow_id, {"trigger": "schedule", "cron": cron, "fired_at": utc_now().isoformat()})

    def _remove_job(self, job_id: int) -> None:
        try:
            self.scheduler.remove_job(job_id)
        except NotFound:
            logger.debug("cron job %d already gone", job_id)

    # Webhook

    def register_webhook(self, flow_id: str, path: str, method: str = "POST") -> None:
        key = webhook_key(method, path)
        if key[0] not in WEBHOOK_METHODS:
            raise InvalidTriggerConfig(f"unsupported webhook method: {method}")
        with self._lock:
            self._ensure_open()
            previous = self._webhooks.get(key)
            self._webhooks[key] = WebhookRegistration(flow_id=flow_id, method=key[0], path=key[1])
            if self.settings.webhook_autostart:
                try:
                    self.webhook_listener.start()
                except ResourceAcquisitionFailure:
                    if previous is None:
                        del self._webhooks[key]
                    else:
                        self._webhooks[key] = previous
                    raise
        logger.info("registered webhook %s %s for flow %s", key[0], key[1], flow_id)

    def unregister_webhook(self, path: str, method: str = "POST") -> None:
        key = webhook_key(method, path)
        with self._lock:
            if self._webhooks.pop(key, None) is None:
                raise NotFound(f"webhook trigger not found: {key[0]} {key[1]}")
        logger.info("unregistered webhook %s %s", *key)

    def _dispatch_webhook(self, method: str, path: str, event: dict[str, Any]) -> tuple[str, str] | None:
        key = webhook_key(method, path)
        with self._lock:
            registration = self._webhooks.get(key)
        if registration is None:
            return None
        run_id = self.activate(registration.flow_id, event)
        logger.info("webhook %s %s started run %s", key[0], key[1], run_id)
        return registration.flow_id, run_id

    # File watch

    def register_file_watch(self, flow_id: str, path: str, events: str = "all") -> None:
        key = (flow_id, normalize_watch_path(path))
        events = events or "all"
        if events not in EVENT_FILTERS:
            raise InvalidTriggerConfig(f"file watch events must be one of {sorted(EVENT_FILTERS)}, got {events!r}")

        def on_event(event_type: str, src_path: str) -> None:
            self._fire(flow_id, {"trigger": "file_watch", "event": event_type, "path": src_path})

        with self._lock:
            self._ensure_open()
            # The previous watch stays in place until its replacement is running.
            watch = FileWatch.open(flow_id, path, events, on_event)
            previous = self._file_watches.get(key)
            self._file_watches[key] = watch
            if previous is not None:
                previous.close()
        logger.info("registered file watch on %s (%s) for flow %s", key[1], events, flow_id)

    def unregister_file_watch(self, flow_id: str, path: str) -> None:
        key = (flow_id, normalize_watch_path(path))
        with self._lock:
            watch = self._file_watches.pop(key, None)
            if watch is None:
                raise NotFound(f"file watcher not found for flow {flow_id}: {path}")
            watch.close()
        logger.info("unregistered file watch on %s for flow %s", key[1], flow_id)

    # Clipboard

    def register_clipboard(self, flow_id: str, text_only: bool = True) -> None:
        with self._lock:
            self._ensure_open()
            if self._clipboard is not None:
                self._clipboard.stop()

            def on_change(content: ClipboardContent) -> None:
                event: dict[str, Any] = {"trigger": "clipboard"}
                if isinstance(content, str):
                    event["content"] = content
                elif content is not None:
                    event["content_size"] = len(content)
                self._fire(flow_id, event)

            monitor = ClipboardMonitor(
                flow_id,
                self.clipboard_provider,
                on_change,
                text_only=text_only,
                interval=self.settings.clipboard_poll_seconds,
            )
            monitor.start()
            self._clipboard = monitor
        logger.info("registered clipboard monitor for flow %s", flow_id)

    def unregister_clipboard(self) -> None:
        with self._lock:
            monitor, self._clipboard = self._clipboard, None
            if monitor is None:
                raise NotFound("no clipboard monitor active")
            monitor.stop()
        logger.info("unregistered clipboard monitor for flow %s", monitor.flow_id)

    # Hotkey

    def register_hotkey(self, flow_id: str, hotkey: str) -> None:
        combo = normalize_hotkey(hotkey)
        with self._lock:
            self._ensure_open()
            try:
                self.hotkey_backend.register_global_hotkey(combo, lambda: self.handle_hotkey(combo))
            except Exception as exc:
                raise ResourceAcquisitionFailure(f"cannot register hotkey {combo}: {exc}") from exc
            stale = [key for key, reg in self._hotkeys.items() if reg.flow_id == flow_id and key != combo]
            for key in stale:
                del self._hotkeys[key]
                self.hotkey_backend.unregister_global_hotkey(key)
            self._hotkeys[combo] = HotkeyRegistration(flow_id=flow_id, hotkey=combo)
        logger.info("registered hotkey %s for flow %s", combo, flow_id)

    def unregister_hotkey(self, hotkey: str) -> None:
        combo = normalize_hotkey(hotkey)
        with self._lock:
            if self._hotkeys.pop(combo, None) is None:
                raise NotFound(f"hotkey not found: {hotkey}")
            self.hotkey_backend.unregister_global_hotkey(combo)
        logger.info("unregistered hotkey %s", combo)

    def handle_hotkey(self, hotkey: str) -> str | None:
        """Entry point for the hotkey backend when a combination is pressed."""
        combo = normalize_hotkey(hotkey)
        with self._lock:
            registration = self._hotkeys.get(combo)
        if registration is None:
            return None
        return self._fire(registration.flow_id, {"trigger": "hotkey", "hotkey": combo})

    # Bulk operations

    def register_flow_triggers(self, flow: Flow) -> int:
        if not flow.id:
            return 0
        registered = 0
        for node in flow.trigger_nodes():
            try:
                config = trigger_config_for(node)
                if not config.enabled:
                    continue
                if isinstance(config, ScheduleTriggerConfig):
                    self.register_schedule(flow.id, config.cron)
                elif isinstance(config, WebhookTriggerConfig):
                    self.register_webhook(flow.id, config.path, config.method)
                elif isinstance(config, FileWatchTriggerConfig):
                    self.register_file_watch(flow.id, config.path, config.events)
                elif isinstance(config, ClipboardTriggerConfig):
                    self.register_clipboard(flow.id, config.text_only)
                elif isinstance(config, HotkeyTriggerConfig):
                    self.register_hotkey(flow.id, config.hotkey)
                else:
                    continue
            except ForgeFlowError as exc:
                logger.warning("skipping trigger node %s of flow %s: %s", node.id, flow.id, exc)
                continue
            registered += 1
        return registered

    def unregister_flow_triggers(self, flow_id: str) -> int:
        removed = 0
        with self._lock:
            if flow_id in self._schedules:
                self.unregister_schedule(flow_id)
                removed += 1
            for registration in [r for r in self._webhooks.values() if r.flow_id == flow_id]:
                self.unregister_webhook(registration.path, registration.method)
                removed += 1
            for key in [k for k in self._file_watches if k[0] == flow_id]:
                self.unregister_file_watch(flow_id, key[1])
                removed += 1
            if self._clipboard is not None and self._clipboard.flow_id == flow_id:
                self.unregister_clipboard()
                removed += 1
            for combo in [k for k, r in self._hotkeys.items() if r.flow_id == flow_id]:
                self.unregister_hotkey(combo)
                removed += 1
        return removed

    def sync_flow_triggers(self, flow: Flow) -> int:
        self.unregister_flow_triggers(flow.id)
        return self.register_flow_triggers(flow)

    def start_all_triggers(self) -> int:
        self._ensure_open()
        self.scheduler.start()
        try:
            summaries = self.store.list_flows()
        except Exception as exc:
            raise ForgeFlowError(f"failed to list flows for trigger startup: {exc}") from exc

        logger.info("starting triggers for %d flows", len(summaries))
        registered = 0
        for summary in summaries:
            try:
                flow = self.store.load_flow(summary.id)
            except ForgeFlowError as exc:
                logger.warning("failed to load flow %s: %s", summary.id, exc)
                continue
            registered += self.register_flow_triggers(flow)
        logger.info("registered %d triggers", registered)
        return registered

    def active_triggers(self) -> dict[str, Any]:
        with self._lock:
            return {
                "schedules": [
                    {"flowId": r.flow_id, "cron": r.cron, "type": "schedule"} for r in self._schedules.values()
                ],
                "webhooks": [
                    {"flowId": r.flow_id, "path": r.path, "method": r.method, "type": "webhook"}
                    for r in self._webhooks.values()
                ],
                "fileWatchers": [
                    {"flowId": w.flow_id, "path": w.path, "events": w.events, "type": "fileWatcher"}
                    for w in self._file_watches.values()
                ],
                "hotkeys": [
                    {"flowId": r.flow_id, "hotkey": r.hotkey, "type": "hotkey"} for r in self._hotkeys.values()
                ],
                "clipboard": (
                    {"flowId": self._clipboard.flow_id, "textOnly": self._clipboard.text_only}
                    if self._clipboard is not None
                    else None
                ),
            }

    def shutdown(self, timeout: float | None = None) -> bool:
        """Stops every trigger; returns False if something outlived the deadline."""
        with self._lock:
            if self._closed:
                return True
            self._closed = True
            schedules = list(self._schedules.values())
            watches = list(self._file_watches.values())
            clipboard = self._clipboard
            hotkeys = list(self._hotkeys)
            self._schedules.clear()
            self._webhooks.clear()
            self._file_watches.clear()
            self._clipboard = None
            self._hotkeys.clear()

        budget = self.settings.shutdown_timeout_seconds if timeout is None else timeout
        deadline = time.monotonic() + budget

        def remaining() -> float:
            return max(0.0, deadline - time.monotonic())

        # Stopped outside the lock: the timer thread may be waiting on it.
        clean = True
        for registration in schedules:
            self._remove_job(registration.job_id)
        clean &= self.scheduler.stop(remaining())
        for watch in watches:
            clean &= watch.close(remaining())
        if clipboard is not None:
            clean &= clipboard.stop(remaining())
        for combo in hotkeys:
            try:
                self.hotkey_backend.unregister_global_hotkey(combo)
            except Exception:
                logger.exception("failed to release hotkey %s", combo)
                clean = False
        clean &= self.webhook_listener.stop(remaining())

        if clean:
            logger.info("trigger manager shut down")
        else:
            logger.warning("trigger manager shut down with resources still stopping")
        return clean

    def _ensure_open(self) -> None:
        if self._closed:
            raise ResourceAcquisitionFailure("trigger manager has been shut down")
