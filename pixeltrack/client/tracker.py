"""
Event buffer and delivery engine.

A ``Tracker`` queues events in memory and ships them to the ingestion
endpoint in batches:

* every ``batch_interval`` seconds, and immediately when the queue reaches
  ``max_queue_size``; one request carries at most ``max_batch_size`` events
  and a flush keeps sending until the queue is empty or a send fails;
* a failed batch goes back to the front of the queue and is retried after
  ``retry_delay * attempt`` seconds, up to ``max_retries`` times;
* after that, or when a shutdown flush fails, the batch is written to the
  fallback store (last ``max_failed_events`` kept) and picked up again by
  ``recover_failed_events`` on the next start.

Usage:
    tracker = Tracker(TrackerConfig(endpoint="https://stats.example.com/api/events"),
                      storage=FileStorage("~/.cache/pixeltrack.json"),
                      url="https://example.com/")
    tracker.start()
    tracker.track_click("BUTTON", element_id="signup", text="Sign up")
    tracker.page("https://example.com/pricing")
"""
from __future__ import annotations
import atexit
import json
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from ..errors import BatchRejected, TransientDeliveryError
from ..events import Event, EventType
from .session import SessionManager
from .storage import MemoryStorage, Storage
from .transport import DEFAULT_ENDPOINT, HttpTransport

logger = logging.getLogger(__name__)

FAILED_EVENTS_KEY = "pixel_failed_events"


class TrackerConfig(BaseModel):
    endpoint: str = DEFAULT_ENDPOINT
    batch_interval: float = 2.0
    max_queue_size: int = 50
    # the ingestion endpoint rejects larger batches with a 400
    max_batch_size: int = 100
    max_retries: int = 3
    retry_delay: float = 1.0
    session_timeout: float = 30 * 60
    touch_interval: float = 60.0
    recovery_delay: float = 1.0
    max_failed_events: int = 100
    request_timeout: float = 10.0
    unload_timeout: float = 2.0


def _start_timer(interval: float, fn: Callable[[], None]) -> threading.Timer:
    t = threading.Timer(interval, fn)
    t.daemon = True
    t.start()
    return t


class Tracker:
    def __init__(
        self,
        config: Optional[TrackerConfig] = None,
        storage: Optional[Storage] = None,
        transport: Optional[Any] = None,
        url: str = "",
        referrer: Optional[str] = None,
        clock: Callable[[], float] = time.time,
        schedule: Callable[[float, Callable[[], None]], Any] = _start_timer,
    ):
        self.config = config or TrackerConfig()
        self.storage = storage if storage is not None else MemoryStorage()
        self.transport = transport or HttpTransport(
            self.config.endpoint,
            timeout=self.config.request_timeout,
            unload_timeout=self.config.unload_timeout,
        )
        self.sessions = SessionManager(self.storage, timeout=self.config.session_timeout, clock=clock)
        self.url = url
        self.referrer = referrer or None
        self.clock = clock
        self._schedule = schedule

        self._lock = threading.Lock()
        self._store_lock = threading.Lock()
        self._queue: List[Event] = []
        self._flushing = False
        self.retry_count = 0
        self._retry_timer = None
        self._flush_timer = None
        self._touch_timer = None
        self._started = False
        self._destroyed = False
        self._session_id = self.sessions.get_or_create_session_id()

    # --- lifecycle -------------------------------------------------------

    def start(self, handle_exit: bool = True) -> None:
        """Recover spilled events, record the landing pageview and start the timers."""
        if self._started:
            return
        self._started = True
        logger.info("[tracker] starting, session %s, url %s", self._session_id, self.url)
        self.recover_failed_events()
        self.track(EventType.pageview.value)
        self._flush_timer = self._schedule(self.config.batch_interval, self._flush_tick)
        self._touch_timer = self._schedule(self.config.touch_interval, self._touch_tick)
        if handle_exit:
            atexit.register(self.destroy)

    def destroy(self) -> None:
        """Final synchronous flush; the tracker must not be used afterwards."""
        if self._destroyed:
            return
        self._destroyed = True
        self.sessions.touch()
        self.flush(synchronous=True)
        with self._lock:
            timers = [self._flush_timer, self._touch_timer, self._retry_timer]
            self._flush_timer = self._touch_timer = self._retry_timer = None
            # left behind by a failed final send or by a flush still in flight elsewhere
            leftover, self._queue = self._queue, []
        if leftover:
            self._spill(leftover)
        for t in timers:
            if t is not None:
                t.cancel()
        atexit.unregister(self.destroy)

    def on_hidden(self) -> None:
        """The host is being backgrounded; ship what we have while we still can."""
        self.sessions.touch()
        self.flush(synchronous=True)

    def _flush_tick(self) -> None:
        try:
            if self._retry_timer is None:
                self.flush()
        finally:
            if not self._destroyed:
                self._flush_timer = self._schedule(self.config.batch_interval, self._flush_tick)

    def _touch_tick(self) -> None:
        try:
            self.sessions.touch()
        finally:
            if not self._destroyed:
                self._touch_timer = self._schedule(self.config.touch_interval, self._touch_tick)

    # --- tracking --------------------------------------------------------

    @property
    def session_id(self) -> str:
        return self._session_id

    @property
    def queue(self) -> List[Event]:
        with self._lock:
            return list(self._queue)

    def _timestamp(self) -> str:
        now = datetime.fromtimestamp(self.clock(), tz=timezone.utc)
        return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")

    def track(self, event_type: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        try:
            with self._lock:
                full = len(self._queue) >= self.config.max_queue_size
            if full:
                logger.warning("[tracker] queue full, flushing")
                batch = self._take_batch()
                if batch:
                    self._schedule(0, lambda: self._drain(batch, synchronous=False))

            self._session_id = self.sessions.get_or_create_session_id()
            event = Event(
                session_id=self._session_id,
                event_type=event_type,
                url=self.url,
                referrer=self.referrer,
                timestamp=self._timestamp(),
                metadata=dict(metadata or {}),
            )
            with self._lock:
                self._queue.append(event)
            logger.debug("[tracker] event queued: %s", event_type)
        except Exception:
            logger.exception("[tracker] error tracking %s event", event_type)

    def page(self, url: str, referrer: Optional[str] = None) -> None:
        """Navigation inside the host; records a pageview when the url actually changed."""
        if referrer is not None:
            self.referrer = referrer or None
        if url == self.url:
            return
        self.url = url
        self.track(EventType.pageview.value)

    def track_click(
        self,
        target: str,
        element_id: Optional[str] = None,
        css_class: Optional[str] = None,
        text: Optional[str] = None,
        href: Optional[str] = None,
        element_type: Optional[str] = None,
    ) -> None:
        metadata: Dict[str, Any] = {
            "target": target,
            "id": element_id or None,
            "class": css_class or None,
            "text": text[:50] if text else None,
        }
        if href:
            metadata["href"] = href
        if element_type:
            metadata["type"] = element_type
        self.track(EventType.click.value, metadata)
        self.sessions.touch()

    def track_custom(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        self.track(EventType.custom.value, dict(metadata or {}, name=name))
        self.sessions.touch()

    # --- delivery --------------------------------------------------------

    def _take_batch(self) -> Optional[List[Event]]:
        # IDLE -> FLUSHING: the live queue is swapped out, later track() calls fill a fresh one
        with self._lock:
            if not self._queue or self._flushing:
                return None
            self._flushing = True
            if self._retry_timer is not None:
                self._retry_timer.cancel()
                self._retry_timer = None
            n = self.config.max_batch_size
            batch, self._queue = self._queue[:n], self._queue[n:]
            return batch

    def flush(self, synchronous: bool = False) -> None:
        """
        Send everything queued, in the calling thread, at most ``max_batch_size``
        events per request.

        ``synchronous`` is for shutdown paths: the send uses the short unload
        timeout and a failure goes straight to the fallback store.
        """
        self._drain(self._take_batch(), synchronous)

    def _drain(self, batch: Optional[List[Event]], synchronous: bool) -> None:
        # keep going while the endpoint accepts; a failure leaves the rest queued
        while batch:
            if not self._deliver(batch, synchronous):
                return
            batch = self._take_batch()

    def _deliver(self, batch: List[Event], synchronous: bool) -> bool:
        logger.info("[tracker] flushing %d events", len(batch))
        try:
            self.transport.send([e.model_dump() for e in batch], keepalive=synchronous)
        except BatchRejected as e:
            logger.error("[tracker] batch of %d events rejected, dropping it: %s", len(batch), e)
            with self._lock:
                self.retry_count = 0
                self._flushing = False
            return False
        except TransientDeliveryError as e:
            logger.error("[tracker] failed to send events: %s", e)
            self._handle_failure(batch, synchronous)
            return False
        except Exception:
            logger.exception("[tracker] unexpected error sending %d events", len(batch))
            self._handle_failure(batch, synchronous)
            return False

        with self._lock:
            self.retry_count = 0
            self._flushing = False
        logger.info("[tracker] %d events sent", len(batch))
        return True

    def _retry(self) -> None:
        with self._lock:
            self._retry_timer = None
        self.flush()

    def _handle_failure(self, batch: List[Event], synchronous: bool) -> None:
        with self._lock:
            self._flushing = False
            if not synchronous and not self._destroyed and self.retry_count < self.config.max_retries:
                # FLUSHING -> RETRY_SCHEDULED, failed batch goes ahead of anything queued meanwhile
                self.retry_count += 1
                self._queue = batch + self._queue
                delay = self.config.retry_delay * self.retry_count
                self._retry_timer = self._schedule(delay, self._retry)
                logger.info(
                    "[tracker] retrying in %.1fs (%d/%d)", delay, self.retry_count, self.config.max_retries
                )
                return
            self.retry_count = 0
        self._spill(batch)

    # --- fallback store --------------------------------------------------

    def _load_failed(self) -> List[Dict[str, Any]]:
        raw = self.storage.get(FAILED_EVENTS_KEY)
        if raw is None:
            return []
        try:
            items = json.loads(raw)
        except ValueError:
            logger.warning("[tracker] discarding unreadable failed-events store")
            return []
        if not isinstance(items, list):
            logger.warning("[tracker] discarding unreadable failed-events store")
            return []
        return items

    def _spill(self, batch: List[Event]) -> None:
        cap = self.config.max_failed_events
        with self._store_lock:
            stored = (self._load_failed() + [e.model_dump() for e in batch])[-cap:]
            saved = self.storage.set(FAILED_EVENTS_KEY, json.dumps(stored))
        if saved:
            logger.warning("[tracker] saved %d events to fallback storage", len(batch))
        else:
            logger.warning("[tracker] fallback storage unavailable, %d events lost", len(batch))

    def recover_failed_events(self) -> None:
        """Move spilled events back to the front of the queue and flush them shortly after."""
        with self._store_lock:
            items = self._load_failed()
            self.storage.remove(FAILED_EVENTS_KEY)
        if not items:
            return
        try:
            recovered = [Event.model_validate(i) for i in items]
        except ValueError:
            logger.warning("[tracker] discarding %d malformed failed events", len(items))
            return
        with self._lock:
            self._queue = recovered + self._queue
        logger.info("[tracker] recovered %d failed events", len(recovered))
        self._schedule(self.config.recovery_delay, self.flush)
