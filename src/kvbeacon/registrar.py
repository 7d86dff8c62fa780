"""
Self-renewing service registration

A Registrar owns the records of one service and keeps them alive in the
store.  Every tick (``ttl / 2`` seconds apart) it runs put-or-touch over
each record in turn: absent records are created under a fresh lease,
present ones get their lease heartbeated and keep their current value.
Renewing at half the TTL lets a record survive one fully missed tick.

Failures never stop the loop.  A record is retried a bounded number of
times within the tick, then the failure is logged, counted in the
registration's health and the tick moves on.  ``start()`` runs the loop in
a daemon thread and hands back a RegistrationHandle to stop it.
"""

import logging
import threading
import time
import weakref
from dataclasses import dataclass, field, replace
from typing import Callable, Iterable, List, Optional, Tuple

from .config import RegistrationConfig
from .errors import ConfigError, KeyNotFoundError, StoreError
from .records import Record, derive_records

logger = logging.getLogger(__name__)

# Registrars that are ticking in this process, for key ownership on deregister
_live_lock = threading.Lock()
_live: "weakref.WeakSet[Registrar]" = weakref.WeakSet()


def renewal_interval(ttl: int) -> float:
    """Seconds between ticks for a lease of *ttl* seconds."""
    if ttl <= 0:
        raise ValueError(f"ttl must be positive, got {ttl}")
    return ttl / 2


@dataclass
class TickReport:
    """Outcome of one pass over a service's records."""
    tick: int
    renewed: int = 0
    failures: List[Tuple[bytes, str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


class RegistrationHealth:
    """Running counters fed by every TickReport."""

    def __init__(self):
        self._lock = threading.Lock()
        self.ticks = 0
        self.renewals = 0
        self.failures = 0
        self.consecutive_failed_ticks = 0
        self.last_error: Optional[str] = None
        self.last_tick_at: Optional[float] = None
        self.last_success_at: Optional[float] = None

    def record(self, report: TickReport) -> None:
        now = time.time()
        with self._lock:
            self.ticks += 1
            self.renewals += report.renewed
            self.failures += len(report.failures)
            self.last_tick_at = now
            if report.failures:
                self.consecutive_failed_ticks += 1
                self.last_error = report.failures[-1][1]
            else:
                self.consecutive_failed_ticks = 0
                self.last_success_at = now

    @property
    def healthy(self) -> bool:
        """True once a tick has run and the latest one renewed every record."""
        with self._lock:
            return self.ticks > 0 and self.consecutive_failed_ticks == 0

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "ticks": self.ticks,
                "renewals": self.renewals,
                "failures": self.failures,
                "consecutive_failed_ticks": self.consecutive_failed_ticks,
                "last_error": self.last_error,
                "last_tick_at": self.last_tick_at,
                "last_success_at": self.last_success_at,
            }


class Registrar:
    """Keeps one service's records registered.

    *store* is anything with ``put_or_touch(key, value, ttl)``, ``get(key)``
    and ``delete(key)``, normally a KVStore.  It may be shared with other
    registrars running in other threads.
    """

    def __init__(
        self,
        store,
        service_name: str,
        config: RegistrationConfig,
        listeners: Iterable[Callable[[TickReport], None]] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        if not service_name:
            raise ConfigError("service_name is required")
        config.validate()
        self._store = store
        self.service_name = service_name
        # Private copy so later edits to the caller's config do not leak in
        self.config = replace(config, tags=list(config.tags))
        self.interval = renewal_interval(self.config.ttl)
        self.health = RegistrationHealth()
        self._listeners = list(listeners)
        self._clock = clock
        self._stop_event = threading.Event()
        self._ticks = 0

    def records(self) -> List[Record]:
        return derive_records(self.service_name, self.config)

    def _reconcile(self, record: Record) -> Optional[Exception]:
        """put-or-touch one record, retrying within the tick.  Returns the last error.

        Store failures are retried; anything else fails the record at once.
        """
        delay = self.config.retry_backoff
        attempt = 1
        while True:
            try:
                self._store.put_or_touch(record.key, record.value, self.config.ttl)
                return None
            except StoreError as e:
                if attempt >= self.config.max_attempts:
                    return e
                logger.warning(
                    "%s: attempt %d/%d for %r failed: %s; retrying in %.2fs",
                    self.service_name, attempt, self.config.max_attempts,
                    record.key, e, delay,
                )
                if self._stop_event.wait(delay):
                    return e
            except Exception as e:
                logger.exception(
                    "%s: unexpected error reconciling %r", self.service_name, record.key,
                )
                return e
            attempt += 1
            delay *= 2

    def run_tick(self) -> TickReport:
        """Reconcile every record once, in order."""
        with _live_lock:
            if not self._stop_event.is_set():
                _live.add(self)
        self._ticks += 1
        report = TickReport(tick=self._ticks)
        for record in self.records():
            if self._stop_event.is_set():
                break
            error = self._reconcile(record)
            if error is None:
                report.renewed += 1
            else:
                logger.error(
                    "%s: keeping %r registered failed: %s",
                    self.service_name, record.key, error,
                )
                report.failures.append((record.key, str(error)))

        logger.debug(
            "%s: tick %d renewed %d, failed %d",
            self.service_name, report.tick, report.renewed, len(report.failures),
        )
        self.health.record(report)
        for listener in self._listeners:
            try:
                listener(report)
            except Exception:
                logger.exception("%s: tick listener raised", self.service_name)
        return report

    def _run(self) -> None:
        next_tick = self._clock()
        while not self._stop_event.is_set():
            try:
                self.run_tick()
            except Exception:
                # The loop outlives anything a single tick can throw
                logger.exception("%s: tick %d crashed", self.service_name, self._ticks)
            next_tick += self.interval
            now = self._clock()
            if next_tick < now:
                next_tick = now
            if self._stop_event.wait(next_tick - now):
                break

    def request_stop(self) -> None:
        """Ask the loop to exit after the current record; wakes any pending wait.

        From here on this registration no longer claims its keys.
        """
        with _live_lock:
            self._stop_event.set()
            _live.discard(self)

    def start(self) -> "RegistrationHandle":
        """Run the renewal loop in a daemon thread; the first tick fires immediately."""
        logger.info(
            "Registering service %s (url=%s, tags=%s, ttl=%ds, every %.1fs)",
            self.service_name, self.config.url, self.config.tags,
            self.config.ttl, self.interval,
        )
        thread = threading.Thread(
            target=self._run,
            name=f"kvbeacon-{self.service_name}",
            daemon=True,
        )
        thread.start()
        return RegistrationHandle(self, thread)

    def deregister(self) -> int:
        """Delete the records this registration still owns.  Returns how many keys were removed.

        A key is left in place when another live registration on the same
        store derives it too (shared tags), or when its value no longer
        matches the one this registration writes.
        """
        with _live_lock:
            _live.discard(self)
            claimed = {
                r.key
                for other in _live if other._store is self._store
                for r in other.records()
            }

        deleted = 0
        for record in self.records():
            if record.key in claimed:
                logger.info(
                    "%s: leaving %r, another registration still uses it",
                    self.service_name, record.key,
                )
                continue
            try:
                current = self._store.get(record.key)
                if current.value != record.value:
                    logger.info(
                        "%s: leaving %r, its value was changed elsewhere",
                        self.service_name, record.key,
                    )
                    continue
                deleted += self._store.delete(record.key)
            except KeyNotFoundError:
                continue
            except StoreError as e:
                logger.error(
                    "%s: deleting %r failed: %s", self.service_name, record.key, e,
                )
        return deleted


class RegistrationHandle:
    """Supervises one running Registrar."""

    def __init__(self, registrar: Registrar, thread: threading.Thread):
        self._registrar = registrar
        self._thread = thread
        self._lock = threading.Lock()
        self._stopped = False

    @property
    def service_name(self) -> str:
        return self._registrar.service_name

    @property
    def health(self) -> RegistrationHealth:
        return self._registrar.health

    def is_running(self) -> bool:
        return self._thread.is_alive()

    def join(self, timeout: Optional[float] = None) -> None:
        self._thread.join(timeout)

    def stop(self, deregister: Optional[bool] = None, timeout: Optional[float] = None) -> bool:
        """Stop renewing and, optionally, delete the records.

        *deregister* defaults to the registration's ``deregister_on_stop``.
        Returns False if the loop did not exit within *timeout* (a store call
        is hanging); records are left alone in that case.
        """
        with self._lock:
            if self._stopped:
                return not self._thread.is_alive()
            self._stopped = True

        self._registrar.request_stop()
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning(
                "%s: renewal loop still busy after %ss; not deregistering",
                self.service_name, timeout,
            )
            return False

        if deregister is None:
            deregister = self._registrar.config.deregister_on_stop
        if deregister:
            deleted = self._registrar.deregister()
            logger.info("Deregistered service %s (%d keys removed)", self.service_name, deleted)
        else:
            logger.info("Stopped renewing service %s", self.service_name)
        return True

    def __enter__(self) -> "RegistrationHandle":
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
