"""Audit events for every reconciliation outcome.

Events only carry names, actions, outcomes and checksums. There is no field
for secret values.

"""
import collections
import datetime
import json
import logging
import threading
import time

from secretsync import output

logger = logging.getLogger("secretsync.audit")


class AuditEvent(object):

    FIELDS = ("timestamp", "run", "name", "action", "outcome", "reason",
              "actor", "checksum_before", "checksum_after")

    def __init__(self, name, action, outcome, actor, reason=None,
                 checksum_before=None, checksum_after=None, run=None,
                 timestamp=None):
        if timestamp is None:
            timestamp = datetime.datetime.now(
                datetime.timezone.utc).isoformat()
        self.timestamp = timestamp
        self.run = run
        self.name = name
        self.action = action
        self.outcome = outcome
        self.reason = reason
        self.actor = actor
        self.checksum_before = checksum_before
        self.checksum_after = checksum_after

    @classmethod
    def from_result(cls, result, actor, run=None):
        return cls(
            result.name, result.action, result.outcome, actor,
            reason=result.reason,
            checksum_before=result.checksum_before,
            checksum_after=result.checksum_after,
            run=run)

    def as_dict(self):
        return {k: getattr(self, k) for k in self.FIELDS}

    def to_json(self):
        return json.dumps(self.as_dict(), sort_keys=True)

    def __repr__(self):
        return "<AuditEvent {} {} {}>".format(
            self.name, self.action, self.outcome)


class AuditSink(object):

    def emit(self, event):
        raise NotImplementedError("emit() not implemented.")

    def flush(self, timeout=None):
        pass


class MemoryAuditSink(AuditSink):

    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)


class LoggingAuditSink(AuditSink):
    """Hands events to the `secretsync.audit` logger as JSON."""

    def __init__(self, logger=logger, level=logging.INFO):
        self.logger = logger
        self.level = level

    def emit(self, event):
        self.logger.log(self.level, event.to_json())


class JSONLinesAuditSink(AuditSink):
    """Appends one JSON document per line to a file."""

    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()

    def emit(self, event):
        line = event.to_json() + "\n"
        with self._lock:
            with open(self.path, "a") as f:
                f.write(line)


class BufferedAuditSink(AuditSink):
    """Never lets a failing or hanging sink hold up the caller.

    `emit` only queues the event. A background thread hands queued events
    to the delegate in order. Events the delegate does not accept stay
    queued and are retried on the next emit, on flush or after
    `retry_interval` seconds. When the queue is full the oldest events are
    dropped and counted.

    """

    retry_interval = 1.0

    def __init__(self, delegate, maxlen=1000):
        self.delegate = delegate
        self.maxlen = maxlen
        self.pending = collections.deque()
        self.dropped = 0
        self._lock = threading.Lock()
        self._changed = threading.Condition(self._lock)
        self._worker = None

    def emit(self, event):
        with self._lock:
            if len(self.pending) >= self.maxlen:
                self.pending.popleft()
                self.dropped += 1
            self.pending.append(event)
            if self._worker is None:
                self._worker = threading.Thread(
                    target=self._deliver, name="secretsync-audit",
                    daemon=True)
                self._worker.start()
            self._changed.notify_all()

    def flush(self, timeout=10.0):
        """Wait up to `timeout` seconds for queued events to be delivered.

        Returns the number of events still queued.

        """
        deadline = time.monotonic() + timeout
        with self._lock:
            self._changed.notify_all()
            while self.pending:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._changed.wait(remaining)
            return len(self.pending)

    def _deliver(self):
        while True:
            with self._lock:
                while not self.pending:
                    self._changed.wait()
                event = self.pending[0]
            try:
                self.delegate.emit(event)
            except Exception as e:
                with self._lock:
                    output.annotate(
                        "audit sink unavailable ({}), {} event(s) buffered"
                        .format(e.__class__.__name__, len(self.pending)),
                        debug=True)
                    self._changed.wait(self.retry_interval)
                continue
            with self._lock:
                # Dropped while it was being delivered.
                if self.pending and self.pending[0] is event:
                    self.pending.popleft()
                self._changed.notify_all()
