import random
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from secretsync import (
    ConfigError,
    ReportingException,
    TransientStoreError,
    output,
)
from secretsync.audit import AuditEvent, MemoryAuditSink
from secretsync import lock
from secretsync.model import ItemResult, PlanItem, ReconciliationResult


class Backoff(object):
    """Exponential backoff with jitter."""

    def __init__(self, base=0.5, maximum=8.0, sleep=time.sleep,
                 jitter=random.uniform):
        self.base = base
        self.maximum = maximum
        self.sleep = sleep
        self.jitter = jitter

    def delay(self, attempt):
        delay = min(self.maximum, self.base * 2 ** (attempt - 1))
        return self.jitter(delay / 2, delay)

    def wait(self, attempt):
        delay = self.delay(attempt)
        self.sleep(delay)
        return delay


def retrying(func, max_attempts, backoff, context=""):
    """Call `func` until it does not raise a transient store error.

    Returns ``(result, attempts)``. The last transient error is re-raised
    once `max_attempts` is exhausted; other errors are raised immediately.

    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func(), attempt
        except TransientStoreError as e:
            e.attempts = attempt
            if attempt >= max_attempts:
                raise
            delay = backoff.wait(attempt)
            output.annotate(
                "{}: {}, retrying in {:.2f}s ({}/{})".format(
                    context, e, delay, attempt, max_attempts),
                debug=True)


class ReconcilerEngine(object):
    """Applies a plan against a remote store.

    Every item is applied on its own: a failing item never stops or rolls
    back another one. Creates, updates and deletes are applied in separate
    phases, in that order; items of one phase run in parallel.

    """

    def __init__(self, store, lock_manager=None, audit_sink=None,
                 actor=None, max_attempts=3, backoff=None, lock_ttl=60,
                 lock_wait=10, run=None):
        self.store = store
        self.locks = lock_manager if lock_manager is not None \
            else lock.default_manager
        self.audit = audit_sink if audit_sink is not None \
            else MemoryAuditSink()
        self.actor = actor
        self.max_attempts = max_attempts
        self.backoff = backoff if backoff is not None else Backoff()
        self.lock_ttl = lock_ttl
        self.lock_wait = lock_wait
        self.run = run

    def apply(self, plan, concurrency_limit=4, cancel=None):
        if isinstance(concurrency_limit, bool) or \
                not isinstance(concurrency_limit, int) or \
                concurrency_limit < 1:
            raise ConfigError.from_context(
                "must be a positive integer", option="concurrency_limit")
        if cancel is None:
            cancel = threading.Event()

        plan = list(plan)
        results = {}
        for action in PlanItem.PHASES:
            items = [item for item in plan if item.action == action]
            if not items:
                continue
            if action == PlanItem.NOOP:
                for item in items:
                    results[id(item)] = self._finish(ItemResult.from_item(
                        item, ItemResult.SKIPPED, reason="noop"))
                continue
            output.step(
                "main", "Applying {} {} item(s) ...".format(
                    len(items), action), debug=True)
            workers = min(concurrency_limit, len(items))
            with ThreadPoolExecutor(
                    workers, thread_name_prefix="secretsync") as pool:
                futures = [
                    (item, pool.submit(self.apply_item, item, cancel))
                    for item in items]
                for item, future in futures:
                    results[id(item)] = future.result()

        return ReconciliationResult(
            plan, [results[id(item)] for item in plan])

    def apply_item(self, item, cancel=None):
        """Apply a single plan item and never raise."""
        if cancel is not None and cancel.is_set():
            return self._finish(ItemResult.from_item(
                item, ItemResult.SKIPPED, reason="cancelled"))
        if not item.mutating:
            return self._finish(ItemResult.from_item(
                item, ItemResult.SKIPPED, reason="noop"))

        attempts = 0
        try:
            with lock.held(self.locks, item.name, self.lock_ttl,
                           self.lock_wait, owner=self.actor):
                version, attempts = retrying(
                    lambda: self._mutate(item), self.max_attempts,
                    self.backoff, context=item.name)
        except ReportingException as e:
            attempts = getattr(e, "attempts", attempts or 1)
            if e.reason == "lock-busy":
                attempts = 0
            result = ItemResult.from_item(
                item, ItemResult.FAILED, reason=e.reason, message=str(e),
                attempts=attempts)
        except Exception as e:
            # Only the class name: the message may come from anywhere.
            result = ItemResult.from_item(
                item, ItemResult.FAILED, reason="error",
                message=e.__class__.__name__, attempts=attempts or 1)
        else:
            result = ItemResult.from_item(
                item, ItemResult.APPLIED, attempts=attempts, version=version)
        return self._finish(result)

    def _mutate(self, item):
        if item.action == PlanItem.CREATE:
            return self.store.put(item.name, item.payload, None)
        if item.action == PlanItem.UPDATE:
            return self.store.put(
                item.name, item.payload, item.expected_version)
        if item.action == PlanItem.DELETE:
            self.store.delete(item.name, item.expected_version)
            return None
        raise ValueError("Can not apply `{}`".format(item.action))

    def _finish(self, result):
        if result.outcome == ItemResult.FAILED:
            output.step(
                result.name, "{} failed ({})".format(
                    result.action, result.reason), red=True)
        elif result.outcome == ItemResult.APPLIED:
            output.step(result.name, "{} applied".format(result.action))
        else:
            output.step(
                result.name, "{} skipped ({})".format(
                    result.action, result.reason), debug=True, bold=False)
        try:
            self.audit.emit(
                AuditEvent.from_result(result, self.actor, self.run))
        except Exception as e:
            output.warn("Could not emit audit event for {}: {}".format(
                result.name, e.__class__.__name__))
        return result
