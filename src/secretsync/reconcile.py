import uuid

from secretsync import ConfigError, output
from secretsync.config import ReconcileOptions
from secretsync.decrypt import default_decryptors
from secretsync.diff import diff
from secretsync.engine import Backoff, ReconcilerEngine, retrying
from secretsync.model import ItemResult, ReconciliationResult
from secretsync.source import SecretSource
from secretsync.utils import Timer


class Reconciliation(object):
    """One pass of scan, observe, plan and apply.

    Nothing is kept between passes: every run rescans the source and
    refetches the remote state.

    """

    def __init__(self, source_root, options, store, decryptors=None,
                 key_refs=None, lock_manager=None, audit_sink=None,
                 cancel=None):
        if store is None:
            raise ConfigError.from_context("no store configured")
        self.source_root = source_root
        self.options = options.validate()
        self.store = store
        self.source = SecretSource(
            decryptors if decryptors is not None else default_decryptors(),
            key_refs, accepts_empty=store.accepts_empty)
        self.cancel = cancel
        self.run = uuid.uuid4().hex
        self.backoff = Backoff(options.backoff_base, options.backoff_max)
        self.engine = ReconcilerEngine(
            store,
            lock_manager=lock_manager,
            audit_sink=audit_sink,
            actor=options.actor,
            max_attempts=options.max_attempts,
            backoff=self.backoff,
            lock_ttl=options.lock_ttl,
            lock_wait=options.lock_wait,
            run=self.run)
        self.timer = Timer("reconciliation")

        self.scanned = None
        self.observed = None
        self.plan = None
        self.result = None

    def scan(self):
        output.step("main", "Scanning `{}` ...".format(self.source_root))
        with self.timer.step("scan"):
            self.scanned = self.source.scan(self.source_root)
        output.step(
            "main", "Found {} secret(s), {} problem(s)".format(
                len(self.scanned), len(self.scanned.errors)),
            debug=True)

    def observe(self):
        output.step("main", "Fetching remote state ...")
        with self.timer.step("observe"):
            self.observed, _ = retrying(
                self.store.list, self.options.max_attempts, self.backoff,
                context="list")

    def diff(self):
        self.plan = diff(
            self.scanned, self.observed,
            prune_unmanaged=self.options.prune_unmanaged,
            protected=self.scanned.failed_names,
            protected_prefixes=self.scanned.failed_prefixes)

    def apply(self):
        if self.options.dry_run:
            items = [
                ItemResult.from_item(
                    item, ItemResult.SKIPPED,
                    reason="noop" if not item.mutating else "dry-run")
                for item in self.plan]
            self.result = ReconciliationResult(self.plan, items, dry_run=True)
            return
        with self.timer.step("apply"):
            self.result = self.engine.apply(
                self.plan, self.options.concurrency_limit, self.cancel)

    def scan_failures(self):
        failures = []
        for error in self.scanned.errors:
            failures.append(ItemResult(
                error.name or error.path, ItemResult.SCAN,
                ItemResult.FAILED, reason=error.reason, message=str(error)))
        return failures

    def __call__(self):
        self.scan()
        self.observe()
        self.diff()
        self.apply()
        self.result.items[:0] = self.scan_failures()
        self.result.scan_errors = list(self.scanned.errors)
        undelivered = self.engine.audit.flush()
        if undelivered:
            output.warn("{} audit event(s) could not be delivered".format(
                undelivered))
        output.annotate(
            "Reconciliation took {}".format(self.timer.humanize(
                "total", "scan", "observe", "apply")), debug=True)
        return self.result


def reconcile(source_root, options=None, store=None, decryptors=None,
              key_refs=None, lock_manager=None, audit_sink=None,
              cancel=None) -> ReconciliationResult:
    """Make the remote store match the secrets declared in `source_root`.

    Raises :py:class:`secretsync.ConfigError`,
    :py:class:`secretsync.SourceUnavailable` or a store error from listing
    before anything was changed. Problems with single secrets are reported
    in the result instead.

    """
    if options is None:
        options = ReconcileOptions()
    return Reconciliation(
        source_root, options, store, decryptors, key_refs, lock_manager,
        audit_sink, cancel)()
