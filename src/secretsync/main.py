import argparse
import contextlib
import signal
import sys
import threading
from typing import Optional

import importlib_resources

import secretsync
import secretsync.decrypt
from secretsync import ReportingException
from secretsync._output import TerminalBackend, output
from secretsync.config import (
    ReconcileOptions,
    build_audit_sink,
    build_lock_manager,
    key_refs,
    load_config,
)
from secretsync.log import setup_logging
from secretsync.model import ItemResult
from secretsync.reconcile import Reconciliation
from secretsync.source import SecretSource
from secretsync.store import get_store
from secretsync.utils import self_id


@contextlib.contextmanager
def cancel_on_signals(cancel):
    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt()
        output.warn(
            "Cancelling: running items will finish, no new items start.")
        cancel.set()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    try:
        yield cancel
    finally:
        for signum, old in previous.items():
            signal.signal(signum, old)


def report_errors(action, errors):
    for error in sorted(errors, key=lambda e: getattr(e, "sort_key", (-99,))):
        output.line("")
        if hasattr(error, "report"):
            error.report()
        else:
            output.error("Unexpected exception", exc_info=(
                type(error), error, error.__traceback__))
    output.section("{} FAILED".format(action), red=True)


def show_result(result):
    output.section("Summary")
    for item in result.items:
        detail = item.outcome
        if item.reason:
            detail += " ({})".format(item.reason)
        if item.version:
            detail += " -> version {}".format(item.version)
        output.tabular(item.action, "{} {}".format(item.name, detail),
                       red=item.outcome == ItemResult.FAILED)
    summary = result.summary
    output.annotate("applied: {applied}, skipped: {skipped}, "
                    "failed: {failed}".format(**summary))


def scan(source, config):
    """List the secrets found in a source tree."""
    action = "SCAN"
    try:
        config = load_config(config)
        decryptors = secretsync.decrypt.default_decryptors()
        result = SecretSource(decryptors, key_refs(config)).scan(source)
    except ReportingException as e:
        report_errors(action, [e])
        return 1
    output.section("Secrets")
    for document in result:
        output.tabular(document.name, "{} ({} keys)".format(
            document.checksum, len(document.payload)))
    if result.errors:
        report_errors(action, result.errors)
        return 1
    output.section("{} FINISHED".format(action), green=True)
    return 0


def reconcile(source, config, prune, jobs, dry_run, actor):
    """Reconcile a source tree against the configured store."""
    action = "PLAN" if dry_run else "RECONCILIATION"
    cancel = threading.Event()
    try:
        config = load_config(config)
        options = ReconcileOptions.from_config(
            config, prune_unmanaged=prune or None,
            concurrency_limit=jobs, dry_run=dry_run or None, actor=actor)
        store = get_store(config.get("store", {}))
        reconciliation = Reconciliation(
            source, options, store,
            key_refs=key_refs(config),
            lock_manager=build_lock_manager(config),
            audit_sink=build_audit_sink(config),
            cancel=cancel)
        output.section("Reconciling" if not options.dry_run else "Planning")
        with cancel_on_signals(cancel):
            result = reconciliation()
    except ReportingException as e:
        report_errors(action, [e])
        return 1

    show_result(result)
    if result.degraded:
        output.section(
            "{} DEGRADED ({} failed)".format(action, len(result.failed)),
            red=True)
        return 1
    if cancel.is_set():
        output.section("{} CANCELLED".format(action), red=True)
        return 1
    output.section("{} FINISHED".format(action), green=True)
    return 0


def plan(source, config, prune, actor):
    return reconcile(source, config, prune, None, True, actor)


def main(args: Optional[list] = None) -> int:
    version = (
        importlib_resources.files("secretsync")
        .joinpath("version.txt")
        .read_text()
        .strip()
    )
    parser = argparse.ArgumentParser(
        description=(
            "secretsync v{}: reconcile declared secrets with a secret store"
        ).format(version),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.set_defaults(func=parser.print_usage)

    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable debug mode."
    )
    parser.add_argument(
        "-c",
        "--config",
        default=None,
        help="Configuration file (default: ./secretsync.cfg if present).",
    )

    subparsers = parser.add_subparsers()

    p = subparsers.add_parser(
        "scan", help="List the secrets declared in a source tree.")
    p.add_argument("source", help="Root of the secret documents.")
    p.set_defaults(func=scan)

    def add_reconcile_arguments(p):
        p.add_argument(
            "--prune",
            action="store_true",
            help="Delete remote secrets that are not declared. "
            "DANGER: without this, unmanaged secrets are left alone.",
        )
        p.add_argument(
            "--actor",
            default=None,
            help="Identity recorded in audit events (default: user@host).",
        )
        p.add_argument("source", help="Root of the secret documents.")

    p = subparsers.add_parser(
        "plan", help="Show what a reconciliation would change.")
    add_reconcile_arguments(p)
    p.set_defaults(func=plan)

    p = subparsers.add_parser(
        "reconcile", help="Make the store match the source tree.")
    add_reconcile_arguments(p)
    p.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=None,
        help="Number of secrets to apply in parallel. "
        "Overrides the configuration file.",
    )
    p.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        help="Only compute the plan. Do not change anything.",
    )
    p.set_defaults(func=reconcile)

    args = parser.parse_args(args)

    # Consume global arguments
    output.enable_debug = args.debug
    secretsync.decrypt.debug = args.debug

    if args.func.__name__ == "print_usage":
        args.func()
        return 1

    output.backend = TerminalBackend()
    setup_logging(
        ["secretsync"], "DEBUG" if args.debug else "INFO", sys.stderr)
    output.line(self_id())

    func_args = dict(args._get_kwargs())
    del func_args["func"]
    del func_args["debug"]
    return args.func(**func_args)
