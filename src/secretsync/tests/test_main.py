import mock
import pytest

from secretsync.main import main

from .ellipsis import Ellipsis


@pytest.fixture(autouse=True)
def no_logging_setup():
    with mock.patch("secretsync.main.setup_logging") as setup_logging:
        yield setup_logging


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "secretsync.cfg"
    path.write_text("[store]\nmethod = memory\n\n[audit]\npath = {}\n".format(
        tmp_path / "audit.jsonl"))
    return str(path)


def test_no_command_prints_usage(capsys):
    assert main([]) == 1
    assert capsys.readouterr().out.startswith("usage:")


def test_unknown_command_exits(capsys):
    with pytest.raises(SystemExit):
        main(["sync"])


def test_scan_lists_names_and_checksums(source, config, capsys):
    source.write("app/dev.yaml", "password: s3cr3t\n")
    assert main(["-c", config, "scan", source.path]) == 0
    out = capsys.readouterr().out
    assert Ellipsis("""\
secretsync/...
... Secrets ...
...app/dev: sha256:... (1 keys)
... SCAN FINISHED ...
""") == out
    assert "s3cr3t" not in out


def test_scan_reports_broken_documents(source, config, capsys):
    source.write("app.yaml", "a: [\n")
    assert main(["-c", config, "scan", source.path]) == 1
    out = capsys.readouterr().out
    assert "ERROR: Could not read secret document" in out
    assert "SCAN FAILED" in out


def test_reconcile(source, config, capsys, tmp_path):
    source.write("app.yaml", "password: s3cr3t\n")
    assert main(["-c", config, "reconcile", source.path]) == 0
    out = capsys.readouterr().out
    assert Ellipsis("""\
...
...create: app applied -> version 1
     applied: 1, skipped: 0, failed: 0
...RECONCILIATION FINISHED...
""") == out
    assert "s3cr3t" not in out
    audit = (tmp_path / "audit.jsonl").read_text()
    assert '"outcome": "applied"' in audit
    assert "s3cr3t" not in audit


def test_reconcile_degraded_exits_with_error(source, config, capsys):
    source.write("good.yaml", "a: b\n")
    source.write("bad.yaml", "a: [\n")
    assert main(["-c", config, "reconcile", source.path]) == 1
    out = capsys.readouterr().out
    assert "RECONCILIATION DEGRADED (1 failed)" in out
    assert "good applied" in out


def test_plan_does_not_apply(source, config, capsys):
    source.write("app.yaml", "a: b\n")
    with mock.patch("secretsync.store.memory.MemoryStore.put") as put:
        assert main(["-c", config, "plan", source.path]) == 0
    assert not put.called
    out = capsys.readouterr().out
    assert "app skipped (dry-run)" in out
    assert "PLAN FINISHED" in out


def test_missing_store_configuration(source, tmp_path, capsys):
    path = tmp_path / "empty.cfg"
    path.write_text("")
    assert main(["-c", str(path), "reconcile", source.path]) == 1
    out = capsys.readouterr().out
    assert "ERROR: Invalid configuration" in out
    assert "store.method" in out
    assert "RECONCILIATION FAILED" in out


def test_missing_source(tmp_path, config, capsys):
    assert main(["-c", config, "reconcile", str(tmp_path / "nope")]) == 1
    assert "ERROR: Can not read secret source" in capsys.readouterr().out


def test_command_line_overrides_options(source, config):
    with mock.patch("secretsync.main.Reconciliation") as reconciliation:
        reconciliation.return_value.return_value.degraded = False
        reconciliation.return_value.return_value.items = []
        reconciliation.return_value.return_value.summary = {
            "applied": 0, "skipped": 0, "failed": 0}
        assert main(["-c", config, "reconcile", "--prune", "-j", "7",
                     "--actor", "ci@build", source.path]) == 0
    options = reconciliation.call_args[0][1]
    assert options.prune_unmanaged is True
    assert options.concurrency_limit == 7
    assert options.actor == "ci@build"
    assert not options.dry_run
