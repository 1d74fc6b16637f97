import io
import json
import logging

import pytest

from nix_cleanup import nix_cleanup_cli


class FakeRegistrar:
    def __init__(self):
        self.entries = []

    def register(self, entry):
        if entry in self.entries:
            return False
        self.entries.append(entry)
        return True


@pytest.fixture(autouse=True)
def reset_logger():
    yield
    logger = logging.getLogger("nix_cleanup")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def cli(store, monkeypatch, tmp_path):
    built = []

    def build_store(config):
        built.append(config)
        return store

    monkeypatch.setattr(nix_cleanup_cli, "build_store", build_store)
    monkeypatch.delenv("NIX_CLEANUP_JOBS", raising=False)

    def run(*argv, answer=None):
        if answer is None:
            monkeypatch.setattr("builtins.input", lambda prompt: pytest.fail(f"unexpected prompt: {prompt}"))
        else:
            monkeypatch.setattr("builtins.input", lambda prompt: answer)
        base = ["--store-root", str(store.root), "--log-file", str(tmp_path / "actions.log")]
        return nix_cleanup_cli.main([*base, *argv])

    run.built = built
    return run


def test_explicit_paths_with_confirmation(store, cli, capsys):
    a = store.add("A")
    b = store.add("B", alive=True)
    c = store.add("C")

    assert cli(a, b, c, answer="y") == 0
    out = capsys.readouterr().out
    assert "summary outcome=completed candidates=3 alive_skipped=1 deleted=2 unresolved=0" in out
    assert store.exists(b)


def test_declined_prompt_exits_non_zero(store, cli, capsys):
    a = store.add("A")
    assert cli(a, answer="n") == 1
    assert "Aborting." in capsys.readouterr().out
    assert store.exists(a)


def test_bad_duration_is_rejected_before_querying(store, cli, capsys):
    assert cli("--older-than", "30x") == 1
    assert "<number>d" in capsys.readouterr().err
    assert store.query_dead_calls == 0
    assert cli.built == []


def test_system_cleanup_needs_no_prompt(store, cli, capsys):
    store.add("dead")
    store.add("keep", alive=True)
    assert cli("--system") == 0
    out = capsys.readouterr().out
    assert "Indexing and deleting all nix-store paths..." in out
    assert "deleted=1" in out
    assert store.gc_calls == 1


def test_confirm_system_flag_restores_prompt(store, cli):
    store.add("dead")
    assert cli("--system", "--confirm-system", answer="no") == 1
    assert store.delete_batches() == []


def test_older_than_with_yes(store, cli, capsys):
    old = store.add("old", age_days=60)
    store.add("new")
    assert cli("--older-than", "30d", "--yes") == 0
    assert "Indexing nix-store paths older than 30d..." in capsys.readouterr().out
    assert not store.exists(old)


def test_package_cleanup(store, cli, capsys):
    pkg = store.add("abc-hello-2.12")
    store.packages["hello"] = pkg
    assert cli("hello", "-y") == 0
    assert "deleted=1" in capsys.readouterr().out


def test_unknown_package(store, cli, capsys):
    assert cli("hello", "-y") == 1
    assert "ERROR: Package hello not found." in capsys.readouterr().err


def test_report_and_strategy_options(store, cli, tmp_path):
    store.add("dead")
    report = tmp_path / "out" / "report.json"
    assert cli("--system", "--strategy", "quick", "--no-gc", "-j", "2", "--report", str(report)) == 0

    payload = json.loads(report.read_text(encoding="utf-8"))
    assert payload["strategy"] == "quick"
    assert payload["deleted"] == 1
    assert payload["compacted"] is False
    assert store.gc_calls == 0
    assert cli.built[0].jobs == 2


def test_jobs_from_environment(store, cli, monkeypatch):
    monkeypatch.setenv("NIX_CLEANUP_JOBS", "6")
    store.add("dead")
    assert cli("--system") == 0
    assert cli.built[0].jobs == 6


@pytest.mark.parametrize(
    "argv,message",
    [
        (["--jobs", "0", "--system"], "jobs must be a positive integer"),
        (["--max-waves", "0", "--system"], "max-waves must be a positive integer"),
        (["--strategy", "thorough", "--system"], "invalid choice"),
        (["--older-than", "30d", "hello"], "--older-than cannot be combined"),
        (["--system", "hello"], "cannot be combined"),
        (["hello", "world"], "expected one flake package name"),
    ],
)
def test_usage_errors(cli, capsys, argv, message):
    assert cli(*argv) == 1
    err = capsys.readouterr().err
    assert err.startswith("ERROR: ")
    assert message in err


def test_bad_jobs_environment(cli, monkeypatch, capsys):
    monkeypatch.setenv("NIX_CLEANUP_JOBS", "many")
    assert cli("--system") == 1
    assert "NIX_CLEANUP_JOBS must be a positive integer" in capsys.readouterr().err


def test_no_selector_prints_help(cli, capsys):
    assert cli() == 1
    assert "usage: nix-cleanup" in capsys.readouterr().out


def test_version(cli, capsys):
    with pytest.raises(SystemExit) as exc:
        cli("--version")
    assert exc.value.code == 0
    assert "0.1.0" in capsys.readouterr().out


def test_add_cron(cli, monkeypatch, capsys):
    registrar = FakeRegistrar()
    monkeypatch.setattr(nix_cleanup_cli, "build_registrar", lambda: registrar)

    assert cli("--add-cron", "nix-cleanup", "--older-than", "30d", "--yes") == 0
    out = capsys.readouterr().out
    assert "Installed cron entry in root crontab:" in out
    assert registrar.entries == ["@daily nix-cleanup --older-than 30d --yes"]
    assert cli.built == []

    assert cli("--add-cron", "nix-cleanup --older-than 30d --yes") == 0
    assert "Cron entry already exists in root crontab." in capsys.readouterr().out


def test_add_cron_keeps_explicit_schedule(cli, monkeypatch):
    registrar = FakeRegistrar()
    monkeypatch.setattr(nix_cleanup_cli, "build_registrar", lambda: registrar)
    assert cli("--add-cron", "0 3 * * * nix-cleanup --system") == 0
    assert registrar.entries == ["0 3 * * * nix-cleanup --system"]


def test_add_cron_rejects_cleanup_options(cli, monkeypatch, capsys):
    monkeypatch.setattr(nix_cleanup_cli, "build_registrar", FakeRegistrar)
    assert cli("--system", "--add-cron", "nix-cleanup") == 1
    assert "--add-cron cannot be combined" in capsys.readouterr().err


def test_add_cron_requires_command(cli, monkeypatch, capsys):
    monkeypatch.setattr(nix_cleanup_cli, "build_registrar", FakeRegistrar)
    assert cli("--add-cron") == 1
    assert "requires a command" in capsys.readouterr().err


def test_prompt_on_closed_stdin_aborts(store, monkeypatch, tmp_path, capsys):
    dead = store.add("dead")
    monkeypatch.setattr(nix_cleanup_cli, "build_store", lambda config: store)
    monkeypatch.setattr("sys.stdin", io.StringIO(""))

    rc = nix_cleanup_cli.main(["--store-root", str(store.root), "--log-file", str(tmp_path / "actions.log"), dead])

    assert rc == 1
    assert "Aborting." in capsys.readouterr().out
    assert store.delete_batches() == []
    assert store.exists(dead)
