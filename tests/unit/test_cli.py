"""Unit tests for the command-line interface."""

from __future__ import annotations

import pytest

from mailbrief import cli
from mailbrief.exceptions import AuthenticationError
from mailbrief.mailbox.normalize import item_to_message


@pytest.fixture
def run_cli(monkeypatch: pytest.MonkeyPatch, settings, components):
    """Run ``cli.main`` against the faked components."""

    monkeypatch.setattr(cli, "get_settings", lambda: settings)
    monkeypatch.setattr(cli, "build_components", lambda s: components)
    return cli.main


class TestCli:
    """Test suite for the mailbrief CLI."""

    def test_version(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc:
            cli.main(["--version"])

        assert exc.value.code == 0
        assert "mailbrief" in capsys.readouterr().out

    def test_command_is_required(self) -> None:
        with pytest.raises(SystemExit) as exc:
            cli.main([])

        assert exc.value.code == 2

    def test_init(self, run_cli, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(["init"]) == 0

        assert "Vector collection: mailbrief_fake_v1" in capsys.readouterr().out

    def test_sync_index_and_search(
        self, run_cli, fake_mailbox, make_item, capsys: pytest.CaptureFixture[str]
    ) -> None:
        fake_mailbox.items = [
            make_item("inv", subject="Invoice 42 due", sender="billing@example.com"),
            make_item("lunch", subject="Lunch plans"),
        ]

        assert run_cli(["sync"]) == 0
        assert "2 new" in capsys.readouterr().out

        assert run_cli(["index", "--refresh"]) == 0
        out = capsys.readouterr().out
        assert "Indexed 2 message(s)" in out
        assert "Re-embedded 0 entries" in out

        assert run_cli(["search", "invoice", "--limit", "1"]) == 0
        lines = [line for line in capsys.readouterr().out.splitlines() if "\t" in line]
        assert len(lines) == 1
        assert lines[0].endswith("Invoice 42 due\tinv")
        assert "billing@example.com" in lines[0]

    def test_sync_full_resets_cursor(self, run_cli, components, fake_mailbox, make_item) -> None:
        fake_mailbox.items = [make_item("m1")]
        run_cli(["sync"])

        assert run_cli(["sync", "--full"]) == 0

        assert fake_mailbox.fetch_calls == [None, None]
        assert components.store.count() == 1

    def test_stats(self, run_cli, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(["stats"]) == 0

        out = capsys.readouterr().out
        assert "Messages: 0 (latest sequence 0)" in out
        assert "Cursor: (none) at sequence 0" in out
        assert "Last digest cycle: (never)" in out

    def test_digest_run_reports_failures(
        self, run_cli, components, store, transport, make_item, capsys: pytest.CaptureFixture[str]
    ) -> None:
        components.subscribers.register("good@example.com")
        components.subscribers.register("bad@example.com")
        transport.fail_addresses.add("bad@example.com")
        store.put(item_to_message(make_item("m1")))

        assert run_cli(["digest", "run"]) == 1

        out = capsys.readouterr().out
        assert "good@example.com\tsent\t1 message(s)" in out
        assert "bad@example.com\tsend_failed" in out
        assert "1 sent, 1 failed" in out

    def test_digest_clear_pending(self, run_cli, capsys: pytest.CaptureFixture[str]) -> None:
        assert run_cli(["digest", "clear-pending", "5"]) == 1

        assert "No pending digest" in capsys.readouterr().out

    def test_errors_exit_non_zero(self, run_cli, fake_mailbox, capsys: pytest.CaptureFixture[str]) -> None:
        fake_mailbox.errors = [AuthenticationError("token revoked")]

        assert run_cli(["sync"]) == 1

        assert "Error: token revoked" in capsys.readouterr().err
