"""Operator CLI exit codes and output."""

import io

from conftest import make_receipt, make_token

from fiscalpush.cli import OpsContext, main
from fiscalpush.services.notification.tokens import TokenStore


def _context(session_factory, config, cache):
    context = OpsContext(session_factory=session_factory, config=config, out=io.StringIO())
    context.token_store = TokenStore(session_factory, cache=cache)
    return context


def test_tokens_list_csv(session_factory, test_config, cache):
    context = _context(session_factory, test_config, cache)
    context.token_store.add_token("u1", make_token("a"))

    assert main(["tokens-list", "--format", "csv"], context) == 0
    lines = context.out.getvalue().splitlines()
    assert lines[0] == "user_id,token_count,platforms"
    assert lines[1] == "u1,1,web"


def test_tokens_list_unknown_user_exits_non_zero(session_factory, test_config, cache):
    context = _context(session_factory, test_config, cache)

    assert main(["tokens-list", "--user-id", "nobody"], context) == 1


def test_tokens_cleanup_dry_run(session_factory, test_config, cache):
    context = _context(session_factory, test_config, cache)
    context.token_store.add_token("u1", make_token("a"))

    assert main(["tokens-cleanup", "--dry-run"], context) == 0
    assert '"users_scanned": 1' in context.out.getvalue()


def test_sync_archive_requires_enabled_integration(session_factory, test_config, cache):
    config = test_config.model_copy(update={"vfd_sandbox": False, "vfd_archive_enabled": False})
    context = _context(session_factory, config, cache)

    assert main(["receipts-sync-archive"], context) == 1


def test_sync_archive_in_sandbox(session_factory, test_config, cache):
    make_receipt(session_factory)
    context = _context(session_factory, test_config, cache)

    assert main(["receipts-sync-archive"], context) == 0
    assert '"synced": 1' in context.out.getvalue()


def test_monitor_warns_on_pending_threshold(session_factory, test_config, cache):
    for number in range(3):
        make_receipt(session_factory, receipt_number=f"VFD-{number}", model_id=str(number), status="pending")
    context = _context(session_factory, test_config, cache)

    assert main(["receipts-monitor", "--pending-threshold", "5"], context) == 0
    assert main(["receipts-monitor", "--pending-threshold", "2"], context) == 1
    assert "exceed threshold 2" in context.out.getvalue()


def test_receipts_cleanup_dry_run(session_factory, test_config, cache):
    make_receipt(session_factory)
    context = _context(session_factory, test_config, cache)

    assert main(["receipts-cleanup", "--dry-run"], context) == 0
    assert '"matched": 0' in context.out.getvalue()


def test_vfd_connection_in_sandbox(session_factory, test_config, cache):
    context = _context(session_factory, test_config, cache)

    assert main(["vfd-test-connection"], context) == 0
    assert "Sandbox mode: Connection test skipped" in context.out.getvalue()
