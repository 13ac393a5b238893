"""Operator commands for push tokens, notifications and fiscal receipts.

Each subcommand builds only the components it needs, so e.g. receipt
commands never touch Firebase credentials.
"""

import argparse
import csv
import json
import sys
from functools import cached_property

import redis

from fiscalpush.common.config import settings
from fiscalpush.common.logging import configure_logging


class OpsContext:
    """Lazily wired service objects shared by the subcommands."""

    def __init__(self, session_factory=None, config=settings, out=None) -> None:
        self._session_factory = session_factory
        self.config = config
        self.out = out or sys.stdout

    @cached_property
    def session_factory(self):
        if self._session_factory is not None:
            return self._session_factory
        from fiscalpush.common.db import SessionLocal

        return SessionLocal

    @cached_property
    def token_store(self):
        from fiscalpush.services.notification.tokens import TokenStore

        cache = redis.Redis.from_url(self.config.redis_url, decode_responses=True)
        return TokenStore(self.session_factory, cache=cache)

    @cached_property
    def notification_service(self):
        from fiscalpush.services.notification.dispatcher import NotificationDispatcher
        from fiscalpush.services.notification.gateway import GatewayHandle, firebase_gateway_factory
        from fiscalpush.services.notification.service import NotificationService

        gateway = GatewayHandle(firebase_gateway_factory(self.config), service_name="ops")
        dispatcher = NotificationDispatcher(gateway, self.token_store, service_name="ops")
        return NotificationService(self.session_factory, dispatcher, self.token_store, service_name="ops")

    @cached_property
    def archive(self):
        from fiscalpush.services.receipts.archive import ReceiptArchiveSync

        return ReceiptArchiveSync(self.session_factory, config=self.config, service_name="ops")

    @cached_property
    def receipt_service(self):
        from fiscalpush.services.receipts.fiscal import FiscalAuthorityClient
        from fiscalpush.services.receipts.service import ReceiptService
        from fiscalpush.services.receipts.sms import build_sms_gateway

        return ReceiptService(
            self.session_factory,
            FiscalAuthorityClient(self.config),
            self.archive,
            sms_gateway=build_sms_gateway(self.config),
            service_name="ops",
            config=self.config,
        )

    def emit(self, value) -> None:
        print(json.dumps(value, indent=2, default=str), file=self.out)


def cmd_tokens_list(args, ctx: OpsContext) -> int:
    if args.user_id and not ctx.token_store.has_token_row(args.user_id):
        print(f"User {args.user_id} has no push token record", file=ctx.out)
        return 1
    rows = ctx.token_store.list_token_owners(args.user_id, args.platform, args.min_tokens)
    if args.format == "csv":
        writer = csv.writer(ctx.out)
        writer.writerow(["user_id", "token_count", "platforms"])
        for row in rows:
            writer.writerow([row["user_id"], row["token_count"], ";".join(row["platforms"])])
        return 0
    print(f"{'USER ID':<24} {'TOKENS':>6}  PLATFORMS", file=ctx.out)
    for row in rows:
        print(f"{row['user_id']:<24} {row['token_count']:>6}  {', '.join(row['platforms'])}", file=ctx.out)
    print(f"{len(rows)} user(s)", file=ctx.out)
    return 0


def cmd_tokens_cleanup(args, ctx: OpsContext) -> int:
    report = ctx.token_store.cleanup_invalid_tokens(dry_run=args.dry_run)
    ctx.emit(report.model_dump())
    return 0


def cmd_notifications_retry(args, ctx: OpsContext) -> int:
    ctx.emit(ctx.notification_service.retry_failed_notifications())
    return 0


def cmd_notifications_cleanup(args, ctx: OpsContext) -> int:
    count = ctx.notification_service.cleanup_old_notifications(days=args.days, dry_run=args.dry_run)
    ctx.emit({"matched": count, "dry_run": args.dry_run})
    return 0


def cmd_receipts_retry(args, ctx: OpsContext) -> int:
    if args.status == "unsynced":
        summary = ctx.archive.sync_pending_receipts(limit=args.limit, dry_run=args.dry_run)
        ctx.emit(summary)
        return 1 if summary["failed"] else 0
    ctx.emit(ctx.receipt_service.retry_failed_receipts(limit=args.limit, dry_run=args.dry_run))
    return 0


def cmd_receipts_sync_archive(args, ctx: OpsContext) -> int:
    """Exit 1 when archiving is off or any receipt failed to sync."""

    if not ctx.archive.active:
        print("Archive integration is disabled (set VFD_ARCHIVE_ENABLED or VFD_SANDBOX)", file=ctx.out)
        return 1
    summary = ctx.archive.sync_pending_receipts(
        days=args.days,
        limit=args.limit,
        retry_failed=args.retry_failed,
        dry_run=args.dry_run,
    )
    ctx.emit(summary)
    return 1 if summary["failed"] else 0


def cmd_receipts_monitor(args, ctx: OpsContext) -> int:
    """Exit 1 when pending receipts exceed the threshold or any failed."""

    summary = ctx.receipt_service.receipt_summary(hours=args.hours, status=args.status)
    counts = summary["counts"]
    print(f"Receipts in the last {args.hours}h:", file=ctx.out)
    for name in ("generated", "pending", "failed"):
        print(f"  {name:<10} {counts[name]}", file=ctx.out)
    for receipt in summary["receipts"]:
        print(
            f"  {receipt['receipt_number']:<24} {receipt['status']:<10} {receipt['model_type']}#{receipt['model_id']}"
            f" {receipt['error_message'] or ''}",
            file=ctx.out,
        )
    unhealthy = False
    if counts["pending"] > args.pending_threshold:
        print(f"WARNING: {counts['pending']} pending receipts exceed threshold {args.pending_threshold}", file=ctx.out)
        unhealthy = True
    if counts["failed"]:
        print(f"WARNING: {counts['failed']} failed receipts", file=ctx.out)
        unhealthy = True
    return 1 if unhealthy else 0


def cmd_receipts_cleanup(args, ctx: OpsContext) -> int:
    count = ctx.receipt_service.cleanup_old_receipts(days=args.days, dry_run=args.dry_run)
    ctx.emit({"matched": count, "dry_run": args.dry_run})
    return 0


def cmd_vfd_test_connection(args, ctx: OpsContext) -> int:
    fiscal = ctx.receipt_service.fiscal.test_connection()
    archive = ctx.archive.test_connection() if ctx.archive.active else {"success": True, "message": "Archive disabled"}
    ctx.emit({"fiscal_authority": fiscal, "archive": archive})
    return 0 if fiscal["success"] and archive["success"] else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fiscalpush-ops", description="Push token, notification and receipt operations.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("tokens-list", help="List users with registered push tokens")
    p.add_argument("--user-id")
    p.add_argument("--platform", choices=["android", "ios", "web"])
    p.add_argument("--min-tokens", type=int, default=0)
    p.add_argument("--format", choices=["table", "csv"], default="table")
    p.set_defaults(func=cmd_tokens_list)

    p = sub.add_parser("tokens-cleanup", help="Remove invalid and duplicate tokens")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_tokens_cleanup)

    p = sub.add_parser("notifications-retry", help="Run one notification retry pass")
    p.set_defaults(func=cmd_notifications_retry)

    p = sub.add_parser("notifications-cleanup", help="Delete old notification records")
    p.add_argument("--days", type=int, default=30)
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_notifications_cleanup)

    p = sub.add_parser("receipts-retry", help="Re-queue failed receipts or resync unsynced ones")
    p.add_argument("--limit", type=int, default=10)
    p.add_argument("--status", choices=["failed", "unsynced"], default="failed")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_receipts_retry)

    p = sub.add_parser("receipts-sync-archive", help="Push generated receipts to the archive")
    p.add_argument("--days", type=int, default=7)
    p.add_argument("--limit", type=int, default=100)
    p.add_argument("--retry-failed", action="store_true")
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_receipts_sync_archive)

    p = sub.add_parser("receipts-monitor", help="Summarize recent receipt outcomes")
    p.add_argument("--hours", type=int, default=24)
    p.add_argument("--status", choices=["pending", "failed", "generated", "all"], default="all")
    p.add_argument("--pending-threshold", type=int, default=10)
    p.set_defaults(func=cmd_receipts_monitor)

    p = sub.add_parser("receipts-cleanup", help="Soft-delete old receipts")
    p.add_argument("--days", type=int, default=90)
    p.add_argument("--dry-run", action="store_true")
    p.set_defaults(func=cmd_receipts_cleanup)

    p = sub.add_parser("vfd-test-connection", help="Check fiscal authority and archive connectivity")
    p.set_defaults(func=cmd_vfd_test_connection)
    return parser


def main(argv=None, context: OpsContext | None = None) -> int:
    """CLI entrypoint for operator commands."""

    args = build_parser().parse_args(argv)
    if context is None:
        configure_logging()
        context = OpsContext()
    return args.func(args, context)


if __name__ == "__main__":
    raise SystemExit(main())
