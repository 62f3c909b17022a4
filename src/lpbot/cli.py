from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation

from lpbot.config import Settings
from lpbot.domain.errors import (
    ConfigurationError,
    FatalInvariantBreach,
    PersistenceFailure,
    classify_failure,
)
from lpbot.logging_context import with_logging_context
from lpbot.logging_utils import setup_logging
from lpbot.observability import configure_instrumentation, flush_instrumentation
from lpbot.services.capital_ledger import CapitalLedger, new_run_id
from lpbot.services.reconciliation_seal import SEAL_STATE_KEY, ReconciliationSeal
from lpbot.services.startup_recovery import StartupRecoveryService
from lpbot.services.state_store import StateStore

logger = logging.getLogger(__name__)


def _decimal_arg(raw: str) -> Decimal:
    try:
        return Decimal(raw)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid decimal value: {raw}") from exc


def _print_json(payload: object) -> None:
    print(json.dumps(payload, sort_keys=True, default=str))


def _build_ledger(settings: Settings, store: StateStore, seal: ReconciliationSeal) -> CapitalLedger:
    return CapitalLedger(
        store,
        seal=seal,
        test_mode=settings.test_mode,
        phantom_equity_epsilon=settings.phantom_equity_epsilon,
        restart_equity_tolerance=settings.restart_equity_tolerance,
    )


def run_status(settings: Settings) -> int:
    store = StateStore(settings.state_db_path, read_only=True)
    state = store.get_capital_state()
    if state is None:
        _print_json({"initialized": False, "db_path": store.db_path_abs})
        return 1
    locks = store.list_locks()
    epoch = store.get_active_run_epoch()
    _print_json(
        {
            "initialized": True,
            "db_path": store.db_path_abs,
            "capital": asdict(state),
            "equity": state.equity,
            "locks": len(locks),
            "lock_sum": sum((lock.amount for lock in locks), Decimal("0")),
            "active_trades": len(store.list_active_trades()),
            "run_epoch": asdict(epoch) if epoch is not None else None,
            "sealed": store.get_bot_state(SEAL_STATE_KEY) is not None,
        }
    )
    return 0


def run_reset_capital(settings: Settings, balance: Decimal) -> int:
    store = StateStore(settings.state_db_path)
    seal = ReconciliationSeal.from_state(store.get_bot_state(SEAL_STATE_KEY))
    ledger = _build_ledger(settings, store, seal)
    if not ledger.initialize(settings.paper_capital):
        _print_json({"success": False, "error": "capital ledger could not be initialized"})
        return 1
    try:
        result = ledger.reset_capital(balance)
    except FatalInvariantBreach as exc:
        _print_json({"success": False, "error": str(exc)})
        return 2
    _print_json(asdict(result))
    return 0 if result.success else 1


def run_audit(settings: Settings, *, limit: int, action: str | None) -> int:
    store = StateStore(settings.state_db_path, read_only=True)
    for row in reversed(store.list_audit(limit=limit, action=action)):
        _print_json(row)
    return 0


def run_recover(settings: Settings, *, run_id: str | None, fresh_start: bool) -> int:
    store = StateStore(settings.state_db_path)
    if fresh_start and not settings.test_mode:
        persisted = ReconciliationSeal.from_state(store.get_bot_state(SEAL_STATE_KEY))
        if persisted.is_sealed:
            assert persisted.data is not None
            logger.critical(
                "fresh_start_forbidden_after_seal",
                extra={"extra": {"sealed_run_id": persisted.data.run_id}},
            )
            _print_json(
                {
                    "success": False,
                    "error": f"fresh start is forbidden: ledger sealed by run {persisted.data.run_id}",
                }
            )
            return 2
    seal = ReconciliationSeal()
    ledger = _build_ledger(settings, store, seal)
    resolved_run_id = run_id or new_run_id(datetime.now(UTC))
    service = StartupRecoveryService(ledger=ledger, store=store, seal=seal)
    with with_logging_context(run_id=resolved_run_id):
        try:
            result = service.run(
                run_id=resolved_run_id,
                fresh_start=fresh_start,
                paper_capital=settings.paper_capital,
            )
        except FatalInvariantBreach as exc:
            logger.critical("startup_recovery_aborted", extra={"extra": {"error": str(exc)}})
            _print_json({"success": False, "error": str(exc)})
            return 3
    _print_json({"success": True, **asdict(result)})
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="lpbot",
        description="Operator tools for the lpbot capital ledger and safety core.",
    )
    parser.add_argument("--db", default=None, help="Override STATE_DB_PATH")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("status", help="Print capital state, locks and run epoch")

    reset_parser = subparsers.add_parser(
        "reset-capital", help="Destructive reset of capital (refused once sealed)"
    )
    reset_parser.add_argument("--balance", type=_decimal_arg, required=True)

    audit_parser = subparsers.add_parser("audit", help="Print recent audit records")
    audit_parser.add_argument("--limit", type=int, default=20)
    audit_parser.add_argument("--action", default=None)

    recover_parser = subparsers.add_parser(
        "recover", help="Run startup reconciliation and seal the ledger"
    )
    recover_parser.add_argument("--run-id", default=None)
    recover_parser.add_argument("--fresh", action="store_true", help="Start from PAPER_CAPITAL")

    args = parser.parse_args(argv)
    settings = Settings()
    if args.db:
        settings = settings.model_copy(update={"state_db_path": args.db})
    setup_logging(settings.log_level)
    configure_instrumentation(
        enabled=settings.observability_enabled,
        metrics_exporter=settings.observability_metrics_exporter,
        otlp_endpoint=settings.observability_otlp_endpoint,
        prometheus_port=settings.observability_prometheus_port,
    )

    try:
        if args.command == "status":
            return run_status(settings)
        if args.command == "reset-capital":
            return run_reset_capital(settings, args.balance)
        if args.command == "audit":
            return run_audit(settings, limit=args.limit, action=args.action)
        if args.command == "recover":
            return run_recover(settings, run_id=args.run_id, fresh_start=args.fresh)
    except (PersistenceFailure, ConfigurationError) as exc:
        logger.error(
            "command_failed",
            extra={
                "extra": {
                    "command": args.command,
                    "category": classify_failure(exc).value,
                    "error": str(exc),
                }
            },
        )
        _print_json({"success": False, "error": str(exc)})
        return 1
    finally:
        flush_instrumentation()
    parser.error(f"unknown command {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
