"""Command line entry point: ``python -m pnl_indexer <command>``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import sys
from collections.abc import Awaitable
from decimal import Decimal
from typing import Any

from pnl_indexer.accounting.service import AccountingService
from pnl_indexer.config import Settings, get_settings
from pnl_indexer.indexer.log_buffer import MemoryLogHandler
from pnl_indexer.indexer.orchestrator import IndexerError, WalletIndexer
from pnl_indexer.indexer.status import JobStatusRegistry
from pnl_indexer.storage.database import DatabaseManager
from pnl_indexer.storage.repos import TrackedTokenDTO, TrackedTokenRepository

logger = logging.getLogger("pnl_indexer")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
PROGRESS_INTERVAL_SECONDS = 10.0
DEFAULT_LOG_LINES = 20

log_buffer = MemoryLogHandler()


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def status_report(registry: JobStatusRegistry, *, log_lines: int = DEFAULT_LOG_LINES) -> dict[str, Any]:
    """Job snapshot plus the most recent buffered log lines."""
    return {
        "jobs": registry.snapshot(),
        "logs": [
            {
                "timestamp": entry.timestamp.isoformat(),
                "level": entry.level,
                "logger": entry.logger,
                "message": entry.message,
            }
            for entry in log_buffer.get_logs(limit=log_lines)
        ],
    }


async def _log_progress(registry: JobStatusRegistry, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        for job in registry.snapshot():
            if job["eta"] is None:
                continue
            logger.info(
                "%s/%s %s: %d page(s), %d trade(s), %d/%d position(s), ETA %s",
                job["wallet_address"],
                job["token_address"],
                job["status"],
                job["pages_fetched"],
                job["trades_inserted"],
                job["items_done"],
                job["items_total"],
                job["eta"],
            )


async def _with_progress(indexer: WalletIndexer, work: Awaitable[Any]) -> Any:
    reporter = asyncio.create_task(_log_progress(indexer.registry, PROGRESS_INTERVAL_SECONDS))
    try:
        return await work
    finally:
        reporter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reporter


def _decimal_arg(value: str) -> Decimal:
    try:
        return Decimal(value)
    except ArithmeticError as e:
        raise argparse.ArgumentTypeError(f"not a decimal number: {value!r}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pnl-indexer",
        description="Index token swaps and compute FIFO PnL per wallet",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    pnl-indexer init-db
    pnl-indexer add-token 0xtoken --genesis-block 12000000
    pnl-indexer index-wallet 0xwallet 0xtoken --registration-id 42
    pnl-indexer sync-token 0xtoken
    pnl-indexer recalculate 3
    pnl-indexer position 0xwallet 0xtoken
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create all tables (development; use alembic in production)")

    add_token = sub.add_parser("add-token", help="Track a token and fetch its metadata")
    add_token.add_argument("token", help="Token contract address")
    add_token.add_argument("--genesis-block", type=int, default=None, help="First block the token traded in")
    add_token.add_argument("--symbol", default=None, help="Override the on-chain symbol")
    add_token.add_argument("--decimals", type=int, default=None, help="Override the on-chain decimals")

    index_wallet = sub.add_parser("index-wallet", help="Index one wallet on one token and wait")
    index_wallet.add_argument("wallet", help="Wallet address")
    index_wallet.add_argument("token", help="Token contract address")
    index_wallet.add_argument("--contest-id", type=int, default=None)
    index_wallet.add_argument("--registration-id", type=int, default=None)
    index_wallet.add_argument("--log-lines", type=int, default=DEFAULT_LOG_LINES, help="Recent log lines to include in the output")

    sync_token = sub.add_parser("sync-token", help="Ingest all swaps of a token since its cursor")
    sync_token.add_argument("token", help="Token contract address")
    sync_token.add_argument("--log-lines", type=int, default=DEFAULT_LOG_LINES, help="Recent log lines to include in the output")

    recalculate = sub.add_parser("recalculate", help="Recompute PnL of every indexed registration of a contest")
    recalculate.add_argument("contest_id", type=int)

    position = sub.add_parser("position", help="Show a wallet's position on a token")
    position.add_argument("wallet", help="Wallet address")
    position.add_argument("token", help="Token contract address")
    position.add_argument("--price", type=_decimal_arg, default=None, help="Price to value the open amount at")

    return parser


async def _init_db(settings: Settings, args: argparse.Namespace) -> int:
    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()
    return 0


async def _add_token(settings: Settings, args: argparse.Namespace) -> int:
    from pnl_indexer.gateway.gateway import ChainGateway

    symbol, decimals = args.symbol, args.decimals
    if symbol is None or decimals is None:
        gateway = ChainGateway.from_settings(settings.chain)
        try:
            meta = await gateway.get_token_metadata(args.token)
        finally:
            await gateway.aclose()
        symbol = symbol or meta.symbol
        decimals = decimals if decimals is not None else meta.decimals

    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    try:
        async with db.get_async_session() as session:
            stored = await TrackedTokenRepository(session).upsert(
                TrackedTokenDTO(
                    token_address=args.token.lower(),
                    symbol=symbol,
                    decimals=decimals,
                    genesis_block=args.genesis_block,
                )
            )
    finally:
        await db.dispose_async()
    _print_json(stored.__dict__)
    return 0


async def _index_wallet(settings: Settings, args: argparse.Namespace) -> int:
    settings.validate_requirements(command="index-wallet")
    async with WalletIndexer.from_settings(settings) as indexer:
        outcome = await _with_progress(
            indexer,
            indexer.index_wallet_and_wait(
                args.wallet,
                args.token,
                contest_id=args.contest_id,
                registration_id=args.registration_id,
            ),
        )
        report = status_report(indexer.registry, log_lines=args.log_lines)
    _print_json(
        {
            "wallet_address": outcome.wallet_address,
            "token_address": outcome.token_address,
            "status": outcome.status.value,
            "error": outcome.error,
            "position": outcome.position.__dict__ if outcome.position else None,
            "current_price": outcome.current_price,
            "current_pnl": outcome.current_pnl,
            "trades_inserted": outcome.ingestion.trades_inserted if outcome.ingestion else 0,
            **report,
        }
    )
    return 0 if outcome.succeeded else 1


async def _sync_token(settings: Settings, args: argparse.Namespace) -> int:
    settings.validate_requirements(command="sync-token")
    async with WalletIndexer.from_settings(settings) as indexer:
        result = await _with_progress(indexer, indexer.sync_token(args.token))
        report = status_report(indexer.registry, log_lines=args.log_lines)
    _print_json(
        {
            "token_address": result.token_address,
            "from_block": result.from_block,
            "trades_inserted": result.ingestion.trades_inserted,
            "positions_recomputed": result.positions_recomputed,
            "observed_wallets": len(result.ingestion.observed_wallets),
            "skipped_pages": len(result.ingestion.skipped_pages),
            "hit_page_ceiling": result.ingestion.hit_page_ceiling,
            **report,
        }
    )
    return 0 if result.ingestion.complete else 1


async def _recalculate(settings: Settings, args: argparse.Namespace) -> int:
    settings.validate_requirements(command="recalculate")
    async with WalletIndexer.from_settings(settings) as indexer:
        summary = await indexer.recalculate_contest(args.contest_id)
    _print_json(summary.__dict__)
    return 0 if summary.errors == 0 else 1


async def _position(settings: Settings, args: argparse.Namespace) -> int:
    from pnl_indexer.pricing import PriceService

    db = DatabaseManager(settings.database.url, echo=settings.database.echo)
    prices = PriceService.from_settings(settings.pricing, db)
    try:
        position = await AccountingService(db).get_position(args.wallet, args.token)
        price = args.price if args.price is not None else await prices.get_current_price(args.token)
    finally:
        await prices.close()
        await db.dispose_async()

    unrealized = None
    if price is not None:
        unrealized = AccountingService.total_pnl(position, price) - position.realized_pnl_usd
    _print_json(
        {
            **position.__dict__,
            "current_price": price,
            "unrealized_pnl_usd": unrealized,
            "total_pnl_usd": AccountingService.total_pnl(position, price),
        }
    )
    return 0


COMMANDS = {
    "init-db": _init_db,
    "add-token": _add_token,
    "index-wallet": _index_wallet,
    "sync-token": _sync_token,
    "recalculate": _recalculate,
    "position": _position,
}


def main(argv: list[str] | None = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)
    settings = get_settings()

    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)
    log_buffer.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger("pnl_indexer").addHandler(log_buffer)
    logger.debug("Settings: %s", settings.redacted_summary())

    try:
        return asyncio.run(COMMANDS[args.command](settings, args))
    except (IndexerError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
