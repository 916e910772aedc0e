from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from typing import Any

from dotenv import load_dotenv

from landtoken.common import log_event
from landtoken.errors import LandTokenError
from landtoken.orchestration import CriticalPartialFailureError
from landtoken.runtime import AppSettings, setup_logger
from landtoken.runtime.runner import (
    bootstrap_dependencies,
    build_services,
    close_services,
    run_list_parcels,
    run_my_parcels,
    run_tokenize,
    run_verify,
)
from landtoken.storage import StorageSettings

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PARTIAL_FAILURE = 2


def emit(payload: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
    sys.stdout.flush()


def parse_filters(values: list[str]) -> dict[str, str]:
    filters: dict[str, str] = {}
    for item in values:
        key, separator, value = item.partition("=")
        if not separator or not key:
            raise argparse.ArgumentTypeError(f"Filter must be key=value, got {item!r}")
        filters[key.strip()] = value.strip()
    return filters


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="landtoken", description="Land parcel tokenization client")
    commands = parser.add_subparsers(dest="command", required=True)

    parcels = commands.add_parser("parcels", help="List public parcels")
    parcels.add_argument("--filter", action="append", default=[], metavar="KEY=VALUE")

    my_parcels = commands.add_parser("my-parcels", help="List parcels owned by an account")
    my_parcels.add_argument("account", help="Ledger account, e.g. 0.0.12345")

    verify = commands.add_parser("verify", help="Poll the backend until a payment is confirmed")
    verify.add_argument("transaction_ref")
    verify.add_argument("account")
    verify.add_argument("amount", type=float, help="Expected amount in HBAR")

    tokenize = commands.add_parser("tokenize", help="Pay, register, upload documents and mint a parcel")
    tokenize.add_argument("parcel", help="Path to a JSON file with the parcel fields")
    tokenize.add_argument("documents", nargs="*", help="Supporting document files")
    tokenize.add_argument("--operation-id", default=None)
    tokenize.add_argument("--no-wait-verification", action="store_true")

    return parser


async def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    app_settings = AppSettings.from_env()
    storage_settings = StorageSettings.from_env()
    logger = setup_logger(app_settings.log_level)

    services = build_services(
        logger=logger,
        app_settings=app_settings,
        storage_settings=storage_settings,
    )

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def request_shutdown(sig: signal.Signals) -> None:
        log_event(
            logger,
            level="info",
            event="shutdown_signal_received",
            message="Shutdown signal received",
            signal=sig.name,
        )
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig)

    try:
        await bootstrap_dependencies(
            logger=logger,
            stop_event=stop_event,
            services=services,
            with_signer=args.command == "tokenize",
        )

        if args.command == "parcels":
            emit(await run_list_parcels(services, parse_filters(args.filter)))
        elif args.command == "my-parcels":
            emit(await run_my_parcels(services, args.account))
        elif args.command == "verify":
            outcome = await run_verify(
                services,
                transaction_ref=args.transaction_ref,
                account_ref=args.account,
                expected_amount=args.amount,
            )
            emit({"type": "verification", **outcome})
            return EXIT_OK if outcome["status"] == "verified" else EXIT_FAILED
        elif args.command == "tokenize":
            result = await run_tokenize(
                services,
                logger=logger,
                parcel_path=args.parcel,
                document_paths=args.documents,
                operation_id=args.operation_id,
                wait_for_verification=not args.no_wait_verification,
                emit=emit,
            )
            emit({"type": "result", **result})
        return EXIT_OK
    except CriticalPartialFailureError as error:
        emit({"type": "error", **error.to_dict()})
        return EXIT_PARTIAL_FAILURE
    except LandTokenError as error:
        emit({"type": "error", **error.to_dict()})
        return EXIT_FAILED
    finally:
        await close_services(services)
        log_event(logger, level="info", event="shutdown_completed", message="Shutdown completed")


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
