import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from tqdm import tqdm

from .common.config import settings
from .common.logging_setup import setup_logging, mask_key
from .common.usage_ledger import UsageLedger
from services.trc20 import (
    AddressLoadError,
    CredentialPool,
    PoolError,
    QueryOrchestrator,
    export_results,
    load_addresses_from_file,
)


def _build_pool(args: argparse.Namespace) -> CredentialPool:
    """Pool from --keys and/or --api-key; empty when neither is given"""
    pool = CredentialPool(ledger=UsageLedger(args.ledger) if args.ledger else None)
    keys: List[str] = []
    if getattr(args, "keys", None):
        try:
            with open(args.keys, "r", encoding="utf-8-sig") as f:
                keys.extend(f.read().splitlines())
        except OSError as e:
            raise PoolError(f"Failed to read key file {args.keys}: {e}") from e
    if getattr(args, "api_key", None):
        keys.append(args.api_key)

    if keys:
        pool.load_from_source(keys)
    return pool


def cmd_query(args: argparse.Namespace) -> int:
    setup_logging()

    try:
        addresses = load_addresses_from_file(args.input)
    except AddressLoadError as e:
        logging.error(f"failed to load addresses: {e}")
        return 1

    try:
        pool = _build_pool(args)
    except PoolError as e:
        logging.error(f"failed to load API keys: {e}")
        return 1

    if pool.count == 0:
        logging.warning("no API key provided; every query will fail")

    logging.info(f"loaded {len(addresses)} addresses and {pool.count} API keys, starting queries")

    orchestrator = QueryOrchestrator(
        pool,
        base_url=args.node_url,
        requests_per_second=args.rate,
    )

    with tqdm(total=len(addresses), desc="Querying balances", unit="addr") as pbar:
        def on_progress(completed: int, total: int) -> None:
            pbar.update(completed - pbar.n)

        try:
            asyncio.run(orchestrator.run(addresses, args.concurrency, on_progress))
        except KeyboardInterrupt:
            orchestrator.cancel()
            logging.warning("interrupted; partial results will be exported")
        finally:
            pool.close()

    total, succeeded, failed = orchestrator.get_stats()
    logging.info({"total": total, "succeeded": succeeded, "failed": failed})

    if orchestrator.resume_index is not None:
        logging.info(
            f"{len(orchestrator.remaining_addresses())} addresses left from index "
            f"{orchestrator.resume_index}; resubmit them to resume"
        )

    try:
        path = export_results(orchestrator.get_results(), args.output)
    except OSError as e:
        logging.error(f"export failed: {e}")
        return 1

    logging.info(f"results exported to {path}")
    return 0


def cmd_keys_status(args: argparse.Namespace) -> int:
    setup_logging()
    try:
        pool = _build_pool(args)
    except PoolError as e:
        logging.error(f"failed to load API keys: {e}")
        return 1

    for status in pool.key_status():
        logging.info({
            "key": status.display_name,
            "value": mask_key(status.key),
            "used": status.used,
            "remaining": status.remaining,
            "enabled": status.enabled,
        })
    logging.info({"ledger": str(pool.ledger_path), "keys": pool.count})
    pool.close()
    return 0


def cmd_keys_prune(args: argparse.Namespace) -> int:
    setup_logging()
    try:
        pool = _build_pool(args)
    except PoolError as e:
        logging.error(f"failed to load API keys: {e}")
        return 1

    removed = pool.remove_by_usage_threshold(args.threshold)
    pool.close()

    Path(args.keys).write_text(
        "".join(f"{key}\n" for key in pool.keys()), encoding="utf-8"
    )
    logging.info(f"removed {removed} keys with usage >= {args.threshold}; {pool.count} remain")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("tron-balance")
    p.add_argument("--ledger", help="usage ledger path (default: next to the program)")
    sub = p.add_subparsers(dest="cmd", required=True)

    p_query = sub.add_parser("query")
    p_query.add_argument("--input", required=True, help="address file (TXT/CSV/XLSX)")
    p_query.add_argument("--output", default="results.csv", help="result file (CSV/XLSX)")
    p_query.add_argument("--keys", help="API key file, one key per line")
    p_query.add_argument("--api-key", help="single TronGrid API key")
    p_query.add_argument("--node-url", help="custom TRON node URL")
    p_query.add_argument("--rate", type=int, default=settings.requests_per_second,
                         help="requests per second per API key")
    p_query.add_argument("--concurrency", type=int, default=settings.max_concurrency,
                         help="worker count (1-50)")
    p_query.set_defaults(func=cmd_query)

    p_status = sub.add_parser("keys-status")
    p_status.add_argument("--keys", required=True)
    p_status.set_defaults(func=cmd_keys_status)

    p_prune = sub.add_parser("keys-prune")
    p_prune.add_argument("--keys", required=True)
    p_prune.add_argument("--threshold", type=int, required=True)
    p_prune.set_defaults(func=cmd_keys_prune)

    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
