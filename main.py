import argparse
import json
import logging
from pathlib import Path

from cardpoints.api.app import run as run_api
from cardpoints.config import settings
from cardpoints.domain.models import Transaction
from cardpoints.engine.service import build_engine


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CardPoints unified entrypoint")
    parser.add_argument(
        "mode",
        nargs="?",
        choices=["api", "backfill"],
        default="api",
        help="Run mode: api (default), backfill",
    )
    parser.add_argument("--user-id", help="User whose cap usage is rebuilt (backfill mode)")
    parser.add_argument("--transactions", help="JSON file with the user's transactions (backfill mode)")
    parser.add_argument("--rules", default=settings.rule_catalog_file, help="Rule catalog JSON file")
    return parser


def run_backfill(user_id: str, transactions_file: str, rules_file: str) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")

    with Path(transactions_file).open("r", encoding="utf-8") as fh:
        data = json.load(fh)
    transactions = [Transaction.model_validate(item) for item in data]

    engine = build_engine(rules_file, max_retries=settings.cap_conflict_max_retries)
    summary = engine.backfill(user_id, transactions)
    print(summary.model_dump_json(indent=2))
    for record in engine.cap_tracker.records_for_user(user_id):
        print(record.model_dump_json())


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    if args.mode == "api":
        run_api()
        return

    if not args.user_id or not args.transactions:
        parser.error("backfill mode requires --user-id and --transactions")
    run_backfill(args.user_id, args.transactions, args.rules)


if __name__ == "__main__":
    main()
