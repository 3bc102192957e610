"""Command-line entry point for the scheduled billing sweeps.

Meant for cron or a platform scheduler:

    billing-jobs process-intents [--order-id ID] [--provider CARD_NETWORK]
    billing-jobs renew
    billing-jobs expire
"""
import argparse
import json
import logging
import sys

from billing.config import configure_logging
from billing.database import SessionLocal
from billing.gateway import close_gateways, get_gateways
from billing.lifecycle import expire_cancelled_subscriptions
from billing.models import Provider
from billing.notifications import close_notifier, get_notifier
from billing.processor import process_due_intents, renew_due_subscriptions

logger = logging.getLogger(__name__)


def run(command: str, order_id: str = None, provider: Provider = None) -> dict:
    db = SessionLocal()
    try:
        gateways = get_gateways()
        notifier = get_notifier()
        if command == "process-intents":
            return process_due_intents(db, gateways, notifier, order_id=order_id,
                                       provider=provider).to_dict()
        if command == "renew":
            return renew_due_subscriptions(db, gateways, notifier).to_dict()
        if command == "expire":
            return {"expired": expire_cancelled_subscriptions(db, gateways)}
        raise ValueError(f"Unknown command: {command}")
    finally:
        db.close()
        close_gateways()
        close_notifier()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="billing-jobs", description="Run billing sweeps")
    commands = parser.add_subparsers(dest="command", required=True)

    process = commands.add_parser("process-intents", help="Activate due subscription intents")
    process.add_argument("--order-id", help="Only intents of this order")
    process.add_argument("--provider", choices=[p.value for p in Provider],
                         help="Only intents for this provider")

    commands.add_parser("renew", help="Charge due renewals for locally billed subscriptions")
    commands.add_parser("expire", help="Close subscriptions cancelled at period end")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    provider = Provider(args.provider) if getattr(args, "provider", None) else None
    result = run(args.command, order_id=getattr(args, "order_id", None), provider=provider)
    logger.info("billing-jobs %s finished", args.command)
    print(json.dumps(result, indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
