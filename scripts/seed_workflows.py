from __future__ import annotations

import argparse
import os
from typing import Any

from mail_relay.storage.postgres import PostgresRelayStorage

DEFAULT_WORKFLOWS: list[dict[str, Any]] = [
    {
        "name": "research",
        "execution_address": "relay-research@manus.bot",
        "description": "Conduct wide research based on the email content.",
        "instruction": (
            "Conduct wide research based on the email content. Follow any specific "
            "instructions about format, scope, or deliverables provided in the email. "
            "Otherwise, use your discretion."
        ),
        "credits_per_task": 10,
    },
    {
        "name": "summarize",
        "execution_address": "relay-summarize@manus.bot",
        "description": "Summarize the contents of the email.",
        "instruction": (
            "Summarize the contents of the email, which may also include external "
            "sources/links as well as attachments. Use discretion where not specified."
        ),
        "credits_per_task": 5,
    },
    {
        "name": "newsletter",
        "execution_address": "relay-newsletter@manus.bot",
        "description": "Gather information sources for the daily newsletter.",
        "instruction": (
            "Gather information sources for the daily newsletter and organize them "
            "into slides."
        ),
        "credits_per_task": 10,
    },
]


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create the relay schema and upsert the default workflows."
    )
    parser.add_argument(
        "--database-url",
        type=str,
        default=os.getenv("MAIL_RELAY_DATABASE_URL") or os.getenv("DATABASE_URL", ""),
        help="PostgreSQL connection URL (default: MAIL_RELAY_DATABASE_URL or DATABASE_URL).",
    )
    return parser.parse_args()


def seed(database_url: str) -> list[str]:
    storage = PostgresRelayStorage(database_url)
    storage.migrate()
    seeded: list[str] = []
    for workflow in DEFAULT_WORKFLOWS:
        record = storage.upsert_workflow(
            workflow["name"],
            credits_per_task=workflow["credits_per_task"],
            kind="native",
            visibility="public",
            execution_address=workflow["execution_address"],
            instruction=workflow["instruction"],
            description=workflow["description"],
        )
        seeded.append(record.name)
    return seeded


def main() -> None:
    args = _parse_args()
    if not args.database_url:
        raise SystemExit("A database URL is required (--database-url or MAIL_RELAY_DATABASE_URL).")
    for name in seed(args.database_url):
        print(f"Seeded workflow: {name}")


if __name__ == "__main__":
    main()
