#!/usr/bin/env python3
"""Recalculate and persist the threat count of every Redis subject"""

import asyncio
import sys

from aws_lambda_powertools import Logger
from config import create_redis_client
from services.subject_store import SubjectStore

LOG = Logger(serialize_stacktrace=False)


async def update_threat_counts() -> dict:
    redis_client = create_redis_client()
    try:
        summary = await SubjectStore(redis_client).refresh_threat_counts()
    finally:
        await redis_client.aclose()

    LOG.info(
        f"Updated: {summary['updated']}, skipped: {summary['skipped']}, errors: {summary['errors']}"
    )
    return summary


def main() -> int:
    summary = asyncio.run(update_threat_counts())
    return 1 if summary["errors"] else 0


if __name__ == "__main__":
    sys.exit(main())
