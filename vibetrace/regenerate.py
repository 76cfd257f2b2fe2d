"""
CLI entrypoint for the narrative regeneration job. Run after a translation outage, e.g.:

  python -m vibetrace.regenerate
  python -m vibetrace.regenerate --limit 100
"""

import argparse
import asyncio
import logging
import sys

from vibetrace.core.config import get_settings
from vibetrace.core.database import SessionLocal
from vibetrace.services.regenerate import regenerate_narratives
from vibetrace.services.scan_store import ScanStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Regenerate fallback or leaked narratives for persisted findings."""
    parser = argparse.ArgumentParser(description="Regenerate finding narratives.")
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of findings to process.")
    args = parser.parse_args(argv)

    settings = get_settings()
    if settings.ANTHROPIC_API_KEY is None:
        logger.error("ANTHROPIC_API_KEY is not set; nothing can be regenerated.")
        return 1
    store = ScanStore(SessionLocal)
    try:
        updated = asyncio.run(regenerate_narratives(store, settings, limit=args.limit))
        logger.info("Regeneration completed: findings_updated=%s", updated)
        return 0
    except Exception as e:
        logger.exception("Regeneration job failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
