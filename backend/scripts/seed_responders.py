"""
Seed the `ai_agents` table with the built-in responder prompts.

Runs in the backend environment: sets up paths and loads the project .env
before importing the tutor package. Existing rows are updated in place
(matched on `name`) unless --skip-existing is given.
"""

import argparse
import logging
import os
import sys
from pathlib import Path

backend_dir = Path(__file__).parent.parent
project_root = backend_dir.parent

sys.path.insert(0, str(backend_dir))
sys.path.insert(0, str(project_root / "multi_ai_tutor" / "src"))

os.chdir(str(project_root))

from dotenv import load_dotenv

env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)
else:
    load_dotenv(backend_dir / ".env")

from lib.logger import setup_logging, get_logger
from lib.supabase_client import get_supabase_client

from multi_ai_tutor.config import get_settings
from multi_ai_tutor.responders import DEFAULT_SYSTEM_PROMPTS, model_for

logger = get_logger("scripts.seed_responders")


def build_rows(status: str = "active"):
    settings = get_settings()
    return [
        {
            "name": responder.value,
            "system_prompt": prompt,
            "model_id": model_for(responder, settings),
            "status": status,
        }
        for responder, prompt in DEFAULT_SYSTEM_PROMPTS.items()
    ]


def seed(supabase, rows, skip_existing: bool = False, dry_run: bool = False) -> int:
    """
    Upsert responder rows.

    Returns:
        Number of rows written
    """
    existing = supabase.table("ai_agents").select("name").execute()
    existing_names = {row["name"] for row in (existing.data or [])}

    written = 0
    for row in rows:
        if skip_existing and row["name"] in existing_names:
            logger.info(f"⏭️ Skipping existing responder {row['name']}")
            continue
        if dry_run:
            logger.info(f"Would write {row['name']}", {"model": row["model_id"], "prompt_chars": len(row["system_prompt"])})
            continue
        supabase.table("ai_agents").upsert(row, on_conflict="name").execute()
        written += 1
        logger.success(f"Seeded {row['name']}", {"model": row["model_id"]})
    return written


if __name__ == "__main__":
    setup_logging(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Seed ai_agents with the built-in responder prompts")
    parser.add_argument("--skip-existing", action="store_true", help="Leave rows that already exist untouched")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be written")
    args = parser.parse_args()

    try:
        count = seed(get_supabase_client(), build_rows(), skip_existing=args.skip_existing, dry_run=args.dry_run)
    except Exception as e:
        logger.error("Seeding failed", error=e)
        sys.exit(1)

    logger.section("SEED COMPLETE", {"written": count})
