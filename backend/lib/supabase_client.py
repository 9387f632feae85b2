"""
Supabase client for the tutor backend.
"""
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, create_client

load_dotenv()
load_dotenv('../.env')

logger = logging.getLogger(__name__)

_supabase_client: Optional[Client] = None


def supabase_configured() -> bool:
    return bool(os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_KEY"))


def get_supabase_client() -> Client:
    """
    Get or create the Supabase client singleton.

    The service-role key is used because the tutor writes evidence, logs and
    profile updates on the learner's behalf.
    """
    global _supabase_client

    if _supabase_client is None:
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_SERVICE_KEY")
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment")

        _supabase_client = create_client(url, key)
        logger.info("✅ [Supabase] Client created")

    return _supabase_client
