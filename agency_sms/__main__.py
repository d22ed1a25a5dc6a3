"""
Run the webhook / cron API server.

Usage:
    python -m agency_sms --port 8000

Or with uvicorn directly:
    uvicorn agency_sms.main:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import argparse
from typing import List, Optional

import uvicorn

from agency_sms.config import env_int, env_str
from agency_sms.runtime import configure_logging, get_logger

logger = get_logger("agency_sms.server")

APP_PATH = "agency_sms.main:app"


def _parse_args(argv: Optional[List[str]] = None):
    p = argparse.ArgumentParser(description="Serve the SMS engine API.")
    p.add_argument("--host", default=env_str("HOST", "0.0.0.0"))
    p.add_argument("--port", type=int, default=env_int("PORT", 8000))
    p.add_argument("--reload", action="store_true", help="Reload on code changes (development only).")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = _parse_args(argv)
    configure_logging()
    logger.info("Starting API on %s:%s", args.host, args.port)
    uvicorn.run(APP_PATH, host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
