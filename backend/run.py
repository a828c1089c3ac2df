"""
Start the CRM automation API with uvicorn.

The server process also runs the drip and flow-resume scheduler unless
SCHEDULER_ENABLED=false or --no-scheduler is given.

Usage:
    python run.py
    python run.py --reload          # Auto-reload while developing
    python run.py --no-scheduler    # API only; another process drives drips and resumes
"""
import argparse
import os

import uvicorn

from crm_automation.config.settings import settings
from crm_automation.utils.logger import setup_logging, get_logger

logger = get_logger("crm_automation.run")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the CRM automation engine")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Restart on code changes")
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Worker processes; forced to 1 with --reload"
    )
    parser.add_argument(
        "--no-scheduler",
        action="store_true",
        help="Serve the API without polling due drip runs and waiting flow instances"
    )
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    workers = 1 if args.reload else args.workers

    if args.no_scheduler:
        # Reload and worker processes re-read settings from the environment
        os.environ["SCHEDULER_ENABLED"] = "false"
        settings.scheduler_enabled = False

    setup_logging()
    scheduler_state = "on" if settings.scheduler_enabled else "off"
    logger.info(
        f"Starting CRM automation engine on http://{args.host}:{args.port} "
        f"(environment={settings.environment}, db={settings.mongo_db}, scheduler={scheduler_state}, "
        f"workers={workers}, reload={args.reload})"
    )
    if settings.scheduler_enabled:
        logger.info(
            f"Scheduler polls drips every {settings.drip_poll_interval_seconds}s "
            f"and flow resumes every {settings.flow_resume_interval_seconds}s"
        )
        if workers > 1:
            logger.info(f"Each of the {workers} workers runs its own scheduler; drip runs are leased per worker")

    uvicorn.run(
        "crm_automation.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=workers
    )


if __name__ == "__main__":
    main()
