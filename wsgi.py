"""WSGI entry point for production deployment of the read-only API."""
import sys
import os
import logging
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).parent))

from config import load_config
from utils.logger import setup_logging
from monitor.pipeline import build_pipeline
from web.app import create_app

logger = logging.getLogger("opsmonitor.wsgi")

config = load_config(os.environ.get("OPS_MONITOR_CONFIG"))
setup_logging(config["logging"]["level"], config["logging"].get("file"))

pipeline = build_pipeline(config)
app = create_app(config, pipeline)

# Collection and notification workers run only when OPS_MONITOR_WORKERS is set
if os.environ.get("OPS_MONITOR_WORKERS", "").lower() in ("1", "true", "yes"):
    pipeline.start()
    logger.info("Background workers started inside the WSGI process")
