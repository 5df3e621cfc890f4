#!/usr/bin/env python3
"""
Index initialization script for AI Proof Vault
Creates the vault table in the configured index backend (SQLite or PostgreSQL)
"""

import sys
from pathlib import Path

# Add the parent directory to Python path so we can import our modules
sys.path.append(str(Path(__file__).parent.parent))

import structlog

from proof_vault.config import load_settings
from proof_vault.core.database import build_index
from proof_vault.core.errors import IndexStorageError

# Configure basic logging for the script
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.dev.ConsoleRenderer()
    ],
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def main() -> int:
    settings = load_settings()
    index = build_index(settings)

    logger.info("Initializing proof index", backend=index.backend)
    try:
        index.initialize()
        logger.info("Proof index ready", backend=index.backend, entries=index.count())
    except IndexStorageError as e:
        logger.error("Index initialization failed", backend=index.backend, error=str(e))
        return 1
    finally:
        index.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
