#!/usr/bin/env python3
"""
MOOSH wallet server runner - starts the HTTP adapter over the wallet core.

Usage:
    python run_server.py --config moosh.toml --port 3001

Environment variables (alternative to flags) are listed in
``moosh_core.config.load_config``.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import sys

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from moosh_core.api import APIServer  # noqa: E402
from moosh_core.balance import build_provider_chain  # noqa: E402
from moosh_core.config import load_config  # noqa: E402
from moosh_core.logging_config import setup_logging  # noqa: E402
from moosh_core.service import WalletService  # noqa: E402

logger = logging.getLogger("moosh_server")


def parse_args():
    p = argparse.ArgumentParser(description="MOOSH Wallet API server")
    p.add_argument("--config", default=None, help="Path to moosh.toml config file")
    p.add_argument("--host", default=None, help="Listen host")
    p.add_argument("--port", type=int, default=None, help="Listen port")
    p.add_argument("--log-level", default=None, help="DEBUG, INFO, WARNING, ERROR")
    return p.parse_args()


async def main():
    args = parse_args()

    # Load config (TOML + env overrides)
    cfg = load_config(args.config)

    # CLI flags override config
    if args.host:
        cfg.server.host = args.host
    if args.port:
        cfg.server.port = args.port
    if args.log_level:
        cfg.logging.level = args.log_level.upper()

    setup_logging(cfg.logging.level, cfg.logging.format, cfg.logging.file)

    service = WalletService(cfg.backup)
    api = APIServer(
        service,
        build_provider_chain(cfg.balance),
        host=cfg.server.host,
        port=cfg.server.port,
        server_config=cfg.server,
    )
    await api.start()
    logger.info("scrypt N=%d, batch size %d", cfg.backup.scrypt_n, cfg.backup.batch_size)

    try:
        while True:
            await asyncio.sleep(3600)
    except asyncio.CancelledError:
        pass
    finally:
        await api.stop()
        service.close()


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


if __name__ == "__main__":
    main_sync()
