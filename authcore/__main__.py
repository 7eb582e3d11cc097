"""Serve the auth API with uvicorn.

Usage:
    python -m authcore [--host 0.0.0.0] [--port 8000] [--reload]

Host and port default to BIND_HOST / BIND_PORT from the environment or `.env`.
"""
from __future__ import annotations

import argparse
from typing import Optional, Sequence

import uvicorn

from authcore.config import get_settings


def main(argv: Optional[Sequence[str]] = None) -> int:
    settings = get_settings()
    parser = argparse.ArgumentParser(prog="authcore", description=__doc__.splitlines()[0])
    parser.add_argument("--host", default=settings.bind_host)
    parser.add_argument("--port", type=int, default=settings.bind_port)
    parser.add_argument("--reload", action="store_true", help="Restart on code changes (development)")
    args = parser.parse_args(argv)

    uvicorn.run(
        "authcore.app:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        proxy_headers=settings.trust_proxy_headers,
        # structlog already renders request-scoped events
        access_log=False,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
