#!/usr/bin/env python3
"""Run the API with uvicorn.

Usage:
    python scripts/serve.py --host 0.0.0.0 --port 8000 [--reload]
"""
from __future__ import annotations

import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="Serve the pet consultation auth API")
    parser.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "8000")))
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    uvicorn.run(
        "petconsult.app:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_config=None,
    )


if __name__ == "__main__":
    main()
