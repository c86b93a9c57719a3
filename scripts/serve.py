#!/usr/bin/env python3
"""Run the gateway under uvicorn, or validate its configuration.

Usage:
    # Serve with settings from the environment / .env:
    UPSTREAM_URL=https://flowise.example.com UPSTREAM_API_KEY=... python scripts/serve.py

    # Override bind address, enable auto-reload for development:
    python scripts/serve.py --host 127.0.0.1 --port 3001 --reload

    # Load the configuration, list tenants and exit:
    python scripts/serve.py --check

Environment Variables:
    UPSTREAM_URL, UPSTREAM_API_KEY: upstream chat service (or apiHost / flowiseApiKey in config.json)
    CONFIG_DIR: directory searched for prod.config.json, local.config.json, config.json
    HOST, PORT: default bind address (0.0.0.0:3001)
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def check_config() -> int:
    """Build the runtime once and print what would be served."""
    from flowgate.service.errors import ConfigurationError
    from flowgate.service.runtime import Runtime

    try:
        runtime = Runtime()
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}")
        return 1

    print(f"Config source: {runtime.gateway.source}")
    print(f"Upstream: {runtime.gateway.upstream_url}")
    for tenant in runtime.registry:
        flags = []
        if tenant.unreachable:
            flags.append("unreachable")
        if runtime.oauth_configs.find(tenant.identifier):
            flags.append("oauth")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        origins = ", ".join(sorted(tenant.allowed_origins)) or "-"
        print(f"  {tenant.identifier} -> {tenant.chatflow_id} ({origins}){suffix}")
    return 0


def main() -> None:
    from flowgate.config import get_settings

    settings = get_settings()
    parser = argparse.ArgumentParser(description="Run the chat widget gateway")
    parser.add_argument("--host", default=settings.host, help="Bind address")
    parser.add_argument("--port", type=int, default=settings.port, help="Bind port")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    parser.add_argument("--check", action="store_true", help="Validate configuration and exit")
    args = parser.parse_args()

    if args.check:
        sys.exit(check_config())

    import uvicorn

    uvicorn.run("flowgate.app:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
