#!/usr/bin/env python3
"""
PDPJ Auth CLI
=============
Acquire a PDPJ/PJe access token, or open a managed session and run an
authenticated action in it.

All configuration flows through ``ServiceConfig`` (environment / ``.env``).
Credentials come from flags, then ``PJE_USER`` / ``PJE_PASS``, then a prompt.

Run with: python -m pdpj_auth token
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# .env before logging so LOG_LEVEL can come from it
_env_path = Path.cwd() / ".env"
if _env_path.exists():
    load_dotenv(_env_path)

from .auth.base_auth import Credentials  # noqa: E402
from .auth.session_manager import SessionManager  # noqa: E402
from .auth.strategy_chain import AcquisitionChain  # noqa: E402
from .errors import AuthError  # noqa: E402
from .portal import search_process, validate_portal_access  # noqa: E402
from .run_config import ServiceConfig  # noqa: E402

logging.basicConfig(
    level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False, default=str))


def _resolve_credentials(args) -> Credentials:
    creds = Credentials(username=args.username or "", password=args.password or "")
    return creds.resolve(interactive=not args.no_prompt)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def _cmd_token(config: ServiceConfig, creds: Credentials) -> int:
    result = await AcquisitionChain(config).acquire(creds)
    _print_json(result.to_dict(include_diagnostics=config.expose_diagnostics))
    return 0 if result.success else 1


async def _cmd_session(config: ServiceConfig, creds: Credentials, process_number=None) -> int:
    async with SessionManager(config) as manager:
        created = await manager.create_session(creds.username, creds.password)
        _print_json(created)
        if not created["success"]:
            return 1

        session_id = created["sessionId"]
        exit_code = 0
        try:
            authorised = await manager.execute_in_session(
                session_id, lambda s: validate_portal_access(s, config)
            )
            print(f"\n  Portal access: {'OK' if authorised else 'DENIED'}")

            if process_number:
                record = await manager.execute_in_session(
                    session_id, lambda s: search_process(s, config, process_number)
                )
                _print_json(record.to_dict())
        except (AuthError, ValueError) as e:
            logger.error(f"[CLI] Session action failed: {e}")
            exit_code = 1

        _print_json(manager.stats())
        await manager.close_session(session_id)
        return exit_code


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def run_cli_with_args(argv=None) -> int:
    """Parse argv, build ServiceConfig, run one command."""
    parser = argparse.ArgumentParser(
        prog="python -m pdpj_auth",
        description="PDPJ / PJe token acquisition and session runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m pdpj_auth token                         # credentials from env or prompt
  python -m pdpj_auth token -u 12345678900
  python -m pdpj_auth session --process 0000001-23.2024.8.17.0001
  python -m pdpj_auth --show-config token
        """,
    )
    parser.add_argument("command", choices=["token", "session"], help="What to run")
    parser.add_argument("-u", "--username", help="PJe username (CPF)")
    parser.add_argument("-p", "--password", help="PJe password (prefer PJE_PASS)")
    parser.add_argument("--process", help="Process number to search (session command)")
    parser.add_argument("--env-file", help="Load settings from this .env file")
    parser.add_argument("--headed", action="store_true", help="Show the browser window")
    parser.add_argument("--no-prompt", action="store_true", help="Never prompt for credentials")
    parser.add_argument("--show-config", action="store_true", help="Log the effective config")

    args = parser.parse_args(argv)

    overrides = {"headless": False} if args.headed else {}
    try:
        config = ServiceConfig.from_env(env_file=args.env_file, **overrides)
    except ValueError as e:
        logger.error(f"[CLI] Invalid configuration: {e}")
        return 1
    if args.show_config:
        config.log_summary()

    creds = _resolve_credentials(args)
    if not creds.is_complete:
        logger.error("[CLI] Username and password are required")
        return 1

    if args.command == "token":
        return asyncio.run(_cmd_token(config, creds))
    return asyncio.run(_cmd_session(config, creds, args.process))


if __name__ == "__main__":
    sys.exit(run_cli_with_args())
