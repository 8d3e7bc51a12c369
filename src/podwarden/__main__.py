"""Entry point for `python -m podwarden` / `podwarden`.

Subcommands:
    podwarden run FOLDER --prompt TEXT   Run one sandbox and print its output
    podwarden prewarm                    Pre-warm the container image
    podwarden auth-status                Show the OAuth/fallback state
    podwarden allowlist-template         Print an example mount allowlist
"""

from __future__ import annotations

import argparse
import asyncio
import json
import math
import sys
from dataclasses import asdict


def _run(args: argparse.Namespace) -> int:
    from podwarden.container_runner import run_container_agent
    from podwarden.types import ContainerInput, ContainerOutput, RegisteredGroup

    group = RegisteredGroup(
        jid=args.chat_jid,
        name=args.name or args.folder,
        folder=args.folder,
    )
    input_data = ContainerInput(
        prompt=args.prompt,
        group_folder=args.folder,
        chat_jid=args.chat_jid,
        is_main=args.main,
        session_id=args.session,
    )

    async def _print_output(output: ContainerOutput) -> None:
        print(json.dumps({"event": "output", **asdict(output)}), flush=True)

    on_output = None if args.legacy else _print_output
    result = asyncio.run(
        run_container_agent(group, input_data, on_process=lambda p, n: None, on_output=on_output)
    )
    print(json.dumps({"event": "result", **asdict(result)}), flush=True)
    return 0 if result.status == "success" else 1


def _prewarm() -> int:
    from podwarden.container_runner import prewarm_container

    return 0 if asyncio.run(prewarm_container()) else 1


def _auth_status() -> int:
    from podwarden.auth.fallback import default_store, now_ms

    store = default_store()
    state = store.read()
    now = now_ms()
    if state.in_window(now, store.duration_ms):
        minutes = math.ceil(state.remaining_ms(now, store.duration_ms) / 60000)
        print(f"fallback (prepaid API key), OAuth retried in {minutes} min")
    else:
        print("oauth")
    return 0


def _allowlist_template() -> int:
    from podwarden.config import get_settings
    from podwarden.mount_security import generate_allowlist_template

    print(f"# Save as {get_settings().mount_allowlist_path}", file=sys.stderr)
    print(generate_allowlist_template())
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="podwarden",
        description="Sandboxed agent container orchestrator",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one sandbox for a group folder")
    run.add_argument("folder", help="Group folder under groups/")
    run.add_argument("--prompt", required=True, help="Prompt passed to the agent")
    run.add_argument("--name", help="Group display name (default: folder)")
    run.add_argument("--main", action="store_true", help="Run with main-group privileges")
    run.add_argument("--session", help="Resume this agent session id")
    run.add_argument("--chat-jid", default="cli", help="Chat id forwarded to the agent")
    run.add_argument(
        "--legacy", action="store_true", help="Parse the final result instead of streaming"
    )

    sub.add_parser("prewarm", help="Pre-warm the container image")
    sub.add_parser("auth-status", help="Show whether runs use OAuth or the fallback key")
    sub.add_parser("allowlist-template", help="Print an example mount allowlist")

    args = parser.parse_args()

    match args.command:
        case "run":
            code = _run(args)
        case "prewarm":
            code = _prewarm()
        case "auth-status":
            code = _auth_status()
        case "allowlist-template":
            code = _allowlist_template()
        case _:
            parser.error(f"unknown command {args.command}")
    sys.exit(code)


if __name__ == "__main__":
    main()
