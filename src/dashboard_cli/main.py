"""
Developer CLI for the dashboard client.

    dashboard-cli login --email me@example.com
    dashboard-cli status
    dashboard-cli fetch deals --filter stage=negotiation --page 2
    dashboard-cli show contracts 6650c1
    dashboard-cli logout
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

import colorlog
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from dashboard_client import ApiClient, ApiError, ClientConfig
from dashboard_client.data_store import DataStore
from dashboard_client.error_handler import mask_token
from dashboard_client.session import AuthSession
from dashboard_client.utils.paths import get_data_file

console = Console()

# Columns tried, in order, when rendering an entity list
PREFERRED_COLUMNS = ("title", "name", "brandName", "status", "stage", "amount", "createdAt")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Dashboard API client")
    parser.add_argument("--base-url", type=str, default=None, help="Override the API base URL.")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logs.")
    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Log in and store the issued tokens.")
    login.add_argument("--email", type=str, help="Account email (password login).")
    login.add_argument("--password", type=str, help="Prompted for when omitted.")
    login.add_argument("--phone", type=str, help="Phone number (OTP login).")
    login.add_argument("--otp", type=str, help="One-time code (OTP login).")

    sub.add_parser("logout", help="End the session and clear stored tokens.")
    sub.add_parser("status", help="Show stored credentials and the current profile.")

    fetch = sub.add_parser("fetch", help="List one page of a domain.")
    fetch.add_argument("domain", type=str)
    fetch.add_argument("--page", type=int, default=1)
    fetch.add_argument(
        "--filter",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Filter to apply; may be repeated.",
    )
    fetch.add_argument("--json", action="store_true", help="Print raw JSON.")

    show = sub.add_parser("show", help="Show a single entity.")
    show.add_argument("domain", type=str)
    show.add_argument("entity_id", type=str)

    sub.add_parser("refresh", help="Refetch every domain and aggregate.")
    return parser


def setup_logging(verbose: bool) -> None:
    handler = colorlog.StreamHandler(sys.stderr)
    handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )
    handler.setLevel(logging.DEBUG if verbose else logging.WARNING)
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(handler)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def parse_filters(pairs: List[str]) -> Dict[str, str]:
    filters = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid filter '{pair}', expected KEY=VALUE")
        filters[key.strip()] = value.strip()
    return filters


def render_entities(domain: str, entities: List[Dict[str, Any]], id_field: str) -> Table:
    table = Table(title=domain)
    columns = [id_field]
    for name in PREFERRED_COLUMNS:
        if any(name in entity for entity in entities):
            columns.append(name)
    for column in columns:
        table.add_column(column)
    for entity in entities:
        table.add_row(*[str(entity.get(column, "")) for column in columns])
    return table


async def run(args: argparse.Namespace) -> int:
    config = ClientConfig.from_env()
    if args.base_url:
        config.base_url = args.base_url

    session: Optional[AuthSession] = None

    def session_expired(error: Exception) -> None:
        if session is not None:
            session.on_session_expired(error)
        console.print("[yellow]Session expired. Please login again.[/yellow]")

    async with ApiClient(config, on_session_expired=session_expired) as client:
        store = DataStore(client)
        session = AuthSession(client, store)

        if args.command == "login":
            if args.phone:
                otp = args.otp or Prompt.ask("One-time code")
                data = await session.login_with_otp(args.phone, otp)
            else:
                email = args.email or Prompt.ask("Email")
                password = args.password or Prompt.ask("Password", password=True)
                data = await session.login(email, password)
            user = data.get("user") or {}
            console.print(
                f"[bold green]Logged in[/bold green] as {user.get('email') or user.get('fullName') or 'user'}"
            )
            return 0

        if args.command == "logout":
            await session.logout()
            console.print("[green]Logged out.[/green]")
            return 0

        if args.command == "status":
            credentials = client.credentials
            lines = [
                f"API: {config.base_url}",
                f"Access token: {mask_token(credentials.get_access())}",
                f"Refresh token: {mask_token(credentials.get_refresh())}",
            ]
            if await session.initialize():
                user = session.user or {}
                lines.append(f"User: {user.get('email') or user.get('fullName') or user}")
            else:
                lines.append("[yellow]Not logged in[/yellow]")
            console.print(Panel("\n".join(lines), title="--- Dashboard Session ---"))
            return 0

        if args.command == "fetch":
            cache = store.cache(args.domain)
            cache.entry.filters.update(parse_filters(args.filter))
            cache.entry.pagination.page = max(1, args.page)
            entities = await cache.fetch(force=True)
            if args.json:
                console.print_json(json.dumps(entities, default=str))
            else:
                console.print(render_entities(args.domain, entities, cache.config.id_field))
                pagination = cache.entry.pagination
                console.print(
                    f"page {pagination.page}, {len(entities)} of {pagination.total}"
                    + (" (more available)" if pagination.has_more else "")
                )
            return 0

        if args.command == "show":
            entity = await store.cache(args.domain).fetch_by_id(args.entity_id)
            console.print_json(json.dumps(entity, default=str))
            return 0

        if args.command == "refresh":
            outcome = await store.refresh_all()
            table = Table(title="Refresh")
            table.add_column("entry")
            table.add_column("result")
            for name, error in outcome.items():
                table.add_row(name, "[green]ok[/green]" if error is None else f"[red]{error}[/red]")
            console.print(table)
            return 1 if any(outcome.values()) else 0

    return 2


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv(get_data_file(".env"))
    setup_logging(args.verbose)

    try:
        return asyncio.run(run(args))
    except ApiError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 1
    except (KeyError, ValueError) as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        return 2
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
