#!/usr/bin/env python3
"""
Fly8 Sync CLI - Main Entry Point

Usage:
    fly8sync login --email admin@fly8.global   # Login (prompts for password)
    fly8sync logout                            # Forget the stored session
    fly8sync status                            # Show session status
    fly8sync watch                             # Live dashboard in the terminal
    fly8sync watch --once                      # Print one snapshot and exit
"""

import argparse
import asyncio
import sys
from datetime import datetime, timezone
from typing import Optional

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table

from fly8sync.config import SyncConfig
from fly8sync.dashboard import LiveDashboard
from fly8sync.exceptions import Fly8SyncError, describe_error
from fly8sync.logging_config import setup_logging
from fly8sync.session import SessionStore
from fly8sync.utils import format_time_ago
from fly8sync.views import NotificationView, OverviewView

console = Console()


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI"""
    parser = argparse.ArgumentParser(
        prog="fly8sync",
        description="Fly8 admin dashboard - live synchronization client",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fly8sync login --email admin@fly8.global    Login to the admin backend
  fly8sync status                             Check login status
  fly8sync watch                              Live overview, refreshed on every change
        """
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    login_parser = subparsers.add_parser("login", help="Login to the admin backend")
    login_parser.add_argument("--email", "-e", help="Admin email")
    login_parser.add_argument("--password", "-p", help="Password (prompted when omitted)")

    subparsers.add_parser("logout", help="Logout and forget the stored session")
    subparsers.add_parser("status", help="Show authentication status")

    watch_parser = subparsers.add_parser("watch", help="Live dashboard overview")
    watch_parser.add_argument("--once", action="store_true", help="Print one snapshot and exit")

    parser.add_argument("--config", type=str, help="Path to config file")
    parser.add_argument("--server-url", type=str, help="Backend URL (default: FLY8_API_URL or http://localhost:4000)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version="%(prog)s 1.0.0")

    return parser


def load_config(args: argparse.Namespace) -> SyncConfig:
    config = SyncConfig.load_default()
    if args.config:
        config.load_from_file(args.config)
    if args.server_url:
        config.api_base_url = args.server_url
        config.socket_url = args.server_url
    if args.verbose:
        config.log_level = "DEBUG"
    return config


# ============================================
# Commands
# ============================================

async def login(config: SyncConfig, email: Optional[str], password: Optional[str]) -> bool:
    email = email or Prompt.ask("Email")
    password = password or Prompt.ask("Password", password=True)

    async with LiveDashboard(config) as dashboard:
        try:
            admin = await dashboard.login(email, password)
        except Fly8SyncError as e:
            console.print(f"\n[red]✗ Login failed:[/red] {describe_error(e)}")
            return False

    name = " ".join(filter(None, [admin.get("firstName"), admin.get("lastName")])) or email
    console.print("\n[green]✓ Login successful![/green]")
    console.print(f"Welcome, [bold]{name}[/bold]!")
    return True


def show_status(config: SyncConfig, session: SessionStore) -> None:
    """Show current authentication status"""
    user = session.user or {}
    if session.is_authenticated():
        console.print(Panel(
            f"[green]Authenticated[/green]\n\n"
            f"[bold]User:[/bold] {user.get('firstName', '')} {user.get('lastName', '')}\n"
            f"[bold]Email:[/bold] {user.get('email', 'Not set')}\n"
            f"[bold]Role:[/bold] {user.get('role', 'admin')}\n"
            f"[bold]Backend:[/bold] {config.api_base_url}",
            title="Authentication Status",
            border_style="green"
        ))
    else:
        console.print(Panel(
            "[red]Not authenticated[/red]\n\n"
            "Please login using: [cyan]fly8sync login[/cyan]",
            title="Authentication Status",
            border_style="red"
        ))


def channel_status(channel) -> str:
    """Channel state for the footer, with the last connect error while offline"""
    if channel.last_error is not None and not channel.is_connected():
        return f"{channel.status.value} ({channel.last_error.message})"
    return channel.status.value


def render_overview(overview: OverviewView, bell: NotificationView, status: str) -> Group:
    now = datetime.now(timezone.utc)

    stats = Table(title="Overview", show_header=True, header_style="bold cyan")
    stats.add_column("Metric")
    stats.add_column("Value", justify="right")
    stats.add_row("Students", str(overview.student_stats.get("total", 0)))
    stats.add_row("Active students", str(overview.student_stats.get("active", 0)))
    stats.add_row("Unread messages", str(overview.unread_messages))
    stats.add_row("Appointments today", str(len(overview.today_appointments)))
    stats.add_row("Pending appointments", str(overview.appointment_stats.get("pending", 0)))
    stats.add_row("Unread notifications", str(bell.unread_count))

    conversations = Table(title="Recent conversations", show_header=True, header_style="bold")
    conversations.add_column("Student")
    conversations.add_column("Last message")
    conversations.add_column("When", justify="right")
    conversations.add_column("Unread", justify="right")
    for conversation in overview.recent_conversations():
        last = conversation.last_message
        conversations.add_row(
            conversation.counterpart.display_name if conversation.counterpart else "Unknown",
            (last.content[:40] if last else "No messages yet"),
            format_time_ago(now, last.created_at) if last else "N/A",
            str(conversation.unread_count) if conversation.unread_count else "",
        )

    footer = f"[dim]channel: {status}[/dim]"
    errors = overview.errors
    if errors:
        footer += "\n" + "\n".join(f"[yellow]{kind}: {message}[/yellow]" for kind, message in errors.items())
    return Group(stats, conversations, footer)


async def watch(config: SyncConfig, once: bool = False) -> int:
    async with LiveDashboard(config) as dashboard:
        if not await dashboard.restore():
            console.print("\n[red]✗ Authentication required[/red]")
            console.print("  [cyan]fly8sync login[/cyan]")
            return 1

        overview = dashboard.overview()
        bell = dashboard.header_notifications()
        async with overview, bell:
            if once:
                await overview.wait_ready()
                console.print(render_overview(overview, bell, channel_status(dashboard.channel)))
                return 0

            stopped = asyncio.Event()
            dashboard.add_forced_logout_listener(lambda reason: stopped.set())

            def render():
                return render_overview(overview, bell, channel_status(dashboard.channel))

            with Live(render(), console=console, refresh_per_second=4) as live:
                remove = dashboard.store.add_listener(lambda key, entry: live.update(render()))
                try:
                    await stopped.wait()
                finally:
                    remove()

            console.print("[yellow]Session ended by the server. Please login again.[/yellow]")
            return 1


def main():
    """Main entry point"""
    parser = create_parser()
    args = parser.parse_args()

    config = load_config(args)
    setup_logging(config.log_level, config.environment)

    if args.command == "login":
        success = asyncio.run(login(config, args.email, args.password))
        sys.exit(0 if success else 1)

    elif args.command == "logout":
        SessionStore(config.session_file).clear()
        console.print("[green]✓ Logged out[/green]")
        sys.exit(0)

    elif args.command == "status":
        show_status(config, SessionStore(config.session_file))
        sys.exit(0)

    elif args.command == "watch":
        try:
            sys.exit(asyncio.run(watch(config, once=args.once)))
        except KeyboardInterrupt:
            sys.exit(0)

    parser.print_help()
    sys.exit(1)


if __name__ == "__main__":
    main()
