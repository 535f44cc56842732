"""Main CLI entry point."""

import asyncio
from typing import Any, Dict

from rich.console import Console
from rich.markup import escape

from inbox_watch.core.email.imap import IMAPEmailClient
from inbox_watch.core.email.matchers import DigitCodeMatcher, Matcher, RegexMatcher, UrlMatcher
from inbox_watch.utils.config_manager import ImapConfig, load_config
from inbox_watch.utils.errors import ErrorCategory, InboxWatchError, format_error_message
from inbox_watch.utils.logging import async_log_call, get_logger, init_logging

from .cli_parser import setup_argument_parser

logger = get_logger(__name__)

EXIT_MATCH = 0
EXIT_ERROR = 1
EXIT_NO_MATCH = 2
EXIT_INTERRUPTED = 130  # Standard SIGINT exit code

NO_MATCH_CATEGORIES = (ErrorCategory.NOT_FOUND, ErrorCategory.TIMEOUT)


def build_matcher(args) -> Matcher:
    """Create the matcher selected on the command line."""
    if args.digits is not None:
        return DigitCodeMatcher(args.digits)
    if args.url_domain:
        return UrlMatcher(args.url_domain)
    return RegexMatcher(args.regex)


def build_config(args) -> ImapConfig:
    """Load configuration from a file or the environment, then apply CLI overrides."""
    overrides: Dict[str, Any] = {}
    for field in ("email", "imap_host", "mailbox"):
        value = getattr(args, field, None)
        if value:
            overrides[field] = value

    if args.config:
        config = load_config(args.config, **overrides)
    else:
        config = ImapConfig.from_env(**overrides)

    polling = {}
    if getattr(args, "max_wait", None) is not None:
        polling["max_wait"] = args.max_wait
    if getattr(args, "interval", None) is not None:
        polling["interval"] = args.interval

    return config.with_polling(**polling) if polling else config


@async_log_call
async def run_command(args, console: Console, error_console: Console) -> int:
    """Connect, run the selected search and print the extracted value.

    The value goes to stdout; progress and errors go to stderr.

    Returns:
        Exit code
    """
    try:
        matcher = build_matcher(args)
        config = build_config(args)

        client = await IMAPEmailClient.connect(config)
        async with client.into_guard() as guard:
            if args.command == "wait":
                with error_console.status(
                    f"Waiting up to {config.polling.max_wait:g}s for {matcher.description}",
                    spinner="dots",
                ):
                    value = await guard.wait_for_match(matcher)
            else:
                value = await guard.find_recent_match(matcher, args.lookback)

    except InboxWatchError as e:
        logger.debug(f"{args.command} failed", extra={"error": e.to_dict()})
        if e.category in NO_MATCH_CATEGORIES:
            error_console.print(f"[yellow]{escape(format_error_message(e))}[/yellow]", highlight=False)
            return EXIT_NO_MATCH

        error_console.print(f"[red]Error: {escape(format_error_message(e))}[/red]", highlight=False)
        return EXIT_ERROR

    console.print(value, markup=False, highlight=False, soft_wrap=True)
    return EXIT_MATCH


def main() -> int:
    """Main CLI entry point.

    Returns:
        Exit code
    """
    console = Console()
    error_console = Console(stderr=True)

    try:
        parser = setup_argument_parser()
        args = parser.parse_args()
        init_logging().set_level(args.log_level)

        return asyncio.run(run_command(args, console, error_console))

    except KeyboardInterrupt:
        error_console.print("\n[yellow]Interrupted by user[/yellow]")
        return EXIT_INTERRUPTED

    except Exception as e:
        logger.error(f"Fatal error: {e}")
        error_console.print(f"[red]Fatal error: {escape(str(e))}[/red]")
        return EXIT_ERROR


if __name__ == "__main__":
    exit(main())
