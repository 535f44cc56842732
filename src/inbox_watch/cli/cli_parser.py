"""Argument parser configuration for the inbox-watch CLI"""

import argparse


## Argument Adding Utilities

def add_config_arguments(parser: argparse.ArgumentParser) -> None:
    """Add account and connection arguments to the parser."""

    config_group = parser.add_argument_group(
        "connection", "Override values from the environment or config file"
    )

    config_group.add_argument(
        "--config",
        help="JSON config file (default: read INBOX_WATCH_* environment variables)"
    )
    config_group.add_argument(
        "--email",
        help="Mailbox address"
    )
    config_group.add_argument(
        "--imap-host",
        help="IMAP server (default: discovered from the email domain)"
    )
    config_group.add_argument(
        "--mailbox",
        help="Mailbox to watch (default: INBOX)"
    )


def add_matcher_arguments(parser: argparse.ArgumentParser) -> None:
    """Add mutually exclusive matcher selection arguments."""

    matcher_group = parser.add_mutually_exclusive_group(required=True)

    matcher_group.add_argument(
        "--digits",
        type=int,
        metavar="N",
        help="Match a code of exactly N digits"
    )
    matcher_group.add_argument(
        "--url-domain",
        metavar="DOMAIN",
        help="Match the first link to DOMAIN or one of its subdomains"
    )
    matcher_group.add_argument(
        "--regex",
        metavar="PATTERN",
        help="Match a regular expression (first group if it has one)"
    )


## Parser Setup

def setup_argument_parser() -> argparse.ArgumentParser:
    """Configure and return the argument parser with all subcommands."""

    parser = argparse.ArgumentParser(
        prog="inbox-watch",
        description="Wait for verification emails and print the code or link they contain."
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level (default: WARNING)"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    wait_parser = subparsers.add_parser(
        "wait",
        help="Wait for a new matching email",
        description="Poll the mailbox until an email arriving after start-up matches"
    )
    add_config_arguments(wait_parser)
    add_matcher_arguments(wait_parser)
    wait_parser.add_argument(
        "--max-wait",
        type=float,
        help="Seconds to wait before giving up (default: 300)"
    )
    wait_parser.add_argument(
        "--interval",
        type=float,
        help="Seconds between mailbox checks (default: 2)"
    )

    recent_parser = subparsers.add_parser(
        "recent",
        help="Search recent emails once",
        description="Check emails received within the lookback window, newest first"
    )
    add_config_arguments(recent_parser)
    add_matcher_arguments(recent_parser)
    recent_parser.add_argument(
        "--lookback",
        type=float,
        default=300.0,
        help="Maximum email age in seconds (default: 300)"
    )

    return parser
