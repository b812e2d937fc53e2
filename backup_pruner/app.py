#!/usr/bin/python3

# Backup Pruner

import argparse
import os
import sys
from importlib import metadata
from logging.handlers import SysLogHandler

import requests
from backup_pruner import (
    DEFAULT_KEEP_LAST,
    DEFAULT_KEEP_MONTHS,
    DEFAULT_KEEP_YEARS,
    BackupPruner,
    PrunerError,
    Prune_Config,
    load_config_file,
    slack_notify,
)
from loguru import logger
from packaging.version import parse as parse_version

try:
    __package_name__ = metadata.metadata(__package__ or __name__)["Name"]
    __version__ = metadata.version(__package__ or __name__)
except Exception:
    __package_name__ = "N/A"
    __version__ = "N/A"


def setup_logging(args):
    # Setup logging with pretty colors
    logger.remove()
    logger.level("DEBUG", color="<magenta>")
    logger.level("INFO", color="<blue>")
    logger.level("WARNING", color="<yellow>")
    logger.level("ERROR", color="<red>")
    log_format = "<dim>{time:MM-DD-YYYY HH:mm:ss}</dim> <b><level>[{level}]</level></b> {message}"

    log_level = "INFO"
    if args.debug:
        log_level = "DEBUG"
    elif args.silent or args.print_deleted or args.print_preserved:
        log_level = "WARNING"

    # Keep stdout clean for the list of paths when printing them
    log_sink = sys.stderr if args.print_deleted or args.print_preserved else sys.stdout

    # Add terminal logging
    logger.add(
        log_sink,
        format=log_format,
        backtrace=True,
        colorize=True,
        level=log_level,
    )

    if args.syslog:
        # Add syslog logging
        linux_address = "/dev/log"
        darwin_address = "/var/run/syslog"
        if os.path.exists(linux_address):
            syslog_address = linux_address
        elif os.path.exists(darwin_address):
            syslog_address = darwin_address
        else:
            syslog_address = None
            logger.error("Cannot find a valid syslog address to use")

        if syslog_address:
            handler = SysLogHandler(address=syslog_address)
            handler.ident = "backup_pruner:"

            logger.add(handler, level="INFO", format="{message}")

    # Add file logging
    if args.log_file:
        logger.add(args.log_file, format=log_format, backtrace=True, level=log_level, colorize=False)


def check_for_update():
    # Query PyPI API to get the latest version
    url = f"https://pypi.org/pypi/{__package_name__}/json"
    response = requests.get(url, timeout=10)

    if response.status_code == 200:
        data = response.json()

        # Extract the latest version from the response
        latest_version = data["info"]["version"]

        # Compare the current version with the latest version
        if parse_version(latest_version) > parse_version(__version__):
            logger.opt(colors=True).info(
                f"<green>New version available!</green>\n\nCurrent version: <cyan>{__version__}</cyan>\nLatest version:"
                f" <cyan>{latest_version}</cyan>\n\nPlease update to the latest version at your convenience"
            )
    else:
        logger.error(f"Failed to retrieve package information from PyPI! URL: {url} - Code: {response.status_code}")


def main():
    options = vars(setup_options())
    backup_pruner = None

    try:
        if options.pop("check_update"):
            check_for_update()

        # Create our parameter config as the default retention policy
        config = Prune_Config(
            config_name="parameters",
            keep_last=options.pop("keep_last"),
            keep_months=options.pop("keep_months"),
            keep_years=options.pop("keep_years"),
            include_list=options.pop("include_list"),
            exclude_list=options.pop("exclude_list"),
        )

        # Remove syslog from options so it isn't sent to BackupPruner since it's only used here
        options.pop("syslog")

        backup_pruner = BackupPruner(config=config, **options)
        backup_pruner.prune_backups()
    except Exception as e:
        e = str(e)

        if backup_pruner:
            if backup_pruner.tabulate_rows and not backup_pruner.quiet:
                backup_pruner.print_tabulate()

            # If slack notify called this, don't call it again to avoid circular dependency
            if "Slack alert" not in e:
                try:
                    slack_notify(
                        webhook_url=backup_pruner.slack_webhook,
                        environment=backup_pruner.environment,
                        backup_path=backup_pruner.path,
                        backup_status="failure",
                        status_message=e,
                    )
                except Exception as slack_exception:
                    logger.error(slack_exception)

        if options["debug"]:
            logger.exception(e)
        else:
            logger.critical(e)

        sys.exit(1)


def setup_options():
    parser = argparse.ArgumentParser(formatter_class=argparse.ArgumentDefaultsHelpFormatter)

    parser.add_argument(
        "path",
        metavar="DIRECTORY",
        type=str,
        help="Directory containing the backup archives (named <target>-YYYYMMDD-HHMMSS.<ext>)",
    )
    parser.add_argument(
        "-c",
        "--config",
        dest="config_file",
        type=str,
        default="/etc/backup_pruner.ini",
        help="Location of the config file",
    )
    parser.add_argument(
        "-e",
        "--environment",
        type=str,
        default="",
        help="Environment the backups are pruned in (used for Slack alert only)",
    )
    parser.add_argument(
        "-l",
        "--log-file",
        type=str,
        default="",
        help="Enable logging to this file path",
    )
    parser.add_argument(
        "-I",
        "--include",
        dest="include_list",
        type=str,
        default="",
        help="Only prune backups whose filename matches these patterns (separated by comma)",
    )
    parser.add_argument(
        "-E",
        "--exclude",
        dest="exclude_list",
        type=str,
        default="",
        help="Never prune backups whose filename matches these patterns (separated by comma)",
    )
    parser.add_argument(
        "--slack-webhook",
        type=str,
        default="",
        help="Slack webhook URL to send notifications to",
    )
    parser.add_argument(
        "--stale-hours",
        type=int,
        default=24,
        help="Warn when a target's most recent backup is older than this many hours (0 disables)",
    )
    parser.add_argument(
        "--check-update",
        action="store_true",
        help="Check PyPI for a newer release",
    )
    parser.add_argument(
        "--syslog",
        dest="syslog",
        action="store_true",
        help="Use syslog",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log debug messages that can help troubleshoot",
    )
    parser.add_argument(
        "--silent",
        action="store_true",
        help="Only log warnings and errors and don't print tables",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be deleted without deleting anything",
    )
    print_group = parser.add_mutually_exclusive_group()
    print_group.add_argument(
        "--print-deleted",
        action="store_true",
        help="Only print the paths of the backups selected for deletion",
    )
    print_group.add_argument(
        "--print-preserved",
        action="store_true",
        help="Only print the paths of the backups that are preserved",
    )
    parser.add_argument("-V", "--version", action="version", version=__version__, help="Display version and exit")

    retention_group = parser.add_argument_group("Retention options")
    retention_options = [
        ("keep-last", "Number of most recent backups to always preserve", DEFAULT_KEEP_LAST),
        ("keep-months", "Number of previous months in the current year to preserve", DEFAULT_KEEP_MONTHS),
        ("keep-years", "Number of years to preserve (current year included)", DEFAULT_KEEP_YEARS),
    ]
    for option_name, option_help, option_default in retention_options:
        retention_group.add_argument(
            f"--{option_name}",
            type=str,
            default=option_default,
            help=option_help,
        )

    args = parser.parse_args()

    setup_logging(args)

    if os.path.isfile(args.config_file):
        try:
            main_config = load_config_file(configuration_file=args.config_file, app_config=True)
        except PrunerError as e:
            logger.critical(e)
            sys.exit(1)

        # Config file values only apply where a parameter was left at its default
        for option, value in main_config.items():
            if getattr(args, option, None) == parser.get_default(option):
                setattr(args, option, value)

    if not os.path.isdir(args.path):
        logger.critical(f"Path '{args.path}' is not a directory")
        sys.exit(1)

    # Overwrite args variable with environment variable if specified
    value = os.environ.get("SLACK_WEBHOOK")
    if value:
        args.slack_webhook = value
        logger.info("Using environment variable: SLACK_WEBHOOK")

    # Enable syslog and file logging if the config file specified them
    setup_logging(args)

    return args


if __name__ == "__main__":
    main()
