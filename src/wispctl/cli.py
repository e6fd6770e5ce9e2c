"""
wispctl command line.

Exit codes: 0 success, 1 failure, 2 usage error, 130 interrupted.
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .cleanup import CleanupMode, CleanupOptions
from .console import configure_logging, error, warn
from .deploy import DeploymentOrchestrator, SetupOptions
from .errors import WispctlError
from .health import print_snapshot
from .settings import dump_config, load_config

logger = logging.getLogger(__name__)


def parse_arguments(argv: Optional[list] = None) -> argparse.Namespace:
    """
    Parse command-line arguments for wispctl.

    Without a mode flag the forward pipeline (setup) runs.
    """
    parser = argparse.ArgumentParser(
        prog='wispctl',
        description='wispctl: OpenWISP container stack deployment',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Validate, configure, build, start and wait for the stack
  %(prog)s setup

  # Rebuild every image from scratch, don't wait for readiness
  %(prog)s setup --force --no-wait

  # Non-interactive setup with explicit domains
  %(prog)s setup -y --dashboard-domain dash.example.com --api-domain api.example.com

  # Exit 0 only when every service is running
  %(prog)s --health-check

  # Remove containers, images and networks (asks about volumes)
  %(prog)s --cleanup
        '''
    )

    parser.add_argument(
        'command',
        nargs='?',
        choices=['setup'],
        help='Run the deployment pipeline (default when no mode flag is given)'
    )

    modes = parser.add_mutually_exclusive_group()
    modes.add_argument('--health-check', action='store_true',
                       help='Exit 0 when every service is running, 1 otherwise')
    modes.add_argument('--status', action='store_true',
                       help='Print service status and resource usage')
    modes.add_argument('--cleanup', action='store_true',
                       help='Interactive cleanup of containers, images and networks')
    modes.add_argument('--cleanup-all', action='store_true',
                       help='Remove everything including volumes (no prompt; DESTROYS DATA)')
    modes.add_argument('--cleanup-images', action='store_true',
                       help='Remove project images and dangling images')
    modes.add_argument('--print-config', action='store_true',
                       help='Print the merged deployment configuration as TOML')

    setup_group = parser.add_argument_group('Setup options')
    setup_group.add_argument('--force', action='store_true',
                             help='Remove existing images and rebuild without cache')
    setup_group.add_argument('--no-wait', action='store_true',
                             help='Skip readiness checks after start')
    setup_group.add_argument('--dashboard-domain', metavar='DOMAIN',
                             help='Dashboard domain for a newly generated .env')
    setup_group.add_argument('--api-domain', metavar='DOMAIN',
                             help='API domain for a newly generated .env')
    setup_group.add_argument('--admin-email', metavar='EMAIL',
                             help='Admin email for a newly generated .env')

    parser.add_argument(
        '-d', '--dir',
        type=Path,
        default=Path.cwd(),
        metavar='PATH',
        help='Deployment directory containing docker-compose.yml (default: current directory)'
    )
    parser.add_argument(
        '-c', '--config',
        type=Path,
        default=None,
        metavar='FILE',
        help='Project configuration file (default: <dir>/wispctl.toml if present)'
    )
    parser.add_argument(
        '-y', '--yes',
        action='store_true',
        help='Non-interactive mode (use defaults for prompts)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        type=str.upper,
        default=None,
        help='Logging level (default: deploy.log_level from configuration)'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    args = parser.parse_args(argv)

    other_mode = args.health_check or args.status or args.cleanup or args.cleanup_all \
        or args.cleanup_images or args.print_config
    if args.command == 'setup' and other_mode:
        parser.error("'setup' cannot be combined with a mode flag")
    if other_mode and (args.force or args.no_wait):
        parser.error("--force and --no-wait only apply to setup")
    return args


def cleanup_mode(args: argparse.Namespace) -> Optional[CleanupMode]:
    if args.cleanup:
        return CleanupMode.INTERACTIVE
    if args.cleanup_all:
        return CleanupMode.ALL
    if args.cleanup_images:
        return CleanupMode.IMAGES
    return None


def main(argv: Optional[list] = None) -> int:
    args = parse_arguments(argv)
    configure_logging(args.log_level or "INFO")

    try:
        config = load_config(args.dir, args.config)
        if not args.log_level:
            configure_logging(config.section("deploy").get("log_level", "INFO"))

        if args.print_config:
            print(dump_config(config), end="")
            return 0

        orchestrator = DeploymentOrchestrator(config)

        if args.status:
            print_snapshot(orchestrator.health())
            return 0

        if args.health_check:
            snapshot = orchestrator.health()
            print_snapshot(snapshot)
            return 0 if snapshot.healthy else 1

        mode = cleanup_mode(args)
        if mode is not None:
            report = orchestrator.run_cleanup(CleanupOptions(mode=mode, assume_yes=args.yes))
            return 0 if report is None or report.ok else 1

        options = SetupOptions(
            force=args.force,
            no_wait=args.no_wait,
            interactive=not args.yes and sys.stdin.isatty(),
            domains={
                'DASHBOARD_DOMAIN': args.dashboard_domain,
                'API_DOMAIN': args.api_domain,
                'EMAIL_DJANGO_DEFAULT': args.admin_email,
            },
        )
        orchestrator.run_setup(options)
        return 0
    except WispctlError as e:
        error(f"[{e.stage}] {e}")
        return 1


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(f"signal {signum}")


def run() -> None:
    """Console script entry point."""
    signal.signal(signal.SIGTERM, _raise_interrupt)
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        warn("Interrupted")
        sys.exit(130)


if __name__ == '__main__':
    run()
