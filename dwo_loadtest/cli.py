"""Command line entry point for the DevWorkspace Operator load test"""

import argparse
import asyncio
import sys

from .config import EXECUTOR_MODES, SCENARIOS, Config, ConfigError
from .console import ComponentLogger, setup_logging
from .loadtest import dwoLoadTestTools

EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def create_argument_parser():
    """Create and configure argument parser"""
    parser = argparse.ArgumentParser(
        description='DevWorkspace Operator Load Testing Tool',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Creates DevWorkspaces from concurrent virtual users, waits for each to become
Ready, samples operator and etcd pod metrics, then enforces pass/fail thresholds.

Environment Variables:
  KUBE_API, KUBE_TOKEN, IN_CLUSTER (default: false)
  LOAD_TEST_NAMESPACE (default: loadtest-devworkspaces)
  SEPARATE_NAMESPACES (default: false)
  DWO_NAMESPACE (default: openshift-operators)
  SCENARIO (default: controller)
  EXECUTOR_MODE (default: shared-iterations)
  MAX_VUS (default: 50)
  MAX_DEVWORKSPACES (default: -1, unlimited)
  TEST_DURATION_MINUTES (default: 180)
  DEV_WORKSPACE_READY_TIMEOUT_IN_SECONDS (default: 600)
  POLL_INTERVAL_SECONDS (default: 10)
  DELETE_DEVWORKSPACE_AFTER_READY (default: false)
  DEVWORKSPACE_LINK, CREATE_AUTOMOUNT_RESOURCES, RUN_BACKUP_TEST_HOOK
  LOAD_TEST_USERS_JSON (webhook scenario)
  SUMMARY_FILE, CSV_FILE, LOG_FILE, LOG_LEVEL

Exit codes:
  0 all thresholds passed, 1 a threshold was breached,
  2 invalid configuration, 3 setup failed, 130 interrupted

Examples:
  %(prog)s --max-vus 20 --max-devworkspaces 200
  %(prog)s --executor-mode ramping-vus --duration-minutes 30 --separate-namespaces
  %(prog)s --scenario webhook --ready-timeout 120 --poll-interval 5
        """
    )

    # Load shape
    parser.add_argument('--scenario', choices=SCENARIOS,
                        help='Load scenario to run')
    parser.add_argument('--executor-mode', choices=EXECUTOR_MODES,
                        help='Virtual user scheduling mode')
    parser.add_argument('--max-vus', type=int,
                        help='Maximum concurrent virtual users')
    parser.add_argument('--max-devworkspaces', type=int,
                        help='Total DevWorkspaces to create (-1 for unlimited)')
    parser.add_argument('--duration-minutes', type=float,
                        help='Total test duration in minutes')

    # DevWorkspace lifecycle
    parser.add_argument('--ready-timeout', type=int,
                        help='Seconds to wait for each DevWorkspace to become Ready')
    parser.add_argument('--poll-interval', type=int,
                        help='Seconds between status polls')
    parser.add_argument('--namespace',
                        help='Namespace for DevWorkspaces')
    parser.add_argument('--separate-namespaces', action='store_true',
                        help='Create every DevWorkspace in its own namespace')
    parser.add_argument('--delete-after-ready', action='store_true',
                        help='Delete each DevWorkspace once it reaches a terminal state')
    parser.add_argument('--devworkspace-link',
                        help='URL of a DevWorkspace manifest (JSON or YAML)')

    # Control options
    parser.add_argument('--no-cleanup', action='store_true',
                        help='Skip final cleanup so a backup test hook can run afterwards')
    parser.add_argument('--watch-events', action='store_true',
                        help='Stream namespace events into the log')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='Set logging level')
    parser.add_argument('--log-file',
                        help='Log file path')
    return parser


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Override config with command line arguments"""
    if args.scenario is not None:
        config.scenario = args.scenario
    if args.executor_mode is not None:
        config.executor_mode = args.executor_mode
    if args.max_vus is not None:
        config.max_vus = args.max_vus
    if args.max_devworkspaces is not None:
        config.max_devworkspaces = args.max_devworkspaces
    if args.duration_minutes is not None:
        config.test_duration_minutes = args.duration_minutes
    if args.ready_timeout is not None:
        config.ready_timeout = args.ready_timeout
    if args.poll_interval is not None:
        config.poll_interval = args.poll_interval
    if args.namespace is not None:
        config.load_test_namespace = args.namespace
    if args.separate_namespaces:
        config.use_separate_namespaces = True
    if args.delete_after_ready:
        config.delete_after_ready = True
    if args.devworkspace_link is not None:
        config.devworkspace_link = args.devworkspace_link
    if args.no_cleanup:
        config.run_backup_test_hook = True
    if args.watch_events:
        config.watch_events = True
    if args.log_level is not None:
        config.log_level = args.log_level
    if args.log_file is not None:
        config.log_file = args.log_file
    return config


async def main(argv=None) -> int:
    """Main execution function"""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    config = apply_overrides(Config(), args)
    setup_logging(config.log_level, config.log_file)
    console = ComponentLogger()

    try:
        tool = dwoLoadTestTools(config, console=console)
    except ConfigError as e:
        console.log_error(f"Invalid configuration: {e}", "MAIN")
        return EXIT_CONFIG_ERROR

    try:
        return await tool.run()
    except KeyboardInterrupt:
        console.log_warn("Test interrupted by user", "MAIN")
        return EXIT_INTERRUPTED
    except ConfigError as e:
        console.log_error(f"Invalid configuration: {e}", "MAIN")
        return EXIT_CONFIG_ERROR


def run():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(EXIT_INTERRUPTED)


if __name__ == '__main__':
    run()
