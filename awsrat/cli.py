"""Command line entry point and main menu loop."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from awsrat import __version__, profiles, ui
from awsrat.actions import ACTIONS, ACTIONS_BY_KEY, Action, build_actions
from awsrat.aws import AWSManager
from awsrat.config import Config, setup_logger
from awsrat.errors import RatError, SelectionCancelled, TunnelError
from awsrat.prereqs import check_prerequisites
from awsrat.tunnel import TunnelManager
from awsrat.ui import Colors, colored_text

EXIT_LABEL = "🚪 Exit"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='aws-rat',
        description=f'AWS Resource Access Tool v{__version__}: SSM shells, tunnels, ECS and CloudWatch',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
examples:
  %(prog)s                           # interactive mode
  %(prog)s -p myprofile              # use a specific profile
  %(prog)s -r eu-west-1              # use a specific region
  %(prog)s -a rds                    # jump straight to RDS port forwarding
  %(prog)s --ready-timeout 120       # wait longer for slow tunnels
'''
    )
    parser.add_argument('-p', '--profile', help='AWS profile name')
    parser.add_argument('-r', '--region', help='AWS region name')
    parser.add_argument('-a', '--action', choices=list(ACTIONS_BY_KEY), help='run one action before the menu')
    parser.add_argument('-d', '--debug', action='store_true', default=Config.DEBUG_MODE, help='debug logging')
    parser.add_argument('--ready-timeout', type=float, default=None,
                        help=f'seconds to wait for a tunnel to open (default {Config.READY_TIMEOUT:g})')
    parser.add_argument('--ssh-user', help=f'user for SSH via SSM (default {Config.SSH_USER})')
    parser.add_argument('-v', '--version', action='version', version=f'%(prog)s v{__version__}')
    return parser


def _print_waiting(attempt: int) -> None:
    print(colored_text("Waiting for tunnel setup to complete...", Colors.INFO))


def run_action(action: Action, manager: AWSManager, tunnels: TunnelManager) -> None:
    """Run one action, reporting failures instead of exiting."""
    try:
        action.run(manager, tunnels)
    except SelectionCancelled as e:
        logging.debug(f"{action.key}: {e}")
        if e.reason != "no selection made":
            ui.warn(f"⚠ {e.reason[:1].upper()}{e.reason[1:]}.")
    except TunnelError as e:
        logging.error(f"{action.key}: {e}")
        ui.error(f"❌ {e}")
    except RatError as e:
        ui.error(f"❌ {e}")
    except KeyboardInterrupt:
        print()
        ui.warn("Interrupted, back to the main menu.")


def menu_loop(manager: AWSManager, tunnels: TunnelManager, actions: Optional[List[Action]] = None) -> None:
    actions = actions or ACTIONS
    items = [a.label for a in actions] + [EXIT_LABEL]
    while True:
        title = f"Select a functionality  │  Profile: {manager.profile or '(env)'}  │  Region: {manager.region}"
        sel = ui.interactive_select(items, title=title)
        if sel == -1 or sel == len(actions):
            return
        run_action(actions[sel], manager, tunnels)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logger(args.debug)

    try:
        check_prerequisites()
        manager, region = profiles.resolve(args.profile, args.region)
    except SelectionCancelled as e:
        ui.error(f"❌ {e}")
        return 1
    except RatError as e:
        ui.error(str(e))
        return 1

    logging.info(f"aws-rat v{__version__} profile={manager.profile or '(env)'} region={region}")
    tunnels = TunnelManager(manager.profile, region, ready_timeout=args.ready_timeout,
                            on_wait=_print_waiting)

    actions = build_actions(ssh_user=args.ssh_user)
    if args.action:
        action = next(a for a in actions if a.key == args.action)
        run_action(action, manager, tunnels)
    menu_loop(manager, tunnels, actions)
    return 0


def run() -> None:
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print(colored_text("\n\nExiting at user request.", Colors.INFO))
        sys.exit(0)
    except Exception as e:
        logging.error(f"Unexpected error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == '__main__':
    run()
