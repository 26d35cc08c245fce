"""Main menu actions.

Every action takes the ``AWSManager`` bound to the selected profile/region
and the shared ``TunnelManager``. Going back out of any selection raises
``SelectionCancelled`` and the main loop returns to the menu.
"""
from __future__ import annotations

import functools
import logging
import subprocess
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, List, NamedTuple, Optional

from awsrat import commands, ui
from awsrat.aws import AWSManager
from awsrat.config import Config
from awsrat.errors import DeploymentFailed, RatError, SelectionCancelled
from awsrat.tunnel import Consumer, TunnelManager, TunnelRequest
from awsrat.ui import Colors, colored_text


def _run_interactive(cmd: List[str]) -> int:
    """Run an AWS CLI session in the foreground. Ctrl-C ends it, not the tool."""
    logging.debug(f"Running: {commands.format_cmd(cmd)}")
    try:
        return subprocess.run(cmd).returncode
    except KeyboardInterrupt:
        print()
        ui.warn("Session interrupted.")
        return 130
    except OSError as e:
        raise RatError(f"Could not run {cmd[0]}: {e}") from e


def _fmt_time(value) -> str:
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d %H:%M:%S')
    if isinstance(value, (int, float)) and value:
        return datetime.fromtimestamp(value / 1000).strftime('%Y-%m-%d %H:%M:%S')
    return str(value or '')


def pick_instance(manager: AWSManager, title: str) -> Dict:
    ui.info("Fetching EC2 instances...")
    instances = manager.list_instances()
    if not instances:
        raise SelectionCancelled("EC2 instance", "no running EC2 instances found")
    return ui.select_one(instances, lambda i: f"{i['Id']:<20} {i['Name']}", title, "EC2 instance")


def _forward_until_enter(tunnels: TunnelManager, request: TunnelRequest, label: str) -> None:
    ui.info(f"Setting up port forwarding to {label} via {request.target}")
    with tunnels.open(request) as session:
        ready = colored_text("Tunnel ready:", Colors.HIGHLIGHT)
        address = colored_text(f"localhost:{session.local_port}", Colors.SUCCESS)
        print(f"{ready} You can now access {label} on {address}")
        tunnels.run_foreground(session, Consumer.acknowledge(
            colored_text("Press Enter to close the tunnel...", Colors.PROMPT)))
    ui.success("SSM port forwarding session terminated.")


# ----------------------------------------------------------------------------
# EC2
# ----------------------------------------------------------------------------
def connect_to_ec2(manager: AWSManager, tunnels: TunnelManager) -> None:
    instance = pick_instance(manager, "Available EC2 instances")
    ui.info(f"Starting SSM session to EC2 instance: {instance['Id']}")
    _run_interactive(commands.ssm_shell_cmd(manager.profile, manager.region, instance['Id']))


def ssh_via_ssm(manager: AWSManager, tunnels: TunnelManager, ssh_user: Optional[str] = None) -> None:
    instance = pick_instance(manager, "Available EC2 instances for SSH connection")
    request = TunnelRequest(instance['Id'], Config.SSH_REMOTE_PORT)
    user = ssh_user or Config.SSH_USER

    ui.info(f"Setting up port forwarding and initiating SSH session to EC2 instance: {instance['Id']}")
    with tunnels.open(request) as session:
        port = session.local_port
        ready = colored_text("Tunnel ready:", Colors.HIGHLIGHT)
        print(f"{ready} You can now access {instance['Id']} SSH port on "
              f"{colored_text(f'localhost:{port}', Colors.SUCCESS)}")
        for example in (f"sftp -P {port} {user}@localhost",
                        f"scp  -P {port} {user}@localhost:/etc/shells /tmp/test",
                        f"ssh -p {port} {user}@localhost"):
            print(f"e.g.: {colored_text(example, Colors.HIGHLIGHT)}")
        code = tunnels.run_foreground(session, Consumer.client(commands.ssh_client_cmd(user)))
        if code:
            logging.info(f"ssh exited with code {code}")
    ui.success("SSM port forwarding session terminated.")


# ----------------------------------------------------------------------------
# Port forwarding to remote hosts
# ----------------------------------------------------------------------------
def alb_port_forward(manager: AWSManager, tunnels: TunnelManager) -> None:
    ui.info("Fetching available ALBs...")
    lbs = manager.list_load_balancers()
    if not lbs:
        raise SelectionCancelled("load balancer", "no load balancers found")
    lb = ui.select_one(lbs, lambda lb: f"{lb['DNSName']}  ({lb['Type']}, {lb['Scheme']})",
                       "Available ALBs", "load balancer")
    ui.info(f"Selected DNS Name: {lb['DNSName']}")
    ui.info(f"Selected ARN: {lb['Arn']}")

    ui.info(f"Fetching listening ports for {lb['DNSName']}...")
    ports = manager.list_listener_ports(lb['Arn'])
    if not ports:
        raise SelectionCancelled("listener port", f"no listeners found for {lb['DNSName']}")
    port = ui.select_one(ports, str, f"Available listening ports on {lb['DNSName']}", "listener port")

    instance = pick_instance(manager, "Available EC2 instances for port forwarding")
    request = TunnelRequest(instance['Id'], port, remote_host=lb['DNSName'])
    _forward_until_enter(tunnels, request, f"{lb['DNSName']}:{port}")


def rds_port_forward(manager: AWSManager, tunnels: TunnelManager) -> None:
    ui.info("Fetching available RDS instances...")
    dbs = manager.list_db_instances()
    if not dbs:
        raise SelectionCancelled("RDS instance", "no RDS instances found")
    db = ui.select_one(dbs, lambda d: f"{d['Id']:<40} {d['Engine']:<18} {d['Endpoint']}:{d['Port']}",
                       "Available RDS instances", "RDS instance")
    ui.info(f"Selected RDS Instance: {db['Id']}")
    ui.info(f"Endpoint: {db['Endpoint']}")
    ui.info(f"Port: {db['Port']}")

    instance = pick_instance(manager, "Available EC2 instances for port forwarding")
    ui.info(f"Selected EC2 instance for tunneling: {instance['Id']}")
    request = TunnelRequest(instance['Id'], db['Port'], remote_host=db['Endpoint'])
    _forward_until_enter(tunnels, request, f"RDS {db['Id']}")


# ----------------------------------------------------------------------------
# ECS
# ----------------------------------------------------------------------------
def connect_to_container(manager: AWSManager, tunnels: TunnelManager) -> None:
    ui.info("Fetching ECS containers...")
    containers = manager.list_containers()
    if not containers:
        raise SelectionCancelled("container", "no containers found in ECS clusters")
    container = ui.select_one(
        containers,
        lambda c: f"{c['Service']}:{c['Container']}:{c['InstanceId']}",
        "Available containers", "container")
    ui.info(f"Connecting to container {container['RuntimeId']} on instance {container['InstanceId']}")
    _run_interactive(commands.docker_exec_cmd(
        manager.profile, manager.region, container['InstanceId'], container['RuntimeId']))


def _print_service_status(status: Dict) -> Optional[Dict]:
    primary = next((d for d in status['deployments'] if d.get('status') == 'PRIMARY'), None)
    print(colored_text("Deployment status:", Colors.HEADER))
    if primary:
        state = primary.get('rolloutState', 'UNKNOWN')
        print(f"  {primary.get('id', '')} {primary.get('desiredCount', 0)}/{primary.get('runningCount', 0)} "
              f"{colored_text(state, ui.get_status_color(state))}")
    else:
        print("  (no primary deployment)")
    print(colored_text("Recent events:", Colors.HEADER))
    for event in status['events']:
        print(f"  {_fmt_time(event.get('createdAt'))}: {event.get('message', '')}")
    return primary


def wait_for_service(
    manager: AWSManager,
    cluster: str,
    service: str,
    poll_interval: Optional[float] = None,
    timeout: Optional[float] = None,
) -> Dict:
    """Poll until the PRIMARY deployment's rollout completes.

    Raises ``DeploymentFailed`` when the rollout fails or ``timeout`` passes.
    """
    poll_interval = Config.SERVICE_POLL_INTERVAL if poll_interval is None else poll_interval
    timeout = Config.SERVICE_STABLE_TIMEOUT if timeout is None else timeout
    deadline = time.monotonic() + timeout

    ui.info(f"Polling for service {service} status...")
    while True:
        primary = _print_service_status(manager.service_status(cluster, service))
        state = (primary or {}).get('rolloutState', '')
        if state == 'COMPLETED':
            ui.success(f"Service {service} has stabilized.")
            return primary
        if state == 'FAILED':
            reason = primary.get('rolloutStateReason', '')
            raise DeploymentFailed(f"Deployment of {service} failed: {reason}")
        if time.monotonic() + poll_interval > deadline:
            raise DeploymentFailed(f"Service {service} did not stabilize within {timeout:g}s")
        ui.info(f"Waiting for {poll_interval:g} seconds before polling again...")
        time.sleep(poll_interval)


def restart_ecs_service(manager: AWSManager, tunnels: TunnelManager) -> None:
    ui.info("Fetching ECS services...")
    services = manager.list_services()
    if not services:
        raise SelectionCancelled("ECS service", "no ECS services found")
    svc = ui.select_one(services, lambda s: f"{s['ClusterName']}/{s['Service']}",
                        "Available ECS services", "ECS service")
    cluster, service = svc['Cluster'], svc['Service']

    ui.info(f"Restarting service {service} in cluster {cluster}")
    manager.force_new_deployment(cluster, service)

    if ui.confirm("Do you want to wait for the service to stabilize?"):
        wait_for_service(manager, cluster, service)
        return

    ui.info(f"Not waiting for service {service} to stabilize. You can always run on another terminal:")
    wait_cmd = commands.ecs_wait_stable_cmd(manager.profile, manager.region, cluster, service)
    describe_cmd = commands.ecs_describe_service_cmd(manager.profile, manager.region, cluster, service)
    print(colored_text(commands.format_cmd(wait_cmd), Colors.HIGHLIGHT))
    print(f"or more detailed: {colored_text(commands.format_cmd(describe_cmd), Colors.HIGHLIGHT)}")


# ----------------------------------------------------------------------------
# CloudWatch Logs
# ----------------------------------------------------------------------------
def _search_log_events(manager: AWSManager, log_group: str) -> None:
    pattern = ui.ask("Filter pattern (e.g. ERROR, empty for all): ")
    minutes = ui.ask("Look back how many minutes? [60]: ")
    lookback = int(minutes) if minutes.isdigit() and int(minutes) > 0 else 60
    start = datetime.now() - timedelta(minutes=lookback)

    events = manager.filter_log_events(log_group, filter_pattern=pattern or None,
                                       start_time=int(start.timestamp() * 1000))
    if not events:
        ui.warn(f"No matching events in the last {lookback} minutes.")
        return
    line = '─' * 80
    print(colored_text(line, Colors.HEADER))
    print(colored_text(f"🔍 {log_group}: {len(events)} event(s)", Colors.INFO))
    print(colored_text(line, Colors.HEADER))
    for event in events:
        print(f"  [{colored_text(_fmt_time(event['timestamp']), Colors.INFO)}] {event['message'].rstrip()}")
    print(colored_text(line, Colors.HEADER))
    ui.pause()


def tail_cloudwatch_logs(manager: AWSManager, tunnels: TunnelManager) -> None:
    ui.info("Fetching available CloudWatch log groups...")
    groups = manager.list_log_groups()
    if not groups:
        raise SelectionCancelled("log group", "no CloudWatch log groups found")
    log_group = ui.select_one(groups, str, "Available CloudWatch log groups", "log group")

    mode = ui.interactive_select(
        ["📺 Live tail (Ctrl-C to stop)", "🔍 Search recent events", ui.GO_BACK],
        title=f"Log group: {log_group}", show_index=False)
    if mode == 0:
        pattern = ui.ask("Filter pattern (empty for all): ")
        ui.info(f"Starting live tail for log group: {log_group}")
        _run_interactive(commands.logs_tail_cmd(manager.profile, manager.region, log_group,
                                                filter_pattern=pattern or None))
    elif mode == 1:
        _search_log_events(manager, log_group)
    else:
        raise SelectionCancelled("log view")


# ----------------------------------------------------------------------------
# Registry
# ----------------------------------------------------------------------------
class Action(NamedTuple):
    key: str
    label: str
    run: Callable[[AWSManager, TunnelManager], None]


def build_actions(ssh_user: Optional[str] = None) -> List[Action]:
    """The main menu entries, with command line options bound in."""
    return [
        Action('ec2-shell', "🖥️ EC2 Shell (SSM)", connect_to_ec2),
        Action('ssh', "🔐 SSH via SSM", functools.partial(ssh_via_ssm, ssh_user=ssh_user)),
        Action('alb', "🌐 ALB Port Forward", alb_port_forward),
        Action('ecs', "🐳 Connect to ECS Container", connect_to_container),
        Action('rds', "🗄️ RDS Port Forward", rds_port_forward),
        Action('logs', "📜 CloudWatch Log Tail", tail_cloudwatch_logs),
        Action('restart', "🔄 Restart ECS Service", restart_ecs_service),
    ]


ACTIONS = build_actions()
ACTIONS_BY_KEY = {a.key: a for a in ACTIONS}
