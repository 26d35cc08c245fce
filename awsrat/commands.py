"""AWS CLI command lines handed to subprocesses.

Resource discovery goes through boto3; anything that needs the Session
Manager plugin or an interactive stream (shells, tunnels, log tail) is run
through the ``aws`` CLI with the commands built here.
"""
from __future__ import annotations

import json
import shlex
from typing import Dict, List, Optional

DOC_PORT_FORWARD = 'AWS-StartPortForwardingSession'
DOC_PORT_FORWARD_REMOTE = 'AWS-StartPortForwardingSessionToRemoteHost'
DOC_INTERACTIVE_COMMAND = 'AWS-StartInteractiveCommand'


def _aws(profile: Optional[str], region: Optional[str], *args: str) -> List[str]:
    cmd = ['aws', *args]
    if region:
        cmd[1:1] = ['--region', region]
    if profile and profile != 'default':
        cmd[1:1] = ['--profile', profile]
    return cmd


def ssm_shell_cmd(profile, region, iid) -> List[str]:
    """Plain SSM shell session on an instance."""
    return _aws(profile, region, 'ssm', 'start-session', '--target', iid)


def ssm_forward_cmd(profile, region, target: str, document: str, parameters: Dict[str, List[str]]) -> List[str]:
    """SSM port-forwarding session command."""
    return _aws(profile, region,
                'ssm', 'start-session',
                '--target', target,
                '--document-name', document,
                '--parameters', json.dumps(parameters))


def docker_exec_cmd(profile, region, iid, container_id, shell: str = 'sh') -> List[str]:
    """Shell into a container on an ECS container instance through SSM."""
    command = f"sudo docker exec -ti {shlex.quote(container_id)} {shell}"
    return _aws(profile, region,
                'ssm', 'start-session',
                '--target', iid,
                '--document-name', DOC_INTERACTIVE_COMMAND,
                '--parameters', json.dumps({'command': [command]}))


def logs_tail_cmd(profile, region, log_group: str, filter_pattern: Optional[str] = None) -> List[str]:
    """Live tail of a CloudWatch log group."""
    cmd = _aws(profile, region, 'logs', 'tail', log_group, '--follow')
    if filter_pattern:
        cmd += ['--filter-pattern', filter_pattern]
    return cmd


def ecs_wait_stable_cmd(profile, region, cluster: str, service: str) -> List[str]:
    return _aws(profile, region, 'ecs', 'wait', 'services-stable',
                '--cluster', cluster, '--services', service)


def ecs_describe_service_cmd(profile, region, cluster: str, service: str) -> List[str]:
    return _aws(profile, region, 'ecs', 'describe-services',
                '--cluster', cluster, '--services', service,
                '--query', 'services[0].{events: events[0:3], deployments: deployments}')


def ssh_client_cmd(user: str) -> List[str]:
    """ssh to the tunnel's local end; ``{port}`` is filled in by the tunnel."""
    return ['ssh', '-p', '{port}', f'{user}@localhost']


def format_cmd(cmd: List[str]) -> str:
    """Shell-quoted string for copy/paste hints."""
    return ' '.join(shlex.quote(arg) for arg in cmd)
