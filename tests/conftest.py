"""Pytest configuration for aws-rat tests."""

import subprocess
from types import SimpleNamespace
from typing import Any, Callable, Dict, List, Union
from unittest.mock import MagicMock, patch

import pytest

from awsrat.tunnel import TunnelManager, TunnelRequest

Pages = Union[List[Dict[str, Any]], Callable[..., List[Dict[str, Any]]]]


@pytest.fixture(autouse=True)
def no_atexit_backstop():
    """Keep mocked tunnel processes out of the interpreter's exit hooks."""
    with patch("awsrat.tunnel.atexit.register"):
        yield


@pytest.fixture
def fake_process() -> MagicMock:
    """A background ``aws ssm start-session`` process that keeps running."""
    proc = MagicMock(spec=subprocess.Popen)
    proc.pid = 4242
    proc.returncode = None
    proc.poll.return_value = None
    return proc


@pytest.fixture
def popen(fake_process: MagicMock):
    with patch("awsrat.tunnel.subprocess.Popen", return_value=fake_process) as mock_popen:
        yield mock_popen


@pytest.fixture
def psutil_tree():
    """psutil view of the forwarding process and its session-manager-plugin child.

    The process group scan finds nothing extra unless a test sets
    ``process_iter.return_value``.
    """
    parent = MagicMock(name="aws")
    parent.pid = 4242
    child = MagicMock(name="session-manager-plugin")
    child.pid = 4243
    parent.children.return_value = [child]
    with patch("awsrat.tunnel.psutil.Process", return_value=parent) as process_cls, \
            patch("awsrat.tunnel.psutil.wait_procs", return_value=([child, parent], [])) as wait_procs, \
            patch("awsrat.tunnel.psutil.process_iter", return_value=[]) as process_iter:
        yield SimpleNamespace(parent=parent, child=child, process=process_cls,
                              wait_procs=wait_procs, process_iter=process_iter)


@pytest.fixture
def manager() -> TunnelManager:
    return TunnelManager("dev", "eu-west-1", ready_timeout=5, poll_interval=0)


@pytest.fixture
def direct_request() -> TunnelRequest:
    return TunnelRequest("i-0123", 22)


@pytest.fixture
def relay_request() -> TunnelRequest:
    return TunnelRequest("i-0123", 5432, remote_host="db.internal")


def make_client(pages_by_operation: Dict[str, Pages]) -> MagicMock:
    """boto3 client mock whose paginators yield the given pages."""
    client = MagicMock()

    def get_paginator(operation: str) -> MagicMock:
        pages = pages_by_operation[operation]
        paginator = MagicMock()
        if callable(pages):
            paginator.paginate.side_effect = pages
        else:
            paginator.paginate.return_value = pages
        return paginator

    client.get_paginator.side_effect = get_paginator
    return client


@pytest.fixture
def boto_session():
    """Patch boto3.Session; register clients per service on ``.clients``."""
    clients: Dict[str, MagicMock] = {}
    session = MagicMock()
    session.region_name = "eu-west-1"
    session.client.side_effect = lambda service, region_name=None: clients[service]
    with patch("awsrat.aws.boto3.Session", return_value=session) as session_cls:
        yield SimpleNamespace(session=session, clients=clients, session_cls=session_cls)
