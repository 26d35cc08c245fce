"""Port-forwarding tunnels over SSM Session Manager.

A tunnel is a local TCP listener whose traffic the Session Manager plugin
relays to a port on an EC2 instance, or through that instance to another
host (a load balancer, a database). ``TunnelManager`` owns the whole life of
one tunnel:

    allocate_port -> start_forwarding -> wait_until_ready
        -> run_foreground -> terminate

``TunnelManager.open`` wraps the sequence as a context manager so that
``terminate`` runs on every exit path, including Ctrl-C and SIGTERM/SIGHUP.
Only one tunnel per manager can be active at a time.
"""
from __future__ import annotations

import atexit
import contextlib
import logging
import os
import random
import signal
import socket
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import psutil

from awsrat import commands
from awsrat.config import Config
from awsrat.errors import (
    LaunchFailure,
    PortAllocationExhausted,
    TerminationFailure,
    TunnelCancelled,
    TunnelError,
    TunnelTimeout,
)


def is_port_open(port: int, host: Optional[str] = None, timeout: Optional[float] = None) -> bool:
    """True when something accepts TCP connections on ``host:port``."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.settimeout(Config.PROBE_TIMEOUT if timeout is None else timeout)
    try:
        return sock.connect_ex((host or Config.PROBE_HOST, port)) == 0
    except OSError as e:
        logging.debug(f"Probe of port {port} failed: {e}")
        return False
    finally:
        sock.close()


class TunnelState(Enum):
    PENDING = "pending"
    READY = "ready"
    TERMINATED = "terminated"


@dataclass(frozen=True)
class TunnelRequest:
    """What to forward to.

    Without ``remote_host`` the tunnel ends on ``remote_port`` of the target
    instance itself. With it, the instance relays to ``remote_host:remote_port``.
    """
    target: str
    remote_port: int
    remote_host: Optional[str] = None

    def __post_init__(self):
        if not self.target:
            raise ValueError("Tunnel target instance id is required")
        if not 0 < int(self.remote_port) <= 65535:
            raise ValueError(f"Invalid remote port: {self.remote_port}")

    @property
    def relayed(self) -> bool:
        return bool(self.remote_host)

    @property
    def document(self) -> str:
        if self.relayed:
            return commands.DOC_PORT_FORWARD_REMOTE
        return commands.DOC_PORT_FORWARD

    @property
    def endpoint(self) -> str:
        return f"{self.remote_host or self.target}:{self.remote_port}"

    def parameters(self, local_port: int) -> Dict[str, List[str]]:
        params = {
            "portNumber": [str(self.remote_port)],
            "localPortNumber": [str(local_port)],
        }
        if self.relayed:
            params["host"] = [self.remote_host]
        return params


@dataclass(frozen=True)
class Consumer:
    """What runs in the foreground while a tunnel is up.

    Either an interactive client (``command``, where ``{port}`` is replaced by
    the tunnel's local port) or an acknowledgement prompt.
    """
    command: Optional[Tuple[str, ...]] = None
    prompt: str = "Press Enter to close the tunnel..."

    @classmethod
    def client(cls, argv: Sequence[str]) -> "Consumer":
        return cls(command=tuple(argv))

    @classmethod
    def acknowledge(cls, prompt: Optional[str] = None) -> "Consumer":
        return cls(prompt=prompt) if prompt else cls()

    def argv(self, port: int) -> List[str]:
        return [arg.replace("{port}", str(port)) for arg in self.command or ()]


@dataclass
class TunnelSession:
    request: TunnelRequest
    local_port: int
    process: Optional[subprocess.Popen] = None
    state: TunnelState = TunnelState.PENDING
    output_path: Optional[Path] = field(default=None, repr=False)

    @property
    def started(self) -> bool:
        return self.process is not None

    def output(self) -> str:
        """Everything the forwarding process has written so far."""
        if self.output_path is None:
            return ""
        try:
            return self.output_path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def discard_output(self) -> None:
        if self.output_path is None:
            return
        try:
            self.output_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logging.warning(f"Could not remove tunnel log {self.output_path}: {e}")
        self.output_path = None


def _still_running(proc: psutil.Process) -> bool:
    try:
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def _interrupt(signum, frame):
    raise KeyboardInterrupt(f"received signal {signum}")


class TunnelManager:
    """Runs one SSM port-forwarding tunnel at a time."""

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        ready_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        port_attempts: Optional[int] = None,
        on_wait: Optional[Callable[[int], None]] = None,
    ):
        self.profile = profile
        self.region = region
        self.ready_timeout = Config.READY_TIMEOUT if ready_timeout is None else ready_timeout
        self.poll_interval = Config.READY_POLL_INTERVAL if poll_interval is None else poll_interval
        self.port_attempts = port_attempts or Config.PORT_ALLOCATION_ATTEMPTS
        self.on_wait = on_wait
        self._active: Optional[TunnelSession] = None
        # Backstop for exits that bypass the context manager
        atexit.register(self._terminate_active)

    @property
    def active(self) -> Optional[TunnelSession]:
        return self._active

    # ------------------------------------------------------------------
    # Lifecycle steps
    # ------------------------------------------------------------------
    def allocate_port(self) -> int:
        """Pick a random free local port above 1024."""
        for attempt in range(1, self.port_attempts + 1):
            port = random.randint(Config.PORT_MIN + 1, Config.PORT_MAX)
            if not is_port_open(port):
                logging.debug(f"Allocated local port {port} (attempt {attempt})")
                return port
            logging.debug(f"Local port {port} is in use (attempt {attempt})")
        raise PortAllocationExhausted(
            f"No free local port found after {self.port_attempts} attempts")

    def start_forwarding(self, request: TunnelRequest, port: int) -> TunnelSession:
        """Launch the SSM forwarding session in the background. Does not block."""
        active = self._active
        if active is not None and active.state is not TunnelState.TERMINATED:
            raise TunnelError(f"A tunnel is already active on localhost:{active.local_port}")
        if not Config.PORT_MIN < port <= Config.PORT_MAX:
            raise LaunchFailure(f"Local port {port} is outside {Config.PORT_MIN + 1}-{Config.PORT_MAX}")
        # Someone may have grabbed the port since it was allocated
        if is_port_open(port):
            raise LaunchFailure(f"Local port {port} was taken before the tunnel could use it")

        cmd = commands.ssm_forward_cmd(self.profile, self.region, request.target,
                                       request.document, request.parameters(port))
        log_file = tempfile.NamedTemporaryFile(
            prefix=f"awsrat-tunnel-{port}-", suffix=".log", delete=False)
        session = TunnelSession(request, port, output_path=Path(log_file.name))
        # Registered before launch so an interrupt during Popen still finds it
        self._active = session
        try:
            with log_file:
                # Own process group: Ctrl-C reaches us, and we tear the tree down
                session.process = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            self._active = None
            session.discard_output()
            raise LaunchFailure(f"Could not start the SSM session ({cmd[0]}): {e}") from e

        logging.info(f"Started SSM forwarding pid={session.process.pid} "
                     f"localhost:{port} -> {request.endpoint} via {request.target}")
        return session

    def wait_until_ready(
        self,
        session: TunnelSession,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> TunnelSession:
        """Block until the tunnel's local port accepts connections.

        Raises:
            LaunchFailure: the forwarding process exited first
            TunnelTimeout: the port did not open within ``timeout`` seconds
            TunnelCancelled: ``cancel`` was set while waiting
        """
        if not session.started:
            raise TunnelError("The forwarding process has not been started")
        if session.state is TunnelState.TERMINATED:
            raise TunnelError(f"Tunnel on localhost:{session.local_port} is already terminated")
        if session.state is TunnelState.READY:
            return session

        poll_interval = self.poll_interval if poll_interval is None else poll_interval
        timeout = self.ready_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        attempts = 0

        while True:
            attempts += 1
            code = session.process.poll()
            if code is not None:
                raise LaunchFailure(
                    f"SSM session exited with code {code} before localhost:{session.local_port} was ready",
                    output=session.output())
            if is_port_open(session.local_port):
                session.state = TunnelState.READY
                logging.info(f"Tunnel localhost:{session.local_port} ready after {attempts} probe(s)")
                return session

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TunnelTimeout(
                    f"localhost:{session.local_port} was not ready after {timeout:g}s",
                    output=session.output())
            if self.on_wait is not None:
                self.on_wait(attempts)

            delay = min(poll_interval, remaining)
            if cancel is not None:
                if cancel.wait(delay):
                    raise TunnelCancelled(
                        f"Wait for localhost:{session.local_port} cancelled",
                        output=session.output())
            else:
                time.sleep(delay)

    def run_foreground(self, session: TunnelSession, consumer: Consumer) -> int:
        """Run the client (or wait for Enter) while the tunnel is up.

        Returns the client's exit code, 0 for an acknowledgement.
        """
        if session.state is not TunnelState.READY:
            raise TunnelError(f"Tunnel on localhost:{session.local_port} is not ready")

        if consumer.command:
            argv = consumer.argv(session.local_port)
            logging.debug(f"Running foreground client: {commands.format_cmd(argv)}")
            try:
                return subprocess.run(argv).returncode
            except OSError as e:
                raise TunnelError(f"Could not run {argv[0]}: {e}") from e

        try:
            input(consumer.prompt)
        except EOFError:
            pass
        return 0

    def terminate(self, session: TunnelSession) -> None:
        """Stop the forwarding process and its children. Safe to call repeatedly."""
        if session.state is TunnelState.TERMINATED:
            return
        try:
            if session.process is not None:
                self._stop_process_tree(session.process)
        except TerminationFailure as e:
            logging.warning(str(e))
        finally:
            session.state = TunnelState.TERMINATED
            session.discard_output()
            if self._active is session:
                self._active = None
        logging.info(f"Tunnel localhost:{session.local_port} terminated")

    # ------------------------------------------------------------------
    # Scoped use
    # ------------------------------------------------------------------
    @contextlib.contextmanager
    def open(self, request: TunnelRequest, cancel: Optional[threading.Event] = None) -> Iterator[TunnelSession]:
        """Allocate, launch and wait for a tunnel; always terminate it on exit."""
        # Handlers go in first: a SIGTERM right after launch must not orphan the process
        previous = self._install_signal_handlers()
        before = self._active
        session = None
        try:
            session = self.start_forwarding(request, self.allocate_port())
            self.wait_until_ready(session, cancel=cancel)
            yield session
        finally:
            self._restore_signal_handlers(previous)
            if session is None and self._active is not before:
                session = self._active
            if session is not None:
                self.terminate(session)

    def run(self, request: TunnelRequest, consumer: Consumer) -> int:
        with self.open(request) as session:
            return self.run_foreground(session, consumer)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _session_processes(process: subprocess.Popen) -> List[psutil.Process]:
        """The forwarding process, its descendants and every process left in its group.

        The process was started as a session leader, so its pid is also the
        process group id. A session-manager-plugin orphaned by an aws CLI that
        already exited is only reachable through the group.
        """
        procs: Dict[int, psutil.Process] = {}
        if process.poll() is None:
            try:
                parent = psutil.Process(process.pid)
                for proc in [parent] + parent.children(recursive=True):
                    procs[proc.pid] = proc
            except psutil.NoSuchProcess:
                pass
            except psutil.Error as e:
                raise TerminationFailure(f"Could not inspect forwarding process {process.pid}: {e}") from e
        else:
            logging.debug(f"Forwarding process {process.pid} already exited ({process.returncode})")

        for proc in psutil.process_iter():
            if proc.pid in procs:
                continue
            try:
                if os.getpgid(proc.pid) == process.pid:
                    procs[proc.pid] = proc
            except (ProcessLookupError, PermissionError, psutil.Error):
                continue
        return list(procs.values())

    def _stop_process_tree(self, process: subprocess.Popen) -> None:
        # The aws CLI starts session-manager-plugin as a child; both must go
        procs = self._session_processes(process)
        if not procs:
            return

        for proc in procs:
            try:
                proc.terminate()
            except psutil.NoSuchProcess:
                pass
            except psutil.Error as e:
                logging.warning(f"Could not signal process {proc.pid}: {e}")

        _, alive = psutil.wait_procs(procs, timeout=Config.TERMINATE_GRACE_SECONDS)
        for proc in alive:
            logging.debug(f"Process {proc.pid} ignored SIGTERM, killing")
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
            except psutil.Error as e:
                logging.warning(f"Could not kill process {proc.pid}: {e}")
        if alive:
            _, alive = psutil.wait_procs(alive, timeout=Config.TERMINATE_GRACE_SECONDS)
            # orphans adopted by a non-reaping init linger as zombies
            alive = [proc for proc in alive if _still_running(proc)]

        try:
            process.wait(timeout=Config.TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            alive = alive or [process]
        if alive:
            pids = ", ".join(str(p.pid) for p in alive)
            raise TerminationFailure(f"Forwarding processes still running after kill: {pids}")

    def _terminate_active(self) -> None:
        if self._active is not None:
            self.terminate(self._active)

    @staticmethod
    def _install_signal_handlers() -> Dict[int, object]:
        # signal.signal only works from the main thread
        if threading.current_thread() is not threading.main_thread():
            return {}
        previous = {}
        for name in ("SIGTERM", "SIGHUP"):
            signum = getattr(signal, name, None)
            if signum is not None:
                previous[signum] = signal.signal(signum, _interrupt)
        return previous

    @staticmethod
    def _restore_signal_handlers(previous: Dict[int, object]) -> None:
        for signum, handler in previous.items():
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)
