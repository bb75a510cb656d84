"""
SSH port forwarding for database captures.

The tunnel is an ``ssh -N -L`` subprocess bound to an ephemeral local port.
It is used as a context manager so the subprocess is terminated on every
exit path of the capture, including exceptions raised while dumping.
"""

import os
import socket
import subprocess
import time
import logging
from typing import List, Optional

from .errors import TunnelError


# Readiness probe: up to 10 connection attempts, 300ms connect timeout, 200ms apart
CONNECT_ATTEMPTS = 10
CONNECT_TIMEOUT = 0.3
RETRY_DELAY = 0.2

# Seconds to wait for ssh to exit after SIGTERM before killing it
TERMINATE_TIMEOUT = 5


def host_key_options(strict: bool) -> List[str]:
    """
    ssh -o options for the host key policy.

    Strict checking trusts only hosts already in known_hosts; otherwise any
    host key is accepted and nothing is recorded.
    """
    if strict:
        return ['-o', 'StrictHostKeyChecking=yes']
    return ['-o', 'StrictHostKeyChecking=no', '-o', 'UserKnownHostsFile=/dev/null']


def get_free_port() -> int:
    """Find a free TCP port on the loopback interface."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


class SSHTunnel:
    """
    Local TCP tunnel to a port reachable from an SSH host.

    Usage::

        with SSHTunnel(endpoint, '127.0.0.1', 3306) as tunnel:
            run_client('-h', '127.0.0.1', '-P', str(tunnel.local_port))
    """

    def __init__(
        self,
        endpoint,
        remote_host: str,
        remote_port: int,
        ssh_binary: str = 'ssh',
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the tunnel (nothing is started until ``open``).

        Args:
            endpoint: SSHEndpoint with host, port, user and optional key_file
            remote_host: Database host as seen from the SSH host
            remote_port: Database port on remote_host
            ssh_binary: ssh executable to spawn
            logger: Logger for tunnel lifecycle messages
        """
        self.endpoint = endpoint
        self.remote_host = remote_host
        self.remote_port = remote_port
        self.ssh_binary = ssh_binary
        self.logger = logger or logging.getLogger(__name__)

        self.local_port: Optional[int] = None
        self.process: Optional[subprocess.Popen] = None

    def build_command(self, local_port: int) -> List[str]:
        args = [
            self.ssh_binary,
            '-N',
            '-o', 'ExitOnForwardFailure=yes',
            '-o', 'BatchMode=yes',
            *host_key_options(self.endpoint.strict_host_key_checking),
            '-L', f"{local_port}:{self.remote_host}:{self.remote_port}",
            '-p', str(self.endpoint.port),
        ]
        if self.endpoint.key_file:
            args.extend(['-i', os.path.expanduser(self.endpoint.key_file)])
        args.append(self.endpoint.destination)
        return args

    def open(self) -> 'SSHTunnel':
        """
        Start the ssh subprocess and wait until the local port accepts connections.

        Raises:
            TunnelError: If ssh cannot be started or the port never becomes reachable
        """
        self.local_port = get_free_port()
        command = self.build_command(self.local_port)

        self.logger.info(
            f"Opening SSH tunnel 127.0.0.1:{self.local_port} -> "
            f"{self.remote_host}:{self.remote_port} via {self.endpoint.destination}"
        )

        try:
            self.process = subprocess.Popen(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE
            )
        except OSError as e:
            self.process = None
            raise TunnelError(f"Failed to start SSH tunnel: {e}")

        if not self._wait_until_ready():
            stderr = self._stderr_tail()
            self.close()
            message = f"Failed to establish SSH tunnel on port {self.local_port}"
            if stderr:
                message = f"{message}: {stderr}"
            raise TunnelError(message)

        self.logger.info(f"SSH tunnel ready on port {self.local_port}")
        return self

    def _wait_until_ready(self) -> bool:
        for attempt in range(CONNECT_ATTEMPTS):
            if self.process.poll() is not None:
                self.logger.error(f"SSH tunnel process exited with code {self.process.returncode}")
                return False
            try:
                with socket.create_connection(('127.0.0.1', self.local_port), timeout=CONNECT_TIMEOUT):
                    return True
            except OSError:
                self.logger.debug(f"SSH tunnel not ready (attempt {attempt + 1}/{CONNECT_ATTEMPTS})")
                time.sleep(RETRY_DELAY)
        return False

    def _stderr_tail(self) -> str:
        if self.process is None or self.process.poll() is None or self.process.stderr is None:
            return ''
        try:
            return self.process.stderr.read().decode('utf-8', errors='replace').strip()[-500:]
        except (OSError, ValueError):
            return ''

    def close(self):
        """Terminate the ssh subprocess. Safe to call more than once."""
        process = self.process
        self.process = None
        if process is None:
            return

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=TERMINATE_TIMEOUT)
            except subprocess.TimeoutExpired:
                process.kill()
                process.wait()

        if process.stderr is not None:
            process.stderr.close()

        self.logger.info(f"SSH tunnel on port {self.local_port} closed")

    def __enter__(self) -> 'SSHTunnel':
        return self.open()

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False
