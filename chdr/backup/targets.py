"""
Execution targets for ClickHouse commands.

Supports:
- LocalExecutor: clickhouse-client on this host against a reachable server
- KubernetesExecutor: clickhouse-client inside a running pod (kubectl exec/cp)
- SSHExecutor: clickhouse-client on a remote host via SSH/SFTP

Every executor exposes the same operations so the engines never branch on
where ClickHouse runs. Each call is attempted exactly once; failures raise
ExecutorError and the caller decides whether to skip, fall back or abort.
"""

import json
import logging
import os
import posixpath
import shlex
import shutil
import subprocess
import tempfile
import threading
import uuid
from pathlib import Path
from typing import List, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from chdr.models import ExecutionTarget, TargetKind

logger = logging.getLogger(__name__)


class ExecutorError(Exception):
    """Raised when a command on the execution target fails."""
    pass


class TargetResolutionError(ExecutorError):
    """Raised when the execution target cannot be reached or resolved."""
    pass


class BaseExecutor:
    """Shared plumbing for executors."""

    kind = None

    def __init__(self, config):
        self.config = config
        self.timeout = config.command_timeout

    # Operations every executor provides

    def run_query(self, query: str) -> str:
        raise NotImplementedError

    def run_query_to_file(self, query: str, path: str):
        raise NotImplementedError

    def run_query_from_file(self, query: str, path: str):
        raise NotImplementedError

    def run_shell(self, command: str) -> str:
        raise NotImplementedError

    def copy_in(self, local_path: str, remote_path: str):
        raise NotImplementedError

    def copy_out(self, remote_path: str, local_path: str):
        raise NotImplementedError

    def scratch_path(self, name: str) -> str:
        raise NotImplementedError

    def remove(self, path: str):
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def verify(self):
        """
        Resolve the target and check that ClickHouse answers.

        Raises:
            TargetResolutionError: If the target is unreachable
            ExecutorError: If the ping query fails
        """
        self.run_query('SELECT 1')

    def cleanup(self):
        """Release connections and scratch space."""
        pass

    # Helpers

    def _client_args(self, query: str, connection: bool = True) -> List[str]:
        args = ['clickhouse-client']
        if connection:
            args += [f'--host={self.config.host}', f'--port={self.config.port}']
        if connection or self.config.user != 'default':
            args.append(f'--user={self.config.user}')
        if self.config.password:
            args.append(f'--password={self.config.password}')
        args.append(f'--query={query}')
        return args

    def _run(self, args: List[str], stdin=None, stdout=None) -> str:
        """
        Run a local process.

        Returns:
            Decoded stdout, or '' when stdout is redirected to a file

        Raises:
            ExecutorError: If the process cannot start, times out or exits non-zero
        """
        try:
            result = subprocess.run(
                args,
                stdin=stdin,
                stdout=stdout if stdout is not None else subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
                check=False
            )
        except FileNotFoundError:
            raise ExecutorError(f"Command not found: {args[0]}")
        except subprocess.TimeoutExpired:
            raise ExecutorError(f"Command timed out after {self.timeout}s: {args[0]}")
        except OSError as e:
            raise ExecutorError(f"Failed to run {args[0]}: {e}")

        if result.returncode != 0:
            stderr = (result.stderr or b'').decode('utf-8', errors='replace').strip()
            raise ExecutorError(f"{args[0]} exited with code {result.returncode}: {stderr}")

        if stdout is not None:
            return ''
        return (result.stdout or b'').decode('utf-8', errors='replace')


class LocalExecutor(BaseExecutor):
    """
    Runs clickhouse-client on this host.

    File transfer degrades to plain filesystem operations: scratch files live
    in a private temporary directory.
    """

    kind = TargetKind.LOCAL

    def __init__(self, config):
        super().__init__(config)
        self._scratch_dir = None
        self._lock = threading.Lock()

    def run_query(self, query: str) -> str:
        return self._run(self._client_args(query))

    def run_query_to_file(self, query: str, path: str):
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(path, 'wb') as f:
                self._run(self._client_args(query), stdout=f)
        except OSError as e:
            raise ExecutorError(f"Failed to write {path}: {e}")

    def run_query_from_file(self, query: str, path: str):
        try:
            with open(path, 'rb') as f:
                self._run(self._client_args(query), stdin=f)
        except OSError as e:
            raise ExecutorError(f"Failed to read {path}: {e}")

    def run_shell(self, command: str) -> str:
        return self._run(['sh', '-c', command])

    def copy_in(self, local_path: str, remote_path: str):
        try:
            Path(remote_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, remote_path)
        except OSError as e:
            raise ExecutorError(f"Failed to copy {local_path} to {remote_path}: {e}")

    def copy_out(self, remote_path: str, local_path: str):
        try:
            Path(local_path).parent.mkdir(parents=True, exist_ok=True)
            shutil.move(remote_path, local_path)
        except OSError as e:
            raise ExecutorError(f"Failed to move {remote_path} to {local_path}: {e}")

    def scratch_path(self, name: str) -> str:
        with self._lock:
            if self._scratch_dir is None:
                self._scratch_dir = tempfile.mkdtemp(prefix='chdr_scratch_')
        return os.path.join(self._scratch_dir, name)

    def remove(self, path: str):
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove scratch file {path}: {e}")

    def cleanup(self):
        if self._scratch_dir and os.path.exists(self._scratch_dir):
            shutil.rmtree(self._scratch_dir, ignore_errors=True)
        self._scratch_dir = None

    def describe(self) -> str:
        return f"local clickhouse-client -> {self.config.host}:{self.config.port}"


class KubernetesExecutor(BaseExecutor):
    """
    Runs clickhouse-client inside a running pod.

    The pod is discovered on first use: the first pod (in name order) whose
    name starts with the configured prefix and whose phase is Running. The
    resolved name is cached for the lifetime of the executor.
    """

    kind = TargetKind.KUBERNETES

    def __init__(self, config, pod_prefix: Optional[str] = None):
        super().__init__(config)
        self.namespace = config.namespace
        self.pod_prefix = pod_prefix or config.pod_prefix
        self.container = config.container
        self.pod = None
        self._token = uuid.uuid4().hex[:8]
        self._lock = threading.Lock()

    def resolve(self) -> str:
        """
        Find the pod to execute in.

        Raises:
            TargetResolutionError: If no running pod matches the prefix
        """
        with self._lock:
            if self.pod:
                return self.pod

            try:
                output = self._run(['kubectl', 'get', 'pods', '-n', self.namespace, '-o', 'json'])
                items = json.loads(output).get('items', [])
            except ExecutorError as e:
                raise TargetResolutionError(f"Cannot list pods in namespace {self.namespace}: {e}")
            except ValueError as e:
                raise TargetResolutionError(f"Unexpected kubectl output: {e}")

            candidates = sorted(
                item['metadata']['name']
                for item in items
                if item.get('metadata', {}).get('name', '').startswith(self.pod_prefix)
                and item.get('status', {}).get('phase') == 'Running'
            )

            if not candidates:
                raise TargetResolutionError(
                    f"No running ClickHouse pod found in namespace {self.namespace} "
                    f"with prefix {self.pod_prefix}"
                )

            if len(candidates) > 1:
                logger.info(f"{len(candidates)} running pods match {self.pod_prefix}, using {candidates[0]}")

            self.pod = candidates[0]
            logger.info(f"Using ClickHouse pod: {self.pod}")
            return self.pod

    def _exec_args(self, *command: str) -> List[str]:
        args = ['kubectl', 'exec', '-n', self.namespace, self.resolve()]
        if self.container:
            args += ['-c', self.container]
        return args + ['--'] + list(command)

    def _cp_args(self, source: str, dest: str) -> List[str]:
        args = ['kubectl', 'cp', source, dest]
        if self.container:
            args += ['-c', self.container]
        return args

    def _pod_path(self, path: str) -> str:
        return f"{self.namespace}/{self.resolve()}:{path}"

    def run_query(self, query: str) -> str:
        return self._run(self._exec_args(*self._client_args(query, connection=False)))

    def run_query_to_file(self, query: str, path: str):
        client = shlex.join(self._client_args(query, connection=False))
        self._run(self._exec_args('sh', '-c', f"{client} > {shlex.quote(path)}"))

    def run_query_from_file(self, query: str, path: str):
        client = shlex.join(self._client_args(query, connection=False))
        self._run(self._exec_args('sh', '-c', f"{client} < {shlex.quote(path)}"))

    def run_shell(self, command: str) -> str:
        return self._run(self._exec_args('sh', '-c', command))

    def copy_in(self, local_path: str, remote_path: str):
        self._run(self._cp_args(local_path, self._pod_path(remote_path)))

    def copy_out(self, remote_path: str, local_path: str):
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        self._run(self._cp_args(self._pod_path(remote_path), local_path))

    def scratch_path(self, name: str) -> str:
        return posixpath.join('/tmp', f"chdr-{self._token}-{name}")

    def remove(self, path: str):
        try:
            self.run_shell(f"rm -f {shlex.quote(path)}")
        except ExecutorError as e:
            logger.warning(f"Failed to remove {path} from pod: {e}")

    def describe(self) -> str:
        return f"pod {self.pod or self.pod_prefix + '*'} in namespace {self.namespace}"


class SSHExecutor(BaseExecutor):
    """
    Runs clickhouse-client on a remote host over SSH.

    Files move through SFTP. The SSH connection is opened on first use and
    shared by all worker threads; SFTP transfers are serialized.
    """

    kind = TargetKind.SSH

    def __init__(self, config, host: Optional[str] = None):
        super().__init__(config)
        self.host = host or config.ssh_host
        self.port = config.ssh_port
        self.username = config.ssh_user
        self.password = config.ssh_password
        self.private_key_path = config.ssh_private_key

        self.ssh_client = None
        self.sftp_client = None
        self._token = uuid.uuid4().hex[:8]
        self._connect_lock = threading.Lock()
        self._sftp_lock = threading.Lock()

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            TargetResolutionError: If connection fails
        """
        with self._connect_lock:
            if self.ssh_client is not None:
                return

            if not self.host:
                raise TargetResolutionError("ssh_host is not configured")

            client = SSHClient()
            client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': 30
            }

            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise TargetResolutionError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)

            try:
                client.connect(**connect_kwargs)
                self.sftp_client = client.open_sftp()
            except paramiko.AuthenticationException as e:
                raise TargetResolutionError(f"SSH authentication failed: {e}")
            except paramiko.SSHException as e:
                raise TargetResolutionError(f"SSH connection failed: {e}")
            except OSError as e:
                raise TargetResolutionError(f"Failed to connect to {self.host}: {e}")

            self.ssh_client = client
            logger.info(f"Connected to {self.host}:{self.port} over SSH")

    def _exec(self, command: str) -> str:
        self._connect()

        try:
            _, stdout, stderr = self.ssh_client.exec_command(command, timeout=self.timeout)
            output = stdout.read()
            error = stderr.read()
            status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise ExecutorError(f"SSH command failed on {self.host}: {e}")

        if status != 0:
            raise ExecutorError(
                f"Remote command exited with code {status}: "
                f"{error.decode('utf-8', errors='replace').strip()}"
            )

        return output.decode('utf-8', errors='replace')

    def run_query(self, query: str) -> str:
        return self._exec(shlex.join(self._client_args(query)))

    def run_query_to_file(self, query: str, path: str):
        self._exec(f"{shlex.join(self._client_args(query))} > {shlex.quote(path)}")

    def run_query_from_file(self, query: str, path: str):
        self._exec(f"{shlex.join(self._client_args(query))} < {shlex.quote(path)}")

    def run_shell(self, command: str) -> str:
        return self._exec(command)

    def copy_in(self, local_path: str, remote_path: str):
        self._connect()
        try:
            with self._sftp_lock:
                self.sftp_client.put(local_path, remote_path)
        except (OSError, paramiko.SSHException) as e:
            raise ExecutorError(f"Failed to upload {local_path} to {self.host}:{remote_path}: {e}")

    def copy_out(self, remote_path: str, local_path: str):
        self._connect()
        Path(local_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            with self._sftp_lock:
                self.sftp_client.get(remote_path, local_path)
        except FileNotFoundError:
            raise ExecutorError(f"Remote file not found: {remote_path}")
        except (OSError, paramiko.SSHException) as e:
            raise ExecutorError(f"Failed to download {self.host}:{remote_path}: {e}")

    def scratch_path(self, name: str) -> str:
        return posixpath.join('/tmp', f"chdr-{self._token}-{name}")

    def remove(self, path: str):
        try:
            self._exec(f"rm -f {shlex.quote(path)}")
        except ExecutorError as e:
            logger.warning(f"Failed to remove {path} on {self.host}: {e}")

    def cleanup(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except (OSError, paramiko.SSHException):
                pass
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except (OSError, paramiko.SSHException):
                pass
            self.ssh_client = None

    def describe(self) -> str:
        return f"ssh {self.username}@{self.host}:{self.port}"


def create_executor(target: ExecutionTarget, config) -> BaseExecutor:
    """
    Factory function to create the executor for an execution target.

    Raises:
        ValueError: If the target kind is invalid
    """
    kind = TargetKind(target.kind)

    if kind == TargetKind.LOCAL:
        return LocalExecutor(config)
    elif kind == TargetKind.KUBERNETES:
        return KubernetesExecutor(config, pod_prefix=target.selector)
    elif kind == TargetKind.SSH:
        return SSHExecutor(config, host=target.selector)
    else:
        raise ValueError(f"Invalid target kind: {target.kind}")
