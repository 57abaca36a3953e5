from __future__ import annotations

import os
import posixpath
import re
import socket
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Iterable, Mapping, TypeVar

import paramiko

from .db import log_event
from .errors import MissingCredentials, RemoteCommandError, RemoteConnectionError
from .models import DeployTarget
from .settings import settings

T = TypeVar("T")

REF_RE = re.compile(r"^[A-Za-z0-9_]{1,64}$")


@dataclass(frozen=True)
class Credentials:
    username: str
    key_file: str | None = field(default=None, repr=False)
    password: str | None = field(default=None, repr=False)


def resolve_credentials(ref: str, environ: Mapping[str, str] | None = None) -> Credentials:
    """Look up SSH credentials for a ``credentials_ref``.

    Environment variables:
      - SDP_CRED_<REF>_USER (required)
      - SDP_CRED_<REF>_KEY_FILE and/or SDP_CRED_<REF>_PASSWORD

    Without a key file or password the SSH agent / default keys are used.
    """
    env = os.environ if environ is None else environ
    if not REF_RE.match(ref):
        raise MissingCredentials(f"Invalid credentials reference {ref!r}.")
    prefix = f"SDP_CRED_{ref.upper()}_"
    user = env.get(prefix + "USER")
    if not user:
        raise MissingCredentials(f"No credentials configured for reference '{ref}'.")
    return Credentials(
        username=user,
        key_file=env.get(prefix + "KEY_FILE") or None,
        password=env.get(prefix + "PASSWORD") or None,
    )


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str


class RemoteGateway:
    """Transfers files to and runs commands on one target host over SSH.

    Transport problems and timeouts surface as RemoteConnectionError and are
    retried with exponential backoff; a command that ran and exited non-zero is
    a RemoteCommandError and is never retried.
    """

    def __init__(
        self,
        target: DeployTarget,
        credentials: Credentials,
        timeout_s: float | None = None,
        retries: int | None = None,
        backoff_s: float | None = None,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.target = target
        self._credentials = credentials
        self.timeout_s = float(timeout_s if timeout_s is not None else settings.remote_timeout_s)
        self.retries = max(0, int(retries if retries is not None else settings.remote_retries))
        self.backoff_s = float(backoff_s if backoff_s is not None else settings.remote_backoff_s)
        self._client_factory = client_factory
        self._sleep = sleep
        self._lock = Lock()
        self._client: paramiko.SSHClient | None = None

    # -- connection -----------------------------------------------------

    def _connect(self) -> paramiko.SSHClient:
        with self._lock:
            if self._client is not None:
                transport = self._client.get_transport()
                if transport is not None and transport.is_active():
                    return self._client
                self._client.close()
                self._client = None

            client = self._client_factory()
            client.load_system_host_keys()
            if settings.ssh_strict_host_keys:
                client.set_missing_host_key_policy(paramiko.RejectPolicy())
            else:
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            creds = self._credentials
            try:
                client.connect(
                    hostname=self.target.host,
                    port=int(self.target.port),
                    username=creds.username,
                    key_filename=creds.key_file,
                    password=creds.password,
                    timeout=self.timeout_s,
                    banner_timeout=self.timeout_s,
                    auth_timeout=self.timeout_s,
                    allow_agent=creds.key_file is None and creds.password is None,
                    look_for_keys=creds.key_file is None and creds.password is None,
                )
            except paramiko.AuthenticationException as e:
                client.close()
                raise RemoteConnectionError(f"Authentication to {self.target.host} failed.", transient=False) from e
            except paramiko.BadHostKeyException as e:
                client.close()
                raise RemoteConnectionError(f"Host key for {self.target.host} does not match.", transient=False) from e
            except (paramiko.SSHException, socket.timeout, OSError) as e:
                client.close()
                raise RemoteConnectionError(f"Cannot connect to {self.target.host}: {type(e).__name__}") from e
            self._client = client
            return client

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None

    def _drop_connection(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
            self._client = None

    def _with_retries(self, what: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except RemoteConnectionError as e:
                self._drop_connection()
                if not e.transient or attempt >= self.retries:
                    raise
                delay = self.backoff_s * (2 ** attempt)
                attempt += 1
                log_event("WARN", f"{what} on {self.target.host} failed ({e}); retry {attempt}/{self.retries} in {delay:.1f}s")
                self._sleep(delay)

    # -- operations -----------------------------------------------------

    def execute(self, command: str, timeout_s: float | None = None, check: bool = True) -> CommandResult:
        """Run a command and block until its exit code is known."""
        timeout = float(timeout_s if timeout_s is not None else self.timeout_s)

        def once() -> CommandResult:
            client = self._connect()
            try:
                _, stdout, stderr = client.exec_command(command, timeout=timeout)
                out = stdout.read().decode("utf-8", errors="replace")
                err = stderr.read().decode("utf-8", errors="replace")
                code = stdout.channel.recv_exit_status()
            except (socket.timeout, TimeoutError) as e:
                raise RemoteConnectionError(f"Command timed out after {timeout:.0f}s on {self.target.host}.") from e
            except (paramiko.SSHException, EOFError, OSError) as e:
                raise RemoteConnectionError(f"Channel to {self.target.host} broke: {type(e).__name__}") from e
            return CommandResult(exit_code=code, stdout=out, stderr=err)

        result = self._with_retries("execute", once)
        if check and result.exit_code != 0:
            raise RemoteCommandError(command, result.exit_code, result.stderr)
        return result

    def transfer(self, files: Iterable[tuple[str, str]]) -> int:
        """Copy ``(local_path, remote_path)`` pairs; returns the number of files sent."""
        pairs = list(files)

        def once() -> int:
            client = self._connect()
            try:
                with client.open_sftp() as sftp:
                    for local, remote in pairs:
                        self._makedirs(sftp, posixpath.dirname(remote))
                        sftp.put(local, remote)
            except (socket.timeout, TimeoutError) as e:
                raise RemoteConnectionError(f"Transfer to {self.target.host} timed out.") from e
            except (paramiko.SSHException, EOFError, ConnectionError) as e:
                raise RemoteConnectionError(f"Transfer to {self.target.host} failed: {type(e).__name__}") from e
            except OSError as e:
                # Refused by the remote filesystem (permissions, missing path).
                raise RemoteConnectionError(f"Transfer to {self.target.host} failed: {e}", transient=False) from e
            return len(pairs)

        return self._with_retries("transfer", once)

    def upload_text(self, files: Mapping[str, str]) -> int:
        """Write in-memory documents to ``remote_path -> text``."""
        items = dict(files)

        def once() -> int:
            client = self._connect()
            try:
                with client.open_sftp() as sftp:
                    for remote, text in items.items():
                        self._makedirs(sftp, posixpath.dirname(remote))
                        with sftp.open(remote, "w") as fh:
                            fh.write(text.encode("utf-8"))
            except (socket.timeout, TimeoutError) as e:
                raise RemoteConnectionError(f"Upload to {self.target.host} timed out.") from e
            except (paramiko.SSHException, EOFError, ConnectionError) as e:
                raise RemoteConnectionError(f"Upload to {self.target.host} failed: {type(e).__name__}") from e
            except OSError as e:
                # Refused by the remote filesystem (permissions, missing path).
                raise RemoteConnectionError(f"Upload to {self.target.host} failed: {e}", transient=False) from e
            return len(items)

        return self._with_retries("upload", once)

    @staticmethod
    def _makedirs(sftp: paramiko.SFTPClient, path: str) -> None:
        if not path or path == "/":
            return
        try:
            sftp.stat(path)
            return
        except FileNotFoundError:
            pass
        RemoteGateway._makedirs(sftp, posixpath.dirname(path))
        sftp.mkdir(path)
