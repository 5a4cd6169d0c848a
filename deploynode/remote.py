"""Remote command channel: the executor protocol and its fabric implementation."""

import io
import re
from dataclasses import dataclass, field
from typing import Callable, Protocol

import paramiko
from fabric import Connection
from invoke.exceptions import UnexpectedExit

from .errors import ConfigurationError, RemoteCommandError, RemoteConnectionError
from .types import SSHCredentials
from .utils import LineStream, debug

LineCallback = Callable[[str], None]
StderrPolicy = Callable[[str], bool]  # True when the line means the command failed


@dataclass
class CommandResult:
    command: str
    exit_status: int
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class RemoteExecutor(Protocol):
    def connect(self, host: str, credentials: SSHCredentials) -> None: ...

    def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        on_stdout: LineCallback | None = None,
        on_stderr: LineCallback | None = None,
    ) -> CommandResult: ...

    def put(self, local_path: str, remote_path: str) -> None: ...

    def close(self) -> None: ...


def fail_on_stderr(line: str) -> bool:
    return bool(line.strip())


def ignore_stderr(line: str) -> bool:
    return False


def stderr_matching(pattern: str) -> StderrPolicy:
    """Treat only stderr lines matching ``pattern`` as failures.

    Useful for tools such as docker that report progress on stderr.
    """
    regex = re.compile(pattern)
    return lambda line: bool(regex.search(line))


def load_private_key(text: str) -> paramiko.PKey:
    """Parse an OpenSSH/PEM private key given as text."""
    for key_class in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
        try:
            return key_class.from_private_key(io.StringIO(text))
        except (paramiko.SSHException, ValueError):
            continue
    raise ConfigurationError("Could not parse the deploy user's private key")


class FabricExecutor:
    """RemoteExecutor over SSH using fabric."""

    def __init__(self, connect_timeout: int = 30):
        self.connect_timeout = connect_timeout
        self._conn: Connection | None = None
        self.host: str | None = None

    def __enter__(self) -> "FabricExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def connect(self, host: str, credentials: SSHCredentials) -> None:
        connect_kwargs: dict = {"timeout": self.connect_timeout}
        if credentials.get("private_key"):
            connect_kwargs["pkey"] = load_private_key(credentials["private_key"])
            connect_kwargs["look_for_keys"] = False
            connect_kwargs["allow_agent"] = False
        elif credentials.get("key_filename"):
            connect_kwargs["key_filename"] = credentials["key_filename"]
        else:
            connect_kwargs["look_for_keys"] = True

        conn = Connection(
            host,
            user=credentials.get("user", "deploy"),
            port=credentials.get("port", 22),
            connect_kwargs=connect_kwargs,
        )
        try:
            conn.open()
        except Exception as e:
            conn.close()
            raise RemoteConnectionError(
                f"ssh {host}", message=f"SSH connection to '{host}' failed: {e}"
            ) from e
        self._conn = conn
        self.host = host

    @property
    def connection(self) -> Connection:
        if self._conn is None:
            raise RemoteConnectionError("", message="Not connected; call connect() first")
        return self._conn

    def run(
        self,
        command: str,
        *,
        cwd: str | None = None,
        on_stdout: LineCallback | None = None,
        on_stderr: LineCallback | None = None,
    ) -> CommandResult:
        out = LineStream(on_stdout or debug)
        err = LineStream(on_stderr or debug)
        conn = self.connection
        try:
            if cwd:
                with conn.cd(cwd):
                    result = conn.run(
                        command, hide=True, warn=True, in_stream=False,
                        out_stream=out, err_stream=err,
                    )
            else:
                result = conn.run(
                    command, hide=True, warn=True, in_stream=False,
                    out_stream=out, err_stream=err,
                )
        except UnexpectedExit as e:
            result = e.result
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise RemoteConnectionError(
                command, message=f"Lost connection while running '{command}': {e}"
            ) from e
        finally:
            out.flush()
            err.flush()
        return CommandResult(
            command=command,
            exit_status=result.exited,
            stdout=out.lines,
            stderr=err.lines,
        )

    def put(self, local_path: str, remote_path: str) -> None:
        try:
            self.connection.put(local_path, remote=remote_path)
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise RemoteConnectionError(
                f"put {remote_path}",
                message=f"Copying '{local_path}' to '{remote_path}' failed: {e}",
            ) from e

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
