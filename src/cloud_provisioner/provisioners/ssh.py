"""``RemoteExecutor`` backed by the OpenSSH client.

``connect`` only probes the TCP port so refused/timed-out connections can be
told apart from authentication failures. Authentication and execution run the
``ssh`` binary in an asyncio subprocess; password logins go through
``sshpass -e`` so the password never appears on the command line, and private
keys are written to a 0600 temp file that lives for the session.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from cloud_provisioner.provisioners.runner import (
    ConnectionInfo,
    RemoteAuthenticationError,
    RemoteConnectionError,
)

logger = logging.getLogger(__name__)

# OpenSSH reserves 255 for its own errors (connection, auth); anything else is
# the remote command's status.
_SSH_ERROR_STATUS = 255


@dataclass
class SSHSession:
    host: str
    port: int
    timeout: float
    connection: ConnectionInfo | None = None
    key_path: Path | None = None


class SSHExecutor:
    def __init__(
        self,
        *,
        ssh_binary: str = "ssh",
        sshpass_binary: str = "sshpass",
        strict_host_key_checking: bool = False,
    ) -> None:
        self._ssh = ssh_binary
        self._sshpass = sshpass_binary
        self._strict = strict_host_key_checking

    async def connect(self, host: str, port: int, timeout: float) -> SSHSession:
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        except TimeoutError as exc:
            raise RemoteConnectionError(f"timed out connecting to {host}:{port}") from exc
        except OSError as exc:
            raise RemoteConnectionError(f"cannot connect to {host}:{port}: {exc}") from exc
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return SSHSession(host=host, port=port, timeout=timeout)

    async def authenticate(self, session: SSHSession, connection: ConnectionInfo) -> None:
        session.connection = connection
        if connection.private_key is not None and session.key_path is None:
            fd, key_path = tempfile.mkstemp(prefix="provisioner_key_")
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(connection.private_key.get_secret_value())
            os.chmod(key_path, 0o600)
            session.key_path = Path(key_path)

        status, output = await self._exec(session, "true")
        if status == _SSH_ERROR_STATUS:
            raise RemoteAuthenticationError(output.strip() or "ssh login failed")
        if status != 0:
            raise RemoteAuthenticationError(f"login probe exited with status {status}")

    async def run(self, session: SSHSession, script: str) -> tuple[int, str]:
        return await self._exec(session, "bash -s", input_data=script)

    async def close(self, session: SSHSession) -> None:
        if session.key_path is not None:
            with contextlib.suppress(FileNotFoundError):
                session.key_path.unlink()
            session.key_path = None

    def _command(self, session: SSHSession, remote: str) -> tuple[list[str], dict[str, str] | None]:
        conn = session.connection
        if conn is None:
            raise RemoteAuthenticationError("session is not authenticated")

        opts = [
            "-p",
            str(session.port),
            "-o",
            "StrictHostKeyChecking=" + ("yes" if self._strict else "no"),
            "-o",
            "LogLevel=ERROR",
            "-o",
            f"ConnectTimeout={max(1, int(session.timeout))}",
        ]
        if not self._strict:
            opts += ["-o", "UserKnownHostsFile=/dev/null"]
        if session.key_path is not None:
            opts += ["-i", str(session.key_path), "-o", "IdentitiesOnly=yes"]

        target = f"{conn.user}@{session.host}"
        if conn.password is not None:
            env = os.environ.copy()
            env["SSHPASS"] = conn.password.get_secret_value()
            argv = [self._sshpass, "-e", self._ssh, *opts, "-o", "PubkeyAuthentication=no"]
            return [*argv, target, remote], env

        return [self._ssh, *opts, "-o", "BatchMode=yes", target, remote], None

    async def _exec(
        self, session: SSHSession, remote: str, *, input_data: str | None = None
    ) -> tuple[int, str]:
        argv, env = self._command(session, remote)
        logger.debug("Running %s on %s:%d", remote, session.host, session.port)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if input_data is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
        )
        stdout, _ = await proc.communicate(
            input=input_data.encode("utf-8") if input_data is not None else None
        )
        assert proc.returncode is not None
        return proc.returncode, stdout.decode(errors="replace")
