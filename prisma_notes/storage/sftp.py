from __future__ import annotations

import logging
import posixpath
import socket
from io import BytesIO
from typing import Any, Callable

import paramiko
from tenacity import retry

from ..config import SftpSettings
from ..errors import ConfigurationError, TransportError
from ..http import RETRY_CONFIG
from . import NoteMetadata, PublishReceipt

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 15


class SftpConnection:
    """A paramiko SSH session and the SFTP channel opened on top of it."""

    def __init__(self, ssh: paramiko.SSHClient, sftp: paramiko.SFTPClient) -> None:
        self.ssh = ssh
        self.sftp = sftp

    def close(self) -> None:
        try:
            self.sftp.close()
        finally:
            self.ssh.close()


@retry(**RETRY_CONFIG)
def open_connection(settings: SftpSettings) -> SftpConnection:
    if not settings.private_key_path and not settings.password:
        raise ConfigurationError("No SFTP authentication method configured (SFTP_PASSWORD or SFTP_PRIVATE_KEY_PATH)")

    ssh = paramiko.SSHClient()
    ssh.load_system_host_keys()
    if settings.strict_host_keys:
        ssh.set_missing_host_key_policy(paramiko.RejectPolicy())
    else:
        ssh.set_missing_host_key_policy(paramiko.WarningPolicy())

    auth: dict[str, Any] = {}
    if settings.private_key_path:
        auth["key_filename"] = settings.private_key_path
        auth["look_for_keys"] = False
    else:
        auth["password"] = settings.password
        auth["look_for_keys"] = False
        auth["allow_agent"] = False

    try:
        ssh.connect(
            settings.host,
            port=settings.port,
            username=settings.username,
            timeout=CONNECT_TIMEOUT,
            **auth,
        )
        return SftpConnection(ssh, ssh.open_sftp())
    except paramiko.AuthenticationException as exc:
        ssh.close()
        raise TransportError(f"SFTP authentication failed for {settings.username}@{settings.host}", status=401) from exc
    except (paramiko.SSHException, socket.error, OSError) as exc:
        ssh.close()
        raise TransportError(f"Unable to connect to SFTP server {settings.host}:{settings.port}: {exc}") from exc


class SftpBackend:
    name = "sftp"

    def __init__(
        self,
        settings: SftpSettings,
        environment: str,
        cover_base_url: str,
        connect: Callable[[SftpSettings], SftpConnection] = open_connection,
    ) -> None:
        self.settings = settings
        self.environment = environment
        self.cover_base_url = cover_base_url.rstrip("/")
        self._connect = connect
        self._connection: SftpConnection | None = None
        self.uploaded: list[str] = []

    @property
    def environment_path(self) -> str:
        return posixpath.join(self.settings.base_path, self.environment)

    def remote_dir(self, directory: str = "") -> str:
        if directory:
            return posixpath.join(self.environment_path, directory.strip("/"))
        return self.environment_path

    @property
    def sftp(self) -> paramiko.SFTPClient:
        if self._connection is None:
            self._connection = self._connect(self.settings)
        return self._connection.sftp

    def exists(self, remote_path: str) -> bool:
        try:
            self.sftp.stat(remote_path)
        except FileNotFoundError:
            return False
        return True

    def ensure_directory(self, remote_path: str) -> None:
        current = "/" if remote_path.startswith("/") else ""
        for part in [chunk for chunk in remote_path.split("/") if chunk]:
            current = posixpath.join(current, part) if current else part
            if not self.exists(current):
                self.sftp.mkdir(current)
                logger.info("Created remote directory %s", current)

    def upload_bytes(self, data: bytes, file_name: str, directory: str = "") -> str:
        if "/" in file_name or file_name in {"", ".", ".."}:
            raise ValueError(f"Invalid remote file name: {file_name!r}")
        remote_dir = self.remote_dir(directory)
        try:
            self.ensure_directory(remote_dir)
            remote_path = posixpath.join(remote_dir, file_name)
            self.sftp.putfo(BytesIO(data), remote_path)
        except (OSError, paramiko.SSHException) as exc:
            raise TransportError(f"SFTP upload of {file_name} failed: {exc}") from exc
        self.uploaded.append(remote_path)
        logger.info("Uploaded %s (%d bytes)", remote_path, len(data))
        return remote_path

    def upload_cover(self, file_name: str, data: bytes) -> str:
        self.upload_bytes(data, file_name, self.settings.covers_dir)
        return f"{self.cover_base_url}/{file_name}"

    def upload_note(self, file_name: str, text: str) -> str:
        return self.upload_bytes(text.encode("utf-8"), file_name, self.settings.notes_dir)

    def finish(self, metadata: NoteMetadata) -> PublishReceipt:
        return PublishReceipt(message=f"Uploaded {len(self.uploaded)} files to {self.environment_path}")

    def check_connection(self) -> dict[str, Any]:
        try:
            self.sftp.stat(self.settings.base_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise TransportError(f"SFTP server answered with an error: {exc}") from exc
        return {"environment": self.environment, "basePath": self.settings.base_path}

    def close(self) -> None:
        if self._connection is not None:
            try:
                self._connection.close()
            except (OSError, paramiko.SSHException):
                logger.warning("Error while closing the SFTP connection", exc_info=True)
            self._connection = None
