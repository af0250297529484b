"""
SSH transport for backup runs.

Opens an authenticated paramiko session to a server, runs single commands and
hands out SFTP channels. Credentials are tried in a fixed precedence:
password, stored key, system key path, inline key content.
"""

import io
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import paramiko
from paramiko import SSHClient, AutoAddPolicy

from pullkeeper.errors import AuthenticationError, TransportError
from pullkeeper.store import ServerSpec

logger = logging.getLogger(__name__)

# Key types tried, in order, when loading inline key content
KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


@dataclass
class CommandResult:
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0 and not self.stderr.strip()


@dataclass(frozen=True)
class AuthMethod:
    """One way of authenticating against a server."""

    mode: str  # 'password', 'stored_key', 'system_key' or 'private_key'
    password: Optional[str] = field(default=None, repr=False)
    key_filename: Optional[str] = None
    key_content: Optional[str] = field(default=None, repr=False)

    @property
    def uses_key(self) -> bool:
        return self.password is None


def credential_candidates(server: ServerSpec) -> List[AuthMethod]:
    """
    List the server's populated credentials in precedence order.

    A stored key contributes its content when present, else its file path.
    """
    candidates = []

    if server.password:
        candidates.append(AuthMethod('password', password=server.password))

    key = server.stored_key
    if key is not None:
        if key.private_key_content:
            candidates.append(AuthMethod('stored_key', key_content=key.private_key_content))
        elif key.private_key_path:
            candidates.append(AuthMethod('stored_key', key_filename=str(Path(key.private_key_path).expanduser())))

    if server.system_key_path:
        candidates.append(AuthMethod('system_key', key_filename=str(Path(server.system_key_path).expanduser())))

    if server.private_key:
        candidates.append(AuthMethod('private_key', key_content=server.private_key))

    return candidates


def load_private_key(content: str) -> paramiko.PKey:
    """
    Parse private key text of any supported type.

    Raises:
        AuthenticationError: If no key type accepts the content
    """
    last_error = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(content))
        except (paramiko.SSHException, ValueError) as e:
            last_error = e
    raise AuthenticationError(f"Unsupported or invalid private key: {last_error}")


def _auth_kwargs(auth: AuthMethod) -> dict:
    if auth.password is not None:
        return {'password': auth.password}

    if auth.key_content:
        return {'pkey': load_private_key(auth.key_content)}

    if not Path(auth.key_filename).exists():
        raise AuthenticationError(f"Private key not found: {auth.key_filename}")
    return {'key_filename': auth.key_filename}


class RemoteSession:
    """An open SSH connection to one server."""

    def __init__(self, client: SSHClient, server: ServerSpec, auth: AuthMethod):
        self.client = client
        self.server = server
        self.auth = auth

    def run(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Run a command on the remote host and wait for it to finish.

        Raises:
            TransportError: If the command cannot be executed
        """
        try:
            _, stdout, stderr = self.client.exec_command(command, timeout=timeout)
            out = stdout.read().decode('utf-8', errors='replace')
            err = stderr.read().decode('utf-8', errors='replace')
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"Failed to run remote command on {self.server.host}: {e}")

        return CommandResult(stdout=out, stderr=err, exit_status=exit_status)

    def open_sftp(self) -> paramiko.SFTPClient:
        """
        Open a new SFTP channel on this connection.

        Raises:
            TransportError: If the server refuses the SFTP subsystem
        """
        try:
            return self.client.open_sftp()
        except (paramiko.SSHException, OSError) as e:
            raise TransportError(f"SFTP unavailable on {self.server.host}: {e}")

    def close(self):
        """Close the SSH connection."""
        if self.client:
            try:
                self.client.close()
            except Exception as e:
                logger.warning(f"Error closing SSH connection to {self.server.host}: {e}")
            self.client = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def connect(server: ServerSpec, timeout: float = 30) -> RemoteSession:
    """
    Open an SSH session, trying each populated credential in precedence order.

    Raises:
        AuthenticationError: If no credential is configured or all are rejected
        TransportError: If the host cannot be reached
    """
    candidates = credential_candidates(server)
    if not candidates:
        raise AuthenticationError(f"No credentials configured for server {server.name}")

    failures = []

    for auth in candidates:
        client = SSHClient()
        client.set_missing_host_key_policy(AutoAddPolicy())

        try:
            client.connect(
                hostname=server.host,
                port=server.port,
                username=server.username,
                timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
                **_auth_kwargs(auth)
            )
        except (paramiko.AuthenticationException, AuthenticationError) as e:
            client.close()
            logger.info(f"Authentication via {auth.mode} rejected for {server.address}: {e}")
            failures.append(f"{auth.mode}: {e}")
            continue
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise TransportError(f"Failed to connect to {server.address}: {e}")

        logger.debug(f"Connected to {server.address} using {auth.mode}")
        return RemoteSession(client, server, auth)

    raise AuthenticationError(
        f"SSH authentication failed for {server.address} ({'; '.join(failures)})"
    )


def test_connection(server: ServerSpec, timeout: float = 30) -> dict:
    """
    Check that a server accepts our credentials and runs commands.

    Returns:
        Dict with 'success' and, on failure, 'message'
    """
    try:
        with connect(server, timeout=timeout) as session:
            result = session.run('echo "Connection successful"', timeout=timeout)
    except (AuthenticationError, TransportError) as e:
        logger.warning(f"Connection test failed for server {server.name}: {e}")
        return {'success': False, 'message': str(e)}

    if 'Connection successful' in result.stdout:
        return {'success': True}

    return {
        'success': False,
        'message': f"Unexpected response: {result.stdout or result.stderr}"
    }
