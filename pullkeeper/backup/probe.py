"""
Remote capability probe: which transfer tools does the server have?
"""

import logging
import shlex
from dataclasses import dataclass

from pullkeeper.errors import AuthenticationError, TransportError
from pullkeeper.transport import connect

logger = logging.getLogger(__name__)

NOT_FOUND_SENTINEL = '__PULLKEEPER_NOT_FOUND__'


@dataclass(frozen=True)
class Capabilities:
    rsync: bool = False
    scp: bool = False

    def as_dict(self) -> dict:
        return {'rsync': self.rsync, 'scp': self.scp}


def has_tool(session, tool: str) -> bool:
    """
    Ask the remote host whether an executable is on its PATH.

    Present means the sentinel was not printed and nothing came back on stderr.
    Transport failures count as absent.
    """
    command = f"command -v {shlex.quote(tool)} || echo {NOT_FOUND_SENTINEL}"
    try:
        result = session.run(command)
    except TransportError as e:
        logger.warning(f"Capability probe for {tool} failed: {e}")
        return False

    return NOT_FOUND_SENTINEL not in result.stdout and not result.stderr.strip()


def probe_capabilities(session) -> Capabilities:
    """Report rsync and scp availability. Never raises."""
    capabilities = Capabilities(
        rsync=has_tool(session, 'rsync'),
        scp=has_tool(session, 'scp'),
    )
    logger.debug(f"Remote capabilities: {capabilities.as_dict()}")
    return capabilities


def check_capabilities(server, timeout: float = 30) -> dict:
    """
    Connect to a server and report its transfer tools.

    Returns:
        Dict with 'success', 'capabilities' and, on failure, 'message'
    """
    try:
        with connect(server, timeout=timeout) as session:
            capabilities = probe_capabilities(session)
    except (AuthenticationError, TransportError) as e:
        logger.warning(f"Capability check failed for server {server.name}: {e}")
        return {'success': False, 'capabilities': None, 'message': str(e)}

    return {'success': True, 'capabilities': capabilities.as_dict()}
