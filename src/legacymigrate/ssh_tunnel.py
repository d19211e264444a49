"""
SSH tunnel to the legacy database host.

Opens an authenticated SSH session and forwards a local TCP port, bound to
127.0.0.1 only, to a host:port reachable from the SSH server.

Bootstrap uses the shared retry executor with a fixed delay between
attempts. Authentication failures are retried the same way as network
failures.

Example:
    >>> tunnel = await open_tunnel(
    ...     config.ssh, local_port=5433, remote_host="localhost", remote_port=5432
    ... )
    >>> dsn_port = tunnel.local_port
    >>> await tunnel.close()
"""

from __future__ import annotations

import asyncio
import logging

import asyncssh

from legacymigrate.config import SSHConfig
from legacymigrate.exceptions import TunnelConnectionError
from legacymigrate.retry import RetryConfig, RetryStats, with_retry

logger = logging.getLogger(__name__)

LOCAL_BIND_HOST = "127.0.0.1"


class SSHTunnel:
    """
    An open SSH session with one forwarded local port.

    Owned by the DatabaseClient for the duration of the run. ``close()``
    releases the listener and the session and may be called any number of
    times.
    """

    def __init__(
        self,
        connection: asyncssh.SSHClientConnection,
        listener: asyncssh.SSHListener,
        remote_host: str,
        remote_port: int,
    ) -> None:
        self._connection: asyncssh.SSHClientConnection | None = connection
        self._listener: asyncssh.SSHListener | None = listener
        self.local_port: int = listener.get_port()
        self.remote_host = remote_host
        self.remote_port = remote_port

    @property
    def local_host(self) -> str:
        """Address the local end of the tunnel is bound to."""
        return LOCAL_BIND_HOST

    @property
    def is_active(self) -> bool:
        """True until close() is called."""
        return self._connection is not None and self._listener is not None

    async def validate(self) -> bool:
        """
        Check the SSH session by running a no-op remote command.

        Returns:
            True if the command completed successfully
        """
        if self._connection is None:
            return False
        try:
            await self._connection.run("true", check=True)
        except (asyncssh.Error, OSError) as e:
            logger.warning(
                f"SSH tunnel validation failed: {e}",
                extra={"local_port": self.local_port, "error_type": type(e).__name__},
            )
            return False
        return True

    async def close(self) -> None:
        """Close the local listener, then the SSH session. Idempotent."""
        listener, self._listener = self._listener, None
        connection, self._connection = self._connection, None

        if listener is None and connection is None:
            return

        try:
            if listener is not None:
                listener.close()
                await listener.wait_closed()
        finally:
            if connection is not None:
                connection.close()
                await connection.wait_closed()

        logger.info(
            "SSH tunnel closed",
            extra={"local_port": self.local_port, "remote_port": self.remote_port},
        )

    def __repr__(self) -> str:
        state = "active" if self.is_active else "closed"
        return (
            f"SSHTunnel({LOCAL_BIND_HOST}:{self.local_port} -> "
            f"{self.remote_host}:{self.remote_port}, {state})"
        )


async def _connect_once(
    ssh_config: SSHConfig,
    local_port: int,
    remote_host: str,
    remote_port: int,
) -> SSHTunnel:
    key_path = ssh_config.expanded_key_path
    connection = await asyncio.wait_for(
        asyncssh.connect(
            ssh_config.host,
            port=ssh_config.port,
            username=ssh_config.username,
            client_keys=[str(key_path)] if key_path else None,
            passphrase=(
                ssh_config.passphrase.get_secret_value() if ssh_config.passphrase else None
            ),
            password=ssh_config.password.get_secret_value() if ssh_config.password else None,
            known_hosts=str(ssh_config.known_hosts) if ssh_config.known_hosts else None,
        ),
        timeout=ssh_config.connect_timeout,
    )

    try:
        listener = await connection.forward_local_port(
            LOCAL_BIND_HOST, local_port, remote_host, remote_port
        )
    except BaseException:
        connection.close()
        raise

    return SSHTunnel(connection, listener, remote_host, remote_port)


async def open_tunnel(
    ssh_config: SSHConfig,
    local_port: int,
    remote_host: str,
    remote_port: int,
    max_retries: int = 3,
    retry_delay: float = 2.0,
) -> SSHTunnel:
    """
    Open an SSH session and forward a local port to ``remote_host:remote_port``.

    Returns once the local listener is bound. Every failed attempt waits a
    fixed ``retry_delay`` before the next one.

    Args:
        ssh_config: SSH host and credentials
        local_port: Local port to bind (0 picks a free port)
        remote_host: Host to forward to, as seen from the SSH server
        remote_port: Port to forward to
        max_retries: Total number of attempts
        retry_delay: Seconds between attempts

    Returns:
        The open SSHTunnel

    Raises:
        TunnelConnectionError: If every attempt failed; the last failure is
            chained as ``__cause__``
    """
    stats = RetryStats()
    logger.info(
        f"Opening SSH tunnel via {ssh_config.host}:{ssh_config.port}",
        extra={
            "ssh_host": ssh_config.host,
            "local_port": local_port,
            "remote_host": remote_host,
            "remote_port": remote_port,
        },
    )

    try:
        tunnel = await with_retry(
            lambda: _connect_once(ssh_config, local_port, remote_host, remote_port),
            config=RetryConfig.fixed(max_retries, retry_delay),
            classifier=lambda _e: True,
            operation_name="ssh_tunnel",
            stats=stats,
        )
    except Exception as e:
        raise TunnelConnectionError(
            f"Failed to open SSH tunnel to {ssh_config.host}:{ssh_config.port} "
            f"after {stats.attempts} attempts: {e}",
            attempts=stats.attempts,
            metadata={"ssh_host": ssh_config.host, "local_port": local_port},
        ) from e

    logger.info(
        f"SSH tunnel ready: {LOCAL_BIND_HOST}:{tunnel.local_port} -> {remote_host}:{remote_port}",
        extra={"local_port": tunnel.local_port, "attempts": stats.attempts},
    )
    return tunnel


__all__ = [
    "LOCAL_BIND_HOST",
    "SSHTunnel",
    "open_tunnel",
]
