"""Authoritative table of registered clients, owned by the relay.

The registry is the only writer of role state. It enforces the single-display
invariant: at most one client holds :attr:`Role.DISPLAY` at any instant, and a
second claim never displaces the incumbent.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass

from .protocol import Role
from .types import ClientInfo, DimensionReport


class RegistrationRejected(Exception):
    """Base class for refused registrations. The message is the reply reason."""


class RoleOccupiedError(RegistrationRejected):
    pass


class AlreadyRegisteredError(RegistrationRejected):
    pass


@dataclass
class Client:
    """One registered connection.

    Attributes:
        connection: Transport handle (the ROUTER identity frame).
        role: Role granted at registration.
        session_id: Opaque unique token handed to the client.
        registered_at: Monotonic registration time.
        dimensions: Latest dimension report (DISPLAY only).
    """

    connection: bytes
    role: Role
    session_id: str
    registered_at: float
    dimensions: DimensionReport | None = None

    @property
    def info(self) -> ClientInfo:
        return ClientInfo(role=self.role, session_id=self.session_id)


class SessionRegistry:
    """Connection handle -> :class:`Client` map with a display slot."""

    def __init__(self) -> None:
        self._clients: dict[bytes, Client] = {}
        self._display: bytes | None = None

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, connection: bytes) -> bool:
        return connection in self._clients

    def get(self, connection: bytes) -> Client | None:
        return self._clients.get(connection)

    @property
    def display(self) -> Client | None:
        if self._display is None:
            return None
        return self._clients.get(self._display)

    def add(self, connection: bytes, role: Role, now: float | None = None) -> Client:
        """Register ``connection`` under ``role``.

        Raises:
            AlreadyRegisteredError: The connection already holds a role.
            RoleOccupiedError: ``role`` is DISPLAY and a display is registered.
        """
        existing = self._clients.get(connection)
        if existing is not None:
            raise AlreadyRegisteredError(
                f"Connection already registered as {existing.role.value}"
            )
        if role is Role.DISPLAY and self._display is not None:
            raise RoleOccupiedError("Display client already registered")

        client = Client(
            connection=connection,
            role=role,
            session_id=str(uuid.uuid4()),
            registered_at=time.monotonic() if now is None else now,
        )
        self._clients[connection] = client
        if role is Role.DISPLAY:
            self._display = connection
        return client

    def remove(self, connection: bytes) -> Client | None:
        """Drop a client; frees the display slot if it held it."""
        client = self._clients.pop(connection, None)
        if client is not None and connection == self._display:
            self._display = None
        return client

    def snapshot(
        self, role: Role | None = None, exclude: bytes | None = None
    ) -> list[Client]:
        """Materialized list of clients, safe against mid-iteration changes."""
        return [
            client
            for client in list(self._clients.values())
            if (role is None or client.role is role) and client.connection != exclude
        ]

    def counts(self) -> dict[Role, int]:
        result = {role: 0 for role in Role}
        for client in self._clients.values():
            result[client.role] += 1
        return result

    def clear(self) -> None:
        self._clients.clear()
        self._display = None
