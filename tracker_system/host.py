"""
Contract expected from the game server hosting the tracker.

The host filters bots and spectators (HLTV) out of the roster itself; the
tracker counts whatever identities it is given.
"""

from typing import Any, Optional, Protocol, Set, runtime_checkable

from loggers.logger_setup import get_logger

logger = get_logger("HostServer")

DEFAULT_SERVER_SLOTS = 10


@runtime_checkable
class HostServer(Protocol):
    def current_capacity(self) -> int:
        """Maximum number of player slots on the server."""
        ...

    def current_roster(self) -> Set[Any]:
        """Identities of the real players connected right now."""
        ...

    def current_context_name(self) -> Optional[str]:
        """Name of the running map, or None when unknown."""
        ...


def connected_players_count(host: HostServer) -> int:
    roster = host.current_roster()
    count = len(roster)
    logger.debug(f"Connected non-bot players: {count}")
    return count


def server_slots(host: HostServer, fallback: int = DEFAULT_SERVER_SLOTS) -> int:
    try:
        return int(host.current_capacity())
    except Exception as e:
        logger.warning(f"⚠️ Could not read server slots, using {fallback}: {e}")
        return fallback


def current_map_name(host: HostServer) -> Optional[str]:
    try:
        return host.current_context_name() or None
    except Exception as e:
        logger.debug(f"Map name unavailable - {e}")
        return None
