"""
Playback routing

`route()` decides which adapter an intent is delegated to. It is a pure
function of the active target and the intent's routing class, so the same
intent against the same target always goes to the same place.
"""

from enum import Enum
from typing import Optional

from ..core.exceptions import RoutingInvalid
from . import PlaybackTarget, RemoteTarget, is_local


class Route(Enum):
    REMOTE = "remote"
    LOCAL = "local"
    NONE = "none"


class RoutingClass(Enum):
    """How an intent relates to the playback target."""
    PLAYBACK = "playback"      # follows the active target
    LIBRARY = "library"        # Web API reads and library writes, always remote
    TRANSFER = "transfer"      # switches the active target; starts on the current one
    STATE = "state"            # pure state transition, no adapter


def route(target: Optional[PlaybackTarget], intent) -> Route:
    """
    Pick the adapter for an intent

    Args:
        target: Active playback target (None before one is chosen, treated
            as the active remote device)
        intent: Any intent; only its `routing` and `origin` attributes are read

    Returns:
        Route.REMOTE, Route.LOCAL or Route.NONE

    Raises:
        RoutingInvalid: If an engine-originated intent arrives while a
            remote target is active
    """
    routing = intent.routing
    if routing is RoutingClass.STATE:
        return Route.NONE
    if routing is RoutingClass.LIBRARY:
        return Route.REMOTE

    target_route = Route.LOCAL if is_local(target) else Route.REMOTE
    origin = getattr(intent, 'origin', None)
    if origin is not None and origin is not target_route:
        raise RoutingInvalid(
            f"{type(intent).__name__} came from the {origin.value} adapter "
            f"but the active target is {target_route.value}",
            details={'intent': type(intent).__name__}
        )
    return target_route


def remote_device(target: Optional[PlaybackTarget]):
    """Device id to pass to the Web API for a target (None = active device)."""
    if isinstance(target, RemoteTarget):
        return target.device_id
    return None
