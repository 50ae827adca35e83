"""
Playback targets

Audio comes out of exactly one place at a time: a Spotify Connect device
(RemoteTarget) or the local engine (LocalTarget). The set is closed; routing
code matches on these two classes only.
"""

from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

from ..spotify.models import Device, DeviceId


# Pseudo device id under which the local engine appears in device lists.
LOCAL_DEVICE_ID = "__LOCAL_DEVICE__"
LOCAL_DEVICE_NAME = "This device (spotterm)"


@dataclass(frozen=True)
class RemoteTarget:
    """A Connect device; None means whichever device Spotify reports as active."""
    device_id: Optional[DeviceId] = None


@dataclass(frozen=True)
class LocalTarget:
    """The local playback engine."""
    pass


PlaybackTarget = Union[RemoteTarget, LocalTarget]


def is_local(target: PlaybackTarget) -> bool:
    return isinstance(target, LocalTarget)


def target_for_device_id(device_id: str) -> PlaybackTarget:
    """Map a device selection (possibly the local pseudo id) to a target."""
    if device_id in (LOCAL_DEVICE_ID, "local"):
        return LocalTarget()
    return RemoteTarget(DeviceId(device_id))


def device_choices(devices: Sequence[Device], local_available: bool) -> List[Tuple[str, str]]:
    """
    Build the device selection list

    The local engine, when available, is always listed first.

    Returns:
        (device_id, label) pairs
    """
    choices = []
    if local_available:
        choices.append((LOCAL_DEVICE_ID, LOCAL_DEVICE_NAME))
    for device in devices:
        label = f"{device.name} ({device.type})"
        if device.is_active:
            label += " *"
        choices.append((device.id, label))
    return choices


def describe_target(target: Optional[PlaybackTarget]) -> str:
    if target is None:
        return "none"
    if isinstance(target, LocalTarget):
        return "local"
    return f"remote:{target.device_id or 'active'}"
