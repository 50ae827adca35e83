"""
Typed data models for Spotify Web API entities

Every value that crosses the remote client boundary is one of these models:
identifiers are parsed into PlayableId instead of travelling as raw strings,
responses are converted with `from_spotify_data()` factories, and all models
are frozen so snapshots held by the renderer can never change underneath it.

Models:
- ItemKind / RepeatMode: closed enumerations used in identifiers and playback state
- PlayableId: parsed "spotify:<kind>:<id>" identifier
- Device: Spotify Connect device
- TrackItem: track or episode with display metadata
- PlaybackSnapshot: the whole now-playing state, replaced as one value
- Page: one page of a paginated library or search listing
- UserProfile: the authenticated account

`from_spotify_data()` raises KeyError/TypeError/ValueError on unexpected
shapes; the client turns those into Malformed.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, NewType, Optional, Tuple

from ..utils.helpers import format_duration


DeviceId = NewType('DeviceId', str)

_URI_PATTERN = re.compile(r'^spotify:(track|episode|album|playlist|artist|show):([A-Za-z0-9]+)$')
_URL_PATTERN = re.compile(r'^https?://open\.spotify\.com/(?:intl-[a-z]+/)?(track|episode|album|playlist|artist|show)/([A-Za-z0-9]+)')


class ItemKind(Enum):
    """Kinds of Spotify objects addressable by URI"""
    TRACK = "track"
    EPISODE = "episode"
    ALBUM = "album"
    PLAYLIST = "playlist"
    ARTIST = "artist"
    SHOW = "show"

    @property
    def playable(self) -> bool:
        """True for items that can be loaded into a player directly."""
        return self in (ItemKind.TRACK, ItemKind.EPISODE)


class RepeatMode(Enum):
    """Repeat states understood by the Web API"""
    OFF = "off"
    TRACK = "track"
    CONTEXT = "context"


@dataclass(frozen=True)
class PlayableId:
    """
    Parsed Spotify identifier

    Attributes:
        kind: Object kind (track, episode, playlist...)
        id: Base62 Spotify id
    """
    kind: ItemKind
    id: str

    @property
    def uri(self) -> str:
        return f"spotify:{self.kind.value}:{self.id}"

    @classmethod
    def from_uri(cls, value: str) -> 'PlayableId':
        """
        Parse a spotify: URI or an open.spotify.com link

        Args:
            value: "spotify:track:<id>" or "https://open.spotify.com/track/<id>"

        Returns:
            PlayableId instance

        Raises:
            ValueError: If the value is not a recognised Spotify identifier
        """
        value = (value or "").strip()
        match = _URI_PATTERN.match(value) or _URL_PATTERN.match(value)
        if not match:
            raise ValueError(f"Not a Spotify URI: {value!r}")
        return cls(ItemKind(match.group(1)), match.group(2))

    @classmethod
    def track(cls, track_id: str) -> 'PlayableId':
        return cls(ItemKind.TRACK, track_id)

    def __str__(self) -> str:
        return self.uri


@dataclass(frozen=True)
class Device:
    """Spotify Connect device as reported by GET /me/player/devices"""
    id: DeviceId
    name: str
    type: str = "Unknown"
    is_active: bool = False
    is_restricted: bool = False
    volume_percent: Optional[int] = None

    @classmethod
    def from_spotify_data(cls, data: Dict[str, Any]) -> 'Device':
        return cls(
            id=DeviceId(data['id']),
            name=data.get('name') or "Unknown device",
            type=data.get('type') or "Unknown",
            is_active=bool(data.get('is_active', False)),
            is_restricted=bool(data.get('is_restricted', False)),
            volume_percent=data.get('volume_percent'),
        )

    @property
    def usable(self) -> bool:
        """Restricted devices reject playback control calls."""
        return not self.is_restricted


@dataclass(frozen=True)
class TrackItem:
    """
    Track or episode with the metadata the renderer needs

    Attributes:
        item: Parsed identifier
        name: Title
        artists: Artist names (show name for episodes)
        album: Album name (empty for episodes)
        duration_ms: Length in milliseconds
    """
    item: PlayableId
    name: str
    artists: Tuple[str, ...] = ()
    album: str = ""
    duration_ms: int = 0

    @classmethod
    def from_spotify_data(cls, data: Dict[str, Any]) -> 'TrackItem':
        """
        Build from a track or episode object

        Accepts the wrapped forms used by saved tracks, playlist items and
        recently played ({'track': {...}}) as well as bare objects.
        """
        if 'track' in data and isinstance(data['track'], dict):
            data = data['track']

        item = PlayableId.from_uri(data['uri'])
        if item.kind is ItemKind.EPISODE:
            show = data.get('show') or {}
            artists = (show.get('name', ""),) if show.get('name') else ()
            album = ""
        else:
            artists = tuple(artist['name'] for artist in data.get('artists') or [])
            album = (data.get('album') or {}).get('name', "")

        return cls(
            item=item,
            name=data.get('name') or "",
            artists=artists,
            album=album,
            duration_ms=int(data.get('duration_ms') or 0),
        )

    @property
    def primary_artist(self) -> str:
        return self.artists[0] if self.artists else "Unknown Artist"

    @property
    def all_artists(self) -> str:
        return ", ".join(self.artists)

    @property
    def duration_str(self) -> str:
        return format_duration(self.duration_ms / 1000)


@dataclass(frozen=True)
class PlaybackSnapshot:
    """
    Complete now-playing state

    Replaced as a whole on every successful playback intent or poll; never
    patched field by field.
    """
    item: Optional[PlayableId] = None
    track: Optional[TrackItem] = None
    is_playing: bool = False
    progress_ms: int = 0
    duration_ms: int = 0
    device_id: Optional[DeviceId] = None
    device_name: str = ""
    shuffle: bool = False
    repeat: RepeatMode = RepeatMode.OFF
    volume_percent: Optional[int] = None
    context_uri: Optional[str] = None

    @classmethod
    def from_spotify_data(cls, data: Dict[str, Any]) -> 'PlaybackSnapshot':
        """Build from a GET /me/player response."""
        raw_item = data.get('item')
        track = TrackItem.from_spotify_data(raw_item) if raw_item else None
        device = data.get('device') or {}
        context = data.get('context') or {}
        return cls(
            item=track.item if track else None,
            track=track,
            is_playing=bool(data.get('is_playing', False)),
            progress_ms=int(data.get('progress_ms') or 0),
            duration_ms=track.duration_ms if track else 0,
            device_id=DeviceId(device['id']) if device.get('id') else None,
            device_name=device.get('name') or "",
            shuffle=bool(data.get('shuffle_state', False)),
            repeat=RepeatMode(data.get('repeat_state') or "off"),
            volume_percent=device.get('volume_percent'),
            context_uri=context.get('uri'),
        )

    @property
    def title(self) -> str:
        if self.track:
            return f"{self.track.name} - {self.track.all_artists}"
        if self.item:
            return self.item.uri
        return "Nothing playing"


@dataclass(frozen=True)
class Page:
    """
    One page of a paginated listing

    Pages are stored by index; fetching the same page again replaces the
    stored one rather than appending to it.
    """
    index: int
    offset: int
    limit: int
    total: int
    items: Tuple[TrackItem, ...] = field(default_factory=tuple)

    @classmethod
    def from_spotify_data(cls, data: Dict[str, Any], index: int) -> 'Page':
        """
        Build from a Spotify paging object

        Entries that are not playable (removed tracks, local files without
        a URI) are skipped.
        """
        items = []
        for entry in data['items']:
            inner = entry.get('track') if isinstance(entry.get('track'), dict) else entry
            if not inner or not inner.get('uri'):
                continue
            try:
                items.append(TrackItem.from_spotify_data(inner))
            except ValueError:
                # local files use spotify:local: URIs
                continue
        return cls(
            index=index,
            offset=int(data.get('offset') or 0),
            limit=int(data.get('limit') or len(items)),
            total=int(data.get('total') if data.get('total') is not None else len(items)),
            items=tuple(items),
        )

    @property
    def has_next(self) -> bool:
        return self.offset + self.limit < self.total


@dataclass(frozen=True)
class UserProfile:
    """Authenticated account summary"""
    id: str
    display_name: str
    product: str = ""

    @classmethod
    def from_spotify_data(cls, data: Dict[str, Any]) -> 'UserProfile':
        return cls(
            id=data['id'],
            display_name=data.get('display_name') or data['id'],
            product=data.get('product') or "",
        )
