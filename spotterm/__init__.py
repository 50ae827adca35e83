"""
spotterm: Spotify in your terminal

A terminal Spotify client core. User actions become intents on a single
queue; one dispatcher executes them against either a Spotify Connect device
(through the Web API) or a local playback engine, and publishes the results
as immutable state snapshots for the renderer.

Packages:

**Configuration (`spotterm/config/`)**
- YAML + environment settings
- OAuth2 session manager with a persistent credential cache

**Spotify integration (`spotterm/spotify/`)**
- Typed async facade over spotipy
- Models for devices, tracks, pages and the now-playing snapshot

**Playback (`spotterm/player/`)**
- Playback targets and routing
- Local engine worker and its command/event vocabulary

**Dispatch (`spotterm/dispatch/`)**
- Intents, the coalescing intent queue, shared state and the dispatcher
"""

__version__ = "0.1.0"
