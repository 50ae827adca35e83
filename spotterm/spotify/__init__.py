"""
Spotify Web API integration

- client.py: SpotifyClient, the async remote adapter; spotipy and requests
  errors are translated into spotterm exceptions at this boundary
- models.py: identifiers, devices, track metadata, pages and the
  now-playing snapshot
"""
