"""
obs-link — Keeps a control surface in sync with OBS Studio over obs-websocket.

Modules:
  core/     — WebSocket transport, key codec, connection supervisor
  state/    — State cache (mirror of confirmed OBS state)
  events/   — Event bus, event router, post-connect state refresh
  commands/ — Command dispatcher and on/off switches
  config/   — Settings, env loading, YAML config
  link.py   — OBSLink, the handle that wires it all together
"""

__version__ = "0.4.0"
