"""
Portal realtime client.

Listens to the portal backend's change feed for the signed-in user, turns
relevant direct and community messages into deep-link notifications, and
keeps lecture playback progress checkpointed.
"""

__version__ = "0.1.0"
