"""Palworld bridge for Takaro.

Relays Takaro control-channel requests to a Palworld dedicated server and its
embedded TakaroChat Lua mod, which can only poll the bridge over local HTTP.
"""

__version__ = "1.5.0"
