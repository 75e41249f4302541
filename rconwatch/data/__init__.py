from .events import LogEventParser, PlayerDisconnected, PlayerJoined, PlayerUpdate
from .roster import Player, PlayerRoster

__all__ = [
    "LogEventParser", "PlayerJoined", "PlayerUpdate", "PlayerDisconnected",
    "Player", "PlayerRoster",
]
