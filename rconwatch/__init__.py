"""
rconwatch — BattlEye RCON console client with a live player roster.

Pipeline:
    RconSession (UDP) → PlayersQuery ("players" gathering) → PlayerRoster
    log-line events (PlayerJoined / PlayerUpdate) ────────────↗
"""

__version__ = "0.1.0"
