"""
rconwatch — Service Module

Components:
    server.py      — RconService: session + players poll + roster + events
    supervisor.py  — Reconnect loop with exponential backoff
"""

from rconwatch.service.server import RconService
from rconwatch.service.supervisor import ReconnectSupervisor
