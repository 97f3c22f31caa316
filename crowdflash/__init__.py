"""
Crowdflash - real-time coordination server for a flashlight mob.

An admin console broadcasts lighting commands (flash, patterns, strobe,
BPM, countdowns) to many participant phones; the phones report battery
and liveness back for an aggregate view.
"""

from .aggregator import Metrics, MetricsAggregator
from .auth import AuthService, InvalidCredentials, hash_password, verify_password
from .broadcast import Broadcaster, Group
from .config import Settings, get_settings
from .event_log import EventLog, LogEntry, LogType
from .registry import Connection, ConnectionRegistry, Role
from .router import CommandRouter
from .server import CrowdflashServer

__all__ = [
    "CrowdflashServer",
    "CommandRouter",
    "Connection",
    "ConnectionRegistry",
    "Role",
    "Broadcaster",
    "Group",
    "EventLog",
    "LogEntry",
    "LogType",
    "Metrics",
    "MetricsAggregator",
    "AuthService",
    "InvalidCredentials",
    "hash_password",
    "verify_password",
    "Settings",
    "get_settings",
]
