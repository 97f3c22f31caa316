"""
Crowdflash wire protocol.

Every frame is a JSON text frame carrying one object, discriminated by its
``type`` string. Inbound frames are parsed into typed messages, one frozen
dataclass per wire type:

    Admin console ──> server    AdminCommand subclasses (flash_on, set_bpm, ...)
    Device        ──> server    ClientMessage subclasses (battery, heartbeat)
    server        ──> everyone  plain dicts built by the *_event() helpers

Anything that does not decode to an object with a registered ``type`` and
valid fields parses to ``None`` and is dropped by the caller.
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type, Union

from crowdflash.event_log import LogEntry, LogType

logger = logging.getLogger(__name__)

MAX_PATTERN_LENGTH = 64

# ---------------------------------------------------------------------------
# Field validation helpers
# ---------------------------------------------------------------------------


def _finite_number(val: Any) -> Optional[Union[int, float]]:
    """Return ``val`` if it is a finite JSON number, else None.

    Booleans are rejected even though they subclass int. Ints stay ints so
    they round-trip to clients unchanged.
    """
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return None
    if isinstance(val, float) and not math.isfinite(val):
        return None
    return val


def _clamp_number(val: Any, lo: Union[int, float], hi: Union[int, float]):
    """Clamp a finite number to [lo, hi]; None if ``val`` is not a finite number."""
    num = _finite_number(val)
    if num is None:
        return None
    return max(lo, min(hi, num))


def _clean_battery_level(val: Any) -> Optional[int]:
    """Battery percentage as an int in [0, 100], or None if unusable."""
    num = _finite_number(val)
    if num is None:
        return None
    return int(max(0, min(100, math.floor(num + 0.5))))


def _clean_string(val: Any, max_length: int) -> Optional[str]:
    if not isinstance(val, str):
        return None
    val = val.strip()
    if not val or len(val) > max_length:
        return None
    return val


# ---------------------------------------------------------------------------
# Admin -> server commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AdminCommand:
    """Base class for commands sent by the admin console.

    ``log_type`` is the event log category for the command, or None if the
    command is never logged.
    """

    wire_type: ClassVar[str] = ""
    log_type: ClassVar[Optional[LogType]] = LogType.CMD

    @classmethod
    def from_dict(cls, data: dict) -> Optional["AdminCommand"]:
        return cls()

    def to_client_event(self) -> Optional[dict]:
        """Event broadcast to every device, or None if nothing is broadcast."""
        return {"type": self.wire_type}

    def log_message(self) -> str:
        return self.wire_type


@dataclass(frozen=True)
class FlashOn(AdminCommand):
    wire_type: ClassVar[str] = "flash_on"

    def log_message(self) -> str:
        return "Master trigger: FLASH ON"


@dataclass(frozen=True)
class FlashOff(AdminCommand):
    wire_type: ClassVar[str] = "flash_off"

    def log_message(self) -> str:
        return "Master trigger: FLASH OFF"


@dataclass(frozen=True)
class FlashPattern(AdminCommand):
    wire_type: ClassVar[str] = "flash_pattern"

    pattern: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> Optional["FlashPattern"]:
        pattern = _clean_string(data.get("pattern"), MAX_PATTERN_LENGTH)
        if pattern is None:
            return None
        return cls(pattern=pattern)

    def to_client_event(self) -> dict:
        return {"type": self.wire_type, "pattern": self.pattern}

    def log_message(self) -> str:
        return f"Triggered pattern: {self.pattern}"


@dataclass(frozen=True)
class FlashPulse(AdminCommand):
    """Single timed flash. Sent at beat rate, so it is never logged."""

    wire_type: ClassVar[str] = "flash_pulse"
    log_type: ClassVar[Optional[LogType]] = None

    duration: Union[int, float] = 0

    @classmethod
    def from_dict(cls, data: dict) -> Optional["FlashPulse"]:
        duration = _clamp_number(data.get("duration"), 0, 10_000)
        if duration is None:
            return None
        return cls(duration=duration)

    def to_client_event(self) -> dict:
        return {"type": self.wire_type, "duration": self.duration}


@dataclass(frozen=True)
class SetBpm(AdminCommand):
    wire_type: ClassVar[str] = "set_bpm"
    log_type: ClassVar[Optional[LogType]] = LogType.SYS

    bpm: Union[int, float] = 0

    @classmethod
    def from_dict(cls, data: dict) -> Optional["SetBpm"]:
        bpm = _clamp_number(data.get("bpm"), 0, 300)
        if bpm is None:
            return None
        return cls(bpm=bpm)

    def to_client_event(self) -> dict:
        return {"type": self.wire_type, "bpm": self.bpm}

    def log_message(self) -> str:
        return f"BPM updated to {self.bpm}"


@dataclass(frozen=True)
class SetStrobe(AdminCommand):
    wire_type: ClassVar[str] = "set_strobe"
    log_type: ClassVar[Optional[LogType]] = LogType.SYS

    hz: Union[int, float] = 0

    @classmethod
    def from_dict(cls, data: dict) -> Optional["SetStrobe"]:
        hz = _clamp_number(data.get("hz"), 0, 60)
        if hz is None:
            return None
        return cls(hz=hz)

    def to_client_event(self) -> dict:
        return {"type": self.wire_type, "hz": self.hz}

    def log_message(self) -> str:
        return f"Strobe rate set to {self.hz} Hz"


@dataclass(frozen=True)
class CountdownStart(AdminCommand):
    wire_type: ClassVar[str] = "countdown_start"

    seconds: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> Optional["CountdownStart"]:
        seconds = _clamp_number(data.get("seconds"), 0, 3600)
        if seconds is None:
            return None
        return cls(seconds=int(seconds))

    def to_client_event(self) -> dict:
        return {"type": self.wire_type, "seconds": self.seconds}

    def log_message(self) -> str:
        return f"Countdown started: {self.seconds}s"


@dataclass(frozen=True)
class StartRecording(AdminCommand):
    wire_type: ClassVar[str] = "start_recording"

    def log_message(self) -> str:
        return "Recording started on all devices"


@dataclass(frozen=True)
class StopRecording(AdminCommand):
    wire_type: ClassVar[str] = "stop_recording"

    def log_message(self) -> str:
        return "Recording stopped on all devices"


@dataclass(frozen=True)
class DisconnectClient(AdminCommand):
    """Force-close one device. Logged by the router only if the device exists."""

    wire_type: ClassVar[str] = "disconnect_client"

    client_id: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> Optional["DisconnectClient"]:
        client_id = _clean_string(data.get("id"), 32)
        if client_id is None:
            return None
        return cls(client_id=client_id)

    def to_client_event(self) -> None:
        return None

    def log_message(self) -> str:
        return f"Admin disconnected device {self.client_id}"


@dataclass(frozen=True)
class EmergencyStop(AdminCommand):
    wire_type: ClassVar[str] = "emergency_stop"
    log_type: ClassVar[Optional[LogType]] = LogType.ERR

    def log_message(self) -> str:
        return "EMERGENCY STOP triggered - all devices reset"


# ---------------------------------------------------------------------------
# Device -> server messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClientMessage:
    """Base class for messages sent by participant devices."""

    wire_type: ClassVar[str] = ""

    @classmethod
    def from_dict(cls, data: dict) -> Optional["ClientMessage"]:
        return cls()


@dataclass(frozen=True)
class BatteryReport(ClientMessage):
    wire_type: ClassVar[str] = "battery"

    level: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> Optional["BatteryReport"]:
        level = _clean_battery_level(data.get("level"))
        if level is None:
            return None
        return cls(level=level)


@dataclass(frozen=True)
class Heartbeat(ClientMessage):
    wire_type: ClassVar[str] = "heartbeat"


def _registry(classes: Tuple[type, ...]) -> Dict[str, type]:
    table = {}
    for cls in classes:
        if not cls.wire_type or cls.wire_type in table:
            raise ValueError(f"Invalid or duplicate wire type for {cls.__name__}")
        table[cls.wire_type] = cls
    return table


ADMIN_COMMANDS: Dict[str, Type[AdminCommand]] = _registry(
    (
        FlashOn,
        FlashOff,
        FlashPattern,
        FlashPulse,
        SetBpm,
        SetStrobe,
        CountdownStart,
        StartRecording,
        StopRecording,
        DisconnectClient,
        EmergencyStop,
    )
)

CLIENT_MESSAGES: Dict[str, Type[ClientMessage]] = _registry((BatteryReport, Heartbeat))


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def decode_frame(raw: Union[str, bytes]) -> Optional[dict]:
    """Decode a text frame into a message dict, or None if it is not one."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            logger.debug("Dropping non-UTF-8 binary frame")
            return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        logger.debug("Dropping malformed JSON frame")
        return None
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        logger.debug("Dropping frame without a string 'type' field")
        return None
    return data


def parse_admin_command(data: dict) -> Optional[AdminCommand]:
    """Parse a decoded admin frame. Unknown types and bad fields give None."""
    cls = ADMIN_COMMANDS.get(data.get("type"))
    if cls is None:
        return None
    command = cls.from_dict(data)
    if command is None:
        logger.debug(f"Dropping {cls.wire_type} with invalid fields")
    return command


def parse_client_message(data: dict) -> Optional[ClientMessage]:
    """Parse a decoded device frame. Unknown types and bad fields give None."""
    cls = CLIENT_MESSAGES.get(data.get("type"))
    if cls is None:
        return None
    message = cls.from_dict(data)
    if message is None:
        logger.debug(f"Dropping {cls.wire_type} with invalid fields")
    return message


def encode(message: dict) -> str:
    """Serialize an outbound message as compact JSON."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Server -> peer events
# ---------------------------------------------------------------------------


def connected_event(client_id: str) -> dict:
    return {"type": "connected", "id": client_id}


def client_count_event(count: int) -> dict:
    return {"type": "client_count", "count": count}


def heartbeat_ack_event() -> dict:
    return {"type": "heartbeat_ack"}


def unauthorized_event() -> dict:
    return {"type": "error", "message": "Unauthorized"}


def log_entry_event(entry: LogEntry) -> dict:
    return {"type": "log_entry", "entry": entry.to_dict()}


def log_history_event(entries: List[LogEntry]) -> dict:
    return {"type": "log_history", "entries": [e.to_dict() for e in entries]}


def device_list_event(devices: List[dict]) -> dict:
    return {"type": "device_list", "devices": devices}
