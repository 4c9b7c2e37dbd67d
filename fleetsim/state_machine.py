from typing import Dict, Optional, Tuple


class ChargerStatus:
    AVAILABLE = "AVAILABLE"
    CHARGING = "CHARGING"
    FAULTY = "FAULTY"
    OFFLINE = "OFFLINE"


class ChargingMode:
    SLOW = "SLOW"
    NORMAL = "NORMAL"
    FAST = "FAST"

    # unthrottled current range (A) per mode
    CURRENT_RANGES: Dict[str, Tuple[float, float]] = {
        SLOW: (10.0, 14.0),
        NORMAL: (15.0, 22.0),
        FAST: (23.0, 32.0),
    }

    @classmethod
    def parse(cls, value) -> Optional[str]:
        """Normalize a user supplied mode name, or return None if unknown."""
        if not isinstance(value, str):
            return None
        mode = value.strip().upper()
        if mode in cls.CURRENT_RANGES:
            return mode
        return None


class StopReason:
    USER_STOP = "USER_STOP"
    FAULT = "FAULT"
    FAULT_RECOVERY = "FAULT_RECOVERY"
    IDLE_TIMEOUT = "IDLE_TIMEOUT"
    HEARTBEAT_TIMEOUT = "HEARTBEAT_TIMEOUT"
    FLEET_STOP = "FLEET_STOP"


class StartError:
    CHARGER_BUSY = "CHARGER_BUSY"
    SESSION_EXISTS = "SESSION_EXISTS"
    NOT_FOUND = "NOT_FOUND"


# current throttle window applied when the fleet exceeds the grid limit
THROTTLE_RANGE_A: Tuple[float, float] = (10.0, 15.0)
