"""RC transmitter input for the drive controller.

Channel values arriving over iBUS (nominally 1000..2000) are turned into
switches, gear selection, drive mode and, for the differential-drive robot,
velocity and steering commands.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from enum import IntEnum
from typing import Protocol

__all__ = [
    "Gear",
    "DriveMode",
    "State",
    "RFController",
    "DDRobotRFController",
    "map_range",
]

CH_NULL = 255
_VALID_CHANNEL_MIN = 100  # anything lower means the receiver sent nothing


class Gear(IntEnum):
    FORWARD = 0
    NEUTRAL = 1
    REVERSE = 2
    NONE = 3


class DriveMode(IntEnum):
    MANUAL = 0
    AUTO = 1
    NONE = 2


class State(IntEnum):
    INIT = 0
    MOTOR_IDLE = 1
    RF_IDLE = 2
    DRIVE_READY = 3
    DRIVE_IDLE = 4
    DRIVE_MANUAL = 5
    AUTO_IDLE = 6
    DRIVE_AUTO = 7
    AUTO_FAIL = 8
    ESTOP = 9


class ChannelSource(Protocol):
    """What the controller needs from an iBUS receiver."""

    received_count: int

    def loop(self) -> None: ...

    def read_channel(self, channel: int) -> int: ...


def map_range(value: int, in_min: int, in_max: int, out_min: int, out_max: int) -> int:
    """Linearly rescale an integer, truncating toward zero like integer division."""
    numerator = (value - in_min) * (out_max - out_min)
    denominator = in_max - in_min
    quotient = abs(numerator) // abs(denominator)
    if (numerator < 0) != (denominator < 0):
        quotient = -quotient
    return quotient + out_min


class RFController:
    """Reads the operator's switches and sticks from an iBUS receiver."""

    def __init__(self, ibus: ChannelSource, sleep: Callable[[float], None] = time.sleep) -> None:
        self._ibus = ibus
        self._sleep = sleep
        self._ch_estop = CH_NULL
        self._ch_disconnect = CH_NULL
        self._ch_gear = CH_NULL
        self._ch_drive_mode = CH_NULL
        self._received_count = 0

    def set_channels(self, estop: int, disconnect: int, gear: int, drive_mode: int) -> None:
        """Assign the receiver channels used for each function."""
        self._ch_estop = estop
        self._ch_disconnect = disconnect
        self._ch_gear = gear
        self._ch_drive_mode = drive_mode

    def check_channels(self) -> bool:
        """Return True when the e-stop and disconnect channels are assigned."""
        return self._ch_estop != CH_NULL and self._ch_disconnect != CH_NULL

    def begin(self) -> None:
        """Block until the first servo frame arrives.

        Raises ValueError if the e-stop or disconnect channel is unassigned.
        """
        if not self.check_channels():
            raise ValueError("estop and disconnect channels must be assigned")
        while self._received_count == 0:
            self._ibus.loop()
            self._received_count = self._ibus.received_count
            self._sleep(0.1)

    def read_channel(self, channel: int, min_limit: int, max_limit: int, default: int) -> int:
        """Scale ``channel`` from 1000..2000 onto ``min_limit..max_limit``."""
        value = self._ibus.read_channel(channel)
        if value >= _VALID_CHANNEL_MIN:
            return map_range(value, 1000, 2000, min_limit, max_limit)
        return default

    def read_three_stage_switch(self, channel: int, default: int) -> int:
        """Return 1 below centre, 0 at centre, -1 above centre, else ``default``."""
        value = self._ibus.read_channel(channel)
        if value < _VALID_CHANNEL_MIN:
            return default
        if value > 1500:
            return -1
        if value < 1500:
            return 1
        return 0

    def is_connected(self) -> bool:
        """True if a new frame arrived since the last call and the link switch is off."""
        received = self._ibus.received_count
        receiver_on = self._received_count != received
        if receiver_on:
            self._received_count = received
        transmitter_on = not self.read_switch(self._ch_disconnect, False)
        return receiver_on and transmitter_on

    def estop(self) -> bool:
        """Return the position of the emergency-stop switch."""
        return self.read_switch(self._ch_estop, False)

    def gear(self) -> Gear:
        """Return the gear selected by the three-position gear switch."""
        value = self.read_three_stage_switch(self._ch_gear, -100)
        return {1: Gear.FORWARD, 0: Gear.NEUTRAL, -1: Gear.REVERSE}.get(value, Gear.NONE)

    def drive_mode(self) -> DriveMode:
        """Return AUTO when the mode switch is on, MANUAL otherwise."""
        return DriveMode.AUTO if self.read_switch(self._ch_drive_mode, False) else DriveMode.MANUAL

    def read_switch(self, channel: int, default: bool) -> bool:
        """Return True when ``channel`` is past its midpoint."""
        value = self.read_channel(channel, 0, 100, 100 if default else 0)
        return value > 50


class DDRobotRFController(RFController):
    """Transmitter input for a differential-drive robot."""

    def __init__(self, ibus: ChannelSource, sleep: Callable[[float], None] = time.sleep) -> None:
        super().__init__(ibus, sleep)
        self._ch_velocity = CH_NULL
        self._ch_omega = CH_NULL
        self.max_velocity = 2.0  # m/s
        self.max_omega = 30.0  # degrees

    def set_channels(
        self,
        estop: int,
        disconnect: int,
        gear: int,
        drive_mode: int,
        velocity: int,
        omega: int,
    ) -> None:
        """Assign the switch channels and the velocity and steering channels."""
        super().set_channels(estop, disconnect, gear, drive_mode)
        self._ch_velocity = velocity
        self._ch_omega = omega

    def set_max_omega(self, max_omega: float) -> None:
        self.max_omega = max_omega

    def velocity(self) -> int:
        """Return the commanded velocity in cm/s (-300..300) with a small dead band."""
        value = self.read_channel(self._ch_velocity, -300, 300, -1000) - 1
        return 0 if -3 <= value <= 3 else value

    def omega_angle(self) -> int:
        """Return the commanded steering value (-2000..2000) with a dead band of 20."""
        value = self.read_channel(self._ch_omega, -2000, 2000, -1000)
        return 0 if -20 <= value <= 20 else value