"""Receiver side of the FlySky iBUS serial protocol.

Servo frames from the receiver are decoded into channel values. Sensor
(telemetry) polls are answered for the sensors registered with
:meth:`IBus.add_sensor`.

A frame on the wire is ``<len><cmd><data...><chk_lo><chk_hi>``. The
checksum is chosen so that all bytes of the frame, checksum included,
add up to ``0xFFFF``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, IntEnum, auto
from typing import Protocol

__all__ = ["SensorType", "IBus"]

PROTOCOL_LENGTH = 0x20
PROTOCOL_OVERHEAD = 3  # cmd byte + two checksum bytes
PROTOCOL_TIMEGAP = 3  # ms of silence that marks the start of a new frame
PROTOCOL_CHANNELS = 14
PROTOCOL_COMMAND40 = 0x40
PROTOCOL_COMMAND_DISCOVER = 0x80
PROTOCOL_COMMAND_TYPE = 0x90
PROTOCOL_COMMAND_VALUE = 0xA0
SENSOR_MAX = 10


class SensorType(IntEnum):
    """Sensor types understood by common FlySky transmitters."""

    INTERNAL_VOLTAGE = 0x00  # in 0.01 V
    TEMPERATURE = 0x01  # in 0.1 degrees, 0 = -40 C
    RPM = 0x02
    EXTERNAL_VOLTAGE = 0x03  # in 0.01 V
    PRESSURE = 0x41  # in Pa
    SERVO = 0xFD


class SerialStream(Protocol):
    """The part of a serial port that the decoder uses."""

    @property
    def in_waiting(self) -> int: ...

    def read(self, size: int = 1) -> bytes: ...

    def write(self, data: bytes) -> int | None: ...


class _State(Enum):
    GET_LENGTH = auto()
    GET_DATA = auto()
    GET_CHECKSUM_LOW = auto()
    GET_CHECKSUM_HIGH = auto()
    DISCARD = auto()


@dataclass
class _Sensor:
    sensor_type: int
    length: int
    value: int = 0


def _with_checksum(body: bytes) -> bytes:
    checksum = (0xFFFF - sum(body)) & 0xFFFF
    return body + bytes((checksum & 0xFF, checksum >> 8))


class IBus:
    """Decodes iBUS frames arriving on ``stream`` and answers sensor polls.

    ``clock`` returns the current time in milliseconds. :meth:`loop` must be
    called often (about once per millisecond) so that sensor polls are
    answered in time.
    """

    def __init__(self, stream: SerialStream, clock: Callable[[], int]) -> None:
        self._stream = stream
        self._clock = clock
        self._state = _State.DISCARD
        self._last = clock()
        self._buffer = bytearray(PROTOCOL_LENGTH)
        self._ptr = 0
        self._length = 0
        self._checksum = 0
        self._checksum_low = 0
        self._channels = [0] * PROTOCOL_CHANNELS
        self._sensors: list[_Sensor] = []
        self.poll_count = 0
        self.sensor_count = 0
        self.received_count = 0

    def loop(self) -> None:
        """Process every byte currently waiting on the stream."""
        while self._stream.in_waiting > 0:
            now = self._clock()
            if (now - self._last) & 0xFFFFFFFF >= PROTOCOL_TIMEGAP:
                self._state = _State.GET_LENGTH
            self._last = now
            data = self._stream.read(1)
            if not data:
                break
            self._feed(data[0])

    def _feed(self, value: int) -> None:
        state = self._state
        if state is _State.GET_LENGTH:
            if PROTOCOL_OVERHEAD < value <= PROTOCOL_LENGTH:
                self._ptr = 0
                self._length = value - PROTOCOL_OVERHEAD
                self._checksum = 0xFFFF - value
                self._state = _State.GET_DATA
            else:
                self._state = _State.DISCARD
        elif state is _State.GET_DATA:
            self._buffer[self._ptr] = value
            self._ptr += 1
            self._checksum = (self._checksum - value) & 0xFFFF
            if self._ptr == self._length:
                self._state = _State.GET_CHECKSUM_LOW
        elif state is _State.GET_CHECKSUM_LOW:
            self._checksum_low = value
            self._state = _State.GET_CHECKSUM_HIGH
        elif state is _State.GET_CHECKSUM_HIGH:
            if self._checksum == (value << 8) + self._checksum_low:
                self._execute()
            self._state = _State.DISCARD

    def _execute(self) -> None:
        command = self._buffer[0]
        address = command & 0x0F
        if command == PROTOCOL_COMMAND40:
            data = self._buffer
            self._channels = [
                data[i] | (data[i + 1] << 8)
                for i in range(1, PROTOCOL_CHANNELS * 2 + 1, 2)
            ]
            self.received_count = (self.received_count + 1) & 0xFF
        elif 0 < address <= len(self._sensors) and self._length == 1:
            # Only 4-byte polls are answered, so our own replies looping
            # back from TX to RX are never mistaken for polls.
            response = self._sensor_response(command & 0xF0, address)
            if response is not None:
                self._stream.write(_with_checksum(response))

    def _sensor_response(self, command: int, address: int) -> bytes | None:
        sensor = self._sensors[address - 1]
        if command == PROTOCOL_COMMAND_DISCOVER:
            self.poll_count = (self.poll_count + 1) & 0xFF
            return bytes((0x04, PROTOCOL_COMMAND_DISCOVER + address))
        if command == PROTOCOL_COMMAND_TYPE:
            return bytes(
                (0x06, PROTOCOL_COMMAND_TYPE + address, sensor.sensor_type, sensor.length)
            )
        if command == PROTOCOL_COMMAND_VALUE:
            self.sensor_count = (self.sensor_count + 1) & 0xFF
            payload = (sensor.value & 0xFFFFFFFF).to_bytes(4, "little")[: sensor.length]
            return bytes((0x04 + sensor.length, PROTOCOL_COMMAND_VALUE + address)) + payload
        return None

    def read_channel(self, channel: int) -> int:
        """Return the last received value of ``channel`` (0..13), or 0 if out of range."""
        if 0 <= channel < PROTOCOL_CHANNELS:
            return self._channels[channel]
        return 0

    def add_sensor(self, sensor_type: int, length: int = 2) -> int:
        """Register a sensor and return the number of sensors, i.e. its address.

        ``length`` is the data length in bytes, 2 or 4; any other value
        becomes 2. At most ten sensors are kept; further calls add nothing.
        """
        if length not in (2, 4):
            length = 2
        if len(self._sensors) < SENSOR_MAX:
            self._sensors.append(_Sensor(int(sensor_type) & 0xFF, length))
        return len(self._sensors)

    def set_sensor_measurement(self, address: int, value: int) -> None:
        """Set the value reported for the sensor at ``address``; unknown addresses are ignored."""
        if 0 < address <= len(self._sensors):
            self._sensors[address - 1].value = value