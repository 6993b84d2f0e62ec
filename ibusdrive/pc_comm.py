"""Serial link to the host PC.

The host sends 14-byte command frames::

    'S' 'T' 'X' <auto/manual> <estop> <gear> <speed hi> <speed lo>
    <omega hi> <omega lo> <brake> <alive> CR LF

and receives 19-byte status frames built by :func:`encode_packet`. The link
counts as connected while frames keep arriving and the alive counter in them
keeps changing.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

__all__ = ["Command", "PcComm", "encode_packet"]

STX = b"STX"
ETX = b"\r\n"
PACKET_LENGTH = 14
BUFFER_SIZE = 32
TIMEOUT_MS = 1000
_CLOCK_MASK = 0xFFFFFFFF


class SerialStream(Protocol):
    """The part of a serial port that the link uses."""

    @property
    def in_waiting(self) -> int: ...

    def read(self, size: int = 1) -> bytes: ...

    def write(self, data: bytes) -> int | None: ...


@dataclass(frozen=True)
class Command:
    """The fields of the last command frame received from the PC."""

    a_or_m: int = 0
    estop: int = 0
    gear: int = 0
    speed: int = 0
    omega: int = 0
    brake: int = 0
    alive: int = 0

    @classmethod
    def from_packet(cls, packet: bytes) -> Command:
        """Decode a 14-byte command frame (framing bytes are not checked)."""
        return cls(
            a_or_m=packet[3],
            estop=packet[4],
            gear=packet[5],
            speed=(packet[6] << 8) | packet[7],
            omega=(packet[8] << 8) | packet[9],
            brake=packet[10],
            alive=packet[11],
        )


def _word(value: int) -> tuple[int, int]:
    return (value >> 8) & 0xFF, value & 0xFF


def encode_packet(
    a_or_m: int,
    estop: int,
    gear: int,
    speed: int,
    omega: int,
    brake: int,
    omega_left: int,
    omega_right: int,
    battery_voltage: int,
    alive: int,
) -> bytes:
    """Build the 19-byte status frame sent to the PC; 16-bit values go big-endian."""
    return bytes(
        (
            *STX,
            a_or_m & 0xFF,
            estop & 0xFF,
            gear & 0xFF,
            *_word(speed),
            *_word(omega),
            brake & 0xFF,
            *_word(omega_left),
            *_word(omega_right),
            battery_voltage & 0xFF,
            alive & 0xFF,
            *ETX,
        )
    )


class PcComm:
    """Receives command frames from the PC and sends status frames back.

    ``clock`` returns the current time in milliseconds. Call :meth:`loop`
    regularly to consume incoming data and refresh :attr:`is_connected`.
    """

    def __init__(self, stream: SerialStream, clock: Callable[[], int]) -> None:
        self._stream = stream
        self._clock = clock
        self._buffer = bytearray()
        self._last_received = 0
        self._command = Command()
        self._alive_prev = 0
        self._alive_on = True
        self._upper_on = True
        self.is_connected = True
        self.omega_left = 0
        self.omega_right = 0
        self.battery_voltage = 0

    def loop(self) -> None:
        """Consume waiting bytes, then update the connection state."""
        self._process_incoming()
        elapsed = (self._clock() - self._last_received) & _CLOCK_MASK
        self._upper_on = elapsed <= TIMEOUT_MS
        self.is_connected = self._alive_on and self._upper_on

    def read_command(self) -> Command:
        """Return the last command received from the PC."""
        return self._command

    def set_mcu_info(self, omega_left: int, omega_right: int, battery_voltage: int) -> None:
        """Record the wheel speeds and battery voltage of the controller."""
        self.omega_left = omega_left
        self.omega_right = omega_right
        self.battery_voltage = battery_voltage & 0xFF

    def send_packet(
        self,
        a_or_m: int,
        estop: int,
        gear: int,
        speed: int,
        omega: int,
        brake: int,
        omega_left: int,
        omega_right: int,
        battery_voltage: int,
    ) -> None:
        """Send a status frame, echoing the last received alive counter."""
        self._stream.write(
            encode_packet(
                a_or_m,
                estop,
                gear,
                speed,
                omega,
                brake,
                omega_left,
                omega_right,
                battery_voltage,
                self._command.alive,
            )
        )

    def _process_incoming(self) -> None:
        while self._stream.in_waiting:
            data = self._stream.read(1)
            if not data:
                break
            self._last_received = self._clock()
            if len(self._buffer) >= BUFFER_SIZE:
                self._buffer.clear()  # drop everything rather than overflow
            self._buffer += data
            if len(self._buffer) < PACKET_LENGTH:
                continue
            start = next(
                (
                    offset
                    for offset in range(len(self._buffer) - PACKET_LENGTH + 1)
                    if self._is_packet_at(offset)
                ),
                None,
            )
            if start is not None:
                end = start + PACKET_LENGTH
                self._process_packet(bytes(self._buffer[start:end]))
                del self._buffer[:end]

    def _is_packet_at(self, offset: int) -> bool:
        buffer = self._buffer
        return (
            buffer[offset : offset + 3] == STX
            and buffer[offset + 12 : offset + 14] == ETX
        )

    def _process_packet(self, packet: bytes) -> None:
        self._command = Command.from_packet(packet)
        alive = self._command.alive
        self._alive_on = alive != self._alive_prev
        self._alive_prev = alive