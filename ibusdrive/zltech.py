"""CANopen control of a ZLTECH ZLAC8015D dual-channel servo driver.

The driver is put into profile-velocity mode through SDO writes. Target
speeds go out in receive PDO 0 and actual speeds come back in transmit
PDO 0. Heartbeat frames from the driver tell whether it is still alive.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import ClassVar, Protocol

__all__ = [
    "CanMessage",
    "PDOBase",
    "RPDO",
    "TPDO",
    "ZltechController",
    "sdo_write_frame",
]

# Object dictionary of the ZLAC8015D.
CONTROLWORD = 0x6040
CONTROLWORD_BITS = 16
STATUSWORD = 0x6041
STATUSWORD_BITS = 16
MODES_OF_OPERATION = 0x6060
MODES_OF_OPERATION_BITS = 8
MODE_OF_OPERATION_DISPLAY = 0x6061
MODE_OF_OPERATION_DISPLAY_BITS = 8

TARGET_VELOCITY = 0x60FF
LEFT_MOTOR_TARGET_VELOCITY = 0x01
RIGHT_MOTOR_TARGET_VELOCITY = 0x02
TARGET_VELOCITY_BITS = 32

VELOCITY_ACTUAL_VALUE = 0x606C
LEFT_MOTOR_VELOCITY_ACTUAL_VALUE = 0x01
RIGHT_MOTOR_VELOCITY_ACTUAL_VALUE = 0x02
VELOCITY_ACTUAL_VALUE_BITS = 32

TARGET_POSITION = 0x607A
TARGET_POSITION_BITS = 32
ACTUAL_POSITION = 0x6064
ACTUAL_POSITION_BITS = 32

TARGET_TORQUE = 0x6071
TARGET_TORQUE_BITS = 16
ACTUAL_TORQUE = 0x6077
ACTUAL_TORQUE_BITS = 16

PROFILE_ACCELERATION = 0x6083
PROFILE_ACCELERATION_BITS = 32
PROFILE_DECELERATION = 0x6084
PROFILE_DECELERATION_BITS = 32
QUICKSTOP_DECELERATION = 0x6085
QUICKSTOP_DECELERATION_BITS = 32

CAN_NODE_ID = 0x200A
CAN_NODE_ID_BITS = 8
CAN_BAUDRATE = 0x200B
CAN_BAUDRATE_BITS = 8
HEARTBEAT_TIME = 0x1017
HEARTBEAT_TIME_BITS = 16

MAX_SPEED = 0x2008
MAX_SPEED_BITS = 16
LEFT_MOTOR_ENCODER_LINE = 0x200E
LEFT_MOTOR_ENCODER_LINE_BITS = 16
RIGHT_MOTOR_ENCODER_LINE = 0x200E
RIGHT_MOTOR_ENCODER_LINE_BITS = 16

# NMT commands.
NMT_OPERATIONAL = 0x01
NMT_STOP = 0x02
NMT_PRE_OPERATIONAL = 0x80
NMT_RESET = 0x82

WHEEL_SIZE = 0.1651  # m
WHEEL_BASE = 0.4  # m

MAX_MAPPINGS = 8
PDO_COUNT = 4
_SDO_COMMANDS = {8: 0x2F, 16: 0x2B, 32: 0x23}
_CLOCK_MASK = 0xFFFFFFFF


@dataclass(frozen=True)
class CanMessage:
    """A classic CAN frame with a standard identifier."""

    id: int
    data: bytes = b""

    def __post_init__(self) -> None:
        data = bytes(self.data)
        if len(data) > 8:
            raise ValueError("a CAN frame carries at most 8 data bytes")
        object.__setattr__(self, "data", data)


class CanBus(Protocol):
    """The part of a CAN interface that the controller uses."""

    def send(self, message: CanMessage) -> None: ...

    def receive(self) -> CanMessage | None: ...


def sdo_write_frame(node_id: int, index: int, sub_index: int, value: int, bits: int) -> CanMessage:
    """Build an expedited SDO download of ``bits`` (8, 16 or 32) to ``index``/``sub_index``."""
    try:
        command = _SDO_COMMANDS[bits]
    except KeyError:
        raise ValueError(f"SDO write size must be 8, 16 or 32 bits, not {bits}") from None
    payload = (value & _CLOCK_MASK).to_bytes(4, "little")[: bits // 8]
    data = bytes((command, index & 0xFF, (index >> 8) & 0xFF, sub_index & 0xFF))
    return CanMessage(0x600 + node_id, (data + payload).ljust(8, b"\x00"))


def _millis() -> int:
    return time.monotonic_ns() // 1_000_000


class PDOBase:
    """Common mapping and configuration logic of receive and transmit PDOs."""

    _MAPPING_BASE: ClassVar[int]
    _COMM_BASE: ClassVar[int]
    _COB_BASE: ClassVar[int]

    def __init__(self, controller: ZltechController, index: int) -> None:
        self._controller = controller
        self.index = index
        self.node_id = controller.node_id
        self.cob_id = self._COB_BASE + index * 0x100 + self.node_id
        self._entries: list[int] = []

    @property
    def mapping_entries(self) -> list[int]:
        """The mapping words: object index << 16 | sub-index << 8 | bit length."""
        return list(self._entries)

    def add_mapped_object(self, object_index: int, sub_index: int, bit_length: int) -> None:
        """Append an object to the PDO mapping; at most eight are allowed."""
        if len(self._entries) >= MAX_MAPPINGS:
            raise ValueError(f"a PDO maps at most {MAX_MAPPINGS} objects")
        entry = ((object_index & 0xFFFF) << 16) | ((sub_index & 0xFF) << 8) | (bit_length & 0xFF)
        self._entries.append(entry)

    def configure(self, transmission_type: int, event_timer: int = 0) -> None:
        """Write the mapping and communication parameters to the driver."""
        map_index = self._MAPPING_BASE + self.index
        comm_index = self._COMM_BASE + self.index
        self.cob_id = self._COB_BASE + self.index * 0x100 + self.node_id
        write = self._controller.write_object
        write(map_index, 0, 0, 8)
        for sub_index, entry in enumerate(self._entries, start=1):
            write(map_index, sub_index, entry, 32)
        write(map_index, 0, len(self._entries), 8)
        write(comm_index, 1, self.cob_id, 32)
        write(comm_index, 2, transmission_type, 8)
        if transmission_type == 255 and event_timer > 0:
            write(comm_index, 5, event_timer, 16)

    def _slot(self, object_index: int, sub_index: int) -> int | None:
        return next(
            (
                slot
                for slot, entry in enumerate(self._entries)
                if (entry >> 16) & 0xFFFF == object_index and (entry >> 8) & 0xFF == sub_index
            ),
            None,
        )

    def _layout(self) -> list[tuple[int, int]]:
        """Byte offset and byte length of each mapped object, in order."""
        layout = []
        bit_offset = 0
        for entry in self._entries:
            bit_length = entry & 0xFF
            layout.append((bit_offset // 8, bit_length // 8))
            bit_offset += bit_length
        return layout


class RPDO(PDOBase):
    """A receive PDO: data sent to the driver."""

    _MAPPING_BASE = 0x1600
    _COMM_BASE = 0x1400
    _COB_BASE = 0x200

    def __init__(self, controller: ZltechController, index: int) -> None:
        super().__init__(controller, index)
        self._values = [0] * MAX_MAPPINGS

    def set_mapped_value(self, object_index: int, sub_index: int, value: int) -> None:
        """Set the value of a mapped object; raises KeyError if it is not mapped."""
        slot = self._slot(object_index, sub_index)
        if slot is None:
            raise KeyError(f"object {object_index:#06x}:{sub_index} is not mapped")
        self._values[slot] = value & _CLOCK_MASK

    def send(self) -> None:
        """Pack the mapped values little-endian and send them in one frame."""
        data = bytearray(8)
        end = 0
        for (offset, length), value in zip(self._layout(), self._values):
            if offset + length > 8:
                raise ValueError("mapped objects do not fit in one CAN frame")
            data[offset : offset + length] = value.to_bytes(4, "little")[:length]
            end = offset + length
        self._controller.bus.send(CanMessage(self.cob_id, bytes(data[:end])))

    def send_velocity(self, left: int, right: int) -> None:
        """Send two signed 32-bit wheel velocities in one 8-byte frame."""
        data = (left & _CLOCK_MASK).to_bytes(4, "little") + (right & _CLOCK_MASK).to_bytes(4, "little")
        self._controller.bus.send(CanMessage(self.cob_id, data))


class TPDO(PDOBase):
    """A transmit PDO: data reported by the driver."""

    _MAPPING_BASE = 0x1A00
    _COMM_BASE = 0x1800
    _COB_BASE = 0x180

    def __init__(self, controller: ZltechController, index: int) -> None:
        super().__init__(controller, index)
        self._received = [0] * MAX_MAPPINGS

    def on_receive(self, data: bytes) -> None:
        """Unpack a received frame into the mapped values.

        Unpacking stops at the first object that the frame is too short for.
        """
        for slot, (offset, length) in enumerate(self._layout()):
            if offset + length > len(data):
                return
            self._received[slot] = int.from_bytes(data[offset : offset + length], "little")

    def mapped_value(self, object_index: int, sub_index: int) -> int:
        """Return the last received value of an object as signed 32-bit, or 0 if unmapped."""
        slot = self._slot(object_index, sub_index)
        if slot is None:
            return 0
        value = self._received[slot]
        return value - (1 << 32) if value & 0x80000000 else value


class ZltechController:
    """Drives both wheels of a ZLAC8015D in velocity mode over CANopen.

    ``clock`` returns the current time in milliseconds and ``sleep`` waits
    the given number of seconds.
    """

    def __init__(
        self,
        bus: CanBus,
        node_id: int,
        clock: Callable[[], int] = _millis,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.bus = bus
        self.node_id = node_id
        self._clock = clock
        self._sleep = sleep
        self._last_heartbeat = 0
        self._last_can_received = 0
        self._connected = False
        self._left_velocity = 0
        self._right_velocity = 0
        self.rpdo = [RPDO(self, i) for i in range(PDO_COUNT)]
        self.tpdo = [TPDO(self, i) for i in range(PDO_COUNT)]

    def set_nmt(self, command: int) -> None:
        """Send an NMT command (0x01 operational, 0x02 stop, 0x80 pre-operational, 0x82 reset)."""
        self.bus.send(CanMessage(0x000, bytes((command & 0xFF, self.node_id & 0xFF))))
        self._sleep(0.01)

    def write_object(self, index: int, sub_index: int, value: int, bits: int) -> None:
        """Write an object of the driver through an expedited SDO download."""
        self.bus.send(sdo_write_frame(self.node_id, index, sub_index, value, bits))
        self._sleep(0.01)

    def velocity_mode(self) -> bool:
        """Map the velocity PDOs, enable velocity mode and go operational."""
        self.set_nmt(NMT_PRE_OPERATIONAL)
        self._sleep(0.05)

        rpdo = self.rpdo[0] = RPDO(self, 0)
        rpdo.add_mapped_object(TARGET_VELOCITY, LEFT_MOTOR_TARGET_VELOCITY, TARGET_VELOCITY_BITS)
        rpdo.add_mapped_object(TARGET_VELOCITY, RIGHT_MOTOR_TARGET_VELOCITY, TARGET_VELOCITY_BITS)
        rpdo.configure(254)

        tpdo = self.tpdo[0] = TPDO(self, 0)
        tpdo.add_mapped_object(
            VELOCITY_ACTUAL_VALUE, LEFT_MOTOR_VELOCITY_ACTUAL_VALUE, VELOCITY_ACTUAL_VALUE_BITS
        )
        tpdo.add_mapped_object(
            VELOCITY_ACTUAL_VALUE, RIGHT_MOTOR_VELOCITY_ACTUAL_VALUE, VELOCITY_ACTUAL_VALUE_BITS
        )
        tpdo.configure(255, 100)

        self._sleep(0.05)
        self.write_object(MODES_OF_OPERATION, 0x00, 3, MODES_OF_OPERATION_BITS)
        self.write_object(CONTROLWORD, 0x00, 0x06, CONTROLWORD_BITS)  # shutdown
        self.write_object(CONTROLWORD, 0x00, 0x07, CONTROLWORD_BITS)  # switch on
        self.write_object(CONTROLWORD, 0x00, 0x0F, CONTROLWORD_BITS)  # enable operation
        self._sleep(0.05)

        self.set_nmt(NMT_OPERATIONAL)
        self._sleep(0.1)
        return True

    def send_velocity(self, left_rpm: int, right_rpm: int) -> None:
        """Send the target velocities of both wheels."""
        self.rpdo[0].send_velocity(left_rpm, right_rpm)

    def read_velocity(self) -> tuple[int, int]:
        """Return the actual wheel speeds in rpm; the right wheel is mirrored."""
        return int(self._left_velocity * 0.1), int(self._right_velocity * -0.1)

    def update_heartbeat(self) -> None:
        """Record that a heartbeat has just arrived."""
        self._last_heartbeat = self._clock()
        self._connected = True

    def heartbeat_timed_out(self, timeout_ms: int = 2000) -> bool:
        """True if more than ``timeout_ms`` passed since the last heartbeat."""
        return (self._clock() - self._last_heartbeat) & _CLOCK_MASK > timeout_ms

    def is_connected(self) -> bool:
        return self._connected

    def loop(self) -> None:
        """Handle at most one waiting frame, then refresh the connection state."""
        message = self.bus.receive()
        if message is not None:
            self._last_can_received = self._clock()
            if message.id == 0x700 + self.node_id and message.data[:1] == b"\x05":
                self.update_heartbeat()
            elif message.id == 0x180 + self.node_id:
                tpdo = self.tpdo[0]
                tpdo.on_receive(message.data)
                self._left_velocity = tpdo.mapped_value(
                    VELOCITY_ACTUAL_VALUE, LEFT_MOTOR_VELOCITY_ACTUAL_VALUE
                )
                self._right_velocity = tpdo.mapped_value(
                    VELOCITY_ACTUAL_VALUE, RIGHT_MOTOR_VELOCITY_ACTUAL_VALUE
                )
        can_connected = (self._clock() - self._last_can_received) & _CLOCK_MASK <= 1000
        self._connected = not self.heartbeat_timed_out(5000) or not can_connected

    def setup(self) -> None:
        """Request heartbeats, wait for the first one, then enter velocity mode."""
        self.write_object(HEARTBEAT_TIME, 0x00, 1000, HEARTBEAT_TIME_BITS)
        while not self._connected:
            message = self.bus.receive()
            if (
                message is not None
                and message.id == 0x700 + self.node_id
                and len(message.data) == 1
            ):
                self.velocity_mode()
                self._last_heartbeat = self._clock()
                self._connected = True
                break
            self._last_can_received = self._clock()
            self._sleep(0.05)