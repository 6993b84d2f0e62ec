import pytest

from ibusdrive.pc_comm import Command, PcComm, encode_packet


class FakeStream:
    def __init__(self):
        self.incoming = bytearray()
        self.written = bytearray()

    @property
    def in_waiting(self):
        return len(self.incoming)

    def read(self, size=1):
        data = bytes(self.incoming[:size])
        del self.incoming[:size]
        return data

    def write(self, data):
        self.written += data
        return len(data)


class Clock:
    def __init__(self, now=0):
        self.now = now

    def __call__(self):
        return self.now


def command_packet(a_or_m=1, estop=0, gear=2, speed=0x0102, omega=0x0304, brake=5, alive=7):
    return (
        b"STX"
        + bytes(
            (
                a_or_m,
                estop,
                gear,
                speed >> 8,
                speed & 0xFF,
                omega >> 8,
                omega & 0xFF,
                brake,
                alive,
            )
        )
        + b"\r\n"
    )


@pytest.fixture
def link():
    stream = FakeStream()
    clock = Clock(100)
    return PcComm(stream, clock), stream, clock


def test_encode_packet_layout():
    packet = encode_packet(1, 0, 2, 0x1234, 0x0A0B, 3, 0x0C0D, 0x0E0F, 12, 9)
    assert len(packet) == 19
    assert packet[:3] == b"STX"
    assert packet[-2:] == b"\r\n"
    assert packet[3:6] == bytes((1, 0, 2))
    assert packet[6:8] == bytes((0x12, 0x34))
    assert packet[8:10] == bytes((0x0A, 0x0B))
    assert packet[10] == 3
    assert packet[11:15] == bytes((0x0C, 0x0D, 0x0E, 0x0F))
    assert packet[15:17] == bytes((12, 9))


def test_encode_packet_negative_values_are_twos_complement():
    packet = encode_packet(0, 0, 0, -1, -2, 0, 0, 0, 0, 0)
    assert packet[6:8] == b"\xff\xff"
    assert packet[8:10] == b"\xff\xfe"


def test_read_command_before_any_packet_is_empty(link):
    comm, _, _ = link
    assert comm.read_command() == Command()
    assert comm.is_connected is True


def test_loop_decodes_packet(link):
    comm, stream, _ = link
    stream.incoming += command_packet()
    comm.loop()
    assert comm.read_command() == Command(
        a_or_m=1, estop=0, gear=2, speed=0x0102, omega=0x0304, brake=5, alive=7
    )
    assert comm.is_connected is True


def test_garbage_before_packet_is_skipped(link):
    comm, stream, _ = link
    stream.incoming += b"\x00\x11ST" + command_packet(speed=0x0A0B)
    comm.loop()
    assert comm.read_command().speed == 0x0A0B


def test_packet_split_across_loops(link):
    comm, stream, _ = link
    packet = command_packet(omega=0x0506)
    stream.incoming += packet[:6]
    comm.loop()
    assert comm.read_command() == Command()
    stream.incoming += packet[6:]
    comm.loop()
    assert comm.read_command().omega == 0x0506


def test_buffer_overflow_is_discarded_and_packet_still_found(link):
    comm, stream, _ = link
    stream.incoming += b"\x01" * 40 + command_packet(brake=9)
    comm.loop()
    assert comm.read_command().brake == 9


def test_consecutive_packets_each_decoded(link):
    comm, stream, _ = link
    stream.incoming += command_packet(alive=1) + command_packet(alive=2)
    comm.loop()
    assert comm.read_command().alive == 2
    assert comm.is_connected is True


def test_unchanged_alive_counter_disconnects(link):
    comm, stream, _ = link
    stream.incoming += command_packet(alive=3)
    comm.loop()
    assert comm.is_connected is True
    stream.incoming += command_packet(alive=3)
    comm.loop()
    assert comm.is_connected is False


def test_first_packet_with_zero_alive_is_not_alive(link):
    comm, stream, _ = link
    stream.incoming += command_packet(alive=0)
    comm.loop()
    assert comm.is_connected is False


def test_timeout_disconnects_and_new_data_reconnects(link):
    comm, stream, clock = link
    stream.incoming += command_packet(alive=1)
    comm.loop()
    assert comm.is_connected is True
    clock.now += 5000
    comm.loop()
    assert comm.is_connected is False
    stream.incoming += command_packet(alive=2)
    comm.loop()
    assert comm.is_connected is True


def test_send_packet_echoes_last_alive(link):
    comm, stream, _ = link
    stream.incoming += command_packet(alive=42)
    comm.loop()
    comm.send_packet(1, 0, 2, 100, -5, 0, 10, 11, 24)
    assert bytes(stream.written) == encode_packet(1, 0, 2, 100, -5, 0, 10, 11, 24, 42)


def test_set_mcu_info_stores_values(link):
    comm, _, _ = link
    comm.set_mcu_info(-12, 34, 25)
    assert (comm.omega_left, comm.omega_right, comm.battery_voltage) == (-12, 34, 25)