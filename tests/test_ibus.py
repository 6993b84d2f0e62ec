import pytest

from ibusdrive.ibus import IBus, SensorType

SERVO_FRAME = bytes.fromhex(
    "2040DB05DC055405DC05E803D007D205E803DC05DC05DC05DC05DC05DC05DAF3"
)


class FakeStream:
    def __init__(self):
        self.rx = bytearray()
        self.written = bytearray()

    @property
    def in_waiting(self):
        return len(self.rx)

    def read(self, size=1):
        data = bytes(self.rx[:size])
        del self.rx[:size]
        return data

    def write(self, data):
        self.written += data
        return len(data)


class FakeClock:
    def __init__(self):
        self.now = 1000

    def __call__(self):
        return self.now


def frame(body):
    """Prefix the length byte and append the iBUS checksum."""
    data = bytes([len(body) + 3]) + bytes(body)
    checksum = (0xFFFF - sum(data)) & 0xFFFF
    return data + bytes([checksum & 0xFF, checksum >> 8])


@pytest.fixture
def link():
    stream = FakeStream()
    clock = FakeClock()
    ibus = IBus(stream, clock)
    return ibus, stream, clock


def send(ibus, stream, clock, data):
    clock.now += 5
    stream.rx += data
    ibus.loop()


def test_servo_frame_sets_channels(link):
    ibus, stream, clock = link
    send(ibus, stream, clock, SERVO_FRAME)
    assert ibus.read_channel(0) == 0x5DB
    assert ibus.read_channel(1) == 0x5DC
    assert ibus.read_channel(2) == 0x554
    assert ibus.read_channel(4) == 0x3E8
    assert ibus.read_channel(5) == 0x7D0
    assert ibus.read_channel(6) == 0x5D2
    assert ibus.read_channel(13) == 0x5DC
    assert ibus.received_count == 1


def test_frame_built_from_example_body_is_accepted(link):
    ibus, stream, clock = link
    built = frame(SERVO_FRAME[1:-2])
    assert built == SERVO_FRAME
    clock.now += 5
    stream.rx += built
    ibus.loop()
    assert ibus.received_count == 1
    assert ibus.read_channel(7) == 0x3E8


def test_bad_checksum_is_ignored(link):
    ibus, stream, clock = link
    corrupted = SERVO_FRAME[:-1] + bytes([SERVO_FRAME[-1] ^ 0x01])
    send(ibus, stream, clock, corrupted)
    assert ibus.received_count == 0
    assert ibus.read_channel(0) == 0


def test_frame_without_time_gap_is_discarded(link):
    ibus, stream, clock = link
    stream.rx += SERVO_FRAME
    ibus.loop()
    assert ibus.received_count == 0
    assert ibus.read_channel(0) == 0


def test_frame_split_over_loops(link):
    ibus, stream, clock = link
    send(ibus, stream, clock, SERVO_FRAME[:10])
    stream.rx += SERVO_FRAME[10:]
    ibus.loop()
    assert ibus.received_count == 1
    assert ibus.read_channel(3) == 0x5DC


def test_two_frames_count(link):
    ibus, stream, clock = link
    send(ibus, stream, clock, SERVO_FRAME)
    send(ibus, stream, clock, SERVO_FRAME)
    assert ibus.received_count == 2


def test_invalid_length_byte_discards_frame(link):
    ibus, stream, clock = link
    send(ibus, stream, clock, bytes([0x21]) + SERVO_FRAME[1:])
    assert ibus.received_count == 0


@pytest.mark.parametrize("channel", [14, 20, 255])
def test_read_channel_out_of_range(link, channel):
    ibus, stream, clock = link
    send(ibus, stream, clock, SERVO_FRAME)
    assert ibus.read_channel(channel) == 0


def test_discover_response(link):
    ibus, stream, clock = link
    assert ibus.add_sensor(SensorType.INTERNAL_VOLTAGE) == 1
    send(ibus, stream, clock, frame([0x81]))
    assert bytes(stream.written) == bytes([0x04, 0x81, 0x7A, 0xFF])
    assert ibus.poll_count == 1


def test_type_response(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.INTERNAL_VOLTAGE, 2)
    send(ibus, stream, clock, frame([0x91]))
    assert bytes(stream.written) == bytes([0x06, 0x91, 0x00, 0x02, 0x66, 0xFF])


def test_value_response_two_bytes(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.RPM)
    ibus.set_sensor_measurement(1, 0x1234)
    send(ibus, stream, clock, frame([0xA1]))
    out = bytes(stream.written)
    assert out[:4] == bytes([0x06, 0xA1, 0x34, 0x12])
    assert sum(out[:-2]) + (out[-2] | out[-1] << 8) == 0xFFFF
    assert ibus.sensor_count == 1


def test_value_response_four_bytes(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.PRESSURE, 4)
    ibus.set_sensor_measurement(1, 0x12345678)
    send(ibus, stream, clock, frame([0xA1]))
    out = bytes(stream.written)
    assert out[:6] == bytes([0x08, 0xA1, 0x78, 0x56, 0x34, 0x12])
    assert len(out) == 8
    assert sum(out[:-2]) + (out[-2] | out[-1] << 8) == 0xFFFF


def test_negative_value_is_sent_as_twos_complement(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.TEMPERATURE, 4)
    ibus.set_sensor_measurement(1, -1)
    send(ibus, stream, clock, frame([0xA1]))
    assert bytes(stream.written)[2:6] == b"\xff\xff\xff\xff"


def test_second_sensor_address(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.INTERNAL_VOLTAGE)
    assert ibus.add_sensor(SensorType.EXTERNAL_VOLTAGE) == 2
    send(ibus, stream, clock, frame([0x92]))
    out = bytes(stream.written)
    assert out[:4] == bytes([0x06, 0x92, SensorType.EXTERNAL_VOLTAGE, 0x02])


def test_invalid_length_defaults_to_two(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.RPM, 3)
    send(ibus, stream, clock, frame([0x91]))
    assert bytes(stream.written)[3] == 2


def test_at_most_ten_sensors(link):
    ibus, stream, clock = link
    results = [ibus.add_sensor(SensorType.RPM) for _ in range(12)]
    assert results[:10] == list(range(1, 11))
    assert results[10:] == [10, 10]


def test_poll_for_unregistered_sensor_is_ignored(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.RPM)
    send(ibus, stream, clock, frame([0x82]))
    assert stream.written == bytearray()
    assert ibus.poll_count == 0


def test_unknown_sensor_command_is_ignored(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.RPM)
    send(ibus, stream, clock, frame([0xB1]))
    assert stream.written == bytearray()


def test_longer_sensor_frame_is_not_answered(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.RPM)
    send(ibus, stream, clock, frame([0xA1, 0x00, 0x00]))
    assert stream.written == bytearray()
    assert ibus.sensor_count == 0


def test_set_measurement_unknown_address_ignored(link):
    ibus, stream, clock = link
    ibus.add_sensor(SensorType.RPM)
    ibus.set_sensor_measurement(1, 0x0102)
    ibus.set_sensor_measurement(2, 0x0304)
    ibus.set_sensor_measurement(0, 0x0506)
    send(ibus, stream, clock, frame([0xA1]))
    assert bytes(stream.written)[2:4] == bytes([0x02, 0x01])


def test_received_count_wraps(link):
    ibus, stream, clock = link
    for _ in range(256):
        send(ibus, stream, clock, SERVO_FRAME)
    assert ibus.received_count == 0