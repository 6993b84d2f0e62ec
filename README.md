# ibusdrive

Protocol and control logic for a small differential-drive robot:

- `ibusdrive.ibus`: an iBUS receiver. `IBus` decodes 14 servo channels and answers sensor telemetry polls.
- `ibusdrive.pc_comm`: the framed serial link to a host PC. Command frames start with `STX` and end with `CR LF`. `encode_packet` builds the 19-byte status frame.
- `ibusdrive.rf_controller`: `RFController` and `DDRobotRFController` turn raw RC channels into an emergency stop, a gear, a drive mode, a velocity and a steering value. The module also defines the `Gear`, `DriveMode` and `State` enums.
- `ibusdrive.zltech`: CANopen SDO, PDO and NMT handling for a ZLTECH ZLAC8015D dual-motor driver in velocity mode.

You supply the I/O objects:

- a serial stream that has an `in_waiting` count, `read(size)` and `write(data)`. A `serial.Serial` object has this shape.
- a CAN bus object with `send(message)` and `receive()`. `receive()` returns a `CanMessage` or `None`.
- a millisecond clock, which is any callable that returns an integer.
- a sleep function that takes seconds.

Because you pass these in, every part can be tested without hardware.

## Installation

```
pip install ibusdrive
```

To run the tests:

```
pip install "ibusdrive[test]"
pytest
```

## iBUS receiver

```python
from ibusdrive.ibus import IBus, SensorType

ibus = IBus(stream, clock)
address = ibus.add_sensor(SensorType.EXTERNAL_VOLTAGE, 2)  # length 2 or 4, at most 10 sensors
ibus.set_sensor_measurement(address, 1260)

while True:
    ibus.loop()                      # call about once per millisecond
    throttle = ibus.read_channel(2)  # usually 1000..2000; 0 for channels outside 0..13
```

A new frame starts after 3 ms with no bytes on the line. Servo frames (command `0x40`) update the channels and add one to `received_count`. The object answers discover, type and value polls for registered sensors. It counts these in `poll_count` and `sensor_count`.

## RF remote control

```python
from ibusdrive.rf_controller import DDRobotRFController, Gear

rf = DDRobotRFController(ibus)
rf.set_channels(estop=4, disconnect=5, gear=6, drive_mode=7, velocity=2, omega=0)
rf.begin()  # waits for the first servo frame; ValueError if estop/disconnect are unassigned

if rf.is_connected() and not rf.estop() and rf.gear() is Gear.FORWARD:
    speed = rf.velocity()     # -300..300, with a dead band of ±3 around zero
    angle = rf.omega_angle()  # -2000..2000, with a dead band of ±20 around zero
```

`map_range` scales a value linearly and truncates toward zero. `read_channel` uses it to map 1000..2000 onto the range you give. Values below 100 count as "no signal" and return the default.

## PC link

```python
from ibusdrive.pc_comm import PcComm

pc = PcComm(stream, clock)
pc.loop()
command = pc.read_command()         # a Command: a_or_m, estop, gear, speed, omega, brake, alive
print(command.speed, command.omega)
pc.send_packet(0, 0, 1, 120, -30, 0, 500, 498, 24)  # echoes the last alive counter
```

`is_connected` becomes `False` in two cases: no byte arrived for more than 1000 ms, or the alive counter in the last frame did not change.

## ZLTECH motor driver

```python
from ibusdrive.zltech import ZltechController

motors = ZltechController(bus, node_id=1)  # clock and sleep default to the system ones
motors.setup()  # asks for 1 s heartbeats, waits for the drive, then enters velocity mode
motors.send_velocity(100, -100)
motors.loop()   # handles at most one frame per call
left_rpm, right_rpm = motors.read_velocity()
```

`sdo_write_frame` builds an expedited SDO download on its own. A write of any size other than 8, 16 or 32 bits raises `ValueError`.

## What this package does not do

- It has no serial or CAN drivers and no timers. Your code must open the ports and call each `loop()` often enough.
- It has no command-line program.
- It does not include the robot's main control loop. The `State` enum lists the robot's states, but nothing in the package moves between them.