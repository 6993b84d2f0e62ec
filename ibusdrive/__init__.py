"""iBUS receiver, PC link, RC transmitter input and CANopen motor-driver logic for a differential-drive robot."""

__version__ = "0.1.0"