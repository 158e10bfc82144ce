"""Noisy-channel simulator with a selective-repeat data link protocol."""

__version__ = "4.0.0"
__all__ = ["crc", "datalink", "logformat", "options", "protocol"]