"""
Physical chip authenticity verification.

A buyer scans the NFC/RFID chip embedded in an artwork; the scan carries the
tag identifier, the chip's monotonic counter and an HMAC over both. The
service answers authentic, mismatch, cloned or invalid, and records every
attempt in an append-only audit trail.
"""

__version__ = "1.0.0"
