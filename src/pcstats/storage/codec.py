"""
On-disk record framing for queued batches.

Layout of one record file:

    magic  (4 bytes, b"PCSQ")
    version (u8)
    length  (u32, big endian)  -- payload length in bytes
    crc32   (u32, big endian)  -- checksum of the payload
    payload (msgpack of TelemetryBatch.to_wire())

A torn or partially written file fails the magic / length / checksum
validation and raises `CorruptRecord` instead of yielding bad data.
"""

import struct
import zlib

import msgspec

from pcstats.models.batch import TelemetryBatch

MAGIC = b"PCSQ"
FORMAT_VERSION = 1
_HEADER = struct.Struct("!4sBII")

_encoder = msgspec.msgpack.Encoder()
_decoder = msgspec.msgpack.Decoder()


class CorruptRecord(ValueError):
    pass


def encode_batch(batch: TelemetryBatch) -> bytes:
    payload = _encoder.encode(batch.to_wire())
    header = _HEADER.pack(MAGIC, FORMAT_VERSION, len(payload), zlib.crc32(payload))
    return header + payload


def decode_batch(data: bytes) -> TelemetryBatch:
    if len(data) < _HEADER.size:
        raise CorruptRecord(f"truncated header ({len(data)} bytes)")

    magic, version, length, crc = _HEADER.unpack_from(data)
    if magic != MAGIC:
        raise CorruptRecord(f"bad magic {magic!r}")
    if version != FORMAT_VERSION:
        raise CorruptRecord(f"unsupported format version {version}")

    payload = data[_HEADER.size :]
    if len(payload) != length:
        raise CorruptRecord(f"truncated payload ({len(payload)} of {length} bytes)")
    if zlib.crc32(payload) != crc:
        raise CorruptRecord("checksum mismatch")

    try:
        return TelemetryBatch.from_wire(_decoder.decode(payload))
    except (msgspec.DecodeError, KeyError, TypeError, ValueError) as e:
        raise CorruptRecord(f"undecodable payload: {e}") from e
