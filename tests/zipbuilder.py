"""Build small ZIP archives byte by byte, including ZipCrypto-flagged ones."""
from dataclasses import dataclass
import io
import struct


@dataclass
class Member:
    name: bytes
    payload: bytes = b""
    version_needed: int = 20
    flags: int = 0x0001
    method: int = 8
    mod_time: int = 0x6B2A
    mod_date: int = 0x5A21
    crc32: int = 0xDEADBEEF
    uncompressed_size: int = 0x100
    extra: bytes = b""
    comment: bytes = b""
    local_extra: bytes = None
    version_made_by: int = 0x031E
    # Streamed entries leave these zero in the local header
    local_crc32: int = None
    local_sizes: tuple = None


def local_header(member: Member) -> bytes:
    extra = member.extra if member.local_extra is None else member.local_extra
    crc = member.crc32 if member.local_crc32 is None else member.local_crc32
    csize, usize = member.local_sizes or (len(member.payload), member.uncompressed_size)
    return struct.pack(
        "<4s5H3I2H",
        b"PK\x03\x04",
        member.version_needed,
        member.flags,
        member.method,
        member.mod_time,
        member.mod_date,
        crc,
        csize,
        usize,
        len(member.name),
        len(extra),
    ) + member.name + extra


def central_header(member: Member, offset: int) -> bytes:
    return struct.pack(
        "<4s6H3I5H2I",
        b"PK\x01\x02",
        member.version_made_by,
        member.version_needed,
        member.flags,
        member.method,
        member.mod_time,
        member.mod_date,
        member.crc32,
        len(member.payload),
        member.uncompressed_size,
        len(member.name),
        len(member.extra),
        len(member.comment),
        0,
        0,
        0,
        offset,
    ) + member.name + member.extra + member.comment


def eocd(count: int, cd_size: int, cd_offset: int, comment: bytes = b"", comment_length=None) -> bytes:
    if comment_length is None:
        comment_length = len(comment)
    return struct.pack(
        "<4s4H2IH", b"PK\x05\x06", 0, 0, count, count, cd_size, cd_offset, comment_length
    ) + comment


def build_archive(*members: Member, comment: bytes = b"") -> bytes:
    body = b""
    offsets = []
    for member in members:
        offsets.append(len(body))
        body += local_header(member) + member.payload
    directory = b"".join(central_header(m, o) for m, o in zip(members, offsets))
    return body + directory + eocd(len(members), len(directory), len(body), comment)


def as_stream(data: bytes) -> io.BytesIO:
    return io.BytesIO(data)
