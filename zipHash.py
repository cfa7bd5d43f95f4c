"""
Turn the legacy (ZipCrypto) encrypted entries of a ZIP archive into
``$pkzip2$`` hash lines for offline password recovery tools.
"""
from dataclasses import dataclass, field
import logging
from typing import List, Optional, Tuple

from zipHeaders import (
    FLAG_DATA_DESCRIPTOR,
    FLAG_ENCRYPTED,
    CentralDirectoryFileHeader,
    EndOfCentralDirectory,
    LocalFileHeader,
    MalformedExtraField,
    UnsupportedEntry,
    ZipArchiveReader,
    ZipHashError,
    u16_le,
)

logger = logging.getLogger(__name__)

LEGACY_VERSIONS = (10, 20, 45)
ALGORITHM_TAG = 1
CHECK_BYTES = 2
PROTOCOL_VERSION = 2
MAGIC_TYPE = 0

HASH_PREFIX = "$pkzip2$"
HASH_SUFFIX = "$/pkzip$"


def is_legacy_candidate(flags: int, version_needed: int) -> bool:
    return bool(flags & FLAG_ENCRYPTED) and version_needed in LEGACY_VERSIONS


def verification_bytes(flags: int, mod_time: int, crc32: int) -> str:
    """
    Two bytes the cracker compares against the decrypted header. Streamed
    entries (bit 3) have no CRC in the local header, so the modification
    time is used instead.
    """
    if flags & FLAG_DATA_DESCRIPTOR:
        return f"{(mod_time >> 8) & 0xFF:02x}{mod_time & 0xFF:02x}"
    return f"{(crc32 >> 24) & 0xFF:02x}{(crc32 >> 16) & 0xFF:02x}"


def extra_field_trace(extra: bytes) -> Tuple[int, ...]:
    ids = []
    offset = 0
    while offset < len(extra):
        if offset + 4 > len(extra):
            raise MalformedExtraField(
                f"Extra field header at {offset} is cut short ({len(extra) - offset} bytes left)."
            )
        header_id = u16_le(extra, offset)
        data_size = u16_le(extra, offset + 2)
        if offset + 4 + data_size > len(extra):
            raise MalformedExtraField(
                f"Extra field {header_id:#06x} at {offset} declares {data_size} bytes, "
                f"only {len(extra) - offset - 4} are left."
            )
        ids.append(header_id)
        offset += 4 + data_size
    return tuple(ids)


@dataclass(frozen=True)
class LegacyEntry:
    file_name: str
    version_needed: int
    flags: int
    compression_method: int
    mod_time: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    payload_offset: int
    check: str
    extra_ids: Tuple[int, ...]
    payload: bytes = field(repr=False)

    @property
    def time_check(self) -> bool:
        return bool(self.flags & FLAG_DATA_DESCRIPTOR)

    @property
    def trace(self) -> str:
        trace = f"ver {self.version_needed // 10}.{self.version_needed % 10} "
        return trace + "".join(f"efh {i:x} " for i in self.extra_ids)

    def describe(self, archive_name: str) -> str:
        return (
            f"{self.trace}{archive_name}/{self.file_name} PKZIP Encr: "
            f"{'2b chk, ' if CHECK_BYTES == 2 else ''}{'TS_chk, ' if self.time_check else ''}"
            f"cmplen={self.compressed_size}, decmplen={self.uncompressed_size}, "
            f"crc={self.crc32:08x}, ts={self.mod_time:04x}, cs={self.check}, "
            f"type={self.compression_method}"
        )


def classify(entry: CentralDirectoryFileHeader, header: LocalFileHeader) -> LegacyEntry:
    if not is_legacy_candidate(header.general_purpose_bit_flag, header.version_needed_to_extract):
        raise UnsupportedEntry(
            f"{header.file_name} is not ZipCrypto encrypted "
            f"(flags {header.general_purpose_bit_flag:#06x}, version {header.version_needed_to_extract})."
        )
    return LegacyEntry(
        file_name=header.file_name,
        version_needed=header.version_needed_to_extract,
        flags=header.general_purpose_bit_flag,
        compression_method=header.compression_method,
        mod_time=header.last_mod_time,
        crc32=entry.crc32,
        compressed_size=entry.compressed_size,
        uncompressed_size=entry.uncompressed_size,
        payload_offset=header.payload_offset,
        check=verification_bytes(
            header.general_purpose_bit_flag, header.last_mod_time, header.crc32
        ),
        extra_ids=extra_field_trace(header.extra_field),
        payload=header.payload,
    )


def format_hash(archive_name: str, entry: LegacyEntry) -> str:
    fields = [
        f"{ALGORITHM_TAG:x}",
        f"{CHECK_BYTES:x}",
        f"{PROTOCOL_VERSION:x}",
        f"{MAGIC_TYPE:x}",
        f"{entry.compressed_size:x}",
        f"{entry.uncompressed_size:x}",
        f"{entry.crc32:08x}",
        "0",
        f"{entry.payload_offset:x}",
        f"{entry.compression_method:x}",
        f"{entry.compressed_size:x}",
        entry.check,
        entry.payload.hex(),
    ]
    return (
        f"{archive_name}/{entry.file_name}:{HASH_PREFIX}{'*'.join(fields)}{HASH_SUFFIX}"
        f":{entry.file_name}:{archive_name}::{archive_name}"
    )


@dataclass
class EntryResult:
    HASH = "hash"
    SKIPPED = "skipped"
    FAILED = "failed"

    directory_entry: CentralDirectoryFileHeader
    status: str
    line: Optional[str] = None
    entry: Optional[LegacyEntry] = None
    error: Optional[ZipHashError] = None

    @property
    def file_name(self) -> str:
        return self.directory_entry.file_name


@dataclass
class ArchiveContext:
    archive_name: str
    eocd: EndOfCentralDirectory
    central_directory: List[CentralDirectoryFileHeader] = field(default_factory=list)
    local_headers: List[LocalFileHeader] = field(default_factory=list)
    results: List[EntryResult] = field(default_factory=list)
    check_bytes: int = CHECK_BYTES
    algorithm: int = ALGORITHM_TAG

    def lines(self) -> List[str]:
        return [result.line for result in self.results if result.status == EntryResult.HASH]

    def failures(self) -> List[EntryResult]:
        return [result for result in self.results if result.status == EntryResult.FAILED]

    def process_entry(self, reader: ZipArchiveReader, entry: CentralDirectoryFileHeader) -> EntryResult:
        try:
            header = reader.read_local_header(entry)
            self.local_headers.append(header)
            legacy = classify(entry, header)
        except UnsupportedEntry as e:
            logger.info("Skipping %s: %s", entry.file_name, e)
            return EntryResult(entry, EntryResult.SKIPPED, error=e)
        except ZipHashError as e:
            logger.warning("Failed on %s (%s): %s", entry.file_name, e.stage, e)
            return EntryResult(entry, EntryResult.FAILED, error=e)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("%s", legacy.describe(self.archive_name))
        return EntryResult(
            entry, EntryResult.HASH, line=format_hash(self.archive_name, legacy), entry=legacy
        )


def process_archive(stream, archive_name: str, allow_comment: bool = False) -> ArchiveContext:
    """
    Parse the archive in ``stream`` and classify every entry of its central
    directory. Trailer and directory errors propagate; errors that concern a
    single entry are recorded on its ``EntryResult`` and processing goes on.
    """
    reader = ZipArchiveReader(stream)
    eocd = reader.read_end_of_central_directory(allow_comment=allow_comment)
    context = ArchiveContext(archive_name, eocd)
    context.central_directory = reader.read_central_directory(eocd)
    for entry in context.central_directory:
        context.results.append(context.process_entry(reader, entry))
    return context
