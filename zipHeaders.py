from dataclasses import dataclass, field
import logging
import os
import struct

logger = logging.getLogger(__name__)

FLAG_ENCRYPTED = 0x0001
FLAG_DATA_DESCRIPTOR = 0x0008
FLAG_UTF8 = 0x0800

MAX_COMMENT_LENGTH = 0xFFFF


class ZipHashError(Exception):
    """Base class for everything that can go wrong while reading an archive."""

    stage = "archive"

    def __init__(self, message, stage=None):
        super().__init__(message)
        if stage is not None:
            self.stage = stage


class MalformedArchive(ZipHashError):
    pass


class TruncatedArchive(ZipHashError):
    pass


class UnsupportedEntry(ZipHashError):
    stage = "entry"


class MalformedExtraField(ZipHashError):
    stage = "extra-field"


def u16_le(data, offset=0):
    return struct.unpack_from("<H", data, offset)[0]


def u32_le(data, offset=0):
    return struct.unpack_from("<I", data, offset)[0]


def decode_name(raw: bytes, flags: int) -> str:
    # Bit 11 marks UTF-8 names; many tools write UTF-8 without it, so CP437
    # is only used for names that are not valid UTF-8
    if flags & FLAG_UTF8:
        return raw.decode("utf-8", errors="replace")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("cp437")


@dataclass
class EndOfCentralDirectory:
    FIXED_SIZE = 22  # Fixed size of the EOCD record (excluding the comment)
    SIGNATURE = b"\x50\x4b\x05\x06"

    signature: bytes
    disk_number: int
    central_directory_disk: int
    disk_entries: int
    total_entries: int
    central_directory_size: int
    central_directory_offset: int
    comment_length: int

    @classmethod
    def unpack(cls, data: bytes):
        if len(data) < cls.FIXED_SIZE:
            raise MalformedArchive("EOCD record is incomplete.", "trailer")
        header_struct = struct.unpack("<4s4H2IH", data[:cls.FIXED_SIZE])
        if header_struct[0] != cls.SIGNATURE:
            raise MalformedArchive(
                f"EOCD signature mismatch: {header_struct[0].hex()}", "trailer"
            )
        return cls(
            signature=header_struct[0],
            disk_number=header_struct[1],
            central_directory_disk=header_struct[2],
            disk_entries=header_struct[3],
            total_entries=header_struct[4],
            central_directory_size=header_struct[5],
            central_directory_offset=header_struct[6],
            comment_length=header_struct[7],
        )

    def check_supported(self):
        if self.disk_number != 0 or self.central_directory_disk != 0 or (
            self.disk_entries != self.total_entries
        ):
            raise MalformedArchive("Multi-disk archives are not supported.", "trailer")
        if (
            self.total_entries == 0xFFFF
            or self.central_directory_size == 0xFFFFFFFF
            or self.central_directory_offset == 0xFFFFFFFF
        ):
            raise MalformedArchive("ZIP64 archives are not supported.", "trailer")


@dataclass
class LocalFileHeader:
    FIXED_SIZE = 30  # Fixed size of the local file header (excluding variable fields)
    SIGNATURE = b"\x50\x4b\x03\x04"

    signature: bytes
    version_needed_to_extract: int
    general_purpose_bit_flag: int
    compression_method: int
    last_mod_time: int
    last_mod_date: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    file_name_length: int
    extra_field_length: int
    file_name: str = ""
    extra_field: bytes = b""
    payload: bytes = field(default=b"", repr=False)

    @classmethod
    def unpack(cls, data: bytes, file_name: str = "", extra_field: bytes = b""):
        header_struct = struct.unpack("<4s5H3I2H", data[:cls.FIXED_SIZE])
        if header_struct[0] != cls.SIGNATURE:
            raise MalformedArchive(
                f"Invalid local file header signature: {header_struct[0].hex()}",
                "local-header",
            )
        return cls(
            signature=header_struct[0],
            version_needed_to_extract=header_struct[1],
            general_purpose_bit_flag=header_struct[2],
            compression_method=header_struct[3],
            last_mod_time=header_struct[4],
            last_mod_date=header_struct[5],
            crc32=header_struct[6],
            compressed_size=header_struct[7],
            uncompressed_size=header_struct[8],
            file_name_length=header_struct[9],
            extra_field_length=header_struct[10],
            file_name=file_name,
            extra_field=extra_field,
        )

    @property
    def payload_offset(self) -> int:
        """Start of the file data, relative to the start of this header."""
        return self.FIXED_SIZE + self.file_name_length + self.extra_field_length


@dataclass
class CentralDirectoryFileHeader:
    FIXED_SIZE = 46  # Fixed size of the central directory file header (excluding variable fields)
    SIGNATURE = b"\x50\x4b\x01\x02"

    signature: bytes
    version_made_by: int
    version_needed_to_extract: int
    general_purpose_bit_flag: int
    compression_method: int
    last_mod_time: int
    last_mod_date: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    file_name_length: int
    extra_field_length: int
    file_comment_length: int
    disk_number_start: int
    internal_file_attributes: int
    external_file_attributes: int
    offset: int
    file_name: str = ""
    extra_field: bytes = b""

    @classmethod
    def unpack(cls, data: bytes, file_name: str = "", extra_field: bytes = b""):
        header_struct = struct.unpack("<4s6H3I5H2I", data[:cls.FIXED_SIZE])
        if header_struct[0] != cls.SIGNATURE:
            raise MalformedArchive(
                f"Invalid central directory file header signature: {header_struct[0].hex()}",
                "directory",
            )
        return cls(
            signature=header_struct[0],
            version_made_by=header_struct[1],
            # The high byte is the host system, only the version is kept
            version_needed_to_extract=header_struct[2] & 0xFF,
            general_purpose_bit_flag=header_struct[3],
            compression_method=header_struct[4],
            last_mod_time=header_struct[5],
            last_mod_date=header_struct[6],
            crc32=header_struct[7],
            compressed_size=header_struct[8],
            uncompressed_size=header_struct[9],
            file_name_length=header_struct[10],
            extra_field_length=header_struct[11],
            file_comment_length=header_struct[12],
            disk_number_start=header_struct[13],
            internal_file_attributes=header_struct[14],
            external_file_attributes=header_struct[15],
            offset=header_struct[16],
            file_name=file_name,
            extra_field=extra_field,
        )

    @property
    def file_name_offset(self) -> int:
        return self.FIXED_SIZE

    @property
    def record_size(self) -> int:
        return (
            self.FIXED_SIZE
            + self.file_name_length
            + self.extra_field_length
            + self.file_comment_length
        )


class ZipArchiveReader:
    """
    Reads the records of a ZIP archive from a seekable binary stream.

    The stream only needs ``seek``, ``tell`` and ``read``; local files and
    ``remoteFile.RemoteFile`` both qualify. Every read is done at an absolute
    offset, so one reader must not be shared between threads.
    """

    def __init__(self, stream):
        self.stream = stream
        self.size = stream.seek(0, os.SEEK_END)

    def _read_at(self, offset, length, stage):
        if offset + length > self.size:
            raise TruncatedArchive(
                f"Need {length} bytes at offset {offset:#x}, archive is only {self.size:#x} bytes long.",
                stage,
            )
        self.stream.seek(offset)
        data = self.stream.read(length)
        if len(data) != length:
            raise TruncatedArchive(
                f"Short read at offset {offset:#x}: wanted {length} bytes, got {len(data)}.",
                stage,
            )
        return data

    def find_eocd(self, data):
        """
        Find the last EOCD record in ``data`` whose comment runs exactly to
        the end of the buffer.
        """
        end = len(data)
        while True:
            eocd_offset = data.rfind(EndOfCentralDirectory.SIGNATURE, 0, end)
            if eocd_offset == -1:
                raise MalformedArchive("EOCD signature not found.", "trailer")
            tail = len(data) - eocd_offset - EndOfCentralDirectory.FIXED_SIZE
            if tail >= 0 and u16_le(data, eocd_offset + 20) == tail:
                return eocd_offset
            end = eocd_offset + 3

    def read_end_of_central_directory(self, allow_comment=False):
        if self.size < EndOfCentralDirectory.FIXED_SIZE:
            raise MalformedArchive(
                f"File is too small to be a ZIP archive ({self.size} bytes).", "trailer"
            )
        if allow_comment:
            window = min(self.size, EndOfCentralDirectory.FIXED_SIZE + MAX_COMMENT_LENGTH)
            last_bytes = self._read_at(self.size - window, window, "trailer")
            eocd_offset = self.find_eocd(last_bytes)
            eocd = EndOfCentralDirectory.unpack(last_bytes[eocd_offset:])
        else:
            eocd_data = self._read_at(
                self.size - EndOfCentralDirectory.FIXED_SIZE,
                EndOfCentralDirectory.FIXED_SIZE,
                "trailer",
            )
            eocd = EndOfCentralDirectory.unpack(eocd_data)
            if eocd.comment_length != 0:
                raise MalformedArchive(
                    f"Archive comments are not supported (comment length {eocd.comment_length}).",
                    "trailer",
                )
        eocd.check_supported()
        logger.debug("EOCD: %s", eocd)
        return eocd

    def iter_central_directory(self, eocd: EndOfCentralDirectory):
        central_directory_offset = eocd.central_directory_offset
        central_directory_size = eocd.central_directory_size
        if central_directory_offset + central_directory_size > self.size:
            raise MalformedArchive(
                f"Central directory at {central_directory_offset:#x} with size "
                f"{central_directory_size:#x} extends past the end of the archive.",
                "directory",
            )
        central_directory_data = self._read_at(
            central_directory_offset, central_directory_size, "directory"
        )

        offset = 0
        count = 0
        while count < eocd.total_entries:
            fixed_end = offset + CentralDirectoryFileHeader.FIXED_SIZE
            if fixed_end > central_directory_size:
                raise MalformedArchive(
                    f"Central directory record {count} at {offset:#x} is cut short.",
                    "directory",
                )
            central_directory_entry = CentralDirectoryFileHeader.unpack(
                central_directory_data[offset:fixed_end]
            )
            if offset + central_directory_entry.record_size > central_directory_size:
                raise MalformedArchive(
                    f"Central directory record {count} at {offset:#x} runs past the directory.",
                    "directory",
                )

            name_end = fixed_end + central_directory_entry.file_name_length
            extra_end = name_end + central_directory_entry.extra_field_length
            central_directory_entry.file_name = decode_name(
                central_directory_data[fixed_end:name_end],
                central_directory_entry.general_purpose_bit_flag,
            )
            central_directory_entry.extra_field = central_directory_data[name_end:extra_end]

            # The file comment is not needed
            offset += central_directory_entry.record_size
            count += 1
            logger.debug("CD entry %d: %s", count, central_directory_entry)
            yield central_directory_entry

        if offset != central_directory_size:
            raise MalformedArchive(
                f"Central directory declares {central_directory_size:#x} bytes for "
                f"{eocd.total_entries} entries, but they occupy {offset:#x}.",
                "directory",
            )

    def read_central_directory(self, eocd: EndOfCentralDirectory):
        return list(self.iter_central_directory(eocd))

    def read_local_header(self, entry: CentralDirectoryFileHeader):
        local_file_header_data = self._read_at(
            entry.offset, LocalFileHeader.FIXED_SIZE, "local-header"
        )
        local_file_header = LocalFileHeader.unpack(local_file_header_data)

        n = local_file_header.file_name_length
        m = local_file_header.extra_field_length
        variable = self._read_at(entry.offset + LocalFileHeader.FIXED_SIZE, n + m, "local-header")
        local_file_header.file_name = decode_name(
            variable[:n], local_file_header.general_purpose_bit_flag
        )
        local_file_header.extra_field = variable[n:]

        # Sizes in the local header may be zero for streamed entries, the
        # directory always has them.
        local_file_header.payload = self._read_at(
            entry.offset + local_file_header.payload_offset,
            entry.compressed_size,
            "local-header",
        )
        return local_file_header
