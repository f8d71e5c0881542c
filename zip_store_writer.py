"""
Builds a standard ZIP container in memory, store method only, without an external codec library.

Layout (all integers little-endian):
  [local header + name + content] * n
  [central-directory record + name] * n
  end-of-central-directory record

Reference: PKWARE APPNOTE.TXT, sections 4.3.7 (local header), 4.3.12 (central directory)
and 4.3.16 (end of central directory).
"""

import logging
import struct
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from export_coordinator import CancellationToken

log = logging.getLogger(__name__)

LOCAL_HEADER_SIGNATURE: int = 0x04034B50
CENTRAL_DIRECTORY_SIGNATURE: int = 0x02014B50
END_OF_CENTRAL_DIRECTORY_SIGNATURE: int = 0x06054B50

VERSION: int = 20  # 2.0, enough for stored entries
FLAG_UTF8_NAMES: int = 0x0800
METHOD_STORE: int = 0

LOCAL_HEADER_SIZE: int = 30
CENTRAL_DIRECTORY_RECORD_SIZE: int = 46
END_RECORD_SIZE: int = 22

U16_MAX: int = 0xFFFF
U32_MAX: int = 0xFFFFFFFF


class ArchiveTooLargeError(Exception):
    """
    A value does not fit its fixed-width ZIP field (more than 65535 entries, or a size/offset past 4 GiB).
    ZIP64 is not written; the build is rejected instead of truncating silently.
    """


class ArchiveBuildCancelled(Exception):
    """
    Cancellation was observed between entries while building the archive.
    """


## crc-32 -------------------------------------------------------------


def _make_crc32_table() -> tuple[int, ...]:
    table: list[int] = []
    for i in range(256):
        c: int = i
        for _ in range(8):
            c = (0xEDB88320 ^ (c >> 1)) if (c & 1) else (c >> 1)
        table.append(c)
    return tuple(table)


CRC32_TABLE: tuple[int, ...] = _make_crc32_table()


def crc32(data: bytes) -> int:
    """
    Standard (ISO-HDLC) CRC-32, table-driven.
    crc32(b'') == 0; crc32(b'123456789') == 0xCBF43926.
    """
    crc: int = 0xFFFFFFFF
    table = CRC32_TABLE
    for byte in data:
        crc = (crc >> 8) ^ table[(crc ^ byte) & 0xFF]
    return crc ^ 0xFFFFFFFF


## dos timestamps ------------------------------------------------------


def dos_datetime(moment: datetime) -> tuple[int, int]:
    """
    Packs a local time into the (time, date) pair used by ZIP headers, each truncated to 16 bits.
    Seconds are stored at 2-second resolution.
    """
    dos_time: int = ((moment.hour << 11) | (moment.minute << 5) | (moment.second // 2)) & U16_MAX
    dos_date: int = (((moment.year - 1980) << 9) | (moment.month << 5) | moment.day) & U16_MAX
    return dos_time, dos_date


## byte builder --------------------------------------------------------


class ByteBufferBuilder:
    """
    Accumulates a binary record through named, width-tagged little-endian writes.
    A value that does not fit its declared width raises ArchiveTooLargeError naming the field.
    """

    def __init__(self) -> None:
        self._parts: list[bytes] = []
        self.size: int = 0

    def _append(self, chunk: bytes) -> 'ByteBufferBuilder':
        self._parts.append(chunk)
        self.size += len(chunk)
        return self

    def u16(self, field: str, value: int) -> 'ByteBufferBuilder':
        if not 0 <= value <= U16_MAX:
            raise ArchiveTooLargeError(f'{field}={value} does not fit in 16 bits')
        return self._append(struct.pack('<H', value))

    def u32(self, field: str, value: int) -> 'ByteBufferBuilder':
        if not 0 <= value <= U32_MAX:
            raise ArchiveTooLargeError(f'{field}={value} does not fit in 32 bits')
        return self._append(struct.pack('<I', value))

    def raw(self, data: bytes) -> 'ByteBufferBuilder':
        return self._append(bytes(data))

    def getvalue(self) -> bytes:
        return b''.join(self._parts)


## records -------------------------------------------------------------


@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    content: bytes


@dataclass(frozen=True)
class EntryRecord:
    """
    Metadata kept from the local-header pass for the central directory.
    """

    name_bytes: bytes
    size: int
    crc: int
    offset: int
    dos_time: int
    dos_date: int


def local_header(record: EntryRecord) -> bytes:
    b = ByteBufferBuilder()
    b.u32('local_header_signature', LOCAL_HEADER_SIGNATURE)
    b.u16('version_needed', VERSION)
    b.u16('flags', FLAG_UTF8_NAMES)
    b.u16('compression_method', METHOD_STORE)
    b.u16('last_mod_time', record.dos_time)
    b.u16('last_mod_date', record.dos_date)
    b.u32('crc32', record.crc)
    b.u32('compressed_size', record.size)
    b.u32('uncompressed_size', record.size)
    b.u16('name_length', len(record.name_bytes))
    b.u16('extra_length', 0)
    return b.getvalue()


def central_directory_record(record: EntryRecord) -> bytes:
    b = ByteBufferBuilder()
    b.u32('central_directory_signature', CENTRAL_DIRECTORY_SIGNATURE)
    b.u16('version_made_by', VERSION)
    b.u16('version_needed', VERSION)
    b.u16('flags', FLAG_UTF8_NAMES)
    b.u16('compression_method', METHOD_STORE)
    b.u16('last_mod_time', record.dos_time)
    b.u16('last_mod_date', record.dos_date)
    b.u32('crc32', record.crc)
    b.u32('compressed_size', record.size)
    b.u32('uncompressed_size', record.size)
    b.u16('name_length', len(record.name_bytes))
    b.u16('extra_length', 0)
    b.u16('comment_length', 0)
    b.u16('disk_number_start', 0)
    b.u16('internal_attributes', 0)
    b.u32('external_attributes', 0)
    b.u32('local_header_offset', record.offset)
    return b.getvalue()


def end_of_central_directory(entry_count: int, directory_size: int, directory_offset: int) -> bytes:
    b = ByteBufferBuilder()
    b.u32('end_of_central_directory_signature', END_OF_CENTRAL_DIRECTORY_SIGNATURE)
    b.u16('disk_number', 0)
    b.u16('central_directory_disk', 0)
    b.u16('entries_on_disk', entry_count)
    b.u16('total_entries', entry_count)
    b.u32('central_directory_size', directory_size)
    b.u32('central_directory_offset', directory_offset)
    b.u16('comment_length', 0)
    return b.getvalue()


def build_archive(
    entries: Sequence[ArchiveEntry],
    *,
    now: Callable[[], datetime] = datetime.now,
    cancel: CancellationToken | None = None,
    on_entry: Callable[[int, int, str], None] | None = None,
) -> bytes:
    """
    Builds the whole ZIP in memory from `entries`, in the given order.
    - Checks `cancel` before each entry and raises ArchiveBuildCancelled when set.
    - Calls `on_entry(done, total, name)` after each local entry is written.
    - Raises ArchiveTooLargeError when any count/size/offset overflows its field.
    """
    if len(entries) > U16_MAX:
        raise ArchiveTooLargeError(f'{len(entries)} entries exceed the 65535-entry limit')

    out = ByteBufferBuilder()
    records: list[EntryRecord] = []
    total: int = len(entries)
    for done, entry in enumerate(entries, start=1):
        if cancel is not None and cancel.cancelled:
            raise ArchiveBuildCancelled(f'cancelled after {done - 1}/{total} entries')
        name_bytes: bytes = entry.name.encode('utf-8')
        dos_time, dos_date = dos_datetime(now())
        record = EntryRecord(
            name_bytes=name_bytes,
            size=len(entry.content),
            crc=crc32(entry.content),
            offset=out.size,
            dos_time=dos_time,
            dos_date=dos_date,
        )
        out.raw(local_header(record)).raw(name_bytes).raw(entry.content)
        records.append(record)
        if on_entry is not None:
            on_entry(done, total, entry.name)

    directory_offset: int = out.size
    for record in records:
        out.raw(central_directory_record(record)).raw(record.name_bytes)
    directory_size: int = out.size - directory_offset

    out.raw(end_of_central_directory(len(records), directory_size, directory_offset))
    log.debug(f'built archive: {len(records)} entries, {out.size} bytes, directory at {directory_offset}')
    return out.getvalue()
