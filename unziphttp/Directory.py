#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# unzip-http - Extract single files from remote ZIP archives
# Copyright (C) 2025-2026 unzip-http contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Central directory resolution from the tail of a ZIP archive.

Only the last few KiB of a remote archive are fetched up front. This module
finds the (ZIP64) end of central directory record inside that tail window,
maps absolute archive offsets into it, and decodes the central directory
into an immutable EntryIndex. All decoding borrows the buffer it is given
and returns new values, so a finished EntryIndex can be shared by threads.
"""

import struct
import zipfile

from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Iterator, Optional, Tuple

from unziphttp.Errors import FormatError, DirectoryNotFound
from unziphttp.Kernel import getLogger
from unziphttp.Settings import NAME_ENCODING
from unziphttp.Utils import _unicode

logger = getLogger(__name__)

# ZIP format constants (from PKZIP APPNOTE.TXT specification)
CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringCentralDir)[0] # 0x02014b50
END_OF_CENTRAL_DIR_MAGIC = zipfile.stringEndArchive # PK\x05\x06
ZIP64_END_OF_CENTRAL_DIR_MAGIC = zipfile.stringEndArchive64 # PK\x06\x06

# signature, disk, cd disk, entries on disk, total entries, cd size, cd offset, comment length
END_OF_CENTRAL_DIR_STRUCT = struct.Struct('<4s4H2IH')

# signature, record size, made by, needed, disk, cd disk, entries on disk, total entries, cd size, cd offset
ZIP64_END_OF_CENTRAL_DIR_STRUCT = struct.Struct('<4sQ2H2I4Q')

# signature, made by, needed, flags, method, time, date, crc, compressed, uncompressed,
# name length, extra length, comment length, disk start, internal attr, external attr, local header offset
CENTRAL_DIR_STRUCT = struct.Struct('<I6H3I5H2I')

EXTRA_FIELD_HEADER_STRUCT = struct.Struct('<2H')

# Fixed part of the ZIP64 record after signature and size fields
ZIP64_END_OF_CENTRAL_DIR_MIN_RECORD_SIZE = 44

ZIP64_EXTRA_FIELD_ID = 0x0001
ZIP64_SENTINEL = 0xFFFFFFFF

ENCRYPTED_FLAG = 0x0001
UTF8_FLAG = 0x0800


@dataclass(frozen=True)
class EndOfCentralDirectoryRecord:
    """Decoded end of central directory, standard or ZIP64, in absolute archive coordinates"""
    isZip64: bool
    diskNumber: int
    diskWithCentralDirectory: int
    entriesThisDisk: int
    totalEntries: int
    centralDirectorySize: int
    centralDirectoryOffset: int
    position: int # Index of the signature inside the searched buffer
    comment: bytes = b''


@dataclass(frozen=True)
class CentralDirectoryEntry:
    """One archive member as listed in the central directory"""
    signature: int
    versionMadeBy: int
    versionNeeded: int
    generalPurposeFlags: int
    compressionMethod: int
    lastModTime: int
    lastModDate: int
    crc32: int
    compressedSize: int
    uncompressedSize: int
    fileNameLength: int
    extraFieldLength: int
    fileCommentLength: int
    diskNumberStart: int
    internalAttributes: int
    externalAttributes: int
    offsetLocalHeader: int
    fileName: str

    @property
    def isDirectory(self) -> bool:
        return self.fileName.endswith('/')

    @property
    def isEncrypted(self) -> bool:
        return bool(self.generalPurposeFlags & ENCRYPTED_FLAG)

    @property
    def isUtf8(self) -> bool:
        return bool(self.generalPurposeFlags & UTF8_FLAG)

    @property
    def modifiedTime(self) -> datetime:
        """DOS date/time as datetime; invalid stamps map to the DOS epoch."""
        try:
            return datetime(
                ((self.lastModDate >> 9) & 0x7F) + 1980,
                (self.lastModDate >> 5) & 0x0F,
                self.lastModDate & 0x1F,
                (self.lastModTime >> 11) & 0x1F,
                (self.lastModTime >> 5) & 0x3F,
                (self.lastModTime & 0x1F) * 2,
            )
        except ValueError:
            return datetime(1980, 1, 1)


# =============================================================================
# DirectoryLocator
# =============================================================================


def _decodeZip64EndRecord(buffer, position) -> Optional[EndOfCentralDirectoryRecord]:
    if position + ZIP64_END_OF_CENTRAL_DIR_STRUCT.size > len(buffer):
        logger.debug(f'ZIP64 end record signature at {position} is cut off by the window end, ignored')
        return None

    (_, recordSize, _, _, diskNumber, diskWithCentralDirectory, entriesThisDisk, totalEntries,
     centralDirectorySize, centralDirectoryOffset) = ZIP64_END_OF_CENTRAL_DIR_STRUCT.unpack_from(buffer, position)

    if recordSize < ZIP64_END_OF_CENTRAL_DIR_MIN_RECORD_SIZE:
        logger.debug(f'ZIP64 end record signature at {position} has record size {recordSize}, ignored')
        return None

    return EndOfCentralDirectoryRecord(
        isZip64=True,
        diskNumber=diskNumber,
        diskWithCentralDirectory=diskWithCentralDirectory,
        entriesThisDisk=entriesThisDisk,
        totalEntries=totalEntries,
        centralDirectorySize=centralDirectorySize,
        centralDirectoryOffset=centralDirectoryOffset,
        position=position,
    )


def _decodeEndRecord(buffer, position) -> EndOfCentralDirectoryRecord:
    if position + END_OF_CENTRAL_DIR_STRUCT.size > len(buffer):
        raise DirectoryNotFound(f'End of central directory record at {position} is truncated')

    (_, diskNumber, diskWithCentralDirectory, entriesThisDisk, totalEntries, centralDirectorySize,
     centralDirectoryOffset, commentLength) = END_OF_CENTRAL_DIR_STRUCT.unpack_from(buffer, position)

    commentStart = position + END_OF_CENTRAL_DIR_STRUCT.size

    return EndOfCentralDirectoryRecord(
        isZip64=False,
        diskNumber=diskNumber,
        diskWithCentralDirectory=diskWithCentralDirectory,
        entriesThisDisk=entriesThisDisk,
        totalEntries=totalEntries,
        centralDirectorySize=centralDirectorySize,
        centralDirectoryOffset=centralDirectoryOffset,
        position=position,
        comment=bytes(buffer[commentStart:commentStart + commentLength]),
    )


def locateEndRecord(buffer, archiveLength: int) -> EndOfCentralDirectoryRecord:
    """
    Find and decode the end of central directory inside the tail window.

    The rightmost ZIP64 record wins over the standard one. Searching from the
    right keeps signature-like bytes earlier in the window from matching.

    Args:
        buffer: Last min(windowSize, archiveLength) bytes of the archive
        archiveLength: Total archive length

    Raises:
        DirectoryNotFound: No record, or the record points past the archive end
    """
    record = None

    position = buffer.rfind(ZIP64_END_OF_CENTRAL_DIR_MAGIC)
    if position >= 0:
        record = _decodeZip64EndRecord(buffer, position)

    if record is None:
        position = buffer.rfind(END_OF_CENTRAL_DIR_MAGIC)
        if position >= 0:
            record = _decodeEndRecord(buffer, position)

    if record is None:
        raise DirectoryNotFound('Cannot find central directory')

    if record.centralDirectoryOffset >= archiveLength:
        raise DirectoryNotFound(
            f'Central directory offset {record.centralDirectoryOffset} is outside the archive ({archiveLength} bytes)'
        )

    logger.debug(
        f'End record found: zip64={record.isZip64} entries={record.totalEntries} '
        f'cdOffset={record.centralDirectoryOffset} cdSize={record.centralDirectorySize}'
    )
    return record


# =============================================================================
# OffsetTranslator
# =============================================================================


class OffsetTranslator:
    """Maps absolute archive offsets to indices of a buffer holding the archive tail."""

    def __init__(self, bufferLength: int, archiveLength: int):
        self.bufferLength = bufferLength
        self.archiveLength = archiveLength

    @property
    def coversArchive(self) -> bool:
        return self.archiveLength <= self.bufferLength

    def toIndex(self, offset: int) -> Optional[int]:
        """
        Returns:
            Buffer index of the offset, or None when the offset lies before the window
            and the caller has to fetch that region itself.
        """
        if self.coversArchive:
            return offset

        index = self.bufferLength - (self.archiveLength - offset)
        return index if index >= 0 else None


# =============================================================================
# CentralDirectoryDecoder
# =============================================================================


def decodeName(rawName: bytes, flags: int, nameEncoding: str = NAME_ENCODING) -> str:
    """Decode an entry name: UTF-8 if flagged, else the configured codec ('auto' guesses with chardet)."""
    if flags & UTF8_FLAG:
        return rawName.decode('utf-8', errors='replace')

    if nameEncoding == 'auto':
        return _unicode(rawName, throw=False) or rawName.decode('cp437')

    return rawName.decode(nameEncoding, errors='replace')


def applyZip64Extra(extra: bytes, uncompressedSize: int, compressedSize: int,
                    offsetLocalHeader: int) -> Tuple[int, int, int]:
    """
    Replace sentinel values with the 8-byte values of the ZIP64 extra field.

    The ZIP64 payload only carries values for fields set to 0xFFFFFFFF, always in the
    order uncompressed size, compressed size, local header offset. The 4-byte disk
    number override is not read (no multi-disk support).

    Raises:
        FormatError: The ZIP64 payload is shorter than the sentinel fields require
    """
    index = 0
    while index + EXTRA_FIELD_HEADER_STRUCT.size <= len(extra):
        fieldId, fieldSize = EXTRA_FIELD_HEADER_STRUCT.unpack_from(extra, index)
        index += EXTRA_FIELD_HEADER_STRUCT.size
        payload = extra[index:index + fieldSize]
        index += fieldSize

        if fieldId != ZIP64_EXTRA_FIELD_ID:
            continue

        sentinels = [uncompressedSize, compressedSize, offsetLocalHeader].count(ZIP64_SENTINEL)
        if len(payload) < 8 * sentinels:
            raise FormatError(f'ZIP64 extra field holds {len(payload)} bytes, {8 * sentinels} needed')

        values = iter(struct.unpack_from(f'<{sentinels}Q', payload))

        if uncompressedSize == ZIP64_SENTINEL:
            uncompressedSize = next(values)
        if compressedSize == ZIP64_SENTINEL:
            compressedSize = next(values)
        if offsetLocalHeader == ZIP64_SENTINEL:
            offsetLocalHeader = next(values)

    return uncompressedSize, compressedSize, offsetLocalHeader


def decodeEntry(buffer, index: int, end: int,
                nameEncoding: str = NAME_ENCODING) -> Tuple[CentralDirectoryEntry, int]:
    """
    Decode one central directory entry starting at index.

    Returns:
        (entry, index of the next entry)

    Raises:
        FormatError: Fewer than 46 bytes left, wrong signature, or variable part past end
    """
    if end - index < CENTRAL_DIR_STRUCT.size:
        raise FormatError(
            f'Central directory entry at {index} is truncated: {end - index} bytes left, '
            f'{CENTRAL_DIR_STRUCT.size} needed'
        )

    (signature, versionMadeBy, versionNeeded, flags, method, modTime, modDate, crc, compressedSize,
     uncompressedSize, nameLength, extraLength, commentLength, diskNumberStart, internalAttributes,
     externalAttributes, offsetLocalHeader) = CENTRAL_DIR_STRUCT.unpack_from(buffer, index)

    if signature != CENTRAL_DIR_SIGNATURE:
        raise FormatError(f'Bad central directory signature 0x{signature:08x} at {index}')

    nameStart = index + CENTRAL_DIR_STRUCT.size
    extraStart = nameStart + nameLength
    commentStart = extraStart + extraLength
    nextIndex = commentStart + commentLength # Comment is skipped

    if nextIndex > end:
        raise FormatError(f'Central directory entry at {index} runs {nextIndex - end} bytes past the directory end')

    rawName = bytes(buffer[nameStart:extraStart])
    extra = bytes(buffer[extraStart:commentStart])

    uncompressedSize, compressedSize, offsetLocalHeader = applyZip64Extra(
        extra, uncompressedSize, compressedSize, offsetLocalHeader
    )

    entry = CentralDirectoryEntry(
        signature=signature,
        versionMadeBy=versionMadeBy,
        versionNeeded=versionNeeded,
        generalPurposeFlags=flags,
        compressionMethod=method,
        lastModTime=modTime,
        lastModDate=modDate,
        crc32=crc,
        compressedSize=compressedSize,
        uncompressedSize=uncompressedSize,
        fileNameLength=nameLength,
        extraFieldLength=extraLength,
        fileCommentLength=commentLength,
        diskNumberStart=diskNumberStart,
        internalAttributes=internalAttributes,
        externalAttributes=externalAttributes,
        offsetLocalHeader=offsetLocalHeader,
        fileName=decodeName(rawName, flags, nameEncoding),
    )
    return entry, nextIndex


def iterEntries(buffer, start: int, end: int, nameEncoding: str = NAME_ENCODING) -> Iterator[CentralDirectoryEntry]:
    index = start
    while index < end:
        entry, index = decodeEntry(buffer, index, end, nameEncoding)
        yield entry


def decodeCentralDirectory(buffer, start: int, end: int, expectedCount: int, archiveLength: Optional[int] = None,
                           nameEncoding: str = NAME_ENCODING) -> Tuple[CentralDirectoryEntry, ...]:
    """
    Decode every entry in buffer[start:end], in central directory order.

    Raises:
        FormatError: Buffer underrun, an entry pointing past the archive end, or a
                     count different from expectedCount
    """
    if start < 0 or start > end or end > len(buffer):
        raise FormatError(f'Central directory [{start}, {end}) does not fit the {len(buffer)} byte buffer')

    entries = []
    for entry in iterEntries(buffer, start, end, nameEncoding):
        if archiveLength is not None and entry.offsetLocalHeader >= archiveLength:
            raise FormatError(
                f'Entry {entry.fileName!r} points to offset {entry.offsetLocalHeader} past archive end {archiveLength}'
            )
        entries.append(entry)

    if len(entries) != expectedCount:
        raise FormatError(f'Inconsistent central directory: {len(entries)} entries decoded, {expectedCount} declared')

    return tuple(entries)


# =============================================================================
# EntryIndex
# =============================================================================


class EntryIndex:
    """
    Immutable, ordered view of the central directory.

    Positions follow central directory order, which is what extraction range
    boundaries are computed from. Name lookups resolve duplicates to the last
    occurrence.
    """

    def __init__(self, entries):
        self._entries = tuple(entries)
        self._positions = MappingProxyType({entry.fileName: position for position, entry in enumerate(self._entries)})

    def __len__(self):
        return len(self._entries)

    def __iter__(self):
        return iter(self._entries)

    def __getitem__(self, position) -> CentralDirectoryEntry:
        return self._entries[position]

    def __contains__(self, name):
        return name in self._positions

    def __repr__(self):
        return f'<EntryIndex entries={len(self._entries)}>'

    def find(self, name: str) -> Optional[int]:
        return self._positions.get(name)

    def get(self, name: str) -> Optional[CentralDirectoryEntry]:
        position = self.find(name)
        return None if position is None else self._entries[position]

    def names(self):
        return [entry.fileName for entry in self._entries]

    def nextEntry(self, position: int) -> Optional[CentralDirectoryEntry]:
        """Entry following position in central directory order, None for the last one."""
        if position + 1 < len(self._entries):
            return self._entries[position + 1]
        return None


def resolveEntries(tail, archiveLength: int, fetch: Callable[[int, int], bytes],
                   nameEncoding: str = NAME_ENCODING) -> Tuple[EndOfCentralDirectoryRecord, EntryIndex]:
    """
    Locate, translate and decode: tail window -> EntryIndex.

    Args:
        tail: Tail window of the archive
        archiveLength: Total archive length
        fetch: fetch(offset, length) -> bytes, used when the central directory starts
               before the tail window
        nameEncoding: Codec for names without the UTF-8 flag
    """
    record = locateEndRecord(tail, archiveLength)

    translator = OffsetTranslator(len(tail), archiveLength)
    start = translator.toIndex(record.centralDirectoryOffset)

    if start is None:
        logger.info(
            f'Central directory ({record.centralDirectorySize} bytes at {record.centralDirectoryOffset}) '
            f'starts before the {len(tail)} byte window, fetching it'
        )
        buffer = fetch(record.centralDirectoryOffset, record.centralDirectorySize) if record.centralDirectorySize else b''
        start = 0
    else:
        buffer = tail

    entries = decodeCentralDirectory(
        buffer, start, start + record.centralDirectorySize, record.totalEntries, archiveLength, nameEncoding
    )
    return record, EntryIndex(entries)
