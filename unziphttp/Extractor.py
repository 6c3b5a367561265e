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

import struct
import zipfile
import zlib

from dataclasses import dataclass
from typing import Iterator

from unziphttp.Directory import CentralDirectoryEntry, EntryIndex
from unziphttp.Errors import (
    CorruptDataError, ProtocolError, TruncatedDataError, UnsupportedMethodError
)
from unziphttp.Kernel import getLogger
from unziphttp.Remote import PARTIAL_CONTENT, RemoteObject, readFully
from unziphttp.Settings import SettingsGetter

logger = getLogger(__name__)

LOCAL_FILE_HEADER_SIGNATURE = struct.unpack('<I', zipfile.stringFileHeader)[0] # 0x04034b50

# signature, needed, flags, method, time, date, crc, compressed, uncompressed, name length, extra length
LOCAL_FILE_HEADER_STRUCT = struct.Struct('<I5H3I2H')

STORE = zipfile.ZIP_STORED # 0
DEFLATE = zipfile.ZIP_DEFLATED # 8
SUPPORTED_METHODS = (STORE, DEFLATE)


@dataclass(frozen=True)
class FetchSpan:
    """Half-open byte range [start, end) of the archive"""
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    @property
    def endInclusive(self) -> int:
        return self.end - 1


class RangeExtractor:
    """
    Fetches and decompresses single entries with one ranged request each.

    The exact start of an entry's data is only known after its local header
    is read, and the local header may carry a different extra field than the
    central directory. So the request covers the whole stretch from the
    entry's local header up to the next entry's local header (central
    directory order), or up to the archive end for the last entry.

    Instances hold no per-extraction state; one extractor can serve many
    threads at once.
    """

    def __init__(self, remote: RemoteObject, index: EntryIndex, archiveLength: int, chunkSize: int = None,
                 verifyCrc: bool = None):
        settingsGetter = SettingsGetter.getInstance()

        self.remote = remote
        self.index = index
        self.archiveLength = archiveLength
        self.chunkSize = settingsGetter.chunkSize if chunkSize is None else chunkSize
        self.verifyCrc = settingsGetter.verifyCrc if verifyCrc is None else verifyCrc

    def computeSpan(self, position: int) -> FetchSpan:
        entry = self.index[position]
        nextEntry = self.index.nextEntry(position)

        boundary = self.archiveLength
        if nextEntry is not None:
            if nextEntry.offsetLocalHeader > entry.offsetLocalHeader:
                boundary = nextEntry.offsetLocalHeader
            else:
                logger.debug(
                    f'{nextEntry.fileName!r} is stored before {entry.fileName!r}, fetching up to the archive end'
                )

        return FetchSpan(entry.offsetLocalHeader, boundary)

    def _checkSupported(self, entry: CentralDirectoryEntry):
        if entry.isEncrypted:
            raise UnsupportedMethodError(f'{entry.fileName!r} is encrypted', method=entry.compressionMethod)

        if entry.compressionMethod not in SUPPORTED_METHODS:
            raise UnsupportedMethodError(
                f'{entry.fileName!r} uses compression method {entry.compressionMethod}, '
                f'only store (0) and deflate (8) are supported',
                method=entry.compressionMethod
            )

    def _skipLocalHeader(self, response, entry: CentralDirectoryEntry):
        """Consume the local header; its name and extra lengths are read here, not taken from the directory."""
        header = readFully(response, LOCAL_FILE_HEADER_STRUCT.size)
        if len(header) < LOCAL_FILE_HEADER_STRUCT.size:
            raise TruncatedDataError(f'Local header of {entry.fileName!r} is truncated ({len(header)} bytes)')

        fields = LOCAL_FILE_HEADER_STRUCT.unpack(header)
        signature, nameLength, extraLength = fields[0], fields[-2], fields[-1]

        if signature != LOCAL_FILE_HEADER_SIGNATURE:
            raise CorruptDataError(
                f'Bad local header signature 0x{signature:08x} for {entry.fileName!r} at {entry.offsetLocalHeader}'
            )

        skip = nameLength + extraLength
        if len(readFully(response, skip)) < skip:
            raise TruncatedDataError(f'Local header of {entry.fileName!r} is truncated')

    def iterChunks(self, position: int) -> Iterator[bytes]:
        """
        Yield the decompressed content of the entry at position.

        CRC-32 and size are checked once the last chunk is produced, so a
        consumer must treat the output as unverified until the generator ends.

        Raises:
            UnsupportedMethodError: Encrypted entry or method other than store/deflate
            ProtocolError: The ranged request was not answered with 206
            TruncatedDataError: Fewer bytes than compressedSize, or deflate stream cut short
            CorruptDataError: Inflate error, CRC-32 or size mismatch
        """
        entry = self.index[position]
        self._checkSupported(entry)

        span = self.computeSpan(position)
        logger.debug(f'Fetching {entry.fileName!r}: bytes={span.start}-{span.endInclusive} ({span.length} bytes)')

        with self.remote.get(span.start, span.endInclusive) as response:
            if response.statusCode != PARTIAL_CONTENT:
                raise ProtocolError(
                    f'HTTP status {response.statusCode} for {entry.fileName!r}, expected {PARTIAL_CONTENT}',
                    statusCode=response.statusCode
                )

            self._skipLocalHeader(response, entry)

            decompressor = zlib.decompressobj(-zlib.MAX_WBITS) if entry.compressionMethod == DEFLATE else None
            crc = 0
            produced = 0
            left = entry.compressedSize

            while left > 0:
                data = response.read(min(self.chunkSize, left))
                if not data:
                    raise TruncatedDataError(
                        f'{entry.fileName!r}: got {entry.compressedSize - left} of {entry.compressedSize} '
                        f'compressed bytes'
                    )
                left -= len(data)

                if decompressor:
                    try:
                        data = decompressor.decompress(data)
                    except zlib.error as e:
                        raise CorruptDataError(f'Cannot inflate {entry.fileName!r}: {e}') from e

                if data:
                    crc = zlib.crc32(data, crc)
                    produced += len(data)
                    yield data

        if decompressor:
            try:
                data = decompressor.flush()
            except zlib.error as e:
                raise CorruptDataError(f'Cannot inflate {entry.fileName!r}: {e}') from e

            if data:
                crc = zlib.crc32(data, crc)
                produced += len(data)
                yield data

            if not decompressor.eof and entry.compressedSize:
                raise TruncatedDataError(f'Deflate stream of {entry.fileName!r} ended early')

        if self.verifyCrc:
            if produced != entry.uncompressedSize:
                raise CorruptDataError(
                    f'{entry.fileName!r}: decompressed to {produced} bytes, directory says {entry.uncompressedSize}'
                )
            if crc != entry.crc32:
                raise CorruptDataError(f'{entry.fileName!r}: CRC-32 0x{crc:08x} != 0x{entry.crc32:08x}')

        logger.debug(f'Extracted {entry.fileName!r}: {produced} bytes, crc=0x{crc:08x}')

    def extract(self, position: int) -> bytes:
        return b''.join(self.iterChunks(position))
