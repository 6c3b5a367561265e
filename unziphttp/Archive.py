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

import datetime
import sqlite3

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Iterator, List, Optional

from unziphttp.Cache import ArchiveCache, CacheEntry
from unziphttp.Directory import EndOfCentralDirectoryRecord, EntryIndex, resolveEntries
from unziphttp.Errors import DirectoryNotFound, EntryNotFoundError, FormatError, RemoteZipError
from unziphttp.Extractor import RangeExtractor
from unziphttp.FileSystems import FileSink
from unziphttp.Kernel import getLogger
from unziphttp.Remote import RemoteInfo, RemoteObject, fetchRange
from unziphttp.Settings import SettingsGetter
from unziphttp.Utils import formatSize

logger = getLogger(__name__)


@dataclass
class ExtractResult:
    """Outcome of one extraction in extractMany"""
    name: str
    path: Optional[str] = None
    size: int = 0
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteArchive:
    """
    Handle on one remote ZIP archive.

    open() resolves the central directory once; afterwards every extraction
    is a single ranged request. A failed open() leaves the handle unopened.

    Usage:
        with RemoteArchive(openRemote(url)) as archive:
            data = archive.extract('docs/readme.txt')
    """

    def __init__(self, remote: RemoteObject, cache: Optional[ArchiveCache] = None, windowSize: int = None,
                 verifyCrc: bool = None, nameEncoding: str = None, chunkSize: int = None):
        settingsGetter = SettingsGetter.getInstance()

        self.remote = remote
        self.cache = cache
        self.windowSize = settingsGetter.windowSize if windowSize is None else windowSize
        self.verifyCrc = settingsGetter.verifyCrc if verifyCrc is None else verifyCrc
        self.nameEncoding = settingsGetter.nameEncoding if nameEncoding is None else nameEncoding
        self.chunkSize = settingsGetter.chunkSize if chunkSize is None else chunkSize

        self.info: Optional[RemoteInfo] = None
        self.record: Optional[EndOfCentralDirectoryRecord] = None
        self.index: Optional[EntryIndex] = None
        self.extractor: Optional[RangeExtractor] = None

    @property
    def isOpen(self) -> bool:
        return self.index is not None

    @property
    def entries(self) -> EntryIndex:
        self._requireOpen()
        return self.index

    def _requireOpen(self):
        if not self.isOpen:
            raise RuntimeError(f'Archive {self.remote.uri} is not open')

    def _fetch(self, offset: int, length: int) -> bytes:
        return fetchRange(self.remote, offset, offset + length - 1)

    def _fetchTail(self, info: RemoteInfo) -> bytes:
        window = min(self.windowSize, info.size)
        logger.debug(f'Fetching {window} byte tail window of {self.remote.uri}')
        return self._fetch(info.size - window, window)

    def _loadCachedTail(self, info: RemoteInfo) -> Optional[bytes]:
        if self.cache is None:
            return None

        try:
            entry = self.cache.load(self.remote.uri)
        except sqlite3.Error as e:
            logger.warning(f'Cache lookup failed, fetching from {self.remote.uri}: {e}')
            return None

        if entry is None:
            return None

        if not entry.matches(info.size, info.etag):
            logger.debug(f'Cached tail of {self.remote.uri} is stale (length or ETag changed)')
            return None

        logger.debug(f'Using cached tail of {self.remote.uri} ({len(entry.content)} bytes)')
        return entry.content

    def _saveTail(self, info: RemoteInfo, tail: bytes):
        if self.cache is None:
            return

        entry = CacheEntry(
            uri=self.remote.uri, etag=info.etag, fileLen=info.size, lastUsed=datetime.datetime.now(), content=tail
        )
        try:
            self.cache.save(entry)
        except sqlite3.Error as e:
            logger.warning(f'Cannot cache tail of {self.remote.uri}: {e}')

    def _dropCachedTail(self):
        try:
            self.cache.remove(self.remote.uri)
        except sqlite3.Error as e:
            logger.warning(f'Cannot drop cached tail of {self.remote.uri}: {e}')

    def open(self) -> 'RemoteArchive':
        """
        Probe the remote, fetch (or reuse) the tail window and build the entry index.

        Raises:
            NetworkError: Probe or range requests failed
            DirectoryNotFound: No usable end of central directory record
            FormatError: Central directory cannot be decoded
        """
        info = self.remote.probe()
        if info.size == 0:
            raise DirectoryNotFound(f'{self.remote.uri} is empty')

        tail = self._loadCachedTail(info)
        fromCache = tail is not None

        if fromCache:
            try:
                record, index = resolveEntries(tail, info.size, self._fetch, self.nameEncoding)
            except FormatError as e:
                logger.info(f'Cached tail of {self.remote.uri} is unusable ({e}), fetching it again')
                self._dropCachedTail()
                fromCache = False

        if not fromCache:
            tail = self._fetchTail(info)
            record, index = resolveEntries(tail, info.size, self._fetch, self.nameEncoding)
            self._saveTail(info, tail)

        self.info = info
        self.record = record
        self.index = index
        self.extractor = RangeExtractor(
            self.remote, index, info.size, chunkSize=self.chunkSize, verifyCrc=self.verifyCrc
        )

        logger.debug(
            f'Opened {self.remote.uri}: {len(index)} entries, {formatSize(info.size)}'
            f'{", zip64" if record.isZip64 else ""}'
        )
        return self

    def _position(self, name: str) -> int:
        self._requireOpen()

        position = self.index.find(name)
        if position is None:
            raise EntryNotFoundError(name)
        return position

    def iterChunks(self, name: str) -> Iterator[bytes]:
        """Stream the decompressed content of name. Raises EntryNotFoundError before any request."""
        position = self._position(name)
        return self.extractor.iterChunks(position)

    def extract(self, name: str) -> bytes:
        position = self._position(name)
        return self.extractor.extract(position)

    def extractTo(self, name: str, sink: FileSink) -> str:
        """Write name through sink and return the written path."""
        position = self._position(name)
        entry = self.index[position]

        if entry.isDirectory:
            return sink.makeDirectory(entry.fileName)

        path = sink.write(entry.fileName, self.extractor.iterChunks(position))
        logger.info(f'Extracted {entry.fileName} ({formatSize(entry.uncompressedSize)})')
        return path

    def extractMany(self, names: Iterable[str], sink: FileSink, maxWorkers: int = None) -> List[ExtractResult]:
        """
        Extract several entries concurrently.

        One entry failing does not stop the others; each result carries
        either the written path or the error, in the order of names.
        """
        self._requireOpen()
        names = list(names)

        def _extractOne(name):
            try:
                path = self.extractTo(name, sink)
            except (RemoteZipError, OSError) as e:
                logger.debug(f'Extraction of {name!r} failed: {e}')
                return ExtractResult(name=name, error=e)

            return ExtractResult(name=name, path=path, size=self.index.get(name).uncompressedSize)

        with ThreadPoolExecutor(max_workers=maxWorkers, thread_name_prefix='extract') as executor:
            return list(executor.map(_extractOne, names))

    def close(self):
        try:
            self.remote.close()
        finally:
            if self.cache is not None:
                self.cache.close()

    def __enter__(self):
        if not self.isOpen:
            try:
                self.open()
            except BaseException:
                self.close()
                raise
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()
