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
import threading

from dataclasses import dataclass
from typing import Optional

from unziphttp.Kernel import getLogger

logger = getLogger(__name__)

TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


@dataclass
class CacheEntry:
    """Tail window of one remote archive"""
    uri: str
    etag: Optional[str]
    fileLen: int
    lastUsed: datetime.datetime
    content: bytes

    def matches(self, fileLen: int, etag: Optional[str]) -> bool:
        """Same length and, when both sides know one, same ETag."""
        if self.fileLen != fileLen:
            return False
        if self.etag and etag:
            return self.etag == etag
        return True


class ArchiveCache:
    """
    SQLite store of archive tail windows, keyed by URI.

    A single connection is shared by all threads and guarded by a lock.
    """

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(path, check_same_thread=False)

        with self._lock, self._connection:
            self._connection.execute(
                '''CREATE TABLE IF NOT EXISTS cache (
                    uri VARCHAR PRIMARY KEY,
                    etag VARCHAR,
                    file_len INT,
                    last_used DATETIME,
                    content BLOB
                )'''
            )

        logger.debug(f"ArchiveCache opened: {path}")

    def load(self, uri: str) -> Optional[CacheEntry]:
        """Return the entry for uri and refresh its last_used, or None."""
        with self._lock, self._connection:
            row = self._connection.execute(
                'SELECT uri, etag, file_len, last_used, content FROM cache WHERE uri = ?', (uri,)
            ).fetchone()

            if row is None:
                return None

            self._connection.execute(
                'UPDATE cache SET last_used = ? WHERE uri = ?',
                (datetime.datetime.now().strftime(TIMESTAMP_FORMAT), uri)
            )

        try:
            lastUsed = datetime.datetime.strptime(row[3], TIMESTAMP_FORMAT)
        except (TypeError, ValueError):
            lastUsed = datetime.datetime.min

        return CacheEntry(uri=row[0], etag=row[1], fileLen=row[2], lastUsed=lastUsed, content=bytes(row[4]))

    def save(self, entry: CacheEntry):
        with self._lock, self._connection:
            self._connection.execute(
                '''INSERT INTO cache (uri, etag, file_len, last_used, content)
                   VALUES (?, ?, ?, ?, ?)
                   ON CONFLICT(uri) DO UPDATE SET
                   etag = excluded.etag,
                   file_len = excluded.file_len,
                   last_used = excluded.last_used,
                   content = excluded.content''',
                (entry.uri, entry.etag, entry.fileLen, entry.lastUsed.strftime(TIMESTAMP_FORMAT),
                 sqlite3.Binary(entry.content))
            )

        logger.debug(f"Cached {len(entry.content)} tail bytes of {entry.uri}")

    def remove(self, uri: str):
        with self._lock, self._connection:
            self._connection.execute('DELETE FROM cache WHERE uri = ?', (uri,))

    def close(self):
        with self._lock:
            self._connection.close()
