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
import os
import sqlite3
import unittest

from unziphttp.Cache import ArchiveCache, CacheEntry

from ..ZipTestBase import ZipTestBase


class ArchiveCacheTest(ZipTestBase):

    def setUp(self):
        super().setUp()
        self.path = os.path.join(self.tempDir, 'cache.db')
        self.cache = ArchiveCache(self.path)

    def tearDown(self):
        self.cache.close()
        super().tearDown()

    def _entry(self, uri='https://example.com/a.zip', etag='"abc"', fileLen=1000, content=b'tail bytes'):
        lastUsed = datetime.datetime(2024, 1, 2, 3, 4, 5)
        return CacheEntry(uri=uri, etag=etag, fileLen=fileLen, lastUsed=lastUsed, content=content)

    def testSaveAndLoad(self):
        self.cache.save(self._entry())
        loaded = self.cache.load('https://example.com/a.zip')

        self.assertEqual(loaded.uri, 'https://example.com/a.zip')
        self.assertEqual(loaded.etag, '"abc"')
        self.assertEqual(loaded.fileLen, 1000)
        self.assertEqual(loaded.content, b'tail bytes')
        self.assertEqual(loaded.lastUsed, datetime.datetime(2024, 1, 2, 3, 4, 5))

    def testLoadRefreshesLastUsed(self):
        self.cache.save(self._entry())
        self.cache.load('https://example.com/a.zip')

        with sqlite3.connect(self.path) as connection:
            lastUsed, = connection.execute('SELECT last_used FROM cache WHERE uri = ?',
                                           ('https://example.com/a.zip',)).fetchone()

        self.assertNotEqual(lastUsed, '2024-01-02 03:04:05')

    def testMissingEntry(self):
        self.assertIsNone(self.cache.load('https://example.com/none.zip'))

    def testSaveReplacesExisting(self):
        self.cache.save(self._entry())
        self.cache.save(self._entry(etag='"def"', fileLen=2000, content=b'new tail'))

        loaded = self.cache.load('https://example.com/a.zip')
        self.assertEqual((loaded.etag, loaded.fileLen, loaded.content), ('"def"', 2000, b'new tail'))

    def testRemove(self):
        self.cache.save(self._entry())
        self.cache.remove('https://example.com/a.zip')

        self.assertIsNone(self.cache.load('https://example.com/a.zip'))

    def testPersistsAcrossConnections(self):
        self.cache.save(self._entry())
        self.cache.close()

        self.cache = ArchiveCache(self.path)
        self.assertEqual(self.cache.load('https://example.com/a.zip').content, b'tail bytes')

    def testMatches(self):
        entry = self._entry()

        self.assertTrue(entry.matches(1000, '"abc"'))
        self.assertTrue(entry.matches(1000, None))
        self.assertFalse(entry.matches(1001, '"abc"'))
        self.assertFalse(entry.matches(1000, '"other"'))
        self.assertTrue(self._entry(etag=None).matches(1000, '"abc"'))


if __name__ == '__main__':
    unittest.main()
