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

import json
import logging
import os
import tempfile
import unittest

from unittest.mock import patch

from unziphttp.Kernel import SecretGetter, Singleton, StorageLocator, getLogger
from unziphttp.Settings import SettingsGetter


class SingletonTest(unittest.TestCase):

    def testIsSingleton(self):

        class Counter(Singleton):

            def initialize(self, start=0):
                self.value = start

        c1 = Counter(5)
        c2 = Counter(10)

        self.assertIs(c1, c2)
        self.assertIs(Counter.getInstance(), c1)
        self.assertEqual(c2.value, 5, 'initialize() runs only once')

    def testSettingsGetterInitialized(self):
        """The test package initializes SettingsGetter before any test runs."""
        settingsGetter = SettingsGetter.getInstance()
        self.assertIs(settingsGetter, SettingsGetter())
        self.assertGreater(settingsGetter.windowSize, 0)


class StorageLocatorTest(unittest.TestCase):

    def setUp(self):
        self._tempDirObj = tempfile.TemporaryDirectory()
        self.tempDir = self._tempDirObj.name
        self.storageLocator = StorageLocator.getInstance()

    def tearDown(self):
        self._tempDirObj.cleanup()

    def testEnvironmentOverride(self):
        with patch.dict(os.environ, {'UNZIP_HTTP_STORAGE_LOCATION': self.tempDir}):
            self.assertEqual(self.storageLocator.ensureStorageDir(), self.tempDir)
            self.assertEqual(self.storageLocator.findStorage('cache.db'), os.path.join(self.tempDir, 'cache.db'))

    def testFindExistingFile(self):
        path = os.path.join(self.tempDir, '.env')
        with open(path, 'w') as f:
            f.write('A=1\n')

        with patch.dict(os.environ, {'UNZIP_HTTP_STORAGE_LOCATION': self.tempDir}):
            self.assertEqual(self.storageLocator.findConfig('.env'), path)

    def testCachePathInsideStorage(self):
        with patch.dict(os.environ, {'UNZIP_HTTP_STORAGE_LOCATION': self.tempDir}):
            cachePath = SettingsGetter.getInstance().getCachePath()

        self.assertEqual(os.path.dirname(cachePath), self.tempDir)


class SecretGetterTest(unittest.TestCase):

    def setUp(self):
        self._tempDirObj = tempfile.TemporaryDirectory()
        self.tempDir = self._tempDirObj.name
        self.secretGetter = SecretGetter.getInstance()

    def tearDown(self):
        self._tempDirObj.cleanup()

    def testEnvironmentFirst(self):
        with patch.dict(os.environ, {'UNZIP_TEST_SECRET': 'from-env'}):
            self.assertEqual(self.secretGetter.get('UNZIP_TEST_SECRET'), 'from-env')

    def testSecretFile(self):
        secretPath = os.path.join(self.tempDir, '.secret')
        with open(secretPath, 'w') as f:
            json.dump({'UNZIP_TEST_FILE_SECRET': 'from-file'}, f)

        with patch.object(self.secretGetter, 'getPath', return_value=secretPath), \
             patch.object(self.secretGetter, '_secretData', None):
            self.assertEqual(self.secretGetter.get('UNZIP_TEST_FILE_SECRET'), 'from-file')
            self.assertIsNone(self.secretGetter.get('UNZIP_TEST_ABSENT_SECRET'))


class LoggerTest(unittest.TestCase):

    def testLoggerAdapter(self):
        logger = getLogger('unziphttp.test')

        self.assertIsInstance(logger, logging.LoggerAdapter)
        self.assertEqual(logger.extra['version'], '1.0.0')

        with self.assertLogs('unziphttp.test', level='INFO') as logs:
            logger.info('hello')
        self.assertIn('hello', logs.output[0])


if __name__ == '__main__':
    unittest.main()
