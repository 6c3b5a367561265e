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

import os

from unziphttp.Kernel import PUBLIC_VERSION, Singleton, StorageLocator, getLogger

# Size of the tail window fetched to find the end of central directory.
# 64 KiB holds the end record together with all but the longest archive comments.
TAIL_WINDOW_SIZE = int(os.getenv('TAIL_WINDOW_SIZE', 65536))

# Read size used while streaming an entry out of a ranged response (256 KiB)
TRANSFER_CHUNK_SIZE = int(os.getenv('TRANSFER_CHUNK_SIZE', 256 * 1024))

HTTP_TIMEOUT = float(os.getenv('HTTP_TIMEOUT', 30))
HTTP_RETRIES = int(os.getenv('HTTP_RETRIES', 3))
HTTP_BACKOFF = float(os.getenv('HTTP_BACKOFF', 0.5))

USER_AGENT = os.getenv('USER_AGENT', f'unzip-http/{PUBLIC_VERSION}')

CACHE_FILE = os.getenv('CACHE_FILE', 'cache.db')

# Codec for entry names without the UTF-8 flag; 'auto' detects with chardet.
NAME_ENCODING = os.getenv('NAME_ENCODING', 'cp437')

VERIFY_CRC = os.getenv('VERIFY_CRC', 'True') == 'True'

# Keep archive tails in the SQLite cache between runs (HTTP archives only)
USE_CACHE = os.getenv('USE_CACHE', 'True') == 'True'

logger = getLogger(__name__)


# Singleton
class SettingsGetter(Singleton):

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            raise RuntimeError('Get SettingsGetter before initialized it.')
        return cls._instances[cls]

    def initialize(
        self,
        platform=None,
        windowSize=TAIL_WINDOW_SIZE,
        chunkSize=TRANSFER_CHUNK_SIZE,
        timeout=HTTP_TIMEOUT,
        retries=HTTP_RETRIES,
        backoff=HTTP_BACKOFF,
        nameEncoding=NAME_ENCODING,
        verifyCrc=VERIFY_CRC,
        useCache=USE_CACHE,
    ):
        """Initialize the SettingsGetter with the platform and transfer parameters."""
        self._platform = platform
        self.windowSize = windowSize
        self.chunkSize = chunkSize
        self.timeout = timeout
        self.retries = retries
        self.backoff = backoff
        self.nameEncoding = nameEncoding
        self.verifyCrc = verifyCrc
        self.useCache = useCache

        logger.debug(
            f'Settings: window={windowSize} chunk={chunkSize} timeout={timeout} '
            f'retries={retries} encoding={nameEncoding} verifyCrc={verifyCrc}'
        )

    def update(self, **kwargs):
        """Override settings, typically from command line arguments. None values are ignored."""
        for key, value in kwargs.items():
            if not hasattr(self, key):
                raise AttributeError(f'Unknown setting: {key}')
            if value is not None:
                setattr(self, key, value)

    def isWindows(self):
        return self._platform == "Windows"

    def isLinux(self):
        return self._platform == "Linux"

    def isDarwin(self):
        return self._platform == "Darwin"

    @property
    def userAgent(self):
        return USER_AGENT

    def getCachePath(self):
        """Location of the SQLite range cache, inside the writable storage directory."""
        storageDir = StorageLocator.getInstance().ensureStorageDir()
        return os.path.join(storageDir, CACHE_FILE)
