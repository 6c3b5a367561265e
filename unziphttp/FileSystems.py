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
Destinations for extracted entries.

- LocalFileSink: Writes entries below a local root directory

Entry names come from the archive and are untrusted; they are always
resolved relative to the sink root.
"""

import os

from typing import Iterable, Protocol

from unziphttp.Kernel import getLogger

logger = getLogger(__name__)

PARTIAL_SUFFIX = '.part'


class FileSink(Protocol):
    """FileSink protocol that all implementations must follow"""

    def write(self, relativePath: str, chunks: Iterable[bytes]) -> str:
        ...

    def makeDirectory(self, relativePath: str) -> str:
        ...


class LocalFileSink:
    """
    Local filesystem sink.

    Content is written to '<name>.part' first and renamed over the target
    only after the last chunk arrived, so an interrupted or failed
    extraction never leaves a partial file under the real name.
    """

    def __init__(self, root: str):
        """
        Initialize LocalFileSink.

        Args:
            root: Absolute or relative path to the output directory
        """
        self.root = os.path.abspath(root)

        logger.debug(f"LocalFileSink initialized: {self.root}")

    def resolve(self, relativePath: str) -> str:
        """
        Map an archive name to a path below root.

        Raises:
            OSError: The name is absolute or escapes root through '..'
        """
        normalized = relativePath.replace('\\', '/')
        parts = [part for part in normalized.split('/') if part not in ('', '.')]

        if normalized.startswith('/') or os.path.isabs(relativePath) or os.path.splitdrive(relativePath)[0]:
            raise OSError(f"Refusing absolute entry path: {relativePath!r}")

        if '..' in parts:
            raise OSError(f"Refusing entry path outside the output directory: {relativePath!r}")

        if not parts:
            raise OSError(f"Empty entry path: {relativePath!r}")

        return os.path.join(self.root, *parts)

    def makeDirectory(self, relativePath: str) -> str:
        path = self.resolve(relativePath)
        os.makedirs(path, exist_ok=True)
        return path

    def write(self, relativePath: str, chunks: Iterable[bytes]) -> str:
        """
        Write chunks to relativePath, creating parent directories.

        Returns:
            Absolute path of the written file

        Raises:
            OSError: Path rejected or the write failed. Exceptions raised by
                     the chunk iterator propagate unchanged.
        """
        path = self.resolve(relativePath)
        os.makedirs(os.path.dirname(path), exist_ok=True)

        partialPath = path + PARTIAL_SUFFIX
        written = 0

        try:
            with open(partialPath, 'wb') as f:
                for chunk in chunks:
                    f.write(chunk)
                    written += len(chunk)
            os.replace(partialPath, path)
        except BaseException:
            if os.path.exists(partialPath):
                os.remove(partialPath)
            raise

        logger.debug(f"Wrote {written} bytes to {path}")
        return path
