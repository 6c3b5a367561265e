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
Exception classes for remote archive access.

Errors raised while opening an archive (NetworkError, FormatError) are fatal
for that archive handle. ExtractionError subclasses only concern the entry
being extracted; the entry index stays usable.
"""


class RemoteZipError(Exception):
    """Base exception for all remote archive errors"""
    pass


# =============================================================================
# Transport
# =============================================================================


class NetworkError(RemoteZipError):
    """Raised when the transport fails or the server answers with an unusable status"""

    def __init__(self, message, statusCode=None, response=None):
        super().__init__(message)
        self.statusCode = statusCode
        self.response = response


class ProtocolError(NetworkError):
    """Raised when a ranged GET is not answered with 206 Partial Content"""
    pass


# =============================================================================
# Directory
# =============================================================================


class FormatError(RemoteZipError):
    """Raised when the end record or central directory cannot be decoded.

    This exception is raised when:
    - The entry count differs from the one declared by the end record
    - A record runs past the end of its buffer
    - A required signature is wrong
    """
    pass


class DirectoryNotFound(FormatError):
    """Raised when no end of central directory record is found, or it points outside the archive"""
    pass


class EntryNotFoundError(RemoteZipError, KeyError):
    """Raised when a requested name is not present in the entry index"""

    def __init__(self, name):
        super().__init__(name)
        self.name = name

    def __str__(self):
        return f'No entry named {self.name!r} in archive'


# =============================================================================
# Extraction
# =============================================================================


class ExtractionError(RemoteZipError):
    """Base class for errors scoped to a single entry"""
    pass


class UnsupportedMethodError(ExtractionError):
    """Raised for compression methods other than store/deflate, and for encrypted entries"""

    def __init__(self, message, method=None):
        super().__init__(message)
        self.method = method


class TruncatedDataError(ExtractionError):
    """Raised when fewer bytes arrive than the headers promise"""
    pass


class CorruptDataError(ExtractionError):
    """Raised when decompression fails, or CRC-32 / size of the result do not match the directory"""
    pass
