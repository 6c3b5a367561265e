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

import locale
import os
import socket
import sys

import bitmath
import chardet

from urllib3 import PoolManager
from urllib3.connection import HTTPConnection
from urllib3.util.retry import Retry
from requests.adapters import HTTPAdapter

from unziphttp.Kernel import getLogger
from unziphttp.Settings import SettingsGetter

ONE_KB = bitmath.KiB(1).bytes
ONE_MB = bitmath.MiB(1).bytes
ONE_GB = bitmath.GiB(1).bytes
ONE_TB = bitmath.TiB(1).bytes

logger = getLogger(__name__)

_UNICODE_TRY_ENCODINGS = tuple(e for e in (locale.getlocale()[1], 'utf-8') if e)
# Legacy Windows archives from Traditional Chinese locales.
if 'cp950' not in _UNICODE_TRY_ENCODINGS:
    _UNICODE_TRY_ENCODINGS = _UNICODE_TRY_ENCODINGS + ('cp950',)


def _unicode(s, encodings=None, throw=True, confidence=0.8):
    """
    Force to str.

    @param s String or bytes.
    @param encodings Native encodings for decode. They are tried in order
                     together with the chardet guess.
    @param throw Raise exception if it fails to convert string.
    @param confidence Minimum chardet confidence to try its guess first.
    @return str, or None when decoding fails and throw is False.
    """
    if isinstance(s, str):
        return s

    if not isinstance(s, bytes):
        return str(s)

    encodings = list(encodings or [])

    try:
        result = chardet.detect(s)

        if result['confidence'] > confidence:
            if result['encoding']:
                encodings.insert(0, result['encoding'])
            encodings.extend(_UNICODE_TRY_ENCODINGS)
        else:
            encodings.extend(_UNICODE_TRY_ENCODINGS)
            if result['encoding']:
                encodings.append(result['encoding'])

    except Exception as e:
        logger.debug(f"chardet failed: {e}")
        encodings.extend(_UNICODE_TRY_ENCODINGS)

    error = None
    for encoding in encodings:
        try:
            return s.decode(encoding)
        except (UnicodeDecodeError, LookupError) as e:
            error = e

    if throw and error:
        raise error

    return None


# flush is required if this is in a frozen executable.
def flushPrint(text):
    try:
        print(text, flush=True)
    except UnicodeEncodeError as e:
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}, {sys.stdout.encoding=}")

        buf = getattr(sys.stdout, "buffer", None)
        if buf is not None:
            buf.write(text.encode("utf-8", errors="replace"))
            buf.write(b"\n")
            buf.flush()
            return

        print(text.encode(sys.stdout.encoding, errors='replace').decode(sys.stdout.encoding), flush=True)


def formatSize(size, decimal=None, plural=None):
    if decimal is None:
        if size < ONE_GB:
            decimal = 0
        elif size < ONE_TB:
            decimal = 1
        else:
            decimal = 2

    if plural is None:
        plural = False if size > ONE_KB else True

    # Unit names of plain bytes differ between bitmath releases ('Byte' vs 'B')
    if size < 1000:
        return f"{size:.0f} {'Bytes' if plural else 'Byte'}"

    sizeStr = bitmath.Byte(size).best_prefix(system=bitmath.SI).format("{value:.%df}{unit}" % decimal)
    return sizeStr.replace('B', '').upper()


def sendException(logger, e, action=None, errorPrefix="Oops, something went wrong"):
    if e and errorPrefix:
        flushPrint(f'{errorPrefix}: {e}')
    elif e:
        flushPrint(f'{e}')
    else:
        logger.error(f'Incorrect argument: {errorPrefix=} {e=}')

    if action:
        flushPrint(action)

    if isinstance(e, BaseException):
        logger.exception(e)

    if os.getenv('RAISE_EXCEPTION', 'False') == 'True' and isinstance(e, BaseException):
        raise e


def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            elif isinstance(default, str):
                return str(value)
            else:
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        return default


# HTTP connection stall configuration
# https://github.com/urllib3/urllib3/issues/3100
# https://github.com/urllib3/urllib3/issues/2733

# Minimum stall timeout in seconds
DEFAULT_MIN_STALL_TIMEOUT_SECONDS = getEnv('HTTP_DEFAULT_MIN_STALL_TIMEOUT_SECONDS', 120)

# Minimum speed threshold in MBps for stall calculation
DEFAULT_STALL_SPEED_THRESHOLD_MBPS = getEnv('HTTP_DEFAULT_STALL_SPEED_THRESHOLD_MBPS', 1.0)


class StallResilientAdapter(HTTPAdapter):
    """
    HTTP adapter that detects stalled connections through TCP socket options.

    Features:
    - TCP keepalive for early dead connection detection
    - TCP_USER_TIMEOUT on Linux for stall detection on long range reads

    urllib3 retries are disabled; HttpRemoteObject retries at the application
    layer so every attempt is logged and 5xx statuses can be told apart from
    final ones.
    """

    DEFAULT_SOCKET_OPTIONS = HTTPConnection.default_socket_options

    @classmethod
    def calculateStallTimeoutMs(cls, chunkSize):
        """
        Calculate stall timeout from chunk size and minimum acceptable speed.
        Formula: stall = max(120s, chunkSize / speedThreshold)

        Args:
            chunkSize: Size of transfer chunks in bytes

        Returns:
            int: Stall timeout in milliseconds
        """
        speedThresholdBps = DEFAULT_STALL_SPEED_THRESHOLD_MBPS * ONE_MB
        calculatedTimeSeconds = chunkSize / speedThresholdBps
        stallTimeoutSeconds = max(DEFAULT_MIN_STALL_TIMEOUT_SECONDS, calculatedTimeSeconds)
        return int(stallTimeoutSeconds * 1000)

    def __init__(self, stallTimeoutMs: int = None, chunkSize: int = None, *args, **kwargs):
        """
        Args:
            stallTimeoutMs: Explicit stall timeout in milliseconds (overrides calculation)
            chunkSize: Chunk size for dynamic timeout calculation
        """
        settingsGetter = SettingsGetter.getInstance()

        if stallTimeoutMs is None and chunkSize is not None:
            self.stallTimeoutMs = self.calculateStallTimeoutMs(chunkSize)
        elif stallTimeoutMs is not None:
            self.stallTimeoutMs = stallTimeoutMs
        else:
            self.stallTimeoutMs = DEFAULT_MIN_STALL_TIMEOUT_SECONDS * 1000

        self.isLinux = settingsGetter.isLinux()

        kwargs['max_retries'] = Retry(total=0, raise_on_status=False)

        super().__init__(*args, **kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **kwargs):
        """Initialize pool manager with keepalive socket options."""
        socketOptions = list(self.DEFAULT_SOCKET_OPTIONS)

        socketOptions.append((socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1))

        if hasattr(socket, "TCP_KEEPIDLE"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPIDLE, 30))
        if hasattr(socket, "TCP_KEEPINTVL"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPINTVL, 10))
        if hasattr(socket, "TCP_KEEPCNT"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_KEEPCNT, 3))

        # Linux-specific: timeout for unacknowledged data
        if self.isLinux and hasattr(socket, "TCP_USER_TIMEOUT"):
            socketOptions.append((socket.IPPROTO_TCP, socket.TCP_USER_TIMEOUT, self.stallTimeoutMs))

        kwargs["socket_options"] = socketOptions

        self.poolmanager = PoolManager(num_pools=connections, maxsize=maxsize, block=block, **kwargs)
