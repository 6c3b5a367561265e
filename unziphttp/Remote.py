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
Ranged access to the object holding the archive.

- HttpRemoteObject: HTTP(S) server answering Range requests
- LocalRemoteObject: Local file, served with the same interface

Both return a RangeResponse carrying the status code; only 206 means success,
and deciding what to do with any other status is left to the caller
(see fetchRange).
"""

import io
import os
import re
import threading
import time

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

import requests
import urllib3

from unziphttp.Errors import NetworkError, ProtocolError, TruncatedDataError
from unziphttp.Kernel import getLogger
from unziphttp.Settings import SettingsGetter
from unziphttp.Utils import StallResilientAdapter

logger = getLogger(__name__)

PARTIAL_CONTENT = 206
RANGE_NOT_SATISFIABLE = 416

CONTENT_RANGE_PATTERN = re.compile(r'bytes\s+(\d+)-(\d+)/(\d+|\*)')


@dataclass(frozen=True)
class RemoteInfo:
    """Total length and range capability of a remote object"""
    size: int
    acceptsRanges: bool
    etag: Optional[str] = None


class RangeResponse:
    """Status code plus a binary stream over the returned bytes."""

    def __init__(self, statusCode: int, stream, headers: Optional[Dict[str, str]] = None,
                 onClose: Optional[Callable[[], None]] = None):
        self.statusCode = statusCode
        self.stream = stream
        self.headers = headers or {}
        self._onClose = onClose

    def read(self, size: int = -1) -> bytes:
        return self.stream.read(size)

    def close(self):
        try:
            self.stream.close()
        finally:
            if self._onClose:
                self._onClose()

    def __enter__(self):
        return self

    def __exit__(self, excType, excValue, traceback):
        self.close()


class RemoteObject(Protocol):
    """Protocol all remote archive backends follow"""

    uri: str

    def probe(self) -> RemoteInfo:
        ...

    def get(self, start: int, endInclusive: int) -> RangeResponse:
        ...

    def close(self) -> None:
        ...


def readFully(stream, length: int, chunkSize: int = 64 * 1024) -> bytes:
    """Read up to length bytes, looping over short reads; fewer bytes only at end of stream."""
    buffer = bytearray()
    while len(buffer) < length:
        data = stream.read(min(chunkSize, length - len(buffer)))
        if not data:
            break
        buffer += data
    return bytes(buffer)


def fetchRange(remote: RemoteObject, start: int, endInclusive: int) -> bytes:
    """
    Fetch [start, endInclusive] completely.

    Raises:
        ProtocolError: The response is not 206 Partial Content
        TruncatedDataError: The body is shorter than the range
    """
    expected = endInclusive - start + 1

    with remote.get(start, endInclusive) as response:
        if response.statusCode != PARTIAL_CONTENT:
            raise ProtocolError(
                f'HTTP status {response.statusCode} for bytes={start}-{endInclusive}, expected {PARTIAL_CONTENT}',
                statusCode=response.statusCode
            )
        data = readFully(response, expected)

    if len(data) < expected:
        raise TruncatedDataError(f'Range bytes={start}-{endInclusive} returned {len(data)} of {expected} bytes')

    return data


class _ThreadLocalSession(threading.local):
    """
    Thread-local storage for requests.Session.

    Subclassing threading.local ensures __init__ is called for each thread,
    so 'session' attribute always exists.
    """

    def __init__(self):
        super().__init__()
        self.session = None


class _HttpBodyStream:
    """Body of a streamed response; transport failures mid-body surface as NetworkError."""

    def __init__(self, response: requests.Response, uri: str):
        self._raw = response.raw
        self._uri = uri

    def read(self, size: int = -1) -> bytes:
        try:
            return self._raw.read(None if size is None or size < 0 else size)
        except (urllib3.exceptions.HTTPError, requests.exceptions.RequestException) as e:
            raise NetworkError(f"Reading {self._uri} failed: {e}") from e

    def close(self):
        self._raw.close()


class HttpRemoteObject:
    """
    Archive on an HTTP(S) server, read with Range requests.

    Thread Safety:
    - Each thread gets its own requests.Session via _ThreadLocalSession, so
      concurrent extractions never share a connection
    - Transport failures and 5xx statuses are retried with exponential backoff;
      other statuses are returned to the caller as-is
    """

    RETRY_STATUSES = range(500, 600)

    def __init__(self, url: str, timeout: float = None, retries: int = None, backoff: float = None,
                 chunkSize: int = None):
        settingsGetter = SettingsGetter.getInstance()

        self.uri = url
        self.timeout = settingsGetter.timeout if timeout is None else timeout
        self.retries = settingsGetter.retries if retries is None else retries
        self.backoff = settingsGetter.backoff if backoff is None else backoff
        self.chunkSize = settingsGetter.chunkSize if chunkSize is None else chunkSize
        self.userAgent = settingsGetter.userAgent

        self._tls = _ThreadLocalSession()
        self._sessions = []
        self._lock = threading.Lock()

    @property
    def _session(self) -> requests.Session:
        if self._tls.session is None:
            session = requests.Session()
            adapter = StallResilientAdapter(chunkSize=self.chunkSize)
            session.mount('http://', adapter)
            session.mount('https://', adapter)
            # identity: byte offsets must refer to the stored archive, not an encoded body
            session.headers.update({'User-Agent': self.userAgent, 'Accept': '*/*', 'Accept-Encoding': 'identity'})

            self._tls.session = session
            with self._lock:
                self._sessions.append(session)

            logger.debug(f"Created new thread-local session for thread {threading.current_thread().name}")
        return self._tls.session

    def _request(self, method: str, headers: Optional[Dict[str, str]] = None, stream=False) -> requests.Response:
        """
        Send a request, retrying transport failures and 5xx statuses.

        Returns:
            The first non-5xx response, or the last 5xx response once retries are exhausted

        Raises:
            NetworkError: Transport kept failing after all retries
        """
        attempts = self.retries + 1

        for attempt in range(1, attempts + 1):
            try:
                response = self._session.request(
                    method, self.uri, headers=headers, stream=stream, timeout=self.timeout, allow_redirects=True
                )
            except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
                logger.debug(f"{method} {self.uri} failed (attempt {attempt}/{attempts}): {e}")
                if attempt == attempts:
                    raise NetworkError(f"{method} {self.uri} failed: {e}") from e
            else:
                if response.status_code not in self.RETRY_STATUSES or attempt == attempts:
                    return response

                logger.debug(f"HTTP {response.status_code} for {method} {self.uri} (attempt {attempt}/{attempts})")
                response.close()

            time.sleep(self.backoff * (2 ** (attempt - 1)))

        raise NetworkError(f"{method} {self.uri} failed") # Unreachable, attempts >= 1

    def _probeWithRange(self) -> RemoteInfo:
        """Learn the size from Content-Range of a one byte request, for servers without usable HEAD."""
        response = self._request('GET', headers={'Range': 'bytes=0-0'}, stream=True)
        with response:
            statusCode = response.status_code
            contentRange = response.headers.get('Content-Range', '')
            contentLength = response.headers.get('Content-Length')
            etag = response.headers.get('ETag')

        match = CONTENT_RANGE_PATTERN.match(contentRange)
        if statusCode == PARTIAL_CONTENT and match and match.group(3) != '*':
            return RemoteInfo(size=int(match.group(3)), acceptsRanges=True, etag=etag)

        if statusCode == 200 and contentLength is not None:
            return RemoteInfo(size=int(contentLength), acceptsRanges=False, etag=etag)

        raise NetworkError(f"Cannot determine size of {self.uri} (HTTP {statusCode})", statusCode=statusCode)

    def probe(self) -> RemoteInfo:
        """HEAD the object for Content-Length, Accept-Ranges and ETag."""
        response = self._request('HEAD')
        with response:
            statusCode = response.status_code
            acceptRanges = response.headers.get('Accept-Ranges', '')
            contentLength = response.headers.get('Content-Length')
            etag = response.headers.get('ETag')

        if statusCode in (405, 501) or (statusCode < 400 and contentLength is None):
            logger.debug(f"HEAD {self.uri} gave no usable length (HTTP {statusCode}), probing with a range request")
            info = self._probeWithRange()
        elif statusCode >= 400:
            raise NetworkError(f"HTTP {statusCode} for HEAD {self.uri}", statusCode=statusCode)
        else:
            info = RemoteInfo(size=int(contentLength), acceptsRanges=acceptRanges.lower() == 'bytes', etag=etag)

        if not info.acceptsRanges:
            logger.warning(f"Accept-Ranges header ('{acceptRanges}') is not 'bytes', trying anyway")

        logger.debug(f"Probed {self.uri}: size={info.size} ranges={info.acceptsRanges} etag={info.etag}")
        return info

    def get(self, start: int, endInclusive: int) -> RangeResponse:
        logger.debug(f"GET {self.uri} bytes={start}-{endInclusive}")
        response = self._request('GET', headers={'Range': f'bytes={start}-{endInclusive}'}, stream=True)
        response.raw.decode_content = False
        return RangeResponse(response.status_code, _HttpBodyStream(response, self.uri), headers=dict(response.headers),
                             onClose=response.close)

    def close(self):
        with self._lock:
            sessions, self._sessions = self._sessions, []

        for session in sessions:
            session.close()


class _SliceReader(io.RawIOBase):
    """Reads at most length bytes of an open file, then reports end of stream."""

    def __init__(self, fileObject, length: int):
        super().__init__()
        self._file = fileObject
        self._left = length

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if self._left <= 0:
            return 0

        data = self._file.read(min(len(b), self._left))
        n = len(data)
        b[:n] = data
        self._left -= n
        return n

    def close(self):
        if not self.closed:
            self._file.close()
        super().close()


class LocalRemoteObject:
    """Local archive file served through the RemoteObject interface."""

    def __init__(self, path: str):
        self.uri = os.path.abspath(path)

    def probe(self) -> RemoteInfo:
        stat = os.stat(self.uri)
        return RemoteInfo(size=stat.st_size, acceptsRanges=True, etag=f'{stat.st_mtime_ns:x}-{stat.st_size:x}')

    def get(self, start: int, endInclusive: int) -> RangeResponse:
        size = os.path.getsize(self.uri)

        if start < 0 or start >= size or endInclusive < start:
            return RangeResponse(RANGE_NOT_SATISFIABLE, io.BytesIO(b''))

        fileObject = open(self.uri, 'rb')
        fileObject.seek(start)
        length = min(endInclusive, size - 1) - start + 1

        return RangeResponse(PARTIAL_CONTENT, io.BufferedReader(_SliceReader(fileObject, length)))

    def close(self):
        pass


def isHttpLocation(location: str) -> bool:
    return re.match(r'^https?://', location, re.IGNORECASE) is not None


def openRemote(location: str, timeout: float = None, retries: int = None) -> RemoteObject:
    """HttpRemoteObject for http(s) URLs, LocalRemoteObject for anything else."""
    if isHttpLocation(location):
        return HttpRemoteObject(location, timeout=timeout, retries=retries)
    return LocalRemoteObject(location)
