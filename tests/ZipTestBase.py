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

import io
import os
import re
import struct
import tempfile
import threading
import unittest
import zipfile
import zlib

from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from unziphttp.Remote import PARTIAL_CONTENT, RANGE_NOT_SATISFIABLE, RangeResponse, RemoteInfo

ZIP64_SENTINEL = 0xFFFFFFFF


# ---------------------------
# Archive builders
# ---------------------------
def buildZip(members, compression=zipfile.ZIP_DEFLATED):
    """Build an archive in memory from (name, data) pairs, in order."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, 'w', compression) as zf:
        for name, data in members:
            zf.writestr(name, data)
    return buffer.getvalue()


def centralDirOffset(data):
    """Start of the central directory as zipfile sees it"""
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return zf.start_dir


def localHeaderOffsets(data):
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return {info.filename: info.header_offset for info in zf.infolist()}


def makeLocalFileHeader(nameBytes, crc, size, flags=0, method=0, extra=b''):
    header = struct.pack(
        '<IHHHHHIIIHH',
        0x04034b50, # Signature
        20, # Version needed
        flags,
        method,
        0, # Time
        0x21, # Date (1980-01-01)
        crc,
        size, # Compressed size
        size, # Uncompressed size
        len(nameBytes),
        len(extra),
    )
    return header + nameBytes + extra


def makeCentralDirHeader(nameBytes, crc, compressedSize, uncompressedSize, offset, flags=0, method=0,
                         zip64Fields=(), extraPrefix=b''):
    """
    Central directory header; fields named in zip64Fields ('uncompressed', 'compressed', 'offset')
    are written as 0xFFFFFFFF with the real value moved into a ZIP64 extra field.
    """
    extraData = b''
    cdUncompressed, cdCompressed, cdOffset = uncompressedSize, compressedSize, offset

    if 'uncompressed' in zip64Fields:
        extraData += struct.pack('<Q', uncompressedSize)
        cdUncompressed = ZIP64_SENTINEL
    if 'compressed' in zip64Fields:
        extraData += struct.pack('<Q', compressedSize)
        cdCompressed = ZIP64_SENTINEL
    if 'offset' in zip64Fields:
        extraData += struct.pack('<Q', offset)
        cdOffset = ZIP64_SENTINEL

    extraField = extraPrefix
    if zip64Fields:
        extraField += struct.pack('<HH', 0x0001, len(extraData)) + extraData

    header = struct.pack(
        '<IHHHHHHIIIHHHHHII',
        0x02014b50, # Signature
        45, # Version made by
        45, # Version needed
        flags,
        method,
        0, # Time
        0x21, # Date
        crc,
        cdCompressed,
        cdUncompressed,
        len(nameBytes),
        len(extraField),
        0, # Comment length
        0, # Disk number start
        0, # Internal attributes
        0, # External attributes
        cdOffset,
    )
    return header + nameBytes + extraField


def makeZip64EndOfCentralDir(entryCount, centralDirSize, centralDirStart):
    return struct.pack('<4sQHHIIQQQQ', b'PK\x06\x06', 44, 45, 45, 0, 0, entryCount, entryCount, centralDirSize,
                       centralDirStart)


def makeZip64Locator(zip64EocdOffset):
    return struct.pack('<IIQI', 0x07064b50, 0, zip64EocdOffset, 1)


def makeEndOfCentralDir(entryCount, centralDirSize, centralDirStart, comment=b''):
    return struct.pack('<4sHHHHIIH', b'PK\x05\x06', 0, 0, entryCount, entryCount, centralDirSize, centralDirStart,
                       len(comment)) + comment


def buildZip64(members, zip64Fields=('uncompressed', 'compressed', 'offset')):
    """
    Hand-packed stored archive whose sizes and offsets live in ZIP64 extra fields,
    with a ZIP64 end record and a standard end record holding only sentinels.

    Local headers carry no extra field, central headers do.
    """
    body = b''
    centralDir = b''

    for name, data in members:
        nameBytes = name.encode('utf-8')
        crc = zlib.crc32(data)
        offset = len(body)
        body += makeLocalFileHeader(nameBytes, crc, len(data), flags=0x800) + data
        centralDir += makeCentralDirHeader(
            nameBytes, crc, len(data), len(data), offset, flags=0x800, zip64Fields=zip64Fields
        )

    centralDirStart = len(body)
    zip64Eocd = makeZip64EndOfCentralDir(len(members), len(centralDir), centralDirStart)
    zip64Locator = makeZip64Locator(centralDirStart + len(centralDir))
    eocd = makeEndOfCentralDir(0xFFFF, ZIP64_SENTINEL, ZIP64_SENTINEL)

    return body + centralDir + zip64Eocd + zip64Locator + eocd


# ---------------------------
# Remote fakes
# ---------------------------
class FakeRemoteObject:
    """
    In-memory RemoteObject recording every requested range.

    statusCode forces a status for all GETs; truncateBy drops bytes from the end
    of every response body.
    """

    def __init__(self, data, uri='memory://archive.zip', etag='"v1"', statusCode=None, truncateBy=0):
        self.data = bytes(data)
        self.uri = uri
        self.etag = etag
        self.statusCode = statusCode
        self.truncateBy = truncateBy
        self.requests = []
        self.probes = 0
        self.closed = False

    def probe(self):
        self.probes += 1
        return RemoteInfo(size=len(self.data), acceptsRanges=True, etag=self.etag)

    def get(self, start, endInclusive):
        self.requests.append((start, endInclusive))

        if self.statusCode is not None:
            return RangeResponse(self.statusCode, io.BytesIO(self.data))

        if start >= len(self.data):
            return RangeResponse(RANGE_NOT_SATISFIABLE, io.BytesIO(b''))

        body = self.data[start:endInclusive + 1]
        if self.truncateBy:
            body = body[:max(0, len(body) - self.truncateBy)]
        return RangeResponse(PARTIAL_CONTENT, io.BytesIO(body))

    def close(self):
        self.closed = True


class RangeServer:
    """
    Local HTTP server answering HEAD and ranged GET for one archive.

    pendingStatuses are answered (bodiless) to the next GETs before serving data;
    headStatus replaces every HEAD answer; with cutBodyAfter set, ranged bodies
    stop after that many bytes and the connection is dropped.
    """

    def __init__(self, data, headStatus=None, acceptRanges='bytes', cutBodyAfter=None):
        self.data = bytes(data)
        self.headStatus = headStatus
        self.acceptRanges = acceptRanges
        self.cutBodyAfter = cutBodyAfter
        self.pendingStatuses = []
        self.requests = []
        self.headers = []
        self._lock = threading.Lock()

        rangeServer = self

        class RangeRequestHandler(BaseHTTPRequestHandler):

            def log_message(self, format, *args):
                return

            def _record(self, method):
                with rangeServer._lock:
                    rangeServer.requests.append((method, self.headers.get('Range')))
                    rangeServer.headers.append(dict(self.headers))

            def _sendEmpty(self, status):
                self.send_response(status)
                self.send_header('Content-Length', '0')
                self.end_headers()

            def do_HEAD(self):
                self._record('HEAD')

                if rangeServer.headStatus:
                    self._sendEmpty(rangeServer.headStatus)
                    return

                self.send_response(HTTPStatus.OK)
                if rangeServer.acceptRanges:
                    self.send_header('Accept-Ranges', rangeServer.acceptRanges)
                self.send_header('Content-Length', str(len(rangeServer.data)))
                self.send_header('ETag', '"test-etag"')
                self.end_headers()

            def do_GET(self):
                self._record('GET')

                with rangeServer._lock:
                    status = rangeServer.pendingStatuses.pop(0) if rangeServer.pendingStatuses else None

                if status is not None:
                    self._sendEmpty(status)
                    return

                data = rangeServer.data
                match = re.match(r'bytes=(\d+)-(\d+)$', self.headers.get('Range', ''))

                if not match:
                    self.send_response(HTTPStatus.OK)
                    self.send_header('Content-Length', str(len(data)))
                    self.end_headers()
                    self.wfile.write(data)
                    return

                start, end = int(match.group(1)), min(int(match.group(2)), len(data) - 1)
                if start >= len(data) or end < start:
                    self.send_response(HTTPStatus.REQUESTED_RANGE_NOT_SATISFIABLE)
                    self.send_header('Content-Range', f'bytes */{len(data)}')
                    self.send_header('Content-Length', '0')
                    self.end_headers()
                    return

                body = data[start:end + 1]
                self.send_response(HTTPStatus.PARTIAL_CONTENT)
                self.send_header('Content-Range', f'bytes {start}-{end}/{len(data)}')
                self.send_header('Content-Length', str(len(body)))
                self.send_header('ETag', '"test-etag"')
                self.end_headers()

                if rangeServer.cutBodyAfter is not None and len(body) > rangeServer.cutBodyAfter:
                    self.wfile.write(body[:rangeServer.cutBodyAfter])
                    self.wfile.flush()
                    self.close_connection = True
                    return

                self.wfile.write(body)

        self.httpServer = ThreadingHTTPServer(('127.0.0.1', 0), RangeRequestHandler)
        self.thread = threading.Thread(target=self.httpServer.serve_forever, daemon=True)

    @property
    def url(self):
        return f'http://127.0.0.1:{self.httpServer.server_address[1]}/archive.zip'

    def countRequests(self, method):
        with self._lock:
            return sum(1 for m, _ in self.requests if m == method)

    def start(self):
        self.thread.start()
        return self

    def stop(self):
        self.httpServer.shutdown()
        self.httpServer.server_close()
        self.thread.join(timeout=5)

    def __enter__(self):
        return self.start()

    def __exit__(self, excType, excValue, traceback):
        self.stop()


# ---------------------------
# Base test class
# ---------------------------
class ZipTestBase(unittest.TestCase):
    """Base class providing a temporary directory and sample archives"""

    def setUp(self):
        self._tempDirObj = tempfile.TemporaryDirectory()
        self.tempDir = self._tempDirObj.name

    def tearDown(self):
        self._tempDirObj.cleanup()

    def sampleMembers(self):
        return [
            ('a.txt', b'alpha\n' * 50),
            ('b.txt', b'bravo\n' * 500),
            ('c.txt', b'charlie\n' * 5),
        ]

    def randomData(self, size):
        return os.urandom(size)
