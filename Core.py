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

import platform
import sqlite3
import sys
import os
import signal

from unziphttp.Archive import RemoteArchive
from unziphttp.Cache import ArchiveCache
from unziphttp.CLI import configureCLIParser, configureLogging, formatListing, loadEnvFile, showVersion
from unziphttp.Errors import RemoteZipError
from unziphttp.FileSystems import LocalFileSink
from unziphttp.Kernel import getLogger
from unziphttp.Remote import isHttpLocation, openRemote
from unziphttp.Settings import (
    HTTP_BACKOFF, HTTP_RETRIES, HTTP_TIMEOUT, NAME_ENCODING, TAIL_WINDOW_SIZE, TRANSFER_CHUNK_SIZE, USE_CACHE,
    VERIFY_CRC, SettingsGetter
)
from unziphttp.Utils import flushPrint, getEnv, sendException

logger = getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_MISSING_NAMES = 2


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - force immediate exit, .part files are left behind
            os._exit(EXIT_FAILURE)
        else:
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def setupSettings():

    # Before reading settings, so .env values apply
    loadEnvFile()

    return SettingsGetter(
        platform=platform.system(),
        windowSize=getEnv('TAIL_WINDOW_SIZE', TAIL_WINDOW_SIZE),
        chunkSize=getEnv('TRANSFER_CHUNK_SIZE', TRANSFER_CHUNK_SIZE),
        timeout=getEnv('HTTP_TIMEOUT', HTTP_TIMEOUT),
        retries=getEnv('HTTP_RETRIES', HTTP_RETRIES),
        backoff=getEnv('HTTP_BACKOFF', HTTP_BACKOFF),
        nameEncoding=getEnv('NAME_ENCODING', NAME_ENCODING),
        verifyCrc=getEnv('VERIFY_CRC', VERIFY_CRC),
        useCache=getEnv('USE_CACHE', USE_CACHE),
    )


settingsGetter = setupSettings()


def openCache(args):
    """Tail window cache for HTTP archives, or None when disabled or unavailable."""
    if not settingsGetter.useCache or not isHttpLocation(args.location):
        return None

    try:
        return ArchiveCache(settingsGetter.getCachePath())
    except sqlite3.Error as e:
        logger.warning(f'Cache disabled: {e}')
        return None


def processArchive(args):
    """
    List or extract entries of args.location.

    Returns:
        int: Exit code (0 success, 1 failure, 2 some names not found)
    """
    settingsGetter.update(
        windowSize=args.window,
        timeout=args.timeout,
        retries=args.retries,
        verifyCrc=False if args.noVerify else None,
        useCache=False if args.noCache else None,
    )

    archive = RemoteArchive(openRemote(args.location), cache=openCache(args))

    with archive:
        if args.list or not args.names:
            for line in formatListing(archive.entries):
                flushPrint(line)

        if not args.names:
            return EXIT_OK

        # Keep order, drop repeats
        names = list(dict.fromkeys(args.names))
        missing = [name for name in names if name not in archive.entries]
        for name in missing:
            flushPrint(f'{name}: not found in archive')

        sink = LocalFileSink(args.output)
        results = archive.extractMany(
            [name for name in names if name in archive.entries], sink, maxWorkers=args.jobs
        )

    failed = False
    for result in results:
        if result.ok:
            flushPrint(f'Extracted: {result.name} -> {result.path}')
        else:
            failed = True
            sendException(logger, result.error, errorPrefix=f'Failed to extract {result.name}')

    if failed:
        return EXIT_FAILURE
    if missing:
        return EXIT_MISSING_NAMES
    return EXIT_OK


def runCLIMain(argv=None):
    parser = configureCLIParser()
    args = parser.parse_args(argv)

    configureLogging(args.logLevel)

    if args.version:
        showVersion()
        return EXIT_OK

    if not args.location:
        parser.print_help()
        return EXIT_OK

    try:
        return processArchive(args)
    except RemoteZipError as e:
        sendException(logger, e, errorPrefix=f'Cannot read {args.location}')
        return EXIT_FAILURE
    except OSError as e:
        sendException(logger, e, errorPrefix=f'Cannot access {args.location}')
        return EXIT_FAILURE


def main(argv=None):
    setupGracefulShutdown()

    try:
        return runCLIMain(argv)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return EXIT_FAILURE


if __name__ == '__main__':
    try:
        sys.exit(main() or EXIT_OK)
    except Exception as e:
        sendException(logger, e)
        sys.exit(EXIT_FAILURE)
