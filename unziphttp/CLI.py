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

import argparse
import json
import os
import logging
import logging.config
import platform

from unziphttp.Kernel import PUBLIC_VERSION, getLogger, configureGlobalLogLevel, LOG_LEVEL_MAPPING, StorageLocator
from unziphttp.Utils import flushPrint, formatSize, getEnv

logger = getLogger(__name__)


def loadEnvFile():
    """
    Load environment variables from .env file using StorageLocator.
    Only sets variables that are not already defined in os.environ.

    Returns:
        int: Number of variables loaded
    """
    storageLocator = StorageLocator.getInstance()
    envFilePath = storageLocator.findConfig('.env')

    if not os.path.exists(envFilePath):
        return 0

    loadedCount = 0
    try:
        with open(envFilePath, 'r', encoding='utf-8') as f:
            for lineNum, line in enumerate(f, 1):
                line = line.strip()

                if not line or line.startswith('#'):
                    continue

                if '=' not in line:
                    logger.warning(f'.env line {lineNum}: Invalid format (missing =): {line}')
                    continue

                key, _, value = line.partition('=')
                key = key.strip()
                value = value.strip()

                if not key:
                    logger.warning(f'.env line {lineNum}: Empty key')
                    continue

                if (value.startswith('"') and value.endswith('"')) or \
                   (value.startswith("'") and value.endswith("'")):
                    value = value[1:-1]

                # Environment takes precedence
                if key not in os.environ:
                    os.environ[key] = value
                    loadedCount += 1
                else:
                    logger.debug(f'.env: Skipped {key} (already set in environment)')

        logger.debug(f'Loaded {loadedCount} environment variables from {envFilePath}')

    except (OSError, UnicodeDecodeError) as e:
        flushPrint(f'Error: Cannot load .env file {envFilePath}: {e}')
        logger.error(f'Cannot load .env file: {e}', exc_info=True)

    return loadedCount


def configureLogging(logLevel):
    """Configure logging level for the application using Kernel's centralized configuration or config file

    Priority order:
    1. logLevel parameter (from --log-level CLI argument)
    2. UNZIP_HTTP_LOGGING_LEVEL environment variable
    3. Default to None (no configuration change)

    Both can be a logging level name (DEBUG, INFO, WARNING, ERROR) or a path
    to a logging configuration JSON file.
    """

    def suppressNoisyLogger():
        logging.getLogger('urllib3').setLevel(logging.INFO)
        logging.getLogger('urllib3.connectionpool').setLevel(logging.INFO)
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('UNZIP_HTTP_LOGGING_LEVEL', None)

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    # Even in DEBUG mode
    suppressNoisyLogger()

    return logLevel


def showVersion():
    flushPrint(f"unzip-http v{PUBLIC_VERSION}")
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")


def configureCLIParser():
    """
    Returns:
        argparse.ArgumentParser for 'unzip-http URL [FILE ...]'
    """

    def positiveInt(valueStr):
        try:
            value = int(valueStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid integer value: {valueStr}")
        if value <= 0:
            raise argparse.ArgumentTypeError(f"{value} must be positive")
        return value

    def nonNegativeInt(valueStr):
        try:
            value = int(valueStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid integer value: {valueStr}")
        if value < 0:
            raise argparse.ArgumentTypeError(f"{value} cannot be negative")
        return value

    def positiveFloat(valueStr):
        try:
            value = float(valueStr)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid number: {valueStr}")
        if value <= 0:
            raise argparse.ArgumentTypeError(f"{value} must be positive")
        return value

    parser = argparse.ArgumentParser(
        prog='unzip-http',
        description='List or extract files of a remote ZIP archive without downloading all of it.',
    )

    parser.add_argument('location', nargs='?', metavar='URL', help='Archive URL (http/https) or local path')
    parser.add_argument('names', nargs='*', metavar='FILE', help='Entries to extract; list entries when omitted')

    parser.add_argument('-l', '--list', action='store_true', help='List entries even when FILE is given')
    parser.add_argument('-o', '--output', default='.', help='Output directory (default: current directory)')
    parser.add_argument('-j', '--jobs', type=positiveInt, default=4, help='Concurrent extractions (default: 4)')
    parser.add_argument('--window', type=positiveInt, default=None, help='Tail window size in bytes')
    parser.add_argument('--timeout', type=positiveFloat, default=None, help='HTTP timeout in seconds')
    parser.add_argument('--retries', type=nonNegativeInt, default=None, help='Retries on transport errors and 5xx')
    parser.add_argument('--no-verify', dest='noVerify', action='store_true', help='Skip CRC-32 and size checks')
    parser.add_argument('--no-cache', dest='noCache', action='store_true', help='Do not use the tail window cache')
    parser.add_argument(
        '--log-level', dest='logLevel', default=None,
        help='Logging level (DEBUG, INFO, WARNING, ERROR) or path to a logging JSON config'
    )
    parser.add_argument('--version', action='store_true', help='Show version information')

    return parser


def formatListing(index):
    """One line per entry: name, size, compressed size, local header offset (hex)."""
    lines = []
    for entry in index:
        lines.append(
            f"{entry.fileName} {formatSize(entry.uncompressedSize)} {entry.compressedSize} "
            f"{entry.offsetLocalHeader:x}"
        )
    return lines
