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
import json
import logging
import platform
import threading

# Error reporting is disabled unless a SENTRY_DSN is configured explicitly.
import sentry_sdk

from pathlib import Path

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.0.0'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter('%(asctime)s [%(levelname)s] %(name)s: %(message)s')

    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, SentryHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


if os.getenv('UNZIP_HTTP_LOGGING_LEVEL') in LOG_LEVEL_MAPPING:
    configureGlobalLogLevel(LOG_LEVEL_MAPPING[os.getenv('UNZIP_HTTP_LOGGING_LEVEL')])


def getLogger(name, version=PUBLIC_VERSION):
    """
    Get a logger with Sentry integration. Sentry is initialized at most once, and only
    when SENTRY_DSN is available through SecretGetter.

    Args:
        name: Logger name
        version: Version string for logging context
    """
    try:
        sentryInitialized = False

        if not sentry_sdk.is_initialized():
            sentryDsn = SecretGetter.getInstance().get('SENTRY_DSN')

            if sentryDsn:
                # Suppress "sentry is attempting to send pending events..." on exit
                sentryAtexit.default_callback = lambda pending, timeout: None

                sentry_sdk.init(
                    dsn=sentryDsn,
                    default_integrations=False,
                    integrations=[
                        LoggingIntegration(),
                        sentryAtexit.AtexitIntegration(),
                    ],
                )
                sentryInitialized = True

        logger = logging.getLogger(name)

        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            syslog = SentryHandler()
            syslog.setFormatter(logging.Formatter('%(asctime)s version[%(version)s] : %(message)s'))
            logger.addHandler(syslog)

        logger = logging.LoggerAdapter(logger, {'version': version or 'unknown'})

        if sentryInitialized:
            logger.debug('Sentry initialized')

        return logger

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, continue with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class that can be inherited by other classes.
    Subclasses override initialize() for custom initialization.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        """
        Only calls initialize() once for the lifetime of the singleton.
        """
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]


class StorageLocator(Singleton):
    """
    Storage location resolution for configuration, secrets and the range cache.

    Environment Variables:
        UNZIP_HTTP_STORAGE_LOCATION: If set to an existing directory, it is used with
                                     highest priority for both reading and writing.
    """

    def initialize(self, appName='unzip-http'):
        self.appName = appName
        self._homeDir = os.path.expanduser(f'~{os.path.sep}.{appName}')
        self._platformDir = self._getPlatformDir()

        self.logger = logging.getLogger(__name__)

    def _getPlatformDir(self):
        system = platform.system()

        if system == 'Windows':
            appdata = os.getenv('APPDATA', os.path.expanduser('~'))
            return os.path.join(appdata, self.appName)
        elif system == 'Darwin':
            return os.path.expanduser(f'~/Library/Application Support/{self.appName}')
        else:
            return os.path.expanduser(f'~/.config/{self.appName}')

    def _getEnvStorageLocation(self):
        envStorageLocation = os.getenv('UNZIP_HTTP_STORAGE_LOCATION')
        if envStorageLocation and os.path.isdir(envStorageLocation):
            return envStorageLocation
        return None

    def ensureStorageDir(self):
        """
        Ensure a writable storage directory exists, trying home, then the platform
        directory, then the current directory.

        Returns:
            Path to the storage directory
        """
        envStorageLocation = self._getEnvStorageLocation()
        if envStorageLocation:
            storageDirs = [envStorageLocation]
        else:
            storageDirs = [self._homeDir, self._platformDir, os.path.abspath('.')]

        for storageDir in storageDirs:
            testFile = os.path.join(storageDir, '.write_test')
            try:
                os.makedirs(storageDir, exist_ok=True)
                with open(testFile, 'w') as f:
                    f.write('test')

                return storageDir
            except OSError as e:
                self.logger.warning(f'Unable to use {storageDir} as storage directory => {e}.')
                continue
            finally:
                if os.path.exists(testFile):
                    os.remove(testFile)

        return os.path.abspath('.')

    def findStorage(self, filename):
        """
        Find a stored file. Search order: env override -> current -> home -> platform.

        Returns:
            Path to the file (may not exist)
        """
        envStorageLocation = self._getEnvStorageLocation()
        if envStorageLocation:
            envPath = os.path.join(envStorageLocation, filename)
            if os.path.exists(envPath):
                return envPath

        candidates = [
            os.path.abspath(filename),
            os.path.join(self._homeDir, filename),
            os.path.join(self._platformDir, filename),
        ]

        for path in candidates:
            if os.path.exists(path):
                return path

        if envStorageLocation:
            return os.path.join(envStorageLocation, filename)

        return os.path.join(self._homeDir, filename)

    def findConfig(self, filename):
        """Alias of findStorage for configuration files."""
        return self.findStorage(filename)


class SecretGetter(Singleton):
    """
    Looks secrets up in environment variables first, then in the .secret JSON file.
    """

    DEFAULT_SECRET_FILE = '.secret'

    def initialize(self, secretFileName=DEFAULT_SECRET_FILE):
        self.secretFileName = secretFileName
        self._cache = {}
        self._secretData = None

    def getPath(self):
        return StorageLocator.getInstance().findStorage(self.secretFileName)

    def _loadSecretFile(self):
        logger = logging.getLogger(__name__)

        if self._secretData is not None:
            return

        secretPath = self.getPath()

        if not os.path.exists(secretPath):
            self._secretData = {}
            return

        try:
            self._secretData = json.loads(Path(secretPath).read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load secret file {secretPath}: {e}")
            self._secretData = {}
            return

        logger.info(f"Loaded secret file {secretPath}")

    def get(self, key: str):
        """
        Get secret value by key with caching.

        Returns:
            str or None: Secret value if found, None otherwise
        """
        if self._cache.get(key):
            return self._cache[key]

        value = os.getenv(key)
        if value:
            self._cache[key] = value
            return value

        self._loadSecretFile()

        value = self._secretData.get(key)
        if value:
            self._cache[key] = value

        return value
