"""
Configuration management for the report bot.
Handles loading the settings file, writing the user list back, and the
shared server registry and user directory handed to the conversation engine.
"""
import os
import json
import asyncio
import logging
import tempfile

from errors import ConfigError, NotFoundError, PersistenceError, ValidationError
from resto_api import base_url
from sessions import Credentials

logger = logging.getLogger(__name__)

# Config file path
CONFIG_FILE = os.environ.get('CONFIG_FILE', 'bot_config.json')

# Bot token (config file overrides env var)
TELEGRAM_BOT_TOKEN = os.environ.get('TELEGRAM_BOT_TOKEN')

# Logging configuration
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

VALID_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR')


def normalize_handle(handle) -> str:
    """Strip whitespace and one leading '@' from a chat handle."""
    handle = str(handle or '').strip()
    if handle.startswith('@'):
        handle = handle[1:]
    return handle.strip()


class Settings:
    """Values read from the config file at startup."""

    def __init__(self, path, credentials, servers, accounts, admins,
                 bot_token=None, log_level='INFO'):
        self.path = path
        self.credentials = credentials
        self.servers = servers
        self.accounts = accounts
        self.admins = admins
        self.bot_token = bot_token
        self.log_level = log_level


def _read_json(path) -> dict:
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a JSON object")
    return data


def _dedupe(handles):
    result = []
    for handle in handles:
        handle = normalize_handle(handle)
        if handle and handle not in result:
            result.append(handle)
    return result


def load_config(path=None) -> Settings:
    """Load settings from the JSON config file.

    Raises:
        ConfigError: if the file can't be read or lacks credentials/servers
    """
    path = path or CONFIG_FILE
    try:
        cfg = _read_json(path)
    except (OSError, ValueError) as e:
        raise ConfigError(f"Failed to load config {path}: {e}") from e

    login, password = cfg.get('login'), cfg.get('pass')
    if not login or password is None:
        raise ConfigError(f"{path}: 'login' and 'pass' are required")

    servers = cfg.get('servers') or {}
    if not isinstance(servers, dict) or not servers:
        raise ConfigError(f"{path}: server list is empty")

    log_level = str(cfg.get('LOG_LEVEL') or LOG_LEVEL).upper()
    if log_level not in VALID_LOG_LEVELS:
        logger.warning(f"Unknown LOG_LEVEL {log_level}, using INFO")
        log_level = 'INFO'

    settings = Settings(
        path=path,
        credentials=Credentials(str(login), str(password)),
        servers={str(alias): str(url) for alias, url in servers.items()},
        accounts=_dedupe(cfg.get('accounts', [])),
        admins=_dedupe(cfg.get('admins', [])),
        bot_token=cfg.get('TELEGRAM_BOT_TOKEN') or TELEGRAM_BOT_TOKEN,
        log_level=log_level,
    )
    logger.info(f"Loaded config: {len(settings.servers)} servers, "
                f"{len(settings.accounts)} users, {len(settings.admins)} admins")
    return settings


def save_accounts(path, accounts):
    """Rewrite the 'accounts' key of the config file, keeping everything else.

    Raises:
        PersistenceError: if the file can't be read or replaced
    """
    try:
        config_data = _read_json(path)
        config_data['accounts'] = list(accounts)

        directory = os.path.dirname(os.path.abspath(path))
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=os.path.basename(path), suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(config_data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
    except (OSError, ValueError, ConfigError) as e:
        raise PersistenceError(f"Failed to save user list to {path}: {e}") from e
    logger.info(f"User list saved ({len(accounts)} users)")


class ServerRegistry:
    """Alias -> base URL mapping plus the currently selected alias.

    Shared by every chat. All access goes through a short-held lock.
    """

    def __init__(self, servers: dict):
        if not servers:
            raise ConfigError("Server list is empty")
        self._servers = {alias: base_url(url) for alias, url in servers.items()}
        self._current = next(iter(self._servers))
        self._lock = asyncio.Lock()

    async def current(self):
        """Return (alias, base_url) of the selected server."""
        async with self._lock:
            return self._current, self._servers[self._current]

    async def aliases(self):
        async with self._lock:
            return list(self._servers)

    async def snapshot(self):
        """Return (servers copy, current alias)."""
        async with self._lock:
            return dict(self._servers), self._current

    async def switch(self, alias: str) -> str:
        """Select another server.

        Returns:
            Base URL of the newly selected server

        Raises:
            NotFoundError: if the alias is unknown
        """
        async with self._lock:
            if alias not in self._servers:
                valid = ", ".join(self._servers)
                raise NotFoundError(f"Unknown server '{alias}'. Available: {valid}")
            self._current = alias
            url = self._servers[alias]
        logger.info(f"Current server switched to {alias} ({url})")
        return url


class UserDirectory:
    """Allow-list and admin list.

    The allow-list can be edited at runtime; each edit is written back to
    the config file before it counts. A failed write leaves the list as it
    was.
    """

    def __init__(self, accounts, admins, persist=None):
        self._accounts = list(accounts)
        self._admins = tuple(admins)
        self._persist = persist
        self._lock = asyncio.Lock()

    async def is_allowed(self, handle: str) -> bool:
        """True if the handle may use the bot at all (user or admin)."""
        if not handle:
            return False
        # Edits swap in a new list, so a lock-free read sees a whole one
        return handle in self._admins or handle in self._accounts

    def is_admin(self, handle: str) -> bool:
        return bool(handle) and handle in self._admins

    async def accounts(self):
        async with self._lock:
            return list(self._accounts)

    def admins(self):
        return list(self._admins)

    async def add(self, handle) -> bool:
        """Add a handle to the allow-list.

        Returns:
            True if it was added, False if it was already there

        Raises:
            ValidationError: if the handle is empty
            PersistenceError: if the config file could not be updated
        """
        handle = normalize_handle(handle)
        if not handle:
            raise ValidationError("Username is empty")

        async with self._lock:
            if handle in self._accounts:
                return False
            updated = self._accounts + [handle]
            await self._save(updated)
            self._accounts = updated
        logger.info(f"User @{handle} added")
        return True

    async def remove(self, handle) -> None:
        """Remove a handle from the allow-list.

        Raises:
            NotFoundError: if the handle is not in the list
            PersistenceError: if the config file could not be updated
        """
        handle = normalize_handle(handle)
        async with self._lock:
            if handle not in self._accounts:
                raise NotFoundError(f"User @{handle} is not in the user list")
            updated = [account for account in self._accounts if account != handle]
            await self._save(updated)
            self._accounts = updated
        logger.info(f"User @{handle} removed")

    async def _save(self, accounts):
        """Run the blocking write-back in a thread executor."""
        if self._persist is not None:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._persist, accounts)
