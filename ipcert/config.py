#!/usr/bin/env python3
"""
Unified configuration loader for ipcert.

Load order (first found wins):
  1) IPCERT_CONFIG (env, absolute or relative to CWD)
  2) /etc/ipcert/config.yaml
  3) <project_root>/config.yaml (derived from this file's location)
  4) ./config.yaml (current working directory)

File values are merged over the compiled-in defaults and environment
variables override file values when present. ``load_settings`` turns the
merged mapping into a single validated :class:`Settings` value that the rest
of the program receives explicitly.
"""
from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, MutableMapping

import yaml
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap

from .errors import ConfigCorrupt, ConfigPersistenceError, InvalidInput
from .validation import validate_email, validate_number, validate_path

if TYPE_CHECKING:
    from .backup import BackupManager

_ROUND_TRIP_YAML = YAML(typ="rt")
_ROUND_TRIP_YAML.indent(mapping=2, sequence=4, offset=2)
_ROUND_TRIP_YAML.default_flow_style = False
_ROUND_TRIP_YAML.allow_unicode = True

ENV_CONFIG_PATH = "IPCERT_CONFIG"
SYSTEM_CONFIG_PATH = Path("/etc/ipcert/config.yaml")

WEB_SERVER_CHOICES = ("nginx", "apache", "standalone", "webroot")
KEY_SIZE_CHOICES = (2048, 4096)
LOG_LEVEL_CHOICES = ("DEBUG", "INFO", "WARNING", "ERROR")

_DEFAULTS: Dict[str, Any] = {
    "email": "",
    "webroot": "/var/www/html",
    "key_size": 4096,
    # Empty means auto-detect from running services.
    "web_server": "",
    "renewal_enabled": True,
    "renewal_force": False,
    # Empty means the built-in reload chain.
    "deploy_hook": "",
    "log_level": "INFO",
    "log_retention_days": 30,
    "max_backups": 10,
    "lock_timeout_sec": 300,
    "paths": {
        "config_dir": "/etc/ipcert",
        "log_dir": "/var/log/ipcert",
        "backup_dir": "/var/backups/ipcert",
        "lock_file": "/var/run/ipcert.lock",
        "cert_dir": "/etc/letsencrypt",
    },
    "certbot": {
        "path": "certbot",
        "min_version": "2.0.0",
    },
}

_cfg_cache: Dict[str, Any] | None = None
_search_paths: list[Path] = []
_active_config_path: Path | None = None
_primary_config_path: Path | None = None


def _load_yaml_if_exists(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigCorrupt(
            f"Unable to parse configuration {path}: {exc}",
            remediation=("Run 'ipcert --emergency' to restore a backup or reset to defaults",),
        ) from exc
    if not isinstance(data, dict):
        raise ConfigCorrupt(f"Configuration root in {path} must be a mapping")
    return data


def _candidate_search_paths(project_root: Path) -> list[Path]:
    search: list[Path] = []
    env_cfg = os.getenv(ENV_CONFIG_PATH)
    if env_cfg:
        search.append(Path(env_cfg).expanduser().absolute())
    search.extend(
        [
            SYSTEM_CONFIG_PATH,
            project_root / "config.yaml",
            Path.cwd() / "config.yaml",
        ]
    )
    seen: set[Path] = set()
    ordered: list[Path] = []
    for candidate in search:
        try:
            resolved = candidate.resolve()
        except OSError:
            resolved = candidate
        if resolved in seen:
            continue
        seen.add(resolved)
        ordered.append(resolved)
    return ordered


def _resolve_primary_path(active: Path | None) -> Path:
    env_cfg = os.getenv(ENV_CONFIG_PATH)
    if env_cfg:
        return Path(env_cfg).expanduser().absolute()
    if active is not None:
        return active
    return SYSTEM_CONFIG_PATH


def _deep_merge(base: Dict[str, Any], extra: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in extra.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> None:
    def _parse_bool(value: str) -> bool:
        return value.strip().lower() in {"1", "true", "yes", "on"}

    if _parse_bool(os.getenv("DEBUG", "")):
        cfg["log_level"] = "DEBUG"

    top_level = {
        "IPCERT_EMAIL": "email",
        "IPCERT_WEBROOT": "webroot",
        "IPCERT_KEY_SIZE": "key_size",
        "RENEWAL_WEB_SERVER": "web_server",
        "IPCERT_DEPLOY_HOOK": "deploy_hook",
    }
    for env_key, key in top_level.items():
        if env_key in os.environ:
            value = os.environ[env_key].strip()
            if value:
                cfg[key] = value

    path_env = {
        "IPCERT_LOG_DIR": "log_dir",
        "IPCERT_BACKUP_DIR": "backup_dir",
        "IPCERT_LOCK_FILE": "lock_file",
        "IPCERT_CERT_DIR": "cert_dir",
    }
    for env_key, key in path_env.items():
        if env_key in os.environ:
            value = os.environ[env_key].strip()
            if value:
                cfg.setdefault("paths", {})[key] = value

    if "IPCERT_CERTBOT" in os.environ:
        value = os.environ["IPCERT_CERTBOT"].strip()
        if value:
            cfg.setdefault("certbot", {})["path"] = value


def get_cfg() -> Dict[str, Any]:
    global _cfg_cache, _search_paths, _active_config_path, _primary_config_path
    if _cfg_cache is not None:
        return _cfg_cache

    cfg = copy.deepcopy(_DEFAULTS)

    project_root = Path(__file__).resolve().parent.parent
    search = _candidate_search_paths(project_root)
    _search_paths = list(search)

    active: Path | None = None
    for candidate in search:
        try:
            if candidate.exists():
                active = candidate
                break
        except OSError:
            pass

    if active is not None:
        cfg = _deep_merge(cfg, _load_yaml_if_exists(active))

    _active_config_path = active
    _primary_config_path = _resolve_primary_path(active)

    _apply_env_overrides(cfg)
    _cfg_cache = cfg
    return cfg


def reload_cfg() -> Dict[str, Any]:
    global _cfg_cache
    _cfg_cache = None
    return get_cfg()


def primary_config_path() -> Path:
    if _primary_config_path is None:
        get_cfg()
    assert _primary_config_path is not None
    return _primary_config_path


def active_config_path() -> Path | None:
    if _active_config_path is None:
        get_cfg()
    return _active_config_path


def search_paths() -> list[Path]:
    if not _search_paths:
        get_cfg()
    return list(_search_paths)


@dataclass(frozen=True)
class Settings:
    """Validated, immutable view of the merged configuration."""

    email: str
    webroot: Path
    key_size: int
    web_server: str
    renewal_enabled: bool
    renewal_force: bool
    deploy_hook: str
    log_level: str
    log_retention_days: int
    max_backups: int
    lock_timeout_sec: int
    config_dir: Path
    log_dir: Path
    backup_dir: Path
    lock_file: Path
    cert_dir: Path
    certbot_path: str
    certbot_min_version: str
    config_path: Path

    def as_dict(self) -> Dict[str, Any]:
        return {
            "email": self.email,
            "webroot": str(self.webroot),
            "key_size": self.key_size,
            "web_server": self.web_server,
            "renewal_enabled": self.renewal_enabled,
            "renewal_force": self.renewal_force,
            "deploy_hook": self.deploy_hook,
            "log_level": self.log_level,
            "log_retention_days": self.log_retention_days,
            "max_backups": self.max_backups,
            "lock_timeout_sec": self.lock_timeout_sec,
            "paths": {
                "config_dir": str(self.config_dir),
                "log_dir": str(self.log_dir),
                "backup_dir": str(self.backup_dir),
                "lock_file": str(self.lock_file),
                "cert_dir": str(self.cert_dir),
            },
            "certbot": {
                "path": self.certbot_path,
                "min_version": self.certbot_min_version,
            },
        }


def _as_bool(value: Any, key: str) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"true", "yes", "1", "on"}:
            return True
        if normalized in {"false", "no", "0", "off", ""}:
            return False
    if isinstance(value, int):
        return bool(value)
    raise ConfigCorrupt(f"Configuration value {key!r} must be a boolean, got {value!r}")


def _as_int(value: Any, key: str, minimum: int, maximum: int) -> int:
    try:
        return validate_number(value, minimum=minimum, maximum=maximum).value
    except InvalidInput as exc:
        raise ConfigCorrupt(f"Configuration value {key!r}: {exc.message}") from exc


def _as_path(value: Any, key: str) -> Path:
    try:
        return validate_path(str(value), require_absolute=True).path
    except InvalidInput as exc:
        raise ConfigCorrupt(f"Configuration value {key!r}: {exc.message}") from exc


def settings_from_mapping(cfg: Mapping[str, Any], config_path: Path) -> Settings:
    """Validate the merged mapping as a unit; any bad value raises ConfigCorrupt."""

    paths = cfg.get("paths") or {}
    certbot = cfg.get("certbot") or {}
    if not isinstance(paths, Mapping) or not isinstance(certbot, Mapping):
        raise ConfigCorrupt("Configuration sections 'paths' and 'certbot' must be mappings")

    email = str(cfg.get("email") or "").strip()
    if email:
        try:
            email = validate_email(email).value
        except InvalidInput as exc:
            raise ConfigCorrupt(f"Configuration value 'email': {exc.message}") from exc

    key_size = _as_int(cfg.get("key_size"), "key_size", 2048, 4096)
    if key_size not in KEY_SIZE_CHOICES:
        raise ConfigCorrupt(f"Configuration value 'key_size' must be one of {KEY_SIZE_CHOICES}")

    web_server = str(cfg.get("web_server") or "").strip().lower()
    if web_server and web_server not in WEB_SERVER_CHOICES:
        # An unknown preference falls back to auto-detection with a warning.
        logging.getLogger("ipcert.config").warning(
            "Ignoring unknown web_server preference %r (expected one of %s)",
            web_server,
            ", ".join(WEB_SERVER_CHOICES),
        )
        web_server = ""

    log_level = str(cfg.get("log_level") or "INFO").strip().upper()
    if log_level not in LOG_LEVEL_CHOICES:
        raise ConfigCorrupt(f"Configuration value 'log_level' must be one of {LOG_LEVEL_CHOICES}")

    certbot_path = str(certbot.get("path") or "certbot").strip()
    try:
        validate_path(certbot_path)
    except InvalidInput as exc:
        raise ConfigCorrupt(f"Configuration value 'certbot.path': {exc.message}") from exc

    return Settings(
        email=email,
        webroot=_as_path(cfg.get("webroot"), "webroot"),
        key_size=key_size,
        web_server=web_server,
        renewal_enabled=_as_bool(cfg.get("renewal_enabled", True), "renewal_enabled"),
        renewal_force=_as_bool(cfg.get("renewal_force", False), "renewal_force"),
        deploy_hook=str(cfg.get("deploy_hook") or "").strip(),
        log_level=log_level,
        log_retention_days=_as_int(cfg.get("log_retention_days"), "log_retention_days", 1, 3650),
        max_backups=_as_int(cfg.get("max_backups"), "max_backups", 1, 1000),
        lock_timeout_sec=_as_int(cfg.get("lock_timeout_sec"), "lock_timeout_sec", 0, 86400),
        config_dir=_as_path(paths.get("config_dir"), "paths.config_dir"),
        log_dir=_as_path(paths.get("log_dir"), "paths.log_dir"),
        backup_dir=_as_path(paths.get("backup_dir"), "paths.backup_dir"),
        lock_file=_as_path(paths.get("lock_file"), "paths.lock_file"),
        cert_dir=_as_path(paths.get("cert_dir"), "paths.cert_dir"),
        certbot_path=certbot_path,
        certbot_min_version=str(certbot.get("min_version") or "2.0.0").strip(),
        config_path=config_path,
    )


def load_settings() -> Settings:
    return settings_from_mapping(get_cfg(), primary_config_path())


def default_settings(config_path: Path | None = None) -> Settings:
    """Compiled-in defaults plus environment overrides, ignoring any config file."""

    cfg = copy.deepcopy(_DEFAULTS)
    _apply_env_overrides(cfg)
    return settings_from_mapping(cfg, config_path or primary_config_path())


def _convert_to_round_trip(value: Any) -> Any:
    if isinstance(value, Mapping):
        converted = CommentedMap()
        for key, item in value.items():
            converted[key] = _convert_to_round_trip(item)
        return converted
    return value


def _load_yaml_for_update(path: Path) -> MutableMapping[str, Any]:
    if path.exists():
        try:
            with path.open("r", encoding="utf-8") as handle:
                data = _ROUND_TRIP_YAML.load(handle)
        except Exception as exc:
            raise ConfigPersistenceError(f"Unable to read configuration: {exc}") from exc
        if isinstance(data, MutableMapping):
            return data
    return CommentedMap()


def _dump_yaml(path: Path, payload: MutableMapping[str, Any]) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to create configuration directory: {exc}") from exc
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            _ROUND_TRIP_YAML.dump(payload, handle)
        tmp_path.replace(path)
    except OSError as exc:
        raise ConfigPersistenceError(f"Unable to write configuration: {exc}") from exc


def _replace_values(target: MutableMapping[str, Any], updates: Mapping[str, Any]) -> None:
    for key, value in updates.items():
        if isinstance(value, Mapping):
            section = target.get(key)
            if not isinstance(section, MutableMapping):
                section = CommentedMap()
                target[key] = section
            _replace_values(section, value)
        else:
            target[key] = value


def save_settings(
    updates: Mapping[str, Any],
    *,
    backup_manager: "BackupManager | None" = None,
    path: Path | None = None,
) -> Settings:
    """Persist ``updates`` to the primary config file and return new settings.

    The merged result is validated before anything is written. When the file
    already exists and ``backup_manager`` is given, a config backup must
    succeed first; otherwise the save is refused.
    """

    target = path or primary_config_path()
    document = _load_yaml_for_update(target)
    _replace_values(document, updates)

    candidate = _deep_merge(copy.deepcopy(_DEFAULTS), _plain(document))
    settings_from_mapping(candidate, target)

    if backup_manager is not None and target.exists():
        from .backup import BackupType

        record = backup_manager.backup(target, BackupType.CONFIG)
        if record is None:
            raise ConfigPersistenceError(
                f"Refusing to overwrite {target}: configuration backup failed"
            )

    _dump_yaml(target, document)
    reload_cfg()
    # IPCERT_* overrides keep winning over the file for the rest of the run.
    _apply_env_overrides(candidate)
    return settings_from_mapping(candidate, target)


def reset_to_defaults(path: Path | None = None) -> Path:
    target = path or primary_config_path()
    _dump_yaml(target, _convert_to_round_trip(copy.deepcopy(_DEFAULTS)))
    reload_cfg()
    return target


def check_config_file(path: Path) -> None:
    """Parse and validate ``path``; raises ConfigCorrupt on any problem."""

    data = _load_yaml_if_exists(path)
    settings_from_mapping(_deep_merge(copy.deepcopy(_DEFAULTS), data), path)


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


__all__ = [
    "Settings",
    "active_config_path",
    "check_config_file",
    "default_settings",
    "get_cfg",
    "load_settings",
    "primary_config_path",
    "reload_cfg",
    "reset_to_defaults",
    "save_settings",
    "search_paths",
    "settings_from_mapping",
]
