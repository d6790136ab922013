"""
TOML settings for zesty-backup.

Loads ``config.toml`` into frozen dataclasses and validates it. Sections:
- [storage]: remote provider, bucket/folder and credentials
- [backup]: source paths, local archive directory, retention and compression
- [database]: optional database dump
- [system]: systemd units, command outputs and presets
- [daemon]: scheduling intervals and worker limits
- [retry]: retry policy for remote calls
- [logging]: log level and directory
"""

import os
import tomllib
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse

from zesty_backup.errors import ConfigError


DEFAULT_CONFIG_PATH = 'config.toml'
DEFAULT_PID_FILE = '/var/run/zesty-backup.pid'
DEFAULT_KEY_PREFIX = 'backups/'

# Keys of [storage] that hold secrets; they only ever live in a ProviderCredential
SECRET_KEYS = ('access_key', 'secret_key', 'account_key', 'application_key')

DATABASE_TYPES = ('postgres', 'postgresql', 'mariadb', 'mysql', 'mongodb', 'cassandra', 'scylla', 'redis', 'sqlite')


class ProviderCredential(Mapping[str, str]):
    """
    Read-only mapping of resolved provider secrets.

    The values never appear in repr() or str(), so a credential can be
    passed around and logged alongside other settings without leaking.
    """

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self._values = {k: v for k, v in (values or {}).items() if v}

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        keys = ', '.join(f"{k}=***" for k in sorted(self._values))
        return f'<ProviderCredential {keys}>'

    __str__ = __repr__


@dataclass(frozen=True)
class StorageSettings:
    provider: str
    bucket: str = ''
    endpoint: Optional[str] = None
    region: str = ''
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    bucket_id: Optional[str] = None
    credentials_path: Optional[str] = None
    tenant_id: Optional[str] = None
    key_prefix: str = DEFAULT_KEY_PREFIX
    credentials: ProviderCredential = field(default_factory=ProviderCredential, repr=False)


@dataclass(frozen=True)
class BackupSettings:
    local_backup_dir: Path
    project_path: Path
    additional_paths: Tuple[Path, ...] = ()
    retention_days: int = 7
    compression_level: int = 3
    exclude: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DatabaseSettings:
    enabled: bool = False
    type: str = 'postgres'
    host: Optional[str] = None
    port: Optional[int] = None
    database: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class CommandOutput:
    command: str
    output_file: str
    args: Tuple[str, ...] = ()
    enabled: bool = True


@dataclass(frozen=True)
class PresetSettings:
    nginx_enabled: bool = False
    nginx_sites: Tuple[str, ...] = ()
    crontab_enabled: bool = False
    crontab_user: Optional[str] = None
    user_configs: Tuple[str, ...] = ()
    user_configs_home: Optional[str] = None
    etc_files: Tuple[str, ...] = ()
    etc_dirs: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SystemSettings:
    systemd_services: Tuple[str, ...] = ()
    systemd_timers: Tuple[str, ...] = ()
    command_outputs: Tuple[CommandOutput, ...] = ()
    presets: PresetSettings = field(default_factory=PresetSettings)


@dataclass(frozen=True)
class DaemonSettings:
    backup_interval_hours: float = 6
    upload_interval_hours: float = 24
    full_interval_days: float = 7
    max_cycle_minutes: Optional[float] = 180
    upload_workers: int = 3
    remote_retention: bool = True
    pid_file: str = DEFAULT_PID_FILE


@dataclass(frozen=True)
class RetrySettings:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 60.0


@dataclass(frozen=True)
class LoggingSettings:
    level: str = 'info'
    log_dir: str = './logs'


@dataclass(frozen=True)
class Settings:
    storage: StorageSettings
    backup: BackupSettings
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    system: SystemSettings = field(default_factory=SystemSettings)
    daemon: DaemonSettings = field(default_factory=DaemonSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    source_path: Optional[Path] = None


def load_settings(path: str = DEFAULT_CONFIG_PATH, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """
    Load and validate a TOML settings file.

    Args:
        path: Path to the TOML file
        environ: Environment used for password fallbacks (default: os.environ)

    Returns:
        Validated Settings

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    config_path = Path(path)
    try:
        with open(config_path, 'rb') as f:
            data = tomllib.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {config_path}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {config_path}: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration {config_path}: {e}")

    return parse_settings(data, source_path=config_path, environ=environ)


def parse_settings(data: Dict[str, Any], source_path: Optional[Path] = None,
                   environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build Settings from an already-parsed TOML document."""
    environ = os.environ if environ is None else environ

    storage = _parse_storage(_section(data, 'storage', required=True))
    backup = _parse_backup(_section(data, 'backup', required=True))
    database = _parse_database(_section(data, 'database'), backup.project_path, environ)

    return Settings(
        storage=storage,
        backup=backup,
        database=database,
        system=_parse_system(_section(data, 'system')),
        daemon=_parse_daemon(_section(data, 'daemon')),
        retry=_parse_retry(_section(data, 'retry')),
        logging=_parse_logging(_section(data, 'logging')),
        source_path=source_path,
    )


def _parse_storage(section: Dict[str, Any]) -> StorageSettings:
    provider = _str(section, 'provider', 'storage')
    if not provider:
        raise ConfigError("storage.provider is required")

    secrets = {key: _str(section, key, 'storage') for key in SECRET_KEYS}

    key_prefix = _str(section, 'key_prefix', 'storage', DEFAULT_KEY_PREFIX)
    if key_prefix and not key_prefix.endswith('/'):
        key_prefix += '/'

    return StorageSettings(
        provider=provider.lower(),
        bucket=_str(section, 'bucket', 'storage', ''),
        endpoint=_str(section, 'endpoint', 'storage') or None,
        region=_str(section, 'region', 'storage', ''),
        account_id=_str(section, 'account_id', 'storage'),
        account_name=_str(section, 'account_name', 'storage'),
        bucket_id=_str(section, 'bucket_id', 'storage'),
        credentials_path=_str(section, 'credentials_path', 'storage'),
        tenant_id=_str(section, 'tenant_id', 'storage'),
        key_prefix=key_prefix,
        credentials=ProviderCredential(secrets),
    )


def _parse_backup(section: Dict[str, Any]) -> BackupSettings:
    local_backup_dir = _str(section, 'local_backup_dir', 'backup')
    project_path = _str(section, 'project_path', 'backup')
    if not local_backup_dir:
        raise ConfigError("backup.local_backup_dir is required")
    if not project_path:
        raise ConfigError("backup.project_path is required")

    retention_days = _int(section, 'retention_days', 'backup', 7)
    if retention_days < 0:
        raise ConfigError("backup.retention_days must not be negative")

    # Range is checked by the archive builder, which owns the codec limits
    compression_level = _int(section, 'compression_level', 'backup', 3)

    return BackupSettings(
        local_backup_dir=Path(local_backup_dir),
        project_path=Path(project_path),
        additional_paths=tuple(Path(p) for p in _str_list(section, 'additional_paths', 'backup')),
        retention_days=retention_days,
        compression_level=compression_level,
        exclude=_str_list(section, 'exclude', 'backup'),
    )


def _parse_database(section: Dict[str, Any], project_path: Path, environ: Mapping[str, str]) -> DatabaseSettings:
    enabled = _bool(section, 'enabled', 'database', False)
    db_type = _str(section, 'type', 'database', 'postgres').lower()
    if db_type not in DATABASE_TYPES:
        raise ConfigError(
            f"Unsupported database type: {db_type}. "
            f"Supported: {', '.join(DATABASE_TYPES)}"
        )

    settings = DatabaseSettings(
        enabled=enabled,
        type=db_type,
        host=_str(section, 'host', 'database'),
        port=_int(section, 'port', 'database', None),
        database=_str(section, 'database', 'database'),
        username=_str(section, 'username', 'database'),
        password=_str(section, 'password', 'database'),
    )
    if not enabled:
        return settings

    if not settings.database:
        raise ConfigError("database.database is required when database backup is enabled")
    if db_type == 'sqlite':
        return settings

    for key in ('host', 'port', 'username'):
        if getattr(settings, key) in (None, ''):
            raise ConfigError(f"database.{key} is required for {db_type} dumps")

    password = resolve_database_password(settings.password, project_path, environ)
    if password is None:
        raise ConfigError(
            "Database password not found. Set password in config, "
            "DB_PASSWORD env var, or DATABASE_URL in the project .env file"
        )
    return DatabaseSettings(
        enabled=True,
        type=db_type,
        host=settings.host,
        port=settings.port,
        database=settings.database,
        username=settings.username,
        password=password,
    )


def resolve_database_password(configured: Optional[str], project_path: Path,
                              environ: Mapping[str, str]) -> Optional[str]:
    """
    Resolve a database password.

    Order: explicit config value, the DB_PASSWORD environment variable,
    then the password component of DATABASE_URL in ``<project>/.env``.
    """
    if configured:
        return configured
    if environ.get('DB_PASSWORD'):
        return environ['DB_PASSWORD']

    env_file = project_path / '.env'
    try:
        lines = env_file.read_text(encoding='utf-8', errors='replace').splitlines()
    except FileNotFoundError:
        return None
    except OSError as e:
        raise ConfigError(f"Failed to read {env_file}: {e}")

    for line in lines:
        line = line.strip()
        if not line.startswith('DATABASE_URL='):
            continue
        url = line.split('=', 1)[1].strip().strip('"').strip("'")
        password = urlparse(url).password
        if password:
            return unquote(password)
    return None


def _parse_system(section: Dict[str, Any]) -> SystemSettings:
    outputs = []
    for i, item in enumerate(section.get('command_outputs') or []):
        if not isinstance(item, dict):
            raise ConfigError(f"system.command_outputs[{i}] must be a table")
        command = _str(item, 'command', f'system.command_outputs[{i}]')
        output_file = _str(item, 'output_file', f'system.command_outputs[{i}]')
        if not command or not output_file:
            raise ConfigError(f"system.command_outputs[{i}] needs command and output_file")
        outputs.append(CommandOutput(
            command=command,
            output_file=output_file,
            args=_str_list(item, 'args', f'system.command_outputs[{i}]'),
            enabled=_bool(item, 'enabled', f'system.command_outputs[{i}]', True),
        ))

    presets = _section(section, 'presets')
    return SystemSettings(
        systemd_services=_str_list(section, 'systemd_services', 'system'),
        systemd_timers=_str_list(section, 'systemd_timers', 'system'),
        command_outputs=tuple(outputs),
        presets=PresetSettings(
            nginx_enabled=_bool(presets, 'nginx_enabled', 'system.presets', False),
            nginx_sites=_str_list(presets, 'nginx_sites', 'system.presets'),
            crontab_enabled=_bool(presets, 'crontab_enabled', 'system.presets', False),
            crontab_user=_str(presets, 'crontab_user', 'system.presets'),
            user_configs=_str_list(presets, 'user_configs', 'system.presets'),
            user_configs_home=_str(presets, 'user_configs_home', 'system.presets'),
            etc_files=_str_list(presets, 'etc_files', 'system.presets'),
            etc_dirs=_str_list(presets, 'etc_dirs', 'system.presets'),
        ),
    )


def _parse_daemon(section: Dict[str, Any]) -> DaemonSettings:
    settings = DaemonSettings(
        backup_interval_hours=_number(section, 'backup_interval_hours', 'daemon', 6),
        upload_interval_hours=_number(section, 'upload_interval_hours', 'daemon', 24),
        full_interval_days=_number(section, 'full_interval_days', 'daemon', 7),
        max_cycle_minutes=_number(section, 'max_cycle_minutes', 'daemon', 180),
        upload_workers=_int(section, 'upload_workers', 'daemon', 3),
        remote_retention=_bool(section, 'remote_retention', 'daemon', True),
        pid_file=_str(section, 'pid_file', 'daemon', DEFAULT_PID_FILE),
    )
    if settings.backup_interval_hours <= 0 or settings.upload_interval_hours <= 0:
        raise ConfigError("daemon intervals must be positive")
    if settings.upload_workers < 1:
        raise ConfigError("daemon.upload_workers must be at least 1")
    if settings.max_cycle_minutes is not None and settings.max_cycle_minutes <= 0:
        # 0 disables the cycle deadline
        settings = replace(settings, max_cycle_minutes=None)
    return settings


def _parse_retry(section: Dict[str, Any]) -> RetrySettings:
    settings = RetrySettings(
        max_attempts=_int(section, 'max_attempts', 'retry', 5),
        base_delay=_number(section, 'base_delay', 'retry', 1.0),
        max_delay=_number(section, 'max_delay', 'retry', 60.0),
    )
    if settings.max_attempts < 1:
        raise ConfigError("retry.max_attempts must be at least 1")
    if settings.base_delay < 0 or settings.max_delay < settings.base_delay:
        raise ConfigError("retry delays must satisfy 0 <= base_delay <= max_delay")
    return settings


def _parse_logging(section: Dict[str, Any]) -> LoggingSettings:
    return LoggingSettings(
        level=_str(section, 'level', 'logging', 'info').lower(),
        log_dir=_str(section, 'log_dir', 'logging', './logs'),
    )


# Value helpers


def _section(data: Dict[str, Any], name: str, required: bool = False) -> Dict[str, Any]:
    value = data.get(name)
    if value is None:
        if required:
            raise ConfigError(f"Missing [{name}] section")
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _str(section: Dict[str, Any], key: str, where: str, default: Any = None) -> Any:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"{where}.{key} must be a string")
    return value


def _int(section: Dict[str, Any], key: str, where: str, default: Any) -> Any:
    value = section.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where}.{key} must be an integer")
    return value


def _number(section: Dict[str, Any], key: str, where: str, default: Any) -> Any:
    value = section.get(key, default)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{where}.{key} must be a number")
    return float(value)


def _bool(section: Dict[str, Any], key: str, where: str, default: bool) -> bool:
    value = section.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{where}.{key} must be true or false")
    return value


def _str_list(section: Dict[str, Any], key: str, where: str) -> Tuple[str, ...]:
    value = section.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where}.{key} must be a list of strings")
    return tuple(value)


EXAMPLE_CONFIG = '''# zesty-backup configuration

[storage]
# Provider: s3, aws, contabo, digitalocean, wasabi, minio, r2, gcs, google, azure,
#           b2, backblaze, googledrive, gdrive, onedrive, dropbox, box, pcloud, mega
provider = "s3"

# S3-compatible providers (AWS, Contabo, DigitalOcean Spaces, Wasabi, MinIO, Cloudflare R2)
endpoint = ""            # derived for aws, digitalocean, wasabi and r2
region = "us-east-1"
bucket = "your-bucket-name"
access_key = "your-access-key"
secret_key = "your-secret-key"
key_prefix = "backups/"

# Google Cloud Storage
# provider = "gcs"
# credentials_path = "/path/to/service-account.json"

# Azure Blob Storage (bucket is the container name)
# provider = "azure"
# account_name = "your-account-name"
# account_key = "your-account-key"

# Backblaze B2
# provider = "b2"
# account_id = "your-key-id"
# application_key = "your-application-key"
# bucket_id = "your-bucket-id"

# Google Drive, OneDrive, Dropbox, Box, pCloud: access_key holds the OAuth token,
# bucket_id the folder id (Drive, Box) or folder path (OneDrive, Dropbox, pCloud).
# pCloud uses region = "eu" for the European data center.

# MEGA (requires MEGAcmd)
# provider = "mega"
# account_name = "you@example.com"
# account_key = "your-password"
# bucket_id = "/Backups"

[backup]
local_backup_dir = "./backups"
project_path = "/path/to/your/project"
additional_paths = []
retention_days = 7
# 0 stores an uncompressed .tar, 1-22 writes .tar.zst
compression_level = 3
exclude = ["node_modules", ".git", "*.log"]

[database]
# Supported types: postgres, mariadb, mysql, mongodb, cassandra, scylla, redis, sqlite
enabled = false
# type = "postgres"
# host = "localhost"
# port = 5432
# database = "your_database"
# username = "your_user"
# password = "..."   # or DB_PASSWORD env var, or DATABASE_URL in <project>/.env

[system]
systemd_services = []
systemd_timers = []
command_outputs = [
    # { command = "docker", args = ["ps", "-a"], output_file = "docker_containers.txt" },
]

[system.presets]
nginx_enabled = false
nginx_sites = []
crontab_enabled = false
# crontab_user = "deploy"
user_configs = []
# user_configs_home = "/home/deploy"
etc_files = []
etc_dirs = []

[daemon]
backup_interval_hours = 6
upload_interval_hours = 24
full_interval_days = 7
max_cycle_minutes = 180
upload_workers = 3
remote_retention = true
pid_file = "/var/run/zesty-backup.pid"

[retry]
max_attempts = 5
base_delay = 1.0
max_delay = 60.0

[logging]
level = "info"
log_dir = "./logs"
'''


def generate_example_config(path: str) -> Path:
    """
    Write a commented example configuration file.

    Raises:
        ConfigError: If the file cannot be written
    """
    output = Path(path)
    try:
        if output.parent and not output.parent.exists():
            output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(EXAMPLE_CONFIG, encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Failed to write config file {output}: {e}")
    return output
