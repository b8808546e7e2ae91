"""
Configuration for ch-dr.

Settings come from a YAML file (default ./ch-dr-config.yaml) with a handful
of environment variable overrides for container deployments. The resulting
Config value is passed explicitly to every component.
"""

import os
from pathlib import Path
from typing import List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from chdr.models import TargetKind


DEFAULT_CONFIG_FILE = './ch-dr-config.yaml'


class ConfigError(Exception):
    """Raised when configuration cannot be loaded."""
    pass


class Config(BaseModel):
    """Base configuration"""

    # Artifact name prefix; derived from the target kind when unset
    environment: Optional[str] = None

    # ClickHouse connection
    host: str = 'localhost'
    port: int = 9000
    user: str = 'default'
    password: str = ''

    # Backup
    backup_dir: str = '/var/backups/clickhouse'
    retention_days: int = Field(default=7, ge=0)
    databases: List[str] = Field(default_factory=list)
    compression_format: str = 'tar.gz'
    workers: int = Field(default=4, ge=1)
    bulk_snapshot: bool = True
    snapshot_disk: str = 'backups'
    snapshot_disk_path: str = '/var/lib/clickhouse/disks/backups'
    command_timeout: int = 3600
    fail_on_partial: bool = False

    # S3
    use_s3: bool = False
    s3_bucket: str = 'your-bucket'
    s3_path: str = 'clickhouse/backups'
    s3_region: str = 'us-east-1'
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None

    # Kubernetes (k8s mode only)
    namespace: str = 'clickhouse'
    pod_prefix: str = 'clickhouse'
    container: Optional[str] = None

    # SSH (ssh mode only)
    ssh_host: Optional[str] = None
    ssh_port: int = 22
    ssh_user: Optional[str] = None
    ssh_password: Optional[str] = None
    ssh_private_key: Optional[str] = None

    # Service mode
    schedule: Optional[str] = '0 2 * * *'
    backup_on_start: bool = False
    health_port: int = 8080

    # Logging
    log_file: Optional[str] = './ch-dr.log'
    debug: bool = False

    @field_validator('databases', mode='before')
    @classmethod
    def _databases_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [db.strip() for db in value.split(',') if db.strip()]
        return value

    @field_validator('password', mode='before')
    @classmethod
    def _password_str(cls, value):
        return '' if value is None else str(value)

    @field_validator('compression_format')
    @classmethod
    def _known_format(cls, value):
        from chdr.backup.compression import FORMATS
        if value not in FORMATS:
            raise ValueError(f"must be one of {sorted(FORMATS)}")
        return value

    def environment_name(self, kind: TargetKind) -> str:
        """Artifact name prefix for runs against the given target kind."""
        if self.environment:
            return self.environment
        if kind == TargetKind.KUBERNETES:
            return 'clickhouse_k8s'
        if kind == TargetKind.SSH:
            return 'clickhouse_ssh'
        return 'clickhouse'


def _env_overrides(environ: Mapping[str, str]) -> dict:
    """Translate container environment variables into config values."""
    overrides = {}

    simple = {
        'CLICKHOUSE_HOST': 'host',
        'CLICKHOUSE_PORT': 'port',
        'CLICKHOUSE_USER': 'user',
        'CLICKHOUSE_PASSWORD': 'password',
        'S3_REGION': 's3_region',
        'S3_BUCKET': 's3_bucket',
        'S3_PATH': 's3_path',
        'S3_ENDPOINT_URL': 's3_endpoint_url',
    }
    for env_name, key in simple.items():
        if environ.get(env_name):
            overrides[key] = environ[env_name]

    # Credentials in the environment switch S3 on
    if environ.get('S3_ACCESS_KEY') and environ.get('S3_SECRET_KEY'):
        overrides['s3_access_key'] = environ['S3_ACCESS_KEY']
        overrides['s3_secret_key'] = environ['S3_SECRET_KEY']
        overrides['use_s3'] = True

    if environ.get('BACKUP_ON_START'):
        overrides['backup_on_start'] = environ['BACKUP_ON_START'].lower() == 'true'

    return overrides


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load configuration from a YAML file.

    Args:
        path: Config file path (default: ./ch-dr-config.yaml)
        environ: Environment mapping for overrides (default: os.environ)

    Returns:
        Config instance

    Raises:
        ConfigError: If the file is missing or invalid
    """
    config_path = Path(path or DEFAULT_CONFIG_FILE)
    environ = os.environ if environ is None else environ

    if not config_path.is_file():
        raise ConfigError(
            f"Configuration file not found: {config_path}\n"
            f"Run 'ch-dr create-config {config_path}' to create a sample."
        )

    try:
        data = yaml.safe_load(config_path.read_text(encoding='utf-8')) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration must be a mapping: {config_path}")

    data.update(_env_overrides(environ))

    try:
        return Config(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {config_path}: {e}")


SAMPLE_CONFIG = """\
# ClickHouse Disaster Recovery Configuration

# ClickHouse Connection Settings
host: localhost
port: 9000
user: default
password: ""

# Backup Settings
backup_dir: /var/backups/clickhouse
retention_days: 7
compression_format: tar.gz
workers: 4

# Native BACKUP DATABASE snapshots (falls back to table-by-table export)
bulk_snapshot: true
snapshot_disk: backups
snapshot_disk_path: /var/lib/clickhouse/disks/backups

# Exit non-zero when individual tables fail
fail_on_partial: false

# Databases to backup (leave empty to backup all)
databases:
  - db1
  - db2

# S3 Settings
use_s3: false
s3_bucket: your-bucket
s3_path: clickhouse/backups
s3_region: us-east-1

# Kubernetes Settings (for k8s mode only)
namespace: clickhouse
pod_prefix: clickhouse

# SSH Settings (for ssh mode only)
# ssh_host: clickhouse.example.com
# ssh_user: backup
# ssh_private_key: ~/.ssh/id_ed25519

# Service Settings (ch-dr serve)
schedule: "0 2 * * *"
backup_on_start: false
health_port: 8080

log_file: ./ch-dr.log
"""


def create_sample_config(path: Optional[str] = None) -> str:
    """
    Write a sample configuration file.

    Returns:
        Path of the written file
    """
    config_path = Path(path or f"{DEFAULT_CONFIG_FILE}.sample")

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)
        config_path.write_text(SAMPLE_CONFIG, encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Failed to write sample configuration to {config_path}: {e}")

    return str(config_path)
