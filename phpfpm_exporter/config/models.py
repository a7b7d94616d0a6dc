"""Pydantic configuration models for the exporter."""

from pydantic import BaseModel, Field, field_validator, model_validator
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlsplit


SUPPORTED_SCHEMES = ("http", "https", "tcp", "unix")

DEFAULT_ENDPOINT = "http://127.0.0.1:9000/status"


class TLSConfig(BaseModel):
    """Client certificate used for mutual TLS against HTTPS targets."""
    cert_file: str
    key_file: str
    ca_file: Optional[str] = None
    insecure_skip_verify: bool = False

    @field_validator('cert_file', 'key_file', 'ca_file')
    @classmethod
    def file_must_exist(cls, v: Optional[str]) -> Optional[str]:
        """Reject certificate paths that do not exist."""
        if v is not None and not Path(v).is_file():
            raise ValueError(f'File not found: {v}')
        return v


class BasicAuthConfig(BaseModel):
    """HTTP basic auth credentials for HTTP(S) targets."""
    username: str
    password: Optional[str] = None
    password_file: Optional[str] = None

    @model_validator(mode='after')
    def resolve_password(self) -> 'BasicAuthConfig':
        """Load the password from password_file when given."""
        if self.password_file is not None:
            path = Path(self.password_file)
            if not path.is_file():
                raise ValueError(f'Password file not found: {self.password_file}')
            self.password = path.read_text().strip()
        if self.password is None:
            raise ValueError('Either password or password_file must be set')
        return self


class TargetConfig(BaseModel):
    """One status endpoint to poll."""
    name: str
    url: str

    @field_validator('name')
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Target names end up as label values and must not be blank."""
        if not v.strip():
            raise ValueError('Target name must not be empty')
        return v

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate scheme and the parts each scheme needs."""
        parts = urlsplit(v)
        if parts.scheme not in SUPPORTED_SCHEMES:
            raise ValueError(
                f'URL scheme must be one of {", ".join(SUPPORTED_SCHEMES)}: {v}'
            )
        if parts.scheme == 'unix':
            if not parts.path:
                raise ValueError(f'unix URL needs a socket path: {v}')
        elif not parts.hostname:
            raise ValueError(f'URL needs a host: {v}')
        try:
            parts.port
        except ValueError as e:
            raise ValueError(f'Invalid port in URL {v}: {e}') from e
        return v


class ExporterConfig(BaseModel):
    """Root configuration model for the exporter."""
    listen_address: str = "127.0.0.1:8080"
    metrics_path: str = "/metrics"
    timeout: Optional[float] = Field(default=None, gt=0)  # Seconds, None blocks forever
    targets: List[TargetConfig] = Field(
        default_factory=lambda: [TargetConfig(name="default", url=DEFAULT_ENDPOINT)]
    )
    tls: Optional[TLSConfig] = None
    basic_auth: Optional[BasicAuthConfig] = None
    pool_status_path: str = "/{pool}/status"
    log_level: str = "INFO"

    @field_validator('listen_address')
    @classmethod
    def validate_listen_address(cls, v: str) -> str:
        """Require host:port, host may be empty to bind all interfaces."""
        host, sep, port = v.rpartition(':')
        if not sep or not port.isdigit() or not 0 < int(port) < 65536:
            raise ValueError(f'Invalid listen address (expected host:port): {v}')
        return v

    @field_validator('metrics_path')
    @classmethod
    def validate_metrics_path(cls, v: str) -> str:
        """Empty or root path keeps the default."""
        if v in ("", "/"):
            return "/metrics"
        if not v.startswith('/'):
            return '/' + v
        return v

    @field_validator('pool_status_path')
    @classmethod
    def validate_pool_status_path(cls, v: str) -> str:
        """The template must reference the pool name."""
        if '{pool}' not in v:
            raise ValueError('pool_status_path must contain "{pool}"')
        return v

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate log level name."""
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f'Unknown log level: {v}')
        return level

    @field_validator('targets')
    @classmethod
    def validate_targets(cls, v: List[TargetConfig]) -> List[TargetConfig]:
        """At least one target, names unique."""
        if not v:
            raise ValueError('At least one target must be configured')
        seen = set()
        for target in v:
            if target.name in seen:
                raise ValueError(f'Duplicate target name: {target.name}')
            seen.add(target.name)
        return v

    @property
    def listen_host(self) -> str:
        host = self.listen_address.rpartition(':')[0]
        return host.strip('[]') or "0.0.0.0"

    @property
    def listen_port(self) -> int:
        return int(self.listen_address.rpartition(':')[2])
