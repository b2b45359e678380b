# memserve/config.py
# Configuration management: environment defaults, duration parsing, logging setup

from __future__ import annotations

import logging
import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from memserve.errors import ErrorCode, MemserveError

logger = logging.getLogger(__name__)

STRATEGIES = ("incremental", "snapshot")

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """Parse "1h30m", "100ms", "5s" or a bare number of seconds into seconds."""
    text = value.strip()
    if not text:
        raise MemserveError(ErrorCode.CONFIG_INVALID, "Empty duration")
    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise MemserveError(
                ErrorCode.CONFIG_INVALID,
                f"Invalid duration: {value!r}",
                details={"value": value},
            )
        return seconds

    sign = 1.0
    if text[0] in "+-":
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]

    total = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise MemserveError(
            ErrorCode.CONFIG_INVALID,
            f"Invalid duration: {value!r}",
            details={"value": value},
        )
    return sign * total


def format_duration(seconds: float) -> str:
    if seconds and seconds < 1:
        return f"{seconds * 1000:g}ms"
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        if minutes % 60 == 0:
            return f"{minutes // 60}h"
        return f"{minutes}m"
    return f"{seconds:g}s"


def parse_addr(addr: str) -> tuple[str, int]:
    """Split "host:port" (or ":port") into its parts; empty host means all interfaces."""
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise MemserveError(ErrorCode.CONFIG_INVALID, f"Invalid listen address: {addr!r}")
    try:
        port_num = int(port)
    except ValueError:
        raise MemserveError(ErrorCode.CONFIG_INVALID, f"Invalid port in address: {addr!r}") from None
    return (host.strip("[]") or "0.0.0.0", port_num)


def _env_duration(name: str, default: str) -> float:
    return parse_duration(os.getenv(name, default))


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise MemserveError(
            ErrorCode.CONFIG_INVALID,
            f"{name} must be an integer, got {raw!r}",
            details={"name": name, "value": raw},
        ) from None


def _env_optional_duration(name: str) -> Optional[float]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return parse_duration(raw)


@dataclass(frozen=True)
class CacheConfig:
    root: Path = field(default_factory=lambda: Path("."))
    refresh_interval: float = 60.0
    ignore_pattern: Optional[str] = None
    strategy: str = "incremental"


@dataclass(frozen=True)
class HTTPConfig:
    host: str = "0.0.0.0"
    port: int = 8080
    min_request_interval: float = 1.0
    rate_limit_window: float = 60.0
    trust_forwarded_for: bool = False
    request_timeout: Optional[float] = None


@dataclass(frozen=True)
class TLSConfig:
    domain: Optional[str] = None
    cert_file: Optional[Path] = None
    key_file: Optional[Path] = None
    https_port: int = 443
    redirect_port: int = 80
    cert_check_interval: float = 3600.0

    @property
    def enabled(self) -> bool:
        return bool(self.domain)


@dataclass(frozen=True)
class LogConfig:
    level: str = "INFO"
    format: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    file: Optional[Path] = None
    max_file_size_mb: int = 10
    backup_count: int = 5


@dataclass
class MemserveConfig:
    cache: CacheConfig = field(default_factory=CacheConfig)
    http: HTTPConfig = field(default_factory=HTTPConfig)
    tls: TLSConfig = field(default_factory=TLSConfig)
    log: LogConfig = field(default_factory=LogConfig)

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        if self.cache.refresh_interval < 0:
            raise MemserveError(ErrorCode.CONFIG_INVALID, "Refresh interval must not be negative")
        if self.http.min_request_interval < 0:
            raise MemserveError(ErrorCode.CONFIG_INVALID, "Minimum request interval must not be negative")
        if self.http.request_timeout is not None and self.http.request_timeout <= 0:
            raise MemserveError(ErrorCode.CONFIG_INVALID, "Request timeout must be positive")
        if self.cache.strategy not in STRATEGIES:
            raise MemserveError(
                ErrorCode.CONFIG_INVALID,
                f"Unknown reconcile strategy: {self.cache.strategy}",
                details={"allowed": list(STRATEGIES)},
            )
        if self.cache.ignore_pattern:
            try:
                re.compile(self.cache.ignore_pattern)
            except re.error as e:
                raise MemserveError(
                    ErrorCode.CONFIG_INVALID,
                    f"Invalid ignore pattern: {e}",
                    details={"pattern": self.cache.ignore_pattern},
                ) from e
        if self.tls.cert_check_interval <= 0:
            raise MemserveError(ErrorCode.CONFIG_INVALID, "Certificate check interval must be positive")
        if self.tls.enabled and not (self.tls.cert_file and self.tls.key_file):
            raise MemserveError(
                ErrorCode.CONFIG_MISSING_REQUIRED,
                "HTTPS requires both a certificate file and a key file",
                details={"domain": self.tls.domain},
            )

    @classmethod
    def from_env(cls) -> "MemserveConfig":
        cache = CacheConfig(
            root=Path(os.getenv("MEMSERVE_DIR", ".")),
            refresh_interval=_env_duration("MEMSERVE_REFRESH", "1m"),
            ignore_pattern=os.getenv("MEMSERVE_IGNORE") or None,
            strategy=os.getenv("MEMSERVE_STRATEGY", "incremental").lower(),
        )

        http = HTTPConfig(
            host=os.getenv("MEMSERVE_HOST", "0.0.0.0"),
            port=_env_int("MEMSERVE_PORT", 8080),
            min_request_interval=_env_duration("MEMSERVE_RATE", "1s"),
            rate_limit_window=_env_duration("MEMSERVE_RATE_WINDOW", "1m"),
            trust_forwarded_for=os.getenv("MEMSERVE_TRUST_FORWARDED_FOR", "false").lower() == "true",
            request_timeout=_env_optional_duration("MEMSERVE_TIMEOUT"),
        )

        cert = os.getenv("MEMSERVE_TLS_CERT")
        key = os.getenv("MEMSERVE_TLS_KEY")
        tls = TLSConfig(
            domain=os.getenv("MEMSERVE_HTTPS_DOMAIN") or None,
            cert_file=Path(cert) if cert else None,
            key_file=Path(key) if key else None,
            https_port=_env_int("MEMSERVE_HTTPS_PORT", 443),
            redirect_port=_env_int("MEMSERVE_REDIRECT_PORT", 80),
            cert_check_interval=_env_duration("MEMSERVE_TLS_CHECK", "1h"),
        )

        log_file = os.getenv("MEMSERVE_LOG_FILE")
        log = LogConfig(
            level=os.getenv("MEMSERVE_LOG_LEVEL", "INFO"),
            file=Path(log_file) if log_file else None,
        )

        return cls(cache=cache, http=http, tls=tls, log=log)


_config: Optional[MemserveConfig] = None


def get_config() -> MemserveConfig:
    global _config
    if _config is None:
        _config = MemserveConfig.from_env()
    return _config


def set_config(config: MemserveConfig) -> None:
    global _config
    _config = config


def setup_logging(config: Optional[MemserveConfig] = None) -> None:
    cfg = config or get_config()

    handlers: List[logging.Handler] = [logging.StreamHandler()]

    if cfg.log.file is not None:
        from logging.handlers import RotatingFileHandler
        cfg.log.file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            cfg.log.file,
            maxBytes=cfg.log.max_file_size_mb * 1024 * 1024,
            backupCount=cfg.log.backup_count,
        )
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, cfg.log.level.upper(), logging.INFO),
        format=cfg.log.format,
        handlers=handlers,
        force=True,
    )
