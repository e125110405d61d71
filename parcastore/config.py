"""Parca configuration: scrape jobs, profiling endpoints and object storage."""

from __future__ import annotations

import os
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any

import yaml

PPROF_MEMORY = "memory"
PPROF_BLOCK = "block"
PPROF_GOROUTINE = "goroutine"
PPROF_MUTEX = "mutex"
PPROF_PROCESS_CPU = "process_cpu"

_MIN_CPU_TIMEOUT = 2.0

_HTTP_CLIENT_KEYS = frozenset(
    {
        "basic_auth",
        "authorization",
        "oauth2",
        "bearer_token",
        "bearer_token_file",
        "tls_config",
        "proxy_url",
        "follow_redirects",
        "enable_http2",
    }
)

_SCRAPE_KEYS = frozenset(
    {
        "job_name",
        "params",
        "scrape_interval",
        "scrape_timeout",
        "scheme",
        "profiling_config",
        "relabel_configs",
        "static_configs",
    }
)

_DURATION_RE = re.compile(
    r"^(?:(\d+)y)?(?:(\d+)w)?(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+)s)?(?:(\d+)ms)?$"
)
_UNITS_MS = (
    ("y", 365 * 24 * 3600 * 1000),
    ("w", 7 * 24 * 3600 * 1000),
    ("d", 24 * 3600 * 1000),
    ("h", 3600 * 1000),
    ("m", 60 * 1000),
    ("s", 1000),
    ("ms", 1),
)


class ConfigError(ValueError):
    """Raised when a configuration cannot be parsed or is invalid."""


class Secret(str):
    """A string that is hidden when the configuration is written out."""

    def to_yaml(self) -> str | None:
        """Return the masked form used in serialized configuration."""
        return "<secret>" if self else None


def parse_duration(text: str) -> float:
    """Parse a duration such as ``1m30s`` or ``500ms`` into seconds."""
    if not isinstance(text, str):
        raise ConfigError(f"not a valid duration string: {text!r}")
    if text == "0":
        return 0.0
    match = _DURATION_RE.match(text)
    if not text or match is None:
        raise ConfigError(f"not a valid duration string: {text!r}")
    total_ms = sum(
        int(value) * ms
        for value, (_, ms) in zip(match.groups(), _UNITS_MS)
        if value is not None
    )
    return total_ms / 1000


def format_duration(seconds: float) -> str:
    """Format seconds as a duration string, the inverse of :func:`parse_duration`."""
    remaining = round(seconds * 1000)
    if remaining == 0:
        return "0s"
    parts = []
    for unit, ms in _UNITS_MS:
        count, remaining = divmod(remaining, ms)
        if count:
            parts.append(f"{count}{unit}")
    return "".join(parts)


def check_target_address(address: str) -> None:
    """Raise :class:`ConfigError` if ``address`` is not a plain host[:port]."""
    if "/" in address:
        raise ConfigError(f"{address!r} is not a valid hostname")


@dataclass
class PprofProfilingConfig:
    """One pprof endpoint to scrape."""

    enabled: bool | None = None
    path: str = ""
    delta: bool = False


@dataclass
class ProfilingConfig:
    """The pprof endpoints of a scrape job, keyed by profile type."""

    pprof_config: dict[str, PprofProfilingConfig] | None = None
    path_prefix: str = ""


@dataclass
class StaticConfig:
    """A statically listed group of targets."""

    targets: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    source: str = ""


@dataclass
class ScrapeConfig:
    """A scrape job. Durations are in seconds."""

    job_name: str = ""
    params: dict[str, list[str]] = field(default_factory=dict)
    scrape_interval: float = 10.0
    scrape_timeout: float = 0.0
    scheme: str = "http"
    profiling_config: ProfilingConfig | None = None
    relabel_configs: list[dict[str, Any]] = field(default_factory=list)
    static_configs: list[StaticConfig] = field(default_factory=list)
    http_client_config: dict[str, Any] = field(default_factory=dict)

    def set_directory(self, directory: str) -> None:
        """Join relative file paths of the HTTP client settings with ``directory``."""
        http = self.http_client_config

        def join(container: dict[str, Any] | None, key: str) -> None:
            if isinstance(container, dict) and container.get(key):
                path = container[key]
                if not os.path.isabs(path):
                    container[key] = os.path.join(directory, path)

        join(http, "bearer_token_file")
        join(http.get("basic_auth"), "password_file")
        join(http.get("authorization"), "credentials_file")
        tls = http.get("tls_config")
        for key in ("ca_file", "cert_file", "key_file"):
            join(tls, key)
        oauth2 = http.get("oauth2")
        join(oauth2, "client_secret_file")
        if isinstance(oauth2, dict):
            for key in ("ca_file", "cert_file", "key_file"):
                join(oauth2.get("tls_config"), key)


@dataclass
class BucketConfig:
    """Object storage bucket settings."""

    type: str = ""
    config: Any = None
    prefix: str = ""


@dataclass
class ObjectStorage:
    """Object storage settings."""

    bucket: BucketConfig | None = None


@dataclass
class Config:
    """All configuration of the server."""

    object_storage: ObjectStorage | None = None
    scrape_configs: list[ScrapeConfig] = field(default_factory=list)

    def validate(self) -> None:
        """Raise :class:`ConfigError` if object storage is not fully configured."""
        if self.object_storage is None:
            raise ConfigError("object_storage: cannot be blank")
        bucket = self.object_storage.bucket
        if bucket is None:
            raise ConfigError("object_storage: (bucket: cannot be blank.)")
        errors = []
        if not bucket.config:
            errors.append("config: cannot be blank")
        if not bucket.type:
            errors.append("type: cannot be blank")
        if errors:
            raise ConfigError(f"object_storage: (bucket: ({'; '.join(errors)}).)")

    def set_directory(self, directory: str) -> None:
        """Join relative file paths in all scrape configs with ``directory``."""
        for scrape in self.scrape_configs:
            scrape.set_directory(directory)

    def to_yaml(self) -> str:
        """Serialize the configuration, masking secrets."""
        doc: dict[str, Any] = {}
        if self.object_storage is not None:
            storage: dict[str, Any] = {}
            bucket = self.object_storage.bucket
            if bucket is not None:
                storage["bucket"] = _drop_empty(
                    {"type": bucket.type, "config": bucket.config, "prefix": bucket.prefix}
                )
            doc["object_storage"] = storage
        if self.scrape_configs:
            doc["scrape_configs"] = [_scrape_to_dict(s) for s in self.scrape_configs]
        return yaml.safe_dump(doc, sort_keys=False)

    def __str__(self) -> str:
        return self.to_yaml()


def _drop_empty(values: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in values.items() if v not in (None, "", {}, [], False)}


def _mask(value: Any) -> Any:
    if isinstance(value, Secret):
        return value.to_yaml()
    if isinstance(value, dict):
        return {k: _mask(v) for k, v in value.items()}
    return value


def _scrape_to_dict(scrape: ScrapeConfig) -> dict[str, Any]:
    out: dict[str, Any] = {"job_name": scrape.job_name}
    out.update(
        _drop_empty(
            {
                "params": scrape.params,
                "scrape_interval": format_duration(scrape.scrape_interval)
                if scrape.scrape_interval
                else None,
                "scrape_timeout": format_duration(scrape.scrape_timeout)
                if scrape.scrape_timeout
                else None,
                "scheme": scrape.scheme,
            }
        )
    )
    profiling = scrape.profiling_config
    if profiling is not None:
        pprof = {
            name: _drop_empty({"enabled": pc.enabled, "path": pc.path, "delta": pc.delta})
            for name, pc in (profiling.pprof_config or {}).items()
        }
        out["profiling_config"] = _drop_empty(
            {"pprof_config": pprof, "path_prefix": profiling.path_prefix}
        )
    if scrape.relabel_configs:
        out["relabel_configs"] = scrape.relabel_configs
    if scrape.static_configs:
        out["static_configs"] = [
            _drop_empty({"targets": sc.targets, "labels": sc.labels})
            for sc in scrape.static_configs
        ]
    out.update(_mask(_drop_empty(scrape.http_client_config)))
    return out


def default_scrape_config() -> ScrapeConfig:
    """Return a scrape config filled with the default values and endpoints."""
    return ScrapeConfig(
        scrape_interval=10.0,
        scrape_timeout=0.0,
        scheme="http",
        profiling_config=ProfilingConfig(
            pprof_config={
                PPROF_MEMORY: PprofProfilingConfig(enabled=True, path="/debug/pprof/allocs"),
                PPROF_BLOCK: PprofProfilingConfig(enabled=True, path="/debug/pprof/block"),
                PPROF_GOROUTINE: PprofProfilingConfig(
                    enabled=True, path="/debug/pprof/goroutine"
                ),
                PPROF_MUTEX: PprofProfilingConfig(enabled=True, path="/debug/pprof/mutex"),
                PPROF_PROCESS_CPU: PprofProfilingConfig(
                    enabled=True, delta=True, path="/debug/pprof/profile"
                ),
            }
        ),
    )


def _mapping(value: Any, where: str, allowed: frozenset[str] | None = None) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: expected a mapping")
    if allowed is not None:
        unknown = sorted(str(k) for k in value if k not in allowed)
        if unknown:
            raise ConfigError(f"{where}: field {unknown[0]} not found")
    return value


def _string(value: Any, where: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ConfigError(f"{where}: expected a string")
    return value


def _duration(value: Any, where: str) -> float:
    try:
        return parse_duration(value if isinstance(value, str) else str(value))
    except ConfigError as exc:
        raise ConfigError(f"{where}: {exc}") from None


def _parse_pprof(value: Any, where: str) -> PprofProfilingConfig | None:
    if value is None:
        return None
    data = _mapping(value, where, frozenset({"enabled", "path", "delta"}))
    enabled = data.get("enabled")
    delta = data.get("delta", False)
    if enabled is not None and not isinstance(enabled, bool):
        raise ConfigError(f"{where}.enabled: expected a boolean")
    if not isinstance(delta, bool):
        raise ConfigError(f"{where}.delta: expected a boolean")
    return PprofProfilingConfig(
        enabled=enabled, path=_string(data.get("path"), f"{where}.path"), delta=delta
    )


def _parse_profiling(value: Any, where: str) -> ProfilingConfig | None:
    if value is None:
        return None
    data = _mapping(value, where, frozenset({"pprof_config", "path_prefix"}))
    raw = data.get("pprof_config")
    pprof = None
    if raw is not None:
        pprof = {
            str(name): _parse_pprof(pc, f"{where}.pprof_config.{name}")
            for name, pc in _mapping(raw, f"{where}.pprof_config").items()
        }
    return ProfilingConfig(
        pprof_config=pprof,
        path_prefix=_string(data.get("path_prefix"), f"{where}.path_prefix"),
    )


def _parse_static(value: Any, where: str) -> list[StaticConfig]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"{where}: expected a list")
    groups = []
    for index, item in enumerate(value):
        data = _mapping(item, f"{where}[{index}]", frozenset({"targets", "labels"}))
        targets = data.get("targets") or []
        if not isinstance(targets, list):
            raise ConfigError(f"{where}[{index}].targets: expected a list")
        labels = _mapping(data.get("labels"), f"{where}[{index}].labels")
        groups.append(
            StaticConfig(
                targets=[str(t) for t in targets],
                labels={str(k): str(v) for k, v in labels.items()},
                source=str(index),
            )
        )
    return groups


def _parse_http_client(data: dict[str, Any]) -> dict[str, Any]:
    http = {k: v for k, v in data.items() if k in _HTTP_CLIENT_KEYS}
    for key in ("basic_auth", "authorization", "oauth2", "tls_config"):
        if key in http:
            http[key] = dict(_mapping(http[key], key))
    if http.get("bearer_token"):
        http["bearer_token"] = Secret(http["bearer_token"])
    for section, key in (
        ("basic_auth", "password"),
        ("authorization", "credentials"),
        ("oauth2", "client_secret"),
    ):
        container = http.get(section)
        if container and container.get(key):
            container[key] = Secret(container[key])
    return http


def _validate_http_client(http: dict[str, Any]) -> None:
    if http.get("bearer_token") and http.get("bearer_token_file"):
        raise ConfigError("at most one of bearer_token & bearer_token_file must be configured")
    auth_methods = [
        name
        for name, present in (
            ("basic_auth", bool(http.get("basic_auth"))),
            ("authorization", bool(http.get("authorization"))),
            ("oauth2", bool(http.get("oauth2"))),
            ("bearer_token", bool(http.get("bearer_token") or http.get("bearer_token_file"))),
        )
        if present
    ]
    if len(auth_methods) > 1:
        raise ConfigError(
            "at most one of basic_auth, oauth2, bearer_token & bearer_token_file "
            "must be configured"
        )
    basic = http.get("basic_auth") or {}
    if basic.get("password") and basic.get("password_file"):
        raise ConfigError("at most one of basic_auth password & password_file must be configured")
    authorization = http.get("authorization") or {}
    if authorization.get("credentials") and authorization.get("credentials_file"):
        raise ConfigError(
            "at most one of authorization credentials & credentials_file must be configured"
        )


def _parse_scrape(value: Any, index: int) -> ScrapeConfig:
    where = f"scrape_configs[{index}]"
    data = _mapping(value, where, _SCRAPE_KEYS | _HTTP_CLIENT_KEYS)
    defaults = default_scrape_config()

    params = {
        str(k): [str(x) for x in (v if isinstance(v, list) else [v])]
        for k, v in _mapping(data.get("params"), f"{where}.params").items()
    }
    relabel = data.get("relabel_configs") or []
    if not isinstance(relabel, list):
        raise ConfigError(f"{where}.relabel_configs: expected a list")

    scrape = ScrapeConfig(
        job_name=_string(data.get("job_name"), f"{where}.job_name"),
        params=params,
        scrape_interval=_duration(data["scrape_interval"], f"{where}.scrape_interval")
        if "scrape_interval" in data
        else defaults.scrape_interval,
        scrape_timeout=_duration(data["scrape_timeout"], f"{where}.scrape_timeout")
        if "scrape_timeout" in data
        else defaults.scrape_timeout,
        scheme=_string(data["scheme"], f"{where}.scheme") if "scheme" in data else defaults.scheme,
        profiling_config=_parse_profiling(data.get("profiling_config"), f"{where}.profiling_config"),
        relabel_configs=list(relabel),
        static_configs=_parse_static(data.get("static_configs"), f"{where}.static_configs"),
        http_client_config=_parse_http_client(data),
    )

    profiling = scrape.profiling_config
    if profiling is None or profiling.pprof_config is None:
        prefix = profiling.path_prefix if profiling is not None else ""
        scrape.profiling_config = defaults.profiling_config
        scrape.profiling_config.path_prefix = prefix
        if not prefix:
            scrape.profiling_config = defaults.profiling_config
    else:
        pprof = profiling.pprof_config
        for name, default in defaults.profiling_config.pprof_config.items():
            current = pprof.get(name)
            if current is None:
                pprof[name] = default
                continue
            if current.enabled is None:
                current.enabled = True
            if not current.path:
                current.path = default.path
    profiling = scrape.profiling_config
    if profiling.path_prefix:
        for pc in profiling.pprof_config.values():
            if pc is not None:
                pc.path = posixpath.normpath(f"{profiling.path_prefix}/{pc.path}")

    if not scrape.job_name:
        raise ConfigError("job_name is empty")

    _validate_http_client(scrape.http_client_config)

    if not scrape.relabel_configs:
        for group in scrape.static_configs:
            for target in group.targets:
                check_target_address(target)

    if any(rule is None for rule in scrape.relabel_configs):
        raise ConfigError("empty or null target relabeling rule in scrape config")

    if scrape.scrape_timeout > scrape.scrape_interval:
        raise ConfigError(
            f"scrape timeout must be smaller or equal to inverval for: {scrape.job_name}"
        )
    if scrape.scrape_timeout == 0:
        scrape.scrape_timeout = scrape.scrape_interval

    cpu = profiling.pprof_config.get(PPROF_PROCESS_CPU)
    if cpu is not None and cpu.enabled and scrape.scrape_timeout < _MIN_CPU_TIMEOUT:
        raise ConfigError(
            f"{PPROF_PROCESS_CPU} scrape_timeout must be at least 2 seconds in {scrape.job_name}"
        )
    return scrape


def _parse_object_storage(value: Any) -> ObjectStorage | None:
    if value is None:
        return None
    data = _mapping(value, "object_storage", frozenset({"bucket"}))
    raw = data.get("bucket")
    if raw is None:
        return ObjectStorage()
    bucket = _mapping(raw, "object_storage.bucket", frozenset({"type", "config", "prefix"}))
    return ObjectStorage(
        bucket=BucketConfig(
            type=_string(bucket.get("type"), "object_storage.bucket.type"),
            config=bucket.get("config"),
            prefix=_string(bucket.get("prefix"), "object_storage.bucket.prefix"),
        )
    )


def load(text: str) -> Config:
    """Parse YAML ``text`` into a :class:`Config`, rejecting unknown fields."""
    try:
        doc = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(str(exc)) from exc
    data = _mapping(doc, "config", frozenset({"object_storage", "scrape_configs"}))
    scrapes = data.get("scrape_configs") or []
    if not isinstance(scrapes, list):
        raise ConfigError("scrape_configs: expected a list")
    return Config(
        object_storage=_parse_object_storage(data.get("object_storage")),
        scrape_configs=[_parse_scrape(item, i) for i, item in enumerate(scrapes)],
    )


def load_file(filename: str | os.PathLike[str]) -> Config:
    """Parse the YAML file ``filename``; relative paths resolve against its directory."""
    with open(filename, encoding="utf-8") as handle:
        content = handle.read()
    try:
        cfg = load(content)
    except ConfigError as exc:
        raise ConfigError(f"parsing YAML file {os.fspath(filename)}: {exc}") from exc
    cfg.set_directory(os.path.dirname(os.fspath(filename)))
    return cfg