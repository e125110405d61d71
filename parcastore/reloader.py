"""Watch the configuration file and push reloaded configuration into components."""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from parcastore.config import Config, ConfigError, load_file

_log = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


@dataclass
class Gauge:
    """A metric holding a single value that can go up and down."""

    name: str
    help: str = ""
    value: float = 0.0

    def set(self, value: float) -> None:
        """Set the gauge to ``value``."""
        self.value = float(value)

    def set_to_current_time(self) -> None:
        """Set the gauge to the current Unix time in seconds."""
        self.value = time.time()


@dataclass
class ComponentReloader:
    """A named callback that applies a new configuration to one component."""

    name: str
    reloader: Callable[[Config], None]


class _FileWriteHandler(FileSystemEventHandler):
    def __init__(self, path: str, on_write: Callable[[], None]) -> None:
        super().__init__()
        self._path = os.path.realpath(path)
        self._on_write = on_write

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        if os.path.realpath(os.fsdecode(event.src_path)) == self._path:
            self._on_write()


class ConfigReloader:
    """Reloads the configuration file into running components whenever it is written."""

    def __init__(
        self,
        filename: str | os.PathLike[str],
        reloaders: Sequence[ComponentReloader],
        logger: logging.Logger | None = None,
        registry: dict[str, Gauge] | None = None,
    ) -> None:
        self.filename = os.fspath(filename)
        self._logger = logger or _log
        self._reloaders = list(reloaders)
        self._triggers: queue.Queue[None] = queue.Queue(maxsize=1)
        self._started = False
        self._closed = False

        try:
            os.stat(self.filename)
        except OSError:
            self._logger.error("failed to start watching config file path=%s", self.filename)
            raise

        self.config_success = Gauge(
            "parca_config_last_reload_successful",
            "Whether the last configuration reload attempt was successful.",
        )
        self.config_success_time = Gauge(
            "parca_config_last_reload_success_timestamp_seconds",
            "Timestamp of the last successful configuration reload.",
        )
        if registry is not None:
            for gauge, what in (
                (self.config_success, "success"),
                (self.config_success_time, "success time"),
            ):
                if gauge.name in registry:
                    raise ValueError(
                        f"unable to register config reloader {what} metrics: "
                        f"duplicate metric {gauge.name}"
                    )
                registry[gauge.name] = gauge

        self._observer = Observer()
        directory = os.path.dirname(os.path.abspath(self.filename))
        self._observer.schedule(
            _FileWriteHandler(self.filename, self._trigger), directory, recursive=False
        )

    def _trigger(self) -> None:
        self._logger.debug("config file has been modified")
        try:
            self._triggers.put_nowait(None)
        except queue.Full:
            pass

    def reload(self) -> None:
        """Load, validate and apply the configuration file.

        Raises :class:`ConfigError` if loading, validation or any component fails.
        """
        try:
            self._apply()
        except Exception:
            self.config_success.set(0)
            raise
        self.config_success.set(1)
        self.config_success_time.set_to_current_time()

    def _apply(self) -> None:
        start = time.monotonic()
        self._logger.info("loading configuration file filename=%s", self.filename)

        try:
            cfg = load_file(self.filename)
        except (ConfigError, OSError, UnicodeDecodeError) as exc:
            raise ConfigError(f"failed to load configuration: {exc}") from exc

        try:
            cfg.validate()
        except ConfigError as exc:
            raise ConfigError(
                f'parsed configuration invalid (--config-path="{self.filename}"): {exc}'
            ) from exc

        failed = False
        timings: list[str] = []
        for component in self._reloaders:
            component_start = time.monotonic()
            try:
                component.reloader(cfg)
            except Exception as exc:  # noqa: BLE001 - every component gets its turn
                self._logger.error("failed to apply configuration err=%s", exc)
                failed = True
            timings.append(f"{component.name}={time.monotonic() - component_start:.6f}s")
        if failed:
            raise ConfigError(
                "one or more errors occurred while applying the new configuration "
                f'(--config-path="{self.filename}")'
            )

        self._logger.info(
            "completed loading of configuration file filename=%s totalDuration=%.6fs %s",
            self.filename,
            time.monotonic() - start,
            " ".join(timings),
        )

    def run(self, stop_event: threading.Event) -> None:
        """Watch the file and reload on every write until ``stop_event`` is set."""
        if not self._started:
            self._observer.start()
            self._started = True
        try:
            while not stop_event.is_set():
                try:
                    self._triggers.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                try:
                    self.reload()
                except ConfigError as exc:
                    self._logger.error("failed to reload configuration file err=%s", exc)
        finally:
            self.close()

    def close(self) -> None:
        """Stop watching the configuration file."""
        if self._closed:
            return
        self._closed = True
        if self._started:
            self._observer.stop()
            self._observer.join()

    def __enter__(self) -> ConfigReloader:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()