"""Serialized spoken announcements with a bounded, drop-on-overflow queue."""

from __future__ import annotations

import logging
import queue
import subprocess
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime

from emrys.errors import AnnouncementError

LOGGER = logging.getLogger(__name__)

QUEUE_CAPACITY = 100
DEFAULT_RATE = 200

Sink = Callable[[str, "SpeakerConfig"], None]
HourSource = Callable[[], int]

_STOP = object()
_STOP_POLL_SECONDS = 0.1


@dataclass(slots=True)
class SpeakerConfig:
    """Voice output settings."""

    enabled: bool = True
    voice: str = "Jamie"
    rate: int = DEFAULT_RATE
    volume: float = 0.7
    quiet_hours: bool = False
    quiet_start: int = 22
    quiet_end: int = 7

    def validate(self) -> None:
        for label, hour in (("quiet_start", self.quiet_start), ("quiet_end", self.quiet_end)):
            if not 0 <= hour <= 23:
                msg = f"{label} must be an hour between 0 and 23, got {hour}"
                raise ValueError(msg)
        if not 0.0 <= self.volume <= 1.0:
            msg = f"volume must be between 0.0 and 1.0, got {self.volume}"
            raise ValueError(msg)
        if self.rate <= 0:
            msg = f"rate must be positive, got {self.rate}"
            raise ValueError(msg)

    def to_mapping(self) -> dict[str, object]:
        return {
            "enabled": self.enabled,
            "voice": self.voice,
            "rate": self.rate,
            "volume": self.volume,
            "quiet_hours": self.quiet_hours,
            "quiet_start": self.quiet_start,
            "quiet_end": self.quiet_end,
        }

    @classmethod
    def from_mapping(cls, values: Mapping[str, str]) -> SpeakerConfig:
        defaults = cls()
        return cls(
            enabled=_parse_bool(values.get("enabled"), defaults.enabled),
            voice=values.get("voice", "").strip() or defaults.voice,
            rate=_parse_int(values.get("rate"), defaults.rate),
            volume=_parse_float(values.get("volume"), defaults.volume),
            quiet_hours=_parse_bool(values.get("quiet_hours"), defaults.quiet_hours),
            quiet_start=_parse_int(values.get("quiet_start"), defaults.quiet_start),
            quiet_end=_parse_int(values.get("quiet_end"), defaults.quiet_end),
        )


@dataclass(slots=True)
class AnnouncementMessage:
    """Queued payload. Every message has the same priority; delivery is FIFO."""

    text: str
    priority: int = 0
    created_at: datetime = field(default_factory=datetime.now)


def is_quiet(start: int, end: int, hour: int) -> bool:
    """Whether ``hour`` falls in the half-open window ``[start, end)``.

    ``start > end`` wraps past midnight; ``start == end`` is an empty window.
    """
    if start == end:
        return False
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


class SayCommandSink:
    """Speaks through the ``say`` command."""

    def __init__(self, executable: str = "say", timeout: float | None = 120.0) -> None:
        self.executable = executable
        self.timeout = timeout

    def __call__(self, text: str, config: SpeakerConfig) -> None:
        args = [self.executable]
        if config.voice:
            args.extend(["-v", config.voice])
        if config.rate and config.rate != DEFAULT_RATE:
            args.extend(["-r", str(config.rate)])
        args.append(text)
        try:
            process = subprocess.run(
                args, capture_output=True, timeout=self.timeout, check=False, text=True
            )
        except (OSError, ValueError, subprocess.TimeoutExpired) as exc:
            raise AnnouncementError(f"speech command failed: {exc}") from exc
        if process.returncode != 0:
            detail = (process.stderr or "").strip() or f"exit code {process.returncode}"
            raise AnnouncementError(f"speech command failed: {detail}")


class Speaker:
    """Single-consumer announcement queue.

    ``enqueue`` never blocks: when the buffer is full the new message is
    dropped. A single worker thread announces messages one at a time in FIFO
    order. ``close`` stops accepting messages, drains what is already buffered
    and joins the worker.
    """

    def __init__(
        self,
        config: SpeakerConfig | None = None,
        *,
        sink: Sink | None = None,
        capacity: int = QUEUE_CAPACITY,
        hour_source: HourSource | None = None,
        autostart: bool = True,
    ) -> None:
        self._config = replace(config) if config is not None else SpeakerConfig()
        self._sink = sink or SayCommandSink()
        self._hour_source = hour_source or (lambda: datetime.now().hour)
        self._queue: queue.Queue[object] = queue.Queue(maxsize=capacity)
        self._lock = threading.Lock()
        self._output_lock = threading.Lock()
        self._closed = False
        self._started = False
        self.dropped = 0
        self._thread = threading.Thread(target=self._run, name="emrys-speaker", daemon=True)
        if autostart:
            self.start()

    def start(self) -> None:
        """Start the consumer worker. Has no effect once started."""
        with self._lock:
            if self._started:
                return
            self._started = True
        self._thread.start()

    @property
    def config(self) -> SpeakerConfig:
        with self._lock:
            return replace(self._config)

    def update_config(self, config: SpeakerConfig) -> None:
        with self._lock:
            self._config = replace(config)

    def enable(self) -> None:
        with self._lock:
            self._config.enabled = True

    def disable(self) -> None:
        with self._lock:
            self._config.enabled = False

    def is_enabled(self) -> bool:
        with self._lock:
            return self._config.enabled

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def enqueue(self, message: str | AnnouncementMessage) -> bool:
        """Queue a message without blocking. Returns False if it was not queued."""
        item = message if isinstance(message, AnnouncementMessage) else AnnouncementMessage(message)
        with self._lock:
            if self._closed or not self._config.enabled:
                return False
            try:
                self._queue.put_nowait(item)
            except queue.Full:
                self.dropped += 1
                LOGGER.warning(
                    "announcement_dropped",
                    extra={"reason": "queue_full", "capacity": self._queue.maxsize},
                )
                return False
        return True

    def speak_blocking(self, message: str) -> None:
        """Announce synchronously, bypassing the queue. Raises AnnouncementError."""
        if not self.is_enabled():
            return
        self._announce(AnnouncementMessage(message))

    def close(self, timeout: float | None = None) -> None:
        """Stop accepting messages, announce what is buffered, then join the worker.

        With ``timeout`` set, returns after roughly that long even if the
        worker is still busy.
        """
        with self._lock:
            if self._closed:
                already_closed = True
            else:
                self._closed = True
                already_closed = False
        self.start()
        deadline = None if timeout is None else time.monotonic() + timeout
        if not already_closed:
            self._send_stop(deadline)
        remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
        self._thread.join(remaining)

    def _send_stop(self, deadline: float | None) -> None:
        # Buffered messages ahead of the sentinel are announced first. A dead
        # worker never frees a slot, so stop waiting once it is gone.
        while self._thread.is_alive():
            wait = _STOP_POLL_SECONDS
            if deadline is not None:
                wait = min(wait, deadline - time.monotonic())
                if wait <= 0:
                    LOGGER.warning(
                        "speaker_close_timeout", extra={"pending": self._queue.qsize()}
                    )
                    return
            try:
                self._queue.put(_STOP, timeout=wait)
            except queue.Full:
                continue
            return
        LOGGER.warning("speaker_worker_dead", extra={"pending": self._queue.qsize()})

    def __enter__(self) -> Speaker:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            assert isinstance(item, AnnouncementMessage)
            try:
                self._announce(item)
            except Exception as exc:  # noqa: BLE001 - one bad message must not stop the worker
                LOGGER.warning(
                    "announcement_failed",
                    extra={"error": str(exc), "error_type": type(exc).__name__},
                )

    def _announce(self, message: AnnouncementMessage) -> None:
        config = self.config
        if config.quiet_hours and is_quiet(
            config.quiet_start, config.quiet_end, self._hour_source()
        ):
            LOGGER.debug("announcement_suppressed", extra={"reason": "quiet_hours"})
            return
        with self._output_lock:
            self._sink(message.text, config)


def list_available_voices(executable: str = "say") -> list[str]:
    try:
        process = subprocess.run(
            [executable, "-v", "?"], capture_output=True, timeout=30, check=False, text=True
        )
    except (OSError, subprocess.TimeoutExpired):
        return []
    if process.returncode != 0:
        return []
    voices = []
    for line in process.stdout.splitlines():
        fields = line.split()
        if fields:
            voices.append(fields[0])
    return voices


def is_voice_available(name: str, executable: str = "say") -> bool:
    return name in list_available_voices(executable)


def _parse_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _parse_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default
