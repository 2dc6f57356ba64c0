"""Command line interface for segscribe."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, NoReturn, Optional

import typer

from . import config as config_mod
from .config import LEDGER_PATH, ConfigError
from .connectivity import ConnectivityMonitor, ReachabilityWatcher
from .coordinator import TranscriptionCoordinator
from .errors import InsufficientStorage, PermissionDenied, RecorderStateError, SegmentWriteFailure
from .ledger import RetryLedger
from .models import AudioQuality, Config, RecorderState, RecordingSession, SegmentStatus
from .recorder import SegmentRecorder, SoundDevicePermission, SoundDeviceSource
from .scheduler import ThreadScheduler
from .segment_store import SegmentStore
from .storage import Storage, StorageError
from .transcriber import build_backends

app = typer.Typer(add_completion=False, help="Segmented recording and transcription tool.")

STATUS_COLORS = {
    SegmentStatus.PENDING: typer.colors.YELLOW,
    SegmentStatus.SUCCESS: typer.colors.GREEN,
    SegmentStatus.FALLBACK: typer.colors.CYAN,
    SegmentStatus.FAILED: typer.colors.RED,
}


@dataclass
class _Pipeline:
    store: SegmentStore
    storage: Storage
    connectivity: ConnectivityMonitor
    scheduler: ThreadScheduler
    coordinator: TranscriptionCoordinator
    watcher: Optional[ReachabilityWatcher] = None

    def close(self) -> None:
        if self.watcher is not None:
            self.watcher.stop()


def _fail(message: str) -> NoReturn:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _load_config() -> Config:
    try:
        return config_mod.load_config()
    except ConfigError as exc:
        _fail(str(exc))


def _build_pipeline(cfg: Config, online: bool = True) -> _Pipeline:
    try:
        remote, local = build_backends(cfg)
    except RuntimeError as exc:
        _fail(str(exc))
    store = SegmentStore(cfg.segment_dir)
    storage = Storage()
    connectivity = ConnectivityMonitor(online=online)
    scheduler = ThreadScheduler()
    coordinator = TranscriptionCoordinator(
        remote=remote,
        local=local,
        storage=storage,
        ledger=RetryLedger(LEDGER_PATH),
        connectivity=connectivity,
        scheduler=scheduler,
        store=store,
        max_attempts=cfg.max_remote_attempts,
        backoff_unit=cfg.backoff_unit,
    )
    watcher = None
    if online:
        watcher = ReachabilityWatcher(
            connectivity, cfg.remote_url, interval=cfg.reachability_interval, timeout=cfg.api_timeout
        )
        watcher.start()
    return _Pipeline(store, storage, connectivity, scheduler, coordinator, watcher)


def _wait_for_transcriptions(pipeline: _Pipeline) -> None:
    typer.echo("Waiting for pending transcriptions (Ctrl-C to leave them queued)…")
    try:
        pipeline.scheduler.join()
    except KeyboardInterrupt:
        pipeline.scheduler.shutdown(wait=False, cancel_timers=True)
        queued = len(pipeline.coordinator.pending())
        typer.secho(f"Interrupted; {queued} segment(s) remain queued for retry.", fg=typer.colors.YELLOW)
        pipeline.close()
        return
    pipeline.coordinator.close()
    pipeline.scheduler.shutdown()
    pipeline.close()


def _level_bar(level: float, width: int = 30) -> str:
    filled = int(round(level * width))
    return "[" + "#" * filled + " " * (width - filled) + "]"


def _print_session(session: RecordingSession) -> None:
    typer.secho(f"Session {session.id}", fg=typer.colors.BLUE)
    typer.echo(f"Started: {session.started_at:%Y-%m-%d %H:%M:%S}")
    if not session.segments:
        typer.echo("\nNo segments recorded.")
        return
    for index, segment in enumerate(session.segments, start=1):
        typer.echo("")
        typer.secho(
            f"#{index} {segment.captured_at:%H:%M:%S} [{segment.status.value}] {Path(segment.file_path).name}",
            fg=STATUS_COLORS[segment.status],
        )
        if segment.transcript is not None:
            typer.echo(segment.transcript.text)


def _announce_connectivity(online: bool) -> None:
    if online:
        typer.secho("\nBack online; sending queued segments.", fg=typer.colors.GREEN)
    else:
        typer.secho("\nYou are offline; segments will be queued until the network returns.", fg=typer.colors.RED)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Log pipeline activity to stderr."),
    version: bool = typer.Option(False, "--version", "-v", help="Show version and exit"),
) -> None:
    if version:
        typer.echo("segscribe v0.1.0")
        raise typer.Exit()

    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(threadName)s: %(message)s",
    )

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


@app.command()
def record(
    quality: Optional[AudioQuality] = typer.Option(None, "--quality", help="Capture preset (low, medium, high)."),
    duration: Optional[float] = typer.Option(None, "--duration", min=0.1, help="Stop after this many seconds."),
    offline: bool = typer.Option(False, "--offline", help="Queue every segment instead of uploading it."),
) -> None:
    """Record in fixed-length segments until Ctrl-C, transcribing as you go."""

    cfg = _load_config()
    preset = quality or cfg.audio_quality
    pipeline = _build_pipeline(cfg, online=not offline)

    try:
        source = SoundDeviceSource(preset)
    except RuntimeError as exc:
        _fail(str(exc))
    recorder = SegmentRecorder(
        source=source,
        sink=pipeline.coordinator,
        store=pipeline.store,
        scheduler=pipeline.scheduler,
        permission=SoundDevicePermission(),
        storage=pipeline.storage,
        quality=preset,
        segment_seconds=cfg.segment_seconds,
        min_free_mb=cfg.min_free_mb,
    )

    if not offline and pipeline.coordinator.drain():
        typer.echo("Retrying segments queued by an earlier run.")

    try:
        session = recorder.start()
    except (PermissionDenied, InsufficientStorage, SegmentWriteFailure) as exc:
        pipeline.scheduler.shutdown(wait=False, cancel_timers=True)
        pipeline.close()
        _fail(str(exc))
    except Exception as exc:
        pipeline.scheduler.shutdown(wait=False, cancel_timers=True)
        pipeline.close()
        _fail(f"Recording error: {exc}")

    typer.secho(
        f"Recording session {session.id} at {preset.value} quality. Press Ctrl-C to stop.",
        fg=typer.colors.BLUE,
    )
    pipeline.connectivity.subscribe(_announce_connectivity)
    deadline = time.monotonic() + duration if duration else None
    idle = threading.Event()
    recorder.add_listener(lambda state: idle.set() if state is RecorderState.IDLE else None)
    try:
        while not idle.wait(0.2):
            typer.echo(f"\r{_level_bar(recorder.volume_level)}", nl=False)
            if deadline is not None and time.monotonic() >= deadline:
                break
    except KeyboardInterrupt:
        pass
    typer.echo("")

    try:
        segments = recorder.stop()
    except RecorderStateError:
        # Already stopped by an interruption.
        segments = session.segments
    typer.secho(f"Recorded {len(segments)} segment(s).", fg=typer.colors.BLUE)
    _wait_for_transcriptions(pipeline)


@app.command()
def sessions(
    offset: int = typer.Option(0, "--offset", min=0, help="Number of sessions to skip."),
    limit: int = typer.Option(20, "--limit", min=1, help="Maximum number of sessions to list."),
    oldest_first: bool = typer.Option(False, "--oldest-first", help="Sort by start time ascending."),
    search: Optional[str] = typer.Option(None, "--search", "-s", help="Only sessions whose transcripts or date contain this text."),
) -> None:
    """List recording sessions, newest first."""

    storage = Storage()
    if search:
        rows = storage.search_sessions(search, offset=offset, limit=limit, descending=not oldest_first)
    else:
        rows = storage.query_sessions(offset=offset, limit=limit, descending=not oldest_first)
    if not rows:
        if search:
            typer.echo(f"No sessions match '{search}'.")
        else:
            typer.echo("No sessions found. Use `segscribe record` to create one.")
        return
    header = f"{'ID':<32}  {'Started':<19}  {'Segments':>8}  {'Done':>4}"
    typer.echo(header)
    typer.echo("-" * len(header))
    for session in rows:
        done = sum(1 for segment in session.segments if segment.status.is_final)
        started = session.started_at.strftime("%Y-%m-%d %H:%M:%S")
        typer.echo(f"{session.id:<32}  {started:<19}  {len(session.segments):>8}  {done:>4}")


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Identifier of the session to display."),
) -> None:
    """Show a session's segments and transcripts."""

    storage = Storage()
    try:
        session = storage.get_session(session_id)
    except StorageError as exc:
        _fail(str(exc))
    _print_session(session)


@app.command()
def ledger() -> None:
    """List segments waiting for another transcription attempt."""

    entries = RetryLedger(LEDGER_PATH).entries()
    if not entries:
        typer.echo("No segments are queued for retry.")
        return
    for path, attempts in sorted(entries.items()):
        typer.echo(f"{attempts:>2} attempt(s)  {path}")


@app.command()
def retry() -> None:
    """Retry every queued segment now and wait for the outcome."""

    cfg = _load_config()
    pipeline = _build_pipeline(cfg)
    started = pipeline.coordinator.drain()
    if not started:
        typer.echo("No segments are queued for retry.")
        pipeline.scheduler.shutdown()
        pipeline.close()
        return
    typer.echo(f"Retrying {started} segment(s).")
    _wait_for_transcriptions(pipeline)
    remaining = len(pipeline.coordinator.pending())
    if remaining:
        typer.secho(f"{remaining} segment(s) still queued.", fg=typer.colors.YELLOW)


@app.command()
def config(
    remote_url: Optional[str] = typer.Option(None, help="Transcription endpoint URL."),
    remote_model: Optional[str] = typer.Option(None, help="Model identifier sent to the endpoint."),
    openai_api_key: Optional[str] = typer.Option(None, help="Bearer token for the endpoint."),
    whisper_model: Optional[str] = typer.Option(None, help="Whisper model used for local fallback."),
    quality: Optional[AudioQuality] = typer.Option(None, help="Default capture preset."),
    segment_seconds: Optional[float] = typer.Option(None, help="Segment length in seconds."),
    min_free_mb: Optional[float] = typer.Option(None, help="Free space required to start recording."),
    max_remote_attempts: Optional[int] = typer.Option(None, help="Remote failures before local fallback."),
    backoff_unit: Optional[float] = typer.Option(None, help="Base retry delay in seconds."),
    api_timeout: Optional[float] = typer.Option(None, help="HTTP timeout (seconds) for the endpoint."),
    reachability_interval: Optional[float] = typer.Option(None, help="Seconds between network reachability checks."),
    segment_dir: Optional[str] = typer.Option(None, help="Directory for segment files."),
    show: bool = typer.Option(False, "--show", help="Display the active configuration."),
) -> None:
    """Update or inspect configuration settings."""

    updates: Dict[str, object] = {
        key: value
        for key, value in {
            "remote_url": remote_url,
            "remote_model": remote_model,
            "openai_api_key": openai_api_key,
            "whisper_model": whisper_model,
            "quality": quality.value if quality is not None else None,
            "segment_seconds": segment_seconds,
            "min_free_mb": min_free_mb,
            "max_remote_attempts": max_remote_attempts,
            "backoff_unit": backoff_unit,
            "api_timeout": api_timeout,
            "reachability_interval": reachability_interval,
            "segment_dir": segment_dir,
        }.items()
        if value is not None
    }

    if show or not updates:
        cfg = _load_config()
        data = asdict(cfg)
        if data.get("openai_api_key"):
            data["openai_api_key"] = "********"
        typer.echo(json.dumps(data, indent=2, default=str))
        return

    try:
        config_mod.update_config(**updates)
    except ConfigError as exc:
        _fail(str(exc))
    typer.secho("Configuration updated.", fg=typer.colors.BLUE)


if __name__ == "__main__":  # pragma: no cover
    app()
