"""
Command-line interface for meeting recording and transcription.

Records a microphone and/or system audio with pause/resume, and turns
recordings into timestamped transcripts.
"""

import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .capture import CaptureError
from .config import (
    CAPTURE_MODES, ENGINE_CHOICES, REMOTE_VENDOR, WHISPER_MODELS,
    check_ffmpeg, configure_settings, display_config, find_ffprobe,
    get_api_keys, get_directory, get_effective_device, get_input_format,
    initialize_config, save_config, conf_path,
)
from .events import (
    ChunkCompleted,
    ChunkFailed,
    ChunkStarted,
    EventChannel,
    RecordingError as RecordingErrorEvent,
    RecordingGap,
    RecordingProgress,
    SplitComplete,
)
from .formatter import MarkdownStyle
from .keystore import KeyStore
from .orchestrator import JobInProgressError, TranscriptionJobError, TranscriptionOrchestrator
from .processor import AudioProcessingError, AudioProcessor
from .remote import ApiKeyPool, RemoteTranscriber, RemoteWorkerPool
from .session import RecordingController, RecordingError
from .transcriber import LocalTranscriber
from .transcript import format_timestamp

MARKDOWN_STYLES = [s.value for s in MarkdownStyle]
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def print_banner():
    """Print the application banner."""
    banner = """
╔═══════════════════════════════════════════════════════════════╗
║            MEETING TRANSCRIBER - Record & Transcribe           ║
║     Microphone + system audio, pause/resume, chunked STT       ║
╚═══════════════════════════════════════════════════════════════╝
    """
    click.echo(click.style(banner, fg="cyan"))


def setup_logging(verbose: bool, logs_dir: Optional[str]) -> None:
    """Console handler at WARNING (DEBUG when verbose) plus a DEBUG log file."""
    root = logging.getLogger("meettr")
    root.setLevel(logging.DEBUG)
    root.handlers.clear()
    fmt = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.DEBUG if verbose else logging.WARNING)
    console.setFormatter(fmt)
    root.addHandler(console)

    if logs_dir:
        try:
            os.makedirs(logs_dir, exist_ok=True)
            fh = logging.FileHandler(os.path.join(logs_dir, "meettr.log"), encoding="utf-8")
        except OSError as e:
            click.echo(click.style(f"Cannot write log file in {logs_dir}: {e}", fg="yellow"), err=True)
        else:
            fh.setLevel(logging.DEBUG)
            fh.setFormatter(fmt)
            root.addHandler(fh)


def fail(message: str):
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def build_orchestrator(
    config,
    events: EventChannel,
    engine: Optional[str] = None,
    model: Optional[str] = None,
    language: Optional[str] = None,
    chunk_duration: Optional[float] = None,
    markdown: Optional[bool] = None,
    style: Optional[str] = None,
    ffmpeg: str = "ffmpeg"
) -> TranscriptionOrchestrator:
    """Assemble an orchestrator from config, with CLI flags taking precedence."""
    engine = engine or config.get("Transcription", "engine", fallback="auto")
    keys = ApiKeyPool(get_api_keys(KeyStore()))

    remote = None
    if engine == "remote" and not len(keys):
        fail("No API keys configured. Add one with: meettr keys add, or set GROQ_API_KEYS.")
    if engine in ("auto", "remote") and len(keys):
        remote = RemoteWorkerPool(
            keys,
            transcriber=RemoteTranscriber(
                base_url=config.get("Remote", "base_url"),
                model=config.get("Remote", "model"),
                timeout=config.getfloat("Remote", "timeout", fallback=120),
            ),
            max_concurrent=config.getint("Remote", "max_concurrent", fallback=5),
            max_retries=config.getint("Remote", "max_retries", fallback=3),
            batch_delay=config.getfloat("Remote", "batch_delay", fallback=0.1),
        )

    local = LocalTranscriber(
        model=model or config.get("Transcription", "model", fallback="medium"),
        language=language or config.get("Transcription", "language", fallback="auto"),
        command=config.get("Transcription", "whisper_command", fallback="") or None,
        device=get_effective_device(config),
    )

    temp_dir = get_directory(config, "temp_dir")
    if markdown is None:
        markdown = config.getboolean("Output", "markdown", fallback=False)

    return TranscriptionOrchestrator(
        processor=AudioProcessor(temp_dir=temp_dir, ffmpeg=ffmpeg, ffprobe=find_ffprobe(ffmpeg)),
        local=local,
        remote=remote,
        chunk_duration=chunk_duration or config.getfloat("Transcription", "chunk_duration", fallback=60),
        temp_dir=temp_dir,
        events=events,
        markdown=markdown,
        markdown_style=style or config.get("Output", "markdown_style", fallback="timestamped"),
    )


def print_job_event(event) -> None:
    if isinstance(event, SplitComplete):
        click.echo(f"Split into {event.chunk_count} chunk(s)")
    elif isinstance(event, ChunkStarted):
        click.echo(f"[{event.index + 1}/{event.total}] Transcribing chunk {event.index + 1}...")
    elif isinstance(event, ChunkCompleted):
        click.echo(click.style(f"[{event.index + 1}/{event.total}] Done", fg="green"))
    elif isinstance(event, ChunkFailed):
        click.echo(click.style(f"Chunk {event.index + 1} failed: {event.reason}", fg="yellow"))


def run_transcription(orchestrator: TranscriptionOrchestrator, audio_path: str, output_dir: str):
    """Run one transcription job and print its summary."""
    click.echo(f"Input:    {audio_path}")
    if orchestrator.use_remote:
        click.echo(f"Engine:   remote ({len(orchestrator.remote.keys)} key(s))")
    else:
        click.echo("Engine:   local")
    click.echo(f"Output:   {output_dir}")
    click.echo("")

    try:
        job = orchestrator.process_audio(audio_path, output_dir=output_dir)
    except (JobInProgressError, TranscriptionJobError) as e:
        fail(str(e))

    result = job.result
    click.echo("")
    click.echo(click.style("Transcription complete!", fg="green", bold=True))
    click.echo(f"  Language: {result.language}")
    click.echo(f"  Duration: {format_timestamp(result.duration)}")
    click.echo(f"  Words:    {result.word_count:,}")
    click.echo(f"  Segments: {result.segment_count}")
    click.echo(f"  Chunks:   {result.chunk_count - len(job.failed)}/{result.chunk_count} transcribed")
    if job.fell_back:
        click.echo(click.style("  Remote dispatch failed; finished with the local engine.", fg="yellow"))
    for path in job.paths:
        click.echo(f"  Saved:    {path}")


@click.group()
@click.version_option(version=__version__, prog_name="meettr")
@click.option("-v", "--verbose", is_flag=True, help="Show debug logging on the console.")
@click.pass_context
def main(ctx, verbose: bool):
    """
    Meeting Transcriber - Record meetings and turn them into transcripts.

    At startup, reads or creates meettr.conf in the conf/ directory
    (or the file named by MEETTR_CONF). Command-line flags override
    configuration file defaults.

    \b
    Examples:
        meettr record --mode both --mic "Microphone" --loopback "Stereo Mix"
        meettr record --mode mic --mic default --transcribe
        meettr transcribe meeting.wav --engine local --model small
        meettr keys add gsk_...
    """
    config = initialize_config()
    setup_logging(verbose, get_directory(config, "logs_dir"))
    ctx.obj = config


@main.command()
@click.option("--mode", type=click.Choice(CAPTURE_MODES), default=None,
              help="Capture mode. Overrides meettr.conf setting.")
@click.option("--mic", "mic_device", default=None, help="Microphone device identifier.")
@click.option("--loopback", "loopback_device", default=None, help="System-loopback device identifier.")
@click.option("-o", "--output", "output_path", type=click.Path(dir_okay=False), default=None,
              help="WAV file to record into.")
@click.option("--transcribe", is_flag=True, help="Transcribe the recording after stopping.")
@click.pass_obj
def record(config, mode, mic_device, loopback_device, output_path, transcribe):
    """
    Record a meeting with interactive pause/resume.

    Type p + Enter to pause, r to resume, s to stop.
    """
    print_banner()
    ffmpeg = check_ffmpeg()

    mode = mode or config.get("Capture", "mode", fallback="both")
    mic_device = mic_device or config.get("Capture", "mic_device", fallback="") or None
    loopback_device = loopback_device or config.get("Capture", "loopback_device", fallback="") or None
    if output_path is None:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        output_path = os.path.join(get_directory(config, "output_dir"), f"meeting_{stamp}", "recording.wav")

    events = EventChannel(buffered=False)

    def on_event(event):
        if isinstance(event, RecordingProgress):
            click.echo(f"\r  Recording {format_timestamp(event.seconds)}", nl=False)
        elif isinstance(event, RecordingGap):
            click.echo(click.style(f"\n  Lost audio: {event.gap.duration:.1f}s", fg="yellow"))
        elif isinstance(event, RecordingErrorEvent):
            click.echo(click.style(f"\n  Recording stopped unexpectedly: {event.reason}", fg="red"))
            click.echo("  Type s to save what was recorded.")

    events.subscribe(on_event)
    controller = RecordingController(
        events=events,
        health_interval=config.getfloat("Capture", "health_interval", fallback=10),
        input_format=get_input_format(config),
        ffmpeg=ffmpeg,
        stop_timeout=config.getfloat("Capture", "stop_timeout", fallback=5),
    )

    try:
        controller.start(mode, output_path, mic_device=mic_device, loopback_device=loopback_device)
    except (CaptureError, RecordingError) as e:
        fail(str(e))

    click.echo(click.style(f"Recording ({mode}) -> {output_path}", fg="green", bold=True))
    click.echo("Commands: [p]ause  [r]esume  [s]top")

    while True:
        try:
            raw = input().strip().lower()
        except (EOFError, KeyboardInterrupt):
            break
        try:
            if raw in ("p", "pause"):
                controller.pause()
                click.echo(click.style("\n  Paused", fg="yellow"))
            elif raw in ("r", "resume"):
                controller.resume()
                click.echo(click.style("\n  Resumed", fg="green"))
            elif raw in ("s", "stop", "q"):
                break
            elif raw:
                click.echo("  Unknown command. Use p, r or s.")
        except (CaptureError, RecordingError) as e:
            click.echo(click.style(f"  {e}", fg="red"))

    result = controller.stop()
    click.echo("")
    click.echo(click.style("Recording saved.", fg="green", bold=True))
    click.echo(f"  File:     {result.output_path}")
    click.echo(f"  Duration: {format_timestamp(result.duration)}")
    click.echo(f"  Segments: {len(result.segments)}")
    click.echo(f"  Gaps:     {len(result.gaps)}")
    if result.merge_error:
        click.echo(click.style(f"  Segments could not be joined: {result.merge_error}", fg="yellow"))
        for segment in result.segments:
            click.echo(f"    {segment.path}")
        return

    if transcribe:
        click.echo("")
        job_events = EventChannel(buffered=False)
        job_events.subscribe(print_job_event)
        orchestrator = build_orchestrator(config, job_events, ffmpeg=ffmpeg)
        run_transcription(orchestrator, result.output_path, os.path.dirname(result.output_path))


@main.command()
@click.argument("audio", type=click.Path(exists=True, dir_okay=False))
@click.option("-e", "--engine", type=click.Choice(ENGINE_CHOICES), default=None,
              help="Transcription engine. Overrides meettr.conf setting.")
@click.option("-m", "--model", type=click.Choice(WHISPER_MODELS, case_sensitive=False), default=None,
              help="Local Whisper model. Overrides meettr.conf setting.")
@click.option("-l", "--language", default=None, help="Language code (e.g., 'en'), or 'auto'.")
@click.option("--chunk-duration", type=float, default=None, help="Chunk length in seconds.")
@click.option("-o", "--output-dir", type=click.Path(file_okay=False), default=None,
              help="Directory for transcript files.")
@click.option("--markdown/--no-markdown", default=None, help="Also write transcript.md.")
@click.option("-s", "--style", type=click.Choice(MARKDOWN_STYLES), default=None,
              help="Markdown formatting style.")
@click.pass_obj
def transcribe(config, audio, engine, model, language, chunk_duration, output_dir, markdown, style):
    """
    Transcribe a recording into transcript.json and transcript.txt.

    AUDIO: Path to the recording.
    """
    print_banner()
    ffmpeg = check_ffmpeg()

    audio = str(Path(audio).absolute())
    if output_dir is None:
        output_dir = os.path.join(get_directory(config, "output_dir"), Path(audio).stem)

    events = EventChannel(buffered=False)
    events.subscribe(print_job_event)
    orchestrator = build_orchestrator(
        config, events,
        engine=engine, model=model, language=language,
        chunk_duration=chunk_duration, markdown=markdown, style=style,
        ffmpeg=ffmpeg,
    )
    run_transcription(orchestrator, audio, output_dir)


@main.command()
@click.argument("audio", type=click.Path(exists=True, dir_okay=False))
def info(audio: str):
    """
    Display information about an audio file.

    AUDIO: Path to the audio file.
    """
    print_banner()
    ffmpeg = check_ffmpeg()

    try:
        processor = AudioProcessor(ffmpeg=ffmpeg, ffprobe=find_ffprobe(ffmpeg))
        audio_info = processor.get_audio_info(audio)
    except AudioProcessingError as e:
        fail(str(e))

    click.echo(f"File: {Path(audio).name}")
    click.echo("")
    click.echo("Audio Information:")
    click.echo(f"  Duration: {audio_info.get('duration_formatted', 'Unknown')}")
    click.echo(f"  Format: {audio_info.get('format', 'Unknown')}")
    click.echo(f"  Codec: {audio_info.get('audio_codec', 'Unknown')}")
    click.echo(f"  Sample Rate: {audio_info.get('sample_rate', 'Unknown')} Hz")
    channels = audio_info.get('channels')
    if channels is not None:
        ch_label = "Mono" if channels == 1 else "Stereo" if channels == 2 else str(channels)
        click.echo(f"  Channels: {ch_label}")
    else:
        click.echo("  Channels: Unknown")


@main.command()
def models():
    """List available Whisper models with descriptions."""
    print_banner()

    click.echo("Available Whisper Models (local engine):")
    click.echo("")

    model_info = [
        ("tiny", "~39M params", "Fastest, lowest accuracy", "~1GB VRAM"),
        ("base", "~74M params", "Good balance for quick transcriptions", "~1GB VRAM"),
        ("small", "~244M params", "Better accuracy, reasonable speed", "~2GB VRAM"),
        ("medium", "~769M params", "High accuracy, slower", "~5GB VRAM"),
        ("large", "~1550M params", "Best accuracy, slowest", "~10GB VRAM"),
        ("large-v2", "~1550M params", "Improved large model", "~10GB VRAM"),
        ("large-v3", "~1550M params", "Latest large model", "~10GB VRAM"),
    ]

    for name, params, desc, vram in model_info:
        click.echo(f"  {name:12} {params:15} {desc:40} {vram}")

    click.echo("")
    click.echo("Remote engine: whisper-large-v3 via the Groq API (meettr keys add).")


@main.group()
def keys():
    """Manage remote transcription API keys."""


@keys.command("add")
@click.argument("api_key")
def keys_add(api_key: str):
    """Store an API key (encrypted)."""
    if KeyStore().add_key(REMOTE_VENDOR, api_key):
        click.echo(click.style("Key added.", fg="green"))
    else:
        click.echo("Key already stored.")


@keys.command("list")
def keys_list():
    """List stored API keys (masked)."""
    masked = KeyStore().masked_keys(REMOTE_VENDOR)
    if not masked:
        click.echo("No keys stored.")
        return
    for i, key in enumerate(masked, 1):
        click.echo(f"  {i}. {key}")
    if os.environ.get("GROQ_API_KEYS"):
        click.echo("GROQ_API_KEYS is also set and takes precedence.")


@keys.command("remove")
@click.argument("position", type=int)
def keys_remove(position: int):
    """Remove the key at POSITION (as shown by 'keys list')."""
    try:
        removed = KeyStore().remove_key(REMOTE_VENDOR, position - 1)
    except IndexError as e:
        fail(str(e))
    click.echo(f"Removed {removed}")


@keys.command("clear")
@click.confirmation_option(prompt="Delete every stored key?")
def keys_clear():
    """Delete every stored key and the encryption key."""
    KeyStore().delete_all()
    click.echo("All keys deleted.")


@main.command()
@click.pass_obj
def configure(config):
    """Review and update meettr.conf settings interactively."""
    configure_settings(config)
    save_config(config)
    display_config(config)
    click.echo(f"Configuration updated: {conf_path()}")


if __name__ == "__main__":
    main()
