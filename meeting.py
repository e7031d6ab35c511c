"""CLI entry point for meeting recording.

Records the microphone and/or a shared screen/window (plus system audio via
ffmpeg when the share carries no audio), then transcribes and summarizes the
recording once it stops.

Usage:
    python meeting.py [--source both|microphone|screen] [--separate]
                      [--no-transcribe] [--no-summary]

Ctrl+C stops the recording and runs transcription.
"""

import argparse
import asyncio
import signal

from api_client import ResilientClient
from audio_capture import CaptureAdapter, CaptureSource
from config import HISTORY_PATH, EXPORT_DIR
from errors import AcquisitionError, ArtifactTooSmallError
from file_writer import MarkdownExporter
from history import HistoryStore
from pipeline import TranscriptionPipeline
from recorder import AudioSource, Recorder, RecordingMode
from recorder_config import RecorderConfig
from transcriber import TranscriptionService


async def _ask(prompt: str) -> str:
    return (await asyncio.to_thread(input, prompt)).strip()


async def choose_source(sources: list[CaptureSource]) -> CaptureSource | None:
    """Console replacement for the screen/window picker."""
    print("\nShareable sources:")
    for i, s in enumerate(sources, 1):
        print(f"  {i}. {s.name} ({s.kind})")
    answer = await _ask("Select a source (Enter to cancel): ")
    if not answer:
        return None
    try:
        return sources[int(answer) - 1]
    except (ValueError, IndexError):
        print("Invalid selection.")
        return None


async def confirm(message: str) -> bool:
    answer = await _ask(f"{message} [y/N] ")
    return answer.lower() in ("y", "yes")


def print_entry(entry):
    print(f"\nRecording {entry.id} ({entry.duration_ms / 1000:.1f}s)")
    if entry.transcription:
        print("\n--- Transcription ---")
        print(entry.transcription)
    if entry.summary:
        print("\n--- Summary ---")
        print(entry.summary)


async def run_meeting(config: RecorderConfig, mode: RecordingMode, source: AudioSource):
    """Record until Ctrl+C (or the shared window closes), then process."""
    history = HistoryStore(HISTORY_PATH)
    pipeline = TranscriptionPipeline(
        TranscriptionService(config, ResilientClient()),
        history,
        exporter=MarkdownExporter(EXPORT_DIR),
        config=config,
    )
    try:
        await _record_and_process(config, mode, source, pipeline)
    finally:
        await pipeline.aclose()


async def _record_and_process(config: RecorderConfig, mode: RecordingMode, source: AudioSource,
                              pipeline: TranscriptionPipeline):
    stop_event = asyncio.Event()
    outcome: dict = {}

    async def on_finished(result, error):
        outcome["result"], outcome["error"] = result, error
        stop_event.set()

    recorder = Recorder(config, CaptureAdapter(config), on_finished=on_finished)

    try:
        await recorder.start(mode=mode, source=source, select_source=choose_source,
                             confirm_without_audio=confirm)
    except AcquisitionError as e:
        print(f"Could not start recording: {e}")
        print(e.remediation)
        return

    # Graceful shutdown via Ctrl+C
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    print("Recording. Press Ctrl+C to stop.\n")
    await stop_event.wait()

    print("\nStopping recording...")
    if "result" in outcome:
        result, error = outcome["result"], outcome["error"]
    else:
        try:
            result, error = await recorder.stop(), None
        except ArtifactTooSmallError as e:
            result, error = None, e

    if result is None:
        print(f"Nothing to transcribe: {error}" if error else "Nothing recorded.")
        return

    if config.auto_transcribe:
        print("Transcribing...")
    entry = await pipeline.process(result)
    print_entry(entry)
    print("Done.")


def main():
    parser = argparse.ArgumentParser(description="Meeting recorder with transcription and summary")
    parser.add_argument("--source", choices=[s.value for s in AudioSource], default=AudioSource.BOTH.value,
                        help="What to record")
    parser.add_argument("--separate", action="store_true",
                        help="Record microphone and counterpart separately (needs --source both)")
    parser.add_argument("--no-transcribe", action="store_true", help="Skip transcription")
    parser.add_argument("--no-summary", action="store_true", help="Skip the summary")
    args = parser.parse_args()

    config = RecorderConfig()
    if args.no_transcribe:
        config.auto_transcribe = False
    if args.no_summary:
        config.auto_summarize = False
    mode = RecordingMode.SEPARATE if args.separate else RecordingMode.SINGLE
    source = AudioSource(args.source)
    if mode == RecordingMode.SEPARATE and source != AudioSource.BOTH:
        parser.error("--separate needs --source both")

    try:
        asyncio.run(run_meeting(config, mode, source))
    except KeyboardInterrupt:
        pass  # Shutdown already handled by signal handler


if __name__ == "__main__":
    main()
