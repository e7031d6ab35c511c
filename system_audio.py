"""System audio capture through an ffmpeg sidecar process.

Used when no in-process API can reach the audio of a shared window. ffmpeg
records the OS output into a temporary WAV file that is read back after the
meeting and deleted.
"""

import asyncio
import os
import shutil
import signal
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path

from config import FFMPEG_PATH, SYSTEM_AUDIO_INPUT, SAMPLE_RATE
from errors import AcquisitionError, AcquisitionKind

# Platform capture formats and their default system audio inputs
_PLATFORM_INPUTS = {
    "darwin": ("avfoundation", ":1"),
    "linux": ("pulse", "default"),
    "win32": ("dshow", "audio=virtual-audio-capturer"),
}


@dataclass
class SidecarRecording:
    """A running (or finished) ffmpeg capture and the file it writes to."""
    process: asyncio.subprocess.Process
    path: Path
    running: bool = True

    @property
    def pid(self) -> int:
        return self.process.pid

    async def stop(self, timeout: float = 5.0) -> Path | None:
        """Ask ffmpeg to finish the file, killing it if it doesn't exit in time."""
        if not self.running:
            return self.path if self.path.exists() else None
        self.running = False
        if self.process.returncode is None:
            try:
                if sys.platform == "win32":
                    self.process.terminate()
                else:
                    # SIGINT lets ffmpeg write the WAV header before exiting
                    self.process.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(self.process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                print(f"  [sidecar] ffmpeg (pid {self.pid}) did not exit, killing")
                self.process.kill()
                await self.process.wait()
        print(f"  [sidecar] System audio recording stopped (pid {self.pid})")
        return self.path if self.path.exists() else None


class SystemAudioSidecar:
    """Launches ffmpeg to capture system audio into a temporary file."""

    def __init__(self, ffmpeg: str = FFMPEG_PATH, input_spec: str = SYSTEM_AUDIO_INPUT,
                 sample_rate: int = SAMPLE_RATE, platform: str = sys.platform,
                 startup_grace: float = 0.3):
        self.ffmpeg = ffmpeg
        self.input_spec = input_spec
        self.sample_rate = sample_rate
        self.platform = platform
        self.startup_grace = startup_grace

    def command(self, output_path: Path | str) -> list[str]:
        """Build the ffmpeg command line for this platform."""
        if self.platform not in _PLATFORM_INPUTS:
            raise AcquisitionError(
                AcquisitionKind.UNSUPPORTED, f"System audio capture is not supported on {self.platform}",
            )
        fmt, default_input = _PLATFORM_INPUTS[self.platform]
        return [
            self.ffmpeg,
            "-nostdin",
            "-loglevel", "error",
            "-f", fmt,
            "-i", self.input_spec or default_input,
            "-acodec", "pcm_s16le",
            "-ar", str(self.sample_rate),
            "-ac", "2",
            "-y",
            str(output_path),
        ]

    async def start(self, output_path: Path | str | None = None) -> SidecarRecording:
        """Start recording. Raises AcquisitionError(UNSUPPORTED) if ffmpeg can't run."""
        if shutil.which(self.ffmpeg) is None:
            raise AcquisitionError(
                AcquisitionKind.UNSUPPORTED, f"{self.ffmpeg} not found. Install it (e.g. `brew install ffmpeg`).",
            )
        if output_path is None:
            fd, output_path = tempfile.mkstemp(prefix="system_audio_", suffix=".wav")
            os.close(fd)
        output_path = Path(output_path)
        cmd = self.command(output_path)

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            raise AcquisitionError(AcquisitionKind.UNSUPPORTED, f"Could not start ffmpeg: {e}")

        # ffmpeg exits almost immediately when the capture device is missing
        try:
            await asyncio.wait_for(process.wait(), timeout=self.startup_grace)
        except asyncio.TimeoutError:
            pass
        else:
            output_path.unlink(missing_ok=True)
            raise AcquisitionError(
                AcquisitionKind.UNSUPPORTED, f"ffmpeg exited with code {process.returncode}",
            )

        print(f"  [sidecar] Recording system audio to {output_path} (pid {process.pid})")
        return SidecarRecording(process=process, path=output_path)
