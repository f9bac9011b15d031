"""
FFmpeg-based audio utilities for SmartScribe.

Mobile clients upload whatever their recorder produces (m4a, 3gp, aac, webm...).
Before handing a file to the speech-to-text provider we try to transcode it to
the canonical format the provider decodes most reliably:

- mono
- 16 kHz
- 16-bit PCM WAV

Everything here is best-effort: when FFmpeg is missing or fails, callers fall
back to the original upload.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

import ffmpeg

logger = logging.getLogger(__name__)

CANONICAL_SAMPLE_RATE = 16000
CANONICAL_CHANNELS = 1


def check_ffmpeg_available() -> bool:
    """
    Check if FFmpeg is available on the system.

    Returns:
        True if ffmpeg executable is found in PATH, False otherwise
    """
    return shutil.which("ffmpeg") is not None


def transcode_to_wav(
    file_path: Path,
    target_sample_rate: int = CANONICAL_SAMPLE_RATE,
    target_channels: int = CANONICAL_CHANNELS,
) -> Optional[Path]:
    """
    Transcode an audio file to PCM WAV in a temporary file.

    Blocking; run it in an executor from async code.

    Args:
        file_path: Source audio (any container/codec FFmpeg understands)
        target_sample_rate: Output sample rate in Hz
        target_channels: Output channel count

    Returns:
        Path to the temporary WAV file (the caller deletes it), or None when
        FFmpeg is unavailable or the conversion failed.
    """
    if not check_ffmpeg_available():
        logger.warning("FFmpeg not found in PATH, sending original audio")
        return None

    fd, tmp_name = tempfile.mkstemp(prefix="smartscribe-", suffix=".wav")
    os.close(fd)
    output_path = Path(tmp_name)

    try:
        (
            ffmpeg.input(str(file_path))
            .audio.output(
                str(output_path),
                format="wav",
                acodec="pcm_s16le",
                ac=target_channels,
                ar=target_sample_rate,
            )
            .overwrite_output()
            .run(capture_stdout=True, capture_stderr=True, quiet=True)
        )
    except ffmpeg.Error as e:
        error_msg = e.stderr.decode(errors="replace") if e.stderr else str(e)
        logger.warning(f"FFmpeg transcode failed for {file_path.name}: {error_msg}")
        output_path.unlink(missing_ok=True)
        return None
    except OSError as e:
        logger.warning(f"Could not run FFmpeg for {file_path.name}: {e}")
        output_path.unlink(missing_ok=True)
        return None

    if not output_path.exists() or output_path.stat().st_size == 0:
        logger.warning(f"FFmpeg produced no output for {file_path.name}")
        output_path.unlink(missing_ok=True)
        return None

    logger.debug(
        f"Transcoded {file_path.name} -> {output_path.name} "
        f"({target_sample_rate} Hz, {target_channels} channel(s))"
    )
    return output_path


def probe_duration(file_path: Path) -> Optional[float]:
    """Return the media duration in seconds, or None if it cannot be probed."""
    if shutil.which("ffprobe") is None:
        return None
    try:
        info = ffmpeg.probe(str(file_path))
    except ffmpeg.Error as e:
        error_msg = e.stderr.decode(errors="replace") if e.stderr else str(e)
        logger.debug(f"ffprobe failed for {file_path.name}: {error_msg}")
        return None

    duration = info.get("format", {}).get("duration")
    try:
        return round(float(duration), 2) if duration is not None else None
    except (TypeError, ValueError):
        return None
