import io, os, json, shlex, subprocess, logging
from typing import List, Optional, Sequence, Tuple

from PIL import Image

from .settings import FPS, INTRO_FADE_SEC, OUTRO_FADE_SEC, VIDEO_HEIGHT, VIDEO_WIDTH

logger = logging.getLogger(__name__)

# Music sits well under the narration in the final mix
MUSIC_VOLUME = 0.15
NARRATION_FADE_IN_SEC = 1


def write_bytes(path: str, data: bytes):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)


def _run(cmd: List[str]) -> str:
    logger.info(f"Running: {' '.join(shlex.quote(c) for c in cmd)}")
    proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    if proc.returncode != 0:
        error_msg = proc.stderr.decode("utf-8", errors="ignore")
        logger.error(f"{cmd[0]} failed with return code {proc.returncode}: {error_msg[-2000:]}")
        raise RuntimeError(f"{cmd[0]} failed: {error_msg[-500:]}")
    return proc.stdout.decode("utf-8", errors="ignore")


def probe_duration(path: str) -> float:
    out = _run([
        "ffprobe", "-v", "error",
        "-show_entries", "format=duration",
        "-of", "json", path,
    ])
    return float(json.loads(out)["format"]["duration"])


def concat_audio(paths: Sequence[str], out_path: str):
    """Join MP3 segments in the given order without re-encoding."""
    if not paths:
        raise ValueError("No audio segments to concatenate")
    list_path = out_path.rsplit(".", 1)[0] + "_concat.txt"
    with open(list_path, "w") as f:
        for p in paths:
            f.write(f"file '{os.path.abspath(p)}'\n")
    _run(["ffmpeg", "-y", "-f", "concat", "-safe", "0", "-i", list_path, "-c", "copy", out_path])


def reencode_jpeg(data: bytes, max_side: int = 1024, quality: int = 85) -> bytes:
    """Normalize a generated image to an RGB JPEG no larger than ``max_side``."""
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGB")
        img.thumbnail((max_side, max_side), Image.LANCZOS)
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=quality, optimize=True)
        return buf.getvalue()


def _music_filter(music_index: int, total: float) -> str:
    fade_out_start = max(0.0, total - OUTRO_FADE_SEC)
    return (
        f"[{music_index}:a]atrim=0:{total:.3f},asetpts=PTS-STARTPTS,volume={MUSIC_VOLUME},"
        f"afade=t=in:st=0:d={INTRO_FADE_SEC},afade=t=out:st={fade_out_start:.3f}:d={OUTRO_FADE_SEC}[music]"
    )


def mix_audio(narration_path: str, music_path: Optional[str], out_path: str, total: float):
    """Audio-only render: narration over a looped, trimmed and faded music bed."""
    if not music_path:
        _run(["ffmpeg", "-y", "-i", narration_path, "-c:a", "libmp3lame", "-b:a", "192k", out_path])
        return
    filters = ";".join([
        f"[0:a]afade=t=in:st=0:d={NARRATION_FADE_IN_SEC}[voice]",
        _music_filter(1, total),
        "[voice][music]amix=inputs=2:duration=first:dropout_transition=0[aout]",
    ])
    _run([
        "ffmpeg", "-y",
        "-i", narration_path,
        "-stream_loop", "-1", "-i", music_path,
        "-filter_complex", filters,
        "-map", "[aout]", "-c:a", "libmp3lame", "-b:a", "192k", "-t", f"{total:.3f}", out_path,
    ])


def render_video(shots: Sequence[Tuple[str, float]], narration_path: str, music_path: Optional[str],
                 out_path: str, total: float, w: int = VIDEO_WIDTH, h: int = VIDEO_HEIGHT, fps: int = FPS):
    """
    Slideshow of ``(image_path, seconds)`` shots under the narration.

    Images are letterboxed to ``w``x``h``. The last image is held so the
    picture never ends before the narration does.
    """
    if not shots:
        raise ValueError("No images to render")
    list_path = out_path.rsplit(".", 1)[0] + "_images.txt"
    with open(list_path, "w") as f:
        for path, seconds in shots:
            f.write(f"file '{os.path.abspath(path)}'\nduration {seconds:.3f}\n")
        # concat demuxer ignores the final duration unless the file repeats
        f.write(f"file '{os.path.abspath(shots[-1][0])}'\n")

    fade_out_start = max(0.0, total - OUTRO_FADE_SEC)
    video_filter = (
        f"[0:v]scale={w}:{h}:force_original_aspect_ratio=decrease,"
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1,fps={fps},format=yuv420p,"
        f"tpad=stop_mode=clone:stop_duration={OUTRO_FADE_SEC},"
        f"trim=0:{total:.3f},fade=t=out:st={fade_out_start:.3f}:d={OUTRO_FADE_SEC}[v]"
    )
    filters = [video_filter, f"[1:a]afade=t=in:st=0:d={NARRATION_FADE_IN_SEC}[voice]"]
    cmd = ["ffmpeg", "-y", "-f", "concat", "-safe", "0", "-i", list_path, "-i", narration_path]
    if music_path:
        cmd += ["-stream_loop", "-1", "-i", music_path]
        filters.append(_music_filter(2, total))
        filters.append("[voice][music]amix=inputs=2:duration=first:dropout_transition=0[aout]")
    else:
        filters.append("[voice]anull[aout]")
    cmd += [
        "-filter_complex", ";".join(filters),
        "-map", "[v]", "-map", "[aout]",
        "-c:v", "libx264", "-pix_fmt", "yuv420p", "-r", str(fps),
        "-c:a", "aac", "-b:a", "192k",
        "-t", f"{total:.3f}", "-movflags", "+faststart",
        out_path,
    ]
    _run(cmd)
