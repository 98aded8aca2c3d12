"""
Configuration settings related to transcoding.

This module defines the codec defaults per output container, the resolution
presets, the keywords used to recognise hardware acceleration support in the
encoder tool, the vendor-specific tuning flags and the progress-estimation
policy used while monitoring an encode.
"""
import platform
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

# --- Codec Defaults ---
# Used when the caller did not ask for a specific codec. Keyed by the output
# container extension (without the dot); anything not listed uses the fallback.
DEFAULT_VIDEO_CODECS = {"webm": "libvpx-vp9"}
DEFAULT_AUDIO_CODECS = {"webm": "libopus"}
FALLBACK_VIDEO_CODEC = "libx264"
FALLBACK_AUDIO_CODEC = "aac"

# Containers for which a software H.264/H.265 codec may be swapped for a
# hardware encoder.
HW_ENCODER_CONTAINERS = ("mp4", "mkv")

# --- Resolution Presets ---
# Named presets map to literal pixel dimensions. "original" (or empty) means no
# scaling; any other value is passed to the encoder as-is.
RESOLUTION_PRESETS = {
    "1080p": "1920x1080",
    "720p": "1280x720",
    "480p": "854x480",
    "360p": "640x360",
    "240p": "426x240",
}
RESOLUTION_ORIGINAL = "original"

# --- Hardware Acceleration Detection ---
# Substrings of `ffmpeg -hwaccels` output that indicate a usable GPU path.
HWACCEL_KEYWORDS = (
    "cuda", "nvenc", "dxva2", "d3d11va", "qsv", "vulkan",
    "amf", "vce", "opencl", "vaapi", "videotoolbox",
)
AMF_ENCODERS = ("h264_amf", "hevc_amf")

# Vendor family names returned by the GPU probe.
GPU_VENDOR_NVIDIA = "nvidia"
GPU_VENDOR_AMD = "amd"
GPU_VENDOR_INTEL = "intel"
GPU_VENDOR_OTHER = "other"

# Acceleration API tried first for each vendor.
VENDOR_HWACCEL = {
    GPU_VENDOR_NVIDIA: "cuda",
    GPU_VENDOR_INTEL: "qsv",
}

# Software codec -> hardware encoder, per acceleration API.
HW_ENCODER_MAP = {
    "cuda": {"libx264": "h264_nvenc", "libx265": "hevc_nvenc"},
    "qsv": {"libx264": "h264_qsv", "libx265": "hevc_qsv"},
}

# Tuning flags appended after `-c:v` for each hardware encoder family.
NVENC_TUNING = ["-preset", "p4", "-tune", "hq"]
AMF_TUNING = ["-quality", "balanced", "-rc", "cbr_hq", "-g", "250"]
QSV_TUNING = ["-preset", "veryfast", "-look_ahead", "1"]

# Label stored on the task when no acceleration is used.
SOFTWARE_ACCELERATION = "software"

# --- Software Encoding Limits ---
SOFTWARE_PRESET_CODECS = ("libx264", "libx265")
SOFTWARE_PRESET = "medium"
SOFTWARE_THREADS = 4
SOFTWARE_FILTER_THREADS = 2

# --- Robustness Flags ---
MAX_MUXING_QUEUE_SIZE = 1024
# `-progress pipe:1` makes the encoder write keyed progress blocks to stdout.
PROGRESS_ARGS = ["-y", "-progress", "pipe:1", "-stats"]


def default_generic_hwaccel() -> str:
    """The platform's vendor-neutral acceleration API, used as the second tier."""
    system = platform.system()
    if system == "Windows":
        return "d3d11va"
    if system == "Darwin":
        return "videotoolbox"
    return "vaapi"


@dataclass
class TranscodePolicy:
    """
    Tunable knobs for encoder selection and progress estimation.

    The frame-count and fixed-increment fallbacks are approximations with no
    ground truth, so their constants are policy rather than behaviour.
    """

    # Frames that map to a fraction of 1.0 when the total duration is unknown.
    frame_progress_scale: float = 100_000
    # Added to the running estimate for every observed line when nothing better is known.
    fallback_increment: float = 0.001
    # Minimum fraction increase before a progress update is written to disk.
    min_commit_delta: float = 0.005
    # Estimated progress never exceeds this until the encoder reports the end.
    max_estimated_progress: float = 0.99
    # Timeout in seconds for each probe and acceleration dry run.
    dry_run_timeout: float = 30
    # Overrides the platform default for the generic acceleration tier.
    generic_hwaccel: Optional[str] = None
    # Skip every GPU probe and always encode in software.
    force_software: bool = False

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "TranscodePolicy":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (values or {}).items() if k in known and v is not None})

    @property
    def effective_generic_hwaccel(self) -> str:
        return self.generic_hwaccel or default_generic_hwaccel()
