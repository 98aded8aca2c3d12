"""
This module chooses the encoder argument vector for a transcode task.

Selection walks a decision tree once per task start:

1. Fill in default codecs from the output container.
2. Probe the host GPU (name and vendor family) and the encoder's hardware
   acceleration support.
3. When both probes are positive, try the vendor's preferred acceleration API,
   then the platform's generic API, each verified by a one-second dry run of the
   encoder against the real input. Anything that fails drops to the next tier,
   and the last tier is software encoding.
4. Assemble the final arguments: acceleration flag (before `-i`), input, video
   codec with its tuning flags, optional size and bitrate, audio codec and the
   fixed robustness and progress flags.

No probe failure ever aborts a task; it only makes the selection more
conservative.
"""

import platform
import re
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from loguru import logger

from ..config.common import AppConfig
from ..config.transcode import (
    AMF_ENCODERS,
    AMF_TUNING,
    DEFAULT_AUDIO_CODECS,
    DEFAULT_VIDEO_CODECS,
    FALLBACK_AUDIO_CODEC,
    FALLBACK_VIDEO_CODEC,
    GPU_VENDOR_AMD,
    GPU_VENDOR_INTEL,
    GPU_VENDOR_NVIDIA,
    GPU_VENDOR_OTHER,
    HW_ENCODER_CONTAINERS,
    HW_ENCODER_MAP,
    HWACCEL_KEYWORDS,
    MAX_MUXING_QUEUE_SIZE,
    NVENC_TUNING,
    PROGRESS_ARGS,
    QSV_TUNING,
    RESOLUTION_ORIGINAL,
    RESOLUTION_PRESETS,
    SOFTWARE_ACCELERATION,
    SOFTWARE_FILTER_THREADS,
    SOFTWARE_PRESET,
    SOFTWARE_PRESET_CODECS,
    SOFTWARE_THREADS,
    VENDOR_HWACCEL,
)
from ..domain.task import TranscodeTask
from ..utils.process_utils import run_cmd

CUSTOM_ACCELERATION = "custom"

# Probe commands are short; the dry runs use the policy timeout instead.
PROBE_TIMEOUT = 10

_VENDOR_PATTERNS = (
    (GPU_VENDOR_NVIDIA, re.compile(r"\b(nvidia|geforce|quadro)\b", re.IGNORECASE)),
    (GPU_VENDOR_AMD, re.compile(r"\b(amd|radeon|ati)\b", re.IGNORECASE)),
    (GPU_VENDOR_INTEL, re.compile(r"\b(intel|hd graphics|uhd graphics|iris)\b", re.IGNORECASE)),
)
_VENDOR_PRIORITY = (GPU_VENDOR_NVIDIA, GPU_VENDOR_AMD, GPU_VENDOR_INTEL, GPU_VENDOR_OTHER)
_LSPCI_DISPLAY_CLASSES = ("vga compatible controller", "3d controller", "display controller")

Runner = Callable[..., object]


@dataclass
class GpuInfo:
    name: str
    vendor: str


@dataclass
class EncoderSelection:
    """The outcome of a selection: the encoder arguments (without the executable) and what was chosen."""

    args: List[str]
    acceleration: str
    video_codec: str
    audio_codec: str


def classify_vendor(gpu_name: str) -> str:
    for vendor, pattern in _VENDOR_PATTERNS:
        if pattern.search(gpu_name):
            return vendor
    return GPU_VENDOR_OTHER


def resolve_resolution(resolution: Optional[str]) -> Optional[str]:
    """Maps a named preset to pixel dimensions. Empty or 'original' means no scaling."""
    if not resolution or resolution.strip().lower() == RESOLUTION_ORIGINAL:
        return None
    resolution = resolution.strip()
    return RESOLUTION_PRESETS.get(resolution.lower(), resolution)


def default_codecs(output_file: str, video_codec: str = "", audio_codec: str = "") -> Tuple[str, str]:
    container = Path(output_file).suffix.lstrip(".").lower()
    return (
        video_codec or DEFAULT_VIDEO_CODECS.get(container, FALLBACK_VIDEO_CODEC),
        audio_codec or DEFAULT_AUDIO_CODECS.get(container, FALLBACK_AUDIO_CODEC),
    )


def _is_hardware_encoder(codec: str) -> bool:
    return any(family in codec for family in ("nvenc", "amf", "qsv"))


class EncoderSelector:
    """
    Probes the host and builds encoder arguments.

    Probe results are cached on the instance, so one selector shared by the
    transcode queue only runs `nvidia-smi`, `lspci` or `-encoders` once. Dry
    runs are not cached because they depend on the input file.

    Args:
        config: The application config (encoder path and transcode policy).
        runner: Callable with the signature of `run_cmd`. Tests substitute a fake.
        system: `platform.system()` value, overridable for tests.
    """

    def __init__(self, config: AppConfig, runner: Runner = run_cmd, system: Optional[str] = None):
        self.ffmpeg_path = config.ffmpeg_path
        self.policy = config.transcode
        self._runner = runner
        self._system = system or platform.system()
        self._gpu: Optional[GpuInfo] = None
        self._gpu_probed = False
        self._encoders: Optional[str] = None
        self._hwaccel_supported: Optional[bool] = None

    # --- Probes ---

    def _run(self, cmd: List[str], timeout: float = PROBE_TIMEOUT):
        return self._runner(cmd, timeout=timeout)

    def _stdout_lines(self, cmd: List[str]) -> List[str]:
        result = self._run(cmd)
        if result is None or result.returncode != 0:
            return []
        return [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]

    def _gpu_names(self) -> List[str]:
        if self._system == "Windows":
            lines = self._stdout_lines(["wmic", "path", "win32_VideoController", "get", "Name"])
            return [line for line in lines if line.lower() != "name"]

        names = self._stdout_lines(["nvidia-smi", "--query-gpu=gpu_name", "--format=csv,noheader"])
        if names:
            return names

        display_lines = []
        for line in self._stdout_lines(["lspci"]):
            lowered = line.lower()
            if any(device_class in lowered for device_class in _LSPCI_DISPLAY_CLASSES):
                # "00:02.0 VGA compatible controller: Intel Corporation UHD Graphics 630"
                display_lines.append(line.split(": ", 1)[-1])
        return display_lines

    def probe_gpu(self) -> Optional[GpuInfo]:
        """
        Detects the most capable GPU of the host.

        When several adapters are present (an iGPU next to a discrete card), the
        vendor with the better encoder support wins: NVIDIA, AMD, Intel, other.

        Returns:
            The GPU, or None if no probe found one.
        """
        if self._gpu_probed:
            return self._gpu
        self._gpu_probed = True

        candidates = [GpuInfo(name=name, vendor=classify_vendor(name)) for name in self._gpu_names()]
        if not candidates:
            logger.info("No GPU detected. Transcodes will use software encoding.")
            return None

        candidates.sort(key=lambda gpu: _VENDOR_PRIORITY.index(gpu.vendor))
        self._gpu = candidates[0]
        logger.info(f"Detected GPU: {self._gpu.name} (vendor: {self._gpu.vendor})")
        return self._gpu

    def encoders(self) -> str:
        if self._encoders is None:
            result = self._run([self.ffmpeg_path, "-hide_banner", "-encoders"])
            self._encoders = (result.stdout or "").lower() if result is not None and result.returncode == 0 else ""
        return self._encoders

    def has_encoder(self, name: str) -> bool:
        return re.search(rf"\b{re.escape(name)}\b", self.encoders()) is not None

    def probe_hwaccel_support(self) -> bool:
        """True if the encoder lists a known acceleration method or a vendor encoder plugin."""
        if self._hwaccel_supported is not None:
            return self._hwaccel_supported

        methods = [
            line.lower()
            for line in self._stdout_lines([self.ffmpeg_path, "-hide_banner", "-hwaccels"])
            if not line.endswith(":")
        ]
        supported = any(keyword in method for method in methods for keyword in HWACCEL_KEYWORDS)
        if not supported:
            supported = any(self.has_encoder(encoder) for encoder in AMF_ENCODERS)

        logger.debug(f"Encoder hardware acceleration support: {supported} (methods: {methods})")
        self._hwaccel_supported = supported
        return supported

    def dry_run(self, hwaccel: str, input_file: str) -> bool:
        """Decodes one second of the input with `hwaccel` to prove the path works on this host."""
        cmd = [
            self.ffmpeg_path, "-hide_banner", "-loglevel", "error",
            "-hwaccel", hwaccel, "-i", input_file,
            "-t", "1", "-f", "null", "-",
        ]
        result = self._run(cmd, timeout=self.policy.dry_run_timeout)
        ok = result is not None and result.returncode == 0
        if ok:
            logger.debug(f"Dry run with -hwaccel {hwaccel} succeeded.")
        else:
            logger.info(f"Dry run with -hwaccel {hwaccel} failed. Trying the next acceleration tier.")
        return ok

    # --- Selection ---

    def _pick_hardware_path(self, gpu: GpuInfo, input_file: str, video_codec: str, container: str) -> Tuple[Optional[str], str]:
        """Returns (hwaccel, video codec) for the first tier that passes its dry run, or (None, codec)."""
        swap_allowed = container in HW_ENCODER_CONTAINERS
        generic = self.policy.effective_generic_hwaccel

        if gpu.vendor == GPU_VENDOR_AMD:
            amf_encoders = [encoder for encoder in AMF_ENCODERS if self.has_encoder(encoder)]
            if amf_encoders and self.dry_run(generic, input_file):
                if swap_allowed:
                    if video_codec == "libx265" and "hevc_amf" in amf_encoders:
                        video_codec = "hevc_amf"
                    else:
                        video_codec = amf_encoders[0]
                return generic, video_codec
        elif gpu.vendor in VENDOR_HWACCEL:
            preferred = VENDOR_HWACCEL[gpu.vendor]
            if self.dry_run(preferred, input_file):
                if swap_allowed:
                    video_codec = HW_ENCODER_MAP[preferred].get(video_codec, video_codec)
                return preferred, video_codec

        if self.dry_run(generic, input_file):
            return generic, video_codec
        return None, video_codec

    def select(self, task: TranscodeTask) -> EncoderSelection:
        """
        Chooses the encoder arguments for `task`.

        A non-empty `custom_args` replaces everything derived from codec,
        resolution and bitrate, and no probe is run.
        """
        if task.custom_args:
            return self.build_custom_args(task)

        video_codec, audio_codec = default_codecs(task.output_file, task.video_codec, task.audio_codec)
        container = Path(task.output_file).suffix.lstrip(".").lower()
        hwaccel: Optional[str] = None

        if self.policy.force_software:
            logger.info("Software encoding forced by configuration.")
        else:
            gpu = self.probe_gpu()
            if gpu and self.probe_hwaccel_support():
                hwaccel, video_codec = self._pick_hardware_path(gpu, task.input_file, video_codec, container)
            elif gpu:
                logger.info("The encoder advertises no hardware acceleration. Using software encoding.")

        args = self.build_args(
            input_file=task.input_file,
            output_file=task.output_file,
            video_codec=video_codec,
            audio_codec=audio_codec,
            hwaccel=hwaccel,
            resolution=task.resolution,
            bitrate=task.bitrate,
        )
        acceleration = hwaccel or SOFTWARE_ACCELERATION
        logger.info(f"Encoder selection for {task.id}: acceleration={acceleration}, video={video_codec}, audio={audio_codec}")
        return EncoderSelection(args=args, acceleration=acceleration, video_codec=video_codec, audio_codec=audio_codec)

    @staticmethod
    def build_args(
        input_file: str,
        output_file: str,
        video_codec: str,
        audio_codec: str,
        hwaccel: Optional[str] = None,
        resolution: Optional[str] = None,
        bitrate: Optional[str] = None,
    ) -> List[str]:
        args: List[str] = []
        if hwaccel:
            args += ["-hwaccel", hwaccel]
        args += ["-i", input_file, "-c:v", video_codec]

        software = not _is_hardware_encoder(video_codec)
        if "nvenc" in video_codec:
            args += NVENC_TUNING
        elif "amf" in video_codec:
            args += AMF_TUNING
        elif "qsv" in video_codec:
            args += QSV_TUNING
        else:
            if video_codec in SOFTWARE_PRESET_CODECS:
                args += ["-preset", SOFTWARE_PRESET]
            args += ["-threads", str(SOFTWARE_THREADS)]

        size = resolve_resolution(resolution)
        if size:
            args += ["-s", size]
        if bitrate:
            args += ["-b:v", bitrate]

        args += ["-c:a", audio_codec, "-max_muxing_queue_size", str(MAX_MUXING_QUEUE_SIZE)]
        if software:
            args += ["-filter_threads", str(SOFTWARE_FILTER_THREADS)]
        args += PROGRESS_ARGS
        args.append(output_file)
        return args

    @staticmethod
    def build_custom_args(task: TranscodeTask) -> EncoderSelection:
        """`-i <in> <custom args> <progress flags> <out>`; the caller's arguments are taken verbatim."""
        try:
            custom = shlex.split(task.custom_args)
        except ValueError as e:
            logger.warning(f"Could not split custom arguments with shlex ({e}). Splitting on whitespace.")
            custom = task.custom_args.split()
        args = ["-i", task.input_file, *custom, *PROGRESS_ARGS, task.output_file]
        return EncoderSelection(
            args=args,
            acceleration=CUSTOM_ACCELERATION,
            video_codec=task.video_codec,
            audio_codec=task.audio_codec,
        )
