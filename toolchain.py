"""Toolchain: waifu2x-caffe resolution, command construction, and subprocess wrapper."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from tqdm import tqdm

# Fixed waifu2x-caffe flags.
DEFAULT_BIT_DEPTH = 8
DEFAULT_PROCESSOR = "cudnn"
OUTPUT_EXTENSION = ".png"
OUTPUT_FORMAT = "png"


def get_default_settings_path() -> Path:
    return Path.home() / ".config" / "drawn-image-superscaler" / "settings.json"


@dataclass(frozen=True)
class Toolchain:
    waifu2x_binary: Path
    model_dir: Path


@dataclass(frozen=True)
class Waifu2xOptions:
    """Per-run waifu2x-caffe flags that do not change between passes."""

    gpu_id: int = 0
    denoise_level: int = 1
    conversion_mode: str = "noise_scale"
    bit_depth: int = DEFAULT_BIT_DEPTH
    processor: str = DEFAULT_PROCESSOR


def progress_write(message: str) -> None:
    """Write a message without breaking active progress bars."""
    tqdm.write(message)


def describe_exception(exc: BaseException) -> str:
    """Return the exception message followed by its chained causes."""
    message = str(exc) or type(exc).__name__
    cause = exc.__cause__ or exc.__context__
    if cause is not None:
        message += f"\n  Caused by: {describe_exception(cause)}"
    return message


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
        errors="replace",
        timeout=timeout,
    )


def normalize_exit_code(returncode: int) -> int:
    """Interpret an exit code as a signed 32-bit value.

    waifu2x-caffe reports failure with -1, which Windows surfaces as
    0xFFFFFFFF.
    """
    if returncode > 0x7FFFFFFF:
        return returncode - (1 << 32)
    return returncode


def get_waifu2x_executable_name() -> str:
    """Return the expected waifu2x-caffe CUI binary name for the current OS."""
    if platform.system().lower() == "windows":
        return "waifu2x-caffe-cui.exe"
    return "waifu2x-caffe-cui"


def resolve_waifu2x_executable(custom_dir: Optional[str], executable_name: str) -> Path:
    """Resolve the waifu2x-caffe binary from an explicit directory or PATH."""
    if custom_dir:
        candidate = Path(custom_dir).expanduser().resolve() / executable_name
        if not candidate.is_file():
            raise FileNotFoundError(f"waifu2x-caffe executable not found at: {candidate}")
        return candidate

    system_binary = shutil.which(executable_name)
    if system_binary:
        return Path(system_binary).resolve()

    raise FileNotFoundError(
        f"Unable to locate {executable_name}. Install it in PATH or pass "
        "--waifu2x-dir explicitly."
    )


def resolve_model_dir(model_dir: str, waifu2x_binary: Path) -> Path:
    """Resolve the model directory, relative paths being taken from the binary's folder."""
    candidate = Path(model_dir).expanduser()
    if not candidate.is_absolute():
        candidate = waifu2x_binary.parent / candidate
    candidate = candidate.resolve()
    if not candidate.is_dir():
        raise FileNotFoundError(f"Model directory not found: {candidate}")
    return candidate


def resolve_toolchain(
    waifu2x_dir: Optional[str],
    executable_name: str,
    model_dir: str,
) -> Toolchain:
    """Resolve runtime binaries and raise clear dependency errors."""
    waifu2x_binary = resolve_waifu2x_executable(waifu2x_dir, executable_name)
    return Toolchain(
        waifu2x_binary=waifu2x_binary,
        model_dir=resolve_model_dir(model_dir, waifu2x_binary),
    )


def build_waifu2x_command(
    waifu2x_binary: Path,
    input_path: Path,
    output_path: Path,
    *,
    model_dir: Path,
    magnification: int,
    batch_size: int,
    split_size: int,
    options: Waifu2xOptions,
) -> list[str]:
    return [
        str(waifu2x_binary),
        "--gpu",
        str(options.gpu_id),
        "-b",
        str(batch_size),
        "-c",
        str(split_size),
        "-d",
        str(options.bit_depth),
        "-p",
        options.processor,
        "--model_dir",
        str(model_dir),
        "-s",
        str(magnification),
        "-n",
        str(options.denoise_level),
        "-m",
        options.conversion_mode,
        "-e",
        OUTPUT_EXTENSION,
        "-l",
        OUTPUT_FORMAT,
        "-o",
        str(output_path),
        "-i",
        str(input_path),
    ]


def invoke_upscaler(
    toolchain: Toolchain,
    input_path: Path,
    output_path: Path,
    *,
    magnification: int,
    batch_size: int,
    split_size: int,
    options: Waifu2xOptions,
) -> int:
    """Run one waifu2x-caffe attempt and return its signed exit code.

    Raises FileNotFoundError when the executable has gone missing, which
    is an environment problem rather than a per-image failure.
    """
    if not toolchain.waifu2x_binary.is_file():
        raise FileNotFoundError(
            f"waifu2x-caffe executable not found at: {toolchain.waifu2x_binary}"
        )

    cmd = build_waifu2x_command(
        toolchain.waifu2x_binary,
        input_path,
        output_path,
        model_dir=toolchain.model_dir,
        magnification=magnification,
        batch_size=batch_size,
        split_size=split_size,
        options=options,
    )
    result = run_subprocess(cmd, check=False, capture_output=True)
    exit_code = normalize_exit_code(result.returncode)
    if exit_code < 0:
        detail = last_output_line(result)
        if detail:
            progress_write(f"waifu2x-caffe: {detail}")
    return exit_code


def last_output_line(result: subprocess.CompletedProcess[str]) -> str:
    """Last non-empty line of a finished process's stderr, falling back to stdout."""
    for stream in (result.stderr, result.stdout):
        lines = [line.strip() for line in (stream or "").splitlines() if line.strip()]
        if lines:
            return lines[-1]
    return ""


def format_command(cmd: Sequence[str]) -> str:
    if os.name == "nt":
        return subprocess.list2cmdline(list(cmd))
    return " ".join(cmd)
