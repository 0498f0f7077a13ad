"""CLI: argument parsing, settings file defaults, and runtime validation."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Optional, Sequence

from toolchain import get_default_settings_path, get_waifu2x_executable_name

# ── Constants ──────────────────────────────────────────────────────────────────

CONVERSION_MODES = ("noise", "scale", "noise_scale", "auto_scale")
DENOISE_LEVELS = (0, 1, 2, 3)
DEFAULT_SOURCE_FOLDER = "S&R"
DEFAULT_TEMP_FOLDER = "temp"
DEFAULT_MODEL_DIR = "models/upconv_7_anime_style_art_rgb"
DEFAULT_PENDING_MARKER = "☆"
DEFAULT_DONE_MARKER = "★"
DEFAULT_POLL_INTERVAL = 0.1

# Option -> destination key; also the set of keys accepted in the settings file.
OPTION_TO_KEY = {
    "--work-dir": "work_dir",
    "--source-folder": "source_folder",
    "--temp-folder": "temp_folder",
    "--waifu2x-dir": "waifu2x_dir",
    "--executable-name": "executable_name",
    "--model-dir": "model_dir",
    "-g": "gpu",
    "--gpu": "gpu",
    "-n": "denoise_level",
    "--denoise-level": "denoise_level",
    "-m": "conversion_mode",
    "--conversion-mode": "conversion_mode",
    "--pending-marker": "pending_marker",
    "--done-marker": "done_marker",
    "-w": "workers",
    "--workers": "workers",
    "--poll-interval": "poll_interval",
    "--cancel-key": "cancel_key",
}


# ── Functions ──────────────────────────────────────────────────────────────────


def parse_cli_overrides(argv: Sequence[str]) -> set[str]:
    """Return canonical option names explicitly provided by the caller."""
    overrides: set[str] = set()
    for token in argv:
        if not token.startswith("-"):
            continue
        option = token.split("=", maxsplit=1)[0]
        key = OPTION_TO_KEY.get(option)
        if key:
            overrides.add(key)
    return overrides


def load_settings_file(settings_path: Path) -> dict[str, object]:
    """Read a JSON settings file; a missing file yields no settings."""
    if not settings_path.exists():
        return {}
    try:
        payload = json.loads(settings_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"Settings file is not valid JSON: {settings_path} ({exc})") from exc
    if not isinstance(payload, dict):
        raise ValueError(f"Settings file must contain a JSON object: {settings_path}")

    known = set(OPTION_TO_KEY.values())
    unknown = sorted(key for key in payload if key not in known)
    if unknown:
        raise ValueError(f"Unknown setting(s) in {settings_path}: {', '.join(unknown)}")
    return payload


def apply_settings_file(
    args: argparse.Namespace,
    settings: dict[str, object],
    cli_overrides: set[str],
) -> None:
    """Apply settings file values unless overridden by explicit flags."""
    for key, value in settings.items():
        if key not in cli_overrides:
            setattr(args, key, value)


def validate_runtime_args(args: argparse.Namespace) -> None:
    if len(args.pending_marker) != 1 or len(args.done_marker) != 1:
        raise ValueError("Pending and done markers must be single characters.")
    if args.pending_marker == args.done_marker:
        raise ValueError("Pending and done markers must differ.")
    if args.denoise_level not in DENOISE_LEVELS:
        raise ValueError("Denoise level must be between 0 and 3.")
    if args.conversion_mode not in CONVERSION_MODES:
        raise ValueError(f"Conversion mode must be one of: {', '.join(CONVERSION_MODES)}.")
    if args.workers is not None and args.workers <= 0:
        raise ValueError("Workers must be > 0.")
    if args.poll_interval <= 0:
        raise ValueError("Poll interval must be > 0.")
    if len(args.cancel_key) != 1:
        raise ValueError("Cancel key must be a single character.")
    if args.source_folder == args.temp_folder:
        raise ValueError("Source and temp folders must differ.")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Upscale a folder of drawn images with waifu2x-caffe, then losslessly "
            "optimize the results"
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--work-dir",
        type=str,
        default=".",
        help="Working directory holding the source folder; final images are written here",
    )
    parser.add_argument(
        "--source-folder",
        type=str,
        default=DEFAULT_SOURCE_FOLDER,
        help="Folder (under the working directory) with images to process",
    )
    parser.add_argument(
        "--temp-folder",
        type=str,
        default=DEFAULT_TEMP_FOLDER,
        help="Folder (under the working directory) for intermediate images",
    )
    parser.add_argument(
        "--waifu2x-dir",
        type=str,
        default=None,
        help="Directory containing the waifu2x-caffe executable (default: search PATH)",
    )
    parser.add_argument(
        "--executable-name",
        type=str,
        default=get_waifu2x_executable_name(),
        help="waifu2x-caffe command line executable name",
    )
    parser.add_argument(
        "--model-dir",
        type=str,
        default=DEFAULT_MODEL_DIR,
        help="Model directory, absolute or relative to the executable",
    )
    parser.add_argument("-g", "--gpu", type=int, default=0, help="GPU device ID")
    parser.add_argument(
        "-n",
        "--denoise-level",
        type=int,
        default=1,
        choices=DENOISE_LEVELS,
        help="waifu2x denoise level",
    )
    parser.add_argument(
        "-m",
        "--conversion-mode",
        type=str,
        default="noise_scale",
        choices=CONVERSION_MODES,
        help="waifu2x conversion mode",
    )
    parser.add_argument(
        "--pending-marker",
        type=str,
        default=DEFAULT_PENDING_MARKER,
        help="Filename glyph marking images awaiting optimization",
    )
    parser.add_argument(
        "--done-marker",
        type=str,
        default=DEFAULT_DONE_MARKER,
        help="Filename glyph marking optimized images",
    )
    parser.add_argument(
        "-w",
        "--workers",
        type=int,
        default=None,
        help="Concurrent optimization workers (default: 75%% of CPU cores)",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=DEFAULT_POLL_INTERVAL,
        help="Progress polling interval in seconds",
    )
    parser.add_argument(
        "--cancel-key",
        type=str,
        default="c",
        help="Key that cancels remaining work",
    )
    parser.add_argument(
        "--settings",
        type=str,
        default=str(get_default_settings_path()),
        help="JSON settings file; explicit flags take precedence",
    )
    parser.add_argument("--dry-run", action="store_true", help="Print commands without executing")
    parser.add_argument("--keep-temp", action="store_true", help="Keep the temp folder after the run")

    return parser.parse_args(argv)
