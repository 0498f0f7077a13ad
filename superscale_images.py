#!/usr/bin/env python3
"""
Drawn image superscaler (waifu2x-caffe batch driver).

This script upscales every image in the source folder with waifu2x-caffe,
one image at a time, while a pool of worker threads losslessly optimizes
each finished image and marks it as done.
"""

from __future__ import annotations

import argparse
import contextlib
import functools
import os
import select
import shutil
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, TextIO

from tqdm import tqdm

# ── Extracted modules (re-exported for callers and tests) ─────────────────────
from toolchain import (  # noqa: F401
    Toolchain,
    Waifu2xOptions,
    build_waifu2x_command,
    describe_exception,
    format_command,
    invoke_upscaler,
    progress_write,
    resolve_toolchain,
)
from cli import (  # noqa: F401
    apply_settings_file,
    load_settings_file,
    parse_args,
    parse_cli_overrides,
    validate_runtime_args,
)
from resolution import (  # noqa: F401
    ImageTask,
    SizeClass,
    UpscalePass,
    build_image_tasks,
    discover_images,
)
from optimizer import (  # noqa: F401
    CancellationSignal,
    OptimizationQueue,
    OptimizationWorkerPool,
    default_concurrency,
)

# tracing dependencies added for lightweight performance profiling
try:
    from opentelemetry import trace
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
except ImportError:  # tracing is an optional extra
    trace = None

tracer = None

RETRY_DELAY_SECONDS = 0.25


def init_tracing() -> None:
    """Configure OpenTelemetry tracer to export spans to localhost OTLP endpoint."""
    global tracer
    if trace is None:
        return
    if tracer is not None:
        return

    resource = Resource.create({"service.name": "drawn-image-superscaler"})
    provider = TracerProvider(resource=resource)
    exporter = OTLPSpanExporter(endpoint="http://localhost:4318/v1/traces")
    provider.add_span_processor(BatchSpanProcessor(exporter))
    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)


def _traced(func):
    """Decorator that wraps a function call in a tracing span if tracing is enabled."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if tracer is None:
            init_tracing()
        if tracer is not None:
            with tracer.start_as_current_span(func.__name__):
                return func(*args, **kwargs)
        return func(*args, **kwargs)

    return wrapper


class UpscaleRetryExhausted(RuntimeError):
    """waifu2x kept failing with batch and split size both at 1."""


@dataclass(frozen=True)
class StageLayout:
    work_dir: Path
    source_dir: Path
    temp_dir: Path


@dataclass(frozen=True)
class PipelineOutcome:
    upscaled: int
    optimized: int
    failed: int
    left_in_queue: int
    cancelled: bool


def build_layout(args: argparse.Namespace) -> StageLayout:
    work_dir = Path(args.work_dir).expanduser().resolve()
    return StageLayout(
        work_dir=work_dir,
        source_dir=work_dir / args.source_folder,
        temp_dir=work_dir / args.temp_folder,
    )


def final_output_path(task: ImageTask, layout: StageLayout) -> Path:
    return layout.work_dir / task.path.name


def intermediate_path(task: ImageTask, layout: StageLayout, pass_number: int) -> Path:
    # Keeps the source suffix, so x.jpg and x.png never share an intermediate.
    return layout.temp_dir / f"{task.path.stem}.pass{pass_number}{task.path.suffix}"


def degrade_parameters(batch_size: int, split_size: int) -> Optional[tuple[int, int]]:
    """Next (batch, split) to try after a failure, or None at the floor.

    Batch size is lowered one step at a time before split size is halved.
    """
    if batch_size > 1:
        return batch_size - 1, split_size
    if split_size > 1:
        return batch_size, split_size // 2
    return None


def run_upscale_pass(
    toolchain: Toolchain,
    input_path: Path,
    output_path: Path,
    upscale_pass: UpscalePass,
    *,
    options: Waifu2xOptions,
    retry_delay: float = RETRY_DELAY_SECONDS,
) -> int:
    """Run one pass, degrading batch/split size until waifu2x succeeds."""
    batch_size = upscale_pass.batch_size
    split_size = upscale_pass.split_size
    while True:
        exit_code = invoke_upscaler(
            toolchain,
            input_path,
            output_path,
            magnification=upscale_pass.magnification,
            batch_size=batch_size,
            split_size=split_size,
            options=options,
        )
        if exit_code >= 0:
            return exit_code

        degraded = degrade_parameters(batch_size, split_size)
        if degraded is None:
            raise UpscaleRetryExhausted(
                f"Could not convert {input_path.name} "
                f"(last exit code {exit_code}, batch size 1, split size 1)."
            )

        next_batch, next_split = degraded
        if next_batch != batch_size:
            change = f"batch size from {batch_size} to {next_batch}"
        else:
            change = f"split size from {split_size} to {next_split}"
        progress_write(
            f"Warning: Could not convert {input_path.name} (exit code {exit_code}). "
            f"Changing {change}..."
        )
        batch_size, split_size = degraded
        time.sleep(retry_delay)


def remove_intermediate(image_path: Path) -> None:
    try:
        image_path.unlink(missing_ok=True)
    except OSError as exc:
        progress_write(f"Warning: Could not delete intermediate {image_path.name}: {exc}")


def upscale_image(
    task: ImageTask,
    toolchain: Toolchain,
    layout: StageLayout,
    *,
    options: Waifu2xOptions,
    dry_run: bool = False,
    retry_delay: float = RETRY_DELAY_SECONDS,
) -> Optional[Path]:
    """Run every pass of the task's policy and return the final image path.

    Returns None when there is nothing to enqueue: the image is too small to
    upscale, its source vanished, or this is a dry run.
    """
    passes = task.passes
    if not passes:
        return None
    if not task.path.is_file():
        progress_write(f"Warning: Source image disappeared: {task.path}")
        return None

    final_path = final_output_path(task, layout)
    input_path = task.path
    previous_intermediate: Optional[Path] = None

    for index, upscale_pass in enumerate(passes):
        is_last = index == len(passes) - 1
        if is_last:
            output_path = final_path
        else:
            output_path = intermediate_path(task, layout, index + 1)

        if dry_run:
            cmd = build_waifu2x_command(
                toolchain.waifu2x_binary,
                input_path,
                output_path,
                model_dir=toolchain.model_dir,
                magnification=upscale_pass.magnification,
                batch_size=upscale_pass.batch_size,
                split_size=upscale_pass.split_size,
                options=options,
            )
            progress_write(f"[DRY RUN] {format_command(cmd)}")
        else:
            run_upscale_pass(
                toolchain,
                input_path,
                output_path,
                upscale_pass,
                options=options,
                retry_delay=retry_delay,
            )
            if previous_intermediate is not None:
                remove_intermediate(previous_intermediate)

        if not is_last:
            previous_intermediate = output_path
        input_path = output_path

    if dry_run:
        return None
    return final_path


def run_upscale_stage(
    tasks: Sequence[ImageTask],
    toolchain: Toolchain,
    layout: StageLayout,
    queue: OptimizationQueue,
    cancel: CancellationSignal,
    *,
    options: Waifu2xOptions,
    dry_run: bool = False,
    retry_delay: float = RETRY_DELAY_SECONDS,
) -> int:
    """Upscale tasks in order, enqueueing each image once its last pass succeeds.

    Cancellation is checked between images only. The queue is closed when the
    stage ends for any reason. Returns the number of images enqueued.
    """
    enqueued = 0
    try:
        for task in tasks:
            if cancel.is_cancelled:
                break
            final_path = upscale_image(
                task,
                toolchain,
                layout,
                options=options,
                dry_run=dry_run,
                retry_delay=retry_delay,
            )
            if final_path is not None:
                queue.put(final_path)
                enqueued += 1
    finally:
        queue.close()
    return enqueued


def listen_for_cancel_key(
    cancel: CancellationSignal,
    cancel_key: str,
    read_key: Callable[[], Optional[str]],
) -> None:
    """Poll `read_key` until the cancel key is pressed or the run stops.

    `read_key` returns the pressed keys, None when nothing was pressed within
    its poll interval, or an empty string once input is exhausted.
    """
    while not cancel.is_cancelled:
        keys = read_key()
        if keys is None:
            continue
        if not keys:
            return
        if cancel_key.lower() in keys.lower():
            progress_write("Cancel requested. Finishing current jobs...")
            cancel.cancel()
            return


def _windows_key_reader(poll_seconds: float) -> Callable[[], Optional[str]]:
    import msvcrt

    def read_key() -> Optional[str]:
        if msvcrt.kbhit():
            return msvcrt.getwch()
        time.sleep(poll_seconds)
        return None

    return read_key


def _posix_key_reader(stream: TextIO, poll_seconds: float) -> Callable[[], Optional[str]]:
    fd = stream.fileno()

    def read_key() -> Optional[str]:
        ready, _, _ = select.select([fd], [], [], poll_seconds)
        if not ready:
            return None
        return os.read(fd, 32).decode(errors="ignore")

    return read_key


@contextlib.contextmanager
def _cbreak_mode(stream: TextIO) -> Iterator[None]:
    """Deliver keypresses without waiting for Enter; the terminal is restored on exit."""
    import termios
    import tty

    fd = stream.fileno()
    saved = termios.tcgetattr(fd)
    tty.setcbreak(fd)
    try:
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, saved)


def _run_cancel_listener(
    cancel: CancellationSignal,
    cancel_key: str,
    stream: TextIO,
    poll_seconds: float,
) -> None:
    if os.name == "nt":
        listen_for_cancel_key(cancel, cancel_key, _windows_key_reader(poll_seconds))
        return
    with _cbreak_mode(stream):
        listen_for_cancel_key(cancel, cancel_key, _posix_key_reader(stream, poll_seconds))


def start_cancel_listener(
    cancel: CancellationSignal,
    cancel_key: str,
    stream: Optional[TextIO] = None,
    poll_seconds: float = 0.1,
) -> Optional[threading.Thread]:
    """Watch the console for the cancel key; the thread ends once `cancel` is set."""
    stream = stream if stream is not None else sys.stdin
    if stream is None or not stream.isatty():
        return None
    listener = threading.Thread(
        target=_run_cancel_listener,
        args=(cancel, cancel_key, stream, poll_seconds),
        name="cancel-listener",
        daemon=True,
    )
    listener.start()
    return listener


def cleanup_temp_dir(temp_dir: Path) -> None:
    """Remove the intermediate folder; failures are reported, never raised."""
    try:
        shutil.rmtree(temp_dir)
    except FileNotFoundError:
        pass
    except OSError as exc:
        progress_write(f"Warning: Could not remove temp folder {temp_dir}: {exc}")


def _update_bar(bar: tqdm, value: int) -> None:
    if bar.n != value:
        bar.n = value
        bar.refresh()


def run_stages(
    tasks: Sequence[ImageTask],
    toolchain: Toolchain,
    layout: StageLayout,
    cancel: CancellationSignal,
    *,
    options: Waifu2xOptions,
    pending_marker: str,
    done_marker: str,
    concurrency: Optional[int] = None,
    poll_interval: float = 0.1,
    dry_run: bool = False,
    retry_delay: float = RETRY_DELAY_SECONDS,
    yield_seconds: Optional[float] = None,
) -> PipelineOutcome:
    """Run the upscale stage and the optimizer pool concurrently.

    The main thread polls progress. When upscaling has finished and the pool
    is idle with an empty queue, the pool is cancelled. A user cancel (or an
    upscale failure) stops new work; in-flight work is always waited for.
    """
    queue = OptimizationQueue()
    pool_kwargs = {} if yield_seconds is None else {"yield_seconds": yield_seconds}
    pool = OptimizationWorkerPool(
        queue,
        cancel,
        pending_marker=pending_marker,
        done_marker=done_marker,
        concurrency=concurrency,
        poll_seconds=poll_interval,
        **pool_kwargs,
    )
    upscale_total = sum(1 for task in tasks if task.passes)
    natural_finish = False
    upscale_error: Optional[BaseException] = None

    pool.start()
    upscale_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="upscaler")
    upscale_bar = tqdm(total=upscale_total, desc="Upscaling", unit="img", position=0)
    optimize_bar = tqdm(total=upscale_total, desc="Optimizing", unit="img", position=1)

    def refresh() -> None:
        upscaled = queue.total_put
        _update_bar(upscale_bar, upscaled)
        _update_bar(optimize_bar, pool.completed.value + pool.failed.value)

    try:
        upscale_future = upscale_executor.submit(
            run_upscale_stage,
            tasks,
            toolchain,
            layout,
            queue,
            cancel,
            options=options,
            dry_run=dry_run,
            retry_delay=retry_delay,
        )
        while True:
            try:
                refresh()
                if upscale_future.done():
                    upscale_error = upscale_future.exception()
                    if upscale_error is not None or cancel.is_cancelled:
                        cancel.cancel()
                        break
                    if len(queue) == 0 and pool.active.value == 0:
                        natural_finish = True
                        cancel.cancel()
                        break
                elif cancel.is_cancelled:
                    break
                time.sleep(poll_interval)
            except KeyboardInterrupt:
                progress_write("Interrupted by user. Finishing current jobs...")
                cancel.cancel()

        if not natural_finish:
            while not pool.is_done() and len(queue) > 0:
                refresh()
                time.sleep(poll_interval)
    finally:
        upscale_executor.shutdown(wait=True)
        pool.join()
        refresh()
        optimize_bar.close()
        upscale_bar.close()

    if upscale_error is None and upscale_future.done():
        upscale_error = upscale_future.exception()
    if upscale_error is not None:
        raise upscale_error

    left_in_queue = len(queue)
    return PipelineOutcome(
        upscaled=queue.total_put,
        optimized=pool.completed.value,
        failed=pool.failed.value,
        left_in_queue=left_in_queue,
        cancelled=not natural_finish,
    )


def summarize_tasks(tasks: Sequence[ImageTask]) -> dict[SizeClass, int]:
    counts = {size_class: 0 for size_class in SizeClass}
    for task in tasks:
        counts[task.size_class] += 1
    return counts


def run_pipeline(args: argparse.Namespace) -> int:
    validate_runtime_args(args)

    layout = build_layout(args)
    if not layout.source_dir.is_dir():
        raise FileNotFoundError(f"Source folder not found: {layout.source_dir}")

    toolchain = resolve_toolchain(args.waifu2x_dir, args.executable_name, args.model_dir)
    options = Waifu2xOptions(
        gpu_id=args.gpu,
        denoise_level=args.denoise_level,
        conversion_mode=args.conversion_mode,
    )
    concurrency = args.workers or default_concurrency()

    print("\n" + "=" * 60)
    print("Drawn Image Superscaler - waifu2x-caffe")
    if args.dry_run:
        print("*** DRY RUN MODE ***")
    print("=" * 60)
    print(f"Source:   {layout.source_dir}")
    print(f"Output:   {layout.work_dir}")
    print(f"Temp:     {layout.temp_dir}")
    print(f"waifu2x:  {toolchain.waifu2x_binary}")
    print(f"Models:   {toolchain.model_dir}")
    print(f"Mode:     {args.conversion_mode} (denoise {args.denoise_level}, GPU {args.gpu})")
    print(f"Workers:  {concurrency}")
    print(f"Cancel:   press '{args.cancel_key}'")
    print("=" * 60 + "\n")

    tasks = build_image_tasks(discover_images(layout.source_dir))
    if not tasks:
        print("No images to process.")
        return 0

    for size_class, count in summarize_tasks(tasks).items():
        if count:
            print(f"  {size_class.value:<11}: {count}")
    skipped = sum(1 for task in tasks if not task.passes)
    if skipped:
        print(f"  Skipping {skipped} image(s) too small to upscale.")
    print()

    layout.temp_dir.mkdir(parents=True, exist_ok=True)
    cancel = CancellationSignal()
    listener = start_cancel_listener(cancel, args.cancel_key)

    total_start = time.time()
    try:
        outcome = run_stages(
            tasks,
            toolchain,
            layout,
            cancel,
            options=options,
            pending_marker=args.pending_marker,
            done_marker=args.done_marker,
            concurrency=concurrency,
            poll_interval=args.poll_interval,
            dry_run=args.dry_run,
        )
    finally:
        cancel.cancel()
        if listener is not None:
            listener.join(timeout=1.0)
        if args.keep_temp:
            print(f"Temp folder kept at: {layout.temp_dir}")
        else:
            cleanup_temp_dir(layout.temp_dir)

    print("=" * 60)
    if outcome.cancelled:
        print("Optimizer pass cancelled.")
        if outcome.left_in_queue:
            print(f"Left unoptimized: {outcome.left_in_queue} image(s)")
    else:
        print("Complete!")
    print(f"Upscaled:  {outcome.upscaled} image(s)")
    print(f"Optimized: {outcome.optimized} image(s)")
    if outcome.failed:
        print(f"Failed:    {outcome.failed} image(s) (see warnings above)")
    print(f"Total time: {time.time() - total_start:.1f}s")
    print("=" * 60 + "\n")
    return 0


@_traced
def main(argv: Optional[Sequence[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    args = parse_args(raw_argv)
    try:
        settings = load_settings_file(Path(args.settings).expanduser())
        apply_settings_file(args, settings, parse_cli_overrides(raw_argv))
        return run_pipeline(args)
    except KeyboardInterrupt:
        print("Interrupted by user.", file=sys.stderr)
        return 130
    except Exception as exc:
        print(f"Error: {describe_exception(exc)}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    # initialize tracing if OpenTelemetry is available
    init_tracing()
    raise SystemExit(main())
