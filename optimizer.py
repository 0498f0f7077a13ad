"""Optimization stage: hand-off queue, worker pool, and mark-as-processed rename."""

from __future__ import annotations

import io
import os
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Iterator, Optional

from PIL import Image

from toolchain import progress_write

CANONICAL_FORMAT = "PNG"
PNG_MODES = ("1", "L", "LA", "I", "I;16", "P", "RGB", "RGBA")
WORKER_YIELD_SECONDS = 0.025
WORKER_POLL_SECONDS = 0.1


class OptimizationQueue:
    """Unbounded, thread-safe hand-off of finished images to the worker pool.

    `put` never blocks. `get` blocks until an item arrives, the timeout
    passes, or the queue is closed and drained. Each item is delivered to
    exactly one consumer.
    """

    def __init__(self) -> None:
        self._items: deque[Path] = deque()
        self._condition = threading.Condition()
        self._closed = False
        self._total_put = 0

    def put(self, image_path: Path) -> None:
        with self._condition:
            if self._closed:
                raise RuntimeError("Optimization queue is closed.")
            self._items.append(image_path)
            self._total_put += 1
            self._condition.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[Path]:
        with self._condition:
            self._condition.wait_for(lambda: self._items or self._closed, timeout)
            if self._items:
                return self._items.popleft()
            return None

    def close(self) -> None:
        """Stop accepting items; consumers drain what is left."""
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def consume(self) -> Iterator[Path]:
        """Yield items until the queue is closed and empty."""
        while True:
            item = self.get()
            if item is None:
                return
            yield item

    @property
    def closed(self) -> bool:
        with self._condition:
            return self._closed

    @property
    def total_put(self) -> int:
        with self._condition:
            return self._total_put

    def __len__(self) -> int:
        with self._condition:
            return len(self._items)


class AtomicCounter:
    """Lock-protected counter that remembers its highest value."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0
        self._peak = 0

    def increment(self) -> None:
        with self._lock:
            self._value += 1
            self._peak = max(self._peak, self._value)

    def decrement(self) -> None:
        with self._lock:
            self._value -= 1

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    @property
    def peak(self) -> int:
        with self._lock:
            return self._peak


class CancellationSignal:
    """One-shot cancel flag shared by both stages; once set it stays set."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


def default_concurrency() -> int:
    return max(1, int((os.cpu_count() or 1) * 0.75))


def encode_png(image: Image.Image, *, optimize: bool) -> bytes:
    if image.mode not in PNG_MODES:
        image = image.convert("RGBA" if "A" in image.getbands() else "RGB")
    buffer = io.BytesIO()
    if optimize:
        image.save(buffer, format=CANONICAL_FORMAT, optimize=True, compress_level=9)
    else:
        image.save(buffer, format=CANONICAL_FORMAT)
    return buffer.getvalue()


def convert_to_png(image_path: Path) -> bool:
    """Rewrite a non-PNG file as PNG under the same name. Returns True if converted."""
    with Image.open(image_path) as image:
        if image.format == CANONICAL_FORMAT:
            return False
        image.load()
        encoded = encode_png(image, optimize=False)
    # Replacing a foreign-format file in place is not supported, so delete first.
    image_path.unlink()
    image_path.write_bytes(encoded)
    return True


def replace_file_contents(image_path: Path, data: bytes) -> None:
    """Atomically replace a file's contents through a sibling staging file."""
    staging = image_path.with_name(f".{image_path.name}.tmp")
    try:
        staging.write_bytes(data)
        os.replace(staging, image_path)
    except OSError:
        staging.unlink(missing_ok=True)
        raise


def compress_png(image_path: Path) -> int:
    """Losslessly recompress a PNG at maximum effort. Returns bytes saved."""
    original_size = image_path.stat().st_size
    with Image.open(image_path) as image:
        image.load()
        encoded = encode_png(image, optimize=True)
    if len(encoded) >= original_size:
        return 0
    replace_file_contents(image_path, encoded)
    return original_size - len(encoded)


def optimize_image(image_path: Path) -> bool:
    """Convert to PNG if needed and recompress. Returns False on failure."""
    try:
        convert_to_png(image_path)
        compress_png(image_path)
    except (OSError, ValueError) as exc:
        progress_write(f"Warning: Could not optimize {image_path.name}: {exc}")
        return False
    return True


def mark_as_processed(
    image_path: Path,
    pending_marker: str,
    done_marker: str,
) -> Optional[Path]:
    """Swap the pending glyph for the done glyph in the file name.

    An existing file at the new name is replaced in one step and survives a
    failed rename. Returns the new path, the unchanged path when the name
    carries no pending glyph, or None when the rename failed.
    """
    if pending_marker not in image_path.name:
        progress_write(
            f"Warning: {image_path.name} has no '{pending_marker}' marker; name left unchanged."
        )
        return image_path

    target = image_path.with_name(image_path.name.replace(pending_marker, done_marker))
    try:
        image_path.replace(target)
    except OSError as exc:
        progress_write(f"Warning: Could not rename {image_path.name}: {exc}")
        return None
    return target


class OptimizationWorkerPool:
    """Bounded pool of threads draining the optimization queue."""

    def __init__(
        self,
        queue: OptimizationQueue,
        cancel: CancellationSignal,
        *,
        pending_marker: str,
        done_marker: str,
        concurrency: Optional[int] = None,
        yield_seconds: float = WORKER_YIELD_SECONDS,
        poll_seconds: float = WORKER_POLL_SECONDS,
    ) -> None:
        self.queue = queue
        self.cancel = cancel
        self.pending_marker = pending_marker
        self.done_marker = done_marker
        self.concurrency = concurrency or default_concurrency()
        self.yield_seconds = yield_seconds
        self.poll_seconds = poll_seconds
        self.active = AtomicCounter()
        self.completed = AtomicCounter()
        self.failed = AtomicCounter()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: list[Future[None]] = []

    def start(self) -> None:
        if self._executor is not None:
            raise RuntimeError("Worker pool already started.")
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency,
            thread_name_prefix="optimizer",
        )
        self._futures = [
            self._executor.submit(self._worker_loop) for _ in range(self.concurrency)
        ]

    def is_done(self) -> bool:
        return bool(self._futures) and all(future.done() for future in self._futures)

    def join(self) -> None:
        """Wait for every worker to exit, re-raising unexpected worker errors."""
        if self._executor is None:
            return
        self._executor.shutdown(wait=True)
        for future in self._futures:
            future.result()

    def process(self, image_path: Path) -> Optional[Path]:
        self.active.increment()
        try:
            optimized = optimize_image(image_path)
        finally:
            self.active.decrement()
        marked = None
        if optimized:
            marked = mark_as_processed(image_path, self.pending_marker, self.done_marker)
        if marked is None:
            self.failed.increment()
        else:
            self.completed.increment()
        return marked

    def _worker_loop(self) -> None:
        while not self.cancel.is_cancelled:
            image_path = self.queue.get(timeout=self.poll_seconds)
            if image_path is None:
                if self.queue.closed and len(self.queue) == 0:
                    return
                continue
            self.process(image_path)
            time.sleep(self.yield_seconds)
