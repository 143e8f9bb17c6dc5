#!/usr/bin/env python3
"""
Resumable Perceptual Hash Computation
=====================================
Computes a 64-bit DCT perceptual hash for every image in a list of paths and
records the results in a checkpoint file that doubles as the output.

Pipeline:
--------
- Paths already present in the checkpoint file are skipped
- Remaining paths are hashed by a pool of worker threads
- Results flow through a bounded queue to a single writer thread, which is
  the only code that touches the checkpoint file
- Each result is flushed to disk as soon as it is written, so an interrupted
  run loses at most the line being written and can simply be restarted

Output format: one ``<path>\\t<hash>`` line per image, hash in base 10.
Line order follows completion order, not input order.

License: MIT
"""

import argparse
import io
import logging
import os
import queue
import sys
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, asdict
from functools import partial
from pathlib import Path
from typing import Callable, Iterable, Iterator, Optional

import numpy as np
from tqdm import tqdm

from dct_phash import DCT_BASIS, PhashError, image_path_to_phash
from phash_checkpoint import CheckpointOpenError, PhashCheckpoint

logger = logging.getLogger(__name__)

QUEUE_SIZE = 256

# Marks the end of the result stream for the writer thread
_DONE = object()


@dataclass
class PipelineStats:
    """Counters for one pipeline run."""
    candidates: int = 0
    cached: int = 0
    scheduled: int = 0
    hashed: int = 0
    failed: int = 0
    written: int = 0
    skipped: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class PhashPipeline:
    """
    Hashes uncached paths in parallel and appends results to a checkpoint.

    Concurrency Model:
    -----------------
    - Workers: ThreadPoolExecutor, one thread per logical core by default.
      PIL decoding/resizing and the numpy matrix products release the GIL.
    - Results: queue.Queue(maxsize=queue_size). A worker blocks on put() when
      the writer falls behind.
    - Writer: one thread calling PhashCheckpoint.append() sequentially. It
      exits after the workers are done and the queue is drained.
    - The DCT basis is built once and only ever read.
    """

    def __init__(
        self,
        checkpoint: PhashCheckpoint,
        workers: Optional[int] = None,
        queue_size: int = QUEUE_SIZE,
        hasher: Optional[Callable[[str], int]] = None,
        dct: Optional[np.ndarray] = None,
        show_progress: bool = True
    ):
        """
        Initialize the pipeline.

        Args:
            checkpoint: Opened checkpoint file; the pipeline becomes its only writer
            workers: Number of worker threads (default: CPU count)
            queue_size: Capacity of the result queue
            hasher: Callable mapping a path to its hash (default: image_path_to_phash)
            dct: DCT basis passed to the default hasher
            show_progress: Display a tqdm progress bar
        """
        if queue_size < 1:
            raise ValueError(f"queue_size must be positive, got {queue_size}")

        self.checkpoint = checkpoint
        self.workers = workers or os.cpu_count() or 1
        self.queue_size = queue_size
        self.show_progress = show_progress

        if hasher is None:
            hasher = partial(image_path_to_phash, dct=DCT_BASIS if dct is None else dct)
        self.hasher = hasher

        self._writer_error: Optional[BaseException] = None

    def _hash_path(self, path: str, results: queue.Queue) -> bool:
        """Hash one path and hand the result to the writer."""
        try:
            phash = self.hasher(path)
        except PhashError as e:
            logger.error(f"Error computing phash for {e.path}: {e}")
            return False

        results.put((path, phash))
        return True

    def _write_results(self, results: queue.Queue, stats: PipelineStats) -> None:
        """Writer thread: append queued results until the end marker arrives."""
        while True:
            item = results.get()
            if item is _DONE:
                break

            # Keep draining after a write failure so workers never block forever
            if self._writer_error is not None:
                continue

            path, phash = item
            try:
                if self.checkpoint.append(path, phash):
                    stats.written += 1
                else:
                    stats.skipped += 1
            except OSError as e:
                logger.error(f"Failed to write checkpoint {self.checkpoint.path}: {e}")
                self._writer_error = e

    def run(self, candidates: Iterable[str]) -> PipelineStats:
        """
        Execute the pipeline over ``candidates``.

        Returns:
            PipelineStats for this run

        Raises:
            OSError: the checkpoint file could not be written
        """
        stats = PipelineStats()
        self._writer_error = None

        cache = self.checkpoint.load()
        candidate_set = set(candidates)
        work = candidate_set - cache.keys()

        stats.candidates = len(candidate_set)
        stats.cached = stats.candidates - len(work)
        stats.scheduled = len(work)

        logger.info(f"{stats.candidates} unique paths, {stats.cached} already cached, "
                    f"{stats.scheduled} to compute")

        if not work:
            return stats

        results = queue.Queue(maxsize=self.queue_size)
        writer = threading.Thread(
            target=self._write_results,
            args=(results, stats),
            name='phash-writer',
            daemon=True
        )
        writer.start()

        logger.info(f"Computing phashes with {self.workers} workers...")
        try:
            with ThreadPoolExecutor(max_workers=self.workers) as executor:
                futures = [executor.submit(self._hash_path, path, results) for path in work]

                for future in tqdm(as_completed(futures), total=len(futures),
                                   desc="Computing phashes", disable=not self.show_progress):
                    if future.result():
                        stats.hashed += 1
                    else:
                        stats.failed += 1
        finally:
            results.put(_DONE)
            writer.join()

        if self._writer_error is not None:
            raise self._writer_error

        logger.info(f"Hashed {stats.hashed} images ({stats.failed} failed), "
                    f"wrote {stats.written} entries ({stats.skipped} skipped)")
        return stats


def _iter_lines(stream) -> Iterator[str]:
    for line in stream:
        path = line.strip()
        if path:
            yield path


def _iter_file(stream) -> Iterator[str]:
    with stream:
        yield from _iter_lines(stream)


def read_input_list(source: str) -> Iterator[str]:
    """
    Iterate over image paths, one per line, from a file or stdin ("-").

    The file is opened immediately so a missing input fails before any work
    starts.

    Raises:
        OSError: the input file could not be opened
    """
    if source == '-':
        stream = io.TextIOWrapper(sys.stdin.buffer, encoding='utf-8', errors='surrogateescape')
        return _iter_lines(stream)

    stream = open(source, 'r', encoding='utf-8', errors='surrogateescape')
    return _iter_file(stream)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Compute 64-bit perceptual hashes for a list of images (resumable)',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Hash every JPEG under a directory
  find /photos -name '*.jpg' | %(prog)s -o phashes.tsv

  # Read paths from a file, 8 workers
  %(prog)s -i images.txt -o phashes.tsv -j 8

Re-running with the same output file skips images that are already hashed.
        """
    )

    parser.add_argument(
        '-i', '--input',
        type=str,
        default='-',
        help='File with one image path per line, or "-" for stdin (default: -)'
    )

    parser.add_argument(
        '-o', '--output',
        type=str,
        required=True,
        help='Output file; re-read on later runs to avoid recomputing phashes'
    )

    parser.add_argument(
        '-j', '--workers',
        type=int,
        default=None,
        help='Number of worker threads (default: number of CPUs)'
    )

    parser.add_argument(
        '--queue-size',
        type=int,
        default=QUEUE_SIZE,
        help=f'Maximum results waiting to be written (default: {QUEUE_SIZE})'
    )

    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Disable the progress bar'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable debug logging'
    )

    return parser


def main(argv=None):
    """Main entry point with CLI argument parsing."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    if args.workers is not None and args.workers < 1:
        logger.error(f"Worker count must be positive: {args.workers}")
        sys.exit(1)

    if args.queue_size < 1:
        logger.error(f"Queue size must be positive: {args.queue_size}")
        sys.exit(1)

    try:
        checkpoint = PhashCheckpoint.open(Path(args.output))
    except CheckpointOpenError as e:
        logger.error(str(e))
        sys.exit(1)

    with checkpoint:
        try:
            candidates = read_input_list(args.input)
        except OSError as e:
            logger.error(f"Cannot open input list {args.input}: {e}")
            sys.exit(1)

        pipeline = PhashPipeline(
            checkpoint,
            workers=args.workers,
            queue_size=args.queue_size,
            show_progress=not args.no_progress
        )

        try:
            pipeline.run(candidates)
        except KeyboardInterrupt:
            logger.info("\nOperation cancelled by user")
            sys.exit(1)
        except Exception as e:
            logger.error(f"Fatal error: {e}", exc_info=True)
            sys.exit(1)


if __name__ == '__main__':
    main()
