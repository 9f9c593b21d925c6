"""Named-stream datasets with simple threaded batching."""
from __future__ import annotations
import os
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, Iterator, Optional

import numpy as np


class Dataset:
    """A set of equally long arrays keyed by stream name, e.g.
    ``Dataset({'data': images, 'output': labels})``."""

    def __init__(self, streams: Dict[str, np.ndarray]):
        streams = {name: np.asarray(values) for name, values in streams.items()}
        lengths = {name: len(values) for name, values in streams.items()}
        if not streams:
            raise ValueError("Dataset needs at least one stream")
        if len(set(lengths.values())) != 1:
            raise ValueError(f"All streams must have the same length, got {lengths}")
        self.streams = streams

    def __len__(self):
        return len(next(iter(self.streams.values())))

    def batches(self, batch_size: int, shuffle: bool = True, preprocess: Optional[Callable] = None,
                num_threads: Optional[int] = None, drop_remainder: bool = False,
                rng: Optional[np.random.Generator] = None) -> Iterator[Dict[str, np.ndarray]]:
        n = len(self)
        idx = np.arange(n)
        if shuffle:
            (rng or np.random.default_rng()).shuffle(idx)
        streams = {name: values[idx] for name, values in self.streams.items()}
        stop = n - n % batch_size if drop_remainder else n
        if num_threads is None:
            num_threads = min(8, os.cpu_count() or 2)

        def load_batch(start):
            end = min(start + batch_size, n)
            batch = {name: values[start:end] for name, values in streams.items()}
            if preprocess:
                batch = preprocess(batch)
            return batch

        # simple prefetch pipeline
        with ThreadPoolExecutor(max_workers=num_threads) as ex:
            futures = []
            for start in range(0, stop, batch_size):
                futures.append(ex.submit(load_batch, start))
                if len(futures) >= num_threads:
                    yield futures.pop(0).result()
            # drain
            for fut in futures:
                yield fut.result()
