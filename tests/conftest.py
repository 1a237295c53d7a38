"""
Shared fixtures.

`ThreadWorld` runs N ranks as threads of the test process and hands each one
a communicator offering the parts of the mpi4py Comm API the renderer uses.
"""
import functools
import queue
import threading
import numpy as np
import pytest

from config import RenderConfig, ImageConfig, OutputConfig


class _Request:
    """Completed-on-post request, like a buffered MPI send."""

    def test(self):
        return True, None

    def wait(self):
        return None


class _PendingRequest:
    def __init__(self):
        self._done = threading.Event()

    def complete(self):
        self._done.set()

    def test(self):
        return self._done.is_set(), None

    def wait(self):
        self._done.wait()


class ThreadWorld:
    def __init__(self, size: int):
        self.size = size
        self._mailboxes = {}
        self._lock = threading.Lock()
        self._barrier = threading.Barrier(size)
        self._gather_slots = [None] * size
        self.abort_codes = []

    def mailbox(self, source, dest, tag):
        with self._lock:
            return self._mailboxes.setdefault((source, dest, tag), queue.Queue())

    def comm(self, rank: int) -> 'ThreadComm':
        return ThreadComm(self, rank)

    def run(self, target, timeout: float = 30.0):
        """
        Call target(comm) on every rank concurrently.

        Returns:
            List of per-rank results; re-raises the first rank failure
        """
        results = [None] * self.size
        errors = [None] * self.size

        def worker(rank):
            try:
                results[rank] = target(self.comm(rank))
            except BaseException as e:  # collected and re-raised below
                errors[rank] = e
                self._barrier.abort()

        threads = [threading.Thread(target=worker, args=(r,), daemon=True)
                   for r in range(self.size)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout)
            if t.is_alive():
                raise TimeoutError("rank thread did not finish")
        for e in errors:
            if e is not None:
                raise e
        return results


class ThreadComm:
    def __init__(self, world: ThreadWorld, rank: int):
        self.world = world
        self.rank = rank

    def Get_rank(self):
        return self.rank

    def Get_size(self):
        return self.world.size

    def isend(self, obj, dest, tag=0):
        self.world.mailbox(self.rank, dest, tag).put(obj)
        return _Request()

    def iprobe(self, source, tag=0):
        return not self.world.mailbox(source, self.rank, tag).empty()

    def recv(self, buf=None, source=0, tag=0):
        return self.world.mailbox(source, self.rank, tag).get()

    def gather(self, obj, root=0):
        self.world._gather_slots[self.rank] = obj
        self.world._barrier.wait()
        result = list(self.world._gather_slots) if self.rank == root else None
        self.world._barrier.wait()
        return result

    def reduce(self, obj, op, root=0):
        values = self.gather(obj, root=root)
        if values is None:
            return None
        return functools.reduce(op, values)

    def Barrier(self):
        self.world._barrier.wait()

    def Abort(self, errorcode=0):
        self.world.abort_codes.append(errorcode)


@pytest.fixture
def thread_world():
    return ThreadWorld


@pytest.fixture
def pending_request():
    return _PendingRequest


def coordinate_color(scene, x, y, samples):
    """Synthetic renderer whose colour encodes the pixel coordinate."""
    return np.array([x, y, 0.0])


@pytest.fixture
def coordinate_renderer():
    return coordinate_color


@pytest.fixture
def small_config(tmp_path):
    return RenderConfig(
        image=ImageConfig(width=4, height=2, samples=1),
        output=OutputConfig(output_dir=str(tmp_path), image_format='png')
    )
