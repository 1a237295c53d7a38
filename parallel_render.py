"""
Parallel rendering module for distributing single frame rendering across multiple processors.

This module uses MPI to split the image into vertical strips. Every rank
renders its strip independently, the slowest rank's render time is found with
a group-wide reduction, and rank 0 gathers the strips point-to-point and
assembles the final image.
"""
import logging
import time
import numpy as np
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from config import RenderConfig, ConfigurationError
from partition import Region, plan_all
from render_pipeline import RenderPipeline, Tile, PixelRenderer

logger = logging.getLogger(__name__)

# Per-rank and critical-path timings are reported even in quiet mode
timing_logger = logging.getLogger(__name__ + ".timing")
timing_logger.setLevel(logging.INFO)

TILE_TAG = 0


class ProtocolError(RuntimeError):
    """Raised when a received tile disagrees with the expected partition."""


class ParticipantTimeout(RuntimeError):
    """Raised when a participant's tile does not arrive in time."""

    def __init__(self, participant_index: int, timeout: float):
        self.participant_index = participant_index
        self.timeout = timeout
        super().__init__(
            f"Participant {participant_index} did not deliver its tile within {timeout:.3f} s"
        )


def get_world_comm():
    """Return MPI.COMM_WORLD."""
    from mpi4py import MPI
    return MPI.COMM_WORLD


class GroupReducer:
    """
    Collective reduction over every rank of a communicator.

    Every rank must call `reduce` exactly once per value being reduced;
    the combined value is only returned on the root.
    """

    def __init__(self, comm, root: int = 0):
        self.comm = comm
        self.root = root
        self.rank = comm.Get_rank()

    def reduce(self, value: Any, combine: Callable[[Any, Any], Any]) -> Optional[Any]:
        """
        Combine one value from every rank.

        Args:
            value: This rank's contribution
            combine: MPI.Op or associative binary function

        Returns:
            Combined value on the root, None elsewhere
        """
        result = self.comm.reduce(value, op=combine, root=self.root)
        if self.rank != self.root:
            return None
        return result

    def reduce_max(self, value: float) -> Optional[float]:
        from mpi4py import MPI
        return self.reduce(value, MPI.MAX)


@dataclass
class TileEnvelope:
    """Tile payload together with the metadata needed to place it."""
    participant_index: int
    region: Region
    sample_count: int
    payload: np.ndarray

    @classmethod
    def from_tile(cls, tile: Tile, participant_index: int) -> 'TileEnvelope':
        samples = tile.samples
        return cls(participant_index, tile.region, samples.size, samples)

    def validate(self, source: int, expected_region: Region):
        """
        Check the envelope against the receiver's own partition.

        Raises:
            ProtocolError: on any disagreement
        """
        if self.participant_index != source:
            raise ProtocolError(
                f"Tile from rank {source} claims to be from participant {self.participant_index}"
            )
        if self.region != expected_region:
            raise ProtocolError(
                f"Participant {source} rendered {self.region}, expected {expected_region}"
            )
        if self.sample_count != expected_region.num_samples:
            raise ProtocolError(
                f"Participant {source} announced {self.sample_count} samples, "
                f"expected {expected_region.num_samples}"
            )
        if self.payload.size != self.sample_count:
            raise ProtocolError(
                f"Participant {source} sent {self.payload.size} samples, "
                f"announced {self.sample_count}"
            )

    def to_tile(self) -> Tile:
        return Tile.from_samples(self.region, self.payload)


class TransferHandle:
    """
    Outstanding non-blocking tile send.

    Used as a context manager, the send is waited on when the block exits.
    """

    def __init__(self, request, dest: int, participant_index: int):
        self._request = request
        self.dest = dest
        self.participant_index = participant_index
        self._completed = False

    @property
    def done(self) -> bool:
        if not self._completed:
            self._completed = bool(self._request.test()[0])
        return self._completed

    def wait(self):
        if not self._completed:
            self._request.wait()
            self._completed = True

    def __enter__(self) -> 'TransferHandle':
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.wait()
        else:
            # The run is being aborted; a send to a root that gave up may never complete
            logger.warning(f"[Rank {self.participant_index}] Leaving tile send "
                           f"to rank {self.dest} incomplete after {exc_type.__name__}")
        return False


class TileExchanger:
    """
    Point-to-point tile transport from every rank to the root.

    Sends are non-blocking; receives block, optionally bounded by a timeout.
    """

    def __init__(self, comm, root: int = 0, timeout: Optional[float] = None,
                 poll_interval: float = 0.01):
        self.comm = comm
        self.root = root
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.rank = comm.Get_rank()

    def send_tile(self, tile: Tile, participant_index: int) -> TransferHandle:
        """
        Start sending a tile to the root and return immediately.

        The tile must not be modified until the returned handle completes.
        """
        envelope = TileEnvelope.from_tile(tile, participant_index)
        request = self.comm.isend(envelope, dest=self.root, tag=TILE_TAG)
        logger.debug(f"[Rank {self.rank}] Sending {envelope.sample_count} samples to rank {self.root}")
        return TransferHandle(request, self.root, participant_index)

    def _wait_for_message(self, source: int):
        deadline = time.perf_counter() + self.timeout
        while not self.comm.iprobe(source=source, tag=TILE_TAG):
            if time.perf_counter() >= deadline:
                raise ParticipantTimeout(source, self.timeout)
            time.sleep(self.poll_interval)

    def receive_tile(self, source: int, expected_region: Region) -> Tile:
        """
        Block until `source`'s tile has fully arrived.

        Args:
            source: Rank to receive from
            expected_region: Region the root planned for `source`

        Returns:
            Validated tile

        Raises:
            ParticipantTimeout: if a timeout is set and nothing arrives in time
            ProtocolError: if the envelope disagrees with `expected_region`
        """
        if self.timeout is not None:
            self._wait_for_message(source)

        envelope = self.comm.recv(source=source, tag=TILE_TAG)
        if not isinstance(envelope, TileEnvelope):
            raise ProtocolError(
                f"Unexpected message of type {type(envelope).__name__} from rank {source}"
            )
        envelope.validate(source, expected_region)
        logger.debug(f"[Rank {self.rank}] Received tile {envelope.region} from rank {source}")
        return envelope.to_tile()


class ImageAssembler:
    """Copies tiles into the full image at their region offsets."""

    def __init__(self, width: int, height: int):
        self.width = width
        self.height = height
        self._image = np.zeros((height, width, 3), dtype=np.float64)
        self._covered = np.zeros((height, width), dtype=bool)

    @property
    def image(self) -> np.ndarray:
        return self._image

    @property
    def is_complete(self) -> bool:
        return bool(self._covered.all())

    def place(self, tile: Tile):
        """
        Write a tile at (region.x0 + x, region.y0 + y).

        Raises:
            ProtocolError: if the region leaves the image or overlaps a placed tile
        """
        region = tile.region
        if region.x0 < 0 or region.y0 < 0 or region.x1 > self.width or region.y1 > self.height:
            raise ProtocolError(f"{region} lies outside the {self.width}x{self.height} image")

        rows, cols = region.as_slices()
        if self._covered[rows, cols].any():
            raise ProtocolError(f"{region} overlaps an already assembled tile")

        self._image[rows, cols] = tile.pixels
        self._covered[rows, cols] = True

    def assemble(self, tiles: List[Tile], regions: List[Region]) -> np.ndarray:
        """
        Place tiles given in participant index order.

        Args:
            tiles: Tiles, tiles[i] from participant i
            regions: Planned regions, regions[i] for participant i

        Returns:
            Full image
        """
        if len(tiles) != len(regions):
            raise ProtocolError(f"Got {len(tiles)} tiles for {len(regions)} regions")
        for index, (tile, region) in enumerate(zip(tiles, regions)):
            if tile.region != region:
                raise ProtocolError(
                    f"Tile {index} covers {tile.region}, expected {region}"
                )
            self.place(tile)
        return self._image


class ParallelRenderPipeline(RenderPipeline):
    """
    Rendering pipeline for one rank of a strip-partitioned parallel render.

    1. Each rank renders its own vertical strip and times it
    2. Each rank sends its strip to the root without blocking
    3. The root receives every strip in rank order and assembles the image
    4. The slowest render time is reduced to the root
    5. The root writes the image once
    """

    def __init__(self, config: RenderConfig, comm=None,
                 pixel_renderer: Optional[PixelRenderer] = None):
        """
        Initialize parallel render pipeline.

        Args:
            config: Configuration object
            comm: MPI communicator (defaults to MPI.COMM_WORLD)
            pixel_renderer: Override for the per-pixel colour function
        """
        super().__init__(config, pixel_renderer)

        self.comm = comm if comm is not None else get_world_comm()
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()
        self.root = config.exchange.root

        if self.root >= self.size:
            raise ConfigurationError(f"Root rank {self.root} does not exist in a group of {self.size}")

        self.reducer = GroupReducer(self.comm, self.root)
        self.exchanger = TileExchanger(
            self.comm,
            root=self.root,
            timeout=config.exchange.timeout,
            poll_interval=config.exchange.poll_interval
        )

        self.regions = None
        self.region = None
        self.elapsed = None
        self.max_time = None

        logger.info(f"Initialized ParallelRenderPipeline: rank {self.rank}/{self.size}")

    @property
    def is_root(self) -> bool:
        return self.rank == self.root

    def plan_regions(self) -> 'ParallelRenderPipeline':
        """Plan every rank's region; each rank computes the same plan."""
        self.regions = plan_all(
            self.size,
            self.config.image.width,
            self.config.image.height,
            self.config.partition.remainder_policy
        )
        self.region = self.regions[self.rank]
        logger.info(f"[Rank {self.rank}] Region: columns [{self.region.x0}, {self.region.x1}), "
                    f"rows [{self.region.y0}, {self.region.y1})")
        return self

    def collect_tiles(self) -> np.ndarray:
        """
        Receive every rank's tile in ascending rank order and assemble them.

        Only called on the root.
        """
        assembler = ImageAssembler(self.config.image.width, self.config.image.height)
        for source in range(self.size):
            tile = self.exchanger.receive_tile(source, self.regions[source])
            assembler.place(tile)

        if not assembler.is_complete:
            raise ProtocolError("Assembled image has pixels no participant rendered")
        return assembler.image

    def run_parallel(self, write_output: bool = True) -> Optional[np.ndarray]:
        """
        Execute this rank's part of the parallel render.

        Args:
            write_output: Whether the root writes the assembled image

        Returns:
            Assembled image on the root, None on other ranks
        """
        logger.info(f"[Rank {self.rank}] Starting parallel render")

        self.config.validate()
        self.plan_regions()
        self.load_scene()
        self.setup_view_plane()

        tile, self.elapsed = self.render_tile(self.region)
        timing_logger.info(f"[Rank {self.rank}] Time: {self.elapsed:.6f} s")

        image = None
        with self.exchanger.send_tile(tile, self.rank):
            if self.is_root:
                image = self.collect_tiles()

            # Every tile has reached the root before it joins the reduction
            self.max_time = self.reducer.reduce_max(self.elapsed)

            if self.is_root:
                timing_logger.info(f"Max Time: {self.max_time:.6f} s")
                if write_output:
                    self.write_output(image, self.size)

        if self.is_root:
            logger.info("=" * 60)
            logger.info("PARALLEL RENDERING COMPLETED SUCCESSFULLY")
            logger.info("=" * 60)
        return image


def main_parallel(args, comm=None):
    """
    Main function for parallel rendering.

    Args:
        args: Parsed command line arguments
        comm: MPI communicator (defaults to MPI.COMM_WORLD)

    Usage:
        mpirun -np 4 python main.py 600 600 1
    """
    if comm is None:
        comm = get_world_comm()
    rank = comm.Get_rank()

    # Setup logging (separate file per rank)
    if getattr(args, 'quiet', False):
        log_level = logging.WARNING
    elif getattr(args, 'verbose', False):
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO
    logging.basicConfig(
        level=log_level,
        format=f'%(asctime)s - [Rank {rank}] - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(f'parallel_render_rank{rank}.log'),
            logging.StreamHandler()
        ],
        force=True
    )

    try:
        # Load configuration
        if getattr(args, 'config', None):
            config = RenderConfig.from_json(args.config)
        else:
            config = RenderConfig.from_args(args)
        config.validate()

        pipeline = ParallelRenderPipeline(config, comm)
        pipeline.run_parallel()

    except Exception as e:
        logger.error(f"[Rank {rank}] Rendering failed: {e}", exc_info=True)
        if comm.Get_size() > 1:
            # Tear down every rank so no partial image is written
            comm.Abort(1)
        raise
    finally:
        if rank == 0:
            logger.info("Cleaning up")
