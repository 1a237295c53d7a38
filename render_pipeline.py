"""
Main rendering pipeline: scene setup, per-region tile rendering and output.
"""
import logging
import time
import numpy as np
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar

from config import RenderConfig
from partition import Region
from raytracer import ViewPlane
from scene_builder import Scene, build_default_scene, load_scene
from utils import write_image, write_h5, ensure_output_directory

logger = logging.getLogger(__name__)

T = TypeVar('T')
PixelRenderer = Callable[[Scene, int, int, int], np.ndarray]


@dataclass
class Tile:
    """
    Rendered colours of one region.

    `pixels` has shape (region.height, region.width, 3) and is stored row-major,
    so the flat sample order is row by row, left to right, RGB.
    """
    region: Region
    pixels: np.ndarray

    def __post_init__(self):
        expected = (self.region.height, self.region.width, 3)
        if self.pixels.shape != expected:
            raise ValueError(f"Tile pixels have shape {self.pixels.shape}, expected {expected}")

    @property
    def samples(self) -> np.ndarray:
        """Flat, ordered sequence of colour samples."""
        return self.pixels.reshape(-1)

    @property
    def num_pixels(self) -> int:
        return self.pixels.shape[0] * self.pixels.shape[1]

    @classmethod
    def empty(cls, region: Region) -> 'Tile':
        return cls(region, np.zeros((region.height, region.width, 3), dtype=np.float64))

    @classmethod
    def from_samples(cls, region: Region, samples: np.ndarray) -> 'Tile':
        """Rebuild a tile from its flat samples; the length must match the region."""
        samples = np.asarray(samples, dtype=np.float64)
        if samples.size != region.num_samples:
            raise ValueError(
                f"Got {samples.size} samples for a region of {region.num_samples}"
            )
        return cls(region, samples.reshape(region.height, region.width, 3))


def render_region(scene: Scene, region: Region, samples_per_pixel: int,
                  pixel_renderer: PixelRenderer) -> Tile:
    """
    Render every pixel of a region.

    Pixels are visited row by row and the renderer is called with global
    image coordinates.

    Args:
        scene: Scene to render
        region: Region of the full image to compute
        samples_per_pixel: Samples passed to the pixel renderer
        pixel_renderer: Callable (scene, x, y, samples) -> RGB

    Returns:
        Tile covering `region`
    """
    tile = Tile.empty(region)
    for y in range(region.y0, region.y1):
        row = tile.pixels[y - region.y0]
        for x in range(region.x0, region.x1):
            row[x - region.x0] = pixel_renderer(scene, x, y, samples_per_pixel)
    return tile


def measure(fn: Callable[[], T]) -> Tuple[T, float]:
    """
    Call `fn` and time it.

    Returns:
        (result, elapsed wall-clock seconds)
    """
    before = time.perf_counter()
    result = fn()
    after = time.perf_counter()
    return result, after - before


class RenderPipeline:
    """
    Rendering pipeline for a single process.

    This class provides a chainable interface for loading the scene,
    setting up the view plane, rendering regions and writing output.
    """

    def __init__(self, config: RenderConfig, pixel_renderer: Optional[PixelRenderer] = None):
        """
        Initialize render pipeline.

        Args:
            config: Configuration object containing all rendering settings
            pixel_renderer: Override for the per-pixel colour function;
                            defaults to the view plane's ray tracer

        Example:
            config = RenderConfig.from_json('config.json')
            pipeline = RenderPipeline(config)
        """
        self.config = config
        self.scene = None
        self.view_plane = None
        self.pixel_renderer = pixel_renderer

        logger.info("Initialized RenderPipeline")
        logger.debug(f"Configuration:\n{config}")

    def load_scene(self) -> 'RenderPipeline':
        """
        Load the scene file, or build the default scene if none is configured.

        Returns:
            Self for method chaining
        """
        scene_file = self.config.scene.scene_file
        if scene_file:
            self.scene = load_scene(scene_file)
        else:
            logger.info("Using built-in scene")
            self.scene = build_default_scene()
        return self

    def setup_view_plane(self) -> 'RenderPipeline':
        """
        Create the view plane from the image and scene configuration.

        Returns:
            Self for method chaining
        """
        size_x, size_y = self.config.scene.view_plane_size()
        self.view_plane = ViewPlane(
            self.config.image.width,
            self.config.image.height,
            size_x,
            size_y,
            self.config.scene.view_plane_distance
        )
        if self.pixel_renderer is None:
            self.pixel_renderer = self.view_plane.compute_pixel
        logger.debug(f"View plane {size_x:.3f}x{size_y:.3f} at distance "
                     f"{self.config.scene.view_plane_distance}")
        return self

    def render_tile(self, region: Region) -> Tuple[Tile, float]:
        """
        Render one region and measure how long it took.

        Args:
            region: Region to render

        Returns:
            (tile, elapsed seconds)
        """
        if self.scene is None:
            self.load_scene()
        if self.pixel_renderer is None:
            self.setup_view_plane()

        return measure(lambda: render_region(
            self.scene, region, self.config.image.samples, self.pixel_renderer
        ))

    def write_output(self, image: np.ndarray, size: int):
        """
        Persist the assembled image.

        Args:
            image: Full (H, W, 3) image
            size: Number of participants, used in the file name
        """
        output_path = self.config.output.get_output_path(size)
        ensure_output_directory(output_path)
        write_image(image, output_path)
        logger.info(f"Saved image to {output_path}")

        if self.config.output.save_raw:
            raw_path = self.config.output.get_raw_path(size)
            write_h5(image, raw_path, participants=size,
                     samples=self.config.image.samples)
            logger.info(f"Saved raw buffer to {raw_path}")

    def run(self) -> np.ndarray:
        """
        Render the full image in this process and write it.

        Returns:
            Full image array
        """
        logger.info("Starting render pipeline")
        self.config.validate()
        self.load_scene()
        self.setup_view_plane()

        full = Region(0, self.config.image.width, 0, self.config.image.height)
        tile, elapsed = self.render_tile(full)
        logger.info(f"Rendered {full.width}x{full.height} in {elapsed:.6f} s")

        self.write_output(tile.pixels, 1)
        logger.info("Render pipeline complete")
        return tile.pixels
