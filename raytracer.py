"""
Whitted-style pixel renderer.

`ViewPlane.compute_pixel` maps integer pixel coordinates to a colour for a
given scene. It has no side effects apart from drawing jitter offsets when
more than one sample per pixel is requested.
"""
import logging
import math
import numpy as np
from typing import Optional, Tuple

from scene_builder import Scene, Sphere

logger = logging.getLogger(__name__)

# Offset applied to secondary ray origins to avoid self-intersection
EPSILON = 1e-6


def normalize(v: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(v)
    if norm == 0:
        return v
    return v / norm


def reflect(direction: np.ndarray, normal: np.ndarray) -> np.ndarray:
    return direction - 2.0 * np.dot(direction, normal) * normal


def refract(direction: np.ndarray, normal: np.ndarray, eta: float) -> Optional[np.ndarray]:
    """Refract a unit direction through a surface; None on total internal reflection."""
    cos_i = -np.dot(direction, normal)
    k = 1.0 - eta * eta * (1.0 - cos_i * cos_i)
    if k < 0:
        return None
    return normalize(eta * direction + (eta * cos_i - math.sqrt(k)) * normal)


def intersect_sphere(sphere: Sphere, origin: np.ndarray, direction: np.ndarray) -> float:
    """
    Distance along a unit-direction ray to the nearest hit in front of the origin.

    Returns:
        Hit distance, or math.inf when the ray misses
    """
    oc = origin - sphere.center
    b = np.dot(oc, direction)
    c = np.dot(oc, oc) - sphere.radius * sphere.radius
    disc = b * b - c
    if disc < 0:
        return math.inf
    sqrt_disc = math.sqrt(disc)
    t = -b - sqrt_disc
    if t > EPSILON:
        return t
    t = -b + sqrt_disc
    if t > EPSILON:
        return t
    return math.inf


def nearest_hit(scene: Scene, origin: np.ndarray,
                direction: np.ndarray) -> Tuple[Optional[Sphere], float]:
    best, best_t = None, math.inf
    for sphere in scene.spheres:
        t = intersect_sphere(sphere, origin, direction)
        if t < best_t:
            best, best_t = sphere, t
    return best, best_t


def is_shadowed(scene: Scene, point: np.ndarray, to_light: np.ndarray, distance: float) -> bool:
    """True if an opaque sphere lies between `point` and the light."""
    for sphere in scene.spheres:
        if sphere.material.is_transparent:
            continue
        if intersect_sphere(sphere, point, to_light) < distance:
            return True
    return False


def trace(scene: Scene, origin: np.ndarray, direction: np.ndarray, depth: int = 0) -> np.ndarray:
    """
    Trace one ray through the scene.

    Args:
        scene: Scene to render
        origin: Ray origin
        direction: Unit ray direction
        depth: Current recursion depth

    Returns:
        RGB colour as a numpy array
    """
    sphere, t = nearest_hit(scene, origin, direction)
    if sphere is None:
        return scene.background.copy()

    material = sphere.material
    point = origin + t * direction
    normal = (point - sphere.center) / sphere.radius
    entering = np.dot(direction, normal) < 0
    if not entering:
        normal = -normal

    color = scene.ambient * material.diffuse
    view = -direction

    for light in scene.lights:
        to_light = light.position - point
        distance = np.linalg.norm(to_light)
        to_light = to_light / distance
        if is_shadowed(scene, point + EPSILON * normal, to_light, distance):
            continue

        lambert = max(0.0, np.dot(normal, to_light))
        color = color + material.diffuse * light.color * lambert

        highlight = max(0.0, np.dot(reflect(-to_light, normal), view))
        if highlight > 0:
            color = color + material.specular * light.color * highlight ** material.shininess

    if depth >= scene.recursion_limit:
        return color

    if np.any(material.specular > 0):
        reflected = normalize(reflect(direction, normal))
        color = color + material.specular * trace(scene, point + EPSILON * normal, reflected, depth + 1)

    if material.is_transparent:
        eta = 1.0 / material.refraction_index if entering else material.refraction_index
        refracted = refract(direction, normal, eta)
        if refracted is not None:
            through = trace(scene, point - EPSILON * normal, refracted, depth + 1)
            color = (1.0 - material.transparency) * color + material.transparency * through

    return color


class ViewPlane:
    """
    Rectangular view plane in front of the camera.

    Pixel (0, 0) is the top-left corner; x grows to the right and y downwards.
    """

    def __init__(self, resolution_x: int, resolution_y: int,
                 size_x: float, size_y: float, distance: float,
                 seed: Optional[int] = None):
        """
        Initialize view plane.

        Args:
            resolution_x, resolution_y: Image resolution in pixels
            size_x, size_y: Physical size of the plane
            distance: Distance from the camera to the plane
            seed: Seed for the supersampling jitter
        """
        self.resolution_x = resolution_x
        self.resolution_y = resolution_y
        self.size_x = size_x
        self.size_y = size_y
        self.distance = distance
        self._rng = np.random.default_rng(seed)

    def _offsets(self, samples: int):
        if samples <= 1:
            return [(0.5, 0.5)]
        # Stratified jitter over a ceil(sqrt(n))^2 grid, first n cells
        n = math.ceil(math.sqrt(samples))
        cells = [(i, j) for j in range(n) for i in range(n)][:samples]
        jitter = self._rng.random((samples, 2))
        return [((i + dx) / n, (j + dy) / n) for (i, j), (dx, dy) in zip(cells, jitter)]

    def compute_pixel(self, scene: Scene, x: int, y: int, samples: int = 1) -> np.ndarray:
        """
        Compute the colour of one pixel.

        Args:
            scene: Scene to render
            x, y: Global pixel coordinates
            samples: Number of rays averaged for this pixel

        Returns:
            RGB colour as a numpy array of shape (3,)
        """
        right, up, forward = scene.camera.basis()
        eye = scene.camera.position
        center = eye + forward * self.distance

        color = np.zeros(3)
        offsets = self._offsets(samples)
        for dx, dy in offsets:
            u = ((x + dx) / self.resolution_x - 0.5) * self.size_x
            v = (0.5 - (y + dy) / self.resolution_y) * self.size_y
            target = center + u * right + v * up
            color += trace(scene, eye, normalize(target - eye))
        return color / len(offsets)

    def __call__(self, scene: Scene, x: int, y: int, samples: int = 1) -> np.ndarray:
        return self.compute_pixel(scene, x, y, samples)
