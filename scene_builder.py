"""
Scene description: materials, spheres, lights and camera.

Provides the built-in default scene and a JSON scene file loader.
"""
import json
import logging
import numpy as np
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Union, Sequence

from utils import to_rgb

logger = logging.getLogger(__name__)

ColorLike = Union[float, str, Sequence[float]]


def as_color(value: ColorLike) -> np.ndarray:
    """
    Convert a scalar, RGB triple or colour name into a float RGB array.

    Args:
        value: 0.5 -> (0.5, 0.5, 0.5); [r, g, b]; 'red', '#ff0000', ...

    Returns:
        numpy array of shape (3,)
    """
    if isinstance(value, str):
        return np.array(to_rgb(value), dtype=float)
    if np.isscalar(value):
        return np.full(3, float(value))
    color = np.asarray(value, dtype=float)
    if color.shape != (3,):
        raise ValueError(f"Colour must have 3 channels, got {value!r}")
    return color


def as_vector(value: Sequence[float]) -> np.ndarray:
    vec = np.asarray(value, dtype=float)
    if vec.shape != (3,):
        raise ValueError(f"Vector must have 3 components, got {value!r}")
    return vec


class Material:
    """Phong material with optional transparency."""

    def __init__(self, diffuse: ColorLike, specular: ColorLike, shininess: float):
        """
        Initialize material.

        Args:
            diffuse: Diffuse colour
            specular: Specular colour, also used as mirror reflectance
            shininess: Phong exponent
        """
        self.diffuse = as_color(diffuse)
        self.specular = as_color(specular)
        self.shininess = float(shininess)
        self.transparency = 0.0
        self.refraction_index = 1.0

    @property
    def is_transparent(self) -> bool:
        return self.transparency > 0.0

    def make_transparent(self, transparency: float, refraction_index: float) -> 'Material':
        self.transparency = float(transparency)
        self.refraction_index = float(refraction_index)
        return self

    def __repr__(self):
        return (f"Material(diffuse={self.diffuse.tolist()}, specular={self.specular.tolist()}, "
                f"shininess={self.shininess}, transparency={self.transparency})")


@dataclass
class Sphere:
    center: np.ndarray
    radius: float
    material: Material

    def __post_init__(self):
        self.center = as_vector(self.center)
        self.radius = float(self.radius)
        if self.radius <= 0:
            raise ValueError(f"Sphere radius must be positive, got {self.radius}")


@dataclass
class PointLight:
    position: np.ndarray
    color: np.ndarray

    def __post_init__(self):
        self.position = as_vector(self.position)
        self.color = as_color(self.color)


@dataclass
class Camera:
    """Pinhole camera looking from `position` towards `look_at`."""
    position: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, -20.0]))
    look_at: np.ndarray = field(default_factory=lambda: np.zeros(3))
    up: np.ndarray = field(default_factory=lambda: np.array([0.0, 1.0, 0.0]))

    def __post_init__(self):
        self.position = as_vector(self.position)
        self.look_at = as_vector(self.look_at)
        self.up = as_vector(self.up)

    def basis(self):
        """Return orthonormal (right, up, forward) vectors."""
        forward = self.look_at - self.position
        norm = np.linalg.norm(forward)
        if norm == 0:
            raise ValueError("Camera position and look_at coincide")
        forward = forward / norm
        right = np.cross(self.up, forward)
        right = right / np.linalg.norm(right)
        up = np.cross(forward, right)
        return right, up, forward


class Scene:
    """Container of everything the pixel renderer needs."""

    def __init__(self):
        self.spheres: List[Sphere] = []
        self.lights: List[PointLight] = []
        self.background = np.zeros(3)
        self.ambient = np.zeros(3)
        self.recursion_limit = 5
        self.camera = Camera()

    def add_sphere(self, sphere: Sphere):
        self.spheres.append(sphere)

    def add_light(self, light: PointLight):
        self.lights.append(light)

    def set_background(self, color: ColorLike):
        self.background = as_color(color)

    def set_ambient(self, color: ColorLike):
        self.ambient = as_color(color)

    def set_recursion_limit(self, limit: int):
        if limit < 0:
            raise ValueError(f"Recursion limit must be >= 0, got {limit}")
        self.recursion_limit = int(limit)

    def set_camera(self, camera: Camera):
        self.camera = camera

    def __str__(self):
        return (f"Scene({len(self.spheres)} spheres, {len(self.lights)} lights, "
                f"recursion_limit={self.recursion_limit})")


def build_default_scene() -> Scene:
    """
    Build the built-in demo scene.

    Seven spheres of mixed materials lit by three coloured point lights,
    viewed from (0, 0, -20).
    """
    red = (1, 0.2, 0.2)
    blue = (0.2, 0.2, 1)
    green = (0.2, 1, 0.2)
    white = (0.8, 0.8, 0.8)
    yellow = (1, 1, 0.2)

    metallic_red = Material(red, white, 50)
    mirror_black = Material(0.0, 0.9, 1000)
    matte_white = Material(0.7, 0.3, 1)
    metallic_yellow = Material(yellow, white, 250)

    transparent_green = Material(green, 0.8, 0.2).make_transparent(1.0, 1.03)
    transparent_blue = Material(blue, 0.4, 0.6).make_transparent(0.9, 0.7)

    scene = Scene()
    scene.add_sphere(Sphere((0, -2, 7), 1, transparent_blue))
    scene.add_sphere(Sphere((-3, 2, 11), 2, metallic_red))
    scene.add_sphere(Sphere((0, 2, 8), 1, mirror_black))
    scene.add_sphere(Sphere((1.5, -0.5, 7), 1, transparent_green))
    scene.add_sphere(Sphere((-2, -1, 6), 0.7, metallic_yellow))
    scene.add_sphere(Sphere((2.2, 0.5, 9), 1.2, matte_white))
    scene.add_sphere(Sphere((4, -1, 10), 0.7, metallic_red))

    scene.add_light(PointLight((-15, 0, -15), white))
    scene.add_light(PointLight((1, 1, 0), blue))
    scene.add_light(PointLight((0, -10, 6), red))

    scene.set_background((0.05, 0.05, 0.08))
    scene.set_ambient((0.1, 0.1, 0.1))
    scene.set_recursion_limit(20)

    scene.set_camera(Camera((0, 0, -20), (0, 0, 0)))
    return scene


def _parse_material(name: str, entry: dict) -> Material:
    try:
        material = Material(entry['diffuse'], entry['specular'], entry['shininess'])
    except KeyError as e:
        raise ValueError(f"Material {name!r} is missing {e}") from e
    if 'transparency' in entry:
        material.make_transparent(entry['transparency'], entry.get('refraction_index', 1.0))
    return material


def load_scene(path: Union[str, Path]) -> Scene:
    """
    Load a scene from a JSON file.

    Expected layout::

        {
          "materials": {"red": {"diffuse": "red", "specular": 0.8, "shininess": 50}},
          "spheres": [{"center": [0, 0, 5], "radius": 1, "material": "red"}],
          "lights": [{"position": [-15, 0, -15], "color": 0.8}],
          "background": [0.05, 0.05, 0.08],
          "ambient": 0.1,
          "recursion_limit": 20,
          "camera": {"position": [0, 0, -20], "look_at": [0, 0, 0]}
        }

    Args:
        path: Scene file path

    Returns:
        Scene instance
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Scene file not found: {path}")

    logger.info(f"Loading scene from {path}")
    with open(path, 'r') as f:
        data = json.load(f)

    materials = {name: _parse_material(name, entry)
                 for name, entry in data.get('materials', {}).items()}

    scene = Scene()
    for i, sphere in enumerate(data.get('spheres', [])):
        material_name = sphere.get('material')
        if material_name not in materials:
            raise ValueError(f"Sphere {i} references unknown material {material_name!r}")
        try:
            scene.add_sphere(Sphere(sphere['center'], sphere['radius'], materials[material_name]))
        except KeyError as e:
            raise ValueError(f"Sphere {i} is missing {e}") from e

    for i, light in enumerate(data.get('lights', [])):
        try:
            scene.add_light(PointLight(light['position'], light['color']))
        except KeyError as e:
            raise ValueError(f"Light {i} is missing {e}") from e

    if 'background' in data:
        scene.set_background(data['background'])
    if 'ambient' in data:
        scene.set_ambient(data['ambient'])
    if 'recursion_limit' in data:
        scene.set_recursion_limit(data['recursion_limit'])
    if 'camera' in data:
        try:
            scene.set_camera(Camera(**data['camera']))
        except TypeError as e:
            raise ValueError(f"Camera entry is malformed: {e}") from e

    logger.info(f"Loaded {scene}")
    return scene
