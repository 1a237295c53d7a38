from matplotlib import colors
import numpy as np
import h5py
import logging
import vtk
from pathlib import Path
from vtk.util import numpy_support

logger = logging.getLogger(__name__)


### Colour Utils ###
def to_rgb(clr):
    """Convert color to RGB tuple."""
    if clr is None:
        return None
    cc = colors.ColorConverter()
    return cc.to_rgb(clr)


def to_uint8(image: np.ndarray) -> np.ndarray:
    """Clamp a float image to [0, 1] and scale to 8-bit."""
    return (np.clip(image, 0.0, 1.0) * 255 + 0.5).astype(np.uint8)


### Image Output Utils ###
def image_to_vtkImageData(image: np.ndarray):
    """
    Convert an (H, W, 3) float image to vtkImageData.

    VTK stores rows bottom-up, so the image is flipped vertically.

    Args:
        image: Image array with row 0 at the top

    Returns:
        vtkImageData object
    """
    height, width = image.shape[:2]
    pixels = np.ascontiguousarray(to_uint8(image)[::-1])
    varray = numpy_support.numpy_to_vtk(
        num_array=pixels.reshape(-1, 3),
        deep=True,
        array_type=vtk.VTK_UNSIGNED_CHAR
    )

    imgdat = vtk.vtkImageData()
    imgdat.SetDimensions(width, height, 1)
    imgdat.GetPointData().SetScalars(varray)
    return imgdat


def write_image(image: np.ndarray, fname):
    """
    Write an image to PNG or JPEG, chosen from the file extension.

    Args:
        image: (H, W, 3) float image, values outside [0, 1] are clamped
        fname: Output filename ending in .png, .jpg or .jpeg
    """
    fname = str(fname)
    suffix = Path(fname).suffix.lower()
    if suffix == '.png':
        writer = vtk.vtkPNGWriter()
    elif suffix in ('.jpg', '.jpeg'):
        writer = vtk.vtkJPEGWriter()
        writer.SetQuality(95)
    else:
        raise ValueError(f"Unsupported image format: {fname}")

    writer.SetInputData(image_to_vtkImageData(image))
    writer.SetFileName(fname)
    writer.Write()
    logger.debug(f"Wrote {image.shape[1]}x{image.shape[0]} image to {fname}")


def write_h5(image: np.ndarray, fname, **attrs):
    """
    Write the raw float image buffer to HDF5.

    Args:
        image: Image array
        fname: Output filename
        attrs: Extra attributes stored on the dataset
    """
    with h5py.File(fname, 'w') as f:
        dset = f.create_dataset('image', data=image)
        for key, value in attrs.items():
            dset.attrs[key] = value
    logger.debug(f"Wrote raw image buffer to {fname}")


def load_h5(fname) -> np.ndarray:
    """
    Load data from HDF5 file.

    Args:
        fname: Filename

    Returns:
        Data array
    """
    with h5py.File(fname, "r") as f:
        a_group_key = list(f.keys())[0]
        return f[a_group_key][()]


### Other Utils ###
def ensure_output_directory(output_path):
    """
    Ensure output directory exists.

    Args:
        output_path: Output file path
    """
    output_dir = Path(output_path).parent
    if output_dir and not output_dir.exists():
        output_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Created output directory: {output_dir}")
