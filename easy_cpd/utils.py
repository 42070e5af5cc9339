"""Utility functions used throughout the project.

Classes:
    FrameTypes: Supported denormalization target frames.
    Normalization: Means, shared scale and normalized copies of a fixed and a moving point set.
    DimensionMismatchError: Raised if fixed and moving points differ in dimensionality.

Functions:
    eval_data: Convenience function that automatically determines the data type and loads the points accordingly.
    eval_data_pair: Evaluates fixed and moving data and checks that their dimensionality matches.
    read_point_matrix: Reads a point matrix from file.
    write_point_matrix: Writes a point matrix to file.
    normalize: Centers both point sets and divides them by one shared scale.
    default_sigma2: Data-driven initial variance of the Gaussian mixture.
    squared_distances: Pairwise squared euclidean distances between two point sets.
    affinity: Gaussian kernel matrix between two point sets.
    get_average_translation: The average translation between registered and moving points.
    get_point_cloud_from_points: Convenience function to obtain Open3D point clouds from points.
    draw_registration_result: Convenience function to visualize a registration result.
"""
import logging
import os
from enum import Flag, auto
from typing import Any, List, Union, Tuple

import numpy as np

PointTypes = Union[np.ndarray, List[List[float]], str, Any]

TEXT_FORMATS = (".txt", ".xyz", ".pts", ".asc")
OPEN3D_FORMATS = (".ply", ".pcd", ".xyzn", ".xyzrgb")

logger = logging.getLogger(__name__)


class FrameTypes(Flag):
    """Supported denormalization target frames."""
    FIXED = auto()
    MOVING = auto()


class DimensionMismatchError(ValueError):
    """Raised if fixed and moving points differ in dimensionality."""
    pass


class Normalization:
    """Means, shared scale and normalized copies of a fixed and a moving point set.

    Attributes:
        fixed_mean: The mean of the fixed points, shape (D,).
        moving_mean: The mean of the moving points, shape (D,).
        scale: The scale shared by both point sets.
        fixed: The normalized fixed points.
        moving: The normalized moving points.
    """

    def __init__(self,
                 fixed_mean: np.ndarray,
                 moving_mean: np.ndarray,
                 scale: float,
                 fixed: np.ndarray,
                 moving: np.ndarray):
        self.fixed_mean = fixed_mean
        self.moving_mean = moving_mean
        self.scale = scale
        self.fixed = fixed
        self.moving = moving

    def denormalize(self, points: np.ndarray, frame: FrameTypes = FrameTypes.FIXED) -> np.ndarray:
        """Maps normalized points back to original coordinates.

        Registration results live in the fixed set's frame, so that is the default.

        Args:
            points: The normalized points.
            frame: Whether to add back the mean of the fixed or the moving points.

        Returns:
            The points in original coordinates.
        """
        if frame == FrameTypes.FIXED:
            mean = self.fixed_mean
        elif frame == FrameTypes.MOVING:
            mean = self.moving_mean
        else:
            raise ValueError(f"`frame` needs to be one of `FrameTypes` but is {frame}.")
        return points * self.scale + mean


def eval_data(data: PointTypes, **kwargs: Any) -> np.ndarray:
    """Convenience function that automatically determines the data type and loads the points accordingly.

    Args:
        data: A NxD array or nested list, an Open3D point cloud or a path to a point file.

    Returns:
        The points as NxD float array.
    """
    if isinstance(data, str):
        logger.debug(f"Trying to read points from file {data}.")
        points = read_point_matrix(filename=data, **kwargs)
    elif isinstance(data, (np.ndarray, list, tuple)):
        points = np.asarray(data, dtype=float)
    elif hasattr(data, "points"):
        logger.debug("Data is point cloud. Converting.")
        points = np.asarray(data.points, dtype=float)
    else:
        raise TypeError(f"Can't process data of type {type(data)}.")

    if points.ndim != 2:
        raise ValueError(f"Points must be of shape NxD but are {points.shape}.")
    if len(points) == 0:
        raise ValueError("Points must not be empty.")
    return points


def eval_data_pair(fixed: PointTypes, moving: PointTypes, **kwargs: Any) -> Tuple[np.ndarray, np.ndarray]:
    """Evaluates fixed and moving data and checks that their dimensionality matches.

    Args:
        fixed: The fixed data.
        moving: The moving data.

    Returns:
        The fixed and moving points as float arrays.
    """
    _fixed = eval_data(data=fixed, **kwargs)
    _moving = eval_data(data=moving, **kwargs)
    if _fixed.shape[1] != _moving.shape[1]:
        raise DimensionMismatchError(f"Fixed points have dimension {_fixed.shape[1]} but moving points have "
                                     f"dimension {_moving.shape[1]}.")
    return _fixed, _moving


def read_point_matrix(filename: str, **kwargs: Any) -> np.ndarray:
    """Reads a point matrix from file.

    Text files hold one point per line with whitespace separated coordinates, `.csv` files use commas.
    Formats not readable by NumPy are read with Open3D.

    Args:
        filename: The path to the point file.

    Returns:
        The points read from file.
    """
    extension = os.path.splitext(filename)[1].lower()
    if extension == ".npy":
        return np.load(filename)
    elif extension == ".csv":
        return np.loadtxt(filename, delimiter=',', ndmin=2)
    elif extension in OPEN3D_FORMATS:
        import open3d as o3d
        point_cloud = o3d.io.read_point_cloud(filename=filename,
                                              format=kwargs.get("format", 'auto'),
                                              remove_nan_points=kwargs.get("remove_nan_points", True),
                                              remove_infinite_points=kwargs.get("remove_infinite_points", True),
                                              print_progress=kwargs.get("print_progress", False))
        return np.asarray(point_cloud.points)
    if extension not in TEXT_FORMATS:
        logger.debug(f"Unknown extension {extension}. Reading {filename} as whitespace delimited text.")
    return np.loadtxt(filename, ndmin=2)


def write_point_matrix(filename: str, points: np.ndarray) -> None:
    """Writes a point matrix to file. The format is chosen as in `read_point_matrix`.

    Args:
        filename: The path to the point file.
        points: The NxD points. Must be 3D for the Open3D point cloud formats.

    Raises:
        ValueError: If non-3D points are written to an Open3D point cloud format.
    """
    extension = os.path.splitext(filename)[1].lower()
    if extension == ".npy":
        np.save(filename, points)
    elif extension == ".csv":
        np.savetxt(filename, points, delimiter=',')
    elif extension in OPEN3D_FORMATS:
        if points.ndim != 2 or points.shape[1] != 3:
            raise ValueError(f"'{extension}' files store 3D points, got shape {points.shape}.")
        import open3d as o3d
        o3d.io.write_point_cloud(filename, get_point_cloud_from_points(points))
    else:
        np.savetxt(filename, points)


def normalize(fixed: np.ndarray, moving: np.ndarray) -> Normalization:
    """Centers both point sets and divides them by one shared scale.

    Each set is centered on its own mean. The scale is the larger of the two root mean squared point norms so the
    relative geometry of both sets is preserved.

    Args:
        fixed: The fixed points.
        moving: The moving points.

    Returns:
        The normalization holding means, scale and normalized copies.
    """
    fixed_mean = fixed.mean(axis=0)
    moving_mean = moving.mean(axis=0)
    _fixed = fixed - fixed_mean
    _moving = moving - moving_mean
    scale = max(np.sqrt(np.sum(_fixed ** 2) / len(fixed)), np.sqrt(np.sum(_moving ** 2) / len(moving)))
    if not scale > 0:
        raise ValueError("Can't normalize point sets which both collapse to a single point.")
    logger.debug(f"Normalizing with scale {scale}.")
    return Normalization(fixed_mean=fixed_mean,
                         moving_mean=moving_mean,
                         scale=scale,
                         fixed=_fixed / scale,
                         moving=_moving / scale)


def default_sigma2(fixed: np.ndarray, moving: np.ndarray) -> float:
    """Data-driven initial variance: the mean squared distance between all fixed and moving point pairs divided by D.

    Args:
        fixed: The fixed points.
        moving: The moving points.

    Returns:
        The initial variance.
    """
    num_fixed, dim = fixed.shape
    num_moving = len(moving)
    return float((num_moving * np.sum(fixed ** 2) +
                  num_fixed * np.sum(moving ** 2) -
                  2 * fixed.sum(axis=0) @ moving.sum(axis=0)) / (num_fixed * num_moving * dim))


def squared_distances(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Pairwise squared euclidean distances.

    Args:
        x: The first point set, shape (N, D).
        y: The second point set, shape (M, D).

    Returns:
        The NxM matrix of squared distances.
    """
    distances = np.sum(x ** 2, axis=1)[:, np.newaxis] + np.sum(y ** 2, axis=1)[np.newaxis, :] - 2.0 * x @ y.T
    # Cancellation can leave tiny negative values.
    return np.maximum(distances, 0.0)


def affinity(x: np.ndarray, y: np.ndarray, beta: float) -> np.ndarray:
    """Gaussian kernel matrix `exp(-|x_i - y_j|^2 / (2 beta^2))`.

    Args:
        x: The first point set, shape (N, D).
        y: The second point set, shape (M, D).
        beta: The kernel width.

    Returns:
        The NxM affinity matrix. Symmetric positive semi-definite if `x` is `y`.
    """
    return np.exp(squared_distances(x, y) / (-2.0 * beta * beta))


def get_average_translation(points: np.ndarray, moving: np.ndarray) -> np.ndarray:
    """The average translation between registered and moving points.

    Args:
        points: The registered points.
        moving: The moving points before registration.

    Returns:
        The column-wise mean of `points - moving`.
    """
    return np.mean(np.asarray(points) - np.asarray(moving), axis=0)


def get_point_cloud_from_points(points: np.ndarray) -> Any:
    """Convenience function to obtain Open3D point clouds from points.

    Args:
        points: Nx2 or Nx3 points. 2D points are placed in the z=0 plane.

    Returns:
        The Open3D point cloud.
    """
    import open3d as o3d
    _points = np.asarray(points, dtype=float)
    if _points.shape[1] == 2:
        _points = np.hstack([_points, np.zeros((len(_points), 1))])
    elif _points.shape[1] != 3:
        raise ValueError(f"Only 2D and 3D points can be converted to point clouds but points are {_points.shape}.")
    point_cloud = o3d.geometry.PointCloud()
    point_cloud.points = o3d.utility.Vector3dVector(_points)
    return point_cloud


def draw_registration_result(fixed: np.ndarray,
                             moving: np.ndarray,
                             points: np.ndarray,
                             window_name: str = "CPD Registration Result",
                             size: Tuple[int, int] = (800, 600)) -> None:
    """Visualizes the fixed (gray), moving (red) and registered (blue) points.

    Args:
        fixed: The fixed points.
        moving: The moving points before registration.
        points: The registered points.
        window_name: The name of the visualization window.
        size: The width and height of the visualization window.
    """
    import open3d as o3d
    geometries = list()
    for _points, color in [(fixed, [0.8, 0.8, 0.8]), (moving, [0.8, 0, 0]), (points, [0, 0, 0.8])]:
        point_cloud = get_point_cloud_from_points(_points)
        point_cloud.paint_uniform_color(color)
        geometries.append(point_cloud)
    o3d.visualization.draw_geometries(geometries, window_name=window_name, width=size[0], height=size[1])
