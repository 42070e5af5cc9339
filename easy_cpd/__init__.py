"""An easy to use implementation of the Coherent Point Drift (CPD) point set registration algorithm.

Files:
    __init__.py: This file.
    registration.py: Rigid and non-rigid CPD registration.
    comparer.py: Gaussian mixture responsibility (E-step) computation.
    interfaces.py: Interfaces and base classes.
    utils.py: Utility functions used throughout the project.

Classes:
    registration.Rigid: Rigid (rotation, translation, scale) CPD transform.
    registration.Nonrigid: Non-rigid (coherent motion) CPD transform.
    registration.RegistrationConfig: Validated configuration of a registration run.
    registration.Runner: Runs the CPD expectation-maximization loop.
    comparer.DirectComparer: Dense, exact responsibility computation.
    comparer.UnknownComparerError: Raised for unknown comparer names.
    interfaces.Probabilities: E-step sufficient statistics.
    interfaces.RegistrationResult: Result of a registration run.
    interfaces.RigidRegistrationResult: Result of a rigid registration run.
    interfaces.NonrigidRegistrationResult: Result of a non-rigid registration run.
    interfaces.ComparerInterface: Interface for all comparer classes.
    interfaces.TransformInterface: Interface for all transform classes.
    utils.Normalization: Means, scale and normalized copies of two point sets.
    utils.FrameTypes: Supported denormalization target frames.
    utils.DimensionMismatchError: Raised if fixed and moving points differ in dimensionality.

Functions:
    get_logger: Returns the package-wide logger
    set_logger_level: Sets the package-wide logger level.
    registration.rigid: Convenience function running a rigid registration.
    registration.nonrigid: Convenience function running a non-rigid registration.
    comparer.get_comparer: Returns a comparer by name.
    comparer.register_comparer: Registers a comparer factory under a name.
    comparer.available_comparers: Returns the names of all registered comparers.
    utils.eval_data: Convenience function that automatically determines the data type and loads the points.
    utils.read_point_matrix: Reads a point matrix from file.
    utils.write_point_matrix: Writes a point matrix to file.
    utils.normalize: Centers and jointly scales two point sets.
    utils.default_sigma2: Data-driven initial variance.
    utils.squared_distances: Pairwise squared euclidean distances.
    utils.affinity: Gaussian kernel matrix between two point sets.
    utils.get_average_translation: Average offset between registered and moving points.
    utils.get_point_cloud_from_points: Convenience function to obtain Open3D point clouds from points.
    utils.draw_registration_result: Visualizes fixed, moving and registered points.
"""

import logging

logger = logging.getLogger(__name__)


def get_logger() -> logging.Logger:
    """Returns the package-wide logger.

    Returns:
        logging.Logger: The package-wide logger.
    """
    return logger


def set_logger_level(level: int) -> None:
    """Sets the package-wide logger level.

    Args:
        level (int): The logger level.
    """
    logger.setLevel(level=level)
