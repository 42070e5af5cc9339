"""Interfaces and base classes.

Classes:
    Probabilities: Sufficient statistics of the Gaussian mixture responsibilities computed in the E-step.
    RegistrationResult: Result of a registration run. Never mutated once returned.
    RigidRegistrationResult: Registration result with added rotation, scale and translation.
    NonrigidRegistrationResult: Registration result with added deformation weights.
    ComparerInterface: Interface for all comparer (E-step) classes.
    TransformInterface: Interface for all transform (M-step) classes.
"""
import copy
import logging
from abc import ABC, abstractmethod
from typing import Any, Union

import numpy as np

from .utils import Normalization

logger = logging.getLogger(__name__)


class Probabilities:
    """Sufficient statistics of the Gaussian mixture responsibilities computed in the E-step.

    Attributes:
        p1: Total responsibility mass per moving point, shape (M,).
        pt1: Total responsibility mass per fixed point, shape (N,).
        px: Responsibility weighted sum of fixed points per moving point, shape (M, D).
        l: Negative log-likelihood proxy. Only meaningful relative to other iterations.
        correspondence: Index of the most responsible fixed point per moving point, shape (M,). Only computed on
                        demand.
    """

    def __init__(self,
                 p1: np.ndarray,
                 pt1: np.ndarray,
                 px: np.ndarray,
                 l: float,
                 correspondence: Union[np.ndarray, None] = None):
        self.p1 = p1
        self.pt1 = pt1
        self.px = px
        self.l = l
        self.correspondence = correspondence


class RegistrationResult:
    """Result of a registration run.

    Results are snapshots. Anything producing a modified result returns a new object through `replace`.

    Attributes:
        points: The registered moving points, shape (M, D).
        sigma2: The final variance estimate.
        iterations: The number of iterations run.
        runtime: The runtime in seconds.
        correspondence: Index of the corresponding fixed point per moving point if requested, `None` otherwise.
    """

    def __init__(self,
                 points: np.ndarray,
                 sigma2: float,
                 iterations: int = 0,
                 runtime: float = 0.0,
                 correspondence: Union[np.ndarray, None] = None):
        self.points = points
        self.sigma2 = sigma2
        self.iterations = iterations
        self.runtime = runtime
        self.correspondence = correspondence

    def replace(self, **kwargs: Any) -> "RegistrationResult":
        """Returns a shallow copy of this result with the attributes in `kwargs` replaced.

        Returns:
            The new registration result.
        """
        result = copy.copy(self)
        for key, value in kwargs.items():
            if not hasattr(result, key):
                raise AttributeError(f"{type(self).__name__} has no attribute `{key}`.")
            setattr(result, key, value)
        return result

    def __repr__(self) -> str:
        return (f"{type(self).__name__}(points={self.points.shape}, sigma2={self.sigma2}, "
                f"iterations={self.iterations}, runtime={self.runtime})")


class RigidRegistrationResult(RegistrationResult):
    """Registration result with added rotation, scale and translation.

    Attributes:
        rotation: The DxD rotation matrix.
        scale: The uniform scale.
        translation: The translation vector, shape (D,).
    """

    def __init__(self,
                 points: np.ndarray,
                 sigma2: float,
                 rotation: np.ndarray,
                 scale: float,
                 translation: np.ndarray,
                 **kwargs: Any):
        super().__init__(points=points, sigma2=sigma2, **kwargs)
        self.rotation = rotation
        self.scale = scale
        self.translation = translation

    @property
    def transformation(self) -> np.ndarray:
        """The (D+1)x(D+1) homogeneous transformation matrix mapping moving points onto `points`."""
        dim = self.rotation.shape[0]
        transformation = np.eye(dim + 1)
        transformation[:dim, :dim] = self.scale * self.rotation
        transformation[:dim, dim] = self.translation
        return transformation


class NonrigidRegistrationResult(RegistrationResult):
    """Registration result with added deformation weights.

    Attributes:
        w: The MxD weight matrix of the deformation field `G @ w` (in normalized coordinates if normalization was used).
    """

    def __init__(self, points: np.ndarray, sigma2: float, w: np.ndarray, **kwargs: Any):
        super().__init__(points=points, sigma2=sigma2, **kwargs)
        self.w = w


class ComparerInterface(ABC):
    """Interface for comparer subclasses computing the E-step of the registration.

    Attributes:
        name: The name of the comparer.

    Methods:
        compute(fixed, moving, sigma2, outliers, ...): Computes the responsibility statistics.
    """

    def __init__(self, name: str) -> None:
        """
        Args:
            name: The name of the comparer.
        """
        self.name = name

    @abstractmethod
    def compute(self,
                fixed: np.ndarray,
                moving: np.ndarray,
                sigma2: float,
                outliers: float,
                correspondence: bool = False) -> Probabilities:
        """Computes the Gaussian mixture responsibilities of `moving` for each point in `fixed`.

        Args:
            fixed: The fixed points, shape (N, D).
            moving: The current estimate of the moving points, shape (M, D).
            sigma2: The isotropic variance shared by all mixture components.
            outliers: The weight of the uniform outlier component in [0, 1).
            correspondence: Also compute the hard correspondence vector.

        Raises:
            NotImplementedError: A derived class should implement this method.

        Returns:
            The responsibility statistics.
        """
        raise NotImplementedError("A derived class should implement this method.")


class TransformInterface(ABC):
    """Interface for transform subclasses computing the M-step of the registration.

    Attributes:
        name: The name of the transform.

    Methods:
        init(fixed, moving): One-time setup from the (normalized) point sets.
        initial_result(moving, sigma2): The identity result the iteration starts from.
        modify_probabilities(probabilities): Adds the regularization penalty to the likelihood proxy.
        compute(fixed, moving, probabilities, sigma2): Computes the next point and variance estimate.
        denormalize(normalization, result): Maps a result back into the fixed set's original frame.
    """

    def __init__(self, name: str) -> None:
        """
        Args:
            name: The name of the transform.
        """
        self.name = name

    def init(self, fixed: np.ndarray, moving: np.ndarray) -> None:
        """One-time setup from the (normalized) point sets. Resets any previous state.

        Args:
            fixed: The fixed points.
            moving: The moving points.
        """
        pass

    @abstractmethod
    def initial_result(self, moving: np.ndarray, sigma2: float) -> RegistrationResult:
        """Returns the identity result the iteration starts from.

        Args:
            moving: The moving points.
            sigma2: The initial variance.

        Raises:
            NotImplementedError: A derived class should implement this method.

        Returns:
            The initial registration result.
        """
        raise NotImplementedError("A derived class should implement this method.")

    def modify_probabilities(self, probabilities: Probabilities) -> None:
        """Adds the regularization penalty of the transform to `probabilities.l` in place.

        Args:
            probabilities: The responsibility statistics of the current iteration.
        """
        pass

    @abstractmethod
    def compute(self,
                fixed: np.ndarray,
                moving: np.ndarray,
                probabilities: Probabilities,
                sigma2: float) -> RegistrationResult:
        """Computes the next estimate of the transformed points and the variance.

        Args:
            fixed: The fixed points.
            moving: The moving points (not the current estimate).
            probabilities: The responsibility statistics of the current iteration.
            sigma2: The current variance.

        Raises:
            NotImplementedError: A derived class should implement this method.

        Returns:
            The registration result of this iteration.
        """
        raise NotImplementedError("A derived class should implement this method.")

    def denormalize(self, normalization: Normalization, result: RegistrationResult) -> RegistrationResult:
        """Maps `result` from normalized coordinates back into the fixed set's original frame.

        Args:
            normalization: The normalization used for the run.
            result: The result in normalized coordinates.

        Returns:
            A new result in original coordinates.
        """
        return result.replace(points=normalization.denormalize(result.points))
