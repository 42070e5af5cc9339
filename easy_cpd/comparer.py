"""Gaussian mixture responsibility (E-step) computation.

Classes:
    UnknownComparerError: Raised if no comparer is registered under a requested name.
    DirectComparer: Dense, exact responsibility computation over all point pairs.

Functions:
    register_comparer: Registers a comparer factory under a name.
    get_comparer: Returns a new comparer instance by name.
    available_comparers: Returns the names of all registered comparers.
"""
import logging
from typing import Callable, Dict, List

import numpy as np

from .interfaces import ComparerInterface, Probabilities
from .utils import squared_distances

DEFAULT_COMPARER = "direct"

logger = logging.getLogger(__name__)


class UnknownComparerError(ValueError):
    """Raised if no comparer is registered under a requested name."""
    pass


class DirectComparer(ComparerInterface):
    """Dense, exact responsibility computation over all point pairs.

    Memory and runtime grow with the product of the number of fixed and moving points.
    """

    def __init__(self) -> None:
        super().__init__(name="direct")

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

        Returns:
            The responsibility statistics.
        """
        num_fixed, dim = fixed.shape
        num_moving = len(moving)
        ksig = -2.0 * sigma2
        outlier_term = (outliers * num_moving * (-ksig * np.pi) ** (0.5 * dim)) / ((1 - outliers) * num_fixed)

        p = np.exp(squared_distances(fixed, moving) / ksig)
        # Floor keeps responsibilities finite when all densities underflow.
        sp = np.maximum(p.sum(axis=1) + outlier_term, np.finfo(float).tiny)
        posterior = p / sp[:, np.newaxis]

        p1 = posterior.sum(axis=0)
        pt1 = 1 - outlier_term / sp
        px = posterior.T @ fixed
        l = -np.sum(np.log(sp)) + dim * num_fixed * np.log(sigma2) / 2
        return Probabilities(p1=p1,
                             pt1=pt1,
                             px=px,
                             l=l,
                             correspondence=np.argmax(posterior, axis=0) if correspondence else None)


_COMPARERS: Dict[str, Callable[[], ComparerInterface]] = {DEFAULT_COMPARER: DirectComparer}


def register_comparer(name: str, factory: Callable[[], ComparerInterface], replace: bool = False) -> None:
    """Registers a comparer factory under a name.

    Args:
        name: The lookup name.
        factory: Callable without arguments returning a new comparer instance.
        replace: Overwrite a comparer already registered under `name`.
    """
    if name in _COMPARERS and not replace:
        raise ValueError(f"A comparer is already registered under the name `{name}`.")
    logger.debug(f"Registering comparer `{name}`.")
    _COMPARERS[name] = factory


def get_comparer(name: str = DEFAULT_COMPARER) -> ComparerInterface:
    """Returns a new comparer instance by name.

    Args:
        name: The name the comparer is registered under.

    Raises:
        UnknownComparerError: If no comparer is registered under `name`.

    Returns:
        The comparer.
    """
    try:
        factory = _COMPARERS[name]
    except KeyError:
        raise UnknownComparerError(f"Unknown comparer `{name}`. Available: {available_comparers()}.") from None
    return factory()


def available_comparers() -> List[str]:
    """Returns the names of all registered comparers."""
    return sorted(_COMPARERS.keys())
