"""Rigid and non-rigid Coherent Point Drift (CPD) registration.

Classes:
    Rigid: Rigid CPD transform estimating rotation, translation and (optionally) scale.
    Nonrigid: Non-rigid CPD transform estimating a smooth displacement field.
    RegistrationConfig: Validated configuration of a registration run.
    Runner: Runs the CPD expectation-maximization loop with a fixed transform.

Functions:
    rigid: Convenience function running a rigid registration with default settings.
    nonrigid: Convenience function running a non-rigid registration with default settings.
"""
import copy
import logging
import sys
import time
from multiprocessing import cpu_count
from typing import Any, Dict, List, Union

import numpy as np
import tqdm
from joblib import Parallel, delayed

from .comparer import DEFAULT_COMPARER, DirectComparer, get_comparer
from .interfaces import (ComparerInterface, NonrigidRegistrationResult, Probabilities, RegistrationResult,
                         RigidRegistrationResult, TransformInterface)
from .utils import (Normalization, PointTypes, affinity, default_sigma2, eval_data_pair, get_average_translation,
                    normalize)

DEFAULT_MAX_ITERATIONS = 150
DEFAULT_TOLERANCE = 1e-5
DEFAULT_SIGMA2 = 0.0
DEFAULT_OUTLIERS = 0.1
DEFAULT_NORMALIZE = True
DEFAULT_CORRESPONDENCE = False
DEFAULT_BETA = 3.0
DEFAULT_LAMBDA = 3.0

logger = logging.getLogger(__name__)


class Rigid(TransformInterface):
    """Rigid CPD transform estimating rotation, translation and (optionally) scale.

    Scale estimation needs at least two moving points; a single point has no spread to scale.

    Attributes:
        scale: Estimate a uniform scale in addition to rotation and translation.
        reflections: Allow the estimated rotation to be a reflection.
    """

    def __init__(self, scale: bool = True, reflections: bool = False) -> None:
        """
        Args:
            scale: Estimate a uniform scale in addition to rotation and translation.
            reflections: Allow the estimated rotation to be a reflection.
        """
        super().__init__(name="RIGID_CPD")
        self.scale = scale
        self.reflections = reflections

    def init(self, fixed: np.ndarray, moving: np.ndarray) -> None:
        """Checks that the moving points support the requested estimate.

        Raises:
            ValueError: If `scale` is estimated from fewer than two moving points.
        """
        if self.scale and len(moving) < 2:
            raise ValueError(f"Estimating a scale needs at least 2 moving points, got {len(moving)}.")

    def initial_result(self, moving: np.ndarray, sigma2: float) -> RigidRegistrationResult:
        dim = moving.shape[1]
        return RigidRegistrationResult(points=moving,
                                       sigma2=sigma2,
                                       rotation=np.eye(dim),
                                       scale=1.0,
                                       translation=np.zeros(dim))

    def compute(self,
                fixed: np.ndarray,
                moving: np.ndarray,
                probabilities: Probabilities,
                sigma2: float) -> RigidRegistrationResult:
        dim = fixed.shape[1]
        p1 = probabilities.p1
        pt1 = probabilities.pt1
        np_ = np.sum(p1)

        mu_x = fixed.T @ pt1 / np_
        mu_y = moving.T @ p1 / np_
        x_hat = fixed - mu_x
        y_hat = moving - mu_y

        a = probabilities.px.T @ moving - np_ * np.outer(mu_x, mu_y)
        u, s, vt = np.linalg.svd(a)
        c = np.ones(dim)
        if not self.reflections:
            c[-1] = np.linalg.det(u @ vt)
        rotation = u @ np.diag(c) @ vt
        trace_sc = np.sum(s * c)

        x_hat_term = np.sum(x_hat ** 2 * pt1[:, np.newaxis])
        y_hat_term = np.sum(y_hat ** 2 * p1[:, np.newaxis])
        if self.scale:
            scale = trace_sc / y_hat_term
            new_sigma2 = abs(x_hat_term - scale * trace_sc) / (np_ * dim)
        else:
            scale = 1.0
            new_sigma2 = abs(x_hat_term + y_hat_term - 2 * trace_sc) / (np_ * dim)
        translation = mu_x - scale * rotation @ mu_y

        return RigidRegistrationResult(points=scale * moving @ rotation.T + translation,
                                       sigma2=float(new_sigma2),
                                       rotation=rotation,
                                       scale=float(scale),
                                       translation=translation)

    def denormalize(self, normalization: Normalization, result: RigidRegistrationResult) -> RigidRegistrationResult:
        translation = (normalization.scale * result.translation + normalization.fixed_mean -
                       result.scale * result.rotation @ normalization.moving_mean)
        return result.replace(points=normalization.denormalize(result.points), translation=translation)


class Nonrigid(TransformInterface):
    """Non-rigid CPD transform estimating a smooth displacement field `G @ W`.

    `G` is the Gaussian affinity matrix of the moving points. It is built once in `init` and kept for the whole run,
    only `W` is re-estimated.

    Attributes:
        beta: Width of the Gaussian affinity kernel. Larger values give smoother deformations.
        lambd: Regularization strength trading data fit against smoothness.
    """

    def __init__(self, beta: float = DEFAULT_BETA, lambd: float = DEFAULT_LAMBDA) -> None:
        """
        Args:
            beta: Width of the Gaussian affinity kernel.
            lambd: Regularization strength.
        """
        super().__init__(name="NONRIGID_CPD")
        if beta <= 0:
            raise ValueError(f"`beta` must be positive but is {beta}.")
        if lambd <= 0:
            raise ValueError(f"`lambd` must be positive but is {lambd}.")
        self.beta = beta
        self.lambd = lambd
        self._g = None
        self._w = None

    def init(self, fixed: np.ndarray, moving: np.ndarray) -> None:
        self._g = affinity(moving, moving, self.beta)
        self._w = np.zeros_like(moving)

    def initial_result(self, moving: np.ndarray, sigma2: float) -> NonrigidRegistrationResult:
        return NonrigidRegistrationResult(points=moving, sigma2=sigma2, w=np.zeros_like(moving))

    def modify_probabilities(self, probabilities: Probabilities) -> None:
        probabilities.l += self.lambd / 2.0 * np.trace(self._w.T @ self._g @ self._w)

    def compute(self,
                fixed: np.ndarray,
                moving: np.ndarray,
                probabilities: Probabilities,
                sigma2: float) -> NonrigidRegistrationResult:
        dim = fixed.shape[1]
        p1 = probabilities.p1[:, np.newaxis]
        a = p1 * self._g + self.lambd * sigma2 * np.eye(len(moving))
        b = probabilities.px - p1 * moving
        try:
            self._w = np.linalg.solve(a, b)
        except np.linalg.LinAlgError:
            logger.warning(f"Singular system at sigma2={sigma2}. Using least-squares solution.")
            self._w = np.linalg.lstsq(a, b, rcond=None)[0]

        points = moving + self._g @ self._w
        np_ = np.sum(probabilities.p1)
        new_sigma2 = abs(np.sum(fixed ** 2 * probabilities.pt1[:, np.newaxis]) +
                         np.sum(points ** 2 * p1) -
                         2 * np.sum(probabilities.px * points)) / (np_ * dim)
        return NonrigidRegistrationResult(points=points, sigma2=float(new_sigma2), w=self._w)


class RegistrationConfig:
    """Validated configuration of a registration run.

    Attributes:
        max_iterations: Maximum number of iterations before the algorithm is stopped.
        tolerance: If the relative change of the likelihood proxy is not above `tolerance`, the iteration stops.
        sigma2: The initial variance. Computed from the data if 0.0.
        outliers: The weight of the uniform outlier component in [0, 1).
        normalize: Center and scale the point sets before registration.
        correspondence: Compute the correspondence vector after registration.
        comparer: The comparer computing the E-step, by name or as instance.
        progress: Print a progress bar over the iterations.
    """

    def __init__(self,
                 max_iterations: int = DEFAULT_MAX_ITERATIONS,
                 tolerance: float = DEFAULT_TOLERANCE,
                 sigma2: float = DEFAULT_SIGMA2,
                 outliers: float = DEFAULT_OUTLIERS,
                 normalize: bool = DEFAULT_NORMALIZE,
                 correspondence: bool = DEFAULT_CORRESPONDENCE,
                 comparer: Union[str, ComparerInterface] = DEFAULT_COMPARER,
                 progress: bool = False) -> None:
        """
        Args:
            max_iterations: Maximum number of iterations before the algorithm is stopped.
            tolerance: If the relative change of the likelihood proxy is not above `tolerance`, the iteration stops.
            sigma2: The initial variance. Computed from the data if 0.0.
            outliers: The weight of the uniform outlier component in [0, 1).
            normalize: Center and scale the point sets before registration.
            correspondence: Compute the correspondence vector after registration.
            comparer: The comparer computing the E-step, by name or as instance.
            progress: Print a progress bar over the iterations.

        Raises:
            ValueError: If a value is out of range.
            UnknownComparerError: If `comparer` is an unknown name.
        """
        if isinstance(max_iterations, bool) or int(max_iterations) != max_iterations or max_iterations < 0:
            raise ValueError(f"`max_iterations` must be a non-negative integer but is {max_iterations}.")
        if tolerance < 0:
            raise ValueError(f"`tolerance` must be non-negative but is {tolerance}.")
        if sigma2 < 0:
            raise ValueError(f"`sigma2` must be non-negative but is {sigma2}.")
        if not 0 <= outliers < 1:
            raise ValueError(f"`outliers` must be in [0, 1) but is {outliers}.")

        self.max_iterations = int(max_iterations)
        self.tolerance = float(tolerance)
        self.sigma2 = float(sigma2)
        self.outliers = float(outliers)
        self.normalize = bool(normalize)
        self.correspondence = bool(correspondence)
        if isinstance(comparer, ComparerInterface):
            self.comparer = comparer
        else:
            self.comparer = get_comparer(comparer)
        self.progress = bool(progress)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "RegistrationConfig":
        """Constructs a configuration from a dict, e.g. an evaluated config file section.

        Args:
            config_dict: Option names and values. `None` values are ignored.

        Returns:
            The configuration.
        """
        options = ["max_iterations", "tolerance", "sigma2", "outliers", "normalize", "correspondence", "comparer",
                   "progress"]
        unknown = [key for key in config_dict if key not in options]
        if unknown:
            raise ValueError(f"Unknown configuration options {unknown}. Valid options are {options}.")
        return cls(**{key: value for key, value in config_dict.items() if value is not None})

    def as_dict(self) -> Dict[str, Any]:
        """Returns the configuration as dict with the comparer given by name."""
        return {"max_iterations": self.max_iterations,
                "tolerance": self.tolerance,
                "sigma2": self.sigma2,
                "outliers": self.outliers,
                "normalize": self.normalize,
                "correspondence": self.correspondence,
                "comparer": self.comparer.name,
                "progress": self.progress}


class Runner:
    """Runs the CPD expectation-maximization loop with a fixed transform.

    Each iteration computes the responsibilities of the current point estimate (E-step, `config.comparer`) and
    updates the transform and the variance (M-step, `transform`). The loop stops at `config.max_iterations`, when the
    relative change of the likelihood proxy drops to `config.tolerance` or when the variance collapses to the
    precision floor. None of these is treated as an error.

    Attributes:
        transform: The transform estimated in the M-step.
        config: The run configuration.

    Methods:
        run(fixed, moving): Registers `moving` onto `fixed`.
        run_many(fixed_list, moving_list, ...): Registers many point set pairs in parallel threads.
    """

    def __init__(self,
                 transform: TransformInterface,
                 config: Union[RegistrationConfig, None] = None,
                 **kwargs: Any) -> None:
        """
        Args:
            transform: The transform estimated in the M-step.
            config: The run configuration. Built from `kwargs` if not provided.
            kwargs: Options of `RegistrationConfig`. Only used if `config` is `None`.
        """
        if not isinstance(transform, TransformInterface):
            raise TypeError(f"`transform` must implement `TransformInterface` but has type {type(transform)}.")
        if config is not None and kwargs:
            raise ValueError("Provide either `config` or configuration keyword arguments, not both.")
        self.transform = transform
        self.config = config if config is not None else RegistrationConfig(**kwargs)

    @property
    def name(self) -> str:
        return self.transform.name

    def run(self, fixed: PointTypes, moving: PointTypes) -> RegistrationResult:
        """Registers `moving` onto `fixed`.

        Args:
            fixed: The fixed (target) data.
            moving: The moving (source) data.

        Returns:
            The registration result with the registered points in the fixed set's coordinate frame.
        """
        _fixed, _moving = eval_data_pair(fixed=fixed, moving=moving)
        config = self.config
        logger.info(f"Number of points in fixed matrix: {len(_fixed)}")
        logger.info(f"Number of points in moving matrix: {len(_moving)}")

        start = time.time()
        normalization = None
        fixed_n, moving_n = _fixed, _moving
        if config.normalize:
            normalization = normalize(_fixed, _moving)
            fixed_n, moving_n = normalization.fixed, normalization.moving

        self.transform.init(fixed_n, moving_n)

        if config.sigma2 == 0.0:
            sigma2 = default_sigma2(fixed_n, moving_n)
            logger.info(f"Initializing sigma2 to {sigma2}")
        else:
            sigma2 = config.sigma2
            logger.info(f"sigma2 previously set to {sigma2}")
        result = self.transform.initial_result(moving_n, sigma2)

        iteration = 0
        ntol = config.tolerance + 10.0
        l = 0.0
        floor = 10 * np.finfo(float).eps
        progress = tqdm.tqdm(total=config.max_iterations,
                             desc=self.name,
                             file=sys.stdout,
                             disable=not config.progress)
        while iteration < config.max_iterations and ntol > config.tolerance and result.sigma2 > floor:
            probabilities = config.comparer.compute(fixed_n, result.points, result.sigma2, config.outliers)
            self.transform.modify_probabilities(probabilities)
            ntol = np.abs((probabilities.l - l) / probabilities.l)
            logger.info(f"iter={iteration}, dL={ntol:.8f}, sigma2={result.sigma2:.8f}")
            l = probabilities.l
            result = self.transform.compute(fixed_n, moving_n, probabilities, result.sigma2)
            iteration += 1
            progress.update()
        progress.close()

        if normalization is not None:
            result = self.transform.denormalize(normalization, result)

        correspondence = None
        if config.correspondence:
            # Uses the configured rather than the converged variance.
            sigma2 = config.sigma2 if config.sigma2 != 0.0 else default_sigma2(_fixed, result.points)
            correspondence = DirectComparer().compute(_fixed,
                                                      result.points,
                                                      sigma2,
                                                      config.outliers,
                                                      correspondence=True).correspondence

        runtime = time.time() - start
        logger.debug(f"Registration took {runtime} seconds and {iteration} iterations. "
                     f"Average translation: {get_average_translation(result.points, _moving)}")
        return result.replace(iterations=iteration, runtime=runtime, correspondence=correspondence)

    def run_many(self,
                 fixed_list: List[PointTypes],
                 moving_list: List[PointTypes],
                 one_vs_one: bool = False,
                 num_threads: int = cpu_count()) -> List[RegistrationResult]:
        """Registers many point set pairs in parallel threads. Each job runs on its own copy of this runner.

        Args:
            fixed_list: A list of fixed data.
            moving_list: A list of moving data.
            one_vs_one: Register one moving to one fixed data. Otherwise, each moving is registered to each fixed.
            num_threads: The number of parallel threads to run.

        Returns:
            A list of registration results between
            moving_0 <-> fixed_0, moving_1 <-> fixed_0, ... moving_N <-> fixed_0, moving_0 <-> fixed_1, ...
            If `one_vs_one`, the order is moving_0 <-> fixed_0, moving_1 <-> fixed_1, ...
        """
        start = time.time()
        if one_vs_one:
            if len(fixed_list) != len(moving_list):
                raise ValueError("`fixed_list` and `moving_list` must have equal length for `one_vs_one`.")
            pairs = list(zip(fixed_list, moving_list))
        else:
            pairs = [(fixed, moving) for fixed in fixed_list for moving in moving_list]
        if not pairs:
            return list()

        parallel = Parallel(n_jobs=min(num_threads, len(pairs)), prefer="threads")
        results = parallel(delayed(copy.deepcopy(self).run)(fixed=fixed, moving=moving) for fixed, moving in pairs)
        logger.debug(f"`run_many` took {time.time() - start} seconds.")
        return results


def _split_kwargs(kwargs: Dict[str, Any], transform_options: List[str]) -> List[Dict[str, Any]]:
    transform_kwargs = {key: value for key, value in kwargs.items() if key in transform_options}
    config_kwargs = {key: value for key, value in kwargs.items() if key not in transform_options}
    return [transform_kwargs, config_kwargs]


def rigid(fixed: PointTypes, moving: PointTypes, **kwargs: Any) -> RigidRegistrationResult:
    """Convenience function running a rigid registration.

    Args:
        fixed: The fixed data.
        moving: The moving data.
        kwargs: Options of `Rigid` (`scale`, `reflections`) and `RegistrationConfig`.

    Returns:
        The rigid registration result.
    """
    transform_kwargs, config_kwargs = _split_kwargs(kwargs, ["scale", "reflections"])
    return Runner(Rigid(**transform_kwargs), **config_kwargs).run(fixed, moving)


def nonrigid(fixed: PointTypes, moving: PointTypes, **kwargs: Any) -> NonrigidRegistrationResult:
    """Convenience function running a non-rigid registration.

    Args:
        fixed: The fixed data.
        moving: The moving data.
        kwargs: Options of `Nonrigid` (`beta`, `lambd`) and `RegistrationConfig`.

    Returns:
        The non-rigid registration result.
    """
    transform_kwargs, config_kwargs = _split_kwargs(kwargs, ["beta", "lambd"])
    return Runner(Nonrigid(**transform_kwargs), **config_kwargs).run(fixed, moving)
